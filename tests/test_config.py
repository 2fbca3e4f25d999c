"""
Unit tests for repobuild.config module
"""
import unittest
import tempfile
import os
import shutil
import json
from pathlib import Path
from unittest.mock import patch

import toml
import yaml

from repobuild.config import (
    apply_env_overrides,
    expand_path,
    get_config_path,
    get_default_config,
    load_config,
    merge_configs,
    save_config,
)


class TestConfigManagement(unittest.TestCase):
    """Test configuration management functionality"""

    def setUp(self):
        """Set up test environment"""
        self.temp_dir = tempfile.mkdtemp()
        self.original_home = os.environ.get('HOME')
        os.environ['HOME'] = self.temp_dir
        self.config_dir = Path(self.temp_dir) / '.repobuild'

    def tearDown(self):
        """Clean up test environment"""
        if self.original_home:
            os.environ['HOME'] = self.original_home
        else:
            del os.environ['HOME']
        shutil.rmtree(self.temp_dir)

    def test_get_default_config(self):
        """Test default configuration structure"""
        config = get_default_config()

        for section in ('general', 'product', 'platforms', 'stages', 'pins', 'store', 'descriptors', 'logging'):
            self.assertIn(section, config)

        self.assertEqual(config['platforms']['default'], ['linux-x86_64'])
        self.assertEqual(config['stages']['retry']['max_attempts'], 3)
        self.assertEqual(config['store']['type'], 'local')
        self.assertEqual(config['pins']['directory'], 'versions')

    def test_load_config_no_file(self):
        """Test loading config when no file exists"""
        config = load_config()
        self.assertEqual(config, get_default_config())

    def test_load_config_json_file(self):
        """Test loading config from JSON file"""
        self.config_dir.mkdir()
        with open(self.config_dir / 'config.json', 'w') as f:
            json.dump({'stages': {'timeouts': {'test': 60}}, 'logging': {'level': 'DEBUG'}}, f)

        config = load_config()
        self.assertEqual(config['stages']['timeouts']['test'], 60)
        self.assertEqual(config['stages']['timeouts']['fetch'], 1800)
        self.assertEqual(config['logging']['level'], 'DEBUG')

    def test_load_config_toml_file(self):
        """Test loading config from TOML file"""
        self.config_dir.mkdir()
        with open(self.config_dir / 'config.toml', 'w') as f:
            toml.dump({'platforms': {'default': ['macos-aarch64', 'windows-x86_64']}}, f)

        config = load_config()
        self.assertEqual(config['platforms']['default'], ['macos-aarch64', 'windows-x86_64'])
        self.assertEqual(config['platforms']['tentative'], '')

    def test_load_config_yaml_file(self):
        """Test loading config from YAML file"""
        self.config_dir.mkdir()
        with open(self.config_dir / 'config.yaml', 'w') as f:
            yaml.safe_dump({'platforms': {'skip_lists': {'linux-aarch64': ['gfx']}}}, f)

        config = load_config()
        self.assertEqual(config['platforms']['skip_lists'], {'linux-aarch64': ['gfx']})

    def test_broken_file_falls_back_to_defaults(self):
        """A config file that cannot be parsed leaves the defaults in place"""
        self.config_dir.mkdir()
        (self.config_dir / 'config.json').write_text('{"general": {"workspace": ')

        config = load_config()
        self.assertEqual(config['general'], get_default_config()['general'])

    def test_environment_override(self):
        """Test environment variable overrides"""
        with patch.dict(os.environ, {'REPOBUILD_STORE_TOKEN': 'secret'}):
            config = load_config()
            self.assertEqual(config['store']['token'], 'secret')

    def test_nested_environment_override(self):
        """Multi-word keys and typed values are matched"""
        with patch.dict(os.environ, {
            'REPOBUILD_STAGES_RETRY_MAX_ATTEMPTS': '5',
            'REPOBUILD_GENERAL_MAX_PARALLEL_LANES': '2',
            'REPOBUILD_DESCRIPTORS_REMOTE': 'true',
        }):
            config = load_config()
            self.assertEqual(config['stages']['retry']['max_attempts'], 5)
            self.assertEqual(config['general']['max_parallel_lanes'], 2)
            self.assertIs(config['descriptors']['remote'], True)

    def test_unknown_environment_key_ignored(self):
        """Variables that match no key leave the config alone"""
        config = apply_env_overrides(get_default_config())
        with patch.dict(os.environ, {'REPOBUILD_NOPE_VALUE': '1'}):
            self.assertEqual(apply_env_overrides(get_default_config()), config)

    def test_save_config_json(self):
        """Test saving config to JSON file"""
        config = get_default_config()
        config['product']['name'] = 'Workbench'
        save_config(config)

        config_path = self.config_dir / 'config.json'
        self.assertTrue(config_path.exists())
        with open(config_path) as f:
            saved = json.load(f)
        self.assertEqual(saved['product']['name'], 'Workbench')

    def test_config_path_env(self):
        """REPOBUILD_CONFIG points at another file"""
        other = Path(self.temp_dir) / 'elsewhere.json'
        other.write_text(json.dumps({'product': {'name': 'Other'}}))
        with patch.dict(os.environ, {'REPOBUILD_CONFIG': str(other)}):
            self.assertEqual(get_config_path(), other)
            self.assertEqual(load_config()['product']['name'], 'Other')

    def test_config_path_default(self):
        """Without any file the JSON path is used for saving"""
        self.assertEqual(get_config_path(), self.config_dir / 'config.json')


class TestConfigValidation(unittest.TestCase):
    """Test configuration helpers"""

    def test_merge_configs(self):
        """Test configuration merging"""
        base = {'stages': {'timeouts': {'fetch': 10, 'test': 20}}, 'general': {'workspace': '/w'}}
        override = {'stages': {'timeouts': {'test': 5}}, 'extra': True}

        merged = merge_configs(base, override)
        self.assertEqual(merged['stages']['timeouts'], {'fetch': 10, 'test': 5})
        self.assertEqual(merged['general'], {'workspace': '/w'})
        self.assertTrue(merged['extra'])
        self.assertEqual(base['stages']['timeouts']['test'], 20)

    def test_merge_replaces_lists(self):
        """Lists are replaced, not appended"""
        merged = merge_configs({'platforms': {'default': ['linux-x86_64']}},
                               {'platforms': {'default': ['macos-x86_64']}})
        self.assertEqual(merged['platforms']['default'], ['macos-x86_64'])

    def test_expand_path(self):
        """Relative paths resolve against the base, ~ against HOME"""
        base = Path('/srv/project')
        self.assertEqual(expand_path('versions', base=base), base / 'versions')
        self.assertEqual(expand_path('/abs/versions', base=base), Path('/abs/versions'))
        with patch.dict(os.environ, {'HOME': '/home/dana'}):
            self.assertEqual(expand_path('~/releases', base=base), Path('/home/dana/releases'))


if __name__ == '__main__':
    unittest.main()
