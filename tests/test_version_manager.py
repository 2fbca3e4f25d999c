"""Tests for version string utilities."""

import pytest

from repobuild.version_manager import VersionBumper, validate_version


class TestVersionBumper:
    """Tests for VersionBumper."""

    def test_bump_major(self):
        """Major bumps reset minor and patch."""
        assert VersionBumper.bump_major("1.4.2") == "2.0.0"

    def test_bump_minor(self):
        """Minor bumps reset patch."""
        assert VersionBumper.bump_minor("1.4.2") == "1.5.0"

    def test_bump_patch(self):
        """Patch bumps increment the last part."""
        assert VersionBumper.bump_patch("1.4.2") == "1.4.3"
        assert VersionBumper.bump_patch("10.0") == "10.0.1"

    def test_leading_v(self):
        """A leading v is accepted."""
        assert VersionBumper.bump_minor("v2.3.0") == "2.4.0"

    def test_bump_by_name(self):
        """bump dispatches on the part name."""
        assert VersionBumper.bump("0.9.9", "major") == "1.0.0"
        with pytest.raises(ValueError):
            VersionBumper.bump("1.0.0", "build")

    def test_non_numeric(self):
        """Versions that are not numbers cannot be bumped."""
        with pytest.raises(ValueError):
            VersionBumper.bump_patch("nightly")


class TestValidateVersion:
    """Tests for validate_version."""

    def test_valid(self):
        """Ordinary versions pass through unchanged."""
        assert validate_version("10.0.1") == "10.0.1"
        assert validate_version("2024.05-lts") == "2024.05-lts"

    @pytest.mark.parametrize("bad", ["", " ", "1.0 ", "1\n2", None])
    def test_invalid(self, bad):
        """Empty or whitespace-bearing versions are rejected."""
        with pytest.raises(ValueError):
            validate_version(bad)
