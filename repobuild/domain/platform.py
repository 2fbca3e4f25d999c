"""
Platform targets for repobuild.

The set of targets is fixed: an operating system and CPU architecture pair
plus the capabilities of that build host. Targets are looked up by name
(``linux-x86_64``); anything else is an UnsupportedPlatform.
"""

import platform as _platform
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple, Any

from .errors import UnsupportedPlatform


class Capability(Enum):
    """What a build host for a platform target can do."""
    CODE_SIGNING = "code_signing"
    NOTARIZATION = "notarization"
    HEADLESS_TESTS = "headless_tests"
    GUI_TESTS = "gui_tests"


@dataclass(frozen=True)
class PlatformTarget:
    """An operating system + CPU architecture build target."""
    os: str
    arch: str
    capabilities: FrozenSet[Capability] = frozenset()
    artifact_extension: str = "zip"

    @property
    def name(self) -> str:
        return f"{self.os}-{self.arch}"

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    @property
    def can_sign(self) -> bool:
        return Capability.CODE_SIGNING in self.capabilities

    def matches_tag(self, tag: str) -> bool:
        """
        Check a platform-exclusion tag against this target.

        A tag matches the full name, the OS alone or the architecture alone.
        """
        tag = tag.strip().lower()
        return tag in (self.name, self.os, self.arch)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'os': self.os,
            'arch': self.arch,
            'capabilities': sorted(c.value for c in self.capabilities),
            'artifact_extension': self.artifact_extension,
        }

    def __str__(self) -> str:
        return self.name


_SIGNED_GUI = frozenset({Capability.CODE_SIGNING, Capability.GUI_TESTS})

PLATFORMS: Tuple[PlatformTarget, ...] = (
    PlatformTarget("linux", "x86_64", frozenset({Capability.HEADLESS_TESTS})),
    PlatformTarget("linux", "aarch64", frozenset({Capability.HEADLESS_TESTS})),
    PlatformTarget("macos", "x86_64", _SIGNED_GUI | {Capability.NOTARIZATION}),
    PlatformTarget("macos", "aarch64", _SIGNED_GUI | {Capability.NOTARIZATION}),
    PlatformTarget("windows", "x86_64", _SIGNED_GUI | {Capability.HEADLESS_TESTS}),
    PlatformTarget("windows", "aarch64", frozenset({Capability.CODE_SIGNING, Capability.HEADLESS_TESTS})),
)

_BY_NAME: Dict[str, PlatformTarget] = {p.name: p for p in PLATFORMS}

_OS_ALIASES = {
    'darwin': 'macos',
    'mac': 'macos',
    'osx': 'macos',
    'win32': 'windows',
    'win': 'windows',
}

_ARCH_ALIASES = {
    'amd64': 'x86_64',
    'x64': 'x86_64',
    'arm64': 'aarch64',
}


def platform_names() -> Tuple[str, ...]:
    """Names of all supported platform targets, in declaration order."""
    return tuple(p.name for p in PLATFORMS)


def platform_by_name(name: str) -> PlatformTarget:
    """
    Look up a platform target by name.

    Accepts common aliases (``darwin-arm64`` is ``macos-aarch64``).

    Raises:
        UnsupportedPlatform: name is not one of the fixed targets
    """
    key = (name or "").strip().lower()
    if key in _BY_NAME:
        return _BY_NAME[key]
    if '-' in key:
        os_name, _, arch = key.partition('-')
        canonical = f"{_OS_ALIASES.get(os_name, os_name)}-{_ARCH_ALIASES.get(arch, arch)}"
        if canonical in _BY_NAME:
            return _BY_NAME[canonical]
    raise UnsupportedPlatform(name)


def local_platform(system: Optional[str] = None, machine: Optional[str] = None) -> PlatformTarget:
    """Detect the platform target of the running machine."""
    system = (system or _platform.system()).lower()
    machine = (machine or _platform.machine()).lower()
    return platform_by_name(f"{system}-{machine}")
