"""
Version string utilities.

Handles bumping and validating the version strings stored in pins:
- PEP 440 versions are parsed with packaging
- Anything else falls back to dotted-integer string manipulation
"""

from packaging.version import InvalidVersion, Version

BUMP_PARTS = ('major', 'minor', 'patch')


def validate_version(version: str) -> str:
    """
    Check a version string is usable as a pin.

    Returns:
        The version, unchanged

    Raises:
        ValueError: empty, surrounded by whitespace, or spans several lines
    """
    if not isinstance(version, str) or not version.strip():
        raise ValueError("Version must be a non-empty string")
    if version != version.strip() or any(c in version for c in '\r\n\t '):
        raise ValueError(f"Version must not contain whitespace: {version!r}")
    return version


class VersionBumper:
    """Bump semantic versions."""

    @staticmethod
    def bump_major(version_str: str) -> str:
        """Bump major version (X.0.0)."""
        try:
            v = Version(version_str)
            return f"{v.major + 1}.0.0"
        except InvalidVersion:
            parts = _int_parts(version_str)
            parts[0] += 1
            parts[1:] = [0] * (len(parts) - 1)
            return '.'.join(str(p) for p in parts)

    @staticmethod
    def bump_minor(version_str: str) -> str:
        """Bump minor version (x.Y.0)."""
        try:
            v = Version(version_str)
            return f"{v.major}.{v.minor + 1}.0"
        except InvalidVersion:
            parts = _int_parts(version_str)
            if len(parts) < 2:
                parts.append(0)
            parts[1] += 1
            parts[2:] = [0] * (len(parts) - 2)
            return '.'.join(str(p) for p in parts)

    @staticmethod
    def bump_patch(version_str: str) -> str:
        """Bump patch version (x.y.Z)."""
        try:
            v = Version(version_str)
            return f"{v.major}.{v.minor}.{v.micro + 1}"
        except InvalidVersion:
            parts = _int_parts(version_str)
            while len(parts) < 3:
                parts.append(0)
            parts[2] += 1
            return '.'.join(str(p) for p in parts)

    @classmethod
    def bump(cls, version_str: str, part: str) -> str:
        """Bump the named part: major, minor or patch."""
        if part not in BUMP_PARTS:
            raise ValueError(f"Unknown version part: {part} (expected one of {', '.join(BUMP_PARTS)})")
        return getattr(cls, f"bump_{part}")(version_str)


def _int_parts(version_str: str) -> list:
    stripped = version_str[1:] if version_str.startswith('v') else version_str
    try:
        return [int(p) for p in stripped.split('.')]
    except ValueError:
        raise ValueError(f"Cannot bump non-numeric version: {version_str}")
