"""
Version pin domain objects for repobuild.

A VersionPin fixes the exact version of an external tool (builder, VM,
releaser, the product itself) from a point in time onwards. Pins are never
edited: a bump appends a new one.
"""

import hashlib
import json
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional


@dataclass(frozen=True)
class VersionPin:
    """
    Immutable pin of one tool version.

    Attributes:
        tool: Tool identity (e.g. "vm", "builder")
        version: Exact version string
        effective_from: ISO-8601 UTC timestamp, or "initial" for adopted files
        sequence: Registry-wide append counter, increasing with every bump
    """
    tool: str
    version: str
    effective_from: str
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tool': self.tool,
            'version': self.version,
            'effective_from': self.effective_from,
            'sequence': self.sequence,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'VersionPin':
        return cls(
            tool=data['tool'],
            version=data['version'],
            effective_from=data.get('effective_from', 'initial'),
            sequence=int(data.get('sequence', 0)),
        )

    def __str__(self) -> str:
        return f"{self.tool}=={self.version}"


class PinSet(Mapping[str, VersionPin]):
    """Frozen tool -> active VersionPin mapping taken from a registry."""

    def __init__(self, pins: Iterable[VersionPin] = ()):
        self._pins = MappingProxyType({p.tool: p for p in pins})

    def __getitem__(self, tool: str) -> VersionPin:
        return self._pins[tool]

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._pins))

    def __len__(self) -> int:
        return len(self._pins)

    def version_of(self, tool: str) -> Optional[str]:
        pin = self._pins.get(tool)
        return pin.version if pin else None

    def without(self, *tools: str) -> 'PinSet':
        return PinSet(p for t, p in self._pins.items() if t not in tools)

    def fingerprint(self) -> str:
        """Stable SHA-256 over the active tool versions."""
        payload = sorted((tool, pin.version) for tool, pin in self._pins.items())
        encoded = json.dumps(payload, separators=(',', ':'))
        return hashlib.sha256(encoded.encode('utf-8')).hexdigest()

    def to_dict(self) -> Dict[str, str]:
        return {tool: self._pins[tool].version for tool in self}

    def __repr__(self) -> str:
        return f"PinSet({self.to_dict()!r})"
