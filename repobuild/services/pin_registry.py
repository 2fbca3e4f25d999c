"""
Version pin registry for repobuild.

Keeps the exact versions of external tools (builder, VM, releaser, the
product itself) as one ``<tool>.version`` file per tool, next to an
append-only ``pins-history.json`` ledger. A bump appends; earlier pins are
never edited. Reads never write: a version file written by hand shows up
as a pending pin until ``bump`` or ``sync`` records it.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from ..domain.errors import RegistryFrozen, UnknownTool
from ..domain.pin import PinSet, VersionPin
from ..infra.file_store import FileStore
from ..version_manager import VersionBumper, validate_version

logger = logging.getLogger(__name__)

VERSION_SUFFIX = ".version"
HISTORY_FILE = "pins-history.json"
INITIAL = "initial"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='microseconds')


class VersionPinRegistry:
    """
    Registry of pinned tool versions.

    Reads are copy-on-read: ``snapshot()`` returns a frozen PinSet that
    later bumps cannot change. Writes are serialized, and refused while a
    build holds the registry through ``freeze()``.

    Example:
        registry = VersionPinRegistry(Path("versions"))
        registry.bump("vm", "10.0.2")
        registry.current_pin("vm").version        # "10.0.2"
        with registry.freeze() as pins:
            run_build(pins)
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory).expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)
        self.ledger = FileStore(self.directory / HISTORY_FILE)
        self._lock = threading.RLock()
        self._frozen = 0

    def _version_file(self, tool: str) -> Path:
        if not tool or '/' in tool or '\\' in tool or tool.startswith('.'):
            raise ValueError(f"Invalid tool name: {tool!r}")
        return self.directory / f"{tool}{VERSION_SUFFIX}"

    def _next_sequence(self) -> int:
        highest = 0
        for entries in self.ledger.read().values():
            for entry in entries:
                highest = max(highest, int(entry.get('sequence', 0)))
        return highest + 1

    def _append(self, pin: VersionPin) -> None:
        self.ledger.mutate(pin.tool, lambda entries: list(entries or []) + [pin.to_dict()], default=[])

    def _pending(self, tool: str, entries: List[VersionPin]) -> Optional[VersionPin]:
        """Pin a hand-written or hand-edited version file stands for, if the ledger lacks it."""
        version_file = self._version_file(tool)
        if not version_file.exists():
            return None
        on_disk = version_file.read_text().strip()
        if not on_disk or (entries and entries[-1].version == on_disk):
            return None
        if not entries:
            return VersionPin(tool=tool, version=on_disk, effective_from=INITIAL, sequence=0)
        modified = datetime.fromtimestamp(version_file.stat().st_mtime, timezone.utc)
        return VersionPin(
            tool=tool,
            version=on_disk,
            effective_from=modified.isoformat(timespec='microseconds'),
            sequence=self._next_sequence(),
        )

    def _load(self, tool: str) -> List[VersionPin]:
        """Ledger entries for a tool plus any unrecorded version file. Never writes."""
        entries = [VersionPin.from_dict(e) for e in self.ledger.get(tool, [])]
        pending = self._pending(tool, entries)
        if pending is not None:
            entries.append(pending)
        return entries

    def _record_pending(self, tool: str) -> Optional[VersionPin]:
        entries = [VersionPin.from_dict(e) for e in self.ledger.get(tool, [])]
        pending = self._pending(tool, entries)
        if pending is None:
            return None
        if entries:
            logger.warning(f"{tool}{VERSION_SUFFIX} was edited by hand, recording {pending}")
        else:
            logger.debug(f"Adopting {tool}{VERSION_SUFFIX} as initial pin {pending}")
        self._append(pending)
        return pending

    def _check_writable(self, tool: str = "") -> None:
        if self._frozen:
            raise RegistryFrozen(
                f"Cannot change {tool or 'pins'} while a build is using the pin registry",
                component=tool or None,
            )

    def tools(self) -> Tuple[str, ...]:
        """Names of every pinned tool, sorted."""
        with self._lock:
            names = set(self.ledger.keys())
            names.update(p.name[:-len(VERSION_SUFFIX)] for p in self.directory.glob(f"*{VERSION_SUFFIX}"))
            return tuple(sorted(names))

    def current_pin(self, tool: str) -> VersionPin:
        """
        Active pin of a tool.

        Raises:
            UnknownTool: the tool has never been pinned
        """
        with self._lock:
            entries = self._load(tool)
            if not entries:
                raise UnknownTool(tool)
            return entries[-1]

    def history(self, tool: str) -> Tuple[VersionPin, ...]:
        """Every pin of a tool, oldest first."""
        with self._lock:
            entries = self._load(tool)
            if not entries:
                raise UnknownTool(tool)
            return tuple(entries)

    def bump(self, tool: str, new_version: str) -> VersionPin:
        """
        Pin a tool to a new version.

        The first bump of an unknown tool creates its initial pin. A version
        file written by hand is recorded before the new pin is appended.

        Raises:
            ValueError: invalid version string
            RegistryFrozen: a build holds the registry
        """
        validate_version(new_version)
        with self._lock:
            self._check_writable(tool)
            self._record_pending(tool)
            previous = self._load(tool)
            pin = VersionPin(
                tool=tool,
                version=new_version,
                effective_from=_utcnow(),
                sequence=self._next_sequence(),
            )
            self._append(pin)
            self._version_file(tool).write_text(new_version + '\n')
            if previous:
                logger.info(f"Bumped {tool} from {previous[-1].version} to {new_version}")
            else:
                logger.info(f"Pinned {tool} at {new_version}")
            return pin

    def sync(self) -> List[VersionPin]:
        """
        Record every hand-written version file in the ledger.

        Returns:
            The pins that were recorded

        Raises:
            RegistryFrozen: a build holds the registry
        """
        with self._lock:
            self._check_writable()
            recorded = []
            for tool in self.tools():
                pin = self._record_pending(tool)
                if pin is not None:
                    recorded.append(pin)
            return recorded

    def bump_part(self, tool: str, part: str) -> VersionPin:
        """Bump the major, minor or patch part of a tool's current version."""
        with self._lock:
            current = self.current_pin(tool)
            return self.bump(tool, VersionBumper.bump(current.version, part))

    def snapshot(self) -> PinSet:
        """Frozen copy of every active pin."""
        with self._lock:
            return PinSet(self.current_pin(tool) for tool in self.tools())

    @contextmanager
    def freeze(self) -> Iterator[PinSet]:
        """Hold the registry read-only for a build; yields its snapshot."""
        with self._lock:
            self._frozen += 1
            pins = self.snapshot()
        try:
            yield pins
        finally:
            with self._lock:
                self._frozen -= 1

    def to_dict(self) -> Dict[str, str]:
        return self.snapshot().to_dict()
