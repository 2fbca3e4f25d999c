"""
File store infrastructure for repobuild.

JSON documents written atomically (temp file, then rename) so a crash
never leaves a half-written ledger behind. Backs the pin history ledger
and the local release store index; the installer uses the atomic writer
for its marker files.
"""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to ``path`` atomically using a temp file and rename."""
    path = Path(path)
    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp"
    )

    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write('\n')

        os.replace(temp_path, path)

    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


class FileStore:
    """
    Keyed JSON document with serialized read-modify-write.

    Example:
        ledger = FileStore(Path("versions/pins-history.json"))
        ledger.mutate("vm", lambda entries: entries + [pin.to_dict()], default=[])
        history = ledger.get("vm", [])
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser().resolve()
        self._lock = threading.RLock()
        self._cache: Optional[Dict[str, Any]] = None

    def read(self) -> Dict[str, Any]:
        """Whole document; a missing or unreadable file reads as empty."""
        with self._lock:
            if self._cache is None:
                if not self.path.exists():
                    return {}
                try:
                    with open(self.path, 'r') as f:
                        self._cache = json.load(f)
                except (json.JSONDecodeError, OSError) as e:
                    logger.warning(f"Error reading {self.path}: {e}")
                    self._cache = {}
            return dict(self._cache)

    def get(self, key: str, default: Any = None) -> Any:
        return self.read().get(key, default)

    def keys(self) -> List[str]:
        return list(self.read().keys())

    def mutate(self, key: str, fn: Callable[[Any], Any], default: Any = None) -> Any:
        """
        Read-modify-write one key under the store lock.

        Args:
            key: Key to update
            fn: Receives the current value (or default), returns the new value
            default: Value passed to fn when key is missing

        Returns:
            The new value
        """
        with self._lock:
            data = self.read()
            value = fn(data.get(key, default))
            data[key] = value
            self.path.parent.mkdir(parents=True, exist_ok=True)
            write_json_atomic(self.path, data)
            self._cache = data
            return value
