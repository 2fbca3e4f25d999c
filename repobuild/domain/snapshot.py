"""
Run snapshot for repobuild.

All resolution, planning and execution of one run read from a single
RunSnapshot taken at the start of the run, so concurrent lanes never see
a descriptor refresh or a pin bump half-way through.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict

from .graph import DependencyGraph
from .pin import PinSet


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='seconds')


@dataclass(frozen=True)
class RunSnapshot:
    """Frozen graph + pins pair a run operates on."""
    graph: DependencyGraph
    pins: PinSet
    created_at: str = field(default_factory=_utcnow)

    def fingerprint(self) -> str:
        combined = f"{self.graph.fingerprint()}:{self.pins.fingerprint()}"
        return hashlib.sha256(combined.encode('utf-8')).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'created_at': self.created_at,
            'fingerprint': self.fingerprint(),
            'graph_fingerprint': self.graph.fingerprint(),
            'pins': self.pins.to_dict(),
            'order': list(self.graph.order),
        }
