"""In-memory snapshot of the last complete reconciliation."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from arrival_reconciler import CanonicalArrival


DEFAULT_STALE_AFTER_S = 90.0


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Snapshot:
    arrivals: Tuple[CanonicalArrival, ...]
    published_at: Optional[datetime]
    generation: int

    @property
    def published_at_iso(self) -> Optional[str]:
        return isoformat_utc(self.published_at)


EMPTY_SNAPSHOT = Snapshot(arrivals=(), published_at=None, generation=0)


class SnapshotStore:
    """
    Holds one immutable Snapshot and swaps it wholesale on publish.

    Readers take ``current()`` without locking; the reference they get is
    either the old complete snapshot or the new complete one. The writer
    lock only serializes publishers.
    """

    def __init__(
        self,
        stale_after_s: float = DEFAULT_STALE_AFTER_S,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.stale_after_s = stale_after_s
        self._clock = clock
        self._snapshot: Snapshot = EMPTY_SNAPSHOT
        self._write_lock = threading.Lock()
        self.last_failure: str = ""
        self.last_failure_ts: float = 0.0

    def current(self) -> Snapshot:
        return self._snapshot

    def publish(self, arrivals: Iterable[CanonicalArrival]) -> Snapshot:
        frozen = tuple(arrivals)
        with self._write_lock:
            snapshot = Snapshot(
                arrivals=frozen,
                published_at=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
                generation=self._snapshot.generation + 1,
            )
            self._snapshot = snapshot
            self.last_failure = ""
        return snapshot

    def record_failure(self, reason: str) -> None:
        """Note a failed cycle; the current snapshot stays authoritative."""
        self.last_failure = reason
        self.last_failure_ts = self._clock()

    def age_s(self, snapshot: Optional[Snapshot] = None) -> Optional[float]:
        snap = snapshot or self._snapshot
        if snap.published_at is None:
            return None
        return max(self._clock() - snap.published_at.timestamp(), 0.0)

    def is_stale(self, snapshot: Optional[Snapshot] = None) -> bool:
        age = self.age_s(snapshot)
        return age is None or age > self.stale_after_s

    def status(self) -> Dict[str, Any]:
        snap = self._snapshot
        return {
            "generation": snap.generation,
            "arrivals": len(snap.arrivals),
            "published_at": snap.published_at_iso,
            "age_s": self.age_s(snap),
            "stale": self.is_stale(snap),
            "last_failure": self.last_failure or None,
            "last_failure_ts": self.last_failure_ts or None,
        }
