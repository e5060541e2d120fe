"""
Feed polling and reconciliation scheduling.

Each feed (live board, crowding, timetable) runs in its own asyncio task on
its own cadence. A feed may be split into several upstream calls ("sources",
e.g. one per line or one per crowding sub-feed); those run concurrently, or
serially with a minimum gap for upstreams that reject bursts. A rate-limited
call truncates a serial cycle, and the feed backs off before its next cycle.

The poller keeps the last good normalized records per source. A source
that fails this cycle keeps contributing its previous records, so one bad
call never blanks out a line. Whenever a cycle changes the reconcilable
inputs, or a successful cycle finds the snapshot a full cadence old, the
reconciler rebuilds the arrival list and the snapshot store publishes it.
Only failing feeds let the snapshot age into staleness.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from arrival_reconciler import ArrivalReconciler, ReconcileDiagnostics
from feed_normalizers import FeedFailure, FeedFetch, FeedNormalizer, NormalizeResult, merge_results
from snapshot_store import Snapshot, SnapshotStore


DEFAULT_BACKOFF_S = 15.0
MAX_BACKOFF_S = 300.0
STALE_CADENCE_FACTOR = 3.0


class FeedKind(str, Enum):
    TRACK = "track"
    CROWD = "crowd"
    SCHEDULE = "schedule"


@dataclass
class FeedSource:
    """One upstream call of a feed and the normalizer for its payload."""
    key: str
    fetch: Callable[[], Awaitable[FeedFetch]]
    normalizer: FeedNormalizer


@dataclass
class FeedSpec:
    name: str
    kind: FeedKind
    interval_s: float
    sources: List[FeedSource]
    serial: bool = False  # serial-with-gap instead of concurrent calls
    min_call_gap_s: float = 0.0
    startup_delay_s: float = 0.0


@dataclass
class FeedStatus:
    name: str
    cycles: int = 0
    records: int = 0
    dropped: int = 0
    last_success_ts: float = 0.0
    last_failure_ts: float = 0.0
    last_failure: Optional[str] = None
    consecutive_failures: int = 0
    backoff_s: float = 0.0
    last_cycle_ok: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "cycles": self.cycles,
            "records": self.records,
            "dropped": self.dropped,
            "last_success_ts": self.last_success_ts or None,
            "last_failure_ts": self.last_failure_ts or None,
            "last_failure": self.last_failure,
            "consecutive_failures": self.consecutive_failures,
            "backoff_s": self.backoff_s,
            "last_cycle_ok": self.last_cycle_ok,
        }


def stale_threshold_for(feeds: Sequence[FeedSpec], factor: float = STALE_CADENCE_FACTOR) -> float:
    """A snapshot is stale after missing a few live-feed refreshes."""
    live = [spec.interval_s for spec in feeds if spec.kind is FeedKind.TRACK]
    cadence = min(live) if live else min((spec.interval_s for spec in feeds), default=30.0)
    return cadence * factor


class FeedPoller:
    def __init__(
        self,
        feeds: Sequence[FeedSpec],
        reconciler: ArrivalReconciler,
        store: SnapshotStore,
        *,
        base_backoff_s: float = DEFAULT_BACKOFF_S,
        max_backoff_s: float = MAX_BACKOFF_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        names = [spec.name for spec in feeds]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate feed names: {names}")
        self.feeds = list(feeds)
        self.reconciler = reconciler
        self.store = store
        self.base_backoff_s = base_backoff_s
        self.max_backoff_s = max_backoff_s
        self._sleep = sleep
        self._clock = clock

        self.status: Dict[str, FeedStatus] = {spec.name: FeedStatus(spec.name) for spec in self.feeds}
        self.last_diagnostics: Optional[ReconcileDiagnostics] = None
        self._latest: Dict[str, Dict[str, Tuple[Any, ...]]] = {spec.name: {} for spec in self.feeds}
        self._reconcile_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------
    async def _safe_fetch(self, spec: FeedSpec, source: FeedSource) -> FeedFetch:
        try:
            fetch = await source.fetch()
        except Exception as exc:
            print(f"[poller] {spec.name}/{source.key} fetch error: {exc}")
            return FeedFetch(failure=FeedFailure.TRANSPORT, detail=str(exc))
        if fetch is None:
            return FeedFetch(failure=FeedFailure.MALFORMED, detail="no response")
        return fetch

    async def _fetch_concurrent(self, spec: FeedSpec) -> List[Tuple[FeedSource, FeedFetch]]:
        fetches = await asyncio.gather(*(self._safe_fetch(spec, source) for source in spec.sources))
        return list(zip(spec.sources, fetches))

    async def _fetch_serial(self, spec: FeedSpec) -> List[Tuple[FeedSource, FeedFetch]]:
        status = self.status[spec.name]
        gap = spec.min_call_gap_s + status.backoff_s
        outcomes: List[Tuple[FeedSource, FeedFetch]] = []
        for index, source in enumerate(spec.sources):
            if index > 0 and gap > 0:
                await self._sleep(gap)
            fetch = await self._safe_fetch(spec, source)
            outcomes.append((source, fetch))
            if fetch.failure is FeedFailure.RATE_LIMITED:
                skipped = len(spec.sources) - index - 1
                print(f"[poller] {spec.name}: rate limited at {source.key}, skipping {skipped} remaining calls")
                break
        return outcomes

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------
    async def run_cycle(self, spec: FeedSpec) -> bool:
        """Fetch and normalize one feed; True when its reconcilable inputs changed."""
        status = self.status[spec.name]
        status.cycles += 1
        if spec.serial:
            outcomes = await self._fetch_serial(spec)
        else:
            outcomes = await self._fetch_concurrent(spec)

        latest = self._latest[spec.name]
        results: List[NormalizeResult] = []
        failures: List[str] = []
        rate_limited: Optional[FeedFetch] = None
        succeeded = 0
        changed = False

        for source, fetch in outcomes:
            if not fetch.ok:
                failures.append(f"{source.key}: {fetch.failure.value} {fetch.detail}".strip())
                if fetch.failure is FeedFailure.RATE_LIMITED:
                    rate_limited = fetch
                continue
            result = source.normalizer.normalize(fetch.payload)
            results.append(result)
            if result.failure is not None:
                failures.append(f"{source.key}: {result.failure.value} {result.detail}".strip())
                continue
            succeeded += 1
            records = tuple(result.records)
            if latest.get(source.key) != records:
                latest[source.key] = records
                changed = True

        merged = merge_results(results)
        status.dropped = merged.dropped
        status.records = sum(len(records) for records in latest.values())

        now = self._clock()
        status.last_cycle_ok = succeeded > 0
        if succeeded:
            status.last_success_ts = now
            status.consecutive_failures = 0
        if failures:
            status.last_failure = "; ".join(failures)
            status.last_failure_ts = now
            if not succeeded:
                status.consecutive_failures += 1
                self.store.record_failure(f"{spec.name}: {status.last_failure}")
            print(f"[poller] {spec.name}: {len(failures)} failed calls ({status.last_failure})")

        if rate_limited is not None:
            proposed = max(status.backoff_s * 2, self.base_backoff_s)
            if rate_limited.retry_after_s:
                proposed = max(proposed, rate_limited.retry_after_s)
            status.backoff_s = min(proposed, self.max_backoff_s)
            print(f"[poller] {spec.name}: backing off {status.backoff_s:.0f}s")
        elif not failures:
            status.backoff_s = 0.0

        if merged.dropped:
            print(f"[poller] {spec.name}: dropped {merged.dropped} unusable rows")
        return changed

    def inputs(self, kind: FeedKind) -> List[Any]:
        records: List[Any] = []
        for spec in self.feeds:
            if spec.kind is not kind:
                continue
            latest = self._latest[spec.name]
            for source in spec.sources:
                records.extend(latest.get(source.key, ()))
        return records

    async def reconcile_and_publish(self) -> Optional[Snapshot]:
        async with self._reconcile_lock:
            try:
                result = self.reconciler.reconcile(
                    self.inputs(FeedKind.TRACK),
                    self.inputs(FeedKind.CROWD),
                    self.inputs(FeedKind.SCHEDULE),
                )
            except Exception as exc:
                previous = self.store.current().generation
                print(f"[reconcile] failed, keeping generation {previous}: {exc}")
                self.store.record_failure(f"reconcile: {exc}")
                return None
            snapshot = self.store.publish(result.arrivals)
            self.last_diagnostics = result.diagnostics
            print(
                f"[reconcile] published generation {snapshot.generation} "
                f"with {len(snapshot.arrivals)} arrivals {result.diagnostics.to_dict()}"
            )
            return snapshot

    def _refresh_due(self, spec: FeedSpec) -> bool:
        age = self.store.age_s()
        return age is None or age >= spec.interval_s

    async def poll_once(self, spec: FeedSpec) -> Optional[Snapshot]:
        """
        One feed cycle, then publish when the inputs changed or when a
        successful cycle finds the snapshot at least one cadence old.
        """
        changed = await self.run_cycle(spec)
        if changed or (self.status[spec.name].last_cycle_ok and self._refresh_due(spec)):
            return await self.reconcile_and_publish()
        return None

    async def refresh_all(self) -> Optional[Snapshot]:
        """Run one cycle of every feed, then reconcile once."""
        await asyncio.gather(*(self.run_cycle(spec) for spec in self.feeds))
        return await self.reconcile_and_publish()

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------
    async def _feed_loop(self, spec: FeedSpec) -> None:
        if spec.startup_delay_s > 0:
            await self._sleep(spec.startup_delay_s)
        while True:
            try:
                await self.poll_once(spec)
            except Exception as exc:
                print(f"[poller] {spec.name} error: {exc}")
            await self._sleep(spec.interval_s + self.status[spec.name].backoff_s)

    def start(self) -> List[asyncio.Task]:
        if self._tasks:
            return self._tasks
        for spec in self.feeds:
            print(f"[poller] starting {spec.name} every {spec.interval_s:.0f}s ({len(spec.sources)} sources)")
            self._tasks.append(asyncio.create_task(self._feed_loop(spec)))
        return self._tasks

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def status_dict(self) -> Dict[str, Any]:
        return {
            "feeds": [status.to_dict() for status in self.status.values()],
            "diagnostics": self.last_diagnostics.to_dict() if self.last_diagnostics else None,
        }
