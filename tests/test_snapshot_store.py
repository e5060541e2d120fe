import sys
import threading
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from arrival_reconciler import CanonicalArrival, SourceKind  # noqa: E402
from snapshot_store import EMPTY_SNAPSHOT, SnapshotStore  # noqa: E402


class FakeClock:
    def __init__(self, now: float = 1_714_521_600.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _arrival(station_id: str, eta: int, train_id: str = "1") -> CanonicalArrival:
    return CanonicalArrival(
        station_id=station_id,
        station_name=station_id,
        line_id="BL",
        destination_name="頂埔",
        train_id=train_id,
        eta_seconds=eta,
        crowd_level=None,
        car_levels=(),
        source_kind=SourceKind.LIVE,
        observed_at=None,
    )


def test_empty_store_is_stale():
    store = SnapshotStore(stale_after_s=60)
    assert store.current() is EMPTY_SNAPSHOT
    assert store.is_stale()
    assert store.age_s() is None


def test_publish_swaps_whole_snapshot():
    clock = FakeClock()
    store = SnapshotStore(stale_after_s=60, clock=clock)

    first = store.publish([_arrival("BL12", 60)])
    second = store.publish([_arrival("BL12", 30), _arrival("R10", 90, "2")])

    assert first.generation == 1
    assert second.generation == 2
    assert store.current() is second
    assert len(first.arrivals) == 1
    assert isinstance(second.arrivals, tuple)


def test_staleness_follows_age():
    clock = FakeClock()
    store = SnapshotStore(stale_after_s=60, clock=clock)
    store.publish([_arrival("BL12", 60)])

    clock.now += 59
    assert not store.is_stale()
    clock.now += 2
    assert store.is_stale()
    assert store.age_s() == 61


def test_failure_keeps_previous_snapshot():
    clock = FakeClock()
    store = SnapshotStore(stale_after_s=60, clock=clock)
    published = store.publish([_arrival("BL12", 60)])

    store.record_failure("reconcile: boom")

    assert store.current() is published
    status = store.status()
    assert status["last_failure"] == "reconcile: boom"
    assert status["generation"] == 1

    store.publish([])
    assert store.status()["last_failure"] is None


def test_published_at_iso_is_utc():
    store = SnapshotStore(clock=FakeClock(1_714_521_600.0))
    snapshot = store.publish([])
    assert snapshot.published_at_iso == "2024-05-01T00:00:00Z"


def test_readers_never_see_partial_snapshots():
    store = SnapshotStore(stale_after_s=60)
    stop = threading.Event()
    errors = []

    def writer():
        for generation in range(1, 300):
            # All arrivals in one snapshot share its generation as train id
            store.publish(_arrival(f"S{n}", generation, str(generation)) for n in range(generation % 7 + 1))
        stop.set()

    def reader():
        while not stop.is_set():
            snapshot = store.current()
            ids = {a.train_id for a in snapshot.arrivals}
            if len(ids) > 1:
                errors.append(ids)

    readers = [threading.Thread(target=reader) for _ in range(3)]
    for thread in readers:
        thread.start()
    writer()
    for thread in readers:
        thread.join()

    assert errors == []
    assert store.current().generation == 299
