"""Read-only queries over the published arrival snapshot."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

from arrival_reconciler import CanonicalArrival
from snapshot_store import SnapshotStore
from station_identity import StationRegistry, normalize_station_name


class StationNotFound(LookupError):
    """Raised when a station code or name is not in the station table."""

    def __init__(self, station: str):
        super().__init__(f"unknown station {station!r}")
        self.station = station


@dataclass(frozen=True)
class AllArrivals:
    arrivals: Tuple[CanonicalArrival, ...]
    published_at: Optional[datetime]
    stale: bool


@dataclass(frozen=True)
class StationArrivals:
    arrivals: Tuple[CanonicalArrival, ...]
    station_name: str
    published_at: Optional[datetime]
    stale: bool
    station_ids: Tuple[str, ...] = ()


class ArrivalQuery:
    """
    Answers every query from ``store.current()``.

    Queries never fetch or reconcile; each call reads one snapshot reference
    so a concurrent publish can't mix two generations in one answer.
    """

    def __init__(self, store: SnapshotStore, registry: StationRegistry):
        self.store = store
        self.registry = registry

    def get_all(self) -> AllArrivals:
        snapshot = self.store.current()
        return AllArrivals(
            arrivals=snapshot.arrivals,
            published_at=snapshot.published_at,
            stale=self.store.is_stale(snapshot),
        )

    def get_by_station(self, station_id: str) -> StationArrivals:
        station = self.registry.by_code(station_id)
        if station is None:
            raise StationNotFound(station_id)
        snapshot = self.store.current()
        return StationArrivals(
            arrivals=tuple(a for a in snapshot.arrivals if a.station_id == station.station_id),
            station_name=station.display_name,
            published_at=snapshot.published_at,
            stale=self.store.is_stale(snapshot),
            station_ids=(station.station_id,),
        )

    def get_by_station_name(self, name: str) -> StationArrivals:
        """Arrivals for every platform sharing the name, e.g. 台北車站 on BL and R."""
        stations = self.registry.by_name(name)
        if not stations:
            raise StationNotFound(name)
        codes: List[str] = [s.station_id for s in stations]
        wanted = set(codes)
        snapshot = self.store.current()
        return StationArrivals(
            arrivals=tuple(a for a in snapshot.arrivals if a.station_id in wanted),
            station_name=stations[0].display_name or normalize_station_name(name),
            published_at=snapshot.published_at,
            stale=self.store.is_stale(snapshot),
            station_ids=tuple(codes),
        )
