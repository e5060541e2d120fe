"""
Arrival reconciliation.

Merges the normalized live-board, crowding and timetable records into the
canonical per-station arrival list:

- one live arrival per track record, with crowding attached when the same
  train (or, on the Circular line, the same station + direction) has it;
- crowd records nothing matched surface as crowd-only arrivals with an
  unknown ETA;
- timetable entries inside the lookahead window become scheduled arrivals,
  unless a live arrival at the same station and destination is already
  within the dedup tolerance.

Service Day Logic:
- Timetables are evaluated in Asia/Taipei local time
- A service day runs from 02:00 to 02:00, so a 00:30 departure belongs to
  the previous calendar day's timetable
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from feed_normalizers import (
    FAR_FUTURE_S,
    LineFamily,
    RawCrowdRecord,
    RawScheduleRecord,
    RawTrackRecord,
)
from station_identity import (
    CanonicalStation,
    Direction,
    DirectionalLine,
    StationRegistry,
    direction_key,
    normalize_destination,
    normalize_train_id,
    train_id_candidates,
)


TAIPEI_TZ = ZoneInfo("Asia/Taipei")
SERVICE_DAY_CUTOFF = time(2, 0, 0)
SECONDS_PER_DAY = 24 * 3600

DEFAULT_LOOKAHEAD_S = 3600
DEFAULT_DEDUP_TOLERANCE_S = 180
ETA_BUCKET_S = 60


class SourceKind(str, Enum):
    LIVE = "live"
    SCHEDULED = "scheduled"


class CrowdLevel(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    VERY_HIGH = 4

    @classmethod
    def from_ordinal(cls, ordinal: int) -> "CrowdLevel":
        if ordinal >= cls.VERY_HIGH:
            return cls.VERY_HIGH
        if ordinal <= cls.LOW:
            return cls.LOW
        return cls(ordinal)


def aggregate_crowd_level(car_levels: Sequence[int]) -> Optional[CrowdLevel]:
    """A train is as crowded as its worst car."""
    if not car_levels:
        return None
    return CrowdLevel.from_ordinal(max(car_levels))


@dataclass(frozen=True)
class CanonicalArrival:
    """One train (live or timetabled) arriving at one station."""
    station_id: str
    station_name: str
    line_id: str
    destination_name: str
    train_id: Optional[str]
    eta_seconds: Optional[int]  # None: timing unknown (crowding-only or unparseable)
    crowd_level: Optional[CrowdLevel]
    car_levels: Tuple[int, ...]
    source_kind: SourceKind
    observed_at: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "stationId": self.station_id,
            "stationName": self.station_name,
            "lineNo": self.line_id,
            "destination": self.destination_name,
            "trainId": self.train_id,
            "etaSeconds": self.eta_seconds,
            "time": None if self.eta_seconds is None else self.eta_seconds // 60,
            "crowdLevel": None if self.crowd_level is None else self.crowd_level.name,
            "carLevels": list(self.car_levels),
            "type": "schedule" if self.source_kind is SourceKind.SCHEDULED else "live",
            "observedAt": self.observed_at,
        }


def arrival_sort_key(arrival: CanonicalArrival) -> Tuple[Any, ...]:
    eta = arrival.eta_seconds
    return (
        arrival.station_id,
        eta is None,
        eta if eta is not None else 0,
        0 if arrival.source_kind is SourceKind.LIVE else 1,
        arrival.line_id,
        arrival.destination_name,
        arrival.train_id or "",
    )


@dataclass
class ReconcileDiagnostics:
    """Per-cycle counters; dropped records are reported, never raised."""
    dropped_tracks: int = 0
    dropped_crowds: int = 0
    dropped_schedules: int = 0
    unresolved_directions: int = 0
    crowd_matches: int = 0
    crowd_only: int = 0
    suppressed_scheduled: int = 0
    duplicate_arrivals: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


@dataclass
class ReconcileResult:
    arrivals: Tuple[CanonicalArrival, ...]
    reconciled_at: datetime
    diagnostics: ReconcileDiagnostics = field(default_factory=ReconcileDiagnostics)


@dataclass
class _CrowdEntry:
    record: RawCrowdRecord
    station: CanonicalStation
    level: Optional[CrowdLevel]
    direction: Optional[Direction] = None
    matched: bool = False


def get_service_date(now: datetime, tz: ZoneInfo = TAIPEI_TZ) -> date:
    """Service date for ``now``; before the 02:00 cutoff it is still yesterday."""
    local = now.astimezone(tz)
    if local.time() < SERVICE_DAY_CUTOFF:
        return local.date() - timedelta(days=1)
    return local.date()


class ArrivalReconciler:
    """
    Build the complete arrival list from the latest normalized feed data.

    ``reconcile`` is a pure function of its inputs and ``now``: feeding it
    the same records twice yields identical tuples.
    """

    def __init__(
        self,
        registry: StationRegistry,
        *,
        lookahead_s: int = DEFAULT_LOOKAHEAD_S,
        dedup_tolerance_s: int = DEFAULT_DEDUP_TOLERANCE_S,
        eta_bucket_s: int = ETA_BUCKET_S,
        service_tz: ZoneInfo = TAIPEI_TZ,
        emit_crowd_only: bool = True,
    ):
        self.registry = registry
        self.lookahead_s = lookahead_s
        self.dedup_tolerance_s = dedup_tolerance_s
        self.eta_bucket_s = max(int(eta_bucket_s), 1)
        self.service_tz = service_tz
        self.emit_crowd_only = emit_crowd_only

    def reconcile(
        self,
        tracks: Sequence[RawTrackRecord],
        crowds: Sequence[RawCrowdRecord],
        schedules: Sequence[RawScheduleRecord],
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        if now is None:
            now = datetime.now(self.service_tz)
        else:
            now = now.astimezone(self.service_tz)

        diag = ReconcileDiagnostics()
        by_train, by_direction = self._build_crowd_indexes(crowds, diag)

        live = self._live_arrivals(tracks, by_train, by_direction, diag)
        if self.emit_crowd_only:
            live.extend(self._crowd_only_arrivals(by_train, by_direction, diag))
        scheduled = self._scheduled_arrivals(schedules, live, now, diag)

        arrivals = self._enforce_uniqueness(live + scheduled, diag)
        arrivals.sort(key=arrival_sort_key)
        return ReconcileResult(arrivals=tuple(arrivals), reconciled_at=now, diagnostics=diag)

    # ------------------------------------------------------------------
    # Crowd indexes
    # ------------------------------------------------------------------
    def _build_crowd_indexes(
        self,
        crowds: Sequence[RawCrowdRecord],
        diag: ReconcileDiagnostics,
    ) -> Tuple[Dict[str, List[_CrowdEntry]], Dict[str, _CrowdEntry]]:
        by_train: Dict[str, List[_CrowdEntry]] = {}
        by_direction: Dict[str, _CrowdEntry] = {}

        for record in crowds:
            if record.line_family is LineFamily.CIRCULAR:
                station, line = self._resolve_directional_station(record.station_id)
                if station is None or line is None:
                    diag.dropped_crowds += 1
                    continue
                direction = line.direction_for_indicator(record.direction_code)
                if direction is None:
                    diag.unresolved_directions += 1
                    continue
                key = direction_key(station.display_name, direction)
                if key not in by_direction:
                    by_direction[key] = _CrowdEntry(
                        record=record,
                        station=station,
                        level=aggregate_crowd_level(record.car_levels),
                        direction=direction,
                    )
                continue

            train_id = normalize_train_id(record.train_id)
            station = self.registry.resolve(record.station_id)
            if train_id is None or station is None:
                diag.dropped_crowds += 1
                continue
            # "32" and "032" are the same train; file both under the first spelling seen.
            key = next((c for c in train_id_candidates(train_id) if c in by_train), train_id)
            by_train.setdefault(key, []).append(
                _CrowdEntry(
                    record=record,
                    station=station,
                    level=aggregate_crowd_level(record.car_levels),
                )
            )
        return by_train, by_direction

    def _resolve_directional_station(
        self, raw_station: str
    ) -> Tuple[Optional[CanonicalStation], Optional[DirectionalLine]]:
        for line in self.registry.directional_lines:
            station = self.registry.resolve(raw_station, line_hint=line.line_id)
            if station is not None and station.line_id == line.line_id:
                return station, line
        return None, None

    # ------------------------------------------------------------------
    # Live arrivals
    # ------------------------------------------------------------------
    def _live_arrivals(
        self,
        tracks: Sequence[RawTrackRecord],
        by_train: Dict[str, List[_CrowdEntry]],
        by_direction: Dict[str, _CrowdEntry],
        diag: ReconcileDiagnostics,
    ) -> List[CanonicalArrival]:
        arrivals: List[CanonicalArrival] = []
        for track in tracks:
            station = self.registry.resolve(
                track.station_name,
                line_hint=track.line_hint,
                destination=track.destination_name,
            )
            if station is None:
                diag.dropped_tracks += 1
                continue

            line_id = track.line_hint or station.line_id
            train_id = normalize_train_id(track.train_id)
            directional = self.registry.directional_line(line_id)

            entry: Optional[_CrowdEntry] = None
            if directional is not None:
                direction = directional.direction_for_destination(track.destination_name)
                if direction is None:
                    diag.unresolved_directions += 1
                else:
                    entry = by_direction.get(direction_key(station.display_name, direction))
            elif train_id is not None:
                entry = self._match_train(train_id, station, by_train)

            if entry is not None:
                entry.matched = True
                diag.crowd_matches += 1

            eta = track.countdown_s if track.countdown_s < FAR_FUTURE_S else None
            arrivals.append(
                CanonicalArrival(
                    station_id=station.station_id,
                    station_name=station.display_name,
                    line_id=line_id,
                    destination_name=track.destination_name,
                    train_id=train_id,
                    eta_seconds=None if eta is None else max(int(eta), 0),
                    crowd_level=entry.level if entry else None,
                    car_levels=entry.record.car_levels if entry else (),
                    source_kind=SourceKind.LIVE,
                    observed_at=track.observed_at,
                )
            )
        return arrivals

    @staticmethod
    def _match_train(
        train_id: str,
        station: CanonicalStation,
        by_train: Dict[str, List[_CrowdEntry]],
    ) -> Optional[_CrowdEntry]:
        # Crowding belongs to the train, so any station's reading will do,
        # but a reading taken at this station wins.
        for candidate in train_id_candidates(train_id):
            entries = by_train.get(candidate)
            if not entries:
                continue
            for entry in entries:
                if entry.station.station_id == station.station_id:
                    return entry
            return entries[0]
        return None

    def _crowd_only_arrivals(
        self,
        by_train: Dict[str, List[_CrowdEntry]],
        by_direction: Dict[str, _CrowdEntry],
        diag: ReconcileDiagnostics,
    ) -> List[CanonicalArrival]:
        arrivals: List[CanonicalArrival] = []
        for train_id, entries in by_train.items():
            if any(entry.matched for entry in entries):
                continue
            emitted = set()
            for entry in entries:
                if entry.station.station_id in emitted:
                    continue
                emitted.add(entry.station.station_id)
                arrivals.append(self._crowd_only(entry, train_id=train_id, destination=""))
                diag.crowd_only += 1

        for entry in by_direction.values():
            if entry.matched or entry.direction is None:
                continue
            line = self.registry.directional_line(entry.station.line_id)
            destination = line.terminus_for(entry.direction) if line else ""
            arrivals.append(
                self._crowd_only(entry, train_id=normalize_train_id(entry.record.train_id), destination=destination)
            )
            diag.crowd_only += 1
        return arrivals

    @staticmethod
    def _crowd_only(entry: _CrowdEntry, *, train_id: Optional[str], destination: str) -> CanonicalArrival:
        return CanonicalArrival(
            station_id=entry.station.station_id,
            station_name=entry.station.display_name,
            line_id=entry.station.line_id,
            destination_name=destination,
            train_id=train_id,
            eta_seconds=None,
            crowd_level=entry.level,
            car_levels=entry.record.car_levels,
            source_kind=SourceKind.LIVE,
            observed_at=entry.record.observed_at,
        )

    # ------------------------------------------------------------------
    # Scheduled arrivals
    # ------------------------------------------------------------------
    def _scheduled_arrivals(
        self,
        schedules: Sequence[RawScheduleRecord],
        live: Sequence[CanonicalArrival],
        now: datetime,
        diag: ReconcileDiagnostics,
    ) -> List[CanonicalArrival]:
        live_etas: Dict[Tuple[str, str], List[int]] = {}
        for arrival in live:
            if arrival.eta_seconds is None:
                continue
            key = (arrival.station_id, normalize_destination(arrival.destination_name))
            live_etas.setdefault(key, []).append(arrival.eta_seconds)

        now_s = now.hour * 3600 + now.minute * 60 + now.second
        observed_at = now.isoformat()
        arrivals: List[CanonicalArrival] = []

        for record in schedules:
            station = self.registry.resolve(record.station_id) if record.station_id else None
            if station is None:
                station = self.registry.resolve(
                    record.station_name,
                    line_hint=record.line_id or None,
                    destination=record.destination_name,
                )
            if station is None:
                diag.dropped_schedules += 1
                continue

            dedup_key = (station.station_id, normalize_destination(record.destination_name))
            for clock_s in record.clock_times:
                # Times already passed today are tomorrow's trains, never negative
                eta = (clock_s - now_s) % SECONDS_PER_DAY
                if eta > self.lookahead_s:
                    continue
                if record.service_days is not None:
                    service_date = get_service_date(now + timedelta(seconds=eta), self.service_tz)
                    if service_date.weekday() not in record.service_days:
                        continue
                if any(abs(live_eta - eta) < self.dedup_tolerance_s for live_eta in live_etas.get(dedup_key, ())):
                    diag.suppressed_scheduled += 1
                    continue
                arrivals.append(
                    CanonicalArrival(
                        station_id=station.station_id,
                        station_name=station.display_name,
                        line_id=record.line_id or station.line_id,
                        destination_name=record.destination_name,
                        train_id=None,
                        eta_seconds=eta,
                        crowd_level=None,
                        car_levels=(),
                        source_kind=SourceKind.SCHEDULED,
                        observed_at=observed_at,
                    )
                )
        return arrivals

    # ------------------------------------------------------------------
    # Uniqueness
    # ------------------------------------------------------------------
    def _identity(self, arrival: CanonicalArrival) -> Tuple[Any, ...]:
        if arrival.train_id is not None:
            return ("train", arrival.station_id, arrival.train_id)
        bucket = None if arrival.eta_seconds is None else arrival.eta_seconds // self.eta_bucket_s
        return ("untracked", arrival.station_id, normalize_destination(arrival.destination_name), bucket)

    def _enforce_uniqueness(
        self,
        arrivals: Sequence[CanonicalArrival],
        diag: ReconcileDiagnostics,
    ) -> List[CanonicalArrival]:
        kept: Dict[Tuple[Any, ...], CanonicalArrival] = {}
        order: List[Tuple[Any, ...]] = []
        for arrival in arrivals:
            key = self._identity(arrival)
            current = kept.get(key)
            if current is None:
                kept[key] = arrival
                order.append(key)
                continue
            diag.duplicate_arrivals += 1
            if _preference(arrival) < _preference(current):
                kept[key] = arrival
        return [kept[key] for key in order]


def _preference(arrival: CanonicalArrival) -> Tuple[int, int, int]:
    eta = arrival.eta_seconds
    return (
        0 if arrival.source_kind is SourceKind.LIVE else 1,
        1 if eta is None else 0,
        eta if eta is not None else 0,
    )


__all__ = [
    "ArrivalReconciler",
    "CanonicalArrival",
    "CrowdLevel",
    "ReconcileDiagnostics",
    "ReconcileResult",
    "SourceKind",
    "TAIPEI_TZ",
    "aggregate_crowd_level",
    "arrival_sort_key",
    "get_service_date",
]
