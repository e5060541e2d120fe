"""
Tests for arrival reconciliation.

Tests cover:
- Live track + crowding join by train number (with padding variants)
- Circular line crowding joined by station + direction only
- Crowd-only arrivals for unmatched crowding
- Scheduled arrivals: lookahead window, midnight wrap, service days
- Live/scheduled dedup tolerance
- Uniqueness, ordering and idempotence of the output
"""

import sys
from datetime import date, datetime
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from arrival_reconciler import (  # noqa: E402
    TAIPEI_TZ,
    ArrivalReconciler,
    CrowdLevel,
    SourceKind,
    aggregate_crowd_level,
    get_service_date,
)
from feed_normalizers import (  # noqa: E402
    FAR_FUTURE_S,
    LineFamily,
    RawCrowdRecord,
    RawScheduleRecord,
    RawTrackRecord,
)
from station_identity import load_station_registry  # noqa: E402


REGISTRY = load_station_registry()
# Wednesday
MORNING = datetime(2024, 5, 1, 8, 0, 0, tzinfo=TAIPEI_TZ)


def _reconciler(**kwargs) -> ArrivalReconciler:
    return ArrivalReconciler(REGISTRY, **kwargs)


def _at(hour: int, minute: int, second: int = 0) -> int:
    return hour * 3600 + minute * 60 + second


def _schedule(station_id, destination, *clock_times, service_days=None, line_id="BL"):
    return RawScheduleRecord(
        station_id=station_id,
        station_name="",
        destination_name=destination,
        line_id=line_id,
        clock_times=tuple(clock_times),
        service_days=service_days,
    )


class TestCrowdAggregation:
    def test_worst_car_wins(self):
        assert aggregate_crowd_level([1, 3, 2]) is CrowdLevel.HIGH

    def test_levels_above_four_are_very_high(self):
        assert aggregate_crowd_level([1, 6]) is CrowdLevel.VERY_HIGH

    def test_no_cars_no_level(self):
        assert aggregate_crowd_level([]) is None


class TestGetServiceDate:
    def test_before_cutoff_is_previous_day(self):
        now = datetime(2024, 5, 1, 1, 30, tzinfo=TAIPEI_TZ)
        assert get_service_date(now) == date(2024, 4, 30)

    def test_after_cutoff_is_same_day(self):
        now = datetime(2024, 5, 1, 2, 0, tzinfo=TAIPEI_TZ)
        assert get_service_date(now) == date(2024, 5, 1)


def test_taipei_main_end_to_end():
    tracks = [RawTrackRecord("臺北車站", "南港展覽館站", countdown_s=88, train_id="132")]
    crowds = [RawCrowdRecord("BL12", (2, 2, 3, 1), LineFamily.STANDARD, train_id="132")]

    result = _reconciler().reconcile(tracks, crowds, [], now=MORNING)

    assert len(result.arrivals) == 1
    arrival = result.arrivals[0]
    assert arrival.station_id == "BL12"
    assert arrival.station_name == "台北車站"
    assert arrival.train_id == "132"
    assert arrival.eta_seconds == 88
    assert arrival.crowd_level is CrowdLevel.HIGH
    assert arrival.car_levels == (2, 2, 3, 1)
    assert arrival.source_kind is SourceKind.LIVE
    assert result.diagnostics.crowd_matches == 1

    row = arrival.to_dict()
    assert row["stationId"] == "BL12"
    assert row["time"] == 1
    assert row["crowdLevel"] == "HIGH"
    assert row["type"] == "live"


def test_crowding_matches_across_zero_padding():
    tracks = [RawTrackRecord("台北車站", "象山", countdown_s=30, train_id="32", line_hint="R")]
    crowds = [RawCrowdRecord("R10", (1, 2), LineFamily.STANDARD, train_id="032")]

    arrivals = _reconciler().reconcile(tracks, crowds, [], now=MORNING).arrivals

    assert len(arrivals) == 1
    assert arrivals[0].station_id == "R10"
    assert arrivals[0].crowd_level is CrowdLevel.MEDIUM


def test_crowding_prefers_reading_from_same_station():
    tracks = [RawTrackRecord("西門", "南港展覽館", countdown_s=60, train_id="200", line_hint="BL")]
    crowds = [
        RawCrowdRecord("BL10", (1, 1), LineFamily.STANDARD, train_id="200"),
        RawCrowdRecord("BL11", (3, 3), LineFamily.STANDARD, train_id="200"),
    ]

    arrivals = _reconciler().reconcile(tracks, crowds, [], now=MORNING).arrivals

    assert [a.crowd_level for a in arrivals] == [CrowdLevel.HIGH]


class TestPaddedTrainIds:
    crowds = [
        RawCrowdRecord("R10", (1, 2), LineFamily.STANDARD, train_id="32"),
        RawCrowdRecord("R10", (1, 2), LineFamily.STANDARD, train_id="032"),
    ]

    def test_both_spellings_attach_to_one_live_arrival(self):
        tracks = [RawTrackRecord("台北車站", "象山", countdown_s=30, train_id="32", line_hint="R")]

        result = _reconciler().reconcile(tracks, self.crowds, [], now=MORNING)

        assert len(result.arrivals) == 1
        assert result.arrivals[0].crowd_level is CrowdLevel.MEDIUM
        assert result.diagnostics.crowd_only == 0

    def test_unmatched_spellings_give_one_crowd_only_arrival(self):
        result = _reconciler().reconcile([], self.crowds, [], now=MORNING)

        assert [(a.station_id, a.train_id) for a in result.arrivals] == [("R10", "32")]
        assert result.diagnostics.crowd_only == 1
        assert result.diagnostics.duplicate_arrivals == 0


class TestCircularLine:
    def test_crowding_joined_by_station_and_direction(self):
        tracks = [RawTrackRecord("景安", "往大坪林", countdown_s=120, train_id="050", line_hint="Y")]
        crowds = [
            RawCrowdRecord("景安", (2, 2, 4, 1), LineFamily.CIRCULAR, direction_code="上行"),
            # A train-keyed reading for the same number must not leak onto the Circular line
            RawCrowdRecord("BL12", (1, 1), LineFamily.STANDARD, train_id="050"),
        ]

        result = _reconciler().reconcile(tracks, crowds, [], now=MORNING)
        circular = [a for a in result.arrivals if a.station_id == "Y11"]

        assert len(circular) == 1
        assert circular[0].crowd_level is CrowdLevel.VERY_HIGH
        assert circular[0].eta_seconds == 120

    def test_opposite_direction_is_not_attached(self):
        tracks = [RawTrackRecord("景安", "大坪林", countdown_s=120, line_hint="Y")]
        crowds = [RawCrowdRecord("景安", (3,), LineFamily.CIRCULAR, direction_code="下行")]

        arrivals = _reconciler().reconcile(tracks, crowds, [], now=MORNING).arrivals

        live = [a for a in arrivals if a.eta_seconds is not None]
        crowd_only = [a for a in arrivals if a.eta_seconds is None]
        assert live[0].crowd_level is None
        assert len(crowd_only) == 1
        assert crowd_only[0].station_id == "Y11"
        assert crowd_only[0].destination_name == "新北產業園區"
        assert crowd_only[0].crowd_level is CrowdLevel.HIGH

    def test_unresolvable_direction_gets_no_crowding(self):
        tracks = [RawTrackRecord("景安", "板橋", countdown_s=60, line_hint="Y")]
        crowds = [RawCrowdRecord("景安", (2,), LineFamily.CIRCULAR, direction_code="上行")]

        result = _reconciler(emit_crowd_only=False).reconcile(tracks, crowds, [], now=MORNING)

        assert len(result.arrivals) == 1
        assert result.arrivals[0].crowd_level is None
        assert result.diagnostics.unresolved_directions == 1


def test_unmatched_crowding_becomes_crowd_only_arrival():
    crowds = [RawCrowdRecord("R10", (1, 4), LineFamily.STANDARD, train_id="777")]

    result = _reconciler().reconcile([], crowds, [], now=MORNING)

    assert len(result.arrivals) == 1
    arrival = result.arrivals[0]
    assert arrival.station_id == "R10"
    assert arrival.train_id == "777"
    assert arrival.eta_seconds is None
    assert arrival.crowd_level is CrowdLevel.VERY_HIGH
    assert result.diagnostics.crowd_only == 1

    assert _reconciler(emit_crowd_only=False).reconcile([], crowds, [], now=MORNING).arrivals == ()


def test_unknown_stations_are_dropped_and_counted():
    tracks = [RawTrackRecord("不存在", "南港展覽館", countdown_s=60, train_id="1")]
    crowds = [RawCrowdRecord("ZZ99", (1,), LineFamily.STANDARD, train_id="2")]
    schedules = [_schedule("ZZ99", "南港展覽館", _at(8, 5))]

    result = _reconciler().reconcile(tracks, crowds, schedules, now=MORNING)

    assert result.arrivals == ()
    assert result.diagnostics.dropped_tracks == 1
    assert result.diagnostics.dropped_crowds == 1
    assert result.diagnostics.dropped_schedules == 1


class TestScheduled:
    def test_dedup_tolerance(self):
        tracks = [RawTrackRecord("台北車站", "南港展覽館站", countdown_s=300, train_id="101", line_hint="BL")]
        schedules = [_schedule("BL12", "南港展覽館", _at(8, 6), _at(8, 10))]

        result = _reconciler().reconcile(tracks, [], schedules, now=MORNING)

        etas = [(a.eta_seconds, a.source_kind) for a in result.arrivals]
        assert etas == [(300, SourceKind.LIVE), (600, SourceKind.SCHEDULED)]
        assert result.diagnostics.suppressed_scheduled == 1

    def test_other_destination_is_not_suppressed(self):
        tracks = [RawTrackRecord("台北車站", "南港展覽館", countdown_s=300, train_id="101", line_hint="BL")]
        schedules = [_schedule("BL12", "頂埔", _at(8, 6))]

        arrivals = _reconciler().reconcile(tracks, [], schedules, now=MORNING).arrivals

        assert len(arrivals) == 2

    def test_outside_lookahead_is_excluded(self):
        schedules = [_schedule("BL12", "頂埔", _at(8, 30), _at(9, 30))]

        arrivals = _reconciler(lookahead_s=3600).reconcile([], [], schedules, now=MORNING).arrivals

        assert [a.eta_seconds for a in arrivals] == [1800]

    def test_midnight_wrap_never_negative(self):
        now = datetime(2024, 5, 1, 23, 50, tzinfo=TAIPEI_TZ)
        schedules = [_schedule("BL12", "頂埔", _at(23, 40), _at(0, 10))]

        arrivals = _reconciler().reconcile([], [], schedules, now=now).arrivals

        assert [a.eta_seconds for a in arrivals] == [1200]

    def test_service_days_follow_service_date(self):
        # 00:30 on a Wednesday still belongs to Tuesday's service
        now = datetime(2024, 5, 1, 0, 30, tzinfo=TAIPEI_TZ)
        tuesday = _schedule("BL12", "頂埔", _at(0, 40), service_days=frozenset({1}))
        wednesday = _schedule("BL12", "南港展覽館", _at(0, 40), service_days=frozenset({2}))

        arrivals = _reconciler().reconcile([], [], [tuesday, wednesday], now=now).arrivals

        assert [a.destination_name for a in arrivals] == ["頂埔"]
        assert arrivals[0].eta_seconds == 600


def test_one_arrival_per_train_per_station():
    tracks = [
        RawTrackRecord("台北車站", "南港展覽館", countdown_s=160, train_id="132", line_hint="BL"),
        RawTrackRecord("台北車站", "南港展覽館", countdown_s=100, train_id="132", line_hint="BL"),
    ]

    result = _reconciler().reconcile(tracks, [], [], now=MORNING)

    assert [a.eta_seconds for a in result.arrivals] == [100]
    assert result.diagnostics.duplicate_arrivals == 1


def test_unknown_eta_sorts_last():
    tracks = [
        RawTrackRecord("台北車站", "頂埔", countdown_s=FAR_FUTURE_S, train_id="1", line_hint="BL"),
        RawTrackRecord("台北車站", "頂埔", countdown_s=50, train_id="2", line_hint="BL"),
    ]

    arrivals = _reconciler().reconcile(tracks, [], [], now=MORNING).arrivals

    assert [a.train_id for a in arrivals] == ["2", "1"]
    assert arrivals[1].eta_seconds is None


def test_reconcile_is_idempotent():
    tracks = [
        RawTrackRecord("臺北車站", "南港展覽館站", countdown_s=88, train_id="132"),
        RawTrackRecord("景安", "往大坪林", countdown_s=120, line_hint="Y"),
    ]
    crowds = [
        RawCrowdRecord("BL12", (2, 2, 3, 1), LineFamily.STANDARD, train_id="132"),
        RawCrowdRecord("景安", (2,), LineFamily.CIRCULAR, direction_code="上行"),
    ]
    schedules = [_schedule("BL12", "頂埔", _at(8, 20), _at(8, 40))]
    reconciler = _reconciler()

    first = reconciler.reconcile(tracks, crowds, schedules, now=MORNING)
    second = reconciler.reconcile(tracks, crowds, schedules, now=MORNING)

    assert first.arrivals == second.arrivals
    assert len(first.arrivals) == 4
