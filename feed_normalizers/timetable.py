"""Station timetable normalizer (TDX StationTimeTable)."""

from __future__ import annotations

import re
from typing import Any, Dict, FrozenSet, List, Optional

from feed_normalizers import FeedNormalizer, RawScheduleRecord, probe, text_value


STATION_ID_FIELDS = ("StationID", "StationId", "StationCode")
STATION_NAME_FIELDS = ("StationName", "Station")
DESTINATION_FIELDS = (
    "DestinationStationName",
    "DestinationStaionName",  # misspelled in some TDX payloads
    "DestinationName",
    "TripHeadSign",
)
LINE_FIELDS = ("LineID", "LineId", "LineNO", "LineNo")
TIMES_FIELDS = ("Timetables", "TimeTables", "Schedules", "Times")
TIME_ENTRY_FIELDS = ("ArrivalTime", "DepartureTime", "Time")
SERVICE_DAY_FIELDS = ("ServiceDay", "ServiceDays")

WEEKDAY_NAMES = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}

_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


def parse_clock_time(value: Any) -> Optional[int]:
    """Seconds since local midnight for "HH:MM[:SS]"; "24:15" wraps to 00:15."""
    text = text_value(value)
    if not text:
        return None
    match = _CLOCK_RE.match(text)
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    seconds = int(match.group(3) or 0)
    if minutes >= 60 or seconds >= 60 or hours >= 48:
        return None
    return (hours * 3600 + minutes * 60 + seconds) % (24 * 3600)


def parse_service_days(value: Any) -> Optional[FrozenSet[int]]:
    if not isinstance(value, dict):
        return None
    days = set()
    for key, flag in value.items():
        weekday = WEEKDAY_NAMES.get(str(key).strip().lower())
        if weekday is None:
            continue
        if flag in (True, 1, "1", "true", "True"):
            days.add(weekday)
    return frozenset(days) if days else None


class TimetableNormalizer(FeedNormalizer):
    name = "timetable"

    def normalize_row(self, row: Dict[str, Any]) -> Optional[RawScheduleRecord]:
        station_id = text_value(probe(row, STATION_ID_FIELDS)) or ""
        station_name = text_value(probe(row, STATION_NAME_FIELDS)) or ""
        if not station_id and not station_name:
            return None

        entries = probe(row, TIMES_FIELDS)
        if not isinstance(entries, list):
            return None
        clock_times: List[int] = []
        for entry in entries:
            raw = probe(entry, TIME_ENTRY_FIELDS) if isinstance(entry, dict) else entry
            seconds = parse_clock_time(raw)
            if seconds is not None:
                clock_times.append(seconds)
        if not clock_times:
            return None

        line_id = text_value(probe(row, LINE_FIELDS)) or ""
        return RawScheduleRecord(
            station_id=station_id.upper(),
            station_name=station_name,
            destination_name=text_value(probe(row, DESTINATION_FIELDS)) or "",
            line_id=line_id.upper(),
            clock_times=tuple(sorted(clock_times)),
            service_days=parse_service_days(probe(row, SERVICE_DAY_FIELDS)),
        )
