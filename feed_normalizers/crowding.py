"""Car-weight (crowding) normalizers for the standard and Circular line feeds."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from feed_normalizers import (
    FeedNormalizer,
    LineFamily,
    RawCrowdRecord,
    coerce_car_level,
    probe,
    text_value,
)
from station_identity import normalize_train_id


TRAIN_ID_FIELDS = ("TrainNumber", "TrainNo", "TrainID", "TrainId")
STATION_FIELDS = ("StationID", "StationId", "StationCode", "StationName", "Station")
DIRECTION_FIELDS = ("CID", "Direction", "Dir", "DirectionCode")
CAR_LIST_FIELDS = ("CarLevels", "Cars", "CarWeights")
OBSERVED_AT_FIELDS = ("UpdateTime", "NowDateTime", "SrcUpdateTime")

# Per-car keys seen across variants, in priority order; {n} is the car number
CAR_KEY_PATTERNS = ("Car{n}", "Cart{n}L", "Car{n}Level", "Cart{n}")
MAX_CARS = 8


def extract_car_levels(row: Dict[str, Any]) -> Tuple[int, ...]:
    listed = probe(row, CAR_LIST_FIELDS)
    if isinstance(listed, (list, tuple)):
        return tuple(coerce_car_level(v) for v in listed)
    if isinstance(listed, str) and listed.strip():
        parts = [p for p in listed.replace(";", ",").split(",") if p.strip()]
        return tuple(coerce_car_level(p) for p in parts)

    levels: List[int] = []
    for n in range(1, MAX_CARS + 1):
        value = probe(row, [pattern.format(n=n) for pattern in CAR_KEY_PATTERNS])
        if value is None:
            break
        levels.append(coerce_car_level(value))
    return tuple(levels)


class CrowdNormalizer(FeedNormalizer):
    """Normalize car-weight rows into RawCrowdRecord tagged with their line family."""

    def __init__(self, line_family: LineFamily = LineFamily.STANDARD):
        self.line_family = line_family
        self.name = f"crowding[{line_family.value}]"

    def normalize_row(self, row: Dict[str, Any]) -> Optional[RawCrowdRecord]:
        station = text_value(probe(row, STATION_FIELDS))
        if not station:
            return None
        car_levels = extract_car_levels(row)
        if not car_levels:
            return None

        train_id = normalize_train_id(probe(row, TRAIN_ID_FIELDS))
        direction_code = text_value(probe(row, DIRECTION_FIELDS))
        if self.line_family is LineFamily.STANDARD:
            # Standard lines are matched by train; without one the row is unusable
            if train_id is None:
                return None
        elif direction_code is None:
            return None

        return RawCrowdRecord(
            station_id=station,
            car_levels=car_levels,
            line_family=self.line_family,
            train_id=train_id,
            direction_code=direction_code,
            observed_at=text_value(probe(row, OBSERVED_AT_FIELDS)),
        )
