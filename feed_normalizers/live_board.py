"""Live train-position / countdown normalizer (TRTC TrackInfo and TDX LiveBoard)."""

from __future__ import annotations

from typing import Any, Dict, Optional

from feed_normalizers import FeedNormalizer, RawTrackRecord, parse_countdown, probe, text_value
from station_identity import normalize_train_id


TRAIN_ID_FIELDS = ("TrainNumber", "TrainNo", "TrainID", "TrainId")
STATION_NAME_FIELDS = ("StationName", "Station", "StationNameZh")
STATION_CODE_FIELDS = ("StationID", "StationId", "StationCode")
DESTINATION_FIELDS = (
    "DestinationName",
    "DestinationStationName",
    "TripHeadSign",
    "Destination",
)
COUNTDOWN_FIELDS = ("CountDown", "Countdown", "EstimateTime", "EstimatedTime", "ETA")
OBSERVED_AT_FIELDS = ("NowDateTime", "SrcUpdateTime", "UpdateTime", "UpdatedAt")
LINE_FIELDS = ("LineNO", "LineNo", "LineID", "LineId", "Line")


class LiveBoardNormalizer(FeedNormalizer):
    """
    Normalize live-board rows into RawTrackRecord.

    ``countdown_unit`` is the unit of bare numeric countdowns for this
    variant: TrackInfo sends "MM:SS" text, TDX LiveBoard sends whole
    minutes, and some relays send whole seconds.
    """

    name = "live_board"

    def __init__(self, countdown_unit: str = "seconds"):
        if countdown_unit not in {"seconds", "minutes"}:
            raise ValueError(f"unsupported countdown unit {countdown_unit!r}")
        self.countdown_unit = countdown_unit

    def normalize_row(self, row: Dict[str, Any]) -> Optional[RawTrackRecord]:
        station = text_value(probe(row, STATION_NAME_FIELDS)) or text_value(
            probe(row, STATION_CODE_FIELDS)
        )
        if not station:
            return None

        destination = text_value(probe(row, DESTINATION_FIELDS)) or ""
        countdown_s = parse_countdown(probe(row, COUNTDOWN_FIELDS), unit=self.countdown_unit)
        line_hint = text_value(probe(row, LINE_FIELDS))

        return RawTrackRecord(
            station_name=station,
            destination_name=destination,
            countdown_s=countdown_s,
            train_id=normalize_train_id(probe(row, TRAIN_ID_FIELDS)),
            observed_at=text_value(probe(row, OBSERVED_AT_FIELDS)),
            line_hint=line_hint.upper() if line_hint else None,
        )
