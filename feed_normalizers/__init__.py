"""
Feed Normalizers

Each upstream feed family gets a normalizer that turns one loosely-typed
payload (as returned by the transport clients) into canonical raw records.
Upstream variants disagree on field names and units, so every normalizer
probes a priority-ordered list of candidate keys per logical field instead
of branching per feed.

Example usage:
    from feed_normalizers.live_board import LiveBoardNormalizer

    normalizer = LiveBoardNormalizer(countdown_unit="minutes")
    result = normalizer.normalize(payload)
    if result.failure is not None:
        ...  # feed-level failure, result.records is empty
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup


# Unknown/unparseable countdowns sort after every real estimate
FAR_FUTURE_S = 24 * 3600

ARRIVING_SENTINELS = {"列車進站", "進站", "進站中", "arriving", "arr", "due"}

# Envelope keys that wrap the record list in some feed variants
ENVELOPE_KEYS = ("d", "Data", "data", "Result", "result", "Items", "items")

_MMSS_RE = re.compile(r"^(\d{1,3}):(\d{1,2})$")
_HHMMSS_RE = re.compile(r"^(\d{1,2}):(\d{1,2}):(\d{1,2})$")
_NUMBER_RE = re.compile(r"^-?\d+(?:\.\d+)?$")


class FeedFailure(str, Enum):
    """Why a feed (or one upstream call of it) produced no usable data."""
    TRANSPORT = "transport"
    UNAUTHORIZED = "unauthorized"
    ERROR_PAGE = "error_page"
    MALFORMED = "malformed"
    RATE_LIMITED = "rate_limited"


@dataclass
class FeedFetch:
    """What a transport client hands back: a payload or a failure indicator."""
    payload: Any = None
    failure: Optional[FeedFailure] = None
    retry_after_s: Optional[float] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.failure is None


class LineFamily(str, Enum):
    STANDARD = "standard"
    CIRCULAR = "circular-direction-keyed"


@dataclass(frozen=True)
class RawTrackRecord:
    """One live-board row: a train's countdown to one station."""
    station_name: str  # raw name, or a station code for some variants
    destination_name: str
    countdown_s: int  # whole seconds; FAR_FUTURE_S when unknown
    train_id: Optional[str] = None
    observed_at: Optional[str] = None
    line_hint: Optional[str] = None


@dataclass(frozen=True)
class RawCrowdRecord:
    station_id: str  # station code or raw station name
    car_levels: Tuple[int, ...]
    line_family: LineFamily = LineFamily.STANDARD
    train_id: Optional[str] = None
    direction_code: Optional[str] = None  # circular family only
    observed_at: Optional[str] = None


@dataclass(frozen=True)
class RawScheduleRecord:
    station_id: str
    station_name: str
    destination_name: str
    line_id: str
    clock_times: Tuple[int, ...]  # seconds since local midnight
    service_days: Optional[FrozenSet[int]] = None  # weekday() values; None = every day


@dataclass
class NormalizeResult:
    records: List[Any] = field(default_factory=list)
    failure: Optional[FeedFailure] = None
    dropped: int = 0
    detail: str = ""


def probe(record: Dict[str, Any], candidates: Sequence[str], default: Any = None) -> Any:
    """Return the first candidate field present with a non-empty value."""
    for key in candidates:
        if key in record:
            value = record[key]
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            return value
    return default


def text_value(value: Any) -> Optional[str]:
    """Flatten a field to text, unwrapping TDX bilingual name objects."""
    if value is None:
        return None
    if isinstance(value, dict):
        value = value.get("Zh_tw") or value.get("zh_tw") or value.get("En") or value.get("en")
        if value is None:
            return None
    text = str(value).strip()
    return text or None


def parse_countdown(value: Any, unit: str = "seconds") -> int:
    """
    Normalize a countdown to whole, non-negative seconds.

    Accepts "MM:SS" / "HH:MM:SS" text, bare numbers in the variant's unit
    ("seconds" or "minutes"), and the arriving sentinels (-> 0). Anything
    else maps to FAR_FUTURE_S.
    """
    if value is None or isinstance(value, bool):
        return FAR_FUTURE_S
    if isinstance(value, (int, float)):
        return _scale_countdown(float(value), unit)

    text = str(value).strip()
    if not text:
        return FAR_FUTURE_S
    if text.lower() in ARRIVING_SENTINELS or text in ARRIVING_SENTINELS:
        return 0

    match = _MMSS_RE.match(text)
    if match:
        minutes, seconds = int(match.group(1)), int(match.group(2))
        if seconds >= 60:
            return FAR_FUTURE_S
        return minutes * 60 + seconds
    match = _HHMMSS_RE.match(text)
    if match:
        hours, minutes, seconds = (int(g) for g in match.groups())
        if minutes >= 60 or seconds >= 60:
            return FAR_FUTURE_S
        return hours * 3600 + minutes * 60 + seconds
    if _NUMBER_RE.match(text):
        return _scale_countdown(float(text), unit)
    return FAR_FUTURE_S


def _scale_countdown(amount: float, unit: str) -> int:
    if amount != amount:  # NaN
        return FAR_FUTURE_S
    seconds = amount * 60 if unit == "minutes" else amount
    if seconds <= 0:
        return 0
    if seconds >= FAR_FUTURE_S:
        return FAR_FUTURE_S
    return int(round(seconds))


def coerce_car_level(value: Any) -> int:
    """Crowd level for one car; malformed values count as the best case (1)."""
    try:
        level = int(float(str(value).strip()))
    except (TypeError, ValueError):
        return 1
    return max(level, 1)


def is_error_page(payload: Any) -> bool:
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    if not isinstance(payload, str):
        return False
    head = payload.lstrip()[:512].lower()
    return head.startswith("<!doctype html") or "<html" in head


def error_page_title(payload: Any) -> str:
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    try:
        soup = BeautifulSoup(payload, "lxml")
    except Exception as exc:
        return f"unparseable error page: {exc}"
    title = soup.find("title")
    if title is not None:
        text = title.get_text(strip=True)
        if text:
            return text[:120]
    body_text = soup.get_text(" ", strip=True)
    return body_text[:120]


def unwrap_rows(payload: Any) -> Optional[List[Any]]:
    """Find the record list in a payload; None when the payload has no list."""
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        text = payload.strip()
        if not text:
            return []
        try:
            payload = json.loads(text)
        except ValueError:
            return None
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ENVELOPE_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return value
            if isinstance(value, dict):
                nested = unwrap_rows(value)
                if nested is not None:
                    return nested
    return None


class FeedNormalizer(ABC):
    """
    Turn one upstream payload into canonical raw records.

    Subclasses implement ``normalize_row``; returning None drops the row
    (counted in ``NormalizeResult.dropped``). Payload-level problems never
    raise: an HTML error page or an unparseable payload yields an empty
    result carrying a FeedFailure.
    """

    name = "feed"

    def normalize(self, payload: Any) -> NormalizeResult:
        if is_error_page(payload):
            title = error_page_title(payload)
            print(f"[normalizer] {self.name}: upstream returned an error page ({title})")
            return NormalizeResult(failure=FeedFailure.ERROR_PAGE, detail=title)

        rows = unwrap_rows(payload)
        if rows is None:
            print(f"[normalizer] {self.name}: unexpected payload type {type(payload).__name__}")
            return NormalizeResult(failure=FeedFailure.MALFORMED, detail=type(payload).__name__)

        result = NormalizeResult()
        for row in rows:
            if not isinstance(row, dict):
                result.dropped += 1
                continue
            record = self.normalize_row(row)
            if record is None:
                result.dropped += 1
                continue
            result.records.append(record)
        return result

    @abstractmethod
    def normalize_row(self, row: Dict[str, Any]) -> Optional[Any]:
        pass


def merge_results(results: Iterable[NormalizeResult]) -> NormalizeResult:
    """Concatenate per-source results (crowding fan-in keeps each record's family tag)."""
    merged = NormalizeResult()
    failures: List[FeedFailure] = []
    for result in results:
        merged.records.extend(result.records)
        merged.dropped += result.dropped
        if result.failure is not None:
            failures.append(result.failure)
    if failures and not merged.records:
        merged.failure = failures[0]
    return merged


__all__ = [
    "ARRIVING_SENTINELS",
    "FAR_FUTURE_S",
    "FeedFailure",
    "FeedFetch",
    "FeedNormalizer",
    "LineFamily",
    "NormalizeResult",
    "RawCrowdRecord",
    "RawScheduleRecord",
    "RawTrackRecord",
    "coerce_car_level",
    "error_page_title",
    "is_error_page",
    "merge_results",
    "parse_countdown",
    "probe",
    "text_value",
    "unwrap_rows",
]
