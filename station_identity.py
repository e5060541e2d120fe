"""
Station and train identity resolution for TRTC feeds.

The live, crowding and timetable feeds all name stations differently:
some send codes ("BL12"), some send Chinese names with the traditional
"臺" instead of "台", some append "站", and some pad names with spaces.
Everything here collapses those variants onto the static station table.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple


DEFAULT_STATION_TABLE_PATH = Path(__file__).resolve().parent / "config" / "trtc_stations.json"

# One character appears in two interchangeable forms across feeds
SCRIPT_VARIANTS = {"臺": "台"}
STATION_SUFFIX = "站"
DESTINATION_PREFIX = "往"

STATION_CODE_RE = re.compile(r"^[A-Za-z]{1,2}\d{2}[A-Za-z]?$")
_WHITESPACE_RE = re.compile(r"\s+")

TRAIN_ID_PAD_WIDTH = 3


def normalize_station_name(name: Optional[str]) -> str:
    """Collapse script variants, whitespace and the trailing "站" of a station name."""
    if not name:
        return ""
    text = str(name)
    for variant, canonical in SCRIPT_VARIANTS.items():
        text = text.replace(variant, canonical)
    text = _WHITESPACE_RE.sub("", text)
    if text.endswith(STATION_SUFFIX) and len(text) > 1:
        text = text[: -len(STATION_SUFFIX)]
    return text


def normalize_destination(name: Optional[str]) -> str:
    text = normalize_station_name(name)
    if text.startswith(DESTINATION_PREFIX) and len(text) > 1:
        text = text[len(DESTINATION_PREFIX):]
    return text


def looks_like_station_code(value: Optional[str]) -> bool:
    if not value:
        return False
    return bool(STATION_CODE_RE.match(str(value).strip()))


def normalize_train_id(raw: object) -> Optional[str]:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def train_id_candidates(train_id: Optional[str]) -> List[str]:
    """
    Ids to try, in order, when matching a train across feeds.

    Feeds disagree on zero padding for the same physical train ("32" vs
    "032"), so after the id as given we retry the 3-digit padded form and
    the form with leading zeros stripped.
    """
    normalized = normalize_train_id(train_id)
    if normalized is None:
        return []
    candidates = [normalized]
    if normalized.isdigit():
        candidates.append(normalized.zfill(TRAIN_ID_PAD_WIDTH))
        candidates.append(normalized.lstrip("0") or "0")
    seen: List[str] = []
    for candidate in candidates:
        if candidate not in seen:
            seen.append(candidate)
    return seen


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


@dataclass(frozen=True)
class CanonicalStation:
    """A platform-level station entry from the static reference table."""
    station_id: str  # e.g. "BL12"
    display_name: str  # e.g. "台北車站"
    line_id: str  # e.g. "BL"

    @property
    def normalized_name(self) -> str:
        return normalize_station_name(self.display_name)


@dataclass(frozen=True)
class DirectionalLine:
    """
    A line whose crowding feed is keyed by station + direction.

    The Circular line has no usable train numbers in its crowding feed, so
    crowding is matched on "<station>_<direction>" instead. Live records get
    their direction from whichever terminus their destination names.
    """
    line_id: str
    inbound_terminus: str
    outbound_terminus: str
    indicators: Dict[str, Direction] = field(default_factory=dict)

    def direction_for_indicator(self, code: Optional[str]) -> Optional[Direction]:
        if code is None:
            return None
        text = _WHITESPACE_RE.sub("", str(code))
        if not text:
            return None
        return self.indicators.get(text) or self.indicators.get(text.upper())

    def direction_for_destination(self, destination: Optional[str]) -> Optional[Direction]:
        text = normalize_destination(destination)
        if not text:
            return None
        inbound = normalize_station_name(self.inbound_terminus) in text
        outbound = normalize_station_name(self.outbound_terminus) in text
        if inbound and not outbound:
            return Direction.INBOUND
        if outbound and not inbound:
            return Direction.OUTBOUND
        return None

    def terminus_for(self, direction: Direction) -> str:
        if direction is Direction.INBOUND:
            return self.inbound_terminus
        return self.outbound_terminus


def direction_key(station_name: str, direction: Direction) -> str:
    return f"{normalize_station_name(station_name)}_{direction.value}"


class StationRegistry:
    """Read-only lookup over the canonical station table."""

    def __init__(
        self,
        stations: Iterable[CanonicalStation],
        directional_lines: Sequence[DirectionalLine] = (),
    ):
        self._by_code: Dict[str, CanonicalStation] = {}
        self._by_name: Dict[str, List[CanonicalStation]] = {}
        self._names_by_line: Dict[str, set] = {}
        for station in stations:
            code = station.station_id.strip().upper()
            self._by_code[code] = station
            self._by_name.setdefault(station.normalized_name, []).append(station)
            self._names_by_line.setdefault(station.line_id, set()).add(station.normalized_name)
        self._directional: Dict[str, DirectionalLine] = {
            line.line_id: line for line in directional_lines
        }

    def __len__(self) -> int:
        return len(self._by_code)

    @property
    def stations(self) -> Tuple[CanonicalStation, ...]:
        return tuple(self._by_code.values())

    def by_code(self, code: Optional[str]) -> Optional[CanonicalStation]:
        if not code:
            return None
        return self._by_code.get(str(code).strip().upper())

    def by_name(self, name: Optional[str]) -> List[CanonicalStation]:
        return list(self._by_name.get(normalize_station_name(name), []))

    def resolve(
        self,
        name_or_code: Optional[str],
        *,
        line_hint: Optional[str] = None,
        destination: Optional[str] = None,
    ) -> Optional[CanonicalStation]:
        """
        Resolve a raw station reference.

        Codes are uppercased and looked up directly. Names shared by several
        platforms (transfer stations) prefer the hinted line, then the line
        that also serves the destination, then table order.
        """
        if not name_or_code:
            return None
        text = str(name_or_code).strip()
        if looks_like_station_code(text):
            return self.by_code(text)

        matches = self.by_name(text)
        if not matches:
            return None
        if len(matches) == 1:
            return matches[0]

        if line_hint:
            hint = str(line_hint).strip().upper()
            for station in matches:
                if station.line_id.upper() == hint:
                    return station

        dest = normalize_destination(destination)
        if dest:
            for station in matches:
                if dest in self._names_by_line.get(station.line_id, ()):
                    return station
        return matches[0]

    def directional_line(self, line_id: Optional[str]) -> Optional[DirectionalLine]:
        if not line_id:
            return None
        return self._directional.get(str(line_id).strip().upper())

    @property
    def directional_lines(self) -> Tuple[DirectionalLine, ...]:
        return tuple(self._directional.values())


def _parse_directional_lines(entries: object) -> List[DirectionalLine]:
    lines: List[DirectionalLine] = []
    if not isinstance(entries, list):
        return lines
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        line_id = str(entry.get("line_id") or "").strip().upper()
        inbound = entry.get("inbound_terminus")
        outbound = entry.get("outbound_terminus")
        if not line_id or not inbound or not outbound:
            continue
        indicators: Dict[str, Direction] = {}
        raw_indicators = entry.get("indicators") or {}
        if isinstance(raw_indicators, dict):
            for code, value in raw_indicators.items():
                try:
                    indicators[str(code).strip()] = Direction(str(value).strip().lower())
                except ValueError:
                    print(f"[stations] ignoring indicator {code!r}: unknown direction {value!r}")
        lines.append(
            DirectionalLine(
                line_id=line_id,
                inbound_terminus=str(inbound),
                outbound_terminus=str(outbound),
                indicators=indicators,
            )
        )
    return lines


def load_station_registry(path: Optional[Path] = None) -> StationRegistry:
    """Build a registry from the JSON station table (defaults to the bundled TRTC table)."""
    table_path = path or DEFAULT_STATION_TABLE_PATH
    data = json.loads(Path(table_path).read_text(encoding="utf-8"))
    stations: List[CanonicalStation] = []
    lines = data.get("lines") if isinstance(data, dict) else None
    if isinstance(lines, dict):
        for line_id, entries in lines.items():
            for entry in entries or []:
                if not isinstance(entry, (list, tuple)) or len(entry) < 2:
                    continue
                stations.append(
                    CanonicalStation(
                        station_id=str(entry[0]).strip().upper(),
                        display_name=str(entry[1]).strip(),
                        line_id=str(line_id).strip().upper(),
                    )
                )
    directional = _parse_directional_lines(
        data.get("directional_lines") if isinstance(data, dict) else None
    )
    print(f"[stations] loaded {len(stations)} stations, {len(directional)} directional lines from {table_path}")
    return StationRegistry(stations, directional)


__all__ = [
    "CanonicalStation",
    "Direction",
    "DirectionalLine",
    "StationRegistry",
    "direction_key",
    "load_station_registry",
    "looks_like_station_code",
    "normalize_destination",
    "normalize_station_name",
    "normalize_train_id",
    "train_id_candidates",
]
