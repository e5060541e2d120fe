"""
Taipei Metro Arrivals Service (FastAPI)

Purpose
=======
Poll the Taipei Metro live-board, car-weight (crowding) and timetable feeds,
reconcile them into one canonical per-station arrival list, and serve that
list from an in-memory snapshot.

Key features
------------
- Live countdowns from the Metro TrackInfo service (or TDX LiveBoard).
- Per-train crowding from the car-weight feeds; the Circular line is matched
  by station + direction because its feed carries no train numbers.
- Timetable arrivals fill the gaps the live board doesn't cover.
- Readers never wait on upstream calls: every endpoint answers from the last
  published snapshot and reports whether it is stale.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install -e .
"""

from __future__ import annotations

import os
from functools import partial
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from arrival_query import ArrivalQuery, StationNotFound
from arrival_reconciler import ArrivalReconciler, CanonicalArrival
from feed_normalizers import LineFamily
from feed_normalizers.crowding import CrowdNormalizer
from feed_normalizers.live_board import LiveBoardNormalizer
from feed_normalizers.timetable import TimetableNormalizer
from feed_poller import FeedKind, FeedPoller, FeedSource, FeedSpec, stale_threshold_for
from snapshot_store import SnapshotStore, isoformat_utc
from station_identity import DEFAULT_STATION_TABLE_PATH, load_station_registry
from transit_clients import MetroSoapClient, TDXClient

# ---------------------------
# Config
# ---------------------------
STATION_TABLE_PATH = Path(os.getenv("STATION_TABLE_PATH") or DEFAULT_STATION_TABLE_PATH)
TDX_LINES = [line.strip().upper() for line in os.getenv("TDX_LINES", "BL,R,G,O,BR,Y").split(",") if line.strip()]
LIVE_BOARD_SOURCE = os.getenv("LIVE_BOARD_SOURCE", "metro").strip().lower()  # "metro" or "tdx"

LIVE_REFRESH_S     = int(os.getenv("LIVE_REFRESH_S", "20"))
CROWD_REFRESH_S    = int(os.getenv("CROWD_REFRESH_S", "30"))
SCHEDULE_REFRESH_S = int(os.getenv("SCHEDULE_REFRESH_S", "3600"))
TDX_CALL_GAP_S     = float(os.getenv("TDX_CALL_GAP_S", "1.5"))

SCHEDULE_LOOKAHEAD_S       = int(os.getenv("SCHEDULE_LOOKAHEAD_S", "3600"))
SCHEDULE_DEDUP_TOLERANCE_S = int(os.getenv("SCHEDULE_DEDUP_TOLERANCE_S", "180"))
EMIT_CROWD_ONLY = os.getenv("EMIT_CROWD_ONLY", "1").strip().lower() not in {"0", "false", "no"}

# 0 derives the threshold from the live cadence
STALE_AFTER_S = float(os.getenv("STALE_AFTER_S", "0"))
POLLER_ENABLED = os.getenv("POLLER_ENABLED", "1").strip().lower() not in {"0", "false", "no"}

API_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "*",
}

# ---------------------------
# Engine
# ---------------------------
registry = load_station_registry(STATION_TABLE_PATH)
reconciler = ArrivalReconciler(
    registry,
    lookahead_s=SCHEDULE_LOOKAHEAD_S,
    dedup_tolerance_s=SCHEDULE_DEDUP_TOLERANCE_S,
    emit_crowd_only=EMIT_CROWD_ONLY,
)
store = SnapshotStore(stale_after_s=STALE_AFTER_S or LIVE_REFRESH_S * 3)
query = ArrivalQuery(store, registry)


def build_feeds(
    tdx_client: Optional[TDXClient],
    metro_client: Optional[MetroSoapClient],
    lines: Sequence[str] = TDX_LINES,
) -> List[FeedSpec]:
    """Feed layout for whichever upstream clients are configured."""
    feeds: List[FeedSpec] = []

    if metro_client is not None and (LIVE_BOARD_SOURCE != "tdx" or tdx_client is None):
        feeds.append(
            FeedSpec(
                name="track_info",
                kind=FeedKind.TRACK,
                interval_s=LIVE_REFRESH_S,
                sources=[FeedSource("track_info", metro_client.track_info, LiveBoardNormalizer())],
            )
        )
    elif tdx_client is not None:
        feeds.append(
            FeedSpec(
                name="tdx_live_board",
                kind=FeedKind.TRACK,
                interval_s=LIVE_REFRESH_S,
                sources=[
                    FeedSource(f"live_board:{line}", partial(tdx_client.live_board, line), LiveBoardNormalizer("minutes"))
                    for line in lines
                ],
                serial=True,
                min_call_gap_s=TDX_CALL_GAP_S,
            )
        )

    if metro_client is not None:
        feeds.append(
            FeedSpec(
                name="car_weight",
                kind=FeedKind.CROWD,
                interval_s=CROWD_REFRESH_S,
                sources=[
                    FeedSource("car_weight", metro_client.car_weight, CrowdNormalizer(LineFamily.STANDARD)),
                    FeedSource(
                        "circular_car_weight",
                        metro_client.circular_car_weight,
                        CrowdNormalizer(LineFamily.CIRCULAR),
                    ),
                ],
                startup_delay_s=1.0,
            )
        )

    if tdx_client is not None:
        feeds.append(
            FeedSpec(
                name="tdx_timetable",
                kind=FeedKind.SCHEDULE,
                interval_s=SCHEDULE_REFRESH_S,
                sources=[
                    FeedSource(f"timetable:{line}", partial(tdx_client.station_timetable, line), TimetableNormalizer())
                    for line in lines
                ],
                serial=True,
                min_call_gap_s=TDX_CALL_GAP_S,
                startup_delay_s=2.0,
            )
        )
    return feeds


# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Taipei Metro Arrivals")
app.state.poller = None
app.state.tdx_client = None
app.state.metro_client = None


@app.on_event("startup")
async def init_feed_clients() -> None:
    try:
        app.state.tdx_client = TDXClient.from_env()
    except RuntimeError as exc:
        print(f"[tdx] client not configured: {exc}")
        app.state.tdx_client = None
    try:
        app.state.metro_client = MetroSoapClient.from_env()
    except RuntimeError as exc:
        print(f"[metro] client not configured: {exc}")
        app.state.metro_client = None


@app.on_event("startup")
async def start_poller() -> None:
    if not POLLER_ENABLED:
        print("[poller] disabled by POLLER_ENABLED")
        return
    feeds = build_feeds(app.state.tdx_client, app.state.metro_client)
    if not feeds:
        print("[poller] no upstream clients configured; serving an empty snapshot")
        return
    if not STALE_AFTER_S:
        store.stale_after_s = stale_threshold_for(feeds)
    poller = FeedPoller(feeds, reconciler, store)
    app.state.poller = poller
    poller.start()


@app.on_event("shutdown")
async def shutdown_poller() -> None:
    poller = getattr(app.state, "poller", None)
    if poller is not None:
        await poller.stop()
        app.state.poller = None
    for name in ("tdx_client", "metro_client"):
        client = getattr(app.state, name, None)
        if client is not None:
            await client.aclose()
            setattr(app.state, name, None)


def _rows(arrivals: Sequence[CanonicalArrival]) -> List[Dict[str, Any]]:
    return [arrival.to_dict() for arrival in arrivals]


# ---------------------------
# Arrivals
# ---------------------------
@app.get("/api/trains")
async def api_trains(include_untimed: bool = Query(False)):
    # Rows without an ETA carry a null "time", which board clients sort first.
    result = query.get_all()
    arrivals = [a for a in result.arrivals if include_untimed or a.eta_seconds is not None]
    payload = {
        "success": result.published_at is not None,
        "data": _rows(arrivals),
        "updatedAt": isoformat_utc(result.published_at),
        "stale": result.stale,
    }
    return JSONResponse(payload, headers=API_CORS_HEADERS)


@app.get("/api/stations/{station_id}/arrivals")
async def api_station_arrivals(station_id: str):
    try:
        result = query.get_by_station(station_id)
    except StationNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    payload = {
        "success": result.published_at is not None,
        "stationId": result.station_ids[0],
        "stationName": result.station_name,
        "data": _rows(result.arrivals),
        "updatedAt": isoformat_utc(result.published_at),
        "stale": result.stale,
    }
    return JSONResponse(payload, headers=API_CORS_HEADERS)


@app.get("/api/stations")
async def api_stations(name: Optional[str] = Query(None)):
    if not name:
        stations = [
            {"stationId": s.station_id, "stationName": s.display_name, "lineNo": s.line_id}
            for s in registry.stations
        ]
        return JSONResponse({"success": True, "data": stations}, headers=API_CORS_HEADERS)
    try:
        result = query.get_by_station_name(name)
    except StationNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    payload = {
        "success": result.published_at is not None,
        "stationIds": list(result.station_ids),
        "stationName": result.station_name,
        "data": _rows(result.arrivals),
        "updatedAt": isoformat_utc(result.published_at),
        "stale": result.stale,
    }
    return JSONResponse(payload, headers=API_CORS_HEADERS)


# ---------------------------
# Health
# ---------------------------
@app.get("/v1/health")
async def health():
    snapshot = store.status()
    poller = getattr(app.state, "poller", None)
    return {
        "ok": not snapshot["stale"] and not snapshot["last_failure"],
        "snapshot": snapshot,
        "poller": poller.status_dict() if poller is not None else None,
    }
