"""
WebSocket route: live hazard alerts for one watcher.

    WS /api/v1/watch/{watcher_id}?latitude=..&longitude=..&radius_km=..

Server → client messages:
    {"type": "subscribed", "watcher_id", "location", "watermark", "radius_km"}
    {"type": "alert", "event_id", "distance_km", "distance_text", "label", ...}
    {"type": "connectivity_lost", "message"}   (then the socket closes)

Client → server messages:
    {"type": "location", "latitude": .., "longitude": ..}

Close codes:
    1008 — refused: unknown/invalid location or radius, or a session for
           this watcher is already open
    1011 — feed connectivity lost
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from hazardwatch.core.errors import ConfigurationError, FeedConnectivityError
from hazardwatch.matching.live_matcher import LiveMatcher
from hazardwatch.services import Services
from hazardwatch.spatial.geo_math import Coordinate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/watch", tags=["watch"])


def _coordinate(latitude: Optional[float], longitude: Optional[float]) -> Optional[Coordinate]:
    if latitude is None or longitude is None:
        return None
    try:
        return Coordinate(latitude, longitude)
    except ValueError as exc:
        raise ConfigurationError(str(exc), field="location") from exc


async def _pump_alerts(websocket: WebSocket, queue: "asyncio.Queue") -> None:
    while True:
        item = await queue.get()
        if isinstance(item, FeedConnectivityError):
            await websocket.send_json({"type": "connectivity_lost", "message": item.message})
            await websocket.close(code=1011, reason="feed connectivity lost")
            return
        await websocket.send_json(item.to_dict())


async def _read_updates(websocket: WebSocket, matcher: LiveMatcher) -> None:
    while True:
        message = await websocket.receive_json()
        if message.get("type") != "location":
            continue
        try:
            location = _coordinate(message.get("latitude"), message.get("longitude"))
            if location is None:
                raise ConfigurationError("Location update without coordinates", field="location")
            matcher.update_location(location)
        except ConfigurationError as exc:
            await websocket.send_json({"type": "error", **exc.to_dict()})


@router.websocket("/{watcher_id}")
async def watch(
    websocket: WebSocket,
    watcher_id: str,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
    radius_km: Optional[float] = None,
):
    services: Services = websocket.app.state.services
    await websocket.accept()

    existing = services.sessions.get(watcher_id)
    if existing is not None and existing.is_subscribed:
        await websocket.close(code=1008, reason="session already active")
        return

    queue: "asyncio.Queue" = asyncio.Queue()
    try:
        matcher = await services.sessions.start(
            watcher_id,
            _coordinate(latitude, longitude),
            queue.put_nowait,
            radius_km=radius_km,
            on_connectivity_lost=lambda _wid, error: queue.put_nowait(error),
        )
    except ConfigurationError as exc:
        logger.warning("Refused watch session: %s", exc.message,
                       extra={"watcher_id": watcher_id})
        await websocket.close(code=1008, reason=exc.message)
        return

    watcher = matcher.watcher
    if watcher is None:
        # Session already ended (feed lost before the first frame)
        if services.sessions.get(watcher_id) is matcher:
            await services.sessions.stop(watcher_id)
        await websocket.close(code=1011, reason="session ended")
        return
    await websocket.send_json({"type": "subscribed", **watcher.to_dict()})

    pump = asyncio.create_task(_pump_alerts(websocket, queue))
    reader = asyncio.create_task(_read_updates(websocket, matcher))
    try:
        done, _ = await asyncio.wait({pump, reader}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.error("Watch session error: %r", exc, extra={"watcher_id": watcher_id})
    finally:
        for task in (pump, reader):
            task.cancel()
        await asyncio.gather(pump, reader, return_exceptions=True)
        if services.sessions.get(watcher_id) is matcher:
            await services.sessions.stop(watcher_id)
