"""
Change-feed WebSockets
======================

WS /api/v1/ws/rides/{ride_id} -- one ride's status changes (passenger tracking).
                                 Sends the current ride first; closes once the
                                 ride reaches a terminal status.
WS /api/v1/ws/drivers         -- driver locations and availability (admin map);
                                 ``?driver_id=`` narrows to one driver.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from ride_dispatch.api.dependencies import get_engine
from ride_dispatch.api.schemas import RideResponse
from ride_dispatch.domain.enums import TERMINAL_RIDE_STATUSES
from ride_dispatch.domain.errors import RideNotFound
from ride_dispatch.engine import DispatchEngine
from ride_dispatch.services.event_bus import TOPIC_DRIVERS, TOPIC_RIDES

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["stream"])

_TERMINAL = {status.value for status in TERMINAL_RIDE_STATUSES}


@router.websocket("/rides/{ride_id}")
async def ride_feed(
    websocket: WebSocket,
    ride_id: str,
    engine: DispatchEngine = Depends(get_engine),
):
    await websocket.accept()
    # subscribe before the snapshot so no change slips between the two
    async with engine.bus.subscribe(TOPIC_RIDES, key=ride_id) as subscription:
        try:
            ride = await engine.ledger.get(ride_id)
        except RideNotFound:
            await websocket.close(code=4404, reason="ride not found")
            return
        try:
            await websocket.send_json(
                {"type": "snapshot", "ride": RideResponse.from_entity(ride).model_dump(mode="json")}
            )
            if ride.status in TERMINAL_RIDE_STATUSES:
                await websocket.close()
                return
            async for event in subscription:
                await websocket.send_json(event.model_dump(mode="json"))
                if event.status in _TERMINAL:
                    break
            await websocket.close()
        except WebSocketDisconnect:
            logger.debug("Ride feed %s disconnected", ride_id)


@router.websocket("/drivers")
async def driver_feed(
    websocket: WebSocket,
    driver_id: Optional[str] = None,
    engine: DispatchEngine = Depends(get_engine),
):
    await websocket.accept()
    async with engine.bus.subscribe(TOPIC_DRIVERS, key=driver_id) as subscription:
        try:
            async for event in subscription:
                await websocket.send_json(event.model_dump(mode="json"))
        except WebSocketDisconnect:
            logger.debug("Driver feed disconnected")
