# sitetelemetry/routers/live.py
# Websocket feed of accepted readings for one site.

import asyncio
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .. import config, live
from ..database import get_db
from ..deps import api_key_is_valid

logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])


def _bearer(websocket: WebSocket) -> str | None:
    authorization = websocket.headers.get("authorization")
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1]
    # browsers can't set headers on websockets
    return websocket.query_params.get("token")


def offer(queue: "asyncio.Queue[dict]", message: dict, site_id: UUID) -> bool:
    """Queue a message for a subscriber; a full queue drops it."""
    try:
        queue.put_nowait(message)
    except asyncio.QueueFull:
        logger.warning("Live subscriber for site %s is behind; dropped a reading", site_id)
        return False
    return True


async def _pump(websocket: WebSocket, queue: "asyncio.Queue[dict]") -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)


async def _listen(websocket: WebSocket) -> None:
    while True:
        data = await websocket.receive_text()
        if data == "ping":
            await websocket.send_json({"type": "pong"})


async def serve(websocket: WebSocket, queue: "asyncio.Queue[dict]", site_id: UUID) -> None:
    """Run sender and listener until either one stops; the other is cancelled."""
    tasks = {asyncio.create_task(_pump(websocket, queue)), asyncio.create_task(_listen(websocket))}
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    for task in done:
        exc = task.exception()
        if isinstance(exc, WebSocketDisconnect):
            logger.info("Live subscriber disconnected for site %s", site_id)
        elif exc is not None:
            logger.error("Live feed for site %s stopped", site_id, exc_info=exc)


@router.websocket("/sites/{site_id}/live")
async def live_readings(websocket: WebSocket, site_id: UUID, db: Session = Depends(get_db)):
    if not await run_in_threadpool(api_key_is_valid, db, _bearer(websocket)):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict] = asyncio.Queue(maxsize=config.LIVE_QUEUE_SIZE)
    # ingestion publishes from worker threads
    unsubscribe = live.hub.subscribe(
        site_id, lambda message: loop.call_soon_threadsafe(offer, queue, message, site_id)
    )
    try:
        await websocket.accept()
        logger.info("Live subscriber connected for site %s", site_id)
        await serve(websocket, queue, site_id)
    finally:
        unsubscribe()
