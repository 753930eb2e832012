from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from jobflow.errors import ApiError
from jobflow.push_hub import PushConnection
from jobflow.security import resolve_auth_context
from jobflow.store import store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["realtime"])


def _invalid_frame(message: str) -> dict:
    return {
        "event": "error",
        "channel": None,
        "seq": None,
        "payload": {"request": None, "code": "PUSH_FRAME_INVALID", "message": message},
    }


async def _pump(websocket: WebSocket, conn: PushConnection) -> None:
    while True:
        frame = await conn.receive()
        if frame is None:
            return
        await websocket.send_json(frame)


@router.websocket("/realtime")
async def realtime(websocket: WebSocket):
    cfg = websocket.app.state.security_cfg
    try:
        auth = resolve_auth_context(
            cfg=cfg,
            token=websocket.query_params.get("token") if cfg.enabled else None,
            user_id=websocket.headers.get("x-user-id") or websocket.query_params.get("user_id"),
            role=websocket.headers.get("x-user-role") or websocket.query_params.get("role"),
        )
    except ApiError as exc:
        logger.info("push_auth_rejected code=%s", exc.code)
        await websocket.close(code=1008)
        return

    await websocket.accept()
    conn = store.open_push_connection(user_id=auth.user_id, loop=asyncio.get_running_loop())
    sender = asyncio.create_task(_pump(websocket, conn))
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = (message.get("bytes") or b"").decode("utf-8", errors="replace")
            try:
                frame = json.loads(raw)
            except ValueError:
                frame = None
            if not isinstance(frame, dict):
                logger.info("push_frame_invalid user_id=%s size=%s", auth.user_id, len(raw))
                conn.send(_invalid_frame("frames must be JSON objects"))
                continue
            conn.send(await asyncio.to_thread(store.handle_client_frame, conn, frame))
    except WebSocketDisconnect:
        pass
    finally:
        store.push_hub.disconnect(conn)
        sender.cancel()
