"""
services/realtime/router.py
WebSocket endpoint for live queue, consultation and notification events.
"""

import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from jose import JWTError
from sqlalchemy import select

import config.redis_client as redis_module
from config.database import AsyncSessionLocal
from config.redis_client import RedisCache
from services.realtime.manager import can_join, default_rooms, manager
from shared.models.models import User
from shared.utils.security import verify_access_token

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Realtime"])

AUTH_FAILED = 4001


async def _authenticate(token: Optional[str]) -> Optional[User]:
    """Resolve the ?token= access JWT to an active user, or None."""
    if not token:
        return None
    try:
        payload = verify_access_token(token)
        user_id = uuid.UUID(payload["sub"])
    except (JWTError, KeyError, ValueError):
        return None

    client = redis_module.redis_client
    jti = payload.get("jti")
    if client is not None and jti and await RedisCache(client).is_token_revoked(jti):
        return None

    async with AsyncSessionLocal() as db:
        user = await db.scalar(
            select(User).where(User.id == user_id, User.deleted_at.is_(None))
        )
    if not user or not user.is_active:
        return None
    return user


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket, token: Optional[str] = Query(None)):
    """
    Client frames:
        {"action": "join", "room": "queue:<guruji_id>"}
        {"action": "leave", "room": "..."}
        {"action": "ping"}
    Server frames: {"event", "room", "data", "timestamp"}
    """
    user = await _authenticate(token)
    if user is None:
        await websocket.close(code=AUTH_FAILED, reason="Authentication required")
        return

    await manager.connect(websocket, default_rooms(user.id, user.role))
    await websocket.send_json(
        {"event": "connected", "data": {"user_id": str(user.id), "rooms": manager.rooms_of(websocket)}}
    )

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                await websocket.send_json({"event": "error", "data": {"message": "Invalid JSON"}})
                continue
            if not isinstance(frame, dict):
                await websocket.send_json({"event": "error", "data": {"message": "Invalid frame"}})
                continue

            action = frame.get("action")
            room = frame.get("room")
            if action == "ping":
                await websocket.send_json({"event": "pong"})
            elif action == "join" and isinstance(room, str):
                if not can_join(user.id, user.role, room):
                    await websocket.send_json(
                        {"event": "error", "data": {"message": f"Cannot join room {room}"}}
                    )
                    continue
                await manager.join(websocket, room)
                await websocket.send_json({"event": "joined", "room": room})
            elif action == "leave" and isinstance(room, str):
                await manager.leave(websocket, room)
                await websocket.send_json({"event": "left", "room": room})
            else:
                await websocket.send_json({"event": "error", "data": {"message": "Unknown action"}})
    except WebSocketDisconnect:
        logger.debug(f"Socket for user {user.id} disconnected")
    finally:
        await manager.disconnect(websocket)
