"""
services/realtime/manager.py
Room-based WebSocket fan-out.

Every API instance keeps its own sockets. publish() delivers locally and relays the
event over Redis pub/sub so the other instances deliver to theirs; each instance
ignores messages it published itself. Delivery is fire-and-forget.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Set

from fastapi import WebSocket

import config.redis_client as redis_module
from config.settings import settings
from shared.models.models import UserRole

logger = logging.getLogger(__name__)

# ── Event names ───────────────────────────────────────────────
QUEUE_UPDATED = "queue-updated"
PATIENT_CHECKED_IN = "patient-checked-in"
CHECKIN_CONFIRMED = "checkin-confirmed"
CONSULTATION_STARTED = "consultation-started"
CONSULTATION_READY = "consultation-ready"
CONSULTATION_ENDED = "consultation-ended"
CONSULTATION_COMPLETED = "consultation-completed"
YOUR_TURN_NEXT = "your-turn-next"
APPOINTMENT_CONFIRMED = "appointment-confirmed"
NEW_APPOINTMENT = "new-appointment"
APPOINTMENT_CANCELLED = "appointment-cancelled"
APPOINTMENT_UPDATED = "appointment-updated"
REMEDY_PRESCRIBED = "remedy-prescribed"
NOTIFICATION = "notification"
NOTIFICATION_READ = "notification-read"
SYSTEM_MESSAGE = "system-message"
USER_STATUS_CHANGED = "user-status-changed"

# ── Rooms ─────────────────────────────────────────────────────
ADMIN_ROOM = "admin"
QUEUE_ROOM = "queue"


def user_room(user_id) -> str:
    return f"user:{user_id}"


def queue_room(guruji_id) -> str:
    return f"queue:{guruji_id}"


def default_rooms(user_id, role: UserRole) -> list[str]:
    """Rooms a socket joins as soon as it authenticates."""
    rooms = [user_room(user_id)]
    if role in (UserRole.ADMIN, UserRole.COORDINATOR):
        rooms.append(ADMIN_ROOM)
    if role == UserRole.GURUJI:
        rooms.append(queue_room(user_id))
    return rooms


def can_join(user_id, role: UserRole, room: str) -> bool:
    if room.startswith("user:"):
        return room == user_room(user_id) or role == UserRole.ADMIN
    if room == ADMIN_ROOM:
        return role in (UserRole.ADMIN, UserRole.COORDINATOR)
    if room == QUEUE_ROOM or room.startswith("queue:"):
        return True
    return False


def build_frame(event: str, room: Optional[str], data: Any) -> dict:
    return {
        "event": event,
        "room": room,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def should_deliver(message: dict, instance_id: str) -> bool:
    """Relayed messages from this same instance were already delivered locally."""
    return message.get("source_id") != instance_id


class ConnectionManager:
    """Tracks which sockets are in which rooms."""

    def __init__(self, instance_id: Optional[str] = None):
        self.instance_id = instance_id or f"{settings.INSTANCE_NAME}:{uuid.uuid4().hex[:8]}"
        self._rooms: Dict[str, Set[WebSocket]] = {}
        self._memberships: Dict[WebSocket, Set[str]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, rooms: Iterable[str]) -> None:
        """Accept and register a new WebSocket connection."""
        await websocket.accept()
        async with self._lock:
            self._memberships[websocket] = set()
            for room in rooms:
                self._add(websocket, room)

    async def join(self, websocket: WebSocket, room: str) -> None:
        async with self._lock:
            self._add(websocket, room)

    async def leave(self, websocket: WebSocket, room: str) -> None:
        async with self._lock:
            self._remove(websocket, room)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            for room in list(self._memberships.get(websocket, ())):
                self._remove(websocket, room)
            self._memberships.pop(websocket, None)

    def rooms_of(self, websocket: WebSocket) -> list[str]:
        return sorted(self._memberships.get(websocket, ()))

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def get_total_connections(self) -> int:
        return len(self._memberships)

    async def deliver(self, event: str, rooms: Iterable[str], data: Any) -> int:
        """
        Send to local sockets only. A socket present in several target rooms gets one frame,
        tagged with the first matching room. Returns the number of sockets reached.
        """
        async with self._lock:
            targets: Dict[WebSocket, str] = {}
            for room in rooms:
                for ws in self._rooms.get(room, ()):
                    targets.setdefault(ws, room)

        dead = []
        for ws, room in targets.items():
            try:
                await ws.send_text(json.dumps(build_frame(event, room, data), default=str))
            except Exception as e:
                logger.warning(f"Dropping dead socket in room {room}: {e}")
                dead.append(ws)

        for ws in dead:
            await self.disconnect(ws)
        return len(targets) - len(dead)

    # Callers hold self._lock
    def _add(self, websocket: WebSocket, room: str) -> None:
        self._rooms.setdefault(room, set()).add(websocket)
        self._memberships.setdefault(websocket, set()).add(room)

    def _remove(self, websocket: WebSocket, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(websocket)
            if not members:
                del self._rooms[room]
        self._memberships.get(websocket, set()).discard(room)


# Singleton instance
manager = ConnectionManager()


async def publish(event: str, rooms: Iterable[str], data: Any = None) -> None:
    """Emit an event to rooms on every API instance. Never raises."""
    rooms = list(rooms)
    try:
        await manager.deliver(event, rooms, data)
    except Exception as e:
        logger.warning(f"Local delivery of '{event}' failed: {e}")

    client = redis_module.redis_client
    if client is None:
        return
    message = {"source_id": manager.instance_id, "event": event, "rooms": rooms, "data": data}
    try:
        await client.publish(settings.REALTIME_CHANNEL, json.dumps(message, default=str))
    except Exception as e:
        logger.warning(f"Relay of '{event}' over Redis failed: {e}")


async def run_listener() -> None:
    """Relay events published by other instances to local sockets. Runs for the app lifetime."""
    client = redis_module.redis_client
    if client is None:
        return
    pubsub = client.pubsub()
    await pubsub.subscribe(settings.REALTIME_CHANNEL)
    logger.info(f"Realtime listener subscribed to {settings.REALTIME_CHANNEL}")
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                payload = json.loads(message["data"])
            except (TypeError, ValueError):
                logger.warning("Ignoring malformed realtime relay message")
                continue
            if not should_deliver(payload, manager.instance_id):
                continue
            await manager.deliver(payload["event"], payload.get("rooms", []), payload.get("data"))
    finally:
        await pubsub.unsubscribe(settings.REALTIME_CHANNEL)
        await pubsub.aclose()
