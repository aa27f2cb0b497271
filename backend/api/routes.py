"""REST API routes for ShareUp."""

import logging

from fastapi import APIRouter, HTTPException

from signaling.errors import RoomNotFoundError
from signaling.models import RoomStatus
from config import ROOM_MAX_PARTICIPANTS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

# These will be injected by main.py at startup
_relay = None
_ws_manager = None


def init_routes(relay, ws_manager) -> None:
    """Inject service dependencies into the routes module."""
    global _relay, _ws_manager
    _relay = relay
    _ws_manager = ws_manager


# --- Rooms ---

@router.get("/rooms/{room_id}")
async def get_room(room_id: str) -> RoomStatus:
    """Public status of a room, so a client can check a code before joining."""
    try:
        room = await _relay.get_session(room_id.strip().upper())
    except RoomNotFoundError:
        raise HTTPException(status_code=404, detail="Room not found")

    return RoomStatus(
        room_id=room.room_id,
        participant_count=len(room.participants),
        is_full=len(room.participants) >= ROOM_MAX_PARTICIPANTS,
        created_at=room.created_at,
        expires_at=room.expires_at,
    )


@router.get("/stats")
async def get_stats():
    rooms = await _relay.list_sessions()
    return {
        "active_rooms": len(rooms),
        "paired_rooms": sum(1 for r in rooms if len(r.participants) >= ROOM_MAX_PARTICIPANTS),
        "connections": _ws_manager.connection_count,
    }
