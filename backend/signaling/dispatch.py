"""Maps client events onto SignalingRelay operations."""

import logging

from signaling.errors import RelayError
from signaling.models import LIVENESS_EVENTS, NEGOTIATION_EVENTS, RelayEvent
from signaling.relay import SignalingRelay

logger = logging.getLogger(__name__)


class RelayDispatcher:
    """
    Transport-independent handling of one client event.

    dispatch() returns the reply for request events (create/join/leave/delete)
    and None for fire-and-forget events. Relay errors become {"error": ...}
    replies; they are never raised to the transport.
    """

    def __init__(self, relay: SignalingRelay) -> None:
        self._relay = relay
        self._requests = {
            RelayEvent.CREATE_ROOM: self._create_room,
            RelayEvent.JOIN_ROOM: self._join_room,
            RelayEvent.LEAVE_ROOM: self._leave_room,
            RelayEvent.DELETE_ROOM: self._delete_room,
        }

    @property
    def relay(self) -> SignalingRelay:
        return self._relay

    async def dispatch(self, connection_id: str, event: str, data: dict | None) -> dict | None:
        data = data or {}

        handler = self._requests.get(event)
        if handler is not None:
            try:
                return await handler(connection_id, data)
            except RelayError as e:
                logger.info(f"{event} from {connection_id} refused: {e}")
                return e.to_payload()

        if event in NEGOTIATION_EVENTS or event in LIVENESS_EVENTS:
            room_id = _room_code(data)
            if not room_id:
                logger.warning(f"{event} from {connection_id} without roomId")
                return None
            await self._relay.relay(connection_id, room_id, event, data.get("payload"))
            return None

        logger.warning(f"Unknown event from {connection_id}: {event}")
        return {"error": f"Unknown event: {event}"}

    async def _create_room(self, connection_id: str, data: dict) -> dict:
        room = await self._relay.create_session(connection_id)
        return {"roomId": room.room_id}

    async def _join_room(self, connection_id: str, data: dict) -> dict:
        result = await self._relay.join_session(connection_id, _room_code(data))
        return result.model_dump(mode="json")

    async def _leave_room(self, connection_id: str, data: dict) -> dict:
        await self._relay.leave(connection_id, _room_code(data))
        return {"success": True}

    async def _delete_room(self, connection_id: str, data: dict) -> dict:
        await self._relay.delete_session(connection_id, _room_code(data))
        return {"success": True}


def _room_code(data: dict) -> str:
    return str(data.get("roomId", "")).strip().upper()
