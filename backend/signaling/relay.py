"""
Signaling relay.

Lets exactly two connections meet under an 8-character room code and
forwards negotiation messages between them. Payloads are never inspected;
the relay only knows who is in which room.
"""

import asyncio
import logging
import time
import uuid
from typing import Protocol

from config import ROOM_CODE_LENGTH, ROOM_MAX_PARTICIPANTS, ROOM_TTL
from signaling.errors import (
    PermissionDeniedError,
    RoomFullError,
    RoomLimitError,
    RoomNotFoundError,
)
from signaling.models import (
    LIVENESS_EVENTS,
    NEGOTIATION_EVENTS,
    JoinResult,
    Participant,
    PeerRole,
    RelayEvent,
    Room,
    Tier,
)
from signaling.policy import (
    ConnectionInfo,
    EventSink,
    LoggingEventSink,
    RoomCreationLimiter,
    StaticTierResolver,
    TierResolver,
    UnlimitedRoomLimiter,
)
from signaling.store import InMemoryRoomStore, RoomStore

logger = logging.getLogger(__name__)


class RelayConnection(Protocol):
    """A client connection the relay can push events to."""
    connection_id: str

    async def send(self, event: str, data: dict) -> None: ...


def generate_room_code() -> str:
    return uuid.uuid4().hex[:ROOM_CODE_LENGTH].upper()


class SignalingRelay:
    """Pairs connections into rooms and forwards messages between them."""

    def __init__(
        self,
        store: RoomStore | None = None,
        tier_resolver: TierResolver | None = None,
        limiter: RoomCreationLimiter | None = None,
        event_sink: EventSink | None = None,
        clock=time.time,
    ) -> None:
        self._store = store or InMemoryRoomStore()
        self._tier_resolver = tier_resolver or StaticTierResolver()
        self._limiter = limiter or UnlimitedRoomLimiter()
        self._event_sink = event_sink or LoggingEventSink()
        self._clock = clock
        self._connections: dict[str, RelayConnection] = {}
        self._infos: dict[str, ConnectionInfo] = {}
        self._tiers: dict[str, Tier] = {}
        self._memberships: dict[str, set[str]] = {}
        self._sweep_task: asyncio.Task | None = None

    @property
    def store(self) -> RoomStore:
        return self._store

    # --- Connection lifecycle ---

    async def register(self, connection: RelayConnection, info: ConnectionInfo) -> Tier:
        """Attach a client connection. Returns its resolved tier."""
        tier = await self._tier_resolver.resolve(info)
        self._connections[connection.connection_id] = connection
        self._infos[connection.connection_id] = info
        self._tiers[connection.connection_id] = tier
        self._memberships.setdefault(connection.connection_id, set())
        logger.info(f"Connection {connection.connection_id} registered ({tier.value})")
        return tier

    async def disconnect(self, connection_id: str) -> None:
        """Drop a connection and leave every room it was in."""
        for room_id in list(self._memberships.get(connection_id, ())):
            await self.leave(connection_id, room_id)
        self._connections.pop(connection_id, None)
        self._infos.pop(connection_id, None)
        self._tiers.pop(connection_id, None)
        self._memberships.pop(connection_id, None)
        logger.info(f"Connection {connection_id} disconnected")

    def tier_of(self, connection_id: str) -> Tier:
        return self._tiers.get(connection_id, Tier.ANONYMOUS)

    # --- Rooms ---

    async def create_session(self, connection_id: str) -> Room:
        """Create a room with the caller as its initiator."""
        info = self._infos.get(connection_id) or ConnectionInfo(connection_id=connection_id)
        tier = self.tier_of(connection_id)

        status = await self._limiter.check(info, tier)
        if not status.allowed:
            await self._event_sink.publish(
                "room_limit_reached",
                {"connection_id": connection_id, "remaining": status.remaining},
            )
            raise RoomLimitError(status.remaining or 0, status.reset_time)

        now = self._clock()
        while True:
            room = Room(
                room_id=generate_room_code(),
                creator_id=connection_id,
                participants=[
                    Participant(connection_id=connection_id, role=PeerRole.INITIATOR, joined_at=now)
                ],
                tier=tier,
                created_at=now,
                expires_at=now + ROOM_TTL[tier.value],
            )
            async with self._store.locked(room.room_id):
                if await self._store.insert(room):
                    break

        self._memberships.setdefault(connection_id, set()).add(room.room_id)
        await self._limiter.record(info, tier)
        await self._event_sink.publish(
            "room_created", {"room_id": room.room_id, "tier": tier.value}
        )
        logger.info(f"Room created: {room.room_id}")
        return room

    async def join_session(self, connection_id: str, room_id: str) -> JoinResult:
        """Join an existing room as its second participant."""
        async with self._store.locked(room_id):
            room = await self._store.get(room_id)
            if room is None or not room.is_active:
                raise RoomNotFoundError(room_id)
            if room.is_expired(self._clock()):
                await self._store.remove(room_id)
                raise RoomNotFoundError(room_id)

            existing = room.find(connection_id)
            if existing is not None:
                return JoinResult(role=existing.role, participants=room.participant_ids())

            if len(room.participants) >= ROOM_MAX_PARTICIPANTS:
                raise RoomFullError(room_id)

            taken = {p.role for p in room.participants}
            role = PeerRole.RESPONDER if PeerRole.INITIATOR in taken else PeerRole.INITIATOR
            room.participants.append(
                Participant(connection_id=connection_id, role=role, joined_at=self._clock())
            )
            other = room.other(connection_id)
            result = JoinResult(role=role, participants=room.participant_ids())

        self._memberships.setdefault(connection_id, set()).add(room_id)
        logger.info(f"User {connection_id} joined room {room_id} as {role.value}")

        if other is not None:
            await self._notify(
                other.connection_id,
                RelayEvent.USER_JOINED,
                {"userId": connection_id, "roomId": room_id, "role": role.value},
            )
        return result

    async def relay(self, connection_id: str, room_id: str, event: str, payload=None) -> bool:
        """
        Forward a negotiation or liveness event to the other participant.

        Returns False when there is nobody to forward to; the sender is never
        echoed its own message.
        """
        if event in LIVENESS_EVENTS:
            outgoing = LIVENESS_EVENTS[event]
        elif event in NEGOTIATION_EVENTS:
            outgoing = event
        else:
            raise ValueError(f"Event {event!r} cannot be relayed")

        async with self._store.locked(room_id):
            room = await self._store.get(room_id)
            if room is None or room.find(connection_id) is None:
                logger.warning(f"Dropping {event} from {connection_id}: not in room {room_id}")
                return False
            other = room.other(connection_id)

        if other is None:
            logger.debug(f"Dropping {event} in room {room_id}: no peer yet")
            return False

        await self._notify(
            other.connection_id,
            outgoing,
            {"roomId": room_id, "payload": payload, "from": connection_id},
        )
        return True

    async def leave(self, connection_id: str, room_id: str) -> None:
        """Remove the caller; the room is deleted once empty."""
        async with self._store.locked(room_id):
            room = await self._store.get(room_id)
            if room is None or room.find(connection_id) is None:
                self._memberships.get(connection_id, set()).discard(room_id)
                return
            room.participants = [
                p for p in room.participants if p.connection_id != connection_id
            ]
            remaining = room.participant_ids()
            if not remaining:
                await self._store.remove(room_id)
                logger.info(f"Room {room_id} deleted")

        self._memberships.get(connection_id, set()).discard(room_id)
        for other_id in remaining:
            await self._notify(
                other_id, RelayEvent.USER_LEFT, {"userId": connection_id, "roomId": room_id}
            )

    async def delete_session(self, connection_id: str, room_id: str) -> None:
        """Delete a room. Only its creator may do this."""
        async with self._store.locked(room_id):
            room = await self._store.get(room_id)
            if room is None:
                raise RoomNotFoundError(room_id)
            if room.creator_id != connection_id:
                raise PermissionDeniedError(room_id)
            await self._store.remove(room_id)
            room.is_active = False

        others = [pid for pid in room.participant_ids() if pid != connection_id]
        for pid in room.participant_ids():
            self._memberships.get(pid, set()).discard(room_id)
        for other_id in others:
            await self._notify(other_id, RelayEvent.ROOM_DELETED, {"roomId": room_id})
        logger.info(f"Room {room_id} deleted by its creator")

    async def get_session(self, room_id: str) -> Room:
        room = await self._store.get(room_id)
        if room is None or room.is_expired(self._clock()):
            raise RoomNotFoundError(room_id)
        return room

    async def list_sessions(self) -> list[Room]:
        return await self._store.list_rooms()

    async def expire_sessions(self, now: float | None = None) -> list[str]:
        """Remove every room past its expiry time. Returns the removed ids."""
        now = now if now is not None else self._clock()
        expired = []
        for room in await self._store.list_rooms():
            async with self._store.locked(room.room_id):
                current = await self._store.get(room.room_id)
                if current is None or not current.is_expired(now):
                    continue
                await self._store.remove(room.room_id)
                current.is_active = False
            expired.append(room.room_id)
            for pid in current.participant_ids():
                self._memberships.get(pid, set()).discard(room.room_id)
                await self._notify(pid, RelayEvent.ROOM_DELETED, {"roomId": room.room_id})

        for room_id in expired:
            logger.info(f"Room {room_id} expired and deleted")
            await self._event_sink.publish("room_expired", {"room_id": room_id})
        return expired

    # --- Background expiry ---

    async def start(self, sweep_interval: float) -> None:
        self._sweep_task = asyncio.create_task(self._sweep_loop(sweep_interval))

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("Signaling relay stopped")

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.expire_sessions()
            except Exception as e:
                logger.error(f"Room expiry sweep failed: {e}")

    async def _notify(self, connection_id: str, event: str, data: dict) -> None:
        connection = self._connections.get(connection_id)
        if connection is None:
            logger.debug(f"No live connection {connection_id} for {event}")
            return
        try:
            await connection.send(event, data)
        except Exception as e:
            logger.error(f"Failed to deliver {event} to {connection_id}: {e}")
