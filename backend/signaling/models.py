"""Pydantic models for rooms and relay messages."""

import time
from enum import Enum

from pydantic import BaseModel, Field


class Tier(str, Enum):
    """Identity tier of a connection, used for throughput and room lifetime."""
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"
    PREMIUM = "premium"


class PeerRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"

    @property
    def polite(self) -> bool:
        """The responder yields during glare."""
        return self is PeerRole.RESPONDER


class Participant(BaseModel):
    connection_id: str
    role: PeerRole
    joined_at: float = Field(default_factory=time.time)


class Room(BaseModel):
    """A pairing session between at most two connections."""
    room_id: str
    creator_id: str
    participants: list[Participant] = []
    tier: Tier = Tier.ANONYMOUS
    created_at: float = Field(default_factory=time.time)
    expires_at: float
    is_active: bool = True

    def participant_ids(self) -> list[str]:
        return [p.connection_id for p in self.participants]

    def find(self, connection_id: str) -> Participant | None:
        return next(
            (p for p in self.participants if p.connection_id == connection_id),
            None,
        )

    def other(self, connection_id: str) -> Participant | None:
        return next(
            (p for p in self.participants if p.connection_id != connection_id),
            None,
        )

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at


class RoomStatus(BaseModel):
    """Public view of a room, exposed by the REST API."""
    room_id: str
    participant_count: int
    is_full: bool
    created_at: float
    expires_at: float


class JoinResult(BaseModel):
    success: bool = True
    role: PeerRole
    participants: list[str]


class LimitStatus(BaseModel):
    """Answer from the room creation limiter."""
    allowed: bool
    remaining: int | None = None
    reset_time: float | None = None


# --- Relay event names ---

class RelayEvent:
    # client -> relay
    CREATE_ROOM = "create-room"
    JOIN_ROOM = "join-room"
    LEAVE_ROOM = "leave-room"
    DELETE_ROOM = "delete-room"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    CONNECTION_READY = "connection-ready"
    CONNECTION_ESTABLISHED = "connection-established"

    # relay -> client
    ACK = "ack"
    USER_JOINED = "user-joined"
    USER_LEFT = "user-left"
    ROOM_DELETED = "room-deleted"
    PEER_CONNECTION_READY = "peer-connection-ready"
    PEER_CONNECTED = "peer-connected"


# Events forwarded verbatim to the other participant
NEGOTIATION_EVENTS = (RelayEvent.OFFER, RelayEvent.ANSWER, RelayEvent.ICE_CANDIDATE)

# Liveness events renamed on the way through
LIVENESS_EVENTS = {
    RelayEvent.CONNECTION_READY: RelayEvent.PEER_CONNECTION_READY,
    RelayEvent.CONNECTION_ESTABLISHED: RelayEvent.PEER_CONNECTED,
}
