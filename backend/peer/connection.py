"""
Peer connection interface used by the negotiation state machine.

Mirrors the parts of a WebRTC RTCPeerConnection the negotiation needs:
offer/answer descriptions with rollback, trickled ICE candidates, and data
channel creation. Events are pushed to registered callbacks as
(event_name, payload): "icecandidate", "datachannel" and
"connectionstatechange".
"""

from abc import ABC, abstractmethod
from typing import Callable

from pydantic import BaseModel

from transfer.channel import DataChannel


class SessionDescription(BaseModel):
    type: str  # "offer" | "answer" | "rollback"
    sdp: str = ""


class IceCandidate(BaseModel):
    candidate: str
    sdpMid: str | None = None
    sdpMLineIndex: int | None = None


class InvalidStateError(RuntimeError):
    """A description was applied in a signaling state that does not allow it."""


class PeerConnection(ABC):
    @property
    @abstractmethod
    def signaling_state(self) -> str:
        """"stable", "have-local-offer", "have-remote-offer" or "closed"."""

    @property
    @abstractmethod
    def connection_state(self) -> str:
        """"new", "connecting", "connected", "disconnected", "failed" or "closed"."""

    @property
    @abstractmethod
    def local_description(self) -> SessionDescription | None:
        """The description last applied locally, as it should be sent to the peer."""

    @abstractmethod
    def on_event(self, callback: Callable[[str, object], None]) -> None: ...

    @abstractmethod
    async def create_offer(self) -> SessionDescription: ...

    @abstractmethod
    async def create_answer(self) -> SessionDescription: ...

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None: ...

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None: ...

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate) -> None: ...

    @abstractmethod
    def create_data_channel(self, label: str, ordered: bool = True) -> DataChannel: ...

    @abstractmethod
    async def close(self) -> None: ...
