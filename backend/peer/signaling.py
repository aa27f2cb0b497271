"""
Client side of the signaling relay.

A SignalingClient sends requests (answered with a reply dict) and
fire-and-forget events to the relay, and hands the relay's notifications to
registered callbacks.
"""

import logging
import uuid
from abc import ABC, abstractmethod

from signaling.dispatch import RelayDispatcher
from signaling.models import Tier
from signaling.policy import ConnectionInfo

logger = logging.getLogger(__name__)


class SignalingRequestError(RuntimeError):
    """The relay answered a request with an error reply."""

    def __init__(self, payload: dict) -> None:
        super().__init__(payload.get("error", "Signaling request failed"))
        self.payload = payload


class SignalingClient(ABC):
    def __init__(self) -> None:
        self._callbacks: list = []  # async fn(event, data)

    def on_message(self, callback) -> None:
        """Register callback: async fn(event: str, data: dict)."""
        self._callbacks.append(callback)

    async def _deliver(self, event: str, data: dict) -> None:
        for cb in self._callbacks:
            try:
                await cb(event, data)
            except Exception as e:
                logger.error(f"Signaling callback error for {event}: {e}", exc_info=True)

    @abstractmethod
    async def request(self, event: str, data: dict | None = None) -> dict:
        """Send a request and return the relay's reply."""

    @abstractmethod
    async def emit(self, event: str, data: dict) -> None:
        """Send an event that has no reply."""

    async def close(self) -> None:
        pass


class LocalSignalingClient(SignalingClient):
    """Talks to an in-process relay through its dispatcher."""

    def __init__(self, dispatcher: RelayDispatcher, info: ConnectionInfo | None = None) -> None:
        super().__init__()
        self.connection_id = info.connection_id if info else uuid.uuid4().hex
        self._info = info or ConnectionInfo(connection_id=self.connection_id)
        self._dispatcher = dispatcher
        self.tier: Tier | None = None

    async def connect(self) -> Tier:
        self.tier = await self._dispatcher.relay.register(self, self._info)
        return self.tier

    async def send(self, event: str, data: dict) -> None:
        # Called by the relay for each notification addressed to us
        await self._deliver(event, data)

    async def request(self, event: str, data: dict | None = None) -> dict:
        reply = await self._dispatcher.dispatch(self.connection_id, event, data)
        return reply or {}

    async def emit(self, event: str, data: dict) -> None:
        await self._dispatcher.dispatch(self.connection_id, event, data)

    async def close(self) -> None:
        await self._dispatcher.relay.disconnect(self.connection_id)
