"""
One side of a pairing, wired end to end.

Joins a room through the signaling client, runs the negotiation machine on
a peer connection, and hands the opened channel to the transfer engine.
"""

import logging

from peer.negotiation import NegotiationMachine
from peer.signaling import SignalingClient, SignalingRequestError
from signaling.models import NEGOTIATION_EVENTS, PeerRole, RelayEvent, Tier
from transfer.channel import ChannelNotReadyError, DataChannel
from transfer.engine import TransferEngine
from transfer.manager import TransferOrchestrator
from transfer.source import FileSource
from transfer.throttle import ThroughputBudget

logger = logging.getLogger(__name__)


class PeerEndpoint:
    """Signaling, negotiation and transfer for one peer."""

    def __init__(
        self,
        signaling: SignalingClient,
        pc_factory,
        tier: Tier = Tier.ANONYMOUS,
        save_dir: str | None = None,
    ) -> None:
        """
        Args:
            signaling: client connected to the relay.
            pc_factory: zero-argument callable returning a new PeerConnection.
            tier: decides the throughput budget of outgoing transfers.
            save_dir: where received files are written, if anywhere.
        """
        self._signaling = signaling
        self._pc_factory = pc_factory
        self.engine = TransferEngine(ThroughputBudget.for_tier(tier), save_dir=save_dir)
        self.orchestrator = TransferOrchestrator(self.engine)

        self.room_id: str | None = None
        self.role: PeerRole | None = None
        self._pc = None
        self._machine: NegotiationMachine | None = None
        self._pending_signals: list[tuple[str, object]] = []
        self._event_callbacks: list = []  # async fn(event_type, data)

        signaling.on_message(self.handle_signal)

    @property
    def machine(self) -> NegotiationMachine | None:
        return self._machine

    @property
    def tier(self) -> Tier:
        return self.engine.budget.tier

    @tier.setter
    def tier(self, tier: Tier) -> None:
        self.engine.budget = ThroughputBudget.for_tier(tier)

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data=None) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Endpoint event callback error: {e}")

    # --- Rooms ---

    async def create_room(self) -> str:
        """Create a room and wait in it as the initiator. Returns the room code."""
        reply = await self._signaling.request(RelayEvent.CREATE_ROOM, {})
        if "error" in reply:
            raise SignalingRequestError(reply)
        self.room_id = reply["roomId"]
        self.role = PeerRole.INITIATOR
        self._start_machine()
        logger.info(f"Created room {self.room_id}")
        return self.room_id

    async def join_room(self, room_id: str) -> PeerRole:
        reply = await self._signaling.request(RelayEvent.JOIN_ROOM, {"roomId": room_id})
        if "error" in reply:
            raise SignalingRequestError(reply)
        self.room_id = room_id.strip().upper()
        self.role = PeerRole(reply["role"])
        self._start_machine()
        logger.info(f"Joined room {self.room_id} as {self.role.value}")
        return self.role

    def _start_machine(self) -> None:
        self._pc = self._pc_factory()
        machine = NegotiationMachine(self._pc, self.role.polite, self._send_signal)
        machine.on_event(self._on_machine_event)
        machine.start()
        self._machine = machine

        # Signals that arrived before the join reply, in arrival order
        pending, self._pending_signals = self._pending_signals, []
        for event, payload in pending:
            machine.deliver(event, payload)

    async def _send_signal(self, event: str, payload) -> None:
        await self._signaling.emit(event, {"roomId": self.room_id, "payload": payload})

    # --- Relay notifications ---

    async def handle_signal(self, event: str, data: dict) -> None:
        if event in NEGOTIATION_EVENTS:
            payload = data.get("payload")
            if self._machine is None:
                self._pending_signals.append((event, payload))
            else:
                self._machine.deliver(event, payload)
        elif event == RelayEvent.USER_JOINED:
            logger.info(f"Peer {data.get('userId')} joined room {data.get('roomId')}")
            # Only the impolite side starts; the polite side waits for its offer
            if self._machine is not None and not self._machine.polite:
                self._machine.request_offer()
            await self._emit("peer_joined", data)
        elif event == RelayEvent.USER_LEFT:
            logger.info(f"Peer {data.get('userId')} left room {data.get('roomId')}")
            await self._emit("peer_left", data)
        elif event == RelayEvent.ROOM_DELETED:
            logger.info(f"Room {data.get('roomId')} was deleted")
            await self._emit("room_deleted", data)
        elif event in (RelayEvent.PEER_CONNECTION_READY, RelayEvent.PEER_CONNECTED):
            await self._emit(event.replace("-", "_"), data)
        else:
            logger.debug(f"Ignoring relay event {event}")

    # --- Negotiation events ---

    async def _on_machine_event(self, event_type: str, data) -> None:
        if event_type == "channel_open":
            self.engine.attach(data)
            await self._signaling.emit(RelayEvent.CONNECTION_READY, {"roomId": self.room_id})
            await self._emit("channel_open")
        elif event_type == "connected":
            await self._signaling.emit(RelayEvent.CONNECTION_ESTABLISHED, {"roomId": self.room_id})
        elif event_type == "channel_not_ready":
            await self.engine.detach()
            await self._emit("channel_not_ready")

    # --- Transfers ---

    async def wait_until_open(self, timeout: float | None = None) -> DataChannel:
        if self._machine is None:
            raise ChannelNotReadyError("Not in a room")
        return await self._machine.wait_until_open(timeout)

    async def send_files(self, files: list[FileSource]) -> list[str]:
        return await self.orchestrator.enqueue(files)

    async def close(self) -> None:
        """Stop transfers, close the connection and leave the room."""
        await self.orchestrator.reset()
        await self.engine.detach()
        if self._machine is not None:
            await self._machine.stop()
        if self._pc is not None:
            await self._pc.close()
        if self.room_id is not None:
            try:
                await self._signaling.request(RelayEvent.LEAVE_ROOM, {"roomId": self.room_id})
            except ConnectionError as e:
                logger.debug(f"Could not leave room {self.room_id}: {e}")
        self._machine = None
        self._pc = None
