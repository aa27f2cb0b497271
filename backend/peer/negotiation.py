"""
Negotiation state machine.

One instance per peer. Drives the offer/answer/candidate exchange and
resolves glare (both sides offering at once) with fixed roles: the polite
side rolls its own offer back and answers, the impolite side ignores the
incoming offer and keeps its own.

Local requests to negotiate, signals from the relay and events from the
peer connection all go through one inbox consumed by a single task, so
handlers never interleave.
"""

import asyncio
import logging
from enum import Enum

from peer.connection import IceCandidate, PeerConnection, SessionDescription
from transfer.channel import ChannelClosedError, ChannelState, DataChannel

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "fileTransfer"


class NegotiationState(str, Enum):
    IDLE = "idle"
    OFFERING = "offering"
    AWAITING_ANSWER = "awaiting-answer"
    ANSWERING = "answering"
    STABLE = "stable"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


class Trigger(str, Enum):
    START_OFFER = "start-offer"
    OFFER_SENT = "offer-sent"
    REMOTE_ANSWER = "remote-answer"
    REMOTE_OFFER = "remote-offer"
    ROLLBACK = "rollback"
    ANSWER_SENT = "answer-sent"
    DISCONNECT = "disconnect"
    FAIL = "fail"
    CLOSE = "close"


class InvalidTransition(RuntimeError):
    pass


# States from which a fresh negotiation may begin
_RESTING = (
    NegotiationState.IDLE,
    NegotiationState.STABLE,
    NegotiationState.DISCONNECTED,
    NegotiationState.FAILED,
)

# States in which an incoming offer collides with our own negotiation
_NEGOTIATING = (
    NegotiationState.OFFERING,
    NegotiationState.AWAITING_ANSWER,
    NegotiationState.ANSWERING,
)

_TRANSITIONS: dict[tuple[NegotiationState, Trigger], NegotiationState] = {
    **{(s, Trigger.START_OFFER): NegotiationState.OFFERING for s in _RESTING},
    **{(s, Trigger.REMOTE_OFFER): NegotiationState.ANSWERING for s in _RESTING},
    (NegotiationState.OFFERING, Trigger.OFFER_SENT): NegotiationState.AWAITING_ANSWER,
    (NegotiationState.AWAITING_ANSWER, Trigger.REMOTE_ANSWER): NegotiationState.STABLE,
    (NegotiationState.OFFERING, Trigger.ROLLBACK): NegotiationState.ANSWERING,
    (NegotiationState.AWAITING_ANSWER, Trigger.ROLLBACK): NegotiationState.ANSWERING,
    (NegotiationState.ANSWERING, Trigger.ANSWER_SENT): NegotiationState.STABLE,
    **{
        (s, Trigger.DISCONNECT): NegotiationState.DISCONNECTED
        for s in NegotiationState if s != NegotiationState.CLOSED
    },
    **{
        (s, Trigger.FAIL): NegotiationState.FAILED
        for s in NegotiationState if s != NegotiationState.CLOSED
    },
    **{(s, Trigger.CLOSE): NegotiationState.CLOSED for s in NegotiationState},
}


def transition(state: NegotiationState, trigger: Trigger) -> NegotiationState:
    """Next state for a trigger, or InvalidTransition if it is not allowed."""
    try:
        return _TRANSITIONS[(state, trigger)]
    except KeyError:
        raise InvalidTransition(f"{trigger.value} is not valid in state {state.value}") from None


class NegotiationMachine:
    """Offer/answer negotiation for one side of a pairing."""

    def __init__(self, peer_connection: PeerConnection, polite: bool, send_signal) -> None:
        """
        Args:
            peer_connection: the local peer connection to negotiate.
            polite: True for the side that yields during glare.
            send_signal: async fn(event, payload) relaying to the other peer.
        """
        self._pc = peer_connection
        self._polite = polite
        self._send_signal = send_signal
        self._state = NegotiationState.IDLE
        self._channel: DataChannel | None = None
        self._channel_open = asyncio.Event()
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._watchers: set[asyncio.Task] = set()
        self._event_callbacks: list = []  # async fn(event_type, data)

        peer_connection.on_event(self._on_peer_event)

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def polite(self) -> bool:
        return self._polite

    @property
    def channel(self) -> DataChannel | None:
        return self._channel

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data=None) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Negotiation event callback error: {e}")

    def _advance(self, trigger: Trigger) -> None:
        previous = self._state
        self._state = transition(previous, trigger)
        logger.debug(f"Negotiation {previous.value} -> {self._state.value} ({trigger.value})")

    # --- Inbox ---

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task, self._task = self._task, None
        for watcher in list(self._watchers):
            watcher.cancel()
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._state != NegotiationState.CLOSED:
            self._advance(Trigger.CLOSE)

    def request_offer(self) -> None:
        """Ask the machine to start a negotiation when it is safe to."""
        self._inbox.put_nowait(("negotiate", None))

    def deliver(self, event: str, payload) -> None:
        """Hand over an offer, answer or ice-candidate received from the relay."""
        self._inbox.put_nowait((event, payload))

    def _on_peer_event(self, event: str, payload) -> None:
        self._inbox.put_nowait((f"pc:{event}", payload))

    async def _run(self) -> None:
        handlers = {
            "negotiate": self._handle_negotiate,
            "offer": self._handle_offer,
            "answer": self._handle_answer,
            "ice-candidate": self._handle_candidate,
            "pc:icecandidate": self._handle_local_candidate,
            "pc:datachannel": self._handle_remote_channel,
            "pc:connectionstatechange": self._handle_connection_state,
            "channel-open": self._handle_channel_open,
            "channel-closed": self._handle_channel_closed,
        }
        while True:
            event, payload = await self._inbox.get()
            handler = handlers.get(event)
            if handler is None:
                logger.warning(f"Unhandled negotiation input: {event}")
                continue
            try:
                await handler(payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Negotiation error handling {event}: {e}", exc_info=True)
                await self._fail()

    async def wait_until_open(self, timeout: float | None = None) -> DataChannel:
        """Wait for the negotiated channel to open. Raises asyncio.TimeoutError."""
        await asyncio.wait_for(self._channel_open.wait(), timeout)
        return self._channel

    # --- Handlers ---

    async def _handle_negotiate(self, _payload) -> None:
        if self._state in _NEGOTIATING or self._pc.signaling_state != "stable":
            logger.debug(f"Not offering while {self._state.value}")
            return
        if self._state == NegotiationState.CLOSED:
            return

        # The channel must exist before the first offer so the offer carries it
        if self._channel is None or self._channel.ready_state == ChannelState.CLOSED:
            self._adopt_channel(self._pc.create_data_channel(DATA_CHANNEL_LABEL, ordered=True))

        self._advance(Trigger.START_OFFER)
        offer = await self._pc.create_offer()
        await self._pc.set_local_description(offer)
        await self._send_signal("offer", self._pc.local_description.model_dump())
        self._advance(Trigger.OFFER_SENT)
        logger.info("Sent offer")

    async def _handle_offer(self, payload) -> None:
        offer = SessionDescription(**payload)
        collision = self._state in _NEGOTIATING or self._pc.signaling_state != "stable"

        if collision and not self._polite:
            logger.info("Ignored offer due to glare")
            await self._emit("offer_ignored")
            return

        if collision:
            logger.info("Glare: rolling back local offer")
            await self._pc.set_local_description(SessionDescription(type="rollback"))
            self._discard_channel()
            self._advance(Trigger.ROLLBACK)
        else:
            self._advance(Trigger.REMOTE_OFFER)

        await self._pc.set_remote_description(offer)
        answer = await self._pc.create_answer()
        await self._pc.set_local_description(answer)
        await self._send_signal("answer", self._pc.local_description.model_dump())
        self._advance(Trigger.ANSWER_SENT)
        logger.info("Sent answer")

    async def _handle_answer(self, payload) -> None:
        if self._state != NegotiationState.AWAITING_ANSWER:
            logger.warning(f"Ignoring answer received while {self._state.value}")
            return
        await self._pc.set_remote_description(SessionDescription(**payload))
        self._advance(Trigger.REMOTE_ANSWER)
        logger.info("Applied answer")

    async def _handle_candidate(self, payload) -> None:
        # Candidates may precede the descriptions; the transport accepts them early
        try:
            await self._pc.add_ice_candidate(IceCandidate(**payload))
        except Exception as e:
            logger.warning(f"Failed to add ICE candidate: {e}")

    async def _handle_local_candidate(self, candidate: IceCandidate) -> None:
        await self._send_signal("ice-candidate", candidate.model_dump())

    async def _handle_remote_channel(self, channel: DataChannel) -> None:
        if self._channel is not None and self._channel is not channel and not self._channel.is_open:
            self._channel.close()
        self._adopt_channel(channel)

    async def _handle_connection_state(self, state: str) -> None:
        logger.info(f"Connection state: {state}")
        if state == "connected":
            await self._emit("connected")
        elif state in ("disconnected", "failed"):
            self._advance(Trigger.DISCONNECT if state == "disconnected" else Trigger.FAIL)
            await self._report_not_ready()

    async def _handle_channel_open(self, channel: DataChannel) -> None:
        if channel is not self._channel:
            return
        logger.info("Data channel opened")
        await self._emit("channel_open", channel)
        self._channel_open.set()

    async def _handle_channel_closed(self, channel: DataChannel) -> None:
        if channel is not self._channel:
            return
        logger.info("Data channel closed")
        self._channel = None
        self._channel_open.clear()
        await self._emit("channel_not_ready")

    # --- Channel bookkeeping ---

    def _adopt_channel(self, channel: DataChannel) -> None:
        self._channel = channel
        watcher = asyncio.create_task(self._watch_channel(channel))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)

    async def _watch_channel(self, channel: DataChannel) -> None:
        try:
            await channel.wait_open()
        except ChannelClosedError:
            return
        self._inbox.put_nowait(("channel-open", channel))
        await channel.wait_closed()
        self._inbox.put_nowait(("channel-closed", channel))

    def _discard_channel(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None and not channel.is_open:
            channel.close()

    async def _report_not_ready(self) -> None:
        # A channel that never opened is useless; the next offer makes a new one
        if self._channel is not None and not self._channel.is_open:
            self._discard_channel()
        if self._channel is None:
            self._channel_open.clear()
        await self._emit("channel_not_ready")

    async def _fail(self) -> None:
        if self._state != NegotiationState.CLOSED:
            self._advance(Trigger.FAIL)
        await self._report_not_ready()
