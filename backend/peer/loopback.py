"""
In-process transport.

Peer connections and data channels that live inside one event loop. The
negotiation runs exactly as it would against a real WebRTC stack (offers,
answers, rollback, trickled candidates), but the channel is a pair of
queues. It stands in for the aiortc transport in the test suite.
"""

import asyncio
import logging
import uuid

from peer.connection import (
    IceCandidate,
    InvalidStateError,
    PeerConnection,
    SessionDescription,
)
from transfer.channel import (
    ChannelClosedError,
    ChannelNotReadyError,
    ChannelState,
    DataChannel,
    Frame,
    wait_for_open,
)

logger = logging.getLogger(__name__)

_CLOSED = object()


def _frame_size(frame: Frame) -> int:
    return len(frame.encode("utf-8")) if isinstance(frame, str) else len(frame)


class MemoryDataChannel(DataChannel):
    """
    One end of an ordered, reliable in-memory channel.

    Frames passed to send() sit in an outbox until a pump task moves them to
    the other end, so buffered_amount behaves like a transport send buffer.
    With link_rate set (bytes/sec) the pump is paced and the buffer can fill.
    """

    def __init__(self, label: str = "fileTransfer", link_rate: float | None = None) -> None:
        self.label = label
        self._link_rate = link_rate
        self._state = ChannelState.CONNECTING
        self._peer: MemoryDataChannel | None = None
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._buffered = 0
        self._opened = asyncio.Event()
        self._closed = asyncio.Event()
        self._pump_task: asyncio.Task | None = None

    @property
    def ready_state(self) -> ChannelState:
        return self._state

    @property
    def buffered_amount(self) -> int:
        return self._buffered

    def connect(self, other: "MemoryDataChannel") -> None:
        """Pair two channel ends and open both."""
        self._peer, other._peer = other, self
        self._open()
        other._open()

    def _open(self) -> None:
        if self._state != ChannelState.CONNECTING:
            return
        self._state = ChannelState.OPEN
        self._pump_task = asyncio.create_task(self._pump())
        self._opened.set()

    def send(self, data: Frame) -> None:
        if self._state != ChannelState.OPEN:
            raise ChannelNotReadyError()
        if isinstance(data, (bytearray, memoryview)):
            data = bytes(data)
        self._buffered += _frame_size(data)
        self._outbox.put_nowait(data)

    async def _pump(self) -> None:
        while True:
            frame = await self._outbox.get()
            if frame is _CLOSED:
                break
            size = _frame_size(frame)
            if self._link_rate:
                await asyncio.sleep(size / self._link_rate)
            else:
                await asyncio.sleep(0)
            self._buffered -= size
            self._peer._inbox.put_nowait(frame)

        # Everything sent before close() has been delivered
        self._shutdown()
        self._peer._shutdown()

    async def receive(self) -> Frame:
        frame = await self._inbox.get()
        if frame is _CLOSED:
            self._inbox.put_nowait(_CLOSED)
            raise ChannelClosedError("Data channel closed")
        return frame

    def close(self) -> None:
        """Close after the frames already sent have been delivered."""
        if self._state in (ChannelState.CLOSING, ChannelState.CLOSED):
            return
        if self._pump_task is None:
            self._shutdown()
            return
        self._state = ChannelState.CLOSING
        self._outbox.put_nowait(_CLOSED)

    def drop(self) -> None:
        """Lose the link at once, discarding anything still buffered."""
        self._shutdown()
        if self._peer is not None:
            self._peer._shutdown()

    def _shutdown(self) -> None:
        if self._state == ChannelState.CLOSED:
            return
        self._state = ChannelState.CLOSED
        self._buffered = 0
        self._inbox.put_nowait(_CLOSED)
        self._closed.set()
        task = self._pump_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def wait_open(self, timeout: float | None = None) -> None:
        await wait_for_open(self._opened, self._closed, timeout)

    async def wait_closed(self) -> None:
        await self._closed.wait()


def channel_pair(
    label: str = "fileTransfer", link_rate: float | None = None
) -> tuple[MemoryDataChannel, MemoryDataChannel]:
    """Two connected, open channel ends."""
    a = MemoryDataChannel(label, link_rate)
    b = MemoryDataChannel(label, link_rate)
    a.connect(b)
    return a, b


class LoopbackNetwork:
    """Lets loopback peer connections find each other by the id in their SDP."""

    def __init__(self, link_rate: float | None = None) -> None:
        self.link_rate = link_rate
        self._peers: dict[str, "LoopbackPeerConnection"] = {}

    def create_peer_connection(self) -> "LoopbackPeerConnection":
        pc = LoopbackPeerConnection(self)
        self._peers[pc.id] = pc
        return pc

    def lookup(self, pc_id: str) -> "LoopbackPeerConnection":
        try:
            return self._peers[pc_id]
        except KeyError:
            raise InvalidStateError(f"Unknown peer connection {pc_id}") from None


def _sdp_owner(sdp: str) -> str:
    parts = sdp.split(":")
    if len(parts) != 3 or parts[0] != "loopback":
        raise ValueError(f"Not a loopback description: {sdp!r}")
    return parts[1]


class LoopbackPeerConnection(PeerConnection):
    def __init__(self, network: LoopbackNetwork) -> None:
        self.id = uuid.uuid4().hex[:8]
        self._network = network
        self._signaling_state = "stable"
        self._connection_state = "new"
        self._callbacks: list = []
        self._pending_channels: list[MemoryDataChannel] = []
        self._channels: list[MemoryDataChannel] = []
        self._remote_id: str | None = None
        self._description_count = 0
        self._local_description: SessionDescription | None = None
        self.remote_candidates: list[IceCandidate] = []

    @property
    def signaling_state(self) -> str:
        return self._signaling_state

    @property
    def connection_state(self) -> str:
        return self._connection_state

    @property
    def local_description(self) -> SessionDescription | None:
        return self._local_description

    def on_event(self, callback) -> None:
        self._callbacks.append(callback)

    def _emit(self, event: str, payload) -> None:
        if self._signaling_state == "closed" and event != "connectionstatechange":
            return
        for cb in list(self._callbacks):
            cb(event, payload)

    def _check_not_closed(self) -> None:
        if self._signaling_state == "closed":
            raise InvalidStateError("Peer connection is closed")

    def _describe(self, kind: str) -> SessionDescription:
        self._description_count += 1
        return SessionDescription(type=kind, sdp=f"loopback:{self.id}:{self._description_count}")

    async def create_offer(self) -> SessionDescription:
        self._check_not_closed()
        return self._describe("offer")

    async def create_answer(self) -> SessionDescription:
        self._check_not_closed()
        if self._signaling_state != "have-remote-offer":
            raise InvalidStateError("No remote offer to answer")
        return self._describe("answer")

    async def set_local_description(self, description: SessionDescription) -> None:
        self._check_not_closed()
        state = self._signaling_state
        if description.type == "rollback":
            if state in ("have-local-offer", "have-remote-offer"):
                self._signaling_state = "stable"
                self._local_description = None
            return
        if description.type == "offer" and state == "stable":
            self._signaling_state = "have-local-offer"
        elif description.type == "answer" and state == "have-remote-offer":
            self._signaling_state = "stable"
        else:
            raise InvalidStateError(f"Cannot set local {description.type} in state {state}")
        self._local_description = description
        self._trickle()

    async def set_remote_description(self, description: SessionDescription) -> None:
        self._check_not_closed()
        state = self._signaling_state
        if description.type == "offer" and state == "stable":
            self._signaling_state = "have-remote-offer"
            self._remote_id = _sdp_owner(description.sdp)
        elif description.type == "answer" and state == "have-local-offer":
            self._signaling_state = "stable"
            self._remote_id = _sdp_owner(description.sdp)
            self._link(self._network.lookup(self._remote_id))
        else:
            raise InvalidStateError(f"Cannot set remote {description.type} in state {state}")

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        self._check_not_closed()
        self.remote_candidates.append(candidate)

    def create_data_channel(self, label: str, ordered: bool = True) -> MemoryDataChannel:
        self._check_not_closed()
        channel = MemoryDataChannel(label, link_rate=self._network.link_rate)
        self._pending_channels.append(channel)
        self._channels.append(channel)
        return channel

    async def close(self) -> None:
        if self._signaling_state == "closed":
            return
        self._signaling_state = "closed"
        for channel in self._channels:
            channel.close()
        self._set_connection_state("closed")
        if self._remote_id is not None:
            remote = self._network.lookup(self._remote_id)
            if remote.connection_state not in ("closed", "disconnected"):
                remote._set_connection_state("disconnected")

    def _trickle(self) -> None:
        candidate = IceCandidate(
            candidate=f"candidate:{self.id} 1 udp 2122260223 127.0.0.1 9 typ host",
            sdpMid="0",
            sdpMLineIndex=0,
        )
        asyncio.get_running_loop().call_soon(self._emit, "icecandidate", candidate)

    def _link(self, remote: "LoopbackPeerConnection") -> None:
        # The offer carried our pending channels; open each against a fresh remote end
        for channel in self._pending_channels:
            if channel.ready_state != ChannelState.CONNECTING:
                continue
            counterpart = MemoryDataChannel(channel.label, link_rate=self._network.link_rate)
            remote._channels.append(counterpart)
            channel.connect(counterpart)
            remote._emit("datachannel", counterpart)
        self._pending_channels.clear()
        self._set_connection_state("connected")
        remote._remote_id = self.id
        remote._set_connection_state("connected")

    def _set_connection_state(self, state: str) -> None:
        if self._connection_state == state:
            return
        self._connection_state = state
        logger.debug(f"Loopback {self.id} connection state: {state}")
        self._emit("connectionstatechange", state)
