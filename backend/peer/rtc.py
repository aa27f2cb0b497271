"""
WebRTC transport backed by aiortc.

aiortc gathers every local candidate while a local description is applied
and writes them into that description's SDP, so it never raises
"icecandidate" events; candidates trickled by the remote side are still
applied as they arrive. aiortc has no offer rollback either: a rollback
replaces the underlying RTCPeerConnection with a fresh one in the stable
state, dropping any channel created on the old one.
"""

import asyncio
import logging

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from config import ICE_SERVERS
from peer.connection import IceCandidate, PeerConnection, SessionDescription
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


def rtc_configuration(urls: list[str]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in urls])


def _to_rtc(description: SessionDescription) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=description.sdp, type=description.type)


class RtcDataChannel(DataChannel):
    """DataChannel over an aiortc RTCDataChannel."""

    def __init__(self, channel: RTCDataChannel) -> None:
        self.label = channel.label
        self._channel = channel
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._opened = asyncio.Event()
        self._closed = asyncio.Event()

        channel.on("open", self._on_open)
        channel.on("message", self._inbox.put_nowait)
        channel.on("close", self._on_close)
        if channel.readyState == "open":
            self._opened.set()
        elif channel.readyState == "closed":
            self._on_close()

    @property
    def ready_state(self) -> ChannelState:
        return ChannelState(self._channel.readyState)

    @property
    def buffered_amount(self) -> int:
        return self._channel.bufferedAmount

    def _on_open(self) -> None:
        self._opened.set()

    def _on_close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._inbox.put_nowait(_CLOSED)

    def send(self, data: Frame) -> None:
        if self._channel.readyState != "open":
            raise ChannelNotReadyError()
        if isinstance(data, (bytearray, memoryview)):
            data = bytes(data)
        self._channel.send(data)

    async def receive(self) -> Frame:
        frame = await self._inbox.get()
        if frame is _CLOSED:
            self._inbox.put_nowait(_CLOSED)
            raise ChannelClosedError("Data channel closed")
        return frame

    def close(self) -> None:
        self._channel.close()
        if self._channel.readyState == "closed":
            self._on_close()

    async def wait_open(self, timeout: float | None = None) -> None:
        await wait_for_open(self._opened, self._closed, timeout)

    async def wait_closed(self) -> None:
        await self._closed.wait()


class RtcPeerConnection(PeerConnection):
    def __init__(self, ice_servers: list[str] | None = None) -> None:
        """
        Args:
            ice_servers: STUN/TURN urls; defaults to ICE_SERVERS from config.
                An empty list restricts the connection to host candidates.
        """
        self._ice_servers = ICE_SERVERS if ice_servers is None else ice_servers
        self._callbacks: list = []
        self._channels: list[RtcDataChannel] = []
        self._pc = self._new_connection()

    def _new_connection(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=rtc_configuration(self._ice_servers))

        def on_datachannel(channel: RTCDataChannel) -> None:
            wrapped = RtcDataChannel(channel)
            self._channels.append(wrapped)
            self._emit_from(pc, "datachannel", wrapped)

        def on_connectionstatechange() -> None:
            self._emit_from(pc, "connectionstatechange", pc.connectionState)

        pc.on("datachannel", on_datachannel)
        pc.on("connectionstatechange", on_connectionstatechange)
        return pc

    def _emit_from(self, pc: RTCPeerConnection, event: str, payload) -> None:
        # Connections replaced by a rollback no longer speak for this peer
        if pc is not self._pc:
            return
        for cb in list(self._callbacks):
            cb(event, payload)

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def local_description(self) -> SessionDescription | None:
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescription(type=description.type, sdp=description.sdp)

    def on_event(self, callback) -> None:
        self._callbacks.append(callback)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        if description.type == "rollback":
            await self._replace_connection()
            return
        await self._pc.setLocalDescription(_to_rtc(description))

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(_to_rtc(description))

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        line = candidate.candidate
        if not line:
            # end-of-candidates marker
            return
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        rtc_candidate = candidate_from_sdp(line)
        rtc_candidate.sdpMid = candidate.sdpMid
        rtc_candidate.sdpMLineIndex = candidate.sdpMLineIndex
        await self._pc.addIceCandidate(rtc_candidate)

    def create_data_channel(self, label: str, ordered: bool = True) -> RtcDataChannel:
        channel = RtcDataChannel(self._pc.createDataChannel(label, ordered=ordered))
        self._channels.append(channel)
        return channel

    async def _replace_connection(self) -> None:
        old, self._pc = self._pc, self._new_connection()
        channels, self._channels = self._channels, []
        logger.info("Rolling back: replacing the peer connection")
        await old.close()
        for channel in channels:
            channel.close()

    async def close(self) -> None:
        await self._pc.close()
        for channel in self._channels:
            channel.close()
