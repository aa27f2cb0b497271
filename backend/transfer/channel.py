"""
Logical channel abstraction the transfer engine runs on.

A channel is ordered and reliable. Text frames carry JSON control
messages, binary frames carry file chunks; the two are told apart by the
frame type, never by looking inside the payload.
"""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import AsyncIterator, Union

Frame = Union[str, bytes]


class ChannelNotReadyError(ConnectionError):
    """Raised when sending on a channel that is not open."""

    def __init__(self, message: str = "Data channel not ready") -> None:
        super().__init__(message)


class ChannelClosedError(ConnectionError):
    """Raised by receive() once the channel has closed."""


class ChannelState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class DataChannel(ABC):
    """Ordered, reliable, bidirectional message channel."""

    label: str = "fileTransfer"

    @property
    @abstractmethod
    def ready_state(self) -> ChannelState: ...

    @property
    @abstractmethod
    def buffered_amount(self) -> int:
        """Bytes queued by send() that the transport has not yet sent."""

    @abstractmethod
    def send(self, data: Frame) -> None:
        """Queue one frame. Raises ChannelNotReadyError unless open."""

    @abstractmethod
    async def receive(self) -> Frame:
        """Next inbound frame, in send order."""

    @abstractmethod
    def close(self) -> None: ...

    @property
    def is_open(self) -> bool:
        return self.ready_state == ChannelState.OPEN

    @abstractmethod
    async def wait_open(self, timeout: float | None = None) -> None:
        """
        Block until the channel opens. Raises asyncio.TimeoutError, or
        ChannelClosedError if the channel closes without ever opening.
        """

    @abstractmethod
    async def wait_closed(self) -> None: ...

    async def __aiter__(self) -> AsyncIterator[Frame]:
        while True:
            try:
                yield await self.receive()
            except ChannelClosedError:
                return


async def wait_for_open(
    opened: asyncio.Event, closed: asyncio.Event, timeout: float | None = None
) -> None:
    """Wait for whichever of the two events comes first; closing first is an error."""
    waiters = [
        asyncio.create_task(opened.wait()),
        asyncio.create_task(closed.wait()),
    ]
    try:
        await asyncio.wait_for(
            asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED), timeout
        )
    finally:
        for waiter in waiters:
            waiter.cancel()
    if not opened.is_set():
        raise ChannelClosedError("Data channel closed before opening")


async def wait_for_drain(
    channel: DataChannel, low_water_mark: int, poll_interval: float
) -> None:
    """Poll until the channel's unsent byte count falls below the mark."""
    while channel.buffered_amount >= low_water_mark:
        if not channel.is_open:
            raise ChannelNotReadyError()
        await asyncio.sleep(poll_interval)
