"""
File transfer engine.

Runs the transfer protocol over an open data channel: one outgoing file at
a time, sent as raw binary chunks between JSON control messages, with
pause/resume/cancel, a per-tier throughput ceiling and backpressure on the
channel's unsent byte count. The same engine mirrors incoming transfers
from the control messages the peer sends.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field

from config import CHUNK_SIZE, CONTROL_POLL_INTERVAL, MAX_FILE_SIZE, SPEED_UPDATE_INTERVAL
from transfer.channel import (
    ChannelNotReadyError,
    DataChannel,
    Frame,
    wait_for_drain,
)
from transfer.models import (
    ControlMessage,
    MessageType,
    ReceivedFile,
    SpeedUpdateMessage,
    TransferDirection,
    TransferRecord,
    TransferState,
    control_message,
    parse_control_message,
)
from transfer.source import FileSource
from transfer.throttle import SpeedTracker, ThroughputBudget

logger = logging.getLogger(__name__)

PROGRESS_EVENT_INTERVAL = 0.2  # seconds between receive-side progress events


@dataclass
class SendControl:
    """Flags the send loop checks at every iteration."""
    paused: bool = False
    cancelled: bool = False
    cancelled_by_peer: bool = False
    started: bool = False  # file-info is on the wire


@dataclass
class _IncomingTransfer:
    record: TransferRecord
    chunks: list[bytes] = field(default_factory=list)
    sender_speed: float = 0.0
    last_progress_time: float = 0.0


class TransferEngine:
    """Sends and receives files over a single data channel."""

    def __init__(
        self,
        budget: ThroughputBudget,
        chunk_size: int = CHUNK_SIZE,
        save_dir: str | None = None,
        max_file_size: int = MAX_FILE_SIZE,
    ) -> None:
        self._budget = budget
        self._chunk_size = chunk_size
        self._save_dir = save_dir
        self._max_file_size = max_file_size
        self._channel: DataChannel | None = None
        self._receive_task: asyncio.Task | None = None
        self._event_callbacks: list = []  # async fn(event_type, data)

        self._controls: dict[str, SendControl] = {}
        self._active_send: str | None = None

        self._incoming: dict[str, _IncomingTransfer] = {}
        self._receiving_id: str | None = None
        self.received_files: list[ReceivedFile] = []

    @property
    def budget(self) -> ThroughputBudget:
        return self._budget

    @budget.setter
    def budget(self, budget: ThroughputBudget) -> None:
        self._budget = budget

    @property
    def channel(self) -> DataChannel | None:
        return self._channel

    @property
    def channel_ready(self) -> bool:
        return self._channel is not None and self._channel.is_open

    @property
    def active_send(self) -> str | None:
        return self._active_send

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    # --- Channel lifecycle ---

    def attach(self, channel: DataChannel) -> None:
        """Start using an open channel and consume its inbound frames."""
        if self._channel is channel:
            return
        if self._receive_task:
            self._receive_task.cancel()
        self._channel = channel
        self._receive_task = asyncio.create_task(self._receive_loop(channel))
        logger.info(f"Transfer engine attached to channel '{channel.label}'")

    async def detach(self) -> None:
        """Forget the channel and drop in-progress receives without telling the peer."""
        task, self._receive_task = self._receive_task, None
        self._channel = None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._drop_incoming("Channel closed")

    async def _receive_loop(self, channel: DataChannel) -> None:
        async for frame in channel:
            try:
                await self.handle_frame(frame)
            except Exception as e:
                logger.error(f"Failed to handle inbound frame: {e}", exc_info=True)

        if self._channel is channel:
            logger.info("Data channel closed")
            self._channel = None
            self._receive_task = None
            await self._drop_incoming("Channel closed")

    def _require_channel(self) -> DataChannel:
        if not self.channel_ready:
            raise ChannelNotReadyError()
        return self._channel

    # --- Sending ---

    def control_for(self, transfer_id: str) -> SendControl:
        return self._controls.setdefault(transfer_id, SendControl())

    def is_started(self, transfer_id: str) -> bool:
        control = self._controls.get(transfer_id)
        return control is not None and control.started

    async def send_file(self, source: FileSource, record: TransferRecord) -> bool:
        """
        Send one file over the channel.

        Returns True if the transfer began (its file-info reached the wire),
        False if it was cancelled or failed before that. The final outcome
        is left in record.state.

        Raises ChannelNotReadyError if no channel is open.
        """
        self._require_channel()
        transfer_id = record.transfer_id
        control = self.control_for(transfer_id)

        if control.cancelled:
            logger.info(f"Skipping {record.file_name}: cancelled before start")
            self._controls.pop(transfer_id, None)
            return False
        if self._active_send is not None:
            raise RuntimeError(f"Transfer {self._active_send} is already sending")

        try:
            handle = await asyncio.to_thread(source.open)
        except OSError as e:
            logger.warning(f"Cannot open {record.file_name}: {e}")
            record.state = TransferState.FAILED
            record.error_message = f"File unavailable: {e}"
            self._controls.pop(transfer_id, None)
            await self._emit("transfer_state", record.model_dump())
            return False

        if control.cancelled or not self.channel_ready:
            handle.close()
            self._controls.pop(transfer_id, None)
            if control.cancelled:
                return False
            raise ChannelNotReadyError()

        channel = self._channel
        self._active_send = transfer_id
        try:
            with handle:
                await self._send_loop(channel, handle, source, record, control)
        except ChannelNotReadyError as e:
            # Transport went away: tear down quietly, the peer is gone too
            logger.warning(f"Channel lost while sending {record.file_name}")
            record.state = TransferState.FAILED
            record.error_message = str(e)
            await self._emit("transfer_state", record.model_dump())
        except (OSError, EOFError) as e:
            logger.error(f"Send error for {record.file_name}: {e}")
            record.state = TransferState.FAILED
            record.error_message = str(e)
            if self.is_started(transfer_id) and self.channel_ready:
                self._channel.send(control_message(MessageType.FILE_CANCELLED, id=transfer_id))
            await self._emit("transfer_state", record.model_dump())
        finally:
            self._active_send = None
            self._controls.pop(transfer_id, None)

        return control.started

    async def _send_loop(self, channel, handle, source, record, control) -> None:
        transfer_id = record.transfer_id
        budget = self._budget

        channel.send(control_message(
            MessageType.FILE_INFO,
            id=transfer_id,
            name=record.file_name,
            size=record.file_size,
            type=record.file_type,
            lastModified=source.last_modified,
        ))
        control.started = True

        record.started_at = time.time()
        record.state = TransferState.PAUSED if control.paused else TransferState.SENDING
        await self._emit("transfer_state", record.model_dump())
        if control.paused:
            channel.send(control_message(MessageType.FILE_PAUSED, id=transfer_id))

        tracker = SpeedTracker(alpha=budget.speed_alpha)
        tracker.start()
        last_speed_update = 0.0
        offset = 0

        while offset < record.file_size:
            if control.cancelled_by_peer:
                logger.info(f"Peer cancelled {record.file_name}")
                record.finish(TransferState.CANCELLED)
                await self._emit("transfer_state", record.model_dump())
                return
            if control.cancelled:
                channel.send(control_message(MessageType.FILE_CANCELLED, id=transfer_id))
                record.finish(TransferState.CANCELLED)
                await self._emit("transfer_state", record.model_dump())
                return
            if control.paused:
                if not channel.is_open:
                    raise ChannelNotReadyError()
                await asyncio.sleep(CONTROL_POLL_INTERVAL)
                continue

            if channel.buffered_amount > budget.high_water_mark:
                await wait_for_drain(
                    channel, budget.low_water_mark, budget.drain_poll_interval
                )

            to_read = min(self._chunk_size, record.file_size - offset)
            chunk = await asyncio.to_thread(handle.read, to_read)
            if not chunk:
                raise EOFError(
                    f"{record.file_name} ended at byte {offset} of {record.file_size}"
                )

            delay = budget.chunk_delay(len(chunk))
            if delay > 0:
                await asyncio.sleep(delay)

            channel.send(chunk)
            offset += len(chunk)
            record.transferred_bytes = offset
            tracker.record(len(chunk))

            now = time.monotonic()
            if now - last_speed_update >= SPEED_UPDATE_INTERVAL or offset >= record.file_size:
                record.update_progress(tracker.get_speed())
                channel.send(SpeedUpdateMessage(
                    fileId=transfer_id,
                    speed=record.speed_bps,
                    progress=record.progress_percent,
                ).model_dump_json())
                await self._emit("transfer_progress", record.model_dump())
                last_speed_update = now

        channel.send(control_message(
            MessageType.FILE_COMPLETE,
            id=transfer_id,
            name=record.file_name,
            size=record.file_size,
        ))
        record.finish(TransferState.COMPLETED)
        logger.info(f"Sent {record.file_name} ({record.file_size} bytes)")
        await self._emit("transfer_state", record.model_dump())

    def pause(self, transfer_id: str) -> None:
        control = self.control_for(transfer_id)
        if control.cancelled or control.paused:
            return
        control.paused = True
        if transfer_id == self._active_send:
            self._send_control(MessageType.FILE_PAUSED, transfer_id)

    def resume(self, transfer_id: str) -> None:
        control = self.control_for(transfer_id)
        if control.cancelled or not control.paused:
            return
        control.paused = False
        if transfer_id == self._active_send:
            self._send_control(MessageType.FILE_RESUMED, transfer_id)

    def cancel(self, transfer_id: str) -> None:
        """
        Request cancellation. The running send loop notices it at its next
        iteration and tells the peer; a transfer that never began sends
        nothing.
        """
        control = self.control_for(transfer_id)
        control.cancelled = True
        control.paused = False

    def discard(self, transfer_id: str) -> None:
        """Forget the control flags of a transfer that will never be sent."""
        if transfer_id != self._active_send:
            self._controls.pop(transfer_id, None)

    def _send_control(self, msg_type: str, transfer_id: str) -> None:
        if not self.channel_ready:
            return
        try:
            self._channel.send(control_message(msg_type, id=transfer_id))
        except ChannelNotReadyError:
            logger.debug(f"Could not send {msg_type} for {transfer_id}")

    # --- Receiving ---

    async def handle_frame(self, frame: Frame) -> None:
        """Apply one inbound frame, binary chunk or text control message."""
        if isinstance(frame, (bytes, bytearray, memoryview)):
            await self._handle_chunk(bytes(frame))
            return

        try:
            message = parse_control_message(frame)
        except ValueError as e:
            logger.warning(f"Ignoring malformed control message: {e}")
            return

        if isinstance(message, SpeedUpdateMessage):
            await self._handle_speed_update(message)
            return

        handlers = {
            MessageType.FILE_INFO: self._handle_file_info,
            MessageType.FILE_COMPLETE: self._handle_file_complete,
            MessageType.FILE_CANCELLED: self._handle_file_cancelled,
            MessageType.FILE_PAUSED: self._handle_file_paused,
            MessageType.FILE_RESUMED: self._handle_file_resumed,
        }
        await handlers[message.type](message)

    async def _handle_file_info(self, message: ControlMessage) -> None:
        file = message.file
        if self._receiving_id is not None:
            logger.warning(
                f"file-info for {file.id} while {self._receiving_id} is still receiving"
            )
            await self._finish_incoming(self._receiving_id, TransferState.FAILED, "Superseded")

        record = TransferRecord(
            transfer_id=file.id,
            file_name=file.name or file.id,
            file_size=file.size or 0,
            file_type=file.type or "",
            direction=TransferDirection.RECEIVING,
            state=TransferState.RECEIVING,
            started_at=time.time(),
        )
        if record.file_size > self._max_file_size:
            logger.warning(f"Refusing {record.file_name}: {record.file_size} bytes is over the limit")
            self._send_control(MessageType.FILE_CANCELLED, file.id)
            record.finish(TransferState.FAILED)
            record.error_message = "File too large"
            await self._emit("transfer_state", record.model_dump())
            return

        self._incoming[file.id] = _IncomingTransfer(record=record)
        self._receiving_id = file.id
        logger.info(f"Receiving {record.file_name} ({record.file_size} bytes)")
        await self._emit("transfer_state", record.model_dump())

    async def _handle_chunk(self, chunk: bytes) -> None:
        incoming = self._incoming.get(self._receiving_id) if self._receiving_id else None
        if incoming is None:
            logger.warning(f"Dropping {len(chunk)} byte chunk with no open transfer")
            return

        record = incoming.record
        if record.transferred_bytes + len(chunk) > record.file_size:
            logger.warning(f"{record.file_name} overflowed its declared {record.file_size} bytes")
            self._send_control(MessageType.FILE_CANCELLED, record.transfer_id)
            await self._finish_incoming(
                record.transfer_id,
                TransferState.FAILED,
                f"Overflow: more than {record.file_size} bytes received",
            )
            return

        incoming.chunks.append(chunk)
        record.transferred_bytes += len(chunk)

        speed = incoming.sender_speed
        if not speed:
            elapsed = max(1.0, time.time() - (record.started_at or time.time()))
            speed = record.transferred_bytes / elapsed
        record.update_progress(speed)

        now = time.monotonic()
        if now - incoming.last_progress_time >= PROGRESS_EVENT_INTERVAL:
            incoming.last_progress_time = now
            await self._emit("transfer_progress", record.model_dump())

    async def _handle_speed_update(self, message: SpeedUpdateMessage) -> None:
        incoming = self._incoming.get(message.fileId)
        if incoming is None:
            return
        # The sender knows the throttle target, so its figure is the one shown
        incoming.sender_speed = message.speed
        incoming.record.update_progress(message.speed)

    async def _handle_file_complete(self, message: ControlMessage) -> None:
        incoming = self._incoming.get(message.file.id)
        if incoming is None:
            logger.warning(f"file-complete for unknown transfer {message.file.id}")
            return

        record = incoming.record
        data = b"".join(incoming.chunks)
        incoming.chunks.clear()
        if len(data) != record.file_size:
            await self._finish_incoming(
                record.transfer_id,
                TransferState.FAILED,
                f"Received {len(data)} of {record.file_size} bytes",
            )
            return

        received = ReceivedFile(
            transfer_id=record.transfer_id,
            name=record.file_name,
            size=record.file_size,
            type=record.file_type,
            data=data,
        )
        if self._save_dir:
            received.saved_path = await asyncio.to_thread(
                _write_unique, self._save_dir, record.file_name, data
            )
        self.received_files.append(received)

        await self._finish_incoming(record.transfer_id, TransferState.COMPLETED)
        logger.info(f"Received {record.file_name} ({record.file_size} bytes)")
        await self._emit("file_received", received.model_dump(exclude={"data"}))

    async def _handle_file_cancelled(self, message: ControlMessage) -> None:
        transfer_id = message.file.id
        if transfer_id in self._incoming:
            await self._finish_incoming(transfer_id, TransferState.CANCELLED)
        elif transfer_id == self._active_send:
            self.control_for(transfer_id).cancelled_by_peer = True

    async def _handle_file_paused(self, message: ControlMessage) -> None:
        incoming = self._incoming.get(message.file.id)
        if incoming and incoming.record.state == TransferState.RECEIVING:
            incoming.record.state = TransferState.PAUSED
            await self._emit("transfer_state", incoming.record.model_dump())

    async def _handle_file_resumed(self, message: ControlMessage) -> None:
        incoming = self._incoming.get(message.file.id)
        if incoming and incoming.record.state == TransferState.PAUSED:
            incoming.record.state = TransferState.RECEIVING
            await self._emit("transfer_state", incoming.record.model_dump())

    async def cancel_incoming(self, transfer_id: str) -> None:
        """Receiver-side cancel: tell the sender and drop what arrived."""
        if transfer_id not in self._incoming:
            return
        self._send_control(MessageType.FILE_CANCELLED, transfer_id)
        await self._finish_incoming(transfer_id, TransferState.CANCELLED)

    def drain_received(self) -> list[ReceivedFile]:
        """Hand over the files received so far and stop holding them."""
        received, self.received_files = self.received_files, []
        return received

    def incoming_record(self, transfer_id: str) -> TransferRecord | None:
        incoming = self._incoming.get(transfer_id)
        return incoming.record if incoming else None

    async def _finish_incoming(
        self, transfer_id: str, state: TransferState, error: str | None = None
    ) -> None:
        incoming = self._incoming.pop(transfer_id, None)
        if self._receiving_id == transfer_id:
            self._receiving_id = None
        if incoming is None:
            return
        incoming.chunks.clear()
        incoming.record.finish(state)
        incoming.record.error_message = error
        await self._emit("transfer_state", incoming.record.model_dump())

    async def _drop_incoming(self, reason: str) -> None:
        for transfer_id in list(self._incoming):
            await self._finish_incoming(transfer_id, TransferState.FAILED, reason)


def _write_unique(directory: str, file_name: str, data: bytes) -> str:
    """Write data under directory without overwriting an existing file."""
    os.makedirs(directory, exist_ok=True)
    base, ext = os.path.splitext(os.path.basename(file_name) or "download")
    path = os.path.join(directory, base + ext)
    counter = 1
    while os.path.exists(path):
        path = os.path.join(directory, f"{base} ({counter}){ext}")
        counter += 1
    with open(path, "wb") as f:
        f.write(data)
    return path
