"""
Transfer Orchestrator: owns the outbound queue.

Assigns stable transfer ids, feeds one file at a time to the Transfer
Engine, and lets new files be queued while a batch is already running.
"""

import asyncio
import logging
import uuid
from collections import deque

from config import INTER_FILE_DELAY, MAX_FILE_SIZE
from transfer.channel import ChannelNotReadyError
from transfer.engine import TransferEngine
from transfer.models import (
    TransferDirection,
    TransferRecord,
    TransferState,
)
from transfer.source import FileSource

logger = logging.getLogger(__name__)


def new_transfer_id() -> str:
    return str(uuid.uuid4())


class TransferOrchestrator:
    """Manages all outgoing file transfers for one peer."""

    def __init__(
        self,
        engine: TransferEngine,
        inter_file_delay: float = INTER_FILE_DELAY,
        max_file_size: int = MAX_FILE_SIZE,
    ) -> None:
        self._engine = engine
        self._inter_file_delay = inter_file_delay
        self._max_file_size = max_file_size
        self._transfers: dict[str, TransferRecord] = {}
        self._sources: dict[str, FileSource] = {}
        self._id_by_key: dict[str, str] = {}
        self._queue: deque[str] = deque()
        self._batch_task: asyncio.Task | None = None
        self._event_callbacks: list = []  # async fn(event_type, data)

        engine.on_event(self._on_engine_event)

    @property
    def is_sending(self) -> bool:
        return self._batch_task is not None and not self._batch_task.done()

    @property
    def queued_ids(self) -> list[str]:
        return list(self._queue)

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._event_callbacks.append(callback)

    async def _emit(self, event_type: str, data: dict) -> None:
        """Emit an event to all registered callbacks."""
        for cb in self._event_callbacks:
            try:
                await cb(event_type, data)
            except Exception as e:
                logger.error(f"Event callback error: {e}")

    def get_transfers(self) -> list[TransferRecord]:
        """Return all transfers, outgoing and incoming."""
        return list(self._transfers.values())

    def get(self, transfer_id: str) -> TransferRecord | None:
        return self._transfers.get(transfer_id)

    # --- Queueing ---

    async def enqueue(self, files: list[FileSource]) -> list[str]:
        """
        Queue files for sending and return their transfer ids.

        Starts a batch if none is running; otherwise the files wait in the
        queue for the running batch. Raises ChannelNotReadyError if there
        is no open channel to send on.
        """
        if not self.is_sending and not self._engine.channel_ready:
            raise ChannelNotReadyError("Not connected to peer")

        ids = []
        for source in files:
            if source.size > self._max_file_size:
                logger.warning(f"Rejecting {source.name}: {source.size} bytes is over the limit")
                await self._emit("notification", {
                    "type": "error",
                    "message": f"File '{source.name}' is too large.",
                })
                continue

            transfer_id = self._id_for(source)
            if transfer_id in self._transfers:
                ids.append(transfer_id)
                continue
            await self._add_record(transfer_id, source)
            ids.append(transfer_id)

        self._ensure_batch()
        return ids

    async def send_queued(self) -> None:
        """Restart a batch for files left queued after the channel dropped."""
        if not self._engine.channel_ready:
            raise ChannelNotReadyError("Not connected to peer")
        self._ensure_batch()

    def _id_for(self, source: FileSource) -> str:
        """Same file, same id, until that id reaches a terminal state."""
        existing = self._id_by_key.get(source.key)
        if existing is not None:
            record = self._transfers.get(existing)
            if record is not None and not record.is_terminal:
                return existing
        transfer_id = new_transfer_id()
        self._id_by_key[source.key] = transfer_id
        return transfer_id

    async def _add_record(self, transfer_id: str, source: FileSource) -> TransferRecord:
        record = TransferRecord(
            transfer_id=transfer_id,
            file_name=source.name,
            file_size=source.size,
            file_type=source.type,
            direction=TransferDirection.SENDING,
            state=TransferState.QUEUED,
        )
        self._transfers[transfer_id] = record
        self._sources[transfer_id] = source
        self._queue.append(transfer_id)
        await self._emit("transfer_state", record.model_dump())
        return record

    def _ensure_batch(self) -> None:
        if self._queue and not self.is_sending:
            self._batch_task = asyncio.create_task(self._run_batch())

    async def _run_batch(self) -> None:
        """Drain the queue, including files queued while the batch winds down."""
        while self._queue:
            if not await self._drain_queue():
                return

    async def _drain_queue(self) -> bool:
        """Send queued files one at a time. Returns False if the channel was lost."""
        started = 0
        lost = False
        while self._queue:
            transfer_id = self._queue.popleft()
            record = self._transfers.get(transfer_id)
            if record is None or record.is_terminal:
                self._engine.discard(transfer_id)
                continue

            try:
                if await self._engine.send_file(self._sources[transfer_id], record):
                    started += 1
            except ChannelNotReadyError:
                self._queue.appendleft(transfer_id)
                logger.warning(f"Channel not ready; {len(self._queue)} file(s) left queued")
                await self._emit("notification", {
                    "type": "error",
                    "message": "Connection lost. Remaining files stay queued.",
                })
                lost = True
                break

            if self._queue:
                await asyncio.sleep(self._inter_file_delay)

        if started:
            await self._emit("notification", {
                "type": "success",
                "message": f"Files sent ({started})",
            })
        return not lost

    async def wait_idle(self) -> None:
        """Wait for the running batch, if any, to finish."""
        while self.is_sending:
            await asyncio.shield(self._batch_task)

    # --- Per-transfer control ---

    async def pause(self, transfer_id: str) -> None:
        """Pause a queued or sending transfer."""
        record = self._transfers.get(transfer_id)
        if record is None or record.direction != TransferDirection.SENDING:
            return
        if record.state not in (TransferState.QUEUED, TransferState.SENDING):
            return
        self._engine.pause(transfer_id)
        record.state = TransferState.PAUSED
        await self._on_state_change(record)

    async def resume(self, transfer_id: str) -> None:
        """Resume a paused transfer."""
        record = self._transfers.get(transfer_id)
        if record is None or record.direction != TransferDirection.SENDING:
            return
        if record.state != TransferState.PAUSED:
            return
        self._engine.resume(transfer_id)
        record.state = (
            TransferState.SENDING
            if self._engine.active_send == transfer_id
            else TransferState.QUEUED
        )
        await self._on_state_change(record)

    async def cancel(self, transfer_id: str) -> None:
        """Cancel an outgoing transfer, or an incoming one from the receiving side."""
        record = self._transfers.get(transfer_id)
        if record is None or record.is_terminal:
            return
        if record.direction == TransferDirection.RECEIVING:
            await self._engine.cancel_incoming(transfer_id)
            return

        self._engine.cancel(transfer_id)
        if self._engine.active_send == transfer_id:
            # the send loop tells the peer and records the outcome
            return
        if transfer_id in self._queue:
            self._queue.remove(transfer_id)
        self._engine.discard(transfer_id)
        record.finish(TransferState.CANCELLED)
        await self._on_state_change(record)

    async def pause_all(self) -> None:
        for transfer_id in list(self._transfers):
            await self.pause(transfer_id)

    async def resume_all(self) -> None:
        for transfer_id in list(self._transfers):
            await self.resume(transfer_id)

    async def cancel_all(self) -> None:
        """Cancel every outgoing transfer that has not finished."""
        for transfer_id, record in list(self._transfers.items()):
            if record.direction == TransferDirection.SENDING:
                await self.cancel(transfer_id)

    async def retry(self, transfer_id: str) -> str | None:
        """Queue a cancelled or failed file again under a fresh id."""
        record = self._transfers.get(transfer_id)
        source = self._sources.get(transfer_id)
        if record is None or source is None:
            return None
        if record.state not in (TransferState.CANCELLED, TransferState.FAILED):
            return None
        if not self.is_sending and not self._engine.channel_ready:
            raise ChannelNotReadyError("Not connected to peer")

        new_id = new_transfer_id()
        self._id_by_key[source.key] = new_id
        await self._add_record(new_id, source)
        self._ensure_batch()
        return new_id

    async def clear_cancelled(self) -> int:
        """Forget cancelled transfers so the same files can be sent again."""
        removed = [
            tid for tid, record in self._transfers.items()
            if record.state == TransferState.CANCELLED
        ]
        for tid in removed:
            self._transfers.pop(tid, None)
            self._sources.pop(tid, None)
            self._engine.discard(tid)
            for key, mapped in list(self._id_by_key.items()):
                if mapped == tid:
                    del self._id_by_key[key]
        if removed:
            await self._emit("notification", {
                "type": "success",
                "message": f"Cleared {len(removed)} cancelled item(s)",
            })
        return len(removed)

    async def reset(self) -> None:
        """Stop the running batch and drop everything still queued."""
        task, self._batch_task = self._batch_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._queue.clear()

    # --- Engine events ---

    async def _on_engine_event(self, event_type: str, data: dict) -> None:
        if event_type not in ("transfer_state", "transfer_progress"):
            await self._emit(event_type, data)
            return

        transfer_id = data["transfer_id"]
        if data["direction"] == TransferDirection.RECEIVING:
            self._transfers[transfer_id] = TransferRecord(**data)
        record = self._transfers.get(transfer_id)
        if record is None:
            return
        if event_type == "transfer_state":
            await self._on_state_change(record)
        else:
            await self._emit("transfer_progress", record.model_dump())

    async def _on_state_change(self, record: TransferRecord) -> None:
        await self._emit("transfer_state", record.model_dump())

        # Generate user-facing notifications
        notification = None
        if record.state == TransferState.COMPLETED:
            direction = "sent" if record.direction == TransferDirection.SENDING else "received"
            notification = {
                "type": "success",
                "message": f"'{record.file_name}' {direction} successfully!",
            }
        elif record.state == TransferState.FAILED:
            notification = {
                "type": "error",
                "message": f"Transfer of '{record.file_name}' failed: {record.error_message}",
            }
        elif record.state == TransferState.CANCELLED:
            notification = {
                "type": "info",
                "message": f"Transfer of '{record.file_name}' cancelled.",
            }

        if notification:
            await self._emit("notification", notification)
