import asyncio
import json
import time

import pytest

from conftest import EventLog, wait_for
from peer.loopback import channel_pair
from signaling.models import Tier
from transfer.channel import ChannelNotReadyError, DataChannel
from transfer.engine import TransferEngine
from transfer.models import MessageType, TransferDirection, TransferRecord, TransferState
from transfer.source import FileSource, InMemoryFile
from transfer.throttle import ThroughputBudget

PREMIUM = ThroughputBudget.for_tier(Tier.PREMIUM)


class TapChannel(DataChannel):
    """Wraps a channel end and remembers every frame it delivers."""

    def __init__(self, inner: DataChannel) -> None:
        self.inner = inner
        self.label = inner.label
        self.frames = []

    @property
    def ready_state(self):
        return self.inner.ready_state

    @property
    def buffered_amount(self) -> int:
        return self.inner.buffered_amount

    def send(self, data) -> None:
        self.inner.send(data)

    async def receive(self):
        frame = await self.inner.receive()
        self.frames.append(frame)
        return frame

    def close(self) -> None:
        self.inner.close()

    async def wait_open(self, timeout=None) -> None:
        await self.inner.wait_open(timeout)

    async def wait_closed(self) -> None:
        await self.inner.wait_closed()

    def controls(self, msg_type: str) -> list[dict]:
        return [
            message for message in (json.loads(f) for f in self.frames if isinstance(f, str))
            if message["type"] == msg_type
        ]

    def chunks(self) -> list[bytes]:
        return [f for f in self.frames if isinstance(f, bytes)]


class BrokenFile(FileSource):
    name = "gone.txt"
    size = 10
    type = "text/plain"
    last_modified = 0.0

    def open(self):
        raise FileNotFoundError("gone.txt")


def outgoing(source: FileSource, transfer_id: str = "t1") -> TransferRecord:
    return TransferRecord(
        transfer_id=transfer_id,
        file_name=source.name,
        file_size=source.size,
        file_type=source.type,
        direction=TransferDirection.SENDING,
    )


def pair(budget=PREMIUM, chunk_size=32768, link_rate=None):
    a, b = channel_pair(link_rate=link_rate)
    sender = TransferEngine(budget, chunk_size=chunk_size)
    sender.attach(a)
    receiver = TransferEngine(budget, chunk_size=chunk_size)
    tap = TapChannel(b)
    receiver.attach(tap)
    return a, tap, sender, receiver


@pytest.mark.asyncio
async def test_photo_arrives_byte_exact():
    data = bytes(i % 251 for i in range(1024 * 1024))
    source = InMemoryFile("photo.png", data)
    _, tap, sender, receiver = pair()
    record = outgoing(source)

    assert await sender.send_file(source, record)
    await wait_for(lambda: receiver.received_files)

    assert record.state == TransferState.COMPLETED
    assert record.progress_percent == 100.0

    info = tap.controls(MessageType.FILE_INFO)
    assert info == [{
        "type": "file-info",
        "file": {
            "id": "t1",
            "name": "photo.png",
            "size": 1048576,
            "type": "image/png",
            "lastModified": source.last_modified,
        },
    }]
    chunks = tap.chunks()
    assert len(chunks) == 32
    assert all(len(c) == 32768 for c in chunks)
    assert tap.controls(MessageType.FILE_COMPLETE) == [
        {"type": "file-complete", "file": {"id": "t1", "name": "photo.png", "size": 1048576}}
    ]

    received = receiver.received_files[0]
    assert received.transfer_id == "t1"
    assert received.data == data
    assert receiver.incoming_record("t1") is None


@pytest.mark.asyncio
async def test_control_frames_precede_and_follow_chunks():
    source = InMemoryFile("notes.txt", b"x" * 100_000)
    _, tap, sender, receiver = pair()

    await sender.send_file(source, outgoing(source))
    await wait_for(lambda: receiver.received_files)

    assert json.loads(tap.frames[0])["type"] == MessageType.FILE_INFO
    assert json.loads(tap.frames[-1])["type"] == MessageType.FILE_COMPLETE
    speed_updates = tap.controls(MessageType.FILE_SPEED_UPDATE)
    assert speed_updates
    assert speed_updates[-1]["progress"] == 100.0
    assert speed_updates[-1]["fileId"] == "t1"


@pytest.mark.asyncio
async def test_pause_and_resume_lose_nothing():
    data = bytes(range(256)) * 256  # 64 KiB
    source = InMemoryFile("song.mp3", data)
    _, tap, sender, receiver = pair(chunk_size=4096)
    record = outgoing(source)

    async def pause_after_first_chunk(event_type, payload):
        if event_type == "transfer_progress" and payload["transferred_bytes"] == 4096:
            sender.pause("t1")

    sender.on_event(pause_after_first_chunk)
    receiver_events = EventLog()
    receiver.on_event(receiver_events)

    send = asyncio.create_task(sender.send_file(source, record))
    await wait_for(lambda: tap.controls(MessageType.FILE_PAUSED))
    await asyncio.sleep(0.3)

    assert len(tap.chunks()) == 1
    assert receiver.incoming_record("t1").state == TransferState.PAUSED

    sender.resume("t1")
    assert await send
    await wait_for(lambda: receiver.received_files)

    assert receiver.received_files[0].data == data
    assert len(tap.controls(MessageType.FILE_PAUSED)) == 1
    assert len(tap.controls(MessageType.FILE_RESUMED)) == 1
    states = [e["state"] for e in receiver_events.named("transfer_state")]
    assert states == ["receiving", "paused", "receiving", "completed"]


@pytest.mark.asyncio
async def test_cancel_before_start_sends_nothing():
    source = InMemoryFile("photo.png", b"p" * 50_000)
    _, tap, sender, _ = pair()
    record = outgoing(source)

    sender.cancel("t1")
    assert not await sender.send_file(source, record)
    await asyncio.sleep(0.05)

    assert tap.frames == []
    assert not sender.is_started("t1")


@pytest.mark.asyncio
async def test_cancel_after_first_chunk_sends_one_message():
    source = InMemoryFile("photo.png", b"p" * 200_000)
    _, tap, sender, receiver = pair(chunk_size=4096)
    record = outgoing(source)

    async def cancel_after_first_chunk(event_type, payload):
        if event_type == "transfer_progress":
            sender.cancel("t1")
            sender.cancel("t1")

    sender.on_event(cancel_after_first_chunk)
    assert await sender.send_file(source, record)
    await wait_for(lambda: tap.controls(MessageType.FILE_CANCELLED))
    await asyncio.sleep(0.05)

    assert record.state == TransferState.CANCELLED
    assert len(tap.controls(MessageType.FILE_CANCELLED)) == 1
    assert tap.controls(MessageType.FILE_COMPLETE) == []
    assert len(tap.chunks()) == 1
    assert receiver.received_files == []


@pytest.mark.asyncio
async def test_receiver_cancel_stops_the_sender():
    source = InMemoryFile("movie.mp4", b"m" * 256 * 1024)
    budget = ThroughputBudget.for_tier(Tier.AUTHENTICATED)
    a, tap, sender, receiver = pair(budget=budget, chunk_size=4096)
    record = outgoing(source)

    async def cancel_on_start(event_type, payload):
        if event_type == "transfer_state" and payload["state"] == TransferState.RECEIVING:
            await receiver.cancel_incoming(payload["transfer_id"])

    receiver.on_event(cancel_on_start)
    assert await sender.send_file(source, record)

    assert record.state == TransferState.CANCELLED
    assert tap.controls(MessageType.FILE_CANCELLED) == []
    assert tap.controls(MessageType.FILE_COMPLETE) == []
    assert len(tap.chunks()) * 4096 < source.size
    assert receiver.received_files == []


@pytest.mark.asyncio
@pytest.mark.parametrize("tier, chunk", [
    (Tier.ANONYMOUS, 1024),
    (Tier.AUTHENTICATED, 32768),
])
async def test_tier_ceiling(tier, chunk):
    budget = ThroughputBudget.for_tier(tier)
    source = InMemoryFile("small.bin", b"s" * (6 * chunk))
    _, _, sender, receiver = pair(budget=budget, chunk_size=chunk)

    started = time.monotonic()
    await sender.send_file(source, outgoing(source))
    elapsed = time.monotonic() - started
    await wait_for(lambda: receiver.received_files)

    # Never ahead of the ceiling by more than one chunk
    assert elapsed >= (source.size - chunk) / budget.bytes_per_second
    assert elapsed < 2.0
    assert receiver.received_files[0].size == source.size


def test_premium_tier_is_never_throttled():
    budget = ThroughputBudget.for_tier(Tier.PREMIUM)
    assert budget.is_unrestricted
    assert budget.chunk_delay(32768) == 0


@pytest.mark.asyncio
async def test_backpressure_bounds_the_send_buffer():
    budget = ThroughputBudget(
        tier=Tier.PREMIUM,
        bytes_per_second=None,
        high_water_mark=4096,
        low_water_mark=2048,
        drain_poll_interval=0.001,
        speed_alpha=0.12,
    )
    data = bytes(range(256)) * 128  # 32 KiB
    source = InMemoryFile("stream.bin", data)
    a, _, sender, receiver = pair(budget=budget, chunk_size=1024, link_rate=200_000)

    peak = 0

    async def watch():
        nonlocal peak
        while True:
            peak = max(peak, a.buffered_amount)
            await asyncio.sleep(0)

    watcher = asyncio.create_task(watch())
    try:
        await sender.send_file(source, outgoing(source))
        await wait_for(lambda: receiver.received_files)
    finally:
        watcher.cancel()

    assert peak <= budget.high_water_mark + 1024 + 512
    assert receiver.received_files[0].data == data


@pytest.mark.asyncio
async def test_disconnect_mid_send_fails_quietly():
    source = InMemoryFile("photo.png", b"p" * 200_000)
    a, tap, sender, receiver = pair(chunk_size=4096)
    record = outgoing(source)
    receiver_events = EventLog()
    receiver.on_event(receiver_events)

    async def drop_after_first_chunk(event_type, payload):
        if event_type == "transfer_progress":
            a.drop()

    sender.on_event(drop_after_first_chunk)
    assert await sender.send_file(source, record)

    assert record.state == TransferState.FAILED
    assert not sender.channel_ready
    await wait_for(lambda: receiver.channel is None)
    assert receiver.incoming_record("t1") is None
    states = [e["state"] for e in receiver_events.named("transfer_state")]
    assert states in ([], ["receiving", "failed"])
    assert tap.controls(MessageType.FILE_CANCELLED) == []
    assert receiver.received_files == []


@pytest.mark.asyncio
async def test_disconnect_while_paused_fails_the_send():
    source = InMemoryFile("photo.png", b"p" * 200_000)
    a, tap, sender, _ = pair(chunk_size=4096)
    record = outgoing(source)

    async def pause_after_first_chunk(event_type, payload):
        if event_type == "transfer_progress":
            sender.pause("t1")

    sender.on_event(pause_after_first_chunk)
    send = asyncio.create_task(sender.send_file(source, record))
    await wait_for(lambda: tap.controls(MessageType.FILE_PAUSED))
    a.drop()

    assert await asyncio.wait_for(send, 2)
    assert record.state == TransferState.FAILED
    assert sender.active_send is None
    assert len(tap.chunks()) == 1


@pytest.mark.asyncio
async def test_send_without_channel_is_refused():
    sender = TransferEngine(PREMIUM)
    source = InMemoryFile("a.txt", b"a")
    with pytest.raises(ChannelNotReadyError):
        await sender.send_file(source, outgoing(source))


@pytest.mark.asyncio
async def test_unreadable_file_fails_that_transfer():
    _, tap, sender, _ = pair()
    record = outgoing(BrokenFile())

    assert not await sender.send_file(BrokenFile(), record)
    assert record.state == TransferState.FAILED
    assert "File unavailable" in record.error_message
    await asyncio.sleep(0.05)
    assert tap.frames == []


@pytest.mark.asyncio
async def test_size_mismatch_is_a_failed_receive():
    receiver = TransferEngine(PREMIUM)
    events = EventLog()
    receiver.on_event(events)

    await receiver.handle_frame(
        '{"type": "file-info", "file": {"id": "r1", "name": "a.bin", "size": 10}}'
    )
    await receiver.handle_frame(b"12345")
    await receiver.handle_frame(
        '{"type": "file-complete", "file": {"id": "r1", "name": "a.bin", "size": 10}}'
    )

    final = events.named("transfer_state")[-1]
    assert final["state"] == "failed"
    assert final["error_message"] == "Received 5 of 10 bytes"
    assert receiver.received_files == []


@pytest.mark.asyncio
async def test_frames_past_the_declared_size_fail_the_receive():
    a, b = channel_pair()
    receiver = TransferEngine(PREMIUM)
    receiver.attach(b)
    events = EventLog()
    receiver.on_event(events)

    a.send('{"type": "file-info", "file": {"id": "r1", "name": "a.bin", "size": 10}}')
    for _ in range(5):
        a.send(b"x" * 100)

    await wait_for(lambda: any(e["state"] == "failed" for e in events.named("transfer_state")))
    failed = events.named("transfer_state")[-1]
    assert failed["error_message"] == "Overflow: more than 10 bytes received"
    assert failed["transferred_bytes"] == 0
    assert failed["progress_percent"] <= 100.0
    assert receiver.incoming_record("r1") is None

    reply = json.loads(await asyncio.wait_for(a.receive(), 1))
    assert reply == {"type": "file-cancelled", "file": {"id": "r1"}}
    await asyncio.sleep(0.05)
    assert len(events.named("transfer_state")) == 2


@pytest.mark.asyncio
async def test_oversized_incoming_file_is_refused():
    a, b = channel_pair()
    receiver = TransferEngine(PREMIUM, max_file_size=1024)
    receiver.attach(b)
    events = EventLog()
    receiver.on_event(events)

    a.send('{"type": "file-info", "file": {"id": "big", "name": "huge.iso", "size": 4096}}')
    a.send(b"x" * 100)

    reply = json.loads(await asyncio.wait_for(a.receive(), 1))
    assert reply == {"type": "file-cancelled", "file": {"id": "big"}}
    await asyncio.sleep(0.05)

    [refused] = events.named("transfer_state")
    assert refused["state"] == "failed"
    assert refused["error_message"] == "File too large"
    assert receiver.incoming_record("big") is None


@pytest.mark.asyncio
async def test_finished_sends_and_drained_files_are_released():
    source = InMemoryFile("a.txt", b"abc")
    _, _, sender, receiver = pair()

    assert await sender.send_file(source, outgoing(source))
    assert not sender.is_started("t1")
    await wait_for(lambda: receiver.received_files)

    drained = receiver.drain_received()
    assert [f.data for f in drained] == [b"abc"]
    assert receiver.received_files == []


@pytest.mark.asyncio
async def test_stray_frames_are_ignored():
    receiver = TransferEngine(PREMIUM)
    events = EventLog()
    receiver.on_event(events)

    await receiver.handle_frame(b"orphan chunk")
    await receiver.handle_frame("not json")
    await receiver.handle_frame('{"type": "file-exploded", "file": {"id": "x"}}')

    assert events.events == []


@pytest.mark.asyncio
async def test_received_file_is_saved_without_overwriting(tmp_path):
    (tmp_path / "photo.png").write_bytes(b"old")
    source = InMemoryFile("photo.png", b"new picture")
    a, b = channel_pair()
    sender = TransferEngine(PREMIUM)
    sender.attach(a)
    receiver = TransferEngine(PREMIUM, save_dir=str(tmp_path))
    receiver.attach(b)

    await sender.send_file(source, outgoing(source))
    await wait_for(lambda: receiver.received_files)

    saved = receiver.received_files[0].saved_path
    assert saved == str(tmp_path / "photo (1).png")
    assert (tmp_path / "photo (1).png").read_bytes() == b"new picture"
    assert (tmp_path / "photo.png").read_bytes() == b"old"
