import asyncio

import pytest

from conftest import EventLog, wait_for
from peer.loopback import channel_pair
from signaling.models import Tier
from transfer.channel import ChannelNotReadyError
from transfer.engine import TransferEngine
from transfer.manager import TransferOrchestrator
from transfer.models import TransferDirection, TransferState
from transfer.source import FileSource, InMemoryFile
from transfer.throttle import ThroughputBudget


class VanishedFile(FileSource):
    name = "vanished.txt"
    size = 12
    type = "text/plain"
    last_modified = 0.0

    def open(self):
        raise FileNotFoundError(self.name)


def connected(tier: Tier = Tier.PREMIUM, chunk_size: int = 32768):
    a, b = channel_pair()
    sender = TransferEngine(ThroughputBudget.for_tier(tier), chunk_size=chunk_size)
    sender.attach(a)
    receiver = TransferEngine(ThroughputBudget.for_tier(tier), chunk_size=chunk_size)
    receiver.attach(b)
    orchestrator = TransferOrchestrator(sender, inter_file_delay=0)
    return orchestrator, receiver


@pytest.mark.asyncio
async def test_same_file_keeps_its_id_while_pending():
    orchestrator, _ = connected()
    photo = InMemoryFile("photo.png", b"p" * 1000, last_modified=1.0)

    first = await orchestrator.enqueue([photo])
    again = await orchestrator.enqueue([photo])

    assert first == again
    assert len(orchestrator.get_transfers()) == 1
    await orchestrator.wait_idle()


@pytest.mark.asyncio
async def test_cancelled_id_is_not_reused():
    orchestrator, _ = connected()
    photo = InMemoryFile("photo.png", b"p" * 1000, last_modified=1.0)

    [first] = await orchestrator.enqueue([photo])
    await orchestrator.cancel(first)
    assert orchestrator.get(first).state == TransferState.CANCELLED

    [second] = await orchestrator.enqueue([photo])
    assert second != first
    assert orchestrator.get(first).state == TransferState.CANCELLED
    await orchestrator.wait_idle()
    assert orchestrator.get(second).state == TransferState.COMPLETED


@pytest.mark.asyncio
async def test_completed_id_is_not_reused():
    orchestrator, receiver = connected()
    photo = InMemoryFile("photo.png", b"p" * 1000, last_modified=1.0)

    [first] = await orchestrator.enqueue([photo])
    await orchestrator.wait_idle()
    [second] = await orchestrator.enqueue([photo])
    await orchestrator.wait_idle()

    assert first != second
    await wait_for(lambda: len(receiver.received_files) == 2)
    assert [f.transfer_id for f in receiver.received_files] == [first, second]


@pytest.mark.asyncio
async def test_retry_mints_a_fresh_id():
    orchestrator, receiver = connected()
    photo = InMemoryFile("photo.png", b"p" * 1000, last_modified=1.0)

    [first] = await orchestrator.enqueue([photo])
    await orchestrator.cancel(first)
    assert await orchestrator.retry(first) not in (None, first)

    completed = InMemoryFile("done.txt", b"d")
    [done] = await orchestrator.enqueue([completed])
    await orchestrator.wait_idle()
    assert await orchestrator.retry(done) is None


@pytest.mark.asyncio
async def test_files_queued_mid_send_join_the_running_batch():
    orchestrator, receiver = connected(tier=Tier.AUTHENTICATED)
    events = EventLog()
    orchestrator.on_event(events)
    big = InMemoryFile("video.mp4", b"v" * 256 * 1024)
    small = InMemoryFile("note.txt", b"hello")

    [big_id] = await orchestrator.enqueue([big])
    await wait_for(lambda: orchestrator.get(big_id).state == TransferState.SENDING)
    [small_id] = await orchestrator.enqueue([small])

    assert orchestrator.get(small_id).state == TransferState.QUEUED
    assert orchestrator.queued_ids == [small_id]
    assert orchestrator.is_sending

    await orchestrator.wait_idle()
    await wait_for(lambda: len(receiver.received_files) == 2)
    assert [f.name for f in receiver.received_files] == ["video.mp4", "note.txt"]
    assert {"type": "success", "message": "Files sent (2)"} in events.named("notification")


@pytest.mark.asyncio
async def test_file_queued_as_the_batch_finishes_is_still_sent():
    orchestrator, receiver = connected()
    late = InMemoryFile("two.txt", b"second")
    late_ids = []

    async def enqueue_when_batch_reports(event_type, data):
        if event_type == "notification" and data["message"] == "Files sent (1)" and not late_ids:
            late_ids.extend(await orchestrator.enqueue([late]))

    orchestrator.on_event(enqueue_when_batch_reports)
    await orchestrator.enqueue([InMemoryFile("one.txt", b"first")])
    await wait_for(lambda: late_ids)
    await orchestrator.wait_idle()

    assert orchestrator.get(late_ids[0]).state == TransferState.COMPLETED
    assert orchestrator.queued_ids == []
    await wait_for(lambda: len(receiver.received_files) == 2)
    assert [f.name for f in receiver.received_files] == ["one.txt", "two.txt"]


@pytest.mark.asyncio
async def test_disconnect_while_paused_frees_the_queue():
    a, b = channel_pair()
    sender = TransferEngine(ThroughputBudget.for_tier(Tier.PREMIUM), chunk_size=4096)
    sender.attach(a)
    receiver = TransferEngine(ThroughputBudget.for_tier(Tier.PREMIUM), chunk_size=4096)
    receiver.attach(b)
    orchestrator = TransferOrchestrator(sender, inter_file_delay=0)
    paused = []

    async def pause_on_first_progress(event_type, data):
        if event_type == "transfer_progress" and not paused:
            paused.append(data["transfer_id"])
            await orchestrator.pause(data["transfer_id"])

    orchestrator.on_event(pause_on_first_progress)
    [big_id, next_id] = await orchestrator.enqueue([
        InMemoryFile("big.bin", b"b" * 200_000),
        InMemoryFile("next.bin", b"n" * 10),
    ])
    await wait_for(lambda: orchestrator.get(big_id).state == TransferState.PAUSED)
    a.drop()

    await asyncio.wait_for(orchestrator.wait_idle(), 2)
    assert not orchestrator.is_sending
    assert orchestrator.get(big_id).state == TransferState.FAILED
    assert orchestrator.get(next_id).state == TransferState.QUEUED
    assert orchestrator.queued_ids == [next_id]


@pytest.mark.asyncio
async def test_unreadable_file_fails_alone():
    orchestrator, receiver = connected()
    good = InMemoryFile("good.txt", b"fine")

    [bad_id, good_id] = await orchestrator.enqueue([VanishedFile(), good])
    await orchestrator.wait_idle()

    assert orchestrator.get(bad_id).state == TransferState.FAILED
    assert orchestrator.get(good_id).state == TransferState.COMPLETED
    await wait_for(lambda: receiver.received_files)
    assert [f.name for f in receiver.received_files] == ["good.txt"]


@pytest.mark.asyncio
async def test_enqueue_without_channel_is_refused():
    engine = TransferEngine(ThroughputBudget.for_tier(Tier.PREMIUM))
    orchestrator = TransferOrchestrator(engine, inter_file_delay=0)

    with pytest.raises(ChannelNotReadyError):
        await orchestrator.enqueue([InMemoryFile("a.txt", b"a")])
    assert orchestrator.get_transfers() == []


@pytest.mark.asyncio
async def test_oversized_file_is_rejected():
    a, _ = channel_pair()
    engine = TransferEngine(ThroughputBudget.for_tier(Tier.PREMIUM))
    engine.attach(a)
    orchestrator = TransferOrchestrator(engine, inter_file_delay=0, max_file_size=10)
    events = EventLog()
    orchestrator.on_event(events)

    assert await orchestrator.enqueue([InMemoryFile("huge.iso", b"x" * 11)]) == []
    assert events.named("notification") == [
        {"type": "error", "message": "File 'huge.iso' is too large."}
    ]


@pytest.mark.asyncio
async def test_cancelled_queued_file_never_reaches_the_peer():
    orchestrator, receiver = connected()
    first = InMemoryFile("first.txt", b"1" * 100)
    second = InMemoryFile("second.txt", b"2" * 100)

    [first_id, second_id] = await orchestrator.enqueue([first, second])
    await orchestrator.cancel(second_id)
    await orchestrator.wait_idle()

    await wait_for(lambda: receiver.received_files)
    assert [f.name for f in receiver.received_files] == ["first.txt"]
    assert receiver.incoming_record(second_id) is None
    assert not orchestrator._engine.is_started(second_id)


@pytest.mark.asyncio
async def test_pause_queued_then_resume():
    orchestrator, receiver = connected()
    data = b"q" * 50_000
    [transfer_id] = await orchestrator.enqueue([InMemoryFile("queued.bin", data)])

    await orchestrator.pause(transfer_id)
    assert orchestrator.get(transfer_id).state == TransferState.PAUSED
    await wait_for(lambda: receiver.incoming_record(transfer_id) is not None)
    await wait_for(lambda: receiver.incoming_record(transfer_id).state == TransferState.PAUSED)

    await orchestrator.resume(transfer_id)
    assert orchestrator.get(transfer_id).state == TransferState.SENDING
    await orchestrator.wait_idle()

    assert orchestrator.get(transfer_id).state == TransferState.COMPLETED
    await wait_for(lambda: receiver.received_files)
    assert receiver.received_files[0].data == data


@pytest.mark.asyncio
async def test_cancel_all_and_clear_cancelled():
    orchestrator, _ = connected()
    files = [InMemoryFile(f"f{i}.txt", b"x" * 10, last_modified=1.0) for i in range(3)]

    ids = await orchestrator.enqueue(files)
    await orchestrator.cancel_all()
    await orchestrator.wait_idle()

    assert all(orchestrator.get(i).state == TransferState.CANCELLED for i in ids)
    assert await orchestrator.clear_cancelled() == 3
    assert orchestrator.get_transfers() == []

    # Cleared files may be queued again
    assert len(await orchestrator.enqueue(files[:1])) == 1
    await orchestrator.wait_idle()


@pytest.mark.asyncio
async def test_receiving_side_tracks_incoming_records():
    a, b = channel_pair()
    sender = TransferEngine(ThroughputBudget.for_tier(Tier.PREMIUM))
    sender.attach(a)
    receiver_engine = TransferEngine(ThroughputBudget.for_tier(Tier.PREMIUM))
    receiver_engine.attach(b)
    sending = TransferOrchestrator(sender, inter_file_delay=0)
    receiving = TransferOrchestrator(receiver_engine, inter_file_delay=0)
    events = EventLog()
    receiving.on_event(events)

    [transfer_id] = await sending.enqueue([InMemoryFile("doc.pdf", b"%PDF" * 100)])
    await sending.wait_idle()
    await wait_for(lambda: receiving.get(transfer_id) is not None
                   and receiving.get(transfer_id).state == TransferState.COMPLETED)

    record = receiving.get(transfer_id)
    assert record.direction == TransferDirection.RECEIVING
    assert {"type": "success", "message": "'doc.pdf' received successfully!"} in events.named("notification")
    assert events.named("file_received")[0]["name"] == "doc.pdf"
