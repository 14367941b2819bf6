from __future__ import annotations

import asyncio
import logging
import random
import struct

import pytest

from aiolibrespot.exceptions import (
    AudioKeyDeniedError,
    ChannelExhaustedError,
    KeyRequestTimeoutError,
    SessionClosedError,
    TransportSendError,
)
from aiolibrespot.models.types import ChannelState, PacketType
from aiolibrespot.player import MAX_CHANNEL_ID, Player, SessionSequence

from .conftest import FILE_ID, TRACK_ID, FakePacketStream, wait_sent


def _sequence_of(payload: bytes) -> int:
    return struct.unpack_from(">I", payload)[0]


def _key_response(sequence: int, key: bytes) -> bytes:
    return struct.pack(">I", sequence) + key


@pytest.mark.asyncio
async def test_request_key_receives_matching_key(stream: FakePacketStream) -> None:
    player = Player(stream)
    task = asyncio.create_task(player.request_key(TRACK_ID, FILE_ID))
    await wait_sent(stream, 1)

    cmd, payload = stream.sent[0]
    assert cmd == PacketType.REQUEST_KEY
    assert payload[4:20] == TRACK_ID
    assert payload[20:40] == FILE_ID
    assert player.pending_key_requests == 1

    stream.deliver(PacketType.AES_KEY, _key_response(_sequence_of(payload), bytes(range(16))))
    assert await task == bytes(range(16))
    assert player.pending_key_requests == 0


@pytest.mark.asyncio
async def test_concurrent_key_requests_routed_by_sequence(stream: FakePacketStream) -> None:
    player = Player(stream, SessionSequence(start=1000))
    tasks = [asyncio.create_task(player.request_key(TRACK_ID, FILE_ID)) for _ in range(20)]
    await wait_sent(stream, 20)

    sequences = [_sequence_of(payload) for _, payload in stream.sent]
    assert len(set(sequences)) == 20
    shuffled = sequences[:]
    random.Random(4).shuffle(shuffled)
    for sequence in shuffled:
        stream.deliver(PacketType.AES_KEY, _key_response(sequence, sequence.to_bytes(16, "big")))

    results = await asyncio.gather(*tasks)
    assert results == [sequence.to_bytes(16, "big") for sequence in sequences]
    assert player.pending_key_requests == 0


@pytest.mark.asyncio
async def test_unmatched_key_response_is_dropped(
    stream: FakePacketStream, caplog: pytest.LogCaptureFixture
) -> None:
    player = Player(stream)
    task = asyncio.create_task(player.request_key(TRACK_ID, FILE_ID))
    await wait_sent(stream, 1)
    sequence = _sequence_of(stream.sent[0][1])

    with caplog.at_level(logging.WARNING):
        stream.deliver(PacketType.AES_KEY, _key_response(sequence + 50, bytes(16)))
    assert "unknown sequence" in caplog.text
    assert player.pending_key_requests == 1
    assert not task.done()

    stream.deliver(PacketType.AES_KEY, _key_response(sequence, b"k" * 16))
    assert await task == b"k" * 16


@pytest.mark.asyncio
async def test_key_error_frame_denies_waiter(stream: FakePacketStream) -> None:
    player = Player(stream)
    task = asyncio.create_task(player.request_key(TRACK_ID, FILE_ID))
    await wait_sent(stream, 1)
    sequence = _sequence_of(stream.sent[0][1])

    stream.deliver(PacketType.AES_KEY_ERROR, struct.pack(">IH", sequence, 0x0002))
    with pytest.raises(AudioKeyDeniedError) as exc_info:
        await task
    assert exc_info.value.sequence == sequence
    assert exc_info.value.code == 0x0002
    assert player.pending_key_requests == 0


@pytest.mark.asyncio
async def test_late_response_after_timeout_is_not_misdelivered(stream: FakePacketStream) -> None:
    player = Player(stream)
    with pytest.raises(KeyRequestTimeoutError):
        await player.request_key(TRACK_ID, FILE_ID, timeout=0.01)
    assert player.pending_key_requests == 0
    stale_sequence = _sequence_of(stream.sent[0][1])

    task = asyncio.create_task(player.request_key(TRACK_ID, FILE_ID))
    await wait_sent(stream, 2)
    fresh_sequence = _sequence_of(stream.sent[1][1])
    assert fresh_sequence != stale_sequence

    stream.deliver(PacketType.AES_KEY, _key_response(stale_sequence, b"s" * 16))
    assert not task.done()
    stream.deliver(PacketType.AES_KEY, _key_response(fresh_sequence, b"f" * 16))
    assert await task == b"f" * 16


@pytest.mark.asyncio
async def test_cancelled_key_request_removes_slot(stream: FakePacketStream) -> None:
    player = Player(stream)
    task = asyncio.create_task(player.request_key(TRACK_ID, FILE_ID))
    await wait_sent(stream, 1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert player.pending_key_requests == 0
    stream.deliver(PacketType.AES_KEY, _key_response(_sequence_of(stream.sent[0][1]), bytes(16)))


@pytest.mark.asyncio
async def test_send_failure_leaves_no_slot(stream: FakePacketStream) -> None:
    player = Player(stream)
    stream.fail_with = ConnectionError("broken pipe")
    with pytest.raises(TransportSendError) as exc_info:
        await player.request_key(TRACK_ID, FILE_ID)
    assert isinstance(exc_info.value.__cause__, ConnectionError)
    assert player.pending_key_requests == 0


@pytest.mark.asyncio
async def test_allocated_channel_ids_are_unique(stream: FakePacketStream) -> None:
    player = Player(stream)
    channels = [player.allocate_channel() for _ in range(5)]
    assert [channel.id for channel in channels] == [0, 1, 2, 3, 4]
    assert player.open_channels == 5

    player.release_channel(channels[2])
    player.release_channel(channels[2])
    assert player.open_channels == 4
    assert player.allocate_channel().id == 5


@pytest.mark.asyncio
async def test_channel_ids_wrap_and_skip_open_ids(stream: FakePacketStream) -> None:
    player = Player(stream)
    first = player.allocate_channel()
    second = player.allocate_channel()
    assert (first.id, second.id) == (0, 1)

    player._next_channel_id = MAX_CHANNEL_ID  # noqa: SLF001
    last = player.allocate_channel()
    assert last.id == MAX_CHANNEL_ID
    assert player.allocate_channel().id == 2

    first.fail(SessionClosedError("done"))
    player._next_channel_id = MAX_CHANNEL_ID  # noqa: SLF001
    assert player.allocate_channel().id == 0


@pytest.mark.asyncio
async def test_channel_ids_exhausted(stream: FakePacketStream) -> None:
    player = Player(stream)
    for _ in range(MAX_CHANNEL_ID + 1):
        player.allocate_channel()
    with pytest.raises(ChannelExhaustedError):
        player.allocate_channel()


@pytest.mark.asyncio
async def test_chunk_frames_complete_channel_once(stream: FakePacketStream) -> None:
    player = Player(stream)
    released: list[int] = []
    release = player.release_channel

    def _spy(channel) -> None:
        released.append(channel.id)
        release(channel)

    player.release_channel = _spy  # type: ignore[method-assign]
    channel = player.allocate_channel()
    assert channel.id == 0

    stream.deliver(PacketType.STREAM_CHUNK_RES, b"\x00\x00AB")
    stream.deliver(PacketType.STREAM_CHUNK_RES, b"\x00\x00")

    assert channel.state is ChannelState.COMPLETE
    assert channel.data == b"AB"
    assert released == [0]
    assert player.open_channels == 0
    assert await channel.wait_complete(timeout=1) == b"AB"


@pytest.mark.asyncio
async def test_chunk_for_unknown_channel_is_dropped(
    stream: FakePacketStream, caplog: pytest.LogCaptureFixture
) -> None:
    player = Player(stream)
    channel = player.allocate_channel()
    with caplog.at_level(logging.WARNING):
        stream.deliver(PacketType.STREAM_CHUNK_RES, b"\x00\x07data")
    assert "unknown channel 7" in caplog.text
    assert player.open_channels == 1
    assert channel.state is ChannelState.OPEN
    assert channel.data == b""


@pytest.mark.asyncio
async def test_malformed_and_unhandled_frames_are_dropped(stream: FakePacketStream) -> None:
    player = Player(stream)
    task = asyncio.create_task(player.request_key(TRACK_ID, FILE_ID))
    await wait_sent(stream, 1)

    stream.deliver(PacketType.AES_KEY, b"\x00\x00\x00")
    stream.deliver(PacketType.AES_KEY_ERROR, b"\x00")
    stream.deliver(PacketType.STREAM_CHUNK_RES, b"\x00")
    stream.deliver(0x4A, b"pong")
    stream.deliver(PacketType.REQUEST_KEY, b"")

    assert player.pending_key_requests == 1
    assert not task.done()
    stream.deliver(PacketType.AES_KEY, _key_response(_sequence_of(stream.sent[0][1]), bytes(16)))
    assert await task == bytes(16)


@pytest.mark.asyncio
async def test_request_chunk_send_failure_releases_channel(stream: FakePacketStream) -> None:
    player = Player(stream)
    channel = player.allocate_channel()
    stream.fail_with = ConnectionError("reset")
    with pytest.raises(TransportSendError):
        await player.request_chunk(channel, FILE_ID, 0, 16)
    assert channel.state is ChannelState.FAILED
    assert player.open_channels == 0


@pytest.mark.asyncio
async def test_request_chunk_sends_channel_tagged_frame(stream: FakePacketStream) -> None:
    player = Player(stream)
    player.allocate_channel()
    channel = player.allocate_channel()
    await player.request_chunk(channel, FILE_ID, 16, 32)
    cmd, payload = stream.sent[0]
    assert cmd == PacketType.STREAM_CHUNK
    assert payload[:2] == b"\x00\x01"
    assert struct.unpack(">II", payload[38:]) == (16, 32)


@pytest.mark.asyncio
async def test_disconnect_fails_all_waiters(stream: FakePacketStream) -> None:
    player = Player(stream)
    task = asyncio.create_task(player.request_key(TRACK_ID, FILE_ID))
    await wait_sent(stream, 1)
    channel = player.allocate_channel()

    stream.disconnect()
    assert player.closed
    with pytest.raises(SessionClosedError):
        await task
    with pytest.raises(SessionClosedError):
        await channel.wait_complete()
    assert player.pending_key_requests == 0
    assert player.open_channels == 0

    with pytest.raises(SessionClosedError):
        await player.request_key(TRACK_ID, FILE_ID)
    with pytest.raises(SessionClosedError):
        player.allocate_channel()
    player.close()


@pytest.mark.asyncio
async def test_close_reason_reaches_every_waiter(stream: FakePacketStream) -> None:
    player = Player(stream)
    tasks = [asyncio.create_task(player.request_key(TRACK_ID, FILE_ID)) for _ in range(2)]
    await wait_sent(stream, 2)
    channel = player.allocate_channel()

    player.close("access point lost")
    errors = await asyncio.gather(*tasks, return_exceptions=True)
    assert all(isinstance(err, SessionClosedError) for err in errors)
    assert all(str(err) == "access point lost" for err in errors)
    assert errors[0] is not errors[1]
    with pytest.raises(SessionClosedError, match="access point lost"):
        await channel.wait_complete()
