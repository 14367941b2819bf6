from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest

TRACK_ID = bytes(range(0x10, 0x20))
FILE_ID = bytes(range(0x40, 0x54))


class FakePacketStream:
    """In-memory PacketStream recording sent frames."""

    def __init__(self) -> None:
        self.sent: list[tuple[int, bytes]] = []
        self.handler: Callable[[int, bytes], None] | None = None
        self.responder: Callable[[int, bytes], None] | None = None
        self.fail_with: Exception | None = None
        self._disconnect_callbacks: list[Callable[[], None]] = []

    async def send(self, cmd: int, payload: bytes) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((cmd, payload))
        if self.responder is not None:
            self.responder(cmd, payload)

    def set_packet_handler(self, handler: Callable[[int, bytes], None] | None) -> None:
        self.handler = handler

    def add_disconnect_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._disconnect_callbacks.append(callback)
        return lambda: (
            self._disconnect_callbacks.remove(callback)
            if callback in self._disconnect_callbacks
            else None
        )

    def deliver(self, cmd: int, payload: bytes) -> None:
        assert self.handler is not None
        self.handler(cmd, payload)

    def disconnect(self) -> None:
        for callback in list(self._disconnect_callbacks):
            callback()


async def wait_sent(stream: FakePacketStream, count: int) -> None:
    for _ in range(100):
        if len(stream.sent) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} frames, got {len(stream.sent)}")


@pytest.fixture
def stream() -> FakePacketStream:
    return FakePacketStream()
