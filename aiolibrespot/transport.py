"""Packet transport carrying command-tagged frames over a WebSocket."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from typing import Protocol

from aiohttp import ClientSession, ClientWebSocketResponse, WSMessage, WSMsgType

logger = logging.getLogger(__name__)

# Callback invoked with (command byte, payload) for every inbound frame.
PacketHandler = Callable[[int, bytes], None]

# Callback invoked when the transport disconnects.
DisconnectCallback = Callable[[], None]


class PacketStream(Protocol):
    """Ordered, reliable packet transport used by a Player."""

    async def send(self, cmd: int, payload: bytes) -> None:
        """Send one frame; raises if the frame could not be sent."""

    def set_packet_handler(self, handler: PacketHandler | None) -> None:
        """Set the callback receiving every inbound frame in arrival order."""

    def add_disconnect_listener(self, callback: DisconnectCallback) -> Callable[[], None]:
        """Add a listener for disconnects; returns a function removing it."""


class WebSocketPacketStream:
    """
    PacketStream over an aiohttp WebSocket.

    Each binary message holds one frame: command byte followed by the
    payload. A single reader task hands frames to the packet handler one at
    a time, so the handler is never re-entered.
    """

    _session: ClientSession | None
    """Optional aiohttp ClientSession for the WebSocket connection."""
    _owns_session: bool
    """Whether this stream owns and should close the session."""
    _ws: ClientWebSocketResponse | None = None
    """WebSocket connection to the server."""
    _reader_task: asyncio.Task[None] | None = None
    """Background task reading frames from the server."""
    _send_lock: asyncio.Lock
    """Lock for serializing WebSocket sends."""
    _handler: PacketHandler | None = None
    """Receiver of inbound frames."""
    _disconnect_callbacks: list[DisconnectCallback]
    """Callbacks invoked when the stream disconnects."""
    _connected: bool = False
    """Whether the stream is currently connected."""

    def __init__(self, session: ClientSession | None = None) -> None:
        """
        Create a packet stream.

        Args:
            session: Optional aiohttp ClientSession. If None, a session is
                created and managed by this stream.
        """
        self._session = session
        self._owns_session = session is None
        self._send_lock = asyncio.Lock()
        self._disconnect_callbacks = []

    @property
    def connected(self) -> bool:
        """Return True if the stream currently has an open WebSocket."""
        return self._connected and self._ws is not None and not self._ws.closed

    async def connect(self, url: str) -> None:
        """Connect to a server via WebSocket and start reading frames."""
        if self.connected:
            logger.debug("Already connected")
            return
        if self._session is None:
            self._session = ClientSession()

        logger.info("Connecting packet stream to %s", url)
        self._ws = await self._session.ws_connect(url, heartbeat=30)
        self._start()

    async def disconnect(self) -> None:
        """Close the connection and notify disconnect listeners."""
        if not self._connected:
            return
        self._connected = False
        current_task = asyncio.current_task()

        if self._reader_task is not None:
            if self._reader_task is not current_task:
                self._reader_task.cancel()
                with suppress(asyncio.CancelledError):
                    await self._reader_task
            self._reader_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        logger.info("Packet stream disconnected")
        self._notify_disconnect()

    async def send(self, cmd: int, payload: bytes) -> None:
        """Send one frame."""
        if not 0 <= cmd <= 0xFF:
            raise ValueError(f"Command must fit in one byte, got {cmd}")
        if not self.connected or self._ws is None:
            raise ConnectionError("Packet stream is not connected")
        async with self._send_lock:
            await self._ws.send_bytes(bytes((cmd,)) + payload)

    def set_packet_handler(self, handler: PacketHandler | None) -> None:
        """Set the callback receiving every inbound frame."""
        self._handler = handler

    def add_disconnect_listener(self, callback: DisconnectCallback) -> Callable[[], None]:
        """Add a listener for disconnect events.

        Returns:
            A function that removes this listener when called.
        """
        self._disconnect_callbacks.append(callback)
        return lambda: (
            self._disconnect_callbacks.remove(callback)
            if callback in self._disconnect_callbacks
            else None
        )

    def _start(self) -> None:
        self._connected = True
        self._reader_task = asyncio.create_task(self._reader_loop())

    async def _reader_loop(self) -> None:
        assert self._ws is not None
        try:
            async for msg in self._ws:
                await self._handle_ws_message(msg)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Packet stream reader encountered an error")
        finally:
            if self._connected:
                await self.disconnect()

    async def _handle_ws_message(self, msg: WSMessage) -> None:
        if msg.type is WSMsgType.BINARY:
            self._handle_frame(msg.data)
        elif msg.type is WSMsgType.TEXT:
            logger.debug("Ignoring text message of %d characters", len(msg.data))
        elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
            logger.info("WebSocket closed by server")
            await self.disconnect()
        elif msg.type is WSMsgType.ERROR:
            logger.error("WebSocket error: %s", self._ws.exception() if self._ws else "unknown")
            await self.disconnect()

    def _handle_frame(self, data: bytes) -> None:
        if not data:
            logger.warning("Dropping empty frame")
            return
        if self._handler is None:
            logger.debug("No packet handler, dropping command 0x%02x", data[0])
            return
        try:
            self._handler(data[0], data[1:])
        except Exception:
            logger.exception("Error in packet handler %s", self._handler)

    def _notify_disconnect(self) -> None:
        for callback in list(self._disconnect_callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Error in disconnect callback %s", callback)
