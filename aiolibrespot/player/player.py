"""Player: routes key and chunk responses back to whoever is waiting for them."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from aiolibrespot.exceptions import (
    AudioKeyDeniedError,
    ChannelExhaustedError,
    KeyRequestTimeoutError,
    LibrespotError,
    MalformedFrameError,
    SessionClosedError,
    TransportSendError,
)
from aiolibrespot.models import (
    pack_chunk_request,
    pack_key_request,
    unpack_chunk_response,
    unpack_key_error,
    unpack_key_response,
)
from aiolibrespot.models.config import PlayerConfig
from aiolibrespot.models.types import AudioFormat, PacketType

from .audio_file import AudioFile
from .channel import Channel, DataCallback, HeaderCallback
from .sequence import SequenceProvider, SessionSequence

if TYPE_CHECKING:
    from aiolibrespot.transport import PacketStream

logger = logging.getLogger(__name__)

MAX_CHANNEL_ID = 0xFFFF


class Player:
    """
    Dispatcher and correlation registry for audio downloads.

    Owns two independent tables: open channels by 16-bit channel id and
    pending key requests by sequence number. Both are only touched from the
    event loop the Player was created in, so lookups and mutations between
    two awaits are atomic.
    """

    _loop: asyncio.AbstractEventLoop
    """Event loop for this player."""
    _transport: PacketStream
    """Packet stream shared by every download."""
    _sequence: SequenceProvider
    """Source of key request sequence numbers."""
    _config: PlayerConfig
    """Timeouts and chunking parameters."""
    _channels: dict[int, Channel]
    """Open channels by channel id."""
    _pending_keys: dict[int, asyncio.Future[bytes]]
    """Key request waiters by sequence number."""
    _next_channel_id: int = 0
    """Where the search for a free channel id starts."""
    _closed: bool = False
    """Whether the session has gone away."""

    def __init__(
        self,
        transport: PacketStream,
        sequence: SequenceProvider | None = None,
        *,
        config: PlayerConfig | None = None,
    ) -> None:
        """
        Create a player on top of a packet stream.

        Must be called from within a running event loop. The player registers
        itself as the packet handler and as a disconnect listener of the
        transport.

        Args:
            transport: Packet stream used for requests and delivering responses.
            sequence: Provider of key request sequence numbers. Defaults to a
                fresh SessionSequence.
            config: Timeouts and chunk parameters. Defaults to PlayerConfig().
        """
        self._loop = asyncio.get_running_loop()
        self._transport = transport
        self._sequence = sequence if sequence is not None else SessionSequence()
        self._config = config if config is not None else PlayerConfig()
        self._channels = {}
        self._pending_keys = {}
        self._logger = logger
        transport.set_packet_handler(self.dispatch)
        self._remove_disconnect_listener = transport.add_disconnect_listener(self.close)

    @property
    def config(self) -> PlayerConfig:
        """Configuration of this player."""
        return self._config

    @property
    def closed(self) -> bool:
        """Return True once the session was closed."""
        return self._closed

    @property
    def open_channels(self) -> int:
        """Number of channels currently open."""
        return len(self._channels)

    @property
    def pending_key_requests(self) -> int:
        """Number of key requests waiting for a response."""
        return len(self._pending_keys)

    async def load_track(
        self, file_id: bytes, audio_format: AudioFormat, track_id: bytes
    ) -> AudioFile:
        """
        Start downloading an audio file and fetch its key.

        The chunk download runs in the background while the key is requested.
        A failed key request does not stop the download; it is recorded on
        the returned file and surfaces when decrypted data is read.
        """
        self._ensure_open()
        audio_file = AudioFile(file_id, audio_format, track_id, self, config=self._config)
        audio_file.start_download()
        try:
            await audio_file.load_key()
        except LibrespotError as err:
            self._logger.warning("Loading key for file %s failed: %s", file_id.hex(), err)
        return audio_file

    def allocate_channel(
        self,
        *,
        on_header: HeaderCallback | None = None,
        on_data: DataCallback | None = None,
    ) -> Channel:
        """
        Reserve a free channel id and register a new channel for it.

        Ids are handed out in increasing order, wrapping at 16 bits and
        skipping ids still held by open channels.

        Raises:
            ChannelExhaustedError: If all 65536 channel ids are in use.
            SessionClosedError: If the session was closed.
        """
        self._ensure_open()
        if len(self._channels) > MAX_CHANNEL_ID:
            raise ChannelExhaustedError("All channel ids are in use")

        channel_id = self._next_channel_id
        while channel_id in self._channels:
            channel_id = (channel_id + 1) & MAX_CHANNEL_ID
        self._next_channel_id = (channel_id + 1) & MAX_CHANNEL_ID

        channel = Channel(
            channel_id,
            self.release_channel,
            on_header=on_header,
            on_data=on_data,
        )
        self._channels[channel_id] = channel
        self._logger.debug("Allocated channel %d", channel_id)
        return channel

    def release_channel(self, channel: Channel) -> None:
        """Remove a channel from the table; releasing twice is a no-op."""
        if self._channels.get(channel.id) is channel:
            del self._channels[channel.id]
            self._logger.debug("Released channel %d", channel.id)

    async def request_key(
        self, track_id: bytes, file_id: bytes, *, timeout: float | None = None
    ) -> bytes:
        """
        Request the 16-byte audio key of a file.

        The waiter is registered before the request is sent so a fast
        response always finds it. Only the calling task waits; the dispatch
        path keeps running.

        Args:
            track_id: 16-byte track identifier.
            file_id: 20-byte file identifier.
            timeout: Seconds to wait, defaults to config.key_timeout.

        Raises:
            TransportSendError: If the request could not be sent.
            AudioKeyDeniedError: If the server refused the key.
            KeyRequestTimeoutError: If no response arrived in time.
            SessionClosedError: If the session closed while waiting.
        """
        self._ensure_open()
        sequence = self._sequence.next_sequence()
        if sequence in self._pending_keys:
            raise RuntimeError(f"Sequence {sequence} is already pending")
        payload = pack_key_request(sequence, track_id, file_id)
        if timeout is None:
            timeout = self._config.key_timeout

        future: asyncio.Future[bytes] = self._loop.create_future()
        self._pending_keys[sequence] = future
        try:
            try:
                await self._transport.send(PacketType.REQUEST_KEY, payload)
            except Exception as err:
                raise TransportSendError(f"Failed to send key request {sequence}") from err
            self._logger.debug("Sent key request %d for file %s", sequence, file_id.hex())
            try:
                return await asyncio.wait_for(future, timeout)
            except TimeoutError as err:
                raise KeyRequestTimeoutError(
                    f"No response to key request {sequence} within {timeout}s"
                ) from err
        finally:
            if self._pending_keys.get(sequence) is future:
                del self._pending_keys[sequence]

    async def request_chunk(
        self, channel: Channel, file_id: bytes, start_word: int, end_word: int
    ) -> None:
        """
        Ask the server to stream the word range [start_word, end_word) on a channel.

        Raises:
            TransportSendError: If the request could not be sent. The channel
                is failed and released.
        """
        payload = pack_chunk_request(channel.id, file_id, start_word, end_word)
        try:
            await self._transport.send(PacketType.STREAM_CHUNK, payload)
        except Exception as err:
            send_err = TransportSendError(f"Failed to send chunk request on channel {channel.id}")
            channel.fail(send_err)
            raise send_err from err
        self._logger.debug(
            "Requested words %d..%d of file %s on channel %d",
            start_word,
            end_word,
            file_id.hex(),
            channel.id,
        )

    def dispatch(self, cmd: int, payload: bytes) -> None:
        """
        Route one inbound frame.

        Called by the transport for every received frame, in order and
        without re-entrancy. Never raises: frames nobody waits for and
        malformed frames are logged and dropped.
        """
        try:
            packet_type = PacketType(cmd)
        except ValueError:
            self._logger.debug("Ignoring unhandled command 0x%02x (%d bytes)", cmd, len(payload))
            return

        try:
            match packet_type:
                case PacketType.AES_KEY:
                    self._handle_key_response(payload)
                case PacketType.AES_KEY_ERROR:
                    self._handle_key_error(payload)
                case PacketType.STREAM_CHUNK_RES:
                    self._handle_chunk_response(payload)
                case PacketType.REQUEST_KEY | PacketType.STREAM_CHUNK:
                    self._logger.warning("Ignoring outbound-only command %s", packet_type.name)
        except MalformedFrameError as err:
            self._logger.warning("Dropping malformed %s frame: %s", packet_type.name, err)
        except Exception:
            self._logger.exception("Error handling %s frame", packet_type.name)

    def close(self, reason: str = "Session closed") -> None:
        """
        Fail every pending key request and open channel with SessionClosedError.

        Called when the transport disconnects. Closing twice is a no-op.
        """
        if self._closed:
            return
        self._closed = True
        self._remove_disconnect_listener()

        pending, self._pending_keys = self._pending_keys, {}
        channels = list(self._channels.values())
        self._logger.info(
            "Closing player: failing %d key requests and %d channels",
            len(pending),
            len(channels),
        )
        for future in pending.values():
            if not future.done():
                future.set_exception(SessionClosedError(reason))
        for channel in channels:
            channel.fail(SessionClosedError(reason))
        self._channels.clear()

    def _ensure_open(self) -> None:
        if self._closed:
            raise SessionClosedError("Player is closed")

    def _handle_key_response(self, payload: bytes) -> None:
        response = unpack_key_response(payload)
        future = self._pending_keys.pop(response.sequence, None)
        if future is None or future.done():
            self._logger.warning("Dropping key for unknown sequence %d", response.sequence)
            return
        self._logger.debug("Received key for sequence %d", response.sequence)
        future.set_result(response.key)

    def _handle_key_error(self, payload: bytes) -> None:
        error = unpack_key_error(payload)
        self._logger.warning("Audio key error for sequence %d: %s", error.sequence, payload.hex())
        future = self._pending_keys.pop(error.sequence, None)
        if future is None or future.done():
            self._logger.warning("Dropping key error for unknown sequence %d", error.sequence)
            return
        future.set_exception(AudioKeyDeniedError(error.sequence, error.code))

    def _handle_chunk_response(self, payload: bytes) -> None:
        response = unpack_chunk_response(payload)
        channel = self._channels.get(response.channel_id)
        if channel is None:
            self._logger.warning(
                "Dropping %d bytes for unknown channel %d",
                len(response.payload),
                response.channel_id,
            )
            return
        self._logger.debug(
            "Data on channel %d: %d bytes", response.channel_id, len(response.payload)
        )
        channel.handle_fragment(response.payload)
