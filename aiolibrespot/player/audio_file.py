"""AudioFile: key exchange and chunked download of one track file."""

from __future__ import annotations

import asyncio
import logging
import struct
from typing import TYPE_CHECKING

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from aiolibrespot.exceptions import (
    ChunkDownloadError,
    KeyUnavailableError,
    LibrespotError,
    RequestAbandonedError,
)
from aiolibrespot.models import (
    AUDIO_IV,
    CHUNK_HEADER_FILE_SIZE,
    FILE_ID_SIZE,
    TRACK_ID_SIZE,
)
from aiolibrespot.models.config import PlayerConfig
from aiolibrespot.models.types import AudioFormat

if TYPE_CHECKING:
    from .player import Player

logger = logging.getLogger(__name__)

_AES_BLOCK_SIZE = 16
_IV_INT = int.from_bytes(AUDIO_IV, "big")


class AudioFile:
    """
    One encrypted audio file, downloaded in fixed-size chunks.

    Every chunk travels on its own channel. The first chunk also tells the
    file size through the channel header block. Downloaded chunks are kept
    even when the key exchange fails, so data already fetched becomes
    readable once a later load_key() call succeeds.
    """

    _file_id: bytes
    _format: AudioFormat
    _track_id: bytes
    _player: Player
    _config: PlayerConfig
    _key: bytes | None = None
    """Audio key, set once load_key() succeeds."""
    _key_error: LibrespotError | None = None
    """Why the last load_key() failed, if it did."""
    _size: int | None = None
    """File size in bytes as reported by the server."""
    _bytes_received: int = 0
    """Ciphertext bytes received so far, counted per fragment."""
    _chunks: dict[int, bytes]
    """Downloaded chunk data by chunk index."""
    _chunk_tasks: dict[int, asyncio.Task[bytes]]
    """Chunk downloads in flight by chunk index."""
    _download_task: asyncio.Task[None] | None = None
    """Background task started by start_download()."""

    def __init__(
        self,
        file_id: bytes,
        audio_format: AudioFormat,
        track_id: bytes,
        player: Player,
        *,
        config: PlayerConfig | None = None,
    ) -> None:
        """
        Create an audio file bound to a player.

        Args:
            file_id: 20-byte file identifier.
            audio_format: Encoding of the file.
            track_id: 16-byte identifier of the track the file belongs to.
            player: Player used to request the key and allocate channels.
            config: Chunking parameters, defaults to the player's config.
        """
        if len(file_id) != FILE_ID_SIZE:
            raise ValueError(f"file_id must be {FILE_ID_SIZE} bytes, got {len(file_id)}")
        if len(track_id) != TRACK_ID_SIZE:
            raise ValueError(f"track_id must be {TRACK_ID_SIZE} bytes, got {len(track_id)}")
        self._file_id = bytes(file_id)
        self._format = audio_format
        self._track_id = bytes(track_id)
        self._player = player
        self._config = config if config is not None else player.config
        self._chunks = {}
        self._chunk_tasks = {}
        self._semaphore = asyncio.Semaphore(self._config.max_concurrent_chunks)

    @property
    def file_id(self) -> bytes:
        """File identifier."""
        return self._file_id

    @property
    def format(self) -> AudioFormat:
        """Encoding of the file."""
        return self._format

    @property
    def track_id(self) -> bytes:
        """Track identifier."""
        return self._track_id

    @property
    def key(self) -> bytes | None:
        """Audio key, or None until load_key() succeeds."""
        return self._key

    @property
    def key_error(self) -> LibrespotError | None:
        """Error of the last failed load_key() call."""
        return self._key_error

    @property
    def size(self) -> int | None:
        """File size in bytes, or None until the first chunk header arrived."""
        return self._size

    @property
    def chunk_size(self) -> int:
        """Chunk size in bytes."""
        return self._config.chunk_size

    @property
    def chunk_count(self) -> int | None:
        """Number of chunks, or None while the size is unknown."""
        if self._size is None:
            return None
        return -(-self._size // self.chunk_size)

    @property
    def complete(self) -> bool:
        """Return True once every chunk has been downloaded."""
        count = self.chunk_count
        return count is not None and all(i in self._chunks for i in range(count))

    @property
    def bytes_received(self) -> int:
        """Ciphertext bytes received so far, including chunks still in flight."""
        return self._bytes_received

    def is_chunk_loaded(self, index: int) -> bool:
        """Return True if the chunk at index has been downloaded."""
        return index in self._chunks

    async def load_key(self) -> bytes:
        """
        Fetch the audio key through the player.

        May be called again after a failure. Chunk data is not affected by
        the outcome.
        """
        try:
            key = await self._player.request_key(self._track_id, self._file_id)
        except LibrespotError as err:
            self._key_error = err
            raise
        self._key = key
        self._key_error = None
        return key

    def start_download(self) -> asyncio.Task[None]:
        """Download every chunk in the background; failures are logged."""
        if self._download_task is None or self._download_task.done():
            self._download_task = asyncio.create_task(self._download())
        return self._download_task

    async def load_chunks(self) -> None:
        """
        Download the whole file.

        Fetches the first chunk to learn the file size, then the remaining
        chunks with at most config.max_concurrent_chunks channels in flight.

        Raises:
            ChunkDownloadError: If any chunk failed. Chunks that did arrive are kept.
        """
        await self.load_chunk(0)
        count = self.chunk_count
        if count is None:
            raise ChunkDownloadError(0, "Server did not report the file size")

        missing = [index for index in range(1, count) if index not in self._chunks]
        results = await asyncio.gather(
            *(self.load_chunk(index) for index in missing), return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        logger.info(
            "Downloaded file %s: %d bytes in %d chunks", self._file_id.hex(), self._size, count
        )

    async def load_chunk(self, index: int) -> bytes:
        """Return the chunk at index, downloading it if needed."""
        if index in self._chunks:
            return self._chunks[index]
        count = self.chunk_count
        if index < 0 or (count is not None and index >= count):
            raise IndexError(f"Chunk index {index} out of range")

        task = self._chunk_tasks.get(index)
        if task is None:
            task = asyncio.create_task(self._fetch_chunk(index))
            self._chunk_tasks[index] = task
            task.add_done_callback(lambda _: self._chunk_tasks.pop(index, None))
        return await asyncio.shield(task)

    async def read_encrypted(self, offset: int, length: int) -> bytes:
        """Return up to length bytes of ciphertext starting at offset."""
        if offset < 0 or length < 0:
            raise ValueError("offset and length must not be negative")
        if self._size is None:
            await self.load_chunk(0)
        if self._size is None:
            raise ChunkDownloadError(0, "Server did not report the file size")
        end = min(offset + length, self._size)
        if offset >= end:
            return b""

        chunk_size = self.chunk_size
        first, last = offset // chunk_size, (end - 1) // chunk_size
        chunks = await asyncio.gather(*(self.load_chunk(i) for i in range(first, last + 1)))
        start = offset - first * chunk_size
        return b"".join(chunks)[start : start + end - offset]

    async def read(self, offset: int, length: int) -> bytes:
        """
        Return up to length bytes of decrypted audio starting at offset.

        Raises:
            KeyUnavailableError: If the key has not been loaded.
        """
        if self._key is None:
            raise KeyUnavailableError(
                f"No audio key for file {self._file_id.hex()}"
            ) from self._key_error
        ciphertext = await self.read_encrypted(offset, length)
        return decrypt(self._key, offset, ciphertext)

    async def close(self) -> None:
        """Cancel the background download and every chunk in flight."""
        tasks = [*self._chunk_tasks.values()]
        if self._download_task is not None:
            tasks.append(self._download_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _download(self) -> None:
        try:
            await self.load_chunks()
        except LibrespotError as err:
            logger.warning("Download of file %s failed: %s", self._file_id.hex(), err)

    async def _fetch_chunk(self, index: int) -> bytes:
        words = self._config.chunk_size_words
        async with self._semaphore:
            try:
                channel = self._player.allocate_channel(
                    on_header=self._handle_header, on_data=self._handle_data
                )
            except LibrespotError as err:
                raise ChunkDownloadError(index) from err
            try:
                await self._player.request_chunk(
                    channel, self._file_id, index * words, (index + 1) * words
                )
                data = await channel.wait_complete(self._config.chunk_timeout)
            except LibrespotError as err:
                raise ChunkDownloadError(index) from err
            finally:
                if not channel.done:
                    channel.fail(RequestAbandonedError(f"Download of chunk {index} abandoned"))
        logger.debug(
            "Chunk %d of file %s complete (%d bytes)", index, self._file_id.hex(), len(data)
        )
        self._chunks[index] = data
        return data

    def _handle_data(self, fragment: bytes) -> None:
        self._bytes_received += len(fragment)

    def _handle_header(self, header_id: int, data: bytes) -> None:
        if header_id != CHUNK_HEADER_FILE_SIZE:
            logger.debug("Ignoring chunk header 0x%02x", header_id)
            return
        if len(data) < 4:
            logger.warning("File size header too short: %d bytes", len(data))
            return
        (words,) = struct.unpack_from(">I", data)
        size = words * 4
        if self._size is None:
            self._size = size
            logger.info("File %s is %d bytes", self._file_id.hex(), size)
        elif size != self._size:
            logger.warning(
                "File %s size changed from %d to %d bytes", self._file_id.hex(), self._size, size
            )


def decrypt(key: bytes, offset: int, ciphertext: bytes) -> bytes:
    """Decrypt audio data that starts at offset within its file."""
    block, skip = divmod(offset, _AES_BLOCK_SIZE)
    counter = (_IV_INT + block) % (1 << 128)
    decryptor = Cipher(algorithms.AES(key), modes.CTR(counter.to_bytes(16, "big"))).decryptor()
    plaintext = decryptor.update(bytes(skip) + ciphertext) + decryptor.finalize()
    return plaintext[skip:]
