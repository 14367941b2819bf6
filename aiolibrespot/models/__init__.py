"""Models for the audio key and chunk sub-protocol."""

from __future__ import annotations

__all__ = [
    "AUDIO_IV",
    "CHUNK_HEADER_FILE_SIZE",
    "CHUNK_REQUEST_FORMAT",
    "CHUNK_RESPONSE_HEADER_SIZE",
    "FILE_ID_SIZE",
    "KEY_REQUEST_FORMAT",
    "KEY_RESPONSE_SIZE",
    "KEY_SIZE",
    "TRACK_ID_SIZE",
    "AudioFormat",
    "ChannelState",
    "ChunkHeader",
    "ChunkResponse",
    "KeyErrorResponse",
    "KeyResponse",
    "PacketType",
    "PlayerConfig",
    "config",
    "pack_chunk_request",
    "pack_key_request",
    "types",
    "unpack_chunk_headers",
    "unpack_chunk_response",
    "unpack_key_error",
    "unpack_key_response",
]
import struct
from typing import NamedTuple

from aiolibrespot.exceptions import MalformedFrameError

from . import config, types
from .config import PlayerConfig
from .types import AudioFormat, ChannelState, PacketType

TRACK_ID_SIZE = 16
FILE_ID_SIZE = 20
KEY_SIZE = 16

# Initial counter block of the AES-128-CTR stream protecting audio files
AUDIO_IV = bytes.fromhex("72e067fbddcbcf77ebe8bc643f630d93")

# Key request (big-endian): sequence(4) + track_id(16) + file_id(20) + trailer(2) = 42 bytes
KEY_REQUEST_FORMAT = f">I{TRACK_ID_SIZE}s{FILE_ID_SIZE}sH"

_SEQUENCE_FORMAT = ">I"
_SEQUENCE_SIZE = struct.calcsize(_SEQUENCE_FORMAT)
KEY_RESPONSE_SIZE = _SEQUENCE_SIZE + KEY_SIZE

# Chunk request (big-endian): channel(2) + fixed parameters(16) + file_id(20)
# + start_word(4) + end_word(4) = 46 bytes
CHUNK_REQUEST_FORMAT = f">HBBHIII{FILE_ID_SIZE}sII"

_CHANNEL_FORMAT = ">H"
CHUNK_RESPONSE_HEADER_SIZE = struct.calcsize(_CHANNEL_FORMAT)

# Header id carrying the total file size in 4-byte words
CHUNK_HEADER_FILE_SIZE = 0x03


class KeyResponse(NamedTuple):
    """Decoded audio key response."""

    sequence: int
    key: bytes


class KeyErrorResponse(NamedTuple):
    """Decoded audio key error frame."""

    sequence: int
    code: int | None


class ChunkResponse(NamedTuple):
    """Decoded chunk response frame."""

    channel_id: int
    payload: bytes


class ChunkHeader(NamedTuple):
    """One entry of the header block sent at the start of a chunk channel."""

    header_id: int
    data: bytes


def pack_key_request(sequence: int, track_id: bytes, file_id: bytes) -> bytes:
    """
    Pack an audio key request.

    Args:
        sequence: Session-wide sequence number correlating the response.
        track_id: 16-byte track identifier.
        file_id: 20-byte file identifier.

    Returns:
        42-byte key request payload.

    Raises:
        ValueError: If an identifier has the wrong length.
    """
    if len(track_id) != TRACK_ID_SIZE:
        raise ValueError(f"track_id must be {TRACK_ID_SIZE} bytes, got {len(track_id)}")
    if len(file_id) != FILE_ID_SIZE:
        raise ValueError(f"file_id must be {FILE_ID_SIZE} bytes, got {len(file_id)}")
    return struct.pack(KEY_REQUEST_FORMAT, sequence, track_id, file_id, 0x0000)


def unpack_key_response(data: bytes) -> KeyResponse:
    """
    Unpack an audio key response.

    Raises:
        MalformedFrameError: If the frame cannot hold a sequence and a key.
    """
    if len(data) < KEY_RESPONSE_SIZE:
        raise MalformedFrameError(
            f"Key response needs {KEY_RESPONSE_SIZE} bytes, got {len(data)}"
        )
    (sequence,) = struct.unpack_from(_SEQUENCE_FORMAT, data)
    return KeyResponse(sequence=sequence, key=bytes(data[_SEQUENCE_SIZE:KEY_RESPONSE_SIZE]))


def unpack_key_error(data: bytes) -> KeyErrorResponse:
    """
    Unpack an audio key error frame.

    The error code following the sequence number is optional.

    Raises:
        MalformedFrameError: If the frame cannot hold a sequence number.
    """
    if len(data) < _SEQUENCE_SIZE:
        raise MalformedFrameError(
            f"Key error needs at least {_SEQUENCE_SIZE} bytes, got {len(data)}"
        )
    (sequence,) = struct.unpack_from(_SEQUENCE_FORMAT, data)
    code: int | None = None
    if len(data) >= _SEQUENCE_SIZE + 2:
        (code,) = struct.unpack_from(">H", data, _SEQUENCE_SIZE)
    return KeyErrorResponse(sequence=sequence, code=code)


def pack_chunk_request(channel_id: int, file_id: bytes, start_word: int, end_word: int) -> bytes:
    """
    Pack a chunk request for the word range [start_word, end_word).

    Args:
        channel_id: Channel that will receive the response fragments.
        file_id: 20-byte file identifier.
        start_word: First 4-byte word to fetch.
        end_word: Word offset one past the last word to fetch.

    Returns:
        46-byte chunk request payload.
    """
    if len(file_id) != FILE_ID_SIZE:
        raise ValueError(f"file_id must be {FILE_ID_SIZE} bytes, got {len(file_id)}")
    if not 0 <= start_word < end_word:
        raise ValueError(f"Invalid word range {start_word}..{end_word}")
    return struct.pack(
        CHUNK_REQUEST_FORMAT,
        channel_id,
        0x00,
        0x01,
        0x0000,
        0x00000000,
        0x00009C40,
        0x00020000,
        file_id,
        start_word,
        end_word,
    )


def unpack_chunk_response(data: bytes) -> ChunkResponse:
    """
    Split a chunk response into its channel id and fragment.

    Raises:
        MalformedFrameError: If the frame cannot hold a channel id.
    """
    if len(data) < CHUNK_RESPONSE_HEADER_SIZE:
        raise MalformedFrameError(
            f"Chunk response needs {CHUNK_RESPONSE_HEADER_SIZE} bytes, got {len(data)}"
        )
    (channel_id,) = struct.unpack_from(_CHANNEL_FORMAT, data)
    return ChunkResponse(channel_id=channel_id, payload=bytes(data[CHUNK_RESPONSE_HEADER_SIZE:]))


def unpack_chunk_headers(data: bytes) -> list[ChunkHeader]:
    """
    Unpack the header block of a chunk channel.

    Entries are length(2) + header_id(1) + data(length - 1); the block ends
    at a zero length or at the end of the fragment.

    Raises:
        MalformedFrameError: If an entry runs past the end of the fragment.
    """
    headers: list[ChunkHeader] = []
    offset = 0
    while offset < len(data):
        if offset + 2 > len(data):
            raise MalformedFrameError("Truncated chunk header length")
        (length,) = struct.unpack_from(">H", data, offset)
        offset += 2
        if length == 0:
            break
        if offset + length > len(data):
            raise MalformedFrameError(
                f"Chunk header of {length} bytes exceeds fragment at offset {offset}"
            )
        headers.append(
            ChunkHeader(header_id=data[offset], data=bytes(data[offset + 1 : offset + length]))
        )
        offset += length
    return headers
