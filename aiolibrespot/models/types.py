"""Models for enum types used by the download engine."""

from enum import Enum, IntEnum


class PacketType(IntEnum):
    """Command bytes handled by the audio download engine."""

    STREAM_CHUNK = 0x08
    """Chunk request, tagged with a channel id (client -> server)."""
    STREAM_CHUNK_RES = 0x09
    """Chunk response fragment for a channel (server -> client)."""
    REQUEST_KEY = 0x0C
    """Audio key request, tagged with a sequence number (client -> server)."""
    AES_KEY = 0x0D
    """Audio key response (server -> client)."""
    AES_KEY_ERROR = 0x0E
    """Audio key refused by the server (server -> client)."""


class AudioFormat(IntEnum):
    """Encoding of an audio file as advertised by the catalog."""

    OGG_VORBIS_96 = 0
    OGG_VORBIS_160 = 1
    OGG_VORBIS_320 = 2
    MP3_256 = 3
    MP3_320 = 4
    MP3_160 = 5
    MP3_96 = 6
    MP3_160_ENC = 7
    AAC_24 = 8
    AAC_48 = 9


class ChannelState(Enum):
    """Lifecycle of a logical channel."""

    OPEN = "open"
    """Allocated, no fragment received yet."""
    RECEIVING = "receiving"
    """At least one fragment (or the header block) has been received."""
    COMPLETE = "complete"
    """Terminator fragment observed."""
    FAILED = "failed"
    """Aborted by the owner, a timeout or a closed session."""

    @property
    def terminal(self) -> bool:
        """Return True for states that can no longer change."""
        return self in (ChannelState.COMPLETE, ChannelState.FAILED)
