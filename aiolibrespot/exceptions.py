"""
Exceptions raised by the download engine, grouped so callers can tell a
refused key from a broken connection or an abandoned wait.
"""


class LibrespotError(Exception):
    """Base exception for all engine errors."""


class TransportSendError(LibrespotError):
    """Raised when the transport fails to send a request."""


class SessionClosedError(LibrespotError):
    """Raised to every pending waiter when the session goes away."""


class MalformedFrameError(LibrespotError):
    """Raised when an inbound frame is too short for its expected header."""


class RequestAbandonedError(LibrespotError):
    """Raised when a caller stops waiting for a response."""


class KeyRequestTimeoutError(RequestAbandonedError):
    """Raised when an audio key response does not arrive in time."""


class ChannelTimeoutError(RequestAbandonedError):
    """Raised when a channel does not complete in time."""


class AudioKeyError(LibrespotError):
    """Base exception for a missing audio key."""


class AudioKeyDeniedError(AudioKeyError):
    """Raised when the server answers a key request with an error frame."""

    def __init__(self, sequence: int, code: int | None = None) -> None:
        """Initialize with the sequence of the refused request and its error code."""
        self.sequence = sequence
        self.code = code
        detail = f"code 0x{code:04x}" if code is not None else "no code"
        super().__init__(f"Audio key request {sequence} denied ({detail})")


class KeyUnavailableError(AudioKeyError):
    """Raised when decrypted data is requested for a file without a key."""


class ChannelExhaustedError(LibrespotError):
    """Raised when every channel id is held by an open channel."""


class SequenceExhaustedError(LibrespotError):
    """Raised when the session has used up its sequence numbers."""


class ChunkDownloadError(LibrespotError):
    """Raised when a chunk of an audio file could not be downloaded."""

    def __init__(self, index: int, message: str | None = None) -> None:
        """Initialize with the index of the failed chunk."""
        self.index = index
        super().__init__(message or f"Failed to download chunk {index}")
