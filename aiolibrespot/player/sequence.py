"""Session-wide sequence numbers for key requests."""

from __future__ import annotations

from typing import Protocol

from aiolibrespot.exceptions import SequenceExhaustedError

MAX_SEQUENCE = 0xFFFFFFFF


class SequenceProvider(Protocol):
    """Source of sequence numbers used to correlate key requests."""

    def next_sequence(self) -> int:
        """Return a sequence number never handed out before in this session."""


class SessionSequence:
    """
    Monotonic 32-bit sequence counter.

    The counter never wraps: a late response for an abandoned request can
    therefore never be mistaken for the response to a newer one.
    """

    def __init__(self, start: int = 0) -> None:
        """Initialize the counter at start."""
        if not 0 <= start <= MAX_SEQUENCE:
            raise ValueError(f"start must fit in 32 bits, got {start}")
        self._next = start

    def next_sequence(self) -> int:
        """Return the next sequence number."""
        if self._next > MAX_SEQUENCE:
            raise SequenceExhaustedError("No sequence numbers left in this session")
        sequence = self._next
        self._next += 1
        return sequence
