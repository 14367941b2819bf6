"""Logical channel reassembling the fragments of one chunk download."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from aiolibrespot.exceptions import (
    ChannelTimeoutError,
    MalformedFrameError,
    RequestAbandonedError,
)
from aiolibrespot.models import unpack_chunk_headers
from aiolibrespot.models.types import ChannelState

logger = logging.getLogger(__name__)

# Callback invoked exactly once when the channel reaches a terminal state.
ReleaseCallback = Callable[["Channel"], None]

# Callback invoked with (header_id, data) for each entry of the header block.
HeaderCallback = Callable[[int, bytes], None]

# Callback invoked with each non-empty data fragment, in arrival order.
DataCallback = Callable[[bytes], None]


class Channel:
    """
    Multiplexing endpoint identified by a 16-bit id.

    Fragments are appended in arrival order; the transport guarantees they
    arrive in the order the server sent them. A zero-length fragment ends
    the channel. When an on_header callback is given, the first fragment is
    parsed as a header block instead of data.
    """

    _id: int
    _state: ChannelState
    _data: bytearray
    _on_release: ReleaseCallback | None
    _on_header: HeaderCallback | None
    _on_data: DataCallback | None
    _headers_pending: bool
    _completion: asyncio.Future[bytes]

    def __init__(
        self,
        channel_id: int,
        on_release: ReleaseCallback,
        *,
        on_header: HeaderCallback | None = None,
        on_data: DataCallback | None = None,
    ) -> None:
        """
        Create a channel.

        Args:
            channel_id: Id unique among the currently open channels.
            on_release: Called once with this channel when it completes or fails.
            on_header: Optional callback for header entries; enables header mode.
            on_data: Optional callback for incremental data fragments.
        """
        self._id = channel_id
        self._state = ChannelState.OPEN
        self._data = bytearray()
        self._on_release = on_release
        self._on_header = on_header
        self._on_data = on_data
        self._headers_pending = on_header is not None
        self._completion = asyncio.get_running_loop().create_future()

    def __repr__(self) -> str:
        """Return a debug representation."""
        return f"<Channel {self._id} {self._state.value} {len(self._data)} bytes>"

    @property
    def id(self) -> int:
        """Channel id."""
        return self._id

    @property
    def state(self) -> ChannelState:
        """Current state."""
        return self._state

    @property
    def data(self) -> bytes:
        """Bytes accumulated so far."""
        return bytes(self._data)

    @property
    def done(self) -> bool:
        """Return True once the channel completed or failed."""
        return self._state.terminal

    @property
    def header_mode(self) -> bool:
        """Return True while the next fragment is expected to be the header block."""
        return self._headers_pending

    def handle_fragment(self, fragment: bytes) -> None:
        """Handle one fragment routed to this channel by the dispatcher."""
        if self._state.terminal:
            logger.warning(
                "Dropping %d byte fragment for %s channel %d",
                len(fragment),
                self._state.value,
                self._id,
            )
            return

        if not fragment:
            self._complete()
            return

        if self._headers_pending:
            self._headers_pending = False
            self._state = ChannelState.RECEIVING
            self._handle_header_block(fragment)
            return

        self._state = ChannelState.RECEIVING
        self._data.extend(fragment)
        if self._on_data is not None:
            try:
                self._on_data(fragment)
            except Exception:
                logger.exception("Error in data callback %s", self._on_data)

    def fail(self, exc: BaseException) -> None:
        """Abort the channel; a no-op once the channel is terminal."""
        if self._state.terminal:
            return
        logger.debug("Channel %d failed: %s", self._id, exc)
        self._state = ChannelState.FAILED
        if not self._completion.done():
            self._completion.set_exception(exc)
            # Mark retrieved so an unawaited failure is not reported by the loop
            self._completion.exception()
        self._release()

    async def wait_complete(self, timeout: float | None = None) -> bytes:
        """
        Wait until the terminator fragment arrives and return the accumulated bytes.

        Raises:
            ChannelTimeoutError: If the channel did not complete in time. The
                channel is failed and released.
        """
        try:
            return await asyncio.wait_for(asyncio.shield(self._completion), timeout)
        except TimeoutError as err:
            timeout_err = ChannelTimeoutError(
                f"Channel {self._id} did not complete within {timeout}s"
            )
            self.fail(timeout_err)
            raise timeout_err from err
        except asyncio.CancelledError:
            self.fail(RequestAbandonedError(f"Wait on channel {self._id} was cancelled"))
            raise

    def _handle_header_block(self, fragment: bytes) -> None:
        try:
            headers = unpack_chunk_headers(fragment)
        except MalformedFrameError as err:
            logger.warning("Malformed header block on channel %d: %s", self._id, err)
            self.fail(err)
            return
        assert self._on_header is not None
        for header in headers:
            try:
                self._on_header(header.header_id, header.data)
            except Exception:
                logger.exception("Error in header callback %s", self._on_header)

    def _complete(self) -> None:
        logger.debug("Channel %d complete with %d bytes", self._id, len(self._data))
        self._state = ChannelState.COMPLETE
        if not self._completion.done():
            self._completion.set_result(bytes(self._data))
        self._release()

    def _release(self) -> None:
        callback, self._on_release = self._on_release, None
        if callback is None:
            return
        try:
            callback(self)
        except Exception:
            logger.exception("Error in release callback %s", callback)
