"""UART tunnel: demultiplexes inbound frames into control replies and serial bytes."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from ..exceptions import InvalidResponseError, LinkError, LinkTimeoutError
from ..models.enums import FrameChannel
from ..protocol.commands import ControlMessage

if TYPE_CHECKING:
    from .connection import BLEConnection, Frame

_LOGGER = logging.getLogger(__name__)


class UartStream:
    """Virtual serial byte pipe tunneled over the frame link.

    Not message-framed: inbound frames are appended to one byte buffer and
    reads take any number of bytes from its front. Writes are split into
    frames of at most ``max_frame_size`` bytes.
    """

    def __init__(
            self,
            send: Callable[[bytes], Awaitable[None]],
            max_frame_size: int,
    ):
        """Initialize serial stream.

        Args:
            send: Coroutine writing one frame on the UART channel
            max_frame_size: Largest frame the link accepts
        """
        if max_frame_size < 1:
            raise ValueError(f"max_frame_size out of range: {max_frame_size}")
        self._send = send
        self.max_frame_size = max_frame_size
        self._buffer = bytearray()
        self._data_ready = asyncio.Event()
        self._closed = False

    async def __aenter__(self) -> UartStream:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def buffered(self) -> int:
        """Bytes received but not read yet."""
        return len(self._buffer)

    def feed(self, data: bytes) -> None:
        """Append inbound bytes (called by the tunnel dispatcher)."""
        if self._closed:
            _LOGGER.debug("Dropping %d bytes fed to closed stream", len(data))
            return
        self._buffer.extend(data)
        self._data_ready.set()

    def close(self) -> None:
        """Close the stream and wake any pending reader."""
        self._closed = True
        self._data_ready.set()

    async def _wait_for(self, n: int, timeout: float | None) -> None:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while len(self._buffer) < n:
            if self._closed:
                raise LinkError("Serial stream closed")
            self._data_ready.clear()
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                raise LinkTimeoutError(
                    f"Serial read timeout after {timeout}s (have {len(self._buffer)}/{n} bytes)"
                )
            try:
                await asyncio.wait_for(self._data_ready.wait(), timeout=remaining)
            except asyncio.TimeoutError as e:
                raise LinkTimeoutError(
                    f"Serial read timeout after {timeout}s (have {len(self._buffer)}/{n} bytes)"
                ) from e

    def _take(self, n: int) -> bytes:
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        return data

    async def read(self, n: int, timeout: float | None = None) -> bytes:
        """Read at least one and at most ``n`` bytes.

        Raises:
            LinkTimeoutError: If nothing arrives within timeout
            LinkError: If the stream is closed and drained
        """
        await self._wait_for(1, timeout)
        return self._take(n)

    async def read_exactly(self, n: int, timeout: float | None = None) -> bytes:
        """Read exactly ``n`` bytes, waiting at most ``timeout`` in total.

        Raises:
            LinkTimeoutError: If fewer than n bytes arrive within timeout
            LinkError: If the stream closes first
        """
        await self._wait_for(n, timeout)
        return self._take(n)

    async def read_byte(self, timeout: float | None = None) -> int:
        """Read a single byte."""
        return (await self.read_exactly(1, timeout))[0]

    def discard(self) -> int:
        """Drop buffered bytes without waiting for the line to go quiet."""
        discarded = len(self._buffer)
        self._buffer.clear()
        return discarded

    async def purge(self, quiet_time: float = 0.2) -> int:
        """Discard buffered bytes until the line is quiet for ``quiet_time``.

        Returns:
            Number of bytes discarded
        """
        discarded = 0
        while True:
            discarded += self.discard()
            if self._closed:
                break
            self._data_ready.clear()
            try:
                await asyncio.wait_for(self._data_ready.wait(), timeout=quiet_time)
            except asyncio.TimeoutError:
                break
        if discarded:
            _LOGGER.debug("Purged %d bytes from serial stream", discarded)
        return discarded

    async def write(self, data: bytes | bytearray | memoryview) -> None:
        """Write bytes, one frame per ``max_frame_size`` slice.

        Raises:
            LinkError: If the stream is closed or the link write fails
        """
        if self._closed:
            raise LinkError("Serial stream closed")
        view = memoryview(data)
        for offset in range(0, len(view), self.max_frame_size):
            await self._send(bytes(view[offset:offset + self.max_frame_size]))


class UartTunnel:
    """Sole reader of the frame link.

    One dispatcher task routes every inbound frame to exactly one of:
    - the one-slot control-reply rendezvous, for control frames that decode
    - the open UartStream, for everything else
    """

    def __init__(self, link: BLEConnection):
        """Initialize tunnel.

        Args:
            link: Frame link (read_frame / write_frame / max_frame_size)
        """
        self._link = link
        self._dispatcher: asyncio.Task[None] | None = None
        self._control_slot: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=1)
        self._control_waiting = False
        self._stream: UartStream | None = None
        self._link_lost = False

    async def __aenter__(self) -> UartTunnel:
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def start(self) -> None:
        """Start the dispatcher task."""
        if self._dispatcher is not None and not self._dispatcher.done():
            return
        self._link_lost = False
        self._dispatcher = asyncio.create_task(self._dispatch())

    async def stop(self) -> None:
        """Stop the dispatcher task and close the open stream."""
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._dispatcher
            self._dispatcher = None
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    @property
    def is_running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    async def _dispatch(self) -> None:
        while True:
            frame = await self._link.read_frame()
            if frame is None:
                self._on_link_lost()
                return
            self._route(frame)

    def _route(self, frame: Frame) -> None:
        if frame.channel == FrameChannel.CONTROL:
            try:
                message = ControlMessage.decode(frame.data)
            except InvalidResponseError as e:
                _LOGGER.debug("Control frame not decodable (%s), routing to serial", e)
            else:
                _LOGGER.debug("<- %r", message)
                self._offer_control(frame.data)
                return

        stream = self._stream
        if stream is None or stream.closed:
            _LOGGER.debug("Dropping %d serial bytes: no open stream", len(frame.data))
            return
        stream.feed(frame.data)

    def _offer_control(self, item: bytes | None) -> None:
        if self._control_slot.full():
            stale = self._control_slot.get_nowait()
            if stale is not None:
                _LOGGER.warning("Unclaimed control reply replaced: %s", stale.hex())
        self._control_slot.put_nowait(item)

    def _on_link_lost(self) -> None:
        _LOGGER.debug("Frame link closed, stopping dispatcher")
        self._link_lost = True
        if self._stream is not None:
            self._stream.close()
        self._offer_control(None)

    def discard_control_replies(self) -> int:
        """Drop any unclaimed control reply before a new request.

        Returns:
            Number of replies discarded
        """
        discarded = 0
        while not self._control_slot.empty():
            stale = self._control_slot.get_nowait()
            if stale is None:
                # Keep the link-lost marker for the next waiter
                self._control_slot.put_nowait(None)
                break
            _LOGGER.debug("Discarding stale control reply: %s", stale.hex())
            discarded += 1
        return discarded

    async def wait_control_reply(self, timeout: float | None) -> bytes:
        """Wait for the next control reply frame.

        Raises:
            RuntimeError: If another waiter is already registered
            LinkTimeoutError: If no reply arrives within timeout
            LinkError: If the link dropped
        """
        if self._control_waiting:
            raise RuntimeError("A control reply is already being awaited")

        self._control_waiting = True
        try:
            frame = await asyncio.wait_for(self._control_slot.get(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise LinkTimeoutError(
                f"No control reply received within {timeout}s"
            ) from e
        finally:
            self._control_waiting = False

        if frame is None:
            self._control_slot.put_nowait(None)
            raise LinkError("Link lost while waiting for a control reply")
        return frame

    def open_uart_stream(self) -> UartStream:
        """Open the virtual serial stream, closing any previous one.

        Raises:
            LinkError: If the link already dropped
        """
        if self._link_lost:
            raise LinkError("Link lost")
        if self._stream is not None and not self._stream.closed:
            _LOGGER.debug("Closing previous serial stream")
            self._stream.close()

        self._stream = UartStream(self._write_uart, self._link.max_frame_size)
        return self._stream

    async def _write_uart(self, data: bytes) -> None:
        await self._link.write_frame(FrameChannel.UART, data)
