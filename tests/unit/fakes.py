"""In-memory fakes for the BLE link and serial stream."""

from __future__ import annotations

import asyncio

from xosslink.models.enums import FrameChannel
from xosslink.protocol.commands import ControlMessage
from xosslink.transport.connection import Frame
from xosslink.transport.tunnel import UartStream


class _ByteInbox:
    """Accumulates bytes written by the host; scripts pop them in order."""

    def __init__(self) -> None:
        self.data = bytearray()
        self.frames: list[bytes] = []
        self._event = asyncio.Event()

    def push(self, frame: bytes) -> None:
        self.frames.append(frame)
        self.data.extend(frame)
        self._event.set()

    async def take(self, n: int, timeout: float = 2.0) -> bytes:
        async def _wait() -> None:
            while len(self.data) < n:
                self._event.clear()
                await self._event.wait()

        await asyncio.wait_for(_wait(), timeout=timeout)
        chunk = bytes(self.data[:n])
        del self.data[:n]
        return chunk


class FakeLink:
    """In-memory frame link standing in for BLEConnection."""

    def __init__(self, max_frame_size: int = 20):
        self.max_frame_size = max_frame_size
        self.written: list[tuple[FrameChannel, bytes]] = []
        self._frames: asyncio.Queue[Frame | None] = asyncio.Queue()
        self._control: asyncio.Queue[bytes] = asyncio.Queue()
        self._uart = _ByteInbox()

    async def read_frame(self) -> Frame | None:
        return await self._frames.get()

    async def write_frame(self, channel: FrameChannel, data: bytes) -> None:
        if len(data) > self.max_frame_size:
            raise ValueError(f"Frame size {len(data)} exceeds maximum {self.max_frame_size}")
        self.written.append((channel, bytes(data)))
        if channel == FrameChannel.CONTROL:
            self._control.put_nowait(bytes(data))
        else:
            self._uart.push(bytes(data))

    # Device side

    def notify_control(self, message: ControlMessage | bytes) -> None:
        data = message.encode() if isinstance(message, ControlMessage) else message
        self._frames.put_nowait(Frame(FrameChannel.CONTROL, data))

    def notify_uart(self, data: bytes) -> None:
        for offset in range(0, len(data), self.max_frame_size):
            self._frames.put_nowait(
                Frame(FrameChannel.UART, data[offset:offset + self.max_frame_size])
            )

    def drop(self) -> None:
        self._frames.put_nowait(None)

    async def expect_control(self, timeout: float = 2.0) -> ControlMessage:
        frame = await asyncio.wait_for(self._control.get(), timeout=timeout)
        return ControlMessage.decode(frame)

    async def expect_uart(self, n: int = 1, timeout: float = 2.0) -> bytes:
        return await self._uart.take(n, timeout)

    @property
    def uart_written(self) -> list[bytes]:
        return [data for channel, data in self.written if channel == FrameChannel.UART]


class SerialPeer:
    """Device end of a UartStream for driving the YMODEM engine directly."""

    def __init__(self, max_frame_size: int = 20):
        self._inbox = _ByteInbox()
        self.stream = UartStream(self._on_host_write, max_frame_size)

    async def _on_host_write(self, frame: bytes) -> None:
        self._inbox.push(frame)

    @property
    def written(self) -> list[bytes]:
        """Frames written by the host, in order."""
        return self._inbox.frames

    def send(self, data: bytes) -> None:
        self.stream.feed(data)

    async def expect(self, n: int = 1, timeout: float = 2.0) -> bytes:
        return await self._inbox.take(n, timeout)


def cross_wired_streams(max_frame_size: int = 20) -> tuple[UartStream, UartStream]:
    """Two streams where each one's writes become the other's reads."""
    streams: list[UartStream] = []

    async def to_second(frame: bytes) -> None:
        streams[1].feed(frame)

    async def to_first(frame: bytes) -> None:
        streams[0].feed(frame)

    streams.append(UartStream(to_second, max_frame_size))
    streams.append(UartStream(to_first, max_frame_size))
    return streams[0], streams[1]


