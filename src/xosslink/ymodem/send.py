"""YMODEM sender (host -> device)."""

from __future__ import annotations

import asyncio
import inspect
import io
import logging
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from ..exceptions import (
    HandshakeTimeoutError,
    LinkError,
    LinkTimeoutError,
    TransferAbortedError,
    TransferLinkError,
)
from ..models.enums import SendOutcome, TransferPhase
from ..models.files import FileInfo
from .blocks import (
    ACK,
    CAN,
    CRC_REQUEST,
    EOT,
    LARGE_BLOCK_SIZE,
    NAK,
    confirm_cancel,
    encode_block,
    encode_header,
)
from .config import YmodemConfig

if TYPE_CHECKING:
    from ..transport.tunnel import UartStream

_LOGGER = logging.getLogger(__name__)

_REPLY_NAMES = {ACK: "ACK", NAK: "NAK", CRC_REQUEST: "C", None: "timeout"}


class SendState(Enum):
    """Sender states; each has one handler returning the next state."""
    HANDSHAKE = auto()
    SEND_HEADER = auto()
    SEND_DATA = auto()
    SEND_END = auto()
    CLOSE_BATCH = auto()
    DONE = auto()


_PHASES = {
    SendState.HANDSHAKE: TransferPhase.HANDSHAKE,
    SendState.SEND_HEADER: TransferPhase.HEADER,
    SendState.SEND_DATA: TransferPhase.DATA,
    SendState.SEND_END: TransferPhase.END,
    SendState.CLOSE_BATCH: TransferPhase.END,
}


def source_size(source: Any) -> int | None:
    """Remaining bytes of a seekable binary source, else None."""
    seekable = getattr(source, "seekable", None)
    if seekable is None or not seekable():
        return None
    position = source.tell()
    end = source.seek(0, io.SEEK_END)
    source.seek(position)
    return end - position


class YmodemSender:
    """Sends one file as a single-file YMODEM batch over a serial stream."""

    def __init__(
            self,
            stream: UartStream,
            filename: str,
            source: Any,
            *,
            size: int | None = None,
            config: YmodemConfig | None = None,
    ):
        """Initialize sender.

        Args:
            stream: Open serial stream
            filename: Name announced in block 0
            source: Binary reader with a sync or async read(n)
            size: Bytes to announce (default: remaining size of a seekable source)
            config: Timing and retry policy (default: YmodemConfig())
        """
        if not filename:
            raise ValueError("filename must not be empty")

        self._stream = stream
        self._source = source
        self._config = config or YmodemConfig()
        self.info = FileInfo(name=filename, size=size if size is not None else source_size(source))

        self.state = SendState.HANDSHAKE
        self.outcome: SendOutcome | None = None
        self.bytes_sent = 0
        self.blocks_sent = 0
        self._seq = 0
        self._resent = False    # Last exchange needed a resend; a second reply may follow

        self._handlers: dict[SendState, Callable[[], Awaitable[SendState]]] = {
            SendState.HANDSHAKE: self._handshake,
            SendState.SEND_HEADER: self._send_header,
            SendState.SEND_DATA: self._send_data,
            SendState.SEND_END: self._send_end,
            SendState.CLOSE_BATCH: self._close_batch,
        }

    async def run(self) -> SendOutcome:
        """Run the transfer to completion.

        Returns:
            COMPLETE, or UNCONFIRMED_CLOSE when everything but the batch
            close was acknowledged

        Raises:
            HandshakeTimeoutError: If the receiver never asks for data
            TransferAbortedError: If a retry budget runs out or the receiver cancels
            TransferLinkError: If the serial stream fails mid-transfer
        """
        while self.state is not SendState.DONE:
            previous = self.state
            try:
                self.state = await self._handlers[previous]()
            except TransferLinkError:
                raise
            except LinkError as e:
                raise TransferLinkError(
                    str(e), phase=_PHASES[previous], filename=self.info.name,
                ) from e
            if self.state is not previous:
                _LOGGER.debug("Sender %s -> %s", previous.name, self.state.name)

        _LOGGER.info("Sent %s: %d bytes in %d blocks (%s)",
                     self.info.name, self.bytes_sent, self.blocks_sent, self.outcome.value)
        return self.outcome

    # State handlers

    async def _handshake(self) -> SendState:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.handshake_timeout
        while (remaining := deadline - loop.time()) > 0:
            reply = await self._read_reply(remaining, TransferPhase.HANDSHAKE)
            if reply == CRC_REQUEST:
                return SendState.SEND_HEADER
            if reply is not None:
                _LOGGER.debug("Ignoring %s while waiting for ready request", _REPLY_NAMES[reply])

        raise HandshakeTimeoutError(
            f"receiver not ready within {self._config.handshake_timeout}s",
            phase=TransferPhase.HANDSHAKE, filename=self.info.name,
        )

    async def _send_header(self) -> SendState:
        block = encode_block(0, encode_header(self.info), self._config.crc_func)
        retries = 0
        while True:
            await self._write(block, retries)
            reply = await self._read_reply(self._config.block_timeout, TransferPhase.HEADER)
            if reply == ACK:
                # Data phase starts on the receiver's next ready request
                reply = await self._read_reply(self._config.block_timeout, TransferPhase.HEADER)
                if reply == CRC_REQUEST:
                    self._resent = retries > 0
                    return SendState.SEND_DATA
            elif reply == CRC_REQUEST:
                # ACK overtaken by the ready request
                self._resent = retries > 0
                return SendState.SEND_DATA

            retries += 1
            if retries > self._config.max_retries:
                raise TransferAbortedError(
                    f"header not acknowledged after {self._config.max_retries} retries",
                    phase=TransferPhase.HEADER, filename=self.info.name,
                )
            _LOGGER.warning("%s: header got %s, resending (%d/%d)", self.info.name,
                            _REPLY_NAMES[reply], retries, self._config.max_retries)

    async def _send_data(self) -> SendState:
        chunk = await self._read_chunk(LARGE_BLOCK_SIZE)
        if not chunk:
            return SendState.SEND_END

        seq = (self._seq + 1) % 256
        block = encode_block(seq, chunk, self._config.crc_func)
        retries = 0
        while True:
            await self._write(block, retries)
            reply = await self._read_reply(self._config.block_timeout, TransferPhase.DATA)
            if reply == ACK:
                break
            retries += 1
            if retries > self._config.max_retries:
                raise TransferAbortedError(
                    f"block {seq} not acknowledged after {self._config.max_retries} retries",
                    phase=TransferPhase.DATA, filename=self.info.name,
                )
            _LOGGER.warning("%s: block %d got %s, resending (%d/%d)", self.info.name, seq,
                            _REPLY_NAMES[reply], retries, self._config.max_retries)

        self._seq = seq
        self._resent = retries > 0
        self.blocks_sent += 1
        self.bytes_sent += len(chunk)
        _LOGGER.debug("Block %d acknowledged (%d bytes sent)", seq, self.bytes_sent)
        return SendState.SEND_DATA

    async def _send_end(self) -> SendState:
        retries = 0
        while True:
            await self._write(bytes([EOT]), retries)
            reply = await self._read_reply(self._config.block_timeout, TransferPhase.END)
            if reply == ACK:
                self._resent = retries > 0
                return SendState.CLOSE_BATCH
            retries += 1
            if retries > self._config.max_retries:
                raise TransferAbortedError(
                    f"EOT not acknowledged after {self._config.max_retries} retries",
                    phase=TransferPhase.END, filename=self.info.name,
                )
            _LOGGER.debug("EOT got %s, resending (%d/%d)",
                          _REPLY_NAMES[reply], retries, self._config.max_retries)

    async def _close_batch(self) -> SendState:
        self.outcome = SendOutcome.UNCONFIRMED_CLOSE
        try:
            reply = await self._read_reply(self._config.block_timeout, TransferPhase.END)
            if reply != CRC_REQUEST:
                _LOGGER.warning("%s: delivered, but receiver did not ask for batch close (%s)",
                                self.info.name, _REPLY_NAMES[reply])
                return SendState.DONE

            block = encode_block(0, b"", self._config.crc_func)
            for attempt in range(1, self._config.max_retries + 2):
                await self._write(block, attempt - 1)
                reply = await self._read_reply(self._config.block_timeout, TransferPhase.END)
                if reply == ACK:
                    self.outcome = SendOutcome.COMPLETE
                    return SendState.DONE
                _LOGGER.debug("Batch close got %s (%d/%d)",
                              _REPLY_NAMES[reply], attempt, self._config.max_retries + 1)
        except TransferAbortedError as e:
            _LOGGER.warning("%s: delivered, but batch close cancelled: %s", self.info.name, e)
            return SendState.DONE

        _LOGGER.warning("%s: delivered, but batch close not acknowledged", self.info.name)
        return SendState.DONE

    # Helpers

    async def _write(self, data: bytes, retries: int) -> None:
        """Write a block (or EOT) after dropping replies meant for earlier writes.

        A resend can draw two ACKs for one block, so after any resend the line
        must go quiet before writing; otherwise buffered bytes are dropped.
        """
        if retries or self._resent:
            await self._stream.purge(self._config.purge_quiet_time)
        else:
            self._stream.discard()
        await self._stream.write(data)

    async def _read_reply(self, timeout: float, phase: TransferPhase) -> int | None:
        """Wait for ACK, NAK or "C"; None on timeout.

        Raises:
            TransferAbortedError: If the receiver sends CAN CAN
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while (remaining := deadline - loop.time()) > 0:
            try:
                byte = await self._stream.read_byte(remaining)
            except LinkTimeoutError:
                return None
            if byte in (ACK, NAK, CRC_REQUEST):
                return byte
            if byte == CAN and await confirm_cancel(self._stream, self._config.block_timeout):
                raise TransferAbortedError(
                    "cancelled by receiver", phase=phase, filename=self.info.name,
                )
            _LOGGER.debug("Ignoring unexpected byte 0x%02x", byte)
        return None

    async def _read_chunk(self, size: int) -> bytes:
        """Read up to ``size`` bytes, short only at end of source.

        Synchronous sources are read in a worker thread so slow storage
        does not stall the frame dispatcher.
        """
        read = self._source.read
        chunk = bytearray()
        while len(chunk) < size:
            if inspect.iscoroutinefunction(read):
                data = await read(size - len(chunk))
            else:
                data = await asyncio.to_thread(read, size - len(chunk))
            if not data:
                break
            chunk.extend(data)
        return bytes(chunk)


async def send_file(
        stream: UartStream,
        filename: str,
        source: Any,
        *,
        size: int | None = None,
        config: YmodemConfig | None = None,
) -> SendOutcome:
    """Send ``source`` as ``filename`` over ``stream``.

    See YmodemSender for arguments and errors.
    """
    sender = YmodemSender(stream, filename, source, size=size, config=config)
    return await sender.run()
