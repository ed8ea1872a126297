"""YMODEM receiver (device -> host)."""

from __future__ import annotations

import contextlib
import logging
from enum import Enum, auto
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable

from ..exceptions import (
    CorruptBlockError,
    CorruptHeaderError,
    HandshakeTimeoutError,
    LinkError,
    LinkTimeoutError,
    TransferAbortedError,
    TransferLinkError,
)
from ..models.enums import TransferPhase
from ..models.files import FileInfo
from .blocks import (
    ACK,
    BLOCK_SIZES,
    CAN,
    CRC_REQUEST,
    EOT,
    NAK,
    Block,
    block_body_size,
    confirm_cancel,
    decode_block_body,
    parse_header,
)
from .config import YmodemConfig

if TYPE_CHECKING:
    from ..transport.tunnel import UartStream

_LOGGER = logging.getLogger(__name__)


class ReceiveState(Enum):
    """Receiver states; each has one handler returning the next state."""
    HANDSHAKE = auto()
    HEADER_BLOCK = auto()
    DATA_BLOCKS = auto()
    END_OF_TRANSMISSION = auto()
    DONE = auto()


_PHASES = {
    ReceiveState.HANDSHAKE: TransferPhase.HANDSHAKE,
    ReceiveState.HEADER_BLOCK: TransferPhase.HEADER,
    ReceiveState.DATA_BLOCKS: TransferPhase.DATA,
    ReceiveState.END_OF_TRANSMISSION: TransferPhase.END,
}


class YmodemReceiver:
    """Receives one file of a YMODEM batch over a serial stream.

    Usage:
        receiver = YmodemReceiver(stream, filename="a.fit")
        info = await receiver.receive_header()
        if info is not None:
            async for chunk in receiver.iter_data():
                sink.write(chunk)
    """

    def __init__(
            self,
            stream: UartStream,
            config: YmodemConfig | None = None,
            *,
            filename: str | None = None,
    ):
        """Initialize receiver.

        Args:
            stream: Open serial stream
            config: Timing and retry policy (default: YmodemConfig())
            filename: Name used in errors until the header names the file
        """
        self._stream = stream
        self._config = config or YmodemConfig()
        self._filename = filename

        self.state = ReceiveState.HANDSHAKE
        self.info: FileInfo | None = None
        self.bytes_received = 0
        self.batch_closed = False

        self._marker: int | None = None      # Start byte read ahead by a handshake
        self._last_seq = 0
        self._chunk: bytes | None = None     # Payload to emit after the current step
        self._closing_batch = False

        self._handlers: dict[ReceiveState, Callable[[], Awaitable[ReceiveState]]] = {
            ReceiveState.HANDSHAKE: self._handshake,
            ReceiveState.HEADER_BLOCK: self._header_block,
            ReceiveState.DATA_BLOCKS: self._data_blocks,
            ReceiveState.END_OF_TRANSMISSION: self._end_of_transmission,
        }

    async def _step(self) -> None:
        previous = self.state
        try:
            self.state = await self._handlers[previous]()
        except TransferLinkError:
            raise
        except LinkError as e:
            phase = TransferPhase.END if self._closing_batch else _PHASES[previous]
            raise TransferLinkError(str(e), phase=phase, filename=self._filename) from e
        if self.state is not previous:
            _LOGGER.debug("Receiver %s -> %s", previous.name, self.state.name)

    async def receive_header(self) -> FileInfo | None:
        """Run the handshake and read block 0.

        Returns:
            File header, or None if the batch is empty (no file)

        Raises:
            HandshakeTimeoutError: If the sender never starts
            CorruptHeaderError: If block 0 stays corrupt
            TransferLinkError: If the serial stream fails
        """
        while self.state in (ReceiveState.HANDSHAKE, ReceiveState.HEADER_BLOCK):
            await self._step()
        return self.info if self.state is not ReceiveState.DONE else None

    async def iter_data(self) -> AsyncIterator[bytes]:
        """Yield file contents block by block.

        Finite and not restartable; ends after the batch is closed.

        Raises:
            TransferAbortedError: If a block stays corrupt or the sender cancels
            TransferLinkError: If the serial stream fails mid-transfer
        """
        if self.info is None:
            raise RuntimeError("receive_header() must return a file first")

        while self.state is not ReceiveState.DONE:
            await self._step()
            if self._chunk:
                chunk, self._chunk = self._chunk, None
                yield chunk

        _LOGGER.info("Received %s: %d bytes", self.info.name, self.bytes_received)

    # State handlers

    async def _handshake(self) -> ReceiveState:
        attempts = (
            self._config.batch_end_attempts if self._closing_batch
            else self._config.handshake_attempts
        )
        self._marker = await self._request_block(attempts)
        if self._marker is not None:
            return ReceiveState.HEADER_BLOCK

        if self._closing_batch:
            _LOGGER.warning("%s: sender did not close the batch, finishing", self._label)
            return ReceiveState.DONE
        raise HandshakeTimeoutError(
            f"no block after {attempts} ready requests",
            phase=TransferPhase.HANDSHAKE, filename=self._filename,
        )

    async def _header_block(self) -> ReceiveState:
        retries = 0
        while True:
            try:
                block = await self._read_block(TransferPhase.HEADER)
                if block is None and self._closing_batch:
                    # Our ACK of the final EOT was lost; the sender repeats it
                    retries += 1
                    if retries > self._config.max_retries:
                        _LOGGER.warning("%s: sender keeps repeating EOT, finishing", self._label)
                        return ReceiveState.DONE
                    await self._send(ACK)
                    await self._send(CRC_REQUEST)
                    continue
                if block is None:
                    raise CorruptBlockError(
                        "EOT received instead of header",
                        phase=TransferPhase.HEADER, filename=self._filename,
                    )
                if block.seq != 0:
                    raise CorruptBlockError(
                        f"header block has sequence {block.seq}",
                        phase=TransferPhase.HEADER, filename=self._filename,
                    )
                break
            except (CorruptBlockError, LinkTimeoutError) as e:
                retries += 1
                if retries > self._config.max_retries:
                    await self._cancel()
                    if self._closing_batch:
                        _LOGGER.warning("%s: end-of-batch header unreadable: %s", self._label, e)
                        return ReceiveState.DONE
                    raise CorruptHeaderError(
                        f"header still corrupt after {self._config.max_retries} retries",
                        phase=TransferPhase.HEADER, filename=self._filename,
                    ) from e
                _LOGGER.warning("%s: bad header (%s), NAK %d/%d",
                                self._label, e, retries, self._config.max_retries)
                await self._nak()

        info = parse_header(block.payload)

        if self._closing_batch:
            if info.is_end_of_batch:
                await self._send(ACK)
                self.batch_closed = True
            else:
                # One file per session; refuse the next one
                _LOGGER.warning("%s: sender offered another file %r, cancelling",
                                self._label, info.name)
                await self._cancel()
            return ReceiveState.DONE

        await self._send(ACK)
        if info.is_end_of_batch:
            _LOGGER.info("%s: empty batch, no file", self._label)
            self.batch_closed = True
            return ReceiveState.DONE

        self.info = info
        self._filename = info.name
        _LOGGER.info("Receiving %s (%s bytes)", info.name,
                     info.size if info.size is not None else "unknown")

        self._marker = await self._request_block(self._config.handshake_attempts)
        if self._marker is None:
            raise HandshakeTimeoutError(
                f"no data block after {self._config.handshake_attempts} ready requests",
                phase=TransferPhase.DATA, filename=self._filename,
            )
        return ReceiveState.DATA_BLOCKS

    async def _data_blocks(self) -> ReceiveState:
        expected = (self._last_seq + 1) % 256
        retries = 0
        while True:
            try:
                block = await self._read_block(TransferPhase.DATA)
                if block is None:
                    return ReceiveState.END_OF_TRANSMISSION
                if block.seq == self._last_seq:
                    _LOGGER.debug("Block %d repeated, acknowledging without delivery", block.seq)
                    await self._send(ACK)
                    return ReceiveState.DATA_BLOCKS
                if block.seq != expected:
                    raise CorruptBlockError(
                        f"expected block {expected}, got {block.seq}",
                        phase=TransferPhase.DATA, filename=self._filename,
                    )
                break
            except (CorruptBlockError, LinkTimeoutError) as e:
                retries += 1
                if retries > self._config.max_retries:
                    await self._cancel()
                    raise TransferAbortedError(
                        f"block {expected} failed after {self._config.max_retries} retries",
                        phase=TransferPhase.DATA, filename=self._filename,
                    ) from e
                _LOGGER.warning("%s: bad block %d (%s), NAK %d/%d",
                                self._label, expected, e, retries, self._config.max_retries)
                await self._nak()

        self._last_seq = block.seq
        await self._send(ACK)
        self._chunk = self._trim(block)
        return ReceiveState.DATA_BLOCKS

    async def _end_of_transmission(self) -> ReceiveState:
        # First EOT is NAKed; the sender confirms with a second one
        retries = 0
        while True:
            await self._nak()
            try:
                marker = await self._stream.read_byte(self._config.block_timeout)
            except LinkTimeoutError:
                marker = None
            if marker == EOT:
                break
            retries += 1
            if retries > self._config.max_retries:
                await self._cancel()
                raise TransferAbortedError(
                    f"EOT not confirmed after {self._config.max_retries} retries",
                    phase=TransferPhase.END, filename=self._filename,
                )
            _LOGGER.debug("Waiting for repeated EOT (%d/%d)", retries, self._config.max_retries)

        await self._send(ACK)
        self._closing_batch = True
        return ReceiveState.HANDSHAKE

    # Helpers

    @property
    def _label(self) -> str:
        return self._filename or "<unnamed>"

    def _trim(self, block: Block) -> bytes:
        payload = block.payload
        if self.info is not None and self.info.size is not None:
            remaining = max(self.info.size - self.bytes_received, 0)
            payload = payload[:remaining]
        self.bytes_received += len(payload)
        return payload

    async def _request_block(self, attempts: int) -> int | None:
        """Send "C" until a byte arrives; return it, or None when exhausted."""
        for attempt in range(1, attempts + 1):
            await self._send(CRC_REQUEST)
            try:
                return await self._stream.read_byte(self._config.handshake_interval)
            except LinkTimeoutError:
                _LOGGER.debug("No reply to ready request (%d/%d)", attempt, attempts)
        return None

    async def _read_block(self, phase: TransferPhase) -> Block | None:
        """Read one block; None means EOT."""
        if self._marker is not None:
            marker, self._marker = self._marker, None
        else:
            marker = await self._stream.read_byte(self._config.block_timeout)

        if marker == EOT:
            return None
        if marker == CAN and await confirm_cancel(self._stream, self._config.block_timeout):
            raise TransferAbortedError(
                "cancelled by sender", phase=phase, filename=self._filename,
            )
        if marker not in BLOCK_SIZES:
            raise CorruptBlockError(
                f"unexpected start byte 0x{marker:02x}", phase=phase, filename=self._filename,
            )

        body = await self._stream.read_exactly(block_body_size(marker), self._config.block_timeout)
        return decode_block_body(
            marker, body, self._config.crc_func, phase=phase, filename=self._filename,
        )

    async def _send(self, byte: int) -> None:
        await self._stream.write(bytes([byte]))

    async def _nak(self) -> None:
        await self._stream.purge(self._config.purge_quiet_time)
        await self._send(NAK)

    async def _cancel(self) -> None:
        with contextlib.suppress(LinkError):
            await self._stream.write(bytes([CAN, CAN]))


async def receive_file(
        stream: UartStream,
        config: YmodemConfig | None = None,
        *,
        filename: str | None = None,
) -> tuple[FileInfo, AsyncIterator[bytes]] | None:
    """Receive one file over ``stream``.

    Args:
        stream: Open serial stream
        config: Timing and retry policy
        filename: Expected file, used in error messages until block 0 arrives

    Returns:
        (header, lazy byte sequence), or None if the sender has no file
    """
    receiver = YmodemReceiver(stream, config, filename=filename)
    info = await receiver.receive_header()
    if info is None:
        return None
    return info, receiver.iter_data()
