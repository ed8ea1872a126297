"""YMODEM block framing and file header codec."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..exceptions import CorruptBlockError, LinkTimeoutError
from ..models.enums import TransferPhase
from ..models.files import FileInfo
from .crc import CrcFunc

if TYPE_CHECKING:
    from ..transport.tunnel import UartStream

# Control bytes
SOH = 0x01          # 128-byte block follows
STX = 0x02          # 1024-byte block follows
EOT = 0x04          # End of transmission
ACK = 0x06
NAK = 0x15
CAN = 0x18          # Cancel (sent twice)
CRC_REQUEST = 0x43  # 'C': receiver ready, CRC mode

PAD = 0x00          # Fill byte for short payloads

BLOCK_SIZES = {SOH: 128, STX: 1024}
SMALL_BLOCK_SIZE = BLOCK_SIZES[SOH]
LARGE_BLOCK_SIZE = BLOCK_SIZES[STX]


@dataclass(frozen=True, slots=True)
class Block:
    """Decoded YMODEM block.

    Attributes:
        seq: Sequence number (mod 256); 0 is the file header
        payload: 128 or 1024 bytes, padding included
    """

    seq: int
    payload: bytes

    @property
    def marker(self) -> int:
        """Start byte this block is framed with."""
        return SOH if len(self.payload) == SMALL_BLOCK_SIZE else STX


def block_body_size(marker: int) -> int:
    """Bytes following the start marker: [seq][~seq][payload][crc:2]."""
    return 2 + BLOCK_SIZES[marker] + 2


def encode_block(seq: int, payload: bytes, crc_func: CrcFunc) -> bytes:
    """Build a framed block.

    Payloads of up to 128 bytes use a SOH block, larger ones a STX block;
    the payload is padded with PAD to the block size.

    Format:
        [SOH|STX][seq:1][0xFF-seq:1][payload:128|1024][crc:2 big-endian]

    Raises:
        ValueError: If the payload exceeds 1024 bytes
    """
    if len(payload) > LARGE_BLOCK_SIZE:
        raise ValueError(
            f"Payload size {len(payload)} exceeds maximum {LARGE_BLOCK_SIZE}"
        )
    marker = SOH if len(payload) <= SMALL_BLOCK_SIZE else STX
    seq &= 0xFF
    padded = bytes(payload).ljust(BLOCK_SIZES[marker], bytes([PAD]))
    return (
        bytes([marker, seq, 0xFF - seq])
        + padded
        + crc_func(padded).to_bytes(2, byteorder="big")
    )


def decode_block_body(
        marker: int,
        body: bytes,
        crc_func: CrcFunc,
        *,
        phase: TransferPhase = TransferPhase.DATA,
        filename: str | None = None,
) -> Block:
    """Validate and decode the bytes following a start marker.

    Raises:
        CorruptBlockError: On bad length, sequence complement or CRC
    """
    size = BLOCK_SIZES[marker]
    if len(body) != size + 4:
        raise CorruptBlockError(
            f"block body is {len(body)} bytes, expected {size + 4}",
            phase=phase, filename=filename,
        )

    seq, complement = body[0], body[1]
    if seq ^ complement != 0xFF:
        raise CorruptBlockError(
            f"sequence 0x{seq:02x} does not match complement 0x{complement:02x}",
            phase=phase, filename=filename,
        )

    payload = bytes(body[2:2 + size])
    received_crc = int.from_bytes(body[2 + size:], byteorder="big")
    computed_crc = crc_func(payload)
    if received_crc != computed_crc:
        raise CorruptBlockError(
            f"CRC mismatch in block {seq}: received 0x{received_crc:04x}, "
            f"computed 0x{computed_crc:04x}",
            phase=phase, filename=filename,
        )

    return Block(seq=seq, payload=payload)


def encode_header(info: FileInfo) -> bytes:
    """Build the block 0 payload (unpadded).

    The device uses "<name> <size>"; an end-of-batch header is empty.
    """
    if info.is_end_of_batch:
        return b""
    text = info.name if info.size is None else f"{info.name} {info.size}"
    data = text.encode("utf-8")
    if len(data) > LARGE_BLOCK_SIZE:
        raise ValueError(f"Header too long: {len(data)} bytes")
    return data


def parse_header(payload: bytes) -> FileInfo:
    """Parse a block 0 payload.

    Accepts the device format "<name> <size>" and the classic
    "<name>\\0<size> [<mtime> ...]". Fields after the size are ignored.
    """
    data = bytes(payload).rstrip(bytes([PAD]))
    if not data or data[0] == 0:
        return FileInfo(name="")

    if b"\x00" in data:
        raw_name, _, rest = data.partition(b"\x00")
    else:
        # Names may contain spaces; the size is the last field
        raw_name, _, rest = data.rpartition(b" ")
        if not raw_name or not rest.isdigit():
            raw_name, rest = data, b""

    fields = rest.replace(b"\x00", b" ").split()
    size = int(fields[0]) if fields and fields[0].isdigit() else None
    return FileInfo(name=raw_name.decode("utf-8", errors="replace"), size=size)


async def confirm_cancel(stream: UartStream, timeout: float) -> bool:
    """After one CAN, check whether a second one follows (remote abort)."""
    try:
        return await stream.read_byte(timeout) == CAN
    except LinkTimeoutError:
        return False
