"""Control-channel messages for XOSS devices."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from ..exceptions import InvalidResponseError


class ControlMessageType(IntEnum):
    """Control message type codes (first byte of a control frame)."""

    # Idle / status
    IDLE = 0x04                     # No transfer in progress (r/w)
    STATUS = 0xFF                   # Ask for current state (w)
    STOP = 0x1F                     # Abort current operation (w)

    # File transfer negotiation
    REQUEST_RETURN = 0x05           # Ask device to send a file (w)
    RETURNING = 0x06                # Device will send the file (r)
    REQUEST_SEND = 0x07             # Ask device to accept a file (w)
    ACCEPT = 0x08                   # Device will accept the file (r)

    # Storage
    DISK_SPACE = 0x09               # Read free/total space (w)
    DISK_SPACE_REPLY = 0x0A         # Body: b"<free>/<total>" (r)
    DELETE = 0x0D                   # Delete a file (w)
    DELETED = 0x0E                  # File deleted (r)

    # Device errors (r)
    ERR_COMMAND = 0x11
    ERR_FILE_NOT_AVAILABLE = 0x12
    ERR_MEMORY = 0x13
    ERR_NOT_IDLE = 0x14
    ERR_FILE_PARSE = 0x15

    # Clock
    TIME_SET = 0x54                 # Body: uint32 LE UTC seconds (w)
    TIME_SET_REPLY = 0x55           # (r, not sent by every firmware)

    @property
    def is_error(self) -> bool:
        """Whether this is one of the device's error replies."""
        return 0x11 <= self.value <= 0x15


# GATT surface
SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
UART_RX_CHARACTERISTIC_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"  # host -> device
UART_TX_CHARACTERISTIC_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"  # device -> host
CONTROL_CHARACTERISTIC_UUID = "6e400004-b5a3-f393-e0a9-e50e24dcca9e"

# Framing constants
DEFAULT_MTU = 23
ATT_HEADER_SIZE = 3
MAX_CONTROL_FRAME_SIZE = 512
EMPTY_BODY = b"\x00"  # Empty body still occupies one byte on the wire


def xor_checksum(data: bytes | bytearray | memoryview) -> int:
    """XOR of all bytes (crc8/xor)."""
    crc = 0
    for byte in data:
        crc ^= byte
    return crc


@dataclass(frozen=True)
class ControlMessage:
    """Typed control-channel message.

    The body is opaque at this layer: a filename for transfer negotiation,
    a little-endian timestamp for TIME_SET, empty for IDLE/STATUS.
    """

    type: ControlMessageType
    body: bytes | memoryview = b""

    def encode(self) -> bytes:
        """Serialize to wire format.

        Format:
            [type:1][body:n][xor:1]
            - body: EMPTY_BODY when the message has no payload
            - xor: XOR of type and body bytes
        """
        body = bytes(self.body) or EMPTY_BODY
        frame = bytearray([self.type]) + body
        frame.append(xor_checksum(frame))
        return bytes(frame)

    @classmethod
    def decode(cls, data: bytes | bytearray | memoryview) -> ControlMessage:
        """Parse a control frame.

        The returned body is a slice of ``data``; pass a memoryview to avoid
        copying.

        Raises:
            InvalidResponseError: If the frame is short, has a bad checksum
                or an unknown type
        """
        if len(data) < 3:
            raise InvalidResponseError(
                f"Control frame too short: {len(data)} bytes (need at least 3)"
            )
        if xor_checksum(data) != 0:
            raise InvalidResponseError(
                f"Control frame checksum mismatch: {bytes(data).hex()}"
            )
        try:
            msg_type = ControlMessageType(data[0])
        except ValueError as e:
            raise InvalidResponseError(
                f"Unknown control message type 0x{data[0]:02x}"
            ) from e

        body = data[1:-1]
        if bytes(body) == EMPTY_BODY:
            body = body[:0]
        return cls(msg_type, body)

    @property
    def text(self) -> str:
        """Body decoded as UTF-8 (filenames, disk space)."""
        return bytes(self.body).decode("utf-8", errors="replace")

    def __repr__(self) -> str:
        return f"ControlMessage({self.type.name}, {bytes(self.body)!r})"


class ControlBuffer:
    """Reusable receive buffer for control replies.

    Holds the bytes backing the most recently received reply. Each ``load``
    overwrites the region backing the previous view, so a buffer backs at
    most one live message at a time.
    """

    def __init__(self, size: int = MAX_CONTROL_FRAME_SIZE):
        self._data = bytearray(size)
        self._view = memoryview(self._data)

    def load(self, frame: bytes) -> memoryview:
        """Copy ``frame`` into the buffer and return a view of it."""
        if len(frame) > len(self._data):
            raise ValueError(
                f"Frame size {len(frame)} exceeds buffer size {len(self._data)}"
            )
        self._view[:len(frame)] = frame
        return self._view[:len(frame)]

    @property
    def capacity(self) -> int:
        """Largest frame the buffer can hold."""
        return len(self._data)


def _named(msg_type: ControlMessageType, filename: str) -> ControlMessage:
    if not filename:
        raise ValueError("filename must not be empty")
    return ControlMessage(msg_type, filename.encode("utf-8"))


def build_request_return(filename: str) -> ControlMessage:
    """Ask the device to send ``filename`` over the UART tunnel."""
    return _named(ControlMessageType.REQUEST_RETURN, filename)


def build_request_send(filename: str) -> ControlMessage:
    """Ask the device to accept ``filename`` over the UART tunnel."""
    return _named(ControlMessageType.REQUEST_SEND, filename)


def build_delete(filename: str) -> ControlMessage:
    """Ask the device to delete ``filename``."""
    return _named(ControlMessageType.DELETE, filename)


def build_status() -> ControlMessage:
    """Ask the device for its state (answered with IDLE when idle)."""
    return ControlMessage(ControlMessageType.STATUS)


def build_idle() -> ControlMessage:
    """IDLE message; the device echoes it back when idle."""
    return ControlMessage(ControlMessageType.IDLE)


def build_disk_space() -> ControlMessage:
    """Ask the device for free/total storage."""
    return ControlMessage(ControlMessageType.DISK_SPACE)


def build_time_set(timestamp: int) -> ControlMessage:
    """Set the device clock.

    Args:
        timestamp: UTC seconds since the Unix epoch

    Format:
        body: [timestamp:4] little-endian uint32
    """
    if not 0 <= timestamp <= 0xFFFFFFFF:
        raise ValueError(f"timestamp out of range: {timestamp}")
    return ControlMessage(ControlMessageType.TIME_SET, timestamp.to_bytes(4, byteorder="little"))
