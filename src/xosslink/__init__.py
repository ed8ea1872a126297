"""XOSS BLE Transport Package.

  Pure Python package for exchanging files with XOSS GPS cycling computers.
  """

from .device import XossDevice
from .exceptions import (
    CorruptBlockError,
    CorruptHeaderError,
    DeviceNotIdleError,
    DeviceRejectedError,
    FilenameMismatchError,
    HandshakeTimeoutError,
    InvalidResponseError,
    LinkError,
    LinkTimeoutError,
    ProtocolError,
    TransferAbortedError,
    TransferError,
    TransferLinkError,
    UnexpectedMessageTypeError,
    XossError,
)
from .models import DiskSpace, FileInfo, FrameChannel, SendOutcome, TransferPhase
from .protocol import SERVICE_UUID, ControlBuffer, ControlMessage, ControlMessageType
from .transport import BLEConnection, ControlChannel, UartStream, UartTunnel
from .ymodem import YmodemConfig, crc16_arc, crc16_xmodem, receive_file, send_file

__version__ = "0.1.0"

__all__ = [
    # Main API
    "XossDevice",
    # Exceptions
    "XossError",
    "LinkError",
    "LinkTimeoutError",
    "ProtocolError",
    "InvalidResponseError",
    "UnexpectedMessageTypeError",
    "DeviceRejectedError",
    "DeviceNotIdleError",
    "FilenameMismatchError",
    "TransferError",
    "TransferLinkError",
    "HandshakeTimeoutError",
    "TransferAbortedError",
    "CorruptHeaderError",
    "CorruptBlockError",
    # Models
    "DiskSpace",
    "FileInfo",
    "FrameChannel",
    "SendOutcome",
    "TransferPhase",
    # Control protocol
    "ControlBuffer",
    "ControlMessage",
    "ControlMessageType",
    # Transport
    "BLEConnection",
    "ControlChannel",
    "UartStream",
    "UartTunnel",
    # File transfer
    "YmodemConfig",
    "receive_file",
    "send_file",
    "crc16_arc",
    "crc16_xmodem",
    # Constants
    "SERVICE_UUID",
]
