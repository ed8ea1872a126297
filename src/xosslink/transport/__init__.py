"""BLE transport: frame link, UART tunnel and control channel."""

from .connection import BLEConnection, Frame
from .control import ControlChannel
from .tunnel import UartStream, UartTunnel

__all__ = [
    "BLEConnection",
    "ControlChannel",
    "Frame",
    "UartStream",
    "UartTunnel",
]
