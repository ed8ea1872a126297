"""16-bit CRCs used by YMODEM blocks.

XOSS devices checksum blocks with CRC-16/ARC rather than the CRC-16/XMODEM
of the classic protocol. Both are provided; the engine takes one from its
config.
"""

from __future__ import annotations

from typing import Callable

import crcmod.predefined

CrcFunc = Callable[[bytes], int]

_crc16_arc = crcmod.predefined.mkCrcFun("crc-16")      # Reflected poly 0x8005, init 0x0000
_crc16_xmodem = crcmod.predefined.mkCrcFun("xmodem")   # Poly 0x1021, init 0x0000


def crc16_arc(data: bytes | bytearray | memoryview) -> int:
    """CRC-16/ARC (check value 0xBB3D)."""
    return _crc16_arc(bytes(data))


def crc16_xmodem(data: bytes | bytearray | memoryview) -> int:
    """CRC-16/XMODEM (check value 0x31C3)."""
    return _crc16_xmodem(bytes(data))
