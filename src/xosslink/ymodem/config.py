"""YMODEM timing and retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from .crc import CrcFunc, crc16_arc


@dataclass(frozen=True, slots=True)
class YmodemConfig:
    """Timeouts (seconds) and retry budgets for one transfer.

    Attributes:
        handshake_interval: Receiver: delay between "C" requests
        handshake_attempts: Receiver: "C" requests before giving up
        handshake_timeout: Sender: total wait for the receiver's first "C"
        block_timeout: Wait for a whole block, an ACK/NAK or an EOT reply
        max_retries: NAK/resend budget per block (header, data and EOT)
        batch_end_attempts: Receiver: "C" requests for the end-of-batch header
        purge_quiet_time: Line must stay quiet this long before a NAK
        crc_func: Block checksum (device uses CRC-16/ARC)
    """

    handshake_interval: float = 3.0
    handshake_attempts: int = 10
    handshake_timeout: float = 30.0
    block_timeout: float = 10.0
    max_retries: int = 5
    batch_end_attempts: int = 1
    purge_quiet_time: float = 0.2
    crc_func: CrcFunc = crc16_arc

    def __post_init__(self) -> None:
        for name in ("handshake_interval", "handshake_timeout", "block_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        for name in ("handshake_attempts", "max_retries", "batch_end_attempts"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.purge_quiet_time < 0:
            raise ValueError(f"purge_quiet_time must be >= 0, got {self.purge_quiet_time}")
