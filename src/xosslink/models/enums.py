from __future__ import annotations

from enum import Enum, IntEnum


class FrameChannel(IntEnum):
    """Logical channel a BLE frame travelled on."""
    CONTROL = 0   # Control characteristic (write + notify)
    UART = 1      # UART TX (notify) / RX (write) characteristics


class TransferPhase(str, Enum):
    """Phase of a YMODEM transfer, reported with every transfer error."""
    HANDSHAKE = "handshake"
    HEADER = "header"
    DATA = "data"
    END = "end"


class SendOutcome(Enum):
    """Result of a completed YMODEM send.

    UNCONFIRMED_CLOSE means every data block and the EOT were acknowledged,
    but the receiver never acknowledged the end-of-batch header.
    """
    COMPLETE = "complete"
    UNCONFIRMED_CLOSE = "unconfirmed_close"

    @property
    def confirmed(self) -> bool:
        """Receiver acknowledged the whole batch, including its close."""
        return self is SendOutcome.COMPLETE
