"""Exception hierarchy for xosslink."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models.enums import TransferPhase


class XossError(Exception):
    """Base exception for all xosslink errors."""


class LinkError(XossError):
    """BLE link failed (connect, write or notification stream)."""


class LinkTimeoutError(LinkError):
    """No expected frame arrived in time."""


class ProtocolError(XossError):
    """Device and host disagree about the control protocol."""


class InvalidResponseError(ProtocolError):
    """Control frame could not be decoded."""


class UnexpectedMessageTypeError(ProtocolError):
    """Control reply has a different type than the one expected."""


class DeviceRejectedError(UnexpectedMessageTypeError):
    """Device answered a request with one of its error messages."""


class DeviceNotIdleError(ProtocolError):
    """Device did not confirm it is idle."""


class FilenameMismatchError(ProtocolError):
    """Device echoed a different filename than the one requested."""


class TransferError(XossError):
    """File transfer failed.

    Carries the transfer phase and the file (or operation) it failed in, both
    of which are also prefixed to the message.
    """

    def __init__(self, message: str, *, phase: TransferPhase, filename: str | None = None):
        self.phase = phase
        self.filename = filename
        target = filename if filename else "<unnamed>"
        super().__init__(f"[{phase.value}] {target}: {message}")


class HandshakeTimeoutError(TransferError):
    """Sender and receiver never synchronized."""


class TransferAbortedError(TransferError):
    """Transfer gave up after exhausting a retry budget or on remote cancel."""


class CorruptHeaderError(TransferAbortedError):
    """Header block stayed corrupt for the whole retry budget."""


class CorruptBlockError(TransferError):
    """Block failed framing or checksum validation."""


class TransferLinkError(TransferError, LinkError):
    """Serial stream or BLE link failed in the middle of a transfer."""
