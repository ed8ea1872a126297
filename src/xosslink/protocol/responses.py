"""Control reply validation and parsing."""

from __future__ import annotations

from ..exceptions import (
    DeviceRejectedError,
    FilenameMismatchError,
    InvalidResponseError,
    UnexpectedMessageTypeError,
)
from ..models.files import DiskSpace
from .commands import ControlMessage, ControlMessageType


def expect_reply(
        reply: ControlMessage,
        expected_type: ControlMessageType,
        *,
        operation: str,
) -> bytes:
    """Check the reply type and return its body.

    Args:
        reply: Control reply from the device
        expected_type: Type the caller is waiting for
        operation: Human-readable operation, used in error messages

    Returns:
        Reply body as bytes

    Raises:
        DeviceRejectedError: If the device answered with an error message
        UnexpectedMessageTypeError: If the reply has any other wrong type
    """
    if reply.type != expected_type:
        if reply.type.is_error:
            raise DeviceRejectedError(
                f"{operation}: device replied {reply.type.name} "
                f"(body {bytes(reply.body)!r}), expected {expected_type.name}"
            )
        raise UnexpectedMessageTypeError(
            f"{operation}: expected {expected_type.name}, got {reply.type.name}"
        )
    return bytes(reply.body)


def check_filename_echo(body: bytes, filename: str, *, operation: str) -> None:
    """Verify the device echoed the filename that was sent.

    Raises:
        FilenameMismatchError: If the echoed name differs
    """
    expected = filename.encode("utf-8")
    if body != expected:
        raise FilenameMismatchError(
            f"{operation}: sent {filename!r}, device echoed {body!r}"
        )


def parse_disk_space(body: bytes) -> DiskSpace:
    """Parse a DISK_SPACE_REPLY body.

    Format: ASCII "<free>/<total>" in KiB, e.g. b"556/8104"

    Raises:
        InvalidResponseError: If the body is not in that format
    """
    try:
        free, total = body.decode("ascii").strip("\x00 ").split("/")
        return DiskSpace(free_kib=int(free), total_kib=int(total))
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidResponseError(f"Malformed disk space reply: {body!r}") from e
