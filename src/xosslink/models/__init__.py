"""Data models for XOSS devices."""

from .enums import FrameChannel, SendOutcome, TransferPhase
from .files import DiskSpace, FileInfo

__all__ = [
    "DiskSpace",
    "FileInfo",
    "FrameChannel",
    "SendOutcome",
    "TransferPhase",
]
