"""File transfer data models."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class FileInfo:
    """YMODEM file header (block 0).

    Attributes:
        name: File name on the device. Empty name marks the end of a batch.
        size: Declared size in bytes, if the sender provided one
    """

    name: str
    size: int | None = None

    def __post_init__(self) -> None:
        if self.size is not None and self.size < 0:
            raise ValueError(f"size out of range: {self.size} (must be >= 0)")

    @property
    def is_end_of_batch(self) -> bool:
        """Empty header that terminates a YMODEM batch."""
        return not self.name


@dataclass(frozen=True, slots=True)
class DiskSpace:
    """Device storage report, in KiB."""

    free_kib: int
    total_kib: int

    @property
    def used_kib(self) -> int:
        """Occupied storage in KiB."""
        return self.total_kib - self.free_kib
