"""Main XOSS BLE device class."""

from __future__ import annotations

import contextlib
import io
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncIterator, BinaryIO, Iterator

from .exceptions import DeviceNotIdleError, LinkError, LinkTimeoutError, TransferError
from .models.enums import SendOutcome
from .models.files import DiskSpace, FileInfo
from .protocol import (
    ControlBuffer,
    ControlMessage,
    ControlMessageType,
    build_delete,
    build_disk_space,
    build_idle,
    build_request_return,
    build_request_send,
    build_status,
    build_time_set,
    check_filename_echo,
    expect_reply,
    parse_disk_space,
)
from .transport import BLEConnection, ControlChannel, UartStream, UartTunnel
from .ymodem import YmodemConfig, receive_file, send_file

if TYPE_CHECKING:
    from bleak.backends.device import BLEDevice

_LOGGER = logging.getLogger(__name__)


@contextlib.contextmanager
def _link_errors(operation: str) -> Iterator[None]:
    """Prefix link failures with the operation they interrupted."""
    try:
        yield
    except TransferError:
        raise
    except LinkTimeoutError as e:
        raise LinkTimeoutError(f"{operation}: {e}") from e
    except LinkError as e:
        raise LinkError(f"{operation}: {e}") from e


class XossDevice:
    """XOSS GPS cycling computer.

    Main API for moving files to and from the device.

    Usage:
        async with XossDevice("D9:29:E4:59:55:5C") as device:
            data = await device.read_file("filelist.txt")
            await device.upload_file("offline.gnss", open("mga.ubx", "rb"))

    The link is owned by this instance; one transfer runs at a time.
    """

    TIMEOUT_CONTROL = 5.0    # Control request -> reply
    TIMEOUT_IDLE = 30.0      # Transfer end -> IDLE (device may parse the file first)
    TIMEOUT_STATUS = 5.0     # STATUS -> IDLE

    def __init__(
            self,
            mac_address: str,
            ble_device: BLEDevice | None = None,
            timeout: float = 10.0,
            ymodem_config: YmodemConfig | None = None,
    ):
        """Initialize XOSS device.

        Args:
            mac_address: Device MAC address
            ble_device: Optional BLEDevice from HA bluetooth integration
            timeout: BLE connection timeout in seconds (default: 10)
            ymodem_config: File transfer timing and retry policy
        """
        self.mac_address = mac_address
        self.ymodem_config = ymodem_config or YmodemConfig()

        self._connection = BLEConnection(mac_address, ble_device, timeout)
        self._tunnel: UartTunnel | None = None
        self._control: ControlChannel | None = None

    async def __aenter__(self) -> XossDevice:
        """Connect and start the frame dispatcher."""
        await self._connection.connect()
        self._attach(self._connection)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Stop the dispatcher and disconnect."""
        if self._tunnel is not None:
            await self._tunnel.stop()
        self._tunnel = None
        self._control = None
        await self._connection.disconnect()

    def _attach(self, link: Any) -> None:
        self._tunnel = UartTunnel(link)
        self._tunnel.start()
        self._control = ControlChannel(link, self._tunnel, timeout=self.TIMEOUT_CONTROL)

    def _require_connection(self) -> tuple[UartTunnel, ControlChannel]:
        if self._tunnel is None or self._control is None:
            raise RuntimeError("Device not connected - use 'async with XossDevice(...)'")
        return self._tunnel, self._control

    # Transport primitives

    async def request_control(
            self,
            message: ControlMessage,
            *,
            buffer: ControlBuffer | None = None,
            timeout: float | None = None,
    ) -> ControlMessage:
        """Send a control message and wait for the reply."""
        _, control = self._require_connection()
        return await control.request(message, buffer=buffer, timeout=timeout)

    async def receive_control(
            self,
            *,
            buffer: ControlBuffer | None = None,
            timeout: float | None = None,
    ) -> ControlMessage:
        """Wait for the next control message."""
        _, control = self._require_connection()
        return await control.receive(buffer=buffer, timeout=timeout)

    def open_serial_stream(self) -> UartStream:
        """Open the virtual serial stream for one file transfer."""
        tunnel, _ = self._require_connection()
        return tunnel.open_uart_stream()

    async def ymodem_receive(
            self,
            stream: UartStream,
            filename: str | None = None,
    ) -> tuple[FileInfo, AsyncIterator[bytes]] | None:
        """Receive one file over ``stream`` (None if the device sends no file)."""
        return await receive_file(stream, self.ymodem_config, filename=filename)

    async def ymodem_send(
            self,
            stream: UartStream,
            filename: str,
            source: Any,
            size: int | None = None,
    ) -> SendOutcome:
        """Send ``source`` as ``filename`` over ``stream``."""
        return await send_file(stream, filename, source, size=size, config=self.ymodem_config)

    # File operations

    async def download_file(self, filename: str, sink: BinaryIO) -> int:
        """Download a file from the device into ``sink``.

        Data is written block by block as it arrives.

        Args:
            filename: File name on the device
            sink: Binary writer

        Returns:
            Number of bytes written

        Raises:
            FilenameMismatchError: If the device confirms a different file
            DeviceRejectedError: If the device refuses (e.g. file not available)
            TransferError: If the YMODEM transfer fails
            LinkError: If the link fails outside the transfer (message names the operation)
        """
        operation = f"download {filename}"
        buffer = ControlBuffer()
        start = time.monotonic()

        with _link_errors(operation):
            async with self.open_serial_stream() as stream:
                reply = await self.request_control(
                    build_request_return(filename), buffer=buffer, timeout=self.TIMEOUT_CONTROL
                )
                body = expect_reply(reply, ControlMessageType.RETURNING, operation=operation)
                check_filename_echo(body, filename, operation=operation)

                received = await self.ymodem_receive(stream, filename)
                written = 0
                if received is None:
                    _LOGGER.warning("%s: device sent an empty batch", operation)
                else:
                    info, chunks = received
                    _LOGGER.info("Downloading %s (%s bytes)", filename,
                                 info.size if info.size is not None else "unknown")
                    async for chunk in chunks:
                        sink.write(chunk)
                        written += len(chunk)

            reply = await self.receive_control(buffer=buffer, timeout=self.TIMEOUT_IDLE)
            expect_reply(reply, ControlMessageType.IDLE, operation=operation)

        elapsed = time.monotonic() - start
        _LOGGER.info(
            "Downloaded %s (%d bytes) in %.2f seconds (%.2f KiB/s)",
            filename,
            written,
            elapsed,
            written / elapsed / 1024 if elapsed else 0.0,
        )
        return written

    async def read_file(self, filename: str) -> bytes:
        """Download a file into memory."""
        sink = io.BytesIO()
        await self.download_file(filename, sink)
        return sink.getvalue()

    async def upload_file(
            self,
            filename: str,
            source: bytes | Any,
            size: int | None = None,
    ) -> SendOutcome:
        """Upload a file to the device.

        Args:
            filename: File name on the device
            source: File contents, or a binary reader (sync or async read)
            size: Size to announce (default: len of bytes / seekable reader)

        Returns:
            SendOutcome of the YMODEM batch

        Raises:
            FilenameMismatchError: If the device accepts a different file
            DeviceRejectedError: If the device refuses or cannot parse the file
            TransferError: If the YMODEM transfer fails
            LinkError: If the link fails outside the transfer (message names the operation)
        """
        if isinstance(source, (bytes, bytearray, memoryview)):
            source = io.BytesIO(bytes(source))

        operation = f"upload {filename}"
        buffer = ControlBuffer()
        start = time.monotonic()

        with _link_errors(operation):
            async with self.open_serial_stream() as stream:
                reply = await self.request_control(
                    build_request_send(filename), buffer=buffer, timeout=self.TIMEOUT_CONTROL
                )
                body = expect_reply(reply, ControlMessageType.ACCEPT, operation=operation)
                check_filename_echo(body, filename, operation=operation)

                outcome = await self.ymodem_send(stream, filename, source, size)

            transfer_time = time.monotonic() - start
            start = time.monotonic()

            reply = await self.receive_control(buffer=buffer, timeout=self.TIMEOUT_IDLE)
            expect_reply(reply, ControlMessageType.IDLE, operation=operation)

        _LOGGER.info(
            "Uploaded %s in %.2f seconds. Device processed it in %.2f seconds",
            filename,
            transfer_time,
            time.monotonic() - start,
        )
        return outcome

    async def delete_file(self, filename: str) -> None:
        """Delete a file on the device.

        Some .json files are not regenerated by the device once deleted;
        choosing what to delete is up to the caller.
        """
        operation = f"delete {filename}"
        with _link_errors(operation):
            reply = await self.request_control(build_delete(filename), timeout=self.TIMEOUT_CONTROL)
        body = expect_reply(reply, ControlMessageType.DELETED, operation=operation)
        check_filename_echo(body, filename, operation=operation)
        _LOGGER.info("Deleted %s", filename)

    async def read_disk_space(self) -> DiskSpace:
        """Read free and total storage."""
        operation = "read disk space"
        with _link_errors(operation):
            reply = await self.request_control(build_disk_space(), timeout=self.TIMEOUT_CONTROL)
        body = expect_reply(reply, ControlMessageType.DISK_SPACE_REPLY, operation=operation)
        space = parse_disk_space(body)
        _LOGGER.info("Disk space: %d/%d KiB free", space.free_kib, space.total_kib)
        return space

    async def set_time(self, when: datetime | None = None) -> bool:
        """Set the device clock (UTC).

        Returns:
            True if the device confirmed, False if it did not reply
            (first-generation firmware never does)
        """
        when = when or datetime.now(tz=timezone.utc)
        message = build_time_set(int(when.timestamp()))
        try:
            with _link_errors("set time"):
                reply = await self.request_control(message, timeout=self.TIMEOUT_CONTROL)
        except LinkTimeoutError:
            _LOGGER.warning("No reply to time set; assuming firmware without confirmation")
            return False
        expect_reply(reply, ControlMessageType.TIME_SET_REPLY, operation="set time")
        _LOGGER.info("Device time set to %s", when.isoformat())
        return True

    async def ensure_idle(self) -> None:
        """Make sure no transfer is in progress on the device.

        Raises:
            DeviceNotIdleError: If the device does not confirm IDLE
        """
        with _link_errors("check idle"):
            try:
                reply = await self.request_control(build_status(), timeout=self.TIMEOUT_STATUS)
            except LinkTimeoutError:
                _LOGGER.debug("No reply to STATUS, sending IDLE")
                try:
                    reply = await self.request_control(build_idle(), timeout=self.TIMEOUT_STATUS)
                except LinkTimeoutError as e:
                    raise DeviceNotIdleError("Device did not answer STATUS or IDLE") from e

        if reply.type != ControlMessageType.IDLE:
            raise DeviceNotIdleError(f"Device is not idle: replied {reply.type.name}")
