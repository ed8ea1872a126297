"""Test XossDevice file operations against a scripted device."""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timezone
from typing import AsyncIterator

import pytest
from fakes import FakeLink

from xosslink import XossDevice
from xosslink.exceptions import (
    DeviceNotIdleError,
    DeviceRejectedError,
    FilenameMismatchError,
    LinkError,
    LinkTimeoutError,
    TransferLinkError,
    UnexpectedMessageTypeError,
)
from xosslink.models.enums import SendOutcome, TransferPhase
from xosslink.models.files import DiskSpace, FileInfo
from xosslink.protocol.commands import ControlMessage, ControlMessageType
from xosslink.ymodem.blocks import (
    ACK,
    CRC_REQUEST,
    EOT,
    NAK,
    SOH,
    block_body_size,
    decode_block_body,
    encode_block,
    encode_header,
    parse_header,
)
from xosslink.ymodem.config import YmodemConfig
from xosslink.ymodem.crc import crc16_arc

MAC = "D9:29:E4:59:55:5C"
SMALL_BLOCK = 1 + block_body_size(SOH)


@contextlib.asynccontextmanager
async def attached(link: FakeLink, config: YmodemConfig) -> AsyncIterator[XossDevice]:
    """Device wired to a fake link instead of a BLE connection."""
    device = XossDevice(MAC, ymodem_config=config)
    device._attach(link)
    try:
        yield device
    finally:
        await device._tunnel.stop()


async def respond(link: FakeLink, reply: ControlMessage) -> ControlMessage:
    """Answer the next control request; return the request."""
    request = await link.expect_control()
    link.notify_control(reply)
    return request


async def serve_download(link: FakeLink, name: str, data: bytes) -> None:
    """Device side of a pull: RETURNING, YMODEM batch, then IDLE."""
    request = await respond(link, ControlMessage(ControlMessageType.RETURNING, name.encode()))
    assert request.type == ControlMessageType.REQUEST_RETURN
    assert request.text == name

    assert await link.expect_uart() == bytes([CRC_REQUEST])
    link.notify_uart(encode_block(0, encode_header(FileInfo(name, len(data))), crc16_arc))
    assert await link.expect_uart(2) == bytes([ACK, CRC_REQUEST])
    link.notify_uart(encode_block(1, data, crc16_arc))
    assert await link.expect_uart() == bytes([ACK])
    link.notify_uart(bytes([EOT]))
    assert await link.expect_uart() == bytes([NAK])
    link.notify_uart(bytes([EOT]))
    assert await link.expect_uart(2) == bytes([ACK, CRC_REQUEST])
    link.notify_uart(encode_block(0, b"", crc16_arc))
    assert await link.expect_uart() == bytes([ACK])

    link.notify_control(ControlMessage(ControlMessageType.IDLE))


@pytest.mark.asyncio
async def test_read_file(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    data = bytes(range(200)) * 5
    async with attached(fake_link, fast_config) as device:
        script = asyncio.create_task(serve_download(fake_link, "a.fit", data))
        assert await device.read_file("a.fit") == data
        await script

    # Serial writes respect the link's frame size
    assert all(len(frame) <= fake_link.max_frame_size for frame in fake_link.uart_written)


@pytest.mark.asyncio
async def test_download_filename_mismatch(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    async with attached(fake_link, fast_config) as device:
        script = asyncio.create_task(
            respond(fake_link, ControlMessage(ControlMessageType.RETURNING, b"b.fit"))
        )
        with pytest.raises(FilenameMismatchError, match="sent 'a.fit'"):
            await device.read_file("a.fit")
        await script

        # No transfer was started and the stream is released
        assert fake_link.uart_written == []
        assert device._tunnel._stream.closed


@pytest.mark.asyncio
async def test_download_rejected(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    async with attached(fake_link, fast_config) as device:
        script = asyncio.create_task(
            respond(fake_link, ControlMessage(ControlMessageType.ERR_FILE_NOT_AVAILABLE, b"a.fit"))
        )
        with pytest.raises(DeviceRejectedError, match="ERR_FILE_NOT_AVAILABLE"):
            await device.read_file("a.fit")
        await script


@pytest.mark.asyncio
async def test_upload_file(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    content = b'{"units": "metric"}'

    async def device_side() -> bytes:
        request = await respond(
            fake_link, ControlMessage(ControlMessageType.ACCEPT, b"Setting.json")
        )
        assert request.type == ControlMessageType.REQUEST_SEND

        fake_link.notify_uart(bytes([CRC_REQUEST]))
        header = await fake_link.expect_uart(SMALL_BLOCK)
        info = parse_header(decode_block_body(header[0], header[1:], crc16_arc).payload)
        fake_link.notify_uart(bytes([ACK, CRC_REQUEST]))

        raw = await fake_link.expect_uart(SMALL_BLOCK)
        block = decode_block_body(raw[0], raw[1:], crc16_arc)
        fake_link.notify_uart(bytes([ACK]))

        assert await fake_link.expect_uart() == bytes([EOT])
        fake_link.notify_uart(bytes([NAK]))
        assert await fake_link.expect_uart() == bytes([EOT])
        fake_link.notify_uart(bytes([ACK, CRC_REQUEST]))
        await fake_link.expect_uart(SMALL_BLOCK)
        fake_link.notify_uart(bytes([ACK]))

        fake_link.notify_control(ControlMessage(ControlMessageType.IDLE))
        assert info == FileInfo("Setting.json", len(content))
        return block.payload[:info.size]

    async with attached(fake_link, fast_config) as device:
        script = asyncio.create_task(device_side())
        outcome = await device.upload_file("Setting.json", content)
        assert await script == content

    assert outcome is SendOutcome.COMPLETE


@pytest.mark.asyncio
async def test_upload_wrong_reply_type(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    """IDLE instead of ACCEPT must not start a transfer."""
    async with attached(fake_link, fast_config) as device:
        script = asyncio.create_task(respond(fake_link, ControlMessage(ControlMessageType.IDLE)))
        with pytest.raises(UnexpectedMessageTypeError, match="expected ACCEPT, got IDLE"):
            await device.upload_file("Setting.json", b"{}")
        await script

    assert fake_link.uart_written == []


@pytest.mark.asyncio
async def test_delete_file(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    async with attached(fake_link, fast_config) as device:
        script = asyncio.create_task(
            respond(fake_link, ControlMessage(ControlMessageType.DELETED, b"old.fit"))
        )
        await device.delete_file("old.fit")
        request = await script

    assert request.type == ControlMessageType.DELETE
    assert request.text == "old.fit"


@pytest.mark.asyncio
async def test_read_disk_space(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    async with attached(fake_link, fast_config) as device:
        script = asyncio.create_task(
            respond(fake_link, ControlMessage(ControlMessageType.DISK_SPACE_REPLY, b"556/8104"))
        )
        assert await device.read_disk_space() == DiskSpace(free_kib=556, total_kib=8104)
        await script


@pytest.mark.asyncio
async def test_set_time_confirmed(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    when = datetime(2023, 5, 8, 2, 19, 39, tzinfo=timezone.utc)
    async with attached(fake_link, fast_config) as device:
        script = asyncio.create_task(
            respond(fake_link, ControlMessage(ControlMessageType.TIME_SET_REPLY))
        )
        assert await device.set_time(when) is True
        request = await script

    assert request.type == ControlMessageType.TIME_SET
    assert int.from_bytes(request.body, "little") == int(when.timestamp())


@pytest.mark.asyncio
async def test_set_time_without_reply(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    """First-generation firmware does not confirm the time."""
    async with attached(fake_link, fast_config) as device:
        device.TIMEOUT_CONTROL = 0.05
        assert await device.set_time() is False


@pytest.mark.asyncio
async def test_ensure_idle(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    async with attached(fake_link, fast_config) as device:
        script = asyncio.create_task(respond(fake_link, ControlMessage(ControlMessageType.IDLE)))
        await device.ensure_idle()
        request = await script

    assert request.type == ControlMessageType.STATUS


@pytest.mark.asyncio
async def test_ensure_idle_falls_back_to_idle(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    async def device_side() -> ControlMessage:
        await fake_link.expect_control()  # STATUS goes unanswered
        return await respond(fake_link, ControlMessage(ControlMessageType.IDLE))

    async with attached(fake_link, fast_config) as device:
        device.TIMEOUT_STATUS = 0.1
        script = asyncio.create_task(device_side())
        await device.ensure_idle()
        request = await script

    assert request.type == ControlMessageType.IDLE


@pytest.mark.asyncio
async def test_ensure_idle_busy(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    async with attached(fake_link, fast_config) as device:
        script = asyncio.create_task(
            respond(fake_link, ControlMessage(ControlMessageType.RETURNING, b"a.fit"))
        )
        with pytest.raises(DeviceNotIdleError, match="RETURNING"):
            await device.ensure_idle()
        await script


@pytest.mark.asyncio
async def test_operations_require_connection() -> None:
    device = XossDevice(MAC)
    with pytest.raises(RuntimeError, match="not connected"):
        await device.read_disk_space()
    with pytest.raises(RuntimeError, match="not connected"):
        device.open_serial_stream()


@pytest.mark.asyncio
async def test_control_timeout_names_operation(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    async with attached(fake_link, fast_config) as device:
        device.TIMEOUT_CONTROL = 0.05
        with pytest.raises(LinkTimeoutError, match="^download a.fit: No control reply"):
            await device.read_file("a.fit")
        with pytest.raises(LinkTimeoutError, match="^delete old.fit: No control reply"):
            await device.delete_file("old.fit")


@pytest.mark.asyncio
async def test_lost_link_names_operation(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    async with attached(fake_link, fast_config) as device:
        fake_link.drop()
        await asyncio.sleep(0.01)

        with pytest.raises(LinkError, match="^read disk space: Link lost"):
            await device.read_disk_space()
        with pytest.raises(LinkError, match="^download a.fit: Link lost"):
            await device.read_file("a.fit")


@pytest.mark.asyncio
async def test_link_lost_mid_download(fake_link: FakeLink, fast_config: YmodemConfig) -> None:
    async def device_side() -> None:
        await respond(fake_link, ControlMessage(ControlMessageType.RETURNING, b"a.fit"))
        assert await fake_link.expect_uart() == bytes([CRC_REQUEST])
        fake_link.drop()

    async with attached(fake_link, fast_config) as device:
        script = asyncio.create_task(device_side())
        with pytest.raises(TransferLinkError, match=r"^\[handshake\] a.fit: Serial stream closed") as excinfo:
            await device.read_file("a.fit")
        await script

    assert excinfo.value.phase == TransferPhase.HANDSHAKE
    assert excinfo.value.filename == "a.fit"
