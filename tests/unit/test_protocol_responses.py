"""Test control reply validation."""

import pytest

from xosslink.exceptions import (
    DeviceRejectedError,
    FilenameMismatchError,
    InvalidResponseError,
    UnexpectedMessageTypeError,
)
from xosslink.models.files import DiskSpace
from xosslink.protocol.commands import ControlMessage, ControlMessageType
from xosslink.protocol.responses import check_filename_echo, expect_reply, parse_disk_space


class TestExpectReply:
    """Test reply type checks."""

    def test_returns_body_on_match(self):
        reply = ControlMessage(ControlMessageType.RETURNING, b"a.fit")
        body = expect_reply(reply, ControlMessageType.RETURNING, operation="download a.fit")
        assert body == b"a.fit"

    def test_returns_bytes_for_memoryview_body(self):
        reply = ControlMessage(ControlMessageType.ACCEPT, memoryview(b"a.fit"))
        body = expect_reply(reply, ControlMessageType.ACCEPT, operation="upload a.fit")
        assert isinstance(body, bytes)

    def test_wrong_type(self):
        """IDLE where ACCEPT is expected must fail loudly."""
        reply = ControlMessage(ControlMessageType.IDLE)
        with pytest.raises(UnexpectedMessageTypeError, match="expected ACCEPT, got IDLE"):
            expect_reply(reply, ControlMessageType.ACCEPT, operation="upload a.fit")

    def test_error_reply_is_rejection(self):
        reply = ControlMessage(ControlMessageType.ERR_FILE_NOT_AVAILABLE, b"a.fit")
        with pytest.raises(DeviceRejectedError, match="ERR_FILE_NOT_AVAILABLE"):
            expect_reply(reply, ControlMessageType.RETURNING, operation="download a.fit")

    def test_message_names_operation(self):
        reply = ControlMessage(ControlMessageType.IDLE)
        with pytest.raises(UnexpectedMessageTypeError, match="download a.fit"):
            expect_reply(reply, ControlMessageType.RETURNING, operation="download a.fit")


class TestCheckFilenameEcho:
    """Test filename echo verification."""

    def test_matching_echo(self):
        check_filename_echo(b"a.fit", "a.fit", operation="download a.fit")

    def test_mismatched_echo(self):
        with pytest.raises(FilenameMismatchError, match="sent 'a.fit'"):
            check_filename_echo(b"b.fit", "a.fit", operation="download a.fit")


class TestParseDiskSpace:
    """Test disk space reply parsing."""

    def test_parse(self):
        assert parse_disk_space(b"556/8104") == DiskSpace(free_kib=556, total_kib=8104)

    def test_used(self):
        assert parse_disk_space(b"556/8104").used_kib == 7548

    def test_malformed(self):
        with pytest.raises(InvalidResponseError, match="Malformed disk space"):
            parse_disk_space(b"556")
