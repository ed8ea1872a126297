"""Control-channel request/reply transactions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..models.enums import FrameChannel
from ..protocol.commands import ControlBuffer, ControlMessage

if TYPE_CHECKING:
    from .connection import BLEConnection
    from .tunnel import UartTunnel

_LOGGER = logging.getLogger(__name__)


class ControlChannel:
    """Single-shot request/await-reply over the control characteristic.

    No internal retry: a lost frame surfaces as LinkTimeoutError and the
    caller decides what to do.
    """

    def __init__(self, link: BLEConnection, tunnel: UartTunnel, timeout: float = 5.0):
        """Initialize control channel.

        Args:
            link: Frame link used for writes
            tunnel: Tunnel whose dispatcher delivers control replies
            timeout: Default reply timeout in seconds (default: 5)
        """
        self._link = link
        self._tunnel = tunnel
        self.timeout = timeout
        self._pending = False

    async def request(
            self,
            message: ControlMessage,
            *,
            buffer: ControlBuffer | None = None,
            timeout: float | None = None,
    ) -> ControlMessage:
        """Send ``message`` and wait for the device's reply.

        Args:
            message: Control message to send
            buffer: Optional reusable buffer backing the reply body
            timeout: Reply timeout in seconds (default: channel timeout)

        Returns:
            Reply message

        Raises:
            RuntimeError: If another control transaction is outstanding
            LinkError: If the write fails
            LinkTimeoutError: If no reply arrives in time
            InvalidResponseError: If the reply cannot be decoded
        """
        self._claim()
        try:
            self._tunnel.discard_control_replies()
            _LOGGER.debug("-> %r", message)
            await self._link.write_frame(FrameChannel.CONTROL, message.encode())
            frame = await self._tunnel.wait_control_reply(
                self.timeout if timeout is None else timeout
            )
        finally:
            self._pending = False
        return self._decode(frame, buffer)

    async def receive(
            self,
            *,
            buffer: ControlBuffer | None = None,
            timeout: float | None = None,
    ) -> ControlMessage:
        """Wait for the next control message without sending anything.

        Raises:
            RuntimeError: If another control transaction is outstanding
            LinkTimeoutError: If nothing arrives in time
        """
        self._claim()
        try:
            frame = await self._tunnel.wait_control_reply(
                self.timeout if timeout is None else timeout
            )
        finally:
            self._pending = False
        return self._decode(frame, buffer)

    async def send(self, message: ControlMessage) -> None:
        """Send ``message`` without waiting for a reply."""
        _LOGGER.debug("-> %r", message)
        await self._link.write_frame(FrameChannel.CONTROL, message.encode())

    def _claim(self) -> None:
        if self._pending:
            raise RuntimeError("Control transaction already outstanding")
        self._pending = True

    @staticmethod
    def _decode(frame: bytes, buffer: ControlBuffer | None) -> ControlMessage:
        if buffer is None:
            return ControlMessage.decode(frame)
        return ControlMessage.decode(buffer.load(frame))
