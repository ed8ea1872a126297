"""BLE connection management and frame link."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from bleak import BleakClient, BleakScanner
from bleak_retry_connector import BleakClientWithServiceCache, establish_connection

from ..exceptions import LinkError, LinkTimeoutError
from ..models.enums import FrameChannel
from ..protocol.commands import (
    ATT_HEADER_SIZE,
    CONTROL_CHARACTERISTIC_UUID,
    DEFAULT_MTU,
    UART_RX_CHARACTERISTIC_UUID,
    UART_TX_CHARACTERISTIC_UUID,
)

if TYPE_CHECKING:
    from bleak.backends.device import BLEDevice

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Frame:
    """One inbound BLE notification, tagged with its channel."""

    channel: FrameChannel
    data: bytes


class BLEConnection:
    """Manages the BLE connection to a XOSS device and exposes it as a frame link.

    Features:
    - Automatic retry logic with bleak-retry-connector
    - Service caching for faster reconnections
    - Context manager for automatic cleanup
    - Single inbound frame queue fed by both notify characteristics
    """

    def __init__(
            self,
            mac_address: str,
            ble_device: BLEDevice | None = None,
            timeout: float = 10.0,
            max_attempts: int = 4,
            use_services_cache: bool = True,
    ):
        """Initialize BLE connection manager.

        Args:
            mac_address: Device MAC address
            ble_device: Optional BLEDevice from Home Assistant bluetooth integration
            timeout: Connection timeout in seconds (default: 10)
            max_attempts: Maximum connection attempts for bleak-retry-connector (default: 4)
            use_services_cache: Enable GATT service caching for faster reconnections (default: True)
        """
        self.mac_address = mac_address
        self.ble_device = ble_device
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.use_services_cache = use_services_cache

        self._client: BleakClient | None = None
        self._frame_queue: asyncio.Queue[Frame | None] = asyncio.Queue()

    async def __aenter__(self) -> BLEConnection:
        """Connect to device (context manager entry)."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Disconnect from device (context manager exit)."""
        await self.disconnect()

    async def connect(self) -> None:
        """Establish BLE connection to device and subscribe to notifications.

        Raises:
            LinkError: If connection fails
            LinkTimeoutError: If connection times out
        """
        if self._client and self._client.is_connected:
            return  # Already connected

        try:
            _LOGGER.debug(
                "Connecting to %s with bleak-retry-connector (max_attempts=%d)",
                self.mac_address,
                self.max_attempts
            )

            if self.ble_device:
                device = self.ble_device
            else:
                device = await BleakScanner.find_device_by_address(
                    self.mac_address,
                    timeout=self.timeout
                )
                if device is None:
                    raise LinkError(
                        f"Device {self.mac_address} not found during scan"
                    )

            self._client = await establish_connection(
                client_class=BleakClientWithServiceCache,
                device=device,
                name=device.name or self.mac_address,
                disconnected_callback=self._disconnected_callback,
                max_attempts=self.max_attempts,
                use_services_cache=self.use_services_cache,
                timeout=self.timeout,
            )

            _LOGGER.debug("Connected to %s (mtu=%d)", self.mac_address, self._client.mtu_size)

            await self._setup_notifications()

        except asyncio.TimeoutError as e:
            raise LinkTimeoutError(
                f"Connection timeout after {self.timeout}s"
            ) from e
        except LinkError:
            raise
        except Exception as e:
            raise LinkError(
                f"Failed to connect: {e}"
            ) from e

    async def disconnect(self) -> None:
        """Disconnect from device."""
        if self._client and self._client.is_connected:
            try:
                _LOGGER.debug("Disconnecting from %s", self.mac_address)
                await self._client.disconnect()
            except Exception as e:
                _LOGGER.warning("Error during disconnect: %s", e)
            finally:
                self._client = None

    async def _setup_notifications(self) -> None:
        """Subscribe to the control and UART TX characteristics.

        Raises:
            LinkError: If a characteristic is missing
        """
        if not self._client or not self._client.is_connected:
            raise LinkError("Not connected")

        for uuid in (CONTROL_CHARACTERISTIC_UUID, UART_TX_CHARACTERISTIC_UUID,
                     UART_RX_CHARACTERISTIC_UUID):
            if self._client.services.get_characteristic(uuid) is None:
                raise LinkError(f"Characteristic {uuid} not found")

        await self._client.start_notify(
            CONTROL_CHARACTERISTIC_UUID,
            self._control_notification_callback,
        )
        await self._client.start_notify(
            UART_TX_CHARACTERISTIC_UUID,
            self._uart_notification_callback,
        )

        _LOGGER.debug("Notifications started")

    def _control_notification_callback(self, sender, data: bytearray) -> None:
        self._frame_queue.put_nowait(Frame(FrameChannel.CONTROL, bytes(data)))

    def _uart_notification_callback(self, sender, data: bytearray) -> None:
        self._frame_queue.put_nowait(Frame(FrameChannel.UART, bytes(data)))

    def _disconnected_callback(self, client: BleakClient) -> None:
        _LOGGER.warning("Device %s disconnected", self.mac_address)
        self._frame_queue.put_nowait(None)

    async def write_frame(self, channel: FrameChannel, data: bytes) -> None:
        """Write one frame to the device.

        Args:
            channel: CONTROL writes the control characteristic, UART writes UART RX
            data: Frame bytes (at most max_frame_size)

        Raises:
            LinkError: If not connected or write fails
            ValueError: If the frame does not fit the MTU
        """
        if not self._client or not self._client.is_connected:
            raise LinkError("Not connected")

        if len(data) > self.max_frame_size:
            raise ValueError(
                f"Frame size {len(data)} exceeds maximum {self.max_frame_size}"
            )

        uuid = (
            CONTROL_CHARACTERISTIC_UUID if channel == FrameChannel.CONTROL
            else UART_RX_CHARACTERISTIC_UUID
        )
        try:
            await self._client.write_gatt_char(uuid, data, response=False)
        except Exception as e:
            raise LinkError(f"Write failed: {e}") from e

    async def read_frame(self) -> Frame | None:
        """Wait for the next inbound frame.

        Returns:
            Next frame, or None once the device has disconnected
        """
        return await self._frame_queue.get()

    @property
    def max_frame_size(self) -> int:
        """Largest payload of a single write (ATT MTU minus header)."""
        mtu = self._client.mtu_size if self._client else DEFAULT_MTU
        return mtu - ATT_HEADER_SIZE

    @property
    def is_connected(self) -> bool:
        """Check if currently connected to device."""
        return self._client is not None and self._client.is_connected
