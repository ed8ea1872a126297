"""Control-channel protocol implementation."""

from .commands import (
    CONTROL_CHARACTERISTIC_UUID,
    DEFAULT_MTU,
    SERVICE_UUID,
    UART_RX_CHARACTERISTIC_UUID,
    UART_TX_CHARACTERISTIC_UUID,
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
    xor_checksum,
)
from .responses import check_filename_echo, expect_reply, parse_disk_space

__all__ = [
    "ControlMessageType",
    "ControlMessage",
    "ControlBuffer",
    "SERVICE_UUID",
    "CONTROL_CHARACTERISTIC_UUID",
    "UART_RX_CHARACTERISTIC_UUID",
    "UART_TX_CHARACTERISTIC_UUID",
    "DEFAULT_MTU",
    "build_request_return",
    "build_request_send",
    "build_delete",
    "build_status",
    "build_idle",
    "build_disk_space",
    "build_time_set",
    "xor_checksum",
    "expect_reply",
    "check_filename_echo",
    "parse_disk_space",
]
