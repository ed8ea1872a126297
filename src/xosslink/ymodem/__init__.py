"""YMODEM file transfer engine."""

from .blocks import (
    ACK,
    CAN,
    CRC_REQUEST,
    EOT,
    NAK,
    SOH,
    STX,
    Block,
    decode_block_body,
    encode_block,
    encode_header,
    parse_header,
)
from .config import YmodemConfig
from .crc import crc16_arc, crc16_xmodem
from .receive import ReceiveState, YmodemReceiver, receive_file
from .send import SendState, YmodemSender, send_file

__all__ = [
    "SOH",
    "STX",
    "EOT",
    "ACK",
    "NAK",
    "CAN",
    "CRC_REQUEST",
    "Block",
    "encode_block",
    "decode_block_body",
    "encode_header",
    "parse_header",
    "crc16_arc",
    "crc16_xmodem",
    "YmodemConfig",
    "ReceiveState",
    "YmodemReceiver",
    "receive_file",
    "SendState",
    "YmodemSender",
    "send_file",
]
