"""Binary codec for the command and result datagrams.

Command layout (7 + N bytes, little-endian)::

    [test_id:u32][peripheral_mask:u8][iteration_count:u8][payload_len:u8][payload]

Result layout (exactly 6 bytes)::

    [test_id:u32][peripheral_code:u8][outcome_code:u8]
"""

from __future__ import annotations

import struct

from .constants import (
    COMMAND_HEADER_SIZE,
    MAX_PAYLOAD_SIZE,
    MAX_TEST_ID,
    RESULT_MESSAGE_SIZE,
)
from .core.models import CommandMessage, ResultMessage

_COMMAND_HEADER = struct.Struct("<IBBB")
_RESULT = struct.Struct("<IBB")


class MalformedMessage(ValueError):
    """Raised when a datagram cannot be decoded."""


class PayloadTooLarge(ValueError):
    """Raised when a command payload does not fit its one-byte length field."""


def _check_range(name: str, value: int, upper: int) -> None:
    if not 0 <= value <= upper:
        raise ValueError(f"{name} must be in range 0-{upper}, got {value}")


def encode_command(command: CommandMessage) -> bytes:
    if len(command.payload) > MAX_PAYLOAD_SIZE:
        raise PayloadTooLarge(
            f"Payload is {len(command.payload)} bytes; limit is {MAX_PAYLOAD_SIZE}"
        )
    _check_range("test_id", command.test_id, MAX_TEST_ID)
    _check_range("peripheral_mask", command.peripheral_mask, 0xFF)
    _check_range("iteration_count", command.iteration_count, 0xFF)

    header = _COMMAND_HEADER.pack(
        command.test_id,
        command.peripheral_mask,
        command.iteration_count,
        len(command.payload),
    )
    return header + command.payload


def decode_command(data: bytes) -> CommandMessage:
    if len(data) < COMMAND_HEADER_SIZE:
        raise MalformedMessage(
            f"Command needs at least {COMMAND_HEADER_SIZE} bytes, got {len(data)}"
        )
    test_id, mask, iterations, payload_len = _COMMAND_HEADER.unpack_from(data)
    payload = bytes(data[COMMAND_HEADER_SIZE:])
    if len(payload) != payload_len:
        raise MalformedMessage(
            f"Command declares {payload_len} payload bytes but carries {len(payload)}"
        )
    return CommandMessage(
        test_id=test_id,
        peripheral_mask=mask,
        iteration_count=iterations,
        payload=payload,
    )


def encode_result(message: ResultMessage) -> bytes:
    _check_range("test_id", message.test_id, MAX_TEST_ID)
    _check_range("peripheral_code", message.peripheral_code, 0xFF)
    _check_range("outcome_code", message.outcome_code, 0xFF)
    return _RESULT.pack(message.test_id, message.peripheral_code, message.outcome_code)


def decode_result(data: bytes) -> ResultMessage:
    if len(data) != RESULT_MESSAGE_SIZE:
        raise MalformedMessage(
            f"Result must be exactly {RESULT_MESSAGE_SIZE} bytes, got {len(data)}"
        )
    test_id, peripheral_code, outcome_code = _RESULT.unpack(data)
    return ResultMessage(
        test_id=test_id,
        peripheral_code=peripheral_code,
        outcome_code=outcome_code,
    )
