"""Framing of packets exchanged with the hegel server.

A packet is a 20-byte big-endian header (magic, CRC-32 checksum, channel,
message id, payload length), followed by the payload and a newline byte.
The top bit of the message id marks a reply.
"""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass
from typing import BinaryIO

PACKET_MAGIC = 0x4845474C  # "HEGL"
PACKET_HEADER_SIZE = 20
PACKET_TERMINATOR = 0x0A
REPLY_BIT = 1 << 31

_HEADER = struct.Struct(">IIIII")
_U32_LIMIT = 1 << 32


class PacketError(ValueError):
    """Raised when bytes on the wire do not form a valid packet."""


@dataclass(frozen=True)
class Packet:
    """A single framed message on a channel."""

    channel: int
    message_id: int
    is_reply: bool
    payload: bytes


def _checksum(header: bytes, payload: bytes) -> int:
    return zlib.crc32(payload, zlib.crc32(header)) & 0xFFFFFFFF


def _check_u32(name: str, value: int) -> None:
    if not 0 <= value < _U32_LIMIT:
        raise PacketError(f"{name} out of range for an unsigned 32-bit field: {value}")


def _encode(packet: Packet) -> bytes:
    payload = bytes(packet.payload)
    raw_id = packet.message_id | REPLY_BIT if packet.is_reply else packet.message_id
    _check_u32("channel", packet.channel)
    _check_u32("message_id", raw_id)
    _check_u32("payload length", len(payload))

    unsigned = _HEADER.pack(PACKET_MAGIC, 0, packet.channel, raw_id, len(payload))
    checksum = _checksum(unsigned, payload)
    header = _HEADER.pack(PACKET_MAGIC, checksum, packet.channel, raw_id, len(payload))
    return header + payload + bytes([PACKET_TERMINATOR])


def write_packet(writer: BinaryIO, packet: Packet) -> None:
    """Write one packet to a binary stream and flush it."""
    writer.write(_encode(packet))
    writer.flush()


def _read_exact(reader: BinaryIO, size: int) -> bytes:
    buffer = bytearray()
    while len(buffer) < size:
        chunk = reader.read(size - len(buffer))
        if not chunk:
            raise EOFError(f"stream ended after {len(buffer)} of {size} bytes")
        buffer.extend(chunk)
    return bytes(buffer)


def read_packet(reader: BinaryIO) -> Packet:
    """Read one packet from a binary stream.

    Raises EOFError if the stream ends early and PacketError if the data
    is malformed.
    """
    header = _read_exact(reader, PACKET_HEADER_SIZE)
    magic, checksum, channel, raw_id, length = _HEADER.unpack(header)

    if magic != PACKET_MAGIC:
        raise PacketError(
            f"Invalid magic number: expected 0x{PACKET_MAGIC:08X}, got 0x{magic:08X}"
        )

    is_reply = bool(raw_id & REPLY_BIT)
    message_id = raw_id & ~REPLY_BIT

    payload = _read_exact(reader, length)

    terminator = _read_exact(reader, 1)[0]
    if terminator != PACKET_TERMINATOR:
        raise PacketError(
            f"Invalid terminator: expected 0x{PACKET_TERMINATOR:02X}, got 0x{terminator:02X}"
        )

    unsigned = header[:4] + b"\x00\x00\x00\x00" + header[8:]
    computed = _checksum(unsigned, payload)
    if computed != checksum:
        raise PacketError(
            f"Checksum mismatch: expected 0x{checksum:08X}, got 0x{computed:08X}"
        )

    return Packet(channel=channel, message_id=message_id, is_reply=is_reply, payload=payload)