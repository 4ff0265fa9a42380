"""RTP packets and the data units routed across the server."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from datetime import datetime

RTP_HEADER_SIZE = 12


@dataclass
class RTPHeader:
    """Fixed part of an RTP header."""

    version: int = 2
    padding: bool = False
    marker: bool = False
    payload_type: int = 0
    sequence_number: int = 0
    timestamp: int = 0
    ssrc: int = 0
    csrc: list[int] = field(default_factory=list)


@dataclass
class RTPPacket:
    """An RTP packet: header, payload and optional padding."""

    header: RTPHeader = field(default_factory=RTPHeader)
    payload: bytes = b""
    padding_size: int = 0

    def marshal_size(self) -> int:
        """Size in bytes of the packet once serialized."""
        size = RTP_HEADER_SIZE + 4 * len(self.header.csrc) + len(self.payload)
        if self.header.padding:
            size += self.padding_size
        return size

    def marshal(self) -> bytes:
        """Serialize the packet into its wire format."""
        h = self.header
        first = (h.version & 0x03) << 6 | (0x20 if h.padding else 0) | (len(h.csrc) & 0x0F)
        second = (0x80 if h.marker else 0) | (h.payload_type & 0x7F)
        out = bytearray(
            struct.pack(
                "!BBHII",
                first,
                second,
                h.sequence_number & 0xFFFF,
                h.timestamp & 0xFFFFFFFF,
                h.ssrc & 0xFFFFFFFF,
            )
        )
        for c in h.csrc:
            out += struct.pack("!I", c & 0xFFFFFFFF)
        out += self.payload
        if h.padding and self.padding_size > 0:
            out += bytes(self.padding_size - 1) + bytes([self.padding_size & 0xFF])
        return bytes(out)


@dataclass
class Unit:
    """Fields shared by every data unit."""

    rtp_packets: list[RTPPacket] | None = None
    ntp: datetime | None = None


@dataclass
class UnitGeneric(Unit):
    """A data unit of a format that is not decoded."""


@dataclass
class UnitH264(Unit):
    """An H264 data unit: an access unit and its presentation time in seconds."""

    pts: float = 0.0
    au: list[bytes] | None = None


@dataclass
class UnitH265(Unit):
    """An H265 data unit: an access unit and its presentation time in seconds."""

    pts: float = 0.0
    au: list[bytes] | None = None