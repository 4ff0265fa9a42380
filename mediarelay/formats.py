"""Media formats carried by streams."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field


@dataclass
class Format:
    """A media format with an RTP payload type."""

    payload_type: int = 96

    @property
    def clock_rate(self) -> int:
        return 90000


@dataclass
class GenericFormat(Format):
    """A format described only by its rtpmap."""

    rtp_map: str = ""

    @property
    def clock_rate(self) -> int:
        parts = self.rtp_map.split("/")
        if len(parts) >= 2 and parts[1].isdigit():
            return int(parts[1])
        return 90000


@dataclass
class H264Format(Format):
    """H264 video with its parameter sets."""

    sps: bytes | None = None
    pps: bytes | None = None
    packetization_mode: int = 1
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def safe_set_params(self, sps: bytes | None, pps: bytes | None) -> None:
        """Replace the parameter sets under the format's lock."""
        with self._lock:
            self.sps = sps
            self.pps = pps

    def safe_params(self) -> tuple[bytes | None, bytes | None]:
        """Return (sps, pps) under the format's lock."""
        with self._lock:
            return self.sps, self.pps


@dataclass
class H265Format(Format):
    """H265 video with its parameter sets."""

    vps: bytes | None = None
    sps: bytes | None = None
    pps: bytes | None = None
    max_don_diff: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def safe_set_params(
        self, vps: bytes | None, sps: bytes | None, pps: bytes | None
    ) -> None:
        """Replace the parameter sets under the format's lock."""
        with self._lock:
            self.vps = vps
            self.sps = sps
            self.pps = pps

    def safe_params(self) -> tuple[bytes | None, bytes | None, bytes | None]:
        """Return (vps, sps, pps) under the format's lock."""
        with self._lock:
            return self.vps, self.sps, self.pps