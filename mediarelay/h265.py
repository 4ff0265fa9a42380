"""H265 RTP packetization and stream normalization."""

from __future__ import annotations

import random
from datetime import datetime

from .formats import H265Format
from .h264 import (
    CLOCK_RATE,
    MAX_KEY_FRAME_INTERVAL,
    MorePacketsNeeded,
    NonStartingPacketAndNoPrevious,
)
from .logger import Level
from .units import RTPHeader, RTPPacket, Unit, UnitH265

NALU_TYPE_IDR_W_RADL = 19
NALU_TYPE_IDR_N_LP = 20
NALU_TYPE_CRA = 21
NALU_TYPE_VPS = 32
NALU_TYPE_SPS = 33
NALU_TYPE_PPS = 34
NALU_TYPE_AUD = 35
NALU_TYPE_AGGREGATION_UNIT = 48
NALU_TYPE_FRAGMENTATION_UNIT = 49
NALU_TYPE_PACI = 50

_PARAMETER_TYPES = frozenset({NALU_TYPE_VPS, NALU_TYPE_SPS, NALU_TYPE_PPS})
_REMOVED_TYPES = _PARAMETER_TYPES | {NALU_TYPE_AUD}
_KEY_FRAME_TYPES = frozenset({NALU_TYPE_IDR_W_RADL, NALU_TYPE_IDR_N_LP, NALU_TYPE_CRA})

__all__ = [
    "H265Decoder",
    "H265Encoder",
    "H265Processor",
    "MorePacketsNeeded",
    "NonStartingPacketAndNoPrevious",
    "extract_vps_sps_pps",
]


def _typ(nalu: bytes) -> int:
    return (nalu[0] >> 1) & 0x3F


def extract_vps_sps_pps(
    pkt: RTPPacket,
) -> tuple[bytes | None, bytes | None, bytes | None]:
    """Find VPS, SPS and PPS in a packet without decoding the stream."""
    payload = pkt.payload
    if len(payload) < 2:
        return None, None, None

    typ = _typ(payload)
    if typ == NALU_TYPE_VPS:
        return payload, None, None
    if typ == NALU_TYPE_SPS:
        return None, payload, None
    if typ == NALU_TYPE_PPS:
        return None, None, payload
    if typ != NALU_TYPE_AGGREGATION_UNIT:
        return None, None, None

    rest = payload[2:]
    found: dict[int, bytes] = {}
    while len(rest) >= 2:
        size = rest[0] << 8 | rest[1]
        rest = rest[2:]
        if size == 0:
            break
        if size > len(rest):
            return None, None, None
        nalu, rest = rest[:size], rest[size:]
        t = _typ(nalu)
        if t in _PARAMETER_TYPES:
            found[t] = nalu
    return found.get(NALU_TYPE_VPS), found.get(NALU_TYPE_SPS), found.get(NALU_TYPE_PPS)


class H265Encoder:
    """Packetizes H265 access units into RTP packets."""

    def __init__(
        self,
        payload_max_size: int = 1460,
        payload_type: int = 96,
        ssrc: int | None = None,
        initial_sequence_number: int | None = None,
        initial_timestamp: int | None = None,
    ) -> None:
        self.payload_max_size = payload_max_size
        self.payload_type = payload_type
        self.ssrc = ssrc if ssrc is not None else random.getrandbits(32)
        self._seq = (
            initial_sequence_number
            if initial_sequence_number is not None
            else random.getrandbits(16)
        )
        self.initial_timestamp = (
            initial_timestamp if initial_timestamp is not None else random.getrandbits(32)
        )

    def _fragments(self, nalu: bytes) -> list[bytes]:
        head = bytes(
            [(nalu[0] & 0b10000001) | (NALU_TYPE_FRAGMENTATION_UNIT << 1), nalu[1]]
        )
        typ = _typ(nalu)
        data = nalu[2:]
        step = self.payload_max_size - 3
        chunks = [data[i:i + step] for i in range(0, len(data), step)] or [b""]
        out = []
        for i, chunk in enumerate(chunks):
            fu_header = typ
            if i == 0:
                fu_header |= 0x80
            if i == len(chunks) - 1:
                fu_header |= 0x40
            out.append(head + bytes([fu_header]) + chunk)
        return out

    @staticmethod
    def _aggregate(nalus: list[bytes]) -> bytes:
        if len(nalus) == 1:
            return nalus[0]
        out = bytearray([NALU_TYPE_AGGREGATION_UNIT << 1, 0x01])
        for n in nalus:
            out += len(n).to_bytes(2, "big") + n
        return bytes(out)

    def _payloads(self, au: list[bytes]) -> list[bytes]:
        payloads: list[bytes] = []
        batch: list[bytes] = []
        batch_size = 2
        for nalu in au:
            if len(nalu) > self.payload_max_size:
                if batch:
                    payloads.append(self._aggregate(batch))
                    batch, batch_size = [], 2
                payloads.extend(self._fragments(nalu))
                continue
            if batch and batch_size + 2 + len(nalu) > self.payload_max_size:
                payloads.append(self._aggregate(batch))
                batch, batch_size = [], 2
            batch.append(nalu)
            batch_size += 2 + len(nalu)
        if batch:
            payloads.append(self._aggregate(batch))
        return payloads

    def encode(self, au: list[bytes], pts: float) -> list[RTPPacket]:
        """Turn an access unit with a presentation time in seconds into packets."""
        ts = (self.initial_timestamp + round(pts * CLOCK_RATE)) & 0xFFFFFFFF
        payloads = self._payloads(au)
        packets = []
        for i, payload in enumerate(payloads):
            packets.append(
                RTPPacket(
                    header=RTPHeader(
                        marker=i == len(payloads) - 1,
                        payload_type=self.payload_type,
                        sequence_number=self._seq,
                        timestamp=ts,
                        ssrc=self.ssrc,
                    ),
                    payload=payload,
                )
            )
            self._seq = (self._seq + 1) & 0xFFFF
        return packets


class H265Decoder:
    """Rebuilds H265 access units from RTP packets."""

    def __init__(self) -> None:
        self._first_ts: int | None = None
        self._fragments: list[bytes] = []
        self._frame: list[bytes] = []

    def _pts(self, ts: int) -> float:
        if self._first_ts is None:
            self._first_ts = ts
        diff = (ts - self._first_ts) & 0xFFFFFFFF
        if diff >= 1 << 31:
            diff -= 1 << 32
        return diff / CLOCK_RATE

    def _decode(self, pkt: RTPPacket) -> list[bytes]:
        payload = pkt.payload
        if len(payload) < 2:
            raise ValueError("payload is too short")
        typ = _typ(payload)

        if typ == NALU_TYPE_FRAGMENTATION_UNIT:
            if len(payload) < 3:
                raise ValueError("invalid fragmentation unit (invalid size)")
            fu_header = payload[2]
            start = fu_header & 0x80
            end = fu_header & 0x40
            if start:
                head = bytes(
                    [(payload[0] & 0b10000001) | ((fu_header & 0x3F) << 1), payload[1]]
                )
                self._fragments = [head, payload[3:]]
            else:
                if not self._fragments:
                    raise NonStartingPacketAndNoPrevious()
                self._fragments.append(payload[3:])
            if not end:
                raise MorePacketsNeeded()
            nalu = b"".join(self._fragments)
            self._fragments = []
            return [nalu]

        self._fragments = []

        if typ == NALU_TYPE_AGGREGATION_UNIT:
            rest = payload[2:]
            nalus = []
            while rest:
                if len(rest) < 2:
                    raise ValueError("invalid aggregation unit (invalid size)")
                size = rest[0] << 8 | rest[1]
                rest = rest[2:]
                if size == 0:
                    break
                if size > len(rest):
                    raise ValueError("invalid aggregation unit (invalid size)")
                nalus.append(rest[:size])
                rest = rest[size:]
            if not nalus:
                raise ValueError("aggregation unit doesn't contain any NALU")
            return nalus

        if typ == NALU_TYPE_PACI:
            raise ValueError("PACI packets are not supported")

        return [payload]

    def decode_until_marker(self, pkt: RTPPacket) -> tuple[list[bytes], float]:
        """Collect NALUs until a packet with the marker bit; return them and the PTS."""
        nalus = self._decode(pkt)
        self._frame.extend(nalus)
        if not pkt.header.marker:
            raise MorePacketsNeeded()
        au, self._frame = self._frame, []
        return au, self._pts(pkt.header.timestamp)


class H265Processor:
    """Cleans and normalizes an H265 stream."""

    def __init__(
        self,
        udp_max_payload_size: int,
        format: H265Format,
        generate_rtp_packets: bool,
        log=None,
    ) -> None:
        self.udp_max_payload_size = udp_max_payload_size
        self.format = format
        self.log = log
        self.encoder: H265Encoder | None = None
        self.decoder: H265Decoder | None = None
        self._last_key_frame: datetime | None = None
        self._key_frame_received = False
        if generate_rtp_packets:
            self._create_encoder(None, None, None)

    def _create_encoder(self, ssrc, seq, ts) -> None:
        self.encoder = H265Encoder(
            payload_max_size=self.udp_max_payload_size - 12,
            payload_type=self.format.payload_type,
            ssrc=ssrc,
            initial_sequence_number=seq,
            initial_timestamp=ts,
        )

    def _update_from_packet(self, pkt: RTPPacket) -> None:
        vps, sps, pps = extract_vps_sps_pps(pkt)
        cur_vps, cur_sps, cur_pps = self.format.vps, self.format.sps, self.format.pps
        if (
            (vps is not None and vps != cur_vps)
            or (sps is not None and sps != cur_sps)
            or (pps is not None and pps != cur_pps)
        ):
            self.format.safe_set_params(
                vps if vps is not None else cur_vps,
                sps if sps is not None else cur_sps,
                pps if pps is not None else cur_pps,
            )

    def _update_from_nalus(self, nalus: list[bytes]) -> None:
        params = {
            NALU_TYPE_VPS: self.format.vps,
            NALU_TYPE_SPS: self.format.sps,
            NALU_TYPE_PPS: self.format.pps,
        }
        current = dict(params)
        update = False
        for nalu in nalus:
            typ = _typ(nalu)
            if typ in _PARAMETER_TYPES and nalu != current[typ]:
                params[typ] = nalu
                update = True
        if update:
            self.format.safe_set_params(
                params[NALU_TYPE_VPS], params[NALU_TYPE_SPS], params[NALU_TYPE_PPS]
            )

    def _check_key_frame_interval(self, ntp, is_key_frame: bool) -> None:
        if not self._key_frame_received or is_key_frame:
            self._key_frame_received = True
            self._last_key_frame = ntp
            return
        if (
            ntp is not None
            and self._last_key_frame is not None
            and (ntp - self._last_key_frame).total_seconds() >= MAX_KEY_FRAME_INTERVAL
        ):
            self._last_key_frame = ntp
            if self.log is not None:
                self.log.log(
                    Level.WARN,
                    "no H265 key frames received in %s, stream can't be decoded",
                    f"{MAX_KEY_FRAME_INTERVAL:g}s",
                )

    def _remux(self, ntp, nalus: list[bytes]) -> list[bytes] | None:
        kept = [n for n in nalus if _typ(n) not in _REMOVED_TYPES]
        is_key_frame = any(_typ(n) in _KEY_FRAME_TYPES for n in kept)
        self._check_key_frame_interval(ntp, is_key_frame)
        fmt = self.format
        if is_key_frame and fmt.vps is not None and fmt.sps is not None and fmt.pps is not None:
            kept = [fmt.vps, fmt.sps, fmt.pps] + kept
        return kept or None

    def process(self, unit: UnitH265, has_non_rtsp_readers: bool) -> None:
        """Normalize the unit in place, decoding or encoding RTP as needed."""
        if unit.rtp_packets is not None:
            pkt = unit.rtp_packets[0]
            self._update_from_packet(pkt)

            if self.encoder is None:
                pkt.header.padding = False
                pkt.padding_size = 0
                # oversized packets: start re-encoding them
                if pkt.marshal_size() > self.udp_max_payload_size:
                    self._create_encoder(
                        pkt.header.ssrc, pkt.header.sequence_number, pkt.header.timestamp
                    )

            if has_non_rtsp_readers or self.decoder is not None or self.encoder is not None:
                if self.decoder is None:
                    self.decoder = H265Decoder()
                if self.encoder is not None:
                    unit.rtp_packets = None
                try:
                    au, pts = self.decoder.decode_until_marker(pkt)
                except (MorePacketsNeeded, NonStartingPacketAndNoPrevious):
                    return
                unit.au = self._remux(unit.ntp, au)
                unit.pts = pts

            if self.encoder is None:
                return
        else:
            self._update_from_nalus(unit.au or [])
            unit.au = self._remux(unit.ntp, unit.au or [])

        if unit.au:
            unit.rtp_packets = self.encoder.encode(unit.au, unit.pts)
        else:
            unit.rtp_packets = None

    def unit_for_rtp_packet(self, pkt: RTPPacket, ntp: datetime) -> Unit:
        """Wrap an RTP packet into a unit."""
        return UnitH265(rtp_packets=[pkt], ntp=ntp)