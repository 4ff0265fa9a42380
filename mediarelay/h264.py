"""H264 RTP packetization and stream normalization."""

from __future__ import annotations

import random
from datetime import datetime

from .formats import H264Format
from .units import RTPHeader, RTPPacket, Unit, UnitH264

MAX_KEY_FRAME_INTERVAL = 10.0
CLOCK_RATE = 90000

NALU_TYPE_IDR = 5
NALU_TYPE_SPS = 7
NALU_TYPE_PPS = 8
NALU_TYPE_AUD = 9
NALU_TYPE_STAPA = 24
NALU_TYPE_FUA = 28


class MorePacketsNeeded(Exception):
    """More packets are needed to complete the access unit."""


class NonStartingPacketAndNoPrevious(Exception):
    """A continuation fragment arrived without its start."""


def _typ(nalu: bytes) -> int:
    return nalu[0] & 0x1F


def extract_sps_pps(pkt: RTPPacket) -> tuple[bytes | None, bytes | None]:
    """Find SPS and PPS in a packet without decoding the stream."""
    payload = pkt.payload
    if len(payload) < 1:
        return None, None
    typ = _typ(payload)
    if typ == NALU_TYPE_SPS:
        return payload, None
    if typ == NALU_TYPE_PPS:
        return None, payload
    if typ != NALU_TYPE_STAPA:
        return None, None

    rest = payload[1:]
    sps = pps = None
    while len(rest) >= 2:
        size = rest[0] << 8 | rest[1]
        rest = rest[2:]
        if size == 0:
            break
        if size > len(rest):
            return None, None
        nalu, rest = rest[:size], rest[size:]
        t = _typ(nalu)
        if t == NALU_TYPE_SPS:
            sps = nalu
        elif t == NALU_TYPE_PPS:
            pps = nalu
    return sps, pps


class H264Encoder:
    """Packetizes H264 access units into RTP packets."""

    def __init__(
        self,
        payload_max_size: int = 1460,
        payload_type: int = 96,
        ssrc: int | None = None,
        initial_sequence_number: int | None = None,
        initial_timestamp: int | None = None,
        packetization_mode: int = 1,
    ) -> None:
        if packetization_mode >= 2:
            raise ValueError("packetization mode 2 is not supported")
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
        self.packetization_mode = packetization_mode

    def _fragments(self, nalu: bytes) -> list[bytes]:
        indicator = (nalu[0] & 0xE0) | NALU_TYPE_FUA
        typ = _typ(nalu)
        data = nalu[1:]
        step = self.payload_max_size - 2
        chunks = [data[i:i + step] for i in range(0, len(data), step)] or [b""]
        out = []
        for i, chunk in enumerate(chunks):
            header = typ
            if i == 0:
                header |= 0x80
            if i == len(chunks) - 1:
                header |= 0x40
            out.append(bytes([indicator, header]) + chunk)
        return out

    @staticmethod
    def _aggregate(nalus: list[bytes]) -> bytes:
        if len(nalus) == 1:
            return nalus[0]
        out = bytearray([NALU_TYPE_STAPA])
        for n in nalus:
            out += len(n).to_bytes(2, "big") + n
        return bytes(out)

    def _payloads(self, au: list[bytes]) -> list[bytes]:
        payloads: list[bytes] = []
        batch: list[bytes] = []
        batch_size = 1
        for nalu in au:
            if len(nalu) > self.payload_max_size:
                if batch:
                    payloads.append(self._aggregate(batch))
                    batch, batch_size = [], 1
                payloads.extend(self._fragments(nalu))
                continue
            if batch and batch_size + 2 + len(nalu) > self.payload_max_size:
                payloads.append(self._aggregate(batch))
                batch, batch_size = [], 1
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


class H264Decoder:
    """Rebuilds H264 access units from RTP packets."""

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
        if not payload:
            raise ValueError("payload is too short")
        typ = _typ(payload)

        if typ == NALU_TYPE_FUA:
            if len(payload) < 2:
                raise ValueError("invalid FU-A packet (invalid size)")
            start = payload[1] & 0x80
            end = payload[1] & 0x40
            if start:
                self._fragments = [
                    bytes([(payload[0] & 0xE0) | (payload[1] & 0x1F)]),
                    payload[2:],
                ]
            else:
                if not self._fragments:
                    raise NonStartingPacketAndNoPrevious()
                self._fragments.append(payload[2:])
            if not end:
                raise MorePacketsNeeded()
            nalu = b"".join(self._fragments)
            self._fragments = []
            return [nalu]

        self._fragments = []
        if typ == NALU_TYPE_STAPA:
            rest = payload[1:]
            nalus = []
            while rest:
                if len(rest) < 2:
                    raise ValueError("invalid STAP-A packet (invalid size)")
                size = rest[0] << 8 | rest[1]
                rest = rest[2:]
                if size == 0:
                    break
                if size > len(rest):
                    raise ValueError("invalid STAP-A packet (invalid size)")
                nalus.append(rest[:size])
                rest = rest[size:]
            if not nalus:
                raise ValueError("STAP-A packet doesn't contain any NALU")
            return nalus
        if typ == 0 or typ > NALU_TYPE_STAPA:
            raise ValueError(f"packet type not supported ({typ})")
        return [payload]

    def decode_until_marker(self, pkt: RTPPacket) -> tuple[list[bytes], float]:
        """Collect NALUs until a packet with the marker bit; return them and the PTS."""
        nalus = self._decode(pkt)
        self._frame.extend(nalus)
        if not pkt.header.marker:
            raise MorePacketsNeeded()
        au, self._frame = self._frame, []
        return au, self._pts(pkt.header.timestamp)


class H264Processor:
    """Cleans and normalizes an H264 stream."""

    def __init__(
        self,
        udp_max_payload_size: int,
        format: H264Format,
        generate_rtp_packets: bool,
        log=None,
    ) -> None:
        self.udp_max_payload_size = udp_max_payload_size
        self.format = format
        self.log = log
        self.encoder: H264Encoder | None = None
        self.decoder: H264Decoder | None = None
        self._last_key_frame: datetime | None = None
        self._key_frame_received = False
        if generate_rtp_packets:
            self._create_encoder(None, None, None)

    def _create_encoder(self, ssrc, seq, ts) -> None:
        self.encoder = H264Encoder(
            payload_max_size=self.udp_max_payload_size - 12,
            payload_type=self.format.payload_type,
            ssrc=ssrc,
            initial_sequence_number=seq,
            initial_timestamp=ts,
            packetization_mode=self.format.packetization_mode,
        )

    def _update_from_packet(self, pkt: RTPPacket) -> None:
        sps, pps = extract_sps_pps(pkt)
        cur_sps, cur_pps = self.format.sps, self.format.pps
        if (sps is not None and sps != cur_sps) or (pps is not None and pps != cur_pps):
            self.format.safe_set_params(
                sps if sps is not None else cur_sps,
                pps if pps is not None else cur_pps,
            )

    def _update_from_nalus(self, nalus: list[bytes]) -> None:
        sps, pps = self.format.sps, self.format.pps
        update = False
        for nalu in nalus:
            typ = _typ(nalu)
            if typ == NALU_TYPE_SPS and nalu != sps:
                sps, update = nalu, True
            elif typ == NALU_TYPE_PPS and nalu != pps:
                pps, update = nalu, True
        if update:
            self.format.safe_set_params(sps, pps)

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
                from .logger import Level

                self.log.log(
                    Level.WARN,
                    "no H264 key frames received in %s, stream can't be decoded",
                    f"{MAX_KEY_FRAME_INTERVAL:g}s",
                )

    def _remux(self, ntp, nalus: list[bytes]) -> list[bytes] | None:
        kept = [
            n for n in nalus
            if _typ(n) not in (NALU_TYPE_SPS, NALU_TYPE_PPS, NALU_TYPE_AUD)
        ]
        is_key_frame = any(_typ(n) == NALU_TYPE_IDR for n in kept)
        self._check_key_frame_interval(ntp, is_key_frame)
        if is_key_frame and self.format.sps is not None and self.format.pps is not None:
            kept = [self.format.sps, self.format.pps] + kept
        return kept or None

    def process(self, unit: UnitH264, has_non_rtsp_readers: bool) -> None:
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
                    self.decoder = H264Decoder()
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
        return UnitH264(rtp_packets=[pkt], ntp=ntp)