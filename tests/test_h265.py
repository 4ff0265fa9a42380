from datetime import datetime, timedelta, timezone

import pytest

from mediarelay.formats import H265Format
from mediarelay.h265 import (
    NALU_TYPE_CRA,
    NALU_TYPE_PPS,
    NALU_TYPE_SPS,
    NALU_TYPE_VPS,
    H265Decoder,
    H265Encoder,
    H265Processor,
    MorePacketsNeeded,
    NonStartingPacketAndNoPrevious,
    extract_vps_sps_pps,
)
from mediarelay.units import RTPHeader, RTPPacket, UnitH265


class _LogWriter:
    def __init__(self):
        self.messages = []

    def log(self, level, format, *args):
        self.messages.append(format % args)


def _pkt(seq, payload, marker=True, padding=True):
    return RTPPacket(
        header=RTPHeader(
            version=2,
            marker=marker,
            payload_type=96,
            sequence_number=seq,
            timestamp=45343,
            ssrc=563423,
            padding=padding,
        ),
        payload=payload,
    )


def test_dynamic_params():
    forma = H265Format(payload_type=96)
    p = H265Processor(1472, forma, False, None)
    enc = H265Encoder(payload_max_size=1460, payload_type=96)

    cra = bytes([NALU_TYPE_CRA << 1, 0])
    data = UnitH265(rtp_packets=[enc.encode([cra], 0)[0]])
    p.process(data, True)
    assert data.au == [cra]

    vps = bytes([NALU_TYPE_VPS << 1, 1, 2, 3])
    sps = bytes([NALU_TYPE_SPS << 1, 4, 5, 6])
    pps = bytes([NALU_TYPE_PPS << 1, 7, 8, 9])
    for nalu in (vps, sps, pps):
        p.process(UnitH265(rtp_packets=[enc.encode([nalu], 0)[0]]), False)

    assert forma.vps == vps
    assert forma.sps == sps
    assert forma.pps == pps

    data = UnitH265(rtp_packets=[enc.encode([cra], 0)[0]])
    p.process(data, True)
    assert data.au == [vps, sps, pps, cra]


def test_oversized_packets():
    forma = H265Format(
        payload_type=96,
        vps=bytes([NALU_TYPE_VPS << 1, 10, 11, 12]),
        sps=bytes([NALU_TYPE_SPS << 1, 13, 14, 15]),
        pps=bytes([NALU_TYPE_PPS << 1, 16, 17, 18]),
    )
    p = H265Processor(1472, forma, False, None)

    out = []
    for pkt in (
        _pkt(123, bytes([1, 2, 3, 4])),
        _pkt(124, bytes([1, 2, 3, 4]) * (2000 // 4)),
    ):
        data = UnitH265(rtp_packets=[pkt])
        p.process(data, False)
        out.extend(data.rtp_packets or [])

    expected = [
        _pkt(123, bytes([1, 2, 3, 4]), padding=False),
        _pkt(
            124,
            bytes([0x63, 0x02, 0x80, 0x03, 0x04])
            + bytes([1, 2, 3, 4]) * 363
            + bytes([1, 2, 3]),
            marker=False,
            padding=False,
        ),
        _pkt(
            125,
            bytes([0x63, 0x02, 0x40, 0x04]) + bytes([1, 2, 3, 4]) * 135,
            padding=False,
        ),
    ]
    assert out == expected


def test_empty_packet():
    forma = H265Format(payload_type=96)
    p = H265Processor(1472, forma, True, None)
    unit = UnitH265(
        au=[
            bytes([NALU_TYPE_VPS << 1, 10, 11, 12]),
            bytes([NALU_TYPE_SPS << 1, 13, 14, 15]),
            bytes([NALU_TYPE_PPS << 1, 16, 17, 18]),
        ]
    )
    p.process(unit, False)
    assert unit.rtp_packets is None


def test_key_frame_warning():
    forma = H265Format(payload_type=96)
    w = _LogWriter()
    p = H265Processor(1472, forma, True, w)

    ntp = datetime(2009, 11, 10, 23, 0, 0, tzinfo=timezone.utc)
    p.process(UnitH265(ntp=ntp, au=[b"\x01"]), False)
    ntp = ntp + timedelta(seconds=30)
    p.process(UnitH265(ntp=ntp, au=[b"\x01"]), False)

    assert w.messages == ["no H265 key frames received in 10s, stream can't be decoded"]


def test_extract_single_parameter_sets():
    vps = bytes([NALU_TYPE_VPS << 1, 1])
    sps = bytes([NALU_TYPE_SPS << 1, 2])
    pps = bytes([NALU_TYPE_PPS << 1, 3])
    assert extract_vps_sps_pps(RTPPacket(payload=vps)) == (vps, None, None)
    assert extract_vps_sps_pps(RTPPacket(payload=sps)) == (None, sps, None)
    assert extract_vps_sps_pps(RTPPacket(payload=pps)) == (None, None, pps)
    assert extract_vps_sps_pps(RTPPacket(payload=b"\x01")) == (None, None, None)


def test_extract_from_aggregation_unit():
    vps = bytes([NALU_TYPE_VPS << 1, 1])
    sps = bytes([NALU_TYPE_SPS << 1, 2])
    pps = bytes([NALU_TYPE_PPS << 1, 3])
    enc = H265Encoder(payload_max_size=1460, payload_type=96)
    (pkt,) = enc.encode([vps, sps, pps], 0)
    assert extract_vps_sps_pps(pkt) == (vps, sps, pps)


def test_extract_truncated_aggregation_unit():
    pkt = RTPPacket(payload=bytes([48 << 1, 1, 0, 10, 1, 2]))
    assert extract_vps_sps_pps(pkt) == (None, None, None)


def test_aggregation_round_trip():
    enc = H265Encoder(payload_max_size=1460, payload_type=96, initial_timestamp=0)
    nalus = [bytes([0x02, 0x01, 5, 6]), bytes([0x02, 0x01, 7])]
    pkts = enc.encode(nalus, 1.0)
    assert len(pkts) == 1
    assert pkts[0].payload[0] >> 1 == 48
    assert pkts[0].header.timestamp == 90000
    au, pts = H265Decoder().decode_until_marker(pkts[0])
    assert au == nalus
    assert pts == 0.0


def test_fragmentation_round_trip():
    enc = H265Encoder(payload_max_size=100, payload_type=96, initial_sequence_number=10)
    nalu = bytes([0x02, 0x01]) + bytes(range(256)) * 2
    pkts = enc.encode([nalu], 0)
    assert len(pkts) > 1
    assert [pk.header.sequence_number for pk in pkts] == list(range(10, 10 + len(pkts)))
    assert all(pk.marshal_size() <= 112 for pk in pkts)

    dec = H265Decoder()
    for pk in pkts[:-1]:
        with pytest.raises(MorePacketsNeeded):
            dec.decode_until_marker(pk)
    au, _ = dec.decode_until_marker(pkts[-1])
    assert au == [nalu]


def test_non_starting_fragment_without_previous():
    enc = H265Encoder(payload_max_size=100, payload_type=96)
    pkts = enc.encode([bytes([0x02, 0x01]) + bytes(300)], 0)
    with pytest.raises(NonStartingPacketAndNoPrevious):
        H265Decoder().decode_until_marker(pkts[1])


def test_decoder_rejects_short_payload():
    with pytest.raises(ValueError):
        H265Decoder().decode_until_marker(RTPPacket(payload=b"\x01"))


def test_unit_for_rtp_packet():
    p = H265Processor(1472, H265Format(), False, None)
    pkt = RTPPacket(payload=b"\x01\x02")
    ntp = datetime(2020, 1, 1)
    unit = p.unit_for_rtp_packet(pkt, ntp)
    assert isinstance(unit, UnitH265)
    assert unit.rtp_packets == [pkt]
    assert unit.ntp == ntp