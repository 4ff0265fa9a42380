from datetime import datetime

from mediarelay.units import RTPHeader, RTPPacket, UnitH264, UnitGeneric


def _pkt(**kw):
    return RTPPacket(
        header=RTPHeader(
            marker=True, payload_type=96, sequence_number=123,
            timestamp=45343, ssrc=563423, **kw
        ),
        payload=bytes([1, 2, 3, 4]),
    )


def test_marshal_header_bytes():
    data = _pkt().marshal()
    assert data[0] == 0x80
    assert data[1] == 0x80 | 96
    assert data[2:4] == (123).to_bytes(2, "big")
    assert data[4:8] == (45343).to_bytes(4, "big")
    assert data[8:12] == (563423).to_bytes(4, "big")
    assert data[12:] == bytes([1, 2, 3, 4])


def test_marshal_size_matches_marshal():
    pkt = _pkt(csrc=[7, 8])
    assert pkt.marshal_size() == len(pkt.marshal())


def test_padding_counted():
    pkt = _pkt(padding=True)
    pkt.padding_size = 20
    data = pkt.marshal()
    assert len(data) == pkt.marshal_size()
    assert data[-1] == 20
    assert data[0] & 0x20


def test_padding_ignored_without_flag():
    pkt = _pkt()
    pkt.padding_size = 20
    assert pkt.marshal_size() == 12 + 4


def test_unit_defaults():
    u = UnitH264()
    assert u.rtp_packets is None and u.au is None and u.pts == 0.0
    t = datetime(2009, 11, 10, 23)
    g = UnitGeneric(rtp_packets=[_pkt()], ntp=t)
    assert g.ntp == t
    assert g.rtp_packets[0].payload == bytes([1, 2, 3, 4])