from datetime import datetime

import pytest

from mediarelay.formats import GenericFormat, H264Format, H265Format
from mediarelay.h264 import H264Processor
from mediarelay.h265 import H265Processor
from mediarelay.processor import GenericProcessor, ProcessingError, new_processor
from mediarelay.units import RTPHeader, RTPPacket, UnitGeneric


def _generic_format():
    return GenericFormat(payload_type=96, rtp_map="private/90000")


def test_generic_remove_padding():
    p = new_processor(1472, _generic_format(), False, None)
    pkt = RTPPacket(
        header=RTPHeader(
            version=2,
            marker=True,
            payload_type=96,
            sequence_number=123,
            timestamp=45343,
            ssrc=563423,
            padding=True,
        ),
        payload=bytes([1, 2, 3, 4]),
        padding_size=20,
    )
    p.process(UnitGeneric(rtp_packets=[pkt]), False)

    assert pkt == RTPPacket(
        header=RTPHeader(
            version=2,
            marker=True,
            payload_type=96,
            sequence_number=123,
            timestamp=45343,
            ssrc=563423,
        ),
        payload=bytes([1, 2, 3, 4]),
    )


def test_generic_oversized_packet():
    p = new_processor(100, _generic_format(), False, None)
    pkt = RTPPacket(payload=bytes(200))
    with pytest.raises(ProcessingError, match=r"payload size \(212\) is greater than maximum allowed \(100\)"):
        p.process(UnitGeneric(rtp_packets=[pkt]), False)


def test_generic_cannot_generate_packets():
    with pytest.raises(ProcessingError, match="we don't know how to generate RTP packets"):
        new_processor(1472, _generic_format(), True, None)


@pytest.mark.parametrize(
    "forma, expected",
    [
        (H264Format(), H264Processor),
        (H265Format(), H265Processor),
        (GenericFormat(rtp_map="private/90000"), GenericProcessor),
    ],
)
def test_new_processor_dispatch(forma, expected):
    p = new_processor(1472, forma, False, None)
    assert type(p) is expected


def test_generic_unit_for_rtp_packet():
    p = GenericProcessor(1472, _generic_format(), False, None)
    pkt = RTPPacket(payload=b"\x01")
    ntp = datetime(2021, 5, 6, 7, 8, 9)
    unit = p.unit_for_rtp_packet(pkt, ntp)
    assert isinstance(unit, UnitGeneric)
    assert unit.rtp_packets == [pkt]
    assert unit.ntp == ntp