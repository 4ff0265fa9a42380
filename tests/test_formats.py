from mediarelay.formats import GenericFormat, H264Format, H265Format


def test_h264_params_round_trip():
    f = H264Format(payload_type=96)
    assert f.safe_params() == (None, None)
    f.safe_set_params(b"\x07\x01", b"\x08\x02")
    assert f.safe_params() == (b"\x07\x01", b"\x08\x02")
    assert f.sps == b"\x07\x01"


def test_h265_params_round_trip():
    f = H265Format(payload_type=96)
    f.safe_set_params(b"a", b"b", b"c")
    assert f.safe_params() == (b"a", b"b", b"c")


def test_generic_clock_rate():
    assert GenericFormat(payload_type=96, rtp_map="private/90000").clock_rate == 90000
    assert GenericFormat(payload_type=96, rtp_map="x/8000").clock_rate == 8000


def test_equality_follows_parameters():
    first = H264Format(payload_type=96, sps=b"1")
    second = H264Format(payload_type=96)
    assert (first == second) is False

    second.safe_set_params(b"1", None)
    assert (first == second) is True