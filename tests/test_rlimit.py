from unittest import mock

import pytest

from mediarelay import rlimit


def _fake_resource(getrlimit_values):
    fake = mock.MagicMock()
    fake.RLIMIT_NOFILE = 7
    fake.getrlimit.side_effect = getrlimit_values
    return fake


def test_raise_limit_sets_soft_limit():
    fake = _fake_resource([(1024, 1048576), (999999, 1048576)])
    with mock.patch.object(rlimit, "resource", fake):
        result = rlimit.raise_limit()

    fake.setrlimit.assert_called_once_with(7, (999999, 1048576))
    assert result == (999999, 1048576)


def test_raise_limit_propagates_set_error():
    fake = _fake_resource([(1024, 4096)])
    fake.setrlimit.side_effect = ValueError("not allowed to raise maximum limit")
    with mock.patch.object(rlimit, "resource", fake):
        with pytest.raises(ValueError):
            rlimit.raise_limit()


def test_raise_limit_propagates_get_error():
    fake = _fake_resource(OSError("failure"))
    with mock.patch.object(rlimit, "resource", fake):
        with pytest.raises(OSError):
            rlimit.raise_limit()
    assert fake.setrlimit.call_count == 0


def test_raise_limit_without_resource_support():
    with mock.patch.object(rlimit, "resource", None):
        assert rlimit.raise_limit() is None