import pytest

from svg_gateway.config import Settings, _get_float, _get_int, _get_list


def test_defaults():
    settings = Settings()
    assert settings.MIN_DIMENSION == 32
    assert settings.DEFAULT_DIMENSION == 1024
    assert "169.254.169.254/32" in settings.DENY_NETWORKS


def test_get_int(monkeypatch):
    monkeypatch.setenv("SVG_TEST_INT", " 42 ")
    assert _get_int("SVG_TEST_INT", 1) == 42
    monkeypatch.setenv("SVG_TEST_INT", "")
    assert _get_int("SVG_TEST_INT", 1) == 1


def test_invalid_number_fails_fast(monkeypatch):
    monkeypatch.setenv("SVG_TEST_INT", "lots")
    with pytest.raises(ValueError):
        _get_int("SVG_TEST_INT", 1)
    with pytest.raises(ValueError):
        _get_float("SVG_TEST_INT", 1.0)


def test_get_list(monkeypatch):
    monkeypatch.setenv("SVG_TEST_LIST", "10.0.0.0/8, ,172.16.0.1")
    assert _get_list("SVG_TEST_LIST") == ["10.0.0.0/8", "172.16.0.1"]
    monkeypatch.delenv("SVG_TEST_LIST")
    assert _get_list("SVG_TEST_LIST") == []
