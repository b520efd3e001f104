import logging

import pytest

from app import config


@pytest.mark.parametrize(
    "raw, expected",
    [(None, "/api"), ("", "/api"), ("api", "/api"), ("/v1/", "/v1"), ("/", "/")],
)
def test_api_prefix_is_canonical(raw, expected):
    assert config._canon_prefix(raw) == expected


def test_parse_int_falls_back_on_bad_values(monkeypatch, caplog):
    monkeypatch.setenv("REQUIRED_MATCHES", "seven")
    with caplog.at_level(logging.WARNING):
        assert config._parse_int("REQUIRED_MATCHES", 5, minimum=1) == 5
    assert "not a valid integer" in caplog.text

    monkeypatch.setenv("REQUIRED_MATCHES", "0")
    assert config._parse_int("REQUIRED_MATCHES", 5, minimum=1) == 5

    monkeypatch.setenv("REQUIRED_MATCHES", "8")
    assert config._parse_int("REQUIRED_MATCHES", 5, minimum=1) == 8


def test_parse_bool(monkeypatch):
    monkeypatch.setenv("CLEANUP_STRICT", "yes")
    assert config._parse_bool("CLEANUP_STRICT", False) is True
    monkeypatch.setenv("CLEANUP_STRICT", "off")
    assert config._parse_bool("CLEANUP_STRICT", True) is False
    monkeypatch.delenv("CLEANUP_STRICT")
    assert config._parse_bool("CLEANUP_STRICT", True) is True


def test_defaults():
    assert config.REQUIRED_MATCHES == 5
    assert config.AUDIT_BULK_CLUSTER_SIZE == 10
    assert config.AUDIT_SAME_PAIR_CLUSTER_SIZE == 2
