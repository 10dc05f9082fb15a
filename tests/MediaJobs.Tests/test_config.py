"""Tests for environment-driven settings."""
import pytest

from config import get_worker_config, parse_storage_backends


def test_storage_backends_parse_roots_and_urls():
    parsed = parse_storage_backends(" archive=/srv/archive|https://cdn.example.com , nas=/mnt/nas,")

    assert parsed == {
        "archive": {"root": "/srv/archive", "base_url": "https://cdn.example.com"},
        "nas": {"root": "/mnt/nas", "base_url": ""},
    }
    assert parse_storage_backends(None) == {}


@pytest.mark.parametrize("raw", ["archive", "=/srv/archive", "archive=", "archive=|https://cdn.example.com"])
def test_storage_backends_reject_incomplete_entries(raw):
    with pytest.raises(ValueError, match="invalid STORAGE_BACKENDS entry"):
        parse_storage_backends(raw)


def test_max_stalled_comes_from_the_environment(monkeypatch):
    monkeypatch.setenv("MAX_STALLED_COUNT", "4")

    assert get_worker_config()["max_stalled"] == 4
