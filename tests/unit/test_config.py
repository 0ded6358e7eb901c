"""
Tests for environment-driven settings.
"""

import pytest
from pydantic import ValidationError

from utils.config import Settings


def test_defaults(monkeypatch):
    monkeypatch.delenv("IDENTITIES", raising=False)
    settings = Settings(_env_file=None)

    assert settings.IDENTITIES == []
    assert settings.DELIVERY_DELAY_SECONDS == 3.0
    assert settings.TIMELINE_PAGE_SIZE == 100
    assert not settings.events_enabled


def test_identities_from_json_env(monkeypatch):
    monkeypatch.setenv(
        "IDENTITIES",
        '[{"username": "alice", "user_id": "100", "channel": "news"},'
        ' {"name": "b", "username": "bob", "included": false}]',
    )

    settings = Settings(_env_file=None)

    alice, bob = settings.IDENTITIES
    assert alice.name == "alice"
    assert alice.channel == "news"
    assert bob.name == "b"
    assert not bob.included


def test_duplicate_identity_names_rejected(monkeypatch):
    monkeypatch.setenv("IDENTITIES", '[{"username": "alice"}, {"name": "alice", "username": "other"}]')

    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_page_size_bounds(monkeypatch):
    monkeypatch.setenv("TIMELINE_PAGE_SIZE", "500")

    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_settings_are_frozen(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    settings = Settings(_env_file=None)

    assert settings.events_enabled
    with pytest.raises(ValidationError):
        settings.REDIS_URL = ""


def test_identity_name_must_not_contain_separator(monkeypatch):
    monkeypatch.setenv("IDENTITIES", '[{"name": "alice:delivery", "username": "alice"}]')

    with pytest.raises(ValidationError):
        Settings(_env_file=None)
