"""
Tests for cursor encoding, record keys and resume cursor resolution.
"""

from datetime import datetime, timedelta, timezone

import pytest

from apps.relay.cursors import (
    NextToken,
    SinceMarker,
    decode_fetch_cursor,
    encode_fetch_cursor,
    identity_from_partition,
    key_after,
    partition_name,
    record_key,
    resolve_resume_cursor,
    rfc3339,
)
from utils.schemas import IdentityConfig

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_numeric_record_keys_sort_numerically():
    assert record_key("9") < record_key("10") < record_key("1587946527955329024")
    assert len(record_key("9")) == 20


def test_non_numeric_record_key_is_unchanged():
    assert record_key("abc") == "abc"


def test_key_after_is_the_next_possible_key():
    assert "a" < key_after("a") < "a0" < "b"


def test_partition_naming_round_trip():
    assert partition_name("alice") == "timeline:alice"
    assert identity_from_partition("timeline:alice") == "alice"
    assert identity_from_partition("state") is None
    assert identity_from_partition("other:alice") is None


def test_time_marker_is_stored_as_iso_timestamp():
    value = encode_fetch_cursor(SinceMarker(start_time=T0))

    assert value == "2024-01-01T12:00:00+00:00"
    assert decode_fetch_cursor(value) == SinceMarker(start_time=T0)


def test_upstream_z_suffix_is_understood():
    assert decode_fetch_cursor("2024-01-01T12:00:00.000Z") == SinceMarker(start_time=T0)


def test_non_timestamp_value_is_a_token():
    assert decode_fetch_cursor("7140dibdnow9c7btw423x78o50g6e358t5r7iusluud6d") == NextToken(
        "7140dibdnow9c7btw423x78o50g6e358t5r7iusluud6d"
    )
    assert encode_fetch_cursor(NextToken("abc")) == "abc"


def test_id_markers_are_not_persisted():
    with pytest.raises(ValueError):
        encode_fetch_cursor(SinceMarker(since_id="5"))


def test_empty_marker_is_rejected():
    with pytest.raises(ValueError):
        SinceMarker()


def test_rfc3339_drops_fraction_and_uses_z():
    assert rfc3339(T0 + timedelta(microseconds=5)) == "2024-01-01T12:00:00Z"


class TestResolveResumeCursor:
    def identity(self, **kwargs):
        return IdentityConfig(username="alice", **kwargs)

    def test_nothing_known_starts_from_upstream_default(self):
        assert resolve_resume_cursor(None, self.identity()) is None

    def test_persisted_marker_resumes_one_second_later(self):
        cursor = resolve_resume_cursor(SinceMarker(start_time=T0), self.identity(since_id="5"))
        assert cursor == SinceMarker(start_time=T0 + timedelta(seconds=1))

    def test_persisted_token_wins(self):
        cursor = resolve_resume_cursor(NextToken("tok"), self.identity(since_id="5", start_time=T0))
        assert cursor == NextToken("tok")

    def test_configured_since_id_beats_start_time(self):
        cursor = resolve_resume_cursor(None, self.identity(since_id="5", start_time=T0))
        assert cursor == SinceMarker(since_id="5")

    def test_configured_start_time(self):
        cursor = resolve_resume_cursor(None, self.identity(start_time=T0))
        assert cursor == SinceMarker(start_time=T0)

    def test_resume_token_beats_persisted_marker(self):
        cursor = resolve_resume_cursor(SinceMarker(start_time=T0), self.identity(), NextToken("t2"))
        assert cursor == NextToken("t2")
