"""Tests for obit_pipeline.core.hashing and timestamps."""

from datetime import UTC, datetime, timedelta, timezone

from obit_pipeline.core.hashing import compute_hash, content_hash
from obit_pipeline.core.timestamps import from_iso8601, generate_ulid, to_iso8601


class TestHashing:
    """Test content hashing."""

    def test_compute_hash_is_order_sensitive(self):
        assert compute_hash("a", "b") != compute_hash("b", "a")

    def test_compute_hash_length(self):
        assert len(compute_hash("x", length=16)) == 16
        assert len(compute_hash("x")) == 64

    def test_content_hash_normalizes_line_endings_and_whitespace(self):
        assert content_hash("line one\r\nline two  ") == content_hash("line one\nline two")

    def test_content_hash_detects_changes(self):
        assert content_hash("She died in 2024.") != content_hash("She died in 2025.")


class TestTimestamps:
    """Test timestamp serialization."""

    def test_fixed_width_utc(self):
        dt = datetime(2025, 3, 10, 12, 0, 5, tzinfo=UTC)
        assert to_iso8601(dt) == "2025-03-10T12:00:05.000000+00:00"

    def test_other_offsets_converted_to_utc(self):
        dt = datetime(2025, 3, 10, 14, 0, 5, tzinfo=timezone(timedelta(hours=2)))
        assert to_iso8601(dt) == "2025-03-10T12:00:05.000000+00:00"

    def test_naive_treated_as_utc(self):
        assert from_iso8601(to_iso8601(datetime(2025, 1, 1))) == datetime(2025, 1, 1, tzinfo=UTC)

    def test_none_passthrough(self):
        assert to_iso8601(None) is None
        assert from_iso8601(None) is None

    def test_serialized_values_sort_chronologically(self):
        early = to_iso8601(datetime(2025, 3, 10, 9, 59, 59, tzinfo=UTC))
        late = to_iso8601(datetime(2025, 3, 10, 10, 0, 0, tzinfo=UTC))
        assert early < late

    def test_ulid_shape(self):
        ulid = generate_ulid()
        assert len(ulid) == 26
        assert ulid != generate_ulid()
