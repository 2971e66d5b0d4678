"""Tests for obit_pipeline.core.repository module."""

from datetime import timedelta

import pytest

from obit_pipeline.core.errors import StorageError
from obit_pipeline.core.hashing import content_hash
from obit_pipeline.core.records import AuditStatus, RecordStatus


class TestInsertAndGet:
    """Test inserting and reading records."""

    def test_insert_defaults(self, repo, make_record, clock):
        record = repo.get(make_record(name="John Smith"))
        assert record.name == "John Smith"
        assert record.status == RecordStatus.PENDING
        assert record.audit_status is None
        assert record.requeue_count == 0
        assert record.quarantine.cycles == 0
        assert record.quarantine.quarantined_at is None
        assert record.created_at == clock.now()

    def test_get_missing(self, repo):
        assert repo.get(999) is None

    def test_unknown_column_rejected(self, repo):
        with pytest.raises(ValueError, match="Unknown record columns"):
            repo.insert("x", "text", favourite_colour="blue")

    def test_audit_issues_round_trip_as_json(self, repo, make_record):
        issues = [{"type": "tone", "severity": "info", "detail": "slightly informal"}]
        record = repo.get(make_record(audit_issues=issues))
        assert record.audit_issues == issues


class TestUpdate:
    """Test guarded single-row updates."""

    def test_omitted_keys_untouched_and_none_writes_null(self, repo, make_record):
        record_id = make_record(age=78, location="Toronto")
        assert repo.update(record_id, {"age": None})
        record = repo.get(record_id)
        assert record.age is None
        assert record.location == "Toronto"

    def test_sets_updated_at(self, repo, make_record, clock):
        record_id = make_record()
        clock.advance(30)
        repo.update(record_id, {"location": "Ottawa"})
        assert repo.get(record_id).updated_at == clock.now()

    def test_guard_matches(self, repo, make_record):
        record_id = make_record(rewritten_hash="abc")
        assert repo.update(record_id, {"age": 70}, expect={"rewritten_hash": "abc", "suppressed_at": None})
        assert repo.get(record_id).age == 70

    def test_guard_mismatch_skips(self, repo, make_record):
        record_id = make_record(rewritten_hash="abc", age=50)
        assert not repo.update(record_id, {"age": 70}, expect={"rewritten_hash": "other"})
        assert repo.get(record_id).age == 50

    def test_guard_none_means_is_null(self, repo, make_record):
        record_id = make_record()
        assert repo.update(record_id, {"age": 61}, expect={"rewritten_hash": None})
        repo.update(record_id, {"rewritten_hash": "h"})
        assert not repo.update(record_id, {"age": 62}, expect={"rewritten_hash": None})

    def test_suppressed_record_fails_guard(self, repo, make_record):
        record_id = make_record()
        assert repo.suppress(record_id)
        assert repo.get(record_id).is_suppressed
        assert not repo.update(record_id, {"age": 1}, expect={"suppressed_at": None})

    def test_unknown_column_rejected(self, repo, make_record):
        with pytest.raises(ValueError):
            repo.update(make_record(), {"id": 5})

    def test_storage_failure_raises_storage_error(self, repo, make_record, conn):
        record_id = make_record()
        conn.execute("DROP TABLE pipeline_records")
        with pytest.raises(StorageError) as exc_info:
            repo.update(record_id, {"age": 3})
        assert exc_info.value.context.operation == "update"
        assert exc_info.value.context.record_id == record_id


class TestSelectForRewrite:
    """Test rewrite-stage selection."""

    def test_newest_first(self, repo, make_record, clock):
        older = make_record(name="A Older")
        clock.advance(60)
        newer = make_record(name="B Newer")
        assert [r.id for r in repo.select_for_rewrite(10, 3600)] == [newer, older]

    def test_limit(self, repo, make_record):
        for _ in range(3):
            make_record()
        assert len(repo.select_for_rewrite(2, 3600)) == 2

    def test_excludes_ineligible_records(self, repo, make_record, clock):
        eligible = make_record()
        make_record(rewritten_text="already rewritten", rewritten_hash="h")
        make_record(original_text="   ")
        make_record(status="published")
        make_record(status="failed")
        make_record(suppressed_at=clock.now())
        assert [r.id for r in repo.select_for_rewrite(10, 3600)] == [eligible]

    def test_quarantine_window(self, repo, make_record, clock):
        record_id = make_record(quarantined_at=clock.now(), quarantine_cycles=1)
        assert repo.select_for_rewrite(10, 3600) == []
        clock.advance(3599)
        assert repo.select_for_rewrite(10, 3600) == []
        clock.advance(1)
        selected = repo.select_for_rewrite(10, 3600)
        assert [r.id for r in selected] == [record_id]
        assert selected[0].quarantine.cycles == 1

    def test_count_rewrite_queue(self, repo, make_record, clock):
        make_record()
        make_record(quarantined_at=clock.now(), quarantine_cycles=1)
        assert repo.count_rewrite_queue(3600) == 1
        assert repo.count_rewrite_queue(3600, include_quarantined=True) == 2


class TestSelectForAudit:
    """Test audit-stage selection."""

    def test_needs_audit_before_divergent(self, repo, make_rewritten):
        needs_audit = make_rewritten()
        divergent = make_rewritten(
            audit_status="pass", status="published", last_audited_hash="stale", last_audit_outcome="pass"
        )
        newer_needs_audit = make_rewritten()
        ids = [r.id for r in repo.select_for_audit(10)]
        assert ids == [newer_needs_audit, needs_audit, divergent]

    def test_unchanged_pass_not_selected(self, repo, make_rewritten):
        text = "Jane Doe died in Toronto."
        make_rewritten(
            text=text,
            status="published",
            audit_status="pass",
            last_audited_hash=content_hash(text),
            last_audit_outcome="pass",
        )
        assert repo.select_for_audit(10) == []

    def test_held_failed_and_unrewritten_excluded(self, repo, make_record, make_rewritten, clock):
        make_rewritten(audit_status="admin_review")
        make_rewritten(status="failed")
        make_rewritten(suppressed_at=clock.now())
        make_record()
        assert repo.select_for_audit(10) == []

    def test_missing_hash_is_selected(self, repo, make_rewritten):
        record_id = make_rewritten(rewritten_hash=None, audit_status="pass", status="published")
        assert [r.id for r in repo.select_for_audit(10)] == [record_id]


class TestStalePassed:
    """Test stale re-verification selection."""

    def test_oldest_stale_first(self, repo, make_rewritten, clock):
        now = clock.now()
        recent = make_rewritten(status="published", audit_status="pass", last_audit_at=now - timedelta(days=5))
        oldest = make_rewritten(status="published", audit_status="pass", last_audit_at=now - timedelta(days=90))
        stale = make_rewritten(status="published", audit_status="pass", last_audit_at=now - timedelta(days=31))
        ids = [r.id for r in repo.select_stale_passed(10, 30)]
        assert ids == [oldest, stale]
        assert recent not in ids


class TestQueueStats:
    """Test the operator counts."""

    def test_counts(self, repo, make_record, make_rewritten, clock):
        make_record()
        make_record(quarantined_at=clock.now(), quarantine_cycles=1)
        make_rewritten()
        make_rewritten(status="published", audit_status="pass")
        make_rewritten(audit_status="admin_review")
        stats = repo.queue_stats(3600)
        assert stats["total"] == 5
        assert stats["rewritten"] == 3
        assert stats["published"] == 1
        assert stats["pending_rewrite"] == 2
        assert stats["quarantined"] == 1
        assert stats["needs_audit"] == 1
        assert stats["admin_review"] == 1
        assert stats["pct_rewritten"] == 60.0

    def test_record_states(self, repo, make_rewritten):
        record = repo.get(make_rewritten())
        assert record.status == RecordStatus.PENDING
        assert record.audit_status == AuditStatus.NEEDS_AUDIT
        assert record.has_rewrite
