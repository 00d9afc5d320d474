"""
Tests for EventProcessingRepository.

Tests cover:
- Insert and duplicate event ids
- Status transitions and retry counters
- Retry and exhausted queues
- Status counts and type queries
- Purge of processed records
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from core.exceptions import ValidationError
from storage.models.enums import EventStatus
from storage.models.event_processing import EventProcessingRecord
from storage.repositories import (
    EventAlreadyRecordedError,
    EventRecordNotFoundError,
    ImmutableRecordError,
    ReferenceNotFoundError,
)
from storage.schemas import EventProcessingFilters


@pytest.fixture
def record(repos, clock):
    """Insert a ledger record stamped with the mock clock."""

    def make(event_id=None, event_type="trading.orders.created", **fields):
        fields.setdefault("processed_at", clock.now())
        return repos.events.create(
            EventProcessingRecord(
                event_id=event_id or f"evt-{uuid4()}",
                event_type=event_type,
                **fields,
            )
        )

    return make


class TestCreate:

    def test_defaults(self, record):
        created = record("evt-1")
        assert created.status == EventStatus.RETRYING.value
        assert created.retry_count == 0
        assert created.info == {}

    def test_duplicate_event_id(self, record):
        record("evt-1")
        with pytest.raises(EventAlreadyRecordedError):
            record("evt-1")

    def test_duplicate_leaves_session_usable(self, repos, record):
        record("evt-1")
        with pytest.raises(EventAlreadyRecordedError):
            record("evt-1")
        assert repos.events.get_by_event_id("evt-1") is not None

    def test_event_id_length(self, record):
        with pytest.raises(ValidationError):
            record("x" * 256)

    def test_unknown_user_reference(self, record):
        with pytest.raises(ReferenceNotFoundError):
            record("evt-1", user_id=uuid4())

    def test_owner_hints(self, factory, record):
        user = factory.user()
        assert record("evt-1", user_id=user.id).user_id == user.id


class TestStatusTransitions:
    """Tests for mark_as_* methods."""

    def test_processed_clears_error(self, repos, record, clock):
        record("evt-1")
        repos.events.mark_as_failed("evt-1", "boom")
        clock.advance(seconds=5)

        done = repos.events.mark_as_processed("evt-1")
        assert done.is_processed
        assert done.error_message is None
        assert done.processed_at == clock.now()
        assert done.retry_count == 1

    def test_failed_increments(self, repos, record):
        record("evt-1")
        repos.events.mark_as_failed("evt-1", "first")
        failed = repos.events.mark_as_failed("evt-1", "second")

        assert failed.status == EventStatus.FAILED.value
        assert failed.retry_count == 2
        assert failed.error_message == "second"

    def test_failed_explicit_count(self, repos, record):
        record("evt-1")
        assert repos.events.mark_as_failed("evt-1", "boom", retry_count=7).retry_count == 7

    def test_retrying(self, repos, record):
        record("evt-1", status=EventStatus.FAILED.value, retry_count=1)
        assert repos.events.mark_as_retrying("evt-1").status == EventStatus.RETRYING.value

    def test_missing_record(self, repos):
        with pytest.raises(EventRecordNotFoundError):
            repos.events.mark_as_processed("nope")

    def test_generic_update_refused(self, repos, record):
        created = record("evt-1")
        with pytest.raises(ImmutableRecordError):
            repos.events.update(created.id, {"status": "processed"})


# =============================================================
# QUEUES AND QUERIES
# =============================================================

class TestQueues:

    def test_get_failed_oldest_first(self, repos, record, clock):
        record("late", status="failed", retry_count=1, processed_at=clock.now())
        record("early", status="failed", retry_count=2, processed_at=clock.now() - timedelta(minutes=5))
        record("spent", status="failed", retry_count=3)
        record("ok", status="processed")

        assert [r.event_id for r in repos.events.get_failed(3)] == ["early", "late"]
        assert [r.event_id for r in repos.events.get_failed(3, limit=1)] == ["early"]

    def test_get_exhausted(self, repos, record):
        record("spent", status="failed", retry_count=3)
        record("pending", status="failed", retry_count=1)

        assert [r.event_id for r in repos.events.get_exhausted(3)] == ["spent"]

    def test_count_by_status(self, repos, record):
        record(status="processed")
        record(status="processed")
        record(status="failed", retry_count=1)

        assert repos.events.count_by_status() == {"processed": 2, "failed": 1, "retrying": 0}

    def test_get_by_event_type(self, repos, record):
        record("a", event_type="trading.signals", status="processed")
        record("b", event_type="trading.signals", status="failed", retry_count=1)
        record("c", event_type="system.heartbeat", status="processed")

        assert repos.events.get_by_event_type("trading.signals").total == 2
        filters = EventProcessingFilters(status=EventStatus.FAILED)
        assert [r.event_id for r in repos.events.get_by_event_type("trading.signals", filters)] == ["b"]


class TestPurge:

    def test_only_old_processed_records(self, repos, record, clock):
        old = clock.now() - timedelta(days=8)
        record("old-done", status="processed", processed_at=old)
        record("old-failed", status="failed", retry_count=3, processed_at=old)
        record("new-done", status="processed")

        assert repos.events.delete_older_than(clock.now() - timedelta(days=7)) == 1
        assert repos.events.get_by_event_id("old-done") is None
        assert repos.events.get_by_event_id("old-failed") is not None
        assert repos.events.get_by_event_id("new-done") is not None
