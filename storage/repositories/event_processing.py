"""
Event Processing Repository.

Row-level access to the ingest ledger table. Transaction
boundaries and retry policy live in event_ingest.ledger.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import delete as sql_delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storage.models.enums import EventStatus
from storage.models.event_processing import EventProcessingRecord
from storage.repositories.base import BaseRepository
from storage.repositories.exceptions import (
    EventAlreadyRecordedError,
    EventRecordNotFoundError,
    ImmutableRecordError,
)
from storage.schemas import EventProcessingFilters, Page, PaginationParams


class EventProcessingRepository(BaseRepository[EventProcessingRecord]):
    """Repository for ingest ledger records."""

    not_found_error = EventRecordNotFoundError
    duplicate_error = EventAlreadyRecordedError

    def __init__(self, session: Session, **kwargs: Any) -> None:
        super().__init__(session, EventProcessingRecord, "EventProcessingRepository", **kwargs)

    def create(self, record: EventProcessingRecord) -> EventProcessingRecord:
        """
        Insert a ledger record.

        Raises:
            EventAlreadyRecordedError: event_id already present
        """
        return self._add(
            record,
            duplicate_field="event_id",
            duplicate_value=record.event_id,
            reference="user or sub-account",
        )

    # =========================================================
    # READ
    # =========================================================

    def get_by_event_id(self, event_id: str) -> Optional[EventProcessingRecord]:
        stmt = select(EventProcessingRecord).where(EventProcessingRecord.event_id == event_id)
        return self._execute_scalar(stmt, "get_by_event_id")

    def get_by_event_id_for_update(self, event_id: str) -> Optional[EventProcessingRecord]:
        """Load and row-lock a record, overwriting any stale instance."""
        stmt = (
            select(EventProcessingRecord)
            .where(EventProcessingRecord.event_id == event_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self._execute_scalar(stmt, "get_by_event_id_for_update")

    def get_by_event_type(
        self,
        event_type: str,
        filters: Optional[EventProcessingFilters] = None,
        params: Optional[PaginationParams] = None,
    ) -> Page[EventProcessingRecord]:
        stmt = select(EventProcessingRecord).where(EventProcessingRecord.event_type == event_type)
        if filters is not None:
            if filters.status is not None:
                stmt = stmt.where(EventProcessingRecord.status == filters.status.value)
            if filters.start_time is not None:
                stmt = stmt.where(EventProcessingRecord.processed_at >= filters.start_time)
            if filters.end_time is not None:
                stmt = stmt.where(EventProcessingRecord.processed_at <= filters.end_time)
        stmt = stmt.order_by(EventProcessingRecord.processed_at.desc(), EventProcessingRecord.id)
        return self._paginate(stmt, params, "get_by_event_type")

    def get_failed(self, max_retries: int, limit: Optional[int] = None) -> List[EventProcessingRecord]:
        """Failed records still below ``max_retries``, oldest first."""
        stmt = (
            select(EventProcessingRecord)
            .where(
                EventProcessingRecord.status == EventStatus.FAILED.value,
                EventProcessingRecord.retry_count < max_retries,
            )
            .order_by(EventProcessingRecord.processed_at.asc(), EventProcessingRecord.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return self._execute_query(stmt, "get_failed")

    def get_exhausted(self, max_retries: int) -> List[EventProcessingRecord]:
        """Terminal failures left for operator attention."""
        stmt = (
            select(EventProcessingRecord)
            .where(
                EventProcessingRecord.status == EventStatus.FAILED.value,
                EventProcessingRecord.retry_count >= max_retries,
            )
            .order_by(EventProcessingRecord.processed_at.asc())
        )
        return self._execute_query(stmt, "get_exhausted")

    def count_by_status(self) -> Dict[str, int]:
        self._check_cancelled("count_by_status")
        stmt = select(EventProcessingRecord.status, func.count()).group_by(EventProcessingRecord.status)
        try:
            rows = self._session.execute(stmt).all()
        except SQLAlchemyError as e:
            self._handle_db_error(e, "count_by_status")
        counts = {status.value: 0 for status in EventStatus}
        counts.update({status: count for status, count in rows})
        return counts

    # =========================================================
    # STATUS TRANSITIONS
    # =========================================================

    def mark_as_processed(self, event_id: str) -> EventProcessingRecord:
        record = self._require(event_id, "mark_as_processed")
        record.status = EventStatus.PROCESSED.value
        record.processed_at = self._clock.now()
        record.error_message = None
        self._flush("mark_as_processed")
        return record

    def mark_as_retrying(self, event_id: str) -> EventProcessingRecord:
        record = self._require(event_id, "mark_as_retrying")
        record.status = EventStatus.RETRYING.value
        record.processed_at = self._clock.now()
        self._flush("mark_as_retrying")
        return record

    def mark_as_failed(
        self,
        event_id: str,
        error_message: str,
        retry_count: Optional[int] = None,
    ) -> EventProcessingRecord:
        """
        Record a failed attempt.

        Args:
            event_id: Ledger key
            error_message: Error of this attempt
            retry_count: Explicit counter value (defaults to current + 1)
        """
        record = self._require(event_id, "mark_as_failed")
        record.status = EventStatus.FAILED.value
        record.processed_at = self._clock.now()
        record.error_message = error_message
        record.retry_count = retry_count if retry_count is not None else (record.retry_count or 0) + 1
        self._flush("mark_as_failed")
        return record

    # =========================================================
    # HOUSEKEEPING
    # =========================================================

    def update(self, record_id: UUID, patch: Any = None) -> None:
        raise ImmutableRecordError(self._repository_name, record_id, "update")

    def delete_older_than(self, cutoff: datetime) -> int:
        """
        Remove processed records last touched before ``cutoff``.

        Returns:
            Number of deleted records
        """
        self._check_cancelled("delete_older_than")
        stmt = (
            sql_delete(EventProcessingRecord)
            .where(
                EventProcessingRecord.status == EventStatus.PROCESSED.value,
                EventProcessingRecord.processed_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = self._session.execute(stmt)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "delete_older_than", {"cutoff": cutoff.isoformat()})
        self._logger.info(f"Purged {result.rowcount} processed events older than {cutoff.isoformat()}")
        return result.rowcount

    def _require(self, event_id: str, operation: str) -> EventProcessingRecord:
        record = self.get_by_event_id(event_id)
        if record is None:
            raise EventRecordNotFoundError(self._repository_name, event_id, "event_id", operation)
        return record
