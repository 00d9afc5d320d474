"""
Event Ingest Ledger.

============================================================
PURPOSE
============================================================
Exactly-once application of bus events on top of at-least-once
delivery. Every event id gets one EventProcessingRecord.

============================================================
PROCESSING RULES
============================================================
- processed record          -> skip, DUPLICATE_IGNORED
- failed/retrying record at or above max_retries
                            -> skip, EXHAUSTED (operator attention)
- otherwise: one transaction inserts (or re-locks) the record as
  retrying, runs the work, marks it processed and commits
- work failure: roll back, then a second transaction upserts the
  record as failed with the error and retry_count + 1
- concurrent first sightings race on the unique event_id; the
  loser reports DUPLICATE_IGNORED

============================================================
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from core.clock import ClockProtocol, SystemClock
from core.context import OperationContext
from storage.database import transaction_scope
from storage.models.enums import EventStatus
from storage.models.event_processing import EventProcessingRecord
from storage.models.trading import SubAccount
from storage.models.user import User
from storage.repositories.exceptions import EventAlreadyRecordedError
from storage.unit_of_work import Repositories, RepositoriesFactory


logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX_LENGTH = 2000

Work = Callable[[Repositories], Any]


class IngestOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE_IGNORED = "duplicate_ignored"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class OwnerHints:
    """Owner identifiers stored on the ledger record when they resolve."""

    user_id: Optional[UUID] = None
    sub_account_id: Optional[UUID] = None


@dataclass(frozen=True)
class IngestResult:
    event_id: str
    outcome: IngestOutcome
    retry_count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        """True when the bus message can be acknowledged without redelivery."""
        return self.outcome in (IngestOutcome.PROCESSED, IngestOutcome.DUPLICATE_IGNORED)


class EventIngestLedger:
    """
    Idempotent event application.

    Usage:
        ledger = EventIngestLedger(session_factory, repositories_factory(engine, settings))
        result = ledger.ingest(event_id, subject, hints, lambda repos: ...)
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        repositories_factory: RepositoriesFactory,
        max_retries: int = 3,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        """
        Args:
            session_factory: Source of one session per attempt
            repositories_factory: Builds a Repositories bundle for a session
            max_retries: Failed attempts after which an event is terminal
            clock: Time source for processed_at stamps
        """
        self._session_factory = session_factory
        self._repositories_factory = repositories_factory
        self._max_retries = max_retries
        self._clock = clock or SystemClock()

    @property
    def max_retries(self) -> int:
        return self._max_retries

    # =========================================================
    # INGEST
    # =========================================================

    def ingest(
        self,
        event_id: str,
        event_type: str,
        hints: Optional[OwnerHints],
        work: Work,
        payload: Optional[Dict[str, Any]] = None,
        context: Optional[OperationContext] = None,
    ) -> IngestResult:
        """
        Apply ``work`` at most once for ``event_id``.

        Args:
            event_id: Envelope event id
            event_type: Bus subject
            hints: Owner ids to store on the record
            work: Effect to run with repositories bound to the ledger transaction
            payload: Decoded message kept for re-dispatch
            context: Caller deadline / cancellation

        Returns:
            IngestResult; a failed attempt is recorded, not raised
        """
        hints = hints or OwnerHints()
        session: Session = self._session_factory()
        try:
            repos = self._repositories_factory(session, context)
            existing = repos.events.get_by_event_id_for_update(event_id)

            if existing is not None:
                skipped = self._skip_result(existing)
                if skipped is not None:
                    session.rollback()
                    return skipped
                repos.events.mark_as_retrying(event_id)
            else:
                record = self._new_record(repos, event_id, event_type, hints, payload)
                repos.events.create(record)

            work(repos)

            repos.events.mark_as_processed(event_id)
            session.commit()
            logger.info(f"Processed event {event_id} ({event_type})")
            return IngestResult(event_id, IngestOutcome.PROCESSED)

        except EventAlreadyRecordedError:
            session.rollback()
            logger.info(f"Event {event_id} recorded concurrently, ignoring")
            return IngestResult(event_id, IngestOutcome.DUPLICATE_IGNORED)

        except Exception as e:
            session.rollback()
            message = _describe(e)
            logger.warning(f"Event {event_id} ({event_type}) failed: {message}", exc_info=True)
            return self._record_failure(event_id, event_type, hints, payload, message)

        finally:
            session.close()

    def record_rejection(
        self,
        event_id: str,
        event_type: str,
        message: str,
        hints: Optional[OwnerHints] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> IngestResult:
        """
        Store an event that cannot be applied (unknown type, invalid payload).

        A processed record for the id is left untouched.
        """
        logger.warning(f"Rejected event {event_id} ({event_type}): {message}")
        return self._record_failure(event_id, event_type, hints or OwnerHints(), payload, message)

    # =========================================================
    # HOUSEKEEPING
    # =========================================================

    def get_failed(self, max_retries: Optional[int] = None, limit: Optional[int] = None) -> List[EventProcessingRecord]:
        """Failed records still eligible for retry, oldest first."""
        limit_retries = self._max_retries if max_retries is None else max_retries
        with transaction_scope(self._session_factory) as session:
            return self._repositories_factory(session).events.get_failed(limit_retries, limit)

    def get_exhausted(self) -> List[EventProcessingRecord]:
        with transaction_scope(self._session_factory) as session:
            return self._repositories_factory(session).events.get_exhausted(self._max_retries)

    def delete_older_than(self, cutoff: datetime) -> int:
        """Remove processed records older than ``cutoff``."""
        with transaction_scope(self._session_factory) as session:
            return self._repositories_factory(session).events.delete_older_than(cutoff)

    # =========================================================
    # INTERNALS
    # =========================================================

    def _skip_result(self, record: EventProcessingRecord) -> Optional[IngestResult]:
        if record.is_processed:
            logger.info(f"Skipping duplicate event {record.event_id}")
            return IngestResult(record.event_id, IngestOutcome.DUPLICATE_IGNORED, record.retry_count)
        if record.retry_count >= self._max_retries:
            logger.warning(
                f"Event {record.event_id} exhausted after {record.retry_count} attempts"
            )
            return IngestResult(
                record.event_id,
                IngestOutcome.EXHAUSTED,
                record.retry_count,
                record.error_message,
            )
        return None

    def _record_failure(
        self,
        event_id: str,
        event_type: str,
        hints: OwnerHints,
        payload: Optional[Dict[str, Any]],
        message: str,
    ) -> IngestResult:
        # Runs without the caller context: a cancelled attempt is still recorded
        with transaction_scope(self._session_factory) as session:
            repos = self._repositories_factory(session)
            record = repos.events.get_by_event_id_for_update(event_id)

            created = False
            if record is None:
                record = self._new_record(repos, event_id, event_type, hints, payload)
                record.status = EventStatus.FAILED.value
                record.error_message = message
                record.retry_count = 1
                try:
                    repos.events.create(record)
                    created = True
                except EventAlreadyRecordedError:
                    record = repos.events.get_by_event_id_for_update(event_id)

            if record.is_processed:
                return IngestResult(event_id, IngestOutcome.DUPLICATE_IGNORED, record.retry_count)
            if not created:
                record = repos.events.mark_as_failed(event_id, message)
            retry_count = record.retry_count

        return IngestResult(event_id, IngestOutcome.FAILED, retry_count, message)

    def _new_record(
        self,
        repos: Repositories,
        event_id: str,
        event_type: str,
        hints: OwnerHints,
        payload: Optional[Dict[str, Any]],
    ) -> EventProcessingRecord:
        """
        Build a record, dropping hints that do not reference an existing row.

        Dropped hints are kept in info so the owner is not lost.
        """
        info: Dict[str, Any] = {"subject": event_type, "payload": payload}
        unresolved = {}
        user_id = hints.user_id
        if user_id is not None and repos.session.get(User, user_id) is None:
            unresolved["user_id"] = str(user_id)
            user_id = None
        sub_account_id = hints.sub_account_id
        if sub_account_id is not None and repos.session.get(SubAccount, sub_account_id) is None:
            unresolved["sub_account_id"] = str(sub_account_id)
            sub_account_id = None
        if unresolved:
            info["unresolved_hints"] = unresolved

        return EventProcessingRecord(
            event_id=event_id,
            event_type=event_type,
            user_id=user_id,
            sub_account_id=sub_account_id,
            status=EventStatus.RETRYING.value,
            processed_at=self._clock.now(),
            retry_count=0,
            info=info,
        )


def _describe(error: Exception) -> str:
    text = str(error) or type(error).__name__
    return text[:ERROR_MESSAGE_MAX_LENGTH]
