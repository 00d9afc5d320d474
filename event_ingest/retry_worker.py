"""
Event Retry Worker.

Re-dispatches failed ledger records below the retry limit and
purges processed records past retention. One pass per call;
scheduling belongs to the caller.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from core.clock import ClockProtocol, SystemClock
from core.config import Settings
from core.context import OperationContext

from event_ingest.dispatcher import EventDecodeError, EventDispatcher
from event_ingest.ledger import EventIngestLedger, IngestOutcome


logger = logging.getLogger(__name__)


@dataclass
class RetrySummary:
    attempted: int = 0
    processed: int = 0
    failed: int = 0
    duplicates: int = 0
    exhausted: int = 0
    undecodable: List[str] = field(default_factory=list)


class EventRetryWorker:
    """Single-pass retry and retention housekeeping."""

    def __init__(
        self,
        ledger: EventIngestLedger,
        dispatcher: EventDispatcher,
        retention: timedelta = timedelta(hours=168),
        batch_size: int = 100,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._retention = retention
        self._batch_size = batch_size
        self._clock = clock or SystemClock()

    @classmethod
    def from_settings(
        cls,
        ledger: EventIngestLedger,
        dispatcher: EventDispatcher,
        settings: Settings,
        clock: Optional[ClockProtocol] = None,
    ) -> "EventRetryWorker":
        return cls(ledger, dispatcher, retention=settings.event_retention, clock=clock)

    def run_once(self, context: Optional[OperationContext] = None) -> RetrySummary:
        """
        Retry every eligible failed record, oldest first.

        Stops early when ``context`` is cancelled or expired.
        """
        summary = RetrySummary()
        for record in self._ledger.get_failed(limit=self._batch_size):
            if context is not None and context.cancelled:
                logger.info("Retry pass interrupted by caller")
                break
            summary.attempted += 1
            try:
                result = self._dispatcher.redispatch(record, context)
            except EventDecodeError as e:
                logger.error(f"Stored payload of event {record.event_id} is undecodable: {e}")
                summary.undecodable.append(record.event_id)
                continue

            if result.outcome == IngestOutcome.PROCESSED:
                summary.processed += 1
            elif result.outcome == IngestOutcome.DUPLICATE_IGNORED:
                summary.duplicates += 1
            elif result.outcome == IngestOutcome.EXHAUSTED:
                summary.exhausted += 1
            else:
                summary.failed += 1

        if summary.attempted:
            logger.info(
                f"Retry pass: {summary.attempted} attempted, {summary.processed} processed, "
                f"{summary.failed} failed"
            )
        return summary

    def purge_processed(self) -> int:
        """Delete processed records older than the retention window."""
        cutoff = self._clock.ago(self._retention)
        deleted = self._ledger.delete_older_than(cutoff)
        logger.info(f"Purged {deleted} processed events older than {cutoff.isoformat()}")
        return deleted
