"""
Event Ingest Package.

Exactly-once application of trading bus events.

Modules:
- events: subjects, envelope and typed payloads
- ledger: EventIngestLedger, the idempotency ledger
- handlers: repository effects per event family
- dispatcher: EventDispatcher, subject + bytes -> ledger call
- retry_worker: EventRetryWorker, retries and retention
"""

from event_ingest.dispatcher import EventDecodeError, EventDispatcher
from event_ingest.events import PAYLOAD_MODELS, Subject
from event_ingest.ledger import EventIngestLedger, IngestOutcome, IngestResult, OwnerHints
from event_ingest.retry_worker import EventRetryWorker, RetrySummary

__all__ = [
    "EventDecodeError",
    "EventDispatcher",
    "PAYLOAD_MODELS",
    "Subject",
    "EventIngestLedger",
    "IngestOutcome",
    "IngestResult",
    "OwnerHints",
    "EventRetryWorker",
    "RetrySummary",
]
