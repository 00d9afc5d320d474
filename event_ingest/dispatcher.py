"""
Event Dispatcher Adapter.

============================================================
RESPONSIBILITY
============================================================
Turns a raw bus message (subject + bytes) into a ledger call:

1. Decode JSON; undecodable data or a missing event_id raises
   EventDecodeError and nothing is recorded
2. Choose the payload model by subject; unknown subjects are
   recorded as failed ("unknown event type")
3. Validate the payload; invalid payloads are recorded as failed
4. Hand the ledger a closure running the subject's handler

The adapter owns no connection state and never retries; retries
belong to the ledger and the retry worker, redelivery to the bus
client.

============================================================
"""

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from core.context import OperationContext
from core.exceptions import AccountStoreException, ErrorCode
from storage.models.event_processing import EVENT_ID_MAX_LENGTH, EVENT_TYPE_MAX_LENGTH, EventProcessingRecord

from event_ingest.events import PAYLOAD_MODELS
from event_ingest.handlers import HANDLERS
from event_ingest.ledger import EventIngestLedger, IngestResult, OwnerHints


logger = logging.getLogger(__name__)

UNKNOWN_EVENT_TYPE = "unknown event type"

RawMessage = Union[bytes, bytearray, str, Mapping[str, Any]]


class EventDecodeError(AccountStoreException):
    """Message cannot be tied to an event id; the bus client should dead-letter it."""

    code = ErrorCode.VALIDATION


class EventDispatcher:
    """
    Routes bus messages to handlers through the ingest ledger.

    Usage:
        dispatcher = EventDispatcher(ledger)
        result = dispatcher.dispatch(msg.subject, msg.data)
        if result.ok:
            msg.ack()
    """

    def __init__(self, ledger: EventIngestLedger) -> None:
        self._ledger = ledger

    def dispatch(
        self,
        subject: str,
        data: RawMessage,
        context: Optional[OperationContext] = None,
    ) -> IngestResult:
        """
        Decode, validate and ingest one message.

        Raises:
            EventDecodeError: Undecodable data or no usable event_id
        """
        if not subject:
            raise EventDecodeError("message without subject")
        raw, typed = _decode(data)

        event_id = raw.get("event_id")
        if not isinstance(event_id, str) or not event_id.strip():
            raise EventDecodeError("event without event_id", context={"subject": subject})
        if len(event_id) > EVENT_ID_MAX_LENGTH:
            raise EventDecodeError(
                f"event_id longer than {EVENT_ID_MAX_LENGTH} characters",
                context={"subject": subject},
            )
        event_type = subject[:EVENT_TYPE_MAX_LENGTH]

        model = PAYLOAD_MODELS.get(subject)
        if model is None:
            return self._ledger.record_rejection(
                event_id, event_type, UNKNOWN_EVENT_TYPE, _hints_from_raw(raw), raw
            )

        try:
            event = model.model_validate(typed)
        except PydanticValidationError as e:
            return self._ledger.record_rejection(
                event_id, event_type, _summarize(e), _hints_from_raw(raw), raw
            )

        handler = HANDLERS[subject]
        hints = OwnerHints(
            user_id=event.user_id,
            sub_account_id=getattr(event, "sub_account_id", None),
        )
        logger.debug(f"Dispatching {subject} event {event_id}")
        return self._ledger.ingest(
            event_id,
            event_type,
            hints,
            lambda repos: handler(repos, event, subject),
            payload=raw,
            context=context,
        )

    async def dispatch_async(
        self,
        subject: str,
        data: RawMessage,
        context: Optional[OperationContext] = None,
    ) -> IngestResult:
        """dispatch() on a worker thread, for asyncio bus clients."""
        return await asyncio.to_thread(self.dispatch, subject, data, context)

    def redispatch(
        self,
        record: EventProcessingRecord,
        context: Optional[OperationContext] = None,
    ) -> IngestResult:
        """Replay a ledger record from its stored subject and payload."""
        info = record.info or {}
        subject = info.get("subject") or record.event_type
        payload = info.get("payload")
        if not isinstance(payload, dict):
            return self._ledger.record_rejection(
                record.event_id, record.event_type, "no stored payload to replay"
            )
        return self.dispatch(subject, payload, context)


def _decode(data: RawMessage):
    """
    Decode a message twice: plain JSON for storage and with Decimal
    floats for validation, so amounts keep their written digits.
    """
    if isinstance(data, Mapping):
        try:
            text = json.dumps(dict(data))
        except (TypeError, ValueError) as e:
            raise EventDecodeError(f"message is not JSON serializable: {e}", cause=e) from e
    elif isinstance(data, (bytes, bytearray)):
        try:
            text = bytes(data).decode("utf-8")
        except UnicodeDecodeError as e:
            raise EventDecodeError("message is not UTF-8", cause=e) from e
    else:
        text = data

    try:
        raw = json.loads(text)
        typed = json.loads(text, parse_float=Decimal)
    except (TypeError, ValueError) as e:
        raise EventDecodeError(f"message is not valid JSON: {e}", cause=e) from e
    if not isinstance(raw, dict):
        raise EventDecodeError("message is not a JSON object")
    return raw, typed


def _hints_from_raw(raw: Dict[str, Any]) -> OwnerHints:
    return OwnerHints(
        user_id=_uuid_or_none(raw.get("user_id")),
        sub_account_id=_uuid_or_none(raw.get("sub_account_id")),
    )


def _uuid_or_none(value: Any) -> Optional[UUID]:
    if not isinstance(value, str):
        return None
    try:
        return UUID(value)
    except ValueError:
        return None


def _summarize(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors()[:5]:
        location = ".".join(str(part) for part in item["loc"]) or "payload"
        parts.append(f"{location}: {item['msg']}")
    return "invalid payload: " + "; ".join(parts)
