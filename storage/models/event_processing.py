"""
Event Processing ORM Model.

One row per externally delivered event id. The row is the
idempotency key of the Event Ingest Ledger and its retry counter.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.clock import utc_now
from core.exceptions import ValidationError
from storage.models.base import Base, JSONMap, TimestampMixin, new_id
from storage.models.enums import EventStatus, enum_values


EVENT_ID_MAX_LENGTH = 255
EVENT_TYPE_MAX_LENGTH = 100


class EventProcessingRecord(Base, TimestampMixin):
    """Ingest ledger entry."""

    __tablename__ = "event_processing"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=new_id,
        comment="Record identifier"
    )

    event_id: Mapped[str] = mapped_column(
        String(EVENT_ID_MAX_LENGTH),
        nullable=False,
        unique=True,
        comment="Globally unique event id from the envelope"
    )

    event_type: Mapped[str] = mapped_column(
        String(EVENT_TYPE_MAX_LENGTH),
        nullable=False,
        index=True,
        comment="Bus subject / event type"
    )

    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
        comment="User the event concerns"
    )

    sub_account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("sub_accounts.id", ondelete="RESTRICT"),
        nullable=True,
        comment="Sub-account the event concerns"
    )

    processed_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=utc_now,
        index=True,
        comment="Time of the latest processing attempt"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=EventStatus.RETRYING.value,
        index=True,
        comment="Status: processed, failed, retrying"
    )

    retry_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Failed attempts so far"
    )

    error_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Error of the latest failed attempt"
    )

    info: Mapped[Dict[str, Any]] = mapped_column(
        JSONMap,
        nullable=False,
        default=dict,
        comment="Subject and payload for re-dispatch"
    )

    @property
    def is_processed(self) -> bool:
        return self.status == EventStatus.PROCESSED.value

    def validate(self) -> None:
        if not self.event_id or not self.event_id.strip():
            raise ValidationError("event_id is required", field="event_id")
        if len(self.event_id) > EVENT_ID_MAX_LENGTH:
            raise ValidationError(
                f"event_id must be at most {EVENT_ID_MAX_LENGTH} characters",
                field="event_id",
            )
        if not self.event_type:
            raise ValidationError("event_type is required", field="event_type")
        if len(self.event_type) > EVENT_TYPE_MAX_LENGTH:
            raise ValidationError(
                f"event_type must be at most {EVENT_TYPE_MAX_LENGTH} characters",
                field="event_type",
            )
        if self.status not in enum_values(EventStatus):
            raise ValidationError(
                f"status must be one of {enum_values(EventStatus)}",
                field="status",
            )
        if self.retry_count is not None and self.retry_count < 0:
            raise ValidationError("retry_count must not be negative", field="retry_count")

    def __repr__(self) -> str:
        return f"<EventProcessingRecord event_id={self.event_id!r} status={self.status}>"
