"""
Event Bus Payloads.

============================================================
WIRE FORMAT
============================================================
Every message is a JSON object: the common envelope

    {event_id, event_type, timestamp, user_id, exchange_id,
     source, version}

plus a body chosen by subject. exchange_id identifies the
Trading the event belongs to.

Subjects are wire-level strings and must match bit-exact.

============================================================
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Type
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from storage.models.enums import Direction


class Subject(str, Enum):
    # Order lifecycle
    ORDER_CREATED = "trading.orders.created"
    ORDER_FILLED = "trading.orders.filled"
    ORDER_CANCELLED = "trading.orders.cancelled"
    ORDER_FAILED = "trading.orders.failed"

    # Balance lifecycle
    BALANCE_UPDATED = "trading.balance.updated"
    BALANCE_LOCKED = "trading.balance.locked"
    BALANCE_UNLOCKED = "trading.balance.unlocked"

    # System
    SYSTEM_ERROR = "trading.errors"
    SIGNAL_GENERATED = "trading.signals"
    HEARTBEAT = "system.heartbeat"


ORDER_SUBJECTS: FrozenSet[Subject] = frozenset({
    Subject.ORDER_CREATED,
    Subject.ORDER_FILLED,
    Subject.ORDER_CANCELLED,
    Subject.ORDER_FAILED,
})

BALANCE_SUBJECTS: FrozenSet[Subject] = frozenset({
    Subject.BALANCE_UPDATED,
    Subject.BALANCE_LOCKED,
    Subject.BALANCE_UNLOCKED,
})


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SignalType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# =============================================================
# ENVELOPE
# =============================================================

class EventEnvelope(BaseModel):
    """Fields common to every event."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    event_id: str = Field(min_length=1, max_length=255)
    event_type: str = ""
    timestamp: Optional[datetime] = None
    user_id: UUID
    exchange_id: UUID
    source: str = ""
    version: str = ""

    @property
    def trading_id(self) -> UUID:
        return self.exchange_id


# =============================================================
# PAYLOADS
# =============================================================

class OrderEvent(EventEnvelope):
    sub_account_id: UUID
    order_id: str = Field(min_length=1)
    symbol: str = Field(min_length=1)
    side: OrderSide
    order_type: str = Field(alias="type", min_length=1)
    amount: Decimal
    price: Optional[Decimal] = None
    status: str = Field(min_length=1)
    message: str = ""
    metadata: Optional[Dict[str, Any]] = None


class BalanceEvent(EventEnvelope):
    sub_account_id: UUID
    symbol: str = Field(min_length=1)
    previous_balance: Decimal
    new_balance: Decimal
    amount: Decimal
    direction: Direction
    reason: str = Field(min_length=1)
    related_order_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ErrorEvent(EventEnvelope):
    sub_account_id: Optional[UUID] = None
    error_code: str = Field(min_length=1)
    error_message: str = Field(min_length=1)
    severity: Severity
    component: str = Field(min_length=1)
    stack_trace: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class SignalEvent(EventEnvelope):
    sub_account_id: Optional[UUID] = None
    signal_type: SignalType
    symbol: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)
    price: Optional[Decimal] = None
    strategy: str = Field(min_length=1)
    reasoning: str = ""
    metadata: Optional[Dict[str, Any]] = None


class HeartbeatEvent(EventEnvelope):
    status: HealthStatus
    component: str = Field(min_length=1)
    metrics: Optional[Dict[str, Any]] = None


PAYLOAD_MODELS: Dict[str, Type[EventEnvelope]] = {
    **{subject.value: OrderEvent for subject in ORDER_SUBJECTS},
    **{subject.value: BalanceEvent for subject in BALANCE_SUBJECTS},
    Subject.SYSTEM_ERROR.value: ErrorEvent,
    Subject.SIGNAL_GENERATED.value: SignalEvent,
    Subject.HEARTBEAT.value: HeartbeatEvent,
}


def subject_action(subject: str) -> str:
    """Last subject token: 'trading.orders.filled' -> 'filled'."""
    return subject.rsplit(".", 1)[-1]
