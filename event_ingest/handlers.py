"""
Event Handlers.

One function per event family. Each receives the Repositories
bundle bound to the ledger transaction, the validated event and
its subject, and performs the repository calls the event implies.
"""

import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple
from uuid import UUID

from storage.models.enums import LogSource
from storage.models.journal import TradingActivityLog
from storage.unit_of_work import Repositories

from event_ingest.events import (
    BALANCE_SUBJECTS,
    ORDER_SUBJECTS,
    BalanceEvent,
    ErrorEvent,
    EventEnvelope,
    HeartbeatEvent,
    OrderEvent,
    SignalEvent,
    Subject,
    subject_action,
)


logger = logging.getLogger(__name__)

Handler = Callable[[Repositories, Any, str], Optional[UUID]]

BALANCE_LOG_TYPES = {
    Subject.BALANCE_UPDATED.value: "balance_update",
    Subject.BALANCE_LOCKED.value: "balance_locked",
    Subject.BALANCE_UNLOCKED.value: "balance_unlocked",
}


def handle_order(repos: Repositories, event: OrderEvent, subject: str) -> UUID:
    """Activity log order_<action> for an order lifecycle event."""
    trading_id, sub_account_id = _scope(repos, event, event.sub_account_id)
    info = {
        "order_id": event.order_id,
        "symbol": event.symbol,
        "side": event.side.value,
        "type": event.order_type,
        "amount": event.amount,
        "price": event.price,
        "status": event.status,
        "event_id": event.event_id,
        "original_metadata": event.metadata,
    }
    message = event.message or f"Order {event.order_id} {event.status}"
    log = _append_log(
        repos, event, trading_id, sub_account_id, f"order_{subject_action(subject)}", message, info
    )
    return log.id


def handle_balance(repos: Repositories, event: BalanceEvent, subject: str) -> UUID:
    """Balance Mutator call plus an activity log linked to the new transaction."""
    sub_account = repos.sub_accounts.get_owned(event.sub_account_id, event.user_id)

    transaction_id = repos.balance.apply_balance_change(
        sub_account.id,
        event.new_balance,
        event.amount,
        event.direction,
        event.reason,
        _jsonable(dict(event.metadata or {})),
    )

    info = {
        "symbol": event.symbol,
        "previous_balance": event.previous_balance,
        "new_balance": event.new_balance,
        "amount": event.amount,
        "direction": event.direction.value,
        "reason": event.reason,
        "related_order_id": event.related_order_id,
        "event_id": event.event_id,
        "original_metadata": event.metadata,
    }
    message = (
        f"Balance {subject_action(subject)}: {event.direction.value} {event.amount} {event.symbol} "
        f"(was {event.previous_balance}, now {event.new_balance})"
    )
    _append_log(
        repos,
        event,
        sub_account.trading_id,
        sub_account.id,
        BALANCE_LOG_TYPES[subject],
        message,
        info,
        transaction_id=transaction_id,
    )
    return transaction_id


def handle_error(repos: Repositories, event: ErrorEvent, subject: str) -> UUID:
    trading_id, sub_account_id = _scope(repos, event, event.sub_account_id)
    info = {
        "error_code": event.error_code,
        "severity": event.severity.value,
        "component": event.component,
        "stack_trace": event.stack_trace,
        "event_id": event.event_id,
        "original_metadata": event.metadata,
    }
    message = f"[{event.severity.value}] {event.component}: {event.error_message}"
    return _append_log(repos, event, trading_id, sub_account_id, "system_error", message, info).id


def handle_signal(repos: Repositories, event: SignalEvent, subject: str) -> UUID:
    trading_id, sub_account_id = _scope(repos, event, event.sub_account_id)
    info = {
        "signal_type": event.signal_type.value,
        "symbol": event.symbol,
        "confidence": event.confidence,
        "price": event.price,
        "strategy": event.strategy,
        "reasoning": event.reasoning,
        "event_id": event.event_id,
        "original_metadata": event.metadata,
    }
    message = (
        f"Trading signal: {event.signal_type.value} {event.symbol} "
        f"({event.confidence * 100:.1f}% confidence) - {event.reasoning}"
    )
    return _append_log(repos, event, trading_id, sub_account_id, "trading_signal", message, info).id


def handle_heartbeat(repos: Repositories, event: HeartbeatEvent, subject: str) -> None:
    # Ledger record only
    logger.debug(f"Heartbeat from {event.component}: {event.status.value}")
    return None


HANDLERS: Dict[str, Handler] = {
    **{subject.value: handle_order for subject in ORDER_SUBJECTS},
    **{subject.value: handle_balance for subject in BALANCE_SUBJECTS},
    Subject.SYSTEM_ERROR.value: handle_error,
    Subject.SIGNAL_GENERATED.value: handle_signal,
    Subject.HEARTBEAT.value: handle_heartbeat,
}


# =============================================================
# HELPERS
# =============================================================

def _scope(
    repos: Repositories,
    event: EventEnvelope,
    sub_account_id: Optional[UUID],
) -> Tuple[UUID, Optional[UUID]]:
    """
    Trading and sub-account a log is filed under.

    A named sub-account must belong to the event's user and decides
    the trading; otherwise the envelope's exchange_id does.
    """
    if sub_account_id is None:
        return event.trading_id, None
    sub_account = repos.sub_accounts.get_owned(sub_account_id, event.user_id)
    return sub_account.trading_id, sub_account.id


def _append_log(
    repos: Repositories,
    event: EventEnvelope,
    trading_id: UUID,
    sub_account_id: Optional[UUID],
    log_type: str,
    message: str,
    info: Dict[str, Any],
    transaction_id: Optional[UUID] = None,
) -> TradingActivityLog:
    log = TradingActivityLog(
        user_id=event.user_id,
        trading_id=trading_id,
        sub_account_id=sub_account_id,
        transaction_id=transaction_id,
        log_type=log_type,
        source=LogSource.BOT.value,
        message=message,
        info=_jsonable(info),
    )
    if event.timestamp is not None:
        log.timestamp = event.timestamp
    return repos.logs.create(log)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value
