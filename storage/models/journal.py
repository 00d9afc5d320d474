"""
Journal ORM Models (time-series).

============================================================
PURPOSE
============================================================
Append-only records of what happened to a sub-account.

============================================================
DATA LIFECYCLE
============================================================
- Transaction: written only by the Balance Mutator, never updated
  or deleted
- TradingActivityLog: append-only, hard-deleted by housekeeping
- Neither carries a soft-delete marker

============================================================
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import CheckConstraint, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from core.clock import utc_now
from core.exceptions import ValidationError
from storage.models.base import Base, JSONMap, TimestampMixin, new_id, quantize_amount
from storage.models.enums import Direction, LogSource, enum_values


REASON_MAX_LENGTH = 50
LOG_TYPE_MAX_LENGTH = 50


class Transaction(Base, TimestampMixin):
    """
    Immutable balance journal entry.

    closing_balance is the sub-account balance right after this
    entry was applied.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=new_id,
        comment="Transaction identifier"
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Owning user"
    )

    trading_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tradings.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Parent trading"
    )

    sub_account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("sub_accounts.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Parent sub-account"
    )

    timestamp: Mapped[datetime] = mapped_column(
        nullable=False,
        default=utc_now,
        comment="Application instant"
    )

    direction: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        index=True,
        comment="Direction: debit, credit"
    )

    reason: Mapped[str] = mapped_column(
        String(REASON_MAX_LENGTH),
        nullable=False,
        index=True,
        comment="Free-form reason tag"
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        nullable=False,
        comment="Absolute amount (> 0)"
    )

    closing_balance: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        nullable=False,
        comment="Balance after application"
    )

    price: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(20, 8),
        nullable=True,
        comment="Execution price, if any"
    )

    quote_symbol: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="Quote asset for price"
    )

    info: Mapped[Dict[str, Any]] = mapped_column(
        JSONMap,
        nullable=False,
        default=dict,
        comment="Caller attributes merged with previous_balance"
    )

    __table_args__ = (
        CheckConstraint("direction IN ('debit', 'credit')", name="ck_transactions_direction"),
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )

    def validate(self) -> None:
        for field in ("user_id", "trading_id", "sub_account_id"):
            if getattr(self, field) is None:
                raise ValidationError(f"{field} is required", field=field)
        if self.direction not in enum_values(Direction):
            raise ValidationError(
                f"direction must be one of {enum_values(Direction)}",
                field="direction",
            )
        if not self.reason or not self.reason.strip():
            raise ValidationError("reason is required", field="reason")
        if len(self.reason) > REASON_MAX_LENGTH:
            raise ValidationError(
                f"reason must be at most {REASON_MAX_LENGTH} characters",
                field="reason",
            )
        if self.amount is None or quantize_amount(self.amount) <= 0:
            raise ValidationError("amount must be positive", field="amount")
        if self.closing_balance is None:
            raise ValidationError("closing_balance is required", field="closing_balance")
        quantize_amount(self.closing_balance, field="closing_balance")
        if self.price is not None:
            quantize_amount(self.price, field="price")

    @property
    def signed_amount(self) -> Decimal:
        """Amount with the sign of its direction (credit positive)."""
        amount = quantize_amount(self.amount)
        return amount if self.direction == Direction.CREDIT.value else -amount

    @property
    def previous_balance(self) -> Decimal:
        return quantize_amount(self.closing_balance) - self.signed_amount

    def __repr__(self) -> str:
        return (
            f"<Transaction id={self.id} {self.direction} {self.amount} "
            f"closing={self.closing_balance}>"
        )


class TradingActivityLog(Base, TimestampMixin):
    """
    Trading activity log entry.

    Optionally linked to a sub-account and to the transaction it
    describes.
    """

    __tablename__ = "trading_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=new_id,
        comment="Log entry identifier"
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Owning user"
    )

    trading_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tradings.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Parent trading"
    )

    sub_account_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("sub_accounts.id", ondelete="RESTRICT"),
        nullable=True,
        comment="Related sub-account"
    )

    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("transactions.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
        comment="Related transaction"
    )

    timestamp: Mapped[datetime] = mapped_column(
        nullable=False,
        default=utc_now,
        comment="Event instant"
    )

    log_type: Mapped[str] = mapped_column(
        "type",
        String(LOG_TYPE_MAX_LENGTH),
        nullable=False,
        index=True,
        comment="Type tag, e.g. order_filled, balance_update"
    )

    source: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
        comment="Source: manual, bot"
    )

    message: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Human-readable message"
    )

    info: Mapped[Dict[str, Any]] = mapped_column(
        JSONMap,
        nullable=False,
        default=dict,
        comment="Structured details"
    )

    __table_args__ = (
        CheckConstraint("source IN ('manual', 'bot')", name="ck_trading_logs_source"),
    )

    def validate(self) -> None:
        for field in ("user_id", "trading_id"):
            if getattr(self, field) is None:
                raise ValidationError(f"{field} is required", field=field)
        if not self.log_type or not self.log_type.strip():
            raise ValidationError("type is required", field="log_type")
        if len(self.log_type) > LOG_TYPE_MAX_LENGTH:
            raise ValidationError(
                f"type must be at most {LOG_TYPE_MAX_LENGTH} characters",
                field="log_type",
            )
        if self.source not in enum_values(LogSource):
            raise ValidationError(
                f"source must be one of {enum_values(LogSource)}",
                field="source",
            )
        if not self.message:
            raise ValidationError("message is required", field="message")
        if self.info is not None and not isinstance(self.info, dict):
            raise ValidationError("info must be a JSON object", field="info")

    def __repr__(self) -> str:
        return f"<TradingActivityLog id={self.id} type={self.log_type}>"


# Descending time-series indices
Index("ix_transactions_user_timestamp", Transaction.user_id, Transaction.timestamp.desc())
Index("ix_transactions_trading_timestamp", Transaction.trading_id, Transaction.timestamp.desc())
Index("ix_transactions_sub_account_timestamp", Transaction.sub_account_id, Transaction.timestamp.desc())
Index("ix_trading_logs_user_timestamp", TradingActivityLog.user_id, TradingActivityLog.timestamp.desc())
Index("ix_trading_logs_trading_timestamp", TradingActivityLog.trading_id, TradingActivityLog.timestamp.desc())
Index(
    "ix_trading_logs_sub_account_timestamp",
    TradingActivityLog.sub_account_id,
    TradingActivityLog.timestamp.desc(),
)
