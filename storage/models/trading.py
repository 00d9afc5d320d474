"""
Trading Domain ORM Models.

============================================================
MODELS
============================================================
- Trading: user-owned configuration bound to one exchange binding
- SubAccount: symbol-scoped balance sheet under one trading

============================================================
DATA LIFECYCLE
============================================================
- Both are soft-deleted
- SubAccount.balance changes only through the Balance Mutator
- A sub-account may be deleted only when its balance is zero

============================================================
"""

import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.exceptions import ValidationError
from storage.models.base import (
    Base,
    JSONMap,
    SoftDeleteMixin,
    TimestampMixin,
    new_id,
    quantize_amount,
)
from storage.models.enums import TradingStatus, TradingType, enum_values
from storage.models.exchange import ExchangeBinding


NAME_MAX_LENGTH = 100
SYMBOL_MAX_LENGTH = 20


class Trading(Base, TimestampMixin, SoftDeleteMixin):
    """
    Trading configuration.

    The bound binding must resolve and, when private, belong to the
    same user. Retrieval eager-loads the binding.
    """

    __tablename__ = "tradings"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=new_id,
        comment="Trading identifier"
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Owning user"
    )

    exchange_binding_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("exchanges.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Bound exchange binding"
    )

    name: Mapped[str] = mapped_column(
        String(NAME_MAX_LENGTH),
        nullable=False,
        comment="Display name"
    )

    trading_type: Mapped[str] = mapped_column(
        "type",
        String(50),
        nullable=False,
        index=True,
        comment="Type: real, virtual, backtest"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=TradingStatus.ACTIVE.value,
        index=True,
        comment="Status: active, inactive, paused"
    )

    info: Mapped[Dict[str, Any]] = mapped_column(
        JSONMap,
        nullable=False,
        default=dict,
        comment="Free-form attributes"
    )

    exchange_binding: Mapped[ExchangeBinding] = relationship(lazy="joined", innerjoin=True)

    def validate(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationError("name is required", field="name")
        if len(self.name) > NAME_MAX_LENGTH:
            raise ValidationError(
                f"name must be at most {NAME_MAX_LENGTH} characters",
                field="name",
            )
        if self.user_id is None:
            raise ValidationError("user_id is required", field="user_id")
        if self.exchange_binding_id is None:
            raise ValidationError("exchange_binding_id is required", field="exchange_binding_id")
        if self.trading_type not in enum_values(TradingType):
            raise ValidationError(
                f"type must be one of {enum_values(TradingType)}",
                field="trading_type",
            )
        if self.status not in enum_values(TradingStatus):
            raise ValidationError(
                f"status must be one of {enum_values(TradingStatus)}",
                field="status",
            )
        if self.info is not None and not isinstance(self.info, dict):
            raise ValidationError("info must be a JSON object", field="info")

    def __repr__(self) -> str:
        return f"<Trading id={self.id} name={self.name!r} type={self.trading_type}>"


class SubAccount(Base, TimestampMixin, SoftDeleteMixin):
    """
    Per-symbol balance sheet.

    balance is NUMERIC(20, 8) and read back as Decimal.
    """

    __tablename__ = "sub_accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=new_id,
        comment="Sub-account identifier"
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Owning user"
    )

    trading_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tradings.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Parent trading"
    )

    name: Mapped[str] = mapped_column(
        String(NAME_MAX_LENGTH),
        nullable=False,
        comment="Display name"
    )

    symbol: Mapped[str] = mapped_column(
        String(SYMBOL_MAX_LENGTH),
        nullable=False,
        index=True,
        comment="Asset symbol, e.g. BTC"
    )

    balance: Mapped[Decimal] = mapped_column(
        Numeric(20, 8),
        nullable=False,
        default=Decimal("0"),
        comment="Current balance"
    )

    info: Mapped[Dict[str, Any]] = mapped_column(
        JSONMap,
        nullable=False,
        default=dict,
        comment="Free-form attributes"
    )

    trading: Mapped[Optional[Trading]] = relationship(lazy="select")

    __table_args__ = (
        Index("ix_sub_accounts_user_symbol", "user_id", "symbol"),
    )

    @property
    def current_balance(self) -> Decimal:
        return quantize_amount(self.balance or 0, field="balance")

    def validate(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationError("name is required", field="name")
        if len(self.name) > NAME_MAX_LENGTH:
            raise ValidationError(
                f"name must be at most {NAME_MAX_LENGTH} characters",
                field="name",
            )
        if not self.symbol or not self.symbol.strip():
            raise ValidationError("symbol is required", field="symbol")
        if len(self.symbol) > SYMBOL_MAX_LENGTH:
            raise ValidationError(
                f"symbol must be at most {SYMBOL_MAX_LENGTH} characters",
                field="symbol",
            )
        if self.user_id is None:
            raise ValidationError("user_id is required", field="user_id")
        if self.trading_id is None:
            raise ValidationError("trading_id is required", field="trading_id")
        if self.balance is not None:
            quantize_amount(self.balance, field="balance")
        if self.info is not None and not isinstance(self.info, dict):
            raise ValidationError("info must be a JSON object", field="info")

    def __repr__(self) -> str:
        return f"<SubAccount id={self.id} symbol={self.symbol} balance={self.balance}>"
