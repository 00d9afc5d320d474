"""
Base ORM Model and Mixins.

============================================================
PURPOSE
============================================================
Provides the declarative base, column types and mixins shared by
all ORM models of the account store.

============================================================
COMPONENTS
============================================================
- Base: SQLAlchemy declarative base for all models
- UTCDateTime: timezone-aware timestamps on every backend
- JSONMap: semi-structured attribute map (JSONB on PostgreSQL)
- TimestampMixin: created_at / updated_at
- SoftDeleteMixin: deleted_at marker for soft deletion
- quantize_amount: fixed-point normalization for balances

============================================================
"""

import uuid
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from typing import Any, Optional, Union

from sqlalchemy import JSON, DateTime, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from core.clock import ensure_utc, utc_now
from core.exceptions import ValidationError


AMOUNT_SCALE = Decimal("0.00000001")
AMOUNT_PRECISION = 20

AmountLike = Union[Decimal, int, float, str]


class UTCDateTime(TypeDecorator):
    """DateTime(timezone=True) that always returns aware UTC values."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        return ensure_utc(value)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        return ensure_utc(value)


JSONMap = MutableDict.as_mutable(JSON().with_variant(JSONB(), "postgresql"))


class Base(DeclarativeBase):
    """
    Declarative base for all ORM models.

    Every model has a UUID primary key named ``id``.
    """

    type_annotation_map = {
        datetime: UTCDateTime(),
        uuid.UUID: Uuid(),
    }

    def validate(self) -> None:
        """Raise the first violated invariant as a ValidationError."""

    def apply_defaults(self) -> None:
        """
        Populate unset columns with their Python-side defaults.

        Column defaults normally fire at flush time; repositories call
        this first so validate() sees the values that will be written.
        """
        mapper = self.__mapper__
        for column in self.__table__.columns:
            default = column.default
            if default is None:
                continue
            key = mapper.get_property_by_column(column).key
            if getattr(self, key) is not None:
                continue
            if default.is_scalar:
                setattr(self, key, default.arg)
            elif default.is_callable:
                setattr(self, key, default.arg(None))

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={getattr(self, 'id', None)}>"


class TimestampMixin:
    """
    Mixin providing standard timestamp columns.

    Values are set application-side so every backend stores full
    microsecond precision.
    """

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=utc_now,
        comment="Record creation timestamp (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
        comment="Last update timestamp (UTC)"
    )


class SoftDeleteMixin:
    """Mixin for entities that are soft-deleted (NULL = live)."""

    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        nullable=True,
        index=True,
        comment="Soft deletion timestamp (UTC)"
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


def new_id() -> uuid.UUID:
    return uuid.uuid4()


def quantize_amount(value: AmountLike, field: str = "amount") -> Decimal:
    """
    Normalize a numeric value to 8 fractional digits.

    Floats go through str() so 0.1 stays 0.1.

    Raises:
        ValidationError: If the value is not a finite number or does
            not fit NUMERIC(20, 8)
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric", field=field)
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field} must be numeric", field=field) from e
    if not number.is_finite():
        raise ValidationError(f"{field} must be finite", field=field)

    try:
        quantized = number.quantize(AMOUNT_SCALE, rounding=ROUND_HALF_EVEN)
    except InvalidOperation as e:
        raise ValidationError(f"{field} exceeds NUMERIC(20, 8)", field=field) from e
    if len(quantized.as_tuple().digits) > AMOUNT_PRECISION:
        raise ValidationError(f"{field} exceeds NUMERIC(20, 8)", field=field)
    return quantized
