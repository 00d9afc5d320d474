"""
Exchange Binding ORM Model.

============================================================
PURPOSE
============================================================
A named reference to an external exchange account. Private
bindings belong to one user and carry encrypted credentials;
public bindings are shared, ownerless and credential-free.

============================================================
SECURITY
============================================================
- encrypted_api_key / encrypted_api_secret hold Secret Engine
  ciphertext, never plaintext
- api_key_hash is the keyed lookup hash of the plaintext key
- The three credential columns change only through rotation

============================================================
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from sqlalchemy import ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from core.config import DEFAULT_SUPPORTED_EXCHANGES
from core.exceptions import (
    InvalidExchangeError,
    PrivateRequiresCredentialsError,
    PrivateRequiresOwnerError,
    PublicMustNotCarryCredentialsError,
    ValidationError,
)
from storage.models.base import Base, JSONMap, SoftDeleteMixin, TimestampMixin, new_id
from storage.models.enums import BindingStatus, BindingVisibility, enum_values


BINDING_NAME_MAX_LENGTH = 100

CREDENTIAL_FIELDS = frozenset({"encrypted_api_key", "encrypted_api_secret", "api_key_hash"})


class ExchangeBinding(Base, TimestampMixin, SoftDeleteMixin):
    """
    Exchange binding.

    ============================================================
    INVARIANTS
    ============================================================
    - private: owner present, both ciphertexts and the hash present
    - public: no owner, no ciphertexts, no hash
    - (owner, name) unique among live rows; ownerless names form
      their own bucket

    ============================================================
    """

    __tablename__ = "exchanges"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=new_id,
        comment="Binding identifier"
    )

    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
        comment="Owning user (NULL for public bindings)"
    )

    name: Mapped[str] = mapped_column(
        String(BINDING_NAME_MAX_LENGTH),
        nullable=False,
        comment="Display name, unique per owner"
    )

    exchange_type: Mapped[str] = mapped_column(
        "exchange",
        String(50),
        nullable=False,
        index=True,
        comment="Exchange: binance, kraken, gate, coinbase, virtual"
    )

    visibility: Mapped[str] = mapped_column(
        "type",
        String(20),
        nullable=False,
        index=True,
        comment="Visibility: private, public"
    )

    encrypted_api_key: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Encrypted API key"
    )

    encrypted_api_secret: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Encrypted API secret"
    )

    api_key_hash: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
        comment="Keyed hash of the plaintext API key"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=BindingStatus.ACTIVE.value,
        index=True,
        comment="Status: active, inactive, error"
    )

    last_used_at: Mapped[Optional[datetime]] = mapped_column(
        nullable=True,
        comment="Last successful use of the credentials"
    )

    failure_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Consecutive failures since last reset"
    )

    last_failure_at: Mapped[Optional[datetime]] = mapped_column(
        nullable=True,
        comment="Time of the most recent failure"
    )

    security_settings: Mapped[Dict[str, Any]] = mapped_column(
        JSONMap,
        nullable=False,
        default=dict,
        comment="Security policy (see storage.schemas.SecuritySettings)"
    )

    info: Mapped[Dict[str, Any]] = mapped_column(
        JSONMap,
        nullable=False,
        default=dict,
        comment="Free-form attributes"
    )

    __table_args__ = (
        Index(
            "uq_exchanges_owner_name_live",
            "user_id",
            "name",
            unique=True,
            postgresql_where=text("deleted_at IS NULL AND user_id IS NOT NULL"),
            sqlite_where=text("deleted_at IS NULL AND user_id IS NOT NULL"),
        ),
        Index(
            "uq_exchanges_public_name_live",
            "name",
            unique=True,
            postgresql_where=text("deleted_at IS NULL AND user_id IS NULL"),
            sqlite_where=text("deleted_at IS NULL AND user_id IS NULL"),
        ),
    )

    @property
    def is_private(self) -> bool:
        return self.visibility == BindingVisibility.PRIVATE.value

    @property
    def is_public(self) -> bool:
        return self.visibility == BindingVisibility.PUBLIC.value

    @property
    def is_active(self) -> bool:
        return self.status == BindingStatus.ACTIVE.value

    @property
    def has_credentials(self) -> bool:
        return bool(self.encrypted_api_key) and bool(self.encrypted_api_secret)

    def validate(self, supported_exchanges: Optional[Iterable[str]] = None) -> None:
        """
        Check binding invariants.

        Args:
            supported_exchanges: Configured exchange set (defaults to
                the built-in list)

        Raises:
            ValidationError: First violated invariant
        """
        if not self.name or not self.name.strip():
            raise ValidationError("name is required", field="name")
        if len(self.name) > BINDING_NAME_MAX_LENGTH:
            raise ValidationError(
                f"name must be at most {BINDING_NAME_MAX_LENGTH} characters",
                field="name",
            )

        allowed = tuple(supported_exchanges or DEFAULT_SUPPORTED_EXCHANGES)
        if self.exchange_type not in allowed:
            raise InvalidExchangeError(self.exchange_type)

        if self.visibility not in enum_values(BindingVisibility):
            raise ValidationError(
                f"visibility must be one of {enum_values(BindingVisibility)}",
                field="visibility",
            )
        if self.status not in enum_values(BindingStatus):
            raise ValidationError(
                f"status must be one of {enum_values(BindingStatus)}",
                field="status",
            )

        if self.is_private:
            if self.user_id is None:
                raise PrivateRequiresOwnerError()
            if not self.has_credentials or not self.api_key_hash:
                raise PrivateRequiresCredentialsError()
        else:
            if self.user_id is not None:
                raise PublicMustNotCarryCredentialsError(field="user_id")
            if self.encrypted_api_key or self.encrypted_api_secret or self.api_key_hash:
                raise PublicMustNotCarryCredentialsError()

        if self.failure_count is not None and self.failure_count < 0:
            raise ValidationError("failure_count must not be negative", field="failure_count")
        if self.security_settings is not None and not isinstance(self.security_settings, dict):
            raise ValidationError("security_settings must be a JSON object", field="security_settings")
        if self.info is not None and not isinstance(self.info, dict):
            raise ValidationError("info must be a JSON object", field="info")

    def __repr__(self) -> str:
        return (
            f"<ExchangeBinding id={self.id} name={self.name!r} "
            f"exchange={self.exchange_type} visibility={self.visibility}>"
        )
