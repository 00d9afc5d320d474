"""
User Domain ORM Models.

============================================================
MODELS
============================================================
- User: account holder, root of the ownership closure
- OAuthIdentity: provider identity linked to a user

============================================================
DATA LIFECYCLE
============================================================
- Users are soft-deleted; dependents are torn down explicitly
  by the caller (see storage.account_lifecycle)
- OAuth identities are soft-deleted on revoke or account deletion

============================================================
"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from core.exceptions import ValidationError
from storage.models.base import Base, JSONMap, SoftDeleteMixin, TimestampMixin, new_id


USERNAME_MAX_LENGTH = 50
EMAIL_MAX_LENGTH = 255


class User(Base, TimestampMixin, SoftDeleteMixin):
    """
    Account holder.

    username and email are unique among live users and compared
    case-sensitively.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=new_id,
        comment="User identifier"
    )

    username: Mapped[str] = mapped_column(
        String(USERNAME_MAX_LENGTH),
        nullable=False,
        comment="Unique login name (case-sensitive)"
    )

    email: Mapped[str] = mapped_column(
        String(EMAIL_MAX_LENGTH),
        nullable=False,
        comment="Unique e-mail address (case-sensitive)"
    )

    avatar: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Avatar URI"
    )

    settings: Mapped[Dict[str, Any]] = mapped_column(
        JSONMap,
        nullable=False,
        default=dict,
        comment="User preferences"
    )

    info: Mapped[Dict[str, Any]] = mapped_column(
        JSONMap,
        nullable=False,
        default=dict,
        comment="Free-form attributes"
    )

    __table_args__ = (
        Index(
            "uq_users_username_live",
            "username",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        Index(
            "uq_users_email_live",
            "email",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )

    def validate(self) -> None:
        if not self.username or not self.username.strip():
            raise ValidationError("username is required", field="username")
        if len(self.username) > USERNAME_MAX_LENGTH:
            raise ValidationError(
                f"username must be at most {USERNAME_MAX_LENGTH} characters",
                field="username",
            )
        if not self.email or "@" not in self.email:
            raise ValidationError("a valid email is required", field="email")
        if len(self.email) > EMAIL_MAX_LENGTH:
            raise ValidationError(
                f"email must be at most {EMAIL_MAX_LENGTH} characters",
                field="email",
            )
        if self.settings is not None and not isinstance(self.settings, dict):
            raise ValidationError("settings must be a JSON object", field="settings")
        if self.info is not None and not isinstance(self.info, dict):
            raise ValidationError("info must be a JSON object", field="info")


class OAuthIdentity(Base, TimestampMixin, SoftDeleteMixin):
    """
    OAuth provider identity.

    Several identities per (user, provider) are allowed; callers
    wanting upsert semantics do get-then-create/update.
    """

    __tablename__ = "oauth_tokens"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=new_id,
        comment="Identity identifier"
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Owning user"
    )

    provider: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        index=True,
        comment="Provider name: google, wechat, ..."
    )

    provider_user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="User id on the provider side"
    )

    access_token: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Provider access token (secret)"
    )

    refresh_token: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Provider refresh token (secret)"
    )

    expires_at: Mapped[Optional[datetime]] = mapped_column(
        nullable=True,
        comment="Access token expiry"
    )

    info: Mapped[Dict[str, Any]] = mapped_column(
        JSONMap,
        nullable=False,
        default=dict,
        comment="Provider profile attributes"
    )

    __table_args__ = (
        Index("ix_oauth_tokens_provider_user", "provider", "provider_user_id"),
    )

    def validate(self) -> None:
        if self.user_id is None:
            raise ValidationError("user_id is required", field="user_id")
        if not self.provider:
            raise ValidationError("provider is required", field="provider")
        if len(self.provider) > 20:
            raise ValidationError("provider must be at most 20 characters", field="provider")
        if not self.provider_user_id:
            raise ValidationError("provider_user_id is required", field="provider_user_id")
        if not self.access_token:
            raise ValidationError("access_token is required", field="access_token")

    def __repr__(self) -> str:
        return f"<OAuthIdentity id={self.id} provider={self.provider}>"
