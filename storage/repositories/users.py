"""
User Repositories.

============================================================
REPOSITORIES
============================================================
- UserRepository: users, unique username/email among live rows
- OAuthIdentityRepository: provider identities linked to users

============================================================
LOOKUP SEMANTICS
============================================================
- username and email lookups are exact and case-sensitive
- Soft-deleted users are invisible and free their username/email

============================================================
"""

from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update as sql_update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storage.models.user import OAuthIdentity, User
from storage.repositories.base import BaseRepository
from storage.repositories.exceptions import (
    OAuthIdentityNotFoundError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from storage.schemas import (
    CreateOAuthIdentityRequest,
    CreateUserRequest,
    MAX_LIMIT,
    Page,
    PaginationParams,
)


class UserRepository(BaseRepository[User]):
    """
    Repository for users.

    Users are soft-deleted. Dependents are NOT torn down here; see
    storage.account_lifecycle.delete_user_account.
    """

    not_found_error = UserNotFoundError
    duplicate_error = UserAlreadyExistsError

    def __init__(self, session: Session, **kwargs: Any) -> None:
        super().__init__(session, User, "UserRepository", **kwargs)

    # =========================================================
    # CREATE
    # =========================================================

    def create(self, user: User) -> User:
        """
        Create a user.

        Raises:
            ValidationError: If the user is invalid
            UserAlreadyExistsError: If username or email is taken
        """
        user.apply_defaults()
        self._validate(user)
        self._ensure_unique(user.username, user.email)
        self._add(user, duplicate_field="username/email", duplicate_value=user.username)
        self._logger.info(f"Created user {user.id}")
        return user

    def create_from_request(self, request: CreateUserRequest) -> User:
        return self.create(User(**request.model_dump()))

    # =========================================================
    # READ
    # =========================================================

    def get_by_email(self, email: str) -> Optional[User]:
        return self._execute_scalar(
            self._live(select(User).where(User.email == email)),
            "get_by_email",
        )

    def get_by_username(self, username: str) -> Optional[User]:
        return self._execute_scalar(
            self._live(select(User).where(User.username == username)),
            "get_by_username",
        )

    def get_or_raise(self, user_id: UUID) -> User:
        return self._get_by_id_or_raise(user_id)

    def list(self, limit: int = 10, offset: int = 0) -> Tuple[List[User], int]:
        """
        List live users, newest first.

        Args:
            limit: Page size (clamped to 1..100)
            offset: Rows to skip

        Returns:
            (users, total live users)
        """
        limit = min(limit if limit > 0 else 10, MAX_LIMIT)
        offset = max(offset, 0)
        stmt = self._ordered()
        total = self._count(stmt, "list_count")
        users = self._execute_query(stmt.offset(offset).limit(limit), "list")
        return users, total

    def list_page(self, params: Optional[PaginationParams] = None) -> Page[User]:
        return self._paginate(self._ordered(), params, "list_page")

    def _ordered(self):
        return self._live(select(User)).order_by(User.created_at.desc(), User.id)

    # =========================================================
    # UPDATE / DELETE
    # =========================================================

    def update(self, user_id: UUID, patch: Dict[str, Any]) -> User:
        """
        Partially update a user.

        Raises:
            UserNotFoundError: No live user with this id
            UserAlreadyExistsError: Rename onto a taken username/email
        """
        user = self._get_by_id_or_raise(user_id, "update")
        username = patch.get("username")
        email = patch.get("email")
        if (username and username != user.username) or (email and email != user.email):
            self._ensure_unique(
                username if username != user.username else None,
                email if email != user.email else None,
                operation="update",
            )
        self._apply_patch(user, patch)
        self._flush("update", duplicate_field="username/email", duplicate_value=username or email)
        return user

    def delete(self, user_id: UUID) -> None:
        user = self._get_by_id_or_raise(user_id, "delete")
        self._soft_delete(user)

    def _ensure_unique(
        self,
        username: Optional[str],
        email: Optional[str],
        operation: str = "create",
    ) -> None:
        if username and self.get_by_username(username) is not None:
            raise UserAlreadyExistsError(self._repository_name, "username", username, operation)
        if email and self.get_by_email(email) is not None:
            raise UserAlreadyExistsError(self._repository_name, "email", email, operation)


class OAuthIdentityRepository(BaseRepository[OAuthIdentity]):
    """
    Repository for OAuth identities.

    Multiple identities per (user, provider) are allowed.
    """

    not_found_error = OAuthIdentityNotFoundError
    immutable_fields = frozenset({"user_id"})

    def __init__(self, session: Session, **kwargs: Any) -> None:
        super().__init__(session, OAuthIdentity, "OAuthIdentityRepository", **kwargs)

    def create(self, identity: OAuthIdentity) -> OAuthIdentity:
        """
        Create an identity for an existing user.

        Raises:
            ReferenceNotFoundError: If the user does not exist
        """
        identity.apply_defaults()
        self._validate(identity)
        self._resolve(User, identity.user_id, "user", "create")
        return self._add(
            identity,
            context={"reference_id": identity.user_id},
            reference="user",
        )

    def create_from_request(self, request: CreateOAuthIdentityRequest) -> OAuthIdentity:
        return self.create(OAuthIdentity(**request.model_dump()))

    def get_by_user_and_provider(self, user_id: UUID, provider: str) -> Optional[OAuthIdentity]:
        """Most recently created identity of the user for this provider."""
        stmt = self._live(
            select(OAuthIdentity).where(
                OAuthIdentity.user_id == user_id,
                OAuthIdentity.provider == provider,
            )
        ).order_by(OAuthIdentity.created_at.desc()).limit(1)
        return self._execute_scalar(stmt, "get_by_user_and_provider")

    def get_by_provider_user_id(self, provider: str, provider_user_id: str) -> Optional[OAuthIdentity]:
        stmt = self._live(
            select(OAuthIdentity).where(
                OAuthIdentity.provider == provider,
                OAuthIdentity.provider_user_id == provider_user_id,
            )
        ).order_by(OAuthIdentity.created_at.desc()).limit(1)
        return self._execute_scalar(stmt, "get_by_provider_user_id")

    def get_by_user(self, user_id: UUID) -> List[OAuthIdentity]:
        stmt = self._live(
            select(OAuthIdentity).where(OAuthIdentity.user_id == user_id)
        ).order_by(OAuthIdentity.created_at.desc())
        return self._execute_query(stmt, "get_by_user")

    def update(self, identity_id: UUID, patch: Dict[str, Any]) -> OAuthIdentity:
        """Refresh tokens or profile info."""
        identity = self._get_by_id_or_raise(identity_id, "update")
        self._apply_patch(identity, patch)
        self._flush("update")
        return identity

    def delete(self, identity_id: UUID) -> None:
        identity = self._get_by_id_or_raise(identity_id, "delete")
        self._soft_delete(identity)

    def delete_by_user(self, user_id: UUID) -> int:
        """
        Remove every identity of a user.

        Returns:
            Number of identities removed
        """
        self._check_cancelled("delete_by_user")
        stmt = (
            sql_update(OAuthIdentity)
            .where(OAuthIdentity.user_id == user_id, OAuthIdentity.deleted_at.is_(None))
            .values(deleted_at=self._clock.now(), updated_at=self._clock.now())
            .execution_options(synchronize_session="fetch")
        )
        try:
            result = self._session.execute(stmt)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "delete_by_user", {"user_id": str(user_id)})
        self._logger.info(f"Removed {result.rowcount} OAuth identities of user {user_id}")
        return result.rowcount

