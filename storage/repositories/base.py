"""
Base Repository Class.

============================================================
PURPOSE
============================================================
Provides common functionality for all repositories including:
- Session and cancellation handling
- Driver error mapping to the repository taxonomy
- Soft-delete aware lookups and pagination
- The guarded generic update path

============================================================
USAGE
============================================================
All domain repositories inherit from BaseRepository.
The session is injected via the constructor; the caller owns the
transaction boundary.

Every write is flushed inside a SAVEPOINT so a constraint
violation leaves the caller's transaction usable.

============================================================
"""

import logging
from abc import ABC
from typing import (
    Any,
    Dict,
    FrozenSet,
    Generic,
    List,
    NoReturn,
    Optional,
    Type,
    TypeVar,
)
from uuid import UUID

from sqlalchemy import func, select, text
from sqlalchemy.exc import (
    IntegrityError as SQLAlchemyIntegrityError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.orm import Session

from core.clock import ClockProtocol, SystemClock
from core.context import OperationContext
from core.exceptions import OperationCancelledError, ValidationError
from storage.models.base import Base
from storage.repositories.exceptions import (
    DuplicateRecordError,
    ImmutableFieldError,
    InUseError,
    QueryError,
    RecordNotFoundError,
    ReferenceNotFoundError,
    TransientError,
)
from storage.schemas import Page, PaginationParams


# Type variable for ORM model
T = TypeVar("T", bound=Base)

UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
QUERY_CANCELED = "57014"

ALWAYS_IMMUTABLE: FrozenSet[str] = frozenset({"id", "created_at", "updated_at", "deleted_at"})


def _sqlstate(error: SQLAlchemyError) -> Optional[str]:
    """SQLSTATE of the driver error, when the driver exposes one."""
    orig = getattr(error, "orig", None)
    return getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)


class BaseRepository(ABC, Generic[T]):
    """
    Abstract base class for all repositories.

    ============================================================
    RESPONSIBILITIES
    ============================================================
    - Wraps database errors in repository exceptions
    - Hides soft-deleted rows from every lookup
    - Rejects unknown and immutable fields on update
    - Checks the operation context before each statement

    ============================================================
    USAGE
    ============================================================
    class MyRepository(BaseRepository[MyModel]):
        not_found_error = MyModelNotFoundError

        def __init__(self, session: Session, **kwargs):
            super().__init__(session, MyModel, "MyRepository", **kwargs)

    ============================================================
    """

    not_found_error: Type[RecordNotFoundError] = RecordNotFoundError
    duplicate_error: Type[DuplicateRecordError] = DuplicateRecordError
    immutable_fields: FrozenSet[str] = frozenset()

    def __init__(
        self,
        session: Session,
        model_class: Type[T],
        repository_name: str,
        context: Optional[OperationContext] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        """
        Initialize the repository.

        Args:
            session: SQLAlchemy session (injected)
            model_class: The ORM model class this repository manages
            repository_name: Name for logging and error messages
            context: Deadline / cancellation token of the caller
            clock: Time source for timestamps written by the repository
        """
        self._session = session
        self._model_class = model_class
        self._repository_name = repository_name
        self._context = context or OperationContext.background()
        self._clock = clock or SystemClock()
        self._logger = logging.getLogger(f"repository.{repository_name}")

    @property
    def session(self) -> Session:
        return self._session

    @property
    def model_class(self) -> Type[T]:
        return self._model_class

    @property
    def repository_name(self) -> str:
        return self._repository_name

    @property
    def soft_deletes(self) -> bool:
        return hasattr(self._model_class, "deleted_at")

    # =========================================================
    # PUBLIC READS
    # =========================================================

    def get_by_id(self, record_id: UUID) -> Optional[T]:
        """
        Get a live entity by id.

        Returns:
            The entity, or None when missing or soft-deleted
        """
        return self._get_by_id(record_id)

    # =========================================================
    # PROTECTED HELPER METHODS
    # =========================================================

    def _check_cancelled(self, operation: str) -> None:
        """
        Abort before touching the database if the caller gave up.

        On PostgreSQL the remaining deadline is applied as a
        transaction-local statement timeout.
        """
        self._context.raise_if_cancelled(f"{self._repository_name}.{operation}")
        remaining = self._context.remaining()
        if remaining is None:
            return
        bind = self._session.get_bind()
        if bind.dialect.name == "postgresql":
            timeout_ms = max(int(remaining.total_seconds() * 1000), 1)
            self._session.execute(text(f"SET LOCAL statement_timeout = {timeout_ms}"))

    def _handle_db_error(
        self,
        error: Exception,
        operation: str,
        context: Optional[dict] = None,
        duplicate_field: str = "unknown",
        duplicate_value: Any = "unknown",
        reference: str = "record",
    ) -> NoReturn:
        """
        Handle database errors by wrapping in repository exceptions.

        Args:
            error: The original exception
            operation: Name of the operation that failed
            context: Additional context for logging
            duplicate_field: Field reported on a unique violation
            duplicate_value: Value reported on a unique violation
            reference: Referenced entity reported on a foreign key violation

        Raises:
            RepositoryException: Always raises appropriate exception
        """
        context = context or {}
        code = _sqlstate(error) if isinstance(error, SQLAlchemyError) else None
        message = str(getattr(error, "orig", error))

        if isinstance(error, SQLAlchemyIntegrityError):
            lowered = message.lower()
            self._logger.warning(f"Integrity violation in {operation}: {message}")

            if code == UNIQUE_VIOLATION or (code is None and ("unique" in lowered or "duplicate" in lowered)):
                raise self.duplicate_error(
                    repository_name=self._repository_name,
                    constraint_field=duplicate_field,
                    value=duplicate_value,
                    operation=operation,
                ) from error

            if code == FOREIGN_KEY_VIOLATION or (code is None and "foreign key" in lowered):
                if operation.startswith("delete"):
                    raise InUseError(
                        repository_name=self._repository_name,
                        record_id=context.get("id", "unknown"),
                        dependent="dependent records",
                        operation=operation,
                    ) from error
                raise ReferenceNotFoundError(
                    repository_name=self._repository_name,
                    operation=operation,
                    reference=reference,
                    reference_id=context.get("reference_id"),
                ) from error

            raise QueryError(
                repository_name=self._repository_name,
                operation=operation,
                original_error=message,
            ) from error

        self._logger.error(
            f"Database error in {operation}: {message}",
            extra={"context": context},
            exc_info=True
        )

        if isinstance(error, OperationalError):
            if code == QUERY_CANCELED:
                raise OperationCancelledError(
                    "statement cancelled by deadline",
                    context={"operation": f"{self._repository_name}.{operation}"},
                    cause=error,
                ) from error
            raise TransientError(
                repository_name=self._repository_name,
                operation=operation,
                original_error=message
            ) from error

        raise QueryError(
            repository_name=self._repository_name,
            operation=operation,
            original_error=message
        ) from error

    def _live(self, stmt: Any) -> Any:
        """Restrict a select to rows that are not soft-deleted."""
        if self.soft_deletes:
            return stmt.where(self._model_class.deleted_at.is_(None))
        return stmt

    def _validate(self, entity: T) -> None:
        entity.validate()

    def _resolve(self, model: Type[Base], record_id: Any, reference: str, operation: str) -> Any:
        """
        Load a live row this entity refers to.

        Raises:
            ReferenceNotFoundError: If the referenced row is missing or soft-deleted
        """
        stmt = select(model).where(model.id == record_id)
        if hasattr(model, "deleted_at"):
            stmt = stmt.where(model.deleted_at.is_(None))
        entity = self._execute_scalar(stmt, f"resolve_{reference}")
        if entity is None:
            raise ReferenceNotFoundError(self._repository_name, operation, reference, record_id)
        return entity

    def _add(
        self,
        entity: T,
        operation: str = "create",
        context: Optional[dict] = None,
        **error_kwargs: Any,
    ) -> T:
        """
        Validate, add and flush an entity inside a savepoint.

        Args:
            entity: The entity to add
            operation: Operation name for errors
            context: Extra context for error mapping
            **error_kwargs: Passed to _handle_db_error

        Returns:
            The added entity
        """
        entity.apply_defaults()
        self._validate(entity)
        self._check_cancelled(operation)
        try:
            with self._session.begin_nested():
                self._session.add(entity)
            self._logger.debug(f"Added entity: {entity!r}")
            return entity
        except SQLAlchemyError as e:
            self._handle_db_error(
                e, operation, dict(context or {}, entity=repr(entity)), **error_kwargs
            )

    def _flush(self, operation: str, **error_kwargs: Any) -> None:
        """Flush pending changes inside a savepoint."""
        self._check_cancelled(operation)
        try:
            with self._session.begin_nested():
                self._session.flush()
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation, **error_kwargs)

    def _get_by_id(
        self,
        record_id: UUID,
        for_update: bool = False,
        refresh: bool = False,
    ) -> Optional[T]:
        """
        Get a live entity by its primary key.

        Args:
            record_id: The primary key UUID
            for_update: Take a row lock (SELECT ... FOR UPDATE)
            refresh: Overwrite an already loaded instance with row values

        Returns:
            The entity or None if not found
        """
        stmt = self._live(select(self._model_class).where(self._model_class.id == record_id))
        if for_update:
            stmt = stmt.with_for_update()
        if for_update or refresh:
            stmt = stmt.execution_options(populate_existing=True)
        return self._execute_scalar(stmt, "get_by_id")

    def _get_by_id_or_raise(self, record_id: UUID, operation: str = "get", for_update: bool = False) -> T:
        """
        Get a live entity by its primary key, raising if not found.

        Raises:
            RecordNotFoundError: Entity-specific subclass
        """
        entity = self._get_by_id(record_id, for_update=for_update)
        if entity is None:
            raise self.not_found_error(
                repository_name=self._repository_name,
                record_id=record_id,
                operation=operation,
            )
        return entity

    def _count(self, stmt: Any, operation: str = "count") -> int:
        """Count rows produced by a select."""
        count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
        self._check_cancelled(operation)
        try:
            return self._session.execute(count_stmt).scalar() or 0
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation)

    def _execute_query(self, stmt: Any, operation: str = "query") -> List[T]:
        """Execute a select statement and return entities."""
        self._check_cancelled(operation)
        try:
            result = self._session.execute(stmt)
            return list(result.scalars().unique().all())
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation)

    def _execute_scalar(self, stmt: Any, operation: str = "query_scalar") -> Optional[T]:
        """Execute a select statement and return a single entity."""
        self._check_cancelled(operation)
        try:
            result = self._session.execute(stmt)
            return result.scalars().unique().one_or_none()
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation)

    def _paginate(
        self,
        stmt: Any,
        params: Optional[PaginationParams],
        operation: str = "list",
    ) -> Page[T]:
        """
        Run an ordered select as one page.

        Args:
            stmt: Select statement, already ordered
            params: Page request (defaults when None)

        Returns:
            Page with items and the total row count
        """
        params = params or PaginationParams()
        total = self._count(stmt, f"{operation}_count")
        items = self._execute_query(stmt.offset(params.offset).limit(params.limit), operation)
        return Page(items=items, total=total, page=params.page, limit=params.limit)

    def _apply_patch(
        self,
        entity: T,
        patch: Dict[str, Any],
        operation: str = "update",
    ) -> None:
        """
        Apply a partial update to an entity and validate it.

        Raises:
            ImmutableFieldError: Protected field in the patch
            ValidationError: Unknown field or invariant violation
        """
        columns = {attr.key for attr in self._model_class.__mapper__.column_attrs}
        for key in patch:
            if key in ALWAYS_IMMUTABLE or key in self.immutable_fields:
                raise ImmutableFieldError(self._repository_name, key, self._immutable_hint(key))
            if key not in columns:
                raise ValidationError(f"unknown field '{key}'", field=key)

        try:
            for key, value in patch.items():
                setattr(entity, key, value)
            self._validate(entity)
        except ValidationError:
            self._session.expire(entity)
            raise

    def _immutable_hint(self, field_name: str) -> str:
        return ""

    def _soft_delete(self, entity: T, operation: str = "delete") -> None:
        entity.deleted_at = self._clock.now()
        self._flush(operation, context={"id": str(entity.id)})
        self._logger.info(f"Soft-deleted {entity!r}")

    def _hard_delete(self, entity: T, operation: str = "delete") -> None:
        self._check_cancelled(operation)
        try:
            with self._session.begin_nested():
                self._session.delete(entity)
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation, {"id": str(entity.id)})
        self._logger.info(f"Deleted {entity!r}")

