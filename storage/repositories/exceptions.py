"""
Repository Layer Exceptions.

============================================================
PURPOSE
============================================================
Defines repository-specific exceptions. Driver errors are caught
in BaseRepository and re-raised as one of these, carrying the
repository name and the failing operation.

============================================================
USAGE
============================================================
Repositories map unique-violation, foreign-key-violation and
row-not-found to the taxonomy below; everything else is wrapped
in QueryError with the original chained.

Getters return None on a miss. Only update/delete/get-or-raise
paths raise RecordNotFoundError.

============================================================
"""

from decimal import Decimal
from typing import Any, Optional

from core.exceptions import AccountStoreException, ErrorCode


class RepositoryException(AccountStoreException):
    """
    Base exception for all repository operations.

    Business layers can catch this for generic error handling.
    """

    def __init__(
        self,
        message: str,
        repository_name: str,
        operation: str,
        details: Optional[dict] = None
    ) -> None:
        self.repository_name = repository_name
        self.operation = operation
        self.details = details or {}
        super().__init__(
            f"[{repository_name}] {operation}: {message}",
            context=dict(self.details),
        )
        self.reason = message


# ============================================================
# NOT FOUND
# ============================================================

class RecordNotFoundError(RepositoryException):
    """
    Raised when a record expected to exist cannot be found.

    Used by update/delete/get-or-raise paths only.
    """

    code = ErrorCode.NOT_FOUND
    entity = "Record"

    def __init__(
        self,
        repository_name: str,
        record_id: Any,
        id_field: str = "id",
        operation: str = "get"
    ) -> None:
        super().__init__(
            message=f"{self.entity} with {id_field}={record_id} not found",
            repository_name=repository_name,
            operation=operation,
            details={id_field: str(record_id)}
        )
        self.record_id = record_id
        self.id_field = id_field


class UserNotFoundError(RecordNotFoundError):
    entity = "User"


class OAuthIdentityNotFoundError(RecordNotFoundError):
    entity = "OAuth identity"


class ExchangeBindingNotFoundError(RecordNotFoundError):
    entity = "Exchange binding"


class TradingNotFoundError(RecordNotFoundError):
    entity = "Trading"


class SubAccountNotFoundError(RecordNotFoundError):
    entity = "Sub-account"


class TransactionNotFoundError(RecordNotFoundError):
    entity = "Transaction"


class TradingLogNotFoundError(RecordNotFoundError):
    entity = "Trading log"


class EventRecordNotFoundError(RecordNotFoundError):
    entity = "Event record"


# ============================================================
# UNIQUENESS
# ============================================================

class DuplicateRecordError(RepositoryException):
    """
    Raised when a unique key already exists.

    Kind-specific subclasses name the entity.
    """

    code = ErrorCode.ALREADY_EXISTS

    def __init__(
        self,
        repository_name: str,
        constraint_field: str,
        value: Any,
        operation: str = "create"
    ) -> None:
        super().__init__(
            message=f"Duplicate record: {constraint_field}={value} already exists",
            repository_name=repository_name,
            operation=operation,
            details={"field": constraint_field, "value": str(value)}
        )
        self.constraint_field = constraint_field
        self.value = value


class UserAlreadyExistsError(DuplicateRecordError):
    """Username or email already taken by a live user."""


class ExchangeBindingNameExistsError(DuplicateRecordError):
    """Binding name already used by the same owner (or the public bucket)."""


class EventAlreadyRecordedError(DuplicateRecordError):
    """Event id already present in the ingest ledger."""


# ============================================================
# REFERENTIAL INTEGRITY
# ============================================================

class ReferenceNotFoundError(RepositoryException):
    """A referenced row does not exist (foreign key on write)."""

    code = ErrorCode.REFERENCE_NOT_FOUND

    def __init__(
        self,
        repository_name: str,
        operation: str,
        reference: str,
        reference_id: Any = None
    ) -> None:
        super().__init__(
            message=f"Referenced {reference} {reference_id} does not exist",
            repository_name=repository_name,
            operation=operation,
            details={"reference": reference, "reference_id": str(reference_id)}
        )
        self.reference = reference
        self.reference_id = reference_id


class InUseError(RepositoryException):
    """The row is still referenced by live dependents (foreign key on delete)."""

    code = ErrorCode.IN_USE

    def __init__(
        self,
        repository_name: str,
        record_id: Any,
        dependent: str,
        operation: str = "delete"
    ) -> None:
        super().__init__(
            message=f"Record {record_id} is still referenced by {dependent}",
            repository_name=repository_name,
            operation=operation,
            details={"id": str(record_id), "dependent": dependent}
        )
        self.record_id = record_id
        self.dependent = dependent


class AccessDeniedError(RepositoryException):
    """Cross-owner access attempt."""

    code = ErrorCode.ACCESS_DENIED

    def __init__(
        self,
        repository_name: str,
        operation: str,
        message: str,
        details: Optional[dict] = None
    ) -> None:
        super().__init__(
            message=message,
            repository_name=repository_name,
            operation=operation,
            details=details
        )


# ============================================================
# IMMUTABILITY
# ============================================================

class ImmutableFieldError(RepositoryException):
    """A generic update tried to write a protected field."""

    code = ErrorCode.IMMUTABLE_FIELD

    def __init__(
        self,
        repository_name: str,
        field_name: str,
        hint: str = ""
    ) -> None:
        message = f"Field '{field_name}' cannot be changed through update"
        if hint:
            message = f"{message}; {hint}"
        super().__init__(
            message=message,
            repository_name=repository_name,
            operation="update",
            details={"field": field_name}
        )
        self.field_name = field_name


class ImmutableRecordError(RepositoryException):
    """
    Raised when attempting to modify an append-only record.

    Transactions can never be updated or deleted.
    """

    code = ErrorCode.IMMUTABLE_RECORD

    def __init__(
        self,
        repository_name: str,
        record_id: Any,
        operation: str
    ) -> None:
        super().__init__(
            message=f"Record {record_id} is append-only; {operation} is not allowed",
            repository_name=repository_name,
            operation=operation,
            details={"id": str(record_id)}
        )
        self.record_id = record_id


# ============================================================
# BALANCE
# ============================================================

class HasBalanceError(RepositoryException):
    """Sub-account with a non-zero balance cannot be deleted."""

    code = ErrorCode.HAS_BALANCE

    def __init__(self, repository_name: str, record_id: Any, balance: Decimal) -> None:
        super().__init__(
            message=f"Sub-account {record_id} still holds a balance of {balance}",
            repository_name=repository_name,
            operation="delete",
            details={"id": str(record_id), "balance": str(balance)}
        )
        self.balance = balance


class BalanceArithmeticMismatchError(RepositoryException):
    """Supplied new balance does not equal old balance +/- amount."""

    code = ErrorCode.BALANCE_ARITHMETIC_MISMATCH

    def __init__(
        self,
        repository_name: str,
        old_balance: Decimal,
        amount: Decimal,
        direction: str,
        new_balance: Decimal,
        expected: Decimal
    ) -> None:
        super().__init__(
            message=(
                f"{old_balance} {direction} {amount} gives {expected}, "
                f"not {new_balance}"
            ),
            repository_name=repository_name,
            operation="apply_balance_change",
            details={
                "old_balance": str(old_balance),
                "amount": str(amount),
                "direction": direction,
                "new_balance": str(new_balance),
                "expected": str(expected),
            }
        )
        self.expected = expected


class NegativeBalanceError(RepositoryException):
    """Balance would drop below zero without overdraft permission."""

    code = ErrorCode.NEGATIVE_BALANCE

    def __init__(self, repository_name: str, sub_account_id: Any, new_balance: Decimal) -> None:
        super().__init__(
            message=f"Insufficient balance: sub-account {sub_account_id} would reach {new_balance}",
            repository_name=repository_name,
            operation="apply_balance_change",
            details={"sub_account_id": str(sub_account_id), "new_balance": str(new_balance)}
        )


# ============================================================
# INFRASTRUCTURE
# ============================================================

class TransientError(RepositoryException):
    """
    Raised when the database is temporarily unavailable.

    Connection loss, pool exhaustion, serialization failures and
    deadlocks; a retry may succeed.
    """

    code = ErrorCode.TRANSIENT
    retryable = True

    def __init__(
        self,
        repository_name: str,
        operation: str,
        original_error: str
    ) -> None:
        super().__init__(
            message=f"Transient database error: {original_error}",
            repository_name=repository_name,
            operation=operation,
            details={"original_error": original_error}
        )


class QueryError(RepositoryException):
    """Raised when a query fails for any unmapped reason."""

    def __init__(
        self,
        repository_name: str,
        operation: str,
        original_error: str
    ) -> None:
        super().__init__(
            message=f"Query failed: {original_error}",
            repository_name=repository_name,
            operation=operation,
            details={"original_error": original_error}
        )


class TransactionError(RepositoryException):
    """Raised when commit or rollback fails."""

    def __init__(
        self,
        repository_name: str,
        operation: str,
        phase: str,
        original_error: str
    ) -> None:
        super().__init__(
            message=f"Transaction {phase} failed: {original_error}",
            repository_name=repository_name,
            operation=operation,
            details={"phase": phase, "original_error": original_error}
        )
