"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines the exception taxonomy shared by every layer of the
account store.

- Every error carries a machine-readable ErrorCode tag
- Context dicts are safe to log (no key material, no tokens)
- http_status_for() maps the taxonomy to user-visible status codes

============================================================
EXCEPTION HIERARCHY
============================================================
AccountStoreException (base)
├── ConfigurationError
├── ValidationError
│   ├── InvalidExchangeError
│   ├── PrivateRequiresOwnerError
│   ├── PrivateRequiresCredentialsError
│   └── PublicMustNotCarryCredentialsError
├── SecretEngineError
│   ├── CorruptCiphertextError
│   └── BadKeyError
├── OperationCancelledError
└── RepositoryException (storage.repositories.exceptions)

============================================================
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError


# ============================================================
# ERROR CODES
# ============================================================

class ErrorCode(str, Enum):
    """Machine-readable taxonomy tags."""

    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    REFERENCE_NOT_FOUND = "reference_not_found"
    IN_USE = "in_use"
    ACCESS_DENIED = "access_denied"
    VALIDATION = "validation"
    IMMUTABLE_FIELD = "immutable_field"
    IMMUTABLE_RECORD = "immutable_record"
    BALANCE_ARITHMETIC_MISMATCH = "balance_arithmetic_mismatch"
    NEGATIVE_BALANCE = "negative_balance"
    HAS_BALANCE = "has_balance"
    CORRUPT_CIPHERTEXT = "corrupt_ciphertext"
    BAD_KEY = "bad_key"
    CONFIG = "config_error"
    CANCELLED = "cancelled"
    TRANSIENT = "transient"
    INTERNAL = "internal"


_HTTP_STATUS: Dict[ErrorCode, int] = {
    ErrorCode.VALIDATION: 400,
    ErrorCode.IMMUTABLE_FIELD: 400,
    ErrorCode.ACCESS_DENIED: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.REFERENCE_NOT_FOUND: 404,
    ErrorCode.ALREADY_EXISTS: 409,
    ErrorCode.IN_USE: 409,
    ErrorCode.IMMUTABLE_RECORD: 409,
    ErrorCode.BALANCE_ARITHMETIC_MISMATCH: 409,
    ErrorCode.NEGATIVE_BALANCE: 409,
    ErrorCode.HAS_BALANCE: 409,
    ErrorCode.CANCELLED: 499,
    ErrorCode.TRANSIENT: 503,
}


# ============================================================
# BASE EXCEPTION
# ============================================================

class AccountStoreException(Exception):
    """
    Base exception for all account store errors.

    All exceptions carry:
    - code: taxonomy tag for callers and HTTP mapping
    - context: debugging details, never secrets
    - retryable: whether a retry may succeed
    - timestamp: when the error occurred
    """

    code: ErrorCode = ErrorCode.INTERNAL
    retryable: bool = False

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging and API responses."""
        return {
            "type": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": {k: str(v) for k, v in self.context.items()},
            "timestamp": self.timestamp.isoformat(),
        }


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(AccountStoreException):
    """Missing or malformed startup configuration."""

    code = ErrorCode.CONFIG

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if config_key:
            context["config_key"] = config_key
        super().__init__(message, context=context, **kwargs)
        self.config_key = config_key


# ============================================================
# VALIDATION ERRORS
# ============================================================

class ValidationError(AccountStoreException):
    """Structural or semantic validation failure."""

    code = ErrorCode.VALIDATION

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if field:
            context["field"] = field
        super().__init__(message, context=context, **kwargs)
        self.field = field


class InvalidExchangeError(ValidationError):
    """Exchange type outside the configured set."""

    def __init__(self, exchange_type: str):
        super().__init__(
            f"Unsupported exchange type: {exchange_type!r}",
            field="exchange_type",
        )
        self.exchange_type = exchange_type


class PrivateRequiresOwnerError(ValidationError):
    """Private binding without an owning user."""

    def __init__(self):
        super().__init__("Private exchange binding requires an owner", field="user_id")


class PrivateRequiresCredentialsError(ValidationError):
    """Private binding without encrypted credentials."""

    def __init__(self):
        super().__init__(
            "Private exchange binding requires API credentials",
            field="encrypted_api_key",
        )


class PublicMustNotCarryCredentialsError(ValidationError):
    """Public binding that carries an owner or credentials."""

    def __init__(self, field: str = "encrypted_api_key"):
        super().__init__(
            "Public exchange binding must not carry an owner or credentials",
            field=field,
        )


# ============================================================
# SECRET ENGINE ERRORS
# ============================================================

class SecretEngineError(AccountStoreException):
    """Base for secret engine failures."""


class CorruptCiphertextError(SecretEngineError):
    """Ciphertext is truncated, malformed, or fails authentication."""

    code = ErrorCode.CORRUPT_CIPHERTEXT


class BadKeyError(SecretEngineError):
    """Ciphertext was produced under a different master key."""

    code = ErrorCode.BAD_KEY


# ============================================================
# CANCELLATION
# ============================================================

class OperationCancelledError(AccountStoreException):
    """The caller's deadline passed or the operation was cancelled."""

    code = ErrorCode.CANCELLED


# ============================================================
# HTTP MAPPING
# ============================================================

def http_status_for(exc: BaseException) -> int:
    """
    Map an exception to the status code the HTTP collaborator returns.

    Validation and access errors are 4xx, balance and state conflicts
    are 409, anything unrecognized is 500.
    """
    if isinstance(exc, PydanticValidationError):
        return 422
    if isinstance(exc, AccountStoreException):
        return _HTTP_STATUS.get(exc.code, 500)
    return 500


def error_code_for(exc: BaseException) -> str:
    """Machine-readable tag for an exception."""
    if isinstance(exc, PydanticValidationError):
        return ErrorCode.VALIDATION.value
    if isinstance(exc, AccountStoreException):
        return exc.code.value
    return ErrorCode.INTERNAL.value
