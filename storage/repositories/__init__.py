"""
Repository Layer Package.

============================================================
PURPOSE
============================================================
The Repository Layer is the ONLY gateway to persistent storage.
All database access MUST go through repository classes.

============================================================
ARCHITECTURE PRINCIPLES
============================================================
1. Session Injection: Sessions are injected, not created internally
2. Explicit Methods: No generic 'execute', clear method names
3. Immutability: Transactions and event records are append-only
4. Balances change only through storage.balance.BalanceMutator
5. Exception Handling: All DB errors wrapped in repository exceptions

============================================================
REPOSITORY GROUPS
============================================================

IDENTITY
--------
- UserRepository: Platform users
- OAuthIdentityRepository: Linked OAuth provider identities

EXCHANGE ACCESS
---------------
- ExchangeBindingRepository: Public and private exchange bindings

TRADING
-------
- TradingRepository: Trading configurations
- SubAccountRepository: Per-asset balances (read and metadata only)

JOURNAL
-------
- TransactionRepository: Append-only balance journal
- TradingActivityLogRepository: Human-readable activity trail

EVENT INGEST
------------
- EventProcessingRepository: Idempotency ledger rows

============================================================
USAGE
============================================================
    with unit_of_work(session_factory, settings=settings) as repos:
        user = repos.users.create_from_request(request)

============================================================
"""

from storage.repositories.base import BaseRepository
from storage.repositories.event_processing import EventProcessingRepository
from storage.repositories.exceptions import (
    AccessDeniedError,
    BalanceArithmeticMismatchError,
    DuplicateRecordError,
    EventAlreadyRecordedError,
    EventRecordNotFoundError,
    ExchangeBindingNameExistsError,
    ExchangeBindingNotFoundError,
    HasBalanceError,
    ImmutableFieldError,
    ImmutableRecordError,
    InUseError,
    NegativeBalanceError,
    OAuthIdentityNotFoundError,
    QueryError,
    RecordNotFoundError,
    ReferenceNotFoundError,
    RepositoryException,
    SubAccountNotFoundError,
    TradingLogNotFoundError,
    TradingNotFoundError,
    TransactionError,
    TransactionNotFoundError,
    TransientError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from storage.repositories.exchange_bindings import ExchangeBindingRepository, RotatedCredentials
from storage.repositories.journal import TradingActivityLogRepository, TransactionRepository
from storage.repositories.tradings import SubAccountRepository, TradingRepository
from storage.repositories.users import OAuthIdentityRepository, UserRepository


__all__ = [
    # Base
    "BaseRepository",
    # Repositories
    "UserRepository",
    "OAuthIdentityRepository",
    "ExchangeBindingRepository",
    "RotatedCredentials",
    "TradingRepository",
    "SubAccountRepository",
    "TransactionRepository",
    "TradingActivityLogRepository",
    "EventProcessingRepository",
    # Exceptions
    "RepositoryException",
    "RecordNotFoundError",
    "UserNotFoundError",
    "OAuthIdentityNotFoundError",
    "ExchangeBindingNotFoundError",
    "TradingNotFoundError",
    "SubAccountNotFoundError",
    "TransactionNotFoundError",
    "TradingLogNotFoundError",
    "EventRecordNotFoundError",
    "DuplicateRecordError",
    "UserAlreadyExistsError",
    "ExchangeBindingNameExistsError",
    "EventAlreadyRecordedError",
    "ReferenceNotFoundError",
    "InUseError",
    "AccessDeniedError",
    "ImmutableFieldError",
    "ImmutableRecordError",
    "HasBalanceError",
    "BalanceArithmeticMismatchError",
    "NegativeBalanceError",
    "TransientError",
    "QueryError",
    "TransactionError",
]
