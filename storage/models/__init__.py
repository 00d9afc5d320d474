"""
Storage Models Package.

ORM models for the account store database.

============================================================
MODEL ORGANIZATION
============================================================

users (user.py)
- User
- OAuthIdentity (oauth_tokens)

exchanges (exchange.py)
- ExchangeBinding

tradings (trading.py)
- Trading
- SubAccount

time-series (journal.py)
- Transaction
- TradingActivityLog (trading_logs)

ingest (event_processing.py)
- EventProcessingRecord (event_processing)

============================================================
DESIGN PRINCIPLES
============================================================

- UUID primary keys, timezone-aware UTC timestamps
- Soft delete everywhere except time-series and ingest tables
- validate() on every model, no I/O, no implicit hooks
- Attribute maps are JSON (JSONB on PostgreSQL), default {}

============================================================
"""

from storage.models.base import Base, quantize_amount
from storage.models.enums import (
    BindingStatus,
    BindingVisibility,
    Direction,
    EventStatus,
    LogSource,
    TradingStatus,
    TradingType,
)
from storage.models.event_processing import EventProcessingRecord
from storage.models.exchange import ExchangeBinding
from storage.models.journal import TradingActivityLog, Transaction
from storage.models.trading import SubAccount, Trading
from storage.models.user import OAuthIdentity, User

__all__ = [
    "Base",
    "quantize_amount",
    "BindingStatus",
    "BindingVisibility",
    "Direction",
    "EventStatus",
    "LogSource",
    "TradingStatus",
    "TradingType",
    "EventProcessingRecord",
    "ExchangeBinding",
    "TradingActivityLog",
    "Transaction",
    "SubAccount",
    "Trading",
    "OAuthIdentity",
    "User",
]
