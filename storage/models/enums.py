"""
Enumerated column values.

Stored as plain strings; the enums document and validate the
allowed set.
"""

from enum import Enum


class BindingVisibility(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"


class BindingStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class TradingType(str, Enum):
    REAL = "real"
    VIRTUAL = "virtual"
    BACKTEST = "backtest"


class TradingStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PAUSED = "paused"


class Direction(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


class LogSource(str, Enum):
    MANUAL = "manual"
    BOT = "bot"


class EventStatus(str, Enum):
    PROCESSED = "processed"
    FAILED = "failed"
    RETRYING = "retrying"


def enum_values(enum_cls) -> tuple:
    return tuple(member.value for member in enum_cls)
