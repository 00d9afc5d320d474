"""
Pydantic Schemas for the Account Store.

Request DTOs validate their own constraints before anything
reaches a repository. Response views never carry secrets.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Generic, List, Optional, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)

from core.exceptions import ValidationError
from storage.models.enums import (
    BindingStatus,
    BindingVisibility,
    Direction,
    EventStatus,
    LogSource,
    TradingStatus,
    TradingType,
)


T = TypeVar("T")

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10
MAX_LIMIT = 100


# =============================================================
# PAGINATION
# =============================================================

class PaginationParams(BaseModel):
    """
    Page request.

    page <= 0 becomes 1, limit <= 0 becomes 10, limit > 100 is
    clamped to 100.
    """
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT

    @field_validator("page", mode="before")
    @classmethod
    def _clamp_page(cls, value: Any) -> int:
        page = int(value) if value is not None else DEFAULT_PAGE
        return page if page >= 1 else DEFAULT_PAGE

    @field_validator("limit", mode="before")
    @classmethod
    def _clamp_limit(cls, value: Any) -> int:
        limit = int(value) if value is not None else DEFAULT_LIMIT
        if limit <= 0:
            return DEFAULT_LIMIT
        return min(limit, MAX_LIMIT)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass
class Page(Generic[T]):
    """One page of results plus the total for pagers."""

    items: List[T] = field(default_factory=list)
    total: int = 0
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return math.ceil(self.total / self.limit)

    def __iter__(self):
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


# =============================================================
# FILTERS
# =============================================================

class TimeRangeFilter(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_range(self):
        if self.start_time and self.end_time and self.start_time > self.end_time:
            raise ValueError("start_time must not be after end_time")
        return self


class TransactionFilters(TimeRangeFilter):
    """Filter set shared by every transaction query."""
    direction: Optional[Direction] = None
    reason: Optional[str] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None

    @model_validator(mode="after")
    def _check_amounts(self):
        if (
            self.min_amount is not None
            and self.max_amount is not None
            and self.min_amount > self.max_amount
        ):
            raise ValueError("min_amount must not exceed max_amount")
        return self


class TradingLogFilters(TimeRangeFilter):
    log_type: Optional[str] = None
    source: Optional[LogSource] = None


class EventProcessingFilters(TimeRangeFilter):
    status: Optional[EventStatus] = None


# =============================================================
# SECURITY SETTINGS
# =============================================================

class SecuritySettings(BaseModel):
    """Typed view over ExchangeBinding.security_settings."""
    model_config = ConfigDict(extra="ignore")

    max_failures: int = Field(default=10, ge=1)
    failure_window_seconds: int = Field(default=3600, ge=1)
    require_ip_whitelist: bool = False
    allowed_ips: List[str] = Field(default_factory=list)
    rate_limit_enabled: bool = True
    max_requests_per_hour: int = Field(default=1000, ge=0)
    alert_on_failure: bool = True
    auto_disable_on_abuse: bool = True
    last_security_audit_at: Optional[datetime] = None

    @property
    def failure_window(self) -> timedelta:
        return timedelta(seconds=self.failure_window_seconds)

    @classmethod
    def parse(cls, raw: Optional[Dict[str, Any]]) -> "SecuritySettings":
        """
        Parse a stored settings map.

        Raises:
            ValidationError: If a known key carries a malformed value
        """
        try:
            return cls.model_validate(dict(raw or {}))
        except PydanticValidationError as e:
            raise ValidationError(
                f"invalid security settings: {e.errors()[0]['msg']}",
                field="security_settings",
            ) from e

    def to_map(self) -> Dict[str, Any]:
        """Explicitly set keys only, so unset thresholds fall back to process defaults."""
        return self.model_dump(mode="json", exclude_unset=True)


# =============================================================
# USERS
# =============================================================

class CreateUserRequest(BaseModel):
    """Schema for creating a user."""
    username: str = Field(min_length=1, max_length=50)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    avatar: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    info: Dict[str, Any] = Field(default_factory=dict)


class UpdateUserRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    username: Optional[str] = Field(default=None, min_length=1, max_length=50)
    email: Optional[str] = Field(default=None, min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    avatar: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None
    info: Optional[Dict[str, Any]] = None

    def to_patch(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class CreateOAuthIdentityRequest(BaseModel):
    user_id: uuid.UUID
    provider: str = Field(min_length=1, max_length=20)
    provider_user_id: str = Field(min_length=1, max_length=255)
    access_token: str = Field(min_length=1, repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    info: Dict[str, Any] = Field(default_factory=dict)


class OAuthIdentityResponse(BaseModel):
    """Identity view without provider tokens."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    provider: str
    provider_user_id: str
    expires_at: Optional[datetime] = None
    info: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


# =============================================================
# EXCHANGE BINDINGS
# =============================================================

class CreateExchangeBindingRequest(BaseModel):
    """
    Schema for creating an exchange binding.

    Credentials on a public request are dropped silently.
    """
    user_id: Optional[uuid.UUID] = None
    name: str = Field(min_length=1, max_length=100)
    exchange_type: str = Field(min_length=1, max_length=50)
    visibility: BindingVisibility = BindingVisibility.PRIVATE
    api_key: Optional[str] = Field(default=None, repr=False)
    api_secret: Optional[str] = Field(default=None, repr=False)
    status: BindingStatus = BindingStatus.ACTIVE
    security_settings: SecuritySettings = Field(default_factory=SecuritySettings)
    info: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("exchange_type")
    @classmethod
    def _normalize_exchange(cls, value: str) -> str:
        return value.strip().lower()

    @model_validator(mode="after")
    def _check_credentials(self):
        if self.visibility == BindingVisibility.PUBLIC:
            self.api_key = None
            self.api_secret = None
            self.user_id = None
        else:
            if self.user_id is None:
                raise ValueError("private binding requires user_id")
            if not self.api_key or not self.api_secret:
                raise ValueError("private binding requires api_key and api_secret")
        return self


class UpdateExchangeBindingRequest(BaseModel):
    """Generic binding update; credentials change only through rotation."""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    status: Optional[BindingStatus] = None
    security_settings: Optional[Dict[str, Any]] = None
    info: Optional[Dict[str, Any]] = None

    def to_patch(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True, mode="json")


class RotateCredentialsRequest(BaseModel):
    """New credentials; omitted values are generated."""
    api_key: Optional[str] = Field(default=None, min_length=1, repr=False)
    api_secret: Optional[str] = Field(default=None, min_length=1, repr=False)


class ExchangeBindingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    name: str
    exchange_type: str
    visibility: str
    masked_api_key: str = ""
    status: str
    failure_count: int = 0
    last_used_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    info: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


# =============================================================
# TRADINGS AND SUB-ACCOUNTS
# =============================================================

class CreateTradingRequest(BaseModel):
    user_id: uuid.UUID
    exchange_binding_id: uuid.UUID
    name: str = Field(min_length=1, max_length=100)
    trading_type: TradingType
    status: TradingStatus = TradingStatus.ACTIVE
    info: Dict[str, Any] = Field(default_factory=dict)


class UpdateTradingRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    exchange_binding_id: Optional[uuid.UUID] = None
    trading_type: Optional[TradingType] = None
    status: Optional[TradingStatus] = None
    info: Optional[Dict[str, Any]] = None

    def to_patch(self) -> Dict[str, Any]:
        patch = self.model_dump(exclude_unset=True)
        for key in ("trading_type", "status"):
            if patch.get(key) is not None:
                patch[key] = patch[key].value
        return patch


class TradingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    exchange_binding_id: uuid.UUID
    name: str
    trading_type: str
    status: str
    exchange_binding_name: Optional[str] = None
    exchange_type: Optional[str] = None
    exchange_binding_visibility: Optional[str] = None
    info: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_trading(cls, trading) -> "TradingResponse":
        view = cls.model_validate(trading)
        binding = trading.exchange_binding
        if binding is not None:
            view.exchange_binding_name = binding.name
            view.exchange_type = binding.exchange_type
            view.exchange_binding_visibility = binding.visibility
        return view


class CreateSubAccountRequest(BaseModel):
    user_id: uuid.UUID
    trading_id: uuid.UUID
    name: str = Field(min_length=1, max_length=100)
    symbol: str = Field(min_length=1, max_length=20)
    info: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, value: str) -> str:
        return value.strip().upper()


class UpdateSubAccountRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    symbol: Optional[str] = Field(default=None, min_length=1, max_length=20)
    info: Optional[Dict[str, Any]] = None

    def to_patch(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class SubAccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    trading_id: uuid.UUID
    name: str
    symbol: str
    balance: Decimal
    info: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


# =============================================================
# BALANCE AND JOURNAL
# =============================================================

class BalanceChangeRequest(BaseModel):
    """Arguments of BalanceMutator.apply_balance_change."""
    sub_account_id: uuid.UUID
    new_balance: Decimal
    amount: Decimal = Field(gt=0)
    direction: Direction
    reason: str = Field(min_length=1, max_length=50)
    info: Dict[str, Any] = Field(default_factory=dict)


# =============================================================
# MANUAL TRADING LOGS
# =============================================================

POSITION_LOG_TYPES = ("long", "short", "stop_loss")
CASH_LOG_TYPES = ("deposit", "withdraw")


class TradeDetails(BaseModel):
    """
    Structured info of a log that moves balances.

    Position logs (long, short, stop_loss) move ``volume`` on the
    stock sub-account and price * volume +/- fee on the currency
    sub-account. Cash logs (deposit, withdraw) move ``volume`` on the
    stock sub-account alone; ``stock`` then names the currency.
    """
    stock_account_id: uuid.UUID
    currency_account_id: Optional[uuid.UUID] = None
    price: Optional[Decimal] = Field(default=None, gt=0)
    volume: Decimal = Field(gt=0)
    stock: str = Field(min_length=1, max_length=20)
    currency: Optional[str] = Field(default=None, min_length=1, max_length=20)
    fee: Decimal = Field(default=Decimal("0"), ge=0)

    def check_position(self) -> None:
        missing = [
            name
            for name in ("currency_account_id", "price", "currency")
            if getattr(self, name) is None
        ]
        if missing:
            raise ValueError(f"position logs require {', '.join(missing)}")
        if self.stock_account_id == self.currency_account_id:
            raise ValueError("stock_account_id and currency_account_id must be different")


class CreateTradingLogRequest(BaseModel):
    """
    Schema for a manual or bot trading log.

    For the types in POSITION_LOG_TYPES and CASH_LOG_TYPES ``info``
    must parse as TradeDetails.
    """
    user_id: uuid.UUID
    trading_id: uuid.UUID
    sub_account_id: Optional[uuid.UUID] = None
    transaction_id: Optional[uuid.UUID] = None
    log_type: str = Field(min_length=1, max_length=50)
    source: LogSource = LogSource.MANUAL
    message: str = Field(min_length=1)
    timestamp: Optional[datetime] = None
    info: Dict[str, Any] = Field(default_factory=dict)

    @property
    def moves_balance(self) -> bool:
        return self.log_type in POSITION_LOG_TYPES + CASH_LOG_TYPES

    def trade_details(self) -> Optional[TradeDetails]:
        if not self.moves_balance:
            return None
        details = TradeDetails.model_validate(self.info)
        if self.log_type in POSITION_LOG_TYPES:
            details.check_position()
        return details

    @model_validator(mode="after")
    def _check_details(self):
        if self.moves_balance and self.transaction_id is not None:
            raise ValueError(f"{self.log_type} logs create their own transactions")
        self.trade_details()
        return self


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    trading_id: uuid.UUID
    sub_account_id: uuid.UUID
    timestamp: datetime
    direction: str
    reason: str
    amount: Decimal
    closing_balance: Decimal
    price: Optional[Decimal] = None
    quote_symbol: Optional[str] = None
    info: Dict[str, Any] = Field(default_factory=dict)


class TradingLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    trading_id: uuid.UUID
    sub_account_id: Optional[uuid.UUID] = None
    transaction_id: Optional[uuid.UUID] = None
    timestamp: datetime
    log_type: str
    source: str
    message: str
    info: Dict[str, Any] = Field(default_factory=dict)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    username: str
    email: str
    avatar: Optional[str] = None
    settings: Dict[str, Any] = Field(default_factory=dict)
    info: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime
