"""
Tests for the entity model and request schemas.

Tests cover:
- Fixed-point quantization of amounts
- Entity invariants (validate)
- Exchange binding visibility rules
- Pagination clamping
- Request schema normalization
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import (
    InvalidExchangeError,
    PrivateRequiresCredentialsError,
    PrivateRequiresOwnerError,
    PublicMustNotCarryCredentialsError,
    ValidationError,
)
from storage.models.base import quantize_amount
from storage.models.exchange import ExchangeBinding
from storage.models.journal import Transaction
from storage.models.trading import SubAccount, Trading
from storage.models.user import User
from storage.schemas import (
    CreateExchangeBindingRequest,
    CreateSubAccountRequest,
    Page,
    PaginationParams,
    SecuritySettings,
    TransactionFilters,
)


# =============================================================
# QUANTIZATION
# =============================================================

class TestQuantizeAmount:
    """Tests for quantize_amount()."""

    def test_eight_fractional_digits(self):
        assert quantize_amount("1.123456789") == Decimal("1.12345679")

    def test_float_goes_through_str(self):
        assert quantize_amount(0.1) == Decimal("0.10000000")

    def test_integer(self):
        assert quantize_amount(5) == Decimal("5.00000000")

    def test_bankers_rounding(self):
        assert quantize_amount("0.000000005") == Decimal("0.00000000")
        assert quantize_amount("0.000000015") == Decimal("0.00000002")

    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", True])
    def test_rejects_non_numbers(self, value):
        with pytest.raises(ValidationError):
            quantize_amount(value)

    def test_rejects_overflow(self):
        with pytest.raises(ValidationError):
            quantize_amount("1" * 13)


# =============================================================
# ENTITY INVARIANTS
# =============================================================

class TestEntityValidation:
    """Tests for validate() on the ORM models."""

    def test_user_requires_email(self):
        user = User(username="alice", email="not-an-email")
        user.apply_defaults()
        with pytest.raises(ValidationError) as exc_info:
            user.validate()
        assert exc_info.value.field == "email"

    def test_apply_defaults_fills_maps(self):
        user = User(username="alice", email="alice@example.com")
        user.apply_defaults()
        assert user.settings == {}
        assert user.info == {}
        assert user.id is not None

    def test_trading_type_checked(self):
        trading = Trading(user_id=uuid4(), exchange_binding_id=uuid4(), name="t", trading_type="paper")
        trading.apply_defaults()
        with pytest.raises(ValidationError):
            trading.validate()

    def test_sub_account_symbol_required(self):
        sub_account = SubAccount(user_id=uuid4(), trading_id=uuid4(), name="wallet", symbol="")
        sub_account.apply_defaults()
        with pytest.raises(ValidationError):
            sub_account.validate()

    def test_transaction_amount_positive(self):
        txn = Transaction(
            user_id=uuid4(),
            trading_id=uuid4(),
            sub_account_id=uuid4(),
            direction="credit",
            reason="deposit",
            amount=Decimal("0"),
            closing_balance=Decimal("0"),
        )
        txn.apply_defaults()
        with pytest.raises(ValidationError):
            txn.validate()

    def test_transaction_previous_balance(self):
        txn = Transaction(direction="debit", amount=Decimal("2.5"), closing_balance=Decimal("7.5"))
        assert txn.signed_amount == Decimal("-2.5")
        assert txn.previous_balance == Decimal("10")


class TestExchangeBindingRules:
    """Tests for the private/public binding invariants."""

    def _binding(self, **fields):
        values = {
            "name": "main",
            "exchange_type": "binance",
            "visibility": "private",
            "user_id": uuid4(),
            "encrypted_api_key": "k",
            "encrypted_api_secret": "s",
            "api_key_hash": "h",
        }
        values.update(fields)
        binding = ExchangeBinding(**values)
        binding.apply_defaults()
        return binding

    def test_valid_private(self):
        self._binding().validate()

    def test_private_needs_owner(self):
        with pytest.raises(PrivateRequiresOwnerError):
            self._binding(user_id=None).validate()

    def test_private_needs_credentials(self):
        with pytest.raises(PrivateRequiresCredentialsError):
            self._binding(encrypted_api_secret=None).validate()

    def test_public_must_not_have_owner(self):
        binding = self._binding(
            visibility="public", encrypted_api_key=None, encrypted_api_secret=None, api_key_hash=None
        )
        with pytest.raises(PublicMustNotCarryCredentialsError):
            binding.validate()

    def test_public_must_not_have_credentials(self):
        with pytest.raises(PublicMustNotCarryCredentialsError):
            self._binding(visibility="public", user_id=None).validate()

    def test_unknown_exchange(self):
        with pytest.raises(InvalidExchangeError):
            self._binding(exchange_type="mtgox").validate()

    def test_configured_exchange_set(self):
        self._binding(exchange_type="okx").validate(supported_exchanges=("okx",))


# =============================================================
# SCHEMAS
# =============================================================

class TestPagination:
    """Tests for PaginationParams clamping."""

    @pytest.mark.parametrize(
        "page,limit,expected",
        [
            (0, 10, (1, 10)),
            (-3, 10, (1, 10)),
            (2, 0, (2, 10)),
            (2, -1, (2, 10)),
            (1, 500, (1, 100)),
            (3, 25, (3, 25)),
        ],
    )
    def test_clamping(self, page, limit, expected):
        params = PaginationParams(page=page, limit=limit)
        assert (params.page, params.limit) == expected

    def test_offset(self):
        assert PaginationParams(page=3, limit=20).offset == 40

    def test_total_pages(self):
        assert Page(items=[], total=0, limit=10).total_pages == 0
        assert Page(items=[], total=21, limit=10).total_pages == 3


class TestRequestSchemas:

    def test_public_request_drops_credentials(self):
        request = CreateExchangeBindingRequest(
            name="Binance",
            exchange_type=" Binance ",
            visibility="public",
            user_id=uuid4(),
            api_key="leak",
            api_secret="leak",
        )
        assert request.exchange_type == "binance"
        assert request.user_id is None
        assert request.api_key is None

    def test_private_request_requires_credentials(self):
        with pytest.raises(PydanticValidationError):
            CreateExchangeBindingRequest(user_id=uuid4(), name="main", exchange_type="binance")

    def test_symbol_normalized(self):
        request = CreateSubAccountRequest(user_id=uuid4(), trading_id=uuid4(), name="w", symbol=" btc ")
        assert request.symbol == "BTC"

    def test_transaction_filter_amount_range(self):
        with pytest.raises(PydanticValidationError):
            TransactionFilters(min_amount=Decimal("5"), max_amount=Decimal("1"))

    def test_security_settings_defaults_and_map(self):
        settings = SecuritySettings.parse({"max_failures": 3, "unknown_key": True})
        assert settings.max_failures == 3
        assert settings.failure_window_seconds == 3600
        assert SecuritySettings(max_failures=3).to_map() == {"max_failures": 3}

    def test_security_settings_rejects_bad_value(self):
        with pytest.raises(ValidationError):
            SecuritySettings.parse({"max_failures": 0})
