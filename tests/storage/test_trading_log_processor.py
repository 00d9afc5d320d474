"""
Tests for TradingLogProcessor.

Tests cover:
- Long, short and stop_loss postings on the stock and currency sub-accounts
- Deposit and withdraw on a single sub-account
- Insufficient balance and rollback of earlier legs
- Ownership and trading membership checks
- Trade details validation
- Plain logs without postings
"""

from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ValidationError
from storage.repositories import AccessDeniedError, NegativeBalanceError
from storage.schemas import CreateTradingLogRequest


@pytest.fixture
def desk(factory):
    """User with a trading holding an empty BTC and a 1000 USDT sub-account."""
    user = factory.user("trader")
    trading = factory.trading(user, factory.private_binding(user))
    stock = factory.sub_account(user, trading, "BTC")
    currency = factory.funded_sub_account(user, trading, "1000", symbol="USDT")
    return user, trading, stock, currency


def _position(desk, log_type, price="20000", volume="0.01", fee="1.5", **fields):
    user, trading, stock, currency = desk
    info = {
        "stock_account_id": str(stock.id),
        "currency_account_id": str(currency.id),
        "price": price,
        "volume": volume,
        "stock": "BTC",
        "currency": "USDT",
        "fee": fee,
    }
    values = dict(
        user_id=user.id,
        trading_id=trading.id,
        log_type=log_type,
        message=f"manual {log_type}",
        info=info,
    )
    values.update(fields)
    return CreateTradingLogRequest(**values)


def _cash(desk, log_type, volume, account=None):
    user, trading, _, currency = desk
    return CreateTradingLogRequest(
        user_id=user.id,
        trading_id=trading.id,
        log_type=log_type,
        message=f"manual {log_type}",
        info={
            "stock_account_id": str((account or currency).id),
            "volume": volume,
            "stock": "USDT",
        },
    )


def _reasons(repos, sub_account):
    return [t.reason for t in repos.transactions.get_by_sub_account(sub_account.id)]


# =============================================================
# POSITIONS
# =============================================================

class TestPositions:

    def test_long(self, repos, desk):
        _, _, stock, currency = desk
        result = repos.trading_logs.process(_position(desk, "long"))

        assert stock.current_balance == Decimal("0.01")
        assert currency.current_balance == Decimal("798.5")

        stock_txn, currency_txn = result.transactions
        assert (stock_txn.sub_account_id, stock_txn.direction, stock_txn.amount) == (
            stock.id, "credit", Decimal("0.01"),
        )
        assert (currency_txn.sub_account_id, currency_txn.direction, currency_txn.amount) == (
            currency.id, "debit", Decimal("201.5"),
        )
        for txn in result.transactions:
            assert txn.reason == "long"
            assert txn.price == Decimal("20000")
            assert txn.quote_symbol == "USDT"
            assert txn.info["trading_log_id"] == str(result.log.id)

    def test_long_links_log(self, repos, desk):
        _, _, stock, _ = desk
        result = repos.trading_logs.process(_position(desk, "long"))

        log = repos.logs.get_by_id(result.log.id)
        assert log.source == "manual"
        assert log.sub_account_id == stock.id
        assert log.transaction_id == result.transactions[0].id
        assert log.info["transaction_ids"] == [str(t.id) for t in result.transactions]
        assert log.info["price"] == "20000"

    def test_log_filed_under_currency_account(self, repos, desk):
        _, _, _, currency = desk
        request = _position(desk, "long", sub_account_id=currency.id)
        result = repos.trading_logs.process(request)

        assert result.log.sub_account_id == currency.id
        assert result.log.transaction_id == result.transactions[1].id

    @pytest.mark.parametrize("log_type", ["short", "stop_loss"])
    def test_short_and_stop_loss(self, repos, desk, log_type):
        _, _, stock, currency = desk
        repos.balance.apply_relative_change(stock.id, "0.5", "credit", "deposit")

        result = repos.trading_logs.process(
            _position(desk, log_type, price="30000", volume="0.2", fee="2")
        )

        assert stock.current_balance == Decimal("0.3")
        assert currency.current_balance == Decimal("6998")
        assert [t.direction for t in result.transactions] == ["debit", "credit"]
        assert {t.reason for t in result.transactions} == {log_type}

    def test_zero_fee_default(self, repos, desk):
        _, _, _, currency = desk
        info = dict(_position(desk, "long", price="100", volume="2").info)
        del info["fee"]
        repos.trading_logs.process(_position(desk, "long", info=info))
        assert currency.current_balance == Decimal("800")


# =============================================================
# CASH
# =============================================================

class TestCash:

    def test_deposit(self, repos, desk):
        _, _, _, currency = desk
        result = repos.trading_logs.process(_cash(desk, "deposit", "50"))

        assert currency.current_balance == Decimal("1050")
        [txn] = result.transactions
        assert (txn.direction, txn.reason, txn.price, txn.quote_symbol) == (
            "credit", "deposit", Decimal("1"), "USDT",
        )
        assert result.log.transaction_id == txn.id

    def test_withdraw(self, repos, desk):
        _, _, _, currency = desk
        repos.trading_logs.process(_cash(desk, "withdraw", "250.25"))
        assert currency.current_balance == Decimal("749.75")

    def test_withdraw_beyond_balance(self, repos, desk):
        _, _, _, currency = desk
        with pytest.raises(NegativeBalanceError):
            repos.trading_logs.process(_cash(desk, "withdraw", "2000"))

        assert currency.current_balance == Decimal("1000")
        assert _reasons(repos, currency) == ["deposit"]
        assert repos.logs.get_by_user(currency.user_id).total == 0


# =============================================================
# ATOMICITY
# =============================================================

class TestAtomicity:
    """A failing leg undoes the log and every earlier leg."""

    def test_second_leg_failure_rolls_back_first(self, repos, desk):
        user, _, stock, currency = desk
        with pytest.raises(NegativeBalanceError):
            repos.trading_logs.process(_position(desk, "long", price="200000", volume="1"))

        assert repos.sub_accounts.get_by_id(stock.id).current_balance == Decimal("0")
        assert repos.sub_accounts.get_by_id(currency.id).current_balance == Decimal("1000")
        assert _reasons(repos, stock) == []
        assert repos.logs.get_by_user(user.id).total == 0

    def test_short_without_stock(self, repos, desk):
        _, _, _, currency = desk
        with pytest.raises(NegativeBalanceError):
            repos.trading_logs.process(_position(desk, "short"))

        assert repos.sub_accounts.get_by_id(currency.id).current_balance == Decimal("1000")

    def test_session_usable_after_failure(self, repos, desk):
        _, _, stock, _ = desk
        with pytest.raises(NegativeBalanceError):
            repos.trading_logs.process(_position(desk, "long", price="200000", volume="1"))

        repos.trading_logs.process(_position(desk, "long"))
        assert repos.sub_accounts.get_by_id(stock.id).current_balance == Decimal("0.01")


# =============================================================
# OWNERSHIP
# =============================================================

class TestOwnership:

    def test_foreign_currency_account(self, repos, factory, desk):
        other = factory.user("mallory")
        foreign = factory.funded_sub_account(
            other, factory.trading(other, factory.private_binding(other)), "1000", symbol="USDT"
        )
        info = dict(_position(desk, "long").info, currency_account_id=str(foreign.id))

        with pytest.raises(AccessDeniedError):
            repos.trading_logs.process(_position(desk, "long", info=info))
        assert foreign.current_balance == Decimal("1000")

    def test_account_of_another_trading(self, repos, factory, desk):
        user, _, _, _ = desk
        other_trading = factory.trading(user, factory.private_binding(user))
        elsewhere = factory.funded_sub_account(user, other_trading, "1000", symbol="USDT")
        info = dict(_position(desk, "long").info, currency_account_id=str(elsewhere.id))

        with pytest.raises(ValidationError):
            repos.trading_logs.process(_position(desk, "long", info=info))

    def test_trading_of_another_user(self, repos, factory, desk):
        other = factory.user("mallory")
        with pytest.raises(AccessDeniedError):
            repos.trading_logs.process(_position(desk, "long", user_id=other.id))

    def test_log_sub_account_outside_postings(self, repos, factory, desk):
        user, trading, _, _ = desk
        spare = factory.sub_account(user, trading, "ETH")
        with pytest.raises(ValidationError):
            repos.trading_logs.process(_position(desk, "long", sub_account_id=spare.id))


# =============================================================
# REQUEST VALIDATION
# =============================================================

class TestRequestValidation:

    @pytest.mark.parametrize("missing", ["price", "currency_account_id", "currency", "volume", "stock"])
    def test_position_requires_fields(self, desk, missing):
        info = dict(_position(desk, "long").info)
        del info[missing]
        with pytest.raises(PydanticValidationError):
            _position(desk, "long", info=info)

    @pytest.mark.parametrize("field,value", [("price", "0"), ("volume", "-1"), ("fee", "-0.1")])
    def test_bad_amounts(self, desk, field, value):
        info = dict(_position(desk, "long").info, **{field: value})
        with pytest.raises(PydanticValidationError):
            _position(desk, "long", info=info)

    def test_same_accounts(self, desk):
        _, _, stock, _ = desk
        info = dict(_position(desk, "long").info, currency_account_id=str(stock.id))
        with pytest.raises(PydanticValidationError):
            _position(desk, "long", info=info)

    def test_cash_needs_no_currency_account(self, desk):
        assert _cash(desk, "deposit", "1").trade_details().currency_account_id is None

    def test_explicit_transaction_refused(self, repos, desk):
        _, _, _, currency = desk
        txn = repos.transactions.get_by_sub_account(currency.id).items[0]
        with pytest.raises(PydanticValidationError):
            _position(desk, "long", transaction_id=txn.id)


# =============================================================
# PLAIN LOGS
# =============================================================

class TestPlainLogs:

    def test_note_creates_log_only(self, repos, desk):
        user, trading, stock, currency = desk
        request = CreateTradingLogRequest(
            user_id=user.id,
            trading_id=trading.id,
            sub_account_id=stock.id,
            log_type="note",
            message="watching the range",
            info={"price": "not a number"},
        )
        result = repos.trading_logs.process(request)

        assert result.transactions == []
        assert result.log.transaction_id is None
        assert repos.logs.get_by_id(result.log.id).message == "watching the range"
        assert currency.current_balance == Decimal("1000")

    def test_note_on_foreign_trading(self, repos, factory, desk):
        _, trading, _, _ = desk
        other = factory.user("mallory")
        request = CreateTradingLogRequest(
            user_id=other.id, trading_id=trading.id, log_type="note", message="x"
        )
        with pytest.raises(AccessDeniedError):
            repos.trading_logs.process(request)
