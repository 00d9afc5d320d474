"""
Tests for TradingRepository and SubAccountRepository.

Tests cover:
- Trading creation on private and public bindings
- Binding ownership and reference checks
- Listing with type/status filters
- Rebinding and delete guards
- Sub-account ownership, zero start balance and balance immutability
- Sub-account delete guarded by balance
"""

from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest

from storage.models.enums import TradingStatus, TradingType
from storage.repositories import (
    AccessDeniedError,
    HasBalanceError,
    ImmutableFieldError,
    InUseError,
    ReferenceNotFoundError,
    SubAccountNotFoundError,
    TradingNotFoundError,
)
from storage.schemas import CreateSubAccountRequest, PaginationParams, TradingResponse, UpdateTradingRequest


# =============================================================
# TRADINGS
# =============================================================

class TestTradingCreate:
    """Tests for trading creation."""

    def test_on_private_binding(self, repos, factory):
        user = factory.user()
        binding = factory.private_binding(user)
        trading = factory.trading(user, binding)

        loaded = repos.tradings.get_or_raise(trading.id)
        assert loaded.exchange_binding.id == binding.id
        assert loaded.status == TradingStatus.ACTIVE.value

    def test_on_public_binding(self, repos, factory):
        user = factory.user()
        public = factory.public_binding()
        trading = factory.trading(user, public, trading_type=TradingType.VIRTUAL)

        view = TradingResponse.from_trading(trading)
        assert view.exchange_binding_visibility == "public"
        assert view.trading_type == "virtual"

    def test_foreign_private_binding_denied(self, repos, factory):
        alice = factory.user()
        bob = factory.user()
        binding = factory.private_binding(alice)

        with pytest.raises(AccessDeniedError):
            factory.trading(bob, binding)

    def test_missing_binding(self, repos, factory):
        user = factory.user()
        ghost = SimpleNamespace(id=uuid4())
        with pytest.raises(ReferenceNotFoundError) as exc_info:
            factory.trading(user, ghost)
        assert exc_info.value.reference == "exchange binding"

    def test_missing_user(self, repos, factory):
        binding = factory.public_binding()
        ghost = SimpleNamespace(id=uuid4())
        with pytest.raises(ReferenceNotFoundError):
            factory.trading(ghost, binding)


class TestTradingQueries:

    def test_get_by_user_filters(self, repos, factory):
        user = factory.user()
        binding = factory.private_binding(user)
        factory.trading(user, binding, trading_type=TradingType.REAL)
        virtual = factory.trading(user, binding, trading_type=TradingType.VIRTUAL)
        repos.tradings.update(virtual.id, {"status": TradingStatus.PAUSED.value})

        assert repos.tradings.get_by_user(user.id).total == 2
        assert repos.tradings.get_by_user(user.id, trading_type="virtual").total == 1
        assert repos.tradings.get_by_user(user.id, status="active").total == 1
        active = repos.tradings.get_active_by_user(user.id)
        assert len(active) == 1
        assert virtual.id not in {t.id for t in active}

    def test_pagination(self, repos, factory):
        user = factory.user()
        binding = factory.private_binding(user)
        for _ in range(3):
            factory.trading(user, binding)

        page = repos.tradings.get_by_user(user.id, PaginationParams(page=2, limit=2))
        assert page.total == 3
        assert len(page) == 1
        assert page.total_pages == 2

    def test_get_by_exchange_binding(self, repos, factory):
        user = factory.user()
        binding = factory.private_binding(user)
        trading = factory.trading(user, binding)

        assert [t.id for t in repos.tradings.get_by_exchange_binding(binding.id)] == [trading.id]


class TestTradingUpdateDelete:

    def test_rebind_to_public(self, repos, factory):
        user = factory.user()
        trading = factory.trading(user, factory.private_binding(user))
        public = factory.public_binding()

        patch = UpdateTradingRequest(exchange_binding_id=public.id).to_patch()
        updated = repos.tradings.update(trading.id, patch)
        assert updated.exchange_binding.id == public.id

    def test_rebind_to_foreign_binding_denied(self, repos, factory):
        alice = factory.user()
        bob = factory.user()
        trading = factory.trading(alice, factory.private_binding(alice))

        with pytest.raises(AccessDeniedError):
            repos.tradings.update(trading.id, {"exchange_binding_id": factory.private_binding(bob).id})

    def test_owner_immutable(self, repos, factory):
        user = factory.user()
        trading = factory.trading(user, factory.private_binding(user))
        with pytest.raises(ImmutableFieldError):
            repos.tradings.update(trading.id, {"user_id": uuid4()})

    def test_delete_refused_with_live_sub_account(self, repos, factory):
        user = factory.user()
        trading = factory.trading(user, factory.private_binding(user))
        factory.sub_account(user, trading)

        with pytest.raises(InUseError):
            repos.tradings.delete(trading.id)

    def test_delete(self, repos, factory):
        user = factory.user()
        trading = factory.trading(user, factory.private_binding(user))
        repos.tradings.delete(trading.id)

        assert repos.tradings.get_by_id(trading.id) is None
        with pytest.raises(TradingNotFoundError):
            repos.tradings.get_or_raise(trading.id)


# =============================================================
# SUB-ACCOUNTS
# =============================================================

@pytest.fixture
def trading_setup(factory):
    user = factory.user()
    trading = factory.trading(user, factory.private_binding(user))
    return user, trading


class TestSubAccounts:
    """Tests for SubAccountRepository."""

    def test_starts_at_zero(self, repos, factory, trading_setup):
        user, trading = trading_setup
        sub_account = factory.sub_account(user, trading, "eth")

        assert sub_account.symbol == "ETH"
        assert sub_account.current_balance == Decimal("0")

    def test_foreign_trading_denied(self, repos, factory, trading_setup):
        _, trading = trading_setup
        stranger = factory.user()

        with pytest.raises(AccessDeniedError):
            factory.sub_account(stranger, trading)

    def test_missing_trading(self, repos, factory):
        user = factory.user()
        request = CreateSubAccountRequest(user_id=user.id, trading_id=uuid4(), name="w", symbol="BTC")
        with pytest.raises(ReferenceNotFoundError):
            repos.sub_accounts.create_from_request(request)

    def test_balance_not_updatable(self, repos, factory, trading_setup):
        user, trading = trading_setup
        sub_account = factory.sub_account(user, trading)

        with pytest.raises(ImmutableFieldError) as exc_info:
            repos.sub_accounts.update(sub_account.id, {"balance": Decimal("1000")})
        assert "BalanceMutator" in str(exc_info.value)

    def test_rename(self, repos, factory, trading_setup):
        user, trading = trading_setup
        sub_account = factory.sub_account(user, trading)
        assert repos.sub_accounts.update(sub_account.id, {"name": "cold storage"}).name == "cold storage"

    def test_queries(self, repos, factory, trading_setup):
        user, trading = trading_setup
        btc = factory.sub_account(user, trading, "BTC")
        eth = factory.sub_account(user, trading, "ETH")

        assert {s.id for s in repos.sub_accounts.get_by_user(user.id)} == {btc.id, eth.id}
        assert {s.id for s in repos.sub_accounts.get_by_trading(trading.id)} == {btc.id, eth.id}
        assert [s.id for s in repos.sub_accounts.get_by_symbol(user.id, "ETH")] == [eth.id]

    def test_get_owned(self, repos, factory, trading_setup):
        user, trading = trading_setup
        sub_account = factory.sub_account(user, trading)

        assert repos.sub_accounts.get_owned(sub_account.id, user.id) is sub_account
        with pytest.raises(AccessDeniedError):
            repos.sub_accounts.get_owned(sub_account.id, uuid4())
        with pytest.raises(SubAccountNotFoundError):
            repos.sub_accounts.get_owned(uuid4(), user.id)

    def test_delete_empty(self, repos, factory, trading_setup):
        user, trading = trading_setup
        sub_account = factory.sub_account(user, trading)

        repos.sub_accounts.delete(sub_account.id)
        assert repos.sub_accounts.get_by_id(sub_account.id) is None

    def test_delete_with_balance_refused(self, repos, factory, trading_setup):
        user, trading = trading_setup
        sub_account = factory.funded_sub_account(user, trading, "2.5")

        with pytest.raises(HasBalanceError) as exc_info:
            repos.sub_accounts.delete(sub_account.id)
        assert exc_info.value.balance == Decimal("2.5")
