"""
Shared fixtures for the account store tests.

Every test gets a fresh in-memory SQLite database with the full
schema, built through the same engine helpers production uses.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

import pytest

from core.clock import MockClock
from core.config import DatabaseConfig
from security.secret_engine import SecretEngine
from storage.database import create_all_tables, create_database_engine, get_session_factory
from storage.models.enums import BindingVisibility, TradingType
from storage.schemas import (
    CreateExchangeBindingRequest,
    CreateSubAccountRequest,
    CreateTradingRequest,
    CreateUserRequest,
)
from storage.unit_of_work import Repositories, repositories_factory, unit_of_work


MASTER_KEY = "unit-test-master-key-0123456789abcdef"
SIGNING_KEY = "unit-test-signing-key"
START_TIME = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================
# CORE FIXTURES
# =============================================================

@pytest.fixture(scope="session")
def secret_engine():
    """Low iteration count keeps key derivation fast."""
    return SecretEngine(MASTER_KEY, SIGNING_KEY, iterations=1_000)


@pytest.fixture
def clock():
    return MockClock(START_TIME)


@pytest.fixture
def db_engine():
    engine = create_database_engine(DatabaseConfig(url="sqlite://"))
    create_all_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory(db_engine)


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def repos(session, secret_engine, clock):
    return Repositories(session, secret_engine, clock=clock)


@pytest.fixture
def build_repos(secret_engine, clock):
    return repositories_factory(secret_engine, clock=clock)


# =============================================================
# ENTITY FACTORIES
# =============================================================

class AccountFactory:
    """Creates valid entities through the repositories."""

    def __init__(self, repos: Repositories):
        self.repos = repos
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def user(self, username: str = None, **overrides: Any):
        n = self._next()
        request = CreateUserRequest(
            username=username or f"trader{n}",
            email=overrides.pop("email", f"trader{n}@example.com"),
            **overrides,
        )
        return self.repos.users.create_from_request(request)

    def private_binding(self, user, name: str = None, **overrides: Any):
        n = self._next()
        fields: Dict[str, Any] = {
            "user_id": user.id,
            "name": name or f"binance-{n}",
            "exchange_type": "binance",
            "api_key": f"api-key-{n:04d}-abcdefgh",
            "api_secret": f"api-secret-{n:04d}-abcdefgh",
        }
        fields.update(overrides)
        return self.repos.bindings.create_from_request(CreateExchangeBindingRequest(**fields))

    def public_binding(self, name: str = None, exchange_type: str = "binance"):
        n = self._next()
        return self.repos.bindings.create_from_request(
            CreateExchangeBindingRequest(
                name=name or f"public-{n}",
                exchange_type=exchange_type,
                visibility=BindingVisibility.PUBLIC,
            )
        )

    def trading(self, user, binding, name: str = None, trading_type=TradingType.REAL):
        n = self._next()
        return self.repos.tradings.create_from_request(
            CreateTradingRequest(
                user_id=user.id,
                exchange_binding_id=binding.id,
                name=name or f"strategy-{n}",
                trading_type=trading_type,
            )
        )

    def sub_account(self, user, trading, symbol: str = "BTC", name: str = None):
        n = self._next()
        return self.repos.sub_accounts.create_from_request(
            CreateSubAccountRequest(
                user_id=user.id,
                trading_id=trading.id,
                name=name or f"{symbol.lower()}-wallet-{n}",
                symbol=symbol,
            )
        )

    def funded_sub_account(self, user, trading, amount: str = "100", symbol: str = "BTC"):
        sub_account = self.sub_account(user, trading, symbol=symbol)
        self.repos.balance.apply_balance_change(
            sub_account.id, Decimal(amount), Decimal(amount), "credit", "deposit"
        )
        return sub_account


@pytest.fixture
def factory(repos):
    return AccountFactory(repos)


@pytest.fixture
def seeded(session_factory, secret_engine, clock):
    """
    Committed user, binding, trading and funded BTC sub-account.

    For tests that open their own sessions (ledger, dispatcher).
    """
    with unit_of_work(session_factory, secret_engine, clock=clock) as repos:
        factory = AccountFactory(repos)
        user = factory.user("alice")
        binding = factory.private_binding(user)
        trading = factory.trading(user, binding)
        sub_account = factory.funded_sub_account(user, trading, "10")
        ids = {
            "user_id": user.id,
            "binding_id": binding.id,
            "trading_id": trading.id,
            "sub_account_id": sub_account.id,
        }
    return ids
