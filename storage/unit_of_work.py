"""
Unit of Work.

One session, one transaction, every repository bound to it.
A request or an event gets its own Repositories bundle; the
engine's connection pool is the only shared resource.
"""

from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy.orm import Session, sessionmaker

from core.clock import ClockProtocol
from core.config import DEFAULT_SUPPORTED_EXCHANGES, Settings
from core.context import OperationContext
from security.secret_engine import SecretEngine
from storage.balance import BalanceMutator
from storage.database import transaction_scope
from storage.repositories import (
    EventProcessingRepository,
    ExchangeBindingRepository,
    OAuthIdentityRepository,
    SubAccountRepository,
    TradingActivityLogRepository,
    TradingRepository,
    TransactionRepository,
    UserRepository,
)
from storage.trading_log_processor import TradingLogProcessor


class Repositories:
    """
    Repository bundle sharing one session.

    Attributes:
        users, oauth, bindings, tradings, sub_accounts,
        transactions, logs, events: repositories
        balance: BalanceMutator on the same session
        trading_logs: TradingLogProcessor on the same session
    """

    def __init__(
        self,
        session: Session,
        secret_engine: SecretEngine,
        settings: Optional[Settings] = None,
        context: Optional[OperationContext] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self.session = session
        self.context = context or OperationContext.background()
        self.secret_engine = secret_engine

        common = {"context": self.context, "clock": clock}
        self.users = UserRepository(session, **common)
        self.oauth = OAuthIdentityRepository(session, **common)
        self.bindings = ExchangeBindingRepository(
            session,
            secret_engine,
            supported_exchanges=settings.supported_exchanges if settings else DEFAULT_SUPPORTED_EXCHANGES,
            max_failures=settings.binding_max_failures if settings else None,
            failure_window=settings.binding_failure_window if settings else None,
            **common,
        )
        self.tradings = TradingRepository(session, **common)
        self.sub_accounts = SubAccountRepository(session, **common)
        self.transactions = TransactionRepository(session, **common)
        self.logs = TradingActivityLogRepository(session, **common)
        self.events = EventProcessingRepository(session, **common)
        self.balance = BalanceMutator(session, context=self.context, clock=clock)
        self.trading_logs = TradingLogProcessor(session, context=self.context, clock=clock)


RepositoriesFactory = Callable[..., Repositories]


def repositories_factory(
    secret_engine: SecretEngine,
    settings: Optional[Settings] = None,
    clock: Optional[ClockProtocol] = None,
) -> RepositoriesFactory:
    """Build Repositories for a session handed in later (see EventIngestLedger)."""

    def build(session: Session, context: Optional[OperationContext] = None) -> Repositories:
        return Repositories(session, secret_engine, settings=settings, context=context, clock=clock)

    return build


@contextmanager
def unit_of_work(
    session_factory: sessionmaker,
    secret_engine: SecretEngine,
    settings: Optional[Settings] = None,
    context: Optional[OperationContext] = None,
    clock: Optional[ClockProtocol] = None,
) -> Generator[Repositories, None, None]:
    """
    Open a session, yield its repositories, commit on success.

    Usage:
        with unit_of_work(factory, engine, settings) as repos:
            repos.users.create_from_request(request)
    """
    with transaction_scope(session_factory) as session:
        yield Repositories(session, secret_engine, settings=settings, context=context, clock=clock)
