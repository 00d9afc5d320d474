"""
Trading Log Processor.

============================================================
PURPOSE
============================================================
Writes a trading log and, for position and cash types, the
balance postings it describes, as one atomic unit.

============================================================
POSTINGS
============================================================
long        stock     credit  volume
            currency  debit   price * volume + fee
short       stock     debit   volume
stop_loss   currency  credit  price * volume - fee
deposit     stock     credit  volume
withdraw    stock     debit   volume

Every posting goes through the Balance Mutator inside one
SAVEPOINT. A leg that would overdraw its sub-account rolls back
the log and every earlier leg.

============================================================
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from core.clock import ClockProtocol, SystemClock
from core.context import OperationContext
from core.exceptions import ValidationError
from storage.balance import BalanceMutator, atomic
from storage.models.base import new_id, quantize_amount
from storage.models.enums import Direction
from storage.models.journal import TradingActivityLog, Transaction
from storage.models.trading import SubAccount, Trading
from storage.repositories.exceptions import AccessDeniedError
from storage.repositories.journal import TradingActivityLogRepository, TransactionRepository
from storage.repositories.tradings import SubAccountRepository, TradingRepository
from storage.schemas import CASH_LOG_TYPES, CreateTradingLogRequest, TradeDetails


logger = logging.getLogger(__name__)

CASH_PRICE = Decimal("1")


@dataclass
class Posting:
    """One balance movement derived from a log."""
    sub_account: SubAccount
    amount: Decimal
    direction: Direction
    price: Decimal
    quote_symbol: str

    def new_balance(self) -> Decimal:
        if self.direction == Direction.CREDIT:
            return self.sub_account.current_balance + self.amount
        return self.sub_account.current_balance - self.amount


@dataclass
class ProcessingResult:
    log: TradingActivityLog
    transactions: List[Transaction] = field(default_factory=list)
    sub_accounts: List[SubAccount] = field(default_factory=list)


class TradingLogProcessor:
    """
    Trading log creation with balance side effects.

    Usage:
        processor = TradingLogProcessor(session)
        result = processor.process(CreateTradingLogRequest(...))
    """

    NAME = "TradingLogProcessor"

    def __init__(
        self,
        session: Session,
        context: Optional[OperationContext] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        clock = clock or SystemClock()
        common = {"context": context, "clock": clock}
        self._session = session
        self._tradings = TradingRepository(session, **common)
        self._sub_accounts = SubAccountRepository(session, **common)
        self._transactions = TransactionRepository(session, **common)
        self._logs = TradingActivityLogRepository(session, **common)
        self._mutator = BalanceMutator(session, context=context, clock=clock)

    def process(self, request: CreateTradingLogRequest) -> ProcessingResult:
        """
        Create the log described by ``request``.

        Types without trade details become a plain log entry.

        Raises:
            TradingNotFoundError / SubAccountNotFoundError: Missing rows
            AccessDeniedError: Trading or sub-account of another user
            ValidationError: Account outside the trading, bad amounts
            NegativeBalanceError: A leg would overdraw its sub-account
        """
        details = request.trade_details()
        if details is None:
            self._owned_trading(request)
            return ProcessingResult(log=self._logs.create(self._build_log(request)))

        with atomic(self._session, self.NAME, "process"):
            result = self._process_postings(request, details)
        logger.info(
            f"Trading log {result.log.id} ({request.log_type}) posted "
            f"{len(result.transactions)} transaction(s)"
        )
        return result

    # =========================================================
    # INTERNALS
    # =========================================================

    def _process_postings(self, request: CreateTradingLogRequest, details: TradeDetails) -> ProcessingResult:
        self._owned_trading(request)

        account_ids = [details.stock_account_id]
        if request.log_type not in CASH_LOG_TYPES:
            account_ids.append(details.currency_account_id)
        # fixed lock order across concurrent logs
        for sub_account_id in sorted(account_ids, key=str):
            self._sub_accounts.lock(sub_account_id, "process")
        accounts = [self._owned_account(request, sub_account_id) for sub_account_id in account_ids]

        log_sub_account_id = request.sub_account_id or details.stock_account_id
        if log_sub_account_id not in account_ids:
            raise ValidationError(
                "sub_account_id must be one of the log's accounts",
                field="sub_account_id",
            )

        log_id = new_id()
        transactions = []
        for posting in _postings(request.log_type, details, accounts):
            transaction_id = self._mutator.apply_balance_change(
                posting.sub_account.id,
                posting.new_balance(),
                posting.amount,
                posting.direction,
                request.log_type,
                {
                    "trading_log_id": str(log_id),
                    "price": posting.price,
                    "quote_symbol": posting.quote_symbol,
                },
            )
            transactions.append(self._transactions.get_by_id(transaction_id))

        log = self._build_log(request, sub_account_id=log_sub_account_id)
        log.id = log_id
        log.transaction_id = next(
            t.id for t in transactions if t.sub_account_id == log_sub_account_id
        )
        log.info = {**log.info, "transaction_ids": [str(t.id) for t in transactions]}
        self._logs.create(log)
        return ProcessingResult(log=log, transactions=transactions, sub_accounts=accounts)

    def _build_log(self, request: CreateTradingLogRequest, sub_account_id=None) -> TradingActivityLog:
        log = TradingActivityLog(
            user_id=request.user_id,
            trading_id=request.trading_id,
            sub_account_id=sub_account_id or request.sub_account_id,
            transaction_id=request.transaction_id,
            log_type=request.log_type,
            source=request.source.value,
            message=request.message,
            info=dict(request.info),
        )
        if request.timestamp is not None:
            log.timestamp = request.timestamp
        return log

    def _owned_trading(self, request: CreateTradingLogRequest) -> Trading:
        trading = self._tradings.get_or_raise(request.trading_id)
        if trading.user_id != request.user_id:
            raise AccessDeniedError(
                self.NAME,
                "process",
                "trading belongs to another user",
                {"trading_id": str(request.trading_id)},
            )
        return trading

    def _owned_account(self, request: CreateTradingLogRequest, sub_account_id) -> SubAccount:
        sub_account = self._sub_accounts.get_owned(sub_account_id, request.user_id)
        if sub_account.trading_id != request.trading_id:
            raise ValidationError(
                f"sub-account {sub_account_id} does not belong to trading {request.trading_id}",
                field="sub_account_id",
            )
        return sub_account


def _postings(log_type: str, details: TradeDetails, accounts: List[SubAccount]) -> List[Posting]:
    volume = quantize_amount(details.volume, field="volume")

    if log_type in CASH_LOG_TYPES:
        direction = Direction.CREDIT if log_type == "deposit" else Direction.DEBIT
        return [Posting(accounts[0], volume, direction, CASH_PRICE, details.stock)]

    stock, currency = accounts
    price = quantize_amount(details.price, field="price")
    gross = details.price * details.volume
    if log_type == "long":
        return [
            Posting(stock, volume, Direction.CREDIT, price, details.currency),
            Posting(currency, quantize_amount(gross + details.fee), Direction.DEBIT, price, details.currency),
        ]
    return [
        Posting(stock, volume, Direction.DEBIT, price, details.currency),
        Posting(currency, quantize_amount(gross - details.fee), Direction.CREDIT, price, details.currency),
    ]
