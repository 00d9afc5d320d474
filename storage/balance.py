"""
Balance Mutator.

============================================================
PURPOSE
============================================================
The only code path that changes SubAccount.balance. Each call
locks the sub-account row, verifies the caller's arithmetic,
writes the new balance and appends the paired Transaction as
one atomic unit.

============================================================
TRANSACTION BOUNDARY
============================================================
- Session already in a transaction: runs inside a SAVEPOINT and
  leaves the commit to the caller
- Otherwise: opens its own transaction and commits it

Concurrent calls for the same sub-account are serialized by the
row lock; calls for different sub-accounts do not contend.

============================================================
"""

import logging
from contextlib import contextmanager
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional, Union
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.clock import ClockProtocol, SystemClock
from core.context import OperationContext
from core.exceptions import ValidationError
from storage.models.base import AmountLike, quantize_amount
from storage.models.enums import Direction, enum_values
from storage.models.journal import REASON_MAX_LENGTH, Transaction
from storage.models.trading import SubAccount
from storage.repositories.exceptions import (
    BalanceArithmeticMismatchError,
    NegativeBalanceError,
    TransactionError,
)
from storage.repositories.journal import TransactionRepository
from storage.repositories.tradings import SubAccountRepository
from storage.schemas import BalanceChangeRequest


OVERDRAFT_FLAG = "allow_overdraft"


class BalanceMutator:
    """
    Atomic balance transition plus journal entry.

    Usage:
        mutator = BalanceMutator(session)
        txn_id = mutator.apply_balance_change(
            sub_account_id, Decimal("0.5"), Decimal("0.5"), "debit", "withdraw"
        )
    """

    NAME = "BalanceMutator"

    def __init__(
        self,
        session: Session,
        context: Optional[OperationContext] = None,
        clock: Optional[ClockProtocol] = None,
    ) -> None:
        self._session = session
        self._clock = clock or SystemClock()
        self._sub_accounts = SubAccountRepository(session, context=context, clock=self._clock)
        self._transactions = TransactionRepository(session, context=context, clock=self._clock)
        self._logger = logging.getLogger(f"repository.{self.NAME}")

    # =========================================================
    # PUBLIC API
    # =========================================================

    def apply_balance_change(
        self,
        sub_account_id: UUID,
        new_balance: AmountLike,
        amount: AmountLike,
        direction: Union[Direction, str],
        reason: str,
        info: Optional[Dict[str, Any]] = None,
    ) -> UUID:
        """
        Move a sub-account to ``new_balance`` and journal the change.

        Args:
            sub_account_id: Target sub-account
            new_balance: Balance the caller computed
            amount: Absolute amount (> 0)
            direction: debit or credit
            reason: Free-form reason tag
            info: Journal attributes; ``allow_overdraft`` permits a
                negative result, ``price``/``quote_symbol`` fill the
                matching Transaction columns

        Returns:
            Id of the new Transaction

        Raises:
            ValidationError: Bad amount, direction or reason
            SubAccountNotFoundError: Missing or soft-deleted sub-account
            BalanceArithmeticMismatchError: old +/- amount != new_balance
            NegativeBalanceError: Negative result without overdraft
        """
        amount_q, direction_value, reason = self._check_arguments(amount, direction, reason)
        new_q = quantize_amount(new_balance, field="new_balance")

        with atomic(self._session, self.NAME, "apply_balance_change"):
            sub_account = self._sub_accounts.lock(sub_account_id, "apply_balance_change")
            transaction = self._apply(sub_account, new_q, amount_q, direction_value, reason, info)
        return transaction.id

    def apply_relative_change(
        self,
        sub_account_id: UUID,
        amount: AmountLike,
        direction: Union[Direction, str],
        reason: str,
        info: Optional[Dict[str, Any]] = None,
    ) -> UUID:
        """Apply ``amount`` in ``direction`` to whatever the balance is under the lock."""
        amount_q, direction_value, reason = self._check_arguments(amount, direction, reason)

        with atomic(self._session, self.NAME, "apply_relative_change"):
            sub_account = self._sub_accounts.lock(sub_account_id, "apply_relative_change")
            new_q = _expected_balance(sub_account.current_balance, amount_q, direction_value)
            transaction = self._apply(sub_account, new_q, amount_q, direction_value, reason, info)
        return transaction.id

    def apply_request(self, request: BalanceChangeRequest) -> UUID:
        return self.apply_balance_change(
            request.sub_account_id,
            request.new_balance,
            request.amount,
            request.direction,
            request.reason,
            request.info,
        )

    # =========================================================
    # INTERNALS
    # =========================================================

    def _apply(
        self,
        sub_account: SubAccount,
        new_balance: Decimal,
        amount: Decimal,
        direction: str,
        reason: str,
        info: Optional[Dict[str, Any]],
    ) -> Transaction:
        old_balance = sub_account.current_balance
        expected = _expected_balance(old_balance, amount, direction)
        if new_balance != expected:
            raise BalanceArithmeticMismatchError(
                self.NAME, old_balance, amount, direction, new_balance, expected
            )

        info = dict(info or {})
        if new_balance < 0 and info.get(OVERDRAFT_FLAG) is not True:
            raise NegativeBalanceError(self.NAME, sub_account.id, new_balance)

        price = info.get("price")
        transaction = Transaction(
            user_id=sub_account.user_id,
            trading_id=sub_account.trading_id,
            sub_account_id=sub_account.id,
            timestamp=self._clock.now(),
            direction=direction,
            reason=reason,
            amount=amount,
            closing_balance=new_balance,
            price=quantize_amount(price, field="price") if price is not None else None,
            quote_symbol=info.get("quote_symbol"),
            info=_json_safe({**info, "previous_balance": str(old_balance)}),
        )
        transaction.apply_defaults()
        transaction.validate()

        sub_account.balance = new_balance
        self._transactions.append(transaction)
        self._logger.info(
            f"Sub-account {sub_account.id}: {old_balance} -> {new_balance} "
            f"({direction} {amount}, {reason}) txn={transaction.id}"
        )
        return transaction

    def _check_arguments(
        self,
        amount: AmountLike,
        direction: Union[Direction, str],
        reason: str,
    ):
        amount_q = quantize_amount(amount)
        if amount_q <= 0:
            raise ValidationError("amount must be positive", field="amount")

        direction_value = direction.value if isinstance(direction, Direction) else direction
        if direction_value not in enum_values(Direction):
            raise ValidationError(
                f"direction must be one of {enum_values(Direction)}",
                field="direction",
            )

        if not reason or not reason.strip():
            raise ValidationError("reason is required", field="reason")
        if len(reason) > REASON_MAX_LENGTH:
            raise ValidationError(
                f"reason must be at most {REASON_MAX_LENGTH} characters",
                field="reason",
            )
        return amount_q, direction_value, reason


def _expected_balance(old_balance: Decimal, amount: Decimal, direction: str) -> Decimal:
    if direction == Direction.CREDIT.value:
        return old_balance + amount
    return old_balance - amount


def _json_safe(info: Dict[str, Any]) -> Dict[str, Any]:
    return {key: str(value) if isinstance(value, Decimal) else value for key, value in info.items()}


@contextmanager
def atomic(session: Session, owner: str, operation: str) -> Iterator[None]:
    """
    SAVEPOINT when ``session`` is already in a transaction,
    otherwise a transaction of its own that commits on exit.
    """
    if session.in_transaction():
        with session.begin_nested():
            yield
        return

    try:
        with session.begin():
            yield
    except SQLAlchemyError as e:
        raise TransactionError(owner, operation, "commit", str(e)) from e
