"""
Journal Repositories (time-series).

============================================================
DATA LIFECYCLE
============================================================
- Transaction: APPEND-ONLY, appended by the Balance Mutator only
- TradingActivityLog: APPEND-ONLY, hard-deleted by housekeeping

============================================================
QUERY SURFACE
============================================================
By user / sub-account / trading / time range, each taking the
entity's filter set and a page request. Ordered by timestamp,
newest first.

============================================================
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import delete as sql_delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import ValidationError
from storage.models.journal import TradingActivityLog, Transaction
from storage.models.trading import SubAccount, Trading
from storage.models.user import User
from storage.repositories.base import BaseRepository
from storage.repositories.exceptions import (
    AccessDeniedError,
    ImmutableRecordError,
    TradingLogNotFoundError,
    TransactionNotFoundError,
)
from storage.schemas import Page, PaginationParams, TradingLogFilters, TransactionFilters


class TransactionRepository(BaseRepository[Transaction]):
    """
    Repository for transactions.

    ============================================================
    IMMUTABILITY
    ============================================================
    Transactions are never updated or deleted. New rows come only
    from BalanceMutator through append().

    ============================================================
    """

    not_found_error = TransactionNotFoundError

    def __init__(self, session: Session, **kwargs: Any) -> None:
        super().__init__(session, Transaction, "TransactionRepository", **kwargs)

    def append(self, transaction: Transaction) -> Transaction:
        """Insert a journal row. Called by BalanceMutator inside its lock."""
        return self._add(transaction, operation="append", reference="sub-account")

    # =========================================================
    # QUERIES
    # =========================================================

    def get_by_user(
        self,
        user_id: UUID,
        filters: Optional[TransactionFilters] = None,
        params: Optional[PaginationParams] = None,
    ) -> Page[Transaction]:
        stmt = select(Transaction).where(Transaction.user_id == user_id)
        return self._query(stmt, filters, params, "get_by_user")

    def get_by_sub_account(
        self,
        sub_account_id: UUID,
        filters: Optional[TransactionFilters] = None,
        params: Optional[PaginationParams] = None,
    ) -> Page[Transaction]:
        stmt = select(Transaction).where(Transaction.sub_account_id == sub_account_id)
        return self._query(stmt, filters, params, "get_by_sub_account")

    def get_by_trading(
        self,
        trading_id: UUID,
        filters: Optional[TransactionFilters] = None,
        params: Optional[PaginationParams] = None,
    ) -> Page[Transaction]:
        stmt = select(Transaction).where(Transaction.trading_id == trading_id)
        return self._query(stmt, filters, params, "get_by_trading")

    def get_by_time_range(
        self,
        start_time: datetime,
        end_time: datetime,
        filters: Optional[TransactionFilters] = None,
        params: Optional[PaginationParams] = None,
        user_id: Optional[UUID] = None,
    ) -> Page[Transaction]:
        if start_time > end_time:
            raise ValidationError("start_time must not be after end_time", field="start_time")
        stmt = select(Transaction).where(
            Transaction.timestamp >= start_time,
            Transaction.timestamp <= end_time,
        )
        if user_id is not None:
            stmt = stmt.where(Transaction.user_id == user_id)
        return self._query(stmt, filters, params, "get_by_time_range")

    def _query(
        self,
        stmt: Any,
        filters: Optional[TransactionFilters],
        params: Optional[PaginationParams],
        operation: str,
    ) -> Page[Transaction]:
        if filters is not None:
            if filters.direction is not None:
                stmt = stmt.where(Transaction.direction == filters.direction.value)
            if filters.reason:
                stmt = stmt.where(Transaction.reason == filters.reason)
            if filters.start_time is not None:
                stmt = stmt.where(Transaction.timestamp >= filters.start_time)
            if filters.end_time is not None:
                stmt = stmt.where(Transaction.timestamp <= filters.end_time)
            if filters.min_amount is not None:
                stmt = stmt.where(Transaction.amount >= filters.min_amount)
            if filters.max_amount is not None:
                stmt = stmt.where(Transaction.amount <= filters.max_amount)
        stmt = stmt.order_by(Transaction.timestamp.desc(), Transaction.id)
        return self._paginate(stmt, params, operation)

    # =========================================================
    # IMMUTABILITY
    # =========================================================

    def update(self, transaction_id: UUID, patch: Any = None) -> None:
        raise ImmutableRecordError(self._repository_name, transaction_id, "update")

    def delete(self, transaction_id: UUID) -> None:
        raise ImmutableRecordError(self._repository_name, transaction_id, "delete")


class TradingActivityLogRepository(BaseRepository[TradingActivityLog]):
    """
    Repository for trading activity logs.

    Linked sub-accounts and transactions must belong to the same
    user as the log entry.
    """

    not_found_error = TradingLogNotFoundError

    def __init__(self, session: Session, **kwargs: Any) -> None:
        super().__init__(session, TradingActivityLog, "TradingActivityLogRepository", **kwargs)

    def create(self, log: TradingActivityLog) -> TradingActivityLog:
        """
        Append a log entry.

        Raises:
            ReferenceNotFoundError: User, trading, sub-account or
                transaction does not exist
            AccessDeniedError: A linked row belongs to another user
        """
        log.apply_defaults()
        self._validate(log)
        self._resolve(User, log.user_id, "user", "create")
        trading = self._resolve(Trading, log.trading_id, "trading", "create")
        self._require_owner(trading.user_id, log.user_id, "trading")

        if log.sub_account_id is not None:
            sub_account = self._resolve(SubAccount, log.sub_account_id, "sub-account", "create")
            self._require_owner(sub_account.user_id, log.user_id, "sub-account")
            if sub_account.trading_id != log.trading_id:
                raise ValidationError(
                    "sub-account does not belong to the log's trading",
                    field="sub_account_id",
                )

        if log.transaction_id is not None:
            transaction = self._resolve(Transaction, log.transaction_id, "transaction", "create")
            self._require_owner(transaction.user_id, log.user_id, "transaction")
            if log.sub_account_id is not None and transaction.sub_account_id != log.sub_account_id:
                raise ValidationError(
                    "transaction does not belong to the log's sub-account",
                    field="transaction_id",
                )

        return self._add(log, reference="log reference")

    # =========================================================
    # QUERIES
    # =========================================================

    def get_by_user(
        self,
        user_id: UUID,
        filters: Optional[TradingLogFilters] = None,
        params: Optional[PaginationParams] = None,
    ) -> Page[TradingActivityLog]:
        stmt = select(TradingActivityLog).where(TradingActivityLog.user_id == user_id)
        return self._query(stmt, filters, params, "get_by_user")

    def get_by_sub_account(
        self,
        sub_account_id: UUID,
        filters: Optional[TradingLogFilters] = None,
        params: Optional[PaginationParams] = None,
    ) -> Page[TradingActivityLog]:
        stmt = select(TradingActivityLog).where(TradingActivityLog.sub_account_id == sub_account_id)
        return self._query(stmt, filters, params, "get_by_sub_account")

    def get_by_trading(
        self,
        trading_id: UUID,
        filters: Optional[TradingLogFilters] = None,
        params: Optional[PaginationParams] = None,
    ) -> Page[TradingActivityLog]:
        stmt = select(TradingActivityLog).where(TradingActivityLog.trading_id == trading_id)
        return self._query(stmt, filters, params, "get_by_trading")

    def get_by_time_range(
        self,
        start_time: datetime,
        end_time: datetime,
        filters: Optional[TradingLogFilters] = None,
        params: Optional[PaginationParams] = None,
        user_id: Optional[UUID] = None,
    ) -> Page[TradingActivityLog]:
        if start_time > end_time:
            raise ValidationError("start_time must not be after end_time", field="start_time")
        stmt = select(TradingActivityLog).where(
            TradingActivityLog.timestamp >= start_time,
            TradingActivityLog.timestamp <= end_time,
        )
        if user_id is not None:
            stmt = stmt.where(TradingActivityLog.user_id == user_id)
        return self._query(stmt, filters, params, "get_by_time_range")

    def get_by_transaction(self, transaction_id: UUID) -> Optional[TradingActivityLog]:
        stmt = select(TradingActivityLog).where(
            TradingActivityLog.transaction_id == transaction_id
        ).limit(1)
        return self._execute_scalar(stmt, "get_by_transaction")

    def _query(
        self,
        stmt: Any,
        filters: Optional[TradingLogFilters],
        params: Optional[PaginationParams],
        operation: str,
    ) -> Page[TradingActivityLog]:
        if filters is not None:
            if filters.log_type:
                stmt = stmt.where(TradingActivityLog.log_type == filters.log_type)
            if filters.source is not None:
                stmt = stmt.where(TradingActivityLog.source == filters.source.value)
            if filters.start_time is not None:
                stmt = stmt.where(TradingActivityLog.timestamp >= filters.start_time)
            if filters.end_time is not None:
                stmt = stmt.where(TradingActivityLog.timestamp <= filters.end_time)
        stmt = stmt.order_by(TradingActivityLog.timestamp.desc(), TradingActivityLog.id)
        return self._paginate(stmt, params, operation)

    # =========================================================
    # HOUSEKEEPING
    # =========================================================

    def update(self, log_id: UUID, patch: Any = None) -> None:
        raise ImmutableRecordError(self._repository_name, log_id, "update")

    def delete(self, log_id: UUID) -> None:
        """Hard-delete one entry."""
        log = self._get_by_id_or_raise(log_id, "delete")
        self._hard_delete(log)

    def delete_older_than(self, cutoff: datetime) -> int:
        """
        Hard-delete entries with a timestamp before ``cutoff``.

        Returns:
            Number of deleted entries
        """
        self._check_cancelled("delete_older_than")
        stmt = (
            sql_delete(TradingActivityLog)
            .where(TradingActivityLog.timestamp < cutoff)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self._session.execute(stmt)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "delete_older_than", {"cutoff": cutoff.isoformat()})
        self._logger.info(f"Purged {result.rowcount} trading logs older than {cutoff.isoformat()}")
        return result.rowcount

    def _require_owner(self, owner_id: UUID, user_id: UUID, reference: str) -> None:
        if owner_id != user_id:
            raise AccessDeniedError(
                self._repository_name,
                "create",
                f"{reference} belongs to another user",
                {"user_id": str(user_id)},
            )
