"""
Trading Repositories.

============================================================
REPOSITORIES
============================================================
- TradingRepository: tradings bound to exchange bindings
- SubAccountRepository: per-symbol balance sheets

============================================================
INTEGRITY RULES
============================================================
- A trading's binding must resolve; a private binding must
  belong to the trading's owner
- A sub-account's trading must resolve and share its owner
- Sub-account balances change only through the Balance Mutator
- Deleting a trading with live sub-accounts is refused; deleting
  a sub-account with a non-zero balance is refused

============================================================
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from storage.models.enums import TradingStatus
from storage.models.exchange import ExchangeBinding
from storage.models.trading import SubAccount, Trading
from storage.models.user import User
from storage.repositories.base import BaseRepository
from storage.repositories.exceptions import (
    AccessDeniedError,
    HasBalanceError,
    InUseError,
    SubAccountNotFoundError,
    TradingNotFoundError,
)
from storage.schemas import (
    CreateSubAccountRequest,
    CreateTradingRequest,
    Page,
    PaginationParams,
)


class TradingRepository(BaseRepository[Trading]):
    """
    Repository for tradings.

    Every lookup eager-loads the bound exchange binding.
    """

    not_found_error = TradingNotFoundError
    immutable_fields = frozenset({"user_id"})

    def __init__(self, session: Session, **kwargs: Any) -> None:
        super().__init__(session, Trading, "TradingRepository", **kwargs)

    def create(self, trading: Trading) -> Trading:
        """
        Create a trading.

        Raises:
            ReferenceNotFoundError: Owner or binding does not exist
            AccessDeniedError: Binding is private to another user
        """
        trading.apply_defaults()
        self._validate(trading)
        self._resolve(User, trading.user_id, "user", "create")
        binding = self._resolve_binding(trading.exchange_binding_id, trading.user_id, "create")
        trading.exchange_binding = binding
        self._add(trading, context={"reference_id": trading.exchange_binding_id}, reference="exchange binding")
        self._logger.info(f"Created trading {trading.id} on binding {binding.id}")
        return trading

    def create_from_request(self, request: CreateTradingRequest) -> Trading:
        return self.create(
            Trading(
                user_id=request.user_id,
                exchange_binding_id=request.exchange_binding_id,
                name=request.name,
                trading_type=request.trading_type.value,
                status=request.status.value,
                info=dict(request.info),
            )
        )

    def get_by_user(
        self,
        user_id: UUID,
        params: Optional[PaginationParams] = None,
        trading_type: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Page[Trading]:
        stmt = self._live(select(Trading).where(Trading.user_id == user_id))
        if trading_type:
            stmt = stmt.where(Trading.trading_type == trading_type)
        if status:
            stmt = stmt.where(Trading.status == status)
        stmt = stmt.order_by(Trading.created_at.desc(), Trading.id)
        return self._paginate(stmt, params, "get_by_user")

    def get_by_exchange_binding(self, binding_id: UUID) -> List[Trading]:
        stmt = self._live(
            select(Trading).where(Trading.exchange_binding_id == binding_id)
        ).order_by(Trading.created_at.desc())
        return self._execute_query(stmt, "get_by_exchange_binding")

    def get_active_by_user(self, user_id: UUID) -> List[Trading]:
        stmt = self._live(
            select(Trading).where(
                Trading.user_id == user_id,
                Trading.status == TradingStatus.ACTIVE.value,
            )
        ).order_by(Trading.created_at.desc())
        return self._execute_query(stmt, "get_active_by_user")

    def get_or_raise(self, trading_id: UUID) -> Trading:
        return self._get_by_id_or_raise(trading_id)

    def update(self, trading_id: UUID, patch: Dict[str, Any]) -> Trading:
        """
        Partially update a trading.

        Rebinding re-runs the binding resolution and ownership rule.
        """
        trading = self._get_by_id_or_raise(trading_id, "update")
        binding = None
        new_binding_id = patch.get("exchange_binding_id")
        if new_binding_id is not None and new_binding_id != trading.exchange_binding_id:
            binding = self._resolve_binding(new_binding_id, trading.user_id, "update")
        self._apply_patch(trading, patch)
        if binding is not None:
            trading.exchange_binding = binding
        self._flush("update", context={"reference_id": new_binding_id}, reference="exchange binding")
        return trading

    def delete(self, trading_id: UUID) -> None:
        """
        Soft-delete a trading.

        Raises:
            InUseError: If any live sub-account references the trading
        """
        trading = self._get_by_id_or_raise(trading_id, "delete")
        in_use = self._count(
            select(SubAccount.id).where(
                SubAccount.trading_id == trading_id,
                SubAccount.deleted_at.is_(None),
            ),
            "delete_check",
        )
        if in_use:
            raise InUseError(self._repository_name, trading_id, f"{in_use} sub-account(s)")
        self._soft_delete(trading)

    def _resolve_binding(self, binding_id: UUID, owner_id: UUID, operation: str) -> ExchangeBinding:
        binding = self._resolve(ExchangeBinding, binding_id, "exchange binding", operation)
        if binding.is_private and binding.user_id != owner_id:
            raise AccessDeniedError(
                self._repository_name,
                operation,
                "exchange binding is private to another user",
                {"binding_id": str(binding_id), "user_id": str(owner_id)},
            )
        return binding


class SubAccountRepository(BaseRepository[SubAccount]):
    """
    Repository for sub-accounts.

    Balance mutation is not exposed here; use BalanceMutator.
    """

    not_found_error = SubAccountNotFoundError
    immutable_fields = frozenset({"balance", "user_id", "trading_id"})

    def __init__(self, session: Session, **kwargs: Any) -> None:
        super().__init__(session, SubAccount, "SubAccountRepository", **kwargs)

    def _immutable_hint(self, field_name: str) -> str:
        if field_name == "balance":
            return "use BalanceMutator.apply_balance_change()"
        return ""

    def create(self, sub_account: SubAccount) -> SubAccount:
        """
        Create a sub-account with a zero balance.

        Raises:
            ReferenceNotFoundError: Trading does not exist
            AccessDeniedError: Trading belongs to another user
        """
        sub_account.balance = Decimal("0")
        sub_account.apply_defaults()
        self._validate(sub_account)
        trading = self._resolve(Trading, sub_account.trading_id, "trading", "create")
        if trading.user_id != sub_account.user_id:
            raise AccessDeniedError(
                self._repository_name,
                "create",
                "trading belongs to another user",
                {"trading_id": str(trading.id)},
            )
        self._add(sub_account, context={"reference_id": sub_account.trading_id}, reference="trading")
        self._logger.info(f"Created sub-account {sub_account.id} ({sub_account.symbol})")
        return sub_account

    def create_from_request(self, request: CreateSubAccountRequest) -> SubAccount:
        return self.create(SubAccount(**request.model_dump()))

    def get_by_user(self, user_id: UUID, trading_id: Optional[UUID] = None) -> List[SubAccount]:
        stmt = self._live(select(SubAccount).where(SubAccount.user_id == user_id))
        if trading_id is not None:
            stmt = stmt.where(SubAccount.trading_id == trading_id)
        return self._execute_query(stmt.order_by(SubAccount.created_at.desc()), "get_by_user")

    def get_by_trading(self, trading_id: UUID) -> List[SubAccount]:
        stmt = self._live(
            select(SubAccount).where(SubAccount.trading_id == trading_id)
        ).order_by(SubAccount.created_at.desc())
        return self._execute_query(stmt, "get_by_trading")

    def get_by_symbol(self, user_id: UUID, symbol: str) -> List[SubAccount]:
        """Every sub-account of the user holding ``symbol``, across tradings."""
        stmt = self._live(
            select(SubAccount).where(SubAccount.user_id == user_id, SubAccount.symbol == symbol)
        ).order_by(SubAccount.created_at.desc())
        return self._execute_query(stmt, "get_by_symbol")

    def get_or_raise(self, sub_account_id: UUID) -> SubAccount:
        return self._get_by_id_or_raise(sub_account_id)

    def lock(self, sub_account_id: UUID, operation: str = "lock") -> SubAccount:
        """Load a live sub-account under SELECT ... FOR UPDATE."""
        return self._get_by_id_or_raise(sub_account_id, operation, for_update=True)

    def get_owned(self, sub_account_id: UUID, user_id: UUID) -> SubAccount:
        """
        Load a sub-account on behalf of a user.

        Raises:
            SubAccountNotFoundError: No live sub-account
            AccessDeniedError: Sub-account of another user
        """
        sub_account = self._get_by_id_or_raise(sub_account_id)
        if sub_account.user_id != user_id:
            raise AccessDeniedError(
                self._repository_name,
                "get",
                "sub-account belongs to another user",
                {"sub_account_id": str(sub_account_id)},
            )
        return sub_account

    def update(self, sub_account_id: UUID, patch: Dict[str, Any]) -> SubAccount:
        sub_account = self._get_by_id_or_raise(sub_account_id, "update")
        self._apply_patch(sub_account, patch)
        self._flush("update")
        return sub_account

    def delete(self, sub_account_id: UUID) -> None:
        """
        Soft-delete an empty sub-account.

        Raises:
            HasBalanceError: If the balance is not zero
        """
        sub_account = self._get_by_id_or_raise(sub_account_id, "delete", for_update=True)
        if sub_account.current_balance != 0:
            raise HasBalanceError(self._repository_name, sub_account_id, sub_account.current_balance)
        self._soft_delete(sub_account)
