"""
Account Lifecycle.

============================================================
PURPOSE
============================================================
Whole-account operations over a user's ownership closure:
identities, bindings, tradings, sub-accounts and the journal.

============================================================
DELETION ORDER
============================================================
Nothing cascades in the schema, so teardown is explicit:
1. Refuse if any live sub-account still holds a balance
2. Soft-delete sub-accounts, then tradings, then private bindings
3. Soft-delete OAuth identities
4. Soft-delete the user

Transactions and activity logs are retained.

============================================================
"""

import logging
from typing import Any, Callable, Dict, List, TypeVar
from uuid import UUID

from storage.repositories.exceptions import HasBalanceError
from storage.schemas import (
    MAX_LIMIT,
    OAuthIdentityResponse,
    Page,
    PaginationParams,
    SubAccountResponse,
    TradingLogResponse,
    TradingResponse,
    TransactionResponse,
    UserResponse,
)
from storage.unit_of_work import Repositories


logger = logging.getLogger(__name__)

T = TypeVar("T")


def export_user_data(repos: Repositories, user_id: UUID) -> Dict[str, Any]:
    """
    Collect everything the store holds about a user.

    Credentials are never exported; bindings carry the masked key.

    Raises:
        UserNotFoundError: If the user does not exist
    """
    user = repos.users.get_or_raise(user_id)

    bindings = _collect(lambda params: repos.bindings.get_by_user(user_id, params))
    tradings = _collect(lambda params: repos.tradings.get_by_user(user_id, params))
    transactions = _collect(lambda params: repos.transactions.get_by_user(user_id, params=params))
    logs = _collect(lambda params: repos.logs.get_by_user(user_id, params=params))

    export = {
        "user": UserResponse.model_validate(user).model_dump(mode="json"),
        "oauth_identities": [
            OAuthIdentityResponse.model_validate(identity).model_dump(mode="json")
            for identity in repos.oauth.get_by_user(user_id)
        ],
        "exchange_bindings": [
            repos.bindings.to_response(binding).model_dump(mode="json") for binding in bindings
        ],
        "tradings": [
            TradingResponse.from_trading(trading).model_dump(mode="json") for trading in tradings
        ],
        "sub_accounts": [
            SubAccountResponse.model_validate(sub_account).model_dump(mode="json")
            for sub_account in repos.sub_accounts.get_by_user(user_id)
        ],
        "transactions": [
            TransactionResponse.model_validate(txn).model_dump(mode="json") for txn in transactions
        ],
        "trading_logs": [
            TradingLogResponse.model_validate(log).model_dump(mode="json") for log in logs
        ],
    }
    logger.info(
        f"Exported user {user_id}: {len(tradings)} tradings, "
        f"{len(transactions)} transactions, {len(logs)} logs"
    )
    return export


def delete_user_account(repos: Repositories, user_id: UUID) -> Dict[str, int]:
    """
    Tear down a user and every live entity the user owns.

    Run inside one unit of work; a failure leaves nothing half-deleted
    once the caller rolls back.

    Returns:
        Count of soft-deleted rows per entity

    Raises:
        UserNotFoundError: If the user does not exist
        HasBalanceError: If any live sub-account holds a balance
    """
    repos.users.get_or_raise(user_id)

    sub_accounts = repos.sub_accounts.get_by_user(user_id)
    for sub_account in sub_accounts:
        if sub_account.current_balance != 0:
            raise HasBalanceError("AccountLifecycle", sub_account.id, sub_account.current_balance)

    for sub_account in sub_accounts:
        repos.sub_accounts.delete(sub_account.id)

    tradings = _collect(lambda params: repos.tradings.get_by_user(user_id, params))
    for trading in tradings:
        repos.tradings.delete(trading.id)

    bindings = _collect(lambda params: repos.bindings.get_by_user(user_id, params))
    for binding in bindings:
        repos.bindings.delete(binding.id)

    identities = repos.oauth.delete_by_user(user_id)
    repos.users.delete(user_id)

    summary = {
        "sub_accounts": len(sub_accounts),
        "tradings": len(tradings),
        "exchange_bindings": len(bindings),
        "oauth_identities": identities,
        "users": 1,
    }
    logger.info(f"Deleted account {user_id}: {summary}")
    return summary


def _collect(fetch: Callable[[PaginationParams], Page[T]]) -> List[T]:
    """Drain a paginated query."""
    items: List[T] = []
    page_number = 1
    while True:
        page = fetch(PaginationParams(page=page_number, limit=MAX_LIMIT))
        items.extend(page.items)
        if page_number >= page.total_pages:
            return items
        page_number += 1
