"""User-driven categorization: a person picks the code for transactions."""

from __future__ import annotations

import asyncio
import logging

from src.categorize.chart import ChartOfAccounts, validate_account_code
from src.database.models import TransactionCategorization
from src.database.repository import Repository

logger = logging.getLogger(__name__)

USER_CONFIDENCE = 1.0


async def assign_user_category(
    repo: Repository,
    chart: ChartOfAccounts,
    user_id: str,
    transaction_ids: list[str],
    account_code: str,
    reasoning: str = "Batch categorization by user",
) -> int:
    """Assign ``account_code`` to the user's transactions.

    Transactions that do not exist or belong to another user are ignored.
    Each assignment appends a "user" categorization to the history.

    Returns the number of transactions updated.

    Raises:
        ValueError: If the code is not in the chart of accounts.
    """
    if not validate_account_code(account_code, chart):
        raise ValueError(f"Unknown account code: {account_code}")

    ids = list(dict.fromkeys(transaction_ids))
    txns = await asyncio.to_thread(repo.get_transactions_by_ids, ids)
    owned = [t for t in txns if t.user_id == user_id]
    if len(owned) < len(ids):
        logger.warning(
            "Ignoring %d transaction id(s) not owned by user or not found",
            len(ids) - len(owned),
        )

    updated = 0
    for txn in owned:
        await asyncio.to_thread(
            repo.record_categorization,
            TransactionCategorization(
                transaction_id=txn.id,
                category_code=account_code,
                confidence=USER_CONFIDENCE,
                source="user",
                reasoning=reasoning,
            ),
        )
        updated += 1
    return updated
