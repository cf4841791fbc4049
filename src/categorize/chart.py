"""Chart of accounts: category code → classification metadata.

The chart is reference data. It is loaded once per pipeline or engine run
through a ChartSource and never mutated afterwards, so one snapshot can be
shared by concurrent runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from src.config import Config

logger = logging.getLogger(__name__)

UNCATEGORIZED_CODE = "000"

# Excerpt size sent to the LLM; keeps the prompt bounded.
DEFAULT_EXCERPT_LIMIT = 30


@dataclass(frozen=True)
class AccountCategory:
    code: str
    account_type: str
    account: str
    parent_account: str | None = None
    description: str | None = None


ChartOfAccounts = dict[str, AccountCategory]


class ChartSource(Protocol):
    async def get_full_chart_of_accounts(self) -> ChartOfAccounts:
        ...


# Built-in chart used when no chart_of_accounts.yaml is configured.
_STATIC_ENTRIES: tuple[AccountCategory, ...] = (
    AccountCategory("111", "Income", "Base Salary", "Salary"),
    AccountCategory("112", "Income", "Bonus and commissions", "Salary"),
    AccountCategory("113", "Income", "Reimbursements", "Salary",
                    "Medical, travel, phone, health etc"),
    AccountCategory("114", "Income", "Equity compensation", "Salary",
                    "RSU/ ESPP / Options / Grants"),
    AccountCategory("231", "Expense", "Groceries and Food", "Daily Living"),
    AccountCategory("232", "Expense", "Child Education", "Daily Living"),
    AccountCategory("272", "Expense", "Dining out", "Leisure"),
    AccountCategory("311", "Assets", "Cash on hand", "Bank and Cash"),
    AccountCategory("312", "Assets", "Bank account 1", "Bank and Cash"),
    AccountCategory("421", "Liabilities", "Credit Card 1", "Accounts Payable"),
)


class StaticChartSource:
    """Serves the built-in ten-entry chart."""

    async def get_full_chart_of_accounts(self) -> ChartOfAccounts:
        return {entry.code: entry for entry in _STATIC_ENTRIES}


class YamlChartSource:
    """Serves the chart defined in config/chart_of_accounts.yaml."""

    def __init__(self, config: Config):
        self.config = config

    async def get_full_chart_of_accounts(self) -> ChartOfAccounts:
        return build_chart(self.config.chart_of_accounts)


def build_chart(raw: dict[str, dict]) -> ChartOfAccounts:
    """Convert raw config entries into AccountCategory objects.

    Entries without an ``account_type`` or ``account`` are skipped with a
    warning rather than failing the whole chart.
    """
    chart: ChartOfAccounts = {}
    for code, fields in raw.items():
        account_type = fields.get("account_type")
        account = fields.get("account")
        if not account_type or not account:
            logger.warning(
                "Chart entry '%s' missing account_type or account, skipping", code
            )
            continue
        chart[str(code)] = AccountCategory(
            code=str(code),
            account_type=str(account_type),
            account=str(account),
            parent_account=fields.get("parent_account") or None,
            description=fields.get("description") or None,
        )
    return chart


def validate_account_code(code: str | None, chart: ChartOfAccounts) -> bool:
    return bool(code) and code in chart


def get_account_by_code(code: str, chart: ChartOfAccounts) -> AccountCategory | None:
    return chart.get(code)


def chart_excerpt(
    chart: ChartOfAccounts, limit: int = DEFAULT_EXCERPT_LIMIT
) -> list[dict]:
    """First ``limit`` entries in chart order, shaped for the LLM prompt."""
    excerpt: list[dict] = []
    for code, entry in chart.items():
        if len(excerpt) >= limit:
            break
        excerpt.append({
            "code": code,
            "accountType": entry.account_type,
            "parentAccount": entry.parent_account,
            "account": entry.account,
            "description": entry.description or "",
        })
    return excerpt
