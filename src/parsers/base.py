"""Base parser: shared interface, data structures, and utility functions."""

from __future__ import annotations

import asyncio
import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from src.categorize.chart import ChartOfAccounts
from src.categorize.rules import RuleCategorizer

logger = logging.getLogger(__name__)

SUPPORTED_FILE_TYPES = ("csv", "pdf")


class ParseError(Exception):
    """Raised when a file cannot be read or its format cannot be interpreted."""


@dataclass
class RawRecord:
    """Intermediate representation output by parsers, before validation."""
    date: str
    description: str
    amount: float          # NaN when the row's amount could not be parsed
    type: str | None = None          # "debit" or "credit"
    account_code: str | None = None  # best-effort rule hint from the parser


class BaseParser(ABC):
    """Abstract base for statement parsers.

    Args:
        rules: Optional rule categorizer used for the best-effort hint pass.
        chart: Chart snapshot the hint pass matches against. The hint
            pass only runs when both rules and chart are given.

    Attributes:
        skipped_count: Number of rows skipped during the last parse().
    """

    def __init__(
        self,
        rules: RuleCategorizer | None = None,
        chart: ChartOfAccounts | None = None,
    ):
        self.rules = rules
        self.chart = chart
        self.skipped_count: int = 0

    async def parse(self, file_path: Path | str) -> list[RawRecord]:
        """Parse a statement file into raw records.

        The blocking read runs in a worker thread. Raises ParseError when
        the file is unreadable or not interpretable at all; individual bad
        rows are skipped and counted instead.
        """
        path = Path(file_path)
        self.skipped_count = 0
        records = await asyncio.to_thread(self._parse_sync, path)
        self._attach_hints(records)
        return records

    @abstractmethod
    def _parse_sync(self, file_path: Path) -> list[RawRecord]:
        """Blocking parse implementation. Must raise ParseError on fatal errors."""

    def _attach_hints(self, records: list[RawRecord]) -> None:
        """Best-effort rule categorization of freshly parsed records."""
        if self.rules is None or not self.chart:
            return
        for record in records:
            if record.account_code:
                continue
            try:
                code = self.rules.match(record.description, record.amount, self.chart)
            except Exception:
                logger.exception(
                    "Rule hint failed for record '%s'", record.description[:50]
                )
                continue
            if code:
                record.account_code = code


def normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


_AMOUNT_STRIP = re.compile(r"[$,\s+]")


def parse_amount(value) -> float:
    """Parse a statement amount string.

    Handles currency symbols, thousands separators and accounting-style
    parentheses for negatives. Returns NaN when the value is not a number.
    """
    if value is None:
        return math.nan
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return math.nan
    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    text = _AMOUNT_STRIP.sub("", text)
    if text.endswith("-"):
        negative = not negative
        text = text[:-1]
    try:
        amount = float(text)
    except ValueError:
        return math.nan
    if not math.isfinite(amount):
        return math.nan
    return -amount if negative else amount


def file_type_from_path(file_path: Path | str) -> str | None:
    """Map a file extension to a supported file type, or None."""
    suffix = Path(file_path).suffix.lower()
    if suffix == ".csv":
        return "csv"
    if suffix == ".pdf":
        return "pdf"
    return None
