"""Generic bank statement CSV parser.

Banks disagree on header spelling, so columns are looked up through alias
lists (case-insensitive). Debit/credit direction is inferred, in order,
from an explicit type column, the sign of the amount, then separate
debit/credit columns; with no signal the row defaults to a debit.

Rows are never fatal: fields that cannot be read are left empty (amount
NaN) so the ingestion pipeline can report the row, and entirely blank
rows are skipped and counted.
"""

from __future__ import annotations

import csv
import logging
import math
from pathlib import Path

from .base import BaseParser, ParseError, RawRecord, parse_amount

logger = logging.getLogger(__name__)

DATE_COLUMNS = ("date", "transaction_date", "transaction date", "posted date", "posting date")
DESCRIPTION_COLUMNS = ("description", "desc", "narrative", "memo", "payee", "details")
AMOUNT_COLUMNS = ("amount", "transaction amount")
TYPE_COLUMNS = ("type", "transaction type", "dr/cr")
DEBIT_COLUMNS = ("debit", "withdrawal", "withdrawals")
CREDIT_COLUMNS = ("credit", "deposit", "deposits")

_DEBIT_TOKENS = {"debit", "dr", "d"}
_CREDIT_TOKENS = {"credit", "cr", "c"}


def _first(row: dict[str, str], aliases: tuple[str, ...]) -> str:
    """Return the first non-empty value among the alias columns."""
    for alias in aliases:
        value = row.get(alias)
        if value is not None and value.strip():
            return value.strip()
    return ""


def infer_type(row: dict[str, str], amount: float) -> str:
    """Infer 'debit' or 'credit' for a normalized row."""
    explicit = _first(row, TYPE_COLUMNS).lower()
    if explicit in _DEBIT_TOKENS:
        return "debit"
    if explicit in _CREDIT_TOKENS:
        return "credit"

    # Some banks use negative values for debits
    if not math.isnan(amount) and amount < 0:
        return "debit"

    debit = parse_amount(_first(row, DEBIT_COLUMNS))
    if not math.isnan(debit) and debit > 0:
        return "debit"
    credit = parse_amount(_first(row, CREDIT_COLUMNS))
    if not math.isnan(credit) and credit > 0:
        return "credit"

    return "debit"


class CsvParser(BaseParser):
    """Parse CSV bank exports into RawRecords."""

    def _parse_sync(self, file_path: Path) -> list[RawRecord]:
        records: list[RawRecord] = []
        try:
            with open(file_path, "r", newline="", encoding="utf-8-sig") as f:
                reader = csv.DictReader(f)
                if not reader.fieldnames:
                    raise ParseError(f"CSV file has no header row: {file_path}")
                headers = {self._norm(h) for h in reader.fieldnames if h}
                if not headers & set(DATE_COLUMNS + DESCRIPTION_COLUMNS):
                    raise ParseError(
                        f"CSV header has no date or description column: {file_path}"
                    )

                for line_no, row in enumerate(reader, start=2):
                    try:
                        record = self._parse_row(row)
                    except Exception as e:
                        logger.warning("Skipping CSV line %d in %s: %s",
                                       line_no, file_path.name, e)
                        self.skipped_count += 1
                        continue
                    if record is None:
                        self.skipped_count += 1
                        continue
                    records.append(record)
        except ParseError:
            raise
        except (OSError, UnicodeDecodeError, csv.Error) as e:
            raise ParseError(f"Failed to read CSV {file_path}: {e}") from e

        if self.skipped_count:
            logger.info("Skipped %d blank/unreadable row(s) in %s",
                        self.skipped_count, file_path.name)
        return records

    @staticmethod
    def _norm(header: str) -> str:
        return header.strip().lower()

    def _parse_row(self, raw_row: dict) -> RawRecord | None:
        row = {
            self._norm(k): (v if isinstance(v, str) else "")
            for k, v in raw_row.items()
            if isinstance(k, str)
        }
        if not any(v.strip() for v in row.values()):
            return None

        date = _first(row, DATE_COLUMNS)
        description = _first(row, DESCRIPTION_COLUMNS)

        amount = parse_amount(_first(row, AMOUNT_COLUMNS))
        if math.isnan(amount):
            # Separate debit/credit columns instead of a signed amount
            debit = parse_amount(_first(row, DEBIT_COLUMNS))
            credit = parse_amount(_first(row, CREDIT_COLUMNS))
            if not math.isnan(debit) and debit != 0:
                amount = -abs(debit)
            elif not math.isnan(credit) and credit != 0:
                amount = abs(credit)

        return RawRecord(
            date=date,
            description=description,
            amount=amount,
            type=infer_type(row, amount),
        )
