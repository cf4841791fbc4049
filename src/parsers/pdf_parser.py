"""PDF bank statement parser.

Extracts page text with pdfplumber, then scans line by line for a leading
date token and a trailing currency amount, e.g.:

    2023-01-15  GROCERY STORE XYZ   -45.67

Everything between the two is the description. Lines without both tokens
(headers, running balances, page footers) are skipped silently. Negative
amounts are debits, anything else is a credit; the stored amount is the
absolute value.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

import pdfplumber

from .base import BaseParser, ParseError, RawRecord, normalize_whitespace, parse_amount

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^(\d{2}[/-]\d{2}[/-]\d{2,4}|\d{4}[/-]\d{2}[/-]\d{2})")
_AMOUNT_RE = re.compile(r"([-+]?\s?\$?\d[\d,]*\.\d{2}-?)\s*$")


def extract_records_from_text(text: str) -> list[RawRecord]:
    """Pull date/description/amount lines out of raw statement text."""
    records: list[RawRecord] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue

        date_match = _DATE_RE.match(line)
        if not date_match:
            continue
        date_str = date_match.group(1)
        remainder = line[len(date_str):].strip()

        amount_match = _AMOUNT_RE.search(remainder)
        if not amount_match:
            continue
        amount = parse_amount(amount_match.group(1))
        if amount != amount:  # NaN
            continue

        description = normalize_whitespace(remainder[: amount_match.start()])
        records.append(RawRecord(
            date=date_str,
            description=description,
            amount=abs(amount),
            type="debit" if amount < 0 else "credit",
        ))
    return records


class PdfParser(BaseParser):
    """Parse text-based PDF statements into RawRecords."""

    def _parse_sync(self, file_path: Path) -> list[RawRecord]:
        try:
            text = self._extract_text(file_path)
        except Exception as e:
            raise ParseError(f"Failed to parse PDF {file_path}: {e}") from e
        records = extract_records_from_text(text)
        logger.debug("Extracted %d record(s) from %s", len(records), file_path.name)
        return records

    @staticmethod
    def _extract_text(file_path: Path) -> str:
        pages: list[str] = []
        with pdfplumber.open(file_path) as pdf:
            for page in pdf.pages:
                page_text = page.extract_text()
                if page_text:
                    pages.append(page_text)
        return "\n".join(pages)
