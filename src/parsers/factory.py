"""Parser selection by file type tag."""

from __future__ import annotations

from src.categorize.chart import ChartOfAccounts
from src.categorize.rules import RuleCategorizer

from .base import BaseParser
from .csv_parser import CsvParser
from .pdf_parser import PdfParser

_PARSERS: dict[str, type[BaseParser]] = {
    "csv": CsvParser,
    "pdf": PdfParser,
}


def get_parser(
    file_type: str,
    rules: RuleCategorizer | None = None,
    chart: ChartOfAccounts | None = None,
) -> BaseParser:
    """Instantiate the parser for ``file_type`` ("csv" or "pdf").

    Raises:
        ValueError: If the file type is not supported.
    """
    parser_cls = _PARSERS.get((file_type or "").lower())
    if parser_cls is None:
        raise ValueError(f"Unsupported file type: {file_type}")
    return parser_cls(rules=rules, chart=chart)
