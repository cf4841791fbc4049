"""Ingestion pipeline: statement file → validated, persisted transactions.

Flow per upload:
1. Check the file exists and its type is supported
2. Load the chart once, build the parser with the rule categorizer so it
   can attach best-effort hints
3. Validate and normalize each parsed record
4. Skip rows already imported by the same user in an earlier upload
5. Insert record by record; one bad row never undoes the others
6. Announce the new transactions on the message bus
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path

from src.categorize.chart import UNCATEGORIZED_CODE, ChartSource
from src.categorize.rules import RuleCategorizer
from src.database.models import Transaction, TransactionCategorization
from src.database.repository import Repository, compute_import_hash
from src.orchestration.bus import MessageBus
from src.orchestration.messages import TransactionsReady
from src.parsers.base import SUPPORTED_FILE_TYPES, RawRecord
from src.parsers.factory import get_parser
from src.telemetry import EventSink

logger = logging.getLogger(__name__)

# Must stay at or below engine.SHORT_CIRCUIT_CONFIDENCE (0.8). At 0.9 the
# engine would keep every parser hint as-is and never run the rule or LLM
# pass on hinted rows.
PARSER_HINT_CONFIDENCE = 0.7
UNHINTED_CONFIDENCE = 0.5

MISSING_FIELDS_WARNING = "Skipping transaction: Missing required fields"


class IngestionError(Exception):
    """Fatal ingestion failure: nothing from the file was processed."""


class InputFileNotFoundError(IngestionError):
    def __init__(self, file_path: Path | str):
        self.file_path = str(file_path)
        super().__init__(f"File not found: {file_path}")


class UnsupportedFileTypeError(IngestionError):
    def __init__(self, file_type: str):
        self.file_type = file_type
        super().__init__(f"Unsupported file type: {file_type}")


@dataclass
class IngestionResult:
    transactions: list[Transaction] = field(default_factory=list)
    processed_count: int = 0
    failed_count: int = 0
    warnings: list[str] = field(default_factory=list)
    duplicate_count: int = 0
    success: bool = True


def _has_required_fields(record: RawRecord) -> bool:
    if not (record.date or "").strip():
        return False
    if not (record.description or "").strip():
        return False
    try:
        return math.isfinite(float(record.amount))
    except (TypeError, ValueError):
        return False


class IngestionPipeline:
    """Turn an uploaded statement into stored transactions.

    Args:
        repo: Repository the transactions are written to.
        chart_source: Chart of accounts used for parser hints.
        rules: Rule categorizer for parser hints. Hints are skipped when None.
        bus: Running message bus; TransactionsReady is published on it
            after a successful ingest. None disables publishing.
        sink: Event sink.
        fallback_code: Account code for rows without a parser hint.
    """

    def __init__(
        self,
        repo: Repository,
        chart_source: ChartSource,
        rules: RuleCategorizer | None = None,
        bus: MessageBus | None = None,
        sink: EventSink | None = None,
        fallback_code: str = UNCATEGORIZED_CODE,
    ):
        self.repo = repo
        self.chart_source = chart_source
        self.rules = rules
        self.bus = bus
        self.sink = (sink or EventSink(logger)).bind("ingestion")
        self.fallback_code = fallback_code

    async def ingest(
        self,
        file_path: Path | str,
        file_type: str,
        user_id: str,
        file_id: str | None = None,
    ) -> IngestionResult:
        """Parse, validate and persist one statement file.

        Raises:
            InputFileNotFoundError: The file does not exist.
            UnsupportedFileTypeError: ``file_type`` is not csv or pdf.
            ParseError: The file could not be read at all.
        """
        path = Path(file_path)
        if not path.is_file():
            raise InputFileNotFoundError(path)
        file_type = (file_type or "").lower()
        if file_type not in SUPPORTED_FILE_TYPES:
            raise UnsupportedFileTypeError(file_type)

        self.sink.emit(
            "ingestion_start", file=path.name, file_type=file_type, user_id=user_id,
        )

        chart = await self.chart_source.get_full_chart_of_accounts()
        parser = get_parser(file_type, rules=self.rules, chart=chart)
        records = await parser.parse(path)

        result = IngestionResult()
        if parser.skipped_count:
            result.warnings.append(
                f"Skipped {parser.skipped_count} unreadable row(s) in {path.name}"
            )

        known_hashes = await asyncio.to_thread(
            self.repo.get_import_hashes_for_user, user_id
        )

        for record in records:
            if not _has_required_fields(record):
                result.failed_count += 1
                result.warnings.append(MISSING_FIELDS_WARNING)
                continue

            txn = self._normalize(record, user_id, file_id)
            if txn.import_hash in known_hashes:
                result.duplicate_count += 1
                result.warnings.append(
                    f"Skipping duplicate transaction: {txn.date} {txn.description}"
                    f" {txn.amount:.2f}"
                )
                continue

            try:
                await asyncio.to_thread(self.repo.insert_transaction, txn)
            except Exception as e:
                result.failed_count += 1
                result.warnings.append(
                    f"Failed to save transaction {txn.date} {txn.description}: {e}"
                )
                self.sink.error("ingestion_record_error", file=path.name, error=str(e))
                continue

            if record.account_code:
                await self._record_hint(txn)
            result.transactions.append(txn)
            result.processed_count += 1

        self.sink.emit(
            "ingestion_complete",
            file=path.name,
            processed=result.processed_count,
            failed=result.failed_count,
            duplicates=result.duplicate_count,
        )

        if result.transactions and self.bus is not None:
            await self.bus.publish(TransactionsReady(
                user_id=user_id,
                transaction_ids=tuple(t.id for t in result.transactions),
                file_id=file_id,
            ))
        return result

    async def ingest_file(self, file_id: str) -> IngestionResult:
        """Ingest a registered upload, tracking its status on the files row."""
        record = await asyncio.to_thread(self.repo.get_file, file_id)
        if record is None:
            raise IngestionError(f"Unknown file id: {file_id}")

        await asyncio.to_thread(self.repo.update_file_status, file_id, "processing")
        try:
            result = await self.ingest(
                record.file_path, record.file_type, record.user_id, file_id=file_id,
            )
        except Exception as e:
            await asyncio.to_thread(
                self.repo.update_file_status, file_id, "failed", str(e),
            )
            self.sink.error("ingestion_failed", file_id=file_id, error=str(e))
            raise
        await asyncio.to_thread(self.repo.update_file_status, file_id, "completed")
        return result

    def _normalize(
        self, record: RawRecord, user_id: str, file_id: str | None,
    ) -> Transaction:
        amount = abs(float(record.amount))
        txn_type = "credit" if (record.type or "").lower() == "credit" else "debit"
        date = record.date.strip()
        description = record.description.strip()
        return Transaction(
            user_id=user_id,
            file_id=file_id,
            date=date,
            description=description,
            amount=amount,
            type=txn_type,
            account_code=record.account_code or self.fallback_code,
            confidence=(
                PARSER_HINT_CONFIDENCE if record.account_code else UNHINTED_CONFIDENCE
            ),
            import_hash=compute_import_hash(user_id, date, amount, description),
        )

    async def _record_hint(self, txn: Transaction) -> None:
        try:
            await asyncio.to_thread(
                self.repo.insert_categorization,
                TransactionCategorization(
                    transaction_id=txn.id,
                    category_code=txn.account_code,
                    confidence=PARSER_HINT_CONFIDENCE,
                    source="rule",
                    reasoning="Parser rule hint",
                ),
            )
        except Exception as e:
            logger.warning("Failed to record parser hint for %s: %s", txn.id, e)
