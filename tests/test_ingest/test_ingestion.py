"""Tests for the ingestion pipeline: validation, normalization, persistence."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.categorize.chart import StaticChartSource
from src.categorize.rules import RuleCategorizer
from src.database.models import UploadedFile
from src.database.repository import Repository
from src.ingest.pipeline import (
    MISSING_FIELDS_WARNING,
    PARSER_HINT_CONFIDENCE,
    UNHINTED_CONFIDENCE,
    IngestionError,
    IngestionPipeline,
    InputFileNotFoundError,
    UnsupportedFileTypeError,
)
from src.orchestration.messages import TransactionsReady
from src.parsers.base import ParseError
from src.telemetry import RecordingSink

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "src" / "database" / "migrations"

RULES = {"keyword_rules": [{"pattern": "GROCERY", "account_code": "231"}]}

STATEMENT = (
    "Date,Description,Amount\n"
    "2023-01-15,GROCERY STORE XYZ,-45.67\n"
    "2023-01-16,PAYCHECK,2500.00\n"
)


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def bus():
    b = MagicMock()
    b.publish = AsyncMock()
    return b


def _pipeline(repo, bus=None, sink=None, rules=RULES, chart_source=None):
    return IngestionPipeline(
        repo, chart_source or StaticChartSource(), rules=RuleCategorizer(rules),
        bus=bus, sink=sink,
    )


def _write(tmp_path: Path, content: str, name: str = "statement.csv") -> Path:
    f = tmp_path / name
    f.write_text(content)
    return f


def _ingest(pipeline, path, file_type="csv", user_id="u1", file_id=None):
    return asyncio.run(pipeline.ingest(path, file_type, user_id, file_id=file_id))


class TestIngest:
    def test_persists_normalized_transactions(self, repo, tmp_path):
        result = _ingest(_pipeline(repo), _write(tmp_path, STATEMENT))
        assert result.success
        assert result.processed_count == 2
        assert result.failed_count == 0
        grocery, pay = result.transactions
        assert grocery.amount == 45.67
        assert grocery.type == "debit"
        assert grocery.account_code == "231"
        assert grocery.confidence == PARSER_HINT_CONFIDENCE
        assert pay.account_code == "000"
        assert pay.confidence == UNHINTED_CONFIDENCE
        stored = repo.get_transactions_for_user("u1")
        assert {t.id for t in stored} == {grocery.id, pay.id}

    def test_hint_recorded_in_history(self, repo, tmp_path):
        result = _ingest(_pipeline(repo), _write(tmp_path, STATEMENT))
        grocery, pay = result.transactions
        history = repo.get_categorizations(grocery.id)
        assert [(c.category_code, c.source) for c in history] == [("231", "rule")]
        assert repo.get_categorizations(pay.id) == []

    def test_hint_tier_below_short_circuit(self):
        from src.categorize.engine import SHORT_CIRCUIT_CONFIDENCE
        assert PARSER_HINT_CONFIDENCE <= SHORT_CIRCUIT_CONFIDENCE

    def test_credit_only_when_explicit(self, repo, tmp_path):
        f = _write(
            tmp_path,
            "Date,Description,Amount,Type\n"
            "2023-01-16,REFUND,10.00,credit\n"
            "2023-01-17,SHOP,10.00,\n",
        )
        result = _ingest(_pipeline(repo), f)
        assert [t.type for t in result.transactions] == ["credit", "debit"]

    def test_custom_fallback_code(self, repo, tmp_path):
        pipeline = IngestionPipeline(
            repo, StaticChartSource(), rules=RuleCategorizer({}), fallback_code="311",
        )
        result = _ingest(pipeline, _write(tmp_path, STATEMENT))
        assert {t.account_code for t in result.transactions} == {"311"}

    def test_file_id_attached(self, repo, tmp_path):
        f = _write(tmp_path, STATEMENT)
        upload = repo.insert_file(UploadedFile("u1", str(f), f.name, "csv"))
        _ingest(_pipeline(repo), f, file_id=upload.id)
        assert len(repo.get_transactions_by_file(upload.id)) == 2

    def test_chart_loaded_once(self, repo, tmp_path):
        chart = asyncio.run(StaticChartSource().get_full_chart_of_accounts())
        chart_source = MagicMock()
        chart_source.get_full_chart_of_accounts = AsyncMock(return_value=chart)
        _ingest(_pipeline(repo, chart_source=chart_source), _write(tmp_path, STATEMENT))
        assert chart_source.get_full_chart_of_accounts.await_count == 1

    def test_events(self, repo, tmp_path):
        sink = RecordingSink()
        _ingest(_pipeline(repo, sink=sink), _write(tmp_path, STATEMENT))
        assert sink.names() == ["ingestion_start", "ingestion_complete"]
        assert sink.events[-1].fields["processed"] == 2


class TestValidation:
    def test_missing_fields_become_warnings(self, repo, tmp_path):
        f = _write(
            tmp_path,
            "Date,Description,Amount\n"
            "2023-01-15,GROCERY STORE,-45.67\n"
            ",NO DATE,-1.00\n"
            "2023-01-17,,-2.00\n"
            "2023-01-18,BAD AMOUNT,abc\n",
        )
        result = _ingest(_pipeline(repo), f)
        assert result.processed_count == 1
        assert result.failed_count == 3
        assert result.warnings.count(MISSING_FIELDS_WARNING) == 3
        assert result.success

    def test_blank_rows_reported(self, repo, tmp_path):
        f = _write(tmp_path, "Date,Description,Amount\n,,\n2023-01-15,A,-1.00\n")
        result = _ingest(_pipeline(repo), f)
        assert result.processed_count == 1
        assert any("Skipped 1" in w for w in result.warnings)


class TestFatalErrors:
    def test_missing_file(self, repo, tmp_path):
        with pytest.raises(InputFileNotFoundError, match="File not found"):
            _ingest(_pipeline(repo), tmp_path / "missing.csv")

    def test_unsupported_type(self, repo, tmp_path):
        f = _write(tmp_path, "x", name="export.qfx")
        with pytest.raises(UnsupportedFileTypeError):
            _ingest(_pipeline(repo), f, file_type="qfx")

    def test_fatal_errors_are_ingestion_errors(self):
        assert issubclass(InputFileNotFoundError, IngestionError)
        assert issubclass(UnsupportedFileTypeError, IngestionError)

    def test_unreadable_file(self, repo, tmp_path):
        f = _write(tmp_path, "")
        with pytest.raises(ParseError):
            _ingest(_pipeline(repo), f)
        assert repo.get_transactions_for_user("u1") == []


class TestDuplicates:
    def test_reupload_skipped(self, repo, tmp_path):
        pipeline = _pipeline(repo)
        f = _write(tmp_path, STATEMENT)
        _ingest(pipeline, f)
        second = _ingest(pipeline, f)
        assert second.processed_count == 0
        assert second.duplicate_count == 2
        assert len(second.warnings) == 2
        assert len(repo.get_transactions_for_user("u1")) == 2

    def test_other_user_not_a_duplicate(self, repo, tmp_path):
        pipeline = _pipeline(repo)
        f = _write(tmp_path, STATEMENT)
        _ingest(pipeline, f, user_id="u1")
        result = _ingest(pipeline, f, user_id="u2")
        assert result.processed_count == 2

    def test_repeats_within_one_file_kept(self, repo, tmp_path):
        f = _write(
            tmp_path,
            "Date,Description,Amount\n"
            "2023-01-15,COFFEE,-4.00\n"
            "2023-01-15,COFFEE,-4.00\n",
        )
        result = _ingest(_pipeline(repo), f)
        assert result.processed_count == 2
        assert result.duplicate_count == 0


class _FlakyRepo(Repository):
    """Refuses to store transactions whose description contains FAIL."""

    def insert_transaction(self, txn):
        if "FAIL" in txn.description:
            raise RuntimeError("disk full")
        return super().insert_transaction(txn)


class TestPartialFailure:
    def test_insert_failure_does_not_undo_others(self, tmp_path):
        repo = _FlakyRepo(":memory:")
        repo.apply_migrations(MIGRATIONS_DIR)
        try:
            f = _write(
                tmp_path,
                "Date,Description,Amount\n"
                "2023-01-15,FIRST,-1.00\n"
                "2023-01-16,FAIL ME,-2.00\n"
                "2023-01-17,THIRD,-3.00\n",
            )
            sink = RecordingSink()
            result = _ingest(_pipeline(repo, sink=sink), f)
            assert result.processed_count == 2
            assert result.failed_count == 1
            assert any("disk full" in w for w in result.warnings)
            assert "ingestion_record_error" in sink.names()
            assert [t.description for t in repo.get_transactions_for_user("u1")] == [
                "FIRST", "THIRD",
            ]
        finally:
            repo.close()


class TestPublishing:
    def test_transactions_ready_published(self, repo, bus, tmp_path):
        result = _ingest(_pipeline(repo, bus=bus), _write(tmp_path, STATEMENT), file_id=None)
        bus.publish.assert_awaited_once()
        message = bus.publish.await_args.args[0]
        assert isinstance(message, TransactionsReady)
        assert message.user_id == "u1"
        assert message.transaction_ids == tuple(t.id for t in result.transactions)

    def test_nothing_published_when_nothing_stored(self, repo, bus, tmp_path):
        f = _write(tmp_path, "Date,Description,Amount\n2023-01-15,,abc\n")
        _ingest(_pipeline(repo, bus=bus), f)
        bus.publish.assert_not_awaited()


class TestIngestFile:
    def test_completed_status(self, repo, tmp_path):
        f = _write(tmp_path, STATEMENT)
        upload = repo.insert_file(UploadedFile("u1", str(f), f.name, "csv"))
        result = asyncio.run(_pipeline(repo).ingest_file(upload.id))
        assert result.processed_count == 2
        stored = repo.get_file(upload.id)
        assert stored.status == "completed"
        assert stored.processed_at is not None

    def test_failed_status_and_reraise(self, repo, tmp_path):
        upload = repo.insert_file(UploadedFile(
            "u1", str(tmp_path / "gone.csv"), "gone.csv", "csv",
        ))
        with pytest.raises(InputFileNotFoundError):
            asyncio.run(_pipeline(repo).ingest_file(upload.id))
        stored = repo.get_file(upload.id)
        assert stored.status == "failed"
        assert "File not found" in stored.error

    def test_unknown_file_id(self, repo):
        with pytest.raises(IngestionError, match="Unknown file id"):
            asyncio.run(_pipeline(repo).ingest_file("nope"))
