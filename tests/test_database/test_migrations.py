"""Tests for schema migration system."""

import sqlite3
from pathlib import Path

import pytest

from src.database.repository import Repository

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "src" / "database" / "migrations"


@pytest.fixture
def repo():
    r = Repository(":memory:")
    yield r
    r.close()


class TestMigrationApply:
    def test_creates_all_tables(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        tables = {
            row[0]
            for row in repo.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        assert {"schema_version", "files", "transactions",
                "transaction_categorizations"}.issubset(tables)

    def test_idempotent(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        repo.apply_migrations(MIGRATIONS_DIR)
        row = repo.conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()
        assert row[0] == len(list(MIGRATIONS_DIR.glob("*.sql")))

    def test_failed_migration_rolls_back(self, repo, tmp_path):
        (tmp_path / "001_good.sql").write_text("CREATE TABLE a (id INTEGER)")
        (tmp_path / "002_bad.sql").write_text(
            "CREATE TABLE b (id INTEGER);\nTHIS IS NOT SQL"
        )
        with pytest.raises(sqlite3.OperationalError):
            repo.apply_migrations(tmp_path)
        versions = [r[0] for r in repo.conn.execute("SELECT version FROM schema_version")]
        assert versions == [1]


class TestConstraints:
    @pytest.fixture(autouse=True)
    def _migrate(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)

    def _insert(self, repo, **overrides):
        values = dict(
            id="t1", user_id="u1", date="2023-01-15", description="X",
            amount=1.0, type="debit", account_code="000", confidence=0.5,
            created_at="2023-01-15", updated_at="2023-01-15",
        )
        values.update(overrides)
        cols = ", ".join(values)
        ph = ", ".join("?" * len(values))
        repo.conn.execute(f"INSERT INTO transactions ({cols}) VALUES ({ph})", list(values.values()))

    def test_negative_amount_rejected(self, repo):
        with pytest.raises(sqlite3.IntegrityError):
            self._insert(repo, amount=-1.0)

    def test_bad_type_rejected(self, repo):
        with pytest.raises(sqlite3.IntegrityError):
            self._insert(repo, type="transfer")

    def test_empty_code_rejected(self, repo):
        with pytest.raises(sqlite3.IntegrityError):
            self._insert(repo, account_code="")

    def test_confidence_range(self, repo):
        with pytest.raises(sqlite3.IntegrityError):
            self._insert(repo, confidence=1.5)
