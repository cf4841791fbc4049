"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled. The async pipeline calls into the repository from
worker threads (asyncio.to_thread), so statements are serialized with a
lock around the shared connection.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from .models import (
    CATEGORIZATION_SOURCES,
    Transaction,
    TransactionCategorization,
    UploadedFile,
)


class RecordNotFoundError(Exception):
    """Raised when an update targets a row that does not exist."""

    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__(f"No {table} row with id '{record_id}'")


def compute_import_hash(
    user_id: str, date: str, amount: float, description: str
) -> str:
    """SHA256(user|date|amount|description) used to spot re-uploaded rows."""
    key = f"{user_id}|{date}|{amount:.2f}|{description.strip().upper()}"
    return hashlib.sha256(key.encode()).hexdigest()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        with self._lock:
            self.conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version ("
                "  version INTEGER PRIMARY KEY,"
                "  description TEXT,"
                "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
                ")"
            )
            self.conn.commit()

            row = self.conn.execute(
                "SELECT MAX(version) FROM schema_version"
            ).fetchone()
            current = row[0] or 0

            for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
                version = int(sql_file.name.split("_")[0])
                if version > current:
                    try:
                        self.conn.execute("BEGIN")
                        # executescript auto-commits, so we split statements manually
                        sql_text = sql_file.read_text()
                        for statement in sql_text.split(";"):
                            statement = statement.strip()
                            if statement:
                                self.conn.execute(statement)
                        self.conn.execute(
                            "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                            (version, sql_file.stem),
                        )
                        self.conn.commit()
                    except Exception:
                        self.conn.rollback()
                        raise

    # ── Files ───────────────────────────────────────────────

    def insert_file(self, record: UploadedFile) -> UploadedFile:
        with self._lock:
            self.conn.execute(
                "INSERT INTO files (id, user_id, file_path, original_name, file_type,"
                " status, error, processed_at, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (record.id, record.user_id, record.file_path, record.original_name,
                 record.file_type, record.status, record.error,
                 record.processed_at, record.created_at),
            )
            self.conn.commit()
        return record

    def get_file(self, file_id: str) -> UploadedFile | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM files WHERE id = ?", (file_id,)
            ).fetchone()
        return self._row_to_file(row) if row else None

    def update_file_status(
        self, file_id: str, status: str, error: str | None = None,
    ):
        processed_at = _now() if status in ("completed", "failed") else None
        with self._lock:
            cur = self.conn.execute(
                "UPDATE files SET status = ?, error = ?,"
                " processed_at = COALESCE(?, processed_at) WHERE id = ?",
                (status, error, processed_at, file_id),
            )
            self.conn.commit()
        if cur.rowcount == 0:
            raise RecordNotFoundError("files", file_id)

    # ── Transactions ────────────────────────────────────────

    def insert_transaction(self, txn: Transaction) -> Transaction:
        with self._lock:
            self.conn.execute(
                "INSERT INTO transactions"
                " (id, user_id, file_id, date, description, amount, type,"
                "  account_code, confidence, is_recurring, tags, notes,"
                "  import_hash, created_at, updated_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (txn.id, txn.user_id, txn.file_id, txn.date, txn.description,
                 txn.amount, txn.type, txn.account_code, txn.confidence,
                 None if txn.is_recurring is None else int(txn.is_recurring),
                 json.dumps(list(txn.tags)), txn.notes, txn.import_hash,
                 txn.created_at, txn.updated_at),
            )
            self.conn.commit()
        return txn

    def get_transaction(self, txn_id: str) -> Transaction | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (txn_id,)
            ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transactions_by_ids(self, txn_ids: list[str]) -> list[Transaction]:
        """Fetch transactions preserving the order of txn_ids.

        Chunked to stay within SQLite's variable limit. Unknown ids are
        dropped.
        """
        if not txn_ids:
            return []
        found: dict[str, Transaction] = {}
        chunk_size = 500
        with self._lock:
            for i in range(0, len(txn_ids), chunk_size):
                chunk = txn_ids[i : i + chunk_size]
                ph = ",".join("?" * len(chunk))
                rows = self.conn.execute(
                    f"SELECT * FROM transactions WHERE id IN ({ph})", chunk,
                ).fetchall()
                for r in rows:
                    txn = self._row_to_transaction(r)
                    found[txn.id] = txn
        return [found[i] for i in txn_ids if i in found]

    def get_transactions_by_file(self, file_id: str) -> list[Transaction]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM transactions WHERE file_id = ?"
                " ORDER BY date, rowid",
                (file_id,),
            ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def get_transactions_for_user(
        self, user_id: str, date_from: str | None = None,
        date_to: str | None = None, account_code: str | None = None,
    ) -> list[Transaction]:
        sql = "SELECT * FROM transactions WHERE user_id = ?"
        params: list = [user_id]
        if date_from:
            sql += " AND date >= ?"
            params.append(date_from)
        if date_to:
            sql += " AND date <= ?"
            params.append(date_to)
        if account_code:
            sql += " AND account_code = ?"
            params.append(account_code)
        sql += " ORDER BY date, rowid"
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def get_import_hashes_for_user(self, user_id: str) -> set[str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT import_hash FROM transactions"
                " WHERE user_id = ? AND import_hash IS NOT NULL",
                (user_id,),
            ).fetchall()
        return {r[0] for r in rows}

    def update_transaction_category(
        self, txn_id: str, account_code: str, confidence: float | None = None,
    ) -> None:
        """Set the active code without touching the history table."""
        with self._lock:
            cur = self.conn.execute(
                "UPDATE transactions SET account_code = ?,"
                " confidence = COALESCE(?, confidence), updated_at = ?"
                " WHERE id = ?",
                (account_code, confidence, _now(), txn_id),
            )
            self.conn.commit()
        if cur.rowcount == 0:
            raise RecordNotFoundError("transactions", txn_id)

    def delete_transaction(self, txn_id: str, user_id: str) -> bool:
        """Delete a user's transaction; categorizations go with it (cascade)."""
        with self._lock:
            cur = self.conn.execute(
                "DELETE FROM transactions WHERE id = ? AND user_id = ?",
                (txn_id, user_id),
            )
            self.conn.commit()
        return cur.rowcount > 0

    # ── Categorizations ─────────────────────────────────────

    def insert_categorization(
        self, cat: TransactionCategorization
    ) -> TransactionCategorization:
        if cat.source not in CATEGORIZATION_SOURCES:
            raise ValueError(f"Unknown categorization source: {cat.source}")
        with self._lock:
            self.conn.execute(
                "INSERT INTO transaction_categorizations"
                " (id, transaction_id, category_code, confidence, source,"
                "  reasoning, created_at)"
                " VALUES (?,?,?,?,?,?,?)",
                (cat.id, cat.transaction_id, cat.category_code, cat.confidence,
                 cat.source, cat.reasoning, cat.created_at),
            )
            self.conn.commit()
        return cat

    def record_categorization(
        self, cat: TransactionCategorization
    ) -> TransactionCategorization:
        """Set the transaction's active code and append the history row.

        Both writes happen in one SQLite transaction, so a transaction never
        carries a code without the matching history entry.
        """
        if cat.source not in CATEGORIZATION_SOURCES:
            raise ValueError(f"Unknown categorization source: {cat.source}")
        if not cat.category_code:
            raise ValueError("category_code must be non-empty")
        with self._lock:
            try:
                self.conn.execute("BEGIN")
                cur = self.conn.execute(
                    "UPDATE transactions SET account_code = ?, confidence = ?,"
                    " updated_at = ? WHERE id = ?",
                    (cat.category_code, cat.confidence, _now(), cat.transaction_id),
                )
                if cur.rowcount == 0:
                    raise RecordNotFoundError("transactions", cat.transaction_id)
                self.conn.execute(
                    "INSERT INTO transaction_categorizations"
                    " (id, transaction_id, category_code, confidence, source,"
                    "  reasoning, created_at)"
                    " VALUES (?,?,?,?,?,?,?)",
                    (cat.id, cat.transaction_id, cat.category_code, cat.confidence,
                     cat.source, cat.reasoning, cat.created_at),
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
        return cat

    def get_categorizations(self, txn_id: str) -> list[TransactionCategorization]:
        """Categorization history for a transaction, newest first."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM transaction_categorizations WHERE transaction_id = ?"
                " ORDER BY created_at DESC, rowid DESC",
                (txn_id,),
            ).fetchall()
        return [self._row_to_categorization(r) for r in rows]

    def get_active_categorization(
        self, txn_id: str
    ) -> TransactionCategorization | None:
        history = self.get_categorizations(txn_id)
        return history[0] if history else None

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_file(row: sqlite3.Row) -> UploadedFile:
        return UploadedFile(
            id=row["id"],
            user_id=row["user_id"],
            file_path=row["file_path"],
            original_name=row["original_name"],
            file_type=row["file_type"],
            status=row["status"],
            error=row["error"],
            processed_at=row["processed_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        is_recurring = row["is_recurring"]
        return Transaction(
            id=row["id"],
            user_id=row["user_id"],
            file_id=row["file_id"],
            date=row["date"],
            description=row["description"],
            amount=row["amount"],
            type=row["type"],
            account_code=row["account_code"],
            confidence=row["confidence"],
            is_recurring=None if is_recurring is None else bool(is_recurring),
            tags=json.loads(row["tags"] or "[]"),
            notes=row["notes"],
            import_hash=row["import_hash"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_categorization(row: sqlite3.Row) -> TransactionCategorization:
        return TransactionCategorization(
            id=row["id"],
            transaction_id=row["transaction_id"],
            category_code=row["category_code"],
            confidence=row["confidence"],
            source=row["source"],
            reasoning=row["reasoning"],
            created_at=row["created_at"],
        )
