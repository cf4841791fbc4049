"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly,
except Transaction.tags which is stored as a JSON array.
All primary keys are TEXT (UUID strings generated via uuid4()).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

CATEGORIZATION_SOURCES = ("rule", "llm", "user", "system")
TRANSACTION_TYPES = ("debit", "credit")


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class UploadedFile:
    user_id: str
    file_path: str
    original_name: str
    file_type: str  # "csv" or "pdf"
    id: str = field(default_factory=_new_id)
    status: str = "pending"  # pending, processing, completed, failed
    error: str | None = None
    processed_at: str | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class Transaction:
    user_id: str
    date: str
    description: str
    amount: float  # absolute value, >= 0
    type: str  # "debit" or "credit"
    account_code: str
    id: str = field(default_factory=_new_id)
    file_id: str | None = None
    confidence: float | None = None
    is_recurring: bool | None = None
    tags: list[str] = field(default_factory=list)
    notes: str | None = None
    import_hash: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class TransactionCategorization:
    transaction_id: str
    category_code: str
    confidence: float
    source: str  # one of CATEGORIZATION_SOURCES
    id: str = field(default_factory=_new_id)
    reasoning: str | None = None
    created_at: str = field(default_factory=_now)
