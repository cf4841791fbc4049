"""Messages exchanged between the ingestion pipeline and background workers.

The set of messages is closed: every kind has its own frozen dataclass and
a MessageKind member, and consumers dispatch on the concrete type.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Union
from uuid import uuid4


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MessageKind(str, Enum):
    TRANSACTIONS_READY = "transactions_ready"
    CATEGORIZATION_COMPLETE = "categorization_complete"
    STATUS_REQUEST = "status_request"
    STATUS_RESPONSE = "status_response"


@dataclass(frozen=True)
class TransactionsReady:
    """New transactions were persisted and await categorization."""
    user_id: str
    transaction_ids: tuple[str, ...]
    file_id: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)


@dataclass(frozen=True)
class CategorizationComplete:
    user_id: str
    success_count: int
    failed_count: int
    file_id: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)


@dataclass(frozen=True)
class StatusRequest:
    reply_to: str
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)


@dataclass(frozen=True)
class StatusResponse:
    worker: str
    is_active: bool
    in_reply_to: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)


Message = Union[TransactionsReady, CategorizationComplete, StatusRequest, StatusResponse]

_KINDS: dict[type, MessageKind] = {
    TransactionsReady: MessageKind.TRANSACTIONS_READY,
    CategorizationComplete: MessageKind.CATEGORIZATION_COMPLETE,
    StatusRequest: MessageKind.STATUS_REQUEST,
    StatusResponse: MessageKind.STATUS_RESPONSE,
}


def kind_of(message: Message) -> MessageKind:
    try:
        return _KINDS[type(message)]
    except KeyError:
        raise TypeError(f"Not a message: {type(message).__name__}") from None
