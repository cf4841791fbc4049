"""Background categorization worker driven by bus messages."""

from __future__ import annotations

import asyncio
import logging
from typing import assert_never

from src.categorize.engine import CategorizationEngine, apply_categorization_result
from src.database.repository import Repository
from src.telemetry import EventSink

from .bus import MessageBus
from .messages import (
    CategorizationComplete,
    Message,
    MessageKind,
    StatusRequest,
    StatusResponse,
    TransactionsReady,
)

logger = logging.getLogger(__name__)

WORKER_NAME = "categorization"


class Orchestrator:
    """Categorizes newly ingested transactions as they are announced.

    The bus, engine and repository are handed in by whoever assembles the
    process; start() subscribes to the bus and stop() detaches again.
    """

    def __init__(
        self,
        bus: MessageBus,
        engine: CategorizationEngine,
        repo: Repository,
        sink: EventSink | None = None,
        use_llm: bool = True,
    ):
        self.bus = bus
        self.engine = engine
        self.repo = repo
        self.sink = (sink or EventSink(logger)).bind("orchestrator")
        self.use_llm = use_llm
        self.is_active = False

    async def start(self) -> None:
        if self.is_active:
            return
        for kind in MessageKind:
            self.bus.subscribe(kind, self.handle)
        self.is_active = True
        self.sink.emit("orchestrator_started")

    async def stop(self) -> None:
        if not self.is_active:
            return
        for kind in MessageKind:
            self.bus.unsubscribe(kind, self.handle)
        self.is_active = False
        self.sink.emit("orchestrator_stopped")

    async def handle(self, message: Message) -> None:
        if isinstance(message, TransactionsReady):
            await self._categorize_ready(message)
        elif isinstance(message, StatusRequest):
            await self.bus.publish(StatusResponse(
                worker=WORKER_NAME,
                is_active=self.is_active,
                in_reply_to=message.id,
            ))
        elif isinstance(message, CategorizationComplete):
            logger.info(
                "Categorization complete for user %s: %d ok, %d failed",
                message.user_id, message.success_count, message.failed_count,
            )
        elif isinstance(message, StatusResponse):
            logger.debug("Status from %s: active=%s", message.worker, message.is_active)
        else:
            assert_never(message)

    async def _categorize_ready(self, message: TransactionsReady) -> None:
        txns = await asyncio.to_thread(
            self.repo.get_transactions_by_ids, list(message.transaction_ids)
        )
        txns = [t for t in txns if t.user_id == message.user_id]
        if not txns:
            logger.warning("No transactions found for message %s", message.id)
            return

        result = await self.engine.categorize(txns, use_llm=self.use_llm)
        applied, warnings = await apply_categorization_result(result, self.repo)
        for w in warnings:
            self.sink.error("categorization_persist_error", message=w)

        await self.bus.publish(CategorizationComplete(
            user_id=message.user_id,
            success_count=applied,
            failed_count=result.failed_count + (result.success_count - applied),
            file_id=message.file_id,
        ))
