"""In-process message bus on an asyncio queue.

The bus is constructed and owned by the process assembly (the CLI) and
passed to the components that publish or subscribe. Handlers run one
message at a time in publish order; a failing handler is logged and the
consumer carries on with the next message.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable

from .messages import Message, MessageKind, kind_of

logger = logging.getLogger(__name__)

Handler = Callable[[Message], Awaitable[None]]


class MessageBus:
    def __init__(self):
        self._handlers: dict[MessageKind, list[Handler]] = defaultdict(list)
        self._queue: asyncio.Queue | None = None
        self._consumer: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def subscribe(self, kind: MessageKind, handler: Handler) -> None:
        self._handlers[kind].append(handler)

    def unsubscribe(self, kind: MessageKind, handler: Handler) -> None:
        if handler in self._handlers[kind]:
            self._handlers[kind].remove(handler)

    async def start(self) -> None:
        """Start the consumer task on the running event loop."""
        if self.is_running:
            return
        self._queue = asyncio.Queue()
        self._consumer = asyncio.create_task(self._consume(), name="message-bus")
        logger.debug("Message bus started")

    async def stop(self) -> None:
        """Deliver everything already queued, then stop the consumer."""
        if self._consumer is None:
            return
        await self.join()
        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None
        self._queue = None
        logger.debug("Message bus stopped")

    async def publish(self, message: Message) -> None:
        if not self.is_running or self._queue is None:
            raise RuntimeError("Message bus is not running; call start() first")
        kind_of(message)  # rejects non-message objects up front
        await self._queue.put(message)

    async def join(self) -> None:
        """Wait until every published message, including follow-ups, is handled."""
        if self._queue is not None:
            await self._queue.join()

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            message = await self._queue.get()
            try:
                await self._dispatch(message)
            finally:
                self._queue.task_done()

    async def _dispatch(self, message: Message) -> None:
        kind = kind_of(message)
        for handler in list(self._handlers[kind]):
            try:
                await handler(message)
            except Exception:
                logger.exception("Handler failed for %s message %s", kind.value, message.id)
