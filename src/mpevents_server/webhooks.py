"""Webhook handler registry.

MinistryPlatform posts one notification per changed record. Handlers are
registered per table name; all handlers for a table run concurrently and a
failing handler never blocks the others.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from .logging_config import get_logger
from .models import WebhookEvent

logger = get_logger(__name__)

Handler = Callable[[WebhookEvent], Awaitable[None]]


@dataclass
class DispatchResult:
    executed: int = 0
    failed: int = 0


class HandlerRegistry:
    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = {}

    def register(self, table: str, handler: Handler) -> None:
        self._handlers.setdefault(table, []).append(handler)

    def handlers_for(self, table: str) -> List[Handler]:
        return list(self._handlers.get(table, []))

    def tables(self) -> List[str]:
        return list(self._handlers)

    def handler_counts(self) -> Dict[str, int]:
        return {table: len(handlers) for table, handlers in self._handlers.items()}

    async def dispatch(self, event: WebhookEvent) -> DispatchResult:
        handlers = self.handlers_for(event.table)
        if not handlers:
            logger.info(f"No handlers registered for table: {event.table}")
            return DispatchResult()

        logger.info(f"Processing {len(handlers)} handler(s) for {event.table}")
        results = await asyncio.gather(*(h(event) for h in handlers), return_exceptions=True)

        outcome = DispatchResult()
        for index, result in enumerate(results, start=1):
            if isinstance(result, BaseException):
                outcome.failed += 1
                logger.error(
                    f"Handler {index} for {event.table} #{event.record_id} failed: {result!r}",
                    exc_info=result,
                )
            else:
                outcome.executed += 1
        return outcome


def default_registry(broadcaster, mp_client=None) -> HandlerRegistry:
    """Registry with the built-in Counter and Prayer handlers."""
    from .handlers.counter import EventMetricsHandler
    from .handlers.prayers import FeedbackEntriesHandler

    registry = HandlerRegistry()
    for handler in (
        EventMetricsHandler(broadcaster, mp_client),
        FeedbackEntriesHandler(broadcaster, mp_client),
    ):
        registry.register(handler.table, handler)
    return registry
