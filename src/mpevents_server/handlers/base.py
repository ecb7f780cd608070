from __future__ import annotations

from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, ValidationError

from ..logging_config import get_logger
from ..models import SSEEventType, WebhookEvent
from ..mp_client import MinistryPlatformClient, MinistryPlatformError
from ..sse import Broadcaster

logger = get_logger(__name__)


class RecordChangeHandler:
    """Turns one table notification into exactly one channel event.

    Subclasses name the table, the channel and the event type per action,
    and shape the fetched record into the outgoing payload. When the record
    cannot be fetched the event still goes out with only ``recordId`` set.
    """

    table: ClassVar[str]
    channel: ClassVar[str]
    event_types: ClassVar[Dict[str, SSEEventType]]
    select: ClassVar[Optional[str]] = None

    def __init__(self, broadcaster: Broadcaster, mp_client: Optional[MinistryPlatformClient] = None):
        self._broadcaster = broadcaster
        self._mp = mp_client

    async def __call__(self, event: WebhookEvent) -> None:
        record = None
        if event.action != "delete":
            record = await self.fetch(event)

        try:
            update = self.build_update(event.record_id, record)
        except (ValidationError, AttributeError, TypeError) as ex:
            logger.warning(f"Unexpected {self.table} #{event.record_id} shape, sending without details: {ex}")
            update = self.build_update(event.record_id, None)
        self._broadcaster.broadcast(
            self.event_types[event.action],
            update.model_dump(by_alias=True),
            channel=self.channel,
        )

    async def fetch(self, event: WebhookEvent) -> Optional[Dict[str, Any]]:
        if self._mp is None:
            return None
        try:
            record = await self._mp.get_record(self.table, event.record_id, select=self.select)
        except MinistryPlatformError as ex:
            logger.warning(f"Could not enrich {self.table} #{event.record_id}, sending without details: {ex}")
            return None
        if record is None:
            logger.warning(f"{self.table} #{event.record_id} not found, sending without details")
        return record

    def build_update(self, record_id: int, record: Optional[Dict[str, Any]]) -> BaseModel:
        raise NotImplementedError
