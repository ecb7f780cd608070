from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


Action = Literal["create", "update", "delete"]

# MinistryPlatform audit wording -> webhook action
_ACTION_ALIASES = {"insert": "create", "created": "create", "updated": "update", "deleted": "delete"}


class SSEEventType(str, Enum):
    EVENT_METRIC_CREATED = "event-metric-created"
    EVENT_METRIC_UPDATED = "event-metric-updated"
    EVENT_METRIC_DELETED = "event-metric-deleted"
    PRAYER_CREATED = "prayer-created"
    PRAYER_UPDATED = "prayer-updated"
    PRAYER_DELETED = "prayer-deleted"
    CONNECTION_ESTABLISHED = "connection-established"
    PING = "ping"


class SSEMessage(BaseModel):
    """One event as it goes out on the wire."""

    model_config = ConfigDict(frozen=True)

    type: SSEEventType
    channel: Optional[str] = None
    data: Any = None
    timestamp: str = Field(default_factory=utc_now_iso)

    def to_json(self) -> str:
        payload = self.model_dump(mode="json")
        if payload.get("channel") is None:
            payload.pop("channel", None)
        return json.dumps(payload, ensure_ascii=False)


class WebhookPayload(BaseModel):
    """Body template configured on the MinistryPlatform webhook:
    {"table":"[Table_Name]","recordId":[Record_ID],"action":"[Action]"}
    """

    model_config = ConfigDict(populate_by_name=True)

    table: str = Field(min_length=1)
    record_id: int = Field(alias="recordId", gt=0)
    action: Optional[Action] = None

    @field_validator("table")
    @classmethod
    def _strip_table(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("table is empty")
        return v

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        if isinstance(v, str):
            v = v.strip().lower()
            return _ACTION_ALIASES.get(v, v)
        return v


class WebhookEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    table: str
    record_id: int
    action: Action = "update"
    timestamp: str = Field(default_factory=utc_now_iso)

    @classmethod
    def from_payload(cls, payload: WebhookPayload) -> "WebhookEvent":
        return cls(
            table=payload.table,
            record_id=payload.record_id,
            action=payload.action or "update",
        )


class EventMetricUpdate(BaseModel):
    """Counter app payload for Event_Metrics changes."""

    model_config = ConfigDict(populate_by_name=True)

    event_id: Optional[int] = Field(default=None, alias="eventId")
    metric_id: Optional[int] = Field(default=None, alias="metricId")
    metric_name: Optional[str] = Field(default=None, alias="metricName")
    value: Optional[float] = None
    record_id: int = Field(alias="recordId")


class PrayerUpdate(BaseModel):
    """Prayer wall payload for Feedback_Entries changes."""

    model_config = ConfigDict(populate_by_name=True)

    feedback_entry_id: Optional[int] = Field(default=None, alias="feedbackEntryId")
    title: Optional[str] = None
    description: Optional[str] = None
    date_submitted: Optional[str] = Field(default=None, alias="dateSubmitted")
    approved: Optional[bool] = None
    record_id: int = Field(alias="recordId")
