"""Prayer wall: Feedback_Entries changes on the ``prayers`` channel."""
from __future__ import annotations

from typing import Any, Dict, Optional

from ..models import PrayerUpdate, SSEEventType
from .base import RecordChangeHandler


class FeedbackEntriesHandler(RecordChangeHandler):
    table = "Feedback_Entries"
    channel = "prayers"
    event_types = {
        "create": SSEEventType.PRAYER_CREATED,
        "update": SSEEventType.PRAYER_UPDATED,
        "delete": SSEEventType.PRAYER_DELETED,
    }
    select = "Feedback_Entry_ID,Entry_Title,Description,Date_Submitted,Approved"

    def build_update(self, record_id: int, record: Optional[Dict[str, Any]]) -> PrayerUpdate:
        if not record:
            return PrayerUpdate(record_id=record_id)
        return PrayerUpdate(
            feedback_entry_id=record.get("Feedback_Entry_ID"),
            title=record.get("Entry_Title"),
            description=record.get("Description"),
            date_submitted=record.get("Date_Submitted"),
            approved=record.get("Approved"),
            record_id=record_id,
        )
