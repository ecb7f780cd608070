"""Counter app: Event_Metrics changes on the ``counter`` channel."""
from __future__ import annotations

from typing import Any, Dict, Optional

from ..models import EventMetricUpdate, SSEEventType
from .base import RecordChangeHandler


class EventMetricsHandler(RecordChangeHandler):
    table = "Event_Metrics"
    channel = "counter"
    event_types = {
        "create": SSEEventType.EVENT_METRIC_CREATED,
        "update": SSEEventType.EVENT_METRIC_UPDATED,
        "delete": SSEEventType.EVENT_METRIC_DELETED,
    }
    # Qualified because Metric_ID_Table is joined in
    select = (
        "Event_Metrics.Event_Metric_ID,Event_Metrics.Event_ID,Event_Metrics.Metric_ID,"
        "Event_Metrics.Numerical_Value,Event_Metrics.Group_ID,Metric_ID_Table.Metric_Title"
    )

    def build_update(self, record_id: int, record: Optional[Dict[str, Any]]) -> EventMetricUpdate:
        if not record:
            return EventMetricUpdate(record_id=record_id)
        title = record.get("Metric_Title")
        if title is None:
            title = (record.get("Metric_ID_Table") or {}).get("Metric_Title")
        return EventMetricUpdate(
            event_id=record.get("Event_ID"),
            metric_id=record.get("Metric_ID"),
            metric_name=title or "Unknown",
            value=record.get("Numerical_Value"),
            record_id=record_id,
        )
