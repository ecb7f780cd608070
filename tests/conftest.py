"""Shared fixtures for mpevents tests."""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

import pytest

from mpevents_server.mp_client import MinistryPlatformError
from mpevents_server.sse import Broadcaster, ClientRegistration


class FakeMinistryPlatform:
    """Stands in for MinistryPlatformClient; records every lookup."""

    def __init__(self, records: Optional[Dict[Tuple[str, int], Dict[str, Any]]] = None, fail: bool = False):
        self.records = records or {}
        self.fail = fail
        self.calls: List[Tuple[str, int, Optional[str]]] = []
        self.closed = False

    async def get_record(self, table: str, record_id: int, select: Optional[str] = None):
        self.calls.append((table, record_id, select))
        if self.fail:
            raise MinistryPlatformError(f"{table} #{record_id}: HTTP 500")
        return self.records.get((table, record_id))

    async def close(self) -> None:
        self.closed = True


def drain_messages(reg: ClientRegistration) -> List[Dict[str, Any]]:
    """Pop every queued frame and decode it; the close sentinel is skipped."""
    out = []
    while not reg.queue.empty():
        frame = reg.queue.get_nowait()
        if frame is None:
            continue
        assert frame.startswith("data: ") and frame.endswith("\n\n")
        out.append(json.loads(frame[len("data: "):]))
    return out


@pytest.fixture
def broadcaster():
    return Broadcaster(queue_size=10)


@pytest.fixture
def fake_mp():
    return FakeMinistryPlatform(
        records={
            ("Event_Metrics", 17): {
                "Event_Metric_ID": 17,
                "Event_ID": 501,
                "Metric_ID": 3,
                "Numerical_Value": 142,
                "Group_ID": None,
                "Metric_Title": "Adults",
            },
            ("Feedback_Entries", 88): {
                "Feedback_Entry_ID": 88,
                "Entry_Title": "Healing for my mom",
                "Description": "Surgery on Friday",
                "Date_Submitted": "2026-10-18T09:30:00",
                "Approved": True,
            },
        }
    )
