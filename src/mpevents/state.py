from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import urlencode


DEFAULT_STATE_PATH = Path.home() / ".mpevents" / "state.json"


@dataclass
class TargetState:
    base_url: str
    webhook_secret: str = ""

    @property
    def webhook_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/webhooks/mp"

    @property
    def health_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/healthz"

    @property
    def stats_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/events/stats"

    def events_url(self, channels: Iterable[str] = ()) -> str:
        url = f"{self.base_url.rstrip('/')}/api/events"
        names = [c for c in channels if c]
        if names:
            url += "?" + urlencode({"channels": ",".join(names)})
        return url


def load_state(path: Path = DEFAULT_STATE_PATH) -> Optional[TargetState]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return TargetState(
            base_url=data["base_url"],
            webhook_secret=data.get("webhook_secret", ""),
        )
    except FileNotFoundError:
        return None
    except (ValueError, KeyError, TypeError):
        return None


def save_state(state: TargetState, path: Path = DEFAULT_STATE_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    payload = {
        "base_url": state.base_url,
        "webhook_secret": state.webhook_secret,
    }
    tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    os.replace(tmp, path)


def clear_state(path: Path = DEFAULT_STATE_PATH) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
