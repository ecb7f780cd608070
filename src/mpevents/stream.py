from __future__ import annotations

import json
import time
from typing import Any, Dict, Iterable, Iterator, Optional

import httpx
from rich.console import Console
from rich.table import Table

console = Console()

MAX_BACKOFF_S = 30.0


def _render_event(e: dict) -> None:
    table = Table(show_header=False, box=None, pad_edge=False)
    table.add_row("[bold]type[/bold]", str(e.get("type", "")))
    channel = e.get("channel")
    if channel:
        table.add_row("[bold]channel[/bold]", str(channel))
    table.add_row("[bold]time[/bold]", str(e.get("timestamp", "")))
    data = e.get("data")
    if isinstance(data, dict):
        for k, v in data.items():
            table.add_row(f"[bold]{k}[/bold]", "" if v is None else str(v)[:200])
    elif data is not None:
        table.add_row("[bold]data[/bold]", str(data)[:200])
    console.print(table)
    console.print("-" * 60)


def iter_sse_messages(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """Decode ``data:`` frames from a text/event-stream line iterator.

    Comment lines (keepalives) are skipped, as are frames that are not JSON.
    """
    buf = []
    for line in lines:
        if line is None:
            continue
        if line == "":
            data_lines = [l for l in buf if l.startswith("data:")]
            buf = []
            if not data_lines:
                continue
            data = "\n".join([l[5:].lstrip() for l in data_lines])
            try:
                yield json.loads(data)
            except ValueError:
                continue
            continue
        if line.startswith(":"):
            continue
        buf.append(line)


def backoff_delay(attempt: int) -> float:
    return min(float(2 ** attempt), MAX_BACKOFF_S)


def stream_sse(
    *,
    events_url: str,
    json_mode: bool = False,
    event_type: Optional[str] = None,
    show_pings: bool = False,
    reconnect: bool = True,
) -> None:
    console.print(f"Streaming {events_url} (Ctrl+C to stop)")
    attempt = 0
    while True:
        try:
            with httpx.Client(timeout=httpx.Timeout(10.0, read=None), follow_redirects=True) as client:
                with client.stream("GET", events_url, headers={"Accept": "text/event-stream"}) as r:
                    r.raise_for_status()
                    for evt in iter_sse_messages(r.iter_lines()):
                        kind = evt.get("type")
                        if kind == "connection-established":
                            attempt = 0
                            console.print(f"[green]connected[/green] as {evt.get('data', {}).get('clientId', '?')}")
                            continue
                        if kind == "ping" and not show_pings:
                            continue
                        if event_type and kind != event_type:
                            continue
                        if json_mode:
                            console.print_json(data=evt)
                        else:
                            _render_event(evt)
        except httpx.HTTPError as ex:
            console.print(f"[red]stream error[/red]: {ex}")
        if not reconnect:
            return
        delay = backoff_delay(attempt)
        attempt += 1
        console.print(f"[yellow]reconnecting in {delay:.0f}s[/yellow] (attempt {attempt})")
        time.sleep(delay)


def send_webhook(
    *,
    webhook_url: str,
    secret: str,
    table: str,
    record_id: int,
    action: Optional[str] = None,
    timeout_s: float = 10.0,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {"table": table, "recordId": record_id}
    if action:
        body["action"] = action
    with httpx.Client(timeout=timeout_s, follow_redirects=True) as client:
        r = client.post(webhook_url, json=body, headers={"X-MP-Webhook-Secret": secret})
        r.raise_for_status()
        return r.json()


def get_json(url: str, timeout_s: float = 10.0) -> Dict[str, Any]:
    with httpx.Client(timeout=timeout_s, follow_redirects=True) as client:
        r = client.get(url)
        r.raise_for_status()
        return r.json()
