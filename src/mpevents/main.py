from __future__ import annotations

import os
from typing import List, Optional

import httpx
import typer
from rich.console import Console

from mpevents.state import TargetState, load_state, save_state, clear_state, DEFAULT_STATE_PATH
from mpevents.stream import get_json, send_webhook, stream_sse

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()

NO_TARGET = "[yellow]No target set.[/yellow] Use: mpevents serve  OR  mpevents target set"


def _require_target() -> TargetState:
    st = load_state()
    if not st:
        console.print(NO_TARGET)
        raise typer.Exit(code=1)
    return st


target_app = typer.Typer(add_completion=False, no_args_is_help=True)
app.add_typer(target_app, name="target")


@target_app.command("set")
def target_set(
    url: str = typer.Option(..., "--url", help="Base URL, e.g. https://apps.example.org or http://127.0.0.1:8080"),
    secret: str = typer.Option("", "--secret", help="Webhook secret (needed for send)"),
):
    base = (url or "").strip().rstrip("/")
    if not base:
        console.print("[red]url is empty[/red]")
        raise typer.Exit(code=1)

    save_state(TargetState(base_url=base, webhook_secret=secret.strip()))
    console.print("[green]saved[/green]")
    console.print(f"events:  {base}/api/events")
    console.print(f"webhook: {base}/api/webhooks/mp")


@target_app.command("show")
def target_show():
    st = _require_target()
    console.print(f"base_url: {st.base_url}")
    console.print(f"secret:   {'set' if st.webhook_secret else '[yellow]not set[/yellow]'}")
    console.print(f"events:   {st.events_url()}")
    console.print(f"webhook:  {st.webhook_url}")


@target_app.command("clear")
def target_clear():
    clear_state()
    console.print(f"[green]state cleared[/green] ({DEFAULT_STATE_PATH})")


@app.command("listen")
def listen(
    channel: Optional[List[str]] = typer.Option(None, "--channel", "-c", help="Channel to subscribe to (repeatable). Omit for all."),
    event_type: Optional[str] = typer.Option(None, "--type", help="Only show events of this type."),
    json_mode: bool = typer.Option(False, "--json", help="Print each event as raw JSON."),
    show_pings: bool = typer.Option(False, "--pings", help="Also show ping events."),
    reconnect: bool = typer.Option(True, "--reconnect/--no-reconnect", help="Reconnect with backoff when the stream drops."),
):
    st = _require_target()
    try:
        stream_sse(
            events_url=st.events_url(channel or []),
            json_mode=json_mode,
            event_type=event_type,
            show_pings=show_pings,
            reconnect=reconnect,
        )
    except KeyboardInterrupt:
        console.print("\n[cyan]stopped[/cyan]")


@app.command("send")
def send(
    table: str = typer.Argument(..., help="MinistryPlatform table, e.g. Event_Metrics"),
    record_id: int = typer.Argument(..., help="Record ID that changed"),
    action: Optional[str] = typer.Option(None, help="create, update or delete (server defaults to update)"),
):
    """Post a test webhook as MinistryPlatform would."""
    st = _require_target()
    if not st.webhook_secret:
        console.print("[red]no webhook secret saved[/red] — run: mpevents target set --url ... --secret ...")
        raise typer.Exit(code=1)
    try:
        result = send_webhook(
            webhook_url=st.webhook_url,
            secret=st.webhook_secret,
            table=table,
            record_id=record_id,
            action=action,
        )
    except httpx.HTTPStatusError as ex:
        console.print(f"[red]rejected[/red]: {ex.response.status_code} {ex.response.text}")
        raise typer.Exit(code=1)
    except httpx.HTTPError as ex:
        console.print(f"[red]send failed[/red]: {ex}")
        raise typer.Exit(code=1)
    console.print_json(data=result)


@app.command("status")
def status():
    st = _require_target()
    try:
        console.print_json(data=get_json(st.health_url))
        console.print_json(data=get_json(st.stats_url))
    except httpx.HTTPError as ex:
        console.print(f"[red]status failed[/red]: {ex}")
        raise typer.Exit(code=1)


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind host"),
    port: int = typer.Option(8080, help="Bind port"),
    secret: Optional[str] = typer.Option(None, help="Webhook secret (or set MPEVENTS_WEBHOOK_SECRET)"),
    db_path: str = typer.Option("mpevents.sqlite3", help="SQLite file for the webhook receipt log"),
    set_target: bool = typer.Option(True, "--set-target/--no-set-target", help="Save this server as the active target."),
    public_url: Optional[str] = typer.Option(None, "--public-url", help="Override base URL saved to state (useful when binding 0.0.0.0)."),
):
    if secret:
        os.environ["MPEVENTS_WEBHOOK_SECRET"] = secret.strip()
    os.environ["MPEVENTS_DB_PATH"] = db_path

    if public_url:
        base = public_url.rstrip("/")
    else:
        connect_host = "127.0.0.1" if host in ("0.0.0.0", "::") else host
        base = f"http://{connect_host}:{port}"

    if set_target:
        save_state(TargetState(base_url=base, webhook_secret=os.environ.get("MPEVENTS_WEBHOOK_SECRET", "")))
        console.print(f"[green]saved target[/green] → {base} (state: {DEFAULT_STATE_PATH})")

    console.print(f"Starting server on http://{host}:{port}")
    console.print(f"Events:  {base}/api/events")
    console.print(f"Webhook: {base}/api/webhooks/mp")

    import uvicorn
    uvicorn.run("mpevents_server.main:app", host=host, port=port, reload=False, log_level="info")


if __name__ == "__main__":
    app()
