from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from davsync.core.config import DEFAULT_CONFIG_PATH, AppConfig, load_config, save_config
from davsync.core.logging_setup import setup_logging
from davsync.sync.baseline import BaselineStore
from davsync.sync.confirm import ConfirmationGate, ConsoleGate, StaticGate
from davsync.sync.service import SyncService

app = typer.Typer(add_completion=False)
console = Console()

STATUS_STYLES = {"ok": "green", "warning": "yellow", "error": "red"}


def _gate(yes: Optional[bool]) -> ConfirmationGate:
    if yes is None:
        return ConsoleGate()
    return StaticGate(yes)


def _require_server(cfg: AppConfig) -> None:
    if not cfg.server.url or not cfg.server.username:
        console.print("[red]server not configured[/red]: run `davsync config-set-server` first")
        raise typer.Exit(2)


def _print_event(event) -> None:
    style = STATUS_STYLES.get(event.status, "white")
    console.print(f"[{style}]{event.status}[/{style}] {event.message}")


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml (password redacted)."""
    cfg = load_config(path)
    print(json.dumps(cfg.redacted(), ensure_ascii=False, indent=2))


@app.command("config-set-server")
def config_set_server(
    url: str = typer.Option(..., "--url", help="Server base URL, e.g. https://cloud.example.com"),
    username: str = typer.Option(..., "--username"),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True),
    interval: int = typer.Option(5, "--interval", min=1, help="Minutes between sync cycles."),
    local_root: Optional[str] = typer.Option(None, "--local-root"),
):
    """Store server credentials and sync interval."""
    cfg = load_config()
    cfg.server.url = url
    cfg.server.username = username
    cfg.server.password = password
    cfg.sync.interval_minutes = interval
    if local_root:
        cfg.sync.local_root = local_root
    save_config(cfg)
    print(f"OK: server={url} user={username} interval={interval}min local_root={cfg.sync.local_root}")


@app.command()
def status():
    """Show configuration and last recorded cycle."""
    cfg = load_config()
    service = SyncService(cfg)
    ledger = BaselineStore(cfg.state.baseline_file).load()
    history = service.read_history(limit=1)
    last = history[0] if history else {}

    table = Table(title="davsync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(DEFAULT_CONFIG_PATH))
    table.add_row("server", cfg.server.url or "(unset)")
    table.add_row("username", cfg.server.username or "(unset)")
    table.add_row("local_root", cfg.sync.local_root)
    table.add_row("interval_minutes", str(cfg.sync.interval_minutes))
    table.add_row("tolerance_ms", str(cfg.sync.tolerance_ms))
    table.add_row("baseline_entries", str(len(ledger)))
    table.add_row("last_run", str(last.get("finished_at") or "-"))
    table.add_row("last_status", str(last.get("status") or "-"))
    table.add_row("log", cfg.logging.file)
    console.print(table)


@app.command("baseline-show")
def baseline_show(json_output: bool = typer.Option(False, "--json", help="Output as JSON.")):
    """List paths recorded as present on both sides after the last cycle."""
    cfg = load_config()
    ledger = BaselineStore(cfg.state.baseline_file).load()
    if json_output:
        print(json.dumps(ledger.to_document(), ensure_ascii=False, indent=2))
        return
    for p in ledger.paths():
        print(p)


async def _sync_once(cfg: AppConfig, gate: ConfirmationGate):
    service = SyncService(cfg, gate=gate)
    client = service.client_factory(cfg.server.url, cfg.server.username, cfg.server.password)
    await asyncio.to_thread(client.probe)
    # No ticker: one cycle through the same guard the daemon uses.
    session = service.make_session(cfg.server.url, cfg.server.username, client)
    return await session.orchestrator.run_cycle("manual")


@app.command("sync-once")
def sync_once(
    yes: Optional[bool] = typer.Option(
        None,
        "--yes/--no",
        help="Answer deletion prompts automatically instead of asking.",
    ),
):
    """Run one full cycle and print its summary."""
    cfg = load_config()
    _require_server(cfg)
    setup_logging(cfg.logging.level, cfg.logging.file)
    try:
        summary = asyncio.run(_sync_once(cfg, _gate(yes)))
    except Exception as e:
        print(json.dumps({"ok": False, "error": str(e)}, ensure_ascii=False, indent=2))
        raise typer.Exit(2)
    if summary is None:
        raise typer.Exit(2)
    print(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))
    if summary.fatal_error or summary.errors:
        raise typer.Exit(2)


async def _run_daemon(cfg: AppConfig, gate: ConfirmationGate) -> int:
    service = SyncService(cfg, gate=gate)
    events = service.subscribe()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    result = await service.login(cfg.server.url, cfg.server.username, cfg.server.password)
    while not events.empty():
        _print_event(events.get_nowait())
    if result.get("status") != "sync-loop-started":
        return 2

    async def printer():
        while True:
            _print_event(await events.get())

    printer_task = asyncio.create_task(printer())
    try:
        await stop.wait()
    finally:
        console.print("shutting down: final upload pass")
        await service.shutdown(cfg.sync.shutdown_timeout_sec)
        printer_task.cancel()
    return 0


@app.command()
def run(
    yes: Optional[bool] = typer.Option(
        None,
        "--yes/--no",
        help="Answer deletion prompts automatically instead of asking.",
    ),
):
    """Log in and keep syncing until interrupted."""
    cfg = load_config()
    _require_server(cfg)
    setup_logging(cfg.logging.level, cfg.logging.file)
    code = asyncio.run(_run_daemon(cfg, _gate(yes)))
    if code:
        raise typer.Exit(code)


@app.command()
def serve():
    """Start the web API (login, status events, confirmations)."""
    from davsync.web.main import main as web_main

    web_main()


def main():
    app()


if __name__ == "__main__":
    main()
