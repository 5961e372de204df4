"""CLI commands for agentrelay."""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Callable

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from agentrelay import __logo__, __version__

app = typer.Typer(
    name="agentrelay",
    help=f"{__logo__} agentrelay - Remote command relay for local agent sessions",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} agentrelay v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """agentrelay - Remote command relay for local agent sessions."""
    pass


def _configure_logging(verbose: bool) -> None:
    debug = verbose or os.environ.get("AGENTRELAY_DEBUG", "").strip() in {"1", "true", "yes"}
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if debug else "INFO")


def _mask(value: str, keep: int = 6) -> str:
    if not value:
        return ""
    return f"{value[:keep]}..." if len(value) > keep else "***"


# ============================================================================
# Run
# ============================================================================


@app.command()
def run(
    config_path: Path | None = typer.Option(None, "--config", "-c", help="Config file path"),
    verbose: bool = typer.Option(False, "--verbose", help="Debug logging"),
):
    """Start the relay: one loop per transport binding."""
    from agentrelay.chat.text import compute_pairing_code
    from agentrelay.config.loader import ConfigReloader, ensure_generated_secrets, get_config_path, load_config
    from agentrelay.relay.loop import RelayLoop
    from agentrelay.runtime.manager import SessionManager
    from agentrelay.transports import BINDINGS, create_transport

    _configure_logging(verbose)

    path = config_path or get_config_path()
    config = load_config(path)
    ensure_generated_secrets(config, path)
    reloader = ConfigReloader(path, config)

    console.print(f"{__logo__} Starting agentrelay runner {config.runner.name} ({config.runner.runner_id})")
    for binding in BINDINGS:
        if config.binding_configured(binding):
            console.print(f"[green]✓[/green] {binding} binding enabled")
    if config.binding_configured("telegram"):
        console.print(f"  Telegram link code: /link {compute_pairing_code(config.telegram.pairing_secret)}")

    sessions = SessionManager(config.workspaces, config.agent)

    def _factory_for(binding: str) -> Callable[[Any, SessionManager], Any]:
        return lambda cfg, mgr: create_transport(binding, cfg, mgr, path)

    loops = [RelayLoop(binding, _factory_for(binding), sessions, reloader) for binding in BINDINGS]

    async def _run():
        for loop in loops:
            await loop.start()
        try:
            await asyncio.Event().wait()
        finally:
            for loop in loops:
                await loop.stop()
            await sessions.close_all()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("\nShutting down...")


# ============================================================================
# Status
# ============================================================================


@app.command()
def status(
    config_path: Path | None = typer.Option(None, "--config", "-c", help="Config file path"),
):
    """Show runner identity and binding configuration."""
    from agentrelay.chat.text import compute_pairing_code
    from agentrelay.config.loader import get_config_path, load_config
    from agentrelay.transports.nats import parse_nats_auth

    path = config_path or get_config_path()
    config = load_config(path)

    console.print(f"{__logo__} agentrelay status\n")
    console.print(f"Config: {path} {'[green]✓[/green]' if path.exists() else '[red]✗[/red]'}")
    console.print(f"Runner: {config.runner.runner_id or '[dim]not generated yet[/dim]'} ({config.runner.name})")
    console.print(f"Workspaces: {len(config.workspaces)}\n")

    table = Table(title="Bindings")
    table.add_column("Binding", style="cyan")
    table.add_column("Enabled", style="green")
    table.add_column("Configuration", style="yellow")

    rec = config.records
    table.add_row(
        "records",
        "✓" if rec.enabled else "✗",
        f"{rec.root_path} / {rec.container_id}" if rec.container_id else "[dim]no container[/dim]",
    )

    nats_url = parse_nats_auth(config.nats.url)[0] if config.nats.url else ""
    table.add_row(
        "nats",
        "✓" if config.nats.enabled else "✗",
        nats_url or "[dim]not configured[/dim]",
    )

    tg = config.telegram
    if tg.token:
        tg_details = f"token: {_mask(tg.token, 10)} | linked users: {len(tg.allowed_user_ids)}"
        if tg.pairing_secret:
            tg_details += f" | /link {compute_pairing_code(tg.pairing_secret)}"
    else:
        tg_details = "[dim]not configured[/dim]"
    table.add_row("telegram", "✓" if tg.enabled else "✗", tg_details)

    console.print(table)


# ============================================================================
# Record-store diagnostics
# ============================================================================


records_app = typer.Typer(help="Record-store diagnostics")
app.add_typer(records_app, name="records")


@records_app.callback()
def records_main(
    ctx: typer.Context,
    root: Path | None = typer.Option(None, "--root", help="Record store root (defaults to config)"),
    config_path: Path | None = typer.Option(None, "--config", "-c", help="Config file path"),
):
    """Inspect and drive a record container out of process."""
    ctx.obj = {"root": root, "config_path": config_path}


def _records_run(ctx: typer.Context, usage: str, required: dict[str, str], action: Callable[[Any], Any]) -> None:
    """Validate arguments, run one diagnostic and print a single JSON line."""
    from agentrelay.config.loader import load_config
    from agentrelay.relay.errors import RelayError
    from agentrelay.transports.records import FileRecordStore, RecordDiagnostics

    missing = [name for name, value in required.items() if not (value or "").strip()]
    if missing:
        typer.echo(f"usage: agentrelay records {usage}", err=True)
        raise typer.Exit(2)

    opts = ctx.obj or {}
    root = opts.get("root") or load_config(opts.get("config_path")).records.root_path
    try:
        diagnostics = RecordDiagnostics(FileRecordStore(root, required["container"].strip()))
        result = action(diagnostics)
    except (RelayError, ValueError, OSError) as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(json.dumps(result, ensure_ascii=False, separators=(",", ":"), default=str))


@records_app.command("status")
def records_status(ctx: typer.Context, container: str = typer.Argument("")):
    """Account/container availability."""
    _records_run(ctx, "status <container>", {"container": container}, lambda d: d.status())


@records_app.command("test")
def records_test(ctx: typer.Context, container: str = typer.Argument("")):
    """Save, fetch and delete a throwaway record."""
    _records_run(ctx, "test <container>", {"container": container}, lambda d: d.roundtrip_test())


@records_app.command("latest-runner")
def records_latest_runner(ctx: typer.Context, container: str = typer.Argument("")):
    """Most recently seen runner."""
    _records_run(ctx, "latest-runner <container>", {"container": container}, lambda d: d.latest_runner())


@records_app.command("upsert-runner")
def records_upsert_runner(
    ctx: typer.Context,
    container: str = typer.Argument(""),
    runner_id: str = typer.Argument(""),
):
    """Write a presence record for a runner id."""
    from agentrelay.config.schema import RunnerConfig

    identity = RunnerConfig()
    _records_run(
        ctx,
        "upsert-runner <container> <runner-id>",
        {"container": container, "runner_id": runner_id},
        lambda d: d.upsert_runner(runner_id.strip(), identity.name, identity.platform),
    )


@records_app.command("get-snapshot")
def records_get_snapshot(
    ctx: typer.Context,
    container: str = typer.Argument(""),
    runner_id: str = typer.Argument(""),
    scope_key: str = typer.Argument(""),
):
    """Print a snapshot envelope (null when missing)."""
    _records_run(
        ctx,
        "get-snapshot <container> <runner-id> <scope-key>",
        {"container": container, "runner_id": runner_id, "scope_key": scope_key},
        lambda d: d.get_snapshot(runner_id.strip(), scope_key.strip()),
    )


@records_app.command("get-command-result")
def records_get_command_result(
    ctx: typer.Context,
    container: str = typer.Argument(""),
    runner_id: str = typer.Argument(""),
    command_id: str = typer.Argument(""),
):
    """Print one command result (null when missing)."""
    _records_run(
        ctx,
        "get-command-result <container> <runner-id> <command-id>",
        {"container": container, "runner_id": runner_id, "command_id": command_id},
        lambda d: d.get_command_result(runner_id.strip(), command_id.strip()),
    )


@records_app.command("latest-command-result")
def records_latest_command_result(
    ctx: typer.Context,
    container: str = typer.Argument(""),
    runner_id: str = typer.Argument(""),
):
    """Print the newest command result for a runner."""
    _records_run(
        ctx,
        "latest-command-result <container> <runner-id>",
        {"container": container, "runner_id": runner_id},
        lambda d: d.latest_command_result(runner_id.strip()),
    )


@records_app.command("submit-command")
def records_submit_command(
    ctx: typer.Context,
    container: str = typer.Argument(""),
    runner_id: str = typer.Argument(""),
    payload_json: str = typer.Argument(""),
):
    """Queue a command record for a runner."""
    _records_run(
        ctx,
        "submit-command <container> <runner-id> <payload-json>",
        {"container": container, "runner_id": runner_id, "payload_json": payload_json},
        lambda d: d.submit_command(runner_id.strip(), payload_json),
    )


if __name__ == "__main__":
    app()
