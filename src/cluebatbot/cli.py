"""Command-line entry point for the cluebat bot."""

from __future__ import annotations

import asyncio
import dataclasses
from pathlib import Path
from typing import Any, Optional

import structlog
import typer
from rich.console import Console

from .config import EXAMPLE_CONFIG_FILE, Settings, get_settings, load_tenant_configs, write_example_config
from .errors import ConfigurationError, StateStoreError
from .fleet import run_fleet
from .rich_logger import configure_logging, display_startup_banner

console = Console(stderr=True)
_logger = structlog.get_logger("cli")


def _run_async(coro: Any) -> Any:
    return asyncio.run(coro)


app = typer.Typer(help="Slack cluebat bot with fleet-wide leader election.", invoke_without_command=True)


@app.callback()
def _app_callback(
    ctx: typer.Context,
    debug: Optional[bool] = typer.Option(None, "--debug/--no-debug", help="Enable debug behavior (overrides CSLACK_DEBUG)."),
    verbose: bool = typer.Option(False, "--verbose", help="Log at DEBUG level."),
    colors: bool = typer.Option(True, "--colors/--no-colors", help="Colorize console log output."),
    creds_file: Optional[str] = typer.Option(None, "--creds-file", help="Tenant credentials JSON file."),
    port: str = typer.Option("2000", "--port", help="Reserved; not used."),
    service_dns: str = typer.Option("localhost", "--service-dns", help="Reserved; not used."),
) -> None:
    """Default to ``run`` (with the same flags) when no subcommand is given."""
    if ctx.invoked_subcommand is None:
        run(
            debug=debug,
            verbose=verbose,
            colors=colors,
            creds_file=creds_file,
            port=port,
            service_dns=service_dns,
        )


def _apply_overrides(settings: Settings, *, debug: Optional[bool], creds_file: Optional[str]) -> Settings:
    changes: dict[str, Any] = {}
    if debug is not None:
        changes["debug"] = debug
    if creds_file:
        changes["creds_file"] = creds_file
    return dataclasses.replace(settings, **changes) if changes else settings


@app.command("run")
def run(
    debug: Optional[bool] = typer.Option(None, "--debug/--no-debug", help="Enable debug behavior (overrides CSLACK_DEBUG)."),
    verbose: bool = typer.Option(False, "--verbose", help="Log at DEBUG level."),
    colors: bool = typer.Option(True, "--colors/--no-colors", help="Colorize console log output."),
    creds_file: Optional[str] = typer.Option(None, "--creds-file", help="Tenant credentials JSON file."),
    port: str = typer.Option("2000", "--port", help="Reserved; not used."),
    service_dns: str = typer.Option("localhost", "--service-dns", help="Reserved; not used."),
) -> None:
    """Run the bot for every configured tenant once this instance is fleet leader."""
    settings = _apply_overrides(get_settings(), debug=debug, creds_file=creds_file)
    configure_logging(settings, verbose=verbose, colors=colors)

    if settings.write_example_config:
        path = write_example_config(EXAMPLE_CONFIG_FILE)
        console.print(f"[yellow]Wrote example config to {path}. Unset WRITE_EXAMPLE_CONFIG to stop doing this.[/]")
        raise typer.Exit(code=0)

    try:
        tenants = load_tenant_configs(settings.creds_file)
    except ConfigurationError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc

    display_startup_banner(settings, tenants)
    try:
        exit_code = _run_async(run_fleet(settings, tenants))
    except StateStoreError as exc:
        _logger.error("cli.state_store_unreachable", host=settings.store.redis_host, error=str(exc))
        console.print(f"[red]Error reaching the state store: {exc}[/]")
        raise typer.Exit(code=1) from exc
    raise typer.Exit(code=int(exit_code))


@app.command("write-example-config")
def write_example(
    path: Path = typer.Option(Path(EXAMPLE_CONFIG_FILE), "--path", help="Where to write the example."),
) -> None:
    """Write a two-tenant example credentials file."""
    try:
        written = write_example_config(path)
    except ConfigurationError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
    console.print(f"[green]Wrote {written}[/]")


@app.command("check-config")
def check_config(
    creds_file: Optional[str] = typer.Option(None, "--creds-file", help="Tenant credentials JSON file."),
) -> None:
    """Validate the credentials file and list its tenants."""
    settings = _apply_overrides(get_settings(), debug=None, creds_file=creds_file)
    try:
        tenants = load_tenant_configs(settings.creds_file)
    except ConfigurationError as exc:
        console.print(f"[red]{exc}[/]")
        raise typer.Exit(code=1) from exc
    display_startup_banner(settings, tenants)
    console.print(f"[green]{len(tenants)} tenant(s) OK[/]")


def main() -> None:
    app(prog_name="cluebatbot")
