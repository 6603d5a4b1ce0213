"""Logging setup (structlog over stdlib logging) and the Rich startup banner."""

from __future__ import annotations

import logging
from typing import Any

import structlog
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Settings
from .models import TenantConfig
from .utils import mask_secret

# Banner output goes to stderr so stdout stays clean for piping
console = Console(stderr=True, soft_wrap=True)

_LOGGING_CONFIGURED = False


def configure_logging(settings: Settings, *, verbose: bool = False, colors: bool = True, force: bool = False) -> None:
    """Initialize structlog and stdlib logging formatting.

    ``verbose`` (or the per-component debug toggle) lowers the level to DEBUG.
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED and not force:
        return
    level_name = "DEBUG" if (verbose or settings.debug) else settings.log_level.upper()
    level = getattr(logging, level_name, logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    elif settings.log_rich_enabled:
        processors.append(structlog.dev.ConsoleRenderer(colors=colors))
    else:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "tenant"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=level)

    # Per-request noise from the HTTP and websocket clients
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)

    _LOGGING_CONFIGURED = True


def flush_logs() -> None:
    """Flush every stdlib handler; called on shutdown before exiting."""
    for handler in logging.getLogger().handlers:
        try:
            handler.flush()
        except (OSError, ValueError):
            continue


def _tenant_table(tenants: list[TenantConfig]) -> Table:
    table = Table(box=box.SIMPLE, show_edge=False, padding=(0, 1))
    table.add_column("Tenant", style="bold bright_green")
    table.add_column("API key", style="dim")
    table.add_column("Control channel", style="cyan")
    table.add_column("Owner", style="magenta")
    for tenant in tenants:
        table.add_row(tenant.name, mask_secret(tenant.api_key), tenant.control_channel_id, tenant.owner_id)
    return table


def display_startup_banner(settings: Settings, tenants: list[TenantConfig]) -> None:
    """Print instance identity, store target and the tenant list."""
    store_target = "in-memory" if settings.store.backend == "memory" else settings.store.redis_host
    info = Table(show_header=False, box=None, padding=(0, 1))
    info.add_column("Key", style="bold bright_yellow")
    info.add_column("Value")
    info.add_row("Instance", settings.instance_id + (" (cluster)" if settings.running_in_cluster else ""))
    info.add_row("State store", store_target)
    info.add_row("Leader mode", f"{settings.leader.mode} ({settings.leader.key})")
    info.add_row("Debug", "on" if settings.debug else "off")
    console.print(
        Panel(
            info,
            title="[bold cyan]ClueBatBot[/bold cyan]",
            border_style="cyan",
            box=box.ROUNDED,
        )
    )
    console.print(_tenant_table(tenants))
