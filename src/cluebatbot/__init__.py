"""Top-level package for the cluebat Slack bot."""

from __future__ import annotations

from typing import Any


def run_fleet(*args: Any, **kwargs: Any) -> Any:
    """Lazily import the fleet runner to keep ``import cluebatbot`` light."""
    from .fleet import run_fleet as _run_fleet
    return _run_fleet(*args, **kwargs)

__all__ = ["run_fleet"]
