"""Runtime helpers for backlogkit CLI orchestration."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, Protocol

from backlogkit.config import BacklogConfig, ConfigStore
from backlogkit.logging import configure_logging, get_logger


class _HandlerCallable(Protocol):
    def __call__(self) -> Any: ...


def prepare_config(
    args: Any, *, store_factory: Callable[[str], ConfigStore] = ConfigStore
) -> BacklogConfig | None:
    """Load the configuration for the given argparse namespace.

    ``init`` writes the configuration itself, so nothing is loaded for it.
    """
    if getattr(args, "cmd", None) == "init":
        return None
    if not hasattr(args, "config"):
        raise AttributeError("Command namespace is missing 'config' attribute")
    cfg = store_factory(args.config).load()
    level = "WARNING" if getattr(args, "quiet", False) else cfg.logging_level
    configure_logging(json_logging=cfg.logging_json_enabled, level=level)
    return cfg


def execute_command(handler: _HandlerCallable, command: str) -> int:
    """Execute a command handler and log how long it took."""
    start = time.perf_counter()
    exit_code = 1
    try:
        result = handler()
        exit_code = int(result) if result is not None else 0
        return exit_code
    finally:
        get_logger().log_performance(
            f"cli_{command}", (time.perf_counter() - start) * 1000, exit_code=exit_code
        )


__all__ = ["prepare_config", "execute_command"]
