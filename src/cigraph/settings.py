from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping

from .errors import ConfigurationError

_TRUE = {"1", "true", "yes", "on"}


def _default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


def _bool(value: str | None, default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in _TRUE


def _number(env: Mapping[str, str], key: str, kind, default):
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return kind(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    max_workers: int = 1
    log_level: str = "WARNING"
    step_timeout: float | None = None
    output_limit: int = 4000
    cancelled_satisfies_needs: bool = False
    fail_fast: bool = False

    def override(self, **changes) -> "Settings":
        """Return a copy with every non-None keyword applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """
    Read CIGRAPH_* variables. Raises ConfigurationError when a numeric
    variable does not parse.
    """
    env = os.environ if environ is None else environ

    workers = _number(env, "CIGRAPH_MAX_WORKERS", int, None)
    timeout = _number(env, "CIGRAPH_STEP_TIMEOUT", float, 0.0)

    return Settings(
        max_workers=max(1, workers) if workers is not None else _default_workers(),
        log_level=env.get("CIGRAPH_LOG_LEVEL", "WARNING").upper(),
        step_timeout=timeout if timeout > 0 else None,
        output_limit=_number(env, "CIGRAPH_OUTPUT_LIMIT", int, 4000),
        cancelled_satisfies_needs=_bool(env.get("CIGRAPH_CANCELLED_SATISFIES_NEEDS"), False),
        fail_fast=_bool(env.get("CIGRAPH_FAIL_FAST"), False),
    )
