"""Configuration loading utilities for the webhook chat server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable WEBHOOK_CHAT_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``WEBHOOK_CHAT__`` (e.g., WEBHOOK_CHAT__RATE_LIMIT__LIMIT=5), plus the two
well-known deployment variables ``N8N_WEBHOOK_URL`` and ``APP_ENV``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "WEBHOOK_CHAT__"
CONFIG_ENV_VAR = "WEBHOOK_CHAT_CONFIG"
DEFAULT_CONFIG_PATH = "config/default.yaml"

# Deployment-level variables, checked in order.
WEBHOOK_URL_VARS = ("N8N_WEBHOOK_URL", "WEBHOOK_URL")
ENVIRONMENT_VARS = ("APP_ENV", "NODE_ENV")


class ConfigError(RuntimeError):
    """Raised when a configuration file exists but cannot be used."""


def _coerce(value: str) -> Any:
    # Attempt to parse simple types (bool, int, float)
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix WEBHOOK_CHAT__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., WEBHOOK_CHAT__RATE_LIMIT__LIMIT -> cfg["rate_limit"]["limit"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)

    for var in WEBHOOK_URL_VARS:
        url = os.environ.get(var)
        if url:
            webhook = cfg.get("webhook")
            if not isinstance(webhook, dict):
                webhook = cfg["webhook"] = {}
            webhook["url"] = url
            break

    for var in ENVIRONMENT_VARS:
        env = os.environ.get(var)
        if env:
            cfg["environment"] = env
            break
    return cfg


def load_config(path: str | Path | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the chat server.

    Parameters
    ----------
    path : str | Path | None
        Optional path to a configuration file. If not provided, the
        environment variable ``WEBHOOK_CHAT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration dictionary with environment overrides applied.
    """
    if path is None:
        path = os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH)

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides({})

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(cfg, dict):
        raise ConfigError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(cfg)


@dataclass(frozen=True)
class Settings:
    """Typed view over the loaded configuration dictionary."""

    webhook_url: Optional[str] = None
    environment: str = "development"
    request_timeout: float = 30.0
    rate_limit: int = 10
    rate_window_ms: int = 60_000
    max_message_chars: int = 1000
    trust_forwarded_for: bool = True
    sweep_interval_s: float = 300.0
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: Optional[str] = None

    @property
    def webhook_configured(self) -> bool:
        return bool(self.webhook_url and self.webhook_url.strip())

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "Settings":
        webhook = cfg.get("webhook") or {}
        limits = cfg.get("rate_limit") or {}
        server = cfg.get("server") or {}
        logging_cfg = cfg.get("logging") or {}

        try:
            limit = int(limits.get("limit", 10))
            window_ms = int(limits.get("window_ms", 60_000))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"rate_limit.limit and rate_limit.window_ms must be integers: {e}") from e
        if limit < 1 or window_ms < 1:
            raise ConfigError("rate_limit.limit and rate_limit.window_ms must be >= 1")

        return cls(
            webhook_url=webhook.get("url") or None,
            environment=str(cfg.get("environment", "development")),
            request_timeout=float(webhook.get("timeout", 30.0)),
            rate_limit=limit,
            rate_window_ms=window_ms,
            max_message_chars=int(cfg.get("max_message_chars", 1000)),
            trust_forwarded_for=bool(limits.get("trust_forwarded_for", True)),
            sweep_interval_s=float(limits.get("sweep_interval_s", 300.0)),
            cors_origins=list(server.get("cors_origins") or ["*"]),
            log_level=logging_cfg.get("level"),
        )


def load_settings(path: str | Path | None = None) -> Settings:
    """Shortcut for ``Settings.from_dict(load_config(path))``."""
    return Settings.from_dict(load_config(path))
