"""YAML configuration loader.

Example YAML:
    server:
      host: 0.0.0.0
      port: 8080

    engine:
      max_reconnect_attempts: 10
      idle_activation_delay_seconds: 2
      idle_check_interval_seconds: 5
      respawn_delay_seconds: 2
      log_capacity: 500

    versions:
      default: "1.20.1"
      common: ["1.20.1", "1.19.4", "1.18.2", "1.16.5", "1.12.2"]
      fallback: ["1.19.4", "1.18.2", "1.16.5"]
      probe_timeout_seconds: 5
      handshake_timeout_seconds: 10

    client:
      factory: mybackend.client:create_client

Values missing from the file keep the values of *base* (env or defaults).
"""
from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from .config import ManagerConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    return value


def _version_list(value: Any, name: str) -> list[str]:
    if not isinstance(value, list) or not value:
        raise ConfigError(f"versions.{name} must be a non-empty list")
    return [str(v) for v in value]


def load_yaml_config(
    path: str | Path,
    base: ManagerConfig | None = None,
) -> ManagerConfig:
    """Load and parse a YAML config file on top of *base*."""
    path = Path(path)
    base = base or ManagerConfig()
    logger.info(
        "load_yaml_config: loading %s (exists=%s)", path, path.exists()
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")

    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sorted(raw)) if raw else "(empty)",
    )

    overrides: dict[str, Any] = {}

    # ── Server ─────────────────────────────────────────────────
    server_raw = _section(raw, "server")
    if "host" in server_raw:
        overrides["host"] = str(server_raw["host"])
    if "port" in server_raw:
        overrides["port"] = int(server_raw["port"])

    # ── Engine ─────────────────────────────────────────────────
    engine_raw = _section(raw, "engine")
    for key, cast in (
        ("max_reconnect_attempts", int),
        ("idle_activation_delay_seconds", float),
        ("idle_check_interval_seconds", float),
        ("respawn_delay_seconds", float),
        ("log_capacity", int),
        ("log_level", str),
    ):
        if key in engine_raw:
            overrides[key] = cast(engine_raw[key])

    # ── Versions ───────────────────────────────────────────────
    versions_raw = _section(raw, "versions")
    if "default" in versions_raw:
        overrides["default_version"] = str(versions_raw["default"])
    if "common" in versions_raw:
        overrides["common_versions"] = _version_list(versions_raw["common"], "common")
    if "fallback" in versions_raw:
        overrides["fallback_versions"] = _version_list(versions_raw["fallback"], "fallback")
    for key in ("probe_timeout_seconds", "handshake_timeout_seconds"):
        if key in versions_raw:
            overrides[key] = float(versions_raw[key])

    # ── Client backend ─────────────────────────────────────────
    client_raw = _section(raw, "client")
    if client_raw.get("factory"):
        overrides["client_factory"] = str(client_raw["factory"])

    if overrides.get("log_capacity", base.log_capacity) < 1:
        raise ConfigError("engine.log_capacity must be at least 1")

    return replace(base, **overrides)
