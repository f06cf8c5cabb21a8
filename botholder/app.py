"""botholder CLI: main application entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from botholder.engine.config import ManagerConfig
from botholder.engine.errors import BotholderError


def _configure_logging(level_name: str, verbose: bool) -> Path:
    """Rotating file log under ~/.botholder/logs plus stderr."""
    log_level = "DEBUG" if verbose else level_name.upper()
    log_dir = Path.home() / ".botholder" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "botholder.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _resolve_config_path(explicit: str | None) -> Path | None:
    logger = logging.getLogger(__name__)
    if explicit:
        path = Path(explicit)
        logger.info("Using explicit config path: %s (exists=%s)", path, path.exists())
        return path
    candidate = Path.cwd() / "botholder.yaml"
    if candidate.exists():
        logger.info("Auto-discovered config: %s", candidate)
        return candidate
    logger.info("No config file found (tried %s); using env and defaults", candidate)
    return None


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="botholder",
        description="Keep game-client sessions connected and manage them over HTTP",
    )
    parser.add_argument(
        "--host", default=None,
        help="Interface to listen on (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port", type=int, default=None,
        help="Gateway port (default: $PORT or 80)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ./botholder.yaml if present)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    log_file = _configure_logging(os.getenv("BOTHOLDER_LOG_LEVEL", "INFO"), args.verbose)
    logger = logging.getLogger(__name__)

    from botholder.engine.manager import SessionManager
    from botholder.engine.yaml_config import load_yaml_config
    from botholder.gateway.server import BotholderServer

    try:
        config = ManagerConfig.from_env()
        config_path = _resolve_config_path(args.config)
        if config_path is not None:
            config = load_yaml_config(config_path, base=config)
        if args.host is not None:
            config.host = args.host
        if args.port is not None:
            config.port = args.port
        manager = SessionManager(config)
    except (BotholderError, OSError) as exc:
        logger.error("Startup failed: %s", exc)
        sys.exit(1)

    logger.info(
        "Starting botholder gateway on %s:%d log=%s",
        config.host, config.port, log_file,
    )
    server = BotholderServer(manager, host=config.host, port=config.port)
    asyncio.run(server.start())
    sys.exit(0)


if __name__ == "__main__":
    main()
