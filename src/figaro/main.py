"""
Figaro entry point — mirrors a Slack workspace into PostgreSQL, classifies
channels by the email domain of their latest poster and pushes the result
to connected browsers over WebSocket.

Key behaviours:
    - Loads configuration from ``/etc/figaro/settings.toml``
      (overridable with ``FIGARO_CONFIG``).
    - Slack tokens come from the keychain via ``shared.secrets``.
    - A full resync runs at startup; failure there is fatal.
    - Handles SIGTERM / SIGINT for graceful shutdown.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List

import toml
from slack_sdk.web.async_client import AsyncWebClient

from figaro.broadcaster import Broadcaster
from figaro.classifier import Classifier
from figaro.orchestrator import Orchestrator
from figaro.push_server import PushServer
from figaro.slack_source import SlackSource
from figaro.storage import Storage
from figaro.synchronizer import Synchronizer
from shared.audit import AuditLogger
from shared.db import get_connection_pool, init_database
from shared.secrets import get_optional_secret, get_secret

logger = logging.getLogger("figaro.main")

_DEFAULT_CONFIG_PATH = Path(os.environ.get("FIGARO_CONFIG", "/etc/figaro/settings.toml"))

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config(path: Path = _DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
    """
    config = toml.load(path)

    required = [
        ("database",),
        ("figaro", "domains"),
    ]
    for keys in required:
        obj = config
        for k in keys:
            if k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]

    return config


def normalize_domains(value: Any) -> List[str]:
    """Accept a list or a comma-separated string; trim and drop blanks."""
    if isinstance(value, str):
        raw_items = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        raw_items = [str(item) for item in value]
    else:
        raise ValueError(f"Invalid figaro.domains type: {type(value).__name__}")
    domains = [item.strip() for item in raw_items if item.strip()]
    if not domains:
        raise ValueError("figaro.domains has no usable values")
    return domains


def _number(section: Dict[str, Any], key: str, default: float, cast=int):
    value = section.get(key, default)
    try:
        return cast(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s=%r; using default %s", key, value, default)
        return cast(default)


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


def _handle_signal(sig: int, frame: Any) -> None:
    """Signal handler — sets the shutdown event so the loops exit cleanly."""
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    _shutdown_event.set()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main() -> None:
    """Top-level async entry point for the Figaro service."""
    config = load_config()
    figaro_config = config.get("figaro", {})
    push_config = config.get("push", {})
    domains = normalize_domains(figaro_config["domains"])
    logger.info("Domains: %s", domains)

    bot_token = get_secret("slack-bot-token")
    app_token = get_optional_secret("slack-app-token")

    pool = None
    audit = None
    broadcaster = Broadcaster()
    server = None
    try:
        pool = await get_connection_pool(config["database"])
        await init_database(pool)
        storage = Storage(pool)

        log_path = config.get("audit", {}).get("log_path")
        audit = AuditLogger(pool, log_path=Path(log_path)) if log_path else AuditLogger(pool)

        source = SlackSource(
            AsyncWebClient(token=bot_token),
            app_token=app_token,
            page_size=_number(figaro_config, "page_size", 200),
        )
        async with source:
            orchestrator = Orchestrator(
                synchronizer=Synchronizer(source, storage, audit=audit),
                classifier=Classifier(
                    storage,
                    domains,
                    channel_pattern=str(figaro_config.get("channel_pattern", ".*")),
                    message_limit=_number(figaro_config, "message_limit", 3),
                    message_chars=_number(figaro_config, "message_chars", 256),
                ),
                broadcaster=broadcaster,
                live_events=source.live_events,
                resync_interval=_number(
                    figaro_config, "resync_interval_seconds", 3600.0, cast=float
                ),
                shutdown=_shutdown_event,
                audit=audit,
            )
            await orchestrator.start()

            server = PushServer(
                broadcaster,
                storage=storage,
                pool=pool,
                host=str(push_config.get("host", "localhost")),
                port=_number(push_config, "port", 8080),
                write_timeout=_number(push_config, "write_timeout_seconds", 30.0, cast=float),
            )
            await server.start()
            await orchestrator.run()
    finally:
        if server is not None:
            await server.close()
        await broadcaster.close()
        if audit is not None:
            try:
                await audit.close()
            except Exception:
                logger.exception("Failed to flush/close audit logger")
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")
        logger.info("Figaro shut down.")


def run() -> None:
    """Synchronous entry point (console script or systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        asyncio.run(main())
    except Exception:
        logger.exception("Figaro failed to start")
        sys.exit(1)


if __name__ == "__main__":
    run()
