"""
Secrets lookup — Slack tokens are read from the system keychain
(``secret-tool`` / libsecret) at runtime and never from the config file.

In development environments without ``secret-tool`` the value falls back
to a ``FIGARO_<KEY_NAME>`` environment variable.
"""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger("shared.secrets")


def get_secret(key_name: str, service: str = "figaro") -> str:
    """Retrieve a secret from the system keychain.

    Runs::

        secret-tool lookup service figaro key <key_name>

    Args:
        key_name: The key identifier (e.g. ``"slack-bot-token"``).
        service: The service label in the keychain.

    Raises:
        RuntimeError: If the secret is not found in the keychain or env.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.warning("secret-tool not found; falling back to environment variable")
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")

    env_key = f"FIGARO_{key_name.upper().replace('-', '_')}"
    env_val = os.environ.get(env_key)
    if env_val:
        logger.warning("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )


def get_optional_secret(key_name: str, service: str = "figaro") -> str | None:
    """Like :func:`get_secret`, but return ``None`` when the secret is absent."""
    try:
        return get_secret(key_name, service=service)
    except RuntimeError:
        logger.info("Optional secret '%s' is not configured", key_name)
        return None
