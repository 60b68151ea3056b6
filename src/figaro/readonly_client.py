"""
ReadOnlySlackClient — guard around slack_sdk's ``AsyncWebClient``.

Figaro only ever reads from the workspace.  This proxy forwards attribute
access to the underlying Web API client and rejects every method that is
not on an explicit allowlist of read calls; a rejected call is logged at
CRITICAL and raises ``PermissionError``.

Design principles:
    - Default-deny: anything not in ALLOWED_METHODS is rejected.
    - Fail-closed: if the allowlist check itself raises, the call is denied.
    - No monkey-patching: the wrapper never modifies the underlying client.
"""

from __future__ import annotations

import logging
import time
from weakref import WeakKeyDictionary
from typing import Any, FrozenSet

from slack_sdk.web.async_client import AsyncWebClient

logger = logging.getLogger("figaro.readonly_client")

# ---------------------------------------------------------------------------
# Allowed methods: read-only Slack Web API calls.
# Do NOT add chat_postMessage, chat_update, conversations_archive,
# conversations_rename or any other method that mutates the workspace.
# ---------------------------------------------------------------------------
ALLOWED_METHODS: FrozenSet[str] = frozenset(
    {
        "auth_test",
        "users_list",
        "conversations_list",
        "conversations_history",
    }
)

_CLIENT_MAP: "WeakKeyDictionary[ReadOnlySlackClient, AsyncWebClient]" = WeakKeyDictionary()


class ReadOnlySlackClient:
    """Read-only proxy around an ``AsyncWebClient`` instance.

    Usage::

        client = ReadOnlySlackClient(AsyncWebClient(token=bot_token))
        resp = await client.users_list(limit=200)

    Any call to a method **not** in ``ALLOWED_METHODS`` raises
    ``PermissionError``.
    """

    __slots__ = ("__weakref__",)

    def __init__(self, client: AsyncWebClient) -> None:
        _CLIENT_MAP[self] = client

    @staticmethod
    def _client(self: "ReadOnlySlackClient") -> AsyncWebClient:
        client = _CLIENT_MAP.get(self)
        if client is None:
            raise PermissionError("ReadOnlySlackClient: internal state unavailable.")
        return client

    def __getattribute__(self, name: str) -> Any:
        """Return allowed Web API methods; reject everything else."""
        if name in {
            "__class__",
            "__repr__",
            "__setattr__",
            "__delattr__",
            "__getattribute__",
            "_client",
        }:
            return object.__getattribute__(self, name)

        if name.startswith("_"):
            logger.critical(
                "BLOCKED  | attr=%-27s ts=%s  | internal attribute access denied",
                name,
                time.time(),
            )
            raise PermissionError(
                f"ReadOnlySlackClient: internal attribute access to '{name}' is denied."
            )

        try:
            client = ReadOnlySlackClient._client(self)
            if name in ALLOWED_METHODS:
                attr = getattr(client, name)
                if not callable(attr):
                    raise PermissionError(
                        f"ReadOnlySlackClient: allowed member '{name}' is not callable."
                    )
                logger.debug("ALLOWED  | method=%-25s ts=%s", name, time.time())
                return attr

            logger.critical(
                "BLOCKED  | method=%-25s ts=%s  | PermissionError raised",
                name,
                time.time(),
            )
            raise PermissionError(
                f"ReadOnlySlackClient: access to '{name}' is denied. "
                f"Only these methods are permitted: {sorted(ALLOWED_METHODS)}"
            )

        except PermissionError:
            raise

        except Exception:
            logger.critical(
                "BLOCKED  | method=%-25s ts=%s  | unexpected error during "
                "allowlist check; failing closed",
                name,
                time.time(),
                exc_info=True,
            )
            raise PermissionError(
                f"ReadOnlySlackClient: access to '{name}' denied "
                f"(fail-closed on unexpected error)."
            )

    def __setattr__(self, name: str, value: Any) -> None:
        raise PermissionError("ReadOnlySlackClient: setting attributes is not allowed.")

    def __delattr__(self, name: str) -> None:
        raise PermissionError("ReadOnlySlackClient: deleting attributes is not allowed.")

    def __repr__(self) -> str:
        return f"<ReadOnlySlackClient allowed={sorted(ALLOWED_METHODS)}>"
