"""Audit logging for OAuth events.

Every protocol decision (client authentication, code issuance, token
issuance, refresh, revocation, validation failures) is recorded on the
``mcp_auth.audit`` logger. Tokens, codes and secrets are never written in
full; use ``safe_token_id()`` for anything that identifies a credential.

Enable verbose output via MCP_AUTH_DEBUG=1 environment variable or
enable_debug().
"""

import logging
import os
from typing import Any

logger = logging.getLogger("mcp_auth.audit")

# Module-level debug state
_debug_enabled = False

_FAILURE_RESULTS = ("failure", "warning")


def is_debug_enabled() -> bool:
    """Check if debug logging is enabled.

    Returns True if either:
    - enable_debug() was called
    - MCP_AUTH_DEBUG env var is set to "1", "true", or "yes"
    """
    if _debug_enabled:
        return True
    env_val = os.environ.get("MCP_AUTH_DEBUG", "").lower()
    return env_val in ("1", "true", "yes")


def enable_debug() -> None:
    """Enable debug logging programmatically."""
    global _debug_enabled
    _debug_enabled = True


def disable_debug() -> None:
    """Disable debug logging programmatically."""
    global _debug_enabled
    _debug_enabled = False


def safe_token_id(token: str | None) -> str:
    """Render a credential for logs: first 8 characters only."""
    if not token:
        return "None"
    return token[:8] + "..."


def _format_details(details: dict[str, Any]) -> str:
    parts = []
    for key, value in details.items():
        if isinstance(value, (set, frozenset, list, tuple)):
            value = " ".join(sorted(str(v) for v in value))
        parts.append(f"{key}={value}")
    return " ".join(parts)


def audit_event(event: str, result: str = "success", **details: Any) -> None:
    """Record an OAuth event.

    ``result`` is one of "success", "failure" or "warning". Failures and
    warnings log at WARNING, successes at INFO. The structured fields are
    also attached to the log record as ``audit`` for handlers that want them.
    """
    level = logging.WARNING if result in _FAILURE_RESULTS else logging.INFO
    if not logger.isEnabledFor(level):
        return
    message = f"{event} [{result}]"
    if details:
        message = f"{message} {_format_details(details)}"
    logger.log(
        level,
        message,
        extra={"audit": {"event": event, "result": result, **details}},
    )


def configure_logging(level: int | None = None) -> None:
    """Configure logging for the auth server.

    Call this at startup to see audit output. Defaults to DEBUG when debug
    mode is enabled and INFO otherwise.
    """
    if level is None:
        level = logging.DEBUG if is_debug_enabled() else logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )

    root = logging.getLogger("mcp_auth")
    root.setLevel(level)
    if not any(isinstance(h, logging.StreamHandler) for h in root.handlers):
        root.addHandler(handler)
