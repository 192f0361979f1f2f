# ABOUTME: Structured logging with correlation IDs for the LegoCharm provider
# ABOUTME: Implements audit logging of reconciler operations and credential masking

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: structlog with key/value events, rendered as colored
   console lines for development or JSON lines for log aggregators.

2. CORRELATION IDs: One host call ("create legocharm_user ci-bot") can fan out
   into several API requests (lookup, create, settle, read back). A shared
   correlation ID ties those log lines together.

3. CREDENTIAL MASKING: Reconcilers handle passwords. A processor replaces the
   value of any sensitive key (password, token, ...) before rendering.

4. AUDIT LOGGING: Every reconciler call is recorded with its outcome.

=============================================================================
CONTEXT VARIABLES (contextvars)
=============================================================================

The correlation ID lives in a ContextVar, so concurrent tool calls served by
the same event loop each see their own value:

    async def create(...):
        set_correlation_id("req-1")
        await client.create_user(...)   # logs carry "req-1"
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from legocharm_provider.utils.client import mask_secrets

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

MASKED = "***MASKED***"

# Keys whose values never reach a log line
SENSITIVE_KEYS = frozenset(
    [
        "password",
        "token",
        "secret",
        "api_key",
        "apikey",
        "api-key",
        "authorization",
        "credential",
        "credentials",
    ]
)


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate new one.

    Code running outside a tool call (startup, shutdown) still gets an ID so
    its logs remain correlatable. Generated IDs are the first 8 characters
    of a UUID4.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """
    Set correlation ID for current context.

    Called at the start of each tool invocation with the MCP request id.
    An empty string makes the next get_correlation_id() generate a fresh one.
    """
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """Structlog processor: add the correlation ID to every event."""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


def mask_value(value: Any) -> Any:
    """
    Mask sensitive data inside an arbitrary value.

    - dict: values of SENSITIVE_KEYS become ***MASKED***, others recurse
    - list/tuple: each item recurses
    - str: credential-looking substrings are masked
    - anything else: returned unchanged
    """
    if isinstance(value, dict):
        return {
            k: MASKED if str(k).lower() in SENSITIVE_KEYS else mask_value(v)
            for k, v in value.items()
        }
    if isinstance(value, list | tuple):
        return [mask_value(item) for item in value]
    if isinstance(value, str):
        return mask_secrets(value)
    return value


def mask_sensitive_fields(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    Structlog processor: mask credentials before rendering.

        log.info("creating user", username="ci-bot", password="hunter2")
        # -> {"event": "creating user", "username": "ci-bot", "password": "***MASKED***"}
    """
    for key in list(event_dict):
        if key == "event":
            continue
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = MASKED
        else:
            event_dict[key] = mask_value(event_dict[key])
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    mask: bool = True,
) -> None:
    """
    Configure structured logging. Call once at startup.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: values bound with structlog.contextvars
    2. add_log_level: "level" field
    3. TimeStamper: ISO 8601 timestamp
    4. add_correlation_id: request correlation
    5. mask_sensitive_fields: credential masking (unless mask=False)
    6. Renderer: JSON or colored console

    Args:
        level: "DEBUG", "INFO", "WARNING", "ERROR" or "CRITICAL"
        json_output: JSON lines (production) instead of console output (development)
        mask: Mask credentials in log events
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]
    if mask:
        processors.append(mask_sensitive_fields)

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        # MCP's stdio transport owns stdout, so logs go to stderr
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit logger for reconciler operations.

    WHAT WE LOG:
    ------------
    - timestamp: When it happened (UTC ISO 8601)
    - correlation_id: Request identifier
    - action: Operation, e.g. "create_resource"
    - target: Resource, e.g. "legocharm_user/ci-bot"
    - result: "success", "removed", "blocked", "error", ...
    - details: Additional context (diagnostics, plan action)

    TWO OUTPUT MODES:
    -----------------
    1. FILE: Append one JSON object per line
    2. STDOUT/STDERR: Through structlog, next to the regular logs

    EXAMPLE AUDIT LOG ENTRY:
    ------------------------
    {"timestamp": "2026-01-15T10:30:00+00:00", "correlation_id": "abc123",
     "action": "delete_resource", "target": "legocharm_user_domain_access/7:example.com:domain",
     "result": "removed"}
    """

    def __init__(self, log_path: Path | None = None, mask: bool = True) -> None:
        """
        Args:
            log_path: Path to audit log file, or None for structlog output.
                      The file is created if missing and always appended to.
            mask: Mask credentials inside details
        """
        self._log_path = log_path
        self._mask = mask
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record one auditable action."""
        if details and self._mask:
            details = mask_value(details)

        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_read(self, action: str, target: str, result: str = "success") -> None:
        """Log a read. `result` is "removed" when the remote object vanished."""
        self.log(action, target, result)

    def log_write(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log a create, update, delete or import."""
        self.log(action, target, result, details)

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        """Log an operation refused by the safety guard."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        """Log an operation that ended with error diagnostics."""
        self.log(action, target, "error", {"error": error})
