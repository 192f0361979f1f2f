# ABOUTME: Safety utilities for the LegoCharm provider
# ABOUTME: Implements the read-only guard and per-operation rate limiting

"""Safety utilities: read-only mode and rate limiting for reconciler calls."""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from legocharm_provider.config import SecuritySettings

logger = structlog.get_logger(__name__)


@dataclass
class OperationBlocked:
    """Response indicating an operation is blocked by security settings."""

    operation: str
    reason: str
    setting: str

    def format_message(self) -> str:
        """Format blocked message for the host's diagnostics."""
        return (
            f"OPERATION BLOCKED: {self.operation}\n"
            f"Reason: {self.reason}\n"
            f"Setting: {self.setting}"
        )


class RateLimiter:
    """Sliding-window rate limiter keyed by operation."""

    def __init__(self, max_calls: int = 100, window_seconds: int = 60) -> None:
        """Initialize rate limiter.

        Args:
            max_calls: Maximum calls allowed in window
            window_seconds: Window size in seconds
        """
        self._max_calls = max_calls
        self._window = window_seconds
        self._calls: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        """Record a call and report whether it is allowed.

        Args:
            key: Rate limit key (e.g., "write:create_resource")

        Returns:
            True if allowed, False if rate limited
        """
        now = time.monotonic()
        self._calls[key] = [t for t in self._calls[key] if now - t < self._window]

        if len(self._calls[key]) >= self._max_calls:
            logger.warning("Rate limit exceeded", key=key, calls=len(self._calls[key]))
            return False

        self._calls[key].append(now)
        return True

    def reset(self, key: str | None = None) -> None:
        """Reset counters for one key, or all keys when key is None."""
        if key:
            self._calls.pop(key, None)
        else:
            self._calls.clear()


class SafetyGuard:
    """Gatekeeper consulted by every plugin tool before touching LegoCharm."""

    def __init__(self, settings: SecuritySettings) -> None:
        self._settings = settings
        self._rate_limiter = RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
        )

    def check_read_operation(self, operation: str) -> OperationBlocked | None:
        """Check a read (plan, read). Reads are only ever rate limited.

        Returns:
            OperationBlocked if blocked, None if allowed
        """
        if not self._rate_limiter.check(f"read:{operation}"):
            return OperationBlocked(
                operation=operation,
                reason="Rate limit exceeded",
                setting="LEGOCHARM_PROVIDER_SECURITY_RATE_LIMIT_CALLS",
            )
        return None

    def check_write_operation(self, operation: str) -> OperationBlocked | None:
        """Check a write (create, update, delete, import).

        Returns:
            OperationBlocked if blocked, None if allowed
        """
        if self._settings.read_only:
            return OperationBlocked(
                operation=operation,
                reason="Provider is running in read-only mode",
                setting="LEGOCHARM_PROVIDER_SECURITY_READ_ONLY",
            )

        if not self._rate_limiter.check(f"write:{operation}"):
            return OperationBlocked(
                operation=operation,
                reason="Rate limit exceeded",
                setting="LEGOCHARM_PROVIDER_SECURITY_RATE_LIMIT_CALLS",
            )

        return None
