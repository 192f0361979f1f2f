# ABOUTME: Configuration management for the LegoCharm provider
# ABOUTME: Handles environment variables, API credentials, timeouts and safety settings

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module handles all configuration for the provider. It:

1. READS environment variables (like LEGOCHARM_ADDRESS, LEGOCHARM_API_TIMEOUT)
2. VALIDATES them (URLs get a scheme, timeouts parse, log levels are real)
3. PROVIDES typed access to settings throughout the application

The host tool can also pass address/username/password directly in its
provider block. Those values win over the environment; the merge happens in
provider.py, not here.

=============================================================================
ARCHITECTURE: THREE CONFIGURATION CLASSES
=============================================================================

1. LegoCharmInstance: Connection details for ONE LegoCharm server
   - URL, username, password, timeout, TLS settings

2. SecuritySettings: Safety-related settings (LEGOCHARM_PROVIDER_SECURITY_*)
   - Read-only mode, audit log, secret masking, rate limiting

3. ServerSettings: Main configuration container
   - Credentials from the LEGOCHARM_* variables
   - Log level, settle delay, server name
   - Contains SecuritySettings as nested object

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

LegoCharm API:
    LEGOCHARM_ADDRESS       -> Server URL (https:// added when missing)
    LEGOCHARM_USERNAME      -> Basic auth username
    LEGOCHARM_PASSWORD      -> Basic auth password
    LEGOCHARM_API_TIMEOUT   -> Request timeout, "30s"/"1m30s" or plain seconds (default: 120)
    LEGOCHARM_INSECURE      -> Skip TLS certificate verification

Provider settings (LEGOCHARM_PROVIDER_ prefix):
    LEGOCHARM_PROVIDER_LOG_LEVEL              -> DEBUG/INFO/WARNING/ERROR/CRITICAL
    LEGOCHARM_PROVIDER_JSON_LOGS              -> Emit JSON log lines
    LEGOCHARM_PROVIDER_CREATE_SETTLE_SECONDS  -> Pause before reading a new user back

Security settings (LEGOCHARM_PROVIDER_SECURITY_ prefix):
    ..._READ_ONLY           -> Block create/update/delete/import (default: false)
    ..._AUDIT_LOG           -> Path to audit log file
    ..._MASK_SECRETS        -> Mask sensitive data in logs (default: true)
    ..._RATE_LIMIT_CALLS    -> Max calls per window (default: 100)
    ..._RATE_LIMIT_WINDOW   -> Rate limit window in seconds (default: 60)
"""

from __future__ import annotations

import os
import re
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated, Any

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Default request timeout in seconds when LEGOCHARM_API_TIMEOUT is unset.
DEFAULT_API_TIMEOUT = 120.0

# =============================================================================
# TIMEOUT PARSING
# =============================================================================

# Seconds per duration unit. Both "us" and "µs" spell microseconds.
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

# One "<number><unit>" component, e.g. "1.5h" or "300ms".
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_FULL = re.compile(r"(?:(?:\d+(?:\.\d*)?|\.\d+)(?:ns|us|µs|ms|s|m|h))+")


def parse_timeout(value: Any) -> float:
    """
    Convert a timeout setting into seconds.

    ACCEPTED FORMS:
    ---------------
    - Numbers (int/float): already seconds
    - Duration strings: "30s", "2m", "1m30s", "500ms", "1.5h"
    - Integer strings: "30" means 30 seconds
    - "0": zero (no timeout)

    Duration strings are tried first, then plain integers, which matches how
    operators already write LEGOCHARM_API_TIMEOUT for other LegoCharm tooling.

    Raises:
        ValueError: If the value is neither a duration nor an integer.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid LEGOCHARM_API_TIMEOUT {value!r}")
    if isinstance(value, int | float):
        return float(value)

    text = str(value).strip()
    if text == "0":
        return 0.0
    if _DURATION_FULL.fullmatch(text):
        return sum(
            float(number) * _DURATION_UNITS[unit] for number, unit in _DURATION_PART.findall(text)
        )
    try:
        return float(int(text))
    except ValueError:
        raise ValueError(f"invalid LEGOCHARM_API_TIMEOUT {text!r}") from None


def normalize_address(address: str) -> str:
    """Default the scheme to https and drop trailing slashes."""
    if not address.startswith(("http://", "https://")):
        address = f"https://{address}"
    return address.rstrip("/")


# =============================================================================
# LEGOCHARM INSTANCE CONFIGURATION
# =============================================================================


class LegoCharmInstance(BaseModel):
    """
    Connection details for a single LegoCharm server.

    WHY BaseModel NOT BaseSettings?
    -------------------------------
    An instance is assembled from two sources (environment defaults and the
    host tool's provider block), so it is built programmatically rather than
    read straight from the environment.

    USAGE EXAMPLE:
    --------------
        instance = LegoCharmInstance(
            url="lego.example.com",
            username="admin",
            password=SecretStr("s3cret"),
        )
        instance.url  # "https://lego.example.com"
    """

    model_config = {"extra": "ignore"}

    url: str = Field(description="LegoCharm server URL")
    # Base URL; API paths like "/api/v1/users/" are appended to it.

    username: str = Field(description="Basic auth username")

    password: SecretStr = Field(description="Basic auth password")
    # SecretStr keeps the password out of reprs and logs.
    # To get the actual value: password.get_secret_value()

    timeout: float = Field(default=DEFAULT_API_TIMEOUT, description="Request timeout in seconds")

    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Ensure URL has a scheme and no trailing slash."""
        return normalize_address(v)

    @field_validator("timeout", mode="before")
    @classmethod
    def validate_timeout(cls, v: Any) -> float:
        """Accept duration strings as well as plain seconds."""
        return parse_timeout(v)


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    Safety-related configuration.

    Unlike a read-mostly tool, a provider exists to write, so writes are
    allowed by default. READ_ONLY is for dry environments where the host
    should be able to refresh state but never change the remote service.
    """

    model_config = SettingsConfigDict(env_prefix="LEGOCHARM_PROVIDER_SECURITY_")

    read_only: bool = Field(
        default=False,
        description="Block create, update, delete and import when true",
    )

    audit_log: Path | None = Field(
        default=None,
        description="Path to audit log file",
    )
    # If set, writes JSON lines: timestamp, correlation_id, action, target, result, details.
    # When None (default), audit entries go to stdout through structlog.

    mask_secrets: bool = Field(
        default=True,
        description="Mask sensitive values in logs and error messages",
    )

    rate_limit_calls: int = Field(
        default=100,
        description="Maximum calls per window",
    )

    rate_limit_window: int = Field(
        default=60,
        description="Rate limit window in seconds",
    )


# =============================================================================
# MAIN SERVER SETTINGS
# =============================================================================


class ServerSettings(BaseSettings):
    """
    Main provider configuration.

    USAGE:
    ------
        settings = load_settings()  # Reads from environment
        settings.address
        settings.security.read_only
    """

    model_config = SettingsConfigDict(
        env_prefix="LEGOCHARM_PROVIDER_",
        # Credentials use validation_alias to read the plain LEGOCHARM_* names
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # LEGOCHARM API (from environment)
    # -------------------------------------------------------------------------

    address: str = Field(
        default="",  # Empty string = not configured
        validation_alias="LEGOCHARM_ADDRESS",
        description="LegoCharm server URL",
    )

    username: str = Field(
        default="",
        validation_alias="LEGOCHARM_USERNAME",
        description="LegoCharm API username",
    )

    password: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="LEGOCHARM_PASSWORD",
        description="LegoCharm API password",
    )

    api_timeout: float = Field(
        default=DEFAULT_API_TIMEOUT,
        validation_alias="LEGOCHARM_API_TIMEOUT",
        description="HTTP request timeout in seconds",
    )

    insecure: bool = Field(
        default=False,
        validation_alias="LEGOCHARM_INSECURE",
        description="Skip TLS verification",
    )

    # -------------------------------------------------------------------------
    # PROVIDER BEHAVIOUR
    # -------------------------------------------------------------------------

    create_settle_seconds: float = Field(
        default=0.5,
        ge=0,
        description="Pause between creating a user and reading it back",
    )
    # LegoCharm answers the POST before the user is visible to the lookup
    # endpoint, so an immediate read-back can come up empty.

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(
        default=False,
        description="Render logs as JSON lines",
    )

    security: SecuritySettings = Field(default_factory=SecuritySettings)

    @field_validator("api_timeout", mode="before")
    @classmethod
    def validate_api_timeout(cls, v: Any) -> float:
        """Parse LEGOCHARM_API_TIMEOUT ("30s", "1m", "45")."""
        return parse_timeout(v)


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> ServerSettings:
    """
    Load settings from environment with validation.

    If LEGOCHARM_PROVIDER_ENV_FILE is set, additional variables are read from
    that file (handy for local development).

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ServerSettings(
        _env_file=os.environ.get("LEGOCHARM_PROVIDER_ENV_FILE"),
    )
