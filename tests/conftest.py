# ABOUTME: Pytest fixtures and configuration for LegoCharm provider tests
# ABOUTME: Provides shared fixtures for unit and integration tests

import os
from typing import AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr

from legocharm_provider.config import LegoCharmInstance, SecuritySettings, ServerSettings
from legocharm_provider.utils.client import Domain, DomainAccess, LegoCharmClient, User
from legocharm_provider.utils.safety import SafetyGuard

BASE_URL = "https://lego.example.com"

# Captured at import, before clean_legocharm_env strips them for unit tests
LIVE_ENV = {
    "address": os.environ.get("LEGOCHARM_ADDRESS"),
    "username": os.environ.get("LEGOCHARM_USERNAME"),
    "password": os.environ.get("LEGOCHARM_PASSWORD"),
}


@pytest.fixture(autouse=True)
def clean_legocharm_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer credentials out of unit tests."""
    for var in (
        "LEGOCHARM_ADDRESS",
        "LEGOCHARM_USERNAME",
        "LEGOCHARM_PASSWORD",
        "LEGOCHARM_API_TIMEOUT",
        "LEGOCHARM_INSECURE",
        "LEGOCHARM_PROVIDER_ENV_FILE",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def mock_legocharm_instance() -> LegoCharmInstance:
    """Create a LegoCharm instance configuration."""
    return LegoCharmInstance(
        url=BASE_URL,
        username="admin",
        password=SecretStr("admin-password"),
        timeout=30.0,
    )


@pytest.fixture
def mock_security_settings() -> SecuritySettings:
    """Create security settings for testing."""
    return SecuritySettings(
        read_only=False,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Create read-only security settings for testing."""
    return SecuritySettings(
        read_only=True,
        audit_log=None,
        mask_secrets=True,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def mock_server_settings(mock_security_settings: SecuritySettings) -> ServerSettings:
    """Create server settings with credentials and no settle delay."""
    return ServerSettings(
        address=BASE_URL,
        username="admin",
        password=SecretStr("admin-password"),
        create_settle_seconds=0,
        security=mock_security_settings,
    )


@pytest.fixture
def safety_guard(mock_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a safety guard for testing."""
    return SafetyGuard(mock_security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a read-only safety guard for testing."""
    return SafetyGuard(read_only_security_settings)


@pytest.fixture
def sample_user() -> User:
    """Create a sample user as the API returns it."""
    return User(
        username="ci-bot",
        url=f"{BASE_URL}/api/v1/users/7/",
        email="ci-bot@example.com",
        groups=[],
    )


@pytest.fixture
def sample_domain() -> Domain:
    return Domain(fqdn="example.com", id=3)


@pytest.fixture
def sample_domain_access() -> DomainAccess:
    return DomainAccess(user=7, domain=3, access_level="domain", id=42)


@pytest.fixture
def mock_legocharm_client(
    sample_user: User,
    sample_domain_access: DomainAccess,
) -> AsyncMock:
    """Create a mock LegoCharm client."""
    client = AsyncMock(spec=LegoCharmClient)
    client.base_url = BASE_URL
    client.username = "admin"

    client.get_user_by_username.return_value = sample_user
    client.get_user_by_id.return_value = sample_user
    client.create_user.return_value = sample_user
    client.has_valid_user_password.return_value = True
    client.get_domain_access.return_value = sample_domain_access
    client.create_domain_access.return_value = sample_domain_access

    return client


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx


# Integration test fixtures


@pytest.fixture
def legocharm_address() -> str | None:
    """Get LegoCharm address from environment."""
    return LIVE_ENV["address"]


@pytest.fixture
def legocharm_username() -> str | None:
    return LIVE_ENV["username"]


@pytest.fixture
def legocharm_password() -> str | None:
    return LIVE_ENV["password"]


@pytest.fixture
async def live_legocharm_client(
    legocharm_address: str | None,
    legocharm_username: str | None,
    legocharm_password: str | None,
) -> AsyncIterator[LegoCharmClient | None]:
    """Create a live LegoCharm client for integration tests."""
    if not (legocharm_address and legocharm_username and legocharm_password):
        yield None
        return

    client = LegoCharmClient(legocharm_address, legocharm_username, legocharm_password)

    async with client:
        yield client
