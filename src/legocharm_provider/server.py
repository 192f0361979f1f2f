# ABOUTME: FastMCP server initialization and main entry point
# ABOUTME: Exposes the LegoCharm reconcilers to the host as MCP tools and resources

"""LegoCharm Provider - LegoCharm users and domain grants as managed resources."""

from __future__ import annotations

import json
import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field, ValidationError

from legocharm_provider.config import ServerSettings, load_settings
from legocharm_provider.provider import LegoCharmProvider, ProviderConfig
from legocharm_provider.resources.base import Diagnostics, ResourceResponse
from legocharm_provider.utils.logging import AuditLogger, configure_logging, set_correlation_id
from legocharm_provider.utils.safety import SafetyGuard

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from legocharm_provider.resources.base import Resource
    from legocharm_provider.utils.client import LegoCharmClient
    from legocharm_provider.utils.safety import OperationBlocked

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: ServerSettings | None = None
_provider: LegoCharmProvider | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None


async def _open_client(client: LegoCharmClient | None) -> None:
    if client is not None:
        await client.__aenter__()
        logger.info("Connected to LegoCharm", url=client.base_url)


async def _close_client(client: LegoCharmClient | None) -> None:
    if client is not None:
        await client.__aexit__(None, None, None)
        logger.info("Disconnected from LegoCharm", url=client.base_url)



@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Manage server lifecycle: load config, connect the client, cleanup on shutdown."""
    global _settings, _provider, _safety_guard, _audit_logger

    logger.info("Starting LegoCharm Provider")

    _settings = load_settings()
    configure_logging(
        level=_settings.log_level,
        json_output=_settings.json_logs,
        mask=_settings.security.mask_secrets,
    )
    _safety_guard = SafetyGuard(_settings.security)
    _audit_logger = AuditLogger(_settings.security.audit_log, mask=_settings.security.mask_secrets)

    _provider = LegoCharmProvider()
    _, diagnostics = _provider.configure(None, _settings)
    if diagnostics.has_error():
        # The host can still supply credentials through configure_provider
        logger.warning(
            "Provider not configured from environment",
            errors=[d.summary for d in diagnostics.errors],
        )
    await _open_client(_provider.client)

    yield {"settings": _settings, "provider": _provider}

    await _close_client(_provider.client)
    logger.info("LegoCharm Provider stopped")


mcp = FastMCP("legocharm-provider", lifespan=lifespan)


def get_provider() -> LegoCharmProvider:
    """Get the provider."""
    if not _provider:
        raise RuntimeError("Server not initialized")
    return _provider


def get_settings() -> ServerSettings:
    """Get server settings."""
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_safety_guard() -> SafetyGuard:
    """Get safety guard for permission checking."""
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    """Get audit logger for recording operations."""
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


# =============================================================================
# HELPERS
# =============================================================================


def _start(ctx: MCPContext) -> None:
    set_correlation_id(str(ctx.request_id) if hasattr(ctx, "request_id") else "")


def _target(type_name: str, data: Mapping[str, Any] | None) -> str:
    """Audit target such as "legocharm_user/ci-bot"."""
    data = data or {}
    key = data.get("id") or data.get("username") or data.get("domain") or "unknown"
    return f"{type_name}/{key}"


def _error_response(summary: str, detail: str) -> ResourceResponse:
    response = ResourceResponse()
    response.diagnostics.add_error(summary, detail)
    return response


def _blocked_response(blocked: OperationBlocked) -> str:
    return _dump(_error_response("Operation Blocked", blocked.format_message()))


def _dump(response: ResourceResponse) -> str:
    return json.dumps(response.to_dict())


def _resolve(type_name: str) -> Resource | ResourceResponse:
    try:
        return get_provider().resource(type_name)
    except KeyError:
        available = ", ".join(get_provider().resource_types())
        return _error_response(
            "Unknown Resource Type",
            f"Resource type '{type_name}' is not supported. Available: {available}",
        )


def _audit(action: str, target: str, response: ResourceResponse, write: bool) -> None:
    audit = get_audit_logger()
    if response.diagnostics.has_error():
        audit.log_error(action, target, "; ".join(d.summary for d in response.diagnostics.errors))
        return
    result = "removed" if response.removed else "success"
    if write:
        warnings = [d.summary for d in response.diagnostics.warnings]
        audit.log_write(action, target, result, {"warnings": warnings} if warnings else None)
    else:
        audit.log_read(action, target, result)


# =============================================================================
# PROVIDER CONFIGURATION
# =============================================================================


class ConfigureProviderParams(BaseModel):
    """Parameters for configure_provider tool."""

    address: str | None = Field(default=None, description="LegoCharm server URL")
    username: str | None = Field(default=None, description="LegoCharm API username")
    password: str | None = Field(default=None, description="LegoCharm API password")


@mcp.tool()
async def configure_provider(params: ConfigureProviderParams, ctx: MCPContext) -> str:
    """
    Configure the provider with values from the host's provider block.

    Values given here override LEGOCHARM_ADDRESS, LEGOCHARM_USERNAME and
    LEGOCHARM_PASSWORD. Returns the diagnostics as JSON.
    """
    _start(ctx)

    blocked = get_safety_guard().check_read_operation("configure_provider")
    if blocked:
        get_audit_logger().log_blocked("configure_provider", "provider", blocked.reason)
        return _blocked_response(blocked)

    provider = get_provider()
    config = ProviderConfig.model_validate(params.model_dump())

    # Open the new client before swapping it in; close the previous one last
    previous = provider.client
    client, diagnostics = provider.configure(config, get_settings())
    provider.client = previous
    await _open_client(client)
    provider.client = client
    if previous is not client:
        await _close_client(previous)

    if diagnostics.has_error():
        get_audit_logger().log_error(
            "configure_provider", "provider", "; ".join(d.summary for d in diagnostics.errors)
        )
    else:
        get_audit_logger().log_write("configure_provider", "provider", "success")

    return json.dumps({"diagnostics": [d.to_dict() for d in diagnostics]})


# =============================================================================
# READ OPERATIONS
# =============================================================================


class PlanResourceParams(BaseModel):
    """Parameters for plan_resource tool."""

    type_name: str = Field(description="Resource type, e.g. legocharm_user")
    prior_state: dict[str, Any] | None = Field(
        default=None, description="Stored state, or null for a new resource"
    )
    proposed_state: dict[str, Any] | None = Field(
        default=None, description="Configured state, or null when the resource is removed"
    )


@mcp.tool()
async def plan_resource(params: PlanResourceParams, ctx: MCPContext) -> str:
    """
    Work out what change a resource needs.

    Returns {"action": "create"|"update"|"replace"|"delete"|"noop", "diagnostics": [...]}.
    Every LegoCharm attribute forces replacement, so changes plan as "replace".
    """
    _start(ctx)
    target = _target(params.type_name, params.proposed_state or params.prior_state)

    blocked = get_safety_guard().check_read_operation("plan_resource")
    if blocked:
        get_audit_logger().log_blocked("plan_resource", target, blocked.reason)
        return _blocked_response(blocked)

    resource = _resolve(params.type_name)
    if isinstance(resource, ResourceResponse):
        get_audit_logger().log_error("plan_resource", target, "unknown resource type")
        return json.dumps({"action": None, "diagnostics": resource.to_dict()["diagnostics"]})

    diagnostics = Diagnostics()
    action = None
    try:
        action = resource.plan(params.prior_state, params.proposed_state)
    except ValidationError as e:
        diagnostics.add_error("Invalid Resource Data", str(e))
        get_audit_logger().log_error("plan_resource", target, "invalid resource data")
    else:
        get_audit_logger().log_read("plan_resource", target, str(action))

    return json.dumps(
        {
            "action": str(action) if action else None,
            "diagnostics": [d.to_dict() for d in diagnostics],
        }
    )


class ReadResourceParams(BaseModel):
    """Parameters for read_resource tool."""

    type_name: str = Field(description="Resource type, e.g. legocharm_user")
    state: dict[str, Any] = Field(description="Stored state to refresh")


@mcp.tool()
async def read_resource(params: ReadResourceParams, ctx: MCPContext) -> str:
    """
    Refresh stored state from LegoCharm.

    "removed": true means the object no longer exists and the host should
    drop it from state.
    """
    _start(ctx)
    target = _target(params.type_name, params.state)

    blocked = get_safety_guard().check_read_operation("read_resource")
    if blocked:
        get_audit_logger().log_blocked("read_resource", target, blocked.reason)
        return _blocked_response(blocked)

    resource = _resolve(params.type_name)
    if isinstance(resource, ResourceResponse):
        response = resource
    else:
        response = await resource.read(params.state)

    _audit("read_resource", target, response, write=False)
    return _dump(response)


# =============================================================================
# WRITE OPERATIONS
# =============================================================================


class CreateResourceParams(BaseModel):
    """Parameters for create_resource tool."""

    type_name: str = Field(description="Resource type, e.g. legocharm_user")
    planned_state: dict[str, Any] = Field(description="Planned state to create")


@mcp.tool()
async def create_resource(params: CreateResourceParams, ctx: MCPContext) -> str:
    """Create a LegoCharm user or domain grant. Returns the new state as JSON."""
    _start(ctx)
    target = _target(params.type_name, params.planned_state)

    blocked = get_safety_guard().check_write_operation("create_resource")
    if blocked:
        get_audit_logger().log_blocked("create_resource", target, blocked.reason)
        return _blocked_response(blocked)

    resource = _resolve(params.type_name)
    if isinstance(resource, ResourceResponse):
        response = resource
    else:
        response = await resource.create(params.planned_state)

    if response.state is not None:
        target = _target(params.type_name, response.state.to_state())
    _audit("create_resource", target, response, write=True)
    return _dump(response)


class UpdateResourceParams(BaseModel):
    """Parameters for update_resource tool."""

    type_name: str = Field(description="Resource type, e.g. legocharm_user")
    planned_state: dict[str, Any] = Field(description="Planned state")
    prior_state: dict[str, Any] = Field(description="Stored state")


@mcp.tool()
async def update_resource(params: UpdateResourceParams, ctx: MCPContext) -> str:
    """Apply an in-place update. Domain grants are deleted and recreated."""
    _start(ctx)
    target = _target(params.type_name, params.prior_state)

    blocked = get_safety_guard().check_write_operation("update_resource")
    if blocked:
        get_audit_logger().log_blocked("update_resource", target, blocked.reason)
        return _blocked_response(blocked)

    resource = _resolve(params.type_name)
    if isinstance(resource, ResourceResponse):
        response = resource
    else:
        response = await resource.update(params.planned_state, params.prior_state)

    _audit("update_resource", target, response, write=True)
    return _dump(response)


class DeleteResourceParams(BaseModel):
    """Parameters for delete_resource tool."""

    type_name: str = Field(description="Resource type, e.g. legocharm_user")
    state: dict[str, Any] = Field(description="Stored state of the resource to delete")


@mcp.tool()
async def delete_resource(params: DeleteResourceParams, ctx: MCPContext) -> str:
    """Delete a LegoCharm user or domain grant. Objects already gone count as deleted."""
    _start(ctx)
    target = _target(params.type_name, params.state)

    blocked = get_safety_guard().check_write_operation("delete_resource")
    if blocked:
        get_audit_logger().log_blocked("delete_resource", target, blocked.reason)
        return _blocked_response(blocked)

    resource = _resolve(params.type_name)
    if isinstance(resource, ResourceResponse):
        response = resource
    else:
        response = await resource.delete(params.state)

    _audit("delete_resource", target, response, write=True)
    return _dump(response)


class ImportResourceParams(BaseModel):
    """Parameters for import_resource tool."""

    type_name: str = Field(description="Resource type, e.g. legocharm_user")
    import_id: str = Field(
        description="username:password for users, user_id:domain:access_level for grants"
    )


@mcp.tool()
async def import_resource(params: ImportResourceParams, ctx: MCPContext) -> str:
    """
    Adopt an existing LegoCharm object into state.

    Returns skeleton state; the host follows up with read_resource.
    """
    _start(ctx)
    target = f"{params.type_name}/import"

    blocked = get_safety_guard().check_write_operation("import_resource")
    if blocked:
        get_audit_logger().log_blocked("import_resource", target, blocked.reason)
        return _blocked_response(blocked)

    resource = _resolve(params.type_name)
    if isinstance(resource, ResourceResponse):
        response = resource
    else:
        response = resource.import_state(params.import_id)

    _audit("import_resource", target, response, write=True)
    return _dump(response)


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("legocharm://provider")
async def get_provider_resource() -> str:
    """Get provider connection details and supported resource types."""
    provider = get_provider()

    lines = [
        f"LegoCharm Provider {provider.version}",
        "",
        f"  Address: {provider.client.base_url if provider.client else 'not configured'}",
        "",
        "Resource types:",
    ]
    for type_name in provider.resource_types():
        lines.append(f"- {type_name}")

    return "\n".join(lines)


@mcp.resource("legocharm://security")
async def get_security_resource() -> str:
    """Get current security settings."""
    settings = get_settings()
    sec = settings.security

    return (
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Secret masking: {sec.mask_secrets}\n"
        f"  Audit log: {sec.audit_log or 'structured log'}\n"
        f"  Rate limit: {sec.rate_limit_calls} calls per {sec.rate_limit_window}s"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the LegoCharm provider server."""
    configure_logging(level="INFO")
    logger.info("LegoCharm Provider starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
