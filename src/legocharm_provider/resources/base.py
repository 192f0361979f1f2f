# ABOUTME: Resource contract shared by the LegoCharm reconcilers
# ABOUTME: Defines diagnostics, plan actions, responses and the Resource base class

"""
The resource contract between the host tool and the reconcilers.

=============================================================================
HOW A HOST TALKS TO A RESOURCE
=============================================================================

The host tool owns stored state. For each resource it calls:

    plan(prior, proposed)   -> what kind of change is needed
    create(planned)         -> new state
    read(state)             -> refreshed state, or "removed" if it vanished
    update(planned, prior)  -> new state
    delete(state)           -> "removed"
    import_state(import_id) -> skeleton state, completed by a later read

Every call returns a ResourceResponse. Reconcilers never raise for remote
failures; they report them as error Diagnostics and leave state untouched.

=============================================================================
DIAGNOSTICS
=============================================================================

Diagnostics mirror what an IaC tool shows its user:

    Error: User Exists
      A user with username 'ci-bot' already exists (id=7).

Warnings do not fail the operation. A read that finds a changed password
warns and nulls the stored password, so the next plan says "replace".
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, ClassVar

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, SecretStr, ValidationError

from legocharm_provider.utils.client import LegoCharmClient, LegoCharmError

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = structlog.get_logger(__name__)

# Remote failures a reconciler turns into "Client Error" diagnostics
CLIENT_ERRORS = (LegoCharmError, httpx.HTTPError)


# =============================================================================
# DIAGNOSTICS
# =============================================================================


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class Diagnostic:
    """One error or warning reported back to the host."""

    severity: Severity
    summary: str
    detail: str = ""
    attribute: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "severity": str(self.severity),
            "summary": self.summary,
            "detail": self.detail,
        }
        if self.attribute:
            data["attribute"] = self.attribute
        return data


@dataclass
class Diagnostics:
    """Ordered collection of diagnostics for one operation."""

    items: list[Diagnostic] = field(default_factory=list)

    def add_error(self, summary: str, detail: str = "") -> None:
        self.items.append(Diagnostic(Severity.ERROR, summary, detail))

    def add_warning(self, summary: str, detail: str = "") -> None:
        self.items.append(Diagnostic(Severity.WARNING, summary, detail))

    def add_attribute_error(self, attribute: str, summary: str, detail: str = "") -> None:
        self.items.append(Diagnostic(Severity.ERROR, summary, detail, attribute))

    def extend(self, other: Diagnostics) -> None:
        self.items.extend(other.items)

    def has_error(self) -> bool:
        return any(d.severity is Severity.ERROR for d in self.items)

    @property
    def errors(self) -> list[Diagnostic]:
        return [d for d in self.items if d.severity is Severity.ERROR]

    @property
    def warnings(self) -> list[Diagnostic]:
        return [d for d in self.items if d.severity is Severity.WARNING]

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)


# =============================================================================
# STATE MODELS AND RESPONSES
# =============================================================================


class ResourceModel(BaseModel):
    """
    Base class for resource state.

    Every attribute is nullable: stored state may lack values the provider
    has not learned yet (an imported grant has no database_id until read).
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    def to_state(self) -> dict[str, Any]:
        """Plain dict for the host's state store, secrets revealed."""
        return {
            key: value.get_secret_value() if isinstance(value, SecretStr) else value
            for key, value in self.model_dump().items()
        }


class PlanAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"


@dataclass
class ResourceResponse:
    """
    Outcome of one reconciler operation.

    state: New state to store (None when unchanged or on error)
    removed: True tells the host to forget the resource
    diagnostics: Errors and warnings
    """

    state: ResourceModel | None = None
    removed: bool = False
    diagnostics: Diagnostics = field(default_factory=Diagnostics)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.to_state() if self.state is not None else None,
            "removed": self.removed,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


def _plain(value: Any) -> Any:
    """Comparable form of an attribute value. Null and "" are the same."""
    if isinstance(value, SecretStr):
        value = value.get_secret_value()
    return "" if value is None else value


# =============================================================================
# RESOURCE BASE CLASS
# =============================================================================


class Resource(abc.ABC):
    """
    Base class for reconcilers.

    SUBCLASS CONTRACT:
    ------------------
    Class attributes:
        type_name_suffix: appended to the provider type name ("_user")
        model: ResourceModel subclass describing the state
        requires_replace: attributes whose change means delete + create
        computed: attributes the provider fills in

    Hooks (called only with a configured client and validated input):
        _create(plan, response)
        _read(state, response)
        _update(plan, prior, response)
        _delete(state, response)
        _import(import_id, response)
    """

    type_name_suffix: ClassVar[str]
    model: ClassVar[type[ResourceModel]]
    requires_replace: ClassVar[frozenset[str]] = frozenset()
    computed: ClassVar[frozenset[str]] = frozenset()

    def __init__(self, provider_type_name: str = "legocharm", settle_seconds: float = 0.5) -> None:
        self.provider_type_name = provider_type_name
        self.settle_seconds = settle_seconds
        self.client: LegoCharmClient | None = None

    @property
    def type_name(self) -> str:
        return self.provider_type_name + self.type_name_suffix

    def configure(self, provider_data: Any) -> Diagnostics:
        """
        Receive the provider's client.

        None means the provider is not configured yet, which is fine: the
        host may validate configuration before it has credentials.
        """
        diagnostics = Diagnostics()
        if provider_data is None:
            return diagnostics
        if not isinstance(provider_data, LegoCharmClient):
            diagnostics.add_error(
                "Unexpected Resource Configure Type",
                f"Expected LegoCharmClient, got: {type(provider_data).__name__}. "
                "Please report this issue to the provider developers.",
            )
            return diagnostics
        self.client = provider_data
        return diagnostics

    # -------------------------------------------------------------------------
    # PLANNING
    # -------------------------------------------------------------------------

    def plan(
        self,
        prior: Mapping[str, Any] | None,
        proposed: Mapping[str, Any] | None,
    ) -> PlanAction:
        """
        Decide what a transition from prior to proposed state requires.

        A requires_replace attribute that differs, or whose prior value is
        null, forces REPLACE. Any other differing non-computed attribute is
        an UPDATE. Computed attributes never cause a change by themselves.
        """
        if prior is None and proposed is None:
            return PlanAction.NOOP
        if prior is None:
            return PlanAction.CREATE
        if proposed is None:
            return PlanAction.DELETE

        prior_model = self.model.model_validate(dict(prior))
        proposed_model = self.model.model_validate(dict(proposed))

        action = PlanAction.NOOP
        for name in self.model.model_fields:
            if name in self.computed:
                continue
            before = getattr(prior_model, name)
            after = getattr(proposed_model, name)
            if name in self.requires_replace and before is None and after is not None:
                return PlanAction.REPLACE
            if _plain(before) != _plain(after):
                if name in self.requires_replace:
                    return PlanAction.REPLACE
                action = PlanAction.UPDATE
        return action

    # -------------------------------------------------------------------------
    # OPERATIONS
    # -------------------------------------------------------------------------

    async def create(self, plan: Mapping[str, Any]) -> ResourceResponse:
        response = ResourceResponse()
        model = self._validate(plan, response)
        if model is None or not self._require_client(response):
            return response
        await self._create(model, response)
        if not response.diagnostics.has_error():
            logger.info("Created resource", resource=self.type_name)
        return response

    async def read(self, state: Mapping[str, Any]) -> ResourceResponse:
        response = ResourceResponse()
        model = self._validate(state, response)
        if model is None or not self._require_client(response):
            return response
        await self._read(model, response)
        if response.removed:
            logger.info("Resource no longer exists remotely", resource=self.type_name)
        return response

    async def update(
        self,
        plan: Mapping[str, Any],
        prior: Mapping[str, Any],
    ) -> ResourceResponse:
        response = ResourceResponse()
        plan_model = self._validate(plan, response)
        prior_model = self._validate(prior, response)
        if plan_model is None or prior_model is None or not self._require_client(response):
            return response
        await self._update(plan_model, prior_model, response)
        return response

    async def delete(self, state: Mapping[str, Any]) -> ResourceResponse:
        response = ResourceResponse()
        model = self._validate(state, response)
        if model is None or not self._require_client(response):
            return response
        await self._delete(model, response)
        if not response.diagnostics.has_error():
            response.removed = True
            logger.info("Deleted resource", resource=self.type_name)
        return response

    def import_state(self, import_id: str) -> ResourceResponse:
        """Turn a composite import key into skeleton state."""
        response = ResourceResponse()
        self._import(import_id, response)
        return response

    # -------------------------------------------------------------------------
    # HELPERS
    # -------------------------------------------------------------------------

    def _validate(self, data: Mapping[str, Any], response: ResourceResponse) -> Any:
        try:
            return self.model.model_validate(dict(data))
        except ValidationError as e:
            for error in e.errors():
                attribute = ".".join(str(part) for part in error["loc"])
                response.diagnostics.add_attribute_error(
                    attribute,
                    "Invalid Attribute Value",
                    f"{self.type_name}.{attribute}: {error['msg']}",
                )
            return None

    def _require_client(self, response: ResourceResponse) -> bool:
        if self.client is None:
            response.diagnostics.add_error(
                "Client Not Configured",
                "The LegoCharm API client is not configured for this resource",
            )
            return False
        return True

    @staticmethod
    def _client_error(response: ResourceResponse, detail: str, error: Exception) -> None:
        logger.warning("LegoCharm client error", detail=detail, error=str(error))
        response.diagnostics.add_error("Client Error", f"{detail}: {error}")

    @abc.abstractmethod
    async def _create(self, plan: Any, response: ResourceResponse) -> None: ...

    @abc.abstractmethod
    async def _read(self, state: Any, response: ResourceResponse) -> None: ...

    @abc.abstractmethod
    async def _update(self, plan: Any, prior: Any, response: ResourceResponse) -> None: ...

    @abc.abstractmethod
    async def _delete(self, state: Any, response: ResourceResponse) -> None: ...

    @abc.abstractmethod
    def _import(self, import_id: str, response: ResourceResponse) -> None: ...
