# ABOUTME: legocharm_user_domain_access reconciler
# ABOUTME: Grants a LegoCharm user certificate rights on a domain

"""
legocharm_user_domain_access: a user's permission on a domain.

ACCESS LEVELS:
--------------
- domain:    certificates for the FQDN itself
- subdomain: certificates for names below the FQDN

IDENTIFIERS:
------------
- id:          "user_id:domain:access_level", stable across reads
- database_id: LegoCharm's numeric grant id, needed to delete the grant

The domain is registered on the fly if LegoCharm does not know it yet.
"""

from __future__ import annotations

from typing import Literal, get_args

from legocharm_provider.resources.base import (
    CLIENT_ERRORS,
    Resource,
    ResourceModel,
    ResourceResponse,
)
from legocharm_provider.utils.client import DomainAccessCreate, NotFoundError

AccessLevel = Literal["domain", "subdomain"]
ACCESS_LEVELS: tuple[str, ...] = get_args(AccessLevel)


def composite_id(user_id: str, domain: str, access_level: str) -> str:
    return f"{user_id}:{domain}:{access_level}"


class UserDomainAccessModel(ResourceModel):
    user_id: str | None = None
    domain: str | None = None
    access_level: AccessLevel | None = None
    id: str | None = None
    database_id: int | None = None


class UserDomainAccessResource(Resource):
    type_name_suffix = "_user_domain_access"
    model = UserDomainAccessModel
    requires_replace = frozenset({"user_id", "domain", "access_level"})
    computed = frozenset({"id", "database_id"})

    def _check_required(self, model: UserDomainAccessModel, response: ResourceResponse) -> bool:
        for name in ("user_id", "domain", "access_level"):
            if not getattr(model, name):
                response.diagnostics.add_attribute_error(
                    name, "Missing Attribute", f"{name} is required"
                )
        return not response.diagnostics.has_error()

    async def _grant(self, plan: UserDomainAccessModel, response: ResourceResponse) -> None:
        try:
            created = await self.client.create_domain_access(
                DomainAccessCreate(
                    user_id=plan.user_id,
                    domain=plan.domain,
                    access_level=plan.access_level,
                )
            )
        except CLIENT_ERRORS as e:
            self._client_error(response, "Unable to create domain access", e)
            return

        response.state = plan.model_copy(
            update={
                "id": composite_id(plan.user_id, plan.domain, plan.access_level),
                "database_id": created.id,
            }
        )

    async def _create(self, plan: UserDomainAccessModel, response: ResourceResponse) -> None:
        if not self._check_required(plan, response):
            return

        try:
            await self.client.get_domain_access(plan.user_id, plan.domain)
        except NotFoundError:
            pass
        except CLIENT_ERRORS as e:
            self._client_error(response, "Unable to check for existing domain access", e)
            return
        else:
            response.diagnostics.add_error(
                "Domain Access Already Exists",
                f"User {plan.user_id} already has access to {plan.domain}.",
            )
            return

        await self._grant(plan, response)

    async def _read(self, state: UserDomainAccessModel, response: ResourceResponse) -> None:
        if not state.user_id or not state.domain:
            response.diagnostics.add_error(
                "Invalid State", "user_id and domain must be set to read domain access"
            )
            return

        try:
            access = await self.client.get_domain_access(state.user_id, state.domain)
        except NotFoundError:
            response.removed = True
            return
        except CLIENT_ERRORS as e:
            self._client_error(response, "Unable to read domain access", e)
            return

        update: dict[str, object] = {
            "access_level": access.access_level,
            "database_id": access.id,
        }
        if not state.id:
            update["id"] = composite_id(state.user_id, state.domain, access.access_level)
        response.state = state.model_copy(update=update)

    async def _update(
        self,
        plan: UserDomainAccessModel,
        prior: UserDomainAccessModel,
        response: ResourceResponse,
    ) -> None:
        if not self._check_required(plan, response):
            return
        database_id = prior.database_id or plan.database_id
        if not database_id:
            response.diagnostics.add_error(
                "Invalid State", "database_id is required to replace domain access"
            )
            return

        try:
            await self.client.delete_domain_access(database_id)
        except CLIENT_ERRORS as e:
            self._client_error(response, "Unable to delete domain access", e)
            return

        await self._grant(plan, response)

    async def _delete(self, state: UserDomainAccessModel, response: ResourceResponse) -> None:
        if not state.database_id:
            response.diagnostics.add_error(
                "Invalid State", "database_id is required to delete domain access"
            )
            return

        try:
            await self.client.delete_domain_access(state.database_id)
        except CLIENT_ERRORS as e:
            self._client_error(response, "Unable to delete domain access", e)

    def _import(self, import_id: str, response: ResourceResponse) -> None:
        parts = import_id.split(":")
        if len(parts) != 3 or not all(parts) or parts[2] not in ACCESS_LEVELS:
            response.diagnostics.add_error(
                "Invalid Import ID",
                "Expected import identifier with format: user_id:domain:access_level "
                f"(access_level one of {', '.join(ACCESS_LEVELS)}). Got: {import_id!r}",
            )
            return
        user_id, domain, access_level = parts
        response.state = UserDomainAccessModel(
            user_id=user_id, domain=domain, access_level=access_level, id=import_id
        )
