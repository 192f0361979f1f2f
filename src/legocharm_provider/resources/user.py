# ABOUTME: legocharm_user reconciler
# ABOUTME: Creates, refreshes, imports and deletes LegoCharm users

"""
legocharm_user: a LegoCharm login.

Every attribute requires replacement. LegoCharm has no "update user"
call, so any configuration change becomes delete + create.

PASSWORD DRIFT:
---------------
The API never returns passwords. On read the stored password is checked
by authenticating as the user (see LegoCharmClient.has_valid_user_password).
A rejected password is dropped from state with a warning, which makes the
next plan a replacement that restores the configured password.
"""

from __future__ import annotations

import asyncio

import structlog
from pydantic import SecretStr

from legocharm_provider.resources.base import (
    CLIENT_ERRORS,
    Resource,
    ResourceModel,
    ResourceResponse,
)
from legocharm_provider.utils.client import NotFoundError, UserCreate

logger = structlog.get_logger(__name__)


class UserModel(ResourceModel):
    username: str | None = None
    password: SecretStr | None = None
    email: str | None = None
    id: str | None = None


class UserResource(Resource):
    type_name_suffix = "_user"
    model = UserModel
    requires_replace = frozenset({"username", "password", "email"})
    computed = frozenset({"id"})

    async def _create(self, plan: UserModel, response: ResourceResponse) -> None:
        if not plan.username:
            response.diagnostics.add_attribute_error(
                "username", "Missing Attribute", "username is required"
            )
        if plan.password is None or not plan.password.get_secret_value():
            response.diagnostics.add_attribute_error(
                "password", "Missing Attribute", "password is required"
            )
        if response.diagnostics.has_error():
            return

        try:
            existing = await self.client.get_user_by_username(plan.username)
        except NotFoundError:
            pass
        except CLIENT_ERRORS as e:
            self._client_error(response, "Unable to check for an existing user", e)
            return
        else:
            response.diagnostics.add_error(
                "User Exists",
                f"A user with username '{plan.username}' already exists (id={existing.id}).",
            )
            return

        try:
            await self.client.create_user(
                UserCreate(
                    username=plan.username,
                    password=plan.password.get_secret_value(),
                    email=plan.email or "",
                    groups=[],
                )
            )
        except CLIENT_ERRORS as e:
            self._client_error(response, "Unable to create user", e)
            return

        # The user list lags behind the create call
        await asyncio.sleep(self.settle_seconds)

        try:
            user = await self.client.get_user_by_username(plan.username)
        except CLIENT_ERRORS as e:
            self._client_error(response, "User created but could not be read back", e)
            return

        response.state = plan.model_copy(update={"id": user.id, "email": user.email})

    async def _read(self, state: UserModel, response: ResourceResponse) -> None:
        if not state.username:
            response.diagnostics.add_error("Invalid State", "username is missing from state")
            return

        try:
            user = await self.client.get_user_by_username(state.username)
        except NotFoundError:
            response.removed = True
            return
        except CLIENT_ERRORS as e:
            self._client_error(response, "Unable to read user", e)
            return

        update: dict[str, object] = {"id": user.id, "email": user.email}

        if state.password is not None:
            try:
                valid = await self.client.has_valid_user_password(
                    state.username, state.password.get_secret_value()
                )
            except (*CLIENT_ERRORS, ValueError) as e:
                self._client_error(response, "Unable to validate user password", e)
                return
            if not valid:
                logger.info("Stored password no longer valid", username=state.username)
                response.diagnostics.add_warning(
                    "Invalid Password",
                    f"The password for user '{state.username}' has changed outside "
                    "of this provider. The user will be replaced.",
                )
                update["password"] = None

        response.state = state.model_copy(update=update)

    async def _update(
        self, plan: UserModel, prior: UserModel, response: ResourceResponse
    ) -> None:
        try:
            user = await self.client.get_user_by_username(plan.username or "")
        except NotFoundError:
            response.removed = True
            return
        except CLIENT_ERRORS as e:
            self._client_error(response, "Unable to read user", e)
            return

        update: dict[str, object] = {"id": user.id, "email": user.email}
        if prior.password is not None:
            update["password"] = prior.password
        response.state = plan.model_copy(update=update)

    async def _delete(self, state: UserModel, response: ResourceResponse) -> None:
        user_id = state.id
        if not user_id:
            try:
                user_id = (await self.client.get_user_by_username(state.username or "")).id
            except NotFoundError:
                return
            except CLIENT_ERRORS as e:
                self._client_error(response, "Unable to look up user for deletion", e)
                return

        try:
            await self.client.delete_user(user_id)
        except CLIENT_ERRORS as e:
            self._client_error(response, "Unable to delete user", e)

    def _import(self, import_id: str, response: ResourceResponse) -> None:
        username, sep, password = import_id.partition(":")
        if not sep or not username or not password:
            response.diagnostics.add_error(
                "Invalid Import ID",
                f"Expected import identifier with format: username:password. Got: {import_id!r}",
            )
            return
        response.state = UserModel(username=username, password=SecretStr(password))
