# ABOUTME: Provider shim tying settings, the API client and the reconcilers together
# ABOUTME: Resolves credentials from host config and environment, then hands out resources

"""
The LegoCharm provider.

=============================================================================
CREDENTIAL RESOLUTION
=============================================================================

Credentials come from two places:

    1. Environment (LEGOCHARM_ADDRESS, LEGOCHARM_USERNAME, LEGOCHARM_PASSWORD),
       loaded into ServerSettings
    2. The host's provider block (ProviderConfig)

Host values win, including an explicit empty value. A value missing from both is an attribute error naming the
setting and the environment variable that would fill it, so the user sees
every missing value at once instead of one per run.

The client is returned unopened: the server opens it for its lifetime.
"""

from __future__ import annotations

import structlog
from pydantic import BaseModel, SecretStr

from legocharm_provider import __version__
from legocharm_provider.config import LegoCharmInstance, ServerSettings
from legocharm_provider.resources import UserDomainAccessResource, UserResource
from legocharm_provider.resources.base import Diagnostics, Resource
from legocharm_provider.utils.client import LegoCharmClient

logger = structlog.get_logger(__name__)


class ProviderConfig(BaseModel):
    """Provider block supplied by the host. Every field is optional."""

    model_config = {"extra": "ignore"}

    address: str | None = None
    username: str | None = None
    password: SecretStr | None = None


# (attribute, summary, environment variable)
_REQUIRED = (
    ("address", "LegoCharm API Address Not Set", "LEGOCHARM_ADDRESS"),
    ("username", "LegoCharm API Username Not Set", "LEGOCHARM_USERNAME"),
    ("password", "LegoCharm API Password Not Set", "LEGOCHARM_PASSWORD"),
)


class LegoCharmProvider:
    """Builds the API client and the reconcilers that share it."""

    type_name = "legocharm"

    def __init__(self, version: str = __version__) -> None:
        self.version = version
        self.client: LegoCharmClient | None = None
        self.settle_seconds = 0.5

    def configure(
        self,
        config: ProviderConfig | None,
        settings: ServerSettings,
    ) -> tuple[LegoCharmClient | None, Diagnostics]:
        """
        Resolve credentials and build the API client.

        Returns:
            (client, diagnostics). client is None whenever diagnostics has
            an error.
        """
        config = config or ProviderConfig()
        diagnostics = Diagnostics()

        # An explicit host value wins even when empty
        resolved = {
            "address": config.address if config.address is not None else settings.address,
            "username": config.username if config.username is not None else settings.username,
            "password": (
                config.password.get_secret_value()
                if config.password is not None
                else settings.password.get_secret_value()
            ),
        }

        for attribute, summary, env_var in _REQUIRED:
            if not resolved[attribute]:
                diagnostics.add_attribute_error(
                    attribute,
                    summary,
                    f"The provider cannot create the LegoCharm API client because "
                    f"the {attribute} is missing. Set the {attribute} value in the "
                    f"provider configuration or use the {env_var} environment variable.",
                )
        if diagnostics.has_error():
            return None, diagnostics

        try:
            instance = LegoCharmInstance(
                url=resolved["address"],
                username=resolved["username"],
                password=SecretStr(resolved["password"]),
                timeout=settings.api_timeout,
                insecure=settings.insecure,
            )
            client = LegoCharmClient.from_instance(
                instance, mask_secrets=settings.security.mask_secrets
            )
        except ValueError as e:
            diagnostics.add_error(
                "Unable to Create LegoCharm API Client",
                f"An unexpected error occurred when creating the LegoCharm API client: {e}",
            )
            return None, diagnostics

        self.client = client
        self.settle_seconds = settings.create_settle_seconds
        logger.info(
            "Configured LegoCharm provider",
            address=client.base_url,
            username=client.username,
        )
        return client, diagnostics

    def resources(self) -> list[type[Resource]]:
        return [UserResource, UserDomainAccessResource]

    def resource_types(self) -> list[str]:
        return [self.type_name + cls.type_name_suffix for cls in self.resources()]

    def resource(self, type_name: str) -> Resource:
        """
        Instantiate the reconciler for `type_name`, wired to the client.

        Raises:
            KeyError: If no resource has that type name
        """
        for cls in self.resources():
            if self.type_name + cls.type_name_suffix == type_name:
                resource = cls(self.type_name, settle_seconds=self.settle_seconds)
                resource.configure(self.client)
                return resource
        raise KeyError(type_name)
