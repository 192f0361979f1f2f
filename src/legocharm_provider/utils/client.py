# ABOUTME: LegoCharm API client wrapper with retry logic and error handling
# ABOUTME: Provides async access to users, domains and domain user permissions

"""
LegoCharm API client with retry logic and structured error handling.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module provides the HTTP client for communicating with LegoCharm's REST
API. It handles:

1. REQUEST CONSTRUCTION: Base URL joining, headers, JSON bodies
2. AUTHENTICATION: HTTP basic auth on every request
3. ERROR HANDLING: Converting HTTP errors to structured Python exceptions
4. NOT-FOUND DETECTION: 404s and empty result lists become NotFoundError
5. RETRY LOGIC: Automatically retrying requests that time out

=============================================================================
LEGOCHARM REST API OVERVIEW
=============================================================================

    GET    /api/v1/users/<id>/                          - Get user by id
    GET    /api/v1/users/?username=<name>               - Find user by username
    POST   /api/v1/users/                               - Create user
    DELETE /api/v1/users/<id>/                          - Delete user
    GET    /api/v1/domains/?fqdn=<fqdn>                 - Find domain
    POST   /api/v1/domains/                             - Create domain
    GET    /api/v1/domain-user-permissions/?username=&fqdn=  - Find grant
    POST   /api/v1/domain-user-permissions/             - Create grant
    DELETE /api/v1/domain-user-permissions/<id>/        - Delete grant

Filtered list endpoints answer with a JSON array. Some deployments answer a
filter with a single object instead, so lookups accept both shapes.

Users carry no "id" field. Their identity is the last segment of "url":

    {"username": "ci-bot", "url": "https://lego.example.com/api/v1/users/7/", ...}
                                                                          ^ id "7"

=============================================================================
THE PASSWORD PROBE
=============================================================================

The API offers no "check my password" endpoint. Instead we ask the user list
endpoint AS THE USER:

    401 Unauthorized -> the password is wrong
    403 Forbidden    -> the password is right, the user just isn't an admin
    2xx              -> the password is right and the user is an admin

This lets the user reconciler notice when someone changed a password behind
the provider's back.
"""

# =============================================================================
# IMPORTS
# =============================================================================

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, TypeVar
from urllib.parse import quote

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from legocharm_provider import __version__
from legocharm_provider.config import DEFAULT_API_TIMEOUT, normalize_address

if TYPE_CHECKING:
    from collections.abc import Callable

    from legocharm_provider.config import LegoCharmInstance

logger = structlog.get_logger(__name__)

T = TypeVar("T")

USER_AGENT = f"legocharm-provider/{__version__}"

USERS_PATH = "/api/v1/users/"
DOMAINS_PATH = "/api/v1/domains/"
DOMAIN_PERMISSIONS_PATH = "/api/v1/domain-user-permissions/"


# =============================================================================
# SECRET MASKING PATTERNS
# =============================================================================

# Error bodies sometimes echo the request (including the password we just
# sent). Each tuple is (pattern, replacement).
SECRET_PATTERNS = [
    (re.compile(r"(password[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(secret[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(api[_-]?key[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"((?:basic|bearer)\s+)[^\s\"']+", re.I), r"\1***MASKED***"),
]


def mask_secrets(text: str) -> str:
    """Replace anything that looks like a credential with ***MASKED***."""
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def last_path_segment(url: str) -> str:
    """
    Return the last path segment of a URL, ignoring one trailing slash.

    Example:
        >>> last_path_segment("https://lego.example.com/api/v1/users/7/")
        '7'
    """
    return url.removesuffix("/").split("/")[-1]


# =============================================================================
# ERROR CLASSES
# =============================================================================


class LegoCharmError(Exception):
    """
    Structured LegoCharm API error.

    Preserves the status code so callers can branch on it (reconcilers treat
    404 very differently from 500) while still rendering a readable message.

    USAGE:
    ------
    try:
        await client.create_user(new_user)
    except LegoCharmError as e:
        print(f"Error {e.code}: {e.message}")
    """

    def __init__(self, code: int, message: str, details: str | None = None) -> None:
        self.code = code
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"LegoCharm API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base


class NotFoundError(LegoCharmError):
    """A lookup yielded no result: HTTP 404 or an empty result list."""

    def __init__(self, message: str = "not found", details: str | None = None) -> None:
        super().__init__(code=404, message=message, details=details)


# =============================================================================
# DATA CLASSES
# =============================================================================


@dataclass
class User:
    """
    LegoCharm user as returned by the API.

    The API never sends an explicit id, so `id` is derived from `url`.
    """

    username: str
    url: str
    email: str = ""
    groups: list[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        """User id: the last segment of the user's URL."""
        return last_path_segment(self.url)

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> User:
        """Create a User from an API response, tolerating missing fields."""
        return cls(
            username=data.get("username") or "",
            url=data.get("url") or "",
            email=data.get("email") or "",
            groups=list(data.get("groups") or []),
        )


@dataclass
class UserCreate:
    """Payload for POST /api/v1/users/."""

    username: str
    password: str
    email: str = ""
    groups: list[str] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Domain:
    """Domain known to LegoCharm."""

    fqdn: str
    id: int = 0

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> Domain:
        return cls(fqdn=data.get("fqdn") or "", id=int(data.get("id") or 0))


@dataclass
class DomainAccessCreate:
    """
    Input for creating a domain access grant.

    `domain` is an FQDN here. The API wants the domain's numeric id, which
    create_domain_access looks up (or creates) before posting.
    """

    user_id: str
    domain: str
    access_level: str


@dataclass
class DomainAccess:
    """Domain user permission as returned by the API."""

    user: int
    domain: int
    access_level: str
    id: int

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> DomainAccess:
        return cls(
            user=int(data.get("user") or 0),
            domain=int(data.get("domain") or 0),
            access_level=data.get("access_level") or "",
            id=int(data.get("id") or 0),
        )


# =============================================================================
# LEGOCHARM CLIENT
# =============================================================================


class LegoCharmClient:
    """
    Async LegoCharm API client with retry logic.

    LIFECYCLE:
    ----------
    ALWAYS use the context manager pattern:

        async with LegoCharmClient("lego.example.com", "admin", "pw") as client:
            user = await client.get_user_by_username("ci-bot")

    The connection pool is created in __aenter__ and closed in __aexit__.

    RETRY LOGIC:
    ------------
    Timeouts are retried with exponential backoff (1s, 2s), three attempts in
    total. HTTP error statuses are never retried: a 409 will still be a 409.
    """

    def __init__(
        self,
        address: str | None,
        username: str | None,
        password: str | None,
        timeout: float = DEFAULT_API_TIMEOUT,
        insecure: bool = False,
        mask_secrets: bool = True,
    ) -> None:
        """
        Initialize LegoCharm client.

        NOTE: This only validates and stores the settings. The HTTP
        connection pool is created later in __aenter__.

        Args:
            address: Server URL. "https://" is assumed when no scheme is given.
            username: Basic auth username
            password: Basic auth password
            timeout: HTTP request timeout in seconds
            insecure: Skip TLS certificate verification
            mask_secrets: Mask credentials in error details and logs

        Raises:
            ValueError: If address, username or password is missing.
        """
        if not address:
            raise ValueError("address is required")
        if not username:
            raise ValueError("username is required")
        if not password:
            raise ValueError("password is required")

        self.base_url = normalize_address(address)
        self.username = username
        self._password = password
        self._timeout = timeout
        self._insecure = insecure
        self._mask_secrets = mask_secrets
        self._auth = httpx.BasicAuth(username, password)
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_instance(cls, instance: LegoCharmInstance, mask_secrets: bool = True) -> LegoCharmClient:
        """Build a client from validated configuration."""
        return cls(
            address=instance.url,
            username=instance.username,
            password=instance.password.get_secret_value(),
            timeout=instance.timeout,
            insecure=instance.insecure,
            mask_secrets=mask_secrets,
        )

    async def __aenter__(self) -> LegoCharmClient:
        self._client = httpx.AsyncClient(
            # A zero timeout means "no timeout", as with LEGOCHARM_API_TIMEOUT=0
            timeout=self._timeout or None,
            verify=not self._insecure,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _mask(self, text: str) -> str:
        return mask_secrets(text) if self._mask_secrets else text

    # =========================================================================
    # REQUEST PLUMBING
    # =========================================================================

    def build_request(
        self,
        method: str,
        path: str,
        json_data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Request:
        """
        Build an authenticated request for the LegoCharm API.

        The path is joined to the base URL with exactly one slash, so
        "/api/v1/users/" and "api/v1/users/" are equivalent.

        Headers set:
            Authorization: Basic <username:password>
            User-Agent: legocharm-provider/<version>
            Content-Type: application/json   (only when there is a body)

        Args:
            method: HTTP method ("GET", "POST", "DELETE")
            path: API path relative to the base URL
            json_data: JSON request body (optional)
            params: URL query parameters (optional)
        """
        headers = {"User-Agent": USER_AGENT}
        if json_data is not None:
            headers["Content-Type"] = "application/json"

        request = httpx.Request(
            method,
            f"{self.base_url}/{path.lstrip('/')}",
            params=params,
            json=json_data,
            headers=headers,
        )
        # BasicAuth's flow sets the Authorization header and yields the request
        return next(self._auth.auth_flow(request))

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def send(self, request: httpx.Request) -> httpx.Response:
        """
        Dispatch a request built by build_request.

        Raises:
            RuntimeError: If the client is not open (forgot async with)
            httpx.TimeoutException: On timeout, after retries
            httpx.HTTPError: On other transport failures
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return await self._client.send(request)

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        log = logger.bind(method=method, path=path)
        log.debug("Making LegoCharm API request")

        response = await self.send(self.build_request(method, path, json_data, params))

        log.debug("LegoCharm API response", status=response.status_code)
        return response

    def _raise_for_error(self, response: httpx.Response, action: str) -> None:
        """Raise LegoCharmError when the response status is 4xx/5xx."""
        if response.status_code < 400:
            return
        body = self._mask(response.text[:500])
        logger.warning(
            "LegoCharm API error",
            action=action,
            status=response.status_code,
            body=body[:200],
        )
        raise LegoCharmError(
            code=response.status_code,
            message=f"failed to {action}",
            details=body or None,
        )

    def _parse_json(self, response: httpx.Response, what: str) -> Any:
        try:
            return response.json()
        except ValueError:
            raise LegoCharmError(
                code=response.status_code,
                message=f"failed to parse {what} response",
                details=self._mask(response.text[:200]) or None,
            ) from None

    def _build(
        self,
        response: httpx.Response,
        factory: Callable[[dict[str, Any]], T],
        body: dict[str, Any],
        what: str,
    ) -> T:
        # Fields of the wrong type (a hyperlinked URL where an id belongs) fail here
        try:
            return factory(body)
        except (TypeError, ValueError):
            raise LegoCharmError(
                code=response.status_code,
                message=f"failed to parse {what} response",
                details=self._mask(response.text[:200]) or None,
            ) from None

    def _decode_lookup(
        self,
        response: httpx.Response,
        factory: Callable[[dict[str, Any]], T],
        what: str,
    ) -> T:
        """
        Decode a filtered lookup response into exactly one entity.

        DECODING RULES:
        ---------------
        - 404                 -> NotFoundError
        - other 4xx/5xx       -> LegoCharmError
        - [] (empty list)     -> NotFoundError
        - [first, ...]        -> first
        - {...} (one object)  -> that object
        - anything else       -> LegoCharmError (unparseable)
        """
        if response.status_code == httpx.codes.NOT_FOUND:
            raise NotFoundError(f"{what} not found")
        self._raise_for_error(response, f"look up {what}")

        body = self._parse_json(response, what)
        if isinstance(body, list):
            if not body:
                raise NotFoundError(f"{what} not found")
            if isinstance(body[0], dict):
                return self._build(response, factory, body[0], what)
        elif isinstance(body, dict):
            return self._build(response, factory, body, what)

        raise LegoCharmError(
            code=response.status_code,
            message=f"failed to parse {what} response",
            details=self._mask(response.text[:200]) or None,
        )

    def _decode_created(
        self,
        response: httpx.Response,
        factory: Callable[[dict[str, Any]], T],
        what: str,
    ) -> T:
        self._raise_for_error(response, f"create {what}")
        body = self._parse_json(response, what)
        if not isinstance(body, dict):
            raise LegoCharmError(
                code=response.status_code,
                message=f"failed to parse {what} response",
                details=self._mask(response.text[:200]) or None,
            )
        return self._build(response, factory, body, what)

    def _check_deleted(self, response: httpx.Response, what: str) -> None:
        # Already gone counts as deleted
        if response.status_code == httpx.codes.NOT_FOUND:
            logger.info("Delete target already absent", target=what)
            return
        self._raise_for_error(response, f"delete {what}")

    # =========================================================================
    # USER OPERATIONS
    # =========================================================================

    async def get_user_by_id(self, user_id: str) -> User:
        """
        Get a user by id.

        LegoCharm API: GET /api/v1/users/{id}/

        Raises:
            NotFoundError: If the user does not exist
        """
        response = await self._request("GET", f"{USERS_PATH}{quote(str(user_id), safe='')}/")
        return self._decode_lookup(response, User.from_api_response, "user")

    async def get_user_by_username(self, username: str) -> User:
        """
        Find a user by username.

        LegoCharm API: GET /api/v1/users/?username={username}

        Returns:
            The first matching user

        Raises:
            NotFoundError: If no user has that username
        """
        response = await self._request("GET", USERS_PATH, params={"username": username})
        return self._decode_lookup(response, User.from_api_response, "user")

    async def create_user(self, user: UserCreate) -> User:
        """
        Create a user.

        LegoCharm API: POST /api/v1/users/
        """
        response = await self._request("POST", USERS_PATH, json_data=user.to_payload())
        created = self._decode_created(response, User.from_api_response, "user")
        logger.info("Created LegoCharm user", username=created.username or user.username)
        return created

    async def delete_user(self, user_id: str) -> None:
        """
        Delete a user by id. A user that is already gone is not an error.

        LegoCharm API: DELETE /api/v1/users/{id}/
        """
        response = await self._request("DELETE", f"{USERS_PATH}{quote(str(user_id), safe='')}/")
        self._check_deleted(response, f"user {user_id}")

    async def has_valid_user_password(self, username: str, password: str) -> bool:
        """
        Check a username/password pair by querying the API as that user.

        A short-lived second client is opened with the user's own credentials
        against the same base URL.

        Returns:
            True if the credentials authenticate, False on 401

        Raises:
            LegoCharmError: On any status other than 2xx, 401 or 403
            ValueError: If username or password is empty
        """
        async with LegoCharmClient(
            self.base_url,
            username,
            password,
            timeout=self._timeout,
            insecure=self._insecure,
            mask_secrets=self._mask_secrets,
        ) as probe:
            response = await probe._request("GET", USERS_PATH, params={"username": username})

        if response.status_code == httpx.codes.UNAUTHORIZED:
            return False
        if response.status_code == httpx.codes.FORBIDDEN or response.is_success:
            return True

        raise LegoCharmError(
            code=response.status_code,
            message="unexpected status code while validating password",
        )

    # =========================================================================
    # DOMAIN OPERATIONS
    # =========================================================================

    async def get_domain(self, fqdn: str) -> Domain:
        """
        Find a domain by FQDN.

        LegoCharm API: GET /api/v1/domains/?fqdn={fqdn}

        Raises:
            NotFoundError: If the domain is unknown
        """
        response = await self._request("GET", DOMAINS_PATH, params={"fqdn": fqdn})
        return self._decode_lookup(response, Domain.from_api_response, "domain")

    async def create_domain(self, fqdn: str) -> Domain:
        """
        Register a domain.

        LegoCharm API: POST /api/v1/domains/
        """
        response = await self._request("POST", DOMAINS_PATH, json_data={"fqdn": fqdn})
        domain = self._decode_created(response, Domain.from_api_response, "domain")
        logger.info("Created LegoCharm domain", fqdn=fqdn, domain_id=domain.id)
        return domain

    # =========================================================================
    # DOMAIN ACCESS OPERATIONS
    # =========================================================================

    async def get_domain_access(self, user_id: str, domain: str) -> DomainAccess:
        """
        Find the grant linking a user to a domain.

        The permissions endpoint filters by username, so the user is resolved
        by id first.

        LegoCharm API:
            GET /api/v1/users/{user_id}/
            GET /api/v1/domain-user-permissions/?username={username}&fqdn={domain}

        Raises:
            NotFoundError: If the user or the grant does not exist
        """
        user = await self.get_user_by_id(user_id)
        response = await self._request(
            "GET",
            DOMAIN_PERMISSIONS_PATH,
            params={"username": user.username, "fqdn": domain},
        )
        return self._decode_lookup(response, DomainAccess.from_api_response, "domain access")

    async def create_domain_access(self, access: DomainAccessCreate) -> DomainAccess:
        """
        Grant a user access to a domain, registering the domain if needed.

        TWO-STEP CREATE:
        ----------------
        1. Look the domain up by FQDN. If it is unknown, create it.
           Any other lookup failure aborts the create.
        2. POST the grant referencing the domain's numeric id.

        LegoCharm API:
            GET  /api/v1/domains/?fqdn={domain}
            POST /api/v1/domains/                      (only if missing)
            POST /api/v1/domain-user-permissions/
        """
        try:
            domain = await self.get_domain(access.domain)
        except NotFoundError:
            logger.info("Domain not registered, creating it", fqdn=access.domain)
            domain = await self.create_domain(access.domain)

        payload = {
            "user": access.user_id,
            "domain": domain.id,
            "access_level": access.access_level,
        }
        response = await self._request("POST", DOMAIN_PERMISSIONS_PATH, json_data=payload)
        created = self._decode_created(response, DomainAccess.from_api_response, "domain access")
        logger.info(
            "Created LegoCharm domain access",
            user_id=access.user_id,
            fqdn=access.domain,
            access_level=access.access_level,
            access_id=created.id,
        )
        return created

    async def delete_domain_access(self, access_id: int) -> None:
        """
        Delete a grant by its numeric id. A grant that is already gone is not
        an error.

        LegoCharm API: DELETE /api/v1/domain-user-permissions/{id}/
        """
        response = await self._request("DELETE", f"{DOMAIN_PERMISSIONS_PATH}{int(access_id)}/")
        self._check_deleted(response, f"domain access {access_id}")
