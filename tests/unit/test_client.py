# ABOUTME: Unit tests for the LegoCharm API client
# ABOUTME: Tests client initialization, request building, lookups and error handling

import base64
import json

import httpx
import pytest
import respx
from tenacity import wait_none

from legocharm_provider import __version__
from legocharm_provider.config import LegoCharmInstance
from legocharm_provider.utils.client import (
    DomainAccess,
    DomainAccessCreate,
    LegoCharmClient,
    LegoCharmError,
    NotFoundError,
    User,
    UserCreate,
    last_path_segment,
    mask_secrets,
)

BASE_URL = "https://lego.example.com"
USERS_URL = f"{BASE_URL}/api/v1/users/"
DOMAINS_URL = f"{BASE_URL}/api/v1/domains/"
PERMISSIONS_URL = f"{BASE_URL}/api/v1/domain-user-permissions/"


def basic_auth(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return f"Basic {token}"


@pytest.fixture
def client() -> LegoCharmClient:
    return LegoCharmClient(BASE_URL, "admin", "admin-password", timeout=5.0)


def user_json(user_id: int = 7, username: str = "ci-bot") -> dict:
    return {
        "url": f"{USERS_URL}{user_id}/",
        "username": username,
        "email": f"{username}@example.com",
        "groups": [],
    }


@pytest.mark.unit
class TestDataClasses:
    """Tests for API data classes."""

    def test_user_from_api_response(self):
        """Test creating User from API response."""
        user = User.from_api_response(user_json())

        assert user.username == "ci-bot"
        assert user.email == "ci-bot@example.com"
        assert user.groups == []

    def test_user_id_is_last_url_segment(self):
        """Test the user id is derived from the URL."""
        user = User.from_api_response(user_json(user_id=12))
        assert user.id == "12"

    def test_user_from_api_response_with_defaults(self):
        """Test missing fields fall back to empty values."""
        user = User.from_api_response({})

        assert user.username == ""
        assert user.url == ""
        assert user.email == ""
        assert user.groups == []

    def test_user_create_payload(self):
        """Test UserCreate serializes every field."""
        payload = UserCreate(username="ci-bot", password="pw", email="", groups=[]).to_payload()

        assert payload == {"username": "ci-bot", "password": "pw", "email": "", "groups": []}

    def test_domain_access_from_api_response(self):
        """Test numeric fields are coerced to int."""
        access = DomainAccess.from_api_response(
            {"id": "42", "user": 7, "domain": "3", "access_level": "subdomain"}
        )

        assert access == DomainAccess(user=7, domain=3, access_level="subdomain", id=42)

    def test_last_path_segment(self):
        """Test last segment extraction with and without trailing slash."""
        assert last_path_segment("https://lego.example.com/api/v1/users/7/") == "7"
        assert last_path_segment("https://lego.example.com/api/v1/users/7") == "7"


@pytest.mark.unit
class TestLegoCharmError:
    """Tests for LegoCharm error classes."""

    def test_error_str(self):
        """Test string representation without details."""
        error = LegoCharmError(500, "failed to create user")
        assert str(error) == "LegoCharm API error (500): failed to create user"

    def test_error_str_with_details(self):
        """Test string representation with details."""
        result = str(LegoCharmError(400, "failed to create user", "username taken"))

        assert "400" in result
        assert "failed to create user" in result
        assert "username taken" in result

    def test_not_found_is_legocharm_error(self):
        """Test NotFoundError carries a 404 code."""
        error = NotFoundError("user not found")

        assert isinstance(error, LegoCharmError)
        assert error.code == 404
        assert error.message == "user not found"


@pytest.mark.unit
class TestMaskSecrets:
    """Tests for credential masking in error bodies."""

    def test_masks_password_in_json(self):
        result = mask_secrets('{"username": "ci-bot", "password": "hunter2"}')

        assert "hunter2" not in result
        assert "***MASKED***" in result
        assert "ci-bot" in result

    def test_masks_basic_auth_header(self):
        result = mask_secrets("Authorization: Basic YWRtaW46cHc=")
        assert "YWRtaW46cHc=" not in result

    def test_leaves_plain_text_alone(self):
        assert mask_secrets("user not found") == "user not found"


@pytest.mark.unit
class TestLegoCharmClientInit:
    """Tests for client construction."""

    @pytest.mark.parametrize(
        ("address", "username", "password", "message"),
        [
            ("", "admin", "pw", "address is required"),
            (BASE_URL, "", "pw", "username is required"),
            (BASE_URL, "admin", "", "password is required"),
            (None, "admin", "pw", "address is required"),
        ],
    )
    def test_missing_values_rejected(self, address, username, password, message):
        """Test that address, username and password are mandatory."""
        with pytest.raises(ValueError, match=message):
            LegoCharmClient(address, username, password)

    def test_address_defaults_to_https(self):
        """Test a bare host gets the https scheme."""
        client = LegoCharmClient("lego.example.com", "admin", "pw")
        assert client.base_url == "https://lego.example.com"

    def test_address_trailing_slashes_removed(self):
        client = LegoCharmClient("http://lego.local:8000//", "admin", "pw")
        assert client.base_url == "http://lego.local:8000"

    def test_default_timeout(self):
        """Test the default timeout is two minutes."""
        client = LegoCharmClient(BASE_URL, "admin", "pw")

        assert client._timeout == 120.0
        assert client._client is None

    def test_from_instance(self, mock_legocharm_instance: LegoCharmInstance):
        """Test building a client from validated configuration."""
        client = LegoCharmClient.from_instance(mock_legocharm_instance)

        assert client.base_url == BASE_URL
        assert client.username == "admin"
        assert client._timeout == 30.0


@pytest.mark.unit
class TestBuildRequest:
    """Tests for request construction."""

    def test_sets_basic_auth_and_user_agent(self, client: LegoCharmClient):
        request = client.build_request("GET", "/api/v1/users/")

        assert request.headers["Authorization"] == basic_auth("admin", "admin-password")
        assert request.headers["User-Agent"] == f"legocharm-provider/{__version__}"
        assert "Content-Type" not in request.headers

    def test_sets_content_type_with_body(self, client: LegoCharmClient):
        request = client.build_request("POST", "/api/v1/domains/", json_data={"fqdn": "a.b"})

        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"fqdn": "a.b"}

    def test_joins_path_with_single_slash(self, client: LegoCharmClient):
        with_slash = client.build_request("GET", "/api/v1/users/")
        without_slash = client.build_request("GET", "api/v1/users/")

        assert str(with_slash.url) == USERS_URL
        assert str(without_slash.url) == USERS_URL

    def test_query_params(self, client: LegoCharmClient):
        request = client.build_request("GET", "/api/v1/users/", params={"username": "ci-bot"})
        assert request.url.params["username"] == "ci-bot"

    async def test_send_without_context_manager_fails(self, client: LegoCharmClient):
        """Test that send requires async with."""
        with pytest.raises(RuntimeError, match="not initialized"):
            await client.send(client.build_request("GET", "/api/v1/users/"))


@pytest.mark.unit
class TestUserOperations:
    """Tests for user lookups, creation and deletion."""

    @respx.mock
    async def test_get_user_by_username_list_returns_first(self, client: LegoCharmClient):
        route = respx.get(USERS_URL, params={"username": "ci-bot"}).mock(
            return_value=httpx.Response(200, json=[user_json(7), user_json(8, "other")])
        )

        async with client:
            user = await client.get_user_by_username("ci-bot")

        assert route.called
        assert user.id == "7"
        assert user.username == "ci-bot"

    @respx.mock
    async def test_get_user_by_username_empty_list_not_found(self, client: LegoCharmClient):
        respx.get(USERS_URL).mock(return_value=httpx.Response(200, json=[]))

        async with client:
            with pytest.raises(NotFoundError):
                await client.get_user_by_username("ghost")

    @respx.mock
    async def test_get_user_by_username_single_object(self, client: LegoCharmClient):
        """Test a bare object body is decoded as one user."""
        respx.get(USERS_URL).mock(return_value=httpx.Response(200, json=user_json(9)))

        async with client:
            user = await client.get_user_by_username("ci-bot")

        assert user.id == "9"

    @respx.mock
    async def test_get_user_by_username_404_not_found(self, client: LegoCharmClient):
        respx.get(USERS_URL).mock(return_value=httpx.Response(404, json={"detail": "Not found."}))

        async with client:
            with pytest.raises(NotFoundError):
                await client.get_user_by_username("ci-bot")

    @respx.mock
    async def test_get_user_by_username_server_error(self, client: LegoCharmClient):
        respx.get(USERS_URL).mock(return_value=httpx.Response(500, text="boom"))

        async with client:
            with pytest.raises(LegoCharmError) as exc_info:
                await client.get_user_by_username("ci-bot")

        assert exc_info.value.code == 500
        assert not isinstance(exc_info.value, NotFoundError)

    @respx.mock
    async def test_get_user_by_username_invalid_json(self, client: LegoCharmClient):
        respx.get(USERS_URL).mock(return_value=httpx.Response(200, text="<html>"))

        async with client:
            with pytest.raises(LegoCharmError, match="failed to parse user response"):
                await client.get_user_by_username("ci-bot")

    @respx.mock
    async def test_get_user_by_id(self, client: LegoCharmClient):
        route = respx.get(f"{USERS_URL}7/").mock(
            return_value=httpx.Response(200, json=user_json(7))
        )

        async with client:
            user = await client.get_user_by_id("7")

        assert route.called
        assert user.username == "ci-bot"

    @respx.mock
    async def test_create_user_posts_payload(self, client: LegoCharmClient):
        route = respx.post(USERS_URL).mock(return_value=httpx.Response(201, json=user_json(7)))

        async with client:
            user = await client.create_user(UserCreate(username="ci-bot", password="pw"))

        assert user.id == "7"
        request = route.calls.last.request
        assert json.loads(request.content) == {
            "username": "ci-bot",
            "password": "pw",
            "email": "",
            "groups": [],
        }
        assert request.headers["Content-Type"] == "application/json"

    @respx.mock
    async def test_create_user_error_masks_password(self, client: LegoCharmClient):
        """Test error details never echo the submitted password."""
        respx.post(USERS_URL).mock(
            return_value=httpx.Response(400, text='{"password": "pw-in-body", "error": "weak"}')
        )

        async with client:
            with pytest.raises(LegoCharmError) as exc_info:
                await client.create_user(UserCreate(username="ci-bot", password="pw-in-body"))

        assert exc_info.value.code == 400
        assert "pw-in-body" not in str(exc_info.value)

    @respx.mock
    @pytest.mark.parametrize("status", [204, 404])
    async def test_delete_user_success(self, client: LegoCharmClient, status: int):
        """Test a 404 on delete counts as already deleted."""
        route = respx.delete(f"{USERS_URL}7/").mock(return_value=httpx.Response(status))

        async with client:
            await client.delete_user("7")

        assert route.called

    @respx.mock
    async def test_delete_user_server_error(self, client: LegoCharmClient):
        respx.delete(f"{USERS_URL}7/").mock(return_value=httpx.Response(500))

        async with client:
            with pytest.raises(LegoCharmError):
                await client.delete_user("7")


@pytest.mark.unit
class TestPasswordProbe:
    """Tests for has_valid_user_password."""

    @respx.mock
    @pytest.mark.parametrize(
        ("status", "expected"),
        [(401, False), (403, True), (200, True)],
    )
    async def test_status_mapping(self, client: LegoCharmClient, status: int, expected: bool):
        respx.get(USERS_URL).mock(return_value=httpx.Response(status, json=[]))

        async with client:
            assert await client.has_valid_user_password("ci-bot", "pw") is expected

    @respx.mock
    async def test_probe_uses_user_credentials(self, client: LegoCharmClient):
        route = respx.get(USERS_URL).mock(return_value=httpx.Response(403))

        async with client:
            await client.has_valid_user_password("ci-bot", "user-pw")

        request = route.calls.last.request
        assert request.headers["Authorization"] == basic_auth("ci-bot", "user-pw")
        assert request.url.params["username"] == "ci-bot"

    @respx.mock
    async def test_unexpected_status_raises(self, client: LegoCharmClient):
        respx.get(USERS_URL).mock(return_value=httpx.Response(500))

        async with client:
            with pytest.raises(LegoCharmError, match="unexpected status code"):
                await client.has_valid_user_password("ci-bot", "pw")


@pytest.mark.unit
class TestDomainAccessOperations:
    """Tests for domains and domain grants."""

    @respx.mock
    async def test_get_domain_access_resolves_username(self, client: LegoCharmClient):
        respx.get(f"{USERS_URL}7/").mock(return_value=httpx.Response(200, json=user_json(7)))
        route = respx.get(PERMISSIONS_URL).mock(
            return_value=httpx.Response(
                200, json=[{"id": 42, "user": 7, "domain": 3, "access_level": "domain"}]
            )
        )

        async with client:
            access = await client.get_domain_access("7", "example.com")

        assert access.id == 42
        params = route.calls.last.request.url.params
        assert params["username"] == "ci-bot"
        assert params["fqdn"] == "example.com"

    @respx.mock
    async def test_get_domain_access_unknown_user_not_found(self, client: LegoCharmClient):
        respx.get(f"{USERS_URL}7/").mock(return_value=httpx.Response(404))

        async with client:
            with pytest.raises(NotFoundError):
                await client.get_domain_access("7", "example.com")

    @respx.mock
    async def test_get_domain_access_empty_not_found(self, client: LegoCharmClient):
        respx.get(f"{USERS_URL}7/").mock(return_value=httpx.Response(200, json=user_json(7)))
        respx.get(PERMISSIONS_URL).mock(return_value=httpx.Response(200, json=[]))

        async with client:
            with pytest.raises(NotFoundError):
                await client.get_domain_access("7", "example.com")

    @respx.mock
    async def test_get_domain_access_hyperlinked_user_unparseable(self, client: LegoCharmClient):
        respx.get(f"{USERS_URL}7/").mock(return_value=httpx.Response(200, json=user_json(7)))
        respx.get(PERMISSIONS_URL).mock(
            return_value=httpx.Response(
                200,
                json=[{"id": 9, "user": f"{USERS_URL}7/", "domain": 3, "access_level": "domain"}],
            )
        )

        async with client:
            with pytest.raises(LegoCharmError) as exc_info:
                await client.get_domain_access("7", "example.com")

        assert exc_info.value.code == 200
        assert exc_info.value.message == "failed to parse domain access response"

    @respx.mock
    async def test_create_domain_non_numeric_id_unparseable(self, client: LegoCharmClient):
        respx.post(DOMAINS_URL).mock(
            return_value=httpx.Response(201, json={"id": "three", "fqdn": "example.com"})
        )

        async with client:
            with pytest.raises(LegoCharmError, match="failed to parse domain response"):
                await client.create_domain("example.com")

    @respx.mock
    async def test_create_domain_access_existing_domain(self, client: LegoCharmClient):
        respx.get(DOMAINS_URL).mock(
            return_value=httpx.Response(200, json=[{"id": 3, "fqdn": "example.com"}])
        )
        create_domain = respx.post(DOMAINS_URL)
        grant = respx.post(PERMISSIONS_URL).mock(
            return_value=httpx.Response(
                201, json={"id": 42, "user": 7, "domain": 3, "access_level": "domain"}
            )
        )

        async with client:
            access = await client.create_domain_access(
                DomainAccessCreate(user_id="7", domain="example.com", access_level="domain")
            )

        assert access.id == 42
        assert not create_domain.called
        assert json.loads(grant.calls.last.request.content) == {
            "user": "7",
            "domain": 3,
            "access_level": "domain",
        }

    @respx.mock
    async def test_create_domain_access_registers_missing_domain(self, client: LegoCharmClient):
        respx.get(DOMAINS_URL).mock(return_value=httpx.Response(200, json=[]))
        create_domain = respx.post(DOMAINS_URL).mock(
            return_value=httpx.Response(201, json={"id": 5, "fqdn": "new.example.com"})
        )
        grant = respx.post(PERMISSIONS_URL).mock(
            return_value=httpx.Response(
                201, json={"id": 43, "user": 7, "domain": 5, "access_level": "subdomain"}
            )
        )

        async with client:
            await client.create_domain_access(
                DomainAccessCreate(user_id="7", domain="new.example.com", access_level="subdomain")
            )

        assert json.loads(create_domain.calls.last.request.content) == {"fqdn": "new.example.com"}
        assert json.loads(grant.calls.last.request.content)["domain"] == 5

    @respx.mock
    async def test_create_domain_access_domain_lookup_error(self, client: LegoCharmClient):
        """Test lookup failures other than not-found abort the create."""
        respx.get(DOMAINS_URL).mock(return_value=httpx.Response(500))
        grant = respx.post(PERMISSIONS_URL)

        async with client:
            with pytest.raises(LegoCharmError) as exc_info:
                await client.create_domain_access(
                    DomainAccessCreate(user_id="7", domain="example.com", access_level="domain")
                )

        assert exc_info.value.code == 500
        assert not grant.called

    @respx.mock
    async def test_delete_domain_access(self, client: LegoCharmClient):
        route = respx.delete(f"{PERMISSIONS_URL}42/").mock(return_value=httpx.Response(204))

        async with client:
            await client.delete_domain_access(42)

        assert route.called


@pytest.mark.unit
class TestRetry:
    """Tests for timeout retries."""

    @respx.mock
    async def test_timeout_retried_then_succeeds(
        self, client: LegoCharmClient, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr(LegoCharmClient.send.retry, "wait", wait_none())
        route = respx.get(USERS_URL).mock(
            side_effect=[
                httpx.ReadTimeout("slow"),
                httpx.Response(200, json=[user_json(7)]),
            ]
        )

        async with client:
            user = await client.get_user_by_username("ci-bot")

        assert user.id == "7"
        assert route.call_count == 2

    @respx.mock
    async def test_timeout_gives_up_after_three_attempts(
        self, client: LegoCharmClient, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr(LegoCharmClient.send.retry, "wait", wait_none())
        route = respx.get(USERS_URL).mock(side_effect=httpx.ReadTimeout("slow"))

        async with client:
            with pytest.raises(httpx.TimeoutException):
                await client.get_user_by_username("ci-bot")

        assert route.call_count == 3
