"""Tests for the federated identity provider and the fallback wrapper."""

import httpx
import pytest

from micropost.config import AuthProviderKind, Settings
from micropost.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    NotFoundError,
    ProviderUnavailableError,
)
from micropost.service.federated import (
    FallbackAuthService,
    FederatedAuthService,
    map_provider_roles,
)
from micropost.service.runtime import build_auth_provider

SERVER = "https://id.example.com"
REALM_URL = f"{SERVER}/realms/micropost/protocol/openid-connect"
USERS_URL = f"{SERVER}/admin/realms/micropost/users"

USERINFO = {
    "sub": "kc-123",
    "name": "Alice Liddell",
    "email": "Alice@Example.com",
    "realm_access": {"roles": ["default-roles-realm", "readonly-admin"]},
}


class IdentityProvider:
    """Minimal in-process stand-in for the provider's REST surface."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.password = "Password1"
        self.user_exists = False
        self.down = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.down:
            return httpx.Response(503)
        url = str(request.url).split("?")[0]
        if url == f"{REALM_URL}/token":
            form = dict(httpx.QueryParams(request.content.decode()))
            grant = form.get("grant_type")
            if grant == "client_credentials":
                return httpx.Response(200, json={"access_token": "admin-token"})
            if grant == "password":
                if form.get("password") != self.password:
                    return httpx.Response(401, json={"error": "invalid_grant"})
                return httpx.Response(
                    200,
                    json={"access_token": "kc-access", "refresh_token": "kc-refresh", "expires_in": 300},
                )
            if grant == "refresh_token":
                if form.get("refresh_token") != "kc-refresh":
                    return httpx.Response(400, json={"error": "invalid_grant"})
                return httpx.Response(200, json={"access_token": "kc-access-2", "expires_in": 300})
        if url == f"{REALM_URL}/userinfo":
            if request.headers.get("authorization") not in ("Bearer kc-access", "Bearer kc-access-2"):
                return httpx.Response(401)
            return httpx.Response(200, json=USERINFO)
        if url == f"{REALM_URL}/logout":
            return httpx.Response(204)
        if url == USERS_URL and request.method == "POST":
            if self.user_exists:
                return httpx.Response(409)
            self.user_exists = True
            return httpx.Response(201)
        if url == USERS_URL:
            if request.url.params.get("email") == "alice@example.com":
                return httpx.Response(200, json=[{"id": "kc-123", "username": "alice", "email": "alice@example.com"}])
            return httpx.Response(200, json=[])
        if url == f"{USERS_URL}/kc-123":
            return httpx.Response(
                200,
                json={
                    "id": "kc-123",
                    "firstName": "Alice",
                    "lastName": "Liddell",
                    "email": "alice@example.com",
                    "createdTimestamp": 1704110400000,
                },
            )
        return httpx.Response(404)


@pytest.fixture
def idp():
    return IdentityProvider()


@pytest.fixture
def federated(idp):
    return FederatedAuthService(
        server_url=SERVER,
        realm="micropost",
        client_id="micropost-api",
        client_secret="shh",
        transport=httpx.MockTransport(idp.handler),
    )


def test_role_mapping():
    assert map_provider_roles(["realm-admin", "admin"]) == ["admin"]
    assert map_provider_roles(["default-roles-realm", "offline_access"]) == ["user"]
    assert map_provider_roles([]) == ["user"]


class TestFederatedAuthService:
    async def test_login_maps_userinfo(self, federated, idp):
        result = await federated.login("alice@example.com", "Password1")

        assert result.user.id == "kc-123"
        assert result.user.email == "alice@example.com"
        assert result.user.roles == ["user", "readonly-admin"]
        assert result.tokens == {
            "access_token": "kc-access",
            "token_type": "Bearer",
            "expires_in": 300,
            "refresh_token": "kc-refresh",
        }
        token_request = idp.requests[0]
        assert b"client_secret=shh" in token_request.content

    async def test_bad_password_is_invalid_credentials(self, federated):
        with pytest.raises(InvalidCredentialsError):
            await federated.login("alice@example.com", "Wrong1234")

    async def test_register_then_duplicate(self, federated):
        result = await federated.register("Alice Liddell", "alice@example.com", "Password1")
        assert result.user.id == "kc-123"

        with pytest.raises(ConflictError):
            await federated.register("Alice Liddell", "alice@example.com", "Password1")

    async def test_token_resolution(self, federated):
        assert (await federated.get_user_from_token("Bearer kc-access")).id == "kc-123"
        with pytest.raises(InvalidTokenError):
            await federated.get_user_from_token("stale")

    async def test_refresh(self, federated):
        result = await federated.refresh_access_token("kc-refresh")
        assert result.tokens["access_token"] == "kc-access-2"

        with pytest.raises(InvalidRefreshTokenError):
            await federated.refresh_access_token("other")

    async def test_admin_lookups(self, federated):
        user = await federated.get_user_by_id("kc-123")
        assert user.name == "Alice Liddell"
        assert user.created_at.year == 2024
        assert (await federated.get_user_by_email("ALICE@example.com")).id == "kc-123"
        assert await federated.get_user_by_email("ghost@example.com") is None
        with pytest.raises(NotFoundError):
            await federated.get_user_by_id("missing")

    async def test_logout_always_succeeds(self, federated, idp):
        idp.down = True
        assert (await federated.logout("kc-access"))["success"] is True

    async def test_provider_errors_are_unavailable(self, federated, idp):
        idp.down = True
        with pytest.raises(ProviderUnavailableError):
            await federated.login("alice@example.com", "Password1")

    async def test_transport_failures_are_unavailable(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        service = FederatedAuthService(
            server_url=SERVER, client_id="micropost-api", transport=httpx.MockTransport(refuse)
        )
        with pytest.raises(ProviderUnavailableError):
            await service.login("alice@example.com", "Password1")

    async def test_unconfigured_provider_is_unavailable(self):
        service = FederatedAuthService(server_url=None)

        assert service.configured is False
        with pytest.raises(ProviderUnavailableError):
            await service.login("alice@example.com", "Password1")

    @pytest.mark.parametrize(
        "operation,args",
        [
            ("change_password", ("kc-123", "Password1", "NewPassw0rd")),
            ("forgot_password", ("alice@example.com",)),
            ("reset_password", ("token", "NewPassw0rd")),
            ("logout_all_devices", ("kc-123",)),
        ],
    )
    async def test_unsupported_operations(self, federated, operation, args):
        with pytest.raises(ProviderUnavailableError):
            await getattr(federated, operation)(*args)


class TestFallbackAuthService:
    @pytest.fixture
    def fallback(self, federated, auth_service):
        return FallbackAuthService(federated, auth_service)

    async def test_primary_answers_when_up(self, fallback):
        result = await fallback.login("alice@example.com", "Password1")
        assert result.user.id == "kc-123"

    async def test_domain_errors_do_not_fall_through(self, fallback, auth_service):
        await auth_service.register("Alice", "alice@example.com", "Wrong1234")

        with pytest.raises(InvalidCredentialsError):
            await fallback.login("alice@example.com", "Wrong1234")

    async def test_falls_back_when_provider_is_down(self, fallback, idp, auth_service):
        idp.down = True
        registered = await fallback.register("Alice", "alice@example.com", "Password1")

        assert registered.user.id == 1
        user = await fallback.get_user_from_token(registered.tokens["access_token"])
        assert user.id == 1

    async def test_local_tokens_resolve_while_provider_is_up(self, fallback, auth_service):
        local = await auth_service.register("Bob", "bob@example.com", "Password1")

        user = await fallback.get_user_from_token(local.tokens["access_token"])
        assert user.email == "bob@example.com"
        assert (await fallback.get_user_by_id(local.user.id)).id == local.user.id

    async def test_unsupported_operations_use_fallback(self, fallback, auth_service, notifier):
        await auth_service.register("Bob", "bob@example.com", "Password1")

        await fallback.forgot_password("bob@example.com")

        assert len(notifier.of_kind("reset")) == 1

    async def test_logout_reaches_both_providers(self, fallback, auth_service, idp):
        local = await auth_service.register("Bob", "bob@example.com", "Password1")

        await fallback.logout(local.tokens["access_token"])

        assert any(str(r.url).endswith("/logout") for r in idp.requests)
        assert auth_service.blacklist.is_blacklisted(local.tokens["access_token"])


class TestProviderSelection:
    def test_local_by_default(self, auth_service):
        settings = Settings(jwt_secret="s" * 32)

        assert build_auth_provider(settings, auth_service) is auth_service

    def test_federated_is_wrapped_with_local_fallback(self, auth_service, idp):
        settings = Settings(
            jwt_secret="s" * 32,
            auth_provider=AuthProviderKind.FEDERATED,
            federated_server_url=SERVER,
            federated_realm="micropost",
            federated_client_id="micropost-api",
        )

        provider = build_auth_provider(
            settings, auth_service, transport=httpx.MockTransport(idp.handler)
        )

        assert isinstance(provider, FallbackAuthService)
        assert provider.primary.configured is True
        assert provider.fallback is auth_service

    def test_federated_without_server_still_falls_back(self, auth_service):
        settings = Settings(jwt_secret="s" * 32, auth_provider=AuthProviderKind.FEDERATED)

        provider = build_auth_provider(settings, auth_service)

        assert provider.primary.configured is False
