from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

import httpx

from micropost.logging import get_logger
from micropost.service.auth import LOGOUT_MESSAGE, AuthProvider, AuthResult
from micropost.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    NotFoundError,
    ProviderUnavailableError,
)
from micropost.service.tokens import strip_bearer
from micropost.service.validation import validate_login, validate_registration
from micropost.storage.models import DEFAULT_ROLES, Role, User, role_allows, utc_now

logger = get_logger(__name__)

# Identity-provider role names mapped onto local roles; unknown roles map to user
ROLE_MAPPING = {
    "realm-admin": Role.ADMIN.value,
    "admin": Role.ADMIN.value,
    "readonly-admin": Role.READONLY_ADMIN.value,
    "user": Role.USER.value,
    "default-roles-realm": Role.USER.value,
}


def map_provider_roles(provider_roles: Iterable[str]) -> List[str]:
    mapped: List[str] = []
    for role in provider_roles or ():
        value = ROLE_MAPPING.get(role, Role.USER.value)
        if value not in mapped:
            mapped.append(value)
    return mapped or list(DEFAULT_ROLES)


class FederatedAuthService:
    """Delegates credentials to an OpenID Connect provider laid out like Keycloak.

    Unreachable or misconfigured providers, 5xx answers and operations the
    provider cannot serve all raise ``ProviderUnavailableError`` so a
    ``FallbackAuthService`` can hand the call to the local implementation.
    Credential and token rejections are ordinary domain errors.
    """

    def __init__(
        self,
        *,
        server_url: Optional[str],
        realm: str = "master",
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.realm = realm
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self._transport = transport
        self.logger = logger
        self.endpoints: dict[str, str] = {}
        if server_url:
            base = server_url.rstrip("/")
            realm_url = f"{base}/realms/{realm}"
            self.endpoints = {
                "token": f"{realm_url}/protocol/openid-connect/token",
                "userinfo": f"{realm_url}/protocol/openid-connect/userinfo",
                "logout": f"{realm_url}/protocol/openid-connect/logout",
                "users": f"{base}/admin/realms/{realm}/users",
            }
        else:
            self.logger.warning("federated_provider_not_configured")

    @property
    def configured(self) -> bool:
        return bool(self.endpoints and self.client_id)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport, follow_redirects=False
        )

    async def _request(
        self, method: str, endpoint: str, *, operation: str, path: str = "", **kwargs: Any
    ) -> httpx.Response:
        if not self.configured:
            raise ProviderUnavailableError(
                detail={"operation": operation, "reason": "not_configured"}
            )
        url = self.endpoints[endpoint] + path
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            self.logger.error(
                "federated_request_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ProviderUnavailableError(detail={"operation": operation}) from exc
        if response.status_code >= 500:
            self.logger.error(
                "federated_provider_error",
                operation=operation,
                status_code=response.status_code,
            )
            raise ProviderUnavailableError(
                detail={"operation": operation, "status_code": response.status_code}
            )
        return response

    def _unexpected(self, response: httpx.Response, operation: str) -> ProviderUnavailableError:
        self.logger.warning(
            "federated_unexpected_status", operation=operation, status_code=response.status_code
        )
        return ProviderUnavailableError(
            detail={"operation": operation, "status_code": response.status_code}
        )

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderUnavailableError(
                detail={"operation": operation, "reason": "invalid_json"}
            ) from exc

    def _client_credentials(self) -> dict[str, str]:
        data = {"client_id": self.client_id or ""}
        if self.client_secret:
            data["client_secret"] = self.client_secret
        return data

    async def _admin_token(self) -> str:
        response = await self._request(
            "POST",
            "token",
            operation="admin_token",
            data={"grant_type": "client_credentials", **self._client_credentials()},
        )
        if response.status_code != 200:
            raise self._unexpected(response, "admin_token")
        token = self._json(response, "admin_token").get("access_token")
        if not token:
            raise ProviderUnavailableError(detail={"operation": "admin_token"})
        return token

    @staticmethod
    def _internal_tokens(payload: dict) -> dict[str, Any]:
        tokens = {
            "access_token": payload["access_token"],
            "token_type": "Bearer",
            "expires_in": int(payload.get("expires_in", 0)),
        }
        if payload.get("refresh_token"):
            tokens["refresh_token"] = payload["refresh_token"]
        return tokens

    @staticmethod
    def _user_from_userinfo(info: dict) -> User:
        now = utc_now()
        return User(
            id=info["sub"],
            name=info.get("name") or info.get("preferred_username") or "",
            email=(info.get("email") or "").lower(),
            roles=map_provider_roles((info.get("realm_access") or {}).get("roles", [])),
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _user_from_representation(data: dict) -> User:
        created_ms = data.get("createdTimestamp")
        created_at = (
            datetime.fromtimestamp(created_ms / 1000, tz=timezone.utc) if created_ms else utc_now()
        )
        full_name = f"{data.get('firstName') or ''} {data.get('lastName') or ''}".strip()
        return User(
            id=data["id"],
            name=full_name or data.get("username", ""),
            email=(data.get("email") or "").lower(),
            roles=map_provider_roles(data.get("roles") or []),
            created_at=created_at,
            updated_at=utc_now(),
        )

    async def _password_grant(self, email: str, password: str) -> dict[str, Any]:
        response = await self._request(
            "POST",
            "token",
            operation="login",
            data={
                "grant_type": "password",
                "username": email,
                "password": password,
                **self._client_credentials(),
            },
        )
        if response.status_code in (400, 401):
            raise InvalidCredentialsError()
        if response.status_code != 200:
            raise self._unexpected(response, "login")
        return self._internal_tokens(self._json(response, "login"))

    async def _userinfo(self, access_token: str) -> User:
        response = await self._request(
            "GET",
            "userinfo",
            operation="userinfo",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if response.status_code in (401, 403):
            raise InvalidTokenError()
        if response.status_code != 200:
            raise self._unexpected(response, "userinfo")
        return self._user_from_userinfo(self._json(response, "userinfo"))

    async def register(
        self, name: str, email: str, password: str, *, device_info: Optional[str] = None
    ) -> AuthResult:
        # device_info is tracked by the provider's own sessions
        data = validate_registration(name, email, password)
        admin_token = await self._admin_token()
        first, _, last = data.name.partition(" ")
        response = await self._request(
            "POST",
            "users",
            operation="register",
            headers={"Authorization": f"Bearer {admin_token}"},
            json={
                "username": data.email,
                "email": data.email,
                "firstName": first or data.name,
                "lastName": last,
                "enabled": True,
                "emailVerified": False,
                "credentials": [
                    {"type": "password", "value": data.password, "temporary": False}
                ],
            },
        )
        if response.status_code == 409:
            raise ConflictError()
        if response.status_code not in (200, 201):
            raise self._unexpected(response, "register")
        tokens = await self._password_grant(data.email, data.password)
        user = await self._userinfo(tokens["access_token"])
        self.logger.info("federated_user_registered", user_id=user.id)
        return AuthResult(user=user, tokens=tokens)

    async def login(
        self, email: str, password: str, *, device_info: Optional[str] = None
    ) -> AuthResult:
        data = validate_login(email, password)
        tokens = await self._password_grant(data.email, data.password)
        user = await self._userinfo(tokens["access_token"])
        return AuthResult(user=user, tokens=tokens)

    async def logout(self, access_token: str) -> dict:
        token = strip_bearer(access_token)
        try:
            await self._request(
                "POST",
                "logout",
                operation="logout",
                headers={"Authorization": f"Bearer {token}"},
                data=self._client_credentials(),
            )
        except ProviderUnavailableError as exc:
            self.logger.warning("federated_logout_failed", detail=exc.detail)
        return {"success": True, "message": LOGOUT_MESSAGE}

    async def logout_all_devices(self, user_id: int | str) -> dict:
        raise ProviderUnavailableError(detail={"operation": "logout_all_devices"})

    async def get_user_by_id(self, user_id: int | str) -> User:
        admin_token = await self._admin_token()
        response = await self._request(
            "GET",
            "users",
            operation="get_user_by_id",
            path=f"/{user_id}",
            headers={"Authorization": f"Bearer {admin_token}"},
        )
        if response.status_code == 404:
            raise NotFoundError()
        if response.status_code != 200:
            raise self._unexpected(response, "get_user_by_id")
        return self._user_from_representation(self._json(response, "get_user_by_id"))

    async def get_user_by_email(self, email: str) -> Optional[User]:
        admin_token = await self._admin_token()
        response = await self._request(
            "GET",
            "users",
            operation="get_user_by_email",
            params={"email": email.strip().lower(), "exact": "true"},
            headers={"Authorization": f"Bearer {admin_token}"},
        )
        if response.status_code != 200:
            raise self._unexpected(response, "get_user_by_email")
        users = self._json(response, "get_user_by_email") or []
        return self._user_from_representation(users[0]) if users else None

    async def get_user_from_token(self, access_token: str) -> User:
        return await self._userinfo(strip_bearer(access_token))

    async def refresh_access_token(self, refresh_token: str) -> AuthResult:
        if not refresh_token:
            raise InvalidRefreshTokenError()
        response = await self._request(
            "POST",
            "token",
            operation="refresh",
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                **self._client_credentials(),
            },
        )
        if response.status_code in (400, 401):
            raise InvalidRefreshTokenError()
        if response.status_code != 200:
            raise self._unexpected(response, "refresh")
        tokens = self._internal_tokens(self._json(response, "refresh"))
        user = await self._userinfo(tokens["access_token"])
        return AuthResult(user=user, tokens=tokens)

    async def change_password(
        self, user_id: int | str, current_password: str, new_password: str
    ) -> dict:
        raise ProviderUnavailableError(detail={"operation": "change_password"})

    async def forgot_password(self, email: str) -> dict:
        raise ProviderUnavailableError(detail={"operation": "forgot_password"})

    async def reset_password(self, token: str, new_password: str) -> dict:
        raise ProviderUnavailableError(detail={"operation": "reset_password"})

    def has_role(self, user: User, required: str) -> bool:
        return role_allows(user.roles, required)


class FallbackAuthService:
    """Tries ``primary`` and hands the same call to ``fallback`` when it is unavailable.

    Token-bearing calls also fall through on authentication errors, since the
    token may have been issued by the fallback while the primary was down.
    Logout is sent to both so neither side keeps honouring the token.
    """

    _TOKEN_OPERATIONS = frozenset({"get_user_from_token", "refresh_access_token"})
    # ids minted by the fallback are unknown to the primary
    _LOOKUP_OPERATIONS = frozenset({"get_user_by_id"})

    def __init__(self, primary: AuthProvider, fallback: AuthProvider) -> None:
        self.primary = primary
        self.fallback = fallback
        self.logger = logger

    async def _call(self, operation: str, *args: Any, **kwargs: Any) -> Any:
        fall_through: tuple[type[Exception], ...] = (ProviderUnavailableError,)
        if operation in self._TOKEN_OPERATIONS:
            fall_through = (ProviderUnavailableError, AuthenticationError)
        elif operation in self._LOOKUP_OPERATIONS:
            fall_through = (ProviderUnavailableError, NotFoundError)
        try:
            return await getattr(self.primary, operation)(*args, **kwargs)
        except fall_through as exc:
            self.logger.warning(
                "auth_provider_fallback",
                operation=operation,
                error_code=getattr(exc, "error_code", None),
            )
        return await getattr(self.fallback, operation)(*args, **kwargs)

    async def register(
        self, name: str, email: str, password: str, *, device_info: Optional[str] = None
    ) -> AuthResult:
        return await self._call("register", name, email, password, device_info=device_info)

    async def login(
        self, email: str, password: str, *, device_info: Optional[str] = None
    ) -> AuthResult:
        return await self._call("login", email, password, device_info=device_info)

    async def logout(self, access_token: str) -> dict:
        await self.primary.logout(access_token)
        return await self.fallback.logout(access_token)

    async def logout_all_devices(self, user_id: int | str) -> dict:
        return await self._call("logout_all_devices", user_id)

    async def get_user_by_id(self, user_id: int | str) -> User:
        return await self._call("get_user_by_id", user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return await self._call("get_user_by_email", email)

    async def get_user_from_token(self, access_token: str) -> User:
        return await self._call("get_user_from_token", access_token)

    async def refresh_access_token(self, refresh_token: str) -> AuthResult:
        return await self._call("refresh_access_token", refresh_token)

    async def change_password(
        self, user_id: int | str, current_password: str, new_password: str
    ) -> dict:
        return await self._call("change_password", user_id, current_password, new_password)

    async def forgot_password(self, email: str) -> dict:
        return await self._call("forgot_password", email)

    async def reset_password(self, token: str, new_password: str) -> dict:
        return await self._call("reset_password", token, new_password)

    def has_role(self, user: User, required: str) -> bool:
        return role_allows(user.roles, required)
