from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from micropost.logging import get_logger
from micropost.service.errors import (
    ConflictError,
    DatabaseError,
    InvalidCredentialsError,
    InvalidCurrentPasswordError,
    InvalidRefreshTokenError,
    InvalidResetTokenError,
    InvalidTokenError,
    NotFoundError,
    ServiceError,
)
from micropost.service.tokens import TokenCodec, strip_bearer
from micropost.service.validation import (
    validate_forgot_password,
    validate_login,
    validate_password_change,
    validate_password_reset,
    validate_registration,
    validate_required,
)
from micropost.storage.blacklist import TokenBlacklistStore
from micropost.storage.models import DEFAULT_ROLES, User
from micropost.storage.password_resets import DEFAULT_RESET_TTL_SECONDS, PasswordResetStore
from micropost.storage.refresh_tokens import RefreshTokenStore
from micropost.storage.users import UserStore

logger = get_logger(__name__)

FORGOT_PASSWORD_MESSAGE = (
    "If an account exists for that email, a password reset link has been sent"
)
LOGOUT_MESSAGE = "Logged out successfully"


def password_hasher_for_cost(cost: int) -> PasswordHasher:
    """Map the 10-15 work factor onto argon2id passes; 12 gives the library default of 3."""
    return PasswordHasher(type=Type.ID, time_cost=max(cost - 9, 1))


class Notifier(Protocol):
    def send_password_reset_email(self, to_email: str, token: str, name: str) -> bool: ...

    def send_password_change_confirmation(self, to_email: str, name: str) -> bool: ...

    def send_welcome_email(self, to_email: str, name: str) -> bool: ...


@dataclass
class AuthResult:
    user: User
    tokens: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"user": self.user.to_public(), "tokens": dict(self.tokens)}


class AuthProvider(Protocol):
    """Operations every identity backend answers."""

    async def register(
        self, name: str, email: str, password: str, *, device_info: Optional[str] = None
    ) -> AuthResult: ...

    async def login(
        self, email: str, password: str, *, device_info: Optional[str] = None
    ) -> AuthResult: ...

    async def logout(self, access_token: str) -> dict: ...

    async def logout_all_devices(self, user_id: int | str) -> dict: ...

    async def get_user_by_id(self, user_id: int | str) -> User: ...

    async def get_user_by_email(self, email: str) -> Optional[User]: ...

    async def get_user_from_token(self, access_token: str) -> User: ...

    async def change_password(
        self, user_id: int | str, current_password: str, new_password: str
    ) -> dict: ...

    async def forgot_password(self, email: str) -> dict: ...

    async def reset_password(self, token: str, new_password: str) -> dict: ...

    async def refresh_access_token(self, refresh_token: str) -> AuthResult: ...

    def has_role(self, user: User, required: str) -> bool: ...


class LocalAuthService:
    """Credential auth against the JSON file stores.

    Access tokens are stateless HS256 JWTs; logout works by blacklisting the
    token hash. Refresh tokens are opaque rows that stay valid until expiry
    or revocation.
    """

    def __init__(
        self,
        users: UserStore,
        codec: TokenCodec,
        refresh_tokens: RefreshTokenStore,
        blacklist: TokenBlacklistStore,
        password_resets: PasswordResetStore,
        *,
        notifier: Optional[Notifier] = None,
        password_hasher: Optional[PasswordHasher] = None,
        reset_ttl_seconds: int = DEFAULT_RESET_TTL_SECONDS,
        send_welcome_email: bool = True,
    ) -> None:
        self.users = users
        self.codec = codec
        self.refresh_tokens = refresh_tokens
        self.blacklist = blacklist
        self.password_resets = password_resets
        self.notifier = notifier
        self._pwd_hasher = password_hasher or password_hasher_for_cost(12)
        self.reset_ttl_seconds = reset_ttl_seconds
        self.send_welcome_email = send_welcome_email
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    # -- passwords -----------------------------------------------------

    async def _hash_password(self, password: str) -> str:
        return await asyncio.to_thread(self._pwd_hasher.hash, password)

    def _verify_sync(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unreadable")
            return False

    async def _verify_password(self, stored_hash: Optional[str], password: str) -> bool:
        return await asyncio.to_thread(self._verify_sync, stored_hash, password)

    async def _burn_verify(self, password: str) -> None:
        # Spend a verify's worth of work for unknown emails so response time
        # does not reveal whether the account exists.
        if self._dummy_hash is None:
            self._dummy_hash = await self._hash_password("placeholder-password-1")
        await self._verify_password(self._dummy_hash, password)

    async def _maybe_rehash(self, user: User, password: str) -> None:
        try:
            needs_rehash = self._pwd_hasher.check_needs_rehash(user.password_hash or "")
        except InvalidHash:
            return
        if not needs_rehash:
            return
        new_hash = await self._hash_password(password)
        try:
            self.users.update_password_hash(user.id, new_hash)
        except DatabaseError as exc:
            self.logger.warning("password_rehash_failed", user_id=user.id, operation=exc.operation)
            return
        user.password_hash = new_hash
        self.logger.info("password_rehashed", user_id=user.id)

    # -- helpers -------------------------------------------------------

    async def _notify(self, method: str, *args: Any) -> bool:
        if self.notifier is None:
            return False
        try:
            sent = await asyncio.to_thread(getattr(self.notifier, method), *args)
        except Exception as exc:
            # email delivery is never allowed to fail the auth operation
            self.logger.warning("notification_failed", kind=method, error=str(exc))
            return False
        if not sent:
            self.logger.warning("notification_not_sent", kind=method)
        return bool(sent)

    def _issue_session(self, user: User, device_info: Optional[str] = None) -> AuthResult:
        tokens = self.codec.issue(user)
        tokens["refresh_token"] = self.refresh_tokens.create(user.id, device_info).token
        return AuthResult(user=user, tokens=tokens)

    @staticmethod
    def _coerce_user_id(user_id: int | str) -> int:
        if isinstance(user_id, bool):
            raise NotFoundError()
        try:
            return int(user_id)
        except (TypeError, ValueError):
            raise NotFoundError() from None

    # -- operations ----------------------------------------------------

    async def register(
        self, name: str, email: str, password: str, *, device_info: Optional[str] = None
    ) -> AuthResult:
        data = validate_registration(name, email, password)
        # cheap pre-check; the store re-checks atomically on insert
        if self.users.find_by_email(data.email) is not None:
            self.logger.info("register_duplicate_email")
            raise ConflictError()
        password_hash = await self._hash_password(data.password)
        user = self.users.create(data.name, data.email, password_hash, DEFAULT_ROLES)
        result = self._issue_session(user, device_info)
        self.logger.info("user_registered", user_id=user.id)
        if self.send_welcome_email:
            await self._notify("send_welcome_email", user.email, user.name)
        return result

    async def login(
        self, email: str, password: str, *, device_info: Optional[str] = None
    ) -> AuthResult:
        data = validate_login(email, password)
        user = self.users.find_by_email(data.email)
        if user is None:
            await self._burn_verify(data.password)
            self.logger.warning("login_failed", reason="unknown_email")
            raise InvalidCredentialsError()
        if not await self._verify_password(user.password_hash, data.password):
            self.logger.warning("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()
        await self._maybe_rehash(user, data.password)
        result = self._issue_session(user, device_info)
        self.logger.info("login_succeeded", user_id=user.id)
        return result

    async def logout(self, access_token: str) -> dict:
        token = strip_bearer(access_token)
        try:
            if token:
                self.blacklist.add(token, reason="logout")
        except ServiceError as exc:
            # logout reports success even when the blacklist write fails
            self.logger.error("logout_blacklist_failed", error_code=exc.error_code, detail=exc.detail)
        return {"success": True, "message": LOGOUT_MESSAGE}

    async def logout_all_devices(self, user_id: int | str) -> dict:
        try:
            count = self.refresh_tokens.delete_by_user_id(self._coerce_user_id(user_id))
        except ServiceError as exc:
            self.logger.error("logout_all_devices_failed", user_id=user_id, error_code=exc.error_code)
            return {"success": True, "message": "Logged out from all devices"}
        return {
            "success": True,
            "message": f"Logged out from {count} device(s)",
            "revoked": count,
        }

    async def get_user_by_id(self, user_id: int | str) -> User:
        user = self.users.find_by_id(self._coerce_user_id(user_id))
        if user is None:
            raise NotFoundError()
        return user

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return self.users.find_by_email(email)

    async def get_user_from_token(self, access_token: str) -> User:
        """Resolve the user behind a bearer token.

        Every failure, including expiry, revocation and a deleted account,
        surfaces as ``InvalidTokenError``; the underlying cause is chained.
        """
        token = strip_bearer(access_token)
        try:
            claims = self.codec.verify(token)
        except InvalidTokenError as exc:
            raise InvalidTokenError() from exc
        if self.blacklist.is_blacklisted(token):
            self.logger.info("blacklisted_token_rejected", sub=claims.get("sub"))
            raise InvalidTokenError()
        try:
            return await self.get_user_by_id(claims["sub"])
        except NotFoundError as exc:
            raise InvalidTokenError() from exc

    async def refresh_access_token(self, refresh_token: str) -> AuthResult:
        try:
            token = validate_required(refresh_token, "refresh token")
        except ValueError:
            raise InvalidRefreshTokenError() from None
        record = self.refresh_tokens.find_by_token(token)
        if record is None:
            raise InvalidRefreshTokenError()
        user = self.users.find_by_id(record.user_id)
        if user is None:
            self.refresh_tokens.delete_by_token(token)
            raise InvalidRefreshTokenError()
        self.refresh_tokens.touch(token)
        return AuthResult(user=user, tokens=self.codec.issue(user))

    async def change_password(
        self, user_id: int | str, current_password: str, new_password: str
    ) -> dict:
        data = validate_password_change(current_password, new_password)
        user = await self.get_user_by_id(user_id)
        if not await self._verify_password(user.password_hash, data.current_password):
            self.logger.warning("password_change_rejected", user_id=user.id)
            raise InvalidCurrentPasswordError()
        new_hash = await self._hash_password(data.new_password)
        self.users.update_password_hash(user.id, new_hash)
        self.logger.info("password_changed", user_id=user.id)
        await self._notify("send_password_change_confirmation", user.email, user.name)
        return {"success": True, "message": "Password changed successfully"}

    async def forgot_password(self, email: str) -> dict:
        normalized = validate_forgot_password(email)
        user = self.users.find_by_email(normalized)
        if user is None:
            self.logger.info("password_reset_unknown_email")
        else:
            record = self.password_resets.create_reset_token(user.id, self.reset_ttl_seconds)
            await self._notify("send_password_reset_email", user.email, record.token, user.name)
            self.logger.info("password_reset_requested", user_id=user.id)
        return {"success": True, "message": FORGOT_PASSWORD_MESSAGE}

    async def reset_password(self, token: str, new_password: str) -> dict:
        data = validate_password_reset(token, new_password)
        record = self.password_resets.find_by_token(data.token)
        if record is None:
            self.logger.warning("password_reset_invalid_token", token=data.token)
            raise InvalidResetTokenError()
        user = self.users.find_by_id(record.user_id)
        if user is None:
            raise InvalidResetTokenError()
        new_hash = await self._hash_password(data.new_password)
        # consume first so a concurrent reset with the same token cannot also succeed
        if not self.password_resets.mark_used(data.token):
            raise InvalidResetTokenError()
        self.users.update_password_hash(user.id, new_hash)
        revoked = self.refresh_tokens.delete_by_user_id(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        await self._notify("send_password_change_confirmation", user.email, user.name)
        return {"success": True, "message": "Password has been reset"}

    def has_role(self, user: User, required: str) -> bool:
        return user.has_role(required)
