from __future__ import annotations

import threading
from typing import Optional

import httpx

from micropost.config import AuthProviderKind, Settings, get_settings, reset_settings_cache
from micropost.logging import get_logger
from micropost.service.auth import AuthProvider, LocalAuthService, password_hasher_for_cost
from micropost.service.email import EmailService
from micropost.service.federated import FallbackAuthService, FederatedAuthService
from micropost.service.tokens import TokenCodec, read_unverified_expiry
from micropost.storage.blacklist import TokenBlacklistStore
from micropost.storage.json_file import JsonFileDatabase
from micropost.storage.models import Clock, utc_now
from micropost.storage.password_resets import PasswordResetStore
from micropost.storage.refresh_tokens import RefreshTokenStore
from micropost.storage.users import UserStore

logger = get_logger(__name__)


def build_auth_provider(
    settings: Settings,
    local: LocalAuthService,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AuthProvider:
    """Pick the provider named by ``AUTH_PROVIDER``.

    The federated provider is always wrapped so the local stores answer
    whenever the identity provider cannot.
    """
    if settings.auth_provider == AuthProviderKind.FEDERATED:
        federated = FederatedAuthService(
            server_url=settings.federated_server_url,
            realm=settings.federated_realm,
            client_id=settings.federated_client_id,
            client_secret=settings.federated_client_secret,
            timeout=settings.federated_timeout_seconds,
            transport=transport,
        )
        logger.info(
            "auth_provider_selected",
            provider="federated",
            configured=federated.configured,
            realm=settings.federated_realm,
        )
        return FallbackAuthService(federated, local)
    logger.info("auth_provider_selected", provider="local")
    return local


class Runtime:
    """Holds the stores and services for one process, wired explicitly."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Clock = utc_now,
        federated_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            database_path=self.settings.database_path,
            auth_provider=self.settings.auth_provider.value,
        )
        self.db = JsonFileDatabase(self.settings.database_path)
        self.users = UserStore(self.db, clock=clock)
        self.refresh_tokens = RefreshTokenStore(self.db, clock=clock)
        self.blacklist = TokenBlacklistStore(
            self.db, clock=clock, expiry_reader=read_unverified_expiry
        )
        self.password_resets = PasswordResetStore(self.db, clock=clock)
        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl_seconds=self.settings.access_token_ttl_seconds,
            clock=clock,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
            reset_ttl_seconds=self.settings.password_reset_ttl_seconds,
        )
        self.local_auth = LocalAuthService(
            self.users,
            self.codec,
            self.refresh_tokens,
            self.blacklist,
            self.password_resets,
            notifier=self.email,
            password_hasher=password_hasher_for_cost(self.settings.password_hash_cost),
            reset_ttl_seconds=self.settings.password_reset_ttl_seconds,
            send_welcome_email=self.settings.send_welcome_email,
        )
        self.auth = build_auth_provider(
            self.settings, self.local_auth, transport=federated_transport
        )

    def sweep_expired_tokens(self) -> dict[str, int]:
        """Reap expired blacklist, refresh and reset rows; returns per-table counts."""
        removed = {
            "blacklist": self.blacklist.cleanup_expired(),
            "refresh_tokens": self.refresh_tokens.cleanup_expired(),
            "password_resets": self.password_resets.cleanup_expired(),
        }
        logger.info("expired_tokens_swept", **removed)
        return removed

    def token_stats(self) -> dict[str, dict]:
        return {
            "blacklist": self.blacklist.stats(),
            "password_resets": self.password_resets.stats(),
        }


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**kwargs) -> Runtime:
    """Rebuild the singleton from a fresh read of the environment."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime(**kwargs)
        return runtime
