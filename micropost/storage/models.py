from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Iterable, List, Optional


class Role(str, Enum):
    USER = "user"
    READONLY_ADMIN = "readonly-admin"
    ADMIN = "admin"


# Roles each held role satisfies: admin ⊇ readonly-admin ⊇ user
ROLE_GRANTS: dict[str, frozenset[str]] = {
    Role.USER.value: frozenset({Role.USER.value}),
    Role.READONLY_ADMIN.value: frozenset({Role.USER.value, Role.READONLY_ADMIN.value}),
    Role.ADMIN.value: frozenset(role.value for role in Role),
}

DEFAULT_ROLES: tuple[str, ...] = (Role.USER.value,)


def role_allows(held_roles: Iterable[str], required: str) -> bool:
    """True when any held role satisfies ``required`` under the hierarchy."""
    if required not in ROLE_GRANTS:
        return False
    return any(required in ROLE_GRANTS.get(role, frozenset()) for role in held_roles)


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def serialize_datetime(dt: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_datetime(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class User:
    """Account record.

    ``id`` is an integer for locally stored users and the provider's subject
    string for federated ones. ``password_hash`` never leaves the service layer;
    ``to_public`` is the only outward representation.
    """

    id: int | str
    name: str
    email: str
    password_hash: Optional[str] = None
    roles: List[str] = field(default_factory=lambda: list(DEFAULT_ROLES))
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    micropost_count: int = 0

    def has_role(self, required: str) -> bool:
        return role_allows(self.roles, required)

    def to_public(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "roles": list(self.roles),
            "createdAt": serialize_datetime(self.created_at),
            "updatedAt": serialize_datetime(self.updated_at),
            "micropostCount": self.micropost_count,
        }


@dataclass
class RefreshToken:
    id: int
    token: str
    user_id: int
    expires_at: datetime
    created_at: datetime
    last_used_at: datetime
    device_info: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class BlacklistEntry:
    id: int
    token_hash: str
    reason: str
    created_at: datetime
    # epoch seconds
    expires_at: int

    def is_active(self, now: datetime) -> bool:
        return self.expires_at > int(now.timestamp())


@dataclass
class PasswordResetToken:
    id: int
    user_id: int
    token: str
    # epoch seconds
    expires_at: int
    created_at: datetime
    used: bool = False

    def is_valid(self, now: datetime) -> bool:
        return not self.used and self.expires_at > int(now.timestamp())
