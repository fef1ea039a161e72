from __future__ import annotations

from typing import Iterable, List, Optional

from micropost.logging import get_logger
from micropost.service.errors import ConflictError, ValidationError
from micropost.storage.json_file import JsonFileDatabase, next_id
from micropost.storage.models import (
    DEFAULT_ROLES,
    Clock,
    Role,
    User,
    parse_datetime,
    serialize_datetime,
    utc_now,
)


def normalize_roles(roles: Iterable[str] | None) -> List[str]:
    """Validate against the role set, drop duplicates, keep order, never empty."""
    normalized: List[str] = []
    for role in roles or ():
        try:
            value = Role(role).value
        except ValueError as exc:
            raise ValidationError(
                "Invalid role", detail={"field": "roles", "value": str(role)}
            ) from exc
        if value not in normalized:
            normalized.append(value)
    return normalized or list(DEFAULT_ROLES)


class UserStore:
    """Credential store over the ``users`` array; owns email uniqueness."""

    def __init__(self, db: JsonFileDatabase, *, clock: Clock = utc_now) -> None:
        self.db = db
        self.clock = clock
        self.logger = get_logger(__name__)

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "passwordHash": user.password_hash,
            "roles": list(user.roles),
            "createdAt": serialize_datetime(user.created_at),
            "updatedAt": serialize_datetime(user.updated_at),
        }

    @staticmethod
    def _deserialize_user(data: dict, microposts: list[dict]) -> User:
        created_at = parse_datetime(data["createdAt"])
        user_id = data["id"]
        return User(
            id=user_id,
            name=data.get("name", ""),
            email=data["email"],
            password_hash=data.get("passwordHash"),
            roles=list(data.get("roles") or DEFAULT_ROLES),
            created_at=created_at,
            updated_at=parse_datetime(data["updatedAt"]) if data.get("updatedAt") else created_at,
            micropost_count=sum(1 for post in microposts if post.get("userId") == user_id),
        )

    def _find(self, operation: str, predicate) -> Optional[User]:
        data = self.db.read(operation)
        microposts = data.get("microposts") or []
        matches = self.db.decode_records(
            operation,
            data["users"],
            lambda record: self._deserialize_user(record, microposts),
            where=predicate,
        )
        return matches[0] if matches else None

    def create(
        self,
        name: str,
        email: str,
        password_hash: str,
        roles: Iterable[str] | None = None,
    ) -> User:
        email = email.strip().lower()
        role_list = normalize_roles(roles)
        with self.db.update("users.create") as data:
            users = data["users"]
            if any(str(u.get("email", "")).lower() == email for u in users):
                raise ConflictError()
            now = self.clock()
            user = User(
                id=next_id(users),
                name=name,
                email=email,
                password_hash=password_hash,
                roles=role_list,
                created_at=now,
                updated_at=now,
            )
            users.append(self._serialize_user(user))
        self.logger.info("user_created", user_id=user.id)
        return user

    def find_by_id(self, user_id: int) -> Optional[User]:
        return self._find("users.find_by_id", lambda record: record.get("id") == user_id)

    def find_by_email(self, email: str) -> Optional[User]:
        needle = email.strip().lower()
        return self._find(
            "users.find_by_email",
            lambda record: str(record.get("email", "")).lower() == needle,
        )

    def update_password_hash(self, user_id: int, password_hash: str) -> bool:
        with self.db.update("users.update_password_hash") as data:
            for record in data["users"]:
                if record.get("id") == user_id:
                    record["passwordHash"] = password_hash
                    record["updatedAt"] = serialize_datetime(self.clock())
                    return True
        return False

    def update_roles(self, user_id: int, roles: Iterable[str]) -> Optional[User]:
        role_list = normalize_roles(roles)
        with self.db.update("users.update_roles") as data:
            for record in data["users"]:
                if record.get("id") == user_id:
                    record["roles"] = role_list
                    record["updatedAt"] = serialize_datetime(self.clock())
                    return self._deserialize_user(record, data.get("microposts") or [])
        return None

    def count(self) -> int:
        return len(self.db.read("users.count")["users"])
