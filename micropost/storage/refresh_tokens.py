from __future__ import annotations

import secrets
from datetime import timedelta
from typing import List, Optional

from micropost.logging import get_logger
from micropost.storage.json_file import JsonFileDatabase, next_id
from micropost.storage.models import (
    Clock,
    RefreshToken,
    parse_datetime,
    serialize_datetime,
    utc_now,
)

REFRESH_TOKEN_TTL = timedelta(days=30)


class RefreshTokenStore:
    """Opaque long-lived tokens in ``refreshTokens``.

    Tokens are not rotated on use; a refresh only bumps ``lastUsedAt``.
    Expired rows found by a lookup are deleted on the spot.
    """

    def __init__(self, db: JsonFileDatabase, *, clock: Clock = utc_now) -> None:
        self.db = db
        self.clock = clock
        self.logger = get_logger(__name__)

    @staticmethod
    def _serialize(token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "token": token.token,
            "userId": token.user_id,
            "deviceInfo": token.device_info,
            "createdAt": serialize_datetime(token.created_at),
            "expiresAt": serialize_datetime(token.expires_at),
            "lastUsedAt": serialize_datetime(token.last_used_at),
        }

    @staticmethod
    def _deserialize(data: dict) -> RefreshToken:
        created_at = parse_datetime(data["createdAt"])
        return RefreshToken(
            id=data["id"],
            token=data["token"],
            user_id=data["userId"],
            device_info=data.get("deviceInfo"),
            created_at=created_at,
            expires_at=parse_datetime(data["expiresAt"]),
            last_used_at=parse_datetime(data["lastUsedAt"]) if data.get("lastUsedAt") else created_at,
        )

    def create(self, user_id: int, device_info: Optional[str] = None) -> RefreshToken:
        now = self.clock()
        with self.db.update("refresh_tokens.create") as data:
            rows = data["refreshTokens"]
            token = RefreshToken(
                id=next_id(rows),
                token=secrets.token_hex(32),
                user_id=user_id,
                device_info=device_info,
                created_at=now,
                expires_at=now + REFRESH_TOKEN_TTL,
                last_used_at=now,
            )
            rows.append(self._serialize(token))
        return token

    def find_by_token(self, token: str) -> Optional[RefreshToken]:
        matches = self.db.read_records(
            "refresh_tokens.find_by_token",
            "refreshTokens",
            self._deserialize,
            where=lambda row: row.get("token") == token,
        )
        if not matches:
            return None
        record = matches[0]
        if not record.is_expired(self.clock()):
            return record
        # expired rows are removed on sight
        self.delete_by_token(token)
        self.logger.info("refresh_token_expired_removed", user_id=record.user_id)
        return None

    def touch(self, token: str) -> bool:
        """Record a use of ``token``; False when it no longer exists."""
        with self.db.update("refresh_tokens.touch") as data:
            for row in data["refreshTokens"]:
                if row.get("token") == token:
                    row["lastUsedAt"] = serialize_datetime(self.clock())
                    return True
        return False

    def find_by_user_id(self, user_id: int) -> List[RefreshToken]:
        now = self.clock()
        records = self.db.read_records(
            "refresh_tokens.find_by_user_id",
            "refreshTokens",
            self._deserialize,
            where=lambda row: row.get("userId") == user_id,
        )
        return [record for record in records if not record.is_expired(now)]

    def delete_by_token(self, token: str) -> bool:
        with self.db.update("refresh_tokens.delete_by_token") as data:
            rows = data["refreshTokens"]
            remaining = [row for row in rows if row.get("token") != token]
            data["refreshTokens"] = remaining
            return len(remaining) != len(rows)

    def delete_by_user_id(self, user_id: int) -> int:
        with self.db.update("refresh_tokens.delete_by_user_id") as data:
            rows = data["refreshTokens"]
            remaining = [row for row in rows if row.get("userId") != user_id]
            data["refreshTokens"] = remaining
            removed = len(rows) - len(remaining)
        if removed:
            self.logger.info("refresh_tokens_revoked", user_id=user_id, count=removed)
        return removed

    def cleanup_expired(self) -> int:
        now = self.clock()
        with self.db.update("refresh_tokens.cleanup_expired") as data:
            rows = data["refreshTokens"]
            remaining = [row for row in rows if not self._deserialize(row).is_expired(now)]
            data["refreshTokens"] = remaining
            return len(rows) - len(remaining)
