from __future__ import annotations

import secrets
from typing import Optional

from micropost.logging import get_logger
from micropost.storage.json_file import JsonFileDatabase, next_id
from micropost.storage.models import (
    Clock,
    PasswordResetToken,
    parse_datetime,
    serialize_datetime,
    utc_now,
)

DEFAULT_RESET_TTL_SECONDS = 3600


class PasswordResetStore:
    """Single-use reset tokens in ``passwordResetTokens``; at most one valid per user."""

    def __init__(self, db: JsonFileDatabase, *, clock: Clock = utc_now) -> None:
        self.db = db
        self.clock = clock
        self.logger = get_logger(__name__)

    @staticmethod
    def _serialize(token: PasswordResetToken) -> dict:
        return {
            "id": token.id,
            "userId": token.user_id,
            "token": token.token,
            "expiresAt": token.expires_at,
            "createdAt": serialize_datetime(token.created_at),
            "used": token.used,
        }

    @staticmethod
    def _deserialize(data: dict) -> PasswordResetToken:
        return PasswordResetToken(
            id=data["id"],
            user_id=data["userId"],
            token=data["token"],
            expires_at=int(data["expiresAt"]),
            created_at=parse_datetime(data["createdAt"]),
            used=bool(data.get("used", False)),
        )

    @staticmethod
    def _invalidate_rows(rows: list[dict], user_id: int) -> int:
        count = 0
        for row in rows:
            if row.get("userId") == user_id and not row.get("used"):
                row["used"] = True
                count += 1
        return count

    def create_reset_token(
        self, user_id: int, ttl_seconds: int = DEFAULT_RESET_TTL_SECONDS
    ) -> PasswordResetToken:
        """Issue a new token, invalidating the user's earlier ones in the same write."""
        now = self.clock()
        with self.db.update("password_resets.create") as data:
            rows = data["passwordResetTokens"]
            superseded = self._invalidate_rows(rows, user_id)
            record = PasswordResetToken(
                id=next_id(rows),
                user_id=user_id,
                token=secrets.token_urlsafe(32),
                expires_at=int(now.timestamp()) + ttl_seconds,
                created_at=now,
            )
            rows.append(self._serialize(record))
        self.logger.info(
            "password_reset_token_created", user_id=user_id, superseded=superseded
        )
        return record

    def find_by_token(self, token: str) -> Optional[PasswordResetToken]:
        matches = self.db.read_records(
            "password_resets.find_by_token",
            "passwordResetTokens",
            self._deserialize,
            where=lambda row: row.get("token") == token,
        )
        if matches and matches[0].is_valid(self.clock()):
            return matches[0]
        return None

    def find_valid_by_user_id(self, user_id: int) -> Optional[PasswordResetToken]:
        now = self.clock()
        records = self.db.read_records(
            "password_resets.find_valid_by_user_id",
            "passwordResetTokens",
            self._deserialize,
            where=lambda row: row.get("userId") == user_id,
        )
        return next((record for record in records if record.is_valid(now)), None)

    def mark_used(self, token: str) -> bool:
        """Consume ``token``; False if it is unknown or was already used."""
        with self.db.update("password_resets.mark_used") as data:
            for row in data["passwordResetTokens"]:
                if row.get("token") == token and not row.get("used"):
                    row["used"] = True
                    return True
        return False

    def invalidate_user_tokens(self, user_id: int) -> int:
        with self.db.update("password_resets.invalidate_user_tokens") as data:
            return self._invalidate_rows(data["passwordResetTokens"], user_id)

    def cleanup_expired(self) -> int:
        """Drop rows that are used or past expiry."""
        now = self.clock()
        with self.db.update("password_resets.cleanup_expired") as data:
            rows = data["passwordResetTokens"]
            remaining = [row for row in rows if self._deserialize(row).is_valid(now)]
            data["passwordResetTokens"] = remaining
            return len(rows) - len(remaining)

    def stats(self) -> dict:
        now = int(self.clock().timestamp())
        records = self.db.read_records(
            "password_resets.stats", "passwordResetTokens", self._deserialize
        )
        used = sum(1 for record in records if record.used)
        expired = sum(1 for record in records if not record.used and record.expires_at <= now)
        return {
            "total": len(records),
            "active": len(records) - used - expired,
            "used": used,
            "expired": expired,
        }
