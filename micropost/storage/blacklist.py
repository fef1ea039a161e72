from __future__ import annotations

import hashlib
from datetime import timedelta
from typing import Optional

from micropost.logging import get_logger
from micropost.service.errors import DatabaseError
from micropost.storage.json_file import JsonFileDatabase, next_id
from micropost.storage.models import (
    BlacklistEntry,
    Clock,
    parse_datetime,
    serialize_datetime,
    utc_now,
)

# Used when the token's own exp claim cannot be read
DEFAULT_BLACKLIST_TTL = timedelta(hours=24)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenBlacklistStore:
    """Revoked access tokens, stored only as sha256 hashes in ``tokenBlacklist``.

    ``expiry_reader`` maps a raw token to its ``exp`` (epoch seconds) or None;
    the auth wiring passes the token codec's unverified-claims reader.
    """

    def __init__(
        self,
        db: JsonFileDatabase,
        *,
        clock: Clock = utc_now,
        expiry_reader=None,
    ) -> None:
        self.db = db
        self.clock = clock
        self.expiry_reader = expiry_reader
        self.logger = get_logger(__name__)

    @staticmethod
    def _serialize(entry: BlacklistEntry) -> dict:
        return {
            "id": entry.id,
            "tokenHash": entry.token_hash,
            "reason": entry.reason,
            "createdAt": serialize_datetime(entry.created_at),
            "expiresAt": entry.expires_at,
        }

    @staticmethod
    def _deserialize(data: dict) -> BlacklistEntry:
        return BlacklistEntry(
            id=data["id"],
            token_hash=data["tokenHash"],
            reason=data.get("reason", "logout"),
            created_at=parse_datetime(data["createdAt"]),
            expires_at=int(data["expiresAt"]),
        )

    def _derive_expiry(self, token: str) -> int:
        if self.expiry_reader is not None:
            exp = self.expiry_reader(token)
            if exp is not None:
                return int(exp)
        return int((self.clock() + DEFAULT_BLACKLIST_TTL).timestamp())

    def add(
        self, token: str, reason: str = "logout", expires_at: Optional[int] = None
    ) -> BlacklistEntry:
        """Blacklist ``token``; adding the same token again returns the first entry."""
        token_hash = hash_token(token)
        with self.db.update("blacklist.add") as data:
            rows = data["tokenBlacklist"]
            for row in rows:
                if row.get("tokenHash") == token_hash:
                    return self._deserialize(row)
            entry = BlacklistEntry(
                id=next_id(rows),
                token_hash=token_hash,
                reason=reason,
                created_at=self.clock(),
                expires_at=expires_at if expires_at is not None else self._derive_expiry(token),
            )
            rows.append(self._serialize(entry))
        self.logger.info("token_blacklisted", reason=reason, entry_id=entry.id)
        return entry

    def find_entry(self, token: str) -> Optional[BlacklistEntry]:
        token_hash = hash_token(token)
        matches = self.db.read_records(
            "blacklist.find_entry",
            "tokenBlacklist",
            self._deserialize,
            where=lambda row: row.get("tokenHash") == token_hash,
        )
        return matches[0] if matches else None

    def is_blacklisted(self, token: str) -> bool:
        # Fails closed: if the store cannot answer, the token is treated as revoked.
        try:
            entry = self.find_entry(token)
        except DatabaseError as exc:
            self.logger.error(
                "blacklist_check_failed_defaulting_to_revoked",
                operation=exc.operation,
            )
            return True
        return entry is not None and entry.is_active(self.clock())

    def remove(self, token: str) -> bool:
        token_hash = hash_token(token)
        with self.db.update("blacklist.remove") as data:
            rows = data["tokenBlacklist"]
            remaining = [row for row in rows if row.get("tokenHash") != token_hash]
            data["tokenBlacklist"] = remaining
            return len(remaining) != len(rows)

    def cleanup_expired(self) -> int:
        now = int(self.clock().timestamp())
        with self.db.update("blacklist.cleanup_expired") as data:
            rows = data["tokenBlacklist"]
            remaining = [row for row in rows if int(row.get("expiresAt", 0)) > now]
            data["tokenBlacklist"] = remaining
            return len(rows) - len(remaining)

    def stats(self) -> dict:
        now = self.clock()
        entries = self.db.read_records("blacklist.stats", "tokenBlacklist", self._deserialize)
        valid = sum(1 for entry in entries if entry.is_active(now))
        reasons: dict[str, int] = {}
        for entry in entries:
            reasons[entry.reason] = reasons.get(entry.reason, 0) + 1
        return {
            "total": len(entries),
            "valid": valid,
            "expired": len(entries) - valid,
            "reasons": reasons,
        }
