"""Tests for the access-token blacklist."""

import json

import pytest

from micropost.service.errors import DatabaseError
from micropost.storage.blacklist import TokenBlacklistStore, hash_token
from micropost.storage.json_file import JsonFileDatabase
from micropost.storage.models import User


@pytest.fixture
def access_token(codec):
    return codec.issue(User(id=1, name="Ann", email="ann@example.com"))["access_token"]


class TestAdd:
    def test_stores_hash_not_plaintext(self, blacklist_store, access_token, db):
        entry = blacklist_store.add(access_token)

        raw = json.dumps(db.read("test")["tokenBlacklist"])
        assert access_token not in raw
        assert entry.token_hash == hash_token(access_token)
        assert entry.reason == "logout"

    def test_add_is_idempotent(self, blacklist_store, access_token, db):
        first = blacklist_store.add(access_token)
        second = blacklist_store.add(access_token, reason="other")

        assert second.id == first.id
        assert second.reason == "logout"
        assert len(db.read("test")["tokenBlacklist"]) == 1

    def test_expiry_mirrors_token_exp(self, blacklist_store, access_token, codec):
        entry = blacklist_store.add(access_token)
        assert entry.expires_at == codec.verify(access_token)["exp"]

    def test_expiry_defaults_to_a_day_for_opaque_tokens(self, blacklist_store, clock):
        entry = blacklist_store.add("opaque-value")
        assert entry.expires_at == int(clock().timestamp()) + 24 * 3600

    def test_explicit_expiry_wins(self, blacklist_store, access_token):
        assert blacklist_store.add(access_token, expires_at=123).expires_at == 123


class TestLookup:
    def test_is_blacklisted_until_entry_expires(self, blacklist_store, access_token, clock):
        assert blacklist_store.is_blacklisted(access_token) is False
        blacklist_store.add(access_token)
        assert blacklist_store.is_blacklisted(access_token) is True

        clock.advance(hours=1, seconds=1)
        assert blacklist_store.is_blacklisted(access_token) is False
        assert blacklist_store.find_entry(access_token) is not None

    def test_fails_closed_when_store_is_unreadable(self, tmp_path, clock):
        path = tmp_path / "broken.json"
        path.write_text("{oops")
        store = TokenBlacklistStore(JsonFileDatabase(path), clock=clock)

        assert store.is_blacklisted("anything") is True

    def test_malformed_matching_row_counts_as_revoked(self, blacklist_store, access_token, db):
        with db.update("seed") as data:
            data["tokenBlacklist"].append(
                {"id": 99, "tokenHash": hash_token(access_token), "expiresAt": "never"}
            )

        with pytest.raises(DatabaseError):
            blacklist_store.find_entry(access_token)
        assert blacklist_store.is_blacklisted(access_token) is True

    def test_malformed_row_breaks_stats_as_database_error(self, blacklist_store, db):
        with db.update("seed") as data:
            data["tokenBlacklist"].append({"id": 1, "tokenHash": "abc"})

        with pytest.raises(DatabaseError):
            blacklist_store.stats()

    def test_remove(self, blacklist_store, access_token):
        blacklist_store.add(access_token)
        assert blacklist_store.remove(access_token) is True
        assert blacklist_store.is_blacklisted(access_token) is False
        assert blacklist_store.remove(access_token) is False


class TestMaintenance:
    def test_cleanup_and_stats(self, blacklist_store, clock):
        blacklist_store.add("short", expires_at=int(clock().timestamp()) + 10)
        blacklist_store.add("long", reason="password_reset", expires_at=int(clock().timestamp()) + 1000)
        clock.advance(seconds=20)

        stats = blacklist_store.stats()
        assert stats == {
            "total": 2,
            "valid": 1,
            "expired": 1,
            "reasons": {"logout": 1, "password_reset": 1},
        }
        assert blacklist_store.cleanup_expired() == 1
        assert blacklist_store.stats()["total"] == 1
