import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Seed the environment before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="micropost_test_")
os.environ.setdefault("DB_PATH", os.path.join(_test_tmp_dir, "db.json"))
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("PASSWORD_HASH_COST", "10")
os.environ.setdefault("TOKEN_CLEANUP_INTERVAL_SECONDS", "0")
os.environ.setdefault("SEND_WELCOME_EMAIL", "true")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from micropost.service.auth import LocalAuthService, password_hasher_for_cost  # noqa: E402
from micropost.service.runtime import reset_runtime_for_tests  # noqa: E402
from micropost.service.tokens import TokenCodec, read_unverified_expiry  # noqa: E402
from micropost.storage.blacklist import TokenBlacklistStore  # noqa: E402
from micropost.storage.json_file import JsonFileDatabase  # noqa: E402
from micropost.storage.password_resets import PasswordResetStore  # noqa: E402
from micropost.storage.refresh_tokens import RefreshTokenStore  # noqa: E402
from micropost.storage.users import UserStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """Captures notifications instead of sending mail."""

    def __init__(self) -> None:
        self.sent: list[tuple] = []
        self.fail = False

    def _record(self, *entry) -> bool:
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append(entry)
        return True

    def send_password_reset_email(self, to_email, token, name):
        return self._record("reset", to_email, token, name)

    def send_password_change_confirmation(self, to_email, name):
        return self._record("changed", to_email, name)

    def send_welcome_email(self, to_email, name):
        return self._record("welcome", to_email, name)

    def of_kind(self, kind):
        return [entry for entry in self.sent if entry[0] == kind]


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    monkeypatch.setenv("DB_PATH", str(tmp_path / "runtime-db.json"))
    reset_runtime_for_tests()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    return JsonFileDatabase(tmp_path / "db.json")


@pytest.fixture
def user_store(db, clock):
    return UserStore(db, clock=clock)


@pytest.fixture
def refresh_store(db, clock):
    return RefreshTokenStore(db, clock=clock)


@pytest.fixture
def blacklist_store(db, clock):
    return TokenBlacklistStore(db, clock=clock, expiry_reader=read_unverified_expiry)


@pytest.fixture
def reset_store(db, clock):
    return PasswordResetStore(db, clock=clock)


@pytest.fixture
def codec(clock):
    return TokenCodec(
        TEST_SECRET, issuer="api.example.com", audience="api.example.com", ttl_seconds=3600, clock=clock
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def auth_service(user_store, codec, refresh_store, blacklist_store, reset_store, notifier):
    return LocalAuthService(
        user_store,
        codec,
        refresh_store,
        blacklist_store,
        reset_store,
        notifier=notifier,
        password_hasher=password_hasher_for_cost(10),
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
