"""Shared test fixtures and configuration.

Sets up fake environment variables so healthbot.config doesn't sys.exit(),
and provides a controllable clock, fake channel providers and temp DBs.
"""

import os

# Patch env vars BEFORE any healthbot imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "123456:fake-token-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "UTC")
os.environ.setdefault("VAPID_PUBLIC_KEY", "")
os.environ.setdefault("VAPID_PRIVATE_KEY", "")

from datetime import datetime, timedelta, timezone

import pytest


class FakeClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeProvider:
    """In-memory ChannelProvider that records what it was asked to do."""

    def __init__(
        self,
        name: str,
        actions: bool = True,
        max_actions: int = 8,
        removal: bool = True,
        enabled: bool = True,
        fail: bool = False,
    ) -> None:
        self.name = name
        self._actions = actions
        self._max_actions = max_actions
        self._removal = removal
        self.enabled = enabled
        self.fail = fail
        self.sent = []       # (user_id, Notification)
        self.removed = []    # handles

    def is_enabled(self) -> bool:
        return self.enabled

    def supports_actions(self) -> bool:
        return self._actions

    def max_actions(self) -> int:
        return self._max_actions

    def supports_removal(self) -> bool:
        return self._removal

    async def send(self, user_id, notification):
        if self.fail:
            raise RuntimeError(f"{self.name} is down")
        self.sent.append((user_id, notification))
        return f"{self.name}-{len(self.sent)}"

    async def remove(self, handle):
        self.removed.append(handle)


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_health.db")


@pytest.fixture
def clock():
    """Clock fixed at Monday 2025-03-10 20:00 UTC."""
    return FakeClock(datetime(2025, 3, 10, 20, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_provider():
    return FakeProvider


@pytest.fixture
def state_db(tmp_db_path):
    from healthbot.data.db import ReminderStateDB
    return ReminderStateDB(db_path=tmp_db_path)


@pytest.fixture
def reading_db(tmp_db_path):
    from healthbot.data.db import ReadingDB
    return ReadingDB(db_path=tmp_db_path)


@pytest.fixture
def settings_db(tmp_db_path):
    from healthbot.data.db import NotificationSettingsDB
    return NotificationSettingsDB(db_path=tmp_db_path)


@pytest.fixture
def subscription_db(tmp_db_path):
    from healthbot.data.db import PushSubscriptionDB
    return PushSubscriptionDB(db_path=tmp_db_path)


@pytest.fixture
def med_db(tmp_db_path):
    from healthbot.data.medication_db import MedicationDB
    return MedicationDB(db_path=tmp_db_path)


@pytest.fixture
def workout_db(tmp_db_path):
    from healthbot.data.workout_db import WorkoutDB
    return WorkoutDB(db_path=tmp_db_path)


@pytest.fixture
def chat_provider():
    """Rich provider: many actions, messages can be deleted."""
    return FakeProvider("chat", max_actions=8, removal=True)


@pytest.fixture
def push_provider():
    """Limited provider: two actions, no removal."""
    return FakeProvider("push", max_actions=2, removal=False)


@pytest.fixture
def dispatcher(settings_db, chat_provider, push_provider):
    from healthbot.core.dispatcher import NotificationDispatcher
    return NotificationDispatcher(settings_db, [chat_provider, push_provider], timeout=1)
