"""Shared fixtures: a migrated temporary SQLite database, a fake transport and fake Discord objects."""

import asyncio
from datetime import date, datetime, timezone
from types import SimpleNamespace

import discord
import pytest

from pitwall.core.db import base
from pitwall.core.db.migrations import migrate_if_needed
from pitwall.core.scheduler import NotificationTicker, Route, SchedulerCore
from pitwall.domain.errors import SendFailed
from pitwall.persistence import schedule as repo_schedule

UTC = timezone.utc

# Session de référence: dimanche 15 mars 2026 14:00 UTC, weekend démarrant le 14
WEEKEND_START = date(2026, 3, 14)
T = datetime(2026, 3, 15, 14, 0, tzinfo=UTC)
F1_CHANNEL = 1002285400095719524
F1_ROLE = 1033311726889861244


@pytest.fixture
def db(tmp_path):
    base.use_database(str(tmp_path / "pitwall-test.db"))
    migrate_if_needed(base.get_conn())
    yield base.get_conn()
    base.close_conn()


@pytest.fixture
def weekend(db):
    return repo_schedule.create_weekend("Australian Grand Prix", "F1", WEEKEND_START)


@pytest.fixture
def race(weekend):
    return repo_schedule.add_session(weekend.id, "Race", T, 3600, "24h,10m")


class FakeSender:
    """Stand-in for the Discord transport: records sends, can fail or stall on demand."""

    def __init__(self, fail_times: int = 0, delay: float = 0.0):
        self.fail_times = fail_times
        self.delay = delay
        self.sent: list[tuple[int, str]] = []
        self.retracted: list[tuple[str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.retract_error: Exception | None = None

    async def send(self, channel_id, content):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_times > 0:
                self.fail_times -= 1
                raise SendFailed(channel_id, "503 Service Unavailable")
            self.sent.append((channel_id, content))
            return str(900000 + len(self.sent))
        finally:
            self.in_flight -= 1

    async def retract(self, channel_id, message_id):
        if self.retract_error is not None:
            raise self.retract_error
        self.retracted.append((channel_id, message_id))


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def routes():
    return {"F1": Route(F1_CHANNEL, F1_ROLE), "F2": Route(2002)}


@pytest.fixture
def core(db, sender, routes):
    return SchedulerCore(sender.send, sender.retract, routes=routes, max_workers=4, send_timeout=1.0)


@pytest.fixture
async def ticker_cleanup():
    yield
    await NotificationTicker.stop(timeout=2.0)


def http_error(cls, status, reason):
    return cls(SimpleNamespace(status=status, reason=reason), reason)


class FakeMessage:
    def __init__(self, channel, message_id):
        self.channel = channel
        self.id = message_id

    async def edit(self, content):
        if self.channel.edit_error is not None:
            raise self.channel.edit_error
        self.channel.edited.append((self.id, content))

    async def delete(self):
        if self.channel.delete_error is not None:
            raise self.channel.delete_error
        self.channel.deleted.append(self.id)


class FakeChannel:
    """Stand-in for a discord.TextChannel."""

    def __init__(self, send_error=None, delete_error=None, edit_error=None):
        self.send_error = send_error
        self.delete_error = delete_error
        self.edit_error = edit_error
        self.posted = []
        self.edited = []
        self.deleted = []

    async def send(self, content, allowed_mentions=None):
        if self.send_error is not None:
            raise self.send_error
        self.posted.append(content)
        return SimpleNamespace(id=777000 + len(self.posted))

    def get_partial_message(self, message_id):
        return FakeMessage(self, message_id)


class FakeClient:
    def __init__(self, channels):
        self._channels = channels

    def get_channel(self, channel_id):
        return self._channels.get(channel_id)

    async def fetch_channel(self, channel_id):
        raise http_error(discord.NotFound, 404, "Unknown Channel")
