"""Shared fixtures: a throwaway SQLite store, a controllable clock and fake collaborators."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from campbot.config import TeamConfig
from campbot.errors import DeliveryError, TransportError
from campbot.events import MemberSnapshot
from campbot.scheduler import WorkshopScheduler
from campbot.store import WorkshopStore

T0 = datetime(2026, 3, 14, 18, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class TickingClock(FakeClock):
    """Moves one second forward on every read."""

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now


class FakeNotifier:
    def __init__(self):
        self.reminders = []
        self.prompts = []
        self.reports = []
        self.members: list[MemberSnapshot] = []
        self.fail_team_bot = False
        self.fail_main_bot = False

    async def send_reminder(self, team, workshop):
        self.reminders.append(workshop.workshop_id)

    async def send_leader_prompt(self, team, workshop):
        self.prompts.append(workshop.workshop_id)

    async def send_report(self, team, workshop, text, path, via_team_bot):
        if via_team_bot and self.fail_team_bot:
            raise DeliveryError("team bot offline")
        if not via_team_bot and self.fail_main_bot:
            raise DeliveryError("main bot offline")
        self.reports.append(("team" if via_team_bot else "main", workshop.workshop_id, path))

    async def channel_members(self, team):
        return list(self.members)


class FakeHandle:
    def __init__(self, channel_id: int, ready: bool = True):
        self.channel_id = channel_id
        self.ready = ready
        self.connected = ready
        self.destroyed = False

    def is_connected(self) -> bool:
        return self.connected and not self.destroyed

    async def wait_ready(self, timeout: float) -> bool:
        return self.ready

    async def destroy(self):
        self.destroyed = True
        self.connected = False


class FakeTransport:
    """Fails the first ``failures`` joins, then hands out ready handles."""

    def __init__(self, failures: int = 0, not_ready: int = 0):
        self.failures = failures
        self.not_ready = not_ready
        self.joins = 0
        self.handles: list[FakeHandle] = []
        self.presence: list[bool] = []

    async def join(self, channel_id: int) -> FakeHandle:
        self.joins += 1
        if self.failures > 0:
            self.failures -= 1
            raise TransportError("socket closed")
        ready = self.not_ready <= 0
        self.not_ready -= 1
        handle = FakeHandle(channel_id, ready=ready)
        self.handles.append(handle)
        return handle

    async def set_presence(self, invisible: bool):
        self.presence.append(invisible)


class GatedSleep:
    """Sleep replacement that records delays and blocks until released."""

    def __init__(self):
        self.delays: list[float] = []
        self.gate = asyncio.Event()

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await self.gate.wait()


def member(discord_id: int, name: str = "", muted: bool = False, deafened: bool = False, roles=()) -> MemberSnapshot:
    return MemberSnapshot(
        discord_id=discord_id,
        display_name=name or f"user{discord_id}",
        role_ids=frozenset(roles),
        is_muted=muted,
        is_deafened=deafened,
    )


@pytest.fixture
def team() -> TeamConfig:
    return TeamConfig(
        name="Alpha",
        token="team-token",
        bot_id=900,
        voice_channel_id=1000,
        leader_id=42,
        member_role1_id=501,
        member_role2_id=502,
        leader_chat_channel_id=2000,
        general_announcement_id=3000,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest_asyncio.fixture
async def store(tmp_path) -> WorkshopStore:
    workshop_store = WorkshopStore(tmp_path / "campbot.db")
    await workshop_store.init()
    return workshop_store


@pytest_asyncio.fixture
async def scheduler(store, team, notifier, clock, tmp_path):
    workshop_scheduler = WorkshopScheduler(store, [team], notifier, exports_dir=tmp_path / "exports", clock=clock)
    yield workshop_scheduler
    workshop_scheduler.shutdown()
