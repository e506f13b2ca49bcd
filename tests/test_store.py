from datetime import datetime, timedelta, timezone

import pytest

from campbot.errors import PersistenceError
from campbot.models import (
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    STATUS_SCHEDULED,
    Extension,
    MicActivity,
    Participant,
    SessionSummary,
    VoiceSession,
    Workshop,
)
from campbot.store import WorkshopStore

START = datetime(2026, 3, 14, 18, 0, tzinfo=timezone.utc)


def workshop(workshop_id="w1", leader_id=42) -> Workshop:
    return Workshop(workshop_id, "Alpha", leader_id, 1000, "workshop", START, 90)


async def test_workshop_roundtrip_keeps_extensions(store):
    await store.insert_workshop(workshop())
    await store.transition_workshop("w1", (STATUS_SCHEDULED,), STATUS_ACTIVE)

    extended = await store.add_extension("w1", Extension(added_at=START + timedelta(minutes=90), additional_minutes=30))
    loaded = await store.get_workshop("w1")

    assert extended.extension_minutes == 30
    assert loaded.start_time == START
    assert loaded.extension_minutes == 30
    assert loaded.planned_end() == START + timedelta(minutes=120)


async def test_extensions_only_land_on_active_workshops(store):
    await store.insert_workshop(workshop())
    extension = Extension(added_at=START, additional_minutes=10)

    assert await store.add_extension("w1", extension) is None
    await store.transition_workshop("w1", (STATUS_SCHEDULED,), STATUS_ACTIVE)
    await store.transition_workshop("w1", (STATUS_ACTIVE,), STATUS_COMPLETED, START)
    assert await store.add_extension("w1", extension) is None
    assert await store.add_extension("missing", extension) is None

    assert (await store.get_workshop("w1")).extensions == []


def test_workshop_status_only_moves_forward():
    item = workshop()

    item.transition(STATUS_ACTIVE)
    item.transition(STATUS_COMPLETED)

    with pytest.raises(ValueError):
        item.transition(STATUS_ACTIVE)
    with pytest.raises(ValueError):
        workshop().transition(STATUS_SCHEDULED)


async def test_transition_is_compare_and_set(store):
    await store.insert_workshop(workshop())

    assert await store.transition_workshop("w1", (STATUS_SCHEDULED,), STATUS_ACTIVE)
    assert not await store.transition_workshop("w1", (STATUS_SCHEDULED,), STATUS_ACTIVE)
    assert await store.transition_workshop("w1", (STATUS_ACTIVE,), STATUS_COMPLETED, START)
    assert not await store.transition_workshop("w1", (STATUS_ACTIVE,), STATUS_SCHEDULED)

    loaded = await store.get_workshop("w1")
    assert loaded.status == STATUS_COMPLETED
    assert loaded.stopped_at == START


async def test_completed_workshop_frees_the_leader(store):
    await store.insert_workshop(workshop("w1"))
    await store.transition_workshop("w1", (STATUS_SCHEDULED,), STATUS_COMPLETED, START)

    await store.insert_workshop(workshop("w2"))

    assert (await store.find_live_workshop_for_leader(42)).workshop_id == "w2"
    assert await store.find_active_workshop_for_leader(42) is None


async def test_participant_upsert_and_listing(store):
    participant = Participant("w1", 5, "Bea", "second-team", voice_sessions=[VoiceSession(join_time=START)])
    participant.mic_activity.append(MicActivity(unmuted_at=START))
    await store.save_participant(participant)
    participant.voice_sessions[0].close(START + timedelta(minutes=2))
    await store.save_participant(participant)

    rows = await store.list_participants("w1")

    assert await store.count_participants("w1") == 1
    assert rows[0].voice_sessions[0].duration_ms == 120_000
    assert rows[0].open_mic() is not None


async def test_session_summary_roundtrip(store):
    summary = SessionSummary("w1", "Alpha", 42, "workshop", START, START + timedelta(hours=1), 3_600_000, 0, 0)

    await store.insert_session(summary)

    loaded = await store.get_session("w1")
    assert loaded.total_participants == 0
    assert loaded.end_time == START + timedelta(hours=1)


async def test_unusable_database_raises_persistence_error(tmp_path):
    blocker = tmp_path / "garbage.db"
    blocker.write_text("this is not an sqlite database" * 10)
    broken = WorkshopStore(blocker)

    with pytest.raises(PersistenceError):
        await broken.init()
