import asyncio
import random
from dataclasses import replace

from conftest import FakeClock, TickingClock, member

from campbot.config import TEAM_LABEL_FIRST, TEAM_LABEL_SECOND, TEAM_LABEL_UNKNOWN
from campbot.events import CHAT_MEMBER, CHAT_VOICE, EVENT_JOIN, EVENT_LEAVE, EVENT_MUTE_CHANGED, PresenceEvent
from campbot.ledger import PARTICIPANT_JOINED, PARTICIPANT_LEFT, PresenceLedger
from campbot.report import participant_stats
from campbot.store import WorkshopStore

WORKSHOP_ID = "w-ledger"


def make_ledger(store, team, clock, **kwargs) -> PresenceLedger:
    return PresenceLedger(WORKSHOP_ID, team, store, clock=clock, **kwargs)


class TestJoinAndLeave:
    async def test_ten_minute_visit_records_one_closed_session(self, store, team, clock):
        ledger = make_ledger(store, team, clock)

        await ledger.join(member(1))
        clock.advance(minutes=10)
        await ledger.leave(1)

        participant = await store.get_participant(WORKSHOP_ID, 1)
        assert len(participant.voice_sessions) == 1
        assert participant.voice_sessions[0].duration_ms == 600_000
        assert not ledger.is_tracking(1)

    async def test_join_opens_mic_only_when_unmuted(self, store, team, clock):
        ledger = make_ledger(store, team, clock)

        await ledger.join(member(1, muted=False))
        await ledger.join(member(2, muted=True, deafened=True))

        open_mic = await store.get_participant(WORKSHOP_ID, 1)
        muted = await store.get_participant(WORKSHOP_ID, 2)
        assert open_mic.open_mic() is not None
        assert muted.mic_activity == []
        assert muted.open_deafen() is not None
        assert ledger.tracked_count == 2

    async def test_team_label_is_fixed_at_first_join(self, store, team, clock):
        ledger = make_ledger(store, team, clock)

        await ledger.join(member(1, roles={team.member_role1_id}))
        await ledger.leave(1)
        await ledger.join(member(1, roles={team.member_role2_id}))
        await ledger.join(member(2, roles={team.member_role2_id}))
        await ledger.join(member(3))

        assert (await store.get_participant(WORKSHOP_ID, 1)).team_label == TEAM_LABEL_FIRST
        assert (await store.get_participant(WORKSHOP_ID, 2)).team_label == TEAM_LABEL_SECOND
        assert (await store.get_participant(WORKSHOP_ID, 3)).team_label == TEAM_LABEL_UNKNOWN

    async def test_rejoin_appends_a_new_session(self, store, team, clock):
        ledger = make_ledger(store, team, clock)

        await ledger.join(member(1))
        clock.advance(minutes=1)
        await ledger.leave(1)
        clock.advance(minutes=1)
        await ledger.join(member(1))

        participant = await store.get_participant(WORKSHOP_ID, 1)
        assert participant.join_count == 2
        assert participant.leave_count == 1

    async def test_duplicate_join_keeps_a_single_open_session(self, store, team, clock):
        ledger = make_ledger(store, team, clock)

        await ledger.join(member(1))
        await ledger.join(member(1))

        participant = await store.get_participant(WORKSHOP_ID, 1)
        assert len(participant.voice_sessions) == 1

    async def test_leave_for_untracked_member_is_ignored(self, store, team, clock):
        ledger = make_ledger(store, team, clock)

        await ledger.leave(77)

        assert await store.get_participant(WORKSHOP_ID, 77) is None

    async def test_listener_hears_joins_and_leaves(self, store, team, clock):
        heard = []

        async def listener(kind, workshop_id, discord_id, display_name):
            heard.append((kind, discord_id))

        ledger = make_ledger(store, team, clock, listener=listener)
        await ledger.join(member(5))
        await ledger.leave(5)

        assert heard == [(PARTICIPANT_JOINED, 5), (PARTICIPANT_LEFT, 5)]


class TestMuteAndDeafen:
    async def test_mute_cycle_opens_and_closes_mic_entries(self, store, team, clock):
        ledger = make_ledger(store, team, clock)

        await ledger.join(member(1, muted=True))
        clock.advance(minutes=1)
        await ledger.mute_change(1, False)
        clock.advance(minutes=2)
        await ledger.mute_change(1, True)

        participant = await store.get_participant(WORKSHOP_ID, 1)
        assert len(participant.mic_activity) == 1
        assert participant.mic_activity[0].duration_ms == 120_000

    async def test_repeated_state_is_a_no_op(self, store, team, clock):
        ledger = make_ledger(store, team, clock)

        await ledger.join(member(1, muted=False))
        await ledger.mute_change(1, False)
        await ledger.deafen_change(1, False)

        participant = await store.get_participant(WORKSHOP_ID, 1)
        assert len(participant.mic_activity) == 1
        assert participant.deafen_activity == []

    async def test_deafen_cycle(self, store, team, clock):
        ledger = make_ledger(store, team, clock)

        await ledger.join(member(1))
        await ledger.deafen_change(1, True)
        clock.advance(seconds=30)
        await ledger.deafen_change(1, False)

        participant = await store.get_participant(WORKSHOP_ID, 1)
        assert participant.total_deafened_ms() == 30_000
        assert participant.open_deafen() is None


class TestChatMessages:
    async def test_voice_chat_counts_only_while_connected(self, store, team, clock):
        ledger = make_ledger(store, team, clock)
        await ledger.join(member(1))

        assert await ledger.chat_message(1, CHAT_VOICE)
        await ledger.leave(1)
        assert not await ledger.chat_message(1, CHAT_VOICE)

        participant = await store.get_participant(WORKSHOP_ID, 1)
        assert participant.voice_chat_message_count == 1

    async def test_member_chat_counts_for_known_participants(self, store, team, clock):
        ledger = make_ledger(store, team, clock)
        await ledger.join(member(1))
        await ledger.leave(1)

        assert await ledger.chat_message(1, CHAT_MEMBER)
        assert not await ledger.chat_message(2, CHAT_MEMBER)

        participant = await store.get_participant(WORKSHOP_ID, 1)
        assert participant.member_chat_message_count == 1

    async def test_counts_survive_later_presence_writes(self, store, team, clock):
        ledger = make_ledger(store, team, clock)
        await ledger.join(member(1))
        await ledger.chat_message(1, CHAT_VOICE)
        await ledger.mute_change(1, True)
        await ledger.leave(1)

        participant = await store.get_participant(WORKSHOP_ID, 1)
        assert participant.voice_chat_message_count == 1


class TestScanAndDispatch:
    async def test_scan_synthesizes_joins_and_skips_bots(self, store, team, clock):
        bot_member = replace(member(9), is_bot=True)

        async def provider():
            return [member(1), member(2, muted=True), bot_member]

        ledger = make_ledger(store, team, clock, channel_members=provider)
        joined = await ledger.scan_existing()

        assert joined == 2
        assert ledger.connected_ids() == {1, 2}

    async def test_dispatch_routes_typed_events(self, store, team, clock):
        ledger = make_ledger(store, team, clock)

        await ledger.dispatch(PresenceEvent(discord_id=1, channel_id=1000, kind=EVENT_JOIN, is_muted=False))
        clock.advance(minutes=3)
        await ledger.dispatch(PresenceEvent(discord_id=1, channel_id=1000, kind=EVENT_MUTE_CHANGED, is_muted=True))
        await ledger.dispatch(PresenceEvent(discord_id=1, channel_id=1000, kind=EVENT_LEAVE))

        participant = await store.get_participant(WORKSHOP_ID, 1)
        assert participant.total_mic_open_ms() == 180_000
        assert participant.total_voice_ms() == 180_000


class TestFinalize:
    async def test_stayed_flag_matches_connected_set(self, store, team, clock):
        ledger = make_ledger(store, team, clock)
        await ledger.join(member(1))
        await ledger.join(member(2))
        clock.advance(minutes=5)
        await ledger.leave(2)
        clock.advance(minutes=5)

        await ledger.finalize()

        stayed = await store.get_participant(WORKSHOP_ID, 1)
        left = await store.get_participant(WORKSHOP_ID, 2)
        assert stayed.stayed_until_end is True
        assert left.stayed_until_end is False
        assert stayed.total_voice_ms() == 600_000
        assert ledger.tracked_count == 0

    async def test_every_open_interval_is_closed(self, store, team, clock):
        ledger = make_ledger(store, team, clock)
        await ledger.join(member(1, muted=False, deafened=True))
        await ledger.join(member(2, muted=True))
        await ledger.mute_change(2, False)
        clock.advance(minutes=7)

        participants = await ledger.finalize()

        for participant in participants:
            entries = [*participant.voice_sessions, *participant.mic_activity, *participant.deafen_activity]
            assert entries
            for entry in entries:
                assert not entry.is_open
                assert entry.duration_ms >= 0
        stored = await store.get_participant(WORKSHOP_ID, 1)
        assert stored.open_intervals() == []
        assert stored.voice_sessions[0].leave_time == clock.now

    async def test_open_mic_closes_at_stop_time(self, store, team, clock):
        ledger = make_ledger(store, team, clock)
        await ledger.join(member(1, muted=False))
        clock.advance(minutes=4)
        await ledger.mute_change(1, True)
        await ledger.mute_change(1, False)
        clock.advance(minutes=6)

        await ledger.finalize()

        participant = await store.get_participant(WORKSHOP_ID, 1)
        stats = participant_stats(participant)
        assert stats.total_voice_ms == 600_000
        assert stats.mic_open_ms == 600_000
        assert stats.mic_closed_ms == 0

    async def test_muted_at_stop_leaves_mic_closed_time(self, store, team, clock):
        ledger = make_ledger(store, team, clock)
        await ledger.join(member(1, muted=False))
        clock.advance(minutes=2)
        await ledger.mute_change(1, True)
        clock.advance(minutes=8)

        await ledger.finalize()

        stats = participant_stats(await store.get_participant(WORKSHOP_ID, 1))
        assert stats.mic_open_ms == 120_000
        assert stats.mic_closed_ms == 480_000

    async def test_events_after_finalize_are_ignored(self, store, team, clock):
        ledger = make_ledger(store, team, clock)
        await ledger.finalize()

        await ledger.join(member(1))
        await ledger.chat_message(1, CHAT_MEMBER)

        assert await store.get_participant(WORKSHOP_ID, 1) is None
        assert ledger.tracked_count == 0


class SlowStore(WorkshopStore):
    """Adds random latency to every participant read and write."""

    def __init__(self, path, seed: int):
        super().__init__(path)
        self.rng = random.Random(seed)

    async def get_participant(self, workshop_id, discord_id):
        await asyncio.sleep(self.rng.random() / 500)
        return await super().get_participant(workshop_id, discord_id)

    async def save_participant(self, participant):
        await asyncio.sleep(self.rng.random() / 500)
        await super().save_participant(participant)


class TestConcurrency:
    async def test_interleaved_events_for_one_member_apply_in_order(self, tmp_path, team):
        for seed in range(5):
            slow_store = SlowStore(tmp_path / f"slow-{seed}.db", seed)
            await slow_store.init()
            ledger = PresenceLedger(WORKSHOP_ID, team, slow_store, clock=TickingClock())

            await asyncio.gather(
                ledger.join(member(1, muted=False)),
                ledger.mute_change(1, True),
                ledger.mute_change(1, False),
                ledger.deafen_change(1, True),
                ledger.leave(1),
                ledger.join(member(1, muted=True)),
                ledger.mute_change(1, False),
                ledger.leave(1),
                ledger.join(member(2)),
            )

            participant = await slow_store.get_participant(WORKSHOP_ID, 1)
            assert participant.join_count == 2
            assert participant.leave_count == 2
            assert len(participant.mic_activity) == 3
            assert len(participant.deafen_activity) == 1
            assert participant.open_intervals() == []
            first, second = participant.voice_sessions
            assert first.leave_time <= second.join_time
            assert not ledger.is_tracking(1)
            assert ledger.is_tracking(2)

    async def test_finalize_drains_in_flight_events(self, tmp_path, team):
        slow_store = SlowStore(tmp_path / "drain.db", 11)
        await slow_store.init()
        ledger = PresenceLedger(WORKSHOP_ID, team, slow_store, clock=FakeClock())

        pending = [asyncio.ensure_future(ledger.join(member(n))) for n in range(1, 6)]
        await asyncio.sleep(0)
        participants = await ledger.finalize()
        await asyncio.gather(*pending)

        assert len(participants) == 5
        assert all(p.stayed_until_end for p in participants)
