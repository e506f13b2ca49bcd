from types import SimpleNamespace

from campbot.config import TeamConfig
from campbot.errors import is_destroyed_connection_crash, is_transient_transport_error
from campbot.events import (
    CHAT_MEMBER,
    CHAT_VOICE,
    EVENT_DEAFEN_CHANGED,
    EVENT_JOIN,
    EVENT_LEAVE,
    EVENT_MUTE_CHANGED,
    classify_message_channel,
    events_from_voice_state,
    snapshot_member,
)

CHANNEL = 1000


def voice(channel_id=None, self_mute=False, mute=False, self_deaf=False, deaf=False):
    channel = SimpleNamespace(id=channel_id) if channel_id is not None else None
    return SimpleNamespace(channel=channel, self_mute=self_mute, mute=mute, self_deaf=self_deaf, deaf=deaf)


def fake_member(voice_state=None, roles=(501,)):
    return SimpleNamespace(
        id=7,
        name="ada",
        display_name="Ada",
        bot=False,
        roles=[SimpleNamespace(id=role) for role in roles],
        voice=voice_state,
    )


class TestVoiceStateTranslation:
    def test_entering_the_channel_is_a_join(self):
        after = voice(CHANNEL, self_mute=True)

        events = events_from_voice_state(fake_member(after), voice(None), after, CHANNEL)

        assert [e.kind for e in events] == [EVENT_JOIN]
        assert events[0].is_muted is True
        assert events[0].role_ids == frozenset({501})
        assert events[0].display_name == "Ada"

    def test_moving_away_is_a_leave(self):
        events = events_from_voice_state(fake_member(), voice(CHANNEL), voice(2222), CHANNEL)

        assert [e.kind for e in events] == [EVENT_LEAVE]

    def test_other_channels_are_ignored(self):
        assert events_from_voice_state(fake_member(), voice(3333), voice(2222), CHANNEL) == []

    def test_server_mute_counts_as_muted(self):
        events = events_from_voice_state(fake_member(), voice(CHANNEL), voice(CHANNEL, mute=True), CHANNEL)

        assert [(e.kind, e.is_muted) for e in events] == [(EVENT_MUTE_CHANGED, True)]

    def test_deafen_and_mute_in_one_update(self):
        before = voice(CHANNEL)
        after = voice(CHANNEL, self_mute=True, self_deaf=True)

        events = events_from_voice_state(fake_member(), before, after, CHANNEL)

        assert [e.kind for e in events] == [EVENT_MUTE_CHANGED, EVENT_DEAFEN_CHANGED]

    def test_switching_self_mute_for_server_mute_is_not_a_change(self):
        events = events_from_voice_state(
            fake_member(), voice(CHANNEL, self_mute=True), voice(CHANNEL, mute=True), CHANNEL
        )

        assert events == []

    def test_snapshot_reads_current_voice_flags(self):
        snap = snapshot_member(fake_member(voice(CHANNEL, deaf=True)))

        assert snap.is_deafened is True
        assert snap.is_muted is False
        assert snap.discord_id == 7


class TestMessageChannels:
    def test_classification(self):
        team = TeamConfig(name="Alpha", voice_channel_id=CHANNEL, leader_chat_channel_id=2000)

        assert classify_message_channel(CHANNEL, team) == CHAT_VOICE
        assert classify_message_channel(2000, team) == CHAT_MEMBER
        assert classify_message_channel(4000, team) is None


class TestErrorClassification:
    def test_transient_transport_errors(self):
        assert is_transient_transport_error(RuntimeError("Socket closed"))
        assert is_transient_transport_error(RuntimeError("IP discovery failed"))
        assert is_transient_transport_error(ConnectionResetError())
        assert not is_transient_transport_error(RuntimeError("Missing Permissions"))

    def test_destroyed_connection_crash(self):
        assert is_destroyed_connection_crash(AttributeError("'NoneType' object has no attribute 'send'"))
        assert not is_destroyed_connection_crash(AttributeError("'VoiceClient' object has no attribute 'x'"))
        assert not is_destroyed_connection_crash(ValueError("'NoneType' object has no attribute 'send'"))
