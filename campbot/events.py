from dataclasses import dataclass

import discord

from campbot.config import TeamConfig

EVENT_JOIN = "join"
EVENT_LEAVE = "leave"
EVENT_MUTE_CHANGED = "mute_changed"
EVENT_DEAFEN_CHANGED = "deafen_changed"
EVENT_MESSAGE = "message"

CHAT_VOICE = "voice"
CHAT_MEMBER = "member"


@dataclass(frozen=True)
class MemberSnapshot:
    discord_id: int
    display_name: str
    role_ids: frozenset[int] = frozenset()
    is_muted: bool = False
    is_deafened: bool = False
    is_bot: bool = False


@dataclass(frozen=True)
class PresenceEvent:
    """One presence signal for one member, already scoped to a voice channel."""

    discord_id: int
    channel_id: int
    kind: str
    is_muted: bool | None = None
    is_deafened: bool | None = None
    display_name: str | None = None
    role_ids: frozenset[int] = frozenset()
    chat_kind: str | None = None

    def snapshot(self) -> MemberSnapshot:
        return MemberSnapshot(
            discord_id=self.discord_id,
            display_name=self.display_name or str(self.discord_id),
            role_ids=self.role_ids,
            is_muted=bool(self.is_muted),
            is_deafened=bool(self.is_deafened),
        )


def _is_muted(state: discord.VoiceState | None) -> bool:
    return bool(state and (state.self_mute or state.mute))


def _is_deafened(state: discord.VoiceState | None) -> bool:
    return bool(state and (state.self_deaf or state.deaf))


def _channel_id(state: discord.VoiceState | None) -> int | None:
    if state is None or state.channel is None:
        return None
    return state.channel.id


def snapshot_member(member: discord.Member) -> MemberSnapshot:
    voice = getattr(member, "voice", None)
    return MemberSnapshot(
        discord_id=member.id,
        display_name=getattr(member, "display_name", None) or member.name,
        role_ids=frozenset(role.id for role in getattr(member, "roles", [])),
        is_muted=_is_muted(voice),
        is_deafened=_is_deafened(voice),
        is_bot=bool(getattr(member, "bot", False)),
    )


def events_from_voice_state(
    member: discord.Member,
    before: discord.VoiceState,
    after: discord.VoiceState,
    channel_id: int,
) -> list[PresenceEvent]:
    """Translate one gateway voice-state update into events for ``channel_id``."""
    was_in = _channel_id(before) == channel_id
    is_in = _channel_id(after) == channel_id
    if not was_in and is_in:
        snap = snapshot_member(member)
        return [PresenceEvent(
            discord_id=member.id,
            channel_id=channel_id,
            kind=EVENT_JOIN,
            is_muted=_is_muted(after),
            is_deafened=_is_deafened(after),
            display_name=snap.display_name,
            role_ids=snap.role_ids,
        )]
    if was_in and not is_in:
        return [PresenceEvent(discord_id=member.id, channel_id=channel_id, kind=EVENT_LEAVE)]
    if not is_in:
        return []

    events: list[PresenceEvent] = []
    if _is_muted(before) != _is_muted(after):
        events.append(PresenceEvent(
            discord_id=member.id,
            channel_id=channel_id,
            kind=EVENT_MUTE_CHANGED,
            is_muted=_is_muted(after),
        ))
    if _is_deafened(before) != _is_deafened(after):
        events.append(PresenceEvent(
            discord_id=member.id,
            channel_id=channel_id,
            kind=EVENT_DEAFEN_CHANGED,
            is_deafened=_is_deafened(after),
        ))
    return events


def classify_message_channel(channel_id: int, team: TeamConfig) -> str | None:
    # voice channels double as their own text chat
    if team.voice_channel_id is not None and channel_id == team.voice_channel_id:
        return CHAT_VOICE
    if team.leader_chat_channel_id is not None and channel_id == team.leader_chat_channel_id:
        return CHAT_MEMBER
    return None


def message_event(discord_id: int, channel_id: int, chat_kind: str) -> PresenceEvent:
    return PresenceEvent(discord_id=discord_id, channel_id=channel_id, kind=EVENT_MESSAGE, chat_kind=chat_kind)
