import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime

from campbot.config import TeamConfig, team_label_for_roles
from campbot.events import (
    CHAT_MEMBER,
    CHAT_VOICE,
    EVENT_DEAFEN_CHANGED,
    EVENT_JOIN,
    EVENT_LEAVE,
    EVENT_MESSAGE,
    EVENT_MUTE_CHANGED,
    MemberSnapshot,
    PresenceEvent,
)
from campbot.models import DeafenActivity, MicActivity, Participant, VoiceSession, utc_now
from campbot.serial import KeyedSerializer
from campbot.store import WorkshopStore

logger = logging.getLogger("campbot.ledger")

PARTICIPANT_JOINED = "participant_joined"
PARTICIPANT_LEFT = "participant_left"

# (kind, workshop_id, discord_id, display_name)
ParticipantListener = Callable[[str, str, int, str], Awaitable[None] | None]
ChannelMembersProvider = Callable[[], Awaitable[list[MemberSnapshot]]]


@dataclass
class MemberState:
    discord_id: int
    display_name: str
    joined_at: datetime
    is_muted: bool
    is_deafened: bool


class PresenceLedger:
    """Voice presence, mic, deafen and chat activity for one running workshop."""

    def __init__(
        self,
        workshop_id: str,
        team: TeamConfig,
        store: WorkshopStore,
        channel_members: ChannelMembersProvider | None = None,
        listener: ParticipantListener | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.workshop_id = workshop_id
        self.team = team
        self.store = store
        self.channel_members = channel_members
        self.listener = listener
        self.clock = clock
        self.members: dict[int, MemberState] = {}
        self.serializer = KeyedSerializer()
        self.finalized = False

    # ---- queries ----
    def is_tracking(self, discord_id: int) -> bool:
        return discord_id in self.members

    @property
    def tracked_count(self) -> int:
        return len(self.members)

    def connected_ids(self) -> set[int]:
        return set(self.members)

    async def _notify(self, kind: str, discord_id: int, display_name: str):
        if self.listener is None:
            return
        try:
            result = self.listener(kind, self.workshop_id, discord_id, display_name)
            if result is not None:
                await result
        except Exception:
            logger.exception(
                "ledger_listener_failed workshop_id=%s kind=%s discord_id=%s",
                self.workshop_id, kind, discord_id,
            )

    # ---- inputs ----
    async def join(self, member: MemberSnapshot):
        if self.finalized or member.is_bot:
            return
        await self.serializer.run(member.discord_id, lambda: self._join(member))

    async def _join(self, member: MemberSnapshot):
        if self.finalized:
            return
        now = self.clock()
        participant = await self.store.get_participant(self.workshop_id, member.discord_id)
        if participant is None:
            participant = Participant(
                workshop_id=self.workshop_id,
                discord_id=member.discord_id,
                display_name=member.display_name,
                team_label=team_label_for_roles(set(member.role_ids), self.team),
            )
        else:
            participant.display_name = member.display_name

        if participant.open_voice_session() is not None:
            # duplicate join (scan raced a gateway event); keep the session already open
            logger.info(
                "ledger_duplicate_join workshop_id=%s discord_id=%s",
                self.workshop_id, member.discord_id,
            )
        else:
            participant.voice_sessions.append(VoiceSession(join_time=now))
            if not member.is_muted and participant.open_mic() is None:
                participant.mic_activity.append(MicActivity(unmuted_at=now))
            if member.is_deafened and participant.open_deafen() is None:
                participant.deafen_activity.append(DeafenActivity(deafened_at=now))

        await self.store.save_participant(participant)
        self.members[member.discord_id] = MemberState(
            discord_id=member.discord_id,
            display_name=member.display_name,
            joined_at=now,
            is_muted=member.is_muted,
            is_deafened=member.is_deafened,
        )
        logger.info(
            "participant_joined workshop_id=%s discord_id=%s team_label=%s muted=%s deafened=%s",
            self.workshop_id, member.discord_id, participant.team_label, member.is_muted, member.is_deafened,
        )
        await self._notify(PARTICIPANT_JOINED, member.discord_id, member.display_name)

    async def leave(self, discord_id: int):
        if self.finalized:
            return
        await self.serializer.run(discord_id, lambda: self._leave(discord_id))

    async def _leave(self, discord_id: int):
        state = self.members.get(discord_id)
        if state is None or self.finalized:
            return
        now = self.clock()
        participant = await self.store.get_participant(self.workshop_id, discord_id)
        display_name = state.display_name
        if participant is not None:
            for entry in (participant.open_voice_session(), participant.open_mic(), participant.open_deafen()):
                if entry is not None:
                    entry.close(now)
            await self.store.save_participant(participant)
            display_name = participant.display_name
        self.members.pop(discord_id, None)
        logger.info("participant_left workshop_id=%s discord_id=%s", self.workshop_id, discord_id)
        await self._notify(PARTICIPANT_LEFT, discord_id, display_name)

    async def mute_change(self, discord_id: int, is_muted: bool):
        if self.finalized:
            return
        await self.serializer.run(discord_id, lambda: self._mute_change(discord_id, is_muted))

    async def _mute_change(self, discord_id: int, is_muted: bool):
        state = self.members.get(discord_id)
        if state is None or self.finalized or state.is_muted == is_muted:
            return
        now = self.clock()
        participant = await self.store.get_participant(self.workshop_id, discord_id)
        if participant is None:
            return
        if is_muted:
            open_mic = participant.open_mic()
            if open_mic is not None:
                open_mic.close(now)
        else:
            participant.mic_activity.append(MicActivity(unmuted_at=now))
        state.is_muted = is_muted
        await self.store.save_participant(participant)
        logger.debug("mute_changed workshop_id=%s discord_id=%s muted=%s", self.workshop_id, discord_id, is_muted)

    async def deafen_change(self, discord_id: int, is_deafened: bool):
        if self.finalized:
            return
        await self.serializer.run(discord_id, lambda: self._deafen_change(discord_id, is_deafened))

    async def _deafen_change(self, discord_id: int, is_deafened: bool):
        state = self.members.get(discord_id)
        if state is None or self.finalized or state.is_deafened == is_deafened:
            return
        now = self.clock()
        participant = await self.store.get_participant(self.workshop_id, discord_id)
        if participant is None:
            return
        if is_deafened:
            participant.deafen_activity.append(DeafenActivity(deafened_at=now))
        else:
            open_deafen = participant.open_deafen()
            if open_deafen is not None:
                open_deafen.close(now)
        state.is_deafened = is_deafened
        await self.store.save_participant(participant)
        logger.debug(
            "deafen_changed workshop_id=%s discord_id=%s deafened=%s",
            self.workshop_id, discord_id, is_deafened,
        )

    async def chat_message(self, discord_id: int, chat_kind: str) -> bool:
        """Count one message. Voice-chat messages only count while the author is connected."""
        if self.finalized:
            return False
        if chat_kind == CHAT_VOICE and not self.is_tracking(discord_id):
            return False
        if chat_kind not in (CHAT_VOICE, CHAT_MEMBER):
            raise ValueError(f"unknown chat kind {chat_kind!r}")
        return await self.store.increment_message_count(self.workshop_id, discord_id, chat_kind)

    async def dispatch(self, event: PresenceEvent):
        if event.kind == EVENT_JOIN:
            await self.join(event.snapshot())
        elif event.kind == EVENT_LEAVE:
            await self.leave(event.discord_id)
        elif event.kind == EVENT_MUTE_CHANGED:
            await self.mute_change(event.discord_id, bool(event.is_muted))
        elif event.kind == EVENT_DEAFEN_CHANGED:
            await self.deafen_change(event.discord_id, bool(event.is_deafened))
        elif event.kind == EVENT_MESSAGE and event.chat_kind:
            await self.chat_message(event.discord_id, event.chat_kind)
        else:
            logger.warning("ledger_unknown_event workshop_id=%s kind=%s", self.workshop_id, event.kind)

    async def scan_existing(self) -> int:
        """Synthesize joins for members already sitting in the channel."""
        if self.channel_members is None:
            return 0
        try:
            members = await self.channel_members()
        except Exception:
            logger.exception("ledger_scan_failed workshop_id=%s team=%s", self.workshop_id, self.team.name)
            return 0
        joined = 0
        for member in members:
            if member.is_bot:
                continue
            await self.join(member)
            joined += 1
        logger.info("ledger_scan_complete workshop_id=%s members=%s", self.workshop_id, joined)
        return joined

    async def finalize(self) -> list[Participant]:
        await self.serializer.drain()
        self.finalized = True
        stayed = self.connected_ids()
        now = self.clock()
        participants = await self.store.list_participants(self.workshop_id)
        for participant in participants:
            changed = False
            if participant.discord_id in stayed:
                participant.stayed_until_end = True
                changed = True
            for entry in participant.open_intervals():
                entry.close(now)
                changed = True
            if changed:
                await self.store.save_participant(participant)
        self.members.clear()
        logger.info(
            "ledger_finalized workshop_id=%s participants=%s stayed=%s",
            self.workshop_id, len(participants), len(stayed),
        )
        return participants
