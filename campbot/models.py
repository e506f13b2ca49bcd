from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

STATUS_SCHEDULED = "scheduled"
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
LIVE_STATUSES = (STATUS_SCHEDULED, STATUS_ACTIVE)
# one-way lifecycle; anything not listed here is rejected
STATUS_TRANSITIONS = {
    STATUS_SCHEDULED: {STATUS_ACTIVE, STATUS_COMPLETED},
    STATUS_ACTIVE: {STATUS_COMPLETED},
    STATUS_COMPLETED: set(),
}

WORKSHOP_TYPES = ("workshop", "formation", "other")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def elapsed_ms(start: datetime, end: datetime) -> int:
    return int(round((end - start).total_seconds() * 1000))


def _dt(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class Extension:
    added_at: datetime
    additional_minutes: int

    def to_dict(self) -> dict[str, object]:
        return {"added_at": _iso(self.added_at), "additional_minutes": self.additional_minutes}

    @classmethod
    def from_dict(cls, data: dict) -> "Extension":
        return cls(added_at=_dt(data["added_at"]), additional_minutes=int(data["additional_minutes"]))


@dataclass
class Workshop:
    workshop_id: str
    team_name: str
    leader_id: int
    voice_channel_id: int
    type: str
    start_time: datetime
    average_duration: int
    status: str = STATUS_SCHEDULED
    stopped_at: datetime | None = None
    extensions: list[Extension] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def extension_minutes(self) -> int:
        return sum(ext.additional_minutes for ext in self.extensions)

    def planned_end(self) -> datetime:
        return self.start_time + timedelta(minutes=self.average_duration + self.extension_minutes)

    def transition(self, new_status: str) -> None:
        if new_status not in STATUS_TRANSITIONS.get(self.status, set()):
            raise ValueError(f"workshop {self.workshop_id} cannot go from {self.status} to {new_status}")
        self.status = new_status


@dataclass
class VoiceSession:
    join_time: datetime
    leave_time: datetime | None = None
    duration_ms: int = 0

    @property
    def is_open(self) -> bool:
        return self.leave_time is None

    def close(self, now: datetime) -> None:
        self.leave_time = now
        self.duration_ms = elapsed_ms(self.join_time, now)

    def to_dict(self) -> dict[str, object]:
        return {"join_time": _iso(self.join_time), "leave_time": _iso(self.leave_time), "duration_ms": self.duration_ms}

    @classmethod
    def from_dict(cls, data: dict) -> "VoiceSession":
        return cls(_dt(data["join_time"]), _dt(data.get("leave_time")), int(data.get("duration_ms") or 0))


@dataclass
class MicActivity:
    """Interval where the microphone was open."""

    unmuted_at: datetime
    muted_at: datetime | None = None
    duration_ms: int = 0

    @property
    def is_open(self) -> bool:
        return self.muted_at is None

    def close(self, now: datetime) -> None:
        self.muted_at = now
        self.duration_ms = elapsed_ms(self.unmuted_at, now)

    def to_dict(self) -> dict[str, object]:
        return {"unmuted_at": _iso(self.unmuted_at), "muted_at": _iso(self.muted_at), "duration_ms": self.duration_ms}

    @classmethod
    def from_dict(cls, data: dict) -> "MicActivity":
        return cls(_dt(data["unmuted_at"]), _dt(data.get("muted_at")), int(data.get("duration_ms") or 0))


@dataclass
class DeafenActivity:
    deafened_at: datetime
    undeafened_at: datetime | None = None
    duration_ms: int = 0

    @property
    def is_open(self) -> bool:
        return self.undeafened_at is None

    def close(self, now: datetime) -> None:
        self.undeafened_at = now
        self.duration_ms = elapsed_ms(self.deafened_at, now)

    def to_dict(self) -> dict[str, object]:
        return {
            "deafened_at": _iso(self.deafened_at),
            "undeafened_at": _iso(self.undeafened_at),
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeafenActivity":
        return cls(_dt(data["deafened_at"]), _dt(data.get("undeafened_at")), int(data.get("duration_ms") or 0))


def _last_open(entries: list):
    if entries and entries[-1].is_open:
        return entries[-1]
    return None


@dataclass
class Participant:
    workshop_id: str
    discord_id: int
    display_name: str
    team_label: str
    voice_sessions: list[VoiceSession] = field(default_factory=list)
    mic_activity: list[MicActivity] = field(default_factory=list)
    deafen_activity: list[DeafenActivity] = field(default_factory=list)
    voice_chat_message_count: int = 0
    member_chat_message_count: int = 0
    stayed_until_end: bool = False

    def open_voice_session(self) -> VoiceSession | None:
        return _last_open(self.voice_sessions)

    def open_mic(self) -> MicActivity | None:
        return _last_open(self.mic_activity)

    def open_deafen(self) -> DeafenActivity | None:
        return _last_open(self.deafen_activity)

    def open_intervals(self) -> list:
        return [
            entry
            for entry in (*self.voice_sessions, *self.mic_activity, *self.deafen_activity)
            if entry.is_open
        ]

    def total_voice_ms(self) -> int:
        return sum(s.duration_ms for s in self.voice_sessions)

    def total_mic_open_ms(self) -> int:
        return sum(m.duration_ms for m in self.mic_activity)

    def total_deafened_ms(self) -> int:
        return sum(d.duration_ms for d in self.deafen_activity)

    @property
    def join_count(self) -> int:
        return len(self.voice_sessions)

    @property
    def leave_count(self) -> int:
        return sum(1 for s in self.voice_sessions if s.leave_time is not None)


@dataclass
class SessionSummary:
    workshop_id: str
    team_name: str
    leader_id: int
    type: str
    start_time: datetime
    end_time: datetime
    total_duration_ms: int
    total_participants: int
    average_attendance_ms: float
    created_at: datetime = field(default_factory=utc_now)
