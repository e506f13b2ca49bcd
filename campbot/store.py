import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from campbot.errors import ConflictError, PersistenceError
from campbot.models import (
    STATUS_ACTIVE,
    DeafenActivity,
    Extension,
    MicActivity,
    Participant,
    SessionSummary,
    VoiceSession,
    Workshop,
    _dt,
    _iso,
)

logger = logging.getLogger("campbot.store")

MESSAGE_COUNT_COLUMNS = {
    "voice": "voice_chat_messages",
    "member": "member_chat_messages",
}


# =========================
# DATABASE HELPERS
# =========================
def _apply_sqlite_pragmas(conn: sqlite3.Connection):
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=10000;")  # ms


def _workshop_from_row(row: sqlite3.Row) -> Workshop:
    return Workshop(
        workshop_id=row["workshop_id"],
        team_name=row["team_name"],
        leader_id=int(row["leader_id"]),
        voice_channel_id=int(row["voice_channel_id"]),
        type=row["type"],
        start_time=_dt(row["start_time_utc"]),
        average_duration=int(row["average_duration"]),
        status=row["status"],
        stopped_at=_dt(row["stopped_at_utc"]),
        extensions=[Extension.from_dict(item) for item in json.loads(row["extensions_json"] or "[]")],
        created_at=_dt(row["created_at_utc"]),
    )


def _participant_from_row(row: sqlite3.Row) -> Participant:
    return Participant(
        workshop_id=row["workshop_id"],
        discord_id=int(row["discord_id"]),
        display_name=row["display_name"],
        team_label=row["team_label"],
        voice_sessions=[VoiceSession.from_dict(item) for item in json.loads(row["voice_sessions_json"])],
        mic_activity=[MicActivity.from_dict(item) for item in json.loads(row["mic_activity_json"])],
        deafen_activity=[DeafenActivity.from_dict(item) for item in json.loads(row["deafen_activity_json"])],
        voice_chat_message_count=int(row["voice_chat_messages"]),
        member_chat_message_count=int(row["member_chat_messages"]),
        stayed_until_end=bool(row["stayed_until_end"]),
    )


def _session_from_row(row: sqlite3.Row) -> SessionSummary:
    return SessionSummary(
        workshop_id=row["workshop_id"],
        team_name=row["team_name"],
        leader_id=int(row["leader_id"]),
        type=row["type"],
        start_time=_dt(row["start_time_utc"]),
        end_time=_dt(row["end_time_utc"]),
        total_duration_ms=int(row["total_duration_ms"]),
        total_participants=int(row["total_participants"]),
        average_attendance_ms=float(row["average_attendance_ms"]),
        created_at=_dt(row["created_at_utc"]),
    )


class WorkshopStore:
    """SQLite-backed Workshop, Participant and Session collections.

    Every write goes through ``write_lock`` so concurrent coroutines never hit
    sqlite's "database is locked".
    """

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self.write_lock = asyncio.Lock()

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self.path, timeout=10)
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot open workshop store at {self.path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            _apply_sqlite_pragmas(conn)
            with conn:
                yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc
        finally:
            conn.close()

    async def init(self):
        async with self.write_lock:
            with self._db() as conn:
                conn.execute("""
                CREATE TABLE IF NOT EXISTS workshops (
                    workshop_id TEXT PRIMARY KEY,
                    team_name TEXT NOT NULL,
                    leader_id INTEGER NOT NULL,
                    voice_channel_id INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    start_time_utc TEXT NOT NULL,
                    average_duration INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'scheduled',
                    stopped_at_utc TEXT,
                    extensions_json TEXT NOT NULL DEFAULT '[]',
                    created_at_utc TEXT NOT NULL
                );
                """)
                # at most one scheduled/active workshop per leader
                conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_workshops_live_leader
                ON workshops(leader_id) WHERE status IN ('scheduled', 'active');
                """)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_workshops_status ON workshops(status);")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_workshops_team ON workshops(team_name, start_time_utc);")
                conn.execute("""
                CREATE TABLE IF NOT EXISTS participants (
                    workshop_id TEXT NOT NULL,
                    discord_id INTEGER NOT NULL,
                    display_name TEXT NOT NULL,
                    team_label TEXT NOT NULL DEFAULT 'unknown',
                    voice_sessions_json TEXT NOT NULL DEFAULT '[]',
                    mic_activity_json TEXT NOT NULL DEFAULT '[]',
                    deafen_activity_json TEXT NOT NULL DEFAULT '[]',
                    voice_chat_messages INTEGER NOT NULL DEFAULT 0,
                    member_chat_messages INTEGER NOT NULL DEFAULT 0,
                    stayed_until_end INTEGER NOT NULL DEFAULT 0,
                    updated_at_utc TEXT NOT NULL,
                    PRIMARY KEY (workshop_id, discord_id)
                );
                """)
                conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    workshop_id TEXT PRIMARY KEY,
                    team_name TEXT NOT NULL,
                    leader_id INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    start_time_utc TEXT NOT NULL,
                    end_time_utc TEXT NOT NULL,
                    total_duration_ms INTEGER NOT NULL DEFAULT 0,
                    total_participants INTEGER NOT NULL DEFAULT 0,
                    average_attendance_ms REAL NOT NULL DEFAULT 0,
                    created_at_utc TEXT NOT NULL
                );
                """)
        logger.info("store_initialized path=%s", self.path)

    # ---- workshops ----
    async def insert_workshop(self, workshop: Workshop):
        async with self.write_lock:
            try:
                with self._db() as conn:
                    conn.execute("""
                        INSERT INTO workshops(
                            workshop_id, team_name, leader_id, voice_channel_id, type,
                            start_time_utc, average_duration, status, stopped_at_utc,
                            extensions_json, created_at_utc
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        workshop.workshop_id, workshop.team_name, workshop.leader_id,
                        workshop.voice_channel_id, workshop.type,
                        _iso(workshop.start_time), workshop.average_duration, workshop.status,
                        _iso(workshop.stopped_at),
                        json.dumps([ext.to_dict() for ext in workshop.extensions]),
                        _iso(workshop.created_at),
                    ))
            except sqlite3.IntegrityError as exc:
                raise ConflictError(
                    f"leader {workshop.leader_id} already has a scheduled or active workshop"
                ) from exc

    async def get_workshop(self, workshop_id: str) -> Workshop | None:
        with self._db() as conn:
            row = conn.execute("SELECT * FROM workshops WHERE workshop_id=?", (workshop_id,)).fetchone()
        return _workshop_from_row(row) if row else None

    async def find_live_workshop_for_leader(self, leader_id: int) -> Workshop | None:
        with self._db() as conn:
            row = conn.execute("""
                SELECT * FROM workshops
                WHERE leader_id=? AND status IN ('scheduled', 'active')
                ORDER BY start_time_utc DESC
                LIMIT 1
            """, (leader_id,)).fetchone()
        return _workshop_from_row(row) if row else None

    async def find_active_workshop_for_leader(self, leader_id: int) -> Workshop | None:
        with self._db() as conn:
            row = conn.execute("""
                SELECT * FROM workshops WHERE leader_id=? AND status='active' LIMIT 1
            """, (leader_id,)).fetchone()
        return _workshop_from_row(row) if row else None

    async def list_workshops(self, statuses: tuple[str, ...]) -> list[Workshop]:
        if not statuses:
            return []
        with self._db() as conn:
            rows = conn.execute(f"""
                SELECT * FROM workshops
                WHERE status IN ({",".join("?" * len(statuses))})
                ORDER BY start_time_utc DESC
            """, statuses).fetchall()
        return [_workshop_from_row(row) for row in rows]

    async def list_team_workshops(self, team_name: str, limit: int = 50) -> list[Workshop]:
        with self._db() as conn:
            rows = conn.execute("""
                SELECT * FROM workshops WHERE team_name=?
                ORDER BY start_time_utc DESC
                LIMIT ?
            """, (team_name, limit)).fetchall()
        return [_workshop_from_row(row) for row in rows]

    async def transition_workshop(
        self,
        workshop_id: str,
        from_statuses: tuple[str, ...],
        to_status: str,
        stopped_at: datetime | None = None,
    ) -> bool:
        """Compare-and-set the status; False when the row was not in ``from_statuses``."""
        async with self.write_lock:
            with self._db() as conn:
                cur = conn.execute(f"""
                    UPDATE workshops
                    SET status=?, stopped_at_utc=COALESCE(?, stopped_at_utc)
                    WHERE workshop_id=? AND status IN ({",".join("?" * len(from_statuses))})
                """, (to_status, _iso(stopped_at), workshop_id, *from_statuses))
                return cur.rowcount > 0

    async def add_extension(self, workshop_id: str, extension: Extension) -> Workshop | None:
        """Append an extension to an active workshop; None once it is no longer active."""
        async with self.write_lock:
            with self._db() as conn:
                row = conn.execute("""
                    SELECT * FROM workshops WHERE workshop_id=? AND status=?
                """, (workshop_id, STATUS_ACTIVE)).fetchone()
                if row is None:
                    return None
                workshop = _workshop_from_row(row)
                workshop.extensions.append(extension)
                conn.execute("""
                    UPDATE workshops SET extensions_json=? WHERE workshop_id=? AND status=?
                """, (json.dumps([ext.to_dict() for ext in workshop.extensions]), workshop_id, STATUS_ACTIVE))
        return workshop

    # ---- participants ----
    async def get_participant(self, workshop_id: str, discord_id: int) -> Participant | None:
        with self._db() as conn:
            row = conn.execute("""
                SELECT * FROM participants WHERE workshop_id=? AND discord_id=?
            """, (workshop_id, discord_id)).fetchone()
        return _participant_from_row(row) if row else None

    async def save_participant(self, participant: Participant):
        # message counters are owned by increment_message_count and never overwritten here
        async with self.write_lock:
            with self._db() as conn:
                conn.execute("""
                    INSERT INTO participants(
                        workshop_id, discord_id, display_name, team_label,
                        voice_sessions_json, mic_activity_json, deafen_activity_json,
                        voice_chat_messages, member_chat_messages, stayed_until_end, updated_at_utc
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
                    ON CONFLICT(workshop_id, discord_id) DO UPDATE SET
                        display_name=excluded.display_name,
                        voice_sessions_json=excluded.voice_sessions_json,
                        mic_activity_json=excluded.mic_activity_json,
                        deafen_activity_json=excluded.deafen_activity_json,
                        stayed_until_end=excluded.stayed_until_end,
                        updated_at_utc=excluded.updated_at_utc
                """, (
                    participant.workshop_id, participant.discord_id,
                    participant.display_name, participant.team_label,
                    json.dumps([s.to_dict() for s in participant.voice_sessions]),
                    json.dumps([m.to_dict() for m in participant.mic_activity]),
                    json.dumps([d.to_dict() for d in participant.deafen_activity]),
                    participant.voice_chat_message_count,
                    participant.member_chat_message_count,
                    int(participant.stayed_until_end),
                ))

    async def list_participants(self, workshop_id: str) -> list[Participant]:
        with self._db() as conn:
            rows = conn.execute("""
                SELECT * FROM participants WHERE workshop_id=? ORDER BY display_name COLLATE NOCASE
            """, (workshop_id,)).fetchall()
        return [_participant_from_row(row) for row in rows]

    async def count_participants(self, workshop_id: str) -> int:
        with self._db() as conn:
            row = conn.execute("""
                SELECT COUNT(*) AS total FROM participants WHERE workshop_id=?
            """, (workshop_id,)).fetchone()
        return int(row["total"])

    async def increment_message_count(self, workshop_id: str, discord_id: int, chat_kind: str) -> bool:
        column = MESSAGE_COUNT_COLUMNS[chat_kind]
        async with self.write_lock:
            with self._db() as conn:
                cur = conn.execute(f"""
                    UPDATE participants SET {column}={column} + 1
                    WHERE workshop_id=? AND discord_id=?
                """, (workshop_id, discord_id))
                return cur.rowcount > 0

    # ---- sessions ----
    async def insert_session(self, summary: SessionSummary):
        async with self.write_lock:
            with self._db() as conn:
                conn.execute("""
                    INSERT INTO sessions(
                        workshop_id, team_name, leader_id, type, start_time_utc, end_time_utc,
                        total_duration_ms, total_participants, average_attendance_ms, created_at_utc
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    summary.workshop_id, summary.team_name, summary.leader_id, summary.type,
                    _iso(summary.start_time), _iso(summary.end_time),
                    summary.total_duration_ms, summary.total_participants,
                    summary.average_attendance_ms, _iso(summary.created_at),
                ))

    async def get_session(self, workshop_id: str) -> SessionSummary | None:
        with self._db() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE workshop_id=?", (workshop_id,)).fetchone()
        return _session_from_row(row) if row else None
