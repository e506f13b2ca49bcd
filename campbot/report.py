import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from campbot.config import EXPORTS_DIR, TZ_NAME
from campbot.durations import format_duration_ms
from campbot.models import Participant, Workshop, elapsed_ms, utc_now

logger = logging.getLogger("campbot.report")

HEADER_FILL = PatternFill(start_color="354A5F", end_color="354A5F", fill_type="solid")
HEADER_FONT = Font(color="FFFFFF", bold=True, size=11)
TITLE_FONT = Font(size=16, bold=True)

PARTICIPANT_HEADERS = [
    "Username",
    "Discord ID",
    "Team",
    "Total Voice Time",
    "Join Count",
    "Leave Count",
    "Avg Connected Time",
    "Voice Chat Messages",
    "Member Chat Messages",
    "Mic Open Time",
    "Mic Closed Time",
    "Deafened Time",
    "Undeafened Time",
    "Stayed Until End",
]
PARTICIPANT_WIDTHS = [22, 22, 14, 18, 12, 12, 18, 20, 22, 16, 16, 16, 18, 16]
SESSION_HEADERS = ["Username", "Session #", "Join Time", "Leave Time", "Duration"]
SESSION_WIDTHS = [22, 12, 22, 22, 16]


@dataclass(frozen=True)
class ParticipantStats:
    discord_id: int
    display_name: str
    team_label: str
    total_voice_ms: int
    join_count: int
    leave_count: int
    average_connected_ms: float
    voice_chat_messages: int
    member_chat_messages: int
    mic_open_ms: int
    mic_closed_ms: int
    deafened_ms: int
    undeafened_ms: int
    stayed_until_end: bool


def participant_stats(participant: Participant) -> ParticipantStats:
    total_voice = participant.total_voice_ms()
    mic_open = participant.total_mic_open_ms()
    deafened = participant.total_deafened_ms()
    joins = participant.join_count
    return ParticipantStats(
        discord_id=participant.discord_id,
        display_name=participant.display_name,
        team_label=participant.team_label,
        total_voice_ms=total_voice,
        join_count=joins,
        leave_count=participant.leave_count,
        average_connected_ms=total_voice / joins if joins else 0,
        voice_chat_messages=participant.voice_chat_message_count,
        member_chat_messages=participant.member_chat_message_count,
        mic_open_ms=mic_open,
        mic_closed_ms=max(0, total_voice - mic_open),
        deafened_ms=deafened,
        undeafened_ms=max(0, total_voice - deafened),
        stayed_until_end=participant.stayed_until_end,
    )


def _local(value: datetime | None) -> str:
    if value is None:
        return "N/A"
    return value.astimezone(ZoneInfo(TZ_NAME)).strftime("%Y-%m-%d %H:%M:%S")


def _write_header(ws, headers: list[str], widths: list[int], row: int = 1):
    for col, header in enumerate(headers, 1):
        cell = ws.cell(row=row, column=col, value=header)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
    for col, width in enumerate(widths, 1):
        ws.column_dimensions[get_column_letter(col)].width = width


def build_workbook(workshop: Workshop, participants: list[Participant]) -> Workbook:
    wb = Workbook()

    # Summary
    ws = wb.active
    ws.title = "Summary"
    ws["A1"] = "Workshop Report"
    ws["A1"].font = TITLE_FONT
    actual = (
        format_duration_ms(elapsed_ms(workshop.start_time, workshop.stopped_at))
        if workshop.stopped_at is not None
        else "N/A"
    )
    rows = [
        ("Team", workshop.team_name),
        ("Type", workshop.type),
        ("Start Time", _local(workshop.start_time)),
        ("End Time", _local(workshop.stopped_at)),
        ("Total Duration", actual),
        ("Average Duration (planned)", f"{workshop.average_duration} minutes"),
        ("Extensions", f"{workshop.extension_minutes} minutes"),
        ("Total Participants", len(participants)),
    ]
    for offset, (label, value) in enumerate(rows, 3):
        ws.cell(row=offset, column=1, value=label).font = Font(bold=True)
        ws.cell(row=offset, column=2, value=value)
    ws.column_dimensions["A"].width = 28
    ws.column_dimensions["B"].width = 36

    # Participants
    ws2 = wb.create_sheet("Participants")
    _write_header(ws2, PARTICIPANT_HEADERS, PARTICIPANT_WIDTHS)
    for row, participant in enumerate(participants, 2):
        stats = participant_stats(participant)
        values = [
            stats.display_name,
            str(stats.discord_id),
            stats.team_label,
            format_duration_ms(stats.total_voice_ms),
            stats.join_count,
            stats.leave_count,
            format_duration_ms(stats.average_connected_ms),
            stats.voice_chat_messages,
            stats.member_chat_messages,
            format_duration_ms(stats.mic_open_ms),
            format_duration_ms(stats.mic_closed_ms),
            format_duration_ms(stats.deafened_ms),
            format_duration_ms(stats.undeafened_ms),
            "Yes" if stats.stayed_until_end else "No",
        ]
        for col, value in enumerate(values, 1):
            ws2.cell(row=row, column=col, value=value)

    # Voice Sessions
    ws3 = wb.create_sheet("Voice Sessions")
    _write_header(ws3, SESSION_HEADERS, SESSION_WIDTHS)
    row = 2
    for participant in participants:
        for number, session in enumerate(participant.voice_sessions, 1):
            ws3.cell(row=row, column=1, value=participant.display_name)
            ws3.cell(row=row, column=2, value=number)
            ws3.cell(row=row, column=3, value=_local(session.join_time))
            ws3.cell(row=row, column=4, value=_local(session.leave_time) if session.leave_time else "Still connected")
            ws3.cell(row=row, column=5, value=format_duration_ms(session.duration_ms))
            row += 1

    return wb


def report_filename(workshop: Workshop, now: datetime | None = None) -> str:
    safe_team = re.sub(r"[^A-Za-z0-9_-]+", "_", workshop.team_name).strip("_") or "team"
    stamp = (now or utc_now()).strftime("%Y%m%dT%H%M%SZ")
    return f"workshop_{safe_team}_{stamp}_{workshop.workshop_id[:8]}.xlsx"


def write_workshop_report(
    workshop: Workshop,
    participants: list[Participant],
    exports_dir: Path = EXPORTS_DIR,
) -> Path:
    exports_dir.mkdir(parents=True, exist_ok=True)
    path = exports_dir / report_filename(workshop)
    build_workbook(workshop, participants).save(path)
    logger.info(
        "report_written workshop_id=%s participants=%s path=%s",
        workshop.workshop_id, len(participants), path,
    )
    return path
