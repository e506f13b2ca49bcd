import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

from campbot.config import (
    DEFAULT_EXTENSION_MINUTES,
    EXPORTS_DIR,
    REMINDER_LEAD_MINUTES,
    TeamConfig,
    find_team_by_name,
)
from campbot.durations import format_duration_ms, parse_duration
from campbot.errors import ConflictError, DeliveryError, NotFoundError, PersistenceError
from campbot.events import MemberSnapshot
from campbot.ledger import ParticipantListener, PresenceLedger
from campbot.models import (
    LIVE_STATUSES,
    STATUS_ACTIVE,
    STATUS_COMPLETED,
    STATUS_SCHEDULED,
    Extension,
    SessionSummary,
    Workshop,
    elapsed_ms,
    utc_now,
)
from campbot.report import ParticipantStats, participant_stats, write_workshop_report
from campbot.store import WorkshopStore

logger = logging.getLogger("campbot.scheduler")

TIMER_ACTIVATION = "activation"
TIMER_REMINDER = "reminder"
TIMER_END = "end"


@dataclass
class WorkshopResult:
    success: bool
    message: str
    workshop_id: str | None = None
    file_path: Path | None = None


class Notifier(Protocol):
    async def send_reminder(self, team: TeamConfig, workshop: Workshop) -> None: ...

    async def send_leader_prompt(self, team: TeamConfig, workshop: Workshop) -> None: ...

    async def send_report(
        self, team: TeamConfig, workshop: Workshop, text: str, path: Path, via_team_bot: bool
    ) -> None: ...

    async def channel_members(self, team: TeamConfig) -> list[MemberSnapshot]: ...


# =========================
# REGISTRY
# =========================
class WorkshopRegistry:
    """Running ledgers and pending timers, keyed by workshop id."""

    def __init__(self):
        self.trackers: dict[str, PresenceLedger] = {}
        self.timers: dict[str, dict[str, asyncio.Task]] = {}

    def add_tracker(self, workshop_id: str, tracker: PresenceLedger):
        self.trackers[workshop_id] = tracker

    def get_tracker(self, workshop_id: str) -> PresenceLedger | None:
        return self.trackers.get(workshop_id)

    def pop_tracker(self, workshop_id: str) -> PresenceLedger | None:
        return self.trackers.pop(workshop_id, None)

    def arm(self, workshop_id: str, kind: str, delay_s: float, callback: Callable[[], Awaitable[object]]) -> asyncio.Task:
        self.cancel(workshop_id, kind)

        async def _fire():
            await asyncio.sleep(max(0.0, delay_s))
            current = self.timers.get(workshop_id, {})
            if current.get(kind) is asyncio.current_task():
                del current[kind]
                if not current:
                    self.timers.pop(workshop_id, None)
            try:
                await callback()
            except Exception:
                logger.exception("timer_failed workshop_id=%s kind=%s", workshop_id, kind)

        task = asyncio.create_task(_fire())
        self.timers.setdefault(workshop_id, {})[kind] = task
        logger.info("timer_armed workshop_id=%s kind=%s delay_s=%.1f", workshop_id, kind, delay_s)
        return task

    def cancel(self, workshop_id: str, kind: str | None = None):
        pending = self.timers.get(workshop_id)
        if not pending:
            return
        kinds = [kind] if kind is not None else list(pending)
        for name in kinds:
            task = pending.pop(name, None)
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                logger.info("timer_cancelled workshop_id=%s kind=%s", workshop_id, name)
        if not pending:
            self.timers.pop(workshop_id, None)

    def pending_timers(self, workshop_id: str) -> list[str]:
        return sorted(self.timers.get(workshop_id, {}))

    def cancel_all(self):
        for workshop_id in list(self.timers):
            self.cancel(workshop_id)


# =========================
# SCHEDULER
# =========================
class WorkshopScheduler:
    def __init__(
        self,
        store: WorkshopStore,
        teams: list[TeamConfig],
        notifier: Notifier,
        registry: WorkshopRegistry | None = None,
        participant_listener: ParticipantListener | None = None,
        exports_dir: Path = EXPORTS_DIR,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.teams = teams
        self.notifier = notifier
        self.registry = registry or WorkshopRegistry()
        self.participant_listener = participant_listener
        self.exports_dir = exports_dir
        self.clock = clock
        self._leader_locks: dict[int, asyncio.Lock] = {}

    def _team(self, workshop: Workshop) -> TeamConfig | None:
        return find_team_by_name(self.teams, workshop.team_name)

    def _delay_until(self, when: datetime) -> float:
        return max(0.0, (when - self.clock()).total_seconds())

    def _arm_start_timers(self, workshop: Workshop, team: TeamConfig):
        self.registry.arm(
            workshop.workshop_id, TIMER_ACTIVATION,
            self._delay_until(workshop.start_time),
            lambda: self.activate(workshop.workshop_id),
        )
        reminder_at = workshop.start_time - timedelta(minutes=REMINDER_LEAD_MINUTES)
        if reminder_at > self.clock() and team.general_announcement_id is not None:
            self.registry.arm(
                workshop.workshop_id, TIMER_REMINDER,
                self._delay_until(reminder_at),
                lambda: self.send_start_reminder(workshop.workshop_id),
            )

    # ---- create ----
    async def create(
        self,
        leader_id: int,
        team: TeamConfig,
        workshop_type: str,
        start_time: datetime,
        duration: str | int,
    ) -> WorkshopResult:
        minutes = duration if isinstance(duration, int) else parse_duration(duration)
        lock = self._leader_locks.setdefault(leader_id, asyncio.Lock())
        async with lock:
            try:
                existing = await self.store.find_live_workshop_for_leader(leader_id)
                if existing is not None:
                    raise ConflictError(
                        f"You already have an active or scheduled workshop (`{existing.workshop_id}`). Stop it first."
                    )
                workshop = Workshop(
                    workshop_id=uuid.uuid4().hex,
                    team_name=team.name,
                    leader_id=leader_id,
                    voice_channel_id=team.voice_channel_id or 0,
                    type=workshop_type,
                    start_time=start_time,
                    average_duration=minutes,
                    created_at=self.clock(),
                )
                await self.store.insert_workshop(workshop)
            except ConflictError as exc:
                logger.info("workshop_create_conflict leader_id=%s team=%s", leader_id, team.name)
                return WorkshopResult(False, str(exc))
            except PersistenceError:
                logger.exception("workshop_create_failed leader_id=%s team=%s", leader_id, team.name)
                return WorkshopResult(False, "Could not save the workshop. Please try again.")

        self._arm_start_timers(workshop, team)
        logger.info(
            "workshop_created workshop_id=%s team=%s leader_id=%s type=%s start=%s duration_min=%s",
            workshop.workshop_id, team.name, leader_id, workshop_type, start_time.isoformat(), minutes,
        )
        return WorkshopResult(
            True,
            f"Workshop ({workshop_type}) for **{team.name}** scheduled at "
            f"<t:{int(start_time.timestamp())}:F> for {minutes} minutes.",
            workshop.workshop_id,
        )

    # ---- timer targets ----
    async def send_start_reminder(self, workshop_id: str):
        workshop = await self.store.get_workshop(workshop_id)
        if workshop is None or workshop.status != STATUS_SCHEDULED:
            logger.info("reminder_skipped workshop_id=%s reason=not_scheduled", workshop_id)
            return
        team = self._team(workshop)
        if team is None:
            logger.error("reminder_skipped workshop_id=%s reason=unknown_team team=%s", workshop_id, workshop.team_name)
            return
        try:
            await self.notifier.send_reminder(team, workshop)
        except DeliveryError as exc:
            logger.warning("reminder_delivery_failed workshop_id=%s error=%s", workshop_id, exc)

    async def activate(self, workshop_id: str) -> bool:
        workshop = await self.store.get_workshop(workshop_id)
        if workshop is None or workshop.status not in LIVE_STATUSES:
            logger.info("activate_skipped workshop_id=%s reason=not_live", workshop_id)
            return False
        if workshop.status == STATUS_ACTIVE and self.registry.get_tracker(workshop_id) is not None:
            return True
        if workshop.status == STATUS_SCHEDULED:
            if not await self.store.transition_workshop(workshop_id, (STATUS_SCHEDULED,), STATUS_ACTIVE):
                logger.info("activate_skipped workshop_id=%s reason=status_changed", workshop_id)
                return False
            workshop.transition(STATUS_ACTIVE)
        team = self._team(workshop)
        if team is None:
            logger.error("activate_failed workshop_id=%s reason=unknown_team team=%s", workshop_id, workshop.team_name)
            return False

        tracker = PresenceLedger(
            workshop_id,
            team,
            self.store,
            channel_members=lambda: self.notifier.channel_members(team),
            listener=self.participant_listener,
            clock=self.clock,
        )
        self.registry.add_tracker(workshop_id, tracker)
        self.registry.cancel(workshop_id, TIMER_ACTIVATION)
        self.registry.cancel(workshop_id, TIMER_REMINDER)
        await tracker.scan_existing()
        if self.registry.get_tracker(workshop_id) is not tracker or tracker.finalized:
            logger.info("activate_aborted workshop_id=%s reason=stopped_during_scan", workshop_id)
            return False
        self.registry.arm(
            workshop_id, TIMER_END,
            self._delay_until(workshop.planned_end()),
            lambda: self.notify_ended(workshop_id),
        )
        logger.info("workshop_activated workshop_id=%s team=%s", workshop_id, team.name)
        return True

    async def notify_ended(self, workshop_id: str):
        workshop = await self.store.get_workshop(workshop_id)
        if workshop is None or workshop.status != STATUS_ACTIVE:
            logger.info("end_notice_skipped workshop_id=%s reason=not_active", workshop_id)
            return
        team = self._team(workshop)
        if team is None:
            return
        try:
            await self.notifier.send_leader_prompt(team, workshop)
            logger.info("end_notice_sent workshop_id=%s team=%s", workshop_id, team.name)
        except DeliveryError as exc:
            logger.warning("end_notice_failed workshop_id=%s error=%s", workshop_id, exc)

    # ---- extend ----
    async def extend(self, workshop_id: str, additional_minutes: int | None = None) -> WorkshopResult:
        minutes = DEFAULT_EXTENSION_MINUTES if additional_minutes is None else additional_minutes
        if minutes <= 0:
            return WorkshopResult(False, "Extension must be at least one minute.", workshop_id)
        try:
            extension = Extension(added_at=self.clock(), additional_minutes=minutes)
            if await self.store.add_extension(workshop_id, extension) is None:
                raise NotFoundError("No active workshop found to extend.")
        except NotFoundError as exc:
            return WorkshopResult(False, str(exc), workshop_id)
        except PersistenceError:
            logger.exception("workshop_extend_failed workshop_id=%s", workshop_id)
            return WorkshopResult(False, "Could not save the extension. Please try again.", workshop_id)

        self.registry.arm(workshop_id, TIMER_END, minutes * 60, lambda: self.notify_ended(workshop_id))
        logger.info("workshop_extended workshop_id=%s minutes=%s", workshop_id, minutes)
        return WorkshopResult(True, f"Workshop extended by {minutes} minutes.", workshop_id)

    async def extend_by_leader(self, leader_id: int, additional_minutes: int | None = None) -> WorkshopResult:
        workshop = await self.store.find_active_workshop_for_leader(leader_id)
        if workshop is None:
            return WorkshopResult(False, "You don't have an active workshop.")
        return await self.extend(workshop.workshop_id, additional_minutes)

    # ---- stop ----
    async def _complete(self, workshop_id: str) -> tuple[Workshop, TeamConfig | None, SessionSummary, list]:
        workshop = await self.store.get_workshop(workshop_id)
        if workshop is None or workshop.status != STATUS_ACTIVE:
            raise NotFoundError("No active workshop found with that id.")
        stopped_at = self.clock()
        if not await self.store.transition_workshop(workshop_id, (STATUS_ACTIVE,), STATUS_COMPLETED, stopped_at):
            raise NotFoundError("That workshop was already stopped.")
        workshop.transition(STATUS_COMPLETED)
        workshop.stopped_at = stopped_at
        self.registry.cancel(workshop_id)

        team = self._team(workshop)
        tracker = self.registry.pop_tracker(workshop_id)
        if tracker is None:
            # no live ledger (e.g. restart); still close whatever was left open
            tracker = PresenceLedger(workshop_id, team or TeamConfig(name=workshop.team_name), self.store, clock=self.clock)
        participants = await tracker.finalize()

        total_voice = sum(p.total_voice_ms() for p in participants)
        summary = SessionSummary(
            workshop_id=workshop_id,
            team_name=workshop.team_name,
            leader_id=workshop.leader_id,
            type=workshop.type,
            start_time=workshop.start_time,
            end_time=stopped_at,
            total_duration_ms=elapsed_ms(workshop.start_time, stopped_at),
            total_participants=len(participants),
            average_attendance_ms=total_voice / len(participants) if participants else 0,
            created_at=stopped_at,
        )
        await self.store.insert_session(summary)
        return workshop, team, summary, participants

    async def _deliver_report(self, team: TeamConfig, workshop: Workshop, text: str, path: Path):
        try:
            await self.notifier.send_report(team, workshop, text, path, via_team_bot=True)
            return
        except DeliveryError as exc:
            logger.warning("report_delivery_failed workshop_id=%s via=team_bot error=%s", workshop.workshop_id, exc)
        try:
            await self.notifier.send_report(team, workshop, text, path, via_team_bot=False)
        except DeliveryError as exc:
            logger.error("report_delivery_failed workshop_id=%s via=main_bot error=%s", workshop.workshop_id, exc)

    async def stop(self, workshop_id: str) -> WorkshopResult:
        try:
            workshop, team, summary, participants = await self._complete(workshop_id)
        except NotFoundError as exc:
            return WorkshopResult(False, str(exc), workshop_id)
        except PersistenceError:
            logger.exception("workshop_stop_failed workshop_id=%s", workshop_id)
            return WorkshopResult(False, "Could not save the workshop results. Please try again.", workshop_id)

        path = None
        try:
            path = await asyncio.to_thread(write_workshop_report, workshop, participants, self.exports_dir)
        except OSError:
            logger.exception("report_write_failed workshop_id=%s", workshop_id)

        message = (
            f"Workshop stopped for **{workshop.team_name}**.\n"
            f"Duration: {format_duration_ms(summary.total_duration_ms)}\n"
            f"Participants: {summary.total_participants}\n"
            f"Average attendance: {format_duration_ms(summary.average_attendance_ms)}"
        )
        if path is not None and team is not None:
            await self._deliver_report(team, workshop, message, path)
        logger.info(
            "workshop_stopped workshop_id=%s team=%s participants=%s duration_ms=%s report=%s",
            workshop_id, workshop.team_name, summary.total_participants, summary.total_duration_ms, path,
        )
        return WorkshopResult(True, message, workshop_id, path)

    async def stop_by_leader(self, leader_id: int) -> WorkshopResult:
        workshop = await self.store.find_active_workshop_for_leader(leader_id)
        if workshop is None:
            return WorkshopResult(False, "You don't have an active workshop.")
        return await self.stop(workshop.workshop_id)

    # ---- queries ----
    def active_trackers(self) -> dict[str, PresenceLedger]:
        return dict(self.registry.trackers)

    def tracker_for(self, workshop_id: str) -> PresenceLedger | None:
        return self.registry.get_tracker(workshop_id)

    def trackers_for_channel(self, channel_id: int) -> list[PresenceLedger]:
        return [t for t in self.registry.trackers.values() if t.team.voice_channel_id == channel_id]

    def trackers_for_team(self, team_name: str) -> list[PresenceLedger]:
        return [t for t in self.registry.trackers.values() if t.team.name == team_name]

    def state(self) -> dict[str, object]:
        return {
            "active_trackers": [
                {"workshop_id": workshop_id, "team": tracker.team.name, "tracked": tracker.tracked_count}
                for workshop_id, tracker in self.registry.trackers.items()
            ],
            "timers": {workshop_id: self.registry.pending_timers(workshop_id) for workshop_id in self.registry.timers},
        }

    async def participant_aggregates(self, workshop_id: str) -> list[ParticipantStats]:
        participants = await self.store.list_participants(workshop_id)
        return [participant_stats(p) for p in participants]

    async def team_workshops(self, team: TeamConfig, limit: int = 25) -> list[Workshop]:
        return await self.store.list_team_workshops(team.name, limit)

    async def export_report(self, workshop_id: str, team: TeamConfig | None) -> WorkshopResult:
        """Regenerate a workshop's spreadsheet; ``team=None`` skips the ownership check."""
        workshop = await self.store.get_workshop(workshop_id)
        if workshop is None:
            return WorkshopResult(False, "No workshop found with that id. Use `/formations` to list yours.", workshop_id)
        if team is not None and find_team_by_name([team], workshop.team_name) is None:
            logger.info("export_denied workshop_id=%s team=%s owner=%s", workshop_id, team.name, workshop.team_name)
            return WorkshopResult(False, "This workshop does not belong to your team.", workshop_id)
        participants = await self.store.list_participants(workshop_id)
        if not participants:
            return WorkshopResult(False, "No participant data found for this workshop.", workshop_id)
        try:
            path = await asyncio.to_thread(write_workshop_report, workshop, participants, self.exports_dir)
        except OSError:
            logger.exception("report_write_failed workshop_id=%s", workshop_id)
            return WorkshopResult(False, "Could not write the report. Please try again.", workshop_id)

        duration = (
            format_duration_ms(elapsed_ms(workshop.start_time, workshop.stopped_at))
            if workshop.stopped_at is not None
            else "N/A"
        )
        extended = f" (including {workshop.extension_minutes}m extensions)" if workshop.extension_minutes else ""
        message = (
            f"Export for **{workshop.team_name}**\n"
            f"Type: **{workshop.type}**\n"
            f"Date: <t:{int(workshop.start_time.timestamp())}:F>\n"
            f"Duration: **{duration}**{extended}\n"
            f"Participants: **{len(participants)}**"
        )
        logger.info("workshop_exported workshop_id=%s participants=%s path=%s", workshop_id, len(participants), path)
        return WorkshopResult(True, message, workshop_id, path)

    # ---- lifecycle ----
    async def resume(self) -> int:
        """Re-arm timers for live workshops found in the store."""
        resumed = 0
        for workshop in await self.store.list_workshops(LIVE_STATUSES):
            team = self._team(workshop)
            if team is None:
                logger.error("resume_skipped workshop_id=%s reason=unknown_team team=%s", workshop.workshop_id, workshop.team_name)
                continue
            if workshop.status == STATUS_SCHEDULED:
                self._arm_start_timers(workshop, team)
            else:
                await self.activate(workshop.workshop_id)
            resumed += 1
        logger.info("scheduler_resumed workshops=%s", resumed)
        return resumed

    def shutdown(self):
        self.registry.cancel_all()
        logger.info("scheduler_shutdown trackers=%s", len(self.registry.trackers))
