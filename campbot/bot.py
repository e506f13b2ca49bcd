import asyncio
import logging
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import discord
from discord.ext import commands

from campbot.config import (
    DB_PATH,
    EXPORTS_DIR,
    TOKEN,
    TZ_NAME,
    TeamConfig,
    find_team_by_name,
    find_team_for_leader,
    load_teams,
)
from campbot.durations import DURATION_PRESETS, format_duration_ms, parse_duration_strict, parse_start_time
from campbot.errors import DeliveryError
from campbot.events import (
    MemberSnapshot,
    classify_message_channel,
    events_from_voice_state,
    message_event,
    snapshot_member,
)
from campbot.logging_setup import configure_logging, register_loop_exception_handler
from campbot.models import LIVE_STATUSES, WORKSHOP_TYPES, Workshop, utc_now
from campbot.scheduler import WorkshopScheduler
from campbot.store import WorkshopStore
from campbot.voice import VoiceBotPool

logger = logging.getLogger("campbot.bot")

CONTINUE_PREFIX = "workshop_continue_"
STOP_PREFIX = "workshop_stop_"
VOICEBOT_ACTIONS = ["status", "disconnect", "reconnect", "deactivate", "activate"]

# =========================
# TIMEZONE
# =========================
try:
    LOCAL_TZ = ZoneInfo(TZ_NAME)
except ZoneInfoNotFoundError as e:
    raise RuntimeError(
        f"ZoneInfo timezone '{TZ_NAME}' not found. On Windows, install tzdata:\n"
        f"  python -m pip install tzdata\n"
        f"Then restart."
    ) from e


def interaction_log_context(interaction: discord.Interaction) -> dict[str, object]:
    return {
        "guild_id": getattr(interaction.guild, "id", None),
        "channel_id": getattr(interaction.channel, "id", None),
        "user_id": getattr(interaction.user, "id", None),
        "interaction": getattr(getattr(interaction, "command", None), "qualified_name", None),
    }


def member_role_ids(user: discord.abc.User) -> set[int]:
    return {role.id for role in getattr(user, "roles", [])}


# =========================
# DELIVERY
# =========================
class DiscordNotifier:
    """Sends scheduler notices through the main bot or a team bot."""

    def __init__(self, bot: discord.Client, pool: VoiceBotPool):
        self.bot = bot
        self.pool = pool

    async def _channel(self, channel_id: int):
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(channel_id)
            except (discord.Forbidden, discord.NotFound, discord.HTTPException) as exc:
                raise DeliveryError(f"cannot fetch channel {channel_id}: {exc}") from exc
        return channel

    async def _send_main(self, channel_id: int | None, text: str, files: list[Path] | None = None, view=None):
        if channel_id is None:
            raise DeliveryError("no channel configured")
        channel = await self._channel(channel_id)
        try:
            await channel.send(content=text, files=[discord.File(path) for path in files or []], view=view)
        except (discord.Forbidden, discord.HTTPException, OSError) as exc:
            raise DeliveryError(f"main bot could not send to {channel_id}: {exc}") from exc

    async def send_reminder(self, team: TeamConfig, workshop: Workshop):
        mention = f"<@&{team.member_role1_id}> " if team.member_role1_id else ""
        await self._send_main(
            team.general_announcement_id,
            f"{mention}Reminder: the **{team.name}** {workshop.type} starts "
            f"<t:{int(workshop.start_time.timestamp())}:R> in <#{team.voice_channel_id}>.",
        )

    async def send_leader_prompt(self, team: TeamConfig, workshop: Workshop):
        text = (
            f"<@{workshop.leader_id}> the planned time for this {workshop.type} is up. "
            "Continue for another 30 minutes or stop and get the report?"
        )
        try:
            await self.pool.send_as_team(team.name, team.leader_chat_channel_id, text)
            text = "Choose an option:"
        except DeliveryError as exc:
            logger.warning("leader_prompt_team_bot_failed team=%s error=%s", team.name, exc)
        await self._send_main(team.leader_chat_channel_id, text, view=WorkshopEndView(workshop.workshop_id))

    async def send_report(self, team: TeamConfig, workshop: Workshop, text: str, path: Path, via_team_bot: bool):
        if team.leader_chat_channel_id is None:
            raise DeliveryError(f"team {team.name} has no leader chat channel")
        if via_team_bot:
            await self.pool.send_as_team(team.name, team.leader_chat_channel_id, text, [path])
        else:
            await self._send_main(team.leader_chat_channel_id, text, [path])

    async def channel_members(self, team: TeamConfig) -> list[MemberSnapshot]:
        if team.voice_channel_id is None:
            return []
        channel = await self._channel(team.voice_channel_id)
        if not isinstance(channel, discord.VoiceChannel):
            return []
        return [snapshot_member(member) for member in channel.members]


class WorkshopEndView(discord.ui.View):
    def __init__(self, workshop_id: str):
        super().__init__(timeout=None)
        self.add_item(discord.ui.Button(
            label="Continue (+30 min)",
            style=discord.ButtonStyle.success,
            custom_id=f"{CONTINUE_PREFIX}{workshop_id}",
        ))
        self.add_item(discord.ui.Button(
            label="Stop workshop",
            style=discord.ButtonStyle.danger,
            custom_id=f"{STOP_PREFIX}{workshop_id}",
        ))


# =========================
# DISCORD SETUP
# =========================
class CampBot(commands.Bot):
    async def close(self):
        scheduler.shutdown()
        await voice_pool.close_all()
        await super().close()


intents = discord.Intents.default()
intents.message_content = True  # needed to count chat messages
intents.voice_states = True  # needed to track voice-channel joins/leaves
intents.members = True  # needed for member roles and display names
bot = CampBot(command_prefix="!", intents=intents)

TEAMS = load_teams()
store = WorkshopStore(DB_PATH)
voice_pool = VoiceBotPool(TEAMS)


async def log_participant_change(kind: str, workshop_id: str, discord_id: int, display_name: str):
    logger.info("%s workshop_id=%s discord_id=%s name=%s", kind, workshop_id, discord_id, display_name)


scheduler = WorkshopScheduler(
    store,
    TEAMS,
    DiscordNotifier(bot, voice_pool),
    participant_listener=log_participant_change,
    exports_dir=EXPORTS_DIR,
)
_startup_done = False


def leader_team(interaction: discord.Interaction) -> TeamConfig | None:
    return find_team_for_leader(TEAMS, interaction.user.id, member_role_ids(interaction.user))


async def reply(interaction: discord.Interaction, text: str, ephemeral: bool = True):
    try:
        if interaction.response.is_done():
            await interaction.followup.send(text, ephemeral=ephemeral)
        else:
            await interaction.response.send_message(text, ephemeral=ephemeral)
    except discord.HTTPException:
        logger.exception("interaction_reply_failed context=%r", interaction_log_context(interaction))


# =========================
# PRESENCE EVENTS
# =========================
@bot.event
async def on_voice_state_update(member: discord.Member, before: discord.VoiceState, after: discord.VoiceState):
    if member.bot or member.guild is None:
        return
    channel_ids = {getattr(before.channel, "id", None), getattr(after.channel, "id", None)} - {None}
    for channel_id in channel_ids:
        for tracker in scheduler.trackers_for_channel(channel_id):
            for event in events_from_voice_state(member, before, after, channel_id):
                try:
                    await tracker.dispatch(event)
                except Exception:
                    logger.exception(
                        "presence_dispatch_failed workshop_id=%s kind=%s user_id=%s",
                        tracker.workshop_id, event.kind, member.id,
                    )


@bot.event
async def on_message(message: discord.Message):
    if message.author.bot:
        return
    for team in TEAMS:
        chat_kind = classify_message_channel(message.channel.id, team)
        if chat_kind is None:
            continue
        for tracker in scheduler.trackers_for_team(team.name):
            try:
                await tracker.dispatch(message_event(message.author.id, message.channel.id, chat_kind))
            except Exception:
                logger.exception("message_count_failed workshop_id=%s user_id=%s", tracker.workshop_id, message.author.id)


@bot.listen("on_interaction")
async def on_workshop_button(interaction: discord.Interaction):
    if interaction.type != discord.InteractionType.component:
        return
    custom_id = (interaction.data or {}).get("custom_id", "")
    if custom_id.startswith(CONTINUE_PREFIX):
        action, workshop_id = "continue", custom_id[len(CONTINUE_PREFIX):]
    elif custom_id.startswith(STOP_PREFIX):
        action, workshop_id = "stop", custom_id[len(STOP_PREFIX):]
    else:
        return
    workshop = await store.get_workshop(workshop_id)
    team = find_team_by_name(TEAMS, workshop.team_name) if workshop else None
    is_leader = workshop is not None and (
        interaction.user.id == workshop.leader_id
        or (team is not None and team.leader_id in member_role_ids(interaction.user))
    )
    if not is_leader:
        await reply(interaction, "Only the workshop leader can use these buttons.")
        return
    await interaction.response.defer(ephemeral=True)
    if action == "continue":
        result = await scheduler.extend(workshop_id)
    else:
        result = await scheduler.stop(workshop_id)
    logger.info(
        "workshop_button action=%s workshop_id=%s success=%s context=%r",
        action, workshop_id, result.success, interaction_log_context(interaction),
    )
    await reply(interaction, result.message)


# =========================
# COMMANDS (slash)
# =========================
@bot.slash_command(name="ann-workshop", description="Schedule a workshop for your team.")
@discord.guild_only()
async def ann_workshop(
    interaction: discord.Interaction,
    workshop_type: discord.Option(str, "Kind of session.", name="type", choices=list(WORKSHOP_TYPES)),
    start_time: discord.Option(str, "`now` or `YYYY-MM-DD HH:MM` (local time).", name="start-time"),
    duration: discord.Option(str, "Planned length.", choices=[*DURATION_PRESETS, "custom"]),
    custom_duration: discord.Option(
        str, "Used when duration is custom, e.g. 45m or 1h15m.", name="custom-duration", required=False, default=None
    ),
):
    team = leader_team(interaction)
    if team is None:
        await reply(interaction, "Only team leaders can schedule workshops.")
        return
    try:
        start = parse_start_time(start_time, LOCAL_TZ, utc_now())
        minutes = parse_duration_strict(custom_duration if duration == "custom" else duration)
    except ValueError as e:
        await reply(interaction, str(e))
        return
    result = await scheduler.create(interaction.user.id, team, workshop_type, start, minutes)
    logger.info(
        "ann_workshop success=%s workshop_id=%s context=%r",
        result.success, result.workshop_id, interaction_log_context(interaction),
    )
    await reply(interaction, result.message, ephemeral=not result.success)


@bot.slash_command(name="stop-workshop", description="Stop your active workshop and get the report.")
@discord.guild_only()
async def stop_workshop(interaction: discord.Interaction):
    if leader_team(interaction) is None:
        await reply(interaction, "Only team leaders can stop workshops.")
        return
    await interaction.response.defer(ephemeral=True)
    result = await scheduler.stop_by_leader(interaction.user.id)
    await reply(interaction, result.message)


@bot.slash_command(name="extend-workshop", description="Add time to your active workshop.")
@discord.guild_only()
async def extend_workshop(
    interaction: discord.Interaction,
    minutes: discord.Option(int, "Extra minutes (default 30).", required=False, default=None, min_value=1),
):
    if leader_team(interaction) is None:
        await reply(interaction, "Only team leaders can extend workshops.")
        return
    result = await scheduler.extend_by_leader(interaction.user.id, minutes)
    await reply(interaction, result.message)


@bot.slash_command(name="formations", description="List the workshops of your team.")
@discord.guild_only()
async def formations(interaction: discord.Interaction):
    team = leader_team(interaction)
    if team is None:
        await reply(interaction, "Only team leaders can list workshops.")
        return
    workshops = await scheduler.team_workshops(team)
    if not workshops:
        await reply(interaction, f"No workshops found for **{team.name}**.")
        return
    lines = [f"**Workshops for {team.name}**"]
    for workshop in workshops:
        duration = f"{workshop.average_duration}m"
        if workshop.extension_minutes:
            duration += f" (+{workshop.extension_minutes}m extended)"
        line = (
            f"`{workshop.workshop_id}` {workshop.type} {workshop.status} "
            f"<t:{int(workshop.start_time.timestamp())}:F> {duration}"
        )
        if workshop.stopped_at is not None:
            line += f" ended <t:{int(workshop.stopped_at.timestamp())}:F>"
        lines.append(line)
    await reply(interaction, "\n".join(lines)[:1900])


@bot.slash_command(name="export", description="Regenerate a workshop report by id.")
@discord.guild_only()
async def export(
    interaction: discord.Interaction,
    workshop_id: discord.Option(str, "Workshop id (see /formations).", name="workshop-id"),
):
    team = leader_team(interaction)
    is_admin = bool(getattr(getattr(interaction.user, "guild_permissions", None), "administrator", False))
    if team is None and not is_admin:
        await reply(interaction, "Only team leaders can export workshops.")
        return
    await interaction.response.defer(ephemeral=True)
    result = await scheduler.export_report(workshop_id.strip(), None if is_admin else team)
    logger.info(
        "export success=%s workshop_id=%s context=%r",
        result.success, result.workshop_id, interaction_log_context(interaction),
    )
    if result.file_path is None:
        await reply(interaction, result.message)
        return
    try:
        await interaction.followup.send(result.message, file=discord.File(result.file_path), ephemeral=True)
    except (discord.HTTPException, OSError):
        logger.exception("export_send_failed context=%r", interaction_log_context(interaction))


@bot.slash_command(name="workshop-state", description="Show live workshops, trackers and voice bots.")
@discord.guild_only()
async def workshop_state(interaction: discord.Interaction):
    live = await store.list_workshops(LIVE_STATUSES)
    state = scheduler.state()
    lines = ["**Workshops**"]
    if not live:
        lines.append("No scheduled or active workshops.")
    for workshop in live:
        tracker = scheduler.tracker_for(workshop.workshop_id)
        timers = ", ".join(state["timers"].get(workshop.workshop_id, [])) or "none"
        lines.append(
            f"`{workshop.workshop_id[:8]}` {workshop.team_name} {workshop.type} {workshop.status} "
            f"start <t:{int(workshop.start_time.timestamp())}:t> "
            f"tracked={tracker.tracked_count if tracker else 0} timers={timers}"
        )
    lines.append("**Voice bots**")
    for status in voice_pool.statuses():
        lines.append(
            f"{status['team']}: connected={status['connected']} manual={status['manually_disconnected']} "
            f"deactivated={status['deactivated']} retry_pending={status['retry_pending']}"
        )
    await reply(interaction, "\n".join(lines)[:1900])


@bot.slash_command(name="workshop-participants", description="Show attendance for a workshop.")
@discord.guild_only()
async def workshop_participants(
    interaction: discord.Interaction,
    workshop_id: discord.Option(str, "Workshop id.", name="workshop-id"),
):
    rows = await scheduler.participant_aggregates(workshop_id.strip())
    if not rows:
        await reply(interaction, "No participants recorded for that workshop.")
        return
    lines = [
        f"**{stats.display_name}** ({stats.team_label}) voice {format_duration_ms(stats.total_voice_ms)}, "
        f"joins {stats.join_count}, mic {format_duration_ms(stats.mic_open_ms)}, "
        f"messages {stats.voice_chat_messages}/{stats.member_chat_messages}"
        f"{', stayed' if stats.stayed_until_end else ''}"
        for stats in rows
    ]
    await reply(interaction, "\n".join(lines)[:1900])


@bot.slash_command(name="voicebot", description="Control a team voice bot.")
@discord.default_permissions(administrator=True)
@discord.guild_only()
async def voicebot(
    interaction: discord.Interaction,
    action: discord.Option(str, "What to do.", choices=VOICEBOT_ACTIONS),
    team_name: discord.Option(str, "Team name.", name="team"),
):
    supervisor = voice_pool.get(team_name.strip())
    if supervisor is None:
        await reply(interaction, f"No voice bot is running for team `{team_name}`.")
        return
    await interaction.response.defer(ephemeral=True)
    if action == "disconnect":
        await supervisor.disconnect()
    elif action == "reconnect":
        await supervisor.reconnect()
    elif action == "deactivate":
        await supervisor.deactivate()
    elif action == "activate":
        await supervisor.activate()
    status = supervisor.status()
    logger.info("voicebot_command action=%s team=%s context=%r", action, team_name, interaction_log_context(interaction))
    await reply(
        interaction,
        f"{status['team']}: connected={status['connected']} manual={status['manually_disconnected']} "
        f"deactivated={status['deactivated']} last_error={status['last_error']}",
    )


# =========================
# STARTUP
# =========================
@bot.event
async def on_ready():
    global _startup_done
    register_loop_exception_handler(asyncio.get_running_loop())
    if not _startup_done:
        _startup_done = True
        await store.init()
        await voice_pool.start_all()
        await scheduler.resume()
    try:
        await bot.sync_commands()
    except (discord.HTTPException, discord.Forbidden):
        pass
    logger.info("bot_ready user=%s user_id=%s teams=%s", bot.user, bot.user.id, len(TEAMS))


def run():
    configure_logging()
    if not TOKEN:
        raise RuntimeError("Set DISCORD_TOKEN in the environment or .env file.")
    logger.info("bot_starting teams=%s started_at=%s", [team.name for team in TEAMS], datetime.now(LOCAL_TZ).isoformat())
    bot.run(TOKEN)
