import asyncio
import logging
import random
import sys
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import discord

from campbot.config import (
    RECONNECT_BACKOFF_CEILING_SECONDS,
    RECONNECT_BACKOFF_FLOOR_SECONDS,
    VOICE_DISCONNECT_GRACE_SECONDS,
    VOICE_READY_TIMEOUT_SECONDS,
    TeamConfig,
)
from campbot.errors import DeliveryError, TransportError, is_transient_transport_error

logger = logging.getLogger("campbot.voice")


# =========================
# BACKOFF
# =========================
@dataclass
class BackoffState:
    backoff_s: float = RECONNECT_BACKOFF_FLOOR_SECONDS
    pending_retry: asyncio.Task | None = None
    manually_disconnected: bool = False
    deactivated: bool = False
    attempts: int = 0

    @property
    def retry_pending(self) -> bool:
        return self.pending_retry is not None and not self.pending_retry.done()

    @property
    def suppressed(self) -> bool:
        return self.manually_disconnected or self.deactivated


def next_backoff(current: float, ceiling: float = RECONNECT_BACKOFF_CEILING_SECONDS) -> float:
    return min(current * 2, ceiling)


def jittered(delay: float, rng: random.Random | None = None) -> float:
    rng = rng or random
    return max(0.0, delay * rng.uniform(0.8, 1.2))


def reset_backoff(state: BackoffState, floor: float = RECONNECT_BACKOFF_FLOOR_SECONDS) -> BackoffState:
    state.backoff_s = floor
    state.attempts = 0
    return state


# =========================
# TRANSPORT
# =========================
class VoiceHandle(Protocol):
    @property
    def channel_id(self) -> int | None: ...

    def is_connected(self) -> bool: ...

    async def wait_ready(self, timeout: float) -> bool: ...

    async def destroy(self) -> None: ...


class VoiceTransport(Protocol):
    async def join(self, channel_id: int) -> VoiceHandle: ...

    async def set_presence(self, invisible: bool) -> None: ...


async def wait_for_voice_client_ready(vc: discord.VoiceClient, timeout_seconds: float = VOICE_READY_TIMEOUT_SECONDS) -> bool:
    """Wait for the voice websocket handshake to finish."""
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        connected = vc.is_connected()
        connected_event = getattr(vc, "_connected", None)
        connected_event_set = (
            connected_event is not None and hasattr(connected_event, "is_set") and connected_event.is_set()
        )

        ws = getattr(vc, "ws", None)
        ws_poll_ready = ws is not None and callable(getattr(ws, "poll_event", None))

        if connected and (ws_poll_ready or connected_event_set):
            return True

        await asyncio.sleep(0.1)
    return False


def describe_voice_client_state(vc: discord.VoiceClient | None) -> str:
    if vc is None:
        return "voice_client=none"
    ws = getattr(vc, "ws", None)
    channel = getattr(vc, "channel", None)
    return (
        f"connected={vc.is_connected()} "
        f"ws={type(ws).__name__ if ws is not None else None} "
        f"channel_id={getattr(channel, 'id', None)}"
    )


class DiscordVoiceHandle:
    def __init__(self, vc: discord.VoiceClient):
        self.vc = vc

    @property
    def channel_id(self) -> int | None:
        return getattr(getattr(self.vc, "channel", None), "id", None)

    def is_connected(self) -> bool:
        return self.vc.is_connected()

    async def wait_ready(self, timeout: float) -> bool:
        return await wait_for_voice_client_ready(self.vc, timeout)

    async def destroy(self):
        try:
            await self.vc.disconnect(force=True)
        except (discord.HTTPException, discord.ClientException) as exc:
            logger.warning("voice_destroy_failed state=%s error=%s", describe_voice_client_state(self.vc), exc)


class DiscordVoiceTransport:
    """Joins a voice channel as one team bot, self-deafened and self-muted."""

    def __init__(self, client: discord.Client, connect_timeout: float = VOICE_READY_TIMEOUT_SECONDS):
        self.client = client
        self.connect_timeout = connect_timeout

    async def _resolve_channel(self, channel_id: int) -> discord.VoiceChannel:
        channel = self.client.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.client.fetch_channel(channel_id)
            except discord.HTTPException as exc:
                raise TransportError(f"cannot fetch voice channel {channel_id}: {exc}") from exc
        if not isinstance(channel, discord.VoiceChannel):
            raise TransportError(f"channel {channel_id} is not a voice channel")
        return channel

    async def join(self, channel_id: int) -> DiscordVoiceHandle:
        channel = await self._resolve_channel(channel_id)
        existing = channel.guild.voice_client
        if existing is not None:
            if existing.is_connected() and getattr(existing.channel, "id", None) == channel_id:
                return DiscordVoiceHandle(existing)
            await DiscordVoiceHandle(existing).destroy()
        try:
            # reconnection is owned by VoiceSupervisor
            vc = await channel.connect(timeout=self.connect_timeout, reconnect=False)
            await channel.guild.change_voice_state(channel=channel, self_mute=True, self_deaf=True)
        except (discord.ClientException, discord.HTTPException, asyncio.TimeoutError) as exc:
            raise TransportError(f"voice join failed channel_id={channel_id}: {exc}") from exc
        return DiscordVoiceHandle(vc)

    async def set_presence(self, invisible: bool):
        status = discord.Status.invisible if invisible else discord.Status.online
        await self.client.change_presence(status=status)


# =========================
# SUPERVISOR
# =========================
class VoiceSupervisor:
    """Keeps one team bot sitting in its voice channel."""

    def __init__(
        self,
        team: TeamConfig,
        transport: VoiceTransport,
        ready_timeout: float = VOICE_READY_TIMEOUT_SECONDS,
        grace_seconds: float = VOICE_DISCONNECT_GRACE_SECONDS,
        floor: float = RECONNECT_BACKOFF_FLOOR_SECONDS,
        ceiling: float = RECONNECT_BACKOFF_CEILING_SECONDS,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if team.voice_channel_id is None:
            raise ValueError(f"team {team.name} has no voice channel configured")
        self.team = team
        self.channel_id = team.voice_channel_id
        self.transport = transport
        self.ready_timeout = ready_timeout
        self.grace_seconds = grace_seconds
        self.floor = floor
        self.ceiling = ceiling
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.state = BackoffState(backoff_s=floor)
        self.handle: VoiceHandle | None = None
        self.last_error: str | None = None
        self._connect_lock = asyncio.Lock()

    def is_connected(self) -> bool:
        return self.handle is not None and self.handle.is_connected() and self.handle.channel_id == self.channel_id

    async def _destroy_handle(self):
        handle, self.handle = self.handle, None
        if handle is None:
            return
        try:
            await handle.destroy()
        except Exception as exc:
            logger.warning("voice_destroy_failed team=%s error=%s", self.team.name, exc)

    async def connect(self) -> bool:
        if self.state.suppressed:
            logger.info(
                "voice_connect_skipped team=%s manual=%s deactivated=%s",
                self.team.name, self.state.manually_disconnected, self.state.deactivated,
            )
            return False
        async with self._connect_lock:
            if self.is_connected():
                return True
            await self._destroy_handle()
            self.state.attempts += 1
            handle = None
            try:
                handle = await self.transport.join(self.channel_id)
                if not await handle.wait_ready(self.ready_timeout):
                    raise TransportError(f"voice not ready after {self.ready_timeout}s")
            except Exception as exc:
                self.last_error = str(exc)
                logger.warning(
                    "voice_connect_failed team=%s channel_id=%s attempt=%s error=%s",
                    self.team.name, self.channel_id, self.state.attempts, exc,
                )
                if handle is not None:
                    try:
                        await handle.destroy()
                    except Exception as destroy_exc:
                        logger.warning("voice_destroy_failed team=%s error=%s", self.team.name, destroy_exc)
                self.schedule_reconnect("connect_failed")
                return False
            if self.state.suppressed:
                # disconnected or deactivated while the join was in flight
                logger.info("voice_connect_discarded team=%s", self.team.name)
                try:
                    await handle.destroy()
                except Exception as exc:
                    logger.warning("voice_destroy_failed team=%s error=%s", self.team.name, exc)
                return False
            self.handle = handle
            self.last_error = None
            reset_backoff(self.state, self.floor)
            logger.info("voice_connected team=%s channel_id=%s", self.team.name, self.channel_id)
            return True

    def schedule_reconnect(self, reason: str) -> bool:
        """Arm a single delayed reconnect; False when suppressed or one is already pending."""
        if self.state.suppressed:
            return False
        if self.state.retry_pending:
            logger.info("voice_retry_already_pending team=%s reason=%s", self.team.name, reason)
            return False
        delay = jittered(self.state.backoff_s, self.rng)
        self.state.backoff_s = next_backoff(self.state.backoff_s, self.ceiling)
        self.state.pending_retry = asyncio.create_task(self._retry_after(delay, reason))
        logger.info(
            "voice_retry_scheduled team=%s reason=%s delay_s=%.1f next_backoff_s=%.1f",
            self.team.name, reason, delay, self.state.backoff_s,
        )
        return True

    async def _retry_after(self, delay: float, reason: str):
        await self.sleep(delay)
        if self.state.pending_retry is asyncio.current_task():
            self.state.pending_retry = None
        logger.info("voice_retry_firing team=%s reason=%s", self.team.name, reason)
        await self.connect()

    def _cancel_retry(self):
        task, self.state.pending_retry = self.state.pending_retry, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def on_disconnected(self):
        if self.state.suppressed:
            return
        # give the transport a chance to heal through its own signalling
        waited = 0.0
        step = 0.5
        while waited < self.grace_seconds:
            if self.handle is not None and self.handle.is_connected():
                logger.info("voice_self_healed team=%s waited_s=%.1f", self.team.name, waited)
                return
            await self.sleep(step)
            waited += step
        if self.is_connected():
            return
        logger.warning("voice_disconnected team=%s", self.team.name)
        await self._destroy_handle()
        self.schedule_reconnect("disconnected")

    async def on_moved(self, channel_id: int | None):
        if channel_id == self.channel_id:
            return
        logger.warning(
            "voice_moved team=%s expected_channel_id=%s actual_channel_id=%s",
            self.team.name, self.channel_id, channel_id,
        )
        if self.state.suppressed:
            return
        await self._destroy_handle()
        self.schedule_reconnect("moved")

    async def on_transport_error(self, exc: BaseException) -> bool:
        self.last_error = str(exc)
        if not is_transient_transport_error(exc):
            logger.error("voice_transport_error team=%s error=%r", self.team.name, exc)
            return False
        logger.warning("voice_transient_error team=%s error=%s", self.team.name, exc)
        if self.state.suppressed:
            return False
        await self._destroy_handle()
        return self.schedule_reconnect("transient_error")

    # ---- manual controls ----
    async def disconnect(self):
        self.state.manually_disconnected = True
        self._cancel_retry()
        await self._destroy_handle()
        logger.info("voice_manual_disconnect team=%s", self.team.name)

    async def reconnect(self) -> bool:
        self.state.manually_disconnected = False
        self._cancel_retry()
        reset_backoff(self.state, self.floor)
        logger.info("voice_manual_reconnect team=%s", self.team.name)
        return await self.connect()

    async def deactivate(self):
        self.state.deactivated = True
        await self.disconnect()
        try:
            await self.transport.set_presence(invisible=True)
        except Exception as exc:
            logger.warning("voice_presence_failed team=%s invisible=true error=%s", self.team.name, exc)
        logger.info("voice_deactivated team=%s", self.team.name)

    async def activate(self) -> bool:
        self.state.deactivated = False
        try:
            await self.transport.set_presence(invisible=False)
        except Exception as exc:
            logger.warning("voice_presence_failed team=%s invisible=false error=%s", self.team.name, exc)
        logger.info("voice_activated team=%s", self.team.name)
        return await self.reconnect()

    def status(self) -> dict[str, object]:
        return {
            "team": self.team.name,
            "channel_id": self.channel_id,
            "connected": self.is_connected(),
            "manually_disconnected": self.state.manually_disconnected,
            "deactivated": self.state.deactivated,
            "retry_pending": self.state.retry_pending,
            "backoff_s": self.state.backoff_s,
            "attempts": self.state.attempts,
            "last_error": self.last_error,
        }

    async def close(self):
        self._cancel_retry()
        await self._destroy_handle()


# =========================
# TEAM BOT POOL
# =========================
def build_team_client() -> discord.Client:
    intents = discord.Intents.none()
    intents.guilds = True
    intents.voice_states = True
    return discord.Client(intents=intents)


class VoiceBotPool:
    """One team bot client and supervisor per configured team."""

    def __init__(
        self,
        teams: list[TeamConfig],
        client_factory: Callable[[], discord.Client] = build_team_client,
    ):
        self.teams = teams
        self.client_factory = client_factory
        self.clients: dict[str, discord.Client] = {}
        self.supervisors: dict[str, VoiceSupervisor] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def _wire_client(self, client: discord.Client, supervisor: VoiceSupervisor):
        @client.event
        async def on_ready():
            logger.info("team_bot_ready team=%s user_id=%s", supervisor.team.name, getattr(client.user, "id", None))
            await supervisor.connect()

        @client.event
        async def on_voice_state_update(member: discord.Member, before: discord.VoiceState, after: discord.VoiceState):
            if client.user is None or member.id != client.user.id:
                return
            if after.channel is None:
                await supervisor.on_disconnected()
            elif after.channel.id != supervisor.channel_id:
                await supervisor.on_moved(after.channel.id)

        @client.event
        async def on_error(event_method: str, *args, **kwargs):
            exc = sys.exc_info()[1]
            if exc is None:
                logger.error("team_bot_error team=%s event=%s", supervisor.team.name, event_method)
                return
            await supervisor.on_transport_error(exc)

    def _log_client_exit(self, team_name: str, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("team_bot_stopped team=%s error=%r", team_name, exc)

    async def start_all(self):
        for team in self.teams:
            if not team.token or team.voice_channel_id is None:
                logger.warning(
                    "team_bot_skipped team=%s has_token=%s voice_channel_id=%s",
                    team.name, bool(team.token), team.voice_channel_id,
                )
                continue
            client = self.client_factory()
            supervisor = VoiceSupervisor(team, DiscordVoiceTransport(client))
            self._wire_client(client, supervisor)
            self.clients[team.name] = client
            self.supervisors[team.name] = supervisor
            task = asyncio.create_task(client.start(team.token))
            task.add_done_callback(lambda t, name=team.name: self._log_client_exit(name, t))
            self._tasks[team.name] = task
            logger.info("team_bot_starting team=%s", team.name)

    def get(self, team_name: str) -> VoiceSupervisor | None:
        return self.supervisors.get(team_name)

    async def send_as_team(
        self,
        team_name: str,
        channel_id: int,
        text: str,
        files: list[Path] | None = None,
    ):
        client = self.clients.get(team_name)
        if client is None or not client.is_ready():
            raise DeliveryError(f"team bot {team_name} is not running")
        try:
            channel = client.get_channel(channel_id) or await client.fetch_channel(channel_id)
            await channel.send(content=text, files=[discord.File(path) for path in files or []])
        except (discord.HTTPException, discord.ClientException, OSError) as exc:
            raise DeliveryError(f"team bot {team_name} could not send to {channel_id}: {exc}") from exc

    def statuses(self) -> list[dict[str, object]]:
        return [supervisor.status() for supervisor in self.supervisors.values()]

    async def close_all(self):
        for team_name, supervisor in self.supervisors.items():
            await supervisor.close()
            client = self.clients.get(team_name)
            if client is not None and not client.is_closed():
                await client.close()
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        self._tasks.clear()
