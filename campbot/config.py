import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()  # loads variables from .env into the process environment

# =========================
# CONFIG
# =========================
TOKEN = os.getenv("DISCORD_TOKEN")
DB_PATH = Path(os.getenv("CAMPBOT_DB_PATH", os.path.join("db", "campbot.db")))
EXPORTS_DIR = Path(os.getenv("CAMPBOT_EXPORTS_DIR", "exports"))
LOG_DIR = Path(os.getenv("LOG_DIR", "logs"))
TZ_NAME = os.getenv("CAMPBOT_TZ", "UTC")

DEFAULT_DURATION_MINUTES = 90
DEFAULT_EXTENSION_MINUTES = 30
REMINDER_LEAD_MINUTES = 30
VOICE_READY_TIMEOUT_SECONDS = 30.0
VOICE_DISCONNECT_GRACE_SECONDS = 5.0
RECONNECT_BACKOFF_FLOOR_SECONDS = 5.0
RECONNECT_BACKOFF_CEILING_SECONDS = 120.0

TEAM_LABEL_FIRST = "first-team"
TEAM_LABEL_SECOND = "second-team"
TEAM_LABEL_UNKNOWN = "unknown"


@dataclass(frozen=True)
class TeamConfig:
    name: str
    token: str | None = None
    bot_id: int | None = None
    voice_channel_id: int | None = None
    leader_id: int | None = None
    member_role1_id: int | None = None
    member_role2_id: int | None = None
    leader_chat_channel_id: int | None = None
    general_announcement_id: int | None = None


def _env_int(name: str) -> int | None:
    value = (os.getenv(name) or "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def load_team_from_env(key: str) -> TeamConfig:
    prefix = f"TEAM_{key.strip().upper()}_"
    return TeamConfig(
        name=(os.getenv(prefix + "NAME") or key.strip()).strip(),
        token=(os.getenv(prefix + "TOKEN") or "").strip() or None,
        bot_id=_env_int(prefix + "BOT_ID"),
        voice_channel_id=_env_int(prefix + "VOICE_CHANNEL_ID"),
        leader_id=_env_int(prefix + "LEADER_ID"),
        member_role1_id=_env_int(prefix + "MEMBER_ROLE1_ID"),
        member_role2_id=_env_int(prefix + "MEMBER_ROLE2_ID"),
        leader_chat_channel_id=_env_int(prefix + "LEADER_CHAT_CHANNEL_ID"),
        general_announcement_id=_env_int(prefix + "GENERAL_ANNOUNCEMENT_ID"),
    )


def load_teams() -> list[TeamConfig]:
    keys = [key for key in (os.getenv("CAMPBOT_TEAMS") or "").split(",") if key.strip()]
    return [load_team_from_env(key) for key in keys]


def find_team_by_name(teams: list[TeamConfig], name: str) -> TeamConfig | None:
    wanted = name.strip().lower()
    for team in teams:
        if team.name.lower() == wanted:
            return team
    return None


def find_team_for_leader(teams: list[TeamConfig], user_id: int, role_ids: set[int]) -> TeamConfig | None:
    """Leader ids may be configured as a user id or as a leader role id."""
    for team in teams:
        if team.leader_id is None:
            continue
        if team.leader_id == user_id or team.leader_id in role_ids:
            return team
    return None


def team_label_for_roles(role_ids: set[int], team: TeamConfig) -> str:
    if team.member_role1_id is not None and team.member_role1_id in role_ids:
        return TEAM_LABEL_FIRST
    if team.member_role2_id is not None and team.member_role2_id in role_ids:
        return TEAM_LABEL_SECOND
    return TEAM_LABEL_UNKNOWN
