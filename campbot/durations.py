import re
from datetime import datetime, timezone, tzinfo

from campbot.config import DEFAULT_DURATION_MINUTES

DURATION_PRESETS = {
    "1h30": 90,
    "2h": 120,
}
_HOURS_RE = re.compile(r"(\d+)h")
_MINUTES_RE = re.compile(r"(\d+)m")
_BARE_INT_RE = re.compile(r"\s*(\d+)")


def _scan_minutes(text: str) -> int | None:
    hours = _HOURS_RE.search(text)
    minutes = _MINUTES_RE.search(text)
    if hours is None and minutes is None:
        bare = _BARE_INT_RE.match(text)
        return int(bare.group(1)) if bare else None
    total = 0
    if hours is not None:
        total += int(hours.group(1)) * 60
    if minutes is not None:
        total += int(minutes.group(1))
    return total


def parse_duration(value: str) -> int:
    """Convert "1h30", "2h", "45m", "1h15m" or "50" into minutes.

    Unparseable input and a zero total fall back to the 90 minute default.
    """
    text = (value or "").strip().lower()
    if text in DURATION_PRESETS:
        return DURATION_PRESETS[text]
    return _scan_minutes(text) or DEFAULT_DURATION_MINUTES


def parse_duration_strict(value: str) -> int:
    text = (value or "").strip().lower()
    if text in DURATION_PRESETS:
        return DURATION_PRESETS[text]
    minutes = _scan_minutes(text)
    if not minutes:
        raise ValueError(f"Could not read a duration from {value!r}. Use e.g. 45m, 1h or 1h15m.")
    return minutes


def format_duration_ms(ms: float) -> str:
    if ms <= 0:
        return "0s"
    seconds = int(ms // 1000)
    minutes, secs = divmod(seconds, 60)
    hours, mins = divmod(minutes, 60)
    if hours:
        return f"{hours}h {mins}m {secs}s"
    if mins:
        return f"{mins}m {secs}s"
    return f"{secs}s"


def parse_start_time(value: str, tz: tzinfo, now: datetime) -> datetime:
    """Read "now" or a local "YYYY-MM-DD HH:MM" into an aware UTC datetime."""
    text = (value or "").strip().lower()
    if text in ("", "now"):
        return now.astimezone(timezone.utc)
    for fmt in ("%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M"):
        try:
            local = datetime.strptime(text, fmt).replace(tzinfo=tz)
        except ValueError:
            continue
        return local.astimezone(timezone.utc)
    raise ValueError(f"Could not read a start time from {value!r}. Use `now` or `YYYY-MM-DD HH:MM`.")
