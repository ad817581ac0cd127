"""
Shared utility functions for TimeBar application.
"""

import os
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Tuple

from platformdirs import user_config_dir, user_data_dir

APP_NAME = "TimeBar"

# Remote timestamps are naive UTC strings
REMOTE_DATETIME_FORMAT = '%Y-%m-%d %H:%M:%S'


def get_config_path(relative_path: str = "") -> Path:
    """Get absolute path inside the configuration directory.

    Honors TIMEBAR_CONFIG_DIR, otherwise uses the per-user config directory
    (``~/.config/TimeBar`` on Linux, ``~/Library/Application Support/TimeBar`` on macOS).
    """
    override = os.getenv('TIMEBAR_CONFIG_DIR')
    base_path = Path(override).expanduser() if override else Path(user_config_dir(APP_NAME))
    base_path.mkdir(parents=True, exist_ok=True)
    return base_path / relative_path if relative_path else base_path


def get_data_path(relative_path: str) -> Path:
    """Get absolute path to writable runtime data (logs)"""
    base_path = Path(user_data_dir(APP_NAME))
    base_path.mkdir(parents=True, exist_ok=True)
    return base_path / relative_path


def to_int_optional(value: Any) -> Optional[int]:
    """Convert value to int, return None if invalid"""
    if value is None or value == '' or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def sanitize_url(raw: str) -> str:
    """Trim whitespace and trailing slashes and ensure a scheme"""
    sanitized = (raw or "").strip().strip('/')
    if not sanitized.startswith(('http://', 'https://')):
        sanitized = f"https://{sanitized}"
    return sanitized


def parse_remote_datetime(value: Any) -> Optional[datetime]:
    """Parse a remote UTC timestamp into an aware datetime, None if absent or invalid"""
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value, REMOTE_DATETIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed


def format_remote_datetime(dt: datetime) -> str:
    """Format a datetime the way the remote stores it (naive UTC)"""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(REMOTE_DATETIME_FORMAT)


def parse_many2one(value: Any) -> Optional[Tuple[int, str]]:
    """Parse a remote ``[id, "display name"]`` pair; ``False`` means empty"""
    if not isinstance(value, (list, tuple)) or len(value) < 2:
        return None
    record_id, name = value[0], value[1]
    if isinstance(record_id, bool) or not isinstance(record_id, int) or not isinstance(name, str):
        return None
    return record_id, name


def local_today() -> date:
    """Current calendar date in the local timezone"""
    return datetime.now().date()


def format_date(d: date) -> str:
    """Format date as the remote expects it"""
    return d.isoformat()


def days_ago(days: int, today: Optional[date] = None) -> date:
    return (today or local_today()) - timedelta(days=days)


def format_elapsed(seconds: float) -> str:
    """Format elapsed seconds as H:MM"""
    total = int(max(0, seconds))
    hours = total // 3600
    minutes = (total % 3600) // 60
    return f"{hours}:{minutes:02d}"
