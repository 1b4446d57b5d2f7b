"""Configuration constants read from the environment with a .env fallback."""

from __future__ import annotations

import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def read_env_file(keys: list[str]) -> dict[str, str]:
    """Parse .env file and return values for requested keys.

    Values are returned, never exported into os.environ, so runner secrets
    stored alongside the engine settings stay out of child processes.
    """
    env_file = Path.cwd() / ".env"
    try:
        content = env_file.read_text()
    except OSError:
        return {}

    result: dict[str, str] = {}
    wanted = set(keys)

    for line in content.splitlines():
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        eq_idx = trimmed.find("=")
        if eq_idx == -1:
            continue
        key = trimmed[:eq_idx].strip()
        if key not in wanted:
            continue
        value = trimmed[eq_idx + 1 :].strip()
        if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
            value = value[1:-1]
        if value:
            result[key] = value

    return result


_ENV_KEYS = [
    "STORE_DIR",
    "JOB_POLL_INTERVAL",
    "TASK_LIMIT_DAILY",
    "TASK_LIMIT_WEEKLY",
    "TASK_LIMIT_TOTAL",
    "HISTORY_KEEP_COUNT",
    "RUNNER_TIMEOUT",
    "NOTIFY_SUMMARY_MAX_CHARS",
    "CHATSCHED_RUNNER",
]
_env_config = read_env_file(_ENV_KEYS)


def _setting(key: str, default: str) -> str:
    return os.environ.get(key) or _env_config.get(key, default)


def _int_setting(key: str, default: int, minimum: int = 0) -> int:
    try:
        value = int(_setting(key, str(default)))
    except ValueError:
        return default
    return max(minimum, value)


# Absolute paths
PROJECT_ROOT: Path = Path.cwd()
STORE_DIR: Path = Path(_setting("STORE_DIR", str(PROJECT_ROOT / "store"))).resolve()
DB_FILENAME: str = "chatsched.db"

JOB_POLL_INTERVAL: float = float(_int_setting("JOB_POLL_INTERVAL", 5, minimum=1))  # seconds

# Per-owner quotas over active tasks
TASK_LIMIT_DAILY: int = _int_setting("TASK_LIMIT_DAILY", 5)
TASK_LIMIT_WEEKLY: int = _int_setting("TASK_LIMIT_WEEKLY", 10)
TASK_LIMIT_TOTAL: int = _int_setting("TASK_LIMIT_TOTAL", 10)

HISTORY_KEEP_COUNT: int = _int_setting("HISTORY_KEEP_COUNT", 30, minimum=1)
HISTORY_DEFAULT_LIMIT: int = 30

RUNNER_TIMEOUT: float = float(_int_setting("RUNNER_TIMEOUT", 600, minimum=1))  # seconds
NOTIFY_SUMMARY_MAX_CHARS: int = _int_setting("NOTIFY_SUMMARY_MAX_CHARS", 2000, minimum=1)

# "package.module:attribute" of the TaskRunner used by `python -m chatsched`
RUNNER_IMPORT_PATH: str = _setting("CHATSCHED_RUNNER", "")


def _resolve_timezone() -> str:
    tz = os.environ.get("TZ", "")
    if not tz:
        tz_file = Path("/etc/timezone")
        try:
            if tz_file.exists():
                tz = tz_file.read_text().strip()
            else:
                # /usr/share/zoneinfo/America/New_York -> America/New_York
                parts = Path("/etc/localtime").resolve().parts
                if "zoneinfo" in parts:
                    tz = "/".join(parts[parts.index("zoneinfo") + 1 :])
        except OSError:
            tz = ""

    if not tz:
        return "UTC"

    try:
        ZoneInfo(tz)
        return tz
    except (ZoneInfoNotFoundError, ValueError):
        return "UTC"


# Fallback zone for callers that do not send one
DEFAULT_TIMEZONE: str = _resolve_timezone()
