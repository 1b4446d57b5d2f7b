"""Errors surfaced synchronously to API callers."""

from __future__ import annotations

from typing import Any


class SchedulingError(Exception):
    """Base class for expected scheduling failures."""

    code = "scheduling_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}

    @property
    def message(self) -> str:
        return self.args[0]


class InvalidScheduleError(SchedulingError):
    """Unknown time zone, malformed time or date, weekday out of range, or a past one-time instant."""

    code = "invalid_schedule"


class LimitExceededError(SchedulingError):
    code = "limit_exceeded"

    def __init__(self, kind: str, limit: int) -> None:
        super().__init__(f"{kind.capitalize()} task limit reached (max {limit})", {"kind": kind, "limit": limit})
        self.kind = kind
        self.limit = limit


class NotFoundError(SchedulingError):
    """Task missing or owned by someone else. The two cases are indistinguishable to callers."""

    code = "not_found"


class InvalidStateError(SchedulingError):
    code = "invalid_state"
