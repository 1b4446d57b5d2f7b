"""Per-owner quotas over active tasks."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel

from chatsched.infrastructure.config import TASK_LIMIT_DAILY, TASK_LIMIT_TOTAL, TASK_LIMIT_WEEKLY
from chatsched.scheduling.errors import LimitExceededError
from chatsched.scheduling.types import QUOTA_TASK_STATUSES, ScheduledTask, ScheduleType


class DenyReason(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    TOTAL = "total"


@dataclass(frozen=True)
class TaskLimits:
    daily: int = TASK_LIMIT_DAILY
    weekly: int = TASK_LIMIT_WEEKLY
    total: int = TASK_LIMIT_TOTAL

    def for_reason(self, reason: DenyReason) -> int:
        return getattr(self, reason.value)


@dataclass(frozen=True)
class ActiveTaskCounts:
    daily: int = 0
    weekly: int = 0
    total: int = 0


class LimitUsage(BaseModel):
    current: int
    limit: int
    remaining: int


class LimitsSummary(BaseModel):
    daily: LimitUsage
    weekly: LimitUsage
    total: LimitUsage


def count_active(tasks: Iterable[ScheduledTask]) -> ActiveTaskCounts:
    """Count tasks that hold a quota slot. Paused and archived tasks do not."""
    daily = weekly = total = 0
    for task in tasks:
        if task.status not in QUOTA_TASK_STATUSES:
            continue
        total += 1
        if task.schedule_type is ScheduleType.DAILY:
            daily += 1
        elif task.schedule_type is ScheduleType.WEEKLY:
            weekly += 1
    return ActiveTaskCounts(daily=daily, weekly=weekly, total=total)


def can_create(
    schedule_type: ScheduleType, counts: ActiveTaskCounts, limits: TaskLimits | None = None
) -> DenyReason | None:
    """Return None when one more task of `schedule_type` fits, else the quota it would break."""
    limits = limits or TaskLimits()
    if schedule_type is ScheduleType.DAILY and counts.daily >= limits.daily:
        return DenyReason.DAILY
    if schedule_type is ScheduleType.WEEKLY and counts.weekly >= limits.weekly:
        return DenyReason.WEEKLY
    if counts.total >= limits.total:
        return DenyReason.TOTAL
    return None


def ensure_can_create(
    schedule_type: ScheduleType, counts: ActiveTaskCounts, limits: TaskLimits | None = None
) -> None:
    limits = limits or TaskLimits()
    reason = can_create(schedule_type, counts, limits)
    if reason is not None:
        raise LimitExceededError(reason.value, limits.for_reason(reason))


def _usage(current: int, limit: int) -> LimitUsage:
    return LimitUsage(current=current, limit=limit, remaining=max(0, limit - current))


def get_limits(counts: ActiveTaskCounts, limits: TaskLimits | None = None) -> LimitsSummary:
    limits = limits or TaskLimits()
    return LimitsSummary(
        daily=_usage(counts.daily, limits.daily),
        weekly=_usage(counts.weekly, limits.weekly),
        total=_usage(counts.total, limits.total),
    )
