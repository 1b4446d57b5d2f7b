"""Task lifecycle manager: the only writer of scheduled task state.

Every operation is one read-modify-write of the task row. Whenever a job is
replaced, the old handle is cancelled before the new one is scheduled, and
handle plus due time are written together, so a task never has more than one
pending job.
"""

from __future__ import annotations

import random
import string
import time
from collections.abc import Callable
from datetime import datetime

from chatsched.infrastructure.logger import logger
from chatsched.scheduling.errors import InvalidScheduleError, InvalidStateError, NotFoundError
from chatsched.scheduling.job_scheduler import JobPayload, JobScheduler
from chatsched.scheduling.limits import (
    ActiveTaskCounts,
    LimitsSummary,
    TaskLimits,
    count_active,
    ensure_can_create,
    get_limits,
)
from chatsched.scheduling.recurrence import compute_next_execution, utc_now, validate_schedule
from chatsched.scheduling.repository import TaskRepository
from chatsched.scheduling.types import (
    SCHEDULE_FIELDS,
    CreateTaskParams,
    ScheduledTask,
    ScheduleType,
    TaskStatus,
    UpdateTaskParams,
)


def _new_task_id() -> str:
    rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=8))
    return f"task-{int(time.time())}-{rand}"


class TaskLifecycleManager:
    def __init__(
        self,
        task_repo: TaskRepository,
        job_scheduler: JobScheduler,
        limits: TaskLimits | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repo = task_repo
        self._jobs = job_scheduler
        self._limits = limits or TaskLimits()
        self._clock = clock

    # --- Owner-facing operations ---

    def create(self, owner_id: str, params: CreateTaskParams) -> ScheduledTask:
        now = self._clock()
        task = ScheduledTask(
            id=_new_task_id(),
            owner_id=owner_id,
            title=params.title,
            prompt=params.prompt,
            schedule_type=params.schedule_type,
            scheduled_time=params.scheduled_time,
            scheduled_date=params.scheduled_date if params.schedule_type is ScheduleType.ONETIME else None,
            time_zone=params.time_zone,
            status=TaskStatus.ACTIVE,
            enabled_tool_slugs=params.enabled_tool_slugs,
            search_enabled=params.search_enabled,
            email_notify=params.email_notify,
            created_at=now,
        )
        next_at = self._activation_time(task, now)
        ensure_can_create(task.schedule_type, self._counts(owner_id), self._limits)

        handle = self._jobs.schedule_at(next_at, JobPayload(task_id=task.id))
        task = task.model_copy(update={"pending_job_handle": handle, "next_execution_at": next_at})
        try:
            self._repo.create_task(task)
        except Exception:
            self._jobs.cancel(handle)
            raise

        logger.info(
            "Task created",
            task_id=task.id,
            owner_id=owner_id,
            schedule_type=task.schedule_type.value,
            next_execution_at=next_at.isoformat(),
        )
        return task

    def get(self, owner_id: str, task_id: str) -> ScheduledTask:
        return self._get_owned(owner_id, task_id)

    def list_tasks(self, owner_id: str) -> list[ScheduledTask]:
        return self._repo.get_tasks_for_owner(owner_id)

    def get_limits(self, owner_id: str) -> LimitsSummary:
        return get_limits(self._counts(owner_id), self._limits)

    def update(self, owner_id: str, task_id: str, params: UpdateTaskParams) -> ScheduledTask:
        task = self._get_owned(owner_id, task_id)

        changes: dict[str, object] = {}
        for name in params.model_fields_set - {"status"}:
            value = getattr(params, name)
            if value is None and name != "scheduled_date":
                continue
            changes[name] = value

        updated = task.model_copy(update=changes)
        if updated.schedule_type is not ScheduleType.ONETIME:
            updated = updated.model_copy(update={"scheduled_date": None})

        schedule_changed = any(getattr(updated, name) != getattr(task, name) for name in SCHEDULE_FIELDS)
        if schedule_changed:
            validate_schedule(updated.schedule_type, updated.scheduled_time, updated.time_zone, updated.scheduled_date)

        now = self._clock()
        if params.status is not None and params.status is not task.status:
            updated = self._transition(updated, params.status, now)
        elif schedule_changed and updated.status in (TaskStatus.ACTIVE, TaskStatus.RUNNING):
            if updated.schedule_type is not task.schedule_type:
                ensure_can_create(updated.schedule_type, self._counts(owner_id, exclude=task.id), self._limits)
            updated = self._replace_job(updated, self._activation_time(updated, now))

        self._repo.save_task(updated)
        logger.info(
            "Task updated",
            task_id=task_id,
            fields=sorted(params.model_fields_set),
            status=updated.status.value,
            rescheduled=updated.pending_job_handle != task.pending_job_handle,
        )
        return updated

    def pause(self, owner_id: str, task_id: str) -> ScheduledTask:
        return self._apply_transition(owner_id, task_id, TaskStatus.PAUSED)

    def resume(self, owner_id: str, task_id: str) -> ScheduledTask:
        return self._apply_transition(owner_id, task_id, TaskStatus.ACTIVE)

    def archive(self, owner_id: str, task_id: str) -> ScheduledTask:
        return self._apply_transition(owner_id, task_id, TaskStatus.ARCHIVED)

    def delete(self, owner_id: str, task_id: str) -> None:
        task = self._get_owned(owner_id, task_id)
        if task.pending_job_handle:
            self._jobs.cancel(task.pending_job_handle)
        self._repo.delete_task(task.id)
        logger.info("Task deleted", task_id=task_id, owner_id=owner_id)

    def trigger_now(self, owner_id: str, task_id: str) -> str:
        """Enqueue an immediate manual run. The recurring schedule and status are left alone."""
        task = self._get_owned(owner_id, task_id)
        handle = self._jobs.schedule_at(self._clock(), JobPayload(task_id=task.id, is_manual_trigger=True))
        logger.info("Manual run enqueued", task_id=task_id, handle=handle)
        return handle

    # --- Coordinator-facing primitives ---

    def load(self, task_id: str) -> ScheduledTask | None:
        return self._repo.get_task_by_id(task_id)

    def mark_running(self, task_id: str, started_at: datetime) -> ScheduledTask | None:
        task = self._repo.get_task_by_id(task_id)
        if task is None or task.status is not TaskStatus.ACTIVE:
            return None
        task = task.model_copy(update={"status": TaskStatus.RUNNING, "last_executed_at": started_at})
        self._repo.save_task(task)
        return task

    def link_conversation(self, task_id: str, conversation_id: str) -> None:
        task = self._repo.get_task_by_id(task_id)
        if task is None:
            return
        self._repo.save_task(task.model_copy(update={"linked_conversation_id": conversation_id}))

    def patch_after_execution(
        self,
        task_id: str,
        *,
        last_executed_at: datetime,
        next_execution_at: datetime | None = None,
        status: TaskStatus | None = None,
    ) -> ScheduledTask | None:
        """Record a finished run: archive, or swap in the next job, and set status."""
        task = self._repo.get_task_by_id(task_id)
        if task is None:
            return None

        task = task.model_copy(update={"last_executed_at": last_executed_at})
        if status is TaskStatus.ARCHIVED:
            task = self._clear_job(task)
        elif next_execution_at is not None:
            task = self._replace_job(task, next_execution_at)
        if status is not None:
            task = task.model_copy(update={"status": status})

        self._repo.save_task(task)
        return task

    def recover_interrupted(self) -> int:
        """Return tasks left `running` by a dead process to a consistent state."""
        now = self._clock()
        recovered = 0
        for task in self._repo.get_tasks_by_status(TaskStatus.RUNNING):
            if not task.is_recurring:
                task = self._clear_job(task).model_copy(update={"status": TaskStatus.ARCHIVED})
            else:
                task = task.model_copy(update={"status": TaskStatus.ACTIVE})
                if task.next_execution_at is None or task.next_execution_at <= now:
                    task = self._replace_job(task, self._activation_time(task, now))
            self._repo.save_task(task)
            recovered += 1
        if recovered:
            logger.warning("Recovered interrupted tasks", count=recovered)
        return recovered

    # --- Internal ---

    def _get_owned(self, owner_id: str, task_id: str) -> ScheduledTask:
        task = self._repo.get_task_by_id(task_id)
        if task is None or task.owner_id != owner_id:
            raise NotFoundError("Scheduled task not found", {"taskId": task_id})
        return task

    def _counts(self, owner_id: str, exclude: str | None = None) -> ActiveTaskCounts:
        return count_active(t for t in self._repo.get_quota_tasks_for_owner(owner_id) if t.id != exclude)

    def _activation_time(self, task: ScheduledTask, now: datetime) -> datetime:
        next_at = compute_next_execution(
            task.schedule_type, task.scheduled_time, task.time_zone, task.scheduled_date, now=now
        )
        if task.schedule_type is ScheduleType.ONETIME and next_at <= now:
            raise InvalidScheduleError(
                "Scheduled time is in the past",
                {"scheduledDate": task.scheduled_date, "scheduledTime": task.scheduled_time},
            )
        return next_at

    def _apply_transition(self, owner_id: str, task_id: str, target: TaskStatus) -> ScheduledTask:
        task = self._get_owned(owner_id, task_id)
        if target is task.status:
            return task
        updated = self._transition(task, target, self._clock())
        self._repo.save_task(updated)
        logger.info("Task status changed", task_id=task_id, previous=task.status.value, status=target.value)
        return updated

    def _transition(self, task: ScheduledTask, target: TaskStatus, now: datetime) -> ScheduledTask:
        current = task.status
        if target is TaskStatus.PAUSED:
            if current is TaskStatus.ARCHIVED:
                raise InvalidStateError("Cannot pause an archived task", {"taskId": task.id})
            return self._clear_job(task).model_copy(update={"status": TaskStatus.PAUSED})

        if target is TaskStatus.ACTIVE:
            if current is TaskStatus.ARCHIVED:
                raise InvalidStateError("Cannot resume an archived task", {"taskId": task.id})
            if current is TaskStatus.RUNNING:
                # Returns to active when the run finishes
                return task
            ensure_can_create(task.schedule_type, self._counts(task.owner_id, exclude=task.id), self._limits)
            task = self._replace_job(task, self._activation_time(task, now))
            return task.model_copy(update={"status": TaskStatus.ACTIVE})

        if target is TaskStatus.ARCHIVED:
            return self._clear_job(task).model_copy(update={"status": TaskStatus.ARCHIVED})

        raise InvalidStateError(f"Cannot set status to {target.value}", {"taskId": task.id})

    def _replace_job(self, task: ScheduledTask, next_at: datetime) -> ScheduledTask:
        if task.pending_job_handle:
            self._jobs.cancel(task.pending_job_handle)
        handle = self._jobs.schedule_at(next_at, JobPayload(task_id=task.id))
        return task.model_copy(update={"pending_job_handle": handle, "next_execution_at": next_at})

    def _clear_job(self, task: ScheduledTask) -> ScheduledTask:
        if task.pending_job_handle:
            self._jobs.cancel(task.pending_job_handle)
        return task.model_copy(update={"pending_job_handle": None, "next_execution_at": None})
