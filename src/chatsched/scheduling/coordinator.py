"""Execution coordinator: runs one due firing of a scheduled task."""

from __future__ import annotations

import asyncio
import random
import string
import time
from collections.abc import Callable
from datetime import datetime

from chatsched.infrastructure.config import NOTIFY_SUMMARY_MAX_CHARS, RUNNER_TIMEOUT
from chatsched.infrastructure.logger import logger
from chatsched.scheduling.collaborators import (
    ConversationStore,
    LogNotifier,
    Notifier,
    RunFailure,
    RunOutcome,
    RunSuccess,
    RunTimeout,
    TaskRunner,
    TaskRunRequest,
)
from chatsched.scheduling.history import HistoryTracker
from chatsched.scheduling.job_scheduler import ScheduledJob
from chatsched.scheduling.recurrence import compute_next_execution, utc_now
from chatsched.scheduling.task_service import TaskLifecycleManager
from chatsched.scheduling.types import ExecutionMetadata, ExecutionStatus, ScheduledTask, TaskStatus


def _new_execution_id() -> str:
    rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=12))
    return f"exec-{int(time.time() * 1000)}-{rand}"


def truncate_summary(text: str, max_chars: int = NOTIFY_SUMMARY_MAX_CHARS) -> str:
    text = text.strip()
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3].rstrip() + "..."


class ExecutionCoordinator:
    """Runs a task firing end to end and decides what happens next.

    Runner failures and timeouts never propagate: they end up in the
    execution record, and recurring tasks are rescheduled regardless of the
    outcome. Notifier failures are recorded in the execution metadata only.
    """

    def __init__(
        self,
        lifecycle: TaskLifecycleManager,
        history: HistoryTracker,
        runner: TaskRunner,
        conversations: ConversationStore,
        notifier: Notifier | None = None,
        runner_timeout: float = RUNNER_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._lifecycle = lifecycle
        self._history = history
        self._runner = runner
        self._conversations = conversations
        self._notifier = notifier or LogNotifier()
        self._runner_timeout = runner_timeout
        self._clock = clock

    async def handle_job(self, job: ScheduledJob) -> str | None:
        """JobScheduler handler."""
        return await self.execute(job.task_id, is_manual_trigger=job.is_manual_trigger, job_handle=job.handle)

    async def execute(
        self, task_id: str, is_manual_trigger: bool = False, job_handle: str | None = None
    ) -> str | None:
        """Run the task once. Returns the execution id, or None when the firing was skipped."""
        task = self._lifecycle.load(task_id)
        if task is None or task.status is not TaskStatus.ACTIVE:
            logger.debug(
                "Skipping firing for inactive task",
                task_id=task_id,
                status=task.status.value if task else None,
            )
            return None
        if not is_manual_trigger and job_handle is not None and task.pending_job_handle != job_handle:
            logger.debug("Skipping stale job", task_id=task_id, handle=job_handle)
            return None

        execution_id = _new_execution_id()
        started_at = self._clock()
        self._history.record_start(task.id, execution_id, started_at, is_manual_trigger=is_manual_trigger)
        self._lifecycle.mark_running(task.id, started_at)
        logger.info("Running scheduled task", task_id=task.id, execution_id=execution_id, manual=is_manual_trigger)

        try:
            conversation_id = self._ensure_conversation(task)
            outcome = await self._run(task, conversation_id)
            self._record_outcome(task, execution_id, conversation_id, outcome, started_at)
        except Exception as err:
            logger.exception("Task execution failed unexpectedly", task_id=task.id, execution_id=execution_id)
            try:
                self._history.record_completion(execution_id, ExecutionStatus.FAILURE, error_message=str(err))
            except Exception:
                logger.exception("Could not close execution record", execution_id=execution_id)

        try:
            self._reschedule(task, started_at, is_manual_trigger)
        except Exception:
            logger.exception("Rescheduling failed", task_id=task.id)
            self._restore_after_failure(task, started_at)

        try:
            self._history.cleanup(task.id)
        except Exception:
            logger.exception("History cleanup failed", task_id=task.id)

        return execution_id

    # --- Steps ---

    def _ensure_conversation(self, task: ScheduledTask) -> str:
        if task.linked_conversation_id and self._conversations.conversation_exists(task.linked_conversation_id):
            return task.linked_conversation_id
        conversation_id = self._conversations.create_conversation(task.owner_id, task.title)
        self._lifecycle.link_conversation(task.id, conversation_id)
        task.linked_conversation_id = conversation_id
        return conversation_id

    async def _run(self, task: ScheduledTask, conversation_id: str) -> RunOutcome:
        request = TaskRunRequest(
            task_id=task.id,
            owner_id=task.owner_id,
            title=task.title,
            prompt=task.prompt,
            time_zone=task.time_zone,
            conversation_id=conversation_id,
            enabled_tool_slugs=list(task.enabled_tool_slugs),
            search_enabled=task.search_enabled,
            email_notify=task.email_notify,
        )
        try:
            return await asyncio.wait_for(self._runner.run(request), timeout=self._runner_timeout)
        except asyncio.TimeoutError:
            return RunTimeout(f"Task execution exceeded {self._runner_timeout:g}s")

    def _record_outcome(
        self,
        task: ScheduledTask,
        execution_id: str,
        conversation_id: str,
        outcome: RunOutcome,
        started_at: datetime,
    ) -> None:
        if isinstance(outcome, RunSuccess):
            metadata = ExecutionMetadata(
                model_id=outcome.model_id,
                model_name=outcome.model_name,
                input_tokens=outcome.usage.input_tokens,
                output_tokens=outcome.usage.output_tokens,
                reasoning_tokens=outcome.usage.reasoning_tokens,
                cached_input_tokens=outcome.usage.cached_input_tokens,
                total_tokens=outcome.usage.total_tokens,
                include_search=task.search_enabled,
                toolkit_slugs=list(task.enabled_tool_slugs),
                tool_invocations=list(outcome.tool_invocations),
            )
            self._conversations.append_turn(
                conversation_id, task.prompt, outcome.text, metadata.model_dump(exclude_none=True)
            )
            if task.email_notify and outcome.text.strip():
                self._notify(task, outcome.text, conversation_id, metadata)
            metadata.server_duration_ms = int((self._clock() - started_at).total_seconds() * 1000)
            self._history.record_completion(
                execution_id, ExecutionStatus.SUCCESS, conversation_id=conversation_id, metadata=metadata
            )
            logger.info("Task completed", task_id=task.id, execution_id=execution_id, tokens=metadata.total_tokens)
        elif isinstance(outcome, RunFailure):
            self._history.record_completion(
                execution_id, ExecutionStatus.FAILURE, conversation_id=conversation_id, error_message=outcome.error
            )
            logger.warning("Task run failed", task_id=task.id, execution_id=execution_id, error=outcome.error)
        elif isinstance(outcome, RunTimeout):
            self._history.record_completion(
                execution_id, ExecutionStatus.TIMEOUT, conversation_id=conversation_id, error_message=outcome.message
            )
            logger.warning("Task run timed out", task_id=task.id, execution_id=execution_id)
        else:
            raise TypeError(f"Unknown run outcome: {outcome!r}")

    def _notify(self, task: ScheduledTask, text: str, conversation_id: str, metadata: ExecutionMetadata) -> None:
        try:
            sent = self._notifier.send_summary(task.owner_id, task.title, truncate_summary(text), conversation_id)
        except Exception as err:
            logger.warning("Notifier raised", task_id=task.id, error=str(err))
            metadata.notification_sent = False
            metadata.notification_error = str(err)
            return
        metadata.notification_sent = bool(sent)
        if not sent:
            metadata.notification_error = "Notifier reported failure"

    def _reschedule(self, task: ScheduledTask, started_at: datetime, is_manual_trigger: bool) -> None:
        current = self._lifecycle.load(task.id)
        if current is None:
            return
        if current.status is not TaskStatus.RUNNING:
            # Paused or archived while running: keep the owner's decision
            self._lifecycle.patch_after_execution(task.id, last_executed_at=started_at)
            return

        now = self._clock()
        has_future_job = current.next_execution_at is not None and current.next_execution_at > now
        if has_future_job and current.pending_job_handle != task.pending_job_handle:
            # Schedule edited while running; the update already armed the new job
            self._lifecycle.patch_after_execution(task.id, last_executed_at=started_at, status=TaskStatus.ACTIVE)
            logger.info("Keeping schedule edited during run", task_id=task.id)
            return

        if not current.is_recurring:
            self._lifecycle.patch_after_execution(task.id, last_executed_at=started_at, status=TaskStatus.ARCHIVED)
            logger.info("One-time task archived", task_id=task.id)
            return

        if is_manual_trigger and has_future_job:
            self._lifecycle.patch_after_execution(task.id, last_executed_at=started_at, status=TaskStatus.ACTIVE)
            return

        reference = max(now, current.next_execution_at) if current.next_execution_at else now
        next_at = compute_next_execution(
            current.schedule_type, current.scheduled_time, current.time_zone, current.scheduled_date, now=reference
        )
        self._lifecycle.patch_after_execution(
            task.id, last_executed_at=started_at, next_execution_at=next_at, status=TaskStatus.ACTIVE
        )
        logger.info("Task rescheduled", task_id=task.id, next_execution_at=next_at.isoformat())

    def _restore_after_failure(self, task: ScheduledTask, started_at: datetime) -> None:
        """Last resort: record the attempt and leave the running state."""
        try:
            current = self._lifecycle.load(task.id)
            status = TaskStatus.ACTIVE if current is not None and current.status is TaskStatus.RUNNING else None
            self._lifecycle.patch_after_execution(task.id, last_executed_at=started_at, status=status)
        except Exception:
            logger.exception("Could not record execution attempt", task_id=task.id)
