"""TaskEngine: composes services, wires subsystems."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from chatsched.api.dispatcher import ApiDeps, CommandDispatcher
from chatsched.api.handlers import default_handlers
from chatsched.infrastructure.config import (
    HISTORY_KEEP_COUNT,
    JOB_POLL_INTERVAL,
    RUNNER_TIMEOUT,
    TASK_LIMIT_DAILY,
    TASK_LIMIT_TOTAL,
    TASK_LIMIT_WEEKLY,
)
from chatsched.infrastructure.database import AppDatabase
from chatsched.infrastructure.logger import logger
from chatsched.scheduling.collaborators import ConversationStore, Notifier, TaskRunner
from chatsched.scheduling.coordinator import ExecutionCoordinator
from chatsched.scheduling.history import HistoryTracker
from chatsched.scheduling.job_scheduler import SqliteJobScheduler
from chatsched.scheduling.limits import TaskLimits
from chatsched.scheduling.recurrence import utc_now
from chatsched.scheduling.task_service import TaskLifecycleManager

# Finished and cancelled job rows older than this are purged at startup
JOB_RETENTION = timedelta(days=7)


class TaskEngine:
    """Composes the scheduling services and manages their lifecycle."""

    def __init__(
        self,
        runner: TaskRunner,
        *,
        notifier: Notifier | None = None,
        conversations: ConversationStore | None = None,
        db: AppDatabase | None = None,
        db_path: Path | None = None,
        clock: Callable[[], datetime] = utc_now,
        poll_interval: float = JOB_POLL_INTERVAL,
    ) -> None:
        self._runner = runner
        self._notifier = notifier
        self._conversations = conversations
        self._db = db
        self._db_path = db_path
        self._clock = clock
        self._poll_interval = poll_interval
        self._running = False

        self.jobs: SqliteJobScheduler | None = None
        self.lifecycle: TaskLifecycleManager | None = None
        self.history: HistoryTracker | None = None
        self.coordinator: ExecutionCoordinator | None = None
        self.dispatcher: CommandDispatcher | None = None

    @property
    def running(self) -> bool:
        return self._running

    def open(self) -> None:
        """Open the database (unless one was injected) and wire the services."""
        if self.dispatcher is not None:
            return
        if self._db is None:
            self._db = AppDatabase()
            self._db.init(self._db_path)
        assert self._db.task_repo and self._db.history_repo and self._db.conversation_repo

        self.jobs = SqliteJobScheduler(self._db.db, clock=self._clock, poll_interval=self._poll_interval)
        self.lifecycle = TaskLifecycleManager(
            self._db.task_repo,
            self.jobs,
            limits=TaskLimits(daily=TASK_LIMIT_DAILY, weekly=TASK_LIMIT_WEEKLY, total=TASK_LIMIT_TOTAL),
            clock=self._clock,
        )
        self.history = HistoryTracker(self._db.history_repo, keep_count=HISTORY_KEEP_COUNT, clock=self._clock)
        self.coordinator = ExecutionCoordinator(
            self.lifecycle,
            self.history,
            self._runner,
            self._conversations or self._db.conversation_repo,
            notifier=self._notifier,
            runner_timeout=RUNNER_TIMEOUT,
            clock=self._clock,
        )
        self.jobs.set_handler(self.coordinator.handle_job)
        self.dispatcher = CommandDispatcher(
            default_handlers(), ApiDeps(lifecycle=self.lifecycle, history=self.history)
        )

    def recover(self) -> None:
        """Bring state left by a dead process back to a consistent shape."""
        assert self.jobs and self.history and self.lifecycle
        self.jobs.requeue_claimed()
        self.history.interrupt_running("Interrupted by process restart")
        self.lifecycle.recover_interrupted()
        purged = self.jobs.purge_finished(self._clock() - JOB_RETENTION)
        if purged:
            logger.debug("Purged finished jobs", count=purged)

    async def start(self) -> None:
        logger.info("Starting task engine...")
        self.open()
        self.recover()
        assert self.jobs is not None
        self.jobs.start()
        self._running = True
        logger.info("Task engine started", poll_interval=self._poll_interval)

    def dispatch(self, command: dict[str, Any], owner_id: str) -> dict[str, Any]:
        """Run an owner-scoped API command."""
        if self.dispatcher is None:
            self.open()
        assert self.dispatcher is not None
        return self.dispatcher.dispatch(command, owner_id)

    async def shutdown(self) -> None:
        logger.info("Shutting down task engine...")
        self._running = False
        if self.jobs is not None:
            await self.jobs.stop()
        if self._db is not None:
            self._db.close()
        logger.info("Task engine shut down complete")
