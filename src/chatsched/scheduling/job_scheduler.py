"""Delayed-execution facade: "invoke the handler for this task at time T".

`JobScheduler` is the narrow contract the lifecycle manager and coordinator
depend on. `SqliteJobScheduler` is the bundled implementation: jobs are rows
in `scheduled_jobs`, a poll loop claims due rows and hands them to the
registered handler. Claiming is an atomic pending->claimed update, so a job is
dispatched at most once per process; `requeue_claimed()` re-arms jobs whose
process died before finishing them (at-least-once across restarts).
"""

from __future__ import annotations

import asyncio
import random
import sqlite3
import string
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from enum import StrEnum
from typing import Protocol

from pydantic import BaseModel

from chatsched.infrastructure.config import JOB_POLL_INTERVAL
from chatsched.infrastructure.logger import logger
from chatsched.infrastructure.poll_loop import PollLoop, start_poll_loop
from chatsched.scheduling.recurrence import iso_utc, utc_now


class JobStatus(StrEnum):
    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"
    CANCELLED = "cancelled"


class JobPayload(BaseModel):
    task_id: str
    is_manual_trigger: bool = False


class ScheduledJob(BaseModel):
    handle: str
    task_id: str
    run_at: datetime
    is_manual_trigger: bool = False
    status: JobStatus = JobStatus.PENDING
    created_at: datetime


JobHandler = Callable[[ScheduledJob], Awaitable[object]]


class JobScheduler(Protocol):
    def schedule_at(self, run_at: datetime, payload: JobPayload) -> str:
        """Arrange for the handler to run `payload` at or after `run_at`. Returns a handle."""
        ...

    def cancel(self, handle: str) -> None:
        """Best-effort, idempotent cancellation of a pending job."""
        ...


def _new_handle() -> str:
    rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=10))
    return f"job-{int(time.time() * 1000)}-{rand}"


class SqliteJobScheduler:
    def __init__(
        self,
        db: sqlite3.Connection,
        clock: Callable[[], datetime] = utc_now,
        poll_interval: float = JOB_POLL_INTERVAL,
    ) -> None:
        self._db = db
        self._clock = clock
        self._poll_interval = poll_interval
        self._handler: JobHandler | None = None
        self._poll: PollLoop | None = None
        self._in_flight: set[asyncio.Task[None]] = set()

    def set_handler(self, handler: JobHandler) -> None:
        self._handler = handler

    # --- JobScheduler ---

    def schedule_at(self, run_at: datetime, payload: JobPayload) -> str:
        handle = _new_handle()
        self._db.execute(
            """INSERT INTO scheduled_jobs (handle, task_id, run_at, is_manual_trigger, status, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                handle,
                payload.task_id,
                iso_utc(run_at),
                int(payload.is_manual_trigger),
                JobStatus.PENDING.value,
                iso_utc(self._clock()),
            ),
        )
        self._db.commit()
        logger.debug("Job scheduled", handle=handle, task_id=payload.task_id, run_at=iso_utc(run_at))
        return handle

    def cancel(self, handle: str) -> None:
        result = self._db.execute(
            "UPDATE scheduled_jobs SET status = ? WHERE handle = ? AND status = ?",
            (JobStatus.CANCELLED.value, handle, JobStatus.PENDING.value),
        )
        self._db.commit()
        if result.rowcount:
            logger.debug("Job cancelled", handle=handle)

    # --- Queries ---

    def get_job(self, handle: str) -> ScheduledJob | None:
        row = self._db.execute("SELECT * FROM scheduled_jobs WHERE handle = ?", (handle,)).fetchone()
        return self._row_to_job(row) if row else None

    def pending_jobs_for_task(self, task_id: str) -> list[ScheduledJob]:
        rows = self._db.execute(
            "SELECT * FROM scheduled_jobs WHERE task_id = ? AND status = ? ORDER BY run_at",
            (task_id, JobStatus.PENDING.value),
        ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def due_jobs(self, now: datetime | None = None) -> list[ScheduledJob]:
        rows = self._db.execute(
            "SELECT * FROM scheduled_jobs WHERE status = ? AND run_at <= ? ORDER BY run_at",
            (JobStatus.PENDING.value, iso_utc(now or self._clock())),
        ).fetchall()
        return [self._row_to_job(row) for row in rows]

    # --- Dispatch ---

    def claim(self, handle: str) -> bool:
        result = self._db.execute(
            "UPDATE scheduled_jobs SET status = ? WHERE handle = ? AND status = ?",
            (JobStatus.CLAIMED.value, handle, JobStatus.PENDING.value),
        )
        self._db.commit()
        return result.rowcount > 0

    def _mark_done(self, handle: str) -> None:
        self._db.execute("UPDATE scheduled_jobs SET status = ? WHERE handle = ?", (JobStatus.DONE.value, handle))
        self._db.commit()

    async def dispatch_due(self) -> list[asyncio.Task[None]]:
        """Claim every due job and start its handler in the background.

        Returns immediately, so a slow handler never delays jobs that come due
        while it runs.
        """
        if self._handler is None:
            raise RuntimeError("No job handler registered")

        claimed = [job for job in self.due_jobs() if self.claim(job.handle)]
        if not claimed:
            return []
        logger.info("Dispatching due jobs", count=len(claimed))
        started = []
        for job in claimed:
            task = asyncio.create_task(self._dispatch(job))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            started.append(task)
        return started

    async def run_due(self) -> int:
        """Dispatch due jobs and wait for their handlers. Returns the number dispatched."""
        started = await self.dispatch_due()
        if started:
            await asyncio.gather(*started)
        return len(started)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def join(self) -> None:
        """Wait for every handler started so far."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight))

    async def _dispatch(self, job: ScheduledJob) -> None:
        assert self._handler is not None
        try:
            await self._handler(job)
        except Exception:
            logger.exception("Job handler failed", handle=job.handle, task_id=job.task_id)
        finally:
            self._mark_done(job.handle)

    def requeue_claimed(self) -> int:
        """Return jobs claimed by a previous process to pending."""
        result = self._db.execute(
            "UPDATE scheduled_jobs SET status = ? WHERE status = ?",
            (JobStatus.PENDING.value, JobStatus.CLAIMED.value),
        )
        self._db.commit()
        if result.rowcount:
            logger.warning("Re-armed interrupted jobs", count=result.rowcount)
        return result.rowcount

    def purge_finished(self, before: datetime) -> int:
        result = self._db.execute(
            "DELETE FROM scheduled_jobs WHERE status IN (?, ?) AND run_at < ?",
            (JobStatus.DONE.value, JobStatus.CANCELLED.value, iso_utc(before)),
        )
        self._db.commit()
        return result.rowcount

    # --- Loop ---

    def start(self) -> None:
        if self._poll is None:
            self._poll = start_poll_loop("Job scheduler", self._poll_interval, self.dispatch_due)

    async def stop(self) -> None:
        """Stop polling, then wait for handlers that are already running."""
        if self._poll is not None:
            await self._poll.stop()
            self._poll = None
        await self.join()

    def _row_to_job(self, row: sqlite3.Row) -> ScheduledJob:
        return ScheduledJob(
            handle=row["handle"],
            task_id=row["task_id"],
            run_at=row["run_at"],
            is_manual_trigger=bool(row["is_manual_trigger"]),
            status=row["status"],
            created_at=row["created_at"],
        )
