"""Execution history: audit records per task run, stats, and retention."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from datetime import datetime

from chatsched.infrastructure.config import HISTORY_DEFAULT_LIMIT, HISTORY_KEEP_COUNT
from chatsched.infrastructure.logger import logger
from chatsched.scheduling.recurrence import iso_utc, utc_now
from chatsched.scheduling.types import (
    FAILED_EXECUTION_STATUSES,
    IN_FLIGHT_EXECUTION_STATUSES,
    ExecutionMetadata,
    ExecutionStats,
    ExecutionStatus,
    TaskExecutionRecord,
)


class HistoryRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    def insert(self, record: TaskExecutionRecord) -> None:
        self._db.execute(
            """INSERT INTO task_history
               (execution_id, task_id, status, start_time, end_time, conversation_id, error_message, metadata, is_manual_trigger)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record.execution_id,
                record.task_id,
                record.status.value,
                iso_utc(record.start_time),
                iso_utc(record.end_time),
                record.conversation_id,
                record.error_message,
                record.metadata.model_dump_json() if record.metadata else None,
                int(record.is_manual_trigger),
            ),
        )
        self._db.commit()

    def complete(self, record: TaskExecutionRecord) -> bool:
        """Write the terminal fields. Only a record still in flight is updated."""
        in_flight = sorted(s.value for s in IN_FLIGHT_EXECUTION_STATUSES)
        result = self._db.execute(
            f"""UPDATE task_history
                SET status = ?, end_time = ?, conversation_id = ?, error_message = ?, metadata = ?
                WHERE execution_id = ? AND status IN ({', '.join('?' for _ in in_flight)})""",
            (
                record.status.value,
                iso_utc(record.end_time),
                record.conversation_id,
                record.error_message,
                record.metadata.model_dump_json() if record.metadata else None,
                record.execution_id,
                *in_flight,
            ),
        )
        self._db.commit()
        return result.rowcount > 0

    def get(self, execution_id: str) -> TaskExecutionRecord | None:
        row = self._db.execute("SELECT * FROM task_history WHERE execution_id = ?", (execution_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def list_for_task(self, task_id: str, limit: int | None = None) -> list[TaskExecutionRecord]:
        sql = "SELECT * FROM task_history WHERE task_id = ? ORDER BY start_time DESC, id DESC"
        params: tuple = (task_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (task_id, limit)
        return [self._row_to_record(row) for row in self._db.execute(sql, params).fetchall()]

    def list_by_status(self, status: ExecutionStatus) -> list[TaskExecutionRecord]:
        rows = self._db.execute(
            "SELECT * FROM task_history WHERE status = ? ORDER BY start_time", (status.value,)
        ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def delete_older_than_newest(self, task_id: str, keep: int) -> int:
        """Delete every record of `task_id` except the `keep` newest by start_time."""
        result = self._db.execute(
            """DELETE FROM task_history
               WHERE task_id = ? AND id NOT IN (
                   SELECT id FROM task_history WHERE task_id = ?
                   ORDER BY start_time DESC, id DESC LIMIT ?
               )""",
            (task_id, task_id, keep),
        )
        self._db.commit()
        return result.rowcount

    def _row_to_record(self, row: sqlite3.Row) -> TaskExecutionRecord:
        return TaskExecutionRecord(
            execution_id=row["execution_id"],
            task_id=row["task_id"],
            status=row["status"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            conversation_id=row["conversation_id"],
            error_message=row["error_message"],
            metadata=ExecutionMetadata.model_validate_json(row["metadata"]) if row["metadata"] else None,
            is_manual_trigger=bool(row["is_manual_trigger"]),
        )


class HistoryTracker:
    """Opens, closes, queries, and trims execution records."""

    def __init__(
        self,
        repo: HistoryRepository,
        keep_count: int = HISTORY_KEEP_COUNT,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repo = repo
        self._keep_count = keep_count
        self._clock = clock

    def record_start(
        self, task_id: str, execution_id: str, start_time: datetime, is_manual_trigger: bool = False
    ) -> TaskExecutionRecord:
        record = TaskExecutionRecord(
            execution_id=execution_id,
            task_id=task_id,
            status=ExecutionStatus.RUNNING,
            start_time=start_time,
            is_manual_trigger=is_manual_trigger,
        )
        self._repo.insert(record)
        return record

    def record_completion(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        conversation_id: str | None = None,
        error_message: str | None = None,
        metadata: ExecutionMetadata | None = None,
        end_time: datetime | None = None,
    ) -> TaskExecutionRecord | None:
        """Close a running record with a terminal status.

        Returns the closed record, or None when the record is unknown or was
        already closed; terminal records are never re-opened or overwritten.
        """
        if not status.is_terminal:
            raise ValueError(f"Not a terminal execution status: {status}")
        existing = self._repo.get(execution_id)
        if existing is None:
            logger.warning("Execution record not found", execution_id=execution_id)
            return None

        completed = existing.model_copy(
            update={
                "status": status,
                "end_time": end_time or self._clock(),
                "conversation_id": conversation_id or existing.conversation_id,
                "error_message": error_message,
                "metadata": metadata,
            }
        )
        if not self._repo.complete(completed):
            logger.warning(
                "Execution already completed, ignoring update",
                execution_id=execution_id,
                status=existing.status.value,
            )
            return None
        return completed

    def get_execution(self, execution_id: str) -> TaskExecutionRecord | None:
        return self._repo.get(execution_id)

    def list_for_task(self, task_id: str, limit: int = HISTORY_DEFAULT_LIMIT) -> list[TaskExecutionRecord]:
        return self._repo.list_for_task(task_id, max(1, limit))

    def get_stats(self, task_id: str) -> ExecutionStats:
        records = self._repo.list_for_task(task_id)

        successful = sum(1 for r in records if r.status is ExecutionStatus.SUCCESS)
        failed = sum(1 for r in records if r.status in FAILED_EXECUTION_STATUSES)
        running = sum(1 for r in records if r.status in IN_FLIGHT_EXECUTION_STATUSES)
        completed = successful + failed
        success_rate = round(successful / completed * 100, 2) if completed else 0.0

        durations = [r.duration_ms for r in records if r.duration_ms is not None]
        average = sum(durations) / len(durations) if durations else None

        return ExecutionStats(
            total_executions=len(records),
            successful_executions=successful,
            failed_executions=failed,
            running_executions=running,
            completed_executions=completed,
            success_rate=success_rate,
            average_duration_ms=average,
            last_execution=records[0] if records else None,
        )

    def cleanup(self, task_id: str, keep: int | None = None) -> int:
        """Purge all but the newest `keep` records of a task. Returns the number deleted."""
        keep = self._keep_count if keep is None else keep
        deleted = self._repo.delete_older_than_newest(task_id, max(0, keep))
        if deleted:
            logger.debug("Trimmed execution history", task_id=task_id, deleted=deleted, keep=keep)
        return deleted

    def interrupt_running(self, reason: str) -> int:
        """Close records left running by a process that died mid-execution."""
        count = 0
        for record in self._repo.list_by_status(ExecutionStatus.RUNNING):
            if self.record_completion(record.execution_id, ExecutionStatus.CANCELLED, error_message=reason):
                count += 1
        if count:
            logger.warning("Closed interrupted executions", count=count)
        return count
