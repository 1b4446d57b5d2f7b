"""Scheduled task persistence."""

from __future__ import annotations

import json
import sqlite3

from chatsched.scheduling.recurrence import iso_utc
from chatsched.scheduling.types import QUOTA_TASK_STATUSES, ScheduledTask, TaskStatus

_COLUMNS = (
    "id",
    "owner_id",
    "title",
    "prompt",
    "schedule_type",
    "scheduled_time",
    "scheduled_date",
    "time_zone",
    "status",
    "next_execution_at",
    "pending_job_handle",
    "last_executed_at",
    "linked_conversation_id",
    "enabled_tool_slugs",
    "search_enabled",
    "email_notify",
    "created_at",
)


class TaskRepository:
    def __init__(self, db: sqlite3.Connection) -> None:
        self._db = db

    def create_task(self, task: ScheduledTask) -> None:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        self._db.execute(
            f"INSERT INTO scheduled_tasks ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            self._task_to_row(task),
        )
        self._db.commit()

    def save_task(self, task: ScheduledTask) -> None:
        """Write every column of `task` in one statement."""
        assignments = ", ".join(f"{col} = ?" for col in _COLUMNS[1:])
        row = self._task_to_row(task)
        self._db.execute(f"UPDATE scheduled_tasks SET {assignments} WHERE id = ?", (*row[1:], row[0]))
        self._db.commit()

    def get_task_by_id(self, id: str) -> ScheduledTask | None:
        row = self._db.execute("SELECT * FROM scheduled_tasks WHERE id = ?", (id,)).fetchone()
        if not row:
            return None
        return self._row_to_task(row)

    def get_tasks_for_owner(self, owner_id: str) -> list[ScheduledTask]:
        rows = self._db.execute(
            "SELECT * FROM scheduled_tasks WHERE owner_id = ? ORDER BY created_at DESC, rowid DESC", (owner_id,)
        ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def get_quota_tasks_for_owner(self, owner_id: str) -> list[ScheduledTask]:
        statuses = sorted(s.value for s in QUOTA_TASK_STATUSES)
        rows = self._db.execute(
            f"SELECT * FROM scheduled_tasks WHERE owner_id = ? AND status IN ({', '.join('?' for _ in statuses)})",
            (owner_id, *statuses),
        ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def get_tasks_by_status(self, status: TaskStatus) -> list[ScheduledTask]:
        rows = self._db.execute(
            "SELECT * FROM scheduled_tasks WHERE status = ? ORDER BY created_at", (status.value,)
        ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def delete_task(self, id: str) -> None:
        self._db.execute("DELETE FROM task_history WHERE task_id = ?", (id,))
        self._db.execute("DELETE FROM scheduled_tasks WHERE id = ?", (id,))
        self._db.commit()

    def _task_to_row(self, task: ScheduledTask) -> tuple:
        return (
            task.id,
            task.owner_id,
            task.title,
            task.prompt,
            task.schedule_type.value,
            task.scheduled_time,
            task.scheduled_date,
            task.time_zone,
            task.status.value,
            iso_utc(task.next_execution_at),
            task.pending_job_handle,
            iso_utc(task.last_executed_at),
            task.linked_conversation_id,
            json.dumps(task.enabled_tool_slugs),
            int(task.search_enabled),
            int(task.email_notify),
            iso_utc(task.created_at),
        )

    def _row_to_task(self, row: sqlite3.Row) -> ScheduledTask:
        return ScheduledTask(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            prompt=row["prompt"],
            schedule_type=row["schedule_type"],
            scheduled_time=row["scheduled_time"],
            scheduled_date=row["scheduled_date"],
            time_zone=row["time_zone"],
            status=row["status"],
            next_execution_at=row["next_execution_at"],
            pending_job_handle=row["pending_job_handle"],
            last_executed_at=row["last_executed_at"],
            linked_conversation_id=row["linked_conversation_id"],
            enabled_tool_slugs=json.loads(row["enabled_tool_slugs"] or "[]"),
            search_enabled=bool(row["search_enabled"]),
            email_notify=bool(row["email_notify"]),
            created_at=row["created_at"],
        )
