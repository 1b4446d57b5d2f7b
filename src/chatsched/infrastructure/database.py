"""SQLite database schema and AppDatabase composition root."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING

from chatsched.infrastructure.config import DB_FILENAME, STORE_DIR
from chatsched.infrastructure.logger import logger

if TYPE_CHECKING:
    from chatsched.conversations.repository import ConversationRepository
    from chatsched.scheduling.history import HistoryRepository
    from chatsched.scheduling.repository import TaskRepository


def create_schema(db: sqlite3.Connection) -> None:
    """Create all tables and indexes. Safe to call multiple times (IF NOT EXISTS)."""
    db.executescript("""
        CREATE TABLE IF NOT EXISTS scheduled_tasks (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            title TEXT NOT NULL,
            prompt TEXT NOT NULL,
            schedule_type TEXT NOT NULL,
            scheduled_time TEXT NOT NULL,
            scheduled_date TEXT,
            time_zone TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            next_execution_at TEXT,
            pending_job_handle TEXT,
            last_executed_at TEXT,
            linked_conversation_id TEXT,
            enabled_tool_slugs TEXT NOT NULL DEFAULT '[]',
            search_enabled INTEGER NOT NULL DEFAULT 0,
            email_notify INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_tasks_owner ON scheduled_tasks(owner_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_tasks_owner_status ON scheduled_tasks(owner_id, status);

        CREATE TABLE IF NOT EXISTS task_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            execution_id TEXT NOT NULL UNIQUE,
            task_id TEXT NOT NULL,
            status TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT,
            conversation_id TEXT,
            error_message TEXT,
            metadata TEXT,
            is_manual_trigger INTEGER NOT NULL DEFAULT 0
        );
        CREATE INDEX IF NOT EXISTS idx_history_task_time ON task_history(task_id, start_time);

        CREATE TABLE IF NOT EXISTS scheduled_jobs (
            handle TEXT PRIMARY KEY,
            task_id TEXT NOT NULL,
            run_at TEXT NOT NULL,
            is_manual_trigger INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_jobs_due ON scheduled_jobs(status, run_at);

        CREATE TABLE IF NOT EXISTS conversations (
            id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            title TEXT NOT NULL,
            created_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS conversation_messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            conversation_id TEXT NOT NULL,
            role TEXT NOT NULL,
            content TEXT NOT NULL,
            metadata TEXT,
            created_at TEXT NOT NULL,
            FOREIGN KEY (conversation_id) REFERENCES conversations(id)
        );
        CREATE INDEX IF NOT EXISTS idx_messages_conversation ON conversation_messages(conversation_id, id);
    """)


class AppDatabase:
    """Composition root that initializes the DB and exposes repositories."""

    def __init__(self) -> None:
        self._db: sqlite3.Connection | None = None
        # Repositories are set after init
        self.task_repo: TaskRepository | None = None
        self.history_repo: HistoryRepository | None = None
        self.conversation_repo: ConversationRepository | None = None

    @property
    def db(self) -> sqlite3.Connection:
        assert self._db is not None, "Database not initialized. Call init() first."
        return self._db

    def init(self, db_path: Path | None = None) -> None:
        """Open (or create) the database file, at STORE_DIR by default."""
        db_path = db_path or STORE_DIR / DB_FILENAME
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(db_path))
        self._db.row_factory = sqlite3.Row
        self._init_repos()
        logger.info("Database ready", path=str(db_path))

    def _init_test(self) -> None:
        """For tests only. Creates a fresh in-memory database."""
        self._db = sqlite3.connect(":memory:")
        self._db.row_factory = sqlite3.Row
        self._init_repos()

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None

    def _init_repos(self) -> None:
        assert self._db is not None
        create_schema(self._db)

        # Import here to avoid circular imports
        from chatsched.conversations.repository import ConversationRepository
        from chatsched.scheduling.history import HistoryRepository
        from chatsched.scheduling.repository import TaskRepository

        self.task_repo = TaskRepository(self._db)
        self.history_repo = HistoryRepository(self._db)
        self.conversation_repo = ConversationRepository(self._db)
