from datetime import UTC, datetime, timedelta

import pytest

from chatsched.infrastructure.database import AppDatabase
from chatsched.scheduling.history import HistoryTracker
from chatsched.scheduling.job_scheduler import SqliteJobScheduler
from chatsched.scheduling.limits import TaskLimits
from chatsched.scheduling.task_service import TaskLifecycleManager

# Friday 2024-03-08, 10:00 in New York (EST)
FRIDAY_MORNING = datetime(2024, 3, 8, 15, 0, tzinfo=UTC)


class FakeClock:
    """Settable clock; call it to read the current instant."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def db() -> AppDatabase:
    """Create an in-memory database for testing."""
    app_db = AppDatabase()
    app_db._init_test()
    return app_db


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(FRIDAY_MORNING)


@pytest.fixture
def jobs(db, clock) -> SqliteJobScheduler:
    return SqliteJobScheduler(db.db, clock=clock, poll_interval=0.01)


@pytest.fixture
def lifecycle(db, jobs, clock) -> TaskLifecycleManager:
    return TaskLifecycleManager(db.task_repo, jobs, limits=TaskLimits(daily=5, weekly=10, total=10), clock=clock)


@pytest.fixture
def history(db, clock) -> HistoryTracker:
    return HistoryTracker(db.history_repo, keep_count=30, clock=clock)
