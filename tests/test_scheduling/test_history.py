"""Tests for execution history tracking."""

from datetime import UTC, datetime, timedelta

import pytest

from chatsched.scheduling.types import ExecutionMetadata, ExecutionStatus

START = datetime(2024, 3, 8, 15, 0, tzinfo=UTC)


class TestRecordLifecycle:
    def test_record_start_is_running(self, history):
        record = history.record_start("task-1", "exec-1", START)
        assert record.status is ExecutionStatus.RUNNING
        stored = history.get_execution("exec-1")
        assert stored.status is ExecutionStatus.RUNNING
        assert stored.end_time is None
        assert stored.is_manual_trigger is False

    def test_record_completion(self, history, clock):
        history.record_start("task-1", "exec-1", START, is_manual_trigger=True)
        clock.set(START + timedelta(seconds=3))
        completed = history.record_completion(
            "exec-1",
            ExecutionStatus.SUCCESS,
            conversation_id="conv-1",
            metadata=ExecutionMetadata(total_tokens=42),
        )
        assert completed is not None
        stored = history.get_execution("exec-1")
        assert stored.status is ExecutionStatus.SUCCESS
        assert stored.end_time == START + timedelta(seconds=3)
        assert stored.duration_ms == 3000
        assert stored.conversation_id == "conv-1"
        assert stored.metadata.total_tokens == 42
        assert stored.is_manual_trigger is True

    def test_completion_is_written_once(self, history):
        history.record_start("task-1", "exec-1", START)
        history.record_completion("exec-1", ExecutionStatus.FAILURE, error_message="boom")
        second = history.record_completion("exec-1", ExecutionStatus.SUCCESS)
        assert second is None
        stored = history.get_execution("exec-1")
        assert stored.status is ExecutionStatus.FAILURE
        assert stored.error_message == "boom"

    def test_unknown_execution(self, history):
        assert history.record_completion("missing", ExecutionStatus.SUCCESS) is None

    def test_non_terminal_status_rejected(self, history):
        history.record_start("task-1", "exec-1", START)
        with pytest.raises(ValueError, match="terminal"):
            history.record_completion("exec-1", ExecutionStatus.RUNNING)

    def test_interrupt_running(self, history):
        history.record_start("task-1", "exec-1", START)
        history.record_start("task-1", "exec-2", START + timedelta(minutes=1))
        history.record_completion("exec-2", ExecutionStatus.SUCCESS)

        assert history.interrupt_running("restart") == 1
        stored = history.get_execution("exec-1")
        assert stored.status is ExecutionStatus.CANCELLED
        assert stored.error_message == "restart"
        assert history.get_execution("exec-2").status is ExecutionStatus.SUCCESS


def _complete(history, task_id: str, n: int, status: ExecutionStatus, seconds: int = 2) -> None:
    start = START + timedelta(hours=n)
    history.record_start(task_id, f"exec-{task_id}-{n}", start)
    history.record_completion(f"exec-{task_id}-{n}", status, end_time=start + timedelta(seconds=seconds))


class TestQueries:
    def test_list_newest_first_with_limit(self, history):
        for n in range(5):
            _complete(history, "task-1", n, ExecutionStatus.SUCCESS)
        records = history.list_for_task("task-1", limit=3)
        assert [r.execution_id for r in records] == ["exec-task-1-4", "exec-task-1-3", "exec-task-1-2"]

    def test_list_scoped_to_task(self, history):
        _complete(history, "task-1", 0, ExecutionStatus.SUCCESS)
        _complete(history, "task-2", 1, ExecutionStatus.SUCCESS)
        assert [r.task_id for r in history.list_for_task("task-1")] == ["task-1"]

    def test_stats(self, history):
        _complete(history, "task-1", 0, ExecutionStatus.SUCCESS, seconds=2)
        _complete(history, "task-1", 1, ExecutionStatus.SUCCESS, seconds=4)
        _complete(history, "task-1", 2, ExecutionStatus.FAILURE, seconds=6)
        history.record_start("task-1", "exec-running", START + timedelta(hours=10))

        stats = history.get_stats("task-1")
        assert stats.total_executions == 4
        assert stats.successful_executions == 2
        assert stats.failed_executions == 1
        assert stats.running_executions == 1
        assert stats.completed_executions == 3
        assert stats.success_rate == 66.67
        assert stats.average_duration_ms == 4000
        assert stats.last_execution.execution_id == "exec-running"

    def test_stats_timeout_and_cancelled_count_as_failed(self, history):
        _complete(history, "task-1", 0, ExecutionStatus.TIMEOUT)
        _complete(history, "task-1", 1, ExecutionStatus.CANCELLED)
        stats = history.get_stats("task-1")
        assert stats.failed_executions == 2
        assert stats.success_rate == 0.0

    def test_stats_empty(self, history):
        stats = history.get_stats("task-1")
        assert stats.total_executions == 0
        assert stats.success_rate == 0.0
        assert stats.average_duration_ms is None
        assert stats.last_execution is None


class TestRetention:
    def test_keeps_newest_thirty_of_forty(self, history):
        for n in range(40):
            _complete(history, "task-1", n, ExecutionStatus.SUCCESS)

        deleted = history.cleanup("task-1", keep=30)
        assert deleted == 10
        remaining = history.list_for_task("task-1", limit=100)
        assert len(remaining) == 30
        assert {r.execution_id for r in remaining} == {f"exec-task-1-{n}" for n in range(10, 40)}

    def test_default_keep_count(self, history):
        for n in range(32):
            _complete(history, "task-1", n, ExecutionStatus.SUCCESS)
        assert history.cleanup("task-1") == 2

    def test_other_tasks_untouched(self, history):
        for n in range(5):
            _complete(history, "task-1", n, ExecutionStatus.SUCCESS)
        _complete(history, "task-2", 0, ExecutionStatus.SUCCESS)
        history.cleanup("task-1", keep=1)
        assert len(history.list_for_task("task-2")) == 1
