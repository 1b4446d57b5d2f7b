"""Tests for the execution coordinator."""

import asyncio
from datetime import UTC, datetime

import pytest

from chatsched.scheduling.collaborators import RunFailure, RunSuccess, TokenUsage
from chatsched.scheduling.coordinator import ExecutionCoordinator, truncate_summary
from chatsched.scheduling.history import HistoryTracker
from chatsched.scheduling.types import CreateTaskParams, ExecutionStatus, TaskStatus, UpdateTaskParams

OWNER = "owner-1"


class FakeRunner:
    def __init__(self, outcome=None, error: Exception | None = None, delay: float = 0.0, on_run=None):
        self.outcome = outcome or RunSuccess(
            text="Three new emails, nothing urgent.",
            usage=TokenUsage(input_tokens=120, output_tokens=30, total_tokens=150),
            tool_invocations=["gmail.list"],
            model_id="model-1",
            model_name="Model One",
        )
        self.error = error
        self.delay = delay
        self.on_run = on_run
        self.requests = []

    async def run(self, request):
        self.requests.append(request)
        if self.on_run:
            self.on_run(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.outcome


class RecordingNotifier:
    def __init__(self, result: bool = True, error: Exception | None = None):
        self.result = result
        self.error = error
        self.calls = []

    def send_summary(self, owner_id, title, content, conversation_id):
        self.calls.append((owner_id, title, content, conversation_id))
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def make_coordinator(db, lifecycle, history, jobs, clock):
    def _make(runner=None, notifier=None, runner_timeout: float = 5.0, tracker=None):
        coordinator = ExecutionCoordinator(
            lifecycle,
            tracker or history,
            runner or FakeRunner(),
            db.conversation_repo,
            notifier=notifier,
            runner_timeout=runner_timeout,
            clock=clock,
        )
        jobs.set_handler(coordinator.handle_job)
        return coordinator

    return _make


def _params(**overrides) -> CreateTaskParams:
    data = {
        "title": "Inbox digest",
        "prompt": "Summarize my inbox",
        "scheduleType": "daily",
        "scheduledTime": "09:00",
        "timeZone": "America/New_York",
    }
    data.update(overrides)
    return CreateTaskParams.model_validate(data)


async def _fire(jobs, clock, at: datetime) -> int:
    clock.set(at)
    return await jobs.run_due()


class TestWeeklyScenario:
    @pytest.mark.asyncio
    async def test_monday_task_created_on_friday(self, make_coordinator, lifecycle, history, jobs, clock, db):
        make_coordinator()
        task = lifecycle.create(OWNER, _params(scheduleType="weekly", scheduledTime="1:09:00"))
        monday = datetime(2024, 3, 11, 13, 0, tzinfo=UTC)
        assert task.next_execution_at == monday

        # Nothing fires before Monday
        assert await _fire(jobs, clock, datetime(2024, 3, 11, 12, 59, tzinfo=UTC)) == 0
        assert await _fire(jobs, clock, monday) == 1

        stored = lifecycle.get(OWNER, task.id)
        assert stored.status is TaskStatus.ACTIVE
        assert stored.last_executed_at == monday
        assert stored.next_execution_at == datetime(2024, 3, 18, 13, 0, tzinfo=UTC)
        pending = jobs.pending_jobs_for_task(task.id)
        assert [j.handle for j in pending] == [stored.pending_job_handle]
        assert pending[0].run_at == stored.next_execution_at

        records = history.list_for_task(task.id)
        assert len(records) == 1
        assert records[0].status is ExecutionStatus.SUCCESS
        assert records[0].is_manual_trigger is False
        assert records[0].conversation_id == stored.linked_conversation_id

        messages = db.conversation_repo.get_messages(stored.linked_conversation_id)
        assert [m.role for m in messages] == ["user", "assistant"]
        assert messages[1].content == "Three new emails, nothing urgent."


class TestOnetimeScenario:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "runner,expected",
        [
            (FakeRunner(), ExecutionStatus.SUCCESS),
            (FakeRunner(outcome=RunFailure(error="model unavailable")), ExecutionStatus.FAILURE),
            (FakeRunner(error=RuntimeError("runner crashed")), ExecutionStatus.FAILURE),
        ],
    )
    async def test_archived_after_run(self, make_coordinator, lifecycle, history, jobs, clock, runner, expected):
        make_coordinator(runner=runner)
        task = lifecycle.create(OWNER, _params(scheduleType="onetime"))
        assert task.next_execution_at == datetime(2024, 3, 9, 14, 0, tzinfo=UTC)

        assert await _fire(jobs, clock, task.next_execution_at) == 1

        stored = lifecycle.get(OWNER, task.id)
        assert stored.status is TaskStatus.ARCHIVED
        assert stored.pending_job_handle is None
        assert stored.next_execution_at is None
        assert stored.last_executed_at == task.next_execution_at
        assert jobs.pending_jobs_for_task(task.id) == []
        assert [r.status for r in history.list_for_task(task.id)] == [expected]


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_success_metadata(self, make_coordinator, lifecycle, history, clock):
        make_coordinator()
        task = lifecycle.create(OWNER, _params(enabledToolSlugs=["gmail"], searchEnabled=True))
        clock.set(task.next_execution_at)
        coordinator = make_coordinator()
        execution_id = await coordinator.execute(task.id, job_handle=task.pending_job_handle)

        record = history.get_execution(execution_id)
        assert record.status is ExecutionStatus.SUCCESS
        assert record.end_time == task.next_execution_at
        assert record.metadata.total_tokens == 150
        assert record.metadata.model_id == "model-1"
        assert record.metadata.toolkit_slugs == ["gmail"]
        assert record.metadata.tool_invocations == ["gmail.list"]
        assert record.metadata.include_search is True
        assert record.metadata.server_duration_ms == 0

    @pytest.mark.asyncio
    async def test_runner_receives_task_options(self, make_coordinator, lifecycle, jobs, clock):
        runner = FakeRunner()
        make_coordinator(runner=runner)
        task = lifecycle.create(OWNER, _params(enabledToolSlugs=["calendar"], emailNotify=True))
        await _fire(jobs, clock, task.next_execution_at)

        request = runner.requests[0]
        assert request.prompt == "Summarize my inbox"
        assert request.enabled_tool_slugs == ["calendar"]
        assert request.email_notify is True
        assert request.time_zone == "America/New_York"

    @pytest.mark.asyncio
    async def test_failure_keeps_recurring_task_active(self, make_coordinator, lifecycle, history, jobs, clock):
        make_coordinator(runner=FakeRunner(outcome=RunFailure(error="quota exhausted")))
        task = lifecycle.create(OWNER, _params())
        await _fire(jobs, clock, task.next_execution_at)

        stored = lifecycle.get(OWNER, task.id)
        assert stored.status is TaskStatus.ACTIVE
        assert stored.next_execution_at == datetime(2024, 3, 10, 13, 0, tzinfo=UTC)
        record = history.list_for_task(task.id)[0]
        assert record.status is ExecutionStatus.FAILURE
        assert record.error_message == "quota exhausted"

    @pytest.mark.asyncio
    async def test_timeout(self, make_coordinator, lifecycle, history, jobs, clock):
        make_coordinator(runner=FakeRunner(delay=1.0), runner_timeout=0.05)
        task = lifecycle.create(OWNER, _params())
        await _fire(jobs, clock, task.next_execution_at)

        record = history.list_for_task(task.id)[0]
        assert record.status is ExecutionStatus.TIMEOUT
        assert record.error_message
        assert lifecycle.get(OWNER, task.id).status is TaskStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_late_firing_does_not_drift(self, make_coordinator, lifecycle, jobs, clock):
        make_coordinator()
        task = lifecycle.create(OWNER, _params())
        # Fires 40 minutes late; the next run stays at 09:00 local
        await _fire(jobs, clock, datetime(2024, 3, 9, 14, 40, tzinfo=UTC))
        assert lifecycle.get(OWNER, task.id).next_execution_at == datetime(2024, 3, 10, 13, 0, tzinfo=UTC)


class TestSkippedFirings:
    @pytest.mark.asyncio
    async def test_paused_task_is_skipped(self, make_coordinator, lifecycle, history, jobs):
        runner = FakeRunner()
        make_coordinator(runner=runner)
        task = lifecycle.create(OWNER, _params())
        lifecycle.trigger_now(OWNER, task.id)
        lifecycle.pause(OWNER, task.id)

        assert await jobs.run_due() == 1
        assert runner.requests == []
        assert history.list_for_task(task.id) == []
        assert lifecycle.get(OWNER, task.id).status is TaskStatus.PAUSED

    @pytest.mark.asyncio
    async def test_deleted_task_is_skipped(self, make_coordinator, lifecycle, history):
        coordinator = make_coordinator()
        task = lifecycle.create(OWNER, _params())
        lifecycle.delete(OWNER, task.id)
        assert await coordinator.execute(task.id) is None

    @pytest.mark.asyncio
    async def test_stale_handle_is_skipped(self, make_coordinator, lifecycle, history):
        runner = FakeRunner()
        coordinator = make_coordinator(runner=runner)
        task = lifecycle.create(OWNER, _params())
        assert await coordinator.execute(task.id, job_handle="job-superseded") is None
        assert runner.requests == []
        assert history.list_for_task(task.id) == []


class TestManualTrigger:
    @pytest.mark.asyncio
    async def test_keeps_schedule(self, make_coordinator, lifecycle, history, jobs):
        make_coordinator()
        task = lifecycle.create(OWNER, _params())
        lifecycle.trigger_now(OWNER, task.id)
        assert await jobs.run_due() == 1

        stored = lifecycle.get(OWNER, task.id)
        assert stored.status is TaskStatus.ACTIVE
        assert stored.next_execution_at == task.next_execution_at
        assert stored.pending_job_handle == task.pending_job_handle
        assert [j.handle for j in jobs.pending_jobs_for_task(task.id)] == [task.pending_job_handle]

        record = history.list_for_task(task.id)[0]
        assert record.is_manual_trigger is True
        assert record.status is ExecutionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_reuses_conversation(self, make_coordinator, lifecycle, jobs, db):
        make_coordinator()
        task = lifecycle.create(OWNER, _params())
        lifecycle.trigger_now(OWNER, task.id)
        await jobs.run_due()
        first = lifecycle.get(OWNER, task.id).linked_conversation_id
        lifecycle.trigger_now(OWNER, task.id)
        await jobs.run_due()

        assert lifecycle.get(OWNER, task.id).linked_conversation_id == first
        assert len(db.conversation_repo.get_messages(first)) == 4


class TestNotification:
    @pytest.mark.asyncio
    async def test_sends_summary(self, make_coordinator, lifecycle, history, jobs):
        notifier = RecordingNotifier()
        make_coordinator(notifier=notifier)
        task = lifecycle.create(OWNER, _params(emailNotify=True))
        lifecycle.trigger_now(OWNER, task.id)
        await jobs.run_due()

        stored = lifecycle.get(OWNER, task.id)
        assert notifier.calls == [
            (OWNER, "Inbox digest", "Three new emails, nothing urgent.", stored.linked_conversation_id)
        ]
        assert history.list_for_task(task.id)[0].metadata.notification_sent is True

    @pytest.mark.asyncio
    async def test_not_sent_without_opt_in(self, make_coordinator, lifecycle, jobs):
        notifier = RecordingNotifier()
        make_coordinator(notifier=notifier)
        task = lifecycle.create(OWNER, _params())
        lifecycle.trigger_now(OWNER, task.id)
        await jobs.run_due()
        assert notifier.calls == []

    @pytest.mark.asyncio
    async def test_not_sent_on_failure(self, make_coordinator, lifecycle, jobs):
        notifier = RecordingNotifier()
        make_coordinator(runner=FakeRunner(outcome=RunFailure(error="bad")), notifier=notifier)
        task = lifecycle.create(OWNER, _params(emailNotify=True))
        lifecycle.trigger_now(OWNER, task.id)
        await jobs.run_due()
        assert notifier.calls == []

    @pytest.mark.asyncio
    async def test_notifier_error_does_not_fail_execution(self, make_coordinator, lifecycle, history, jobs):
        make_coordinator(notifier=RecordingNotifier(error=ConnectionError("smtp down")))
        task = lifecycle.create(OWNER, _params(emailNotify=True))
        lifecycle.trigger_now(OWNER, task.id)
        await jobs.run_due()

        record = history.list_for_task(task.id)[0]
        assert record.status is ExecutionStatus.SUCCESS
        assert record.metadata.notification_sent is False
        assert record.metadata.notification_error == "smtp down"

    @pytest.mark.asyncio
    async def test_notifier_reports_failure(self, make_coordinator, lifecycle, history, jobs):
        make_coordinator(notifier=RecordingNotifier(result=False))
        task = lifecycle.create(OWNER, _params(emailNotify=True))
        lifecycle.trigger_now(OWNER, task.id)
        await jobs.run_due()

        record = history.list_for_task(task.id)[0]
        assert record.status is ExecutionStatus.SUCCESS
        assert record.metadata.notification_sent is False


class TestChangesDuringRun:
    @pytest.mark.asyncio
    async def test_paused_while_running_stays_paused(self, make_coordinator, lifecycle, history, jobs, clock):
        runner = FakeRunner(on_run=lambda request: lifecycle.pause(OWNER, request.task_id))
        make_coordinator(runner=runner)
        task = lifecycle.create(OWNER, _params())
        await _fire(jobs, clock, task.next_execution_at)

        stored = lifecycle.get(OWNER, task.id)
        assert stored.status is TaskStatus.PAUSED
        assert stored.pending_job_handle is None
        assert stored.last_executed_at == task.next_execution_at
        assert jobs.pending_jobs_for_task(task.id) == []
        assert history.list_for_task(task.id)[0].status is ExecutionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_schedule_edited_during_manual_run(self, make_coordinator, lifecycle, jobs):
        def move_to_evening(request):
            lifecycle.update(OWNER, request.task_id, UpdateTaskParams.model_validate({"scheduledTime": "18:00"}))

        make_coordinator(runner=FakeRunner(on_run=move_to_evening))
        task = lifecycle.create(OWNER, _params())
        lifecycle.trigger_now(OWNER, task.id)
        assert await jobs.run_due() == 1

        stored = lifecycle.get(OWNER, task.id)
        assert stored.status is TaskStatus.ACTIVE
        assert stored.scheduled_time == "18:00"
        assert stored.next_execution_at == datetime(2024, 3, 8, 23, 0, tzinfo=UTC)
        pending = jobs.pending_jobs_for_task(task.id)
        assert [j.handle for j in pending] == [stored.pending_job_handle]
        assert pending[0].run_at == stored.next_execution_at

    @pytest.mark.asyncio
    async def test_schedule_edited_during_scheduled_run(self, make_coordinator, lifecycle, jobs, clock):
        def move_to_evening(request):
            lifecycle.update(OWNER, request.task_id, UpdateTaskParams.model_validate({"scheduledTime": "18:00"}))

        make_coordinator(runner=FakeRunner(on_run=move_to_evening))
        task = lifecycle.create(OWNER, _params())
        assert await _fire(jobs, clock, task.next_execution_at) == 1

        # Same evening, not the day after
        stored = lifecycle.get(OWNER, task.id)
        assert stored.status is TaskStatus.ACTIVE
        assert stored.next_execution_at == datetime(2024, 3, 9, 23, 0, tzinfo=UTC)
        assert [j.handle for j in jobs.pending_jobs_for_task(task.id)] == [stored.pending_job_handle]

    @pytest.mark.asyncio
    async def test_deleted_while_running(self, make_coordinator, lifecycle, jobs, clock):
        runner = FakeRunner(on_run=lambda request: lifecycle.delete(OWNER, request.task_id))
        make_coordinator(runner=runner)
        task = lifecycle.create(OWNER, _params())
        assert await _fire(jobs, clock, task.next_execution_at) == 1
        assert lifecycle.load(task.id) is None
        assert jobs.pending_jobs_for_task(task.id) == []


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_history_trimmed_after_run(self, make_coordinator, db, lifecycle, jobs, clock):
        tracker = HistoryTracker(db.history_repo, keep_count=2, clock=clock)
        make_coordinator(tracker=tracker)
        task = lifecycle.create(OWNER, _params())
        for _ in range(3):
            lifecycle.trigger_now(OWNER, task.id)
            await jobs.run_due()
            clock.advance(minutes=1)
        assert len(tracker.list_for_task(task.id)) == 2


class TestTruncateSummary:
    def test_short_text_untouched(self):
        assert truncate_summary("  hello  ", 10) == "hello"

    def test_long_text_truncated(self):
        result = truncate_summary("x" * 50, 20)
        assert len(result) == 20
        assert result.endswith("...")
