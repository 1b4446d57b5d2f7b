"""Task API handlers: create, update, delete, list, trigger, limits, history."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from chatsched.api.dispatcher import CommandContext, CommandError, CommandHandler
from chatsched.infrastructure.config import HISTORY_DEFAULT_LIMIT
from chatsched.scheduling.errors import NotFoundError
from chatsched.scheduling.recurrence import coerce_schedule_type
from chatsched.scheduling.types import CreateTaskParams, ScheduledTask, UpdateTaskParams


def _body(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k != "type"}


def _require_id(data: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    raise CommandError(f"Missing {keys[0]}", {"field": keys[0]})


_SCHEDULE_TYPE_KEYS = ("scheduleType", "schedule_type")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _validate_params(model: type[ModelT], body: dict[str, Any]) -> ModelT:
    """Validate a task payload; an unsupported schedule type is a schedule error, not a malformed request."""
    try:
        return model.model_validate(body)
    except ValidationError as err:
        for problem in err.errors():
            if problem["loc"] and problem["loc"][0] in _SCHEDULE_TYPE_KEYS and problem["type"] != "missing":
                coerce_schedule_type(body.get(problem["loc"][0]))
        raise


def _task_to_dict(task: ScheduledTask) -> dict[str, Any]:
    return task.model_dump(mode="json")


# --- Task commands ---


class CreateTaskHandler(CommandHandler):
    command = "create_task"

    def validate(self, data: dict[str, Any]) -> CreateTaskParams:
        return _validate_params(CreateTaskParams, _body(data))

    def execute(self, payload: CreateTaskParams, context: CommandContext) -> dict[str, str]:
        task = context.deps.lifecycle.create(context.owner_id, payload)
        return {"taskId": task.id}


@dataclass
class UpdateTaskPayload:
    task_id: str
    params: UpdateTaskParams


class UpdateTaskHandler(CommandHandler):
    command = "update_task"

    def validate(self, data: dict[str, Any]) -> UpdateTaskPayload:
        task_id = _require_id(data, "taskId", "task_id")
        body = {k: v for k, v in _body(data).items() if k not in ("taskId", "task_id")}
        if not body:
            raise CommandError("Nothing to update", {"taskId": task_id})
        return UpdateTaskPayload(task_id=task_id, params=_validate_params(UpdateTaskParams, body))

    def execute(self, payload: UpdateTaskPayload, context: CommandContext) -> None:
        context.deps.lifecycle.update(context.owner_id, payload.task_id, payload.params)


class DeleteTaskHandler(CommandHandler):
    command = "delete_task"

    def validate(self, data: dict[str, Any]) -> str:
        return _require_id(data, "taskId", "task_id")

    def execute(self, task_id: str, context: CommandContext) -> None:
        context.deps.lifecycle.delete(context.owner_id, task_id)


class ListTasksHandler(CommandHandler):
    command = "list_tasks"

    def validate(self, data: dict[str, Any]) -> None:
        return None

    def execute(self, payload: None, context: CommandContext) -> list[dict[str, Any]]:
        return [_task_to_dict(t) for t in context.deps.lifecycle.list_tasks(context.owner_id)]


class TriggerTaskHandler(CommandHandler):
    command = "trigger_task"

    def validate(self, data: dict[str, Any]) -> str:
        return _require_id(data, "taskId", "task_id")

    def execute(self, task_id: str, context: CommandContext) -> None:
        context.deps.lifecycle.trigger_now(context.owner_id, task_id)


class GetLimitsHandler(CommandHandler):
    command = "get_limits"

    def validate(self, data: dict[str, Any]) -> None:
        return None

    def execute(self, payload: None, context: CommandContext) -> dict[str, Any]:
        return context.deps.lifecycle.get_limits(context.owner_id).model_dump()


# --- Execution history ---


@dataclass
class HistoryQuery:
    task_id: str
    limit: int


class GetExecutionHistoryHandler(CommandHandler):
    command = "get_execution_history"

    def validate(self, data: dict[str, Any]) -> HistoryQuery:
        task_id = _require_id(data, "taskId", "task_id")
        limit = data.get("limit", HISTORY_DEFAULT_LIMIT)
        if limit is None:
            limit = HISTORY_DEFAULT_LIMIT
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise CommandError("limit must be a positive integer", {"limit": limit})
        return HistoryQuery(task_id=task_id, limit=limit)

    def execute(self, payload: HistoryQuery, context: CommandContext) -> list[dict[str, Any]]:
        task = context.deps.lifecycle.get(context.owner_id, payload.task_id)
        records = context.deps.history.list_for_task(task.id, payload.limit)
        return [r.model_dump(mode="json") for r in records]


class GetExecutionStatsHandler(CommandHandler):
    command = "get_execution_stats"

    def validate(self, data: dict[str, Any]) -> str:
        return _require_id(data, "taskId", "task_id")

    def execute(self, task_id: str, context: CommandContext) -> dict[str, Any]:
        task = context.deps.lifecycle.get(context.owner_id, task_id)
        return context.deps.history.get_stats(task.id).model_dump(mode="json")


class GetExecutionDetailsHandler(CommandHandler):
    command = "get_execution_details"

    def validate(self, data: dict[str, Any]) -> str:
        return _require_id(data, "executionId", "execution_id")

    def execute(self, execution_id: str, context: CommandContext) -> dict[str, Any] | None:
        record = context.deps.history.get_execution(execution_id)
        if record is None:
            return None
        try:
            task = context.deps.lifecycle.get(context.owner_id, record.task_id)
        except NotFoundError:
            raise NotFoundError("Execution not found", {"executionId": execution_id}) from None
        return {**record.model_dump(mode="json"), "task_title": task.title}


def default_handlers() -> list[CommandHandler]:
    return [
        CreateTaskHandler(),
        UpdateTaskHandler(),
        DeleteTaskHandler(),
        ListTasksHandler(),
        TriggerTaskHandler(),
        GetLimitsHandler(),
        GetExecutionHistoryHandler(),
        GetExecutionStatsHandler(),
        GetExecutionDetailsHandler(),
    ]
