"""Command dispatcher and base handler for the owner-scoped task API."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from chatsched.infrastructure.logger import logger
from chatsched.scheduling.errors import SchedulingError
from chatsched.scheduling.history import HistoryTracker
from chatsched.scheduling.task_service import TaskLifecycleManager


class CommandError(Exception):
    """Error raised by command handlers for malformed requests."""

    def __init__(self, message: str, details: dict[str, Any] | None = None, code: str = "invalid_request") -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}


@dataclass
class ApiDeps:
    lifecycle: TaskLifecycleManager
    history: HistoryTracker


@dataclass
class CommandContext:
    owner_id: str
    deps: ApiDeps


class CommandHandler(ABC):
    """Base class for API command handlers."""

    @property
    @abstractmethod
    def command(self) -> str: ...

    @abstractmethod
    def validate(self, data: dict[str, Any]) -> Any: ...

    @abstractmethod
    def execute(self, payload: Any, context: CommandContext) -> Any: ...

    def handle(self, data: dict[str, Any], owner_id: str, deps: ApiDeps) -> Any:
        context = CommandContext(owner_id=owner_id, deps=deps)
        validated = self.validate(data)
        return self.execute(validated, context)


def _error(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"ok": False, "error": {"code": code, "message": message, "details": details or {}}}


class CommandDispatcher:
    """Routes commands to registered handlers and maps expected errors to responses."""

    def __init__(self, handlers: list[CommandHandler], deps: ApiDeps) -> None:
        self._handlers: dict[str, CommandHandler] = {h.command: h for h in handlers}
        self._deps = deps

    @property
    def commands(self) -> list[str]:
        return sorted(self._handlers)

    def dispatch(self, data: dict[str, Any], owner_id: str) -> dict[str, Any]:
        command_type = data.get("type")
        handler = self._handlers.get(command_type)  # type: ignore[arg-type]
        if not handler:
            logger.warning("Unknown command", type=command_type)
            return _error("unknown_command", f"Unknown command: {command_type}")
        if not owner_id:
            return _error("invalid_request", "Missing owner", {"command": command_type})

        try:
            result = handler.handle(data, owner_id, self._deps)
        except SchedulingError as err:
            logger.warning(err.message, command=command_type, owner_id=owner_id, code=err.code, details=err.details)
            return _error(err.code, err.message, err.details)
        except CommandError as err:
            logger.warning(err.args[0], command=command_type, owner_id=owner_id, details=err.details)
            return _error(err.code, err.args[0], err.details)
        except ValidationError as err:
            problems = [
                {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in err.errors()
            ]
            logger.warning("Invalid request", command=command_type, owner_id=owner_id, problems=problems)
            return _error("invalid_request", "Invalid request", {"problems": problems})
        return {"ok": True, "result": result}
