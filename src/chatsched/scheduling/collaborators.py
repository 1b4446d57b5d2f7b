"""Contracts for the services a task execution depends on.

The engine never talks to a model provider, mail server, or chat UI
directly. It hands a `TaskRunRequest` to a `TaskRunner`, stores the turn via a
`ConversationStore`, and reports successes through a `Notifier`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from chatsched.infrastructure.logger import logger


@dataclass
class TaskRunRequest:
    task_id: str
    owner_id: str
    title: str
    prompt: str
    time_zone: str
    conversation_id: str
    enabled_tool_slugs: list[str] = field(default_factory=list)
    search_enabled: bool = False
    email_notify: bool = False


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cached_input_tokens: int = 0
    total_tokens: int = 0


@dataclass
class RunSuccess:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    tool_invocations: list[str] = field(default_factory=list)
    model_id: str | None = None
    model_name: str | None = None


@dataclass
class RunFailure:
    error: str


@dataclass
class RunTimeout:
    message: str = "Task execution timed out"


RunOutcome = RunSuccess | RunFailure | RunTimeout


class TaskRunner(Protocol):
    async def run(self, request: TaskRunRequest) -> RunOutcome:
        """Generate a response for the task prompt. May raise; the coordinator records it as a failure."""
        ...


class ConversationStore(Protocol):
    def create_conversation(self, owner_id: str, title: str) -> str: ...

    def conversation_exists(self, conversation_id: str) -> bool: ...

    def append_turn(
        self, conversation_id: str, prompt: str, response: str, metadata: dict[str, Any] | None = None
    ) -> None: ...


class Notifier(Protocol):
    def send_summary(self, owner_id: str, title: str, content: str, conversation_id: str | None) -> bool:
        """Deliver a run summary. Returns False on failure instead of raising."""
        ...


class LogNotifier:
    """Notifier that only writes the summary to the log."""

    def send_summary(self, owner_id: str, title: str, content: str, conversation_id: str | None) -> bool:
        logger.info(
            "Task summary",
            owner_id=owner_id,
            title=title,
            conversation_id=conversation_id,
            chars=len(content),
        )
        return True
