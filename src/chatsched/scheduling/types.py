"""Scheduling domain types."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from chatsched.infrastructure.config import DEFAULT_TIMEZONE


class ScheduleType(StrEnum):
    ONETIME = "onetime"
    DAILY = "daily"
    WEEKLY = "weekly"


class TaskStatus(StrEnum):
    ACTIVE = "active"
    PAUSED = "paused"
    RUNNING = "running"
    ARCHIVED = "archived"


class ExecutionStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EXECUTION_STATUSES


TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.SUCCESS, ExecutionStatus.FAILURE, ExecutionStatus.CANCELLED, ExecutionStatus.TIMEOUT}
)
FAILED_EXECUTION_STATUSES = frozenset({ExecutionStatus.FAILURE, ExecutionStatus.CANCELLED, ExecutionStatus.TIMEOUT})
IN_FLIGHT_EXECUTION_STATUSES = frozenset({ExecutionStatus.PENDING, ExecutionStatus.RUNNING})

# Statuses that count toward an owner's quota
QUOTA_TASK_STATUSES = frozenset({TaskStatus.ACTIVE, TaskStatus.RUNNING})


class ScheduledTask(BaseModel):
    id: str
    owner_id: str
    title: str
    prompt: str
    schedule_type: ScheduleType
    scheduled_time: str
    scheduled_date: str | None = None
    time_zone: str
    status: TaskStatus = TaskStatus.ACTIVE
    next_execution_at: datetime | None = None
    pending_job_handle: str | None = None
    last_executed_at: datetime | None = None
    linked_conversation_id: str | None = None
    enabled_tool_slugs: list[str] = Field(default_factory=list)
    search_enabled: bool = False
    email_notify: bool = False
    created_at: datetime

    @property
    def is_recurring(self) -> bool:
        return self.schedule_type is not ScheduleType.ONETIME

    @property
    def has_pending_job(self) -> bool:
        return self.pending_job_handle is not None


class ExecutionMetadata(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str | None = None
    model_name: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cached_input_tokens: int = 0
    total_tokens: int = 0
    server_duration_ms: int | None = None
    include_search: bool = False
    toolkit_slugs: list[str] = Field(default_factory=list)
    tool_invocations: list[str] = Field(default_factory=list)
    notification_sent: bool | None = None
    notification_error: str | None = None


class TaskExecutionRecord(BaseModel):
    execution_id: str
    task_id: str
    status: ExecutionStatus
    start_time: datetime
    end_time: datetime | None = None
    conversation_id: str | None = None
    error_message: str | None = None
    metadata: ExecutionMetadata | None = None
    is_manual_trigger: bool = False

    @property
    def duration_ms(self) -> int | None:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)


class ExecutionStats(BaseModel):
    total_executions: int
    successful_executions: int
    failed_executions: int
    running_executions: int
    completed_executions: int
    success_rate: float
    average_duration_ms: float | None = None
    last_execution: TaskExecutionRecord | None = None


class CreateTaskParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    schedule_type: ScheduleType = Field(alias="scheduleType")
    scheduled_time: str = Field(alias="scheduledTime")
    scheduled_date: str | None = Field(None, alias="scheduledDate")
    time_zone: str = Field(DEFAULT_TIMEZONE, validation_alias=AliasChoices("timeZone", "timezone", "time_zone"))
    search_enabled: bool = Field(False, validation_alias=AliasChoices("searchEnabled", "enableSearch", "search_enabled"))
    enabled_tool_slugs: list[str] = Field(default_factory=list, alias="enabledToolSlugs")
    email_notify: bool = Field(
        False, validation_alias=AliasChoices("emailNotify", "emailNotifications", "email_notify")
    )


class UpdateTaskParams(BaseModel):
    """Partial update. Only fields present in `model_fields_set` are applied."""

    model_config = ConfigDict(populate_by_name=True)

    title: str | None = Field(None, min_length=1)
    prompt: str | None = Field(None, min_length=1)
    schedule_type: ScheduleType | None = Field(None, alias="scheduleType")
    scheduled_time: str | None = Field(None, alias="scheduledTime")
    scheduled_date: str | None = Field(None, alias="scheduledDate")
    time_zone: str | None = Field(None, validation_alias=AliasChoices("timeZone", "timezone", "time_zone"))
    search_enabled: bool | None = Field(
        None, validation_alias=AliasChoices("searchEnabled", "enableSearch", "search_enabled")
    )
    enabled_tool_slugs: list[str] | None = Field(None, alias="enabledToolSlugs")
    email_notify: bool | None = Field(
        None, validation_alias=AliasChoices("emailNotify", "emailNotifications", "email_notify")
    )
    status: TaskStatus | None = None


SCHEDULE_FIELDS = ("schedule_type", "scheduled_time", "scheduled_date", "time_zone")
