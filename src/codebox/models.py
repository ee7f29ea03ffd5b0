"""Core data models for codebox."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Literal, Union

from pydantic import BaseModel, Field

from codebox.errors import InvalidProjectName

# ── Projects ─────────────────────────────────────────────────────────────────

PROJECT_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,30}[a-z0-9]$")


def validate_project_name(name: str) -> str:
    """Return ``name`` unchanged or raise InvalidProjectName."""
    if not isinstance(name, str) or not PROJECT_NAME_RE.match(name):
        raise InvalidProjectName(name)
    return name


class ProjectStatus(str, enum.Enum):
    """Persisted project lifecycle states."""

    ACTIVE = "active"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    DELETED = "deleted"


# Statuses that count against the per-user project quota.
LIVE_STATUSES = (
    ProjectStatus.ACTIVE,
    ProjectStatus.RUNNING,
    ProjectStatus.COMPLETED,
    ProjectStatus.ERROR,
)


class ProjectRecord(BaseModel):
    """One named workspace."""

    id: int | None = None
    name: str
    status: ProjectStatus = ProjectStatus.ACTIVE
    user_id: str
    last_task_prompt: str | None = None
    last_task_result: str | None = None
    last_task_duration_ms: int | None = None
    last_task_turns: int | None = None
    last_task_cost_usd: float | None = None
    total_cost_usd: float = 0.0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Tasks ────────────────────────────────────────────────────────────────────


class TaskOutcome(str, enum.Enum):
    """Terminal outcome of one task invocation."""

    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class TaskResult(BaseModel):
    """Result of one agent run, as reported to callers."""

    success: bool
    result_text: str
    duration_ms: int = 0
    num_turns: int = 0
    cost_usd: float = 0.0
    exit_code: int = -1
    outcome: TaskOutcome = TaskOutcome.FAILED


class TaskRecord(BaseModel):
    """Append-only execution record (never mutated after insert)."""

    id: int | None = None
    project_id: int
    prompt: str
    result_text: str | None = None
    success: bool = False
    duration_ms: int = 0
    num_turns: int = 0
    cost_usd: float = 0.0
    exit_code: int = -1
    outcome: TaskOutcome = TaskOutcome.FAILED
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Stream events (agent CLI stream-json output) ─────────────────────────────


class SystemEvent(BaseModel):
    type: Literal["system"] = "system"
    subtype: str | None = None


class AssistantEvent(BaseModel):
    """One assistant turn, flattened to displayable progress text."""

    type: Literal["assistant"] = "assistant"
    text: str = ""


class ResultEvent(BaseModel):
    """The final ``result`` line of a run."""

    type: Literal["result"] = "result"
    subtype: str | None = None
    text: str | None = None
    is_error: bool = False
    duration_ms: int | None = None
    num_turns: int | None = None
    cost_usd: float | None = None


StreamEvent = Union[SystemEvent, AssistantEvent, ResultEvent]


# ── Infrastructure ───────────────────────────────────────────────────────────


class ContainerStatus(str, enum.Enum):
    """Live container state, derived from the daemon on every check."""

    RUNNING = "running"
    STOPPED = "stopped"
    NOT_FOUND = "not_found"


class HealthStatus(BaseModel):
    healthy: bool
    message: str
    sandbox: ContainerStatus
    proxy: ContainerStatus
    running_tasks: int = 0
    last_check: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ── Caller callbacks ─────────────────────────────────────────────────────────


@dataclass
class TaskCallbacks:
    """Per-task notifications supplied by the host application.

    Exactly one of ``on_complete`` / ``on_error`` fires per invocation.
    """

    on_progress: Callable[[str], Awaitable[None]]
    on_complete: Callable[[TaskResult, str], Awaitable[None]]
    on_error: Callable[[str, str], Awaitable[None]]
