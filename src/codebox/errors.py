"""Exception hierarchy for codebox.

Three families:

- ``InfrastructureError``: the Docker daemon, the sandbox image, the agent
  CLI or the credential copy failed.  Fatal during ``TaskExecutor.initialize``
  (the host downgrades the feature to "unavailable").
- ``TaskRejected``: a request was refused before anything was mutated.
- ``TaskFailure``: a task ran (or was about to) and ended badly.  These are
  never raised past the executor; their text becomes the ``result_text`` of
  the failed ``TaskResult``.
"""

from __future__ import annotations

from typing import Any


class CodeboxError(Exception):
    """Base exception for all codebox errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


# ── Infrastructure ───────────────────────────────────────────────────────────


class InfrastructureError(CodeboxError):
    """Base for sandbox infrastructure failures."""


class InfrastructureUnavailable(InfrastructureError):
    """Docker daemon is unreachable."""

    def __init__(self, reason: str = "Docker is not available. Install Docker and ensure it's running."):
        super().__init__(reason)


class ImageBuildFailed(InfrastructureError):
    def __init__(self, image: str, stderr: str):
        super().__init__(f"Image build failed for {image}: {stderr}", {"image": image})
        self.image = image


class AgentCliUnavailable(InfrastructureError):
    """The agent CLI could not be executed inside the sandbox container."""

    def __init__(self, container: str, stderr: str = ""):
        message = f"Claude Code CLI not available in sandbox container {container}"
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message, {"container": container})


class CredentialInjectionFailed(InfrastructureError):
    """Credentials could not be copied into the sandbox.

    Logged by callers; never aborts a running task.
    """


# ── Rejections (no state mutated) ────────────────────────────────────────────


class TaskRejected(CodeboxError):
    """Base for synchronous rejections."""


class ConcurrencyLimitExceeded(TaskRejected):
    def __init__(self, limit: int):
        super().__init__(
            f"Max {limit} concurrent task(s). Wait or cancel running task.",
            {"limit": limit},
        )
        self.limit = limit


class ProjectQuotaExceeded(TaskRejected):
    def __init__(self, limit: int):
        super().__init__(
            f"Max {limit} projects. Delete old ones before creating new ones.",
            {"limit": limit},
        )
        self.limit = limit


class InvalidProjectName(TaskRejected):
    def __init__(self, name: str):
        super().__init__(
            "Invalid project name. Use lowercase letters, digits, hyphens, 2-32 chars.",
            {"name": name},
        )
        self.name = name


class TaskAlreadyRunning(TaskRejected):
    def __init__(self, project_name: str):
        super().__init__(
            f'Task already running for "{project_name}". Cancel it before starting another.',
            {"project": project_name},
        )
        self.project_name = project_name


class DiskQuotaExceeded(TaskRejected):
    def __init__(self, used_mb: int, limit_mb: int):
        super().__init__(
            f"Workspace disk usage {used_mb} MB exceeds {limit_mb} MB limit. "
            "Delete old projects to free space.",
            {"used_mb": used_mb, "limit_mb": limit_mb},
        )
        self.used_mb = used_mb
        self.limit_mb = limit_mb


class ProjectNotFound(TaskRejected):
    def __init__(self, project_name: str):
        super().__init__(f'Project "{project_name}" not found.', {"project": project_name})
        self.project_name = project_name


class ProjectAlreadyExists(TaskRejected):
    def __init__(self, project_name: str):
        super().__init__(f'Project "{project_name}" already exists.', {"project": project_name})
        self.project_name = project_name


# ── Task failures (recorded, never propagated) ───────────────────────────────


class TaskFailure(CodeboxError):
    """Base for failed task outcomes."""


class TaskTimeout(TaskFailure):
    def __init__(self, timeout_minutes: int):
        super().__init__(
            f"Task timed out after {timeout_minutes} minute(s) and was stopped.",
            {"timeout_minutes": timeout_minutes},
        )


class TaskCancelled(TaskFailure):
    def __init__(self):
        super().__init__("Task cancelled.")


class TaskOOMKilled(TaskFailure):
    def __init__(self, memory_limit: str):
        super().__init__(
            f"Task killed: out of memory ({memory_limit} limit exceeded). "
            "Try reducing project complexity or increasing resources.memory in config.",
            {"memory_limit": memory_limit},
        )


class TaskExecutionFailed(TaskFailure):
    """Any other non-zero exit or error result."""
