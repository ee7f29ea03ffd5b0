"""Task Executor — admission, spawn, supervision and finalization of agent runs.

One invocation of ``run_task_in_background`` moves through::

    admitted → container verified → quota checked → executing → finalizing → persisted

- Admission is refused (nothing mutated) when the project already has a
  running task or the global ``max_concurrent_tasks`` cap is reached.  The
  capacity check and the handle registration happen with no await between
  them, so two admissions can never both pass on the same event loop.
- Before spawning, the sandbox is self-healed and the workspace disk quota is
  checked; a failure here is reported without persisting anything.
- The agent runs via ``docker exec`` and streams NDJSON on stdout.  ``result``
  events are kept as the outcome; ``assistant`` text is surfaced as progress
  at most once per ``progress_interval`` seconds.
- A per-run watchdog enforces ``timeout_minutes``.  Timeout and
  ``cancel_task`` both go through the same ``CancellationToken`` and the same
  idempotent finalize step.
- Every run records its in-container PID in a pid file so cleanup can
  terminate exactly that process tree.

Per-task errors never propagate out of the background task: each run ends
with exactly one ``on_complete`` or ``on_error`` callback.
"""

from __future__ import annotations

import asyncio
import codecs
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from codebox.config import CodeExecutionConfig
from codebox.errors import (
    ConcurrencyLimitExceeded,
    CredentialInjectionFailed,
    InfrastructureError,
    InfrastructureUnavailable,
    ProjectNotFound,
    TaskAlreadyRunning,
    TaskCancelled,
    TaskExecutionFailed,
    TaskOOMKilled,
    TaskRejected,
    TaskTimeout,
)
from codebox.models import (
    AssistantEvent,
    ContainerStatus,
    HealthStatus,
    ProjectRecord,
    ProjectStatus,
    ResultEvent,
    TaskCallbacks,
    TaskOutcome,
    TaskResult,
    validate_project_name,
)
from codebox.ndjson import parse_ndjson_line
from codebox.recovery import reap_orphaned_agents, recover_on_startup
from codebox.registry import ProjectRegistry
from codebox.resource_monitor import WorkspaceMonitor
from codebox.sandbox.config import (
    KILL_PIDFILE_SCRIPT,
    REMOVE_PIDFILE_SCRIPT,
    SandboxConfig,
    pidfile_path,
)
from codebox.sandbox.docker import DockerCLI
from codebox.sandbox.manager import SandboxManager

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 10.0  # seconds between progress callbacks
PROGRESS_MAX_CHARS = 300
EXIT_WAIT = 5.0  # seconds to wait for an exit code after the stream closes
KILL_GRACE = 5.0  # seconds between SIGTERM and SIGKILL
READ_CHUNK = 64 * 1024
OOM_EXIT_CODE = 137

# Records the shell's PID, then replaces the shell with the agent CLI.
_PIDFILE_WRAPPER = 'echo $$ > "$0"; exec "$@"'


class CancelReason(str, enum.Enum):
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class CancellationToken:
    """Cancellation signal with an optional monotonic deadline.

    The first ``cancel()`` wins; later calls don't change the reason.
    """

    def __init__(self) -> None:
        self.deadline: float | None = None
        self.reason: CancelReason | None = None
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self.reason is not None

    def arm(self, seconds: float) -> None:
        self.deadline = time.monotonic() + seconds

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def cancel(self, reason: CancelReason = CancelReason.CANCELLED) -> None:
        if self.reason is None:
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class RunningTaskHandle:
    """In-memory record of one admitted run. Never persisted."""

    project_name: str
    project_id: int
    run_id: str
    pidfile: str
    token: CancellationToken = field(default_factory=CancellationToken)
    process: asyncio.subprocess.Process | None = None
    watchdog: asyncio.Task | None = None
    finalized: bool = False
    orphan_reaped: bool = False


@dataclass
class _StreamState:
    last_result: ResultEvent | None = None
    last_progress_at: float | None = None


class TaskExecutor:
    """Runs agent tasks inside the shared sandbox container.

    A single instance owns the running-task map; nothing else mutates it.
    """

    def __init__(
        self,
        config: CodeExecutionConfig,
        registry: ProjectRegistry,
        docker: DockerCLI | None = None,
        *,
        sandbox: SandboxManager | None = None,
        progress_interval: float = PROGRESS_INTERVAL,
        exit_wait: float = EXIT_WAIT,
        kill_grace: float = KILL_GRACE,
    ) -> None:
        self.config = config
        self.registry = registry
        self.docker = docker or DockerCLI()
        self.sandbox = sandbox or SandboxManager(
            self.docker, SandboxConfig.from_execution_config(config)
        )
        self.monitor = WorkspaceMonitor(self.docker, self.sandbox.container_name)
        self._progress_interval = progress_interval
        self._exit_wait = exit_wait
        self._kill_grace = kill_grace

        self._running: dict[str, RunningTaskHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self) -> dict[str, int]:
        """Recover from any crash, then bring up the sandbox stack.

        Raises:
            InfrastructureUnavailable: Docker is not reachable.
            InfrastructureError: The stack could not be started.
        """
        summary = await recover_on_startup(self.registry)

        if not await self.docker.is_available():
            raise InfrastructureUnavailable()
        await self.sandbox.start_stack()
        summary["reaped"] = await reap_orphaned_agents(self.docker, self.sandbox.container_name)

        self._initialized = True
        logger.info(
            "Code executor initialized (max_concurrent_tasks=%d, timeout=%dm)",
            self.config.max_concurrent_tasks,
            self.config.timeout_minutes,
        )
        return summary

    async def destroy_sandbox(self, purge: bool = False) -> None:
        """Cancel every running task and stop (or with ``purge``, remove) the stack.

        Safe to call more than once.
        """
        for name in list(self._running):
            await self.cancel_task(name)

        pending = [t for t in self._tasks if not t.done()]
        if pending:
            _, still_running = await asyncio.wait(
                pending, timeout=self._kill_grace + self._exit_wait + 5
            )
            for task in still_running:
                task.cancel()

        if purge:
            await self.sandbox.destroy_stack()
        else:
            await self.sandbox.stop_stack()
        self._initialized = False

    # ── Projects ─────────────────────────────────────────────────────────

    async def create_project(self, name: str, user_id: str) -> ProjectRecord:
        """Create a project and its working directory.

        Raises:
            InvalidProjectName, ProjectAlreadyExists, ProjectQuotaExceeded
        """
        validate_project_name(name)
        project = await self.registry.create_project(
            name, user_id, max_projects=self.config.max_projects
        )
        await self._exec_best_effort("mkdir", "-p", self.sandbox.config.project_dir(name))
        return project

    async def delete_project(self, name: str) -> None:
        """Cancel any running task, remove the working directory, soft-delete the row.

        Raises:
            ProjectNotFound: No live project with this name.
        """
        validate_project_name(name)
        if await self.registry.get_project(name) is None:
            raise ProjectNotFound(name)

        await self.cancel_task(name)
        await self._exec_best_effort("rm", "-rf", self.sandbox.config.project_dir(name))
        await self.registry.mark_deleted(name)

    async def get_project(self, name: str) -> ProjectRecord | None:
        return await self.registry.get_project(name)

    async def list_projects(self, user_id: str | None = None) -> list[ProjectRecord]:
        return await self.registry.list_projects(user_id)

    # ── Tasks ────────────────────────────────────────────────────────────

    def is_task_running(self, name: str) -> bool:
        return name in self._running

    def get_running_task_count(self) -> int:
        return len(self._running)

    async def run_task_in_background(
        self, name: str, prompt: str, user_id: str, callbacks: TaskCallbacks
    ) -> asyncio.Task | None:
        """Admit and start a task; returns its asyncio.Task, or None if rejected.

        A rejection is reported through ``callbacks.on_error``.
        """
        try:
            handle = await self._admit(name)
        except (TaskRejected, InfrastructureError) as e:
            logger.info("Task for %s rejected: %s", name, e)
            await self._safe_callback(callbacks.on_error, str(e), name)
            return None

        task = asyncio.create_task(
            self._execute(handle, prompt, user_id, callbacks),
            name=f"codebox-task-{name}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def cancel_task(self, name: str) -> bool:
        """Cancel a running task. Returns False if nothing was running.

        The project goes back to ``active`` so it can be retried.
        """
        handle = self._running.pop(name, None)
        if handle is None:
            return False

        handle.token.cancel(CancelReason.CANCELLED)
        self._terminate(handle)
        await self._kill_orphan(handle)
        await self.registry.update_status(name, ProjectStatus.ACTIVE)
        logger.info("Task for %s cancelled (run=%s)", name, handle.run_id)
        return True

    async def _admit(self, name: str) -> RunningTaskHandle:
        if not self._initialized:
            raise InfrastructureUnavailable("Code execution is not initialized.")
        validate_project_name(name)
        project = await self.registry.get_project(name)
        if project is None or project.id is None:
            raise ProjectNotFound(name)

        # No await between the checks and the registration below.
        if name in self._running:
            raise TaskAlreadyRunning(name)
        if len(self._running) >= self.config.max_concurrent_tasks:
            raise ConcurrencyLimitExceeded(self.config.max_concurrent_tasks)

        run_id = uuid.uuid4().hex[:12]
        handle = RunningTaskHandle(
            project_name=name,
            project_id=project.id,
            run_id=run_id,
            pidfile=pidfile_path(name, run_id),
        )
        self._running[name] = handle
        logger.info("Task admitted for %s (run=%s)", name, run_id)
        return handle

    async def _execute(
        self, handle: RunningTaskHandle, prompt: str, user_id: str, callbacks: TaskCallbacks
    ) -> None:
        name = handle.project_name
        marked_running = False
        try:
            try:
                await self.sandbox.ensure_running()
                await self.monitor.check_quota()
            except (TaskRejected, InfrastructureError) as e:
                await self._finalize(handle)
                logger.warning("Task for %s not started: %s", name, e)
                await self._safe_callback(callbacks.on_error, str(e), name)
                return

            if handle.token.cancelled:
                await self._finalize(handle)
                await self._safe_callback(callbacks.on_error, TaskCancelled().message, name)
                return

            await self._exec_best_effort("mkdir", "-p", self.sandbox.config.project_dir(name))
            await self.registry.update_status(name, ProjectStatus.RUNNING)
            marked_running = True

            follow_up = await self.registry.count_tasks(handle.project_id) > 0
            cmd = self.build_agent_command(name, prompt, follow_up=follow_up, pidfile=handle.pidfile)

            if handle.token.cancelled:
                await self._finalize(handle)
                await self.registry.update_status(name, ProjectStatus.ACTIVE)
                await self._safe_callback(callbacks.on_error, TaskCancelled().message, name)
                return

            handle.process = await self.docker.spawn(*cmd)
            handle.token.arm(self.config.timeout_minutes * 60)
            handle.watchdog = asyncio.create_task(
                self._watchdog(handle), name=f"watchdog-{name}"
            )
            logger.info(
                "Agent started for %s (run=%s, user=%s, follow_up=%s)",
                name,
                handle.run_id,
                user_id,
                follow_up,
            )
            if handle.token.cancelled:
                self._terminate(handle)

            state, stderr_text = await self._stream(handle, callbacks)
            exit_code = await self._wait_exit(handle.process)
            await self._finalize(handle)

            result = self._build_result(handle, state.last_result, stderr_text, exit_code)
            if result.outcome == TaskOutcome.CANCELLED:
                new_status = None  # cancel_task already reset it to active
            elif result.success:
                new_status = ProjectStatus.COMPLETED
            else:
                new_status = ProjectStatus.ERROR
            await self.registry.record_task_result(name, prompt, result, status=new_status)

            logger.info(
                "Task for %s finished: outcome=%s exit=%d turns=%d cost=$%.4f",
                name,
                result.outcome.value,
                result.exit_code,
                result.num_turns,
                result.cost_usd,
            )
            if result.success:
                await self._safe_callback(callbacks.on_complete, result, name)
            else:
                await self._safe_callback(callbacks.on_error, result.result_text, name)

        except asyncio.CancelledError:
            logger.info("Task for %s interrupted", name)
            await self._finalize(handle)
            raise
        except Exception as e:
            logger.exception("Task for %s failed unexpectedly", name)
            await self._finalize(handle)
            failure = TaskExecutionFailed(f"Task failed: {e}")
            if marked_running:
                result = TaskResult(success=False, result_text=failure.message)
                try:
                    await self.registry.record_task_result(
                        name, prompt, result, status=ProjectStatus.ERROR
                    )
                except Exception:
                    logger.exception("Could not record failure for %s", name)
            await self._safe_callback(callbacks.on_error, failure.message, name)

    def build_agent_command(
        self, name: str, prompt: str, *, follow_up: bool, pidfile: str
    ) -> list[str]:
        """``docker exec`` arguments for one agent run in the project's directory."""
        cfg = self.config
        args = [
            "exec",
            "-w",
            self.sandbox.config.project_dir(name),
            self.sandbox.container_name,
            "sh",
            "-c",
            _PIDFILE_WRAPPER,
            pidfile,
            "claude",
            "-p",
            prompt,
            "--dangerously-skip-permissions",
            "--output-format",
            "stream-json",
            "--verbose",
            "--model",
            cfg.model,
            "--max-turns",
            str(cfg.max_turns),
        ]
        if cfg.allowed_tools:
            args += ["--allowed-tools", ",".join(cfg.allowed_tools)]
        if follow_up:
            args.append("--continue")
        if cfg.append_system_prompt:
            args += ["--append-system-prompt", cfg.append_system_prompt]
        return args

    # ── Streaming ────────────────────────────────────────────────────────

    async def _stream(
        self, handle: RunningTaskHandle, callbacks: TaskCallbacks
    ) -> tuple[_StreamState, str]:
        """Consume stdout line by line until EOF. Returns (state, stderr text)."""
        proc = handle.process
        assert proc is not None and proc.stdout is not None and proc.stderr is not None
        stderr_task = asyncio.create_task(proc.stderr.read())

        state = _StreamState()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        try:
            while True:
                chunk = await proc.stdout.read(READ_CHUNK)
                if not chunk:
                    break
                buffer += decoder.decode(chunk)
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    await self._handle_line(line, state, callbacks)

            buffer += decoder.decode(b"", final=True)
            if buffer.strip():
                event = parse_ndjson_line(buffer)
                if isinstance(event, ResultEvent):
                    state.last_result = event

            try:
                stderr_bytes = await asyncio.wait_for(stderr_task, timeout=self._exit_wait)
            except asyncio.TimeoutError:
                stderr_bytes = b""
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
        return state, stderr_bytes.decode(errors="replace").strip()

    async def _handle_line(self, line: str, state: _StreamState, callbacks: TaskCallbacks) -> None:
        event = parse_ndjson_line(line)
        if event is None:
            return
        if isinstance(event, ResultEvent):
            state.last_result = event
        elif isinstance(event, AssistantEvent) and event.text:
            now = time.monotonic()
            if state.last_progress_at is None or now - state.last_progress_at >= self._progress_interval:
                state.last_progress_at = now
                await self._safe_callback(callbacks.on_progress, event.text[:PROGRESS_MAX_CHARS])

    async def _wait_exit(self, proc: asyncio.subprocess.Process | None) -> int:
        if proc is None:
            return -1
        try:
            code = await asyncio.wait_for(proc.wait(), timeout=self._exit_wait)
        except asyncio.TimeoutError:
            return -1
        return code if code is not None else -1

    def _build_result(
        self,
        handle: RunningTaskHandle,
        last: ResultEvent | None,
        stderr_text: str,
        exit_code: int,
    ) -> TaskResult:
        reason = handle.token.reason
        success = reason is None and last is not None and not last.is_error and exit_code == 0

        if reason == CancelReason.TIMEOUT:
            text = TaskTimeout(self.config.timeout_minutes).message
            outcome = TaskOutcome.TIMED_OUT
        elif reason == CancelReason.CANCELLED:
            text = TaskCancelled().message
            outcome = TaskOutcome.CANCELLED
        elif exit_code == OOM_EXIT_CODE:
            text = TaskOOMKilled(self.config.resources.memory).message
            outcome = TaskOutcome.FAILED
        else:
            if last is not None and last.text is not None:
                text = last.text
            else:
                text = stderr_text or f"No output (exit code: {exit_code})"
            outcome = TaskOutcome.COMPLETED if success else TaskOutcome.FAILED

        return TaskResult(
            success=success,
            result_text=text,
            duration_ms=(last.duration_ms or 0) if last else 0,
            num_turns=(last.num_turns or 0) if last else 0,
            cost_usd=(last.cost_usd or 0.0) if last else 0.0,
            exit_code=exit_code,
            outcome=outcome,
        )

    # ── Timeout / cleanup ────────────────────────────────────────────────

    async def _watchdog(self, handle: RunningTaskHandle) -> None:
        """Fire the token at the deadline, then stop the agent process."""
        try:
            await asyncio.wait_for(handle.token.wait(), timeout=handle.token.remaining())
        except asyncio.TimeoutError:
            logger.warning(
                "Task timeout for %s (%dm) — killing", handle.project_name, self.config.timeout_minutes
            )
            handle.token.cancel(CancelReason.TIMEOUT)

        proc = handle.process
        if proc is None or proc.returncode is not None:
            return
        self._terminate(handle)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._kill_grace)
        except asyncio.TimeoutError:
            logger.warning("Agent for %s ignored SIGTERM — sending SIGKILL", handle.project_name)
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    @staticmethod
    def _cancel_watchdog(handle: RunningTaskHandle) -> None:
        watchdog = handle.watchdog
        if watchdog and not watchdog.done() and watchdog is not asyncio.current_task():
            watchdog.cancel()

    @staticmethod
    def _terminate(handle: RunningTaskHandle) -> None:
        proc = handle.process
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            pass

    async def _finalize(self, handle: RunningTaskHandle) -> None:
        """Idempotent cleanup shared by completion, timeout, cancel and errors."""
        if handle.finalized:
            return
        handle.finalized = True
        exited = (
            handle.process is not None
            and handle.process.returncode is not None
            and not handle.token.cancelled
        )
        self._cancel_watchdog(handle)
        if self._running.get(handle.project_name) is handle:
            del self._running[handle.project_name]
        self._terminate(handle)
        await self._kill_orphan(handle, signal=not exited)

    async def _kill_orphan(self, handle: RunningTaskHandle, *, signal: bool = True) -> None:
        """Terminate the in-container process tree recorded in the run's pid file.

        With ``signal=False`` the pid file is only removed.
        """
        if handle.process is None or handle.orphan_reaped:
            return
        handle.orphan_reaped = True
        try:
            result = await self.docker.exec(
                self.sandbox.container_name,
                "sh",
                "-c",
                KILL_PIDFILE_SCRIPT if signal else REMOVE_PIDFILE_SCRIPT,
                handle.pidfile,
                timeout=15,
            )
        except Exception:
            logger.debug("Orphan cleanup for %s failed", handle.project_name, exc_info=True)
            return
        if not result.ok:
            logger.debug("Orphan cleanup for %s exited %d: %s", handle.project_name, result.exit_code, result.stderr)

    # ── Health / credentials ─────────────────────────────────────────────

    async def health_check(self) -> HealthStatus:
        try:
            sandbox, proxy = await self.sandbox.health()
        except OSError as e:
            logger.error("Health check failed: %s", e)
            sandbox = proxy = ContainerStatus.NOT_FOUND
        running = self.get_running_task_count()
        return HealthStatus(
            healthy=sandbox == ContainerStatus.RUNNING and proxy == ContainerStatus.RUNNING,
            message=f"Sandbox: {sandbox.value}, Proxy: {proxy.value}, Tasks: {running}",
            sandbox=sandbox,
            proxy=proxy,
            running_tasks=running,
        )

    async def push_credentials(self, credentials_json: str) -> bool:
        """Copy rotated credentials into the running sandbox. Never raises."""
        try:
            pushed = await self.sandbox.credentials.push(credentials_json)
        except CredentialInjectionFailed as e:
            logger.error("Credential push failed: %s", e)
            return False
        except OSError as e:
            logger.error("Credential push failed: %s", e)
            return False
        return pushed

    # ── Helpers ──────────────────────────────────────────────────────────

    async def _exec_best_effort(self, *cmd: str) -> None:
        try:
            result = await self.docker.exec(self.sandbox.container_name, *cmd, timeout=60)
        except OSError:
            logger.debug("docker exec %s failed", " ".join(cmd), exc_info=True)
            return
        if not result.ok:
            logger.debug("docker exec %s exited %d: %s", " ".join(cmd), result.exit_code, result.stderr)

    @staticmethod
    async def _safe_callback(callback: Callable[..., Awaitable[None]], *args: Any) -> None:
        try:
            await callback(*args)
        except Exception:
            logger.exception("Task callback %s raised", getattr(callback, "__name__", callback))
