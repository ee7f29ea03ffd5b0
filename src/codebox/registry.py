"""Project Registry — SQLite-backed project and task-history store.

Two tables:

- ``projects``: one row per named workspace, with a snapshot of the most
  recent task and a running cost total.  Deletion is a soft delete
  (``status = 'deleted'``); names are unique among non-deleted rows only,
  so a deleted name can be reused while its history is kept.
- ``code_tasks``: append-only execution history, foreign-keyed to projects.

Every write commits before returning; there is no write queue here.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone

import aiosqlite

from codebox.errors import ProjectAlreadyExists, ProjectQuotaExceeded
from codebox.models import (
    LIVE_STATUSES,
    ProjectRecord,
    ProjectStatus,
    TaskOutcome,
    TaskRecord,
    TaskResult,
    validate_project_name,
)

logger = logging.getLogger(__name__)

MAX_RESULT_TEXT = 10_000

SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'active'
        CHECK (status IN ('active', 'running', 'completed', 'error', 'deleted')),
    user_id TEXT NOT NULL,
    last_task_prompt TEXT,
    last_task_result TEXT,
    last_task_duration_ms INTEGER,
    last_task_turns INTEGER,
    last_task_cost_usd REAL,
    total_cost_usd REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Names are unique among live rows; deleted rows keep their name for history.
CREATE UNIQUE INDEX IF NOT EXISTS idx_projects_live_name
    ON projects(name) WHERE status != 'deleted';
CREATE INDEX IF NOT EXISTS idx_projects_user ON projects(user_id, status);

CREATE TABLE IF NOT EXISTS code_tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id),
    prompt TEXT NOT NULL,
    result_text TEXT,
    success INTEGER NOT NULL DEFAULT 0,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    num_turns INTEGER NOT NULL DEFAULT 0,
    cost_usd REAL NOT NULL DEFAULT 0,
    exit_code INTEGER NOT NULL DEFAULT -1,
    outcome TEXT NOT NULL DEFAULT 'failed',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_code_tasks_project ON code_tasks(project_id);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProjectRegistry:
    """SQLite-backed project registry with async access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Project registry initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Registry not initialized — call initialize() first")
        return self._db

    # ── Projects ─────────────────────────────────────────────────────────

    async def create_project(
        self, name: str, user_id: str, max_projects: int | None = None
    ) -> ProjectRecord:
        """Insert a new project.

        Raises:
            InvalidProjectName: ``name`` doesn't match the naming pattern.
            ProjectAlreadyExists: a live project already has this name.
            ProjectQuotaExceeded: ``user_id`` already owns ``max_projects``.
        """
        validate_project_name(name)
        if await self.get_project(name) is not None:
            raise ProjectAlreadyExists(name)
        if max_projects is not None and await self.count_active_projects(user_id) >= max_projects:
            raise ProjectQuotaExceeded(max_projects)

        now = _now()
        try:
            await self.db.execute(
                """INSERT INTO projects (name, status, user_id, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (name, ProjectStatus.ACTIVE.value, user_id, now, now),
            )
        except sqlite3.IntegrityError as e:
            raise ProjectAlreadyExists(name) from e
        await self.db.commit()
        logger.info("Created project: %s (user=%s)", name, user_id)

        project = await self.get_project(name)
        assert project is not None
        return project

    async def get_project(self, name: str) -> ProjectRecord | None:
        """Get a live (non-deleted) project by name."""
        cursor = await self.db.execute(
            "SELECT * FROM projects WHERE name = ? AND status != 'deleted'", (name,)
        )
        row = await cursor.fetchone()
        return self._row_to_project(row) if row else None

    async def get_project_by_id(self, project_id: int) -> ProjectRecord | None:
        """Get a project row by id, including soft-deleted ones."""
        cursor = await self.db.execute("SELECT * FROM projects WHERE id = ?", (project_id,))
        row = await cursor.fetchone()
        return self._row_to_project(row) if row else None

    async def list_projects(self, user_id: str | None = None) -> list[ProjectRecord]:
        """Live projects, most recently updated first."""
        if user_id is not None:
            cursor = await self.db.execute(
                """SELECT * FROM projects WHERE status != 'deleted' AND user_id = ?
                   ORDER BY updated_at DESC, id DESC""",
                (user_id,),
            )
        else:
            cursor = await self.db.execute(
                "SELECT * FROM projects WHERE status != 'deleted' ORDER BY updated_at DESC, id DESC"
            )
        rows = await cursor.fetchall()
        return [self._row_to_project(row) for row in rows]

    async def count_active_projects(self, user_id: str | None = None) -> int:
        """Projects counted against the quota (everything but deleted)."""
        placeholders = ", ".join("?" for _ in LIVE_STATUSES)
        params: list[str] = [s.value for s in LIVE_STATUSES]
        sql = f"SELECT COUNT(*) FROM projects WHERE status IN ({placeholders})"
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        cursor = await self.db.execute(sql, params)
        row = await cursor.fetchone()
        return row[0]

    async def update_status(self, name: str, status: ProjectStatus) -> bool:
        """Set a live project's status. Returns False if no such project."""
        cursor = await self.db.execute(
            "UPDATE projects SET status = ?, updated_at = ? WHERE name = ? AND status != 'deleted'",
            (status.value, _now(), name),
        )
        await self.db.commit()
        return cursor.rowcount > 0

    async def mark_deleted(self, name: str) -> bool:
        """Soft-delete a project. Its task history is retained."""
        cursor = await self.db.execute(
            "UPDATE projects SET status = 'deleted', updated_at = ? WHERE name = ? AND status != 'deleted'",
            (_now(), name),
        )
        await self.db.commit()
        if cursor.rowcount:
            logger.info("Soft-deleted project: %s", name)
        return cursor.rowcount > 0

    async def reset_stuck_projects(self) -> int:
        """Move every ``running`` project to ``error``; returns the count.

        Nothing is running right after a restart, so any ``running`` row is
        left over from a crash.  A second call without new activity is a no-op.
        """
        cursor = await self.db.execute(
            "UPDATE projects SET status = 'error', updated_at = ? WHERE status = 'running'",
            (_now(),),
        )
        await self.db.commit()
        return cursor.rowcount

    async def get_total_cost(self) -> float:
        """Cost across all projects, deleted ones included."""
        cursor = await self.db.execute("SELECT COALESCE(SUM(total_cost_usd), 0) FROM projects")
        row = await cursor.fetchone()
        return float(row[0])

    # ── Task history ─────────────────────────────────────────────────────

    async def record_task_result(
        self,
        name: str,
        prompt: str,
        result: TaskResult,
        status: ProjectStatus | None = None,
    ) -> TaskRecord | None:
        """Append a task row and update the project's snapshot in one commit.

        ``total_cost_usd`` grows by ``result.cost_usd``.  When ``status`` is
        given the project moves to it in the same transaction.  Returns None
        if the project no longer exists (deleted mid-run).
        """
        project = await self.get_project(name)
        if project is None or project.id is None:
            logger.warning("Not recording task result: project %s no longer exists", name)
            return None

        now = _now()
        result_text = result.result_text[:MAX_RESULT_TEXT]
        try:
            cursor = await self.db.execute(
                """INSERT INTO code_tasks
                   (project_id, prompt, result_text, success, duration_ms, num_turns,
                    cost_usd, exit_code, outcome, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    project.id,
                    prompt,
                    result_text,
                    1 if result.success else 0,
                    result.duration_ms,
                    result.num_turns,
                    result.cost_usd,
                    result.exit_code,
                    result.outcome.value,
                    now,
                ),
            )
            task_id = cursor.lastrowid

            await self.db.execute(
                """UPDATE projects SET
                     last_task_prompt = ?,
                     last_task_result = ?,
                     last_task_duration_ms = ?,
                     last_task_turns = ?,
                     last_task_cost_usd = ?,
                     total_cost_usd = total_cost_usd + ?,
                     status = COALESCE(?, status),
                     updated_at = ?
                   WHERE id = ?""",
                (
                    prompt,
                    result_text,
                    result.duration_ms,
                    result.num_turns,
                    result.cost_usd,
                    result.cost_usd,
                    status.value if status is not None else None,
                    now,
                    project.id,
                ),
            )
        except Exception:
            await self.db.rollback()
            raise
        await self.db.commit()

        return TaskRecord(
            id=task_id,
            project_id=project.id,
            prompt=prompt,
            result_text=result_text,
            success=result.success,
            duration_ms=result.duration_ms,
            num_turns=result.num_turns,
            cost_usd=result.cost_usd,
            exit_code=result.exit_code,
            outcome=result.outcome,
            created_at=datetime.fromisoformat(now),
        )

    async def count_tasks(self, project_id: int) -> int:
        cursor = await self.db.execute(
            "SELECT COUNT(*) FROM code_tasks WHERE project_id = ?", (project_id,)
        )
        row = await cursor.fetchone()
        return row[0]

    async def get_task_history(self, project_id: int, limit: int = 20) -> list[TaskRecord]:
        """Most recent tasks first. Works for soft-deleted projects too."""
        cursor = await self.db.execute(
            "SELECT * FROM code_tasks WHERE project_id = ? ORDER BY id DESC LIMIT ?",
            (project_id, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    # ── Row mapping ──────────────────────────────────────────────────────

    @staticmethod
    def _row_to_project(row: aiosqlite.Row) -> ProjectRecord:
        return ProjectRecord(
            id=row["id"],
            name=row["name"],
            status=ProjectStatus(row["status"]),
            user_id=row["user_id"],
            last_task_prompt=row["last_task_prompt"],
            last_task_result=row["last_task_result"],
            last_task_duration_ms=row["last_task_duration_ms"],
            last_task_turns=row["last_task_turns"],
            last_task_cost_usd=row["last_task_cost_usd"],
            total_cost_usd=row["total_cost_usd"] or 0.0,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> TaskRecord:
        return TaskRecord(
            id=row["id"],
            project_id=row["project_id"],
            prompt=row["prompt"],
            result_text=row["result_text"],
            success=bool(row["success"]),
            duration_ms=row["duration_ms"],
            num_turns=row["num_turns"],
            cost_usd=row["cost_usd"],
            exit_code=row["exit_code"],
            outcome=TaskOutcome(row["outcome"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
