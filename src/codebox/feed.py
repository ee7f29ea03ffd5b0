"""Per-project task event feed — bounded in-memory ring buffers.

The HTTP host has no chat front-end to push progress into, so task callbacks
write into a ``TaskFeed`` and clients poll ``GET /projects/{name}/events``.

- Each project gets its own ``collections.deque`` (default 200 events).
  Oldest entries are silently discarded when full; nothing touches disk.
- Events are plain JSON-serializable dicts: ``timestamp``, ``project``,
  ``kind`` (``progress`` / ``complete`` / ``error``), ``text`` and, for
  ``complete``, the ``result``.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any

from codebox.models import TaskCallbacks, TaskResult

logger = logging.getLogger(__name__)


class FeedEvent(dict):
    """Typed dict wrapper for one feed entry."""

    pass


class TaskFeed:
    def __init__(self, maxlen: int = 200) -> None:
        self._maxlen = maxlen
        self._events: dict[str, deque[FeedEvent]] = {}

    # ── Write path ───────────────────────────────────────────────────────

    def push(self, project: str, kind: str, text: str, **extra: Any) -> FeedEvent:
        entry = FeedEvent(
            timestamp=datetime.now(timezone.utc).isoformat(),
            project=project,
            kind=kind,
            text=text,
            **extra,
        )
        self._events.setdefault(project, deque(maxlen=self._maxlen)).append(entry)
        return entry

    def callbacks_for(self, project: str) -> TaskCallbacks:
        """Task callbacks that record into this feed."""

        async def on_progress(text: str) -> None:
            self.push(project, "progress", text)

        async def on_complete(result: TaskResult, project_name: str) -> None:
            self.push(project_name, "complete", result.result_text, result=result.model_dump(mode="json"))
            logger.info("Task for %s completed (cost=$%.4f)", project_name, result.cost_usd)

        async def on_error(text: str, project_name: str) -> None:
            self.push(project_name, "error", text)

        return TaskCallbacks(on_progress=on_progress, on_complete=on_complete, on_error=on_error)

    # ── Query path ───────────────────────────────────────────────────────

    def query(self, project: str, *, kind: str | None = None, limit: int = 50) -> list[FeedEvent]:
        """Return a project's events, newest first."""
        results: list[FeedEvent] = []
        for entry in reversed(self._events.get(project, ())):
            if kind is not None and entry.get("kind") != kind:
                continue
            results.append(entry)
            if len(results) >= limit:
                break
        return results

    def clear(self, project: str) -> None:
        self._events.pop(project, None)

    @property
    def maxlen(self) -> int:
        return self._maxlen
