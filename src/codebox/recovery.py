"""Startup recovery after an ungraceful restart.

Running-task handles live only in memory, so after a crash the database may
still say ``running`` for projects nothing is executing, and agent processes
may still be alive inside a sandbox container that outlived us.

Flow:
  1. Reset every ``running`` project to ``error`` (before any admission).
  2. Once the sandbox is up, terminate agent processes left behind by the
     previous process, using their pid files.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from codebox.sandbox.config import PIDFILE_DIR, REAP_PIDFILES_SCRIPT

if TYPE_CHECKING:
    from codebox.registry import ProjectRegistry
    from codebox.sandbox.docker import DockerCLI

logger = logging.getLogger(__name__)


async def recover_on_startup(registry: ProjectRegistry) -> dict[str, int]:
    """Reset stuck projects. Idempotent; returns a summary dict."""
    summary = {"reset": 0}

    summary["reset"] = await registry.reset_stuck_projects()
    if summary["reset"]:
        logger.warning("Reset %d stuck running project(s) to error", summary["reset"])
    else:
        logger.info("Recovery: no stuck projects")
    return summary


async def reap_orphaned_agents(docker: DockerCLI, container: str) -> int:
    """Terminate agent processes recorded by a previous process. Best-effort."""
    try:
        result = await docker.exec(container, "sh", "-c", REAP_PIDFILES_SCRIPT, timeout=30)
    except Exception:
        logger.debug("Orphan reap in %s failed", container, exc_info=True)
        return 0
    if not result.ok:
        logger.debug("Orphan reap in %s exited %d: %s", container, result.exit_code, result.stderr)
        return 0

    reaped = [line for line in result.stdout.splitlines() if line.startswith(PIDFILE_DIR)]
    if reaped:
        logger.warning("Terminated %d orphaned agent process(es) from a previous run", len(reaped))
    return len(reaped)
