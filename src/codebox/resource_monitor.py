"""Workspace disk quota guard.

The sandbox shares one workspace volume across all projects, so before each
task we measure ``/workspace/code`` inside the container with ``du -sm`` and
refuse to start a new agent run when it is over the ceiling.
"""

from __future__ import annotations

import logging

from codebox.errors import DiskQuotaExceeded
from codebox.sandbox.config import CONTAINER_CODE_ROOT
from codebox.sandbox.docker import DockerCLI

logger = logging.getLogger(__name__)

MAX_WORKSPACE_MB = 2048
DU_TIMEOUT = 60  # seconds


def parse_du_output(output: str) -> int:
    """Parse the size column of ``du -sm`` output (``"123\\t/path"``). 0 if unparsable."""
    first = output.strip().split("\t", 1)[0].split(None, 1)
    try:
        return int(first[0]) if first else 0
    except ValueError:
        return 0


class WorkspaceMonitor:
    def __init__(self, docker: DockerCLI, container: str, limit_mb: int = MAX_WORKSPACE_MB) -> None:
        self._docker = docker
        self._container = container
        self.limit_mb = limit_mb

    async def usage_mb(self, path: str = CONTAINER_CODE_ROOT) -> int:
        result = await self._docker.exec(self._container, "du", "-sm", path, timeout=DU_TIMEOUT)
        if not result.ok and not result.stdout:
            logger.debug("du -sm %s failed (exit %d): %s", path, result.exit_code, result.stderr)
            return 0
        return parse_du_output(result.stdout)

    async def check_quota(self, path: str = CONTAINER_CODE_ROOT) -> int:
        """Return current usage in MB.

        Raises:
            DiskQuotaExceeded: usage is above ``limit_mb``.
        """
        used = await self.usage_mb(path)
        if used > self.limit_mb:
            logger.warning("Workspace usage %d MB exceeds %d MB limit", used, self.limit_mb)
            raise DiskQuotaExceeded(used, self.limit_mb)
        return used
