"""Thin async wrapper around the ``docker`` CLI.

Every daemon interaction goes through ``DockerCLI.run`` (short commands whose
output we collect) or ``DockerCLI.spawn`` (long-running ``docker exec`` whose
output we stream).  Tests substitute a subclass that overrides just those two.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from codebox.errors import ImageBuildFailed
from codebox.models import ContainerStatus

logger = logging.getLogger(__name__)

PULL_TIMEOUT = 300  # seconds
BUILD_TIMEOUT = 600  # seconds

_FROM_RE = re.compile(r"^FROM\s+(\S+)", re.MULTILINE)


@dataclass
class DockerResult:
    """Outcome of one docker CLI invocation (outputs stripped)."""

    stdout: str
    stderr: str
    exit_code: int  # -1 when we killed the CLI on timeout

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class DockerCLI:
    def __init__(self, binary: str = "docker") -> None:
        self._binary = binary

    async def run(
        self,
        *args: str,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
        input: bytes | None = None,
    ) -> DockerResult:
        """Run ``docker <args>`` and collect its output.

        stdout and stderr are drained concurrently so a chatty stderr can't
        block the child.  On timeout the CLI process is killed and the
        result carries exit code -1.
        """
        proc = await asyncio.create_subprocess_exec(
            self._binary,
            *args,
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **env} if env else None,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(input), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("docker %s timed out after %ss — killing", args[0] if args else "", timeout)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return DockerResult(stdout="", stderr=f"timed out after {timeout}s", exit_code=-1)

        return DockerResult(
            stdout=stdout.decode(errors="replace").strip(),
            stderr=stderr.decode(errors="replace").strip(),
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )

    async def spawn(self, *args: str) -> asyncio.subprocess.Process:
        """Start ``docker <args>`` with piped stdout/stderr for streaming."""
        return await asyncio.create_subprocess_exec(
            self._binary,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    # ── Daemon / images ──────────────────────────────────────────────────────

    async def is_available(self) -> bool:
        try:
            result = await self.run("info", "--format", "{{.ServerVersion}}", timeout=30)
        except OSError as e:
            logger.error("docker CLI not runnable: %s", e)
            return False
        return result.ok

    async def image_exists(self, image: str) -> bool:
        return (await self.run("image", "inspect", image)).ok

    async def pull_image(self, image: str) -> bool:
        """Pull ``image`` unless it is already cached. Returns False on failure."""
        if await self.image_exists(image):
            return True
        logger.info("Pulling image %s...", image)
        result = await self.run("pull", image, timeout=PULL_TIMEOUT)
        if not result.ok:
            logger.warning("docker pull %s failed — build may still succeed if cached", image)
        return result.ok

    async def build_image(self, dockerfile: Path, context: Path, image: str) -> None:
        """Build ``image``, pre-pulling the Dockerfile's base image first.

        Raises:
            ImageBuildFailed: If ``docker build`` exits non-zero.
        """
        try:
            match = _FROM_RE.search(dockerfile.read_text())
        except OSError:
            match = None
        if match:
            await self.pull_image(match.group(1))

        logger.info("Building sandbox image %s (may take a few minutes)...", image)
        result = await self.run(
            "build",
            "-t",
            image,
            "-f",
            str(dockerfile),
            str(context),
            timeout=BUILD_TIMEOUT,
            env={"DOCKER_BUILDKIT": "1"},
        )
        if not result.ok:
            raise ImageBuildFailed(image, result.stderr)
        logger.info("Sandbox image %s built", image)

    # ── Containers ───────────────────────────────────────────────────────────

    async def container_status(self, name: str) -> ContainerStatus:
        result = await self.run("inspect", "--format", "{{.State.Running}}", name)
        if not result.ok:
            return ContainerStatus.NOT_FOUND
        return ContainerStatus.RUNNING if result.stdout == "true" else ContainerStatus.STOPPED

    async def start_container(self, name: str) -> DockerResult:
        return await self.run("start", name)

    async def stop_container(self, name: str) -> DockerResult:
        return await self.run("stop", name)

    async def remove_container(self, name: str) -> DockerResult:
        return await self.run("rm", "-f", name)

    async def create_volume(self, name: str) -> DockerResult:
        return await self.run("volume", "create", name)

    async def exec(
        self,
        container: str,
        *cmd: str,
        user: str | None = None,
        workdir: str | None = None,
        env: dict[str, str] | None = None,
        input: bytes | None = None,
        timeout: float | None = None,
    ) -> DockerResult:
        """``docker exec`` a short command inside ``container``."""
        args = ["exec"]
        if input is not None:
            args.append("-i")
        if user is not None:
            args += ["-u", user]
        if workdir is not None:
            args += ["-w", workdir]
        for key, value in (env or {}).items():
            args += ["-e", f"{key}={value}"]
        args.append(container)
        args += cmd
        return await self.run(*args, input=input, timeout=timeout)
