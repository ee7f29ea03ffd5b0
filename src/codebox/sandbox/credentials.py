"""Credential bridge: copies agent auth material into the sandbox.

OAuth credentials live on the host in ``<claude_config_dir>/.credentials.json``
and are refreshed by something outside codebox.  Every refresh (and every
stack start) pipes the file's contents into the sandbox's named volume via
``docker exec -i`` as root.  The credentials are never passed on a command
line or baked into the image.

Failures raise ``CredentialInjectionFailed``.  Callers log it; a failed copy
never aborts a task that is already running.
"""

from __future__ import annotations

import json
import logging

from codebox.errors import CredentialInjectionFailed
from codebox.models import ContainerStatus
from codebox.sandbox.config import CONTAINER_CLAUDE_DIR, CONTAINER_CREDENTIALS, SANDBOX_USER, SandboxConfig
from codebox.sandbox.docker import DockerCLI

logger = logging.getLogger(__name__)

_WRITE_SCRIPT = f"cat > {CONTAINER_CREDENTIALS} && chmod 644 {CONTAINER_CREDENTIALS}"


class CredentialBridge:
    def __init__(self, docker: DockerCLI, config: SandboxConfig) -> None:
        self._docker = docker
        self._config = config

    @property
    def uses_api_key(self) -> bool:
        return bool(self._config.anthropic_api_key)

    async def fix_volume_ownership(self) -> None:
        """Hand the named volume to the sandbox user (it is created root-owned)."""
        result = await self._docker.exec(
            self._config.container_name, "chown", SANDBOX_USER, CONTAINER_CLAUDE_DIR, user="0"
        )
        if not result.ok:
            logger.warning("chown of %s failed: %s", CONTAINER_CLAUDE_DIR, result.stderr)

    async def push(self, credentials_json: str) -> bool:
        """Copy fresh credentials into a running sandbox.

        Returns False (and does nothing) when the sandbox isn't running;
        they will be copied on the next stack start anyway.

        Raises:
            CredentialInjectionFailed: Invalid JSON, or the copy failed.
        """
        status = await self._docker.container_status(self._config.container_name)
        if status != ContainerStatus.RUNNING:
            logger.debug("Sandbox not running (%s) — skipping credential push", status.value)
            return False
        await self._write(credentials_json)
        return True

    async def push_from_host(self) -> None:
        """Copy the host's credentials file into the sandbox.

        Raises:
            CredentialInjectionFailed: The file is missing/unreadable or the copy failed.
        """
        path = self._config.credentials_file
        try:
            content = path.read_text()
        except OSError as e:
            raise CredentialInjectionFailed(
                f"Cannot read credentials file {path}: {e}", {"path": str(path)}
            ) from e
        await self._write(content)

    async def _write(self, credentials_json: str) -> None:
        try:
            parsed = json.loads(credentials_json)
        except ValueError as e:
            raise CredentialInjectionFailed(f"Credentials are not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise CredentialInjectionFailed("Credentials must be a JSON object")

        result = await self._docker.exec(
            self._config.container_name,
            "sh",
            "-c",
            _WRITE_SCRIPT,
            user="0",
            input=credentials_json.encode(),
        )
        if not result.ok:
            raise CredentialInjectionFailed(
                f"Credential copy into {self._config.container_name} failed: {result.stderr}",
                {"exit_code": result.exit_code},
            )
        logger.info("Credentials copied to sandbox")
