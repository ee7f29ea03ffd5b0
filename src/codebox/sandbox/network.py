"""Docker network topology for the sandbox.

Two user-defined bridge networks::

    ┌───────────────────────── internal (--internal, no route out) ──┐
    │   codebox-sandbox  ──HTTP(S)_PROXY──►  codebox-sandbox-proxy    │
    └──────────────────────────────────────────────┬─────────────────┘
                                                   │ also attached to
    ┌───────────────────────── external ───────────┴─────────────────┐
    │                          codebox-sandbox-proxy  ──► internet    │
    └────────────────────────────────────────────────────────────────┘

The sandbox container joins only the internal network, so the proxy is its
one way out.
"""

from __future__ import annotations

import logging

from codebox.errors import InfrastructureError
from codebox.sandbox.docker import DockerCLI

logger = logging.getLogger(__name__)


class NetworkTopology:
    def __init__(self, docker: DockerCLI, internal_name: str, external_name: str) -> None:
        self._docker = docker
        self.internal_name = internal_name
        self.external_name = external_name

    async def ensure_network(self, name: str, internal: bool) -> bool:
        """Create ``name`` if it doesn't exist. Returns True if it was created."""
        if (await self._docker.run("network", "inspect", name)).ok:
            return False

        args = ["network", "create", name, "--driver", "bridge"]
        if internal:
            args.append("--internal")
        result = await self._docker.run(*args)
        if not result.ok:
            # A concurrent creator may have won the race.
            if (await self._docker.run("network", "inspect", name)).ok:
                return False
            raise InfrastructureError(f"Failed to create network {name}: {result.stderr}")
        logger.info("Created Docker network %s (internal=%s)", name, internal)
        return True

    async def ensure(self) -> None:
        """Ensure both sandbox networks exist."""
        await self.ensure_network(self.internal_name, internal=True)
        await self.ensure_network(self.external_name, internal=False)

    async def connect(self, container: str, network: str) -> None:
        result = await self._docker.run("network", "connect", network, container)
        if not result.ok and "already exists" not in result.stderr:
            logger.warning("Failed to connect %s to %s: %s", container, network, result.stderr)

    async def remove(self) -> None:
        """Remove both networks (best-effort)."""
        for name in (self.internal_name, self.external_name):
            result = await self._docker.run("network", "rm", name)
            if not result.ok:
                logger.debug("network rm %s: %s", name, result.stderr)
