"""Egress proxy gateway (squid) for the sandbox.

The proxy container sits on both sandbox networks and is the only route to
the internet.  Its squid.conf is generated from ``allowed_domains``:
CONNECT is limited to port 443, plain HTTP to ports 80/443, and only the
listed domains (leading-dot, so subdomains match) are reachable.
"""

from __future__ import annotations

import logging
from pathlib import Path

from codebox.errors import InfrastructureError
from codebox.models import ContainerStatus
from codebox.sandbox.config import PROXY_PORT, SQUID_CONF_MOUNT, SandboxConfig
from codebox.sandbox.docker import DockerCLI
from codebox.sandbox.network import NetworkTopology

logger = logging.getLogger(__name__)

SQUID_CONF_NAME = "squid.conf"


def generate_squid_conf(allowed_domains: list[str], port: int = PROXY_PORT) -> str:
    """Render squid.conf for the given domain allow-list."""
    domain_lines = "\n".join(f"acl allowed_domains dstdomain {d}" for d in allowed_domains)
    return f"""http_port {port}

acl localnet src 10.0.0.0/8
acl localnet src 172.16.0.0/12
acl localnet src 192.168.0.0/16
acl SSL_ports port 443
acl Safe_ports port 80 443
acl CONNECT method CONNECT

{domain_lines}

http_access deny !Safe_ports
http_access deny CONNECT !SSL_ports
http_access allow localnet allowed_domains
http_access deny all

cache deny all
logfile_rotate 0
access_log none
coredump_dir /var/spool/squid
max_filedescriptors 1024
"""


class ProxyGateway:
    """Manages the squid container.

    Lifecycle (driven by SandboxManager)::

        gateway = ProxyGateway(docker, config, topology)
        await gateway.ensure_running()   # writes conf, starts container if needed
        ...
        await gateway.stop()
    """

    def __init__(self, docker: DockerCLI, config: SandboxConfig, topology: NetworkTopology) -> None:
        self._docker = docker
        self._config = config
        self._topology = topology

    @property
    def container_name(self) -> str:
        return self._config.proxy_container_name

    def write_config(self) -> Path:
        """Write squid.conf under the local data dir and return its path.

        Raises:
            InfrastructureError: If the file can't be written.
        """
        local_path = self._config.data.to_local_path("sandbox", SQUID_CONF_NAME)
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            local_path.write_text(generate_squid_conf(self._config.allowed_domains))
        except OSError as e:
            raise InfrastructureError(f"Cannot write proxy config {local_path}: {e}") from e
        return local_path

    async def status(self) -> ContainerStatus:
        return await self._docker.container_status(self.container_name)

    async def ensure_running(self) -> ContainerStatus:
        """Start the proxy if it isn't running. Returns the status found.

        Raises:
            InfrastructureError: If a new proxy container can't be created.
        """
        self.write_config()
        mount_path = self._config.data.to_mount_path("sandbox", SQUID_CONF_NAME)

        status = await self.status()
        if status == ContainerStatus.NOT_FOUND:
            await self._docker.pull_image(self._config.proxy_image)
            result = await self._docker.run(
                "run",
                "-d",
                "--name",
                self.container_name,
                "--network",
                self._topology.external_name,
                "--restart",
                "unless-stopped",
                "-v",
                f"{mount_path}:{SQUID_CONF_MOUNT}:ro",
                self._config.proxy_image,
            )
            if not result.ok:
                raise InfrastructureError(
                    f"Failed to start proxy container {self.container_name}: {result.stderr}"
                )
            await self._topology.connect(self.container_name, self._topology.internal_name)
            logger.info("Proxy container %s started", self.container_name)
        elif status == ContainerStatus.STOPPED:
            logger.warning("Proxy container %s stopped — restarting", self.container_name)
            await self._docker.start_container(self.container_name)
        return status

    async def stop(self) -> None:
        await self._docker.stop_container(self.container_name)

    async def remove(self) -> None:
        await self._docker.remove_container(self.container_name)
