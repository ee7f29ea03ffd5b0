"""SandboxManager -- brings up and reconciles the sandbox stack.

``start_stack()`` is idempotent and self-healing.  Each call:

1. Ensures the internal and external networks exist.
2. Ensures the sandbox image exists, building it from the bundled
   Dockerfile if not (base image pulled first).
3. Creates the workspace ``code`` dir and the named agent-data volume.
4. Writes squid.conf and starts the proxy container if needed.
5. Starts the sandbox container if needed: all capabilities dropped,
   no-new-privileges, PID/memory/CPU caps, read-only root with tmpfs
   ``/tmp`` and home, non-root UID, workspace bind mount, agent-data volume.
6. Fixes ownership of the agent-data volume.
7. Copies fresh credentials in (skipped in API-key mode; failures logged).
8. Verifies the agent CLI runs inside the container (fatal if not).

Container state is always read live from the daemon, never cached.
"""

from __future__ import annotations

import logging
from pathlib import Path

from codebox.errors import AgentCliUnavailable, CredentialInjectionFailed, InfrastructureError
from codebox.models import ContainerStatus
from codebox.sandbox.config import (
    CONTAINER_CLAUDE_DIR,
    CONTAINER_HOME,
    CONTAINER_WORKSPACE,
    SANDBOX_USER,
    SandboxConfig,
)
from codebox.sandbox.credentials import CredentialBridge
from codebox.sandbox.docker import DockerCLI
from codebox.sandbox.network import NetworkTopology
from codebox.sandbox.proxy import ProxyGateway

logger = logging.getLogger(__name__)

IMAGE_DIR = Path(__file__).parent
DOCKERFILE_NAME = "Dockerfile.sandbox"


class SandboxManager:
    """Owns the sandbox container plus its networks and proxy.

    A single instance is shared by the TaskExecutor.
    """

    def __init__(
        self,
        docker: DockerCLI,
        config: SandboxConfig,
        *,
        image_dir: Path = IMAGE_DIR,
    ) -> None:
        self._docker = docker
        self._config = config
        self._image_dir = image_dir
        self.topology = NetworkTopology(docker, config.internal_network, config.external_network)
        self.proxy = ProxyGateway(docker, config, self.topology)
        self.credentials = CredentialBridge(docker, config)

    @property
    def container_name(self) -> str:
        return self._config.container_name

    @property
    def config(self) -> SandboxConfig:
        return self._config

    # ── Stack Lifecycle ──────────────────────────────────────────────────────

    async def start_stack(self) -> None:
        """Bring the whole stack to a running, verified state.

        Raises:
            ImageBuildFailed: The sandbox image could not be built.
            AgentCliUnavailable: The agent CLI doesn't run in the container.
            InfrastructureError: A network or container could not be created.
        """
        cfg = self._config

        await self.topology.ensure()
        await self.ensure_image()

        code_dir = cfg.workspace.to_local_path("code")
        try:
            code_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InfrastructureError(f"Cannot create workspace directory {code_dir}: {e}") from e
        await self._docker.create_volume(cfg.claude_data_volume)

        await self.proxy.ensure_running()

        status = await self._docker.container_status(cfg.container_name)
        if status == ContainerStatus.NOT_FOUND:
            result = await self._docker.run(*self.sandbox_run_args())
            if not result.ok:
                raise InfrastructureError(
                    f"Failed to start sandbox container {cfg.container_name}: {result.stderr}"
                )
            logger.info("Sandbox container %s started", cfg.container_name)
        elif status == ContainerStatus.STOPPED:
            await self._start_existing()

        await self.credentials.fix_volume_ownership()

        if self.credentials.uses_api_key:
            logger.info("Using ANTHROPIC_API_KEY — skipping credential copy")
        else:
            try:
                await self.credentials.push_from_host()
            except CredentialInjectionFailed as e:
                logger.warning("Credential copy failed: %s", e)

        await self.verify_cli()
        logger.info("Sandbox stack ready (container=%s)", cfg.container_name)

    async def ensure_image(self) -> None:
        if await self._docker.image_exists(self._config.image):
            return
        await self._docker.build_image(
            self._image_dir / DOCKERFILE_NAME, self._image_dir, self._config.image
        )

    async def verify_cli(self) -> None:
        # NODE_OPTIONS cleared so the global-agent preload doesn't run.
        result = await self._docker.exec(
            self._config.container_name, "claude", "--version", env={"NODE_OPTIONS": ""}
        )
        if not result.ok:
            raise AgentCliUnavailable(self._config.container_name, result.stderr)
        logger.info("Agent CLI in sandbox: %s", result.stdout or "unknown version")

    def sandbox_run_args(self) -> list[str]:
        """``docker run`` arguments for a fresh sandbox container."""
        cfg = self._config
        proxy = cfg.proxy_url
        env = {
            "HTTP_PROXY": proxy,
            "HTTPS_PROXY": proxy,
            "http_proxy": proxy,
            "https_proxy": proxy,
            "NO_PROXY": "localhost,127.0.0.1",
            "CLAUDE_CODE_SKIP_UPDATE_CHECK": "1",
            "NODE_OPTIONS": "--require global-agent/bootstrap",
            "GLOBAL_AGENT_HTTP_PROXY": proxy,
            "GLOBAL_AGENT_HTTPS_PROXY": proxy,
        }
        if cfg.anthropic_api_key:
            env["ANTHROPIC_API_KEY"] = cfg.anthropic_api_key
        env.update(cfg.git_env)

        uid, gid = SANDBOX_USER.split(":")
        args = [
            "run",
            "-d",
            "--name",
            cfg.container_name,
            "--network",
            cfg.internal_network,
            # Security
            "--cap-drop",
            "ALL",
            "--security-opt",
            "no-new-privileges:true",
            "--pids-limit",
            str(cfg.pids_limit),
            "--read-only",
            "--tmpfs",
            f"/tmp:size={cfg.tmp_size}",
            "--tmpfs",
            f"{CONTAINER_HOME}:size={cfg.home_size},uid={uid},gid={gid}",
            # Resources
            "--memory",
            cfg.memory,
            "--cpus",
            cfg.cpus,
            # Volumes
            "-v",
            f"{cfg.workspace.to_mount_path()}:{CONTAINER_WORKSPACE}",
            "-v",
            f"{cfg.claude_data_volume}:{CONTAINER_CLAUDE_DIR}",
            # User
            "--user",
            SANDBOX_USER,
            "--workdir",
            CONTAINER_WORKSPACE,
        ]
        for key, value in env.items():
            args += ["-e", f"{key}={value}"]
        args.append(cfg.image)
        return args

    async def _start_existing(self) -> None:
        logger.warning("Sandbox container %s stopped — restarting", self._config.container_name)
        result = await self._docker.start_container(self._config.container_name)
        if not result.ok:
            raise InfrastructureError(
                f"Failed to restart sandbox container {self._config.container_name}: {result.stderr}"
            )

    # ── Reconciliation ───────────────────────────────────────────────────────

    async def health(self) -> tuple[ContainerStatus, ContainerStatus]:
        """Live (sandbox, proxy) container status."""
        sandbox = await self._docker.container_status(self._config.container_name)
        proxy = await self.proxy.status()
        return sandbox, proxy

    async def ensure_running(self) -> None:
        """Self-heal before a task: recreate the stack or restart the container."""
        status = await self._docker.container_status(self._config.container_name)
        if status == ContainerStatus.NOT_FOUND:
            logger.warning("Sandbox container gone — recreating full stack")
            await self.start_stack()
        elif status == ContainerStatus.STOPPED:
            await self._start_existing()

    async def stop_stack(self) -> None:
        await self._docker.stop_container(self._config.container_name)
        await self.proxy.stop()
        logger.info("Sandbox stack stopped")

    async def destroy_stack(self) -> None:
        """Remove both containers and both networks."""
        await self._docker.remove_container(self._config.container_name)
        await self.proxy.remove()
        await self.topology.remove()
        logger.info("Sandbox stack destroyed")
