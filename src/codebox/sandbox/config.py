"""Resolved sandbox runtime settings."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field

from codebox.config import CodeExecutionConfig
from codebox.sandbox.paths import PathTranslator

# ── Fixed container layout ───────────────────────────────────────────────────

CONTAINER_WORKSPACE = "/workspace"
CONTAINER_CODE_ROOT = "/workspace/code"
CONTAINER_HOME = "/home/coder"
CONTAINER_CLAUDE_DIR = "/home/coder/.claude"
CONTAINER_CREDENTIALS = "/home/coder/.claude/.credentials.json"
SANDBOX_USER = "1000:1000"
PROXY_PORT = 3128
SQUID_CONF_MOUNT = "/etc/squid/squid.conf"


class SandboxConfig(BaseModel):
    """Everything the sandbox stack needs, flattened from ``CodeExecutionConfig``."""

    container_name: str
    proxy_container_name: str
    image: str
    proxy_image: str
    internal_network: str
    external_network: str
    memory: str
    cpus: str
    pids_limit: int
    tmp_size: str = "1g"
    home_size: str = "512m"
    claude_data_volume: str
    allowed_domains: list[str] = Field(default_factory=list)
    workspace_local: str
    workspace_host: str = ""
    data_local: str
    data_host: str = ""
    claude_config_dir: str = "~/.claude"
    anthropic_api_key: str | None = None
    git_env: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_execution_config(cls, ce: CodeExecutionConfig) -> SandboxConfig:
        git_env: dict[str, str] = {}
        if ce.git.enabled:
            git_env = {
                "GIT_USER_NAME": ce.git.user_name,
                "GIT_USER_EMAIL": ce.git.user_email,
                "GIT_TOKEN": ce.git.token,
            }
        return cls(
            container_name=ce.container_name,
            proxy_container_name=ce.proxy_container_name,
            image=ce.sandbox_image,
            proxy_image=ce.proxy_image,
            internal_network=ce.network.internal_name,
            external_network=ce.network.external_name,
            memory=ce.resources.memory,
            cpus=ce.resources.cpus,
            pids_limit=ce.resources.pids_limit,
            tmp_size=ce.resources.tmp_size,
            home_size=ce.resources.home_size,
            claude_data_volume=ce.claude_data_volume,
            allowed_domains=list(ce.allowed_domains),
            workspace_local=ce.paths.workspace_local,
            workspace_host=ce.paths.workspace_host,
            data_local=ce.paths.data_local,
            data_host=ce.paths.data_host,
            claude_config_dir=ce.paths.claude_config_dir,
            anthropic_api_key=ce.anthropic_api_key,
            git_env=git_env,
        )

    @property
    def workspace(self) -> PathTranslator:
        return PathTranslator.from_pair(self.workspace_local, self.workspace_host)

    @property
    def data(self) -> PathTranslator:
        return PathTranslator.from_pair(self.data_local, self.data_host)

    @property
    def proxy_url(self) -> str:
        return f"http://{self.proxy_container_name}:{PROXY_PORT}"

    @property
    def credentials_file(self) -> Path:
        return Path(self.claude_config_dir).expanduser() / ".credentials.json"

    def project_dir(self, project_name: str) -> str:
        """Working directory of a project inside the sandbox container."""
        return f"{CONTAINER_CODE_ROOT}/{project_name}"


# ── Agent run pid files ──────────────────────────────────────────────────────
# Each agent exec records its in-container PID here so cleanup can target
# exactly that process tree (see TaskExecutor._kill_orphan).

PIDFILE_DIR = "/tmp"
PIDFILE_PREFIX = "codebox-run-"


def pidfile_path(project_name: str, run_id: str) -> str:
    return f"{PIDFILE_DIR}/{PIDFILE_PREFIX}{project_name}-{run_id}.pid"


# sh -c <script> <pidfile>: TERM the recorded PID and its children, drop the file.
KILL_PIDFILE_SCRIPT = (
    'f="$0"; [ -f "$f" ] || exit 0; pid=$(cat "$f"); '
    'if [ -n "$pid" ]; then pkill -TERM -P "$pid" 2>/dev/null; kill -TERM "$pid" 2>/dev/null; fi; '
    'rm -f "$f"'
)

# sh -c <script> <pidfile>: the run already exited, so its PID may be reused.
REMOVE_PIDFILE_SCRIPT = 'rm -f "$0"'

# KILL_PIDFILE_SCRIPT for every leftover pid file; prints one line per file handled.
REAP_PIDFILES_SCRIPT = (
    f'for f in {PIDFILE_DIR}/{PIDFILE_PREFIX}*.pid; do [ -f "$f" ] || continue; '
    'pid=$(cat "$f"); '
    'if [ -n "$pid" ]; then pkill -TERM -P "$pid" 2>/dev/null; kill -TERM "$pid" 2>/dev/null; fi; '
    'rm -f "$f"; echo "$f"; done'
)
