"""Configuration loading for codebox.

Reads ``codebox.yaml`` and validates it into pydantic models once, at load
time.  Unknown keys are rejected so typos fail loudly instead of silently
falling back to defaults.  A handful of deployment values can be overridden
from the environment (see ``load_config``).
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "codebox.yaml"

DOMAIN_RE = re.compile(r"^\.[a-z0-9.-]+$")

DEFAULT_APPEND_SYSTEM_PROMPT = (
    "You are running in an isolated Docker sandbox. "
    "Pre-installed: Node.js 22, Bun, Python 3, Git, npm, pip. "
    "Do NOT run apt-get, dpkg or install system packages — it will fail (all capabilities dropped). "
    "For Python: always use `python3 -m venv .venv && source .venv/bin/activate` before pip install. "
    "Global pip install will fail due to non-root user. "
    "Internet is restricted to package registries (npm, pip, bun) and GitHub only."
)

DEFAULT_ALLOWED_DOMAINS = [
    ".anthropic.com",
    ".npmjs.org",
    ".npmjs.com",
    ".yarnpkg.com",
    ".pypi.org",
    ".pythonhosted.org",
    ".github.com",
    ".githubusercontent.com",
    ".githubassets.com",
    ".bun.sh",
    ".debian.org",
    ".ubuntu.com",
]


# ── Config Models ────────────────────────────────────────────────────────────


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ResourcesConfig(_Strict):
    memory: str = "4g"
    cpus: str = "2"
    pids_limit: int = Field(default=1024, ge=16)
    tmp_size: str = "1g"  # tmpfs for /tmp
    home_size: str = "512m"  # tmpfs for the agent user's home


class NetworkConfig(_Strict):
    internal_name: str = "codebox-sandbox-internal"  # no route to the internet
    external_name: str = "codebox-sandbox-external"  # reachable only by the proxy


class GitConfig(_Strict):
    enabled: bool = False
    user_name: str = "codebox"
    user_email: str = ""
    token: str = ""


class PathsConfig(_Strict):
    """Host/local path pairs.

    ``*_host`` paths are what the Docker daemon sees (bind-mount sources);
    ``*_local`` paths are where this process does its own file I/O.  They
    only differ when codebox itself runs inside a container (Docker-in-Docker).
    Empty ``*_host`` values fall back to the matching ``*_local`` path.
    """

    workspace_local: str = "./workspace"
    workspace_host: str = ""
    data_local: str = "./data"
    data_host: str = ""
    claude_config_dir: str = "~/.claude"


class CodeExecutionConfig(_Strict):
    enabled: bool = True
    sandbox_image: str = "codebox-sandbox:latest"
    container_name: str = "codebox-sandbox"
    proxy_image: str = "ubuntu/squid:latest"
    claude_data_volume: str = "codebox-claude-data"

    model: str = "sonnet"
    allowed_tools: list[str] = Field(
        default_factory=lambda: ["Read", "Grep", "Glob", "Write", "Edit", "Bash"]
    )
    max_turns: int = Field(default=50, ge=5, le=200)
    append_system_prompt: str = DEFAULT_APPEND_SYSTEM_PROMPT

    max_concurrent_tasks: int = Field(default=1, ge=1, le=5)
    max_projects: int = Field(default=10, ge=1, le=50)
    timeout_minutes: int = Field(default=10, ge=1, le=60)

    resources: ResourcesConfig = Field(default_factory=ResourcesConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    allowed_domains: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_DOMAINS))
    git: GitConfig = Field(default_factory=GitConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)

    # When set, the agent authenticates with this key and no OAuth
    # credentials are copied into the sandbox.
    anthropic_api_key: str | None = None

    @field_validator("allowed_domains")
    @classmethod
    def _validate_domains(cls, v: list[str]) -> list[str]:
        for domain in v:
            if not DOMAIN_RE.match(domain):
                raise ValueError(
                    f"Domain must start with dot, e.g. '.example.com' (got {domain!r})"
                )
        return v

    @property
    def proxy_container_name(self) -> str:
        return f"{self.container_name}-proxy"


class StorageConfig(_Strict):
    db_path: str = "./data/codebox.db"


class CodeboxConfig(_Strict):
    """Top-level configuration (matches codebox.yaml)."""

    code_execution: CodeExecutionConfig = Field(default_factory=CodeExecutionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


# ── Loader ───────────────────────────────────────────────────────────────────


def _apply_env_overrides(config: CodeboxConfig) -> CodeboxConfig:
    ce = config.code_execution

    api_key = os.environ.get("ANTHROPIC_API_KEY", "").strip()
    if api_key:
        ce.anthropic_api_key = api_key

    workspace_host = os.environ.get("WORKSPACE_HOST_PATH", "").strip()
    if workspace_host:
        ce.paths.workspace_host = workspace_host

    data_host = os.environ.get("DATA_HOST_PATH", "").strip()
    if data_host:
        ce.paths.data_host = data_host

    data_dir = os.environ.get("CODEBOX_DATA_DIR", "").strip()
    if data_dir:
        ce.paths.data_local = data_dir
        config.storage.db_path = str(Path(data_dir) / "codebox.db")

    return config


def load_config(config_path: Path) -> CodeboxConfig:
    """Load codebox configuration from a YAML file.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        pydantic.ValidationError: If the file doesn't match the schema.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"codebox config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = _apply_env_overrides(CodeboxConfig(**raw))
    logger.info(
        "Loaded codebox config: container=%s, max_concurrent_tasks=%d",
        config.code_execution.container_name,
        config.code_execution.max_concurrent_tasks,
    )
    return config


def load_config_or_default(config_path: Path) -> CodeboxConfig:
    """Like ``load_config`` but falls back to defaults when the file is missing."""
    if config_path.exists():
        return load_config(config_path)
    logger.info("No config at %s — using defaults", config_path)
    return _apply_env_overrides(CodeboxConfig())


def resolve_config_path(explicit: Path | None = None) -> Path:
    if explicit is not None:
        return explicit
    env_path = os.environ.get("CODEBOX_CONFIG", "").strip()
    return Path(env_path) if env_path else Path.cwd() / DEFAULT_CONFIG_FILE
