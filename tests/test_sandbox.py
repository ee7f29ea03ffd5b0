"""Tests for the sandbox container lifecycle and credential bridge."""

from __future__ import annotations

import json

import pytest
from fakes import FakeDocker

from codebox.config import CodeExecutionConfig, GitConfig
from codebox.errors import AgentCliUnavailable, CredentialInjectionFailed, InfrastructureError
from codebox.models import ContainerStatus
from codebox.sandbox.config import SandboxConfig, pidfile_path
from codebox.sandbox.credentials import CredentialBridge
from codebox.sandbox.manager import SandboxManager

CREDS = {"claudeAiOauth": {"accessToken": "tok", "refreshToken": "ref"}}


@pytest.fixture
def sandbox_config(code_config: CodeExecutionConfig) -> SandboxConfig:
    return SandboxConfig.from_execution_config(code_config)


@pytest.fixture
def manager(docker: FakeDocker, sandbox_config: SandboxConfig) -> SandboxManager:
    return SandboxManager(docker, sandbox_config)


def _write_host_credentials(tmp_path) -> None:
    claude_dir = tmp_path / "claude"
    claude_dir.mkdir(parents=True, exist_ok=True)
    (claude_dir / ".credentials.json").write_text(json.dumps(CREDS))


# ── SandboxConfig ────────────────────────────────────────────────────────────


class TestSandboxConfig:
    def test_flattened_from_execution_config(self, sandbox_config: SandboxConfig):
        assert sandbox_config.container_name == "codebox-sandbox"
        assert sandbox_config.proxy_container_name == "codebox-sandbox-proxy"
        assert sandbox_config.internal_network == "codebox-sandbox-internal"
        assert sandbox_config.proxy_url == "http://codebox-sandbox-proxy:3128"
        assert sandbox_config.git_env == {}

    def test_git_env_only_when_enabled(self, code_config: CodeExecutionConfig):
        code_config.git = GitConfig(enabled=True, user_name="bot", user_email="bot@x.io", token="t")
        config = SandboxConfig.from_execution_config(code_config)
        assert config.git_env == {
            "GIT_USER_NAME": "bot",
            "GIT_USER_EMAIL": "bot@x.io",
            "GIT_TOKEN": "t",
        }

    def test_project_dir(self, sandbox_config: SandboxConfig):
        assert sandbox_config.project_dir("my-app") == "/workspace/code/my-app"

    def test_pidfile_is_per_run(self):
        assert pidfile_path("my-app", "abc") == "/tmp/codebox-run-my-app-abc.pid"
        assert pidfile_path("my-app", "abc") != pidfile_path("my-app", "def")


# ── docker run arguments ─────────────────────────────────────────────────────


class TestSandboxRunArgs:
    def test_isolation_flags(self, manager: SandboxManager):
        args = manager.sandbox_run_args()
        joined = " ".join(args)
        assert args[:4] == ["run", "-d", "--name", "codebox-sandbox"]
        assert "--network codebox-sandbox-internal" in joined
        assert "--cap-drop ALL" in joined
        assert "--security-opt no-new-privileges:true" in joined
        assert "--pids-limit 1024" in joined
        assert "--read-only" in args
        assert "--tmpfs /tmp:size=1g" in joined
        assert "--tmpfs /home/coder:size=512m,uid=1000,gid=1000" in joined
        assert "--memory 4g" in joined
        assert "--cpus 2" in joined
        assert "--user 1000:1000" in joined
        assert "--workdir /workspace" in joined
        assert "codebox-claude-data:/home/coder/.claude" in args
        assert args[-1] == "codebox-sandbox:latest"

    def test_proxy_environment(self, manager: SandboxManager):
        args = manager.sandbox_run_args()
        for var in ("HTTP_PROXY", "HTTPS_PROXY", "http_proxy", "https_proxy"):
            assert f"{var}=http://codebox-sandbox-proxy:3128" in args
        assert "NO_PROXY=localhost,127.0.0.1" in args
        assert "NODE_OPTIONS=--require global-agent/bootstrap" in args
        assert "GLOBAL_AGENT_HTTPS_PROXY=http://codebox-sandbox-proxy:3128" in args
        assert "CLAUDE_CODE_SKIP_UPDATE_CHECK=1" in args
        assert not any(a.startswith("ANTHROPIC_API_KEY=") for a in args)

    def test_api_key_passed_when_configured(self, docker, code_config):
        code_config.anthropic_api_key = "sk-test"
        manager = SandboxManager(docker, SandboxConfig.from_execution_config(code_config))
        assert "ANTHROPIC_API_KEY=sk-test" in manager.sandbox_run_args()

    def test_workspace_mount_uses_host_path(self, docker, code_config):
        code_config.paths.workspace_host = "/srv/host/workspace"
        manager = SandboxManager(docker, SandboxConfig.from_execution_config(code_config))
        assert "/srv/host/workspace:/workspace" in manager.sandbox_run_args()


# ── Stack lifecycle ──────────────────────────────────────────────────────────


class TestStartStack:
    async def test_fresh_stack(self, docker: FakeDocker, manager: SandboxManager, tmp_path):
        _write_host_credentials(tmp_path)
        docker.fail("network", "inspect")
        docker.fail("inspect", stderr="No such object")

        await manager.start_stack()

        assert len(docker.called("network", "create")) == 2
        assert docker.called("volume", "create", "codebox-claude-data")
        assert (tmp_path / "workspace" / "code").is_dir()
        assert (tmp_path / "data" / "sandbox" / "squid.conf").is_file()

        runs = docker.called("run")
        assert [r[3] for r in runs] == ["codebox-sandbox-proxy", "codebox-sandbox"]

        assert docker.exec_calls("chown", "1000:1000", "/home/coder/.claude")
        writes = docker.exec_calls("sh", "-c")
        assert writes, "credentials were not copied"
        idx = docker.calls.index(writes[0])
        assert json.loads(docker.inputs[idx] or b"") == CREDS

        verify = docker.exec_calls("claude", "--version")[0]
        assert "NODE_OPTIONS=" in verify

    async def test_already_running_is_idempotent(self, docker: FakeDocker, manager: SandboxManager):
        await manager.start_stack()
        await manager.start_stack()
        assert docker.called("run") == []
        assert docker.called("network", "create") == []
        assert docker.called("start") == []

    async def test_stopped_container_restarted(self, docker: FakeDocker, manager: SandboxManager):
        docker.respond("inspect", stdout="false")
        await manager.start_stack()
        assert ("start", "codebox-sandbox") in docker.calls

    async def test_image_built_when_missing(self, docker: FakeDocker, manager: SandboxManager):
        docker.fail("image", "inspect")
        await manager.start_stack()

        builds = docker.called("build")
        assert len(builds) == 1
        assert builds[0][:3] == ("build", "-t", "codebox-sandbox:latest")
        assert builds[0][4].endswith("Dockerfile.sandbox")
        assert docker.called("pull", "node:22-bookworm-slim")

    async def test_missing_credentials_not_fatal(self, docker: FakeDocker, manager: SandboxManager):
        await manager.start_stack()
        assert docker.exec_calls("sh", "-c") == []

    async def test_api_key_mode_skips_credentials(self, docker, code_config, tmp_path):
        _write_host_credentials(tmp_path)
        code_config.anthropic_api_key = "sk-test"
        manager = SandboxManager(docker, SandboxConfig.from_execution_config(code_config))
        await manager.start_stack()
        assert docker.exec_calls("sh", "-c") == []

    async def test_cli_unavailable_is_fatal(self, docker: FakeDocker, manager: SandboxManager):
        docker.respond("exec", "-e", "NODE_OPTIONS=", stderr="claude: not found", exit_code=127)
        with pytest.raises(AgentCliUnavailable, match="not found"):
            await manager.start_stack()

    async def test_container_create_failure(self, docker: FakeDocker, manager: SandboxManager):
        docker.fail("inspect")
        docker.respond("run", "-d", "--name", "codebox-sandbox", stderr="invalid mount", exit_code=125)
        with pytest.raises(InfrastructureError, match="invalid mount"):
            await manager.start_stack()


class TestReconciliation:
    async def test_ensure_running_noop_when_running(self, docker: FakeDocker, manager: SandboxManager):
        await manager.ensure_running()
        assert docker.called("run") == []
        assert docker.called("start") == []

    async def test_ensure_running_restarts_stopped(self, docker: FakeDocker, manager: SandboxManager):
        docker.respond("inspect", stdout="false")
        await manager.ensure_running()
        assert docker.called("start") == [("start", "codebox-sandbox")]
        assert docker.called("run") == []

    async def test_ensure_running_recreates_missing(self, docker: FakeDocker, manager: SandboxManager):
        docker.fail("inspect")
        await manager.ensure_running()
        assert [r[3] for r in docker.called("run")] == ["codebox-sandbox-proxy", "codebox-sandbox"]

    async def test_health(self, docker: FakeDocker, manager: SandboxManager):
        assert await manager.health() == (ContainerStatus.RUNNING, ContainerStatus.RUNNING)
        docker.fail("inspect")
        assert await manager.health() == (ContainerStatus.NOT_FOUND, ContainerStatus.NOT_FOUND)

    async def test_stop_stack(self, docker: FakeDocker, manager: SandboxManager):
        await manager.stop_stack()
        assert docker.called("stop") == [("stop", "codebox-sandbox"), ("stop", "codebox-sandbox-proxy")]
        assert docker.called("network", "rm") == []

    async def test_destroy_stack(self, docker: FakeDocker, manager: SandboxManager):
        await manager.destroy_stack()
        assert docker.called("rm", "-f") == [
            ("rm", "-f", "codebox-sandbox"),
            ("rm", "-f", "codebox-sandbox-proxy"),
        ]
        assert len(docker.called("network", "rm")) == 2


# ── CredentialBridge ─────────────────────────────────────────────────────────


class TestCredentialBridge:
    async def test_push_writes_as_root_via_stdin(self, docker: FakeDocker, sandbox_config):
        bridge = CredentialBridge(docker, sandbox_config)
        payload = json.dumps(CREDS)
        assert await bridge.push(payload) is True

        call = docker.exec_calls("sh", "-c")[0]
        assert call[:4] == ("exec", "-i", "-u", "0")
        assert "/home/coder/.claude/.credentials.json" in call[-1]
        assert "tok" not in " ".join(call)
        assert docker.inputs[docker.calls.index(call)] == payload.encode()

    async def test_push_noop_when_not_running(self, docker: FakeDocker, sandbox_config):
        docker.respond("inspect", stdout="false")
        bridge = CredentialBridge(docker, sandbox_config)
        assert await bridge.push(json.dumps(CREDS)) is False
        assert docker.exec_calls("sh", "-c") == []

    @pytest.mark.parametrize("payload", ["not json", "[1, 2]"])
    async def test_push_rejects_invalid_payload(self, docker, sandbox_config, payload):
        bridge = CredentialBridge(docker, sandbox_config)
        with pytest.raises(CredentialInjectionFailed):
            await bridge.push(payload)
        assert docker.exec_calls("sh", "-c") == []

    async def test_copy_failure_raises(self, docker: FakeDocker, sandbox_config):
        docker.fail("exec", "-i", stderr="read-only file system")
        bridge = CredentialBridge(docker, sandbox_config)
        with pytest.raises(CredentialInjectionFailed, match="read-only"):
            await bridge.push(json.dumps(CREDS))

    async def test_push_from_host_missing_file(self, docker: FakeDocker, sandbox_config):
        bridge = CredentialBridge(docker, sandbox_config)
        with pytest.raises(CredentialInjectionFailed, match="Cannot read credentials"):
            await bridge.push_from_host()

    def test_uses_api_key(self, docker, code_config):
        assert CredentialBridge(docker, SandboxConfig.from_execution_config(code_config)).uses_api_key is False
        code_config.anthropic_api_key = "sk-test"
        assert CredentialBridge(docker, SandboxConfig.from_execution_config(code_config)).uses_api_key is True
