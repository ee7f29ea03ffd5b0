"""Tests for the workspace disk quota guard."""

import pytest
from fakes import FakeDocker

from codebox.errors import DiskQuotaExceeded
from codebox.resource_monitor import WorkspaceMonitor, parse_du_output


class TestParseDuOutput:
    @pytest.mark.parametrize(
        "output,expected",
        [
            ("123\t/workspace/code", 123),
            ("  2048\t/workspace/code\n", 2048),
            ("7 /workspace/code", 7),
            ("", 0),
            ("du: cannot access", 0),
        ],
    )
    def test_parse(self, output, expected):
        assert parse_du_output(output) == expected


class TestWorkspaceMonitor:
    async def test_usage(self, docker: FakeDocker):
        docker.respond("exec", "codebox-sandbox", "du", stdout="512\t/workspace/code")
        monitor = WorkspaceMonitor(docker, "codebox-sandbox")
        assert await monitor.usage_mb() == 512
        assert docker.calls[-1] == ("exec", "codebox-sandbox", "du", "-sm", "/workspace/code")

    async def test_under_limit_passes(self, docker: FakeDocker):
        docker.respond("exec", "codebox-sandbox", "du", stdout="2048\t/workspace/code")
        assert await WorkspaceMonitor(docker, "codebox-sandbox").check_quota() == 2048

    async def test_over_limit_raises(self, docker: FakeDocker):
        docker.respond("exec", "codebox-sandbox", "du", stdout="2049\t/workspace/code")
        with pytest.raises(DiskQuotaExceeded) as exc_info:
            await WorkspaceMonitor(docker, "codebox-sandbox").check_quota()
        assert exc_info.value.used_mb == 2049
        assert exc_info.value.limit_mb == 2048

    async def test_du_failure_counts_as_zero(self, docker: FakeDocker):
        docker.fail("exec", stderr="No such container")
        assert await WorkspaceMonitor(docker, "codebox-sandbox", limit_mb=1).check_quota() == 0

    async def test_partial_output_still_parsed(self, docker: FakeDocker):
        docker.respond(
            "exec", "codebox-sandbox", "du",
            stdout="900\t/workspace/code", stderr="du: permission denied", exit_code=1,
        )
        assert await WorkspaceMonitor(docker, "codebox-sandbox").usage_mb() == 900
