"""Tests for recovery.py — crash recovery on restart.

  1. Projects left ``running`` are moved to ``error`` (idempotent).
  2. Agent processes recorded in pid files are terminated once the sandbox is up.
"""

from __future__ import annotations

from fakes import FakeDocker

from codebox.models import ProjectStatus
from codebox.recovery import reap_orphaned_agents, recover_on_startup
from codebox.registry import ProjectRegistry


class TestRecoverOnStartup:
    async def test_resets_running_projects(self, registry: ProjectRegistry):
        await registry.create_project("stuck-one", "user1")
        await registry.create_project("stuck-two", "user1")
        await registry.create_project("idle", "user1")
        await registry.update_status("stuck-one", ProjectStatus.RUNNING)
        await registry.update_status("stuck-two", ProjectStatus.RUNNING)

        summary = await recover_on_startup(registry)
        assert summary == {"reset": 2}

        for name in ("stuck-one", "stuck-two"):
            project = await registry.get_project(name)
            assert project is not None
            assert project.status == ProjectStatus.ERROR
        idle = await registry.get_project("idle")
        assert idle is not None
        assert idle.status == ProjectStatus.ACTIVE

    async def test_second_run_is_noop(self, registry: ProjectRegistry):
        await registry.create_project("stuck-one", "user1")
        await registry.update_status("stuck-one", ProjectStatus.RUNNING)

        assert (await recover_on_startup(registry))["reset"] == 1
        assert (await recover_on_startup(registry))["reset"] == 0

    async def test_empty_database(self, registry: ProjectRegistry):
        assert await recover_on_startup(registry) == {"reset": 0}


class TestReapOrphanedAgents:
    async def test_counts_reaped_pidfiles(self, docker: FakeDocker):
        docker.respond(
            "exec",
            "codebox-sandbox",
            "sh",
            stdout="/tmp/codebox-run-my-app-abc.pid\n/tmp/codebox-run-other-def.pid",
        )
        assert await reap_orphaned_agents(docker, "codebox-sandbox") == 2

        call = docker.called("exec", "codebox-sandbox", "sh", "-c")[0]
        assert "/tmp/codebox-run-*.pid" in call[4]

    async def test_nothing_to_reap(self, docker: FakeDocker):
        assert await reap_orphaned_agents(docker, "codebox-sandbox") == 0

    async def test_exec_failure_is_not_fatal(self, docker: FakeDocker):
        docker.fail("exec", stderr="No such container")
        assert await reap_orphaned_agents(docker, "codebox-sandbox") == 0
