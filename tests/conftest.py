"""Shared fixtures: a throwaway registry, a scripted docker CLI and config."""

from __future__ import annotations

import pytest
import pytest_asyncio
from fakes import FakeDocker

from codebox.config import CodeExecutionConfig, PathsConfig
from codebox.registry import ProjectRegistry


@pytest_asyncio.fixture
async def registry(tmp_path):
    """Create a fresh registry for each test."""
    reg = ProjectRegistry(str(tmp_path / "test_codebox.db"))
    await reg.initialize()
    yield reg
    await reg.close()


@pytest.fixture
def docker() -> FakeDocker:
    return FakeDocker()


@pytest.fixture
def code_config(tmp_path) -> CodeExecutionConfig:
    return CodeExecutionConfig(
        paths=PathsConfig(
            workspace_local=str(tmp_path / "workspace"),
            data_local=str(tmp_path / "data"),
            claude_config_dir=str(tmp_path / "claude"),
        )
    )
