"""Tests for host/local path translation."""

from pathlib import Path

import pytest

from codebox.sandbox.paths import PathTranslator


class TestPathTranslator:
    def test_same_root_when_host_empty(self, tmp_path):
        t = PathTranslator.from_pair(str(tmp_path / "workspace"))
        assert t.to_mount_path("code") == str(tmp_path / "workspace" / "code")
        assert t.to_local_path("code") == tmp_path / "workspace" / "code"

    def test_distinct_roots(self, tmp_path):
        t = PathTranslator.from_pair(str(tmp_path / "data"), "/srv/host/data")
        assert t.to_mount_path("sandbox", "squid.conf") == "/srv/host/data/sandbox/squid.conf"
        assert t.to_local_path("sandbox", "squid.conf") == tmp_path / "data" / "sandbox" / "squid.conf"

    def test_relative_local_is_resolved(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        t = PathTranslator.from_pair("./workspace")
        assert t.local_root == tmp_path / "workspace"
        assert Path(t.mount_root).is_absolute()

    def test_root_without_parts(self, tmp_path):
        t = PathTranslator.from_pair(str(tmp_path), "/host")
        assert t.to_mount_path() == "/host"
        assert t.to_local_path() == tmp_path

    @pytest.mark.parametrize("part", ["/etc/passwd", "../outside", "code/../../x"])
    def test_escaping_parts_rejected(self, tmp_path, part):
        t = PathTranslator.from_pair(str(tmp_path), "/host")
        with pytest.raises(ValueError):
            t.to_mount_path(part)
        with pytest.raises(ValueError):
            t.to_local_path(part)
