"""Unit tests for snapshot inventories and the snapshot store."""

import json
import os
from unittest.mock import MagicMock, patch

import pytest

from upkeep.snapshots.inventory import (
    broken_symlinks,
    extract_channels,
    extract_primary_model,
    load_config,
    scan_plugin_artifacts,
    scan_symlinks,
)
from upkeep.snapshots.store import LATEST_LINK, MANIFEST, SnapshotStore


class TestInventory:
    """Plugin, symlink and configuration inventories."""

    def test_plugin_artifacts_sorted(self, tmp_path):
        (tmp_path / "plugins" / "b").mkdir(parents=True)
        (tmp_path / "plugins" / "b" / "openclaw.plugin.json").write_text("{}")
        (tmp_path / "plugins" / "a.plugin.js").write_text("")
        (tmp_path / "plugins" / "readme.md").write_text("")
        found = scan_plugin_artifacts(tmp_path)
        assert found == [
            str(tmp_path / "plugins" / "a.plugin.js"),
            str(tmp_path / "plugins" / "b" / "openclaw.plugin.json"),
        ]

    def test_missing_root(self, tmp_path):
        assert scan_plugin_artifacts(tmp_path / "nope") == []
        assert scan_symlinks(tmp_path / "nope") == []

    def test_symlinks_not_followed(self, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "x.plugin.json").write_text("{}")
        root = tmp_path / "root"
        root.mkdir()
        os.symlink(outside, root / "linked-dir")
        assert scan_symlinks(root) == [str(root / "linked-dir")]
        assert scan_plugin_artifacts(root) == []

    def test_broken_symlinks(self, tmp_path):
        os.symlink(tmp_path / "gone", tmp_path / "dangling")
        (tmp_path / "real").write_text("")
        os.symlink(tmp_path / "real", tmp_path / "fine")
        assert broken_symlinks(tmp_path) == [(str(tmp_path / "dangling"), str(tmp_path / "gone"))]

    def test_load_config_rejects_non_object(self, tmp_path):
        path = tmp_path / "c.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError):
            load_config(path)
        with pytest.raises(OSError):
            load_config(tmp_path / "missing.json")

    def test_channels_from_keys_and_declarations(self):
        config = {
            "telegram": {"botToken": "x"},
            "slack": {},
            "channels": [{"type": "discord"}, {"name": "untyped"}],
        }
        assert extract_channels(config) == ["discord", "telegram"]

    def test_single_channel_declaration(self):
        assert extract_channels({"channels": {"type": "whatsapp"}}) == ["whatsapp"]

    def test_primary_model(self):
        assert extract_primary_model({"agents": {"primaryModel": "m1"}, "primaryModel": "m2"}) == "m1"
        assert extract_primary_model({"primaryModel": "m2"}) == "m2"
        assert extract_primary_model({}) is None


class TestSnapshotStore:
    """Capture, lookup and ordering of snapshots."""

    @pytest.mark.asyncio
    async def test_snapshot_captures_state(self, snapshots, install_dir, service_config):
        (install_dir / "ext").mkdir()
        (install_dir / "ext" / "openclaw.plugin.json").write_text("{}")
        os.symlink(install_dir / "ext", install_dir / "ext-link")

        snap = await snapshots.snapshot()

        manifest = json.loads((snap.path / MANIFEST).read_text())
        assert manifest["id"] == snap.id
        assert manifest["version"] == "1.0.0"
        assert manifest["revision"] == "a" * 40
        assert manifest["service_status"] == "running"
        assert manifest["config_copied"] is True
        assert manifest["lockfile"] == "pnpm-lock.yaml"
        assert snap.channels == ("discord", "telegram")
        assert snap.primary_model == "claude-sonnet"
        assert snap.config_copy.read_bytes() == service_config.read_bytes()
        assert snap.lockfile_copy.read_text() == "lockfileVersion: '6.0'\n"
        assert snap.plugin_artifacts == (str(install_dir / "ext" / "openclaw.plugin.json"),)
        assert snap.symlinks == (str(install_dir / "ext-link"),)

    @pytest.mark.asyncio
    async def test_latest_is_relative_link(self, snapshots):
        first = await snapshots.snapshot()
        second = await snapshots.snapshot()
        assert os.readlink(snapshots.root / LATEST_LINK) == second.id
        assert snapshots.latest().id == second.id
        assert first.path.is_dir()

    @pytest.mark.asyncio
    async def test_same_second_collision(self, snapshots):
        fixed = MagicMock()
        fixed.now.return_value.strftime.return_value = "20260101-120000"
        with patch("upkeep.snapshots.store.datetime", fixed):
            first = snapshots._new_snapshot_dir()
            second = snapshots._new_snapshot_dir()
            third = snapshots._new_snapshot_dir()
        assert first.name == "snapshot-20260101-120000"
        assert second.name == "snapshot-20260101-120000-1"
        assert third.name == "snapshot-20260101-120000-2"

    @pytest.mark.asyncio
    async def test_list_newest_first(self, snapshots):
        older = await snapshots.snapshot()
        newer = await snapshots.snapshot()
        (snapshots.root / "snapshot-corrupt").mkdir()
        assert [s.id for s in snapshots.list()] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_missing_config_recorded_absent(self, snapshots, service_config):
        service_config.unlink()
        snap = await snapshots.snapshot()
        assert snap.config_copy is None
        assert snap.channels == ()
        assert snap.primary_model is None

    @pytest.mark.asyncio
    async def test_no_checkout(self, snapshots, vcs):
        vcs.repo = False
        snap = await snapshots.snapshot()
        assert snap.revision is None
        assert snap.revision_summary is None

    @pytest.mark.asyncio
    async def test_get(self, snapshots):
        snap = await snapshots.snapshot()
        assert snapshots.get(snap.id).revision == snap.revision
        assert snapshots.get("snapshot-nope") is None
        assert snapshots.get("../etc") is None

    def test_no_snapshots(self, tmp_path, vcs, packages, probe):
        store = SnapshotStore(tmp_path / "empty", tmp_path, tmp_path / "c.json", vcs, packages, probe.reachability)
        assert store.latest() is None
        assert store.list() == []
