"""Tests for startup recovery (DeploymentEngine.reconcile)."""

import json

from shipyard.server.app import build_engine
from tests.conftest import make_bundle, node_bundle


def _write_metadata(data_dir, service, releases, active):
    (data_dir / service / "releases").mkdir(parents=True, exist_ok=True)
    (data_dir / service / "releases.json").write_text(
        json.dumps({"env": {}, "releases": releases, "activeReleaseId": active})
    )


def _record(release_id):
    return {"id": release_id, "filename": f"{release_id}.tgz", "createdAt": "2024-01-01T00:00:00Z", "metadata": {}}


class TestReconcile:
    """Tests for orphan and dangling release repair."""

    async def test_clean_data_dir(self, engine):
        """Consistent state reports nothing."""
        await engine.create_service("api")
        await engine.add_release("api", node_bundle())

        report = await engine.reconcile()

        assert report.clean
        assert report.scratch_removed == {}

    async def test_orphan_bundle_pruned(self, engine, data_dir):
        """Unreferenced bundles are deleted."""
        await engine.create_service("api")
        orphan = data_dir / "api" / "releases" / "orphan.tgz"
        orphan.write_bytes(make_bundle({"a": "1"}))

        report = await engine.reconcile(prune_orphans=True)

        assert report.orphan_bundles == {"api": ["orphan.tgz"]}
        assert not orphan.exists()

    async def test_orphan_bundle_kept_when_not_pruning(self, engine, data_dir):
        """Orphans are only reported when pruning is off."""
        await engine.create_service("api")
        orphan = data_dir / "api" / "releases" / "orphan.tgz"
        orphan.write_bytes(make_bundle({"a": "1"}))

        report = await engine.reconcile(prune_orphans=False)

        assert report.orphan_bundles == {"api": ["orphan.tgz"]}
        assert orphan.exists()

    async def test_dangling_release_dropped(self, server_config, fake_supervisor, data_dir):
        """Releases whose bundle vanished are removed and the pointer reassigned."""
        _write_metadata(data_dir, "api", [_record("a"), _record("b")], active="b")
        (data_dir / "api" / "releases" / "a.tgz").write_bytes(make_bundle({"a": "1"}))
        engine = build_engine(server_config, fake_supervisor)
        engine.registry.load()

        report = await engine.reconcile()

        assert report.dangling_releases == {"api": ["b"]}
        service = engine.registry.get("api")
        assert [r.id for r in service.releases] == ["a"]
        assert service.active_release_id == "a"
        saved = json.loads((data_dir / "api" / "releases.json").read_text())
        assert saved["activeReleaseId"] == "a"

    async def test_scratch_removed(self, engine, data_dir):
        """Interrupted-write leftovers are cleaned up."""
        await engine.create_service("api")
        (data_dir / "api" / "releases.json.tmp").write_text("{")
        (data_dir / "api" / "releases" / "tmp-123").mkdir()

        report = await engine.reconcile()

        assert sorted(report.scratch_removed["api"]) == ["releases.json.tmp", "tmp-123"]
        assert not (data_dir / "api" / "releases.json.tmp").exists()

    async def test_unreadable_metadata_keeps_bundles(self, engine, server_config, fake_supervisor, data_dir):
        """Bundles of a service with broken metadata survive pruning."""
        await engine.create_service("api")
        release = await engine.add_release("api", node_bundle())
        bundle = data_dir / "api" / "releases" / release.filename
        (data_dir / "api" / "releases.json").write_text("{not json")

        restarted = build_engine(server_config, fake_supervisor)
        restarted.registry.load()
        report = await restarted.reconcile(prune_orphans=True)

        assert report.unreadable == ["api"]
        assert report.orphan_bundles == {"api": [release.filename]}
        assert not report.clean
        assert bundle.exists()

    async def test_unreadable_service_does_not_shield_others(
        self, engine, server_config, fake_supervisor, data_dir
    ):
        """Orphans of healthy services are still pruned."""
        await engine.create_service("api")
        await engine.create_service("web")
        await engine.add_release("api", node_bundle())
        (data_dir / "api" / "releases.json").write_text("{not json")
        orphan = data_dir / "web" / "releases" / "orphan.tgz"
        orphan.write_bytes(make_bundle({"a": "1"}))

        restarted = build_engine(server_config, fake_supervisor)
        restarted.registry.load()
        await restarted.reconcile(prune_orphans=True)

        assert not orphan.exists()
