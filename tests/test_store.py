"""Tests for the SQL store, against SQLite."""

from datetime import datetime

import pytest
import pytest_asyncio

from kotsadm_deployer.errors import AppNotFoundError, ClusterNotFoundError, UnauthenticatedError
from kotsadm_deployer.models import (
    DEFAULT_READY_STATE,
    DownstreamOutput,
    DownstreamStatus,
    UndeployStatus,
)


@pytest_asyncio.fixture
async def seeded(sql_store):
    """One cluster with one app deployed to it."""
    cluster = await sql_store.create_cluster("this-cluster", token="deploy-token", cluster_id="c1")
    app = await sql_store.create_app("My App", "my-app", app_id="a1")
    await sql_store.add_downstream(app.id, cluster.id, "this-cluster")
    return sql_store


class TestClusterRegistry:
    """Test token resolution."""

    @pytest.mark.asyncio
    async def test_resolve(self, seeded):
        cluster = await seeded.resolve("deploy-token")

        assert cluster.id == "c1"
        assert cluster.title == "this-cluster"

    @pytest.mark.asyncio
    async def test_resolve_unknown(self, seeded):
        with pytest.raises(UnauthenticatedError):
            await seeded.resolve("nope")

    @pytest.mark.asyncio
    async def test_get_cluster_missing(self, seeded):
        with pytest.raises(ClusterNotFoundError):
            await seeded.get_cluster("missing")


class TestVersionStore:
    """Test downstream version history."""

    @pytest.mark.asyncio
    async def test_list_apps_for_cluster(self, seeded):
        apps = await seeded.list_apps_for_cluster("c1")

        assert [app.slug for app in apps] == ["my-app"]
        assert await seeded.list_apps_for_cluster("other") == []

    @pytest.mark.asyncio
    async def test_no_target_until_deployed(self, seeded):
        await seeded.create_downstream_version("a1", "c1", 0)

        assert await seeded.get_target_sequence("a1", "c1") is None

        await seeded.deploy_version("a1", 0)

        assert await seeded.get_target_sequence("a1", "c1") == 0
        assert await seeded.get_deploy_status("a1", "c1", 0) == DownstreamStatus.DEPLOYED

    @pytest.mark.asyncio
    async def test_previously_deployed_sequence(self, seeded):
        for sequence in range(3):
            await seeded.create_downstream_version("a1", "c1", sequence)
        await seeded.deploy_version("a1", 0)
        await seeded.deploy_version("a1", 1)

        assert await seeded.get_previously_deployed_sequence("a1", "c1", 1) == 0
        assert await seeded.get_previously_deployed_sequence("a1", "c1", 2) == 1

    @pytest.mark.asyncio
    async def test_previously_deployed_none(self, seeded):
        await seeded.create_downstream_version("a1", "c1", 0)
        await seeded.deploy_version("a1", 0)

        assert await seeded.get_previously_deployed_sequence("a1", "c1", 0) is None

    @pytest.mark.asyncio
    async def test_record_deploy_status(self, seeded):
        await seeded.create_downstream_version("a1", "c1", 2)

        await seeded.record_deploy_status("a1", 2, "c1", DownstreamStatus.FAILED, "render failed")

        assert await seeded.get_deploy_status("a1", "c1", 2) == DownstreamStatus.FAILED

    @pytest.mark.asyncio
    async def test_deploy_output(self, seeded):
        assert await seeded.is_deploy_successful("a1", "c1", 1) is False

        await seeded.save_deploy_output(
            "a1", "c1", 1, DownstreamOutput(is_error=True, apply_stderr="forbidden")
        )
        assert await seeded.is_deploy_successful("a1", "c1", 1) is False

        await seeded.save_deploy_output(
            "a1", "c1", 1, DownstreamOutput(is_error=False, apply_stdout="created")
        )
        assert await seeded.is_deploy_successful("a1", "c1", 1) is True

        output = await seeded.get_deploy_output("a1", "c1", 1)
        assert output.apply_stdout == "created"
        assert output.apply_stderr == ""

    @pytest.mark.asyncio
    async def test_current_sequence_tracks_latest_version(self, seeded):
        await seeded.create_downstream_version("a1", "c1", 0)
        await seeded.create_downstream_version("a1", "c1", 1)

        app = await seeded.get_app("a1")
        assert app.current_sequence == 1


class TestAppStore:
    """Test restore fields."""

    @pytest.mark.asyncio
    async def test_get_app_missing(self, seeded):
        with pytest.raises(AppNotFoundError):
            await seeded.get_app("missing")

    @pytest.mark.asyncio
    async def test_restore_cycle_fields(self, seeded):
        await seeded.set_restore_in_progress("a1", "backup-1")
        app = await seeded.get_app("a1")
        assert app.restore_in_progress_name == "backup-1"
        assert app.restore_undeploy_status == UndeployStatus.NONE

        await seeded.set_restore_undeploy_status("a1", UndeployStatus.COMPLETED)
        app = await seeded.get_app("a1")
        assert app.restore_undeploy_status == UndeployStatus.COMPLETED

        await seeded.reset_restore("a1")
        app = await seeded.get_app("a1")
        assert app.restore_in_progress_name is None
        assert app.restore_undeploy_status == UndeployStatus.NONE


class TestAppStatusStore:
    @pytest.mark.asyncio
    async def test_set_app_status(self, seeded):
        await seeded.set_app_status("a1", DEFAULT_READY_STATE, datetime.utcnow(), 3)
        await seeded.set_app_status("a1", DEFAULT_READY_STATE, datetime.utcnow(), 4)

        assert await seeded.get_app_status("a1") == DEFAULT_READY_STATE


class TestSupportBundleStore:
    @pytest.mark.asyncio
    async def test_pending_support_bundles(self, seeded):
        bundle_id = await seeded.create_pending_support_bundle("a1", "c1")

        pending = await seeded.list_pending_support_bundles("c1")
        assert [(b.id, b.app_id) for b in pending] == [(bundle_id, "a1")]
        assert await seeded.list_pending_support_bundles("other") == []

        await seeded.clear_pending_support_bundle(bundle_id)
        await seeded.clear_pending_support_bundle(bundle_id)

        assert await seeded.list_pending_support_bundles("c1") == []
