"""Tests for deploy result ingestion."""

import asyncio

import pytest

from conftest import CLUSTER_ID, DEPLOY_TOKEN
from kotsadm_deployer.errors import UnauthenticatedError, VersionNotFoundError
from kotsadm_deployer.models import App, DeployResult, DownstreamStatus, UndeployStatus
from kotsadm_deployer.results import DeployResultIngestor


@pytest.fixture
def ingestor(cluster_registry, version_store, app_store):
    return DeployResultIngestor(
        cluster_registry=cluster_registry,
        version_store=version_store,
        app_store=app_store,
        undeploy_drain_delay=0,
    )


class TestDeployResult:
    """Test deploy result persistence."""

    @pytest.mark.asyncio
    async def test_success_recorded(self, ingestor, version_store):
        result = DeployResult(app_id="app-1", apply_stdout="configmap/web created")

        sequence = await ingestor.handle_deploy_result(DEPLOY_TOKEN, result)

        assert sequence == 4
        version_store.get_target_sequence.assert_awaited_once_with("app-1", CLUSTER_ID)
        output = version_store.save_deploy_output.call_args.args[3]
        assert output.apply_stdout == "configmap/web created"
        assert output.is_error is False
        version_store.record_deploy_status.assert_awaited_once_with(
            "app-1", 4, CLUSTER_ID, DownstreamStatus.DEPLOYED
        )

    @pytest.mark.asyncio
    async def test_error_recorded_as_failed(self, ingestor, version_store):
        result = DeployResult(app_id="app-1", is_error=True, apply_stderr="forbidden")

        await ingestor.handle_deploy_result(DEPLOY_TOKEN, result)

        version_store.record_deploy_status.assert_awaited_once_with(
            "app-1", 4, CLUSTER_ID, DownstreamStatus.FAILED
        )

    @pytest.mark.asyncio
    async def test_already_successful_not_rewritten(self, ingestor, version_store):
        """Late duplicates do not overwrite a successful result."""
        version_store.is_deploy_successful.return_value = True

        sequence = await ingestor.handle_deploy_result(
            DEPLOY_TOKEN, DeployResult(app_id="app-1", is_error=True)
        )

        assert sequence == 4
        version_store.save_deploy_output.assert_not_awaited()
        version_store.record_deploy_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_token(self, ingestor, cluster_registry, version_store):
        cluster_registry.resolve.side_effect = UnauthenticatedError("unknown deploy token")

        with pytest.raises(UnauthenticatedError):
            await ingestor.handle_deploy_result("bad", DeployResult(app_id="app-1"))

        version_store.save_deploy_output.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_target_sequence(self, ingestor, version_store):
        version_store.get_target_sequence.return_value = None

        with pytest.raises(VersionNotFoundError):
            await ingestor.handle_deploy_result(DEPLOY_TOKEN, DeployResult(app_id="app-1"))

    def test_camel_case_payload(self):
        """Agents report camelCase field names."""
        result = DeployResult.model_validate(
            {"appId": "app-1", "isError": True, "dryrunStderr": "bad", "helmStdout": "ok"}
        )

        output = result.to_output()
        assert result.app_id == "app-1"
        assert output.is_error is True
        assert output.dryrun_stderr == "bad"
        assert output.helm_stdout == "ok"


class TestUndeployResult:
    """Test undeploy result handling."""

    @pytest.mark.asyncio
    async def test_completed_applied(self, ingestor, app_store):
        app_store.get_app.return_value = App(
            id="app-1", slug="my-app", name="My App", restore_in_progress_name="backup-1"
        )

        task = await ingestor.handle_undeploy_result(DEPLOY_TOKEN, DeployResult(app_id="app-1"))
        await task

        app_store.set_restore_undeploy_status.assert_awaited_once_with(
            "app-1", UndeployStatus.COMPLETED
        )

    @pytest.mark.asyncio
    async def test_error_applied_as_failed(self, ingestor, app_store):
        app_store.get_app.return_value = App(
            id="app-1", slug="my-app", name="My App", restore_in_progress_name="backup-1"
        )

        task = await ingestor.handle_undeploy_result(
            DEPLOY_TOKEN, DeployResult(app_id="app-1", is_error=True)
        )
        await task

        app_store.set_restore_undeploy_status.assert_awaited_once_with(
            "app-1", UndeployStatus.FAILED
        )

    @pytest.mark.asyncio
    async def test_ignored_without_restore(self, ingestor, app_store):
        """Late callbacks after the cycle ended change nothing."""
        task = await ingestor.handle_undeploy_result(DEPLOY_TOKEN, DeployResult(app_id="app-1"))

        assert task is None
        app_store.set_restore_undeploy_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dropped_when_restore_replaced(self, ingestor, app_store):
        """A result for a cancelled restore is not applied to the restore that replaced it."""
        app_store.get_app.side_effect = [
            App(id="app-1", slug="my-app", name="My App", restore_in_progress_name="backup-1"),
            App(id="app-1", slug="my-app", name="My App", restore_in_progress_name="backup-2"),
        ]

        task = await ingestor.handle_undeploy_result(DEPLOY_TOKEN, DeployResult(app_id="app-1"))
        await task

        assert app_store.get_app.await_count == 2
        app_store.set_restore_undeploy_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dropped_when_restore_cancelled(self, ingestor, app_store, sample_app):
        app_store.get_app.side_effect = [
            App(id="app-1", slug="my-app", name="My App", restore_in_progress_name="backup-1"),
            sample_app,
        ]

        task = await ingestor.handle_undeploy_result(DEPLOY_TOKEN, DeployResult(app_id="app-1"))
        await task

        app_store.set_restore_undeploy_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_token(self, ingestor, cluster_registry, app_store):
        cluster_registry.resolve.side_effect = UnauthenticatedError("unknown deploy token")

        with pytest.raises(UnauthenticatedError):
            await ingestor.handle_undeploy_result("bad", DeployResult(app_id="app-1"))

        app_store.get_app.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_applied_after_drain_delay(self, cluster_registry, version_store, app_store):
        """The status update waits for the drain delay, not the callback."""
        app_store.get_app.return_value = App(
            id="app-1", slug="my-app", name="My App", restore_in_progress_name="backup-1"
        )
        ingestor = DeployResultIngestor(
            cluster_registry, version_store, app_store, undeploy_drain_delay=60
        )

        task = await ingestor.handle_undeploy_result(DEPLOY_TOKEN, DeployResult(app_id="app-1"))
        await asyncio.sleep(0)

        assert not task.done()
        app_store.set_restore_undeploy_status.assert_not_awaited()

        await ingestor.close()
        assert task.cancelled()
        app_store.set_restore_undeploy_status.assert_not_awaited()
