"""Deploy result ingestion."""

import asyncio
import logging
from typing import Optional

from . import metrics
from .errors import UnauthenticatedError, VersionNotFoundError
from .interfaces import AppStore, ClusterRegistry, VersionStore
from .models import DeployResult, DownstreamStatus, UndeployStatus

logger = logging.getLogger(__name__)


class DeployResultIngestor:
    """
    Writes agent apply outcomes back to the stores.

    Results are attributed to the cluster owning the presented deploy token
    and to that cluster's currently targeted sequence of the app.
    """

    def __init__(
        self,
        cluster_registry: ClusterRegistry,
        version_store: VersionStore,
        app_store: AppStore,
        undeploy_drain_delay: float = 20.0,
    ):
        """
        Initialize deploy result ingestor.

        Args:
            cluster_registry: Resolves deploy tokens
            version_store: Downstream version history
            app_store: App restore fields
            undeploy_drain_delay: Seconds to wait before applying an undeploy
                result, letting pod teardown finish
        """
        self.cluster_registry = cluster_registry
        self.version_store = version_store
        self.app_store = app_store
        self.undeploy_drain_delay = undeploy_drain_delay
        self._pending: set[asyncio.Task] = set()

    async def _resolve_cluster_id(self, token: str) -> str:
        try:
            cluster = await self.cluster_registry.resolve(token)
        except UnauthenticatedError:
            raise
        except Exception as e:
            raise UnauthenticatedError(f"failed to resolve deploy token: {e}") from e
        return cluster.id

    async def handle_deploy_result(self, token: str, result: DeployResult) -> int:
        """
        Persist the outcome of a deploy instruction.

        Returns:
            The sequence the result was recorded against

        Raises:
            UnauthenticatedError: If the token does not resolve to a cluster
            VersionNotFoundError: If the cluster targets no sequence of the app
        """
        cluster_id = await self._resolve_cluster_id(token)

        sequence = await self.version_store.get_target_sequence(result.app_id, cluster_id)
        if sequence is None:
            raise VersionNotFoundError(
                f"no targeted sequence for app {result.app_id} in cluster {cluster_id}"
            )

        if await self.version_store.is_deploy_successful(result.app_id, cluster_id, sequence):
            logger.info(
                f"Deploy of app {result.app_id} sequence {sequence} already recorded as successful"
            )
            metrics.deploy_results_total.labels(outcome="duplicate").inc()
            return sequence

        await self.version_store.save_deploy_output(
            result.app_id, cluster_id, sequence, result.to_output()
        )
        status = DownstreamStatus.FAILED if result.is_error else DownstreamStatus.DEPLOYED
        await self.version_store.record_deploy_status(result.app_id, sequence, cluster_id, status)

        metrics.deploy_results_total.labels(outcome=status.value).inc()
        logger.info(
            f"Recorded deploy result for app {result.app_id} sequence {sequence}: {status.value}"
        )
        return sequence

    async def handle_undeploy_result(
        self, token: str, result: DeployResult
    ) -> Optional[asyncio.Task]:
        """
        Schedule the undeploy status update for an app's restore cycle.

        The update is ignored when the app has no restore in progress, and is
        otherwise applied after `undeploy_drain_delay` seconds.

        Returns:
            The scheduled task, or None if the result was ignored
        """
        await self._resolve_cluster_id(token)

        status = UndeployStatus.FAILED if result.is_error else UndeployStatus.COMPLETED
        logger.info(f"Undeploy result for app {result.app_id}: {status.value}")

        app = await self.app_store.get_app(result.app_id)
        if not app.restore_in_progress_name:
            logger.info(f"Ignoring undeploy result for app {app.id}, no restore in progress")
            return None

        task = asyncio.create_task(
            self._apply_undeploy_status(app.id, app.restore_in_progress_name, status)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _apply_undeploy_status(
        self, app_id: str, restore_name: str, status: UndeployStatus
    ) -> None:
        """Apply `status` after the drain delay, only if `restore_name` still owns the app."""
        if self.undeploy_drain_delay > 0:
            await asyncio.sleep(self.undeploy_drain_delay)

        try:
            app = await self.app_store.get_app(app_id)
            if app.restore_in_progress_name != restore_name:
                logger.info(
                    f"Dropping undeploy result for app {app_id}, restore {restore_name} "
                    f"no longer in progress"
                )
                return
            await self.app_store.set_restore_undeploy_status(app_id, status)
        except Exception as e:
            logger.error(f"Failed to set undeploy status for app {app_id}: {e}", exc_info=True)
            return

        metrics.restore_transitions_total.labels(transition=f"undeploy_{status.value}").inc()

    async def close(self) -> None:
        """Cancel undeploy updates still waiting on the drain delay."""
        for task in list(self._pending):
            task.cancel()
        await asyncio.gather(*self._pending, return_exceptions=True)
        self._pending.clear()
