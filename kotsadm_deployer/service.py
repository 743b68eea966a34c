"""Socket service - owns the connection registry and reconciliation loops."""

import logging
from typing import Optional

from .deploy_loop import DeployScheduler
from .interfaces import AppStore
from .loops import PeriodicLoop
from .models import RestoreStatus
from .registry import ConnectionRegistry
from .restore_loop import RestoreReconciler
from .results import DeployResultIngestor
from .support_bundle_loop import SupportBundleDispatcher

logger = logging.getLogger(__name__)


class SocketService:
    """
    Socket service for connected cluster agents.

    Runs three independent periodic loops:
    - Deploy scheduling
    - Support bundle dispatch
    - Restore / undeploy reconciliation

    Also exposes the operator actions that reach into loop state.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        deploy_scheduler: DeployScheduler,
        support_bundle_dispatcher: SupportBundleDispatcher,
        restore_reconciler: RestoreReconciler,
        result_ingestor: DeployResultIngestor,
        app_store: AppStore,
        deploy_interval: float = 1.0,
        support_bundle_interval: float = 1.0,
        restore_interval: float = 1.0,
    ):
        self.registry = registry
        self.deploy_scheduler = deploy_scheduler
        self.support_bundle_dispatcher = support_bundle_dispatcher
        self.restore_reconciler = restore_reconciler
        self.result_ingestor = result_ingestor
        self.app_store = app_store

        self.deploy_loop = PeriodicLoop("deploy", deploy_scheduler.tick, deploy_interval)
        self.support_bundle_loop = PeriodicLoop(
            "support bundle", support_bundle_dispatcher.tick, support_bundle_interval
        )
        self.restore_loop = PeriodicLoop("restore", restore_reconciler.tick, restore_interval)

    @property
    def loops(self) -> list[PeriodicLoop]:
        return [self.deploy_loop, self.support_bundle_loop, self.restore_loop]

    @property
    def running(self) -> bool:
        return all(loop.running for loop in self.loops)

    def start(self) -> None:
        """Start all loops."""
        logger.info("Starting socket service")
        for loop in self.loops:
            loop.start()

    async def stop(self) -> None:
        """Stop all loops and drop pending undeploy updates."""
        logger.info("Stopping socket service")
        for loop in self.loops:
            await loop.stop()
        await self.result_ingestor.close()

    async def redeploy_app_version(
        self, app_id: str, sequence: int, cluster_id: Optional[str] = None
    ) -> None:
        """
        Force a re-send of `sequence` even if it is already dispatched.

        Args:
            app_id: App to redeploy
            sequence: Sequence to target
            cluster_id: Limit the re-send to one cluster, or all when None
        """
        await self.app_store.deploy_version(app_id, sequence)
        await self.registry.forget_last_deployed(app_id, cluster_id)
        logger.info(f"Redeploy requested for app {app_id} sequence {sequence}")

    async def cancel_restore(self, app_id: str) -> None:
        """End the app's restore cycle, whatever state it is in."""
        await self.app_store.reset_restore(app_id)
        logger.info(f"Restore cancelled for app {app_id}")

    async def get_restore_status(self, app_id: str) -> RestoreStatus:
        """
        Report the app's restore cycle.

        `status` is the cycle step, e.g. `undeploying` or `undeploy_failed`.
        A failed undeploy stays there until the restore is cancelled.
        """
        app = await self.app_store.get_app(app_id)
        if not app.restore_in_progress_name:
            return RestoreStatus()

        return RestoreStatus(
            restore_name=app.restore_in_progress_name,
            status=app.restore_state.value,
            undeploy_status=app.restore_undeploy_status,
        )
