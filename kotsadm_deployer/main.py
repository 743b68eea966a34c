"""kotsadm deployer - process entry point."""

import logging
from typing import Optional

from fastapi import FastAPI

from .api import Deployer, WebSocketEmitter, create_app
from .backoff import ErrorBackoff
from .config import Settings, get_settings
from .deploy_loop import DeployScheduler
from .interfaces import BackupClient, ManifestRenderer
from .registry import ConnectionRegistry
from .renderer import KustomizeRenderer
from .restore_loop import RestoreReconciler
from .results import DeployResultIngestor
from .service import SocketService
from .store import Database, SQLStore
from .support_bundle_loop import SupportBundleDispatcher
from .velero import VeleroClient

logger = logging.getLogger(__name__)


def build_deployer(
    settings: Settings,
    database: Optional[Database] = None,
    renderer: Optional[ManifestRenderer] = None,
    backup_client: Optional[BackupClient] = None,
) -> Deployer:
    """
    Construct every collaborator once and wire them together.

    Args:
        settings: Service settings
        database: Database to use instead of one built from settings
        renderer: Renderer to use instead of the kustomize renderer
        backup_client: Backup client to use instead of the Velero client
    """
    database = database or Database(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
    )
    store = SQLStore(database)
    renderer = renderer or KustomizeRenderer(settings.archive_root)
    backup_client = backup_client or VeleroClient.from_config(
        namespace=settings.velero_namespace,
        kubeconfig_path=settings.kubeconfig_path,
    )

    # Cluster registry is attached in the app lifespan once the database is up
    registry = ConnectionRegistry()
    emitter = WebSocketEmitter()

    deploy_scheduler = DeployScheduler(
        registry=registry,
        cluster_registry=store,
        version_store=store,
        app_status_store=store,
        renderer=renderer,
        emitter=emitter,
        annotate_slug=settings.annotate_slug,
        backoff=ErrorBackoff(
            min_period=settings.error_backoff_min_seconds,
            max_period=settings.error_backoff_max_seconds,
        ),
    )
    support_bundle_dispatcher = SupportBundleDispatcher(
        registry=registry,
        support_bundle_store=store,
        app_store=store,
        emitter=emitter,
        api_endpoint=settings.api_endpoint,
    )
    restore_reconciler = RestoreReconciler(
        registry=registry,
        cluster_registry=store,
        version_store=store,
        app_store=store,
        renderer=renderer,
        backup_client=backup_client,
        emitter=emitter,
        backoff=ErrorBackoff(
            min_period=settings.error_backoff_min_seconds,
            max_period=settings.error_backoff_max_seconds,
        ),
    )
    ingestor = DeployResultIngestor(
        cluster_registry=store,
        version_store=store,
        app_store=store,
        undeploy_drain_delay=settings.undeploy_drain_delay_seconds,
    )
    service = SocketService(
        registry=registry,
        deploy_scheduler=deploy_scheduler,
        support_bundle_dispatcher=support_bundle_dispatcher,
        restore_reconciler=restore_reconciler,
        result_ingestor=ingestor,
        app_store=store,
        deploy_interval=settings.deploy_loop_interval_seconds,
        support_bundle_interval=settings.support_bundle_loop_interval_seconds,
        restore_interval=settings.restore_loop_interval_seconds,
    )

    return Deployer(
        version=settings.version,
        registry=registry,
        cluster_registry=store,
        emitter=emitter,
        ingestor=ingestor,
        service=service,
        database=database,
    )


def create_application() -> FastAPI:
    """Application factory used by uvicorn."""
    settings = get_settings()
    return create_app(build_deployer(settings))


def run() -> None:
    """Run the service."""
    import uvicorn

    settings = get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "kotsadm_deployer.main:create_application",
        factory=True,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
