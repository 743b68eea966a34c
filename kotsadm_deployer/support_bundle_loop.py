"""Support bundle dispatch loop."""

import logging

from . import metrics
from .interfaces import AppStore, InstructionEmitter, SupportBundleStore
from .models import SUPPORT_BUNDLE_EVENT, PendingSupportBundle, SupportBundleArgs
from .registry import ConnectionRecord, ConnectionRegistry

logger = logging.getLogger(__name__)


class SupportBundleDispatcher:
    """
    Forwards queued support bundle collections to connected agents.

    Delivery is at most once per pending record: the record is cleared right
    after the request is emitted, without waiting for the agent.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        support_bundle_store: SupportBundleStore,
        app_store: AppStore,
        emitter: InstructionEmitter,
        api_endpoint: str,
    ):
        self.registry = registry
        self.support_bundle_store = support_bundle_store
        self.app_store = app_store
        self.emitter = emitter
        self.api_endpoint = api_endpoint.rstrip("/")

    async def tick(self) -> None:
        for record in await self.registry.list_connections():
            try:
                pending = await self.support_bundle_store.list_pending_support_bundles(
                    record.cluster_id
                )
            except Exception as e:
                logger.error(
                    f"Failed to list pending support bundles for cluster {record.cluster_id}: {e}"
                )
                continue

            for bundle in pending:
                try:
                    await self.dispatch(record, bundle)
                except Exception as e:
                    logger.error(f"Failed to dispatch support bundle {bundle.id}: {e}")

    async def dispatch(self, record: ConnectionRecord, bundle: PendingSupportBundle) -> bool:
        """
        Emit one collection request and clear its pending record.

        A failed emit leaves the record pending for the next tick. The
        connection is marked only after a successful emit, so a failed clear
        never causes a second request on the same connection.

        Returns:
            True if a request was emitted
        """
        marker = f"supportbundle:{bundle.id}"
        app = await self.app_store.get_app(bundle.app_id)

        if await self.registry.was_sent(record.connection_id, marker):
            emitted = False
        else:
            args = SupportBundleArgs(uri=self.collection_uri(app.slug))
            await self.emitter.emit(record.connection_id, SUPPORT_BUNDLE_EVENT, args.model_dump())
            await self.registry.mark_sent(record.connection_id, marker)
            metrics.support_bundle_requests_total.inc()
            logger.info(f"Requested support bundle for app {app.id} in cluster {record.cluster_id}")
            emitted = True

        try:
            await self.support_bundle_store.clear_pending_support_bundle(bundle.id)
        except Exception as e:
            logger.error(f"Failed to clear pending support bundle {bundle.id}: {e}")

        return emitted

    def collection_uri(self, app_slug: str) -> str:
        return f"{self.api_endpoint}/api/v1/troubleshoot/{app_slug}?incluster=true"
