"""Deploy scheduling loop."""

import base64
import logging
from datetime import datetime
from typing import Optional

from . import metrics
from .backoff import ErrorBackoff
from .errors import ConnectionNotFoundError
from .interfaces import (
    AppStatusStore,
    ClusterRegistry,
    InstructionEmitter,
    ManifestRenderer,
    VersionStore,
)
from .models import (
    APP_INFORMERS_EVENT,
    DEFAULT_READY_STATE,
    DEPLOY_EVENT,
    DEPLOY_RESULT_CALLBACK,
    MANIFEST_NAMESPACE,
    App,
    AppInformersArgs,
    DeployArgs,
    DownstreamStatus,
    KotsAppSpec,
)
from .registry import ConnectionRecord, ConnectionRegistry

logger = logging.getLogger(__name__)


class DeployScheduler:
    """
    Decides what each connected cluster should apply next.

    For every connection and every app on that connection's cluster, the
    targeted sequence is compared with the last sequence dispatched on the
    connection. Only a change triggers a render and a deploy instruction.
    A failure for one app never stops the others in the same tick.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        cluster_registry: ClusterRegistry,
        version_store: VersionStore,
        app_status_store: AppStatusStore,
        renderer: ManifestRenderer,
        emitter: InstructionEmitter,
        annotate_slug: bool = False,
        backoff: Optional[ErrorBackoff] = None,
    ):
        self.registry = registry
        self.cluster_registry = cluster_registry
        self.version_store = version_store
        self.app_status_store = app_status_store
        self.renderer = renderer
        self.emitter = emitter
        self.annotate_slug = annotate_slug
        self.backoff = backoff or ErrorBackoff()

    async def tick(self) -> None:
        """Run one pass over all connections."""
        for record in await self.registry.list_connections():
            try:
                apps = await self.version_store.list_apps_for_cluster(record.cluster_id)
            except Exception as e:
                logger.error(f"Failed to list apps for cluster {record.cluster_id}: {e}")
                continue

            for app in apps:
                key = f"{app.id}:{record.cluster_id}"
                try:
                    deployed = await self.process_app(record, app)
                except Exception as e:
                    self.backoff.on_error(
                        key,
                        e,
                        lambda: logger.error(
                            f"Failed to run deploy loop for app {app.id} "
                            f"in cluster {record.cluster_id}: {e}"
                        ),
                    )
                    continue

                self.backoff.on_success(key)
                if deployed:
                    logger.info(f"Deploy sent for app {app.id} in cluster {record.cluster_id}")

    async def process_app(self, record: ConnectionRecord, app: App) -> bool:
        """
        Dispatch a deploy for `app` if its target sequence changed.

        Returns:
            True if a deploy instruction was emitted
        """
        if app.restore_in_progress_name:
            return False

        sequence = await self.version_store.get_target_sequence(app.id, record.cluster_id)
        if sequence is None or sequence < 0:
            return False

        last_sequence = await self.registry.get_last_deployed(record.connection_id, app.id)
        if last_sequence == sequence:
            return False

        await self.deploy_version(record, app, sequence)
        return True

    async def deploy_version(self, record: ConnectionRecord, app: App, sequence: int) -> None:
        """
        Render and emit `sequence` of `app` on one connection.

        Failures are recorded as a failed downstream version before being
        re-raised, except a closed connection, which says nothing about the
        version. The dispatched sequence is recorded only after the
        instruction has been emitted.
        """
        try:
            cluster = await self.cluster_registry.get_cluster(record.cluster_id)
            app_spec = await self.renderer.get_app_spec(app.id, sequence)
            args = await self._build_deploy_args(app, sequence, cluster.title, record, app_spec)
            await self.emitter.emit(
                record.connection_id,
                DEPLOY_EVENT,
                args.model_dump(by_alias=True, exclude_none=True),
            )
        except ConnectionNotFoundError:
            # Agent disconnected, a reconnect redelivers
            raise
        except Exception as e:
            metrics.deploy_failures_total.inc()
            await self._record_failure(app, sequence, record.cluster_id, e)
            raise

        await self.registry.set_last_deployed(record.connection_id, app.id, sequence)
        metrics.deploy_instructions_total.labels(kind="deploy").inc()

        await self._send_status_informers(record, app, sequence, app_spec)

    async def _build_deploy_args(
        self,
        app: App,
        sequence: int,
        downstream_name: str,
        record: ConnectionRecord,
        app_spec: Optional[KotsAppSpec],
    ) -> DeployArgs:
        previous_manifests = ""
        previous_sequence = await self.version_store.get_previously_deployed_sequence(
            app.id, record.cluster_id, sequence
        )
        if previous_sequence is not None:
            previous_spec = await self.renderer.get_app_spec(app.id, previous_sequence)
            previous_rendered = await self.renderer.render(
                app,
                previous_sequence,
                downstream_name,
                previous_spec.kustomize_version if previous_spec else "",
            )
            previous_manifests = base64.b64encode(previous_rendered).decode("utf-8")

        rendered = await self.renderer.render(
            app, sequence, downstream_name, app_spec.kustomize_version if app_spec else ""
        )
        image_pull_secret = await self.renderer.get_image_pull_secret(app.id, sequence)

        return DeployArgs(
            app_id=app.id,
            app_slug=app.slug,
            kubectl_version=app_spec.kubectl_version if app_spec else "",
            additional_namespaces=app_spec.additional_namespaces if app_spec else [],
            image_pull_secret=image_pull_secret,
            namespace=MANIFEST_NAMESPACE,
            manifests=base64.b64encode(rendered).decode("utf-8"),
            previous_manifests=previous_manifests,
            result_callback=DEPLOY_RESULT_CALLBACK,
            wait=False,
            annotate_slug=self.annotate_slug,
        )

    async def _record_failure(
        self, app: App, sequence: int, cluster_id: str, error: Exception
    ) -> None:
        try:
            await self.version_store.record_deploy_status(
                app.id, sequence, cluster_id, DownstreamStatus.FAILED, str(error)
            )
        except Exception as e:
            logger.error(f"Failed to update downstream status for app {app.id}: {e}")

    async def _send_status_informers(
        self,
        record: ConnectionRecord,
        app: App,
        sequence: int,
        app_spec: Optional[KotsAppSpec],
    ) -> None:
        """Best effort: failures are logged, never raised."""
        try:
            rendered_informers: list[str] = []
            if app_spec:
                for informer in app_spec.status_informers:
                    try:
                        rendered = await self.renderer.render_informer(app, sequence, informer)
                    except Exception as e:
                        logger.error(f"Failed to render status informer {informer!r}: {e}")
                        continue
                    if rendered:
                        rendered_informers.append(rendered)

            if rendered_informers:
                informers_args = AppInformersArgs(
                    app_id=app.id, informers=rendered_informers, sequence=sequence
                )
                await self.emitter.emit(
                    record.connection_id, APP_INFORMERS_EVENT, informers_args.model_dump()
                )
            else:
                await self.app_status_store.set_app_status(
                    app.id, DEFAULT_READY_STATE, datetime.utcnow(), sequence
                )
        except Exception as e:
            logger.error(f"Failed to send status informers for app {app.id}: {e}", exc_info=True)
