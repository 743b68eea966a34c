"""Restore / undeploy state machine loop."""

import base64
import json
import logging
from typing import Optional

from . import metrics
from .backoff import ErrorBackoff
from .errors import DeployerError, RestoreMetadataError
from .interfaces import (
    AppStore,
    BackupClient,
    ClusterRegistry,
    InstructionEmitter,
    ManifestRenderer,
    VersionStore,
)
from .models import (
    APP_SEQUENCE_ANNOTATION,
    APP_SLUG_LABEL,
    APPS_SEQUENCES_ANNOTATION,
    DEPLOY_EVENT,
    INSTANCE_ANNOTATION,
    MANIFEST_NAMESPACE,
    UNDEPLOY_RESULT_CALLBACK,
    App,
    Backup,
    DeployArgs,
    LabelSelector,
    Restore,
    RestorePhase,
    RestoreState,
    UndeployStatus,
)
from .registry import ConnectionRecord, ConnectionRegistry

logger = logging.getLogger(__name__)


def is_instance_backup(backup: Backup) -> bool:
    return backup.annotations.get(INSTANCE_ANNOTATION) == "true"


def restore_name_for(backup: Backup, app_slug: str) -> str:
    """Instance backups are restored one app at a time, so the restore carries the slug."""
    if is_instance_backup(backup):
        return f"{backup.name}.{app_slug}"
    return backup.name


def restore_sequence_from_backup(backup: Backup, app_slug: str) -> int:
    """
    Read the app sequence a backup was taken at.

    Raises:
        RestoreMetadataError: If the annotation is missing or not an integer
    """
    if not backup.annotations:
        raise RestoreMetadataError("backup is missing required annotations")

    if is_instance_backup(backup):
        raw = backup.annotations.get(APPS_SEQUENCES_ANNOTATION)
        if not raw:
            raise RestoreMetadataError("backup is missing apps sequences annotation")
        try:
            sequences = json.loads(raw)
        except ValueError as e:
            raise RestoreMetadataError(f"failed to parse apps sequences: {e}") from e
        if not isinstance(sequences, dict) or app_slug not in sequences:
            raise RestoreMetadataError(f"backup has no sequence for app {app_slug}")
        value = sequences[app_slug]
    else:
        value = backup.annotations.get(APP_SEQUENCE_ANNOTATION)
        if not value:
            raise RestoreMetadataError("backup is missing sequence annotation")

    if isinstance(value, bool):
        raise RestoreMetadataError(f"failed to parse sequence {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise RestoreMetadataError(f"failed to parse sequence {value!r}") from e


class RestoreReconciler:
    """
    Drives apps through undeploy, restore and redeploy.

    Only apps with a restore name set are considered. The persisted undeploy
    status decides the step:

    - not started: send an undeploy instruction, move to in process
    - in process: wait for the undeploy result callback
    - completed: create the restore, then deploy the backed up sequence once
      the restore completes
    - failed: left for an operator to cancel
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        cluster_registry: ClusterRegistry,
        version_store: VersionStore,
        app_store: AppStore,
        renderer: ManifestRenderer,
        backup_client: BackupClient,
        emitter: InstructionEmitter,
        backoff: Optional[ErrorBackoff] = None,
    ):
        self.registry = registry
        self.cluster_registry = cluster_registry
        self.version_store = version_store
        self.app_store = app_store
        self.renderer = renderer
        self.backup_client = backup_client
        self.emitter = emitter
        self.backoff = backoff or ErrorBackoff()

    async def tick(self) -> None:
        for record in await self.registry.list_connections():
            try:
                apps = await self.version_store.list_apps_for_cluster(record.cluster_id)
            except Exception as e:
                logger.error(f"Failed to list apps for cluster {record.cluster_id}: {e}")
                continue

            for app in apps:
                if not app.restore_in_progress_name:
                    continue

                key = f"restore:{app.id}"
                try:
                    await self.handle_restore_in_progress(record, app)
                except Exception as e:
                    self.backoff.on_error(
                        key,
                        e,
                        lambda: logger.error(f"Failed to handle restore for app {app.id}: {e}"),
                    )
                    continue
                self.backoff.on_success(key)

    async def handle_restore_in_progress(self, record: ConnectionRecord, app: App) -> None:
        state = app.restore_state

        if state == RestoreState.PENDING_UNDEPLOY:
            await self.undeploy_app(record, app)
        elif state == RestoreState.UNDEPLOYED:
            await self.handle_undeploy_completed(record, app)
        elif state == RestoreState.UNDEPLOY_FAILED:
            raise DeployerError(
                f"undeploy failed for restore {app.restore_in_progress_name}, "
                f"cancel the restore to reset"
            )

    async def undeploy_app(self, record: ConnectionRecord, app: App) -> None:
        """
        Tear down the app's current manifests ahead of a restore.

        The current manifests go out as `previous_manifests` with empty
        `manifests`, so the agent removes everything it applied.
        """
        sequence = await self.version_store.get_target_sequence(app.id, record.cluster_id)
        if sequence is None:
            raise DeployerError(f"no current version for app {app.id} in cluster {record.cluster_id}")

        cluster = await self.cluster_registry.get_cluster(record.cluster_id)
        app_spec = await self.renderer.get_app_spec(app.id, sequence)
        rendered = await self.renderer.render(
            app, sequence, cluster.title, app_spec.kustomize_version if app_spec else ""
        )

        backup = await self.backup_client.read_backup(app.restore_in_progress_name)

        label_selector = (
            backup.label_selector.model_copy(deep=True)
            if backup.label_selector
            else LabelSelector()
        )
        label_selector.match_labels[APP_SLUG_LABEL] = app.slug

        args = DeployArgs(
            app_id=app.id,
            app_slug=app.slug,
            kubectl_version=app_spec.kubectl_version if app_spec else "",
            namespace=MANIFEST_NAMESPACE,
            manifests="",
            previous_manifests=base64.b64encode(rendered).decode("utf-8"),
            result_callback=UNDEPLOY_RESULT_CALLBACK,
            wait=True,
            clear_namespaces=backup.included_namespaces,
            clear_pvcs=True,
            is_restore=True,
            restore_label_selector=label_selector,
        )
        await self.emitter.emit(
            record.connection_id, DEPLOY_EVENT, args.model_dump(by_alias=True, exclude_none=True)
        )
        metrics.deploy_instructions_total.labels(kind="undeploy").inc()

        await self.app_store.set_restore_undeploy_status(app.id, UndeployStatus.IN_PROCESS)
        metrics.restore_transitions_total.labels(transition="undeploy_started").inc()
        logger.info(f"Undeploy sent for app {app.id} ahead of restore {backup.name}")

    async def handle_undeploy_completed(self, record: ConnectionRecord, app: App) -> None:
        backup = await self.backup_client.read_backup(app.restore_in_progress_name)
        restore_name = restore_name_for(backup, app.slug)

        restore = await self.backup_client.read_restore(restore_name)
        if restore is None:
            await self.start_restore(restore_name, backup, app)
            return

        await self.check_restore_complete(record, app, restore)

    async def start_restore(self, restore_name: str, backup: Backup, app: App) -> None:
        logger.info(f"Creating restore {restore_name} from backup {backup.name}")

        label_selector = None
        if is_instance_backup(backup):
            label_selector = LabelSelector(match_labels={APP_SLUG_LABEL: app.slug})

        await self.backup_client.create_restore(restore_name, backup.name, label_selector)
        metrics.restore_transitions_total.labels(transition="restore_started").inc()

    async def check_restore_complete(
        self, record: ConnectionRecord, app: App, restore: Restore
    ) -> None:
        """
        Act on a restore's phase.

        A completed restore deploys the sequence recorded on its backup and
        ends the cycle. A failed one ends the cycle without deploying. Any
        other phase means the restore is still running.

        Raises:
            RestoreMetadataError: If the backup does not name a valid sequence
        """
        if app.restore_state != RestoreState.UNDEPLOYED:
            return

        if restore.phase == RestorePhase.COMPLETED.value:
            backup = await self.backup_client.read_backup(restore.backup_name)
            sequence = restore_sequence_from_backup(backup, app.slug)

            logger.info(f"Restore complete, setting deploy version to {sequence}")
            await self.app_store.deploy_version(app.id, sequence)
            await self.registry.set_last_deployed_for_cluster(record.cluster_id, app.id, sequence)
            await self.app_store.reset_restore(app.id)
            metrics.restore_transitions_total.labels(transition="restore_completed").inc()

        elif restore.phase in (RestorePhase.FAILED.value, RestorePhase.PARTIALLY_FAILED.value):
            logger.info(f"Restore {restore.name} failed, resetting app restore")
            await self.app_store.reset_restore(app.id)
            metrics.restore_transitions_total.labels(transition="restore_failed").inc()
