"""Collaborator interfaces consumed by the reconciliation loops."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from .models import (
    App,
    Backup,
    Cluster,
    DownstreamOutput,
    DownstreamStatus,
    KotsAppSpec,
    LabelSelector,
    PendingSupportBundle,
    ResourceState,
    Restore,
    UndeployStatus,
)


class ClusterRegistry(ABC):
    """Maps deploy tokens to cluster identities."""

    @abstractmethod
    async def resolve(self, token: str) -> Cluster:
        """
        Resolve a deploy token to its cluster.

        Raises:
            UnauthenticatedError: If the token is unknown
        """

    @abstractmethod
    async def get_cluster(self, cluster_id: str) -> Cluster:
        """Get a cluster by ID."""


class VersionStore(ABC):
    """Durable record of per-cluster downstream version history."""

    @abstractmethod
    async def list_apps_for_cluster(self, cluster_id: str) -> list[App]:
        """List apps deployed to a cluster."""

    @abstractmethod
    async def get_target_sequence(self, app_id: str, cluster_id: str) -> Optional[int]:
        """Sequence the cluster should be running, or None if nothing is targeted."""

    @abstractmethod
    async def get_previously_deployed_sequence(
        self, app_id: str, cluster_id: str, excluding_sequence: int
    ) -> Optional[int]:
        """Most recently applied sequence other than `excluding_sequence`."""

    @abstractmethod
    async def record_deploy_status(
        self,
        app_id: str,
        sequence: int,
        cluster_id: str,
        status: DownstreamStatus,
        detail: str = "",
    ) -> None:
        """Set the status of one downstream version."""

    @abstractmethod
    async def is_deploy_successful(self, app_id: str, cluster_id: str, sequence: int) -> bool:
        """Whether a successful apply result is already recorded."""

    @abstractmethod
    async def save_deploy_output(
        self, app_id: str, cluster_id: str, sequence: int, output: DownstreamOutput
    ) -> None:
        """Upsert apply output for one downstream version."""


class AppStore(ABC):
    """App metadata, including the restore cycle fields."""

    @abstractmethod
    async def get_app(self, app_id: str) -> App:
        """Get an app by ID."""

    @abstractmethod
    async def set_restore_undeploy_status(self, app_id: str, status: UndeployStatus) -> None:
        """Persist the undeploy status of the app's restore cycle."""

    @abstractmethod
    async def reset_restore(self, app_id: str) -> None:
        """Clear the restore name and undeploy status."""

    @abstractmethod
    async def deploy_version(self, app_id: str, sequence: int) -> None:
        """Target `sequence` for the app on its downstreams and mark it deployed."""


class AppStatusStore(ABC):
    """Computed application health."""

    @abstractmethod
    async def set_app_status(
        self,
        app_id: str,
        resource_states: list[ResourceState],
        updated_at: datetime,
        sequence: int,
    ) -> None:
        """Store the resource states backing an app's health."""


class SupportBundleStore(ABC):
    """Queue of support bundle collections awaiting dispatch."""

    @abstractmethod
    async def list_pending_support_bundles(self, cluster_id: str) -> list[PendingSupportBundle]:
        """List pending collections for a cluster."""

    @abstractmethod
    async def clear_pending_support_bundle(self, bundle_id: str) -> None:
        """Remove a pending collection."""


class ManifestRenderer(ABC):
    """Renders deployable manifests for an app version."""

    @abstractmethod
    async def render(
        self, app: App, sequence: int, downstream_name: str, kustomize_version: str
    ) -> bytes:
        """
        Render manifests for a downstream.

        Raises:
            RenderError: If rendering fails
        """

    @abstractmethod
    async def get_app_spec(self, app_id: str, sequence: int) -> Optional[KotsAppSpec]:
        """Application spec shipped in the version archive, if any."""

    @abstractmethod
    async def get_image_pull_secret(self, app_id: str, sequence: int) -> str:
        """Image pull secret manifest from the version archive, or empty string."""

    @abstractmethod
    async def render_informer(self, app: App, sequence: int, informer: str) -> str:
        """Render one status informer expression."""


class BackupClient(ABC):
    """Reads and creates backup system resources."""

    @abstractmethod
    async def read_backup(self, name: str) -> Backup:
        """Get a backup by name."""

    @abstractmethod
    async def read_restore(self, name: str) -> Optional[Restore]:
        """Get a restore by name, or None if it does not exist."""

    @abstractmethod
    async def create_restore(
        self,
        name: str,
        backup_name: str,
        label_selector: Optional[LabelSelector] = None,
    ) -> None:
        """Create a restore of `backup_name`."""


class InstructionEmitter(ABC):
    """Sends instructions to a single connected agent."""

    @abstractmethod
    async def emit(self, connection_id: str, event: str, payload: dict[str, Any]) -> None:
        """
        Emit an event on one connection.

        Raises:
            ConnectionNotFoundError: If the connection is gone
        """
