"""SQLAlchemy implementation of the deployer's stores."""

import logging
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import select, update

from ..errors import AppNotFoundError, ClusterNotFoundError, UnauthenticatedError
from ..interfaces import (
    AppStatusStore,
    AppStore,
    ClusterRegistry,
    SupportBundleStore,
    VersionStore,
)
from ..models import (
    App,
    Cluster,
    DownstreamOutput,
    DownstreamStatus,
    PendingSupportBundle,
    ResourceState,
    UndeployStatus,
)
from .database import Database
from .tables import (
    AppDownstreamOutputRow,
    AppDownstreamRow,
    AppDownstreamVersionRow,
    AppRow,
    AppStatusRow,
    ClusterRow,
    PendingSupportBundleRow,
)

logger = logging.getLogger(__name__)


def _to_cluster(row: ClusterRow) -> Cluster:
    return Cluster(id=row.id, title=row.title, slug=row.slug)


def _to_app(row: AppRow) -> App:
    return App(
        id=row.id,
        slug=row.slug,
        name=row.name,
        current_sequence=row.current_sequence,
        is_airgap=row.is_airgap,
        restore_in_progress_name=row.restore_in_progress_name or None,
        restore_undeploy_status=UndeployStatus(row.restore_undeploy_status or ""),
    )


class SQLStore(ClusterRegistry, VersionStore, AppStore, AppStatusStore, SupportBundleStore):
    """
    Durable state for clusters, apps, downstream versions and support bundles.

    Every method opens its own session, so one call is one transaction.
    """

    def __init__(self, database: Database):
        self.database = database

    # Cluster registry

    async def resolve(self, token: str) -> Cluster:
        async with self.database.session() as session:
            result = await session.execute(select(ClusterRow).where(ClusterRow.token == token))
            row = result.scalar_one_or_none()
        if row is None:
            raise UnauthenticatedError("unknown deploy token")
        return _to_cluster(row)

    async def get_cluster(self, cluster_id: str) -> Cluster:
        async with self.database.session() as session:
            row = await session.get(ClusterRow, cluster_id)
        if row is None:
            raise ClusterNotFoundError(f"cluster {cluster_id} not found")
        return _to_cluster(row)

    async def create_cluster(
        self, title: str, token: str, slug: Optional[str] = None, cluster_id: Optional[str] = None
    ) -> Cluster:
        row = ClusterRow(id=cluster_id or uuid4().hex, title=title, slug=slug, token=token)
        async with self.database.session() as session:
            session.add(row)
        return _to_cluster(row)

    # App store

    async def get_app(self, app_id: str) -> App:
        async with self.database.session() as session:
            row = await session.get(AppRow, app_id)
        if row is None:
            raise AppNotFoundError(f"app {app_id} not found")
        return _to_app(row)

    async def create_app(
        self, name: str, slug: str, app_id: Optional[str] = None, is_airgap: bool = False
    ) -> App:
        row = AppRow(
            id=app_id or uuid4().hex,
            name=name,
            slug=slug,
            is_airgap=is_airgap,
            restore_undeploy_status="",
        )
        async with self.database.session() as session:
            session.add(row)
        return _to_app(row)

    async def set_restore_in_progress(self, app_id: str, restore_name: str) -> None:
        """Hand the app to the restore cycle."""
        async with self.database.session() as session:
            await session.execute(
                update(AppRow)
                .where(AppRow.id == app_id)
                .values(restore_in_progress_name=restore_name, restore_undeploy_status="")
            )

    async def set_restore_undeploy_status(self, app_id: str, status: UndeployStatus) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(AppRow).where(AppRow.id == app_id).values(restore_undeploy_status=status.value)
            )

    async def reset_restore(self, app_id: str) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(AppRow)
                .where(AppRow.id == app_id)
                .values(restore_in_progress_name=None, restore_undeploy_status="")
            )

    async def deploy_version(self, app_id: str, sequence: int) -> None:
        """
        Target `sequence` on every downstream of the app.

        The version row is marked deployed and stamped as applied now, which
        makes it the latest applied sequence for re-apply comparisons.
        """
        now = datetime.utcnow()
        async with self.database.session() as session:
            result = await session.execute(
                select(AppDownstreamRow).where(AppDownstreamRow.app_id == app_id)
            )
            downstreams = list(result.scalars().all())

            for downstream in downstreams:
                downstream.current_sequence = sequence

                version = await session.get(
                    AppDownstreamVersionRow, (app_id, downstream.cluster_id, sequence)
                )
                if version is None:
                    version = AppDownstreamVersionRow(
                        app_id=app_id,
                        cluster_id=downstream.cluster_id,
                        sequence=sequence,
                        status_info="",
                        source="",
                        diff_summary="",
                        git_deployable=False,
                    )
                    session.add(version)
                version.status = DownstreamStatus.DEPLOYED.value
                version.applied_at = now

        logger.info(f"Set app {app_id} to sequence {sequence} on {len(downstreams)} downstream(s)")

    async def add_downstream(self, app_id: str, cluster_id: str, downstream_name: str) -> None:
        async with self.database.session() as session:
            session.add(
                AppDownstreamRow(
                    app_id=app_id, cluster_id=cluster_id, downstream_name=downstream_name
                )
            )

    # Version store

    async def list_apps_for_cluster(self, cluster_id: str) -> list[App]:
        async with self.database.session() as session:
            result = await session.execute(
                select(AppRow)
                .join(AppDownstreamRow, AppDownstreamRow.app_id == AppRow.id)
                .where(AppDownstreamRow.cluster_id == cluster_id)
                .order_by(AppRow.created_at)
            )
            rows = list(result.scalars().all())
        return [_to_app(row) for row in rows]

    async def get_target_sequence(self, app_id: str, cluster_id: str) -> Optional[int]:
        async with self.database.session() as session:
            row = await session.get(AppDownstreamRow, (app_id, cluster_id))
        if row is None or row.current_sequence is None or row.current_sequence < 0:
            return None
        return row.current_sequence

    async def get_previously_deployed_sequence(
        self, app_id: str, cluster_id: str, excluding_sequence: int
    ) -> Optional[int]:
        async with self.database.session() as session:
            result = await session.execute(
                select(AppDownstreamVersionRow.sequence)
                .where(
                    AppDownstreamVersionRow.app_id == app_id,
                    AppDownstreamVersionRow.cluster_id == cluster_id,
                    AppDownstreamVersionRow.sequence != excluding_sequence,
                    AppDownstreamVersionRow.applied_at.is_not(None),
                )
                .order_by(AppDownstreamVersionRow.applied_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def create_downstream_version(
        self,
        app_id: str,
        cluster_id: str,
        sequence: int,
        status: DownstreamStatus = DownstreamStatus.PENDING,
        source: str = "",
        diff_summary: str = "",
    ) -> None:
        """Record a new version for a downstream and bump the app's latest sequence."""
        async with self.database.session() as session:
            session.add(
                AppDownstreamVersionRow(
                    app_id=app_id,
                    cluster_id=cluster_id,
                    sequence=sequence,
                    status=status.value,
                    status_info="",
                    source=source,
                    diff_summary=diff_summary,
                    git_deployable=False,
                )
            )
            app = await session.get(AppRow, app_id)
            if app is not None and (app.current_sequence is None or app.current_sequence < sequence):
                app.current_sequence = sequence

    async def record_deploy_status(
        self,
        app_id: str,
        sequence: int,
        cluster_id: str,
        status: DownstreamStatus,
        detail: str = "",
    ) -> None:
        async with self.database.session() as session:
            row = await session.get(AppDownstreamVersionRow, (app_id, cluster_id, sequence))
            if row is None:
                row = AppDownstreamVersionRow(
                    app_id=app_id,
                    cluster_id=cluster_id,
                    sequence=sequence,
                    source="",
                    diff_summary="",
                    git_deployable=False,
                )
                session.add(row)
            row.status = status.value
            row.status_info = detail

    async def get_deploy_status(
        self, app_id: str, cluster_id: str, sequence: int
    ) -> Optional[DownstreamStatus]:
        async with self.database.session() as session:
            row = await session.get(AppDownstreamVersionRow, (app_id, cluster_id, sequence))
        if row is None:
            return None
        return DownstreamStatus(row.status)

    async def is_deploy_successful(self, app_id: str, cluster_id: str, sequence: int) -> bool:
        async with self.database.session() as session:
            row = await session.get(AppDownstreamOutputRow, (app_id, cluster_id, sequence))
        return row is not None and not row.is_error

    async def save_deploy_output(
        self, app_id: str, cluster_id: str, sequence: int, output: DownstreamOutput
    ) -> None:
        async with self.database.session() as session:
            row = await session.get(AppDownstreamOutputRow, (app_id, cluster_id, sequence))
            if row is None:
                row = AppDownstreamOutputRow(
                    app_id=app_id, cluster_id=cluster_id, downstream_sequence=sequence
                )
                session.add(row)
            for field, value in output.model_dump().items():
                setattr(row, field, value)

    async def get_deploy_output(
        self, app_id: str, cluster_id: str, sequence: int
    ) -> Optional[DownstreamOutput]:
        async with self.database.session() as session:
            row = await session.get(AppDownstreamOutputRow, (app_id, cluster_id, sequence))
        if row is None:
            return None
        return DownstreamOutput(
            is_error=row.is_error,
            dryrun_stdout=row.dryrun_stdout,
            dryrun_stderr=row.dryrun_stderr,
            apply_stdout=row.apply_stdout,
            apply_stderr=row.apply_stderr,
            helm_stdout=row.helm_stdout,
            helm_stderr=row.helm_stderr,
            render_error=row.render_error,
        )

    # App status store

    async def set_app_status(
        self,
        app_id: str,
        resource_states: list[ResourceState],
        updated_at: datetime,
        sequence: int,
    ) -> None:
        states = [state.model_dump(mode="json") for state in resource_states]
        async with self.database.session() as session:
            row = await session.get(AppStatusRow, app_id)
            if row is None:
                row = AppStatusRow(app_id=app_id)
                session.add(row)
            row.resource_states = states
            row.updated_at = updated_at
            row.sequence = sequence

    async def get_app_status(self, app_id: str) -> Optional[list[ResourceState]]:
        async with self.database.session() as session:
            row = await session.get(AppStatusRow, app_id)
        if row is None:
            return None
        return [ResourceState.model_validate(state) for state in row.resource_states]

    # Support bundle store

    async def create_pending_support_bundle(self, app_id: str, cluster_id: str) -> str:
        bundle_id = uuid4().hex
        async with self.database.session() as session:
            session.add(PendingSupportBundleRow(id=bundle_id, app_id=app_id, cluster_id=cluster_id))
        return bundle_id

    async def list_pending_support_bundles(self, cluster_id: str) -> list[PendingSupportBundle]:
        async with self.database.session() as session:
            result = await session.execute(
                select(PendingSupportBundleRow)
                .where(PendingSupportBundleRow.cluster_id == cluster_id)
                .order_by(PendingSupportBundleRow.created_at)
            )
            rows = list(result.scalars().all())
        return [
            PendingSupportBundle(id=row.id, app_id=row.app_id, cluster_id=row.cluster_id)
            for row in rows
        ]

    async def clear_pending_support_bundle(self, bundle_id: str) -> None:
        async with self.database.session() as session:
            row = await session.get(PendingSupportBundleRow, bundle_id)
            if row is not None:
                await session.delete(row)
