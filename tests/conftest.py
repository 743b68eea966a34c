"""Pytest configuration and fixtures for deployer tests."""

import base64
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from kotsadm_deployer.backoff import ErrorBackoff
from kotsadm_deployer.interfaces import (
    AppStatusStore,
    AppStore,
    BackupClient,
    ClusterRegistry,
    InstructionEmitter,
    ManifestRenderer,
    SupportBundleStore,
    VersionStore,
)
from kotsadm_deployer.models import App, Cluster, KotsAppSpec
from kotsadm_deployer.registry import ConnectionRegistry
from kotsadm_deployer.store import Database, SQLStore

CLUSTER_ID = "cluster-1"
CLUSTER_TITLE = "this-cluster"
DEPLOY_TOKEN = "deploy-token"


def rendered(app_id: str, sequence: int) -> bytes:
    """Manifests produced by the fake renderer."""
    return f"kind: ConfigMap\nmetadata:\n  name: {app_id}-{sequence}\n".encode()


def encoded(app_id: str, sequence: int) -> str:
    return base64.b64encode(rendered(app_id, sequence)).decode()


def emitted(emitter, event: str) -> list[tuple[str, dict]]:
    """(connection_id, payload) for every emit of `event`."""
    return [
        (call.args[0], call.args[2])
        for call in emitter.emit.call_args_list
        if call.args[1] == event
    ]


@pytest.fixture
def sample_app():
    """App with nothing in progress."""
    return App(id="app-1", slug="my-app", name="My App")


@pytest.fixture
def cluster_registry():
    """Cluster registry resolving DEPLOY_TOKEN to CLUSTER_ID."""
    registry = AsyncMock(spec=ClusterRegistry)
    cluster = Cluster(id=CLUSTER_ID, title=CLUSTER_TITLE)
    registry.resolve.return_value = cluster
    registry.get_cluster.return_value = cluster
    return registry


@pytest.fixture
def version_store(sample_app):
    """Version store targeting sequence 4, previously deployed 3."""
    store = AsyncMock(spec=VersionStore)
    store.list_apps_for_cluster.return_value = [sample_app]
    store.get_target_sequence.return_value = 4
    store.get_previously_deployed_sequence.return_value = 3
    store.is_deploy_successful.return_value = False
    return store


@pytest.fixture
def renderer():
    """Renderer producing deterministic manifests per app and sequence."""
    mock = AsyncMock(spec=ManifestRenderer)

    async def render(app, sequence, downstream_name, kustomize_version):
        return rendered(app.id, sequence)

    async def render_informer(app, sequence, informer):
        return informer.strip()

    mock.render.side_effect = render
    mock.render_informer.side_effect = render_informer
    mock.get_app_spec.return_value = KotsAppSpec(
        kubectl_version="1.19",
        kustomize_version="3",
        additional_namespaces=["extra"],
    )
    mock.get_image_pull_secret.return_value = ""
    return mock


@pytest.fixture
def emitter():
    return AsyncMock(spec=InstructionEmitter)


@pytest.fixture
def app_status_store():
    return AsyncMock(spec=AppStatusStore)


@pytest.fixture
def app_store(sample_app):
    store = AsyncMock(spec=AppStore)
    store.get_app.return_value = sample_app
    return store


@pytest.fixture
def backup_client():
    client = AsyncMock(spec=BackupClient)
    client.read_restore.return_value = None
    return client


@pytest.fixture
def support_bundle_store():
    store = AsyncMock(spec=SupportBundleStore)
    store.list_pending_support_bundles.return_value = []
    return store


@pytest.fixture
def backoff():
    """Backoff that never suppresses, so every error is logged."""
    return ErrorBackoff(min_period=0.0, max_period=0.0)


@pytest.fixture
def registry(cluster_registry):
    return ConnectionRegistry(cluster_registry)


@pytest_asyncio.fixture
async def connection(registry):
    """One connected agent for CLUSTER_ID."""
    return await registry.connect(DEPLOY_TOKEN, "conn-1")


@pytest_asyncio.fixture
async def database(tmp_path):
    """SQLite database with all tables created."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'kotsadm.db'}")
    await db.init_db()
    yield db
    await db.drop_db()
    await db.close()


@pytest.fixture
def sql_store(database):
    return SQLStore(database)
