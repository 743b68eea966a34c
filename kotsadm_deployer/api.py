"""FastAPI transport: agent socket, result callbacks, operator actions."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    HTTPException,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from prometheus_client import make_asgi_app

from .errors import (
    AppNotFoundError,
    ConnectionNotFoundError,
    UnauthenticatedError,
    VersionNotFoundError,
)
from .interfaces import ClusterRegistry, InstructionEmitter
from .models import DeployResult, HealthResponse, RestoreStatus
from .registry import ConnectionRegistry
from .results import DeployResultIngestor
from .service import SocketService
from .store import Database

logger = logging.getLogger(__name__)

security = HTTPBasic()


class WebSocketEmitter(InstructionEmitter):
    """Sends instructions as `{"event", "data"}` JSON frames over agent websockets."""

    def __init__(self):
        self._sockets: dict[str, WebSocket] = {}
        self._lock = asyncio.Lock()

    async def register(self, connection_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            self._sockets[connection_id] = websocket

    async def unregister(self, connection_id: str) -> None:
        async with self._lock:
            self._sockets.pop(connection_id, None)

    async def emit(self, connection_id: str, event: str, payload: dict[str, Any]) -> None:
        async with self._lock:
            websocket = self._sockets.get(connection_id)
        if websocket is None:
            raise ConnectionNotFoundError(f"connection {connection_id} not found")

        await websocket.send_json({"event": event, "data": payload})


@dataclass
class Deployer:
    """Everything the HTTP layer needs, built once at process start."""

    version: str
    registry: ConnectionRegistry
    cluster_registry: ClusterRegistry
    emitter: WebSocketEmitter
    ingestor: DeployResultIngestor
    service: SocketService
    database: Optional[Database] = None
    start_loops: bool = True


def get_deployer(request: Request) -> Deployer:
    return request.app.state.deployer


router = APIRouter(prefix="/api/v1", tags=["deploy"])


@router.put("/deploy/result")
async def update_deploy_result(
    result: DeployResult,
    credentials: HTTPBasicCredentials = Depends(security),
    deployer: Deployer = Depends(get_deployer),
) -> dict[str, int]:
    """Record the outcome of a deploy instruction reported by an agent."""
    try:
        sequence = await deployer.ingestor.handle_deploy_result(credentials.password, result)
    except UnauthenticatedError as e:
        logger.error(f"Failed to authenticate deploy result: {e}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except VersionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return {"sequence": sequence}


@router.put("/undeploy/result")
async def update_undeploy_result(
    result: DeployResult,
    credentials: HTTPBasicCredentials = Depends(security),
    deployer: Deployer = Depends(get_deployer),
) -> dict[str, bool]:
    """Record the outcome of an undeploy instruction reported by an agent."""
    try:
        task = await deployer.ingestor.handle_undeploy_result(credentials.password, result)
    except UnauthenticatedError as e:
        logger.error(f"Failed to authenticate undeploy result: {e}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except AppNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return {"scheduled": task is not None}


@router.post("/app/{app_id}/sequence/{sequence}/redeploy", status_code=status.HTTP_204_NO_CONTENT)
async def redeploy_app_version(
    app_id: str,
    sequence: int,
    cluster_id: Optional[str] = None,
    deployer: Deployer = Depends(get_deployer),
) -> None:
    """Re-send a version to agents even if it was already dispatched."""
    await deployer.service.redeploy_app_version(app_id, sequence, cluster_id)


@router.get("/app/{app_id}/snapshot/restorestatus", response_model=RestoreStatus)
async def get_restore_status(
    app_id: str,
    deployer: Deployer = Depends(get_deployer),
) -> RestoreStatus:
    try:
        return await deployer.service.get_restore_status(app_id)
    except AppNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.delete("/app/{app_id}/snapshot/restore", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_restore(
    app_id: str,
    deployer: Deployer = Depends(get_deployer),
) -> None:
    await deployer.service.cancel_restore(app_id)


async def agent_socket(websocket: WebSocket) -> None:
    """
    Agent connection.

    The deploy token is passed as the `token` query parameter. Connections
    whose token does not resolve are closed with a policy violation. The
    socket is writable before the connection is registered, so the loops
    never emit to a socket that cannot take frames yet.
    """
    deployer: Deployer = websocket.app.state.deployer
    token = websocket.query_params.get("token", "")
    connection_id = uuid4().hex

    await websocket.accept()
    await deployer.emitter.register(connection_id, websocket)

    try:
        await deployer.registry.connect(token, connection_id)
    except UnauthenticatedError as e:
        logger.error(f"Refusing agent connection: {e}")
        await deployer.emitter.unregister(connection_id)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        while True:
            # Agents only receive; inbound frames are drained and ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await deployer.emitter.unregister(connection_id)
        await deployer.registry.disconnect(connection_id)


def create_app(deployer: Deployer) -> FastAPI:
    """Build the FastAPI application around a wired deployer."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Lifespan context manager for startup and shutdown events."""
        # Startup
        logger.info("Starting kotsadm deployer...")
        logger.info(f"   Version: {deployer.version}")

        if deployer.database is not None:
            await deployer.database.init_db()
            logger.info("   Database initialized")

        # Agents are refused until the cluster registry is set
        deployer.registry.set_cluster_registry(deployer.cluster_registry)

        if deployer.start_loops:
            deployer.service.start()
            logger.info("   Reconciliation loops started")

        yield

        # Shutdown
        logger.info("Shutting down kotsadm deployer...")
        await deployer.service.stop()
        if deployer.database is not None:
            await deployer.database.close()
            logger.info("   Database connections closed")

    app = FastAPI(
        title="kotsadm deployer",
        description="Downstream deployment reconciliation service",
        version=deployer.version,
        lifespan=lifespan,
    )
    app.state.deployer = deployer

    app.include_router(router)
    app.add_api_websocket_route("/socket", agent_socket)

    # Mount Prometheus metrics
    metrics_app = make_asgi_app()
    app.mount("/metrics", metrics_app)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {
            "service": "kotsadm-deployer",
            "version": deployer.version,
            "status": "operational",
            "metrics": "/metrics",
        }

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            version=deployer.version,
            timestamp=datetime.utcnow(),
        )

    @app.get("/ready")
    async def ready() -> dict[str, str]:
        """Readiness probe endpoint."""
        if not deployer.registry.ready:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="cluster registry not ready"
            )
        if deployer.database is not None and not await deployer.database.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="database unavailable"
            )
        return {"status": "ready"}

    return app
