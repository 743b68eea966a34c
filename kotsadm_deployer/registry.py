"""Connection Registry - tracks connected cluster agents."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from . import metrics
from .errors import RegistryNotReadyError, UnauthenticatedError
from .interfaces import ClusterRegistry

logger = logging.getLogger(__name__)


@dataclass
class ConnectionRecord:
    """
    In-memory state for one agent connection.

    `last_deployed_sequences` maps app ID to the last sequence dispatched on
    this connection. It is a dedupe hint only and is never persisted.
    """

    cluster_id: str
    connection_id: str
    sent_markers: set[str] = field(default_factory=set)
    last_deployed_sequences: dict[str, int] = field(default_factory=dict)
    connected_at: datetime = field(default_factory=datetime.utcnow)


class ConnectionRegistry:
    """
    Connection Registry tracks which agents are reachable.

    Responsibilities:
    - Authenticate agents on connect
    - Track one record per connection (several may share a cluster)
    - Hold per-connection dedupe state for the reconciliation loops

    All reads and writes go through one lock so loop ticks never observe a
    half-updated registry while connects and disconnects race with them.
    """

    def __init__(self, cluster_registry: Optional[ClusterRegistry] = None):
        """
        Initialize connection registry.

        Args:
            cluster_registry: Resolves deploy tokens. Connections are refused
                until one is set.
        """
        self._cluster_registry = cluster_registry
        self._records: dict[str, ConnectionRecord] = {}
        self._lock = asyncio.Lock()

    def set_cluster_registry(self, cluster_registry: ClusterRegistry) -> None:
        """Mark the registry ready to accept connections."""
        self._cluster_registry = cluster_registry

    @property
    def ready(self) -> bool:
        return self._cluster_registry is not None

    async def connect(self, token: str, connection_id: str) -> ConnectionRecord:
        """
        Register a new agent connection.

        Args:
            token: Deploy token presented by the agent
            connection_id: Transport session identifier

        Returns:
            The new connection record

        Raises:
            RegistryNotReadyError: If no cluster registry is set yet
            UnauthenticatedError: If the token does not resolve to a cluster
        """
        if self._cluster_registry is None:
            raise RegistryNotReadyError("cluster registry is not initialized")

        try:
            cluster = await self._cluster_registry.resolve(token)
        except UnauthenticatedError:
            raise
        except Exception as e:
            raise UnauthenticatedError(f"failed to resolve deploy token: {e}") from e

        record = ConnectionRecord(cluster_id=cluster.id, connection_id=connection_id)
        async with self._lock:
            self._records[connection_id] = record
            metrics.connected_agents.set(len(self._records))

        logger.info(f"Cluster {cluster.id} connected (connection {connection_id})")
        return record

    async def disconnect(self, connection_id: str) -> Optional[ConnectionRecord]:
        """
        Remove a connection.

        Returns:
            The removed record, or None if it was not registered
        """
        async with self._lock:
            record = self._records.pop(connection_id, None)
            metrics.connected_agents.set(len(self._records))

        if record:
            logger.info(f"Cluster {record.cluster_id} disconnected (connection {connection_id})")
        return record

    async def list_connections(self) -> list[ConnectionRecord]:
        """Snapshot of current records, in no particular order."""
        async with self._lock:
            return list(self._records.values())

    async def for_each_connection(
        self, fn: Callable[[ConnectionRecord], Awaitable[None]]
    ) -> None:
        """Call `fn` for every record present when the iteration starts."""
        for record in await self.list_connections():
            await fn(record)

    async def connections_for_cluster(self, cluster_id: str) -> list[ConnectionRecord]:
        async with self._lock:
            return [r for r in self._records.values() if r.cluster_id == cluster_id]

    async def get_last_deployed(self, connection_id: str, app_id: str) -> Optional[int]:
        async with self._lock:
            record = self._records.get(connection_id)
            if record is None:
                return None
            return record.last_deployed_sequences.get(app_id)

    async def set_last_deployed(self, connection_id: str, app_id: str, sequence: int) -> None:
        async with self._lock:
            record = self._records.get(connection_id)
            if record is not None:
                record.last_deployed_sequences[app_id] = sequence

    async def set_last_deployed_for_cluster(
        self, cluster_id: str, app_id: str, sequence: int
    ) -> None:
        """Record `sequence` as dispatched on every connection of a cluster."""
        async with self._lock:
            for record in self._records.values():
                if record.cluster_id == cluster_id:
                    record.last_deployed_sequences[app_id] = sequence

    async def forget_last_deployed(self, app_id: str, cluster_id: Optional[str] = None) -> None:
        """Drop dispatch hints for an app so the next tick re-sends it."""
        async with self._lock:
            for record in self._records.values():
                if cluster_id is None or record.cluster_id == cluster_id:
                    record.last_deployed_sequences.pop(app_id, None)

    async def was_sent(self, connection_id: str, marker: str) -> bool:
        async with self._lock:
            record = self._records.get(connection_id)
            return record is not None and marker in record.sent_markers

    async def mark_sent(self, connection_id: str, marker: str) -> bool:
        """
        Record a marker as sent on a connection.

        Returns:
            True if the marker was new, False if it was already sent or the
            connection is gone
        """
        async with self._lock:
            record = self._records.get(connection_id)
            if record is None or marker in record.sent_markers:
                return False
            record.sent_markers.add(marker)
            return True
