"""Velero backup/restore client."""

import asyncio
import logging
from typing import Any, Optional

from kubernetes import config
from kubernetes.client import ApiClient, CustomObjectsApi
from kubernetes.client.exceptions import ApiException
from tenacity import retry, stop_after_attempt, wait_exponential

from .interfaces import BackupClient
from .models import Backup, LabelSelector, Restore

logger = logging.getLogger(__name__)

VELERO_GROUP = "velero.io"
VELERO_VERSION = "v1"


def backup_from_object(obj: dict[str, Any]) -> Backup:
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    label_selector = spec.get("labelSelector")
    return Backup(
        name=metadata["name"],
        annotations=metadata.get("annotations") or {},
        included_namespaces=spec.get("includedNamespaces") or [],
        label_selector=LabelSelector.model_validate(label_selector) if label_selector else None,
    )


def restore_from_object(obj: dict[str, Any]) -> Restore:
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    return Restore(
        name=metadata["name"],
        backup_name=spec.get("backupName", ""),
        phase=status.get("phase"),
    )


class VeleroClient(BackupClient):
    """Reads Backups and reads/creates Restores through the Kubernetes API."""

    def __init__(self, custom_objects: CustomObjectsApi, namespace: str = "velero"):
        """
        Initialize Velero client.

        Args:
            custom_objects: Kubernetes custom objects API
            namespace: Namespace holding Velero objects
        """
        self.custom_objects = custom_objects
        self.namespace = namespace

    @classmethod
    def from_config(
        cls, namespace: str = "velero", kubeconfig_path: Optional[str] = None
    ) -> "VeleroClient":
        """Build a client from a kubeconfig file, or in-cluster config when none is given."""
        try:
            if kubeconfig_path:
                config.load_kube_config(config_file=kubeconfig_path)
            else:
                config.load_incluster_config()
        except Exception as e:
            raise ValueError(f"Failed to initialize Kubernetes client: {e}") from e

        return cls(CustomObjectsApi(ApiClient()), namespace=namespace)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _get_backup(self, name: str) -> Backup:
        obj = self.custom_objects.get_namespaced_custom_object(
            group=VELERO_GROUP,
            version=VELERO_VERSION,
            namespace=self.namespace,
            plural="backups",
            name=name,
        )
        return backup_from_object(obj)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _get_restore(self, name: str) -> Optional[Restore]:
        try:
            obj = self.custom_objects.get_namespaced_custom_object(
                group=VELERO_GROUP,
                version=VELERO_VERSION,
                namespace=self.namespace,
                plural="restores",
                name=name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise
        return restore_from_object(obj)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _create_restore(
        self, name: str, backup_name: str, label_selector: Optional[LabelSelector]
    ) -> None:
        spec: dict[str, Any] = {
            "backupName": backup_name,
            "restorePVs": True,
            "includeClusterResources": True,
        }
        if label_selector is not None:
            spec["labelSelector"] = label_selector.model_dump(by_alias=True)

        body = {
            "apiVersion": f"{VELERO_GROUP}/{VELERO_VERSION}",
            "kind": "Restore",
            "metadata": {"name": name, "namespace": self.namespace},
            "spec": spec,
        }
        try:
            self.custom_objects.create_namespaced_custom_object(
                group=VELERO_GROUP,
                version=VELERO_VERSION,
                namespace=self.namespace,
                plural="restores",
                body=body,
            )
        except ApiException as e:
            if e.status == 409:
                logger.info(f"Restore {name} already exists")
                return
            raise

    async def read_backup(self, name: str) -> Backup:
        return await asyncio.to_thread(self._get_backup, name)

    async def read_restore(self, name: str) -> Optional[Restore]:
        return await asyncio.to_thread(self._get_restore, name)

    async def create_restore(
        self,
        name: str,
        backup_name: str,
        label_selector: Optional[LabelSelector] = None,
    ) -> None:
        await asyncio.to_thread(self._create_restore, name, backup_name, label_selector)
