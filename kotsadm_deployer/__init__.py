"""kotsadm deployer - downstream deployment reconciliation for connected cluster agents."""

from .config import Settings, get_settings
from .deploy_loop import DeployScheduler
from .registry import ConnectionRecord, ConnectionRegistry
from .restore_loop import RestoreReconciler
from .results import DeployResultIngestor
from .service import SocketService
from .support_bundle_loop import SupportBundleDispatcher

__version__ = "0.1.0"

__all__ = [
    "ConnectionRecord",
    "ConnectionRegistry",
    "DeployResultIngestor",
    "DeployScheduler",
    "RestoreReconciler",
    "Settings",
    "SocketService",
    "SupportBundleDispatcher",
    "get_settings",
]
