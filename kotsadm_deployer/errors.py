"""Exception types raised by the deployer."""


class DeployerError(Exception):
    """Base exception for deployer failures."""


class UnauthenticatedError(DeployerError):
    """Deploy token does not resolve to a known cluster."""


class RegistryNotReadyError(UnauthenticatedError):
    """Cluster registry is not initialized yet, connections are refused."""


class RenderError(DeployerError):
    """Manifest rendering failed for an app sequence."""


class RestoreMetadataError(DeployerError):
    """Backup metadata is missing or invalid; the restore cannot advance."""


class ConnectionNotFoundError(DeployerError):
    """The agent connection an instruction targets no longer exists."""


class VersionNotFoundError(DeployerError):
    """No downstream version is targeted for the app on the cluster."""


class AppNotFoundError(DeployerError):
    """No app with the given ID."""


class ClusterNotFoundError(DeployerError):
    """No cluster with the given ID."""
