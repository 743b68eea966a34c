"""Data models for the deployer."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

# Namespace sentinel telling the agent to honor the namespaces declared in manifests
MANIFEST_NAMESPACE = "."

DEPLOY_RESULT_CALLBACK = "/api/v1/deploy/result"
UNDEPLOY_RESULT_CALLBACK = "/api/v1/undeploy/result"

# Agent event names
DEPLOY_EVENT = "deploy"
APP_INFORMERS_EVENT = "appInformers"
SUPPORT_BUNDLE_EVENT = "supportbundle"

# Backup annotations
APP_SEQUENCE_ANNOTATION = "kots.io/app-sequence"
INSTANCE_ANNOTATION = "kots.io/instance"
APPS_SEQUENCES_ANNOTATION = "kots.io/apps-sequences"
APP_SLUG_LABEL = "kots.io/app-slug"


class DownstreamStatus(str, Enum):
    """Downstream version status."""

    PENDING_PREFLIGHT = "pending_preflight"
    PENDING = "pending"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    FAILED = "failed"


class UndeployStatus(str, Enum):
    """Persisted status of the undeploy half of a restore cycle."""

    NONE = ""
    IN_PROCESS = "in_process"
    COMPLETED = "completed"
    FAILED = "failed"


class RestoreState(str, Enum):
    """Where an app sits in the undeploy/restore cycle."""

    IDLE = "idle"
    PENDING_UNDEPLOY = "pending_undeploy"
    UNDEPLOYING = "undeploying"
    UNDEPLOYED = "undeployed"
    UNDEPLOY_FAILED = "undeploy_failed"


class RestorePhase(str, Enum):
    """Velero restore phases."""

    NEW = "New"
    FAILED_VALIDATION = "FailedValidation"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    PARTIALLY_FAILED = "PartiallyFailed"
    FAILED = "Failed"


class AppState(str, Enum):
    """Computed application health."""

    READY = "ready"
    UPDATING = "updating"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"
    MISSING = "missing"


class Cluster(BaseModel):
    """A deployment target registered with the admin console."""

    id: str
    title: str
    slug: Optional[str] = None


class App(BaseModel):
    """
    Application as seen by the reconciliation loops.

    `restore_in_progress_name` is set exactly while a restore cycle owns the app.
    """

    id: str
    slug: str
    name: str
    current_sequence: Optional[int] = None
    is_airgap: bool = False
    restore_in_progress_name: Optional[str] = None
    restore_undeploy_status: UndeployStatus = UndeployStatus.NONE

    @property
    def restore_state(self) -> RestoreState:
        if not self.restore_in_progress_name:
            return RestoreState.IDLE
        if self.restore_undeploy_status == UndeployStatus.IN_PROCESS:
            return RestoreState.UNDEPLOYING
        if self.restore_undeploy_status == UndeployStatus.COMPLETED:
            return RestoreState.UNDEPLOYED
        if self.restore_undeploy_status == UndeployStatus.FAILED:
            return RestoreState.UNDEPLOY_FAILED
        return RestoreState.PENDING_UNDEPLOY


class KotsAppSpec(BaseModel):
    """Subset of the kots.io Application spec the deployer needs."""

    kubectl_version: str = ""
    kustomize_version: str = ""
    additional_namespaces: list[str] = Field(default_factory=list)
    status_informers: list[str] = Field(default_factory=list)


class DownstreamVersion(BaseModel):
    """One version of an app targeted at one cluster."""

    app_id: str
    cluster_id: str
    sequence: int
    status: DownstreamStatus = DownstreamStatus.PENDING
    status_info: str = ""
    source: str = ""
    diff_summary: str = ""
    git_commit_url: Optional[str] = None
    git_deployable: bool = False
    applied_at: Optional[datetime] = None


class DownstreamOutput(BaseModel):
    """Apply output reported by an agent for one downstream version."""

    is_error: bool = False
    dryrun_stdout: str = ""
    dryrun_stderr: str = ""
    apply_stdout: str = ""
    apply_stderr: str = ""
    helm_stdout: str = ""
    helm_stderr: str = ""
    render_error: str = ""


class ResourceState(BaseModel):
    """Live state of one informed resource."""

    kind: str
    name: str
    namespace: str
    state: AppState


# Synthetic status for apps that declare no status informers
DEFAULT_READY_STATE = [
    ResourceState(kind="EMPTY", name="EMPTY", namespace="EMPTY", state=AppState.READY),
]


class LabelSelector(BaseModel):
    """Kubernetes label selector."""

    model_config = ConfigDict(populate_by_name=True)

    match_labels: dict[str, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("match_labels", "matchLabels"),
        serialization_alias="matchLabels",
    )
    match_expressions: list[dict[str, Any]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("match_expressions", "matchExpressions"),
        serialization_alias="matchExpressions",
    )


class DeployArgs(BaseModel):
    """
    Instruction sent to an agent to apply (or tear down) manifests.

    Manifests are base64 encoded. An undeploy sends empty `manifests` with the
    current manifests as `previous_manifests` so the agent prunes everything.
    """

    app_id: str
    app_slug: str
    kubectl_version: str = ""
    additional_namespaces: list[str] = Field(default_factory=list)
    image_pull_secret: str = ""
    namespace: str = MANIFEST_NAMESPACE
    manifests: str = ""
    previous_manifests: str = ""
    result_callback: str = DEPLOY_RESULT_CALLBACK
    wait: bool = False
    annotate_slug: bool = False
    clear_namespaces: list[str] = Field(default_factory=list)
    clear_pvcs: bool = False
    is_restore: bool = False
    restore_label_selector: Optional[LabelSelector] = None


class AppInformersArgs(BaseModel):
    """Status informers pushed to an agent after a deploy."""

    app_id: str
    informers: list[str]
    sequence: int


class SupportBundleArgs(BaseModel):
    """Support bundle collection request."""

    uri: str


class PendingSupportBundle(BaseModel):
    """Support bundle collection queued for a cluster."""

    id: str
    app_id: str
    cluster_id: str


class Backup(BaseModel):
    """Backup fields the restore cycle reads."""

    name: str
    annotations: dict[str, str] = Field(default_factory=dict)
    included_namespaces: list[str] = Field(default_factory=list)
    label_selector: Optional[LabelSelector] = None


class Restore(BaseModel):
    """Restore fields the restore cycle reads."""

    name: str
    backup_name: str
    phase: Optional[str] = None


class DeployResult(BaseModel):
    """Outcome callback reported by an agent after applying a deploy instruction."""

    model_config = ConfigDict(populate_by_name=True)

    app_id: str = Field(validation_alias=AliasChoices("app_id", "appId"))
    is_error: bool = Field(default=False, validation_alias=AliasChoices("is_error", "isError"))
    dryrun_stdout: str = Field(
        default="", validation_alias=AliasChoices("dryrun_stdout", "dryrunStdout")
    )
    dryrun_stderr: str = Field(
        default="", validation_alias=AliasChoices("dryrun_stderr", "dryrunStderr")
    )
    apply_stdout: str = Field(
        default="", validation_alias=AliasChoices("apply_stdout", "applyStdout")
    )
    apply_stderr: str = Field(
        default="", validation_alias=AliasChoices("apply_stderr", "applyStderr")
    )
    helm_stdout: str = Field(default="", validation_alias=AliasChoices("helm_stdout", "helmStdout"))
    helm_stderr: str = Field(default="", validation_alias=AliasChoices("helm_stderr", "helmStderr"))
    render_error: str = Field(
        default="", validation_alias=AliasChoices("render_error", "renderError")
    )

    def to_output(self) -> DownstreamOutput:
        return DownstreamOutput(
            is_error=self.is_error,
            dryrun_stdout=self.dryrun_stdout,
            dryrun_stderr=self.dryrun_stderr,
            apply_stdout=self.apply_stdout,
            apply_stderr=self.apply_stderr,
            helm_stdout=self.helm_stdout,
            helm_stderr=self.helm_stderr,
            render_error=self.render_error,
        )


class RestoreStatus(BaseModel):
    """Restore progress reported to operators."""

    restore_name: Optional[str] = None
    status: str = ""
    undeploy_status: UndeployStatus = UndeployStatus.NONE


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: datetime
