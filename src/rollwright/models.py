"""Data model for release runs.

These pydantic models describe what is being deployed (``ReleaseTarget``),
the derived image tags, the trails recorded by each component (push
attempts, manifest updates, rollout observations) and the pipeline run that
owns the ordered steps.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field

from rollwright.errors import ValidationError


def utcnow() -> datetime:
    """Return the current UTC time."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Target
# ---------------------------------------------------------------------------


class RegistryCoordinates(BaseModel):
    """Registry location of a service image.

    Attributes:
        host: Registry host (e.g. ``ghcr.io``)
        organization: Organization or namespace on the registry
        project: Project segment under the organization
    """

    model_config = ConfigDict(frozen=True)

    host: str
    organization: str
    project: str

    def repository_for(self, service: str) -> str:
        """Return the full repository path for a service."""
        return f"{self.host}/{self.organization}/{self.project}/{service}"


class ManifestLocator(BaseModel):
    """Where the deployed tag lives in the GitOps repository.

    Attributes:
        repository: Repository identity (clone URL or local path)
        path: Manifest path relative to the repository root
        image_name: Image entry to match in the kustomization ``images`` list
        branch: Tracking branch the controller reconciles from
    """

    model_config = ConfigDict(frozen=True)

    repository: str
    path: str
    image_name: str
    branch: str = "main"


class WorkloadRef(BaseModel):
    """Cluster workload the rollout monitor watches."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    deployment: str
    label_selector: str | None = None

    @property
    def selector(self) -> str:
        return self.label_selector or f"app={self.deployment}"


class GitOpsRef(BaseModel):
    """GitOps controller object that applies the manifest."""

    model_config = ConfigDict(frozen=True)

    namespace: str = "flux-system"
    name: str = "flux-system"


class ReleaseTarget(BaseModel):
    """What is being deployed and where. Immutable for a run's lifetime."""

    model_config = ConfigDict(frozen=True)

    service: str
    environment: str
    registry: RegistryCoordinates
    manifest: ManifestLocator
    workload: WorkloadRef
    gitops: GitOpsRef = Field(default_factory=GitOpsRef)

    @property
    def key(self) -> str:
        return f"{self.service}/{self.environment}"

    @property
    def repository(self) -> str:
        return self.registry.repository_for(self.service)


# ---------------------------------------------------------------------------
# Tags and push
# ---------------------------------------------------------------------------


class TagKind(str, Enum):
    """Kind of image tag.

    Attributes:
        ARCH_SHA: Immutable tag bound to one source commit
        ARCH_LATEST: Floating tag repointed on each push
    """

    ARCH_SHA = "arch-sha"
    ARCH_LATEST = "arch-latest"


class ImageTag(BaseModel):
    """A derived image tag. Never hand-edited."""

    model_config = ConfigDict(frozen=True)

    arch: str
    content_id: str
    kind: TagKind

    @property
    def value(self) -> str:
        if self.kind == TagKind.ARCH_LATEST:
            return f"{self.arch}-latest"
        return f"{self.arch}-{self.content_id}"

    @property
    def immutable(self) -> bool:
        return self.kind == TagKind.ARCH_SHA

    def __str__(self) -> str:
        return self.value


class TagSet(BaseModel):
    """The immutable and floating tag pushed together."""

    model_config = ConfigDict(frozen=True)

    immutable: ImageTag
    floating: ImageTag

    def all(self) -> list[ImageTag]:
        return [self.immutable, self.floating]


class PushOutcome(str, Enum):
    """Outcome of one push attempt."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class PushAttempt(BaseModel):
    """One try at pushing one tag. Append-only."""

    tag: str
    attempt: int = Field(ge=1)
    outcome: PushOutcome
    error: str | None = None
    elapsed_seconds: float = Field(default=0.0, ge=0.0)


class PushResult(BaseModel):
    """Result of a push operation over a set of tags.

    Attributes:
        image_ref: Local image reference that was pushed
        repository: Registry repository the tags were pushed to
        attempts: Ordered attempt log across all tags
        pushed: Tags confirmed in the registry by this operation
        skipped: Tags that already existed and were left untouched
        warnings: Non-fatal problems (floating tag failures)
    """

    image_ref: str
    repository: str
    attempts: list[PushAttempt] = Field(default_factory=list)
    pushed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    def attempts_for(self, tag: str) -> list[PushAttempt]:
        return [a for a in self.attempts if a.tag == tag]


class SourceSpec(BaseModel):
    """Input handed to an external image builder."""

    service: str
    working_dir: str = "."
    flake_attr: str | None = None
    cache_url: str | None = None
    cache_name: str | None = None
    commit_sha: str | None = None


# ---------------------------------------------------------------------------
# Manifest and reconcile
# ---------------------------------------------------------------------------


class ManifestUpdate(BaseModel):
    """One atomic manifest mutation.

    ``previous_tag`` is the tag the manifest held when the update was made,
    which makes it the tag to restore on rollback.
    """

    target_key: str
    previous_tag: str | None
    new_tag: str
    commit_id: str | None = None
    revision: str
    changed: bool = True
    rebase_attempts: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow)


class LedgerOrigin(str, Enum):
    """What produced a recorded manifest update."""

    DEPLOY = "deploy"
    ROLLBACK = "rollback"


class LedgerEntry(BaseModel):
    """A manifest update in the release ledger.

    ``healthy`` stays None until the run that made the update finishes.
    """

    update: ManifestUpdate
    origin: LedgerOrigin = LedgerOrigin.DEPLOY
    run_id: str | None = None
    healthy: bool | None = None


class ReconcileHandle(BaseModel):
    """Handle returned by the cluster when a reconcile was requested."""

    namespace: str
    name: str
    requested_at: str


class ReconcileAck(BaseModel):
    """Acknowledgement that the controller applied the expected revision."""

    expected_revision: str
    observed_revision: str
    polls: int = Field(ge=1)
    elapsed_seconds: float = Field(ge=0.0)


# ---------------------------------------------------------------------------
# Rollout
# ---------------------------------------------------------------------------


class PodSnapshot(BaseModel):
    """Point-in-time status of one pod."""

    name: str
    phase: str = "Pending"
    ready: bool = False
    reason: str | None = None
    message: str | None = None
    restart_count: int = Field(default=0, ge=0)
    image_tag: str | None = None


class RolloutObservation(BaseModel):
    """One poll of the workload's rollout status."""

    timestamp: datetime = Field(default_factory=utcnow)
    desired: int = Field(ge=0)
    ready: int = Field(default=0, ge=0)
    unavailable: int = Field(default=0, ge=0)
    updated: int | None = Field(default=None, ge=0)
    pods: list[PodSnapshot] = Field(default_factory=list)
    generation: int | None = None
    observed_generation: int | None = None


class RolloutState(str, Enum):
    """Rollout classification. HEALTHY, FAILED and TIMED_OUT are terminal."""

    PENDING = "pending"
    PROGRESSING = "progressing"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in (RolloutState.HEALTHY, RolloutState.FAILED, RolloutState.TIMED_OUT)


class StateTransition(BaseModel):
    """A recorded rollout state change."""

    from_state: RolloutState
    to_state: RolloutState
    at: datetime
    reason: str


class PodDiagnostics(BaseModel):
    """Captured evidence for one unhealthy pod."""

    pod: str
    phase: str | None = None
    reason: str | None = None
    message: str | None = None
    restart_count: int = 0
    logs: str = ""
    events: list[str] = Field(default_factory=list)
    capture_errors: list[str] = Field(default_factory=list)


class Diagnostics(BaseModel):
    """Diagnostics attached to a failed rollout."""

    summary: str
    pods: list[PodDiagnostics] = Field(default_factory=list)
    captured_at: datetime = Field(default_factory=utcnow)


class RolloutResult(BaseModel):
    """Outcome of one rollout watch.

    Attributes:
        state: Last rollout state reached
        cancelled: True if the watch was cancelled before a terminal state
        observations: Every observation consumed by the watch
        transitions: State changes in order
        diagnostics: Captured when the rollout failed
    """

    state: RolloutState
    cancelled: bool = False
    observations: list[RolloutObservation] = Field(default_factory=list)
    transitions: list[StateTransition] = Field(default_factory=list)
    diagnostics: Diagnostics | None = None
    elapsed_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class StepKind(str, Enum):
    """Kinds of pipeline step."""

    PUSH = "push"
    UPDATE_MANIFEST = "update-manifest"
    RECONCILE = "reconcile"
    ROLLOUT_WATCH = "rollout-watch"
    ROLLBACK = "rollback"
    CUSTOM = "custom"


class StepStatus(str, Enum):
    """Lifecycle status of a step."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class PipelinePolicy(str, Enum):
    """What the orchestrator does after a fatal step failure."""

    ABORT = "abort"
    ABORT_AND_ROLLBACK = "abort-and-rollback"


class RunStatus(str, Enum):
    """Overall status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (RunStatus.PENDING, RunStatus.RUNNING)


EXIT_CODES: dict[RunStatus, int] = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.FAILED: 1,
    RunStatus.ROLLBACK_FAILED: 1,
    RunStatus.ROLLED_BACK: 2,
    RunStatus.TIMED_OUT: 3,
    RunStatus.CANCELLED: 130,
}

# Most severe first; used to fold many runs into one exit code.
EXIT_CODE_SEVERITY: list[int] = [1, 3, 2, 130, 0]


StepAction = Callable[["PipelineRun"], Awaitable[Any]]


class Step(BaseModel):
    """One unit of work in a pipeline run.

    A failed status is always acted on by the orchestrator; it is never
    left unexamined.
    """

    name: str
    kind: StepKind
    status: StepStatus = StepStatus.PENDING
    max_attempts: int = Field(default=1, ge=1)
    attempts: int = Field(default=0, ge=0)
    result: dict[str, Any] | None = None
    error: str | None = None
    error_type: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    action: StepAction | None = Field(default=None, exclude=True, repr=False)

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()


class PipelineRun(BaseModel):
    """A single execution of a named pipeline against one target.

    Attributes:
        id: Run identifier
        name: Pipeline name (deploy, orchestrate-release, rollback)
        target: Release target
        policy: Fatal-failure policy
        steps: Ordered steps (a rollback step may be appended)
        current_index: Index of the step being executed
        status: Overall run status
        image_ref: Local image reference to push (None to build or reuse)
        tags: Tags to push for this run
        deploy_tag: Tag to write into the manifest
        push: Push trail
        manifest_update: Manifest mutation made by this run
        reconcile: Reconcile acknowledgement
        rollout: Rollout watch result
        rollback_run: Nested rollback run, when one was executed
        partial: True when some changes were applied before the failure
        error: Error message of the fatal failure
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    name: str
    target: ReleaseTarget
    policy: PipelinePolicy = PipelinePolicy.ABORT
    steps: list[Step] = Field(default_factory=list)
    current_index: int = 0
    status: RunStatus = RunStatus.PENDING
    image_ref: str | None = None
    tags: TagSet | None = None
    deploy_tag: str | None = None
    source: SourceSpec | None = None
    push: PushResult | None = None
    manifest_update: ManifestUpdate | None = None
    reconcile: ReconcileAck | None = None
    rollout: RolloutResult | None = None
    rollback_run: PipelineRun | None = None
    partial: bool = False
    error: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.status, 1)

    @property
    def failed_step(self) -> Step | None:
        for step in self.steps:
            if step.status == StepStatus.FAILED:
                return step
        return None

    def step(self, name: str) -> Step:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)


class RollbackPlan(BaseModel):
    """Instruction to restore a previously deployed tag.

    Only built from a recorded ManifestUpdate; a tag is never invented.
    """

    model_config = ConfigDict(frozen=True)

    target_key: str
    tag_to_restore: str
    reason: str
    source_update: ManifestUpdate

    @classmethod
    def from_update(cls, update: ManifestUpdate, reason: str) -> RollbackPlan:
        """Build a plan that restores the tag an update replaced.

        Raises:
            ValidationError: If the update has no recorded previous tag.
        """
        if not update.previous_tag:
            raise ValidationError(
                f"Manifest update for {update.target_key} has no previous tag to restore"
            )
        return cls(
            target_key=update.target_key,
            tag_to_restore=update.previous_tag,
            reason=reason,
            source_update=update,
        )


class ServiceStatus(BaseModel):
    """What one service runs in one environment right now.

    ``manifest_tag`` is read from the remote head of the GitOps repository.
    ``rollout`` is a single observation of the workload, or None with
    ``rollout_error`` set when the cluster could not be queried.
    """

    target_key: str
    manifest_tag: str | None
    revision: str
    releases: list[LedgerEntry] = Field(default_factory=list)
    rollout: RolloutObservation | None = None
    rollout_error: str | None = None
    rollout_current: bool = False


def worst_exit_code(codes: list[int]) -> int:
    """Fold several exit codes into the most severe one."""
    for code in EXIT_CODE_SEVERITY:
        if code in codes:
            return code
    return max(codes) if codes else 0


Step.model_rebuild()
PipelineRun.model_rebuild()
