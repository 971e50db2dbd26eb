"""Named pipeline definitions.

Each builder returns a fresh PipelineRun whose steps the orchestrator
executes in order. Optional release hooks that are not configured become
``skipped`` steps so the run still reports the full pipeline shape.
"""

from __future__ import annotations

from typing import Any

from rollwright.models import (
    PipelinePolicy,
    PipelineRun,
    ReleaseTarget,
    SourceSpec,
    Step,
    StepKind,
    StepStatus,
    TagSet,
)
from rollwright.pipeline.rollback import rollback_run
from rollwright.pipeline.verify import MigrationRunner, Notifier, Verifier

DEPLOY = "deploy"
ORCHESTRATE_RELEASE = "orchestrate-release"
PRODUCT_RELEASE = "product-release"
ROLLBACK = "rollback"

build_rollback_run = rollback_run


def _core_steps(step_max_attempts: int) -> list[Step]:
    return [
        Step(name="push", kind=StepKind.PUSH, max_attempts=step_max_attempts),
        Step(name="update-manifest", kind=StepKind.UPDATE_MANIFEST, max_attempts=step_max_attempts),
        Step(name="reconcile", kind=StepKind.RECONCILE, max_attempts=step_max_attempts),
    ]


def build_deploy_run(
    target: ReleaseTarget,
    tags: TagSet,
    image_ref: str | None = None,
    policy: PipelinePolicy = PipelinePolicy.ABORT_AND_ROLLBACK,
    step_max_attempts: int = 2,
    source: SourceSpec | None = None,
) -> PipelineRun:
    """Build a ``deploy`` run: push, update-manifest, reconcile, rollout-watch."""
    return PipelineRun(
        name=DEPLOY,
        target=target,
        policy=policy,
        tags=tags,
        image_ref=image_ref,
        source=source,
        steps=[
            *_core_steps(step_max_attempts),
            Step(name="rollout-watch", kind=StepKind.ROLLOUT_WATCH),
        ],
    )


def _hook_step(name: str, action: Any, max_attempts: int = 1) -> Step:
    if action is None:
        return Step(
            name=name,
            kind=StepKind.CUSTOM,
            status=StepStatus.SKIPPED,
            error="hook not configured",
        )
    return Step(name=name, kind=StepKind.CUSTOM, action=action, max_attempts=max_attempts)


def build_release_run(
    target: ReleaseTarget,
    tags: TagSet,
    image_ref: str | None = None,
    policy: PipelinePolicy = PipelinePolicy.ABORT_AND_ROLLBACK,
    step_max_attempts: int = 2,
    source: SourceSpec | None = None,
    migration: MigrationRunner | None = None,
    notifier: Notifier | None = None,
    verifier: Verifier | None = None,
) -> PipelineRun:
    """Build an ``orchestrate-release`` run.

    Steps: push, update-manifest, reconcile, migrate, notify, rollout-watch,
    verify. A failing step aborts the rest of this target's run only.
    """

    async def migrate(run: PipelineRun) -> dict[str, Any]:
        return await migration.run(run.target, run.deploy_tag or "")

    async def notify(run: PipelineRun) -> dict[str, Any]:
        return await notifier.notify(run)

    async def verify(run: PipelineRun) -> dict[str, Any]:
        return await verifier.verify(run.target)

    return PipelineRun(
        name=ORCHESTRATE_RELEASE,
        target=target,
        policy=policy,
        tags=tags,
        image_ref=image_ref,
        source=source,
        steps=[
            *_core_steps(step_max_attempts),
            _hook_step("migrate", migrate if migration is not None else None),
            _hook_step("notify", notify if notifier is not None else None, step_max_attempts),
            Step(name="rollout-watch", kind=StepKind.ROLLOUT_WATCH),
            _hook_step("verify", verify if verifier is not None else None),
        ],
    )
