"""Rollback to a previously deployed tag.

A rollback is an ordinary, shorter pipeline: point the manifest back at the
recorded previous tag, reconcile, watch the rollout. It never builds or
pushes an image; the tag it restores was pushed by an earlier deploy.
"""

from __future__ import annotations

from typing import Awaitable, Callable

import structlog

from rollwright.errors import RollbackError, TransportError, ValidationError
from rollwright.models import (
    PipelinePolicy,
    PipelineRun,
    ReleaseTarget,
    RollbackPlan,
    RunStatus,
    Step,
    StepKind,
)
from rollwright.transports.base import RegistryTransport, bounded_call

logger = structlog.get_logger(__name__)

RunExecutor = Callable[[PipelineRun], Awaitable[PipelineRun]]


def rollback_run(target: ReleaseTarget, plan: RollbackPlan, step_max_attempts: int = 1) -> PipelineRun:
    """Build the rollback pipeline for ``plan``.

    The run uses the ``abort`` policy: a failing rollback is reported, it is
    never itself rolled back.
    """
    return PipelineRun(
        name="rollback",
        target=target,
        policy=PipelinePolicy.ABORT,
        deploy_tag=plan.tag_to_restore,
        steps=[
            Step(name="update-manifest", kind=StepKind.UPDATE_MANIFEST, max_attempts=step_max_attempts),
            Step(name="reconcile", kind=StepKind.RECONCILE, max_attempts=step_max_attempts),
            Step(name="rollout-watch", kind=StepKind.ROLLOUT_WATCH, max_attempts=1),
        ],
    )


class RollbackController:
    """Plans and executes rollbacks through the pipeline orchestrator.

    Attributes:
        executor: Coroutine that executes a PipelineRun (the orchestrator)
        registry: Registry transport used to confirm the restore tag exists
        verify_image: Refuse to roll back to a tag missing from the registry
    """

    def __init__(
        self,
        executor: RunExecutor,
        registry: RegistryTransport | None = None,
        verify_image: bool = True,
        call_timeout: float = 30.0,
        step_max_attempts: int = 1,
    ) -> None:
        self.executor = executor
        self.registry = registry
        self.verify_image = verify_image
        self.call_timeout = call_timeout
        self.step_max_attempts = step_max_attempts
        self.logger = logger.bind(component="RollbackController")

    async def _verify(self, target: ReleaseTarget, tag: str) -> None:
        if not self.verify_image or self.registry is None:
            return
        try:
            exists = await bounded_call(
                self.registry.tag_exists(target.repository, tag), self.call_timeout, "tag_exists"
            )
        except TransportError as e:
            raise RollbackError(
                f"Cannot confirm rollback image {target.repository}:{tag}: {e}"
            ) from e
        if not exists:
            raise RollbackError(
                f"Rollback image {target.repository}:{tag} is not in the registry",
                details={"repository": target.repository, "tag": tag},
            )

    async def rollback(self, target: ReleaseTarget, plan: RollbackPlan) -> PipelineRun:
        """Restore ``plan.tag_to_restore`` on ``target``.

        Returns:
            The executed rollback PipelineRun; its status tells whether the
            restore completed

        Raises:
            ValidationError: If the plan belongs to another target
            RollbackError: If the restore image is missing from the registry
        """
        if plan.target_key != target.key:
            raise ValidationError(
                f"Rollback plan for {plan.target_key} cannot be applied to {target.key}"
            )

        self.logger.warning(
            "rollback_started",
            target=target.key,
            restore_tag=plan.tag_to_restore,
            replacing_tag=plan.source_update.new_tag,
            reason=plan.reason,
        )

        await self._verify(target, plan.tag_to_restore)

        run = rollback_run(target, plan, self.step_max_attempts)
        run = await self.executor(run)

        if run.status == RunStatus.SUCCEEDED:
            self.logger.info("rollback_completed", target=target.key, restored_tag=plan.tag_to_restore)
        else:
            self.logger.error(
                "rollback_run_failed",
                target=target.key,
                restore_tag=plan.tag_to_restore,
                status=run.status.value,
                error=run.error,
            )
        return run
