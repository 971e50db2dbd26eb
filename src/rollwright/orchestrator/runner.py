"""Pipeline orchestrator.

Executes the ordered steps of a PipelineRun, one at a time. The
orchestrator is the only thing that drives the release components; it
decides per failure whether to retry the step, abort, or roll back.

Execution rules:
1. A step raising a retryable ``ReleaseError`` is retried in place until its
   ``max_attempts`` budget is spent. Non-retryable errors are fatal at once.
2. On a fatal failure the remaining steps are marked skipped.
3. With ``abort-and-rollback`` and a manifest change already applied by the
   run, a ``rollback`` step is appended and executed.
4. ``ReconcileTimeoutError`` never rolls back: the run is ``timed_out`` and
   flagged partial.
5. ``cancel(run_id)`` interrupts the in-flight step; the run ends
   ``cancelled`` without rollback.
6. An automatic rollback, once started, ignores cancellation: neither the
   failed run nor the rollback run it spawned can be cancelled.
"""

from __future__ import annotations

import asyncio
import contextvars
from typing import Any, Awaitable, Callable

import structlog

from rollwright.errors import (
    ReconcileTimeoutError,
    ReleaseError,
    RollbackError,
    RolloutFailedError,
    RolloutTimedOutError,
    RunCancelledError,
    ValidationError,
)
from rollwright.logging import bind_run_context
from rollwright.models import (
    LedgerOrigin,
    PipelinePolicy,
    PipelineRun,
    RollbackPlan,
    RolloutState,
    RunStatus,
    Step,
    StepKind,
    StepStatus,
    utcnow,
)
from rollwright.orchestrator.ledger import ReleaseLedger
from rollwright.pipeline.manifest import ManifestUpdater
from rollwright.pipeline.reconcile import ReconciliationTrigger
from rollwright.pipeline.registry import RegistryPusher
from rollwright.pipeline.rollback import RollbackController
from rollwright.pipeline.rollout import RolloutMonitor

logger = structlog.get_logger(__name__)

StepHandler = Callable[[PipelineRun, Step], Awaitable[Any]]

# Set while an automatic rollback executes its nested run
_compensating: contextvars.ContextVar[bool] = contextvars.ContextVar("compensating", default=False)


class PipelineOrchestrator:
    """Runs pipelines against the release components.

    Attributes:
        pusher: Registry pusher for ``push`` steps
        updater: Manifest updater for ``update-manifest`` steps
        trigger: Reconciliation trigger for ``reconcile`` steps
        monitor: Rollout monitor for ``rollout-watch`` steps
        rollback_controller: Executes rollback pipelines through this orchestrator
        ledger: Optional ledger receiving every applied manifest update
        step_retry_delay: Seconds between attempts of a retryable step
    """

    def __init__(
        self,
        pusher: RegistryPusher,
        updater: ManifestUpdater,
        trigger: ReconciliationTrigger,
        monitor: RolloutMonitor,
        ledger: ReleaseLedger | None = None,
        step_retry_delay: float = 5.0,
        verify_rollback_image: bool = True,
    ) -> None:
        self.pusher = pusher
        self.updater = updater
        self.trigger = trigger
        self.monitor = monitor
        self.ledger = ledger
        self.step_retry_delay = step_retry_delay
        self.rollback_controller = RollbackController(
            self.execute,
            registry=pusher.transport,
            verify_image=verify_rollback_image,
            call_timeout=pusher.call_timeout,
        )
        self.logger = logger.bind(component="PipelineOrchestrator")
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._shielded: set[str] = set()
        self._handlers: dict[StepKind, StepHandler] = {
            StepKind.PUSH: self._run_push,
            StepKind.UPDATE_MANIFEST: self._run_update_manifest,
            StepKind.RECONCILE: self._run_reconcile,
            StepKind.ROLLOUT_WATCH: self._run_rollout_watch,
            StepKind.ROLLBACK: self._run_rollback,
            StepKind.CUSTOM: self._run_custom,
        }

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @property
    def active_runs(self) -> list[str]:
        return list(self._cancel_events)

    def cancel(self, run_id: str) -> bool:
        """Cancel an executing run.

        Returns:
            True if the run was executing and has been signalled
        """
        event = self._cancel_events.get(run_id)
        if event is None:
            return False
        if run_id in self._shielded:
            self.logger.warning("run_cancel_ignored", run_id=run_id, reason="rollback in progress")
            return False
        event.set()
        self.logger.warning("run_cancel_requested", run_id=run_id)
        return True

    def cancel_all(self) -> int:
        """Cancel every executing run. Returns the number signalled."""
        return sum(1 for run_id in list(self._cancel_events) if self.cancel(run_id))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, run: PipelineRun) -> PipelineRun:
        """Execute ``run`` to a terminal status and return it.

        Raises:
            ValidationError: If the run was already executed
        """
        if run.status != RunStatus.PENDING:
            raise ValidationError(f"Run {run.id} has already been executed ({run.status.value})")

        event = asyncio.Event()
        self._cancel_events[run.id] = event
        if _compensating.get():
            self._shielded.add(run.id)
        run.status = RunStatus.RUNNING
        run.started_at = utcnow()

        with bind_run_context(run.id, run.target.service, run.target.environment):
            self.logger.info(
                "run_started",
                pipeline=run.name,
                policy=run.policy.value,
                steps=[s.name for s in run.steps],
            )
            try:
                await self._execute_steps(run, event)
            finally:
                self._cancel_events.pop(run.id, None)
                self._shielded.discard(run.id)
                run.ended_at = utcnow()

            if self.ledger is not None and run.manifest_update is not None:
                self.ledger.mark(run.target.key, run.id, healthy=run.status == RunStatus.SUCCEEDED)

            log = self.logger.info if run.status == RunStatus.SUCCEEDED else self.logger.error
            log(
                "run_finished",
                pipeline=run.name,
                status=run.status.value,
                exit_code=run.exit_code,
                partial=run.partial,
                error=run.error,
            )
        return run

    async def _execute_steps(self, run: PipelineRun, event: asyncio.Event) -> None:
        while run.current_index < len(run.steps):
            step = run.steps[run.current_index]
            if step.status == StepStatus.SKIPPED:
                self.logger.info("step_skipped", step=step.name, reason=step.error)
                run.current_index += 1
                continue

            error = await self._run_step(run, step, event)
            if error is not None:
                for remaining in run.steps[run.current_index + 1:]:
                    if remaining.status == StepStatus.PENDING:
                        remaining.status = StepStatus.SKIPPED
                await self._handle_failure(run, step, error, event)
                return
            run.current_index += 1

        run.status = RunStatus.SUCCEEDED

    async def _race(
        self, coro: Awaitable[dict[str, Any] | None], event: asyncio.Event, step: Step
    ) -> dict[str, Any] | None:
        """Await a step handler, abandoning it if the run is cancelled."""
        task = asyncio.ensure_future(coro)
        if event.is_set():
            task.cancel()
        waiter = asyncio.ensure_future(event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            raise RunCancelledError(f"Run cancelled during step {step.name}")

        waiter.cancel()
        if task.cancelled():
            raise RunCancelledError(f"Run cancelled before step {step.name}")
        return task.result()

    async def _run_step(
        self, run: PipelineRun, step: Step, event: asyncio.Event
    ) -> ReleaseError | None:
        """Run one step with in-place retries. Returns the fatal error, if any."""
        handler = self._handlers[step.kind]
        step.status = StepStatus.RUNNING
        step.started_at = utcnow()

        while True:
            step.attempts += 1
            self.logger.info(
                "step_started",
                step=step.name,
                kind=step.kind.value,
                attempt=step.attempts,
                max_attempts=step.max_attempts,
            )

            error: ReleaseError
            try:
                result = await self._race(handler(run, step), event, step)
            except ReleaseError as e:
                error = e
                error_type = type(e).__name__
            except Exception as e:
                error_type = type(e).__name__
                self.logger.exception(
                    "step_unexpected_error",
                    step=step.name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                error = ReleaseError(f"Unexpected {type(e).__name__} in {step.name}: {e}")
                error.__cause__ = e
            else:
                step.status = StepStatus.SUCCEEDED
                step.result = result
                step.ended_at = utcnow()
                self.logger.info(
                    "step_succeeded",
                    step=step.name,
                    attempts=step.attempts,
                    duration_seconds=step.duration_seconds,
                )
                return None

            if error.retryable and step.attempts < step.max_attempts and not event.is_set():
                self.logger.warning(
                    "step_retry",
                    step=step.name,
                    attempt=step.attempts,
                    max_attempts=step.max_attempts,
                    error=str(error),
                    error_type=type(error).__name__,
                )
                await asyncio.sleep(self.step_retry_delay)
                continue

            step.status = StepStatus.FAILED
            step.error = str(error)
            step.error_type = error_type
            step.ended_at = utcnow()
            if error.details:
                step.result = error.details
            self.logger.error(
                "step_failed",
                step=step.name,
                attempts=step.attempts,
                error=str(error),
                error_type=step.error_type,
                retryable=error.retryable,
            )
            return error

    async def _handle_failure(
        self, run: PipelineRun, step: Step, error: ReleaseError, event: asyncio.Event
    ) -> None:
        run.error = str(error)
        update = run.manifest_update
        applied = update is not None and update.changed

        if isinstance(error, RunCancelledError):
            run.status = RunStatus.CANCELLED
            run.partial = applied
            return

        if isinstance(error, ReconcileTimeoutError):
            run.status = RunStatus.TIMED_OUT
            run.partial = True
            self.logger.warning(
                "run_partial",
                step=step.name,
                manifest_tag=update.new_tag if update else None,
                detail="manifest updated but reconciliation unacknowledged",
            )
            return

        if run.policy == PipelinePolicy.ABORT_AND_ROLLBACK and applied:
            rollback_step = Step(name="rollback", kind=StepKind.ROLLBACK)
            self._shielded.add(run.id)
            run.steps.append(rollback_step)
            run.current_index = len(run.steps) - 1
            # A cancel arriving from here on must not abandon the restore
            rollback_error = await self._run_step(run, rollback_step, asyncio.Event())
            if rollback_error is None:
                run.status = RunStatus.ROLLED_BACK
                run.partial = False
            else:
                run.status = RunStatus.ROLLBACK_FAILED
                run.partial = True
                self.logger.error(
                    "rollback_failed",
                    failed_step=step.name,
                    error=str(rollback_error),
                    manifest_tag=update.new_tag if update else None,
                )
            return

        run.partial = applied
        if isinstance(error, RolloutTimedOutError):
            run.status = RunStatus.TIMED_OUT
        else:
            run.status = RunStatus.FAILED

    # ------------------------------------------------------------------
    # Step handlers
    # ------------------------------------------------------------------

    async def _run_push(self, run: PipelineRun, step: Step) -> dict[str, Any]:
        if run.tags is None:
            raise ValidationError("Run has no tags to push")
        image_ref = await self.pusher.ensure_image(run.image_ref, run.target, run.tags, run.source)
        result = await self.pusher.push(image_ref, run.target, run.tags)
        run.push = result
        if run.deploy_tag is None:
            run.deploy_tag = run.tags.immutable.value
        return {"pushed": result.pushed, "skipped": result.skipped, "warnings": result.warnings}

    async def _run_update_manifest(self, run: PipelineRun, step: Step) -> dict[str, Any]:
        tag = run.deploy_tag or (run.tags.immutable.value if run.tags else None)
        if not tag:
            raise ValidationError("Run has no tag to deploy")
        update = await self.updater.update(run.target, tag)
        run.deploy_tag = tag
        run.manifest_update = update
        if self.ledger is not None:
            origin = LedgerOrigin.ROLLBACK if run.name == "rollback" else LedgerOrigin.DEPLOY
            self.ledger.record(update, origin=origin, run_id=run.id)
        return {
            "previous_tag": update.previous_tag,
            "new_tag": update.new_tag,
            "changed": update.changed,
            "revision": update.revision,
        }

    async def _run_reconcile(self, run: PipelineRun, step: Step) -> dict[str, Any]:
        if run.manifest_update is None:
            raise ValidationError("Reconcile requires a manifest update earlier in the run")
        ack = await self.trigger.reconcile(run.target, run.manifest_update)
        run.reconcile = ack
        return ack.model_dump(mode="json")

    async def _run_rollout_watch(self, run: PipelineRun, step: Step) -> dict[str, Any]:
        result = await self.monitor.watch(run.target, expected_tag=run.deploy_tag)
        run.rollout = result
        if result.state == RolloutState.FAILED:
            raise RolloutFailedError(result)
        if result.state == RolloutState.TIMED_OUT:
            raise RolloutTimedOutError(result, self.monitor.policy.timeout_seconds)
        return {"state": result.state.value, "observations": len(result.observations)}

    async def _run_rollback(self, run: PipelineRun, step: Step) -> dict[str, Any]:
        if run.manifest_update is None:
            raise RollbackError("No manifest update to roll back")
        try:
            plan = RollbackPlan.from_update(run.manifest_update, reason=run.error or "pipeline failed")
        except ValidationError as e:
            raise RollbackError(str(e)) from e

        _compensating.set(True)
        rollback = await self.rollback_controller.rollback(run.target, plan)
        run.rollback_run = rollback
        if rollback.status != RunStatus.SUCCEEDED:
            raise RollbackError(
                f"Rollback to {plan.tag_to_restore} ended {rollback.status.value}: {rollback.error}",
                details={"rollback_run_id": rollback.id},
            )
        return {"restored_tag": plan.tag_to_restore, "rollback_run_id": rollback.id}

    async def _run_custom(self, run: PipelineRun, step: Step) -> dict[str, Any] | None:
        if step.action is None:
            raise ValidationError(f"Custom step {step.name} has no action")
        return await step.action(run)
