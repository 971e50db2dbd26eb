"""Product release across services and environments.

Environments are promoted in order. Within one environment every service
gets its own independent ``deploy`` run, executed by a bounded worker pool.
A failed service does not stop its siblings unless ``fail_fast`` is set, in
which case in-flight siblings are cancelled and unstarted ones skipped. An
environment is only started when every service in the previous one
succeeded.
"""

from __future__ import annotations

import asyncio
from typing import Callable

import structlog
from pydantic import BaseModel, Field

from rollwright.errors import ReleaseError
from rollwright.models import PipelineRun, RunStatus, worst_exit_code
from rollwright.orchestrator.runner import PipelineOrchestrator

logger = structlog.get_logger(__name__)

RunFactory = Callable[[str, str], PipelineRun]


class ServiceOutcome(BaseModel):
    """Result of one service in one environment.

    Attributes:
        service: Service name
        environment: Environment name
        status: Final run status (None when the run never started)
        exit_code: Exit code of the run (None when skipped)
        run: The executed run, when there was one
        skipped: True if the service was never started
        reason: Why the service failed or was skipped
    """

    service: str
    environment: str
    status: RunStatus | None = None
    exit_code: int | None = None
    run: PipelineRun | None = None
    skipped: bool = False
    reason: str | None = None


class EnvironmentReport(BaseModel):
    """Outcomes for one environment."""

    environment: str
    outcomes: list[ServiceOutcome] = Field(default_factory=list)
    skipped: bool = False
    reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return not self.skipped and all(o.status == RunStatus.SUCCEEDED for o in self.outcomes)


class ProductReleaseReport(BaseModel):
    """Outcome of a product release."""

    environments: list[EnvironmentReport] = Field(default_factory=list)

    @property
    def outcomes(self) -> list[ServiceOutcome]:
        return [o for env in self.environments for o in env.outcomes]

    @property
    def exit_code(self) -> int:
        """Most severe exit code of the executed runs."""
        codes = [o.exit_code for o in self.outcomes if o.exit_code is not None]
        return worst_exit_code(codes)

    @property
    def succeeded(self) -> bool:
        return all(env.succeeded for env in self.environments)


class ProductRelease:
    """Runs per-service deploy pipelines with bounded concurrency.

    Attributes:
        orchestrator: Executes each service run
        run_factory: Builds the run for a (service, environment) pair
        concurrency: Maximum concurrent service runs
        fail_fast: Cancel siblings after the first failure
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        run_factory: RunFactory,
        concurrency: int = 4,
        fail_fast: bool = False,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.orchestrator = orchestrator
        self.run_factory = run_factory
        self.concurrency = concurrency
        self.fail_fast = fail_fast
        self.logger = logger.bind(component="ProductRelease")

    async def execute(self, services: list[str], environments: list[str]) -> ProductReleaseReport:
        """Release ``services`` to each of ``environments`` in order."""
        report = ProductReleaseReport()
        blocked_by: str | None = None

        self.logger.info(
            "product_release_started",
            services=services,
            environments=environments,
            concurrency=self.concurrency,
            fail_fast=self.fail_fast,
        )

        for environment in environments:
            if blocked_by is not None:
                reason = f"{blocked_by} did not fully succeed"
                report.environments.append(
                    EnvironmentReport(
                        environment=environment,
                        skipped=True,
                        reason=reason,
                        outcomes=[
                            ServiceOutcome(
                                service=s, environment=environment, skipped=True, reason=reason
                            )
                            for s in services
                        ],
                    )
                )
                self.logger.warning("environment_skipped", environment=environment, reason=reason)
                continue

            env_report = await self._release_environment(environment, services)
            report.environments.append(env_report)
            if not env_report.succeeded:
                blocked_by = environment

        self.logger.info(
            "product_release_finished",
            exit_code=report.exit_code,
            succeeded=report.succeeded,
        )
        return report

    async def _release_environment(self, environment: str, services: list[str]) -> EnvironmentReport:
        semaphore = asyncio.Semaphore(self.concurrency)
        abort = asyncio.Event()
        in_flight: set[str] = set()

        async def worker(service: str) -> ServiceOutcome:
            async with semaphore:
                if abort.is_set():
                    return ServiceOutcome(
                        service=service,
                        environment=environment,
                        skipped=True,
                        reason="skipped after a sibling failed (fail-fast)",
                    )

                try:
                    run = self.run_factory(service, environment)
                except ReleaseError as e:
                    self.logger.error(
                        "service_run_invalid",
                        service=service,
                        environment=environment,
                        error=str(e),
                    )
                    outcome = ServiceOutcome(
                        service=service,
                        environment=environment,
                        status=RunStatus.FAILED,
                        exit_code=1,
                        reason=str(e),
                    )
                else:
                    in_flight.add(run.id)
                    try:
                        run = await self.orchestrator.execute(run)
                    finally:
                        in_flight.discard(run.id)
                    outcome = ServiceOutcome(
                        service=service,
                        environment=environment,
                        status=run.status,
                        exit_code=run.exit_code,
                        run=run,
                        reason=run.error,
                    )

                if outcome.status != RunStatus.SUCCEEDED and self.fail_fast and not abort.is_set():
                    abort.set()
                    self.logger.warning(
                        "fail_fast_triggered",
                        service=service,
                        environment=environment,
                        cancelling=sorted(in_flight),
                    )
                    for run_id in list(in_flight):
                        self.orchestrator.cancel(run_id)
                return outcome

        results = await asyncio.gather(*(worker(s) for s in services), return_exceptions=True)

        outcomes: list[ServiceOutcome] = []
        for service, result in zip(services, results):
            if isinstance(result, BaseException):
                self.logger.error(
                    "service_worker_error",
                    service=service,
                    environment=environment,
                    error=str(result),
                    error_type=type(result).__name__,
                )
                outcomes.append(
                    ServiceOutcome(
                        service=service,
                        environment=environment,
                        status=RunStatus.FAILED,
                        exit_code=1,
                        reason=f"{type(result).__name__}: {result}",
                    )
                )
            else:
                outcomes.append(result)

        return EnvironmentReport(environment=environment, outcomes=outcomes)
