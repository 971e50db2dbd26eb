"""Wiring of configuration, transports and components.

``build_runtime`` is the single place that turns a RollwrightConfig into a
ready orchestrator. Transports can be injected, which is how tests run the
whole engine against in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from rollwright.config import RollwrightConfig
from rollwright.errors import RollbackError, TransportError, ValidationError
from rollwright.logging import get_logger
from rollwright.models import PipelineRun, RollbackPlan, ServiceStatus, SourceSpec, TagSet
from rollwright.orchestrator.ledger import ReleaseLedger
from rollwright.orchestrator.pipelines import build_deploy_run, build_release_run
from rollwright.orchestrator.product import ProductRelease
from rollwright.orchestrator.runner import PipelineOrchestrator
from rollwright.pipeline.locks import RepositoryLocks
from rollwright.pipeline.manifest import ManifestUpdater, read_image_tag
from rollwright.pipeline.reconcile import ReconciliationTrigger
from rollwright.pipeline.registry import RegistryPusher
from rollwright.pipeline.rollout import RolloutMonitor, is_current
from rollwright.pipeline.tags import discover_commit_sha, resolve_tags
from rollwright.pipeline.verify import (
    CommandMigrationRunner,
    HttpVerifier,
    MigrationRunner,
    Notifier,
    Verifier,
    WebhookNotifier,
)
from rollwright.transports.base import (
    ClusterTransport,
    ImageBuilder,
    RegistryTransport,
    VcsTransport,
    bounded_call,
)

logger = get_logger(__name__)


@dataclass
class Runtime:
    """Everything a CLI command needs to run pipelines.

    Attributes:
        config: Loaded configuration
        orchestrator: Pipeline orchestrator
        ledger: Release ledger
        registry: Registry transport
        vcs: Manifest repository transport
        cluster: Cluster transport
    """

    config: RollwrightConfig
    orchestrator: PipelineOrchestrator
    ledger: ReleaseLedger
    registry: RegistryTransport
    vcs: VcsTransport
    cluster: ClusterTransport
    migration: MigrationRunner | None = None
    notifier: Notifier | None = None
    verifier: Verifier | None = None
    _closeables: list[object] = field(default_factory=list)

    def tags_for(self, service: str, commit_sha: str | None = None) -> TagSet:
        """Derive the tag set for ``service`` at ``commit_sha`` (discovered if omitted)."""
        service_config = self._service(service)
        sha = commit_sha or discover_commit_sha()
        return resolve_tags(service_config.name, service_config.arch, sha)

    def _service(self, service: str):
        try:
            return self.config.service(service)
        except KeyError as e:
            raise ValidationError(f"Service {service!r} is not configured") from e

    def _source(self, service: str, commit_sha: str) -> SourceSpec:
        service_config = self._service(service)
        return SourceSpec(
            service=service,
            working_dir=service_config.working_dir,
            flake_attr=service_config.flake_attr,
            commit_sha=commit_sha,
        )

    def deploy_run(
        self,
        service: str,
        environment: str,
        commit_sha: str | None = None,
        image_ref: str | None = None,
    ) -> PipelineRun:
        """Build a ``deploy`` run for one service in one environment."""
        self._service(service)
        tags = self.tags_for(service, commit_sha)
        return build_deploy_run(
            self.config.target_for(service, environment),
            tags,
            image_ref=image_ref,
            policy=self.config.policy_for(service),
            step_max_attempts=self.config.pipeline.step_max_attempts,
            source=self._source(service, tags.immutable.content_id),
        )

    def release_run(
        self,
        service: str,
        environment: str,
        commit_sha: str | None = None,
        image_ref: str | None = None,
    ) -> PipelineRun:
        """Build an ``orchestrate-release`` run with the configured hooks."""
        self._service(service)
        tags = self.tags_for(service, commit_sha)
        return build_release_run(
            self.config.target_for(service, environment),
            tags,
            image_ref=image_ref,
            policy=self.config.policy_for(service),
            step_max_attempts=self.config.pipeline.step_max_attempts,
            source=self._source(service, tags.immutable.content_id),
            migration=self.migration,
            notifier=self.notifier,
            verifier=self.verifier,
        )

    def product_release(
        self,
        commit_sha: str | None = None,
        image_template: str | None = None,
        concurrency: int | None = None,
        fail_fast: bool | None = None,
    ) -> ProductRelease:
        """Build a product release over every configured service.

        ``image_template`` may use ``{service}`` and ``{tag}`` to name the
        local image of each service.
        """
        sha = commit_sha or discover_commit_sha()

        def factory(service: str, environment: str) -> PipelineRun:
            image_ref = None
            if image_template:
                tag = self.tags_for(service, sha).immutable.value
                image_ref = image_template.format(service=service, tag=tag)
            return self.deploy_run(service, environment, sha, image_ref)

        return ProductRelease(
            self.orchestrator,
            factory,
            concurrency=concurrency or self.config.pipeline.concurrency,
            fail_fast=self.config.pipeline.fail_fast if fail_fast is None else fail_fast,
        )

    def rollback_plan(self, service: str, environment: str, reason: str) -> RollbackPlan:
        """Plan a rollback of the release currently in the manifest.

        The plan restores the tag that the deploy which introduced the
        current tag replaced. A tag that only rollbacks ever wrote has no
        recorded predecessor, so a second rollback after an automatic one
        is refused instead of restoring the tag that just failed.

        Raises:
            RollbackError: If the ledger holds nothing to roll back to
        """
        target = self.config.target_for(self._service(service).name, environment)
        latest = self.ledger.latest(target.key)
        if latest is None:
            raise RollbackError(f"No recorded release for {target.key}; nothing to roll back")
        release = self.ledger.current_release(target.key)
        if release is None:
            raise RollbackError(
                f"{target.key} already runs {latest.update.new_tag}, restored by a rollback; "
                "no earlier release is recorded, nothing to roll back"
            )
        try:
            return RollbackPlan.from_update(release.update, reason)
        except ValidationError as e:
            raise RollbackError(str(e)) from e

    async def status(self, service: str, environment: str, history: int = 5) -> ServiceStatus:
        """Report the deployed tag, recent releases and one rollout poll.

        The manifest is read under the repository lock so a concurrent
        writer in this process never sees a half-reset working copy. A
        cluster failure does not fail the report; it is recorded on it.

        Raises:
            ValidationError: If the service or its manifest entry is unknown
            TransportError: If the manifest repository cannot be read
        """
        target = self.config.target_for(self._service(service).name, environment)
        locator = target.manifest
        call_timeout = self.config.pipeline.call_timeout_seconds

        async with self.orchestrator.updater.locks.hold(self.vcs.repository_id()):
            revision = await bounded_call(
                self.vcs.fetch(locator.branch), call_timeout, "fetch", settle=True
            )
            content = await bounded_call(
                self.vcs.read_file(locator.path), call_timeout, "read_file", settle=True
            )
        tag = read_image_tag(content, locator.image_name)

        observation = None
        rollout_error = None
        try:
            observation = await bounded_call(
                self.cluster.get_rollout_status(target.workload),
                call_timeout,
                "get_rollout_status",
            )
        except TransportError as e:
            logger.warning("status_rollout_unavailable", target=target.key, error=str(e))
            rollout_error = str(e)

        releases = self.ledger.history(target.key)[-history:] if history > 0 else []
        return ServiceStatus(
            target_key=target.key,
            manifest_tag=tag,
            revision=revision,
            releases=releases,
            rollout=observation,
            rollout_error=rollout_error,
            rollout_current=observation is not None and is_current(observation, tag),
        )

    async def close(self) -> None:
        """Close transports that hold connections."""
        for closeable in self._closeables:
            close = getattr(closeable, "close", None)
            if close is not None:
                await close()


def build_runtime(
    config: RollwrightConfig,
    *,
    registry: RegistryTransport | None = None,
    vcs: VcsTransport | None = None,
    cluster: ClusterTransport | None = None,
    builder: ImageBuilder | None = None,
    ledger_dir: Path | None = None,
) -> Runtime:
    """Assemble the orchestrator and its components from ``config``."""
    closeables: list[object] = []

    if registry is None:
        from rollwright.transports.docker_registry import DockerRegistryTransport

        registry = DockerRegistryTransport(config.registry)
        closeables.append(registry)
    if vcs is None:
        from rollwright.transports.git_repo import GitRepositoryTransport

        vcs = GitRepositoryTransport(config.git)
    if cluster is None:
        from rollwright.transports.kubernetes import KubernetesClusterTransport

        cluster = KubernetesClusterTransport(config.cluster)
        closeables.append(cluster)

    call_timeout = config.pipeline.call_timeout_seconds
    pusher = RegistryPusher(registry, config.registry.retry, call_timeout, builder)
    locks = RepositoryLocks()
    updater = ManifestUpdater(
        vcs,
        locks,
        commit_template=config.git.commit_message_template,
        max_rebase_attempts=config.git.max_rebase_attempts,
        call_timeout=call_timeout,
    )
    trigger = ReconciliationTrigger(
        cluster,
        timeout_seconds=config.reconcile.timeout_seconds,
        poll_interval=config.reconcile.poll_interval_seconds,
        call_timeout=call_timeout,
        vcs=vcs,
        locks=locks,
    )
    monitor = RolloutMonitor(cluster, config.rollout, call_timeout)
    ledger = ReleaseLedger(ledger_dir if ledger_dir is not None else config.pipeline.ledger_dir)

    orchestrator = PipelineOrchestrator(
        pusher,
        updater,
        trigger,
        monitor,
        ledger=ledger,
        step_retry_delay=config.pipeline.step_retry_delay_seconds,
        verify_rollback_image=config.pipeline.verify_rollback_image,
    )

    hooks = config.hooks
    migration = (
        CommandMigrationRunner(hooks.migrate_command, hooks.migrate_timeout_seconds)
        if hooks.migrate_command
        else None
    )
    notifier = WebhookNotifier(hooks.notify_webhook_url) if hooks.notify_webhook_url else None
    verifier = (
        HttpVerifier(
            hooks.verify_urls,
            timeout_seconds=hooks.verify_timeout_seconds,
            interval_seconds=hooks.verify_interval_seconds,
            success_threshold=hooks.verify_success_threshold,
        )
        if hooks.verify_urls
        else None
    )
    closeables.extend(h for h in (notifier, verifier) if h is not None)

    logger.debug(
        "runtime_built",
        services=[s.name for s in config.services],
        hooks={
            "migrate": migration is not None,
            "notify": notifier is not None,
            "verify": verifier is not None,
        },
    )

    return Runtime(
        config=config,
        orchestrator=orchestrator,
        ledger=ledger,
        registry=registry,
        vcs=vcs,
        cluster=cluster,
        migration=migration,
        notifier=notifier,
        verifier=verifier,
        _closeables=closeables,
    )
