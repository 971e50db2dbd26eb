"""Shared pytest fixtures.

Components are wired to the in-memory fakes from ``fakes.py`` with zero
delays, so whole pipelines run in milliseconds.
"""

from __future__ import annotations

import pytest

from fakes import (
    FakeClock,
    FakeCluster,
    FakeRegistry,
    FakeVcs,
    kustomization,
    make_target,
)
from rollwright.config import RetryPolicy, RolloutConfig
from rollwright.models import ReleaseTarget
from rollwright.orchestrator.ledger import ReleaseLedger
from rollwright.orchestrator.runner import PipelineOrchestrator
from rollwright.pipeline.locks import RepositoryLocks
from rollwright.pipeline.manifest import ManifestUpdater
from rollwright.pipeline.reconcile import ReconciliationTrigger
from rollwright.pipeline.registry import RegistryPusher
from rollwright.pipeline.rollout import RolloutMonitor


@pytest.fixture
def target() -> ReleaseTarget:
    return make_target("svc-a", "staging")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rollout_policy() -> RolloutConfig:
    """Short thresholds: healthy after 10s stable, degraded after 10s down."""
    return RolloutConfig(
        poll_interval_seconds=5,
        timeout_seconds=120,
        grace_period_seconds=10,
        failure_threshold_seconds=60,
        stability_window_seconds=10,
        restart_threshold=3,
    )


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, initial_delay_seconds=0, max_delay_seconds=0)


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def vcs(target: ReleaseTarget) -> FakeVcs:
    """Manifest repository where svc-a/staging currently runs amd64-abc123."""
    return FakeVcs({target.manifest.path: kustomization("svc-a", "amd64-abc123")})


@pytest.fixture
def cluster(clock: FakeClock, vcs: FakeVcs) -> FakeCluster:
    """Cluster whose workloads run the tag in their manifest on the remote."""
    return FakeCluster(clock=clock, vcs=vcs)


@pytest.fixture
def ledger() -> ReleaseLedger:
    return ReleaseLedger()


@pytest.fixture
def orchestrator(
    registry: FakeRegistry,
    vcs: FakeVcs,
    cluster: FakeCluster,
    clock: FakeClock,
    rollout_policy: RolloutConfig,
    fast_retry: RetryPolicy,
    ledger: ReleaseLedger,
) -> PipelineOrchestrator:
    pusher = RegistryPusher(registry, fast_retry, call_timeout=5)
    locks = RepositoryLocks()
    updater = ManifestUpdater(vcs, locks, max_rebase_attempts=3, call_timeout=5)
    trigger = ReconciliationTrigger(
        cluster, timeout_seconds=1.0, poll_interval=0.01, call_timeout=5, vcs=vcs, locks=locks
    )
    monitor = RolloutMonitor(
        cluster, rollout_policy, call_timeout=5, clock=clock.now, sleep=clock.sleep
    )
    return PipelineOrchestrator(
        pusher,
        updater,
        trigger,
        monitor,
        ledger=ledger,
        step_retry_delay=0,
    )
