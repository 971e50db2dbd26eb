"""Unit tests for the reconciliation trigger."""

from __future__ import annotations

import pytest

from fakes import FakeCluster, FakeVcs
from rollwright.errors import ReconcileTimeoutError, TransportError
from rollwright.models import ManifestUpdate, ReconcileHandle, ReleaseTarget
from rollwright.pipeline.locks import RepositoryLocks
from rollwright.pipeline.reconcile import ReconciliationTrigger, revision_matches

SHA = "9f86d081884c7d659a2feaa0c55ad015a3bf4f1b"


@pytest.mark.parametrize(
    "observed,expected,matches",
    [
        (SHA, SHA, True),
        (f"main@sha1:{SHA}", SHA, True),
        (f"main/{SHA}", SHA, True),
        (f"main@sha1:{SHA}", SHA[:7], True),
        (f"main@sha1:{SHA[:12]}", SHA, True),
        (f"main@sha1:{'0' * 40}", SHA, False),
        (None, SHA, False),
        ("", SHA, False),
        ("main@sha1:9f8", SHA, False),
    ],
)
def test_revision_matches(observed: str | None, expected: str, matches: bool) -> None:
    assert revision_matches(observed, expected) is matches


def _update(target: ReleaseTarget, revision: str) -> ManifestUpdate:
    return ManifestUpdate(
        target_key=target.key,
        previous_tag="amd64-abc123",
        new_tag="amd64-def456",
        commit_id=revision,
        revision=revision,
    )


class FlakyCluster(FakeCluster):
    """Fails the first status polls, then reports the VCS head."""

    def __init__(self, vcs: FakeVcs, failures: int) -> None:
        super().__init__(vcs=vcs)
        self.failures = failures

    async def get_reconcile_status(self, handle: ReconcileHandle) -> str | None:
        if self.failures > 0:
            self.failures -= 1
            raise TransportError("api server unavailable")
        return await super().get_reconcile_status(handle)


class TestReconciliationTrigger:
    """Test ReconciliationTrigger.reconcile."""

    @pytest.mark.asyncio
    async def test_acknowledged_revision(
        self, cluster: FakeCluster, vcs: FakeVcs, target: ReleaseTarget
    ) -> None:
        trigger = ReconciliationTrigger(cluster, timeout_seconds=1, poll_interval=0.01)

        ack = await trigger.reconcile(target, _update(target, vcs.remote_head))

        assert cluster.reconcile_requests == [("flux-system", "flux-system")]
        assert ack.expected_revision == vcs.remote_head
        assert ack.observed_revision == f"main@sha1:{vcs.remote_head}"
        assert ack.polls == 1

    @pytest.mark.asyncio
    async def test_stuck_controller_times_out(
        self, cluster: FakeCluster, vcs: FakeVcs, target: ReleaseTarget
    ) -> None:
        cluster.controller_stuck = True
        trigger = ReconciliationTrigger(cluster, timeout_seconds=0.05, poll_interval=0.01)

        with pytest.raises(ReconcileTimeoutError) as exc_info:
            await trigger.reconcile(target, _update(target, vcs.remote_head))

        error = exc_info.value
        assert error.expected_revision == vcs.remote_head
        assert error.observed_revision == "main@sha1:" + "0" * 40
        assert error.retryable is False
        assert cluster.status_polls >= 2

    @pytest.mark.asyncio
    async def test_poll_errors_are_tolerated(self, vcs: FakeVcs, target: ReleaseTarget) -> None:
        cluster = FlakyCluster(vcs, failures=2)
        trigger = ReconciliationTrigger(cluster, timeout_seconds=1, poll_interval=0.01)

        ack = await trigger.reconcile(target, _update(target, vcs.remote_head))

        assert ack.polls == 3

    @pytest.mark.asyncio
    async def test_trigger_failure_propagates(
        self, cluster: FakeCluster, vcs: FakeVcs, target: ReleaseTarget
    ) -> None:
        cluster.reconcile_error = TransportError("kustomization not found", retryable=False)
        trigger = ReconciliationTrigger(cluster, timeout_seconds=1, poll_interval=0.01)

        with pytest.raises(TransportError, match="kustomization"):
            await trigger.reconcile(target, _update(target, vcs.remote_head))

    @pytest.mark.asyncio
    async def test_descendant_revision_acknowledges(
        self, cluster: FakeCluster, vcs: FakeVcs, target: ReleaseTarget
    ) -> None:
        """Another writer pushed on top of our commit before the controller applied it."""
        ours = vcs.remote_head
        await vcs.fetch("main")
        await vcs.commit(["clusters/staging/svc-b/kustomization.yaml"], "deploy: update svc-b")
        assert await vcs.push("main") is True
        trigger = ReconciliationTrigger(
            cluster, timeout_seconds=1, poll_interval=0.01, vcs=vcs, locks=RepositoryLocks()
        )

        ack = await trigger.reconcile(target, _update(target, ours))

        assert ack.expected_revision == ours
        assert ack.observed_revision == f"main@sha1:{vcs.remote_head}"
        assert ack.polls == 1

    @pytest.mark.asyncio
    async def test_descendant_ignored_without_repository(
        self, cluster: FakeCluster, vcs: FakeVcs, target: ReleaseTarget
    ) -> None:
        ours = vcs.remote_head
        await vcs.fetch("main")
        await vcs.commit([], "deploy: update svc-b")
        await vcs.push("main")
        trigger = ReconciliationTrigger(cluster, timeout_seconds=0.05, poll_interval=0.01)

        with pytest.raises(ReconcileTimeoutError):
            await trigger.reconcile(target, _update(target, ours))

    @pytest.mark.asyncio
    async def test_unrelated_revision_checked_once(
        self, cluster: FakeCluster, vcs: FakeVcs, target: ReleaseTarget
    ) -> None:
        cluster.controller_stuck = True
        trigger = ReconciliationTrigger(cluster, timeout_seconds=0.05, poll_interval=0.01, vcs=vcs)

        with pytest.raises(ReconcileTimeoutError):
            await trigger.reconcile(target, _update(target, vcs.remote_head))

        assert cluster.status_polls >= 2
        assert vcs.calls.count("is_ancestor") == 1


@pytest.mark.asyncio
async def test_fake_vcs_ancestry(vcs: FakeVcs) -> None:
    base = vcs.remote_head
    await vcs.fetch("main")
    first = await vcs.commit([], "one")
    vcs.reject_pushes = 1
    assert await vcs.push("main") is False

    assert await vcs.is_ancestor(base, first) is True
    assert await vcs.is_ancestor(base, vcs.remote_head) is True
    assert await vcs.is_ancestor(first, vcs.remote_head) is False
    assert await vcs.is_ancestor(first, base) is False
