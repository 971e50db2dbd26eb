"""Reconciliation trigger.

Asks the GitOps controller to apply the repository now instead of on its
next interval, then waits until the controller reports having applied the
revision produced by the manifest update.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import nullcontext
from typing import Callable

from rollwright.errors import ReconcileTimeoutError, TransportError
from rollwright.logging import get_logger
from rollwright.models import ManifestUpdate, ReconcileAck, ReleaseTarget
from rollwright.pipeline.locks import RepositoryLocks
from rollwright.transports.base import ClusterTransport, VcsTransport, bounded_call


def observed_sha(observed: str) -> str:
    """Strip the Flux ``<branch>@sha1:`` or ``<branch>/`` prefix from a revision."""
    for separator in ("@sha1:", "@sha256:", "/"):
        if separator in observed:
            return observed.rsplit(separator, 1)[1]
    return observed


def revision_matches(observed: str | None, expected: str) -> bool:
    """Compare a controller revision with a commit id.

    Accepts a bare SHA (full or abbreviated) and the Flux
    ``<branch>@sha1:<sha>`` or ``<branch>/<sha>`` forms.
    """
    if not observed or not expected:
        return False
    if observed == expected:
        return True

    sha = observed_sha(observed)
    return sha.startswith(expected) or (len(sha) >= 7 and expected.startswith(sha))


class ReconciliationTrigger:
    """Triggers reconciliation and waits for the expected revision.

    Every service shares one GitOps repository, so by the time the
    controller applies a commit another writer may already have pushed on
    top of it. With ``vcs`` set, an observed revision that descends from the
    expected commit also counts as an acknowledgement.

    Attributes:
        cluster: Cluster transport
        timeout_seconds: Wait budget for the controller to catch up
        poll_interval: Delay between status polls
        call_timeout: Bound on every transport call
        vcs: Manifest repository transport for ancestry checks
        locks: Repository locks held around ancestry checks
    """

    def __init__(
        self,
        cluster: ClusterTransport,
        timeout_seconds: float = 120.0,
        poll_interval: float = 3.0,
        call_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        vcs: VcsTransport | None = None,
        locks: RepositoryLocks | None = None,
    ) -> None:
        self.cluster = cluster
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval
        self.call_timeout = call_timeout
        self.clock = clock
        self.vcs = vcs
        self.locks = locks
        self.logger = get_logger(__name__)

    async def _descends_from(self, observed: str, expected: str) -> bool:
        assert self.vcs is not None
        guard = (
            self.locks.hold(self.vcs.repository_id()) if self.locks is not None else nullcontext()
        )
        async with guard:
            return await bounded_call(
                self.vcs.is_ancestor(expected, observed_sha(observed)),
                self.call_timeout,
                "is_ancestor",
                settle=True,
            )

    async def _acknowledges(
        self, observed: str | None, expected: str, unrelated: set[str]
    ) -> bool:
        if revision_matches(observed, expected):
            return True
        if self.vcs is None or not observed or observed in unrelated:
            return False
        if await self._descends_from(observed, expected):
            return True
        unrelated.add(observed)
        return False

    async def reconcile(self, target: ReleaseTarget, update: ManifestUpdate) -> ReconcileAck:
        """Trigger reconciliation and wait for ``update.revision``.

        Raises:
            TransportError: If the trigger itself fails
            ReconcileTimeoutError: If the revision is not observed in time
        """
        handle = await bounded_call(
            self.cluster.trigger_reconcile(target.gitops.namespace, target.gitops.name),
            self.call_timeout,
            "trigger_reconcile",
        )

        start = self.clock()
        polls = 0
        observed: str | None = None
        # Revisions already found not to contain the expected commit
        unrelated: set[str] = set()

        while True:
            polls += 1
            try:
                observed = await bounded_call(
                    self.cluster.get_reconcile_status(handle),
                    self.call_timeout,
                    "get_reconcile_status",
                )
                acknowledged = await self._acknowledges(observed, update.revision, unrelated)
            except TransportError as e:
                self.logger.warning(
                    "reconcile_poll_failed", target=target.key, poll=polls, error=str(e)
                )
            else:
                if acknowledged:
                    elapsed = self.clock() - start
                    self.logger.info(
                        "reconcile_acknowledged",
                        target=target.key,
                        revision=update.revision[:8],
                        observed_revision=observed,
                        polls=polls,
                        elapsed_seconds=round(elapsed, 2),
                    )
                    return ReconcileAck(
                        expected_revision=update.revision,
                        observed_revision=observed or "",
                        polls=polls,
                        elapsed_seconds=max(elapsed, 0.0),
                    )

            elapsed = self.clock() - start
            if elapsed >= self.timeout_seconds:
                self.logger.error(
                    "reconcile_timeout",
                    target=target.key,
                    expected_revision=update.revision[:8],
                    observed_revision=observed,
                    polls=polls,
                )
                raise ReconcileTimeoutError(update.revision, observed, self.timeout_seconds)

            await asyncio.sleep(min(self.poll_interval, self.timeout_seconds - elapsed))
