"""Capability interfaces the release components depend on.

Components receive these as injected dependencies; concrete
implementations live beside this module and tests substitute in-memory
fakes. Every call is asynchronous and may raise ``TransportError``.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Protocol, TypeVar, runtime_checkable

from rollwright.errors import TransportError
from rollwright.logging import get_logger
from rollwright.models import ReconcileHandle, RolloutObservation, SourceSpec, WorkloadRef

T = TypeVar("T")

logger = get_logger(__name__)


@runtime_checkable
class ImageBuilder(Protocol):
    """Produces a local image from source. Builder internals are out of scope."""

    async def build(self, source: SourceSpec) -> str:
        """Build an image and return its local reference."""
        ...


@runtime_checkable
class RegistryTransport(Protocol):
    """Container registry operations."""

    async def push_tag(self, image_ref: str, repository: str, tag: str) -> None:
        """Tag ``image_ref`` as ``repository:tag`` and push it."""
        ...

    async def tag_exists(self, repository: str, tag: str) -> bool:
        """Return True if ``repository:tag`` is present in the registry."""
        ...


@runtime_checkable
class VcsTransport(Protocol):
    """Manifest repository operations."""

    def repository_id(self) -> str:
        """Stable identity used to key the single-writer lock."""
        ...

    async def fetch(self, branch: str) -> str:
        """Bring the working copy to the remote head of ``branch``; return its revision."""
        ...

    async def read_file(self, path: str) -> str: ...

    async def write_file(self, path: str, content: str) -> None: ...

    async def commit(self, paths: list[str], message: str) -> str:
        """Commit ``paths`` and return the new commit id."""
        ...

    async def push(self, branch: str) -> bool:
        """Push ``branch``. Return False when rejected as non-fast-forward."""
        ...

    async def head_revision(self) -> str: ...

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Return True if ``descendant`` is ``ancestor`` or contains it in its history."""
        ...


@runtime_checkable
class ClusterTransport(Protocol):
    """GitOps controller and workload status operations."""

    async def trigger_reconcile(self, namespace: str, name: str) -> ReconcileHandle: ...

    async def get_reconcile_status(self, handle: ReconcileHandle) -> str | None:
        """Return the revision the controller last applied, if any."""
        ...

    async def get_rollout_status(self, workload: WorkloadRef) -> RolloutObservation: ...

    async def get_pod_logs(self, namespace: str, pod: str, tail_lines: int) -> str: ...

    async def get_pod_events(self, namespace: str, pod: str, limit: int) -> list[str]: ...


async def _settle(task: asyncio.Future[Any]) -> None:
    """Wait for ``task`` to finish, even when the waiter is cancelled meanwhile."""
    try:
        await asyncio.wait({task})
    except asyncio.CancelledError:
        await asyncio.wait({task})
        raise


async def bounded_call(
    awaitable: Awaitable[T], timeout: float, operation: str, *, settle: bool = False
) -> T:
    """Await a transport call with a deadline.

    Thread-backed transports keep running after the awaiting task gives up.
    With ``settle`` the overrunning call is left to finish before the
    timeout is raised, so a caller holding a lock releases it only once the
    underlying work has stopped touching shared state.

    Args:
        awaitable: The transport coroutine
        timeout: Seconds before giving up
        operation: Operation name recorded on the error
        settle: Wait for an overrunning call to finish before raising

    Returns:
        The call's result

    Raises:
        TransportError: If the call did not finish in time. A settled call
            carries ``details["settled"]`` and, when it completed without
            error, its late result in ``details["late_result"]``.
    """
    if not settle:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"{operation} timed out after {timeout}s", operation=operation
            ) from e

    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        await _settle(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(
                "transport_call_failed_after_cancel",
                operation=operation,
                error=str(task.exception()),
            )
        raise
    if task in done:
        return task.result()

    logger.warning("transport_call_overran", operation=operation, timeout_seconds=timeout)
    await _settle(task)
    details: dict[str, Any] = {"settled": True}
    late_error = task.exception()
    if late_error is None:
        details["late_result"] = task.result()
    else:
        details["late_error"] = str(late_error)
    logger.info(
        "transport_call_settled",
        operation=operation,
        late_error=details.get("late_error"),
    )
    raise TransportError(
        f"{operation} timed out after {timeout}s", operation=operation, details=details
    )
