"""Error taxonomy for the release engine.

Every component failure surfaces as a ``ReleaseError`` subclass. The
``retryable`` flag is the component's verdict: the orchestrator retries a
step only when the raised error says it may, and never second-guesses a
component that has already exhausted its own retry budget.
"""

from __future__ import annotations

from typing import Any


class ReleaseError(Exception):
    """Base class for all release engine errors.

    Attributes:
        retryable: Whether the orchestrator may retry the failing step.
        details: Structured context (attempt trails, revisions, diagnostics)
            attached for operator reporting.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable
        self.details: dict[str, Any] = details or {}


class ValidationError(ReleaseError):
    """Raised for bad input. Never retried."""


class TransportError(ReleaseError):
    """Raised when a registry, VCS or cluster call fails or times out.

    Attributes:
        operation: Name of the transport operation that failed.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        *,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, retryable=retryable, details=details)
        self.operation = operation


class BuildError(ReleaseError):
    """Raised by an image builder when the image could not be produced."""


class PushError(ReleaseError):
    """Raised when the immutable tag could not be pushed after all attempts.

    Attributes:
        tag: The tag that failed.
        attempts: Ordered PushAttempt records for the whole push operation.
    """

    def __init__(self, tag: str, attempts: list[Any], message: str | None = None) -> None:
        self.tag = tag
        self.attempts = attempts
        super().__init__(
            message or f"Push of {tag} failed after {len([a for a in attempts if a.tag == tag])} attempts",
            details={"tag": tag, "attempts": [a.model_dump(mode="json") for a in attempts]},
        )


class ManifestConflictError(ReleaseError):
    """Raised when the manifest push keeps losing the race with the remote.

    Attributes:
        attempts: Number of commit+push attempts made.
    """

    def __init__(self, target_key: str, attempts: int) -> None:
        self.target_key = target_key
        self.attempts = attempts
        super().__init__(
            f"Manifest push for {target_key} rejected {attempts} times (remote kept advancing)",
            details={"target": target_key, "attempts": attempts},
        )


class ReconcileTimeoutError(ReleaseError):
    """Raised when the GitOps controller never reports the expected revision.

    Fatal for the reconcile step only: the manifest update remains in place
    and the run can be retried later.
    """

    def __init__(
        self,
        expected_revision: str,
        observed_revision: str | None,
        timeout_seconds: float,
    ) -> None:
        self.expected_revision = expected_revision
        self.observed_revision = observed_revision
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Controller did not observe revision {expected_revision} within "
            f"{timeout_seconds}s (last seen: {observed_revision or 'none'})",
            details={
                "expected_revision": expected_revision,
                "observed_revision": observed_revision,
                "timeout_seconds": timeout_seconds,
            },
        )


class RolloutFailedError(ReleaseError):
    """Raised when a rollout is classified as failed.

    Attributes:
        result: The RolloutResult, including observations and diagnostics.
    """

    def __init__(self, result: Any) -> None:
        self.result = result
        summary = result.diagnostics.summary if result.diagnostics else "rollout failed"
        super().__init__(
            f"Rollout failed: {summary}",
            details={"rollout": result.model_dump(mode="json")},
        )


class RolloutTimedOutError(ReleaseError):
    """Raised when a rollout does not become healthy before the watch timeout."""

    def __init__(self, result: Any, timeout_seconds: float) -> None:
        self.result = result
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Rollout did not become healthy within {timeout_seconds}s",
            details={"rollout": result.model_dump(mode="json")},
        )


class RollbackError(ReleaseError):
    """Raised when a rollback cannot be planned or does not complete.

    A rollback failure may leave the manifest pointing at a bad tag, so it is
    always surfaced at error level and never swallowed.
    """


class RunCancelledError(ReleaseError):
    """Raised inside a run when an operator cancelled it."""


class HookError(ReleaseError):
    """Raised when a release hook (migration, notification, verification) fails.

    Attributes:
        hook: Name of the failing hook.
    """

    def __init__(self, hook: str, message: str, *, retryable: bool = False) -> None:
        self.hook = hook
        super().__init__(f"{hook} hook failed: {message}", retryable=retryable, details={"hook": hook})
