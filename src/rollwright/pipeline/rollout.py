"""Rollout monitoring.

The classification of a rollout is a pure reducer over observations:
``advance(watch, observation, policy)`` returns the next watch state and
``expire(watch, now, policy)`` applies the overall deadline when no
observation is available. All time comes from observation timestamps, so
the reducer can be driven by recorded or synthetic sequences.

State machine::

    pending     -> progressing  first observation with desired > 0 or any pods
    progressing -> healthy      fully ready and available on the expected tag and
                                spec generation for the stability window
    progressing -> degraded     unavailable for longer than the grace period
    degraded    -> progressing  unavailable back to 0
    degraded    -> failed       crash/backoff reason, restart threshold, or
                                unavailable past the failure threshold
    non-terminal -> timed_out   watch duration exceeds the timeout

``RolloutMonitor`` polls the cluster, feeds the reducer and captures pod
diagnostics when the rollout fails.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Awaitable, Callable

import structlog
from pydantic import BaseModel, Field

from rollwright.config import RolloutConfig
from rollwright.errors import TransportError
from rollwright.models import (
    Diagnostics,
    PodDiagnostics,
    PodSnapshot,
    ReleaseTarget,
    RolloutObservation,
    RolloutResult,
    RolloutState,
    StateTransition,
    utcnow,
)
from rollwright.transports.base import ClusterTransport, bounded_call

logger = structlog.get_logger(__name__)

# Container states that never resolve on their own.
CRASH_REASONS = frozenset(
    {
        "CrashLoopBackOff",
        "ImagePullBackOff",
        "ErrImagePull",
        "CreateContainerConfigError",
        "CreateContainerError",
        "InvalidImageName",
        "RunContainerError",
    }
)

VALID_TRANSITIONS: dict[RolloutState, set[RolloutState]] = {
    RolloutState.PENDING: {RolloutState.PROGRESSING, RolloutState.TIMED_OUT},
    RolloutState.PROGRESSING: {
        RolloutState.HEALTHY,
        RolloutState.DEGRADED,
        RolloutState.TIMED_OUT,
    },
    RolloutState.DEGRADED: {
        RolloutState.PROGRESSING,
        RolloutState.FAILED,
        RolloutState.TIMED_OUT,
    },
    RolloutState.HEALTHY: set(),
    RolloutState.FAILED: set(),
    RolloutState.TIMED_OUT: set(),
}


class RolloutWatch(BaseModel):
    """Accumulated state of one rollout watch.

    Attributes:
        state: Current classification
        started_at: Timestamp the watch started (first observation if unset)
        unavailable_since: Start of the current unavailability streak
        healthy_since: Start of the current fully-available streak
        transitions: State changes in order
        failure_reason: Why the rollout failed or timed out
    """

    state: RolloutState = RolloutState.PENDING
    started_at: datetime | None = None
    unavailable_since: datetime | None = None
    healthy_since: datetime | None = None
    transitions: list[StateTransition] = Field(default_factory=list)
    failure_reason: str | None = None


def _transition(watch: RolloutWatch, to_state: RolloutState, at: datetime, reason: str) -> None:
    if to_state not in VALID_TRANSITIONS[watch.state]:
        raise ValueError(f"Invalid rollout transition {watch.state.value} -> {to_state.value}")
    watch.transitions.append(
        StateTransition(from_state=watch.state, to_state=to_state, at=at, reason=reason)
    )
    watch.state = to_state
    if to_state in (RolloutState.FAILED, RolloutState.TIMED_OUT):
        watch.failure_reason = reason


def unavailable_count(observation: RolloutObservation) -> int:
    return max(observation.unavailable, observation.desired - observation.ready, 0)


def crash_reason(observation: RolloutObservation, policy: RolloutConfig) -> str | None:
    """Return a description of the first crashing pod, if any."""
    for pod in observation.pods:
        if pod.reason in CRASH_REASONS:
            return f"pod {pod.name} is in {pod.reason}"
        if pod.restart_count >= policy.restart_threshold:
            return f"pod {pod.name} restarted {pod.restart_count} times"
    return None


def is_current(observation: RolloutObservation, expected_tag: str | None = None) -> bool:
    """Return True if the observation describes the deployed revision.

    The controller must have observed the latest spec generation, and every
    pod whose image tag is known must run ``expected_tag``. Old pods still
    listed during a rolling update keep the rollout from counting as done.
    """
    if (
        observation.generation is not None
        and observation.observed_generation is not None
        and observation.observed_generation < observation.generation
    ):
        return False
    if expected_tag is None:
        return True
    return all(pod.image_tag in (None, expected_tag) for pod in observation.pods)


def _is_fully_available(
    observation: RolloutObservation, expected_tag: str | None = None
) -> bool:
    if observation.desired == 0:
        return False
    if not is_current(observation, expected_tag):
        return False
    if observation.updated is not None and observation.updated < observation.desired:
        return False
    return observation.ready >= observation.desired and unavailable_count(observation) == 0


def expire(watch: RolloutWatch, now: datetime, policy: RolloutConfig) -> RolloutWatch:
    """Apply the overall timeout at ``now`` without a new observation."""
    if watch.state.terminal or watch.started_at is None:
        return watch
    elapsed = (now - watch.started_at).total_seconds()
    if elapsed <= policy.timeout_seconds:
        return watch
    updated = watch.model_copy(deep=True)
    _transition(
        updated,
        RolloutState.TIMED_OUT,
        now,
        f"not healthy after {elapsed:.0f}s (timeout {policy.timeout_seconds:.0f}s)",
    )
    return updated


def advance(
    watch: RolloutWatch,
    observation: RolloutObservation,
    policy: RolloutConfig,
    expected_tag: str | None = None,
) -> RolloutWatch:
    """Fold one observation into the watch.

    With ``expected_tag`` set, an observation that still shows the previous
    revision never counts towards the stability window. Terminal watches are
    returned unchanged.
    """
    if watch.state.terminal:
        return watch

    w = watch.model_copy(deep=True)
    now = observation.timestamp
    if w.started_at is None:
        w.started_at = now

    unavailable = unavailable_count(observation)
    if unavailable > 0:
        if w.unavailable_since is None:
            w.unavailable_since = now
    else:
        w.unavailable_since = None

    if _is_fully_available(observation, expected_tag):
        if w.healthy_since is None:
            w.healthy_since = now
    else:
        w.healthy_since = None

    if w.state == RolloutState.PENDING:
        if observation.desired > 0 or observation.pods:
            _transition(w, RolloutState.PROGRESSING, now, "workload observed")

    if w.state == RolloutState.PROGRESSING:
        if (
            w.healthy_since is not None
            and (now - w.healthy_since).total_seconds() >= policy.stability_window_seconds
        ):
            _transition(
                w,
                RolloutState.HEALTHY,
                now,
                f"{observation.ready}/{observation.desired} ready",
            )
        elif (
            w.unavailable_since is not None
            and (now - w.unavailable_since).total_seconds() > policy.grace_period_seconds
        ):
            _transition(
                w,
                RolloutState.DEGRADED,
                now,
                f"{unavailable} unavailable beyond grace period",
            )

    if w.state == RolloutState.DEGRADED:
        crashed = crash_reason(observation, policy)
        if unavailable == 0:
            _transition(w, RolloutState.PROGRESSING, now, "all replicas available again")
        elif crashed is not None:
            _transition(w, RolloutState.FAILED, now, crashed)
        elif (
            w.unavailable_since is not None
            and (now - w.unavailable_since).total_seconds() > policy.failure_threshold_seconds
        ):
            seconds = (now - w.unavailable_since).total_seconds()
            _transition(
                w,
                RolloutState.FAILED,
                now,
                f"{unavailable} unavailable for {seconds:.0f}s",
            )

    return expire(w, now, policy)


class RolloutMonitor:
    """Polls a workload until its rollout reaches a terminal state.

    Attributes:
        cluster: Cluster transport
        policy: Rollout thresholds
        call_timeout: Bound on every transport call
    """

    def __init__(
        self,
        cluster: ClusterTransport,
        policy: RolloutConfig | None = None,
        call_timeout: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.cluster = cluster
        self.policy = policy or RolloutConfig()
        self.call_timeout = call_timeout
        self.clock = clock
        self.sleep = sleep
        self.logger = logger.bind(component="RolloutMonitor")

    async def _pause(self, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is None:
            await self.sleep(self.policy.poll_interval_seconds)
            return
        sleeper = asyncio.ensure_future(self.sleep(self.policy.poll_interval_seconds))
        waiter = asyncio.ensure_future(cancel_event.wait())
        _, pending = await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()

    async def watch(
        self,
        target: ReleaseTarget,
        cancel_event: asyncio.Event | None = None,
        expected_tag: str | None = None,
    ) -> RolloutResult:
        """Watch the target's workload.

        Args:
            target: Release target whose workload is watched
            cancel_event: Setting this event ends the watch with
                ``cancelled=True``
            expected_tag: Tag the workload must run before it can be healthy

        Returns:
            RolloutResult with the full observation trail and, on failure,
            captured diagnostics
        """
        started = self.clock()
        w = RolloutWatch(started_at=started)
        observations: list[RolloutObservation] = []

        self.logger.info(
            "rollout_watch_started",
            target=target.key,
            deployment=target.workload.deployment,
            namespace=target.workload.namespace,
            expected_tag=expected_tag,
        )

        while True:
            if cancel_event is not None and cancel_event.is_set():
                self.logger.warning("rollout_watch_cancelled", target=target.key)
                return self._result(w, observations, started, cancelled=True)

            try:
                observation = await bounded_call(
                    self.cluster.get_rollout_status(target.workload),
                    self.call_timeout,
                    "get_rollout_status",
                )
            except TransportError as e:
                self.logger.warning("rollout_poll_failed", target=target.key, error=str(e))
                w = expire(w, self.clock(), self.policy)
            else:
                observations.append(observation)
                previous_state = w.state
                w = advance(w, observation, self.policy, expected_tag)
                if w.state != previous_state:
                    self.logger.info(
                        "rollout_state_changed",
                        target=target.key,
                        from_state=previous_state.value,
                        to_state=w.state.value,
                        ready=observation.ready,
                        desired=observation.desired,
                        unavailable=observation.unavailable,
                    )

            if w.state.terminal:
                break
            await self._pause(cancel_event)

        diagnostics = None
        if w.state in (RolloutState.FAILED, RolloutState.TIMED_OUT):
            diagnostics = await self.capture_diagnostics(
                target, observations[-1] if observations else None, w.failure_reason
            )
            self.logger.error(
                "rollout_unhealthy",
                target=target.key,
                state=w.state.value,
                summary=diagnostics.summary,
            )
        else:
            self.logger.info("rollout_healthy", target=target.key, observations=len(observations))

        return self._result(w, observations, started, diagnostics=diagnostics)

    def _result(
        self,
        w: RolloutWatch,
        observations: list[RolloutObservation],
        started: datetime,
        cancelled: bool = False,
        diagnostics: Diagnostics | None = None,
    ) -> RolloutResult:
        return RolloutResult(
            state=w.state,
            cancelled=cancelled,
            observations=observations,
            transitions=w.transitions,
            diagnostics=diagnostics,
            elapsed_seconds=max((self.clock() - started).total_seconds(), 0.0),
        )

    def _unhealthy_pods(self, observation: RolloutObservation) -> list[PodSnapshot]:
        return [
            pod
            for pod in observation.pods
            if not pod.ready
            or pod.reason in CRASH_REASONS
            or pod.restart_count >= self.policy.restart_threshold
        ]

    async def capture_diagnostics(
        self,
        target: ReleaseTarget,
        observation: RolloutObservation | None,
        reason: str | None,
    ) -> Diagnostics:
        """Collect log tails and events for every unhealthy pod.

        Capture failures are recorded on the pod entry rather than raised.
        """
        namespace = target.workload.namespace
        pods = self._unhealthy_pods(observation) if observation is not None else []
        entries: list[PodDiagnostics] = []

        for pod in pods:
            entry = PodDiagnostics(
                pod=pod.name,
                phase=pod.phase,
                reason=pod.reason,
                message=pod.message,
                restart_count=pod.restart_count,
            )
            try:
                entry.logs = await bounded_call(
                    self.cluster.get_pod_logs(namespace, pod.name, self.policy.log_tail_lines),
                    self.call_timeout,
                    "get_pod_logs",
                )
            except TransportError as e:
                entry.capture_errors.append(f"logs: {e}")
            try:
                entry.events = await bounded_call(
                    self.cluster.get_pod_events(namespace, pod.name, self.policy.event_limit),
                    self.call_timeout,
                    "get_pod_events",
                )
            except TransportError as e:
                entry.capture_errors.append(f"events: {e}")
            entries.append(entry)

        parts = [reason or "rollout did not become healthy"]
        for entry in entries:
            detail = entry.reason or entry.phase or "not ready"
            parts.append(f"{entry.pod}: {detail} (restarts {entry.restart_count})")
        summary = f"{target.key}: " + "; ".join(parts)

        return Diagnostics(summary=summary, pods=entries, captured_at=self.clock())
