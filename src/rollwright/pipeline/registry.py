"""Registry push with per-tag retry and existence confirmation.

Pushing is idempotent: a tag already present in the registry is recorded as
a skipped attempt and never re-pushed. A push attempt only counts as
succeeded once a follow-up existence check confirms the tag.

Example usage:
    >>> pusher = RegistryPusher(transport, RetryPolicy(max_attempts=3))
    >>> result = await pusher.push("svc-a:build", target, resolve_tags("svc-a", "amd64", "abc1234"))
    >>> result.pushed
    ['amd64-abc1234', 'amd64-latest']
"""

from __future__ import annotations

import asyncio
import time

from rollwright.config import RetryPolicy
from rollwright.errors import BuildError, PushError, ReleaseError, TransportError
from rollwright.logging import get_logger
from rollwright.models import (
    ImageTag,
    PushAttempt,
    PushOutcome,
    PushResult,
    ReleaseTarget,
    SourceSpec,
    TagSet,
)
from rollwright.transports.base import ImageBuilder, RegistryTransport, bounded_call


class RegistryPusher:
    """Pushes a tag set to the registry with bounded exponential backoff.

    Attributes:
        transport: Registry transport
        retry: Retry policy applied to each tag independently
        call_timeout: Bound on every transport call in seconds
    """

    def __init__(
        self,
        transport: RegistryTransport,
        retry: RetryPolicy | None = None,
        call_timeout: float = 30.0,
        builder: ImageBuilder | None = None,
    ) -> None:
        self.transport = transport
        self.retry = retry or RetryPolicy()
        self.call_timeout = call_timeout
        self.builder = builder
        self.logger = get_logger(__name__)

    async def _exists(self, repository: str, tag: str) -> bool:
        return await bounded_call(
            self.transport.tag_exists(repository, tag), self.call_timeout, "tag_exists"
        )

    async def ensure_image(
        self, image_ref: str | None, target: ReleaseTarget, tags: TagSet, source: SourceSpec | None
    ) -> str | None:
        """Return an image reference to push, building one if necessary.

        Returns None when no image is supplied and the immutable tag is
        already in the registry, in which case nothing needs building.

        Raises:
            BuildError: If a build is needed but no builder is configured, or
                the builder fails
        """
        if image_ref:
            return image_ref

        if await self._exists(target.repository, tags.immutable.value):
            self.logger.info(
                "image_build_skipped",
                repository=target.repository,
                tag=tags.immutable.value,
            )
            return None

        if self.builder is None:
            raise BuildError(
                f"No image supplied for {target.service} and no builder configured"
            )

        spec = source or SourceSpec(service=target.service)
        self.logger.info("image_build_started", service=target.service)
        try:
            return await self.builder.build(spec)
        except ReleaseError:
            raise
        except Exception as e:
            self.logger.error("image_build_failed", service=target.service, error=str(e))
            raise BuildError(f"Build of {target.service} failed: {e}") from e

    async def push(self, image_ref: str | None, target: ReleaseTarget, tags: TagSet) -> PushResult:
        """Push the immutable and floating tags.

        Args:
            image_ref: Local image reference (None if every tag already exists)
            target: Release target whose repository receives the tags
            tags: Tags to push

        Returns:
            PushResult with the full attempt log

        Raises:
            PushError: If the immutable tag could not be pushed
        """
        result = PushResult(image_ref=image_ref or "", repository=target.repository)

        for tag in tags.all():
            # A floating tag is only left alone when its build was already published.
            skip_if_present = tag.immutable or tags.immutable.value in result.skipped
            confirmed = await self._push_tag(
                image_ref, target.repository, tag, result, skip_if_present
            )
            if confirmed:
                continue
            if tag.immutable:
                self.logger.error(
                    "registry_push_exhausted",
                    repository=target.repository,
                    tag=tag.value,
                    attempts=len(result.attempts_for(tag.value)),
                )
                raise PushError(tag.value, result.attempts)
            warning = f"Floating tag {tag.value} was not pushed"
            result.warnings.append(warning)
            self.logger.warning(
                "registry_floating_tag_failed",
                repository=target.repository,
                tag=tag.value,
            )

        self.logger.info(
            "registry_push_completed",
            repository=target.repository,
            pushed=result.pushed,
            skipped=result.skipped,
            warnings=len(result.warnings),
        )
        return result

    async def _push_tag(
        self,
        image_ref: str | None,
        repository: str,
        tag: ImageTag,
        result: PushResult,
        skip_if_present: bool,
    ) -> bool:
        """Push one tag, recording every attempt. Returns True once confirmed."""
        try:
            already_present = await self._exists(repository, tag.value)
        except TransportError as e:
            self.logger.warning(
                "registry_precheck_failed", repository=repository, tag=tag.value, error=str(e)
            )
            already_present = False

        if already_present and (skip_if_present or not image_ref):
            result.attempts.append(
                PushAttempt(tag=tag.value, attempt=1, outcome=PushOutcome.SKIPPED)
            )
            result.skipped.append(tag.value)
            self.logger.info("registry_tag_exists", repository=repository, tag=tag.value)
            return True

        if not image_ref:
            result.attempts.append(
                PushAttempt(
                    tag=tag.value,
                    attempt=1,
                    outcome=PushOutcome.FAILED,
                    error="no local image to push",
                )
            )
            return False

        for attempt in range(1, self.retry.max_attempts + 1):
            if attempt > 1:
                delay = self.retry.delay_after(attempt - 1)
                self.logger.info(
                    "registry_push_retry",
                    repository=repository,
                    tag=tag.value,
                    attempt=attempt,
                    delay_seconds=round(delay, 2),
                )
                await asyncio.sleep(delay)

            start = time.monotonic()
            error: str | None = None
            try:
                await bounded_call(
                    self.transport.push_tag(image_ref, repository, tag.value),
                    self.call_timeout,
                    "push_tag",
                )
                if not await self._exists(repository, tag.value):
                    error = "tag not visible in registry after push"
            except TransportError as e:
                error = str(e)
                if not e.retryable:
                    self._record(result, tag, attempt, start, error)
                    return False

            self._record(result, tag, attempt, start, error)
            if error is None:
                result.pushed.append(tag.value)
                return True

            self.logger.warning(
                "registry_push_attempt_failed",
                repository=repository,
                tag=tag.value,
                attempt=attempt,
                max_attempts=self.retry.max_attempts,
                error=error,
            )

        return False

    @staticmethod
    def _record(
        result: PushResult, tag: ImageTag, attempt: int, start: float, error: str | None
    ) -> None:
        result.attempts.append(
            PushAttempt(
                tag=tag.value,
                attempt=attempt,
                outcome=PushOutcome.FAILED if error else PushOutcome.SUCCEEDED,
                error=error,
                elapsed_seconds=time.monotonic() - start,
            )
        )
