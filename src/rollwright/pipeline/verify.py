"""Release hooks: migrations, notifications and post-deploy verification.

These back the extra steps of the ``orchestrate-release`` pipeline. Each
hook raises ``HookError`` on failure so the orchestrator aborts the rest of
the target's pipeline.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from rollwright.errors import HookError
from rollwright.logging import get_logger
from rollwright.models import PipelineRun, ReleaseTarget

logger = get_logger(__name__)


class MigrationRunner(Protocol):
    """Runs database migrations for a service before traffic reaches it."""

    async def run(self, target: ReleaseTarget, tag: str) -> dict[str, Any]: ...


class Notifier(Protocol):
    """Tells dependent systems that a release reached the cluster."""

    async def notify(self, run: PipelineRun) -> dict[str, Any]: ...


class Verifier(Protocol):
    """Checks the released service from the outside."""

    async def verify(self, target: ReleaseTarget) -> dict[str, Any]: ...


class CommandMigrationRunner:
    """Runs a migration command with ``{service}``, ``{environment}`` and ``{tag}`` filled in."""

    def __init__(self, command: list[str], timeout_seconds: float = 600.0) -> None:
        if not command:
            raise ValueError("Migration command must not be empty")
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)

    async def run(self, target: ReleaseTarget, tag: str) -> dict[str, Any]:
        cmd = [
            part.format(service=target.service, environment=target.environment, tag=tag)
            for part in self.command
        ]
        self.logger.info("migration_started", target=target.key, command=" ".join(cmd))

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise HookError("migrate", f"command not found: {cmd[0]}") from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            self.logger.error("migration_timeout", target=target.key, timeout=self.timeout_seconds)
            raise HookError("migrate", f"timed out after {self.timeout_seconds}s") from e

        stderr = stderr_bytes.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            self.logger.error(
                "migration_failed",
                target=target.key,
                returncode=proc.returncode,
                stderr=stderr[:500],
            )
            raise HookError("migrate", f"exit code {proc.returncode}: {stderr.strip()[:200]}")

        self.logger.info("migration_completed", target=target.key)
        return {
            "returncode": proc.returncode,
            "stdout_tail": stdout_bytes.decode("utf-8", errors="replace")[-500:],
        }


class WebhookNotifier:
    """Posts a JSON release event to a webhook."""

    def __init__(
        self,
        webhook_url: str,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def payload(run: PipelineRun) -> dict[str, Any]:
        update = run.manifest_update
        return {
            "event_type": "release_reconciled",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "run_id": run.id,
            "pipeline": run.name,
            "service": run.target.service,
            "environment": run.target.environment,
            "tag": run.deploy_tag,
            "previous_tag": update.previous_tag if update else None,
            "revision": update.revision if update else None,
        }

    async def notify(self, run: PipelineRun) -> dict[str, Any]:
        """Send the release event.

        Raises:
            HookError: If the webhook is unreachable (retryable) or rejects
                the event
        """
        client = await self._get_client()
        try:
            response = await client.post(
                self.webhook_url,
                json=self.payload(run),
                headers={"Content-Type": "application/json"},
            )
        except httpx.RequestError as e:
            self.logger.error("notify_webhook_error", url=self.webhook_url, error=str(e))
            raise HookError("notify", str(e), retryable=True) from e

        if not response.is_success:
            self.logger.warning(
                "notify_webhook_failed",
                status_code=response.status_code,
                response_text=response.text[:200],
            )
            raise HookError(
                "notify",
                f"webhook returned HTTP {response.status_code}",
                retryable=response.status_code >= 500,
            )

        self.logger.info("notify_webhook_sent", run_id=run.id, status_code=response.status_code)
        return {"status_code": response.status_code}


class HttpVerifier:
    """Polls HTTP endpoints until each answers successfully enough times in a row.

    URLs may contain ``{service}`` and ``{environment}`` placeholders.
    """

    def __init__(
        self,
        urls: list[str],
        timeout_seconds: float = 60.0,
        interval_seconds: float = 5.0,
        success_threshold: int = 2,
        request_timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.urls = urls
        self.timeout_seconds = timeout_seconds
        self.interval_seconds = interval_seconds
        self.success_threshold = success_threshold
        self.request_timeout = request_timeout
        self.logger = get_logger(__name__)
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.request_timeout)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _probe(self, url: str) -> str | None:
        """Return None on success or the failure description."""
        client = await self._get_client()
        try:
            response = await client.get(url)
        except httpx.RequestError as e:
            return f"{type(e).__name__}: {e}"
        if not response.is_success:
            return f"HTTP {response.status_code}"
        return None

    async def _verify_url(self, url: str) -> dict[str, Any]:
        start = time.monotonic()
        consecutive = 0
        probes = 0
        last_error: str | None = None

        while True:
            probes += 1
            error = await self._probe(url)
            if error is None:
                consecutive += 1
                if consecutive >= self.success_threshold:
                    self.logger.info("verification_passed", url=url, probes=probes)
                    return {"url": url, "probes": probes}
            else:
                consecutive = 0
                last_error = error
                self.logger.debug("verification_probe_failed", url=url, error=error)

            elapsed = time.monotonic() - start
            if elapsed >= self.timeout_seconds:
                self.logger.error(
                    "verification_timeout", url=url, probes=probes, last_error=last_error
                )
                raise HookError(
                    "verify",
                    f"{url} not healthy after {self.timeout_seconds}s (last error: {last_error})",
                )
            await asyncio.sleep(min(self.interval_seconds, self.timeout_seconds - elapsed))

    async def verify(self, target: ReleaseTarget) -> dict[str, Any]:
        """Verify every configured URL.

        Raises:
            HookError: If any URL does not pass within the timeout
        """
        results = []
        for template in self.urls:
            url = template.format(service=target.service, environment=target.environment)
            results.append(await self._verify_url(url))
        return {"endpoints": results}
