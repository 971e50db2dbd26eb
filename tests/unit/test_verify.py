"""Unit tests for release hooks.

Tests cover:
- Migration command templating, success, failure and timeout
- Webhook notification payloads and error classification
- HTTP verification with consecutive-success threshold
"""

from __future__ import annotations

import json
import sys

import httpx
import pytest
import respx

from rollwright.errors import HookError
from rollwright.models import ManifestUpdate, PipelineRun, ReleaseTarget
from rollwright.pipeline.verify import CommandMigrationRunner, HttpVerifier, WebhookNotifier

WEBHOOK = "https://hooks.example.com/releases"


def _run(target: ReleaseTarget) -> PipelineRun:
    return PipelineRun(
        name="orchestrate-release",
        target=target,
        deploy_tag="amd64-def456",
        manifest_update=ManifestUpdate(
            target_key=target.key,
            previous_tag="amd64-abc123",
            new_tag="amd64-def456",
            commit_id="c0ffee",
            revision="c0ffee",
        ),
    )


class TestCommandMigrationRunner:
    """Test CommandMigrationRunner.run."""

    @pytest.mark.asyncio
    async def test_placeholders_and_output(self, target: ReleaseTarget) -> None:
        runner = CommandMigrationRunner(
            [sys.executable, "-c", "import sys; print(sys.argv[1:])", "{service}", "{environment}", "{tag}"]
        )

        result = await runner.run(target, "amd64-def456")

        assert result["returncode"] == 0
        assert "['svc-a', 'staging', 'amd64-def456']" in result["stdout_tail"]

    @pytest.mark.asyncio
    async def test_non_zero_exit_raises(self, target: ReleaseTarget) -> None:
        runner = CommandMigrationRunner(
            [sys.executable, "-c", "import sys; sys.stderr.write('schema locked'); sys.exit(3)"]
        )

        with pytest.raises(HookError, match="exit code 3: schema locked") as exc_info:
            await runner.run(target, "amd64-def456")

        assert exc_info.value.hook == "migrate"
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_timeout_kills_command(self, target: ReleaseTarget) -> None:
        runner = CommandMigrationRunner(
            [sys.executable, "-c", "import time; time.sleep(30)"], timeout_seconds=0.2
        )

        with pytest.raises(HookError, match="timed out"):
            await runner.run(target, "amd64-def456")

    @pytest.mark.asyncio
    async def test_missing_command(self, target: ReleaseTarget) -> None:
        runner = CommandMigrationRunner(["rollwright-no-such-migrator"])
        with pytest.raises(HookError, match="command not found"):
            await runner.run(target, "amd64-def456")

    def test_empty_command_rejected(self) -> None:
        with pytest.raises(ValueError):
            CommandMigrationRunner([])


class TestWebhookNotifier:
    """Test WebhookNotifier.notify."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_posts_release_event(self, target: ReleaseTarget) -> None:
        route = respx.post(WEBHOOK).mock(return_value=httpx.Response(204))
        notifier = WebhookNotifier(WEBHOOK)
        run = _run(target)

        try:
            result = await notifier.notify(run)
        finally:
            await notifier.close()

        assert result == {"status_code": 204}
        payload = json.loads(route.calls.last.request.content)
        assert payload["event_type"] == "release_reconciled"
        assert payload["run_id"] == run.id
        assert payload["service"] == "svc-a"
        assert payload["environment"] == "staging"
        assert payload["tag"] == "amd64-def456"
        assert payload["previous_tag"] == "amd64-abc123"
        assert payload["revision"] == "c0ffee"

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error_is_retryable(self, target: ReleaseTarget) -> None:
        respx.post(WEBHOOK).mock(return_value=httpx.Response(503))
        notifier = WebhookNotifier(WEBHOOK)

        with pytest.raises(HookError) as exc_info:
            await notifier.notify(_run(target))
        await notifier.close()

        assert exc_info.value.retryable is True
        assert "HTTP 503" in str(exc_info.value)

    @pytest.mark.asyncio
    @respx.mock
    async def test_client_error_is_fatal(self, target: ReleaseTarget) -> None:
        respx.post(WEBHOOK).mock(return_value=httpx.Response(401))
        notifier = WebhookNotifier(WEBHOOK)

        with pytest.raises(HookError) as exc_info:
            await notifier.notify(_run(target))
        await notifier.close()

        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    @respx.mock
    async def test_connection_error_is_retryable(self, target: ReleaseTarget) -> None:
        respx.post(WEBHOOK).mock(side_effect=httpx.ConnectError("connection refused"))
        notifier = WebhookNotifier(WEBHOOK)

        with pytest.raises(HookError) as exc_info:
            await notifier.notify(_run(target))
        await notifier.close()

        assert exc_info.value.retryable is True


class TestHttpVerifier:
    """Test HttpVerifier.verify."""

    @pytest.mark.asyncio
    @respx.mock
    async def test_passes_after_consecutive_successes(self, target: ReleaseTarget) -> None:
        route = respx.get("https://svc-a.staging.example.com/healthz").mock(
            side_effect=[
                httpx.Response(502),
                httpx.Response(200),
                httpx.Response(200),
            ]
        )
        verifier = HttpVerifier(
            ["https://{service}.{environment}.example.com/healthz"],
            timeout_seconds=5,
            interval_seconds=0,
            success_threshold=2,
        )

        result = await verifier.verify(target)
        await verifier.close()

        assert route.call_count == 3
        assert result == {
            "endpoints": [{"url": "https://svc-a.staging.example.com/healthz", "probes": 3}]
        }

    @pytest.mark.asyncio
    @respx.mock
    async def test_times_out_with_last_error(self, target: ReleaseTarget) -> None:
        respx.get("https://svc-a.example.com/ready").mock(return_value=httpx.Response(500))
        verifier = HttpVerifier(
            ["https://svc-a.example.com/ready"],
            timeout_seconds=0.05,
            interval_seconds=0.01,
        )

        with pytest.raises(HookError, match="last error: HTTP 500") as exc_info:
            await verifier.verify(target)
        await verifier.close()

        assert exc_info.value.hook == "verify"
