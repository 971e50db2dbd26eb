"""Kubernetes and Flux cluster transport over the HTTP API.

Reconciliation is requested the way ``flux reconcile --with-source`` does
it: the ``reconcile.fluxcd.io/requestedAt`` annotation is patched onto the
GitRepository source and then the Kustomization. The Kustomization's
``status.lastAppliedRevision`` reports what the controller applied.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any

import httpx

from rollwright.config import ClusterConfig
from rollwright.errors import TransportError
from rollwright.logging import get_logger
from rollwright.models import PodSnapshot, ReconcileHandle, RolloutObservation, WorkloadRef

RECONCILE_ANNOTATION = "reconcile.fluxcd.io/requestedAt"
KUSTOMIZATION_API = "/apis/kustomize.toolkit.fluxcd.io/v1"
GITREPOSITORY_API = "/apis/source.toolkit.fluxcd.io/v1"

_MERGE_PATCH = {"Content-Type": "application/merge-patch+json"}


def _pod_snapshot(pod: dict[str, Any]) -> PodSnapshot:
    """Reduce a Pod object to the fields the rollout reducer needs."""
    status = pod.get("status", {})
    containers = status.get("containerStatuses") or []

    reason = None
    message = None
    for cs in containers:
        state = cs.get("state", {})
        waiting = state.get("waiting") or {}
        terminated = state.get("terminated") or {}
        if waiting.get("reason"):
            reason, message = waiting["reason"], waiting.get("message")
            break
        if terminated.get("reason") and terminated.get("reason") != "Completed":
            reason, message = terminated["reason"], terminated.get("message")
            break

    image_tag = None
    spec_containers = pod.get("spec", {}).get("containers") or []
    if spec_containers:
        image = spec_containers[0].get("image", "")
        if ":" in image.rsplit("/", 1)[-1]:
            image_tag = image.rsplit(":", 1)[1]

    return PodSnapshot(
        name=pod.get("metadata", {}).get("name", "unknown"),
        phase=status.get("phase", "Pending"),
        ready=bool(containers) and all(cs.get("ready", False) for cs in containers),
        reason=reason or status.get("reason"),
        message=message or status.get("message"),
        restart_count=sum(int(cs.get("restartCount", 0)) for cs in containers),
        image_tag=image_tag,
    )


def _event_time(event: dict[str, Any]) -> str:
    return (
        event.get("lastTimestamp")
        or event.get("eventTime")
        or event.get("metadata", {}).get("creationTimestamp")
        or ""
    )


class KubernetesClusterTransport:
    """ClusterTransport implementation talking to the Kubernetes API.

    Attributes:
        config: Cluster configuration
    """

    def __init__(self, config: ClusterConfig, client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self.logger = get_logger(__name__)
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            headers = {"Accept": "application/json"}
            token = os.environ.get(self.config.token_env)
            if token:
                headers["Authorization"] = f"Bearer {token}"
            verify: bool | str = self.config.verify_ssl
            if self.config.verify_ssl and self.config.ca_cert is not None:
                verify = str(self.config.ca_cert)
            self._client = httpx.AsyncClient(
                base_url=self.config.api_url, headers=headers, verify=verify
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self, method: str, path: str, operation: str, **kwargs: Any
    ) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.RequestError as e:
            self.logger.warning("cluster_request_error", operation=operation, error=str(e))
            raise TransportError(f"{operation} failed: {e}", operation=operation) from e

        if response.is_error and response.status_code != 404:
            retryable = response.status_code >= 500 or response.status_code == 429
            self.logger.warning(
                "cluster_request_failed",
                operation=operation,
                status_code=response.status_code,
                response_text=response.text[:200],
            )
            raise TransportError(
                f"{operation} returned HTTP {response.status_code}",
                operation=operation,
                retryable=retryable,
            )
        return response

    async def _annotate(self, api: str, kind: str, namespace: str, name: str, stamp: str) -> int:
        body = {"metadata": {"annotations": {RECONCILE_ANNOTATION: stamp}}}
        response = await self._request(
            "PATCH",
            f"{api}/namespaces/{namespace}/{kind}/{name}",
            "trigger_reconcile",
            json=body,
            headers=_MERGE_PATCH,
        )
        return response.status_code

    async def trigger_reconcile(self, namespace: str, name: str) -> ReconcileHandle:
        """Request reconciliation of the git source and then the Kustomization.

        Raises:
            TransportError: If the Kustomization does not exist or the API fails
        """
        stamp = datetime.now(timezone.utc).isoformat()

        source_status = await self._annotate(GITREPOSITORY_API, "gitrepositories", namespace, name, stamp)
        if source_status == 404:
            self.logger.debug("gitrepository_not_found", namespace=namespace, name=name)

        status = await self._annotate(KUSTOMIZATION_API, "kustomizations", namespace, name, stamp)
        if status == 404:
            raise TransportError(
                f"Kustomization {namespace}/{name} not found",
                operation="trigger_reconcile",
                retryable=False,
            )

        self.logger.info("reconcile_requested", namespace=namespace, name=name, requested_at=stamp)
        return ReconcileHandle(namespace=namespace, name=name, requested_at=stamp)

    async def get_reconcile_status(self, handle: ReconcileHandle) -> str | None:
        response = await self._request(
            "GET",
            f"{KUSTOMIZATION_API}/namespaces/{handle.namespace}/kustomizations/{handle.name}",
            "get_reconcile_status",
        )
        if response.status_code == 404:
            return None
        return response.json().get("status", {}).get("lastAppliedRevision")

    async def get_rollout_status(self, workload: WorkloadRef) -> RolloutObservation:
        """Observe the Deployment and its pods.

        A Deployment the controller has not created yet is reported as zero
        desired replicas.
        """
        response = await self._request(
            "GET",
            f"/apis/apps/v1/namespaces/{workload.namespace}/deployments/{workload.deployment}",
            "get_rollout_status",
        )
        if response.status_code == 404:
            return RolloutObservation(desired=0)

        deployment = response.json()
        spec = deployment.get("spec", {})
        status = deployment.get("status", {})

        pods_response = await self._request(
            "GET",
            f"/api/v1/namespaces/{workload.namespace}/pods",
            "get_rollout_status",
            params={"labelSelector": workload.selector},
        )
        pods: list[PodSnapshot] = []
        if pods_response.status_code != 404:
            pods = [_pod_snapshot(p) for p in pods_response.json().get("items", [])]

        return RolloutObservation(
            desired=int(spec.get("replicas", 1)),
            ready=int(status.get("readyReplicas", 0)),
            unavailable=int(status.get("unavailableReplicas", 0)),
            updated=int(status.get("updatedReplicas", 0)),
            pods=pods,
            generation=deployment.get("metadata", {}).get("generation"),
            observed_generation=status.get("observedGeneration"),
        )

    async def get_pod_logs(self, namespace: str, pod: str, tail_lines: int) -> str:
        response = await self._request(
            "GET",
            f"/api/v1/namespaces/{namespace}/pods/{pod}/log",
            "get_pod_logs",
            params={"tailLines": tail_lines},
        )
        if response.status_code == 404:
            raise TransportError(f"Pod {namespace}/{pod} not found", operation="get_pod_logs", retryable=False)
        return response.text

    async def get_pod_events(self, namespace: str, pod: str, limit: int) -> list[str]:
        response = await self._request(
            "GET",
            f"/api/v1/namespaces/{namespace}/events",
            "get_pod_events",
            params={"fieldSelector": f"involvedObject.name={pod}"},
        )
        if response.status_code == 404 or limit <= 0:
            return []
        events = sorted(response.json().get("items", []), key=_event_time)
        return [
            f"{e.get('type', 'Normal')} {e.get('reason', '')}: {e.get('message', '')}".strip()
            for e in events[-limit:]
        ]
