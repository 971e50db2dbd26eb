"""Registry transport backed by docker-py.

Tags a local image into the target repository and pushes it through the
Docker daemon, then answers existence checks from the registry's
distribution API (``docker manifest inspect`` equivalent).

Example usage:
    >>> from rollwright.config import RegistryConfig
    >>> transport = DockerRegistryTransport(RegistryConfig(host="ghcr.io"))
    >>> await transport.push_tag("svc-a:build", "ghcr.io/acme/shop/svc-a", "amd64-abc1234")
    >>> await transport.tag_exists("ghcr.io/acme/shop/svc-a", "amd64-abc1234")
    True
"""

from __future__ import annotations

import asyncio
import os
from typing import Any

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from requests.exceptions import RequestException

from rollwright.config import RegistryConfig
from rollwright.errors import TransportError
from rollwright.logging import get_logger


class DockerRegistryTransport:
    """RegistryTransport implementation using the Docker daemon.

    The client connection is deferred until first use. All docker-py calls
    are blocking and run in a worker thread.
    """

    def __init__(self, config: RegistryConfig, client: Any | None = None) -> None:
        self.config = config
        self.logger = get_logger(__name__)
        self._client = client

    def _get_client(self) -> Any:
        """Get or create the Docker client connection.

        Raises:
            TransportError: If the Docker daemon is unreachable
        """
        if self._client is None:
            try:
                docker_host = self.config.docker_host or os.environ.get("DOCKER_HOST")
                if docker_host:
                    self._client = docker.DockerClient(base_url=docker_host)
                elif self.config.rootless:
                    xdg_runtime = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
                    try:
                        self._client = docker.DockerClient(
                            base_url=f"unix://{xdg_runtime}/docker.sock"
                        )
                    except DockerException:
                        self._client = docker.DockerClient.from_env()
                else:
                    self._client = docker.DockerClient.from_env()

                self.logger.info("docker_client_connected", rootless=self.config.rootless)
            except DockerException as e:
                self.logger.error(
                    "docker_client_connection_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise TransportError(
                    f"Docker daemon unavailable: {e}", operation="connect"
                ) from e

        return self._client

    def _push_blocking(self, image_ref: str, repository: str, tag: str) -> str | None:
        client = self._get_client()
        try:
            image = client.images.get(image_ref)
        except ImageNotFound as e:
            raise TransportError(
                f"Local image {image_ref} not found", operation="push_tag", retryable=False
            ) from e

        image.tag(repository, tag=tag)

        digest: str | None = None
        for entry in client.images.push(repository, tag=tag, stream=True, decode=True):
            if not isinstance(entry, dict):
                continue
            if "error" in entry:
                raise TransportError(
                    f"Registry rejected {repository}:{tag}: {entry['error']}",
                    operation="push_tag",
                )
            aux = entry.get("aux")
            if isinstance(aux, dict):
                digest = aux.get("Digest") or digest
        return digest

    async def push_tag(self, image_ref: str, repository: str, tag: str) -> None:
        """Tag and push one image tag.

        Raises:
            TransportError: If the daemon or registry rejects the push
        """
        try:
            digest = await asyncio.to_thread(self._push_blocking, image_ref, repository, tag)
        except (DockerException, RequestException) as e:
            self.logger.warning(
                "docker_push_failed",
                repository=repository,
                tag=tag,
                error=str(e),
                error_type=type(e).__name__,
                status_code=getattr(e, "status_code", None),
            )
            raise TransportError(
                f"Push of {repository}:{tag} failed: {e}", operation="push_tag", retryable=True
            ) from e

        self.logger.debug("docker_push_completed", repository=repository, tag=tag, digest=digest)

    def _exists_blocking(self, repository: str, tag: str) -> bool:
        client = self._get_client()
        try:
            client.images.get_registry_data(f"{repository}:{tag}")
        except NotFound:
            return False
        return True

    async def tag_exists(self, repository: str, tag: str) -> bool:
        """Check the registry for ``repository:tag``.

        Raises:
            TransportError: If the registry could not be queried
        """
        try:
            return await asyncio.to_thread(self._exists_blocking, repository, tag)
        except (DockerException, RequestException) as e:
            self.logger.warning(
                "docker_lookup_failed",
                repository=repository,
                tag=tag,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TransportError(
                f"Registry lookup for {repository}:{tag} failed: {e}",
                operation="tag_exists",
                retryable=True,
            ) from e

    async def close(self) -> None:
        """Close the Docker client connection."""
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None
