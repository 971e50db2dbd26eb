"""Configuration management for Rollwright.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides.

Configuration loading priority (highest to lowest):
1. Constructor arguments, which is how ``load_config`` passes the TOML file
2. Environment variables (ROLLWRIGHT_* prefix), for keys the file leaves unset
3. Default values defined in this module

A key set in the TOML file therefore wins over the same key in the
environment. Nested sections are merged key by key, so an environment
variable still fills a key the file's section omits.

Example TOML configuration:
    [registry]
    host = "ghcr.io"
    organization = "acme"
    project = "shop"

    [[services]]
    name = "svc-a"
    type = "rust"

Example environment variables for keys absent from the file:
    ROLLWRIGHT_PIPELINE__CONCURRENCY=8
    ROLLWRIGHT_ROLLOUT__TIMEOUT_SECONDS=900
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rollwright.models import (
    GitOpsRef,
    ManifestLocator,
    PipelinePolicy,
    RegistryCoordinates,
    ReleaseTarget,
    WorkloadRef,
)


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        file: Optional log file path (None for stdout only)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="console")
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=50, ge=1, le=1000)
    retention_count: int = Field(default=10, ge=1, le=100)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class RetryPolicy(BaseModel):
    """Bounded retry with exponential backoff.

    The delay before attempt ``n`` (1-based, n >= 2) is
    ``min(initial_delay_seconds * multiplier ** (n - 2), max_delay_seconds)``.

    Attributes:
        max_attempts: Total attempts per tag, including the first
        initial_delay_seconds: Delay after the first failure
        max_delay_seconds: Upper bound on any single delay
        multiplier: Backoff growth factor
    """

    max_attempts: int = Field(default=3, ge=1, le=20)
    initial_delay_seconds: float = Field(default=2.0, ge=0.0)
    max_delay_seconds: float = Field(default=30.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)

    def delay_after(self, attempt: int) -> float:
        """Return the backoff delay following a failed ``attempt``."""
        delay = self.initial_delay_seconds * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


class RegistryConfig(BaseSettings):
    """Container registry configuration.

    Attributes:
        host: Registry host
        organization: Organization on the registry
        project: Project segment under the organization
        rootless: Use the rootless Docker daemon socket
        docker_host: Explicit Docker daemon URL (overrides rootless detection)
        retry: Push retry policy
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_REGISTRY__",
        extra="forbid",
    )

    host: str = Field(default="ghcr.io")
    organization: str = Field(default="example")
    project: str = Field(default="platform")
    rootless: bool = Field(default=False)
    docker_host: str | None = Field(default=None)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @property
    def coordinates(self) -> RegistryCoordinates:
        return RegistryCoordinates(
            host=self.host, organization=self.organization, project=self.project
        )


class GitConfig(BaseSettings):
    """Manifest repository configuration.

    Attributes:
        repository: Clone URL (or local path) of the GitOps repository
        workspace_path: Local checkout location
        remote: Remote name to fetch from and push to
        branch: Branch the GitOps controller reconciles
        author_name: Commit author name
        author_email: Commit author email
        commit_message_template: Deterministic commit message template
        max_rebase_attempts: Commit+push attempts before giving up on conflicts
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_GIT__",
        extra="forbid",
    )

    repository: str = Field(default=".")
    workspace_path: Path = Field(default=Path(".rollwright/manifests"))
    remote: str = Field(default="origin")
    branch: str = Field(default="main")
    author_name: str = Field(default="rollwright")
    author_email: str = Field(default="rollwright@localhost")
    commit_message_template: str = Field(
        default="deploy: update {service} to {tag}",
        description="Supports {service}, {environment}, {tag}, {previous}, {timestamp}",
    )
    max_rebase_attempts: int = Field(default=3, ge=1, le=20)


class ClusterConfig(BaseSettings):
    """Kubernetes API access.

    Attributes:
        api_url: Kubernetes API server URL
        token_env: Environment variable holding the bearer token
        verify_ssl: Verify the API server certificate
        ca_cert: Optional CA bundle path
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_CLUSTER__",
        extra="forbid",
    )

    api_url: str = Field(default="https://kubernetes.default.svc")
    token_env: str = Field(default="ROLLWRIGHT_CLUSTER_TOKEN")
    verify_ssl: bool = Field(default=True)
    ca_cert: Path | None = Field(default=None)
    gitops_namespace: str = Field(default="flux-system")
    gitops_name: str = Field(default="flux-system")


class ReconcileConfig(BaseSettings):
    """Reconciliation wait configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_RECONCILE__",
        extra="forbid",
    )

    timeout_seconds: float = Field(default=120.0, gt=0)
    poll_interval_seconds: float = Field(default=3.0, gt=0)


class RolloutConfig(BaseSettings):
    """Rollout classification thresholds.

    Attributes:
        poll_interval_seconds: Time between rollout observations
        timeout_seconds: Overall watch timeout
        grace_period_seconds: Unavailability tolerated before degraded
        failure_threshold_seconds: Unavailability tolerated before failed
        stability_window_seconds: Healthy duration required before healthy
        restart_threshold: Container restarts that mark a pod as crashing
        log_tail_lines: Lines of logs captured per unhealthy pod
        event_limit: Events captured per unhealthy pod
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_ROLLOUT__",
        extra="forbid",
    )

    poll_interval_seconds: float = Field(default=3.0, gt=0)
    timeout_seconds: float = Field(default=600.0, gt=0)
    grace_period_seconds: float = Field(default=30.0, ge=0)
    failure_threshold_seconds: float = Field(default=120.0, gt=0)
    stability_window_seconds: float = Field(default=10.0, ge=0)
    restart_threshold: int = Field(default=3, ge=1)
    log_tail_lines: int = Field(default=30, ge=0)
    event_limit: int = Field(default=10, ge=0)

    @model_validator(mode="after")
    def validate_thresholds(self) -> RolloutConfig:
        """Failure threshold must leave room for the grace period."""
        if self.failure_threshold_seconds <= self.grace_period_seconds:
            raise ValueError(
                "failure_threshold_seconds must be greater than grace_period_seconds"
            )
        return self


class PipelineConfig(BaseSettings):
    """Pipeline execution configuration.

    Attributes:
        policy: Fatal-failure policy for deploy runs
        step_max_attempts: Attempts per step for retryable failures
        step_retry_delay_seconds: Delay between step attempts
        call_timeout_seconds: Bound on every transport call
        concurrency: Concurrent service deploys within one environment
        fail_fast: Cancel sibling deploys after the first failure
        environments: Promotion order for product releases
        ledger_dir: Directory for the release ledger (None keeps it in memory)
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_PIPELINE__",
        extra="forbid",
    )

    policy: PipelinePolicy = Field(default=PipelinePolicy.ABORT_AND_ROLLBACK)
    step_max_attempts: int = Field(default=2, ge=1, le=10)
    step_retry_delay_seconds: float = Field(default=5.0, ge=0)
    call_timeout_seconds: float = Field(default=30.0, gt=0)
    concurrency: int = Field(default=4, ge=1, le=64)
    fail_fast: bool = Field(default=False)
    environments: list[str] = Field(default_factory=lambda: ["staging", "production"])
    ledger_dir: Path | None = Field(default=Path(".rollwright/ledger"))
    verify_rollback_image: bool = Field(default=True)


class HooksConfig(BaseSettings):
    """Optional release hooks.

    Attributes:
        notify_webhook_url: Webhook notified after reconcile (None to skip)
        verify_urls: HTTP endpoints that must answer 2xx after rollout
        verify_timeout_seconds: Overall verification budget
        verify_interval_seconds: Delay between verification probes
        verify_success_threshold: Consecutive successes required
        migrate_command: Command run by the migrate step (None to skip)
        migrate_timeout_seconds: Bound on the migration command
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_HOOKS__",
        extra="forbid",
    )

    notify_webhook_url: str | None = Field(default=None)
    verify_urls: list[str] = Field(default_factory=list)
    verify_timeout_seconds: float = Field(default=60.0, gt=0)
    verify_interval_seconds: float = Field(default=5.0, ge=0)
    verify_success_threshold: int = Field(default=2, ge=1)
    migrate_command: list[str] | None = Field(
        default=None,
        description="Migration command argv; supports {service}, {environment}, {tag}",
    )
    migrate_timeout_seconds: float = Field(default=600.0, gt=0)


class ServiceConfig(BaseModel):
    """One deployable service.

    Path-like fields accept ``{service}`` and ``{environment}`` placeholders.

    Attributes:
        name: Service name (also the registry repository leaf)
        type: Service flavour (informational; selects build conventions)
        arch: Target architecture for derived tags
        manifest_path: Kustomization path in the GitOps repository
        image_name: Image entry to edit (defaults to the service name)
        namespace: Kubernetes namespace template
        deployment: Deployment name (defaults to the service name)
        label_selector: Pod selector (defaults to ``app=<deployment>``)
        flake_attr: Build attribute passed to the image builder
        working_dir: Build working directory
        policy: Per-service policy override
    """

    model_config = {"extra": "forbid"}

    name: str
    type: str = Field(default="generic")
    arch: str = Field(default="amd64")
    manifest_path: str = Field(default="clusters/{environment}/{service}/kustomization.yaml")
    image_name: str | None = Field(default=None)
    namespace: str = Field(default="{service}-{environment}")
    deployment: str | None = Field(default=None)
    label_selector: str | None = Field(default=None)
    flake_attr: str | None = Field(default=None)
    working_dir: str = Field(default=".")
    policy: PipelinePolicy | None = Field(default=None)

    def render(self, template: str, environment: str) -> str:
        return template.format(service=self.name, environment=environment)


class RollwrightConfig(BaseSettings):
    """Root configuration for Rollwright.

    This aggregates all subsystem configurations. Configuration can be
    loaded from:
    1. TOML files (using load_config function)
    2. Environment variables (ROLLWRIGHT_* prefix)
    3. Direct instantiation with keyword arguments

    Environment variable format for nested config:
        ROLLWRIGHT_<SECTION>__<KEY>=value
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    rollout: RolloutConfig = Field(default_factory=RolloutConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    hooks: HooksConfig = Field(default_factory=HooksConfig)
    services: list[ServiceConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_services(self) -> RollwrightConfig:
        """Service names must be unique."""
        names = [s.name for s in self.services]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate service names: {sorted(duplicates)}")
        return self

    def service(self, name: str) -> ServiceConfig:
        """Look up a service by name.

        Raises:
            KeyError: If the service is not configured.
        """
        for service in self.services:
            if service.name == name:
                return service
        raise KeyError(name)

    def target_for(self, service_name: str, environment: str) -> ReleaseTarget:
        """Build the ReleaseTarget for a service in an environment."""
        service = self.service(service_name)
        deployment = service.deployment or service.name
        return ReleaseTarget(
            service=service.name,
            environment=environment,
            registry=self.registry.coordinates,
            manifest=ManifestLocator(
                repository=self.git.repository,
                path=service.render(service.manifest_path, environment),
                image_name=service.image_name or service.name,
                branch=self.git.branch,
            ),
            workload=WorkloadRef(
                namespace=service.render(service.namespace, environment),
                deployment=deployment,
                label_selector=service.label_selector,
            ),
            gitops=GitOpsRef(
                namespace=self.cluster.gitops_namespace,
                name=self.cluster.gitops_name,
            ),
        )

    def policy_for(self, service_name: str) -> PipelinePolicy:
        service = self.service(service_name)
        return service.policy or self.pipeline.policy


def load_config(config_path: Path | None = None) -> RollwrightConfig:
    """Load configuration from a TOML file, filling unset keys from the environment.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./rollwright.toml (current directory)
    3. ~/.config/rollwright/config.toml (user config directory)

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        RollwrightConfig: Fully resolved configuration instance.

    Raises:
        FileNotFoundError: If config_path is explicitly provided but doesn't exist.
        ValueError: If TOML file contains invalid configuration.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path: Path | None = config_path
    else:
        search_paths = [
            Path.cwd() / "rollwright.toml",
            Path.home() / ".config" / "rollwright" / "config.toml",
        ]
        selected_path = None
        for path in search_paths:
            if path.exists():
                selected_path = path
                break

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            toml_data = tomli.load(f)

    try:
        return RollwrightConfig(**toml_data)
    except Exception as e:
        if selected_path:
            raise ValueError(f"Invalid configuration in {selected_path}: {e}") from e
        raise ValueError(f"Invalid configuration: {e}") from e
