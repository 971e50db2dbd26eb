"""Release primitives for Rollwright.

This module implements tag derivation, registry push with retry, manifest
updates in the GitOps repository, reconciliation, rollout classification,
rollback, and the optional release hooks. Each primitive is driven by the
orchestrator and never calls another.
"""

from __future__ import annotations

from rollwright.pipeline.locks import RepositoryLocks
from rollwright.pipeline.manifest import ManifestUpdater, read_image_tag, set_image_tag
from rollwright.pipeline.reconcile import ReconciliationTrigger, revision_matches
from rollwright.pipeline.registry import RegistryPusher
from rollwright.pipeline.rollback import RollbackController, rollback_run
from rollwright.pipeline.rollout import (
    CRASH_REASONS,
    RolloutMonitor,
    RolloutWatch,
    advance,
    expire,
)
from rollwright.pipeline.tags import discover_commit_sha, resolve_tags
from rollwright.pipeline.verify import (
    CommandMigrationRunner,
    HttpVerifier,
    MigrationRunner,
    Notifier,
    Verifier,
    WebhookNotifier,
)

__all__ = [
    # Tags
    "resolve_tags",
    "discover_commit_sha",
    # Registry
    "RegistryPusher",
    # Manifest
    "RepositoryLocks",
    "ManifestUpdater",
    "read_image_tag",
    "set_image_tag",
    # Reconcile
    "ReconciliationTrigger",
    "revision_matches",
    # Rollout
    "CRASH_REASONS",
    "RolloutMonitor",
    "RolloutWatch",
    "advance",
    "expire",
    # Rollback
    "RollbackController",
    "rollback_run",
    # Hooks
    "CommandMigrationRunner",
    "HttpVerifier",
    "MigrationRunner",
    "Notifier",
    "Verifier",
    "WebhookNotifier",
]
