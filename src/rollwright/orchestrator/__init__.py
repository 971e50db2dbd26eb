"""Orchestrator subsystem for Rollwright.

This module implements step execution with retry, failure policies and
cancellation, the named pipeline definitions, the product-release worker
pool, and the release ledger.
"""

from __future__ import annotations

from rollwright.orchestrator.ledger import ReleaseLedger
from rollwright.orchestrator.pipelines import (
    DEPLOY,
    ORCHESTRATE_RELEASE,
    PRODUCT_RELEASE,
    ROLLBACK,
    build_deploy_run,
    build_release_run,
    build_rollback_run,
)
from rollwright.orchestrator.product import (
    EnvironmentReport,
    ProductRelease,
    ProductReleaseReport,
    ServiceOutcome,
)
from rollwright.orchestrator.runner import PipelineOrchestrator

__all__ = [
    "DEPLOY",
    "ORCHESTRATE_RELEASE",
    "PRODUCT_RELEASE",
    "ROLLBACK",
    "EnvironmentReport",
    "PipelineOrchestrator",
    "ProductRelease",
    "ProductReleaseReport",
    "ReleaseLedger",
    "ServiceOutcome",
    "build_deploy_run",
    "build_release_run",
    "build_rollback_run",
]
