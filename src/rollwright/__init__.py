"""Rollwright - GitOps release orchestration engine.

This package provides the release primitives (tag resolution, registry push,
manifest update, reconciliation, rollout monitoring, rollback) and the
orchestrator that composes them into deploy and release pipelines across
services and environments.
"""

__version__ = "0.1.0"
