"""Unit tests for kustomization editing and the manifest updater.

Tests cover:
- Reading and rewriting newTag while preserving formatting
- Inserting newTag into an entry without one
- Idempotent updates that make no commit
- Rebase on push rejection and conflict exhaustion
- Single-writer serialization per repository, including overrunning calls
"""

from __future__ import annotations

import asyncio

import pytest

from fakes import FakeVcs, kustomization, make_target
from rollwright.errors import ManifestConflictError, TransportError, ValidationError
from rollwright.models import ReleaseTarget
from rollwright.pipeline.locks import RepositoryLocks
from rollwright.pipeline.manifest import ManifestUpdater, read_image_tag, set_image_tag
from rollwright.transports.base import bounded_call

MANIFEST = """\
apiVersion: kustomize.config.k8s.io/v1beta1
kind: Kustomization
# images managed by the release pipeline
images:
  - name: ghcr.io/acme/shop/svc-b
    newTag: amd64-111111
  - name: ghcr.io/acme/shop/svc-a  # primary
    newTag: "amd64-abc123"  # deployed tag
    digest: ""
resources:
  - deployment.yaml
"""


class TestReadImageTag:
    """Test read_image_tag."""

    def test_reads_quoted_tag_with_comment(self) -> None:
        assert read_image_tag(MANIFEST, "svc-a") == "amd64-abc123"

    def test_matches_full_repository_name(self) -> None:
        assert read_image_tag(MANIFEST, "ghcr.io/acme/shop/svc-b") == "amd64-111111"

    def test_missing_entry_raises(self) -> None:
        with pytest.raises(ValidationError, match="svc-c"):
            read_image_tag(MANIFEST, "svc-c")

    def test_entry_without_tag_returns_none(self) -> None:
        assert read_image_tag(kustomization("svc-a", None), "svc-a") is None

    def test_partial_name_does_not_match(self) -> None:
        with pytest.raises(ValidationError):
            read_image_tag(MANIFEST, "vc-a")


class TestSetImageTag:
    """Test set_image_tag."""

    def test_only_target_line_changes(self) -> None:
        updated = set_image_tag(MANIFEST, "svc-a", "amd64-def456")

        before = MANIFEST.split("\n")
        after = updated.split("\n")
        changed = [(b, a) for b, a in zip(before, after) if b != a]
        assert len(before) == len(after)
        assert changed == [
            ('    newTag: "amd64-abc123"  # deployed tag', '    newTag: "amd64-def456"  # deployed tag')
        ]

    def test_other_services_untouched(self) -> None:
        updated = set_image_tag(MANIFEST, "svc-a", "amd64-def456")
        assert read_image_tag(updated, "svc-b") == "amd64-111111"

    def test_inserts_missing_tag(self) -> None:
        content = kustomization("svc-a", None)
        updated = set_image_tag(content, "svc-a", "amd64-def456")

        assert read_image_tag(updated, "svc-a") == "amd64-def456"
        assert "    newTag: amd64-def456" in updated.split("\n")

    def test_missing_entry_raises(self) -> None:
        with pytest.raises(ValidationError):
            set_image_tag(MANIFEST, "svc-c", "amd64-def456")

    def test_round_trip_is_stable(self) -> None:
        once = set_image_tag(MANIFEST, "svc-a", "amd64-def456")
        twice = set_image_tag(once, "svc-a", "amd64-def456")
        assert once == twice


GENERATOR_MANIFEST = """\
apiVersion: kustomize.config.k8s.io/v1beta1
kind: Kustomization
configMapGenerator:
  - name: svc-a
    literals:
      - LOG_LEVEL=info
images:  # pinned by release
  - name: ghcr.io/acme/shop/svc-a
    newTag: amd64-abc123
secretGenerator:
  - name: svc-a
    newTag: not-an-image
"""


class TestImagesBlockScope:
    """Only the top-level images sequence is read or rewritten."""

    def test_read_skips_generator_with_same_name(self) -> None:
        assert read_image_tag(GENERATOR_MANIFEST, "svc-a") == "amd64-abc123"

    def test_set_leaves_generators_alone(self) -> None:
        updated = set_image_tag(GENERATOR_MANIFEST, "svc-a", "amd64-def456")

        before = GENERATOR_MANIFEST.split("\n")
        after = updated.split("\n")
        assert len(before) == len(after)
        assert [(b, a) for b, a in zip(before, after) if b != a] == [
            ("    newTag: amd64-abc123", "    newTag: amd64-def456")
        ]
        assert "    newTag: not-an-image" in after

    def test_insert_lands_inside_images_block(self) -> None:
        content = GENERATOR_MANIFEST.replace("    newTag: amd64-abc123\n", "")

        updated = set_image_tag(content, "svc-a", "amd64-def456")

        lines = updated.split("\n")
        images_at = lines.index("images:  # pinned by release")
        assert lines[images_at + 2] == "    newTag: amd64-def456"
        assert lines[images_at - 4 : images_at] == GENERATOR_MANIFEST.split("\n")[2:6]

    def test_generator_only_manifest_has_no_entry(self) -> None:
        content = "configMapGenerator:\n  - name: svc-a\n    newTag: x\n"
        with pytest.raises(ValidationError):
            read_image_tag(content, "svc-a")

    def test_nested_images_key_is_ignored(self) -> None:
        content = (
            "patches:\n"
            "  - target:\n"
            "      images:\n"
            "        - name: svc-a\n"
            "          newTag: nested\n"
            "images:\n"
            "- name: svc-a\n"
            "  newTag: amd64-abc123\n"
        )
        assert read_image_tag(content, "svc-a") == "amd64-abc123"


class TestManifestUpdater:
    """Test ManifestUpdater.update against the in-memory repository."""

    @pytest.mark.asyncio
    async def test_update_commits_and_records_previous(
        self, vcs: FakeVcs, target: ReleaseTarget
    ) -> None:
        updater = ManifestUpdater(vcs, RepositoryLocks())

        update = await updater.update(target, "amd64-def456")

        assert update.previous_tag == "amd64-abc123"
        assert update.new_tag == "amd64-def456"
        assert update.changed is True
        assert update.commit_id == vcs.remote_head
        assert update.revision == update.commit_id
        assert update.rebase_attempts == 0
        assert read_image_tag(vcs.remote_files[target.manifest.path], "svc-a") == "amd64-def456"
        assert vcs.commits[-1][1] == "deploy: update svc-a to amd64-def456"

    @pytest.mark.asyncio
    async def test_same_tag_is_a_no_op(self, vcs: FakeVcs, target: ReleaseTarget) -> None:
        updater = ManifestUpdater(vcs, RepositoryLocks())
        head = vcs.remote_head

        update = await updater.update(target, "amd64-abc123")

        assert update.changed is False
        assert update.commit_id is None
        assert update.revision == head
        assert vcs.commits == []
        assert "commit" not in vcs.calls

    @pytest.mark.asyncio
    async def test_second_identical_update_makes_no_commit(
        self, vcs: FakeVcs, target: ReleaseTarget
    ) -> None:
        updater = ManifestUpdater(vcs, RepositoryLocks())

        first = await updater.update(target, "amd64-def456")
        second = await updater.update(target, "amd64-def456")

        assert first.changed is True
        assert second.changed is False
        assert second.previous_tag == "amd64-def456"
        assert len(vcs.commits) == 1

    @pytest.mark.asyncio
    async def test_successive_updates_chain_previous_tags(
        self, vcs: FakeVcs, target: ReleaseTarget
    ) -> None:
        updater = ManifestUpdater(vcs, RepositoryLocks())

        updates = [
            await updater.update(target, tag) for tag in ("amd64-def456", "amd64-ghi789")
        ]

        assert [(u.previous_tag, u.new_tag) for u in updates] == [
            ("amd64-abc123", "amd64-def456"),
            ("amd64-def456", "amd64-ghi789"),
        ]
        assert updates[1].previous_tag == updates[0].new_tag
        assert [sha for sha, _ in vcs.commits] == [updates[0].commit_id, updates[1].commit_id]
        assert vcs.parents[updates[1].commit_id] == updates[0].commit_id
        assert read_image_tag(vcs.remote_files[target.manifest.path], "svc-a") == "amd64-ghi789"

    @pytest.mark.asyncio
    async def test_commit_template_placeholders(self, vcs: FakeVcs, target: ReleaseTarget) -> None:
        updater = ManifestUpdater(
            vcs, RepositoryLocks(), commit_template="{environment}: {service} {previous} -> {tag}"
        )
        await updater.update(target, "amd64-def456")
        assert vcs.commits[-1][1] == "staging: svc-a amd64-abc123 -> amd64-def456"

    @pytest.mark.asyncio
    async def test_rejected_push_is_rebased(self, vcs: FakeVcs, target: ReleaseTarget) -> None:
        vcs.reject_pushes = 2
        updater = ManifestUpdater(vcs, RepositoryLocks(), max_rebase_attempts=3)

        update = await updater.update(target, "amd64-def456")

        assert update.changed is True
        assert update.rebase_attempts == 2
        assert vcs.calls.count("fetch") == 3
        assert vcs.calls.count("push") == 3

    @pytest.mark.asyncio
    async def test_conflict_exhaustion(self, vcs: FakeVcs, target: ReleaseTarget) -> None:
        vcs.reject_pushes = 5
        updater = ManifestUpdater(vcs, RepositoryLocks(), max_rebase_attempts=3)

        with pytest.raises(ManifestConflictError) as exc_info:
            await updater.update(target, "amd64-def456")

        assert exc_info.value.attempts == 3
        assert exc_info.value.retryable is False
        assert read_image_tag(vcs.remote_files[target.manifest.path], "svc-a") == "amd64-abc123"

    @pytest.mark.asyncio
    async def test_missing_manifest_raises_validation(self, target: ReleaseTarget) -> None:
        updater = ManifestUpdater(FakeVcs(), RepositoryLocks())
        with pytest.raises(ValidationError):
            await updater.update(target, "amd64-def456")

    @pytest.mark.asyncio
    async def test_transport_errors_propagate(self, vcs: FakeVcs, target: ReleaseTarget) -> None:
        vcs.fetch_error = TransportError("remote unreachable", operation="fetch")
        updater = ManifestUpdater(vcs, RepositoryLocks())
        with pytest.raises(TransportError):
            await updater.update(target, "amd64-def456")

    @pytest.mark.asyncio
    async def test_empty_tag_rejected(self, vcs: FakeVcs, target: ReleaseTarget) -> None:
        updater = ManifestUpdater(vcs, RepositoryLocks())
        with pytest.raises(ValidationError):
            await updater.update(target, "")

    @pytest.mark.asyncio
    async def test_concurrent_updates_do_not_interleave(self) -> None:
        target_a = make_target("svc-a", "staging")
        target_b = make_target("svc-b", "staging")
        vcs = FakeVcs(
            {
                target_a.manifest.path: kustomization("svc-a", "amd64-abc123"),
                target_b.manifest.path: kustomization("svc-b", "amd64-abc123"),
            }
        )
        updater = ManifestUpdater(vcs, RepositoryLocks())

        await asyncio.gather(
            updater.update(target_a, "amd64-def456"),
            updater.update(target_b, "amd64-def456"),
        )

        sequence = ["fetch", "read", "write", "commit", "push"]
        assert vcs.calls == sequence * 2
        assert read_image_tag(vcs.remote_files[target_a.manifest.path], "svc-a") == "amd64-def456"
        assert read_image_tag(vcs.remote_files[target_b.manifest.path], "svc-b") == "amd64-def456"


class TestSlowRepository:
    """Calls overrunning their deadline finish before the lock is released."""

    @pytest.mark.asyncio
    async def test_slow_push_is_confirmed_from_remote(
        self, vcs: FakeVcs, target: ReleaseTarget
    ) -> None:
        vcs.push_delay = 0.1
        updater = ManifestUpdater(vcs, RepositoryLocks(), call_timeout=0.02)

        update = await updater.update(target, "amd64-def456")

        assert update.changed is True
        assert update.commit_id == vcs.remote_head
        assert vcs.calls == ["fetch", "read", "write", "commit", "push", "fetch"]

    @pytest.mark.asyncio
    async def test_slow_rejected_push_times_out(
        self, vcs: FakeVcs, target: ReleaseTarget
    ) -> None:
        vcs.push_delay = 0.1
        vcs.reject_pushes = 1
        locks = RepositoryLocks()
        updater = ManifestUpdater(vcs, locks, call_timeout=0.02)

        with pytest.raises(TransportError, match="push timed out") as exc_info:
            await updater.update(target, "amd64-def456")

        assert exc_info.value.operation == "push"
        assert exc_info.value.details == {"settled": True, "late_result": False}
        assert vcs.calls[-2:] == ["push", "fetch"]
        assert locks.is_locked(vcs.repository) is False
        assert read_image_tag(vcs.remote_files[target.manifest.path], "svc-a") == "amd64-abc123"

    @pytest.mark.asyncio
    async def test_next_writer_waits_for_slow_push(self) -> None:
        target_a = make_target("svc-a", "staging")
        target_b = make_target("svc-b", "staging")
        vcs = FakeVcs(
            {
                target_a.manifest.path: kustomization("svc-a", "amd64-abc123"),
                target_b.manifest.path: kustomization("svc-b", "amd64-abc123"),
            }
        )
        vcs.push_delay = 0.05
        updater = ManifestUpdater(vcs, RepositoryLocks(), call_timeout=0.01)

        first, second = await asyncio.gather(
            updater.update(target_a, "amd64-def456"),
            updater.update(target_b, "amd64-def456"),
        )

        sequence = ["fetch", "read", "write", "commit", "push", "fetch"]
        assert vcs.calls == sequence * 2
        assert vcs.parents[second.commit_id] == first.commit_id
        assert read_image_tag(vcs.remote_files[target_a.manifest.path], "svc-a") == "amd64-def456"
        assert read_image_tag(vcs.remote_files[target_b.manifest.path], "svc-b") == "amd64-def456"


class TestBoundedCall:
    """Test bounded_call deadlines."""

    @pytest.mark.asyncio
    async def test_fast_call_returns_result(self) -> None:
        async def quick() -> str:
            return "done"

        assert await bounded_call(quick(), 1.0, "quick", settle=True) == "done"

    @pytest.mark.asyncio
    async def test_timeout_cancels_without_settle(self) -> None:
        finished = asyncio.Event()

        async def slow() -> None:
            await asyncio.sleep(0.2)
            finished.set()

        with pytest.raises(TransportError) as exc_info:
            await bounded_call(slow(), 0.01, "slow")

        assert exc_info.value.details == {}
        await asyncio.sleep(0.3)
        assert not finished.is_set()

    @pytest.mark.asyncio
    async def test_settled_call_finishes_before_raising(self) -> None:
        finished = asyncio.Event()

        async def slow() -> None:
            await asyncio.sleep(0.05)
            finished.set()
            raise TransportError("remote hung up", operation="slow")

        with pytest.raises(TransportError, match="slow timed out") as exc_info:
            await bounded_call(slow(), 0.01, "slow", settle=True)

        assert finished.is_set()
        assert exc_info.value.details == {"settled": True, "late_error": "remote hung up"}

    @pytest.mark.asyncio
    async def test_cancelled_caller_waits_for_settled_call(self) -> None:
        finished = asyncio.Event()

        async def slow() -> None:
            await asyncio.sleep(0.1)
            finished.set()

        caller = asyncio.create_task(bounded_call(slow(), 1.0, "slow", settle=True))
        await asyncio.sleep(0.02)
        caller.cancel()

        with pytest.raises(asyncio.CancelledError):
            await caller

        assert finished.is_set()


class TestRepositoryLocks:
    """Test RepositoryLocks."""

    def test_same_key_same_lock(self) -> None:
        locks = RepositoryLocks()
        assert locks.lock_for("repo") is locks.lock_for("repo")
        assert locks.lock_for("repo") is not locks.lock_for("other")

    @pytest.mark.asyncio
    async def test_hold_serializes_same_repository(self) -> None:
        locks = RepositoryLocks()
        order: list[str] = []

        async def writer(name: str) -> None:
            async with locks.hold("repo"):
                order.append(f"{name}-start")
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                order.append(f"{name}-end")

        await asyncio.gather(writer("a"), writer("b"))

        assert order == ["a-start", "a-end", "b-start", "b-end"]

    @pytest.mark.asyncio
    async def test_different_repositories_run_concurrently(self) -> None:
        locks = RepositoryLocks()
        order: list[str] = []

        async def writer(repo: str) -> None:
            async with locks.hold(repo):
                order.append(f"{repo}-start")
                await asyncio.sleep(0)
                order.append(f"{repo}-end")

        await asyncio.gather(writer("one"), writer("two"))

        assert order == ["one-start", "two-start", "one-end", "two-end"]

    @pytest.mark.asyncio
    async def test_is_locked(self) -> None:
        locks = RepositoryLocks()
        assert locks.is_locked("repo") is False
        async with locks.hold("repo"):
            assert locks.is_locked("repo") is True
        assert locks.is_locked("repo") is False
