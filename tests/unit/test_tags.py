"""Unit tests for image tag derivation.

Tests cover:
- Immutable and floating tag values
- Input validation (empty, invalid characters, reserved content id)
- Commit SHA discovery from environment variables and git
"""

from __future__ import annotations

from pathlib import Path

import git
import pytest

from rollwright.errors import ValidationError
from rollwright.models import TagKind
from rollwright.pipeline.tags import discover_commit_sha, resolve_tags


class TestResolveTags:
    """Test resolve_tags output and validation."""

    def test_immutable_and_floating_values(self) -> None:
        tags = resolve_tags("svc-a", "amd64", "def456")
        assert tags.immutable.value == "amd64-def456"
        assert tags.floating.value == "amd64-latest"
        assert tags.immutable.kind == TagKind.ARCH_SHA
        assert tags.floating.kind == TagKind.ARCH_LATEST

    def test_all_returns_immutable_first(self) -> None:
        tags = resolve_tags("svc-a", "arm64", "abc1234")
        assert [t.value for t in tags.all()] == ["arm64-abc1234", "arm64-latest"]
        assert tags.all()[0].immutable is True
        assert tags.all()[1].immutable is False

    def test_same_input_gives_same_tags(self) -> None:
        assert resolve_tags("svc-a", "amd64", "abc123") == resolve_tags("svc-a", "amd64", "abc123")

    @pytest.mark.parametrize(
        "service,arch,content_id",
        [
            ("", "amd64", "abc123"),
            ("svc-a", "", "abc123"),
            ("svc-a", "amd64", ""),
            ("svc-a", "amd64", "   "),
        ],
    )
    def test_empty_inputs_rejected(self, service: str, arch: str, content_id: str) -> None:
        with pytest.raises(ValidationError):
            resolve_tags(service, arch, content_id)

    @pytest.mark.parametrize("service", ["Svc-A", "svc a", "svc/a", "-svc"])
    def test_invalid_service_rejected(self, service: str) -> None:
        with pytest.raises(ValidationError):
            resolve_tags(service, "amd64", "abc123")

    def test_invalid_tag_characters_rejected(self) -> None:
        with pytest.raises(ValidationError):
            resolve_tags("svc-a", "amd64", "abc:123")

    def test_tag_too_long_rejected(self) -> None:
        with pytest.raises(ValidationError):
            resolve_tags("svc-a", "amd64", "a" * 130)

    def test_latest_content_id_rejected(self) -> None:
        with pytest.raises(ValidationError, match="latest"):
            resolve_tags("svc-a", "amd64", "latest")

    def test_validation_error_is_not_retryable(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            resolve_tags("", "amd64", "abc123")
        assert exc_info.value.retryable is False


class TestDiscoverCommitSha:
    """Test commit SHA lookup order."""

    def test_release_sha_env_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("RELEASE_GIT_SHA", "0123456789abcdef")
        monkeypatch.setenv("GIT_SHA", "fedcba9876543210")
        assert discover_commit_sha() == "0123456"

    def test_git_sha_env_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("RELEASE_GIT_SHA", raising=False)
        monkeypatch.setenv("GIT_SHA", "fedcba9876543210")
        assert discover_commit_sha() == "fedcba9"

    def test_git_head_fallback(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv("RELEASE_GIT_SHA", raising=False)
        monkeypatch.delenv("GIT_SHA", raising=False)

        repo = git.Repo.init(tmp_path)
        (tmp_path / "README.md").write_text("# svc\n")
        repo.index.add(["README.md"])
        actor = git.Actor("Test User", "test@example.com")
        commit = repo.index.commit("Initial commit", author=actor, committer=actor)

        assert discover_commit_sha(tmp_path) == commit.hexsha[:7]

    def test_no_source_raises(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.delenv("RELEASE_GIT_SHA", raising=False)
        monkeypatch.delenv("GIT_SHA", raising=False)
        with pytest.raises(ValidationError, match="commit SHA"):
            discover_commit_sha(tmp_path / "not-a-repo")
