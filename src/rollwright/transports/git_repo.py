"""Manifest repository transport using GitPython.

The working copy is cloned on first use into the configured workspace and
is always hard-reset to the remote head before it is read, so local state
never leaks between updates.

Example usage:
    >>> from rollwright.config import GitConfig
    >>> vcs = GitRepositoryTransport(GitConfig(repository="git@example.com:ops/gitops.git"))
    >>> revision = await vcs.fetch("main")
    >>> content = await vcs.read_file("clusters/staging/svc-a/kustomization.yaml")
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import git
from git import Actor, GitCommandError, InvalidGitRepositoryError, NoSuchPathError, PushInfo

from rollwright.config import GitConfig
from rollwright.errors import TransportError, ValidationError
from rollwright.logging import get_logger

_REJECTION_MARKERS = ("non-fast-forward", "fetch first", "[rejected]", "stale info")


class GitRepositoryTransport:
    """VcsTransport implementation over a local clone of the GitOps repository.

    Attributes:
        config: Git configuration
        workspace: Local checkout path
    """

    def __init__(self, config: GitConfig) -> None:
        self.config = config
        self.workspace = Path(config.workspace_path)
        self.logger = get_logger(__name__)
        self._repo: git.Repo | None = None

    def repository_id(self) -> str:
        return self.config.repository

    def _get_repo(self) -> git.Repo:
        """Open the working copy, cloning it if needed.

        Raises:
            TransportError: If the repository cannot be cloned or opened
        """
        if self._repo is not None:
            return self._repo

        try:
            if (self.workspace / ".git").exists():
                self._repo = git.Repo(self.workspace)
            else:
                self.workspace.parent.mkdir(parents=True, exist_ok=True)
                self._repo = git.Repo.clone_from(
                    self.config.repository,
                    self.workspace,
                    branch=self.config.branch,
                )
                self.logger.info(
                    "manifest_repo_cloned",
                    repository=self.config.repository,
                    workspace=str(self.workspace),
                )
        except (GitCommandError, InvalidGitRepositoryError, NoSuchPathError) as e:
            self.logger.error(
                "manifest_repo_open_failed",
                repository=self.config.repository,
                workspace=str(self.workspace),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TransportError(
                f"Cannot open manifest repository {self.config.repository}: {e}",
                operation="open",
            ) from e

        return self._repo

    def _fetch_blocking(self, branch: str) -> str:
        repo = self._get_repo()
        remote_ref = f"{self.config.remote}/{branch}"
        repo.remote(self.config.remote).fetch()
        repo.git.checkout("-B", branch, remote_ref)
        repo.git.reset("--hard", remote_ref)
        return repo.head.commit.hexsha

    async def fetch(self, branch: str) -> str:
        """Hard-reset the working copy to the remote head of ``branch``.

        Returns:
            The head commit SHA after the reset
        """
        try:
            revision = await asyncio.to_thread(self._fetch_blocking, branch)
        except GitCommandError as e:
            self.logger.warning("manifest_fetch_failed", branch=branch, error=str(e))
            raise TransportError(f"git fetch of {branch} failed: {e}", operation="fetch") from e

        self.logger.debug("manifest_fetched", branch=branch, revision=revision[:8])
        return revision

    async def read_file(self, path: str) -> str:
        """Read a file from the working copy.

        Raises:
            ValidationError: If the file does not exist
        """
        full_path = self.workspace / path
        if not full_path.is_file():
            raise ValidationError(f"Manifest not found: {path}")
        return await asyncio.to_thread(full_path.read_text, encoding="utf-8")

    async def write_file(self, path: str, content: str) -> None:
        full_path = self.workspace / path
        await asyncio.to_thread(full_path.write_text, content, encoding="utf-8")

    def _commit_blocking(self, paths: list[str], message: str) -> str:
        repo = self._get_repo()
        repo.index.add(paths)
        actor = Actor(self.config.author_name, self.config.author_email)
        commit = repo.index.commit(message, author=actor, committer=actor)
        return commit.hexsha

    async def commit(self, paths: list[str], message: str) -> str:
        """Stage ``paths`` and commit them.

        Returns:
            SHA of the created commit
        """
        try:
            sha = await asyncio.to_thread(self._commit_blocking, paths, message)
        except GitCommandError as e:
            self.logger.error("manifest_commit_failed", paths=paths, error=str(e))
            raise TransportError(f"git commit failed: {e}", operation="commit") from e

        self.logger.info("manifest_commit_created", commit_sha=sha[:8], message=message)
        return sha

    def _push_blocking(self, branch: str) -> bool:
        repo = self._get_repo()
        try:
            infos = repo.remote(self.config.remote).push(refspec=f"{branch}:{branch}")
        except GitCommandError as e:
            if any(marker in str(e) for marker in _REJECTION_MARKERS):
                return False
            raise

        for info in infos:
            if info.flags & (PushInfo.REJECTED | PushInfo.REMOTE_REJECTED):
                return False
            if info.flags & PushInfo.ERROR:
                if any(marker in (info.summary or "") for marker in _REJECTION_MARKERS):
                    return False
                raise TransportError(
                    f"git push of {branch} failed: {info.summary.strip()}", operation="push"
                )
        return True

    async def push(self, branch: str) -> bool:
        """Push ``branch`` to the remote.

        Returns:
            True when the remote accepted the push, False when it was rejected
            because the remote moved ahead

        Raises:
            TransportError: For any other push failure
        """
        try:
            accepted = await asyncio.to_thread(self._push_blocking, branch)
        except GitCommandError as e:
            self.logger.error("manifest_push_failed", branch=branch, error=str(e))
            raise TransportError(f"git push of {branch} failed: {e}", operation="push") from e

        if not accepted:
            self.logger.warning("manifest_push_rejected", branch=branch)
        return accepted

    async def head_revision(self) -> str:
        repo = await asyncio.to_thread(self._get_repo)
        return repo.head.commit.hexsha

    def _is_ancestor_blocking(self, ancestor: str, descendant: str) -> bool:
        repo = self._get_repo()
        try:
            repo.git.cat_file("-e", f"{descendant}^{{commit}}")
        except GitCommandError:
            # Commit pushed by another writer since our last fetch
            repo.remote(self.config.remote).fetch()
        return repo.is_ancestor(ancestor, descendant)

    async def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Check whether ``descendant`` contains ``ancestor`` in its history.

        Unknown commits are fetched from the remote first. A revision that
        still cannot be resolved is reported as not a descendant.
        """
        try:
            return await asyncio.to_thread(self._is_ancestor_blocking, ancestor, descendant)
        except GitCommandError as e:
            self.logger.debug(
                "manifest_ancestry_unknown",
                ancestor=ancestor[:8],
                descendant=descendant[:8],
                error=str(e),
            )
            return False
