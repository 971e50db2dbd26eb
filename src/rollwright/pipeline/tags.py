"""Image tag derivation.

Every pushed image carries exactly two tags: an immutable ``{arch}-{sha}``
tag bound to one source commit, and a floating ``{arch}-latest`` tag that
is repointed on every push. Tags are derived, never hand-written.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import git
from git import InvalidGitRepositoryError, NoSuchPathError

from rollwright.errors import ValidationError
from rollwright.logging import get_logger
from rollwright.models import ImageTag, TagKind, TagSet

logger = get_logger(__name__)

# Docker reference grammar for a tag component.
_TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_SERVICE_PATTERN = re.compile(r"^[a-z0-9]+(?:[._-][a-z0-9]+)*$")

SHA_ENV_VARS = ("RELEASE_GIT_SHA", "GIT_SHA")
SHORT_SHA_LENGTH = 7


def resolve_tags(service: str, arch: str, content_id: str) -> TagSet:
    """Derive the tag set for a build of ``service``.

    Args:
        service: Service name (must be a valid repository path component)
        arch: Target architecture (e.g. ``amd64``)
        content_id: Source commit hash or content digest

    Returns:
        TagSet with one immutable and one floating tag

    Raises:
        ValidationError: If any input is empty or not a valid tag component
    """
    for name, value in (("service", service), ("arch", arch), ("content_id", content_id)):
        if not value or not value.strip():
            raise ValidationError(f"{name} must not be empty")

    if not _SERVICE_PATTERN.match(service):
        raise ValidationError(f"Invalid service name for a registry repository: {service!r}")

    immutable = ImageTag(arch=arch, content_id=content_id, kind=TagKind.ARCH_SHA)
    floating = ImageTag(arch=arch, content_id=content_id, kind=TagKind.ARCH_LATEST)

    for tag in (immutable, floating):
        if not _TAG_PATTERN.match(tag.value):
            raise ValidationError(f"Invalid image tag: {tag.value!r}")

    if content_id == "latest":
        raise ValidationError("content_id 'latest' would collide with the floating tag")

    return TagSet(immutable=immutable, floating=floating)


def discover_commit_sha(repo_path: Path | None = None) -> str:
    """Find the short commit SHA to tag a build with.

    Lookup order: ``RELEASE_GIT_SHA``, ``GIT_SHA``, then the HEAD commit of
    the git repository at ``repo_path`` (current directory by default).

    Raises:
        ValidationError: If no SHA can be determined
    """
    for var in SHA_ENV_VARS:
        value = os.environ.get(var, "").strip()
        if value:
            logger.debug("commit_sha_from_env", variable=var, sha=value[:SHORT_SHA_LENGTH])
            return value[:SHORT_SHA_LENGTH]

    try:
        repo = git.Repo(repo_path or Path.cwd(), search_parent_directories=True)
        return repo.head.commit.hexsha[:SHORT_SHA_LENGTH]
    except (InvalidGitRepositoryError, NoSuchPathError, ValueError) as e:
        raise ValidationError(
            "Cannot determine commit SHA: set RELEASE_GIT_SHA or run inside a git repository"
        ) from e
