"""Manifest updates in the GitOps repository.

The deployed tag lives in a kustomization ``images`` entry::

    images:
      - name: ghcr.io/acme/shop/svc-a  # app image
        newTag: amd64-abc1234

Only entries of the top-level ``images`` sequence are read or rewritten;
other generators that also list ``- name:`` items are left alone.

Edits are line-based so comments, ordering and formatting of the rest of
the file survive untouched. The updater serialises writers per repository,
rebases on non-fast-forward rejection, and records the tag it replaced so a
rollback can restore it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone

from rollwright.errors import ManifestConflictError, TransportError, ValidationError
from rollwright.logging import get_logger
from rollwright.models import ManifestUpdate, ReleaseTarget
from rollwright.pipeline.locks import RepositoryLocks
from rollwright.transports.base import VcsTransport, bounded_call

logger = get_logger(__name__)

DEFAULT_COMMIT_TEMPLATE = "deploy: update {service} to {tag}"

_NEW_TAG_LINE = re.compile(
    r"^(?P<prefix>\s*newTag:\s*)(?P<quote>['\"]?)(?P<value>[^'\"\s#]*)(?P<rest>.*)$"
)


@dataclass
class _ImageEntry:
    """Location of one ``images`` entry within the manifest lines."""

    name_index: int
    key_indent: int
    end_index: int
    tag_index: int | None


def _strip_comment(value: str) -> str:
    if " #" in value:
        value = value.split(" #", 1)[0]
    return value.strip()


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _indent_of(line: str) -> int:
    return len(line) - len(line.lstrip(" "))


def _name_matches(entry_name: str, image_name: str) -> bool:
    return entry_name == image_name or entry_name.endswith("/" + image_name)


def _images_block(lines: list[str]) -> tuple[int, int] | None:
    """Return the line range of the top-level ``images:`` sequence."""
    start = None
    for i, line in enumerate(lines):
        if _indent_of(line) == 0 and _strip_comment(line).strip() == "images:":
            start = i + 1
            break
    if start is None:
        return None

    end = start
    while end < len(lines):
        line = lines[end]
        body = line.strip()
        if body and not body.startswith("#") and _indent_of(line) == 0 and not body.startswith("-"):
            break
        end += 1
    return start, end


def _find_entries(lines: list[str], image_name: str) -> list[_ImageEntry]:
    entries: list[_ImageEntry] = []
    block = _images_block(lines)
    if block is None:
        return entries

    i, stop = block
    while i < stop:
        stripped = lines[i].strip()
        if not stripped.startswith("- name:"):
            i += 1
            continue

        name = _unquote(_strip_comment(stripped[len("- name:"):]))
        dash_col = _indent_of(lines[i])
        key_indent = dash_col + 2

        end = i
        tag_index = None
        j = i + 1
        while j < stop:
            body = lines[j].strip()
            if body and not body.startswith("#"):
                if _indent_of(lines[j]) < key_indent:
                    break
                end = j
                if body.startswith("newTag:") and _indent_of(lines[j]) == key_indent:
                    tag_index = j
            j += 1

        if _name_matches(name, image_name):
            entries.append(_ImageEntry(i, key_indent, end, tag_index))
        i = j
    return entries


def read_image_tag(content: str, image_name: str) -> str | None:
    """Return the ``newTag`` of the first entry matching ``image_name``.

    Returns None when the entry exists but carries no ``newTag``.

    Raises:
        ValidationError: If no entry matches ``image_name``
    """
    lines = content.split("\n")
    entries = _find_entries(lines, image_name)
    if not entries:
        raise ValidationError(f"No image entry matching {image_name!r} in manifest")
    entry = entries[0]
    if entry.tag_index is None:
        return None
    raw = lines[entry.tag_index].strip()[len("newTag:"):]
    return _unquote(_strip_comment(raw))


def set_image_tag(content: str, image_name: str, new_tag: str) -> str:
    """Rewrite ``newTag`` for every entry matching ``image_name``.

    Quoting style and trailing comments on the ``newTag`` line are kept. An
    entry without ``newTag`` gets one appended at the entry's key indent.

    Raises:
        ValidationError: If no entry matches ``image_name``
    """
    lines = content.split("\n")
    entries = _find_entries(lines, image_name)
    if not entries:
        raise ValidationError(f"No image entry matching {image_name!r} in manifest")

    # Walk backwards so inserted lines do not shift later entries.
    for entry in reversed(entries):
        if entry.tag_index is not None:
            match = _NEW_TAG_LINE.match(lines[entry.tag_index])
            if match is None:
                raise ValidationError(
                    f"Unparseable newTag line: {lines[entry.tag_index].strip()!r}"
                )
            prefix = match.group("prefix")
            if not prefix.endswith((" ", "\t")):
                prefix += " "
            lines[entry.tag_index] = (
                f"{prefix}{match.group('quote')}{new_tag}{match.group('rest')}"
            )
        else:
            lines.insert(entry.end_index + 1, f"{' ' * entry.key_indent}newTag: {new_tag}")

    return "\n".join(lines)


class ManifestUpdater:
    """Writes a new image tag into a target's manifest and pushes it.

    Attributes:
        vcs: Manifest repository transport
        locks: Keyed single-writer locks shared by every updater
        commit_template: Commit message template
        max_rebase_attempts: Commit+push attempts before giving up
        call_timeout: Bound on every transport call in seconds
    """

    def __init__(
        self,
        vcs: VcsTransport,
        locks: RepositoryLocks,
        commit_template: str = DEFAULT_COMMIT_TEMPLATE,
        max_rebase_attempts: int = 3,
        call_timeout: float = 30.0,
    ) -> None:
        self.vcs = vcs
        self.locks = locks
        self.commit_template = commit_template
        self.max_rebase_attempts = max_rebase_attempts
        self.call_timeout = call_timeout

    def commit_message(self, target: ReleaseTarget, new_tag: str, previous: str | None) -> str:
        return self.commit_template.format(
            service=target.service,
            environment=target.environment,
            tag=new_tag,
            previous=previous or "none",
            timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        )

    async def _push(self, target: ReleaseTarget, commit_id: str) -> bool:
        """Push the manifest commit, confirming a push that overran its deadline.

        An overrunning push has finished by the time its timeout is raised.
        The remote is then fetched: if it holds ``commit_id`` the push landed
        and counts as accepted, otherwise the timeout propagates.
        """
        branch = target.manifest.branch
        try:
            return await bounded_call(
                self.vcs.push(branch), self.call_timeout, "push", settle=True
            )
        except TransportError as e:
            if not e.details.get("settled"):
                raise
            remote_head = await bounded_call(
                self.vcs.fetch(branch), self.call_timeout, "fetch", settle=True
            )
            if remote_head != commit_id:
                logger.error(
                    "manifest_push_timed_out",
                    target=target.key,
                    commit_sha=commit_id[:8],
                    remote_head=remote_head[:8],
                )
                raise
            logger.warning(
                "manifest_push_confirmed_late",
                target=target.key,
                commit_sha=commit_id[:8],
                timeout_seconds=self.call_timeout,
            )
            return True

    async def update(self, target: ReleaseTarget, new_tag: str) -> ManifestUpdate:
        """Point the target's manifest at ``new_tag``.

        Returns:
            ManifestUpdate recording the replaced tag. When the manifest
            already holds ``new_tag`` no commit is made and ``changed`` is
            False.

        Raises:
            ValidationError: If the manifest has no matching image entry
            ManifestConflictError: If every push attempt was rejected
            TransportError: On repository failures
        """
        if not new_tag:
            raise ValidationError("new_tag must not be empty")

        locator = target.manifest
        async with self.locks.hold(self.vcs.repository_id()):
            for attempt in range(1, self.max_rebase_attempts + 1):
                head = await bounded_call(
                    self.vcs.fetch(locator.branch), self.call_timeout, "fetch", settle=True
                )
                content = await bounded_call(
                    self.vcs.read_file(locator.path), self.call_timeout, "read_file", settle=True
                )
                previous = read_image_tag(content, locator.image_name)

                if previous == new_tag:
                    logger.info(
                        "manifest_already_current",
                        target=target.key,
                        tag=new_tag,
                        revision=head[:8],
                    )
                    return ManifestUpdate(
                        target_key=target.key,
                        previous_tag=previous,
                        new_tag=new_tag,
                        commit_id=None,
                        revision=head,
                        changed=False,
                        rebase_attempts=attempt - 1,
                    )

                updated = set_image_tag(content, locator.image_name, new_tag)
                await bounded_call(
                    self.vcs.write_file(locator.path, updated),
                    self.call_timeout,
                    "write_file",
                    settle=True,
                )
                commit_id = await bounded_call(
                    self.vcs.commit([locator.path], self.commit_message(target, new_tag, previous)),
                    self.call_timeout,
                    "commit",
                    settle=True,
                )
                accepted = await self._push(target, commit_id)
                if accepted:
                    logger.info(
                        "manifest_updated",
                        target=target.key,
                        previous_tag=previous,
                        new_tag=new_tag,
                        commit_sha=commit_id[:8],
                        rebase_attempts=attempt - 1,
                    )
                    return ManifestUpdate(
                        target_key=target.key,
                        previous_tag=previous,
                        new_tag=new_tag,
                        commit_id=commit_id,
                        revision=commit_id,
                        changed=True,
                        rebase_attempts=attempt - 1,
                    )

                logger.warning(
                    "manifest_push_conflict",
                    target=target.key,
                    attempt=attempt,
                    max_attempts=self.max_rebase_attempts,
                )

        logger.error(
            "manifest_conflict_exhausted", target=target.key, attempts=self.max_rebase_attempts
        )
        raise ManifestConflictError(target.key, self.max_rebase_attempts)
