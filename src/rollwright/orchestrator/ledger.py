"""Release ledger.

Keeps the ordered manifest update history per target so an operator-driven
rollback can be planned from recorded releases instead of a hand-typed tag.
Every entry records whether it came from a deploy or a rollback and whether
the run that made it ended healthy. Optionally persisted as one JSON file
per target.
"""

from __future__ import annotations

import json
from pathlib import Path

import structlog

from rollwright.models import LedgerEntry, LedgerOrigin, ManifestUpdate

logger = structlog.get_logger(__name__)


class ReleaseLedger:
    """Ordered history of applied manifest updates.

    Attributes:
        directory: Persistence directory (None keeps the ledger in memory)
    """

    def __init__(self, directory: Path | None = None) -> None:
        self.directory = directory
        self._entries: dict[str, list[LedgerEntry]] = {}
        self.logger = logger.bind(component="ReleaseLedger")

    def _path_for(self, target_key: str) -> Path | None:
        if self.directory is None:
            return None
        return self.directory / f"{target_key.replace('/', '__')}.json"

    def _load(self, target_key: str) -> list[LedgerEntry]:
        if target_key in self._entries:
            return self._entries[target_key]

        entries: list[LedgerEntry] = []
        path = self._path_for(target_key)
        if path is not None and path.exists():
            raw = json.loads(path.read_text(encoding="utf-8"))
            entries = [LedgerEntry.model_validate(item) for item in raw]
        self._entries[target_key] = entries
        return entries

    def _save(self, target_key: str) -> None:
        path = self._path_for(target_key)
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = [e.model_dump(mode="json") for e in self._entries[target_key]]
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def record(
        self,
        update: ManifestUpdate,
        origin: LedgerOrigin = LedgerOrigin.DEPLOY,
        run_id: str | None = None,
    ) -> LedgerEntry | None:
        """Append an applied update.

        A break in the chain (the update's previous tag differs from the last
        recorded new tag) means the manifest was changed outside this engine;
        it is logged and the update is still recorded.

        Returns:
            The new entry, or None for an update that changed nothing
        """
        if not update.changed:
            return None

        entries = self._load(update.target_key)
        if entries and entries[-1].update.new_tag != update.previous_tag:
            self.logger.warning(
                "ledger_chain_gap",
                target=update.target_key,
                recorded_tag=entries[-1].update.new_tag,
                manifest_previous_tag=update.previous_tag,
            )
        entry = LedgerEntry(update=update, origin=origin, run_id=run_id)
        entries.append(entry)
        self._save(update.target_key)
        self.logger.debug(
            "ledger_recorded",
            target=update.target_key,
            new_tag=update.new_tag,
            origin=origin.value,
            entries=len(entries),
        )
        return entry

    def mark(self, target_key: str, run_id: str, healthy: bool) -> bool:
        """Record how the run that made an entry ended.

        Returns:
            True if an entry made by ``run_id`` was found
        """
        for entry in reversed(self._load(target_key)):
            if entry.run_id == run_id:
                entry.healthy = healthy
                self._save(target_key)
                return True
        return False

    def history(self, target_key: str) -> list[LedgerEntry]:
        return list(self._load(target_key))

    def latest(self, target_key: str) -> LedgerEntry | None:
        entries = self._load(target_key)
        return entries[-1] if entries else None

    def current_release(self, target_key: str) -> LedgerEntry | None:
        """Return the deploy entry that put the current tag in place.

        The current tag is the one the latest entry wrote. When that tag was
        only ever written by rollbacks, no deploy introduced it and there is
        nothing recorded to step back to.
        """
        entries = self._load(target_key)
        if not entries:
            return None
        current = entries[-1].update.new_tag
        for entry in reversed(entries):
            if entry.origin == LedgerOrigin.DEPLOY and entry.update.new_tag == current:
                return entry
        return None
