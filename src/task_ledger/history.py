"""Append-only transaction log and rollback.

Every ingest and update is recorded as a :class:`~task_ledger.model.HistoryEntry`
inside the ledger document.  Entries are never edited or removed: rolling
back an ingest removes its tasks and appends a *new* ``delete`` entry that
points back at the reverted transaction, so the log keeps the full audit
trail including work that was later undone.

Transaction IDs have the form ``YYYY-MM-DD-NNN`` (UTC date, sequence
restarting at ``001`` each day).  The next sequence is derived from the
highest one already in the log for that date, so IDs stay unique across
processes and restarts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from loguru import logger

from .constants import (
    DEFAULT_UPDATE_SOURCE,
    ROLLBACK_SOURCE,
    TRANSACTION_SEQ_WIDTH,
)
from .errors import ConflictError, NotFoundError, RollbackError
from .model import HistoryAction, HistoryEntry, LedgerStats, LedgerStore, Task
from .reader import LedgerReader
from .utils import _now, _parse_iso, _today
from .writer import LedgerWriter


@dataclass
class RollbackDetails:
    """What rolling back a transaction would touch (pure computation)."""

    transaction_id: str
    tasks: list[Task] = field(default_factory=list)
    # (dependent task, removed task it depends on)
    blocking_dependents: list[tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "tasks": [{"id": t.id, "title": t.title} for t in self.tasks],
            "blocking_dependents": [
                {"task_id": dependent, "depends_on": removed}
                for dependent, removed in self.blocking_dependents
            ],
        }


@dataclass
class RollbackResult:
    transaction_id: str
    tasks_removed: list[str] = field(default_factory=list)
    conflicts: list[tuple[str, str]] = field(default_factory=list)
    dry_run: bool = False
    applied: bool = False
    entry_id: Optional[str] = None
    stats: Optional[LedgerStats] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "tasks_removed": list(self.tasks_removed),
            "conflicts": [{"task_id": d, "depends_on": r} for d, r in self.conflicts],
            "dry_run": self.dry_run,
            "applied": self.applied,
            "entry_id": self.entry_id,
            "stats": self.stats.to_dict() if self.stats else None,
        }


@dataclass
class HistoryStats:
    total_entries: int = 0
    oldest_entry: Optional[datetime] = None
    newest_entry: Optional[datetime] = None
    action_breakdown: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_entries": self.total_entries,
            "oldest_entry": self.oldest_entry.isoformat() if self.oldest_entry else None,
            "newest_entry": self.newest_entry.isoformat() if self.newest_entry else None,
            "action_breakdown": dict(self.action_breakdown),
        }


def next_transaction_id(store: LedgerStore, when: Optional[datetime] = None) -> str:
    """Mint ``<date>-<seq>`` one past the highest sequence logged for that date."""
    date = _today(when)
    highest = max((e.sequence for e in store.history if e.date == date), default=0)
    return f"{date}-{highest + 1:0{TRANSACTION_SEQ_WIDTH}d}"


def build_entry(
    store: LedgerStore,
    action: HistoryAction,
    source: str,
    task_ids: Iterable[str],
    *,
    description: Optional[str] = None,
    files: Optional[Mapping[str, str]] = None,
    reverts: Optional[str] = None,
) -> HistoryEntry:
    """Create (but do not append) the next entry for *store*."""
    now = _now()
    ids = list(task_ids)
    return HistoryEntry(
        id=next_transaction_id(store, now),
        action=action,
        timestamp=now.isoformat(),
        source=source,
        description=description,
        tasks_added=ids if action == HistoryAction.INGEST else [],
        tasks_updated=ids if action == HistoryAction.UPDATE else [],
        tasks_removed=ids if action == HistoryAction.DELETE else [],
        files=dict(files or {}),
        reverts=reverts,
    )


def _sort_key(entry: HistoryEntry) -> tuple[float, str]:
    parsed = _parse_iso(entry.timestamp)
    return (parsed.timestamp() if parsed else 0.0, entry.id)


class LedgerHistory:
    """Record transactions and roll back ingests.

    Parameters
    ----------
    reader:
        Shared Store handle.
    writer:
        Writer used for log appends and rollbacks (defaults to one over *reader*).
    """

    def __init__(self, reader: LedgerReader, writer: Optional[LedgerWriter] = None) -> None:
        self.reader = reader
        self.writer = writer or LedgerWriter(reader)

    # -- recording -----------------------------------------------------------

    def _record(self, action: HistoryAction, source: str, task_ids: Iterable[str], **kwargs: Any) -> str:
        ids = list(task_ids)
        minted: list[HistoryEntry] = []

        def _append(store: LedgerStore) -> None:
            entry = build_entry(store, action, source, ids, **kwargs)
            store.history.append(entry)
            minted.append(entry)

        self.writer.apply(_append)
        entry = minted[0]
        logger.info("Recorded {} transaction {} ({} task(s), source={})", action.value, entry.id, len(ids), source)
        return entry.id

    def record_ingest(
        self,
        task_ids: Iterable[str],
        source: str,
        provenance: Optional[Mapping[str, str]] = None,
    ) -> str:
        """Append an ``ingest`` entry and return its transaction ID."""
        return self._record(HistoryAction.INGEST, source, task_ids, files=provenance)

    def record_update(
        self,
        task_ids: Iterable[str],
        description: str,
        source: str = DEFAULT_UPDATE_SOURCE,
    ) -> str:
        return self._record(HistoryAction.UPDATE, source, task_ids, description=description)

    # -- queries -------------------------------------------------------------

    def get_history(self, limit: Optional[int] = None) -> list[HistoryEntry]:
        """Entries newest first (timestamp, then transaction ID)."""
        entries = sorted(self.reader.load().history, key=_sort_key, reverse=True)
        if limit is not None:
            return entries[: max(limit, 0)]
        return entries

    def get_entry(self, transaction_id: str) -> Optional[HistoryEntry]:
        for entry in self.reader.load().history:
            if entry.id == transaction_id:
                return entry
        return None

    def get_stats(self) -> HistoryStats:
        history = self.reader.load().history
        if not history:
            return HistoryStats()
        stamps = [ts for ts in (_parse_iso(e.timestamp) for e in history) if ts is not None]
        breakdown: dict[str, int] = {}
        for entry in history:
            breakdown[entry.action.value] = breakdown.get(entry.action.value, 0) + 1
        return HistoryStats(
            total_entries=len(history),
            oldest_entry=min(stamps) if stamps else None,
            newest_entry=max(stamps) if stamps else None,
            action_breakdown=breakdown,
        )

    def search(self, query: str) -> list[HistoryEntry]:
        """Entries whose ``source`` contains *query* (case-sensitive), newest first."""
        return [e for e in self.get_history() if query in e.source]

    # -- rollback ------------------------------------------------------------

    @staticmethod
    def _details_for(store: LedgerStore, transaction_id: str) -> tuple[HistoryEntry, RollbackDetails]:
        entry = next((e for e in store.history if e.id == transaction_id), None)
        if entry is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        if entry.action != HistoryAction.INGEST:
            raise RollbackError(
                f"Transaction {transaction_id} is an {entry.action.value} entry; only ingests can be rolled back"
            )
        reverted_by = next((e.id for e in store.history if e.reverts == transaction_id), None)
        if reverted_by:
            raise RollbackError(f"Transaction {transaction_id} was already rolled back by {reverted_by}")

        added = set(entry.tasks_added)
        tasks = [t for t in store.tasks if t.id in added]
        blocking = [
            (t.id, dep)
            for t in store.tasks
            if t.id not in added
            for dep in t.dependencies
            if dep in added
        ]
        return entry, RollbackDetails(transaction_id=transaction_id, tasks=tasks, blocking_dependents=blocking)

    def get_rollback_details(self, transaction_id: str) -> RollbackDetails:
        """Tasks the transaction added and every surviving task that depends on them."""
        _, details = self._details_for(self.reader.load(), transaction_id)
        return details

    def rollback(self, transaction_id: str, *, force: bool = False, dry_run: bool = False) -> RollbackResult:
        """Remove the tasks added by an ingest transaction.

        Raises :class:`NotFoundError` for unknown transactions and
        :class:`ConflictError` (listing every pair) when other tasks depend
        on the removed ones and *force* is false.  With *dry_run* nothing is
        written.  A forced rollback also strips the now-dangling references
        from the surviving dependents.
        """
        _, details = self._details_for(self.reader.load(force_reload=True), transaction_id)
        if details.blocking_dependents and not force:
            raise ConflictError(transaction_id, details.blocking_dependents)

        planned = [t.id for t in details.tasks]
        if dry_run:
            return RollbackResult(
                transaction_id=transaction_id,
                tasks_removed=planned,
                conflicts=list(details.blocking_dependents),
                dry_run=True,
            )

        minted: list[HistoryEntry] = []

        def _rollback(store: LedgerStore) -> None:
            entry, fresh = self._details_for(store, transaction_id)
            doomed = set(entry.tasks_added)
            store.tasks = [t for t in store.tasks if t.id not in doomed]
            description = f"Rolled back transaction {transaction_id}"
            if fresh.blocking_dependents:
                for task in store.tasks:
                    task.dependencies = [d for d in task.dependencies if d not in doomed]
                dependents = sorted({d for d, _ in fresh.blocking_dependents})
                description += f" (forced; dropped references from {', '.join(dependents)})"
            rollback_entry = build_entry(
                store,
                HistoryAction.DELETE,
                ROLLBACK_SOURCE,
                entry.tasks_added,
                description=description,
                reverts=transaction_id,
            )
            store.history.append(rollback_entry)
            minted.append(rollback_entry)

        store = self.writer.apply(_rollback)
        logger.info(
            "Rolled back {} as {}: removed {}",
            transaction_id,
            minted[0].id,
            planned,
        )
        return RollbackResult(
            transaction_id=transaction_id,
            tasks_removed=planned,
            conflicts=list(details.blocking_dependents),
            applied=True,
            entry_id=minted[0].id,
            stats=store.stats,
        )
