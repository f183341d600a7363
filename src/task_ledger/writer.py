"""Atomic mutations of the ledger document.

Every write loads the current document fresh, applies an in-memory change,
recomputes ``stats`` from the task list and replaces the file with
write-tmp-then-rename.  A failure at any point leaves the real file
untouched.

Single-writer assumption: there is no file locking.  The atomic rename only
guarantees that a concurrent *reader* never observes a half-written file;
two processes mutating the same ledger at once may lose updates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from loguru import logger

from .constants import UPDATABLE_TASK_FIELDS
from .errors import LedgerError, NotFoundError, SchemaError
from .io_utils import _atomic_write
from .model import LedgerStats, LedgerStore, ProjectInfo, Task, TaskStatus
from .reader import LedgerReader
from .utils import _now_iso


@dataclass
class WriteResult:
    """Applied effects of one committed write."""

    tasks_added: list[str] = field(default_factory=list)
    tasks_updated: list[str] = field(default_factory=list)
    tasks_removed: list[str] = field(default_factory=list)
    stats: LedgerStats = field(default_factory=LedgerStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks_added": list(self.tasks_added),
            "tasks_updated": list(self.tasks_updated),
            "tasks_removed": list(self.tasks_removed),
            "stats": self.stats.to_dict(),
        }


def _merge_update(task: Task, changes: Mapping[str, Any]) -> None:
    """Apply a partial update to *task* in place.

    ``files`` takes ``created`` / ``modified`` lists that are appended to the
    task's ``create`` / ``modify`` lists; ``validation`` is merged key by key.
    Completion timestamps follow the status: ``completed_at`` is stamped when
    a task becomes completed and cleared when it leaves that state.
    """
    unknown = sorted(set(changes) - UPDATABLE_TASK_FIELDS)
    if unknown:
        raise SchemaError(
            f"Cannot update field(s) {', '.join(unknown)} on {task.id}. "
            f"Updatable: {', '.join(sorted(UPDATABLE_TASK_FIELDS))}",
            field=unknown[0],
        )

    if "status" in changes:
        raw = changes["status"]
        try:
            task.status = raw if isinstance(raw, TaskStatus) else TaskStatus(str(raw))
        except ValueError:
            allowed = ", ".join(s.value for s in TaskStatus)
            raise SchemaError(
                f"Invalid status '{raw}'. Must be one of: {allowed}", field="status"
            ) from None

    if "started_at" in changes:
        task.started_at = changes["started_at"]
    if "completed_at" in changes:
        task.completed_at = changes["completed_at"]
    if "commits" in changes:
        task.commits = [str(c) for c in changes["commits"] or []]

    files = changes.get("files")
    if files:
        if not isinstance(files, Mapping):
            raise SchemaError("'files' must be an object", field="files")
        for src_key, dest in (("created", task.files.create), ("modified", task.files.modify)):
            for path in files.get(src_key) or []:
                if path not in dest:
                    dest.append(str(path))

    validation = changes.get("validation")
    if validation:
        if not isinstance(validation, Mapping):
            raise SchemaError("'validation' must be an object", field="validation")
        if "tests_pass" in validation:
            task.validation.tests_pass = bool(validation["tests_pass"])
        if "ac_verified" in validation:
            task.validation.ac_verified = [str(x) for x in validation["ac_verified"] or []]

    if task.status == TaskStatus.COMPLETED:
        task.completed_at = task.completed_at or _now_iso()
    else:
        task.completed_at = None


class LedgerWriter:
    """Apply validated changes to the ledger file.

    Parameters
    ----------
    reader:
        Shared Store handle; the writer always force-reloads through it so
        mutations start from what is on disk.
    """

    def __init__(self, reader: LedgerReader) -> None:
        self.reader = reader

    @property
    def path(self) -> Path:
        return self.reader.path

    def _save(self, store: LedgerStore) -> None:
        _atomic_write(self.path, store.to_dict())

    def init_store(self, name: str, description: str = "", overwrite: bool = False) -> LedgerStore:
        """Create an empty ledger document."""
        if self.path.exists() and not overwrite:
            raise LedgerError(f"Ledger already exists at {self.path}")
        store = LedgerStore(project=ProjectInfo(name=name, description=description))
        store.recalculate_stats()
        self._save(store)
        logger.info("Initialized ledger {} at {}", name, self.path)
        return store

    def apply(self, mutator: Callable[[LedgerStore], None]) -> LedgerStore:
        """Load fresh, run *mutator* on the in-memory store, recompute stats, write.

        Exceptions raised by *mutator* abort the write.
        """
        store = self.reader.load(force_reload=True)
        try:
            mutator(store)
            store.recalculate_stats()
            self._save(store)
        finally:
            # The cached object may hold a half-applied change.
            self.reader.invalidate()
        return store

    def append_tasks(self, tasks: Iterable[Task]) -> WriteResult:
        """Append already validated tasks (IDs assigned) to the ledger."""
        new_tasks = list(tasks)

        def _append(store: LedgerStore) -> None:
            existing = {t.id for t in store.tasks}
            duplicates = [t.id for t in new_tasks if t.id in existing]
            if duplicates:
                raise LedgerError(f"Task ID(s) already in ledger: {', '.join(duplicates)}")
            store.tasks.extend(new_tasks)

        store = self.apply(_append)
        added = [t.id for t in new_tasks]
        logger.info("Appended {} task(s) to {}: {}", len(added), self.path, added)
        return WriteResult(tasks_added=added, stats=store.stats)

    def update_task(self, task_id: str, changes: Mapping[str, Any]) -> WriteResult:
        """Merge *changes* into one task (status transitions, completion metadata)."""

        def _update(store: LedgerStore) -> None:
            task = store.get_task(task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found")
            _merge_update(task, changes)

        store = self.apply(_update)
        logger.info("Updated {} ({})", task_id, ", ".join(sorted(changes)))
        return WriteResult(tasks_updated=[task_id], stats=store.stats)

    def remove_tasks(self, task_ids: Iterable[str]) -> WriteResult:
        doomed = set(task_ids)
        removed: list[str] = []

        def _remove(store: LedgerStore) -> None:
            removed.extend(t.id for t in store.tasks if t.id in doomed)
            store.tasks = [t for t in store.tasks if t.id not in doomed]

        store = self.apply(_remove)
        logger.info("Removed {} task(s) from {}: {}", len(removed), self.path, removed)
        return WriteResult(tasks_removed=removed, stats=store.stats)
