"""Read access to the ledger document and derived task views.

A :class:`LedgerReader` is the explicit Store handle shared by the
validator, writer and history.  It caches the parsed document keyed by the
file's modification signature; callers invoke :meth:`LedgerReader.reload`
after a mutation so later queries see fresh state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Hashable, Optional

from loguru import logger

from .errors import LedgerIOError, NotFoundError, StoreNotFoundError
from .io_utils import _load_document
from .model import LedgerStats, LedgerStore, Task, TaskStatus


@dataclass
class GroupStats:
    total: int = 0
    completed: int = 0


@dataclass
class TaskContext:
    """A task together with its resolved prerequisites and pending dependents."""

    task: Task
    dependencies: list[Task] = field(default_factory=list)
    blocked_tasks: list[Task] = field(default_factory=list)


class LedgerReader:
    """Load and query a ledger file.

    Parameters
    ----------
    path:
        Location of the ledger document (``.json``, ``.yaml`` or ``.yml``).
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._store: Optional[LedgerStore] = None
        self._signature: Optional[tuple[int, int]] = None

    # -- loading -------------------------------------------------------------

    def _stat_signature(self) -> tuple[int, int]:
        try:
            st = self.path.stat()
        except FileNotFoundError:
            raise StoreNotFoundError(str(self.path)) from None
        except OSError as exc:
            raise LedgerIOError(f"Cannot stat {self.path}: {exc}", path=str(self.path)) from exc
        return st.st_mtime_ns, st.st_size

    def load(self, force_reload: bool = False) -> LedgerStore:
        """Return the parsed store, re-reading the file when needed."""
        signature = self._stat_signature()
        if not force_reload and self._store is not None and signature == self._signature:
            logger.debug("Ledger cache hit for {}", self.path)
            return self._store

        store = LedgerStore.from_dict(_load_document(self.path))
        persisted = store.stats
        fresh = store.recalculate_stats()
        if persisted != fresh:
            logger.warning(
                "Ledger stats in {} were stale ({} != {}); recomputed from tasks",
                self.path,
                persisted.to_dict(),
                fresh.to_dict(),
            )
        self._store = store
        self._signature = signature
        return store

    def reload(self) -> LedgerStore:
        return self.load(force_reload=True)

    def invalidate(self) -> None:
        """Drop the cached store; the next :meth:`load` re-reads the file."""
        self._store = None
        self._signature = None

    def exists(self) -> bool:
        return self.path.exists()

    # -- lookups -------------------------------------------------------------

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.load().get_task(task_id)

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def get_stats(self) -> LedgerStats:
        return self.load().stats

    def max_task_number(self) -> int:
        return self.load().max_task_number()

    # -- derived views -------------------------------------------------------

    def get_ready_tasks(self) -> list[Task]:
        """Pending tasks whose dependencies are all completed, in ledger order."""
        tasks = self.load().tasks
        completed = {t.id for t in tasks if t.status == TaskStatus.COMPLETED}
        return [
            t
            for t in tasks
            if t.status == TaskStatus.PENDING and all(dep in completed for dep in t.dependencies)
        ]

    def get_blocked_tasks(self) -> list[Task]:
        """Tasks marked blocked, plus pending tasks still waiting on a dependency."""
        tasks = self.load().tasks
        completed = {t.id for t in tasks if t.status == TaskStatus.COMPLETED}
        blocked: list[Task] = []
        for t in tasks:
            if t.status == TaskStatus.BLOCKED:
                blocked.append(t)
            elif t.status == TaskStatus.PENDING and any(dep not in completed for dep in t.dependencies):
                blocked.append(t)
        return blocked

    def get_in_progress_tasks(self) -> list[Task]:
        return [t for t in self.load().tasks if t.status == TaskStatus.IN_PROGRESS]

    def get_stats_grouped_by(self, key_fn: Callable[[Task], Hashable]) -> dict[Hashable, GroupStats]:
        stats: dict[Hashable, GroupStats] = {}
        for task in self.load().tasks:
            bucket = stats.setdefault(key_fn(task), GroupStats())
            bucket.total += 1
            if task.status == TaskStatus.COMPLETED:
                bucket.completed += 1
        return stats

    def get_stats_by_provenance(self, label: str = "adr") -> dict[Hashable, GroupStats]:
        """Progress grouped by one provenance label (tasks without it group under ``""``)."""
        return self.get_stats_grouped_by(lambda t: t.provenance.get(label, ""))

    def get_task_with_context(self, task_id: str) -> TaskContext:
        store = self.load()
        task = store.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        by_id = store.task_map()
        deps = [by_id[d] for d in task.dependencies if d in by_id]
        dependents = [
            t for t in store.tasks if task_id in t.dependencies and t.status == TaskStatus.PENDING
        ]
        return TaskContext(task=task, dependencies=deps, blocked_tasks=dependents)
