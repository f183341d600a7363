"""Caller-facing ledger workflows.

:class:`LedgerEngine` wires the reader, validator, writer and history
around one shared Store handle and exposes the operations a driver needs:
ingest a candidate batch, start and complete tasks, roll back an ingest.
Every workflow commits its task change and its history entry in a single
atomic write.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

from loguru import logger

from .config import get_completed_dependency_policy, get_store_path, load_ledger_config
from .constants import (
    DEFAULT_COMPLETED_DEPENDENCY_POLICY,
    DEFAULT_INGEST_SOURCE,
    DEFAULT_UPDATE_SOURCE,
)
from .errors import ConflictError, LedgerError, NotFoundError, ValidationFailed
from .history import LedgerHistory, RollbackDetails, RollbackResult, build_entry
from .model import HistoryAction, HistoryEntry, LedgerStats, LedgerStore, Task, TaskStatus
from .reader import LedgerReader
from .utils import _now_iso
from .validator import TaskValidator
from .writer import LedgerWriter, _merge_update


@dataclass
class IngestPreview:
    """What an ingest would commit, shown to the confirmation callback."""

    source: str
    tasks: list[Task] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    # Status of every dependency the new tasks reference (None = in this batch).
    dependency_status: dict[str, Optional[TaskStatus]] = field(default_factory=dict)


@dataclass
class IngestResult:
    applied: bool
    transaction_id: Optional[str] = None
    task_ids: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stats: Optional[LedgerStats] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": self.applied,
            "transaction_id": self.transaction_id,
            "task_ids": list(self.task_ids),
            "warnings": list(self.warnings),
            "stats": self.stats.to_dict() if self.stats else None,
        }


IngestConfirm = Callable[[IngestPreview], bool]
RollbackConfirm = Callable[[RollbackDetails], bool]


class LedgerEngine:
    """High-level operations over one ledger file.

    Parameters
    ----------
    path:
        Ledger document location.
    completed_dependency_policy:
        Passed to :class:`TaskValidator` (``"error"`` or ``"warning"``).
    """

    def __init__(
        self,
        path: Path,
        completed_dependency_policy: str = DEFAULT_COMPLETED_DEPENDENCY_POLICY,
    ) -> None:
        self.reader = LedgerReader(path)
        self.validator = TaskValidator(self.reader, completed_dependency_policy)
        self.writer = LedgerWriter(self.reader)
        self.history = LedgerHistory(self.reader, self.writer)

    @classmethod
    def from_project_dir(cls, project_dir: Path, config: Optional[dict[str, Any]] = None) -> "LedgerEngine":
        """Build an engine from ``.vtm/config.yaml`` under *project_dir*.

        Raises:
            LedgerError: If the config file exists but cannot be parsed.
        """
        project_dir = Path(project_dir).resolve()
        if config is None:
            config, err = load_ledger_config(project_dir)
            if err:
                raise LedgerError(f"Invalid ledger config: {err}")
        return cls(
            get_store_path(config, project_dir),
            completed_dependency_policy=get_completed_dependency_policy(config),
        )

    @property
    def path(self) -> Path:
        return self.reader.path

    # -- ingest --------------------------------------------------------------

    def preview_ingest(self, batch: Any, source: str = DEFAULT_INGEST_SOURCE) -> IngestPreview:
        """Validate *batch* and describe what would be written.

        Raises:
            ValidationFailed: If the batch is rejected.
        """
        store = self.reader.load(force_reload=True)
        result = self.validator.validate(batch, store)
        if not result.valid:
            raise ValidationFailed(result)

        existing = store.task_map()
        dependency_status: dict[str, Optional[TaskStatus]] = {}
        for task in result.tasks:
            for dep in task.dependencies:
                known = existing.get(dep)
                dependency_status[dep] = known.status if known else None
        return IngestPreview(
            source=source,
            tasks=result.tasks,
            warnings=result.warnings,
            dependency_status=dependency_status,
        )

    def ingest(
        self,
        batch: Any,
        source: str = DEFAULT_INGEST_SOURCE,
        provenance: Optional[Mapping[str, str]] = None,
        confirm: Optional[IngestConfirm] = None,
    ) -> IngestResult:
        """Validate, confirm and commit a candidate batch.

        Args:
            batch: ``{"tasks": [...]}`` or a bare list of candidate tasks.
            source: Recorded as the history entry's source.
            provenance: Optional task ID to source reference map for the
                history entry; defaults to each task's ``adr`` provenance.
            confirm: Optional callback; returning False aborts without writing.

        Returns:
            An `IngestResult`; ``applied`` is False when the caller declined.

        Raises:
            ValidationFailed: If the batch is rejected.
        """
        preview = self.preview_ingest(batch, source)
        new_ids = [t.id for t in preview.tasks]
        if confirm is not None and not confirm(preview):
            logger.info("Ingest of {} task(s) declined", len(new_ids))
            return IngestResult(applied=False, task_ids=new_ids, warnings=preview.warnings)

        files = dict(provenance) if provenance else {
            t.id: t.provenance["adr"] for t in preview.tasks if "adr" in t.provenance
        }
        expected_max = min(t.number or 0 for t in preview.tasks) - 1
        minted: list[HistoryEntry] = []

        def _ingest(store: LedgerStore) -> None:
            if store.max_task_number() != expected_max:
                raise LedgerError("Ledger changed since the batch was validated; re-run the ingest")
            store.tasks.extend(preview.tasks)
            entry = build_entry(store, HistoryAction.INGEST, source, new_ids, files=files)
            store.history.append(entry)
            minted.append(entry)

        store = self.writer.apply(_ingest)
        self.reader.reload()
        logger.info("Ingested {} task(s) as {} ({})", len(new_ids), minted[0].id, ", ".join(new_ids))
        return IngestResult(
            applied=True,
            transaction_id=minted[0].id,
            task_ids=new_ids,
            warnings=preview.warnings,
            stats=store.stats,
        )

    # -- status updates ------------------------------------------------------

    def _update_with_history(
        self,
        task_id: str,
        changes: Mapping[str, Any],
        description: str,
        source: str,
    ) -> tuple[Task, str]:
        touched: list[Task] = []
        minted: list[HistoryEntry] = []

        def _update(store: LedgerStore) -> None:
            task = store.get_task(task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found")
            _merge_update(task, changes)
            entry = build_entry(store, HistoryAction.UPDATE, source, [task_id], description=description)
            store.history.append(entry)
            touched.append(task)
            minted.append(entry)

        self.writer.apply(_update)
        self.reader.reload()
        return touched[0], minted[0].id

    def start_task(self, task_id: str, source: str = DEFAULT_UPDATE_SOURCE) -> Task:
        """Mark a task in progress."""
        current = self.reader.require_task(task_id)
        if current.is_completed:
            raise LedgerError(f"Task {task_id} is already completed")
        task, txid = self._update_with_history(
            task_id,
            {"status": TaskStatus.IN_PROGRESS, "started_at": _now_iso()},
            f"Started {task_id}",
            source,
        )
        logger.info("Started {} ({})", task_id, txid)
        return task

    def complete_task(
        self,
        task_id: str,
        commits: Iterable[str] = (),
        files_created: Iterable[str] = (),
        files_modified: Iterable[str] = (),
        tests_pass: bool = False,
        source: str = DEFAULT_UPDATE_SOURCE,
    ) -> list[Task]:
        """Mark a task completed and return the tasks it made ready."""
        self.reader.require_task(task_id)
        ready_before = {t.id for t in self.reader.get_ready_tasks()}
        changes: dict[str, Any] = {
            "status": TaskStatus.COMPLETED,
            "completed_at": _now_iso(),
            "files": {"created": list(files_created), "modified": list(files_modified)},
            "validation": {"tests_pass": tests_pass},
        }
        commits = list(commits)
        if commits:
            changes["commits"] = commits
        _, txid = self._update_with_history(task_id, changes, f"Completed {task_id}", source)
        unblocked = [t for t in self.reader.get_ready_tasks() if t.id not in ready_before]
        logger.info("Completed {} ({}); {} task(s) now ready", task_id, txid, len(unblocked))
        return unblocked

    # -- rollback ------------------------------------------------------------

    def rollback(
        self,
        transaction_id: str,
        force: bool = False,
        dry_run: bool = False,
        confirm: Optional[RollbackConfirm] = None,
    ) -> RollbackResult:
        """Roll back an ingest, asking *confirm* before anything is written."""
        details = self.history.get_rollback_details(transaction_id)
        if details.blocking_dependents and not force:
            raise ConflictError(transaction_id, details.blocking_dependents)
        if dry_run:
            return self.history.rollback(transaction_id, force=force, dry_run=True)
        if confirm is not None and not confirm(details):
            logger.info("Rollback of {} declined", transaction_id)
            return RollbackResult(
                transaction_id=transaction_id,
                conflicts=list(details.blocking_dependents),
            )
        result = self.history.rollback(transaction_id, force=force)
        self.reader.reload()
        return result

    # -- views ---------------------------------------------------------------

    def next_tasks(self, limit: Optional[int] = None) -> list[Task]:
        ready = self.reader.get_ready_tasks()
        return ready if limit is None else ready[: max(limit, 0)]
