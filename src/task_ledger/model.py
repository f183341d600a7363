"""Data model for the task ledger document.

The whole ledger lives in one document: project metadata, rollup stats, the
task list and the history log.  Everything here is a plain dataclass that
round-trips through :meth:`to_dict` / :meth:`from_dict` for JSON or YAML
persistence.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from .constants import (
    HISTORY_ACTION_DELETE,
    HISTORY_ACTION_INGEST,
    HISTORY_ACTION_UPDATE,
    LEGACY_SOURCE_FIELDS,
    STORE_VERSION,
    TASK_ID_PREFIX,
    TASK_ID_WIDTH,
    TASK_STATUS_BLOCKED,
    TASK_STATUS_COMPLETED,
    TASK_STATUS_IN_PROGRESS,
    TASK_STATUS_PENDING,
)
from .errors import SchemaError
from .utils import _now_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Lifecycle status of a task."""

    PENDING = TASK_STATUS_PENDING
    IN_PROGRESS = TASK_STATUS_IN_PROGRESS
    COMPLETED = TASK_STATUS_COMPLETED
    BLOCKED = TASK_STATUS_BLOCKED


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TestStrategy(str, Enum):
    """How the task is expected to be verified."""

    __test__ = False  # keep pytest from collecting this enum

    TDD = "TDD"
    UNIT = "Unit"
    INTEGRATION = "Integration"
    DIRECT = "Direct"


class HistoryAction(str, Enum):
    INGEST = HISTORY_ACTION_INGEST
    UPDATE = HISTORY_ACTION_UPDATE
    DELETE = HISTORY_ACTION_DELETE


# ---------------------------------------------------------------------------
# Task IDs
# ---------------------------------------------------------------------------

_TASK_ID_RE = re.compile(r"^" + re.escape(TASK_ID_PREFIX) + r"(\d+)$")


def format_task_id(number: int) -> str:
    """``7`` -> ``TASK-007``."""
    return f"{TASK_ID_PREFIX}{number:0{TASK_ID_WIDTH}d}"


def task_number(task_id: str) -> Optional[int]:
    """Return the sequence number encoded in *task_id*, or ``None``."""
    match = _TASK_ID_RE.match(str(task_id))
    return int(match.group(1)) if match else None


# ---------------------------------------------------------------------------
# Shape checks
# ---------------------------------------------------------------------------

def _mapping(value: Any, field_name: str, owner: str) -> dict[str, Any]:
    """Return *value* as a dict (``None`` -> ``{}``), raising :class:`SchemaError` otherwise."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SchemaError(
            f"{owner}: '{field_name}' must be an object, got {type(value).__name__}",
            field=field_name,
        )
    return value


def _str_list(value: Any, field_name: str, owner: str) -> list[str]:
    """Return *value* as a list of strings (``None`` -> ``[]``)."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise SchemaError(
            f"{owner}: '{field_name}' must be an array, got {type(value).__name__}",
            field=field_name,
        )
    return [str(item) for item in value]


def _str_map(value: Any, field_name: str, owner: str) -> dict[str, str]:
    return {str(k): str(v) for k, v in _mapping(value, field_name, owner).items()}


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

@dataclass
class TaskFiles:
    create: list[str] = field(default_factory=list)
    modify: list[str] = field(default_factory=list)
    delete: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any, owner: str = "task") -> "TaskFiles":
        data = _mapping(data, "files", owner)
        return cls(
            create=_str_list(data.get("create"), "files.create", owner),
            modify=_str_list(data.get("modify"), "files.modify", owner),
            delete=_str_list(data.get("delete"), "files.delete", owner),
        )


@dataclass
class TaskValidation:
    tests_pass: bool = False
    ac_verified: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any, owner: str = "task") -> "TaskValidation":
        data = _mapping(data, "validation", owner)
        tests_pass = data.get("tests_pass", False)
        if not isinstance(tests_pass, bool):
            raise SchemaError(
                f"{owner}: 'validation.tests_pass' must be a boolean, got {type(tests_pass).__name__}",
                field="validation.tests_pass",
            )
        return cls(
            tests_pass=tests_pass,
            ac_verified=_str_list(data.get("ac_verified"), "validation.ac_verified", owner),
        )


@dataclass
class Task:
    """A unit of implementation work tracked by the ledger."""

    id: str
    title: str = ""
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    risk: RiskLevel = RiskLevel.MEDIUM
    test_strategy: TestStrategy = TestStrategy.TDD
    test_strategy_rationale: str = ""
    estimated_hours: float = 1.0
    files: TaskFiles = field(default_factory=TaskFiles)

    # Provenance: label -> source reference (e.g. "adr" -> "adr/ADR-001.md")
    provenance: dict[str, str] = field(default_factory=dict)

    created_at: Optional[str] = field(default_factory=_now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    # Completion metadata
    commits: list[str] = field(default_factory=list)
    validation: TaskValidation = field(default_factory=TaskValidation)

    @property
    def number(self) -> Optional[int]:
        return task_number(self.id)

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for k, v in asdict(self).items():
            data[k] = v.value if isinstance(v, Enum) else v
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize a persisted task.

        Raises :class:`SchemaError` when the record has no ID or carries an
        unknown enum value; missing optional fields get their defaults.
        Legacy ``adr_source`` / ``spec_source`` fields are folded into
        ``provenance``.
        """
        if not isinstance(data, dict):
            raise SchemaError(f"Task record must be an object, got {type(data).__name__}")
        d = dict(data)
        task_id = d.pop("id", None)
        if not task_id:
            raise SchemaError("Task record is missing 'id'", field="id")
        task_id = str(task_id)

        def _enum(enum_cls: type[Enum], key: str, default: Enum) -> Any:
            raw = d.pop(key, None)
            if raw is None:
                return default
            try:
                return enum_cls(str(raw))
            except ValueError:
                allowed = ", ".join(e.value for e in enum_cls)
                raise SchemaError(
                    f"Task {task_id}: invalid {key} '{raw}'. Must be one of: {allowed}",
                    field=key,
                ) from None

        status = _enum(TaskStatus, "status", TaskStatus.PENDING)
        risk = _enum(RiskLevel, "risk", RiskLevel.MEDIUM)
        strategy = _enum(TestStrategy, "test_strategy", TestStrategy.TDD)

        owner = f"Task {task_id}"
        provenance = _str_map(d.pop("provenance", None), "provenance", owner)
        for legacy_key, label in LEGACY_SOURCE_FIELDS.items():
            legacy = d.pop(legacy_key, None)
            if legacy and label not in provenance:
                provenance[label] = str(legacy)

        raw_hours = d.pop("estimated_hours", 1.0)
        if raw_hours is None:
            raw_hours = 0.0
        if isinstance(raw_hours, bool) or not isinstance(raw_hours, (int, float, str)):
            raise SchemaError(f"Task {task_id}: 'estimated_hours' must be a number",
                              field="estimated_hours")
        try:
            hours = float(raw_hours)
        except ValueError:
            raise SchemaError(f"Task {task_id}: 'estimated_hours' must be a number",
                              field="estimated_hours") from None

        return cls(
            id=task_id,
            title=str(d.pop("title", "") or ""),
            description=str(d.pop("description", "") or ""),
            acceptance_criteria=_str_list(d.pop("acceptance_criteria", None), "acceptance_criteria", owner),
            dependencies=_str_list(d.pop("dependencies", None), "dependencies", owner),
            status=status,
            risk=risk,
            test_strategy=strategy,
            test_strategy_rationale=str(d.pop("test_strategy_rationale", "") or ""),
            estimated_hours=hours,
            files=TaskFiles.from_dict(d.pop("files", None), owner),
            provenance=provenance,
            created_at=d.pop("created_at", None),
            started_at=d.pop("started_at", None),
            completed_at=d.pop("completed_at", None),
            commits=_str_list(d.pop("commits", None), "commits", owner),
            validation=TaskValidation.from_dict(d.pop("validation", None), owner),
        )


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

@dataclass
class HistoryEntry:
    """One immutable transaction record.

    Only the ID list matching ``action`` is populated: ``tasks_added`` for
    ingest, ``tasks_updated`` for update, ``tasks_removed`` for delete.
    """

    id: str
    action: HistoryAction
    timestamp: str
    source: str
    description: Optional[str] = None
    tasks_added: list[str] = field(default_factory=list)
    tasks_removed: list[str] = field(default_factory=list)
    tasks_updated: list[str] = field(default_factory=list)
    files: dict[str, str] = field(default_factory=dict)
    reverts: Optional[str] = None

    @property
    def date(self) -> str:
        return self.id[:10]

    @property
    def sequence(self) -> int:
        try:
            return int(self.id[11:])
        except ValueError:
            return 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "action": self.action.value,
            "timestamp": self.timestamp,
            "source": self.source,
        }
        if self.description is not None:
            data["description"] = self.description
        if self.action == HistoryAction.INGEST:
            data["tasks_added"] = list(self.tasks_added)
        elif self.action == HistoryAction.UPDATE:
            data["tasks_updated"] = list(self.tasks_updated)
        else:
            data["tasks_removed"] = list(self.tasks_removed)
        if self.files:
            data["files"] = dict(self.files)
        if self.reverts:
            data["reverts"] = self.reverts
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryEntry":
        if not isinstance(data, dict) or not data.get("id"):
            raise SchemaError("History entry is missing 'id'", field="history")
        try:
            action = HistoryAction(str(data.get("action")))
        except ValueError:
            raise SchemaError(
                f"History entry {data['id']}: invalid action '{data.get('action')}'",
                field="action",
            ) from None
        owner = f"History entry {data['id']}"
        return cls(
            id=str(data["id"]),
            action=action,
            timestamp=str(data.get("timestamp") or ""),
            source=str(data.get("source") or ""),
            description=data.get("description"),
            tasks_added=_str_list(data.get("tasks_added"), "tasks_added", owner),
            tasks_removed=_str_list(data.get("tasks_removed"), "tasks_removed", owner),
            tasks_updated=_str_list(data.get("tasks_updated"), "tasks_updated", owner),
            files=_str_map(data.get("files"), "files", owner),
            reverts=data.get("reverts"),
        )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

@dataclass
class ProjectInfo:
    name: str = ""
    description: str = ""


@dataclass
class LedgerStats:
    total_tasks: int = 0
    completed: int = 0
    in_progress: int = 0
    pending: int = 0
    blocked: int = 0

    @classmethod
    def from_tasks(cls, tasks: list[Task]) -> "LedgerStats":
        counts = {status: 0 for status in TaskStatus}
        for task in tasks:
            counts[task.status] += 1
        return cls(
            total_tasks=len(tasks),
            completed=counts[TaskStatus.COMPLETED],
            in_progress=counts[TaskStatus.IN_PROGRESS],
            pending=counts[TaskStatus.PENDING],
            blocked=counts[TaskStatus.BLOCKED],
        )

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class LedgerStore:
    """The persisted aggregate: one per ledger file."""

    version: str = STORE_VERSION
    project: ProjectInfo = field(default_factory=ProjectInfo)
    stats: LedgerStats = field(default_factory=LedgerStats)
    tasks: list[Task] = field(default_factory=list)
    history: list[HistoryEntry] = field(default_factory=list)

    def get_task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def task_map(self) -> dict[str, Task]:
        return {t.id: t for t in self.tasks}

    def max_task_number(self) -> int:
        numbers = [n for n in (task_number(t.id) for t in self.tasks) if n is not None]
        return max(numbers, default=0)

    def recalculate_stats(self) -> LedgerStats:
        self.stats = LedgerStats.from_tasks(self.tasks)
        return self.stats

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "project": asdict(self.project),
            "stats": self.stats.to_dict(),
            "tasks": [t.to_dict() for t in self.tasks],
            "history": [h.to_dict() for h in self.history],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "LedgerStore":
        """Parse a raw document, raising :class:`SchemaError` when malformed.

        ``stats`` are read but not trusted; the caller recomputes them.
        """
        if not isinstance(data, dict):
            raise SchemaError(f"Ledger document must be an object, got {type(data).__name__}")
        tasks_raw = data.get("tasks", [])
        if not isinstance(tasks_raw, list):
            raise SchemaError("'tasks' must be an array", field="tasks")
        history_raw = data.get("history", [])
        if history_raw is None:
            history_raw = []
        if not isinstance(history_raw, list):
            raise SchemaError("'history' must be an array", field="history")
        project_raw = data.get("project") or {}
        if not isinstance(project_raw, dict):
            raise SchemaError("'project' must be an object", field="project")
        stats_raw = data.get("stats") or {}
        if not isinstance(stats_raw, dict):
            raise SchemaError("'stats' must be an object", field="stats")

        tasks = [Task.from_dict(t) for t in tasks_raw]
        seen: set[str] = set()
        for task in tasks:
            if task.id in seen:
                raise SchemaError(f"Duplicate task ID {task.id}", field="id")
            seen.add(task.id)

        try:
            stats = LedgerStats(**{k: int(v) for k, v in stats_raw.items()
                                   if k in LedgerStats.__dataclass_fields__})
        except (TypeError, ValueError):
            stats = LedgerStats()

        return cls(
            version=str(data.get("version", STORE_VERSION)),
            project=ProjectInfo(
                name=str(project_raw.get("name", "") or ""),
                description=str(project_raw.get("description", "") or ""),
            ),
            stats=stats,
            tasks=tasks,
            history=[HistoryEntry.from_dict(h) for h in history_raw],
        )
