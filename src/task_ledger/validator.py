"""Validate candidate task batches before they enter the ledger.

The pipeline runs four phases in order, each collecting every problem of its
kind instead of stopping at the first one:

1. schema      -- :class:`CandidateTask` (pydantic) per batch item
2. IDs         -- sequential ``TASK-NNN`` assignment after the ledger's max
3. dependencies -- resolution, self/forward references, completed prerequisites
4. cycles      -- DFS over the merged ledger + batch graph

Phases 2-4 are skipped when phase 1 fails, since IDs and dependency indices
mean nothing for schema-invalid input.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Annotated, Any, Mapping, Optional, Sequence, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictInt, ValidationError, model_validator

from .constants import (
    COMPLETED_DEPENDENCY_ERROR,
    COMPLETED_DEPENDENCY_POLICIES,
    DEFAULT_COMPLETED_DEPENDENCY_POLICY,
    ENGINE_OWNED_FIELDS,
    LEGACY_SOURCE_FIELDS,
)
from .errors import CycleError, DependencyError, LedgerError, SchemaError
from .model import (
    LedgerStore,
    RiskLevel,
    Task,
    TaskFiles,
    TaskStatus,
    TestStrategy,
    format_task_id,
    task_number,
)
from .reader import LedgerReader
from .utils import _now_iso


# ---------------------------------------------------------------------------
# Candidate schema
# ---------------------------------------------------------------------------

NonEmptyStr = Annotated[str, Field(min_length=1)]


class CandidateFiles(BaseModel):
    model_config = ConfigDict(extra="forbid")

    create: list[str] = Field(default_factory=list)
    modify: list[str] = Field(default_factory=list)
    delete: list[str] = Field(default_factory=list)


class CandidateTask(BaseModel):
    """One task as produced by the upstream planner, before ID assignment.

    ``dependencies`` entries are either batch indices (ints) or task IDs
    (strings) of existing ledger tasks or tasks in the same batch.
    """

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    title: NonEmptyStr
    description: NonEmptyStr
    acceptance_criteria: list[NonEmptyStr] = Field(min_length=1)
    dependencies: list[Union[StrictInt, NonEmptyStr]] = Field(default_factory=list)
    risk: RiskLevel
    test_strategy: TestStrategy
    test_strategy_rationale: str = ""
    estimated_hours: StrictFloat = Field(gt=0)
    files: CandidateFiles = Field(default_factory=CandidateFiles)
    provenance: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _fold_legacy_sources(cls, data: Any) -> Any:
        """Move ``adr_source`` / ``spec_source`` into ``provenance`` (explicit labels win)."""
        if not isinstance(data, Mapping):
            return data
        legacy = {
            label: data[key].strip()
            for key, label in LEGACY_SOURCE_FIELDS.items()
            if isinstance(data.get(key), str) and data[key].strip()
        }
        if not legacy:
            return data
        folded = dict(data)
        provenance = folded.get("provenance")
        if provenance is None:
            provenance = {}
        if isinstance(provenance, Mapping):
            folded["provenance"] = {**legacy, **provenance}
        return folded


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class ValidationResult:
    valid: bool
    errors: list[LedgerError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    id_map: dict[int, str] = field(default_factory=dict)
    # Fully materialized tasks, ready for LedgerWriter.append_tasks (empty if invalid).
    tasks: list[Task] = field(default_factory=list)

    @property
    def schema_errors(self) -> list[SchemaError]:
        return [e for e in self.errors if isinstance(e, SchemaError)]

    @property
    def dependency_errors(self) -> list[DependencyError]:
        return [e for e in self.errors if isinstance(e, DependencyError)]

    @property
    def cycle_errors(self) -> list[CycleError]:
        return [e for e in self.errors if isinstance(e, CycleError)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": list(self.warnings),
            "id_map": {str(k): v for k, v in self.id_map.items()},
            "tasks": [t.to_dict() for t in self.tasks],
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _batch_items(batch: Any) -> tuple[list[Any], list[SchemaError]]:
    """Accept either ``{"tasks": [...]}`` or a bare list."""
    if isinstance(batch, Mapping):
        items = batch.get("tasks")
        if not isinstance(items, list):
            return [], [SchemaError("Batch must contain a 'tasks' array", field="tasks")]
    elif isinstance(batch, (list, tuple)):
        items = list(batch)
    else:
        return [], [SchemaError(f"Batch must be an array or an object with 'tasks', got {type(batch).__name__}",
                                field="tasks")]
    if not items:
        return [], [SchemaError("Task list cannot be empty", field="tasks")]
    return items, []


def _pydantic_errors(index: int, exc: ValidationError) -> list[SchemaError]:
    out: list[SchemaError] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        out.append(SchemaError(str(err.get("msg", "invalid value")), field=loc or None, task_index=index))
    return out


def _dependencies_of(item: Any) -> list[Any]:
    if isinstance(item, CandidateTask):
        return list(item.dependencies)
    if isinstance(item, Mapping):
        return list(item.get("dependencies") or [])
    return list(getattr(item, "dependencies", []) or [])


def _canonical_cycle(cycle: Sequence[str]) -> tuple[str, ...]:
    pivot = cycle.index(min(cycle))
    return tuple(cycle[pivot:]) + tuple(cycle[:pivot])


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------

class TaskValidator:
    """Check a candidate batch against the current ledger.

    Parameters
    ----------
    reader:
        Store handle used to look up existing tasks.
    completed_dependency_policy:
        ``"error"`` rejects dependencies on already completed tasks;
        ``"warning"`` accepts them and reports a warning instead.
    """

    def __init__(
        self,
        reader: LedgerReader,
        completed_dependency_policy: str = DEFAULT_COMPLETED_DEPENDENCY_POLICY,
    ) -> None:
        if completed_dependency_policy not in COMPLETED_DEPENDENCY_POLICIES:
            raise ValueError(
                f"Unknown completed dependency policy '{completed_dependency_policy}'. "
                f"Expected one of {sorted(COMPLETED_DEPENDENCY_POLICIES)}"
            )
        self.reader = reader
        self.completed_dependency_policy = completed_dependency_policy

    # -- phase 1 -------------------------------------------------------------

    def _parse(self, batch: Any) -> tuple[list[CandidateTask], list[SchemaError], list[str]]:
        items, errors = _batch_items(batch)
        candidates: list[CandidateTask] = []
        warnings: list[str] = []
        for index, raw in enumerate(items):
            if isinstance(raw, Mapping):
                owned = [name for name in ENGINE_OWNED_FIELDS if name in raw]
                if owned:
                    warnings.append(
                        f"Task {index}: field(s) {', '.join(owned)} are assigned by the ledger and were ignored"
                    )
            try:
                candidates.append(CandidateTask.model_validate(raw))
            except ValidationError as exc:
                errors.extend(_pydantic_errors(index, exc))
        return candidates, errors, warnings

    def validate_schema(self, batch: Any) -> list[SchemaError]:
        """Return every schema problem in *batch* (empty list = schema-valid)."""
        _, errors, _ = self._parse(batch)
        return errors

    # -- phase 2 -------------------------------------------------------------

    @staticmethod
    def assign_ids(batch: Sequence[Any], current_max_id: int) -> dict[int, str]:
        """Map each batch index to the next sequential task ID."""
        return {index: format_task_id(current_max_id + 1 + index) for index in range(len(batch))}

    # -- phase 3 -------------------------------------------------------------

    def _check_dependencies(
        self,
        batch: Sequence[Any],
        id_map: Mapping[int, str],
        store: LedgerStore,
    ) -> tuple[list[DependencyError], list[str], dict[int, list[str]]]:
        existing = store.task_map()
        batch_index = {task_id: index for index, task_id in id_map.items()}
        errors: list[DependencyError] = []
        warnings: list[str] = []
        resolved: dict[int, list[str]] = {}

        for index, item in enumerate(batch):
            own_id = id_map[index]
            own_number = task_number(own_id)
            deps: list[str] = []
            seen: set[str] = set()

            for raw in _dependencies_of(item):
                if isinstance(raw, int) and not isinstance(raw, bool):
                    if not 0 <= raw < len(batch):
                        errors.append(DependencyError(
                            f"Task {own_id}: dependency index {raw} is out of bounds",
                            task_id=own_id, dependency=str(raw), kind=DependencyError.UNRESOLVED,
                        ))
                        continue
                    dep_id = id_map[raw]
                else:
                    dep_id = str(raw).strip()
                    if dep_id not in batch_index and dep_id not in existing:
                        errors.append(DependencyError(
                            f"Task {own_id}: dependency {dep_id} does not exist in the ledger or the current batch",
                            task_id=own_id, dependency=dep_id, kind=DependencyError.UNRESOLVED,
                        ))
                        continue

                if dep_id in seen:
                    warnings.append(f"Task {own_id}: duplicate dependency {dep_id} ignored")
                    continue
                seen.add(dep_id)

                if dep_id == own_id:
                    errors.append(DependencyError(
                        f"Task {own_id}: a task cannot depend on itself",
                        task_id=own_id, dependency=dep_id, kind=DependencyError.SELF_REFERENCE,
                    ))
                    continue

                dep_task = existing.get(dep_id)
                if dep_task is not None and dep_task.is_completed:
                    message = (
                        f"Task {own_id}: dependency {dep_id} is already completed "
                        "(redundant prerequisite)"
                    )
                    if self.completed_dependency_policy == COMPLETED_DEPENDENCY_ERROR:
                        errors.append(DependencyError(
                            message, task_id=own_id, dependency=dep_id,
                            kind=DependencyError.COMPLETED_DEPENDENCY,
                        ))
                        continue
                    warnings.append(message)

                if dep_id in batch_index:
                    forward = batch_index[dep_id] >= index
                else:
                    dep_number = task_number(dep_id)
                    forward = (
                        dep_number is not None
                        and own_number is not None
                        and dep_number >= own_number
                    )
                if forward:
                    errors.append(DependencyError(
                        f"Task {own_id}: dependency {dep_id} is a forward reference "
                        "(it must refer to an earlier task)",
                        task_id=own_id, dependency=dep_id, kind=DependencyError.FORWARD_REFERENCE,
                    ))
                    continue

                deps.append(dep_id)
            resolved[index] = deps

        return errors, warnings, resolved

    def validate_dependencies(
        self,
        batch: Sequence[Any],
        id_map: Mapping[int, str],
        store: LedgerStore,
    ) -> list[DependencyError]:
        errors, _, _ = self._check_dependencies(batch, id_map, store)
        return errors

    # -- phase 4 -------------------------------------------------------------

    @staticmethod
    def build_graph(
        batch: Sequence[Any],
        id_map: Mapping[int, str],
        store: LedgerStore,
    ) -> dict[str, list[str]]:
        """Adjacency map ``{task_id: [dependency_ids]}`` over ledger + batch.

        Every resolvable edge is included, even ones rejected in phase 3, so
        a loop made of forward references is still reported as a cycle.
        Unresolvable references and self-loops are left out; phase 3 already
        reports them.
        """
        graph: dict[str, list[str]] = {t.id: list(t.dependencies) for t in store.tasks}
        batch_ids = set(id_map.values())
        for index, item in enumerate(batch):
            own_id = id_map[index]
            edges: list[str] = []
            for raw in _dependencies_of(item):
                if isinstance(raw, int) and not isinstance(raw, bool):
                    if not 0 <= raw < len(batch):
                        continue
                    dep_id = id_map[raw]
                else:
                    dep_id = str(raw).strip()
                    if dep_id not in graph and dep_id not in batch_ids:
                        continue
                if dep_id != own_id and dep_id not in edges:
                    edges.append(dep_id)
            graph[own_id] = edges
        return graph

    @staticmethod
    def detect_cycles(graph: Mapping[str, Sequence[str]]) -> list[CycleError]:
        """Return one :class:`CycleError` per distinct cycle reachable by DFS.

        Three-colour iterative DFS: every back edge to a node on the current
        path closes a loop.  Cycles are deduplicated by rotation.
        """
        white, gray, black = 0, 1, 2
        color = {node: white for node in graph}
        found: list[CycleError] = []
        seen: set[tuple[str, ...]] = set()

        for root in graph:
            if color[root] != white:
                continue
            color[root] = gray
            path = [root]
            stack = [iter(graph[root])]
            while stack:
                advanced = False
                for dep in stack[-1]:
                    if dep not in color:
                        continue
                    if color[dep] == white:
                        color[dep] = gray
                        path.append(dep)
                        stack.append(iter(graph[dep]))
                        advanced = True
                        break
                    if color[dep] == gray:
                        cycle = path[path.index(dep):]
                        key = _canonical_cycle(cycle)
                        if key not in seen:
                            seen.add(key)
                            found.append(CycleError(cycle))
                if not advanced:
                    stack.pop()
                    color[path.pop()] = black
        return found

    # -- pipeline ------------------------------------------------------------

    def validate(self, batch: Any, store: Optional[LedgerStore] = None) -> ValidationResult:
        """Run all phases and return the aggregate result."""
        candidates, schema_errors, warnings = self._parse(batch)
        if schema_errors:
            logger.info("Batch rejected: {} schema error(s)", len(schema_errors))
            return ValidationResult(valid=False, errors=list(schema_errors), warnings=warnings)

        store = store if store is not None else self.reader.load()
        id_map = self.assign_ids(candidates, store.max_task_number())

        dep_errors, dep_warnings, resolved = self._check_dependencies(candidates, id_map, store)
        warnings.extend(dep_warnings)
        cycle_errors = self.detect_cycles(self.build_graph(candidates, id_map, store))

        errors: list[LedgerError] = [*dep_errors, *cycle_errors]
        if errors:
            logger.info(
                "Batch rejected: {} dependency error(s), {} cycle(s)",
                len(dep_errors),
                len(cycle_errors),
            )
            return ValidationResult(valid=False, errors=errors, warnings=warnings, id_map=id_map)

        created_at = _now_iso()
        tasks = [
            Task(
                id=id_map[index],
                title=candidate.title,
                description=candidate.description,
                acceptance_criteria=list(candidate.acceptance_criteria),
                dependencies=resolved[index],
                status=TaskStatus.PENDING,
                risk=candidate.risk,
                test_strategy=candidate.test_strategy,
                test_strategy_rationale=candidate.test_strategy_rationale,
                estimated_hours=candidate.estimated_hours,
                files=TaskFiles(**candidate.files.model_dump()),
                provenance=dict(candidate.provenance),
                created_at=created_at,
            )
            for index, candidate in enumerate(candidates)
        ]
        logger.debug("Batch valid: {} task(s) as {}", len(tasks), list(id_map.values()))
        return ValidationResult(valid=True, warnings=warnings, id_map=id_map, tasks=tasks)
