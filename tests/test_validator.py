"""Tests for batch validation (task_ledger/validator.py)."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from task_ledger.errors import CycleError, DependencyError, SchemaError
from task_ledger.model import LedgerStore, ProjectInfo, Task, TaskStatus
from task_ledger.reader import LedgerReader
from task_ledger.validator import TaskValidator


def _candidate(title: str, deps: list[Any] | None = None, **overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "title": title,
        "description": f"{title} description",
        "acceptance_criteria": ["it works"],
        "dependencies": list(deps or []),
        "risk": "low",
        "test_strategy": "Unit",
        "estimated_hours": 2,
    }
    data.update(overrides)
    return data


def _reader(tmp_path: Path, tasks: list[Task] | None = None) -> LedgerReader:
    store = LedgerStore(project=ProjectInfo(name="demo"), tasks=list(tasks or []))
    store.recalculate_stats()
    path = tmp_path / "vtm.json"
    path.write_text(json.dumps(store.to_dict()), encoding="utf-8")
    return LedgerReader(path)


def _task(n: int, status: TaskStatus = TaskStatus.PENDING, deps: list[str] | None = None) -> Task:
    return Task(
        id=f"TASK-{n:03d}",
        title=f"Task {n}",
        description="existing",
        acceptance_criteria=["done"],
        dependencies=list(deps or []),
        status=status,
        completed_at="2024-01-01T00:00:00+00:00" if status == TaskStatus.COMPLETED else None,
    )


class TestSchema:
    def test_valid_batch_has_no_schema_errors(self, tmp_path: Path) -> None:
        validator = TaskValidator(_reader(tmp_path))
        assert validator.validate_schema({"tasks": [_candidate("A")]}) == []

    def test_collects_every_problem(self, tmp_path: Path) -> None:
        validator = TaskValidator(_reader(tmp_path))
        batch = [
            _candidate("A", estimated_hours=0),
            _candidate("", risk="extreme"),
            _candidate("C", acceptance_criteria=[]),
        ]
        errors = validator.validate_schema(batch)
        assert all(isinstance(e, SchemaError) for e in errors)
        assert {e.task_index for e in errors} == {0, 1, 2}
        fields = {(e.task_index, e.field) for e in errors}
        assert (0, "estimated_hours") in fields
        assert (1, "title") in fields
        assert (1, "risk") in fields
        assert (2, "acceptance_criteria") in fields

    def test_missing_required_field(self, tmp_path: Path) -> None:
        validator = TaskValidator(_reader(tmp_path))
        item = _candidate("A")
        del item["test_strategy"]
        errors = validator.validate_schema([item])
        assert [e.field for e in errors] == ["test_strategy"]

    def test_boolean_hours_are_rejected(self, tmp_path: Path) -> None:
        validator = TaskValidator(_reader(tmp_path))
        errors = validator.validate_schema([_candidate("A", estimated_hours=True)])
        assert [e.field for e in errors] == ["estimated_hours"]
        assert validator.validate_schema([_candidate("A", estimated_hours=1.5)]) == []

    def test_legacy_sources_fold_into_provenance(self, tmp_path: Path) -> None:
        validator = TaskValidator(_reader(tmp_path))
        result = validator.validate([
            _candidate("A", adr_source="adr/ADR-001.md", spec_source="specs/a.md"),
            _candidate("B", adr_source="adr/ADR-009.md", provenance={"adr": "adr/ADR-002.md"}),
        ])
        assert result.valid
        assert result.tasks[0].provenance == {"adr": "adr/ADR-001.md", "spec": "specs/a.md"}
        assert result.tasks[1].provenance == {"adr": "adr/ADR-002.md"}

    def test_empty_batch_is_rejected(self, tmp_path: Path) -> None:
        validator = TaskValidator(_reader(tmp_path))
        errors = validator.validate_schema({"tasks": []})
        assert len(errors) == 1
        assert errors[0].field == "tasks"

    def test_non_batch_input_is_rejected(self, tmp_path: Path) -> None:
        validator = TaskValidator(_reader(tmp_path))
        assert validator.validate_schema("not a batch")

    def test_schema_failure_skips_later_phases(self, tmp_path: Path) -> None:
        validator = TaskValidator(_reader(tmp_path))
        result = validator.validate([_candidate("A", deps=[5]), _candidate("B", risk="nope")])
        assert not result.valid
        assert result.dependency_errors == []
        assert result.id_map == {}

    def test_engine_owned_fields_are_ignored_with_warning(self, tmp_path: Path) -> None:
        validator = TaskValidator(_reader(tmp_path))
        result = validator.validate([_candidate("A", id="TASK-999", status="completed")])
        assert result.valid
        assert result.tasks[0].id == "TASK-001"
        assert result.tasks[0].status == TaskStatus.PENDING
        assert any("assigned by the ledger" in w for w in result.warnings)


class TestAssignIds:
    def test_sequential_from_current_max(self) -> None:
        assert TaskValidator.assign_ids([{}, {}, {}], 5) == {0: "TASK-006", 1: "TASK-007", 2: "TASK-008"}

    def test_empty_ledger_starts_at_one(self) -> None:
        assert TaskValidator.assign_ids([{}], 0) == {0: "TASK-001"}

    def test_validate_continues_after_existing_max(self, tmp_path: Path) -> None:
        reader = _reader(tmp_path, [_task(1), _task(2), _task(9)])
        result = TaskValidator(reader).validate([_candidate("A"), _candidate("B")])
        assert result.valid
        assert [t.id for t in result.tasks] == ["TASK-010", "TASK-011"]


class TestDependencies:
    def test_index_and_id_references_resolve(self, tmp_path: Path) -> None:
        reader = _reader(tmp_path, [_task(1)])
        result = TaskValidator(reader).validate(
            [_candidate("A", deps=["TASK-001"]), _candidate("B", deps=[0, "TASK-002"])]
        )
        assert result.valid, result.to_dict()
        assert result.tasks[0].dependencies == ["TASK-001"]
        assert result.tasks[1].dependencies == ["TASK-002"]

    def test_duplicates_collapse_with_warning(self, tmp_path: Path) -> None:
        reader = _reader(tmp_path, [_task(1)])
        result = TaskValidator(reader).validate([_candidate("A", deps=["TASK-001", "TASK-001"])])
        assert result.valid
        assert result.tasks[0].dependencies == ["TASK-001"]
        assert any("duplicate" in w for w in result.warnings)

    def test_unresolved_reference(self, tmp_path: Path) -> None:
        result = TaskValidator(_reader(tmp_path)).validate([_candidate("A", deps=["TASK-042"])])
        assert not result.valid
        [err] = result.dependency_errors
        assert err.kind == DependencyError.UNRESOLVED
        assert err.dependency == "TASK-042"

    def test_out_of_bounds_index(self, tmp_path: Path) -> None:
        result = TaskValidator(_reader(tmp_path)).validate([_candidate("A", deps=[3])])
        assert [e.kind for e in result.dependency_errors] == [DependencyError.UNRESOLVED]

    def test_self_reference(self, tmp_path: Path) -> None:
        result = TaskValidator(_reader(tmp_path)).validate([_candidate("A", deps=[0])])
        assert [e.kind for e in result.dependency_errors] == [DependencyError.SELF_REFERENCE]
        assert result.cycle_errors == []

    def test_forward_reference_is_rejected(self, tmp_path: Path) -> None:
        result = TaskValidator(_reader(tmp_path)).validate(
            [_candidate("A", deps=["TASK-002"]), _candidate("B")]
        )
        assert not result.valid
        [err] = result.dependency_errors
        assert err.kind == DependencyError.FORWARD_REFERENCE
        assert err.task_id == "TASK-001"
        assert err.dependency == "TASK-002"

    def test_completed_dependency_then_pending_dependency(self, tmp_path: Path) -> None:
        existing = [
            _task(1, TaskStatus.COMPLETED),
            _task(2, TaskStatus.COMPLETED),
            _task(3, TaskStatus.COMPLETED),
            _task(4, TaskStatus.PENDING),
            _task(5, TaskStatus.COMPLETED),
        ]
        validator = TaskValidator(_reader(tmp_path, existing))

        rejected = validator.validate([_candidate("A", deps=["TASK-003"]), _candidate("B", deps=[0])])
        assert not rejected.valid
        [err] = rejected.dependency_errors
        assert err.kind == DependencyError.COMPLETED_DEPENDENCY
        assert err.dependency == "TASK-003"
        assert "TASK-003" in err.message

        accepted = validator.validate([_candidate("A", deps=["TASK-004"]), _candidate("B", deps=[0])])
        assert accepted.valid, accepted.to_dict()
        assert accepted.id_map == {0: "TASK-006", 1: "TASK-007"}
        assert accepted.tasks[1].dependencies == ["TASK-006"]

    def test_completed_dependency_warning_policy(self, tmp_path: Path) -> None:
        reader = _reader(tmp_path, [_task(1, TaskStatus.COMPLETED)])
        result = TaskValidator(reader, completed_dependency_policy="warning").validate(
            [_candidate("A", deps=["TASK-001"])]
        )
        assert result.valid
        assert result.tasks[0].dependencies == ["TASK-001"]
        assert any("already completed" in w for w in result.warnings)

    def test_unknown_policy_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            TaskValidator(_reader(tmp_path), completed_dependency_policy="ignore")


class TestCycles:
    def test_three_item_cycle_reports_one_cycle(self, tmp_path: Path) -> None:
        batch = [_candidate("A", deps=[1]), _candidate("B", deps=[2]), _candidate("C", deps=[0])]
        result = TaskValidator(_reader(tmp_path)).validate(batch)
        assert not result.valid
        [cycle] = result.cycle_errors
        assert set(cycle.cycle) == {"TASK-001", "TASK-002", "TASK-003"}
        assert "Circular dependency detected" in cycle.message

    def test_detect_cycles_reports_every_distinct_loop(self) -> None:
        graph = {
            "A": ["B"],
            "B": ["A", "C"],
            "C": ["D"],
            "D": ["C"],
            "E": [],
        }
        cycles = TaskValidator.detect_cycles(graph)
        assert sorted(sorted(c.cycle) for c in cycles) == [["A", "B"], ["C", "D"]]
        assert all(isinstance(c, CycleError) for c in cycles)

    def test_detect_cycles_deduplicates_rotations(self) -> None:
        graph = {"A": ["B"], "B": ["C"], "C": ["A"]}
        assert len(TaskValidator.detect_cycles(graph)) == 1

    def test_acyclic_graph(self) -> None:
        graph = {"A": [], "B": ["A"], "C": ["A", "B"]}
        assert TaskValidator.detect_cycles(graph) == []

    def test_cycle_through_existing_tasks_is_reported(self, tmp_path: Path) -> None:
        # A corrupt ledger whose existing tasks already loop.
        reader = _reader(tmp_path, [_task(1, deps=["TASK-002"]), _task(2, deps=["TASK-001"])])
        result = TaskValidator(reader).validate([_candidate("A", deps=["TASK-001"])])
        assert not result.valid
        assert [sorted(c.cycle) for c in result.cycle_errors] == [["TASK-001", "TASK-002"]]

    def test_build_graph_merges_store_and_batch(self, tmp_path: Path) -> None:
        reader = _reader(tmp_path, [_task(1)])
        batch = [_candidate("A", deps=["TASK-001"]), _candidate("B", deps=[0, "TASK-404"])]
        id_map = TaskValidator.assign_ids(batch, 1)
        graph = TaskValidator.build_graph(batch, id_map, reader.load())
        assert graph == {"TASK-001": [], "TASK-002": ["TASK-001"], "TASK-003": ["TASK-002"]}


class TestValidateResult:
    def test_materialized_tasks(self, tmp_path: Path) -> None:
        result = TaskValidator(_reader(tmp_path)).validate(
            {"tasks": [_candidate("A", provenance={"adr": "adr/ADR-001.md"}, files={"create": ["a.py"]})]}
        )
        assert result.valid
        [task] = result.tasks
        assert task.status == TaskStatus.PENDING
        assert task.created_at
        assert task.completed_at is None
        assert task.files.create == ["a.py"]
        assert task.provenance == {"adr": "adr/ADR-001.md"}

    def test_to_dict_is_json_serializable(self, tmp_path: Path) -> None:
        result = TaskValidator(_reader(tmp_path)).validate([_candidate("A", deps=[1]), _candidate("B")])
        payload = json.loads(json.dumps(result.to_dict()))
        assert payload["valid"] is False
        assert payload["errors"][0]["type"] == "DependencyError"
