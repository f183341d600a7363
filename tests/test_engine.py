"""Tests for the caller-facing workflows (task_ledger/engine.py)."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from task_ledger.engine import IngestPreview, LedgerEngine
from task_ledger.errors import ConflictError, LedgerError, ValidationFailed
from task_ledger.model import HistoryAction, TaskStatus


def _candidate(title: str, deps: list[Any] | None = None, **overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "title": title,
        "description": f"{title} description",
        "acceptance_criteria": ["it works"],
        "dependencies": list(deps or []),
        "risk": "medium",
        "test_strategy": "TDD",
        "estimated_hours": 1,
    }
    data.update(overrides)
    return data


def _engine(tmp_path: Path, **kwargs: Any) -> LedgerEngine:
    engine = LedgerEngine(tmp_path / "vtm.json", **kwargs)
    engine.writer.init_store("demo")
    return engine


class TestIngest:
    def test_ingest_writes_tasks_and_history_together(self, tmp_path: Path) -> None:
        engine = _engine(tmp_path)
        result = engine.ingest(
            {"tasks": [_candidate("A", provenance={"adr": "adr/ADR-001.md"}), _candidate("B", deps=[0])]},
            source="adr/ADR-001.md",
        )
        assert result.applied
        assert result.task_ids == ["TASK-001", "TASK-002"]
        assert result.stats.total_tasks == 2

        store = engine.reader.load()
        assert [t.id for t in store.tasks] == ["TASK-001", "TASK-002"]
        [entry] = store.history
        assert entry.id == result.transaction_id
        assert entry.action == HistoryAction.INGEST
        assert entry.tasks_added == ["TASK-001", "TASK-002"]
        assert entry.files == {"TASK-001": "adr/ADR-001.md"}

    def test_legacy_adr_source_fills_history_files(self, tmp_path: Path) -> None:
        engine = _engine(tmp_path)
        result = engine.ingest([_candidate("A", adr_source="adr/ADR-001.md"), _candidate("B")])
        entry = engine.history.get_entry(result.transaction_id)
        assert entry.files == {"TASK-001": "adr/ADR-001.md"}
        assert engine.reader.require_task("TASK-001").provenance == {"adr": "adr/ADR-001.md"}

    def test_invalid_batch_raises_with_result(self, tmp_path: Path) -> None:
        engine = _engine(tmp_path)
        raw_before = engine.path.read_bytes()
        with pytest.raises(ValidationFailed) as excinfo:
            engine.ingest([_candidate("A", deps=[1]), _candidate("B", deps=[2]), _candidate("C", deps=[0])])
        assert len(excinfo.value.result.cycle_errors) == 1
        assert engine.path.read_bytes() == raw_before

    def test_declined_confirmation_writes_nothing(self, tmp_path: Path) -> None:
        engine = _engine(tmp_path)
        raw_before = engine.path.read_bytes()
        confirm = MagicMock(return_value=False)

        result = engine.ingest([_candidate("A")], confirm=confirm)

        assert not result.applied
        assert result.task_ids == ["TASK-001"]
        preview = confirm.call_args.args[0]
        assert isinstance(preview, IngestPreview)
        assert [t.id for t in preview.tasks] == ["TASK-001"]
        assert engine.path.read_bytes() == raw_before

    def test_preview_reports_dependency_status(self, tmp_path: Path) -> None:
        engine = _engine(tmp_path)
        engine.ingest([_candidate("A")])
        engine.start_task("TASK-001")
        preview = engine.preview_ingest([_candidate("B", deps=["TASK-001"]), _candidate("C", deps=[0])])
        assert preview.dependency_status == {"TASK-001": TaskStatus.IN_PROGRESS, "TASK-002": None}

    def test_completed_dependency_policy_from_config(self, tmp_path: Path) -> None:
        state = tmp_path / ".vtm"
        state.mkdir()
        (state / "config.yaml").write_text("validation:\n  completed_dependency: warning\n", encoding="utf-8")
        engine = LedgerEngine.from_project_dir(tmp_path)
        engine.writer.init_store("demo")
        engine.ingest([_candidate("A")])
        engine.complete_task("TASK-001")

        result = engine.ingest([_candidate("B", deps=["TASK-001"])])

        assert result.applied
        assert any("already completed" in w for w in result.warnings)

    def test_invalid_config_raises(self, tmp_path: Path) -> None:
        state = tmp_path / ".vtm"
        state.mkdir()
        (state / "config.yaml").write_text("store: [unclosed\n", encoding="utf-8")
        with pytest.raises(LedgerError):
            LedgerEngine.from_project_dir(tmp_path)


class TestTaskLifecycle:
    def test_start_and_complete(self, tmp_path: Path) -> None:
        engine = _engine(tmp_path)
        engine.ingest([_candidate("A"), _candidate("B", deps=[0]), _candidate("C", deps=[0, 1])])
        assert [t.id for t in engine.next_tasks()] == ["TASK-001"]

        started = engine.start_task("TASK-001")
        assert started.status == TaskStatus.IN_PROGRESS
        assert started.started_at

        unblocked = engine.complete_task("TASK-001", commits=["abc123"], files_created=["a.py"], tests_pass=True)
        assert [t.id for t in unblocked] == ["TASK-002"]

        task = engine.reader.require_task("TASK-001")
        assert task.status == TaskStatus.COMPLETED
        assert task.completed_at
        assert task.commits == ["abc123"]
        assert task.files.create == ["a.py"]
        assert task.validation.tests_pass is True

        actions = [e.action for e in engine.history.get_history()]
        assert actions.count(HistoryAction.UPDATE) == 2

    def test_start_completed_task_is_refused(self, tmp_path: Path) -> None:
        engine = _engine(tmp_path)
        engine.ingest([_candidate("A")])
        engine.complete_task("TASK-001")
        with pytest.raises(LedgerError):
            engine.start_task("TASK-001")

    def test_next_tasks_limit(self, tmp_path: Path) -> None:
        engine = _engine(tmp_path)
        engine.ingest([_candidate("A"), _candidate("B"), _candidate("C")])
        assert [t.id for t in engine.next_tasks(limit=2)] == ["TASK-001", "TASK-002"]


class TestRollback:
    def test_rollback_with_confirmation(self, tmp_path: Path) -> None:
        engine = _engine(tmp_path)
        txid = engine.ingest([_candidate("A")]).transaction_id

        declined = engine.rollback(txid, confirm=lambda details: False)
        assert not declined.applied
        assert engine.reader.get_task("TASK-001") is not None

        result = engine.rollback(txid, confirm=lambda details: True)
        assert result.applied
        assert engine.reader.get_task("TASK-001") is None

    def test_conflict_raised_before_confirmation(self, tmp_path: Path) -> None:
        engine = _engine(tmp_path)
        txid = engine.ingest([_candidate("A")]).transaction_id
        engine.ingest([_candidate("B", deps=["TASK-001"])])
        confirm = MagicMock(return_value=True)
        with pytest.raises(ConflictError):
            engine.rollback(txid, confirm=confirm)
        confirm.assert_not_called()

    def test_ids_continue_after_rollback(self, tmp_path: Path) -> None:
        engine = _engine(tmp_path)
        engine.ingest([_candidate("A")])
        txid = engine.ingest([_candidate("B"), _candidate("C")]).transaction_id
        engine.rollback(txid)
        result = engine.ingest([_candidate("D")])
        assert result.task_ids == ["TASK-002"]
