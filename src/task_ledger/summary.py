"""Compact ledger summary for handing context to another agent."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .model import LedgerStore, TaskStatus


@dataclass
class LedgerSummary:
    incomplete_tasks: list[dict[str, Any]] = field(default_factory=list)
    completed_capabilities: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "incomplete_tasks": list(self.incomplete_tasks),
            "completed_capabilities": list(self.completed_capabilities),
        }


def summarize(store: LedgerStore) -> LedgerSummary:
    """Incomplete tasks in full, completed ones reduced to ``"<id>: <title>"``."""
    summary = LedgerSummary()
    for task in store.tasks:
        if task.status == TaskStatus.COMPLETED:
            summary.completed_capabilities.append(f"{task.id}: {task.title}")
            continue
        entry: dict[str, Any] = {
            "id": task.id,
            "title": task.title,
            "description": task.description,
            "status": task.status.value,
            "estimated_hours": task.estimated_hours,
            "risk": task.risk.value,
            "test_strategy": task.test_strategy.value,
        }
        if task.dependencies:
            entry["dependencies"] = list(task.dependencies)
        summary.incomplete_tasks.append(entry)
    return summary
