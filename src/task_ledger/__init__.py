"""Provide the public `task_ledger` package exports."""

from __future__ import annotations

from .engine import IngestResult, LedgerEngine
from .errors import (
    ConflictError,
    CycleError,
    DependencyError,
    LedgerError,
    LedgerIOError,
    NotFoundError,
    RollbackError,
    SchemaError,
    StoreNotFoundError,
    ValidationFailed,
)
from .history import LedgerHistory
from .model import HistoryEntry, LedgerStore, Task, TaskStatus
from .reader import LedgerReader
from .session import NOT_SET, SessionStore
from .validator import TaskValidator, ValidationResult
from .writer import LedgerWriter

__all__ = [
    "ConflictError",
    "CycleError",
    "DependencyError",
    "HistoryEntry",
    "IngestResult",
    "LedgerEngine",
    "LedgerError",
    "LedgerHistory",
    "LedgerIOError",
    "LedgerReader",
    "LedgerStore",
    "LedgerWriter",
    "NOT_SET",
    "NotFoundError",
    "RollbackError",
    "SchemaError",
    "SessionStore",
    "StoreNotFoundError",
    "Task",
    "TaskStatus",
    "TaskValidator",
    "ValidationFailed",
    "ValidationResult",
]
