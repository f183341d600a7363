"""Typed errors raised (or collected) by the ledger.

Validation never fails fast: :class:`SchemaError`, :class:`DependencyError`
and :class:`CycleError` instances are collected into a
:class:`~task_ledger.validator.ValidationResult` so a rejected batch can be
fixed in one pass.  They are still real exceptions so the same types can be
raised when a single problem is fatal (e.g. a malformed store on load).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Sequence

if TYPE_CHECKING:
    from .validator import ValidationResult


class LedgerError(Exception):
    """Base class for every error raised by :mod:`task_ledger`."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.__class__.__name__, "message": self.message}


class SchemaError(LedgerError):
    """One offending field in a candidate batch or a persisted document."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        task_index: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.field = field
        self.task_index = task_index

    def __str__(self) -> str:
        where = []
        if self.task_index is not None:
            where.append(f"task {self.task_index}")
        if self.field:
            where.append(f"field '{self.field}'")
        prefix = f"{', '.join(where)}: " if where else ""
        return f"{prefix}{self.message}"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"field": self.field, "task_index": self.task_index})
        return data


class DependencyError(LedgerError):
    """A dependency that cannot be accepted.

    ``kind`` is one of ``unresolved``, ``self_reference``,
    ``forward_reference`` or ``completed_dependency``.
    """

    UNRESOLVED = "unresolved"
    SELF_REFERENCE = "self_reference"
    FORWARD_REFERENCE = "forward_reference"
    COMPLETED_DEPENDENCY = "completed_dependency"

    def __init__(self, message: str, *, task_id: str, dependency: str, kind: str) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.dependency = dependency
        self.kind = kind

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"task_id": self.task_id, "dependency": self.dependency, "kind": self.kind})
        return data


class CycleError(LedgerError):
    """A dependency loop; ``cycle`` lists the IDs in loop order."""

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = list(cycle)
        closed = self.cycle + self.cycle[:1]
        super().__init__(f"Circular dependency detected: {' -> '.join(closed)}")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["cycle"] = list(self.cycle)
        return data


class NotFoundError(LedgerError):
    """A task, transaction or file does not exist."""


class LedgerIOError(LedgerError):
    """Underlying filesystem failure; the original error is chained as ``__cause__``."""

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class StoreNotFoundError(NotFoundError, LedgerIOError):
    """The ledger document itself is missing."""

    def __init__(self, path: str) -> None:
        LedgerIOError.__init__(
            self,
            f"Ledger file not found at {path}. Run 'task-ledger init' to create one.",
            path=path,
        )


class ConflictError(LedgerError):
    """Rollback refused because surviving tasks depend on the removed ones."""

    def __init__(self, transaction_id: str, conflicts: Sequence[tuple[str, str]]) -> None:
        self.transaction_id = transaction_id
        self.conflicts = list(conflicts)
        pairs = ", ".join(f"{dependent} -> {removed}" for dependent, removed in self.conflicts)
        super().__init__(
            f"Cannot rollback {transaction_id}: {len(self.conflicts)} dependency(ies) on removed "
            f"tasks ({pairs}). Use force to rollback anyway."
        )

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "transaction_id": self.transaction_id,
                "conflicts": [{"task_id": d, "depends_on": r} for d, r in self.conflicts],
            }
        )
        return data


class RollbackError(LedgerError):
    """The transaction exists but cannot be rolled back (wrong action, already reverted)."""


class ValidationFailed(LedgerError):
    """Raised by the engine when a batch does not pass validation."""

    def __init__(self, result: "ValidationResult") -> None:
        self.result = result
        super().__init__(f"Batch rejected with {len(result.errors)} error(s)")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["errors"] = [err.to_dict() for err in self.result.errors]
        data["warnings"] = list(self.result.warnings)
        return data
