"""Interactive confirmation before ledger mutations.

The engine takes plain ``callable(preview) -> bool`` hooks; this module
provides the terminal implementation used by the CLI.
"""

from __future__ import annotations

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from .engine import IngestPreview
from .history import RollbackDetails
from .model import TaskStatus

_STATUS_MARKERS = {
    TaskStatus.COMPLETED: "[green]✓[/green]",
    TaskStatus.IN_PROGRESS: "[yellow]●[/yellow]",
    TaskStatus.PENDING: "[dim]○[/dim]",
    TaskStatus.BLOCKED: "[red]✗[/red]",
}


class ConfirmationGate:
    """Render a preview and ask yes/no.

    Args:
        console: Console to render on (stderr by default so stdout stays JSON).
        assume_yes: Skip the prompt and approve everything.
    """

    def __init__(self, console: Optional[Console] = None, assume_yes: bool = False) -> None:
        self.console = console or Console(stderr=True)
        self.assume_yes = assume_yes

    def _ask(self, question: str) -> bool:
        if self.assume_yes:
            return True
        return Confirm.ask(question, console=self.console, default=False)

    def _dependency_label(self, dep: str, preview: IngestPreview) -> str:
        status = preview.dependency_status.get(dep)
        if status is None:
            return f"{dep} [cyan](new)[/cyan]"
        return f"{dep} {_STATUS_MARKERS.get(status, '')}"

    def confirm_ingest(self, preview: IngestPreview) -> bool:
        table = Table(title=f"Ingest {len(preview.tasks)} task(s) from {preview.source}")
        table.add_column("ID", style="bold")
        table.add_column("Title")
        table.add_column("Risk")
        table.add_column("Hours", justify="right")
        table.add_column("Depends on")
        for task in preview.tasks:
            deps = ", ".join(self._dependency_label(d, preview) for d in task.dependencies) or "-"
            table.add_row(task.id, task.title, task.risk.value, f"{task.estimated_hours:g}", deps)
        self.console.print(table)
        if preview.warnings:
            self.console.print(
                Panel("\n".join(preview.warnings), title="Warnings", border_style="yellow")
            )
        return self._ask("Write these tasks to the ledger?")

    def confirm_rollback(self, details: RollbackDetails) -> bool:
        table = Table(title=f"Rollback {details.transaction_id}")
        table.add_column("ID", style="bold")
        table.add_column("Title")
        table.add_column("Status")
        for task in details.tasks:
            table.add_row(task.id, task.title, f"{_STATUS_MARKERS.get(task.status, '')} {task.status.value}")
        self.console.print(table)
        if details.blocking_dependents:
            lines = [f"{dependent} depends on {removed}" for dependent, removed in details.blocking_dependents]
            self.console.print(Panel("\n".join(lines), title="Forced over dependents", border_style="red"))
        return self._ask(f"Remove {len(details.tasks)} task(s)?")
