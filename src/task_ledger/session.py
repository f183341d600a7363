"""Session-scoped "current task" pointer.

Stored in ``.vtm/session.json`` as ``{"currentTask": "TASK-003"}``, apart
from the ledger document so switching tasks never rewrites the ledger.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Final, Union

from loguru import logger

from .constants import SESSION_FILE
from .errors import LedgerIOError
from .io_utils import _atomic_write


class _NotSet:
    _instance = None

    def __new__(cls) -> "_NotSet":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_SET"

    def __bool__(self) -> bool:
        return False


NOT_SET: Final = _NotSet()


class SessionStore:
    """Get, set and clear the current task for a project.

    Args:
        state_dir: The ``.vtm`` directory; created on first :meth:`set`.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / SESSION_FILE

    def get(self) -> Union[str, _NotSet]:
        if not self.path.exists():
            return NOT_SET
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable session file {}: {}", self.path, exc)
            return NOT_SET
        current = data.get("currentTask") if isinstance(data, dict) else None
        if isinstance(current, str) and current:
            return current
        return NOT_SET

    def set(self, task_id: str) -> None:
        task_id = (task_id or "").strip()
        if not task_id:
            raise ValueError("Task ID cannot be empty")
        self.state_dir.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.path, {"currentTask": task_id})
        logger.debug("Current task set to {}", task_id)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise LedgerIOError(f"Cannot remove {self.path}: {exc}", path=str(self.path)) from exc
        logger.debug("Current task cleared")
