"""Load optional ledger configuration from `.vtm/config.yaml`."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from .constants import (
    COMPLETED_DEPENDENCY_POLICIES,
    CONFIG_FILE,
    DEFAULT_COMPLETED_DEPENDENCY_POLICY,
    DEFAULT_LOG_LEVEL,
    STATE_DIR_NAME,
    STORE_FILE,
)
from .io_utils import _load_data_with_error


def load_ledger_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional ledger config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if not path.exists():
        return {}, None
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def get_store_path(config: dict[str, Any], project_dir: Path) -> Path:
    """Resolve the ledger document path.

    Args:
        config: Ledger configuration dictionary.
        project_dir: Directory relative paths are resolved against.

    Returns:
        `store.path` from the config, or `vtm.json` in *project_dir*.
    """
    raw = _get_nested(config, "store", "path")
    if isinstance(raw, str) and raw.strip():
        path = Path(raw).expanduser()
        return path if path.is_absolute() else (project_dir / path)
    return project_dir / STORE_FILE


def get_completed_dependency_policy(config: dict[str, Any]) -> str:
    """Return how a dependency on an already completed task is treated.

    Args:
        config: Ledger configuration dictionary.

    Returns:
        `"error"` (reject the batch) or `"warning"` (accept and warn).
    """
    raw = _get_nested(config, "validation", "completed_dependency")
    if isinstance(raw, str) and raw.lower() in COMPLETED_DEPENDENCY_POLICIES:
        return raw.lower()
    return DEFAULT_COMPLETED_DEPENDENCY_POLICY


def get_confirmation_config(config: dict[str, Any]) -> dict[str, bool]:
    """Which mutating commands ask for confirmation before committing."""
    raw = _get_nested(config, "confirm")
    raw = raw if isinstance(raw, dict) else {}
    return {
        "ingest": bool(raw.get("ingest", True)),
        "rollback": bool(raw.get("rollback", True)),
    }


def get_log_level(config: dict[str, Any]) -> str:
    raw = _get_nested(config, "logging", "level")
    if isinstance(raw, str) and raw:
        return raw.upper()
    return DEFAULT_LOG_LEVEL
