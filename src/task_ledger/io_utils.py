from __future__ import annotations

import json
import os
import stat
import tempfile
from pathlib import Path
from typing import Any

import yaml

from .errors import LedgerIOError, SchemaError, StoreNotFoundError

try:
    from yaml import CSafeDumper as Dumper
    from yaml import CSafeLoader as Loader
except ImportError:
    from yaml import SafeDumper as Dumper  # type: ignore[assignment]
    from yaml import SafeLoader as Loader  # type: ignore[assignment]


def _is_yaml(path: Path) -> bool:
    return path.suffix in {".yaml", ".yml"}


def _load_document(path: Path) -> Any:
    """Read and parse a JSON or YAML document.

    Raises :class:`StoreNotFoundError` when *path* is missing,
    :class:`SchemaError` when it cannot be parsed and :class:`LedgerIOError`
    for any other OS failure.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise StoreNotFoundError(str(path)) from None
    except OSError as exc:
        raise LedgerIOError(f"{path.name}: {exc.__class__.__name__}: {exc}", path=str(path)) from exc

    try:
        if _is_yaml(path):
            return yaml.load(text, Loader=Loader)
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise SchemaError(f"{path.name}: JSONDecodeError: {exc}") from exc
    except yaml.YAMLError as exc:
        raise SchemaError(f"{path.name}: YAMLError: {exc}") from exc


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load JSON/YAML and return (data, error_message).

    Missing files yield ``(default, None)``; parse or IO failures are
    reported instead of raised so optional files never abort a command.
    """
    if not path.exists():
        return default, None
    try:
        data = _load_document(path)
    except (SchemaError, LedgerIOError) as exc:
        return default, exc.message
    if data is None:
        return default, None
    if not isinstance(data, dict):
        return default, f"{path.name}: expected object, got {type(data).__name__}"
    return data, None


def _target_mode(path: Path) -> int:
    """Permission bits for *path*: its current mode, or the umask default for a new file."""
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        umask = os.umask(0)
        os.umask(umask)
        return 0o666 & ~umask


def _atomic_write(path: Path, data: dict[str, Any]) -> None:
    """Atomically write *data* to *path* (write-tmp-then-rename).

    The temporary file lives next to *path* so the final ``os.replace`` is a
    same-filesystem rename.  On any failure the temporary file is removed and
    the destination is left exactly as it was.  The written file keeps the
    destination's permission bits (umask default when it is new).
    """
    parent = path.parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(parent), prefix=f".{path.name}.", suffix=".tmp")
    except OSError as exc:
        raise LedgerIOError(f"Cannot prepare write to {path}: {exc}", path=str(path)) from exc

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            if _is_yaml(path):
                yaml.dump(
                    data,
                    handle,
                    Dumper=Dumper,
                    sort_keys=False,
                    default_flow_style=False,
                    allow_unicode=True,
                )
            else:
                json.dump(data, handle, indent=2)
                handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp, _target_mode(path))
        os.replace(tmp, path)
    except BaseException as exc:
        Path(tmp).unlink(missing_ok=True)
        if isinstance(exc, OSError):
            raise LedgerIOError(f"Failed to write {path}: {exc}", path=str(path)) from exc
        raise
