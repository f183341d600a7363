from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .config import get_confirmation_config, get_log_level, load_ledger_config
from .confirm import ConfirmationGate
from .constants import DEFAULT_INGEST_SOURCE, STATE_DIR_NAME
from .engine import LedgerEngine
from .errors import LedgerError, SchemaError
from .io_utils import _load_document
from .model import TaskStatus
from .session import NOT_SET, SessionStore
from .summary import summarize


def _configure_logging(level: str = 'WARNING') -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _config(args: argparse.Namespace) -> dict[str, Any]:
    config, err = load_ledger_config(_resolve_project_dir(args.project_dir))
    if err:
        raise LedgerError(f'Invalid ledger config: {err}')
    return config


def _engine(args: argparse.Namespace) -> LedgerEngine:
    return LedgerEngine.from_project_dir(_resolve_project_dir(args.project_dir), _config(args))


def _emit(payload: Any) -> int:
    sys.stdout.write(json.dumps(payload, indent=2) + '\n')
    return 0


def _gate(args: argparse.Namespace, kind: str) -> Optional[ConfirmationGate]:
    if args.yes or not get_confirmation_config(_config(args)).get(kind, True):
        return None
    return ConfirmationGate()


def _init(args: argparse.Namespace) -> int:
    engine = _engine(args)
    store = engine.writer.init_store(args.name, args.description, overwrite=args.force)
    return _emit({'path': str(engine.path), 'project': args.name, 'stats': store.stats.to_dict()})


def _next(args: argparse.Namespace) -> int:
    tasks = _engine(args).next_tasks(args.limit)
    return _emit({'ready': [task.to_dict() for task in tasks]})


def _list(args: argparse.Namespace) -> int:
    tasks = _engine(args).reader.load().tasks
    if args.status:
        tasks = [t for t in tasks if t.status.value == args.status]
    if args.adr:
        tasks = [t for t in tasks if t.provenance.get('adr') == args.adr]
    return _emit({'tasks': [task.to_dict() for task in tasks]})


def _task(args: argparse.Namespace) -> int:
    ctx = _engine(args).reader.get_task_with_context(args.task_id)
    return _emit({
        'task': ctx.task.to_dict(),
        'dependencies': [{'id': t.id, 'title': t.title, 'status': t.status.value} for t in ctx.dependencies],
        'blocked_tasks': [{'id': t.id, 'title': t.title} for t in ctx.blocked_tasks],
    })


def _start(args: argparse.Namespace) -> int:
    task = _engine(args).start_task(args.task_id)
    SessionStore(_resolve_project_dir(args.project_dir) / STATE_DIR_NAME).set(task.id)
    return _emit({'task': task.to_dict()})


def _complete(args: argparse.Namespace) -> int:
    engine = _engine(args)
    unblocked = engine.complete_task(
        args.task_id,
        commits=args.commit,
        files_created=args.created,
        files_modified=args.modified,
        tests_pass=args.tests_pass,
    )
    session = SessionStore(_resolve_project_dir(args.project_dir) / STATE_DIR_NAME)
    if session.get() == args.task_id:
        session.clear()
    return _emit({
        'task': engine.reader.require_task(args.task_id).to_dict(),
        'unblocked': [{'id': t.id, 'title': t.title} for t in unblocked],
    })


def _stats(args: argparse.Namespace) -> int:
    engine = _engine(args)
    payload: dict[str, Any] = {
        'stats': engine.reader.get_stats().to_dict(),
        'ready': len(engine.reader.get_ready_tasks()),
        'blocked': len(engine.reader.get_blocked_tasks()),
        'history': engine.history.get_stats().to_dict(),
    }
    if args.by_provenance:
        grouped = engine.reader.get_stats_by_provenance(args.by_provenance)
        payload['by_provenance'] = {
            str(key): {'total': g.total, 'completed': g.completed} for key, g in grouped.items()
        }
    return _emit(payload)


def _read_batch(source: str) -> Any:
    if source == '-':
        try:
            return json.loads(sys.stdin.read())
        except json.JSONDecodeError as exc:
            raise SchemaError(f'stdin: JSONDecodeError: {exc}') from exc
    return _load_document(Path(source).expanduser())


def _ingest(args: argparse.Namespace) -> int:
    engine = _engine(args)
    gate = _gate(args, 'ingest')
    result = engine.ingest(
        _read_batch(args.file),
        source=args.source or (DEFAULT_INGEST_SOURCE if args.file == '-' else args.file),
        confirm=gate.confirm_ingest if gate else None,
    )
    return _emit(result.to_dict())


def _history(args: argparse.Namespace) -> int:
    engine = _engine(args)
    if args.stats:
        return _emit(engine.history.get_stats().to_dict())
    if args.search is not None:
        entries = engine.history.search(args.search)
    else:
        entries = engine.history.get_history(args.limit)
    return _emit({'history': [entry.to_dict() for entry in entries]})


def _rollback(args: argparse.Namespace) -> int:
    engine = _engine(args)
    gate = _gate(args, 'rollback')
    result = engine.rollback(
        args.transaction_id,
        force=args.force,
        dry_run=args.dry_run,
        confirm=gate.confirm_rollback if gate else None,
    )
    return _emit(result.to_dict())


def _current(args: argparse.Namespace) -> int:
    session = SessionStore(_resolve_project_dir(args.project_dir) / STATE_DIR_NAME)
    if args.current_cmd == 'set':
        _engine(args).reader.require_task(args.task_id)
        session.set(args.task_id)
    elif args.current_cmd == 'clear':
        session.clear()
    current = session.get()
    return _emit({'current_task': None if current is NOT_SET else current})


def _summary(args: argparse.Namespace) -> int:
    return _emit(summarize(_engine(args).reader.load()).to_dict())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Task ledger: dependency-aware task store with history and rollback')
    parser.add_argument('--project-dir', default=None, help='Target project directory (default: current working directory)')
    parser.add_argument('--log-level', default=None, help='Log level (default: from config, else WARNING)')
    parser.add_argument('--yes', '-y', action='store_true', help='Skip confirmation prompts')
    subparsers = parser.add_subparsers(dest='command', required=True)

    init = subparsers.add_parser('init', help='Create an empty ledger')
    init.add_argument('name')
    init.add_argument('--description', default='')
    init.add_argument('--force', action='store_true', help='Overwrite an existing ledger')
    init.set_defaults(func=_init)

    nxt = subparsers.add_parser('next', help='List tasks ready to work on')
    nxt.add_argument('--limit', type=int, default=None)
    nxt.set_defaults(func=_next)

    lst = subparsers.add_parser('list', help='List tasks, optionally filtered')
    lst.add_argument('--status', choices=[s.value for s in TaskStatus], default=None)
    lst.add_argument('--adr', default=None, help='Only tasks whose adr provenance matches')
    lst.set_defaults(func=_list)

    task = subparsers.add_parser('task', help='Show a task with its dependencies')
    task.add_argument('task_id')
    task.set_defaults(func=_task)

    start = subparsers.add_parser('start', help='Mark a task in progress')
    start.add_argument('task_id')
    start.set_defaults(func=_start)

    complete = subparsers.add_parser('complete', help='Mark a task completed')
    complete.add_argument('task_id')
    complete.add_argument('--commit', action='append', default=[])
    complete.add_argument('--created', action='append', default=[])
    complete.add_argument('--modified', action='append', default=[])
    complete.add_argument('--tests-pass', action='store_true')
    complete.set_defaults(func=_complete)

    stats = subparsers.add_parser('stats', help='Show ledger statistics')
    stats.add_argument('--by-provenance', default=None, metavar='LABEL')
    stats.set_defaults(func=_stats)

    ingest = subparsers.add_parser('ingest', help='Validate and add a batch of tasks')
    ingest.add_argument('file', help="JSON/YAML batch file, or '-' for JSON on stdin")
    ingest.add_argument('--source', default=None)
    ingest.set_defaults(func=_ingest)

    history = subparsers.add_parser('history', help='Show the transaction log')
    history.add_argument('--limit', type=int, default=None)
    history.add_argument('--search', default=None)
    history.add_argument('--stats', action='store_true')
    history.set_defaults(func=_history)

    rollback = subparsers.add_parser('rollback', help='Undo an ingest transaction')
    rollback.add_argument('transaction_id')
    rollback.add_argument('--force', action='store_true')
    rollback.add_argument('--dry-run', action='store_true')
    rollback.set_defaults(func=_rollback)

    current = subparsers.add_parser('current', help='Get or change the current task')
    current_sub = current.add_subparsers(dest='current_cmd', required=True)
    current_sub.add_parser('get').set_defaults(func=_current)
    cset = current_sub.add_parser('set')
    cset.add_argument('task_id')
    cset.set_defaults(func=_current)
    current_sub.add_parser('clear').set_defaults(func=_current)

    summary = subparsers.add_parser('summary', help='Summarize incomplete work')
    summary.set_defaults(func=_summary)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    try:
        level = args.log_level or get_log_level(_config(args))
        _configure_logging(level)
        return int(handler(args) or 0)
    except LedgerError as exc:
        sys.stderr.write(json.dumps({'error': exc.to_dict()}, indent=2) + '\n')
        return 1
    except ValueError as exc:
        sys.stderr.write(str(exc) + '\n')
        return 1


if __name__ == '__main__':
    raise SystemExit(main())
