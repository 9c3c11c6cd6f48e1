from __future__ import annotations

import argparse
import asyncio
import io
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from loguru import logger
from rich.console import Console
from rich.text import Text
from rich.tree import Tree

from .config import get_engine_config, get_logging_config, get_owner, load_planner_config
from .constants import STATE_DIR_NAME
from .logging_utils import configure_logging, summarize_mutation
from .task_engine.backend import LocalBackend
from .task_engine.engine import DeletePolicy, Mutation
from .task_engine.errors import TaskEngineError
from .task_engine.index import TreeIndex
from .task_engine.model import TaskStatus
from .task_engine.payloads import validate_create_payload, validate_patch_payload
from .task_engine.session import PlannerSession
from .task_engine.store import TaskStore

SessionOp = Callable[[PlannerSession], Awaitable[dict[str, Any]]]

_STATUS_MARKS = {
    TaskStatus.TODO.value: "[ ]",
    TaskStatus.IN_PROGRESS.value: "[~]",
    TaskStatus.BLOCKED.value: "[!]",
    TaskStatus.DELAYED.value: "[-]",
    TaskStatus.DONE.value: "[x]",
}


def _resolve_project_dir(project_dir: Optional[str]) -> Path:
    return Path(project_dir).expanduser().resolve() if project_dir else Path.cwd().resolve()


def _config(args: argparse.Namespace) -> dict[str, Any]:
    config, err = load_planner_config(_resolve_project_dir(args.project_dir))
    if err:
        logger.warning("Ignoring unreadable config: {}", err)
    return config


def _ctx(args: argparse.Namespace) -> PlannerSession:
    project_dir = _resolve_project_dir(args.project_dir)
    config = args.config if getattr(args, 'config', None) is not None else _config(args)
    store = TaskStore(project_dir / STATE_DIR_NAME)
    return PlannerSession(
        LocalBackend(store),
        args.owner or get_owner(config),
        gate_direct_done=get_engine_config(config)["gate_direct_done"],
    )


def _emit(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, indent=2) + '\n')


def _run(args: argparse.Namespace, op: SessionOp) -> int:
    session = _ctx(args)

    async def _go() -> dict[str, Any]:
        await session.load()
        return await op(session)

    try:
        payload = asyncio.run(_go())
    except TaskEngineError as exc:
        sys.stderr.write(json.dumps({'error': exc.to_dict()}) + '\n')
        return 1
    _emit(payload)
    return 0


def _mutation_payload(session: PlannerSession, mutation: Mutation) -> dict[str, Any]:
    changed = [session.tree.get(task.id) for task in mutation.changed]
    return {
        'mutation': summarize_mutation(mutation),
        'tasks': [task.to_dict() for task in changed if task is not None],
        'deleted': mutation.deleted_ids,
    }


def render_tree(index: TreeIndex, *, title: str = "Tasks") -> str:
    """Render the forest as indented text with one status mark per task."""
    console = Console(record=True, width=100, file=io.StringIO())
    root = Tree(Text(title, style="bold"))

    def add_children(node: Tree, parent_id: Optional[str]) -> None:
        for task in index.children_of(parent_id):
            status = task.status.value if isinstance(task.status, TaskStatus) else str(task.status)
            label = Text(f"{_STATUS_MARKS.get(status, '[?]')} {task.title}")
            if task.blocking_task_id:
                blocker = index.get(task.blocking_task_id)
                label.append(f" (blocked by {blocker.title if blocker else 'missing task'})", style="dim")
            label.append(f"  {task.id}", style="dim")
            add_children(node.add(label), task.id)

    add_children(root, None)
    console.print(root)
    return console.export_text()


def _task_list(args: argparse.Namespace) -> int:
    async def op(session: PlannerSession) -> dict[str, Any]:
        tasks = session.tasks()
        if args.status:
            tasks = [task for task in tasks if task.status == args.status]
        return {'tasks': [task.to_dict() for task in tasks]}

    return _run(args, op)


def _task_tree(args: argparse.Namespace) -> int:
    session = _ctx(args)
    try:
        asyncio.run(session.load())
    except TaskEngineError as exc:
        sys.stderr.write(json.dumps({'error': exc.to_dict()}) + '\n')
        return 1
    sys.stdout.write(render_tree(session.tree.index, title=f"Tasks for {session.owner}"))
    return 0


def _task_add(args: argparse.Namespace) -> int:
    async def op(session: PlannerSession) -> dict[str, Any]:
        payload: dict[str, Any] = {'title': args.title, 'parent_id': args.parent}
        if args.sort_order is not None:
            payload['sort_order'] = args.sort_order
        validated = validate_create_payload(payload)
        task = await session.create(
            validated.title,
            parent_id=validated.parent_id,
            sort_order=args.sort_order,
        )
        return {'task': task.to_dict()}

    return _run(args, op)


def _task_rename(args: argparse.Namespace) -> int:
    async def op(session: PlannerSession) -> dict[str, Any]:
        title = validate_patch_payload({'title': args.title}).title
        return _mutation_payload(session, await session.rename(args.task_id, title))

    return _run(args, op)


def _task_status(args: argparse.Namespace) -> int:
    async def op(session: PlannerSession) -> dict[str, Any]:
        status = validate_patch_payload({'status': args.status}).status
        return _mutation_payload(session, await session.set_status(args.task_id, status))

    return _run(args, op)


def _task_complete(args: argparse.Namespace) -> int:
    async def op(session: PlannerSession) -> dict[str, Any]:
        return _mutation_payload(session, await session.complete(args.task_id, force=args.force))

    return _run(args, op)


def _task_block(args: argparse.Namespace) -> int:
    async def op(session: PlannerSession) -> dict[str, Any]:
        blocker = None if args.clear else args.blocker_id
        return _mutation_payload(session, await session.set_blocker(args.task_id, blocker))

    return _run(args, op)


def _task_due(args: argparse.Namespace) -> int:
    async def op(session: PlannerSession) -> dict[str, Any]:
        due_at = None if args.clear else validate_patch_payload({'due_at': args.due_at}).due_at
        return _mutation_payload(session, await session.set_due(args.task_id, due_at))

    return _run(args, op)


def _task_move(args: argparse.Namespace) -> int:
    async def op(session: PlannerSession) -> dict[str, Any]:
        return _mutation_payload(session, await session.move(args.task_id, args.parent, args.index))

    return _run(args, op)


def _task_delete(args: argparse.Namespace) -> int:
    async def op(session: PlannerSession) -> dict[str, Any]:
        return _mutation_payload(session, await session.delete(args.task_id, args.policy))

    return _run(args, op)


def _task_stats(args: argparse.Namespace) -> int:
    async def op(session: PlannerSession) -> dict[str, Any]:
        index = session.tree.index
        return {
            'owner': session.owner,
            'total': index.count_total(),
            'by_status': index.count_by_status(),
            'has_blocked': index.has_blocked(),
        }

    return _run(args, op)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Task Planner CLI (hierarchical task tree)')
    parser.add_argument('--project-dir', default=None, help='Target project directory (default: current working directory)')
    parser.add_argument('--owner', default=None, help='Owner to act as (default: config owner, then $USER)')
    parser.add_argument('--log-level', default=None, help='Log level (default: config logging.level or INFO)')
    subparsers = parser.add_subparsers(dest='command', required=True)

    tlist = subparsers.add_parser('list', help='List tasks in display order')
    tlist.add_argument('--status', default=None, choices=TaskStatus.values())
    tlist.set_defaults(func=_task_list)

    ttree = subparsers.add_parser('tree', help='Show the task tree')
    ttree.set_defaults(func=_task_tree)

    tadd = subparsers.add_parser('add', help='Create a task')
    tadd.add_argument('title')
    tadd.add_argument('--parent', default=None)
    tadd.add_argument('--sort-order', default=None, type=int)
    tadd.set_defaults(func=_task_add)

    trename = subparsers.add_parser('rename', help='Rename a task')
    trename.add_argument('task_id')
    trename.add_argument('title')
    trename.set_defaults(func=_task_rename)

    tstatus = subparsers.add_parser('status', help='Set a task status directly')
    tstatus.add_argument('task_id')
    tstatus.add_argument('status')
    tstatus.set_defaults(func=_task_status)

    tcomplete = subparsers.add_parser('complete', help='Complete a task through the completion gate')
    tcomplete.add_argument('task_id')
    tcomplete.add_argument('--force', action='store_true')
    tcomplete.set_defaults(func=_task_complete)

    tblock = subparsers.add_parser('block', help='Assign or clear a blocking task')
    tblock.add_argument('task_id')
    tblock.add_argument('blocker_id', nargs='?', default=None)
    tblock.add_argument('--clear', action='store_true')
    tblock.set_defaults(func=_task_block)

    tdue = subparsers.add_parser('due', help='Set or clear a due date')
    tdue.add_argument('task_id')
    tdue.add_argument('due_at', nargs='?', default=None)
    tdue.add_argument('--clear', action='store_true')
    tdue.set_defaults(func=_task_due)

    tmove = subparsers.add_parser('move', help='Reparent and/or reorder a task')
    tmove.add_argument('task_id')
    tmove.add_argument('--parent', default=None)
    tmove.add_argument('--index', required=True, type=int)
    tmove.set_defaults(func=_task_move)

    tdelete = subparsers.add_parser('delete', help='Delete a task')
    tdelete.add_argument('task_id')
    tdelete.add_argument('--policy', default=DeletePolicy.REJECT.value, choices=[p.value for p in DeletePolicy])
    tdelete.set_defaults(func=_task_delete)

    tstats = subparsers.add_parser('stats', help='Show task counts')
    tstats.set_defaults(func=_task_stats)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, 'func', None)
    if handler is None:
        parser.print_help()
        return 1
    if args.command == 'block' and not args.clear and not args.blocker_id:
        parser.error('block needs a BLOCKER_ID or --clear')
    if args.command == 'due' and not args.clear and not args.due_at:
        parser.error('due needs a DATE or --clear')
    args.config = _config(args)
    logging_source = {'logging': {'level': args.log_level}} if args.log_level else args.config
    configure_logging(get_logging_config(logging_source)['level'])
    return int(handler(args) or 0)


if __name__ == '__main__':
    raise SystemExit(main())
