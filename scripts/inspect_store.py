#!/usr/bin/env python3
"""Inspect the scheduler database.

Usage examples:
    # All tasks
    python scripts/inspect_store.py

    # Only failed tasks
    python scripts/inspect_store.py --status failed

    # Execution history of one task
    python scripts/inspect_store.py --history 3f2a9c...

    # Dependency edges of active tasks
    python scripts/inspect_store.py --edges

    # A different database file
    python scripts/inspect_store.py --db data/other.db
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from taskscheduler.scheduler.graph import DependencyGraph
from taskscheduler.scheduler.models import ExecutionRecord, Task, TaskStatus
from taskscheduler.scheduler.store import TaskStore


def format_task(task: Task) -> str:
    """Format a task as a single line."""
    recurrence = "once"
    if task.recurrence is not None:
        rule = task.recurrence.to_dict()
        recurrence = rule.get("cron") or (
            f"every {rule['interval_seconds']:g}s" if "interval_seconds" in rule else str(rule)
        )
    prereqs = f" after={','.join(task.prerequisites)}" if task.prerequisites else ""
    return (
        f"{task.id}  {task.status.value:<9}  due={task.due_at.isoformat()}  "
        f"[{recurrence}] tries={task.retry_count}{prereqs}  {task.title}"
    )


def format_record(record: ExecutionRecord) -> str:
    detail = f"  {record.detail}" if record.detail else ""
    return (
        f"#{record.occurrence}.{record.attempt}  {record.outcome.value:<9}  "
        f"{record.started_at.isoformat()} -> {record.finished_at.isoformat()}{detail}"
    )


async def inspect(args: argparse.Namespace) -> int:
    store = TaskStore(db_path=Path(args.db)) if args.db else TaskStore.get()

    if args.history:
        task = await store.get_task(args.history)
        if task is None:
            print(f"ERROR: no task {args.history}", file=sys.stderr)
            return 1
        print(format_task(task))
        for record in await store.list_execution_records(task.id):
            print("  " + format_record(record))
        return 0

    if args.edges:
        graph = DependencyGraph.from_tasks(await store.list_non_terminal_tasks())
        for task_id, prerequisite_id in sorted(graph.edges()):
            print(f"{task_id} -> {prerequisite_id}")
        return 0

    statuses = [TaskStatus(s) for s in args.status] if args.status else None
    tasks = await store.list_tasks(statuses)
    for task in tasks:
        print(format_task(task))
    print(f"\n{len(tasks)} task(s)", file=sys.stderr)
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect the scheduler database")
    parser.add_argument("--db", help="Database file (default: DATABASE_PATH setting)")
    parser.add_argument(
        "--status",
        action="append",
        choices=[s.value for s in TaskStatus],
        help="Only tasks with this status (repeatable)",
    )
    parser.add_argument("--history", metavar="TASK_ID", help="Show a task's execution history")
    parser.add_argument("--edges", action="store_true", help="Show dependency edges")
    args = parser.parse_args()
    sys.exit(asyncio.run(inspect(args)))


if __name__ == "__main__":
    main()
