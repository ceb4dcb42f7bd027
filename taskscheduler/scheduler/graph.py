"""DependencyGraph — prerequisite edges between tasks, cycle checks and readiness.

The graph is a derived index: it is always rebuildable from the
``prerequisites`` lists stored on tasks and is never the source of truth.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING

from taskscheduler.scheduler.errors import CycleDetectedError
from taskscheduler.scheduler.models import TaskStatus

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

    from taskscheduler.scheduler.models import Task

logger = logging.getLogger(__name__)


class _ReadWriteLock:
    """Many readers or one writer. Waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class DependencyGraph:
    """Directed task → prerequisite edges.

    Mutations are serialised; ``is_ready`` and the other readers may run
    concurrently as long as no mutation is in progress.
    """

    def __init__(self) -> None:
        self._prerequisites: dict[str, set[str]] = {}
        self._dependents: dict[str, set[str]] = {}
        self._lock = _ReadWriteLock()

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task]) -> DependencyGraph:
        """Rebuild the graph from stored prerequisite lists.

        Raises CycleDetectedError if the stored data is inconsistent.
        """
        graph = cls()
        for task in tasks:
            graph.add_task(task.id, task.prerequisites)
        logger.debug("Rebuilt dependency graph: %d edge(s)", len(graph.edges()))
        return graph

    # -- Mutations -------------------------------------------------------------

    def add_edge(self, task_id: str, prerequisite_id: str) -> None:
        """Make *task_id* depend on *prerequisite_id*.

        Raises CycleDetectedError (leaving the graph untouched) if
        *prerequisite_id* already depends on *task_id*, directly or not.
        """
        with self._lock.write():
            if self._reaches(prerequisite_id, task_id):
                raise CycleDetectedError(task_id, prerequisite_id)
            self._link(task_id, prerequisite_id)

    def add_task(self, task_id: str, prerequisites: Iterable[str]) -> None:
        """Register a node with all its prerequisites, or none of them on cycle."""
        wanted = list(dict.fromkeys(prerequisites))
        with self._lock.write():
            added: list[str] = []
            try:
                for prerequisite_id in wanted:
                    if self._reaches(prerequisite_id, task_id):
                        raise CycleDetectedError(task_id, prerequisite_id)
                    if prerequisite_id not in self._prerequisites.get(task_id, ()):
                        self._link(task_id, prerequisite_id)
                        added.append(prerequisite_id)
            except CycleDetectedError:
                for prerequisite_id in added:
                    self._unlink(task_id, prerequisite_id)
                raise
            self._prerequisites.setdefault(task_id, set())

    def remove_edge(self, task_id: str, prerequisite_id: str) -> None:
        with self._lock.write():
            self._unlink(task_id, prerequisite_id)

    def remove_task(self, task_id: str) -> None:
        """Drop a node and every edge touching it."""
        with self._lock.write():
            for prerequisite_id in list(self._prerequisites.get(task_id, ())):
                self._unlink(task_id, prerequisite_id)
            for dependent_id in list(self._dependents.get(task_id, ())):
                self._unlink(dependent_id, prerequisite_id=task_id)
            self._prerequisites.pop(task_id, None)
            self._dependents.pop(task_id, None)

    def detach(self, task_id: str) -> None:
        """Drop the outgoing edges of a task that reached a terminal status.

        Edges pointing at it (its dependents) are kept.
        """
        with self._lock.write():
            for prerequisite_id in list(self._prerequisites.get(task_id, ())):
                self._unlink(task_id, prerequisite_id)
            if not self._dependents.get(task_id):
                self._prerequisites.pop(task_id, None)
                self._dependents.pop(task_id, None)

    # -- Queries ---------------------------------------------------------------

    def is_ready(
        self,
        task_id: str,
        resolver: Callable[[str], TaskStatus | None],
    ) -> bool:
        """True iff every prerequisite of *task_id* resolves to ``completed``.

        *resolver* returns the current status of a task id, or None when the
        task is unknown (which counts as not ready).
        """
        with self._lock.read():
            prerequisites = list(self._prerequisites.get(task_id, ()))
        return all(resolver(p) == TaskStatus.COMPLETED for p in prerequisites)

    def prerequisites(self, task_id: str) -> set[str]:
        with self._lock.read():
            return set(self._prerequisites.get(task_id, ()))

    def dependents(self, task_id: str) -> set[str]:
        with self._lock.read():
            return set(self._dependents.get(task_id, ()))

    def edges(self) -> set[tuple[str, str]]:
        """Return all ``(task_id, prerequisite_id)`` pairs."""
        with self._lock.read():
            return {(t, p) for t, prereqs in self._prerequisites.items() for p in prereqs}

    def __contains__(self, task_id: object) -> bool:
        with self._lock.read():
            return task_id in self._prerequisites or task_id in self._dependents

    # -- Internal --------------------------------------------------------------

    def _reaches(self, start: str, target: str) -> bool:
        """Depth-first search along prerequisite edges. Caller holds the write lock."""
        stack = [start]
        seen: set[str] = set()
        while stack:
            node = stack.pop()
            if node == target:
                return True
            if node in seen:
                continue
            seen.add(node)
            stack.extend(self._prerequisites.get(node, ()))
        return False

    def _link(self, task_id: str, prerequisite_id: str) -> None:
        self._prerequisites.setdefault(task_id, set()).add(prerequisite_id)
        self._dependents.setdefault(prerequisite_id, set()).add(task_id)

    def _unlink(self, task_id: str, prerequisite_id: str) -> None:
        self._prerequisites.get(task_id, set()).discard(prerequisite_id)
        self._dependents.get(prerequisite_id, set()).discard(task_id)
