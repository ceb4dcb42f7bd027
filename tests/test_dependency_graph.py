"""Tests for DependencyGraph — edges, cycle detection and readiness."""

import threading

import pytest

from taskscheduler.scheduler.errors import CycleDetectedError
from taskscheduler.scheduler.graph import DependencyGraph
from taskscheduler.scheduler.models import Task, TaskStatus


def _resolver(statuses: dict[str, TaskStatus]):
    return statuses.get


# -- add_edge ------------------------------------------------------------------


def test_add_edge() -> None:
    graph = DependencyGraph()
    graph.add_edge("b", "a")
    assert graph.prerequisites("b") == {"a"}
    assert graph.dependents("a") == {"b"}
    assert graph.edges() == {("b", "a")}


def test_direct_cycle_rejected() -> None:
    graph = DependencyGraph()
    graph.add_edge("b", "a")
    with pytest.raises(CycleDetectedError):
        graph.add_edge("a", "b")
    assert graph.edges() == {("b", "a")}


def test_transitive_cycle_rejected_and_graph_unchanged() -> None:
    graph = DependencyGraph()
    graph.add_edge("b", "a")
    graph.add_edge("c", "b")
    before = graph.edges()
    with pytest.raises(CycleDetectedError) as exc_info:
        graph.add_edge("a", "c")
    assert exc_info.value.task_id == "a"
    assert exc_info.value.prerequisite_id == "c"
    assert graph.edges() == before


def test_self_edge_is_a_cycle() -> None:
    graph = DependencyGraph()
    with pytest.raises(CycleDetectedError):
        graph.add_edge("a", "a")


def test_diamond_is_not_a_cycle() -> None:
    graph = DependencyGraph()
    graph.add_edge("b", "a")
    graph.add_edge("c", "a")
    graph.add_edge("d", "b")
    graph.add_edge("d", "c")
    assert graph.prerequisites("d") == {"b", "c"}


# -- add_task ------------------------------------------------------------------


def test_add_task_is_all_or_nothing() -> None:
    graph = DependencyGraph()
    graph.add_edge("b", "a")
    graph.add_task("x", [])
    with pytest.raises(CycleDetectedError):
        # a -> x is fine, a -> b closes a cycle.
        graph.add_task("a", ["x", "b"])
    assert graph.edges() == {("b", "a")}


def test_add_task_without_prerequisites_registers_node() -> None:
    graph = DependencyGraph()
    graph.add_task("solo", [])
    assert "solo" in graph
    assert graph.prerequisites("solo") == set()


def test_from_tasks(clock) -> None:
    tasks = [
        Task(id="a", title="A", due_at=clock.now()),
        Task(id="b", title="B", due_at=clock.now(), prerequisites=["a"]),
        Task(id="c", title="C", due_at=clock.now(), prerequisites=["a", "b"]),
    ]
    graph = DependencyGraph.from_tasks(tasks)
    assert graph.edges() == {("b", "a"), ("c", "a"), ("c", "b")}


# -- Removal -------------------------------------------------------------------


def test_remove_task_drops_all_edges() -> None:
    graph = DependencyGraph()
    graph.add_edge("b", "a")
    graph.add_edge("c", "b")
    graph.remove_task("b")
    assert graph.edges() == set()
    assert "b" not in graph


def test_detach_keeps_incoming_edges() -> None:
    graph = DependencyGraph()
    graph.add_edge("b", "a")
    graph.add_edge("c", "b")
    graph.detach("b")
    assert graph.edges() == {("c", "b")}
    assert "b" in graph


def test_detach_leaf_drops_node() -> None:
    graph = DependencyGraph()
    graph.add_edge("b", "a")
    graph.detach("b")
    assert "b" not in graph


def test_remove_edge() -> None:
    graph = DependencyGraph()
    graph.add_edge("b", "a")
    graph.remove_edge("b", "a")
    assert graph.prerequisites("b") == set()
    # The reverse edge is now allowed.
    graph.add_edge("a", "b")


# -- is_ready ------------------------------------------------------------------


def test_no_prerequisites_is_ready() -> None:
    graph = DependencyGraph()
    graph.add_task("a", [])
    assert graph.is_ready("a", _resolver({}))


def test_ready_only_when_all_prerequisites_completed() -> None:
    graph = DependencyGraph()
    graph.add_task("c", ["a", "b"])
    statuses = {"a": TaskStatus.COMPLETED, "b": TaskStatus.RUNNING}
    assert not graph.is_ready("c", _resolver(statuses))

    statuses["b"] = TaskStatus.COMPLETED
    assert graph.is_ready("c", _resolver(statuses))


@pytest.mark.parametrize("status", [TaskStatus.FAILED, TaskStatus.CANCELLED, None])
def test_failed_or_unknown_prerequisite_blocks(status) -> None:
    graph = DependencyGraph()
    graph.add_task("b", ["a"])
    statuses = {} if status is None else {"a": status}
    assert not graph.is_ready("b", _resolver(statuses))


# -- Concurrency ---------------------------------------------------------------


def test_concurrent_readers_and_writers() -> None:
    graph = DependencyGraph()
    errors: list[BaseException] = []

    def writer(offset: int) -> None:
        try:
            for i in range(200):
                graph.add_edge(f"w{offset}-{i + 1}", f"w{offset}-{i}")
        except BaseException as exc:  # pragma: no cover - reported below
            errors.append(exc)

    def reader() -> None:
        try:
            for _ in range(200):
                graph.is_ready("w0-100", lambda _: TaskStatus.COMPLETED)
                graph.edges()
        except BaseException as exc:  # pragma: no cover - reported below
            errors.append(exc)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(3)]
    threads += [threading.Thread(target=reader) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(graph.edges()) == 600
