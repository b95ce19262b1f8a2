from pathlib import Path

import pytest

from cobbler.errors import InvalidDependencyError
from cobbler.resolver import ReadinessResolver, TaskSpec, find_cycle, topological_order
from cobbler.state import StateStore, Task, TaskStatus, TaskTracker

TRAIL = "demo-abc123"


def _resolver(tmp_path: Path) -> tuple[ReadinessResolver, TaskTracker]:
    tracker = TaskTracker(StateStore(tmp_path))
    return ReadinessResolver(tracker, TRAIL), tracker


def _complete(tracker: TaskTracker, task_id: str, status: TaskStatus = TaskStatus.DONE) -> None:
    tracker.transition(task_id, TaskStatus.IN_PROGRESS)
    tracker.transition(task_id, status)


def test_add_tasks_maps_local_keys_to_stable_ids(tmp_path: Path) -> None:
    resolver, tracker = _resolver(tmp_path)

    tasks = resolver.add_tasks(
        [
            TaskSpec(key="t1", title="Parser"),
            TaskSpec(key="t2", title="CLI", depends_on=["t1"]),
        ],
        cycle=1,
    )

    assert [task.id for task in tasks] == [f"{TRAIL}.c1.t1", f"{TRAIL}.c1.t2"]
    assert tracker.get(f"{TRAIL}.c1.t2").depends_on == [f"{TRAIL}.c1.t1"]
    assert all(task.cycle == 1 for task in tasks)


def test_later_cycle_may_depend_on_existing_task_ids(tmp_path: Path) -> None:
    resolver, tracker = _resolver(tmp_path)
    resolver.add_tasks([TaskSpec(key="a", title="A")], cycle=1)

    tasks = resolver.add_tasks(
        [TaskSpec(key="b", title="B", depends_on=[f"{TRAIL}.c1.t1"])], cycle=2
    )

    assert tasks[0].id == f"{TRAIL}.c2.t1"
    assert tasks[0].depends_on == [f"{TRAIL}.c1.t1"]


def test_cyclic_or_unknown_dependencies_insert_nothing(tmp_path: Path) -> None:
    resolver, tracker = _resolver(tmp_path)

    with pytest.raises(InvalidDependencyError, match="cycle"):
        resolver.add_tasks(
            [
                TaskSpec(key="a", title="A", depends_on=["b"]),
                TaskSpec(key="b", title="B", depends_on=["a"]),
            ],
            cycle=1,
        )
    with pytest.raises(InvalidDependencyError, match="unknown"):
        resolver.add_tasks([TaskSpec(key="a", title="A", depends_on=["ghost"])], cycle=1)
    with pytest.raises(InvalidDependencyError, match="Duplicate"):
        resolver.add_tasks([TaskSpec(key="a", title="A"), TaskSpec(key="a", title="A2")], cycle=1)

    assert tracker.tasks() == []


def test_ready_tasks_chain_within_a_single_pass(tmp_path: Path) -> None:
    resolver, tracker = _resolver(tmp_path)
    resolver.add_tasks(
        [
            TaskSpec(key="t1", title="T1"),
            TaskSpec(key="t2", title="T2", depends_on=["t1"]),
        ],
        cycle=1,
    )
    t1, t2 = f"{TRAIL}.c1.t1", f"{TRAIL}.c1.t2"

    assert [task.id for task in resolver.ready_tasks()] == [t1]
    assert tracker.get(t2).status == TaskStatus.PROPOSED.value

    _complete(tracker, t1)

    assert [task.id for task in resolver.ready_tasks()] == [t2]


def test_failed_dependency_blocks_dependents(tmp_path: Path) -> None:
    resolver, tracker = _resolver(tmp_path)
    resolver.add_tasks(
        [
            TaskSpec(key="a", title="A"),
            TaskSpec(key="b", title="B", depends_on=["a"]),
            TaskSpec(key="c", title="C", depends_on=["b"]),
        ],
        cycle=1,
    )
    resolver.ready_tasks()
    _complete(tracker, f"{TRAIL}.c1.t1", TaskStatus.FAILED)

    assert resolver.ready_tasks() == []
    assert tracker.get(f"{TRAIL}.c1.t2").status == TaskStatus.BLOCKED.value
    assert tracker.get(f"{TRAIL}.c1.t3").status == TaskStatus.BLOCKED.value


def test_peek_ready_does_not_write(tmp_path: Path) -> None:
    resolver, tracker = _resolver(tmp_path)
    resolver.add_tasks([TaskSpec(key="a", title="A")], cycle=1)

    assert [task.id for task in resolver.peek_ready()] == [f"{TRAIL}.c1.t1"]
    assert tracker.get(f"{TRAIL}.c1.t1").status == TaskStatus.PROPOSED.value


def test_topological_order_breaks_ties_by_creation_sequence() -> None:
    tasks = [
        Task(id="late", trail_id=TRAIL, title="late", seq=3),
        Task(id="root", trail_id=TRAIL, title="root", seq=1),
        Task(id="child", trail_id=TRAIL, title="child", seq=2, depends_on=["late"]),
    ]

    assert [task.id for task in topological_order(tasks)] == ["root", "late", "child"]


def test_find_cycle_reports_path() -> None:
    assert find_cycle({"a": ["b"], "b": ["c"], "c": []}) is None
    assert find_cycle({"a": ["b"], "b": ["a"]}) == ["a", "b", "a"]
