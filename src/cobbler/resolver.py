"""Task readiness over an explicit dependency graph.

The graph is keyed by stable task ids. A task is ``ready`` only when its
status is ``proposed`` or ``blocked`` and every dependency is ``done``; a
task that depends on something ``failed`` or ``blocked`` becomes ``blocked``.
Readiness is recomputed from the tracker on every call, so completing one
task inside a stitch step can make its dependents ready in the same step.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from cobbler.errors import InvalidDependencyError
from cobbler.state.tracker import Task, TaskStatus, TaskTracker

logger = logging.getLogger(__name__)

_UNSATISFIABLE = {TaskStatus.FAILED.value, TaskStatus.BLOCKED.value}


@dataclass(slots=True)
class TaskSpec:
    """A task as proposed by measure; ``depends_on`` may name keys or task ids."""

    key: str
    title: str
    description: str = ""
    depends_on: list[str] = field(default_factory=list)


def topological_order(tasks: Iterable[Task]) -> list[Task]:
    """Kahn's algorithm with creation order (``seq``) breaking ties.

    Dependencies outside ``tasks`` are treated as already satisfied.
    """
    by_id = {task.id: task for task in tasks}
    indegree = {task_id: 0 for task_id in by_id}
    dependents: dict[str, list[str]] = {task_id: [] for task_id in by_id}
    for task in by_id.values():
        for dep in dict.fromkeys(task.depends_on):
            if dep in by_id:
                indegree[task.id] += 1
                dependents[dep].append(task.id)

    heap = [(by_id[task_id].seq, task_id) for task_id, degree in indegree.items() if degree == 0]
    heapq.heapify(heap)
    ordered: list[Task] = []
    while heap:
        _, task_id = heapq.heappop(heap)
        ordered.append(by_id[task_id])
        for dependent in dependents[task_id]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(heap, (by_id[dependent].seq, dependent))

    if len(ordered) != len(by_id):
        stuck = sorted(task_id for task_id, degree in indegree.items() if degree > 0)
        raise InvalidDependencyError(f"Dependency cycle among tasks: {stuck}")
    return ordered


def find_cycle(graph: dict[str, list[str]]) -> list[str] | None:
    """Return one dependency cycle in ``graph`` as a path, or ``None``."""
    visiting: set[str] = set()
    visited: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> list[str] | None:
        visiting.add(node)
        path.append(node)
        for dep in graph.get(node, []):
            if dep in visiting:
                return path[path.index(dep) :] + [dep]
            if dep not in visited:
                found = visit(dep)
                if found:
                    return found
        visiting.discard(node)
        visited.add(node)
        path.pop()
        return None

    for node in sorted(graph):
        if node not in visited:
            found = visit(node)
            if found:
                return found
    return None


class ReadinessResolver:
    def __init__(self, tracker: TaskTracker, trail_id: str) -> None:
        self.tracker = tracker
        self.trail_id = trail_id

    def tasks(self) -> list[Task]:
        return self.tracker.tasks(self.trail_id)

    def build_tasks(self, specs: list[TaskSpec], *, cycle: int) -> list[Task]:
        """Validate ``specs`` against the trail's graph and return unsaved tasks.

        Raises ``InvalidDependencyError`` for duplicate keys, unknown
        dependencies and cycles; nothing is written in that case.
        """
        existing = {task.id: task for task in self.tasks()}
        offset = sum(1 for task in existing.values() if task.cycle == cycle)
        key_to_id: dict[str, str] = {}
        for index, spec in enumerate(specs, start=offset + 1):
            if not spec.key.strip():
                raise InvalidDependencyError("Proposed task is missing an id.")
            if spec.key in key_to_id:
                raise InvalidDependencyError(f"Duplicate proposed task id: {spec.key}")
            key_to_id[spec.key] = f"{self.trail_id}.c{cycle}.t{index}"

        tasks: list[Task] = []
        for spec in specs:
            task_id = key_to_id[spec.key]
            depends_on: list[str] = []
            for dep in spec.depends_on:
                if dep in key_to_id:
                    resolved = key_to_id[dep]
                elif dep in existing:
                    resolved = dep
                else:
                    raise InvalidDependencyError(
                        f"Task '{spec.key}' depends on unknown task '{dep}'."
                    )
                if resolved not in depends_on:
                    depends_on.append(resolved)
            tasks.append(
                Task(
                    id=task_id,
                    trail_id=self.trail_id,
                    title=spec.title.strip() or spec.key,
                    description=spec.description,
                    depends_on=depends_on,
                    cycle=cycle,
                )
            )

        graph = {task_id: list(task.depends_on) for task_id, task in existing.items()}
        graph.update({task.id: list(task.depends_on) for task in tasks})
        cycle_path = find_cycle(graph)
        if cycle_path:
            raise InvalidDependencyError(
                "Proposed tasks form a dependency cycle: " + " -> ".join(cycle_path)
            )
        return tasks

    def add_tasks(self, specs: list[TaskSpec], *, cycle: int) -> list[Task]:
        tasks = self.build_tasks(specs, cycle=cycle)
        return self.tracker.insert(tasks)

    @staticmethod
    def evaluate(ordered: list[Task]) -> list[tuple[Task, TaskStatus]]:
        """Compute pending readiness changes for topologically ordered tasks."""
        status = {task.id: task.status for task in ordered}
        changes: list[tuple[Task, TaskStatus]] = []
        for task in ordered:
            current = status[task.id]
            if current not in {
                TaskStatus.PROPOSED.value,
                TaskStatus.BLOCKED.value,
                TaskStatus.READY.value,
            }:
                continue
            dep_states = [status.get(dep) for dep in task.depends_on]
            if current != TaskStatus.BLOCKED.value and any(
                state in _UNSATISFIABLE for state in dep_states
            ):
                status[task.id] = TaskStatus.BLOCKED.value
                changes.append((task, TaskStatus.BLOCKED))
            elif current != TaskStatus.READY.value and all(
                state == TaskStatus.DONE.value for state in dep_states
            ):
                status[task.id] = TaskStatus.READY.value
                changes.append((task, TaskStatus.READY))
        return changes

    def refresh(self) -> list[str]:
        """Recompute ready/blocked statuses; returns the ids that changed."""
        changed: list[str] = []
        for task, status in self.evaluate(topological_order(self.tasks())):
            note = (
                "dependencies satisfied"
                if status is TaskStatus.READY
                else "dependency failed or blocked"
            )
            self.tracker.transition(task.id, status, note=note)
            changed.append(task.id)
        if changed:
            logger.debug("readiness changed for %s", changed)
        return changed

    def ready_tasks(self) -> list[Task]:
        self.refresh()
        return [
            task
            for task in topological_order(self.tasks())
            if task.status == TaskStatus.READY.value
        ]

    def peek_ready(self) -> list[Task]:
        """Tasks that would be ready after a refresh, without recording anything."""
        ordered = topological_order(self.tasks())
        promoted = {
            task.id for task, status in self.evaluate(ordered) if status is TaskStatus.READY
        }
        return [
            task
            for task in ordered
            if task.status == TaskStatus.READY.value or task.id in promoted
        ]
