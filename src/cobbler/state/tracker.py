from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from cobbler.errors import CobblerError, InvalidTransitionError
from cobbler.state.store import StateStore, utcnow_iso

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PROPOSED = "proposed"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"
    BLOCKED = "blocked"


# in_progress -> ready only happens when recovery rolls back an in-flight task.
ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PROPOSED: {TaskStatus.READY, TaskStatus.BLOCKED},
    TaskStatus.BLOCKED: {TaskStatus.READY},
    TaskStatus.READY: {TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED},
    TaskStatus.IN_PROGRESS: {TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.READY},
    TaskStatus.DONE: set(),
    TaskStatus.FAILED: set(),
}


@dataclass(slots=True)
class Task:
    id: str
    trail_id: str
    title: str
    description: str = ""
    depends_on: list[str] = field(default_factory=list)
    status: str = TaskStatus.PROPOSED.value
    cycle: int = 0
    seq: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    result_summary: str = ""
    failure_reason: str | None = None
    commit_hash: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        return cls(
            id=str(payload["id"]),
            trail_id=str(payload["trail_id"]),
            title=str(payload.get("title", "")),
            description=str(payload.get("description", "")),
            depends_on=[str(dep) for dep in payload.get("depends_on", [])],
            status=str(payload.get("status", TaskStatus.PROPOSED.value)),
            cycle=int(payload.get("cycle", 0)),
            seq=int(payload.get("seq", 0)),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            result_summary=str(payload.get("result_summary", "")),
            failure_reason=payload.get("failure_reason"),
            commit_hash=payload.get("commit_hash"),
            history=list(payload.get("history", [])),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TaskTracker:
    """Append-mostly store of tasks keyed by id.

    Tasks are never deleted. Every status change is appended to the task's
    ``history`` with a timestamp; ``reset`` archives the whole store instead
    of truncating it.
    """

    NAMESPACE = "tasks"

    def __init__(self, store: StateStore) -> None:
        self.store = store

    @staticmethod
    def _empty() -> dict[str, Any]:
        return {"next_seq": 1, "tasks": {}}

    def _payload(self) -> dict[str, Any]:
        payload = self.store.get_json(self.NAMESPACE, default=self._empty())
        if not isinstance(payload, dict) or not isinstance(payload.get("tasks"), dict):
            return self._empty()
        return payload

    @property
    def initialized(self) -> bool:
        return self.store.path_for(self.NAMESPACE).exists()

    def init(self) -> bool:
        if self.initialized:
            return False
        self.store.set_json(self.NAMESPACE, self._empty())
        logger.info("initialized task tracker at %s", self.store.path_for(self.NAMESPACE))
        return True

    def reset(self) -> Path | None:
        archived = self.store.archive(self.NAMESPACE)
        self.store.set_json(self.NAMESPACE, self._empty())
        if archived is not None:
            logger.info("archived task history to %s", archived)
        return archived

    def tasks(self, trail_id: str | None = None) -> list[Task]:
        items = [Task.from_dict(item) for item in self._payload()["tasks"].values()]
        if trail_id is not None:
            items = [task for task in items if task.trail_id == trail_id]
        return sorted(items, key=lambda task: task.seq)

    def get(self, task_id: str) -> Task:
        raw = self._payload()["tasks"].get(task_id)
        if not isinstance(raw, dict):
            raise CobblerError(f"Unknown task: {task_id}")
        return Task.from_dict(raw)

    def insert(self, tasks: list[Task]) -> list[Task]:
        """Insert all ``tasks`` in one write, assigning creation sequence numbers."""
        if not tasks:
            return []
        inserted: list[Task] = []

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else self._empty()
            existing = result.setdefault("tasks", {})
            next_seq = int(result.get("next_seq", 1))
            inserted.clear()
            for task in tasks:
                if task.id in existing:
                    raise CobblerError(f"Task id already exists: {task.id}")
                record = Task.from_dict(task.to_dict())
                record.seq = next_seq
                next_seq += 1
                record.history.append(
                    {"from": None, "to": record.status, "at": utcnow_iso(), "note": "created"}
                )
                existing[record.id] = record.to_dict()
                inserted.append(record)
            result["next_seq"] = next_seq
            return result

        self.store.update_json(self.NAMESPACE, _updater, default=self._empty())
        return list(inserted)

    def transition(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        note: str | None = None,
        result_summary: str | None = None,
        failure_reason: str | None = None,
        commit_hash: str | None = None,
    ) -> Task:
        updated: list[Task] = []

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else self._empty()
            raw = result.get("tasks", {}).get(task_id)
            if not isinstance(raw, dict):
                raise CobblerError(f"Unknown task: {task_id}")
            task = Task.from_dict(raw)
            current = TaskStatus(task.status)
            if status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"Task {task_id} cannot move from {current.value} to {status.value}."
                )
            task.status = status.value
            if result_summary is not None:
                task.result_summary = result_summary
            if failure_reason is not None:
                task.failure_reason = failure_reason
            if commit_hash is not None:
                task.commit_hash = commit_hash
            entry: dict[str, Any] = {"from": current.value, "to": status.value, "at": utcnow_iso()}
            if note:
                entry["note"] = note
            task.history.append(entry)
            result["tasks"][task_id] = task.to_dict()
            updated[:] = [task]
            return result

        self.store.update_json(self.NAMESPACE, _updater, default=self._empty())
        logger.debug("task %s -> %s", task_id, status.value)
        return updated[0]

    def restore(self, snapshot: dict[str, str], *, note: str) -> list[str]:
        """Force task statuses back to ``snapshot`` values; returns the ids changed.

        ``in_progress`` entries in the snapshot are restored as ``ready``: the
        work they stood for was never committed.
        """
        changed: list[str] = []

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else self._empty()
            changed.clear()
            for task_id, raw in result.get("tasks", {}).items():
                if task_id not in snapshot or not isinstance(raw, dict):
                    continue
                target = snapshot[task_id]
                if target == TaskStatus.IN_PROGRESS.value:
                    target = TaskStatus.READY.value
                if raw.get("status") == target:
                    continue
                raw.setdefault("history", []).append(
                    {"from": raw.get("status"), "to": target, "at": utcnow_iso(), "note": note}
                )
                raw["status"] = target
                if target not in {TaskStatus.DONE.value, TaskStatus.FAILED.value}:
                    raw["commit_hash"] = None
                    raw["failure_reason"] = None
                changed.append(task_id)
            return result

        self.store.update_json(self.NAMESPACE, _updater, default=self._empty())
        return list(changed)

    def snapshot(self, trail_id: str) -> dict[str, str]:
        return {task.id: task.status for task in self.tasks(trail_id)}
