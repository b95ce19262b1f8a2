from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from cobbler.errors import StaleCheckpoint, StateCorruptionError
from cobbler.state.store import StateStore, utcnow_iso
from cobbler.state.tracker import TaskTracker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Checkpoint:
    trail_id: str
    cycle_index: int
    commit_hash: str
    tasks: dict[str, str] = field(default_factory=dict)
    in_flight: dict[str, Any] | None = None
    sequence: int = 0
    written_at: str = field(default_factory=utcnow_iso)

    @property
    def id(self) -> str:
        return f"ckpt-{self.trail_id}-{self.sequence:04d}"

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Checkpoint:
        try:
            return cls(
                trail_id=str(payload["trail_id"]),
                cycle_index=int(payload["cycle_index"]),
                commit_hash=str(payload["commit_hash"]),
                tasks={str(key): str(value) for key, value in payload.get("tasks", {}).items()},
                in_flight=payload.get("in_flight"),
                sequence=int(payload.get("sequence", 0)),
                written_at=str(payload.get("written_at") or utcnow_iso()),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise StateCorruptionError(f"Unreadable checkpoint record: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["id"] = self.id
        return payload


@dataclass(slots=True)
class CheckpointValidation:
    checkpoint: Checkpoint
    head: str
    clean: bool
    forced: bool


class CheckpointController:
    """Persists one checkpoint per trail and validates it on resume."""

    NAMESPACE = "checkpoints"

    def __init__(self, store: StateStore, tracker: TaskTracker) -> None:
        self.store = store
        self.tracker = tracker

    def _records(self) -> dict[str, Any]:
        payload = self.store.get_json(self.NAMESPACE, default={})
        if not isinstance(payload, dict):
            raise StateCorruptionError("Checkpoint store is not a mapping.")
        return payload

    def load(self, trail_id: str) -> Checkpoint | None:
        raw = self._records().get(trail_id)
        if raw is None:
            return None
        if not isinstance(raw, dict):
            raise StateCorruptionError(f"Checkpoint for trail {trail_id} is not a record.")
        return Checkpoint.from_dict(raw)

    def write(
        self,
        trail_id: str,
        *,
        cycle_index: int,
        commit_hash: str,
        in_flight: dict[str, Any] | None = None,
    ) -> Checkpoint:
        written: list[Checkpoint] = []
        tasks = self.tracker.snapshot(trail_id)

        def _updater(payload: Any) -> dict[str, Any]:
            records = payload if isinstance(payload, dict) else {}
            previous = records.get(trail_id)
            sequence = int(previous.get("sequence", 0)) + 1 if isinstance(previous, dict) else 1
            checkpoint = Checkpoint(
                trail_id=trail_id,
                cycle_index=cycle_index,
                commit_hash=commit_hash,
                tasks=tasks,
                in_flight=in_flight,
                sequence=sequence,
            )
            records[trail_id] = checkpoint.to_dict()
            written[:] = [checkpoint]
            return records

        self.store.update_json(self.NAMESPACE, _updater, default={})
        checkpoint = written[0]
        logger.debug(
            "checkpoint %s cycle=%s head=%s in_flight=%s",
            checkpoint.id,
            cycle_index,
            commit_hash[:10],
            in_flight,
        )
        return checkpoint

    def delete(self, trail_id: str) -> bool:
        removed: list[bool] = [False]

        def _updater(payload: Any) -> dict[str, Any]:
            records = payload if isinstance(payload, dict) else {}
            removed[0] = records.pop(trail_id, None) is not None
            return records

        self.store.update_json(self.NAMESPACE, _updater, default={})
        return removed[0]

    def validate(self, trail_id: str, head: str, *, force: bool = False) -> CheckpointValidation:
        checkpoint = self.load(trail_id)
        if checkpoint is None:
            raise StateCorruptionError(f"No checkpoint recorded for trail {trail_id}.")
        if checkpoint.commit_hash == head:
            return CheckpointValidation(checkpoint=checkpoint, head=head, clean=True, forced=False)
        if not force:
            raise StaleCheckpoint(
                f"Checkpoint {checkpoint.id} expects HEAD {checkpoint.commit_hash[:10]} but the "
                f"worktree is at {head[:10]}. Reset the trail or resume with --force.",
                expected=checkpoint.commit_hash,
                actual=head,
            )
        logger.warning(
            "forcing resume of %s past stale checkpoint %s (%s != %s)",
            trail_id,
            checkpoint.id,
            checkpoint.commit_hash[:10],
            head[:10],
        )
        return CheckpointValidation(checkpoint=checkpoint, head=head, clean=False, forced=True)

    def restore(self, checkpoint: Checkpoint) -> list[str]:
        """Replay the checkpoint's task snapshot into the tracker."""
        return self.tracker.restore(checkpoint.tasks, note=f"restored from {checkpoint.id}")
