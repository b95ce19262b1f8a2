from __future__ import annotations

import logging
import os
import re
import shutil
import socket
import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from cobbler.config import Config
from cobbler.cycle import CycleEngine, CycleRecord
from cobbler.errors import (
    InvalidTransitionError,
    TrailBusyError,
    TrailExistsError,
    TrailNotFoundError,
)
from cobbler.git import GitClient
from cobbler.state.checkpoints import CheckpointController
from cobbler.state.store import StateStore, pid_alive, utcnow_iso
from cobbler.state.tracker import Task, TaskStatus, TaskTracker

logger = logging.getLogger(__name__)

TRAIL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class TrailState(str, Enum):
    UNINITIALIZED = "uninitialized"
    STARTED = "started"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    STOPPED = "stopped"
    RESET = "reset"


TRAIL_TRANSITIONS: dict[TrailState, set[TrailState]] = {
    TrailState.UNINITIALIZED: {TrailState.STARTED},
    TrailState.STARTED: {TrailState.RUNNING, TrailState.STOPPED, TrailState.RESET},
    TrailState.RUNNING: {TrailState.STARTED, TrailState.INTERRUPTED},
    TrailState.INTERRUPTED: {TrailState.RUNNING, TrailState.STOPPED, TrailState.RESET},
    TrailState.STOPPED: {TrailState.RESET},
    TrailState.RESET: set(),
}


@dataclass(slots=True)
class GenerationTrail:
    id: str
    name: str
    branch: str
    worktree_path: str
    base_branch: str
    state: str = TrailState.STARTED.value
    cycle_budget: int = 0
    cycles_completed: int = 0
    run_mode: str = "fixed"
    created_at: str = field(default_factory=utcnow_iso)
    order: int = 0
    checkpoint_id: str | None = None
    stopped_at: str | None = None
    merge_commit: str | None = None
    last_autocommit: str | None = None
    lease: dict[str, Any] | None = None

    @property
    def worktree(self) -> Path:
        return Path(self.worktree_path)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> GenerationTrail:
        return cls(
            id=str(payload["id"]),
            name=str(payload["name"]),
            branch=str(payload["branch"]),
            worktree_path=str(payload["worktree_path"]),
            base_branch=str(payload.get("base_branch", "main")),
            state=str(payload.get("state", TrailState.STARTED.value)),
            cycle_budget=int(payload.get("cycle_budget", 0)),
            cycles_completed=int(payload.get("cycles_completed", 0)),
            run_mode=str(payload.get("run_mode", "fixed")),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            order=int(payload.get("order", 0)),
            checkpoint_id=payload.get("checkpoint_id"),
            stopped_at=payload.get("stopped_at"),
            merge_commit=payload.get("merge_commit"),
            last_autocommit=payload.get("last_autocommit"),
            lease=payload.get("lease"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class RunReport:
    trail: GenerationTrail
    cycles: list[CycleRecord] = field(default_factory=list)


@dataclass(slots=True)
class ResumeReport:
    trail: GenerationTrail
    cycle: int
    phase: str
    recovered_tasks: list[str]
    checkpoint_id: str
    clean: bool
    forced: bool
    cycles: list[CycleRecord] = field(default_factory=list)

    def describe(self) -> str:
        status = "clean" if self.clean else "stale, forced"
        if self.phase == "complete":
            return (
                f"{self.trail.name} had already completed cycle {self.cycle} from "
                f"{self.checkpoint_id} [{status}]; no cycle left to resume"
            )
        tasks = ", ".join(self.recovered_tasks) or "none"
        return (
            f"Resumed {self.trail.name} at cycle {self.cycle} ({self.phase}) from "
            f"{self.checkpoint_id} [{status}]; recovered tasks: {tasks}"
        )


class TrailRegistry:
    """Owns trail records, their branches and worktrees, and drives cycles.

    Records live in the ``trails`` namespace as ``{"active": id, "trails":
    {id: record}}``. A trail persisted as ``running`` whose lease is no longer
    held by a live process is observed as ``interrupted``.
    """

    NAMESPACE = "trails"
    EVENTS_NAMESPACE = "events"

    def __init__(
        self,
        *,
        config: Config,
        repo_root: Path,
        git: GitClient,
        store: StateStore,
        tracker: TaskTracker,
        checkpoints: CheckpointController,
        engine: CycleEngine,
    ) -> None:
        self.config = config
        self.repo_root = repo_root.resolve()
        self.git = git
        self.store = store
        self.tracker = tracker
        self.checkpoints = checkpoints
        self.engine = engine

    # --- persistence ---------------------------------------------------

    @staticmethod
    def _empty() -> dict[str, Any]:
        return {"active": None, "trails": {}}

    def _payload(self) -> dict[str, Any]:
        payload = self.store.get_json(self.NAMESPACE, default=self._empty())
        if not isinstance(payload, dict) or not isinstance(payload.get("trails"), dict):
            return self._empty()
        return payload

    def _records(self) -> list[GenerationTrail]:
        trails = [GenerationTrail.from_dict(raw) for raw in self._payload()["trails"].values()]
        return sorted(trails, key=lambda trail: (trail.created_at, trail.order))

    def _save(self, trail: GenerationTrail, *, active: bool | None = None) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else self._empty()
            result.setdefault("trails", {})[trail.id] = trail.to_dict()
            if active is True:
                result["active"] = trail.id
            elif active is False and result.get("active") == trail.id:
                result["active"] = None
            return result

        self.store.update_json(self.NAMESPACE, _updater, default=self._empty())

    def _audit(self, event: str, trail: GenerationTrail, **details: Any) -> None:
        entry = {"event": event, "trail": trail.name, "trail_id": trail.id, "at": utcnow_iso()}
        entry.update(details)

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            events = result.get("trail_events", [])
            if not isinstance(events, list):
                events = []
            events.append(entry)
            result["trail_events"] = events[-1000:]
            return result

        self.store.update_json(self.EVENTS_NAMESPACE, _updater, default={})

    def find(self, name: str) -> GenerationTrail | None:
        """Return the non-reset trail called ``name``."""
        for trail in self._records():
            if trail.name == name and trail.state != TrailState.RESET.value:
                return trail
        return None

    def active(self) -> GenerationTrail | None:
        active_id = self._payload().get("active")
        if not active_id:
            return None
        raw = self._payload()["trails"].get(active_id)
        if not isinstance(raw, dict):
            return None
        return GenerationTrail.from_dict(raw)

    def require_active(self) -> GenerationTrail:
        trail = self.active()
        if trail is None:
            raise TrailNotFoundError("No active trail. Start one with `cobbler generator start`.")
        return trail

    # --- state ---------------------------------------------------------

    @staticmethod
    def _lease_alive(lease: dict[str, Any] | None) -> bool:
        """A lease is held while its owner lives; expiry only decides for other hosts."""
        if not isinstance(lease, dict):
            return False
        try:
            pid = int(lease.get("pid", 0))
            expires = float(lease.get("expires_epoch", 0))
        except (TypeError, ValueError):
            return False
        if pid <= 0:
            return False
        host = lease.get("host")
        if host and host != socket.gethostname():
            return expires > time.time()
        return pid_alive(pid)

    def observed_state(self, trail: GenerationTrail) -> TrailState:
        state = TrailState(trail.state)
        if state is TrailState.RUNNING and not self._lease_alive(trail.lease):
            return TrailState.INTERRUPTED
        return state

    def _transition(self, trail: GenerationTrail, target: TrailState) -> None:
        current = self.observed_state(trail)
        if target not in TRAIL_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Trail {trail.name} cannot move from {current.value} to {target.value}."
            )
        trail.state = target.value

    def lease_ttl(self) -> float:
        """Lease lifetime, never shorter than one agent call with every retry and fallback."""
        backend = self.config.backend
        retries = max(0, int(backend.max_retries))
        backends = 1 if backend.primary == backend.fallback else 2
        attempts = (retries + 1) * backends
        worst_call = attempts * (
            float(backend.timeout_seconds) + float(backend.retry_backoff_seconds) * 2**retries
        )
        return max(30.0, float(self.config.generation.lease_seconds), worst_call)

    def _new_lease(self) -> dict[str, Any]:
        return {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "heartbeat_at": utcnow_iso(),
            "expires_epoch": time.time() + self.lease_ttl(),
        }

    def _heartbeat(self, trail: GenerationTrail) -> None:
        trail.lease = self._new_lease()
        self._save(trail)

    # --- git resources -------------------------------------------------

    def exclude_runtime_dirs(self) -> None:
        for configured in (
            self.config.generation.worktrees_dir,
            self.config.cobbler.scratch_dir,
            self.config.tracker.state_dir,
        ):
            parts = Path(configured).parts
            if parts and not Path(configured).is_absolute():
                self.git.ensure_excluded(f"/{parts[0]}/")

    def _worktree_for(self, name: str) -> Path:
        return (self.repo_root / self.config.generation.worktrees_dir / name).resolve()

    def _ensure_worktree(self, trail: GenerationTrail) -> None:
        if trail.worktree.exists():
            return
        self.git.attach_worktree(trail.worktree, branch=trail.branch)

    def _autocommit(self, trail: GenerationTrail, reason: str) -> str | None:
        worktree = trail.worktree
        if not worktree.exists() or not self.git.is_dirty(worktree):
            return None
        if self.observed_state(trail) is TrailState.INTERRUPTED:
            # Uncommitted files are the crashed task's partial work; resume discards them.
            logger.info("skipping %s for interrupted trail %s", reason, trail.name)
            return None
        before = self.git.head(worktree)
        commit_hash = self.git.commit_all(f"cobbler: {reason} ({trail.name})", cwd=worktree)
        if commit_hash is None:
            return None
        trail.last_autocommit = commit_hash
        checkpoint = self.checkpoints.load(trail.id)
        if checkpoint is not None and checkpoint.commit_hash == before:
            written = self.checkpoints.write(
                trail.id,
                cycle_index=checkpoint.cycle_index,
                commit_hash=commit_hash,
                in_flight=checkpoint.in_flight,
            )
            trail.checkpoint_id = written.id
        logger.info("auto-committed %s on %s as %s", reason, trail.branch, commit_hash[:10])
        self._audit("autocommit", trail, commit=commit_hash, reason=reason)
        return commit_hash

    def _base_ref(self) -> str:
        main = self.config.project.main_branch
        if self.git.branch_exists(main):
            return main
        current = self.git.current_branch()
        logger.warning("main branch %s not found; using %s", main, current)
        return current

    # --- lifecycle -----------------------------------------------------

    def start(self, name: str) -> GenerationTrail:
        if not TRAIL_NAME_PATTERN.match(name or ""):
            raise TrailNotFoundError(f"Invalid trail name: {name!r}")
        if self.find(name) is not None:
            raise TrailExistsError(f"Trail '{name}' already exists.")
        branch = f"{self.config.generation.branch_prefix}{name}"
        if self.git.branch_exists(branch):
            raise TrailExistsError(f"Branch '{branch}' already exists.")
        worktree = self._worktree_for(name)
        if worktree.exists():
            raise TrailExistsError(f"Worktree path '{worktree}' already exists.")
        previous = self.active()
        if previous is not None and self.observed_state(previous) is TrailState.RUNNING:
            raise TrailBusyError(f"Trail '{previous.name}' is running.")

        self.exclude_runtime_dirs()
        base = self._base_ref()
        if previous is not None and previous.state not in {
            TrailState.STOPPED.value,
            TrailState.RESET.value,
        }:
            self._autocommit(previous, "auto-commit before start")
            self._save(previous)

        self.git.add_worktree(worktree, branch=branch, base_ref=base)
        trail = GenerationTrail(
            id=f"{name}-{uuid4().hex[:6]}",
            name=name,
            branch=branch,
            worktree_path=str(worktree),
            base_branch=base,
            state=TrailState.UNINITIALIZED.value,
            order=len(self._payload()["trails"]) + 1,
        )
        self._transition(trail, TrailState.STARTED)
        self.tracker.init()
        checkpoint = self.checkpoints.write(
            trail.id, cycle_index=0, commit_hash=self.git.head(worktree)
        )
        trail.checkpoint_id = checkpoint.id
        self._save(trail, active=True)
        self._audit("start", trail, branch=branch, base=base)
        logger.info("started trail %s on %s", name, branch)
        return trail

    def _cycle_count(self, cycles: int | None) -> tuple[int, str]:
        generation = self.config.generation
        if cycles is not None and cycles > 0:
            return cycles, "fixed"
        if generation.cycle_mode == "until_idle":
            return max(1, int(generation.max_cycles)), "until_idle"
        return max(1, int(generation.cycles)), "fixed"

    async def run(self, cycles: int | None = None) -> RunReport:
        trail = self.require_active()
        state = self.observed_state(trail)
        if state is TrailState.RUNNING:
            raise TrailBusyError(f"Trail '{trail.name}' is already running.")
        if state is TrailState.INTERRUPTED:
            raise InvalidTransitionError(
                f"Trail '{trail.name}' was interrupted; use `cobbler generator resume`."
            )
        self._ensure_worktree(trail)
        count, mode = self._cycle_count(cycles)
        self._transition(trail, TrailState.RUNNING)
        trail.cycle_budget = trail.cycles_completed + count
        trail.run_mode = mode
        trail.lease = self._new_lease()
        self._save(trail)
        self._audit("run", trail, cycles=count, mode=mode, budget=trail.cycle_budget)
        logger.info(
            "running %s: %d cycle(s) (%s), budget %d",
            trail.name,
            count,
            mode,
            trail.cycle_budget,
        )
        records = await self._drive(trail, resume_cycle=None)
        return RunReport(trail=trail, cycles=records)

    async def _drive(
        self, trail: GenerationTrail, *, resume_cycle: int | None
    ) -> list[CycleRecord]:
        records: list[CycleRecord] = []
        try:
            while trail.cycles_completed < trail.cycle_budget:
                cycle = trail.cycles_completed + 1
                record = await self.engine.run_cycle(
                    trail,
                    cycle,
                    skip_measure=cycle == resume_cycle,
                    heartbeat=lambda: self._heartbeat(trail),
                )
                records.append(record)
                trail.cycles_completed = cycle
                checkpoint = self.checkpoints.load(trail.id)
                trail.checkpoint_id = checkpoint.id if checkpoint else trail.checkpoint_id
                self._heartbeat(trail)
                if trail.run_mode == "until_idle" and self.engine.idle(trail, record):
                    logger.info("trail %s is idle after cycle %d", trail.name, cycle)
                    break
        except BaseException as exc:
            trail.state = TrailState.INTERRUPTED.value
            trail.lease = None
            self._save(trail)
            self._audit("interrupted", trail, error=str(exc) or type(exc).__name__)
            logger.error("trail %s interrupted: %s", trail.name, exc)
            raise
        self._transition(trail, TrailState.STARTED)
        trail.lease = None
        self._save(trail)
        self._audit("run_complete", trail, cycles_completed=trail.cycles_completed)
        return records

    async def resume(self, *, force: bool = False) -> ResumeReport:
        trail = self.require_active()
        state = self.observed_state(trail)
        if state is not TrailState.INTERRUPTED:
            raise InvalidTransitionError(
                f"Trail '{trail.name}' is {state.value}; only interrupted trails can resume."
            )
        self._ensure_worktree(trail)
        worktree = trail.worktree
        validation = self.checkpoints.validate(trail.id, self.git.head(worktree), force=force)
        checkpoint = validation.checkpoint

        # Partial work of the in-flight task was never committed.
        target = validation.head if validation.forced else checkpoint.commit_hash
        self.git.reset_hard(target, cwd=worktree)
        snapshot = dict(checkpoint.tasks)
        if validation.forced:
            for task in self.tracker.tasks(trail.id):
                if (
                    task.status == TaskStatus.DONE.value
                    and task.commit_hash
                    and self.git.is_ancestor(task.commit_hash, validation.head, cwd=worktree)
                ):
                    snapshot.pop(task.id, None)
        self.checkpoints.restore(replace(checkpoint, tasks=snapshot))
        for task in self.tracker.tasks(trail.id):
            if task.status == TaskStatus.IN_PROGRESS.value:
                self.tracker.transition(task.id, TaskStatus.READY, note="recovered in-flight task")

        trail.cycles_completed = checkpoint.cycle_index
        resume_cycle: int | None = None
        if checkpoint.in_flight:
            cycle = int(checkpoint.in_flight.get("cycle", checkpoint.cycle_index + 1))
            phase = str(checkpoint.in_flight.get("phase", "stitch"))
            resume_cycle = cycle
        elif checkpoint.cycle_index >= trail.cycle_budget:
            # The run finished its last cycle before the crash; only the state is left over.
            cycle = checkpoint.cycle_index
            phase = "complete"
        else:
            cycle = checkpoint.cycle_index + 1
            measured = any(task.cycle == cycle for task in self.tracker.tasks(trail.id))
            phase = "stitch" if measured else "measure"
            resume_cycle = cycle if measured else None

        recovered = [
            task.id
            for task in self.tracker.tasks(trail.id)
            if phase != "complete"
            and task.cycle == cycle
            and task.status == TaskStatus.READY.value
        ]
        if validation.forced:
            written = self.checkpoints.write(
                trail.id,
                cycle_index=checkpoint.cycle_index,
                commit_hash=validation.head,
                in_flight=checkpoint.in_flight,
            )
            trail.checkpoint_id = written.id
        report = ResumeReport(
            trail=trail,
            cycle=cycle,
            phase=phase,
            recovered_tasks=recovered,
            checkpoint_id=checkpoint.id,
            clean=validation.clean,
            forced=validation.forced,
        )
        logger.info("%s", report.describe())
        self._transition(trail, TrailState.RUNNING)
        trail.lease = self._new_lease()
        self._save(trail)
        self._audit(
            "resume",
            trail,
            cycle=cycle,
            phase=phase,
            checkpoint=checkpoint.id,
            forced=validation.forced,
            recovered=recovered,
        )
        report.cycles = await self._drive(trail, resume_cycle=resume_cycle)
        return report

    def checkout_active(self) -> GenerationTrail:
        trail = self.require_active()
        self._ensure_worktree(trail)
        return trail

    def _require_idle(self) -> GenerationTrail:
        trail = self.require_active()
        state = self.observed_state(trail)
        if state is TrailState.RUNNING:
            raise TrailBusyError(f"Trail '{trail.name}' is running.")
        if state is not TrailState.STARTED:
            raise InvalidTransitionError(
                f"Trail '{trail.name}' is {state.value}; resume or reset it first."
            )
        self._ensure_worktree(trail)
        return trail

    async def measure(self) -> list[Task]:
        """Run a single measure step for the active trail's next cycle."""
        trail = self._require_idle()
        cycle = trail.cycles_completed + 1
        tasks = await self.engine.measure(trail, cycle)
        self._audit("measure", trail, cycle=cycle, tasks=[task.id for task in tasks])
        return tasks

    async def stitch(self) -> dict[str, str]:
        """Stitch every ready task of the active trail outside a full cycle."""
        trail = self._require_idle()
        outcomes = await self.engine.stitch(trail, trail.cycles_completed + 1)
        checkpoint = self.checkpoints.write(
            trail.id,
            cycle_index=trail.cycles_completed,
            commit_hash=self.git.head(trail.worktree),
        )
        trail.checkpoint_id = checkpoint.id
        self._save(trail)
        self._audit("stitch", trail, outcomes=outcomes)
        return outcomes

    def stop(self, name: str | None = None) -> GenerationTrail:
        trail = self.find(name) if name else self.require_active()
        if trail is None:
            raise TrailNotFoundError(f"Trail '{name}' not found.")
        state = self.observed_state(trail)
        if state is TrailState.RUNNING:
            raise TrailBusyError(f"Trail '{trail.name}' is running.")
        in_progress = [
            task.id
            for task in self.tracker.tasks(trail.id)
            if task.status == TaskStatus.IN_PROGRESS.value
        ]
        if in_progress:
            raise TrailBusyError(
                f"Trail '{trail.name}' has tasks in progress: {', '.join(in_progress)}."
            )
        if TrailState.STOPPED not in TRAIL_TRANSITIONS[state]:
            raise InvalidTransitionError(f"Trail '{trail.name}' is {state.value}; cannot stop.")

        self._autocommit(trail, "auto-commit before stop")
        merge = self.git.merge(trail.branch, into=trail.base_branch)
        if trail.worktree.exists():
            self.git.remove_worktree(trail.worktree, force=True)
        self._transition(trail, TrailState.STOPPED)
        trail.stopped_at = utcnow_iso()
        trail.merge_commit = merge.commit_hash
        trail.lease = None
        self._save(trail, active=False)
        self._audit(
            "stop",
            trail,
            merge_commit=merge.commit_hash,
            fast_forward=merge.fast_forward,
        )
        logger.info(
            "stopped %s: merged into %s (%s)",
            trail.name,
            trail.base_branch,
            "fast-forward" if merge.fast_forward else "merge commit",
        )
        return trail

    def switch(self, name: str) -> GenerationTrail:
        target = self.find(name)
        if target is None or target.state == TrailState.STOPPED.value:
            raise TrailNotFoundError(f"Trail '{name}' not found or no longer switchable.")
        current = self.active()
        if current is not None and self.observed_state(current) is TrailState.RUNNING:
            raise TrailBusyError(f"Trail '{current.name}' is running.")
        if current is not None and current.id != target.id:
            self._autocommit(current, "auto-commit before switch")
            self._save(current)
        self._ensure_worktree(target)
        self._save(target, active=True)
        self._audit(
            "switch",
            target,
            previous=current.name if current else None,
            head=self.git.head(target.worktree),
        )
        logger.info("active trail is now %s", target.name)
        return target

    def list_trails(self) -> list[GenerationTrail]:
        trails: list[GenerationTrail] = []
        for trail in self._records():
            if trail.state == TrailState.RESET.value:
                continue
            trail.state = self.observed_state(trail).value
            trails.append(trail)
        return trails

    def reset(self, name: str) -> bool:
        """Destroy a trail's branch, worktree and artifacts; False if absent."""
        trail = self.find(name)
        if trail is None:
            logger.info("trail %s not found; nothing to reset", name)
            return False
        if self.observed_state(trail) is TrailState.RUNNING:
            raise TrailBusyError(f"Trail '{trail.name}' is running.")

        registered = set(self.git.worktrees().values())
        if trail.worktree.resolve() in registered:
            self.git.remove_worktree(trail.worktree, force=True)
        elif trail.worktree.exists():
            shutil.rmtree(trail.worktree)
        self.git.prune_worktrees()
        if self.git.branch_exists(trail.branch):
            self.git.delete_branch(trail.branch, force=True)
        scratch = self.engine.scratch_dir(trail)
        if scratch.exists():
            shutil.rmtree(scratch)
        self.checkpoints.delete(trail.id)

        self._transition(trail, TrailState.RESET)
        trail.lease = None
        trail.checkpoint_id = None
        self._save(trail, active=False)
        self._audit("reset", trail)
        logger.info("reset trail %s", trail.name)
        return True

    def reset_all(self) -> list[str]:
        names: list[str] = []
        for trail in self.list_trails():
            if self.reset(trail.name):
                names.append(trail.name)
        return names
