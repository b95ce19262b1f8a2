"""One generation cycle: measure, then stitch to a fixed point.

Measure asks the measure agent for new tasks and inserts them all-or-nothing.
Stitch repeatedly takes the ready set in dependency order, runs the stitch
agent for each task, and commits each result as its own git commit followed
by a checkpoint. Commit boundaries are the unit of recovery.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import logging
import re
import shutil
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cobbler.agents import MeasureAgent, StitchAgent
from cobbler.backends.base import BackendExecutionError
from cobbler.config import Config
from cobbler.errors import (
    CobblerError,
    GitOperationError,
    InvalidDependencyError,
    MeasureError,
    TaskExecutionFailure,
)
from cobbler.git import GitClient
from cobbler.resolver import ReadinessResolver, TaskSpec
from cobbler.state.checkpoints import CheckpointController
from cobbler.state.store import StateStore, utcnow_iso
from cobbler.state.tracker import Task, TaskStatus, TaskTracker

if TYPE_CHECKING:
    from cobbler.trails import GenerationTrail

logger = logging.getLogger(__name__)

FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL)
FAILURE_VERDICTS = {"failure", "failed", "error"}
MAX_SOURCE_ENTRIES = 400


@dataclass(slots=True)
class CycleRecord:
    index: int
    trail_id: str
    proposed: list[str] = field(default_factory=list)
    outcomes: dict[str, str] = field(default_factory=dict)
    started_at: str = field(default_factory=utcnow_iso)
    ended_at: str | None = None
    status: str = "complete"
    error: str | None = None
    resumed: bool = False

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CycleRecord:
        return cls(
            index=int(payload["index"]),
            trail_id=str(payload["trail_id"]),
            proposed=list(payload.get("proposed", [])),
            outcomes=dict(payload.get("outcomes", {})),
            started_at=str(payload.get("started_at") or utcnow_iso()),
            ended_at=payload.get("ended_at"),
            status=str(payload.get("status", "complete")),
            error=payload.get("error"),
            resumed=bool(payload.get("resumed", False)),
        )


@dataclass(slots=True)
class StitchVerdict:
    success: bool
    summary: str
    files: list[tuple[str, str]] = field(default_factory=list)


def _json_candidates(content: str) -> list[str]:
    candidates = [match.strip() for match in FENCED_JSON_PATTERN.findall(content)]
    stripped = content.strip()
    if stripped:
        candidates.append(stripped)
    for opener, closer in (("{", "}"), ("[", "]")):
        start = stripped.find(opener)
        end = stripped.rfind(closer)
        if start != -1 and end > start:
            candidates.append(stripped[start : end + 1])
    return candidates


def _last_json_object(content: str) -> dict[str, Any] | None:
    """Return the last top-level JSON object embedded in ``content``."""
    decoder = json.JSONDecoder()
    found: dict[str, Any] | None = None
    index = content.find("{")
    while index != -1:
        try:
            parsed, end = decoder.raw_decode(content, index)
        except json.JSONDecodeError:
            index = content.find("{", index + 1)
            continue
        if isinstance(parsed, dict):
            found = parsed
        index = content.find("{", end)
    return found


def parse_measure_response(content: str, *, max_tasks: int) -> list[TaskSpec]:
    payload: Any = None
    for candidate in _json_candidates(content):
        try:
            payload = json.loads(candidate)
            break
        except json.JSONDecodeError:
            continue
    else:
        raise MeasureError("Measure response did not contain valid JSON.")

    if isinstance(payload, dict):
        payload = payload.get("tasks")
    if not isinstance(payload, list):
        raise MeasureError("Measure response must be a list of tasks or {\"tasks\": [...]}.")
    if len(payload) > max_tasks:
        raise MeasureError(f"Measure proposed {len(payload)} tasks; the limit is {max_tasks}.")

    specs: list[TaskSpec] = []
    for index, item in enumerate(payload, start=1):
        if not isinstance(item, dict):
            raise MeasureError(f"Proposed task #{index} is not an object.")
        title = str(item.get("title") or "").strip()
        if not title:
            raise MeasureError(f"Proposed task #{index} has no title.")
        depends_on = item.get("depends_on", [])
        if not isinstance(depends_on, list):
            raise MeasureError(f"Proposed task #{index} has a non-list depends_on.")
        specs.append(
            TaskSpec(
                key=str(item.get("id") or f"task-{index}"),
                title=title,
                description=str(item.get("description") or ""),
                depends_on=[str(dep) for dep in depends_on],
            )
        )
    return specs


def parse_stitch_response(content: str) -> StitchVerdict:
    payload = _last_json_object(content)
    if payload is None or "status" not in payload:
        # No verdict: the agent edited the worktree in place.
        return StitchVerdict(success=bool(content.strip()), summary=content.strip()[-2000:])

    status = str(payload.get("status", "")).strip().lower()
    summary = str(payload.get("summary") or "").strip()
    files: list[tuple[str, str]] = []
    raw_files = payload.get("files") or []
    if isinstance(raw_files, list):
        for item in raw_files:
            if isinstance(item, dict) and isinstance(item.get("path"), str):
                files.append((item["path"], str(item.get("content", ""))))
    return StitchVerdict(success=status not in FAILURE_VERDICTS, summary=summary, files=files)


def matches_glob(path: str, pattern: str) -> bool:
    if fnmatch.fnmatch(path, pattern):
        return True
    return "**/" in pattern and fnmatch.fnmatch(path, pattern.replace("**/", ""))


class CycleEngine:
    CYCLES_NAMESPACE = "cycles"

    def __init__(
        self,
        *,
        config: Config,
        repo_root: Path,
        git: GitClient,
        store: StateStore,
        tracker: TaskTracker,
        checkpoints: CheckpointController,
        measure_agent: MeasureAgent,
        stitch_agent: StitchAgent,
    ) -> None:
        self.config = config
        self.repo_root = repo_root.resolve()
        self.git = git
        self.store = store
        self.tracker = tracker
        self.checkpoints = checkpoints
        self.measure_agent = measure_agent
        self.stitch_agent = stitch_agent
        self._commit_lock = asyncio.Lock()

    # --- context -------------------------------------------------------

    def scratch_dir(self, trail: GenerationTrail) -> Path:
        return self.repo_root / self.config.cobbler.scratch_dir / trail.name

    def source_summary(self, worktree: Path) -> list[dict[str, Any]]:
        summary: list[dict[str, Any]] = []
        for rel_path in self.git.ls_files(worktree):
            if not any(matches_glob(rel_path, glob) for glob in self.config.project.source_globs):
                continue
            try:
                text = (worktree / rel_path).read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            summary.append({"path": rel_path, "lines": len(text.splitlines())})
            if len(summary) >= MAX_SOURCE_ENTRIES:
                break
        return summary

    def documentation(self, worktree: Path) -> list[dict[str, str]]:
        budget = max(0, int(self.config.cobbler.max_context_chars))
        docs: list[dict[str, str]] = []
        for rel_path in self.git.ls_files(worktree):
            if budget <= 0:
                break
            if not any(matches_glob(rel_path, glob) for glob in self.config.project.doc_globs):
                continue
            try:
                text = (worktree / rel_path).read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            excerpt = text[:budget]
            budget -= len(excerpt)
            docs.append({"path": rel_path, "content": excerpt})
        return docs

    @staticmethod
    def _task_view(task: Task) -> dict[str, Any]:
        view: dict[str, Any] = {
            "id": task.id,
            "title": task.title,
            "status": task.status,
            "cycle": task.cycle,
            "depends_on": list(task.depends_on),
        }
        if task.failure_reason:
            view["failure_reason"] = task.failure_reason
        if task.result_summary:
            view["result_summary"] = task.result_summary[:300]
        return view

    def measure_context(self, trail: GenerationTrail, cycle: int) -> dict[str, Any]:
        worktree = trail.worktree
        return {
            "trail": {"id": trail.id, "name": trail.name, "branch": trail.branch},
            "cycle": cycle,
            "source_summary": self.source_summary(worktree),
            "documentation": self.documentation(worktree),
            "tasks": [self._task_view(task) for task in self.tracker.tasks(trail.id)],
            "limits": {"max_tasks": int(self.config.cobbler.max_measure_tasks)},
        }

    def stitch_context(self, trail: GenerationTrail, task: Task) -> dict[str, Any]:
        dependencies = []
        for dep in task.depends_on:
            try:
                dependencies.append(self._task_view(self.tracker.get(dep)))
            except CobblerError:
                continue
        return {
            "trail": {"id": trail.id, "name": trail.name, "branch": trail.branch},
            "task": {
                "id": task.id,
                "title": task.title,
                "description": task.description,
                "cycle": task.cycle,
            },
            "dependencies": dependencies,
        }

    @staticmethod
    def measure_instruction(cycle: int) -> str:
        return (
            f"Measure the project for cycle {cycle} and propose the next tasks as JSON."
        )

    @staticmethod
    def stitch_instruction(task: Task) -> str:
        return f"Implement task {task.id}: {task.title}\n\n{task.description}".strip()

    def render_measure_prompt(self, trail: GenerationTrail) -> str:
        cycle = trail.cycles_completed + 1
        return self.measure_agent.render(
            self.measure_instruction(cycle), self.measure_context(trail, cycle)
        )

    def render_stitch_prompt(self, trail: GenerationTrail) -> str:
        ready = ReadinessResolver(self.tracker, trail.id).peek_ready()
        if ready:
            task = ready[0]
        else:
            task = Task(
                id="<task-id>",
                trail_id=trail.id,
                title="<task title>",
                description="<task description>",
            )
        return self.stitch_agent.render(
            self.stitch_instruction(task), self.stitch_context(trail, task)
        )

    # --- cycle records -------------------------------------------------

    def cycles(self, trail_id: str) -> list[CycleRecord]:
        payload = self.store.get_json(self.CYCLES_NAMESPACE, default={})
        records = payload.get(trail_id, []) if isinstance(payload, dict) else []
        return [CycleRecord.from_dict(item) for item in records if isinstance(item, dict)]

    def _save_cycle(self, record: CycleRecord) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            records = [
                item
                for item in result.get(record.trail_id, [])
                if isinstance(item, dict) and int(item.get("index", -1)) != record.index
            ]
            records.append(asdict(record))
            records.sort(key=lambda item: int(item["index"]))
            result[record.trail_id] = records
            return result

        self.store.update_json(self.CYCLES_NAMESPACE, _updater, default={})

    def _write_artifact(self, trail: GenerationTrail, name: str, content: str) -> None:
        target = self.scratch_dir(trail)
        target.mkdir(parents=True, exist_ok=True)
        (target / name).write_text(content + "\n", encoding="utf-8")

    # --- measure -------------------------------------------------------

    async def measure(self, trail: GenerationTrail, cycle: int) -> list[Task]:
        context = self.measure_context(trail, cycle)
        try:
            response = await self.measure_agent.run(
                self.measure_instruction(cycle),
                context,
                working_directory=trail.worktree,
            )
        except BackendExecutionError as exc:
            raise MeasureError(f"Measure agent failed for cycle {cycle}: {exc}") from exc

        self._write_artifact(trail, f"measure-c{cycle}.md", response.content)
        specs = parse_measure_response(
            response.content, max_tasks=int(self.config.cobbler.max_measure_tasks)
        )
        tasks = ReadinessResolver(self.tracker, trail.id).add_tasks(specs, cycle=cycle)
        logger.info(
            "measure cycle %s on %s proposed %d task(s): %s",
            cycle,
            trail.name,
            len(tasks),
            ", ".join(task.id for task in tasks) or "-",
        )
        return tasks

    # --- stitch --------------------------------------------------------

    def _apply_files(self, worktree: Path, task: Task, files: list[tuple[str, str]]) -> None:
        root = worktree.resolve()
        targets: list[tuple[Path, str]] = []
        for rel_path, content in files:
            target = (root / rel_path).resolve()
            if target == root or not target.is_relative_to(root) or ".git" in target.relative_to(
                root
            ).parts:
                raise TaskExecutionFailure(task.id, f"change set path escapes worktree: {rel_path}")
            targets.append((target, content))
        # Nothing is written until every path has been checked.
        for target, content in targets:
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content, encoding="utf-8")
            except OSError as exc:
                raise TaskExecutionFailure(task.id, f"cannot write {target}: {exc}") from exc

    def _agent_directory(self, trail: GenerationTrail, task: Task, isolated: bool) -> Path:
        if not isolated:
            return trail.worktree
        directory = self.scratch_dir(trail) / "agents" / task.id
        if directory.exists():
            shutil.rmtree(directory)
        directory.mkdir(parents=True)
        return directory

    async def _invoke_stitch(
        self, trail: GenerationTrail, task: Task, *, isolated: bool
    ) -> StitchVerdict:
        try:
            response = await self.stitch_agent.run(
                self.stitch_instruction(task),
                self.stitch_context(trail, task),
                working_directory=self._agent_directory(trail, task, isolated),
            )
        except BackendExecutionError as exc:
            raise TaskExecutionFailure(task.id, str(exc)) from exc
        self._write_artifact(trail, f"{task.id}.md", response.content)
        verdict = parse_stitch_response(response.content)
        if not verdict.success:
            raise TaskExecutionFailure(task.id, verdict.summary or "agent reported failure")
        return verdict

    async def _execute_task(
        self, trail: GenerationTrail, task: Task, cycle: int, *, isolated: bool
    ) -> str:
        worktree = trail.worktree
        self.tracker.transition(task.id, TaskStatus.IN_PROGRESS, note=f"stitch cycle {cycle}")
        base_head = self.git.head(worktree)
        try:
            verdict = await self._invoke_stitch(trail, task, isolated=isolated)
            async with self._commit_lock:
                self._apply_files(worktree, task, verdict.files)
                try:
                    commit_hash = self.git.commit_all(
                        f"cobbler({task.id}): {task.title}",
                        cwd=worktree,
                        allow_empty=True,
                    )
                except GitOperationError:
                    logger.error("commit failed for %s; aborting cycle %s", task.id, cycle)
                    raise
                self.tracker.transition(
                    task.id,
                    TaskStatus.DONE,
                    result_summary=verdict.summary[:4000],
                    commit_hash=commit_hash,
                )
                self.checkpoints.write(
                    trail.id,
                    cycle_index=cycle - 1,
                    commit_hash=commit_hash or self.git.head(worktree),
                    in_flight={"cycle": cycle, "phase": "stitch"},
                )
            logger.info("stitched %s (%s)", task.id, (commit_hash or "")[:10])
            return TaskStatus.DONE.value
        except TaskExecutionFailure as exc:
            async with self._commit_lock:
                # Isolated tasks share the worktree, so roll back to the latest commit only.
                target = self.git.head(worktree) if isolated else base_head
                self.git.reset_hard(target, cwd=worktree)
                self.tracker.transition(task.id, TaskStatus.FAILED, failure_reason=exc.reason)
                self.checkpoints.write(
                    trail.id,
                    cycle_index=cycle - 1,
                    commit_hash=self.git.head(worktree),
                    in_flight={"cycle": cycle, "phase": "stitch"},
                )
            logger.warning("task %s failed: %s", task.id, exc.reason)
            return TaskStatus.FAILED.value

    async def stitch(
        self,
        trail: GenerationTrail,
        cycle: int,
        *,
        heartbeat: Callable[[], None] | None = None,
    ) -> dict[str, str]:
        """Run ready tasks until no further task becomes ready."""
        resolver = ReadinessResolver(self.tracker, trail.id)
        max_parallel = max(1, int(self.config.generation.max_parallel_tasks))
        outcomes: dict[str, str] = {}
        while True:
            ready = resolver.ready_tasks()
            if not ready:
                break
            if max_parallel == 1:
                for task in ready:
                    if heartbeat is not None:
                        heartbeat()
                    outcomes[task.id] = await self._execute_task(
                        trail, task, cycle, isolated=False
                    )
                continue

            if heartbeat is not None:
                heartbeat()
            semaphore = asyncio.Semaphore(max_parallel)

            async def _bounded(task: Task) -> tuple[str, str]:
                async with semaphore:
                    return task.id, await self._execute_task(trail, task, cycle, isolated=True)

            for task_id, outcome in await asyncio.gather(*(_bounded(task) for task in ready)):
                outcomes[task_id] = outcome
            if heartbeat is not None:
                heartbeat()
        return outcomes

    # --- cycle ---------------------------------------------------------

    async def run_cycle(
        self,
        trail: GenerationTrail,
        cycle: int,
        *,
        skip_measure: bool = False,
        heartbeat: Callable[[], None] | None = None,
    ) -> CycleRecord:
        """Run cycle ``cycle``; ``skip_measure`` resumes a cycle whose measure committed."""
        record = CycleRecord(index=cycle, trail_id=trail.id, resumed=skip_measure)
        for previous in self.cycles(trail.id):
            if previous.index == cycle:
                record.started_at = previous.started_at
        logger.info("cycle %s on %s started", cycle, trail.name)

        if not skip_measure:
            if heartbeat is not None:
                heartbeat()
            try:
                await self.measure(trail, cycle)
            except (MeasureError, InvalidDependencyError) as exc:
                self._finish_cycle(record, status="failed", error=str(exc))
                raise
            self.checkpoints.write(
                trail.id,
                cycle_index=cycle - 1,
                commit_hash=self.git.head(trail.worktree),
                in_flight={"cycle": cycle, "phase": "stitch"},
            )

        try:
            outcomes = await self.stitch(trail, cycle, heartbeat=heartbeat)
        except GitOperationError as exc:
            self._finish_cycle(record, status="failed", error=str(exc))
            raise

        for task in self.tracker.tasks(trail.id):
            if task.cycle == cycle and task.status in {
                TaskStatus.DONE.value,
                TaskStatus.FAILED.value,
            }:
                outcomes.setdefault(task.id, task.status)
        record.outcomes = outcomes
        failed = any(outcome == TaskStatus.FAILED.value for outcome in outcomes.values())
        status = "partial" if failed or skip_measure else "complete"
        self._finish_cycle(record, status=status)
        self.checkpoints.write(
            trail.id,
            cycle_index=cycle,
            commit_hash=self.git.head(trail.worktree),
            in_flight=None,
        )
        logger.info(
            "cycle %s on %s %s: %d done, %d failed",
            cycle,
            trail.name,
            status,
            sum(1 for outcome in outcomes.values() if outcome == TaskStatus.DONE.value),
            sum(1 for outcome in outcomes.values() if outcome == TaskStatus.FAILED.value),
        )
        return record

    def _finish_cycle(self, record: CycleRecord, *, status: str, error: str | None = None) -> None:
        record.proposed = [
            task.id for task in self.tracker.tasks(record.trail_id) if task.cycle == record.index
        ]
        record.status = status
        record.error = error
        record.ended_at = utcnow_iso()
        self._save_cycle(record)

    def idle(self, trail: GenerationTrail, record: CycleRecord) -> bool:
        """True when a cycle proposed nothing and nothing is left to run."""
        if record.proposed:
            return False
        return not ReadinessResolver(self.tracker, trail.id).peek_ready()
