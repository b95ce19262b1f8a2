from __future__ import annotations

import asyncio
import inspect
import logging
import re
import shutil
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from cobbler.agents import MeasureAgent, StitchAgent
from cobbler.analyzer import AnalysisReport, ConsistencyAnalyzer
from cobbler.backends import (
    AgentBackend,
    ClaudeCodeBackend,
    CodexBackend,
    ResilientBackend,
    RetryPolicy,
)
from cobbler.config import DEFAULT_CONFIG_FILE, BackendName, Config
from cobbler.cycle import CycleEngine
from cobbler.errors import GitOperationError, TrailBusyError
from cobbler.git import GitClient
from cobbler.state import CheckpointController, StateStore, TaskTracker
from cobbler.stats import LocReport, TokenReport, count_loc, count_tokens
from cobbler.trails import TrailRegistry, TrailState

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    INIT = "init"
    FULL_RESET = "reset"
    ANALYZE = "analyze"
    TAG = "tag"
    SCAFFOLD_POP = "scaffold.pop"
    GENERATOR_START = "generator.start"
    GENERATOR_RUN = "generator.run"
    GENERATOR_RESUME = "generator.resume"
    GENERATOR_STOP = "generator.stop"
    GENERATOR_LIST = "generator.list"
    GENERATOR_SWITCH = "generator.switch"
    GENERATOR_RESET = "generator.reset"
    COBBLER_MEASURE = "cobbler.measure"
    COBBLER_STITCH = "cobbler.stitch"
    COBBLER_RESET = "cobbler.reset"
    TRACKER_INIT = "tracker.init"
    TRACKER_RESET = "tracker.reset"
    PROMPT_MEASURE = "prompt.measure"
    PROMPT_STITCH = "prompt.stitch"
    STATS_LOC = "stats.loc"
    STATS_TOKENS = "stats.tokens"


@dataclass(slots=True)
class InitResult:
    repo_root: Path
    state_dir: Path
    tracker_created: bool


@dataclass(slots=True)
class FullResetResult:
    trails: list[str]
    archived_tasks: Path | None


@dataclass(slots=True)
class TagResult:
    name: str
    commit: str


@dataclass(slots=True)
class ScaffoldPopResult:
    target: Path
    removed: list[Path]


RELEASE_TAG_PATTERN = re.compile(r"^v0\.(\d{8})\.(\d+)$")


def next_release_tag(existing: Iterable[str], today: date) -> str:
    """Return the next ``v0.YYYYMMDD.N`` tag; N counts from 0 within a day."""
    stamp = today.strftime("%Y%m%d")
    serial = 0
    for tag in existing:
        match = RELEASE_TAG_PATTERN.match(tag)
        if match is None or match.group(1) != stamp:
            continue
        serial = max(serial, int(match.group(2)) + 1)
    return f"v0.{stamp}.{serial}"


def _build_single_backend(backend_name: BackendName, repo_root: Path) -> AgentBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root)


class Orchestrator:
    """Owns every storage handle for one repository and routes operations.

    ``backend`` replaces the configured agent CLIs; it is still wrapped in
    the retry/timeout policy from ``config.backend``.
    """

    def __init__(
        self,
        config: Config,
        repo_root: Path,
        backend: AgentBackend | None = None,
    ) -> None:
        self.config = config
        self.repo_root = repo_root.resolve()
        self.git = GitClient(self.repo_root)
        self.store = StateStore(self.repo_root / config.tracker.state_dir)
        self.tracker = TaskTracker(self.store)
        self.checkpoints = CheckpointController(self.store, self.tracker)
        self.backend = self._build_backend(backend)
        self.engine = CycleEngine(
            config=config,
            repo_root=self.repo_root,
            git=self.git,
            store=self.store,
            tracker=self.tracker,
            checkpoints=self.checkpoints,
            measure_agent=MeasureAgent(self.backend, model=config.agents.measure_model),
            stitch_agent=StitchAgent(self.backend, model=config.agents.stitch_model),
        )
        self.trails = TrailRegistry(
            config=config,
            repo_root=self.repo_root,
            git=self.git,
            store=self.store,
            tracker=self.tracker,
            checkpoints=self.checkpoints,
            engine=self.engine,
        )
        self._handlers: dict[Operation, Callable[..., Any]] = {
            Operation.INIT: self.init,
            Operation.FULL_RESET: self.full_reset,
            Operation.ANALYZE: self.analyze,
            Operation.TAG: self.tag,
            Operation.SCAFFOLD_POP: self.scaffold_pop,
            Operation.GENERATOR_START: self.trails.start,
            Operation.GENERATOR_RUN: self.trails.run,
            Operation.GENERATOR_RESUME: self.trails.resume,
            Operation.GENERATOR_STOP: self.trails.stop,
            Operation.GENERATOR_LIST: self.trails.list_trails,
            Operation.GENERATOR_SWITCH: self.trails.switch,
            Operation.GENERATOR_RESET: self.trails.reset,
            Operation.COBBLER_MEASURE: self.trails.measure,
            Operation.COBBLER_STITCH: self.trails.stitch,
            Operation.COBBLER_RESET: self.reset_scratch,
            Operation.TRACKER_INIT: self.tracker.init,
            Operation.TRACKER_RESET: self.reset_tracker,
            Operation.PROMPT_MEASURE: self.measure_prompt,
            Operation.PROMPT_STITCH: self.stitch_prompt,
            Operation.STATS_LOC: self.loc,
            Operation.STATS_TOKENS: self.tokens,
        }

    def _build_backend(self, injected: AgentBackend | None) -> ResilientBackend:
        settings = self.config.backend
        if injected is not None:
            primary_name = fallback_name = "injected"
            primary = fallback = injected
        else:
            primary_name, fallback_name = settings.primary, settings.fallback
            primary = _build_single_backend(settings.primary, self.repo_root)
            fallback = _build_single_backend(settings.fallback, self.repo_root)
        policy = RetryPolicy(
            max_retries=max(0, int(settings.max_retries)),
            backoff_seconds=max(0.0, float(settings.retry_backoff_seconds)),
            timeout_seconds=max(0.01, float(settings.timeout_seconds)),
        )
        return ResilientBackend(
            primary_name=primary_name,
            primary_backend=primary,
            fallback_name=fallback_name,
            fallback_backend=fallback,
            retry_policy=policy,
            event_hook=self.store.record_event,
        )

    def dispatch(self, operation: Operation, /, **kwargs: Any) -> Any:
        operation = Operation(operation)
        handler = self._handlers[operation]
        logger.debug("dispatch %s %s", operation.value, kwargs)
        result = handler(**kwargs)
        if inspect.isawaitable(result):
            return asyncio.run(result)
        return result

    # --- top level -----------------------------------------------------

    def init(self) -> InitResult:
        if not self.git.is_repo():
            raise GitOperationError(f"{self.repo_root} is not a git repository.")
        self.trails.exclude_runtime_dirs()
        created = self.tracker.init()
        logger.info("initialized cobbler in %s", self.repo_root)
        return InitResult(
            repo_root=self.repo_root,
            state_dir=self.store.state_dir,
            tracker_created=created,
        )

    def _ensure_not_running(self) -> None:
        active = self.trails.active()
        if active is not None and self.trails.observed_state(active) is TrailState.RUNNING:
            raise TrailBusyError(f"Trail '{active.name}' is running.")

    def full_reset(self) -> FullResetResult:
        self._ensure_not_running()
        names = self.trails.reset_all()
        archived = self.tracker.reset()
        self.reset_scratch()
        logger.info("full reset: %d trail(s) removed", len(names))
        return FullResetResult(trails=names, archived_tasks=archived)

    def analyze(self) -> AnalysisReport:
        return ConsistencyAnalyzer(self.config, self.repo_root, self.tracker).analyze()

    def tag(self) -> TagResult:
        """Tag the main branch with the next documentation release tag."""
        main = self.config.project.main_branch
        ref = main if self.git.branch_exists(main) else "HEAD"
        name = next_release_tag(self.git.tags("v0.*"), datetime.now(UTC).date())
        commit = self.git.create_tag(name, ref=ref, message=f"Documentation release {name}")
        logger.info("tagged %s at %s", name, commit)
        return TagResult(name=name, commit=commit)

    def scaffold_pop(self, target: Path | str | None = None) -> ScaffoldPopResult:
        """Remove the config file and runtime directories from ``target``.

        Popping the repository itself is refused while any trail still holds
        unmerged work; stop or reset those trails first.
        """
        root = self.repo_root if target is None else (self.repo_root / target).resolve()
        own_repo = root == self.repo_root
        if own_repo:
            holding = {
                TrailState.STARTED.value,
                TrailState.RUNNING.value,
                TrailState.INTERRUPTED.value,
            }
            live = [trail.name for trail in self.trails.list_trails() if trail.state in holding]
            if live:
                raise TrailBusyError(
                    f"Trail(s) {', '.join(live)} still active; stop or reset them first."
                )

        removed: list[Path] = []
        config_file = root / DEFAULT_CONFIG_FILE
        if config_file.is_file():
            config_file.unlink()
            removed.append(config_file)
        for configured in (
            self.config.generation.worktrees_dir,
            self.config.cobbler.scratch_dir,
            self.config.tracker.state_dir,
        ):
            path = root / configured
            if path.is_dir():
                shutil.rmtree(path)
                removed.append(path)
                # A now-empty parent such as .cobbler/ goes too.
                parent = path.parent
                if parent != root and parent.is_dir() and not any(parent.iterdir()):
                    parent.rmdir()
                    removed.append(parent)
        if own_repo and self.git.is_repo():
            self.git.prune_worktrees()
        logger.info("scaffold pop removed %d path(s) from %s", len(removed), root)
        return ScaffoldPopResult(target=root, removed=removed)

    # --- cobbler / tracker ---------------------------------------------

    def reset_scratch(self) -> bool:
        scratch = self.repo_root / self.config.cobbler.scratch_dir
        if not scratch.exists():
            return False
        shutil.rmtree(scratch)
        logger.info("removed scratch directory %s", scratch)
        return True

    def reset_tracker(self) -> Path | None:
        self._ensure_not_running()
        return self.tracker.reset()

    # --- prompts and stats ---------------------------------------------

    def measure_prompt(self) -> str:
        return self.engine.render_measure_prompt(self.trails.checkout_active())

    def stitch_prompt(self) -> str:
        return self.engine.render_stitch_prompt(self.trails.checkout_active())

    def _stats_root(self) -> Path:
        active = self.trails.active()
        if active is not None and active.worktree.exists():
            return active.worktree
        return self.repo_root

    def loc(self) -> LocReport:
        return count_loc(self.config, self.git, self._stats_root())

    def tokens(self) -> TokenReport:
        prompts: dict[str, str] = {}
        if self.trails.active() is not None:
            prompts = {"measure": self.measure_prompt(), "stitch": self.stitch_prompt()}
        return count_tokens(self.config, self.git, self._stats_root(), prompts)
