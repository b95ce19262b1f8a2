from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Literal, get_args

from cobbler.errors import ConfigError

BackendName = Literal["codex", "claude"]
CycleMode = Literal["fixed", "until_idle"]
BACKEND_NAMES: tuple[str, ...] = get_args(BackendName)
CYCLE_MODES: tuple[str, ...] = get_args(CycleMode)

DEFAULT_CONFIG_FILE = "cobbler.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    main_branch: str = "main"
    source_globs: list[str] = field(default_factory=lambda: ["src/**/*.py", "*.py"])
    doc_globs: list[str] = field(default_factory=lambda: ["README.md", "docs/**/*.md"])


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 600.0


@dataclass(slots=True)
class AgentsConfig:
    measure_model: str = "claude-sonnet-4-5"
    stitch_model: str = "claude-sonnet-4-5"


@dataclass(slots=True)
class GenerationConfig:
    cycles: int = 3
    cycle_mode: CycleMode = "fixed"
    max_cycles: int = 20
    branch_prefix: str = "trail/"
    worktrees_dir: str = ".cobbler/worktrees"
    max_parallel_tasks: int = 1
    lease_seconds: float = 1800.0


@dataclass(slots=True)
class CobblerConfig:
    scratch_dir: str = ".cobbler/scratch"
    max_measure_tasks: int = 10
    max_context_chars: int = 40000


@dataclass(slots=True)
class TrackerConfig:
    state_dir: str = ".cobbler/state"


@dataclass(slots=True)
class AnalysisConfig:
    requirements_dir: str = "docs/specs/product-requirements"
    use_cases_dir: str = "docs/specs/use-cases"
    test_suites_dir: str = "docs/specs/test-suites"
    roadmap_file: str = "docs/road-map.md"


@dataclass(slots=True)
class Config:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    cobbler: CobblerConfig = field(default_factory=CobblerConfig)
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)

    @classmethod
    def default(cls) -> Config:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> Config:
        unknown = sorted(set(data) - set(SECTIONS))
        if unknown:
            raise ConfigError(f"Unknown config section(s): {', '.join(unknown)}")
        sections = {
            name: _section(name, section_cls, data.get(name, {}))
            for name, section_cls in SECTIONS.items()
        }
        config = cls(**sections)
        _check_choice("backend.primary", config.backend.primary, BACKEND_NAMES)
        _check_choice("backend.fallback", config.backend.fallback, BACKEND_NAMES)
        _check_choice("generation.cycle_mode", config.generation.cycle_mode, CYCLE_MODES)
        return config

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "main_branch": self.project.main_branch,
                "source_globs": list(self.project.source_globs),
                "doc_globs": list(self.project.doc_globs),
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "measure_model": self.agents.measure_model,
                "stitch_model": self.agents.stitch_model,
            },
            "generation": {
                "cycles": self.generation.cycles,
                "cycle_mode": self.generation.cycle_mode,
                "max_cycles": self.generation.max_cycles,
                "branch_prefix": self.generation.branch_prefix,
                "worktrees_dir": self.generation.worktrees_dir,
                "max_parallel_tasks": self.generation.max_parallel_tasks,
                "lease_seconds": self.generation.lease_seconds,
            },
            "cobbler": {
                "scratch_dir": self.cobbler.scratch_dir,
                "max_measure_tasks": self.cobbler.max_measure_tasks,
                "max_context_chars": self.cobbler.max_context_chars,
            },
            "tracker": {
                "state_dir": self.tracker.state_dir,
            },
            "analysis": {
                "requirements_dir": self.analysis.requirements_dir,
                "use_cases_dir": self.analysis.use_cases_dir,
                "test_suites_dir": self.analysis.test_suites_dir,
                "roadmap_file": self.analysis.roadmap_file,
            },
        }


SECTIONS: dict[str, type] = {
    "project": ProjectConfig,
    "backend": BackendConfig,
    "agents": AgentsConfig,
    "generation": GenerationConfig,
    "cobbler": CobblerConfig,
    "tracker": TrackerConfig,
    "analysis": AnalysisConfig,
}


def _section(name: str, section_cls: type, raw: object) -> object:
    if not isinstance(raw, dict):
        raise ConfigError(f"[{name}] must be a table.")
    allowed = {item.name for item in fields(section_cls)}
    unknown = sorted(set(raw) - allowed)
    if unknown:
        raise ConfigError(f"Unknown key(s) in [{name}]: {', '.join(unknown)}")
    return section_cls(**raw)


def _check_choice(key: str, value: str, choices: tuple[str, ...]) -> None:
    if value not in choices:
        raise ConfigError(f"{key} must be one of {', '.join(choices)}; got {value!r}")


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: Config) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "project",
        "backend",
        "agents",
        "generation",
        "cobbler",
        "tracker",
        "analysis",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> Config:
    if not path.exists():
        return Config.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path.name} is not valid TOML: {exc}") from exc
    return Config.from_dict(data)


def save_config(path: Path, config: Config) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")


def write_default_config(path: Path) -> Config:
    config = Config.default()
    save_config(path, config)
    return config


def ensure_config(path: Path) -> tuple[Config, bool]:
    """Load ``path``, generating the default file first when it is missing.

    Returns the loaded config and whether a default file was written.
    """
    if path.exists():
        return load_config(path), False
    return write_default_config(path), True
