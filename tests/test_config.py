import tomllib
from pathlib import Path

import pytest

from cobbler import __version__
from cobbler.config import Config, dumps_toml, ensure_config, load_config, save_config
from cobbler.errors import ConfigError


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "cobbler.toml"
    config = Config.default()
    config.project.name = "cobbler-test"
    config.project.source_globs = ["pkg/**/*.go"]
    config.backend.primary = "codex"
    config.backend.max_retries = 3
    config.backend.timeout_seconds = 12.5
    config.generation.cycles = 5
    config.generation.cycle_mode = "until_idle"
    config.generation.max_parallel_tasks = 3
    config.generation.branch_prefix = "gen/"
    config.cobbler.max_measure_tasks = 4
    config.tracker.state_dir = "state"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "cobbler-test"
    assert loaded.project.source_globs == ["pkg/**/*.go"]
    assert loaded.project.main_branch == "main"
    assert loaded.backend.primary == "codex"
    assert loaded.backend.max_retries == 3
    assert loaded.backend.timeout_seconds == 12.5
    assert loaded.generation.cycles == 5
    assert loaded.generation.cycle_mode == "until_idle"
    assert loaded.generation.max_parallel_tasks == 3
    assert loaded.generation.branch_prefix == "gen/"
    assert loaded.cobbler.max_measure_tasks == 4
    assert loaded.tracker.state_dir == "state"


def test_toml_dump_contains_generation_and_backend_fields() -> None:
    rendered = dumps_toml(Config.default())

    assert "[generation]" in rendered
    assert "cycles = 3" in rendered
    assert 'cycle_mode = "fixed"' in rendered
    assert "max_parallel_tasks = 1" in rendered
    assert "max_retries" in rendered
    assert "timeout_seconds" in rendered
    assert "[analysis]" in rendered
    assert tomllib.loads(rendered)["tracker"]["state_dir"] == ".cobbler/state"


def test_ensure_config_writes_default_once(tmp_path: Path) -> None:
    config_path = tmp_path / "cobbler.toml"

    config, created = ensure_config(config_path)
    assert created is True
    assert config_path.exists()
    assert config.generation.cycles == 3

    config_path.write_text("[generation]\ncycles = 7\n", encoding="utf-8")
    config, created = ensure_config(config_path)
    assert created is False
    assert config.generation.cycles == 7
    assert config.backend.primary == "claude"


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ('[backend]\nprimary = "gemini"\n', "backend.primary must be one of"),
        ('[generation]\ncycle_mode = "forever"\n', "generation.cycle_mode"),
        ("[generation]\ncylces = 2\n", r"Unknown key\(s\) in \[generation\]: cylces"),
        ("[plugins]\nenabled = true\n", "Unknown config section"),
        ('project = "flat"\n', r"\[project\] must be a table"),
        ("[generation\n", "not valid TOML"),
    ],
)
def test_load_config_rejects_invalid_files(tmp_path: Path, content: str, message: str) -> None:
    config_path = tmp_path / "cobbler.toml"
    config_path.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError, match=message):
        load_config(config_path)
