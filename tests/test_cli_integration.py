import json
import re
import subprocess
from collections.abc import AsyncIterator
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from cobbler.backends.base import WORKING_DIRECTORY_KEY, AgentBackend
from cobbler.cli import cli
from cobbler.config import load_config, save_config
from cobbler.orchestrator import next_release_tag


class FakeBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, tools
        if user_prompt.startswith("Measure the project for cycle 1"):
            yield json.dumps({"tasks": [{"id": "t1", "title": "Add greeting"}]})
            return
        if user_prompt.startswith("Measure the project"):
            yield '{"tasks": []}'
            return
        cwd = Path(context[WORKING_DIRECTORY_KEY])
        (cwd / "greeting.txt").write_text("hello\n", encoding="utf-8")
        yield '{"status": "success", "summary": "added greeting"}'


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(
        ["git", "init", "-b", "main"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


@pytest.fixture()
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    repo_path = tmp_path / "repo"
    repo_path.mkdir()
    _init_git_repo(repo_path)
    monkeypatch.chdir(repo_path)
    monkeypatch.setattr(
        "cobbler.orchestrator._build_single_backend",
        lambda backend_name, repo_root: FakeBackend(),
    )
    return repo_path


def _disable_retries(config_path: Path) -> None:
    config = load_config(config_path)
    config.backend.max_retries = 0
    config.generation.cycles = 1
    save_config(config_path, config)


def test_cli_generator_lifecycle(repo: Path) -> None:
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0, init_result.output
    assert "Initialized cobbler in" in init_result.output
    assert (repo / "cobbler.toml").exists()
    _disable_retries(repo / "cobbler.toml")

    start_result = runner.invoke(cli, ["generator", "start", "demo"])
    assert start_result.exit_code == 0, start_result.output
    assert "Started demo on trail/demo" in start_result.output

    prompt_result = runner.invoke(cli, ["prompt", "measure"])
    assert prompt_result.exit_code == 0
    assert "Measure the project for cycle 1" in prompt_result.output
    assert "Context JSON:" in prompt_result.output

    run_result = runner.invoke(cli, ["-v", "generator", "run"])
    assert run_result.exit_code == 0, run_result.output
    assert "Cycle 1: complete (1 proposed, 1 done, 0 failed)" in run_result.output
    assert "demo: 1 cycle(s) completed (budget 1)" in run_result.output

    list_result = runner.invoke(cli, ["generator", "list"])
    assert re.search(r"^\* demo\s+started\s+1/1", list_result.output, re.MULTILINE)

    stitch_prompt = runner.invoke(cli, ["prompt", "stitch"])
    assert "<task-id>" in stitch_prompt.output

    loc_result = runner.invoke(cli, ["stats", "loc"])
    assert loc_result.exit_code == 0
    assert "Documentation words: 1" in loc_result.output

    tokens_result = runner.invoke(cli, ["stats", "tokens"])
    assert "<prompt:measure>" in tokens_result.output
    assert "total (estimated)" in tokens_result.output

    analyze_result = runner.invoke(cli, ["analyze"])
    assert analyze_result.exit_code == 0
    assert "No consistency issues found." in analyze_result.output

    stop_result = runner.invoke(cli, ["generator", "stop"])
    assert stop_result.exit_code == 0, stop_result.output
    assert "Stopped demo: merged into main" in stop_result.output
    assert (repo / "greeting.txt").read_text(encoding="utf-8") == "hello\n"

    list_result = runner.invoke(cli, ["generator", "list"])
    assert re.search(r"^  demo\s+stopped", list_result.output, re.MULTILINE)

    resume_result = runner.invoke(cli, ["generator", "resume"])
    assert resume_result.exit_code == 1
    assert "No active trail" in resume_result.output

    reset_result = runner.invoke(cli, ["generator", "reset", "ghost"])
    assert reset_result.exit_code == 0
    assert "Trail ghost not found; nothing to reset." in reset_result.output

    full_reset = runner.invoke(cli, ["reset"])
    assert full_reset.exit_code == 0, full_reset.output
    assert "Reset trails: demo" in full_reset.output
    assert "Task history archived to" in full_reset.output

    list_result = runner.invoke(cli, ["generator", "list"])
    assert "No trails." in list_result.output


def test_cli_single_measure_and_stitch_steps(repo: Path) -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _disable_retries(repo / "cobbler.toml")

    missing = runner.invoke(cli, ["cobbler", "measure"])
    assert missing.exit_code == 1
    assert "No active trail" in missing.output

    assert runner.invoke(cli, ["generator", "start", "demo"]).exit_code == 0

    measure_result = runner.invoke(cli, ["cobbler", "measure"])
    assert measure_result.exit_code == 0, measure_result.output
    task_id = measure_result.output.split()[0]
    assert re.fullmatch(r"demo-[0-9a-f]{6}\.c1\.t1", task_id)

    stitch_prompt = runner.invoke(cli, ["prompt", "stitch"])
    assert f"Implement task {task_id}: Add greeting" in stitch_prompt.output

    stitch_result = runner.invoke(cli, ["cobbler", "stitch"])
    assert stitch_result.exit_code == 0, stitch_result.output
    assert f"{task_id} done" in stitch_result.output
    assert (repo / ".cobbler" / "worktrees" / "demo" / "greeting.txt").exists()

    again = runner.invoke(cli, ["cobbler", "stitch"])
    assert "No ready tasks." in again.output

    scratch_result = runner.invoke(cli, ["cobbler", "reset"])
    assert "Removed scratch directory." in scratch_result.output
    scratch_again = runner.invoke(cli, ["cobbler", "reset"])
    assert "Scratch directory already clean." in scratch_again.output


def test_cli_tracker_commands_and_duplicate_start(repo: Path) -> None:
    runner = CliRunner()

    first = runner.invoke(cli, ["tracker", "init"])
    assert "Initialized task tracker." in first.output
    second = runner.invoke(cli, ["tracker", "init"])
    assert "Task tracker already initialized." in second.output

    assert runner.invoke(cli, ["generator", "start", "demo"]).exit_code == 0
    duplicate = runner.invoke(cli, ["generator", "start", "demo"])
    assert duplicate.exit_code == 1
    assert "already exists" in duplicate.output

    switch_missing = runner.invoke(cli, ["generator", "switch", "ghost"])
    assert switch_missing.exit_code == 1

    reset_result = runner.invoke(cli, ["tracker", "reset"])
    assert reset_result.exit_code == 0
    assert "Task history archived to" in reset_result.output


def test_cli_init_outside_git_repository_fails(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli, ["init"])

    assert result.exit_code == 1
    assert "is not a git repository" in result.output


def test_next_release_tag_counts_within_the_day() -> None:
    day = date(2026, 3, 7)

    assert next_release_tag([], day) == "v0.20260307.0"
    assert next_release_tag(["v0.20260307.0", "v0.20260307.4"], day) == "v0.20260307.5"
    assert next_release_tag(["v0.20260306.9", "v1.20260307.3", "v0.20260307.x"], day) == (
        "v0.20260307.0"
    )


def test_cli_tag_increments_release_serial(repo: Path) -> None:
    runner = CliRunner()
    stamp = datetime.now(UTC).date().strftime("%Y%m%d")

    first = runner.invoke(cli, ["tag"])
    assert first.exit_code == 0, first.output
    assert f"Tagged v0.{stamp}.0 at" in first.output

    second = runner.invoke(cli, ["tag"])
    assert second.exit_code == 0, second.output
    assert f"Tagged v0.{stamp}.1 at" in second.output

    listed = subprocess.run(
        ["git", "tag", "--list"], cwd=repo, check=True, text=True, capture_output=True
    ).stdout.split()
    assert listed == [f"v0.{stamp}.0", f"v0.{stamp}.1"]


def test_cli_scaffold_pop_refuses_active_trails_then_cleans_up(repo: Path) -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    assert runner.invoke(cli, ["generator", "start", "demo"]).exit_code == 0

    busy = runner.invoke(cli, ["scaffold", "pop"])
    assert busy.exit_code == 1
    assert "demo" in busy.output
    assert (repo / "cobbler.toml").exists()

    assert runner.invoke(cli, ["generator", "reset", "demo"]).exit_code == 0
    popped = runner.invoke(cli, ["scaffold", "pop", "."])
    assert popped.exit_code == 0, popped.output
    assert "Removed" in popped.output
    assert not (repo / "cobbler.toml").exists()
    assert not (repo / ".cobbler").exists()
    assert (repo / "README.md").exists()

    again = runner.invoke(cli, ["scaffold", "pop"])
    assert again.exit_code == 0, again.output
    assert not (repo / "cobbler.toml").exists()
    assert not (repo / ".cobbler").exists()

    (repo / "docs").mkdir()
    elsewhere = runner.invoke(cli, ["scaffold", "pop", "docs"])
    assert elsewhere.exit_code == 0, elsewhere.output
    assert "Nothing to remove in" in elsewhere.output
