import subprocess
from pathlib import Path

from cobbler.config import Config
from cobbler.git import GitClient
from cobbler.stats import count_loc, count_tokens, estimate_tokens


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


def _project(tmp_path: Path) -> tuple[Path, GitClient]:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    (repo / "src" / "pkg").mkdir(parents=True)
    (repo / "src" / "pkg" / "mod.py").write_text("a = 1\n\nb = 2\nc = 3\n", encoding="utf-8")
    (repo / "tests").mkdir()
    (repo / "tests" / "test_mod.py").write_text("def test():\n    pass\n", encoding="utf-8")
    (repo / "README.md").write_text("one two three\n", encoding="utf-8")
    (repo / "untracked.py").write_text("ignored = True\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "src", "tests", "README.md"],
        cwd=repo,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo,
        check=True,
        text=True,
        capture_output=True,
    )
    return repo, GitClient(repo)


def test_count_loc_splits_production_and_test_lines(tmp_path: Path) -> None:
    repo, git = _project(tmp_path)

    report = count_loc(Config.default(), git, repo)

    assert report.production_lines == 3
    assert report.test_lines == 2
    assert report.doc_words == 3
    assert "untracked.py" not in report.files


def test_count_tokens_includes_prompts_and_documents(tmp_path: Path) -> None:
    repo, git = _project(tmp_path)

    report = count_tokens(Config.default(), git, repo, {"measure": "x" * 10})

    assert report.files == {"<prompt:measure>": 3, "README.md": 4}
    assert report.total == 7


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
