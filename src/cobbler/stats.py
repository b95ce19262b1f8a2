from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

from cobbler.config import Config
from cobbler.cycle import matches_glob
from cobbler.git import GitClient

TEST_PATH_PATTERN = re.compile(r"(^|/)(tests?/|test_[^/]*$|[^/]*_test\.[^/]+$)")
CHARS_PER_TOKEN = 4


@dataclass(slots=True)
class LocReport:
    production_lines: int = 0
    test_lines: int = 0
    doc_words: int = 0
    files: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class TokenReport:
    files: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.files.values())


def estimate_tokens(text: str) -> int:
    """Rough token estimate; about four characters per token for English and code."""
    if not text:
        return 0
    return max(1, (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN)


def _tracked(git: GitClient, root: Path, globs: list[str]) -> list[str]:
    return [
        path for path in git.ls_files(root) if any(matches_glob(path, glob) for glob in globs)
    ]


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""


def count_loc(config: Config, git: GitClient, root: Path) -> LocReport:
    report = LocReport()
    for rel_path in _tracked(git, root, config.project.source_globs):
        lines = sum(1 for line in _read(root / rel_path).splitlines() if line.strip())
        report.files[rel_path] = lines
        if TEST_PATH_PATTERN.search(rel_path):
            report.test_lines += lines
        else:
            report.production_lines += lines
    for rel_path in _tracked(git, root, config.project.doc_globs):
        report.doc_words += len(_read(root / rel_path).split())
    return report


def count_tokens(
    config: Config, git: GitClient, root: Path, prompts: dict[str, str]
) -> TokenReport:
    """Token estimates for the rendered prompts and every file attached to them."""
    report = TokenReport()
    for name, text in prompts.items():
        report.files[f"<prompt:{name}>"] = estimate_tokens(text)
    for rel_path in _tracked(git, root, config.project.doc_globs):
        report.files[rel_path] = estimate_tokens(_read(root / rel_path))
    return report
