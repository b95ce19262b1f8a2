from pathlib import Path

from cobbler.analyzer import ConsistencyAnalyzer
from cobbler.config import Config
from cobbler.state import StateStore, Task, TaskStatus, TaskTracker


def _write(root: Path, rel_path: str, text: str) -> None:
    path = root / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _done(tracker: TaskTracker, task_id: str, title: str) -> None:
    tracker.insert([Task(id=task_id, trail_id="demo-abc123", title=title)])
    for status in (TaskStatus.READY, TaskStatus.IN_PROGRESS, TaskStatus.DONE):
        tracker.transition(task_id, status)


def test_analyze_reports_each_kind_of_inconsistency(tmp_path: Path) -> None:
    _write(tmp_path, "docs/specs/product-requirements/prd001-core.md", "# Core\n")
    _write(tmp_path, "docs/specs/product-requirements/prd002-orphan.md", "# Orphan\n")
    _write(tmp_path, "docs/specs/use-cases/uc001-init.md", "Implements prd001-core.\n")
    _write(tmp_path, "docs/specs/use-cases/uc002-run.md", "Also covers prd001-core.\n")
    _write(
        tmp_path,
        "docs/specs/test-suites/ts001-smoke.yaml",
        "cases:\n  - uc001-init\n  - uc009-missing\n",
    )
    _write(tmp_path, "docs/road-map.md", "1. uc001-init\n")
    tracker = TaskTracker(StateStore(tmp_path / "state"))
    _done(tracker, "t1", "Implement uc001-init")
    _done(tracker, "t2", "Tidy imports")
    tracker.insert([Task(id="t3", trail_id="demo-abc123", title="Pending work")])

    report = ConsistencyAnalyzer(Config.default(), tmp_path, tracker).analyze()

    assert report.orphaned_requirements == ["prd002-orphan"]
    assert report.use_cases_missing_from_roadmap == ["uc002-run"]
    assert report.use_cases_without_tests == ["uc002-run"]
    assert report.unknown_use_case_references == ["ts001-smoke -> uc009-missing"]
    assert report.undocumented_tasks == ["t2"]
    assert report.ok is False
    assert "requirement not referenced by any use case: prd002-orphan" in report.issues()


def test_ids_match_whole_words_only(tmp_path: Path) -> None:
    _write(tmp_path, "docs/specs/use-cases/uc001.md", "# Init\n")
    _write(tmp_path, "docs/specs/test-suites/suite.md", "See uc0012 and uc001-extra.\n")

    report = ConsistencyAnalyzer(
        Config.default(), tmp_path, TaskTracker(StateStore(tmp_path / "state"))
    ).analyze()

    assert report.use_cases_without_tests == ["uc001"]
    assert report.unknown_use_case_references == ["suite -> uc001-extra", "suite -> uc0012"]


def test_empty_repository_is_consistent(tmp_path: Path) -> None:
    tracker = TaskTracker(StateStore(tmp_path / "state"))
    _done(tracker, "t1", "Anything")

    report = ConsistencyAnalyzer(Config.default(), tmp_path, tracker).analyze()

    assert report.ok is True
    assert report.issues() == []
