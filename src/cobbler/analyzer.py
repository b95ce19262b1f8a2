"""Read-only cross-checks between documentation artifacts and task history.

Documents are identified by file stem: ``docs/specs/use-cases/uc001-init.md``
has the id ``uc001-init``. A document references another when the other's id
appears in its text.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from cobbler.config import Config
from cobbler.state.tracker import TaskStatus, TaskTracker

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIXES = {".md", ".yaml", ".yml", ".txt"}
USE_CASE_REF_PATTERN = re.compile(r"\b[\w.-]*uc\d+[\w-]*", re.IGNORECASE)


@dataclass(slots=True)
class AnalysisReport:
    orphaned_requirements: list[str] = field(default_factory=list)
    use_cases_missing_from_roadmap: list[str] = field(default_factory=list)
    use_cases_without_tests: list[str] = field(default_factory=list)
    unknown_use_case_references: list[str] = field(default_factory=list)
    undocumented_tasks: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues()

    def issues(self) -> list[str]:
        sections = (
            ("requirement not referenced by any use case", self.orphaned_requirements),
            ("use case missing from roadmap", self.use_cases_missing_from_roadmap),
            ("use case without a test suite", self.use_cases_without_tests),
            ("test suite references unknown use case", self.unknown_use_case_references),
            ("completed task references no document", self.undocumented_tasks),
        )
        return [f"{label}: {item}" for label, items in sections for item in items]


def _mentions(text: str, doc_id: str) -> bool:
    return re.search(rf"(?<![\w-]){re.escape(doc_id)}(?![\w-])", text) is not None


class ConsistencyAnalyzer:
    def __init__(self, config: Config, repo_root: Path, tracker: TaskTracker) -> None:
        self.config = config
        self.repo_root = repo_root.resolve()
        self.tracker = tracker

    def _documents(self, configured: str) -> dict[str, str]:
        directory = self.repo_root / configured
        if not directory.is_dir():
            return {}
        documents: dict[str, str] = {}
        for path in sorted(directory.rglob("*")):
            if path.is_file() and path.suffix.lower() in DOCUMENT_SUFFIXES:
                documents[path.stem] = path.read_text(encoding="utf-8", errors="replace")
        return documents

    def analyze(self) -> AnalysisReport:
        analysis = self.config.analysis
        requirements = self._documents(analysis.requirements_dir)
        use_cases = self._documents(analysis.use_cases_dir)
        test_suites = self._documents(analysis.test_suites_dir)
        roadmap_path = self.repo_root / analysis.roadmap_file
        roadmap = roadmap_path.read_text(encoding="utf-8") if roadmap_path.is_file() else ""

        report = AnalysisReport()
        use_case_text = "\n".join(use_cases.values())
        suite_text = "\n".join(test_suites.values())
        report.orphaned_requirements = [
            req_id for req_id in requirements if not _mentions(use_case_text, req_id)
        ]
        if roadmap:
            report.use_cases_missing_from_roadmap = [
                uc_id for uc_id in use_cases if not _mentions(roadmap, uc_id)
            ]
        report.use_cases_without_tests = [
            uc_id for uc_id in use_cases if not _mentions(suite_text, uc_id)
        ]
        known = {uc_id.lower() for uc_id in use_cases}
        unknown: set[str] = set()
        for suite_id, text in test_suites.items():
            for match in USE_CASE_REF_PATTERN.findall(text):
                reference = match.strip(".-")
                if reference.lower() not in known and reference.lower() != suite_id.lower():
                    unknown.add(f"{suite_id} -> {reference}")
        report.unknown_use_case_references = sorted(unknown)

        doc_ids = [*requirements, *use_cases, *test_suites]
        if doc_ids:
            for task in self.tracker.tasks():
                if task.status != TaskStatus.DONE.value:
                    continue
                text = f"{task.title}\n{task.description}\n{task.result_summary}"
                if not any(_mentions(text, doc_id) for doc_id in doc_ids):
                    report.undocumented_tasks.append(task.id)

        logger.info(
            "analyzed %d requirement(s), %d use case(s), %d test suite(s): %d issue(s)",
            len(requirements),
            len(use_cases),
            len(test_suites),
            len(report.issues()),
        )
        return report
