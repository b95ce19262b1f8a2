from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from cobbler.errors import GitOperationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MergeResult:
    commit_hash: str
    fast_forward: bool


class GitClient:
    """Thin wrapper over the git CLI.

    ``repo_root`` is the control checkout: branch, worktree and merge commands
    run there. Commands that act on a trail's files take the worktree path as
    ``cwd``.
    """

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()

    def _run(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = ["git", "--no-pager", *args]
        try:
            proc = subprocess.run(
                command,
                cwd=cwd or self.repo_root,
                text=True,
                capture_output=True,
                input=input_text,
            )
        except FileNotFoundError as exc:
            raise GitOperationError("git executable not found", command=command) from exc
        except NotADirectoryError as exc:
            raise GitOperationError(f"Not a directory: {cwd}", command=command) from exc
        if check and proc.returncode != 0:
            detail = proc.stderr.strip() or proc.stdout.strip()
            raise GitOperationError(f"git {' '.join(args)} failed: {detail}", command=command)
        return proc

    def is_repo(self) -> bool:
        proc = self._run(["rev-parse", "--is-inside-work-tree"], check=False)
        return proc.returncode == 0 and proc.stdout.strip() == "true"

    def head(self, cwd: Path | None = None) -> str:
        return self._run(["rev-parse", "HEAD"], cwd=cwd).stdout.strip()

    def rev_parse(self, ref: str, cwd: Path | None = None) -> str:
        return self._run(["rev-parse", "--verify", f"{ref}^{{commit}}"], cwd=cwd).stdout.strip()

    def is_ancestor(self, ancestor: str, descendant: str, cwd: Path | None = None) -> bool:
        proc = self._run(
            ["merge-base", "--is-ancestor", ancestor, descendant], cwd=cwd, check=False
        )
        return proc.returncode == 0

    def current_branch(self, cwd: Path | None = None) -> str:
        return self._run(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd).stdout.strip()

    def branch_exists(self, branch: str) -> bool:
        proc = self._run(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False)
        return proc.returncode == 0

    def worktrees(self) -> dict[str, Path]:
        """Return mapping of branch name -> worktree path."""
        out = self._run(["worktree", "list", "--porcelain"]).stdout
        current_path: Path | None = None
        branch: str | None = None
        result: dict[str, Path] = {}

        def flush() -> None:
            nonlocal current_path, branch
            if current_path is not None and branch is not None and branch.startswith("refs/heads/"):
                result[branch.removeprefix("refs/heads/")] = current_path
            current_path = None
            branch = None

        for line in out.splitlines():
            if not line.strip():
                continue
            if line.startswith("worktree "):
                flush()
                current_path = Path(line.split(" ", 1)[1]).resolve()
            elif line.startswith("branch "):
                branch = line.split(" ", 1)[1].strip()

        flush()
        return result

    def add_worktree(self, path: Path, *, branch: str, base_ref: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._run(["worktree", "add", "-b", branch, str(path), base_ref])
        logger.info("created worktree %s on %s (from %s)", path, branch, base_ref)

    def attach_worktree(self, path: Path, *, branch: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        self._run(["worktree", "prune"])
        self._run(["worktree", "add", str(path), branch])
        logger.info("re-attached worktree %s to %s", path, branch)

    def remove_worktree(self, path: Path, *, force: bool = False) -> None:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        self._run(args)
        self._run(["worktree", "prune"])

    def prune_worktrees(self) -> None:
        self._run(["worktree", "prune"])

    def delete_branch(self, branch: str, *, force: bool = True) -> None:
        self._run(["branch", "-D" if force else "-d", branch])

    def is_dirty(self, cwd: Path | None = None) -> bool:
        return bool(self._run(["status", "--porcelain"], cwd=cwd).stdout.strip())

    def commit_all(self, message: str, *, cwd: Path, allow_empty: bool = False) -> str | None:
        """Stage everything in ``cwd`` and commit; returns the new HEAD or ``None``."""
        self._run(["add", "-A"], cwd=cwd)
        staged = self._run(["diff", "--cached", "--quiet"], cwd=cwd, check=False)
        if staged.returncode == 0 and not allow_empty:
            return None
        args = ["commit", "-m", message]
        if staged.returncode == 0:
            args.append("--allow-empty")
        self._run(args, cwd=cwd)
        return self.head(cwd)

    def reset_hard(self, ref: str, *, cwd: Path) -> None:
        self._run(["reset", "--hard", ref], cwd=cwd)
        self._run(["clean", "-fd"], cwd=cwd)

    def ls_files(self, cwd: Path | None = None) -> list[str]:
        out = self._run(["ls-files"], cwd=cwd).stdout
        return [line.strip() for line in out.splitlines() if line.strip()]

    def merge(self, branch: str, *, into: str) -> MergeResult:
        """Merge ``branch`` into ``into`` in the control checkout.

        Fast-forwards when possible, otherwise records a merge commit. A
        conflicting merge is aborted and reported.
        """
        if self.current_branch() != into:
            self._run(["checkout", into])
        before = self.head()
        fast_forward = self._run(["merge", "--ff-only", branch], check=False)
        if fast_forward.returncode == 0:
            after = self.head()
            return MergeResult(commit_hash=after, fast_forward=after != before)

        merged = self._run(
            ["merge", "--no-ff", "--no-edit", "-m", f"Merge {branch} into {into}", branch],
            check=False,
        )
        if merged.returncode != 0:
            self._run(["merge", "--abort"], check=False)
            detail = merged.stderr.strip() or merged.stdout.strip()
            raise GitOperationError(f"Merging {branch} into {into} failed: {detail}")
        return MergeResult(commit_hash=self.head(), fast_forward=False)

    def tags(self, pattern: str = "*") -> list[str]:
        out = self._run(["tag", "--list", pattern]).stdout
        return [line.strip() for line in out.splitlines() if line.strip()]

    def create_tag(self, name: str, *, ref: str, message: str) -> str:
        """Create an annotated tag on ``ref``; returns the tagged commit."""
        self._run(["tag", "-a", name, "-m", message, ref])
        return self.rev_parse(name)

    def ensure_excluded(self, pattern: str) -> None:
        """Add ``pattern`` to the repository's info/exclude file if missing."""
        raw = self._run(["rev-parse", "--git-path", "info/exclude"]).stdout.strip()
        exclude_path = Path(raw)
        if not exclude_path.is_absolute():
            exclude_path = self.repo_root / exclude_path
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        existing = exclude_path.read_text(encoding="utf-8") if exclude_path.exists() else ""
        if pattern in existing.splitlines():
            return
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        exclude_path.write_text(f"{existing}{prefix}{pattern}\n", encoding="utf-8")
