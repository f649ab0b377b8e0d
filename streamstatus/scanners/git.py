"""Read-only git introspection: worktrees, merged branches, commit logs.

Every public method of `GitIntrospector` maps onto one git command. A
failing command (not a repository, missing path, no commits yet) yields an
empty result; the absence of commits or worktrees is a normal outcome.
"""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from ..core.db import to_utc_iso
from ..core.errors import TransientGitError
from ..core.models import MAIN_STREAM_ID, Commit, WorktreeInfo

logger = logging.getLogger(__name__)

_RECORD_SEP = "\x1e"
_FIELD_SEP = "\x1f"
_LOG_FORMAT = "--pretty=format:%x1e%H%x1f%an%x1f%aI%x1f%s"

# "<added>\t<deleted>\t<path>"; binary files report "-\t-\t<path>"
_NUMSTAT_RE = re.compile(r"^(\d+|-)\t(\d+|-)\t")

_MAIN_BRANCHES = ("main", "master")


def run_git(args: List[str], cwd: Path, check: bool = True) -> str:
    """Run `git <args>` in `cwd` and return stdout.

    Raises TransientGitError when git is missing, `cwd` does not exist, or
    (with `check`) the command exits non-zero.
    """
    try:
        p = subprocess.run(
            ["git", *args],
            cwd=cwd,
            text=True,
            capture_output=True,
            check=False,
        )
    except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
        raise TransientGitError(f"git {' '.join(args)}: {e}") from e
    if check and p.returncode != 0:
        raise TransientGitError(
            f"git {' '.join(args)} exited {p.returncode}: {p.stderr.strip()}"
        )
    return p.stdout


def parse_worktrees(output: str) -> Dict[str, WorktreeInfo]:
    """Parse `git worktree list --porcelain` into {stream id guess: info}."""
    result: Dict[str, WorktreeInfo] = {}
    path: Optional[str] = None
    head: Optional[str] = None
    branch: Optional[str] = None

    def flush() -> None:
        nonlocal path, head, branch
        if path is not None and branch is not None:
            name = branch.removeprefix("refs/heads/")
            if name in _MAIN_BRANCHES:
                result[MAIN_STREAM_ID] = WorktreeInfo(
                    path=path, branch=name, commit_hash=head or "", is_main=True
                )
            else:
                result[Path(path).name] = WorktreeInfo(
                    path=path, branch=name, commit_hash=head or ""
                )
        path = head = branch = None

    for line in output.splitlines():
        if not line.strip():
            continue
        if line.startswith("worktree "):
            flush()
            path = line.split(" ", 1)[1].strip()
        elif line.startswith("HEAD "):
            head = line.split(" ", 1)[1].strip()
        elif line.startswith("branch "):
            branch = line.split(" ", 1)[1].strip()

    flush()
    return result


def parse_log(output: str, stream_id: str) -> List[Commit]:
    """Parse `git log --numstat` output produced with `_LOG_FORMAT`."""
    commits: List[Commit] = []
    for record in output.split(_RECORD_SEP):
        if not record.strip():
            continue
        lines = record.split("\n")
        fields = lines[0].split(_FIELD_SEP)
        if len(fields) < 4:
            continue
        commit_hash, author, date, subject = fields[0], fields[1], fields[2], fields[3]
        try:
            timestamp = to_utc_iso(date)
        except ValueError:
            logger.warning(f"Unparseable commit date {date!r} on {commit_hash[:8]}")
            continue
        files_changed = sum(1 for line in lines[1:] if _NUMSTAT_RE.match(line))
        commits.append(
            Commit(
                stream_id=stream_id,
                commit_hash=commit_hash.strip(),
                message=subject,
                author=author or None,
                files_changed=files_changed,
                timestamp=timestamp,
            )
        )
    return commits


class GitIntrospector:
    def __init__(self, project_root: Path, main_branch: str = "main") -> None:
        self.project_root = Path(project_root)
        self.main_branch = main_branch

    def list_worktrees(self) -> Dict[str, WorktreeInfo]:
        try:
            out = run_git(["worktree", "list", "--porcelain"], cwd=self.project_root)
        except TransientGitError as e:
            logger.warning(f"Could not list worktrees: {e}")
            return {}
        return parse_worktrees(out)

    def list_merged_branches(self, base: Optional[str] = None) -> Set[str]:
        base = base or self.main_branch
        try:
            out = run_git(["branch", "--merged", base], cwd=self.project_root)
        except TransientGitError as e:
            logger.warning(f"Could not list branches merged into {base}: {e}")
            return set()

        merged: Set[str] = set()
        for line in out.splitlines():
            name = line.strip().lstrip("*+").strip()
            if name and name not in _MAIN_BRANCHES and name != base:
                merged.add(name)
        return merged

    def log_branch_commits(
        self,
        worktree_path: Path,
        stream_id: str,
        exclude_from: Optional[str] = None,
        limit: int = 50,
    ) -> List[Commit]:
        """Commits reachable from the worktree's HEAD but not from main, newest first."""
        exclude_from = exclude_from or self.main_branch
        try:
            out = run_git(
                ["log", f"-n{limit}", "--numstat", _LOG_FORMAT, "HEAD", f"^{exclude_from}"],
                cwd=Path(worktree_path),
            )
        except TransientGitError as e:
            logger.debug(f"No branch commits for {stream_id}: {e}")
            return []
        return parse_log(out, stream_id)

    def log_main_commits(self, since: str = "7 days ago", limit: int = 20) -> List[Commit]:
        try:
            out = run_git(
                [
                    "log", self.main_branch, f"--since={since}", f"-n{limit}",
                    "--numstat", _LOG_FORMAT,
                ],
                cwd=self.project_root,
            )
        except TransientGitError as e:
            logger.debug(f"No main branch commits: {e}")
            return []
        return parse_log(out, MAIN_STREAM_ID)

    def recent_log(self, limit: int = 20) -> List[Tuple[str, str, str]]:
        """Return (hash, subject, refs) for the last `limit` commits."""
        try:
            out = run_git(
                ["log", f"-n{limit}", "--pretty=format:%H%x1f%s%x1f%D"],
                cwd=self.project_root,
            )
        except TransientGitError:
            return []

        entries: List[Tuple[str, str, str]] = []
        for line in out.splitlines():
            parts = line.split(_FIELD_SEP)
            if len(parts) == 3:
                entries.append((parts[0], parts[1], parts[2]))
        return entries
