"""
Stream retirement: archive report, summary job, worktree and plan cleanup.

Every step is attempted even if an earlier one failed; failures are
collected in `RetirementResult.errors`. The archive report, not the
ledger row, is the permanent record of a retired stream.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .core.config import Config
from .core.db import Database
from .core.errors import TransientGitError
from .core.models import Stream
from .scanners.git import GitIntrospector, run_git

logger = logging.getLogger(__name__)

HISTORY_DIR = ".project/history"
PLAN_DIR = ".project/plan/streams"

ARCHIVE_TEMPLATE = """# Stream Retired: {id}

**Date**: {date}
**Stream**: {stream_number} - {title}
**Branch**: {branch}
**Category**: {category}
**Priority**: {priority}
**Status**: Retired

---

## Summary

{summary}

## Stream Details

- **Created**: {created_at}
- **Completed**: {completed_at}
- **Worktree Path**: {worktree_path}

## Merge Details

- **Merge Commit**: {merge_commit}

---

**Retired by**: Stream Status
**Archived**: {archived_at}
"""


@dataclass
class RetirementResult:
    stream_id: str
    success: bool = False
    worktree_deleted: bool = False
    archive_written: bool = False
    archive_path: Optional[str] = None
    plan_files_cleaned_up: bool = False
    summary_job_queued: bool = False
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def render_archive(stream: Stream, summary: str, merge_commit: Optional[str]) -> str:
    now = datetime.now(timezone.utc)
    return ARCHIVE_TEMPLATE.format(
        id=stream.id,
        date=now.strftime("%Y-%m-%d"),
        stream_number=stream.stream_number,
        title=stream.title,
        branch=stream.branch,
        category=stream.category,
        priority=stream.priority,
        summary=summary.strip() or "No summary provided.",
        created_at=stream.created_at or "N/A",
        completed_at=stream.completed_at or "N/A",
        worktree_path=stream.worktree_path or "N/A",
        merge_commit=merge_commit or "N/A",
        archived_at=now.isoformat(timespec="seconds"),
    )


def find_merge_commit(git: GitIntrospector, stream_id: str) -> Optional[str]:
    for commit_hash, subject, refs in git.recent_log(limit=20):
        if stream_id in subject or stream_id in refs:
            return commit_hash
    return None


def _has_remote(root: Path, remote: str) -> bool:
    try:
        out = run_git(["remote"], cwd=root)
    except TransientGitError:
        return False
    return remote in out.split()


def _commit_and_push(root: Path, message: str, config: Config) -> None:
    run_git(["commit", "--no-verify", "-m", message], cwd=root)
    if _has_remote(root, config.push_remote):
        run_git(["push", config.push_remote, config.main_branch], cwd=root)
    else:
        logger.debug(f"No remote {config.push_remote!r}, skipping push")


def _write_archive(root: Path, stream: Stream, summary: str, config: Config) -> Path:
    history_dir = root / HISTORY_DIR
    history_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d")
    archive_path = history_dir / f"{stamp}_{stream.id}-RETIRED.md"

    merge_commit = find_merge_commit(GitIntrospector(root, config.main_branch), stream.id)
    archive_path.write_text(render_archive(stream, summary, merge_commit), encoding="utf-8")

    run_git(["add", str(archive_path)], cwd=root)
    _commit_and_push(root, f"docs: Archive retired stream {stream.id}", config)
    return archive_path


def _is_linked_worktree(root: Path, worktree_path: Path, main_branch: str) -> bool:
    """True only for a secondary worktree git knows about, never the project itself."""
    target = worktree_path.resolve()
    if target == root.resolve():
        return False
    for info in GitIntrospector(root, main_branch).list_worktrees().values():
        if not info.is_main and Path(info.path).resolve() == target:
            return True
    return False


def _remove_worktree(root: Path, worktree_path: Path, branch: str, main_branch: str) -> None:
    if not _is_linked_worktree(root, worktree_path, main_branch):
        raise TransientGitError(f"{worktree_path} is not a linked worktree of {root}")

    try:
        run_git(["worktree", "remove", "--force", str(worktree_path)], cwd=root)
    except TransientGitError as e:
        logger.info(f"git worktree remove failed ({e}), deleting directory")
        shutil.rmtree(worktree_path)
        run_git(["worktree", "prune"], cwd=root)

    try:
        run_git(["branch", "-d", branch], cwd=root)
        logger.info(f"Local branch deleted: {branch}")
    except TransientGitError as e:
        # Unmerged, checked out elsewhere, or already gone
        logger.info(f"Could not delete branch {branch}: {e}")


def _cleanup_plan_files(root: Path, stream_id: str, config: Config) -> bool:
    """Remove the stream's planning files. Returns True if a commit was made."""
    targets = [root / PLAN_DIR / stream_id, root / PLAN_DIR / f"{stream_id}.md"]
    existing = [p for p in targets if p.exists()]
    if not existing:
        logger.info(f"No planning files to clean up for {stream_id}")
        return False

    for path in existing:
        run_git(["rm", "-r", "-f", "--ignore-unmatch", "--", str(path)], cwd=root)
        # Untracked leftovers
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()

    staged = run_git(["diff", "--cached", "--name-only"], cwd=root)
    if not staged.strip():
        return False
    _commit_and_push(root, f"chore: Clean up {stream_id} planning files", config)
    return True


def retire_stream(
    stream: Stream,
    summary: str,
    *,
    config: Config,
    db: Optional[Database] = None,
    delete_worktree: bool = True,
    cleanup_plan_files: bool = True,
    write_archive: bool = True,
    queue_summary: bool = True,
) -> RetirementResult:
    result = RetirementResult(stream_id=stream.id)
    root = config.resolved_project_root

    # 1. Archive report
    archive_path: Optional[Path] = None
    if write_archive:
        try:
            archive_path = _write_archive(root, stream, summary, config)
            result.archive_written = True
            result.archive_path = str(archive_path)
            logger.info(f"Archive written: {archive_path.name}")
        except (OSError, TransientGitError) as e:
            result.errors.append(f"Archive write failed: {e}")
            logger.error(f"Archive write failed for {stream.id}: {e}")

    # 2. Summary job
    if queue_summary and db is not None and archive_path is not None:
        try:
            job_id = db.queue_summary_job(stream, summary, str(archive_path))
            result.summary_job_queued = True
            logger.info(f"Queued summary job #{job_id} for {stream.id}")
        except Exception as e:
            result.errors.append(f"Failed to queue summary job: {e}")
            logger.error(f"Failed to queue summary job for {stream.id}: {e}")

    # 3. Worktree and branch
    worktree_path = (
        Path(stream.worktree_path) if stream.worktree_path
        else config.resolved_worktree_root / stream.id
    )
    if not worktree_path.exists():
        result.worktree_deleted = True
        logger.info(f"Worktree already removed: {worktree_path}")
    elif delete_worktree:
        try:
            _remove_worktree(root, worktree_path, stream.branch, config.main_branch)
            result.worktree_deleted = True
            logger.info(f"Worktree deleted: {worktree_path}")
        except (OSError, TransientGitError) as e:
            result.errors.append(f"Worktree deletion failed: {e}")
            logger.error(f"Worktree deletion failed for {stream.id}: {e}")

    # 4. Planning files
    if cleanup_plan_files:
        try:
            _cleanup_plan_files(root, stream.id, config)
            result.plan_files_cleaned_up = True
        except (OSError, TransientGitError) as e:
            result.errors.append(f"Plan files cleanup failed: {e}")
            logger.error(f"Plan files cleanup failed for {stream.id}: {e}")

    result.success = not result.errors
    return result
