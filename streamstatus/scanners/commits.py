"""
Commit scanner: record git commits against the streams that made them.

Main-branch commits belong to the synthetic "main" stream. Inserts are
idempotent, so scanning the same history twice only adds new commits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from ..core.config import Config
from ..core.db import Database
from ..core.errors import NotFoundError
from ..core.models import MAIN_STREAM_ID, Commit, Stream
from .git import GitIntrospector

logger = logging.getLogger(__name__)

MAIN_SINCE = "7 days ago"
MAIN_LIMIT = 20
BRANCH_LIMIT = 50


@dataclass
class ScanResult:
    scanned: int = 0
    commits_added: int = 0
    duplicates: int = 0
    errors: int = 0


def _record(db: Database, commits: Iterable[Commit], result: ScanResult) -> int:
    added = 0
    for commit in commits:
        outcome = db.add_commit(commit)
        if outcome.inserted:
            added += 1
        elif outcome.status == "duplicate":
            result.duplicates += 1
        else:
            result.errors += 1
            logger.warning(f"Failed to record commit {commit.commit_hash[:8]}: {outcome.error}")
    result.commits_added += added
    return added


def _scan_stream(db: Database, git: GitIntrospector, stream: Stream, result: ScanResult) -> int:
    if not stream.worktree_path or not Path(stream.worktree_path).exists():
        logger.debug(f"Skipping {stream.id}: worktree missing")
        return 0
    commits = git.log_branch_commits(
        Path(stream.worktree_path), stream.id, git.main_branch, limit=BRANCH_LIMIT
    )
    added = _record(db, commits, result)
    if added:
        db.touch_stream(stream.id)
    return added


def scan_all_commits(db: Database, git: GitIntrospector, config: Config) -> ScanResult:
    """Scan main and every tracked stream, sequentially."""
    result = ScanResult()

    db.ensure_main_stream(str(config.resolved_project_root), config.main_branch)
    _record(db, git.log_main_commits(since=MAIN_SINCE, limit=MAIN_LIMIT), result)
    result.scanned += 1

    for stream in db.list_streams():
        try:
            _scan_stream(db, git, stream, result)
        except Exception as e:
            result.errors += 1
            logger.error(f"Commit scan failed for {stream.id}: {e}")
        result.scanned += 1

    logger.info(
        f"Scanned {result.scanned} streams: {result.commits_added} added, "
        f"{result.duplicates} already known, {result.errors} errors"
    )
    return result


def scan_stream_commits(db: Database, git: GitIntrospector, stream_id: str) -> int:
    """Scan a single stream; returns the number of commits added."""
    stream = db.get_stream(stream_id)
    if stream is None:
        raise NotFoundError(stream_id)
    if stream_id == MAIN_STREAM_ID:
        result = ScanResult()
        return _record(db, git.log_main_commits(since=MAIN_SINCE, limit=MAIN_LIMIT), result)
    return _scan_stream(db, git, stream, ScanResult())
