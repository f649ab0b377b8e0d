"""
Reconcile the stream ledger against the worktrees and branches git reports.

Each tracked stream lands in exactly one bucket:

- completed: its branch is merged into main (even if the worktree remains)
- stale: no worktree is found, by id or by recorded path
- active: everything else

Worktrees with no ledger entry are reported as orphaned. The ledger is
only written to when `dry_run` is False.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.db import Database
from ..core.models import MAIN_STREAM_ID, HistoryEvent, Stream, WorktreeInfo
from .git import GitIntrospector

logger = logging.getLogger(__name__)

REASON_MERGED = "Branch merged to main"
REASON_MISSING = "Worktree does not exist"
REASON_ACTIVE = "Worktree exists and branch not merged"

_LIVE_STATUSES = ("active", "blocked", "paused")
_TERMINAL_STATUSES = ("completed", "archived")
_REPORT_LIMIT = 10


@dataclass
class ReconciliationEntry:
    stream_id: str
    title: str
    branch: str
    worktree_path: Optional[str]
    previous_status: str
    new_status: str
    reason: str


@dataclass
class ReconciliationSummary:
    total_in_db: int = 0
    total_worktrees: int = 0
    active: int = 0
    completed: int = 0
    stale: int = 0
    orphaned: int = 0
    errors: int = 0


@dataclass
class ReconciliationResult:
    active: List[ReconciliationEntry] = field(default_factory=list)
    completed: List[ReconciliationEntry] = field(default_factory=list)
    stale: List[ReconciliationEntry] = field(default_factory=list)
    orphaned: List[WorktreeInfo] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    summary: ReconciliationSummary = field(default_factory=ReconciliationSummary)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _status_changed(db: Database, stream_id: str, old: str, new: str) -> None:
    db.add_history_event(
        HistoryEvent(stream_id=stream_id, event_type="status_changed", old_value=old, new_value=new)
    )


def _reconcile_one(
    db: Database,
    stream: Stream,
    worktree: Optional[WorktreeInfo],
    merged: set,
    result: ReconciliationResult,
    *,
    dry_run: bool,
    auto_archive_stale: bool,
) -> None:
    path_exists = bool(stream.worktree_path) and Path(stream.worktree_path).exists()
    has_worktree = worktree is not None or path_exists

    def entry(new_status: str, reason: str) -> ReconciliationEntry:
        return ReconciliationEntry(
            stream_id=stream.id,
            title=stream.title,
            branch=stream.branch,
            worktree_path=stream.worktree_path,
            previous_status=stream.status,
            new_status=new_status,
            reason=reason,
        )

    # Merge history outranks filesystem state
    if stream.branch in merged:
        result.completed.append(entry("completed", REASON_MERGED))
        if not dry_run and stream.status not in _TERMINAL_STATUSES:
            db.complete_stream(stream.id)
            _status_changed(db, stream.id, stream.status, "completed")
        return

    if not has_worktree:
        new_status = "archived" if auto_archive_stale else stream.status
        result.stale.append(entry(new_status, REASON_MISSING))
        if not dry_run and auto_archive_stale and stream.status != "archived":
            db.update_stream(stream.id, status="archived")
            _status_changed(db, stream.id, stream.status, "archived")
        return

    new_status = stream.status if stream.status in _LIVE_STATUSES else "active"
    result.active.append(entry(new_status, REASON_ACTIVE))
    if not dry_run and new_status != stream.status:
        db.update_stream(stream.id, status=new_status)
        _status_changed(db, stream.id, stream.status, new_status)


def reconcile_worktrees(
    db: Database,
    git: GitIntrospector,
    *,
    dry_run: bool = True,
    auto_archive_stale: bool = False,
) -> ReconciliationResult:
    result = ReconciliationResult()

    worktrees = git.list_worktrees()
    merged = git.list_merged_branches()
    streams = [s for s in db.list_streams() if s.id != MAIN_STREAM_ID]

    matched: set = set()
    for stream in streams:
        try:
            worktree = worktrees.get(stream.id)
            if worktree is not None and worktree.is_main:
                worktree = None
            if worktree is not None:
                matched.add(stream.id)
            elif stream.worktree_path:
                wanted = Path(stream.worktree_path).resolve()
                for key, info in worktrees.items():
                    if not info.is_main and Path(info.path).resolve() == wanted:
                        matched.add(key)
                        worktree = info
                        break
            _reconcile_one(
                db,
                stream,
                worktree,
                merged,
                result,
                dry_run=dry_run,
                auto_archive_stale=auto_archive_stale,
            )
        except Exception as e:
            logger.error(f"Reconciliation failed for {stream.id}: {e}")
            result.errors.append({"stream_id": stream.id, "error": str(e)})

    non_main = {k: w for k, w in worktrees.items() if not w.is_main}
    result.orphaned = [w for k, w in non_main.items() if k not in matched]

    s = result.summary
    s.total_in_db = len(streams)
    s.total_worktrees = len(non_main)
    s.active = len(result.active)
    s.completed = len(result.completed)
    s.stale = len(result.stale)
    s.orphaned = len(result.orphaned)
    s.errors = len(result.errors)

    logger.info(
        f"Reconciliation{' (dry run)' if dry_run else ''}: {s.active} active, "
        f"{s.completed} completed, {s.stale} stale, {s.orphaned} orphaned, {s.errors} errors"
    )
    return result


def _section(lines: List[str], title: str, items: List[str]) -> None:
    if not items:
        return
    lines.append("")
    lines.append(f"## {title}")
    lines.extend(items[:_REPORT_LIMIT])
    if len(items) > _REPORT_LIMIT:
        lines.append(f"  ... and {len(items) - _REPORT_LIMIT} more")


def format_reconciliation(result: ReconciliationResult, dry_run: bool) -> str:
    """Render a markdown report of a reconciliation pass."""
    s = result.summary
    lines = [
        "Reconciliation Report (DRY RUN)" if dry_run else "Reconciliation Complete",
        "",
        "## Summary",
        f"- Database entries: {s.total_in_db}",
        f"- Git worktrees: {s.total_worktrees}",
        f"- Active: {s.active}",
        f"- Completed (merged): {s.completed}",
        f"- Stale (no worktree): {s.stale}",
        f"- Orphaned (no DB entry): {s.orphaned}",
    ]
    if s.errors:
        lines.append(f"- Errors: {s.errors}")

    completed = []
    for e in result.completed:
        change = f" [{e.previous_status} -> completed]" if e.previous_status != "completed" else ""
        completed.append(f"- {e.stream_id}: {e.title}{change}")
    _section(lines, "Completed Streams (merged to main)", completed)
    _section(lines, "Stale Streams (worktree missing)",
             [f"- {e.stream_id}: {e.title}" for e in result.stale])
    _section(lines, "Orphaned Worktrees (not in database)",
             [f"- {w.branch} at {w.path}" for w in result.orphaned])

    if result.errors:
        lines.append("")
        lines.append("## Errors")
        lines.extend(f"- {e['stream_id']}: {e['error']}" for e in result.errors)

    return "\n".join(lines)
