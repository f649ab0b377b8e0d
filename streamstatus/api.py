"""
Stream Status API: clean, importable functions for all operations.

Every function returns JSON-serializable dicts/lists. Dependencies (`db`,
`config`, `git`) are passed in explicitly; the CLI and the HTTP server
build them once and hand them down.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from .core.config import VERSION, Config
from .core.db import Database, validate_progress, validate_status
from .core.errors import NotFoundError, ValidationError
from .core.models import MAIN_STREAM_ID, Commit, HistoryEvent, Stream
from .scanners.git import GitIntrospector

logger = logging.getLogger(__name__)

DEFAULT_ARCHIVE_SUMMARY = "Stream completed and retired"
DEFAULT_BULK_SUMMARY = "Bulk retirement"


def _serialize(obj: Any) -> Any:
    """Convert dataclass to dict."""
    if hasattr(obj, "__dataclass_fields__"):
        return asdict(obj)
    return obj


def _git(config: Config, git: Optional[GitIntrospector]) -> GitIntrospector:
    return git or GitIntrospector(config.resolved_project_root, config.main_branch)


def _require(db: Database, stream_id: str) -> Stream:
    stream = db.get_stream(stream_id)
    if stream is None:
        raise NotFoundError(stream_id)
    return stream


# ── Streams ───────────────────────────────────────────────────────────────────

def add_stream(
    stream_id: str,
    title: str,
    *,
    db: Database,
    category: str,
    priority: str,
    branch: str,
    worktree_path: str,
    stream_number: Optional[str] = None,
    phases: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Register a new stream and record its `created` event."""
    stream = db.insert_stream(
        Stream(
            id=stream_id,
            stream_number=stream_number or stream_id,
            title=title,
            category=category,
            priority=priority,
            worktree_path=worktree_path,
            branch=branch,
            phases=phases,
        )
    )
    db.add_history_event(
        HistoryEvent(stream_id=stream_id, event_type="created", new_value=stream.status)
    )
    return _serialize(stream)


def get_stream(stream_id: str, *, db: Database) -> Dict[str, Any]:
    return _serialize(_require(db, stream_id))


def list_streams(
    *,
    db: Database,
    status: Optional[str] = None,
    category: Optional[str] = None,
    priority: Optional[str] = None,
) -> Dict[str, Any]:
    items = db.list_streams(status=status, category=category, priority=priority)
    return {
        "streams": [_serialize(s) for s in items],
        "total": len(items),
    }


def update_stream(
    stream_id: str,
    *,
    db: Database,
    status: Optional[str] = None,
    progress: Optional[int] = None,
    current_phase: Optional[int] = None,
    blocked_by: Optional[str] = None,
) -> Dict[str, Any]:
    """Apply a partial update and record history for what changed.

    Returns {success, stream, changes}; `changes` maps each changed field
    to {"from", "to"}.
    """
    stream = _require(db, stream_id)

    if status is not None:
        validate_status(status)
    if progress is not None:
        validate_progress(progress)

    previous_status = stream.status
    previous_progress = stream.progress

    if status == "completed" and previous_status != "completed":
        db.complete_stream(stream_id)
        rest = {"progress": progress, "current_phase": current_phase, "blocked_by": blocked_by}
        if any(v is not None for v in rest.values()):
            db.update_stream(stream_id, **rest)
    else:
        db.update_stream(
            stream_id,
            status=status,
            progress=progress,
            current_phase=current_phase,
            blocked_by=blocked_by,
        )

    changes: Dict[str, Any] = {}
    if status is not None and status != previous_status:
        db.add_history_event(
            HistoryEvent(
                stream_id=stream_id,
                event_type="status_changed",
                old_value=previous_status,
                new_value=status,
            )
        )
        changes["status"] = {"from": previous_status, "to": status}
    if progress is not None and progress != previous_progress:
        db.add_history_event(
            HistoryEvent(
                stream_id=stream_id,
                event_type="progress_updated",
                old_value=str(previous_progress),
                new_value=str(progress),
            )
        )
        changes["progress"] = {"from": previous_progress, "to": progress}

    return {
        "success": True,
        "stream": _serialize(db.get_stream(stream_id)),
        "changes": changes,
    }


def complete_stream(
    stream_id: str,
    *,
    db: Database,
    summary: Optional[str] = None,
) -> Dict[str, Any]:
    """Mark a stream completed and record a `completed` event with the summary."""
    stream = _require(db, stream_id)
    updated = db.complete_stream(stream_id)
    db.add_history_event(
        HistoryEvent(
            stream_id=stream_id,
            event_type="completed",
            old_value=stream.status,
            new_value=summary or "completed",
        )
    )
    return {"success": True, "stream": _serialize(updated)}


# ── Commits & history ─────────────────────────────────────────────────────────

def add_commit(
    stream_id: str,
    commit_hash: str,
    message: str,
    *,
    db: Database,
    author: Optional[str] = None,
    files_changed: int = 0,
    timestamp: Optional[str] = None,
) -> Dict[str, Any]:
    """Record a commit against an existing stream."""
    _require(db, stream_id)
    if isinstance(files_changed, bool) or not isinstance(files_changed, int) or files_changed < 0:
        raise ValidationError("files_changed", "must be a non-negative integer")

    result = db.add_commit(
        Commit(
            stream_id=stream_id,
            commit_hash=commit_hash,
            message=message,
            author=author,
            files_changed=files_changed,
            timestamp=timestamp,
        )
    )
    if result.inserted:
        db.touch_stream(stream_id)
    return _serialize(result)


def commits(
    *,
    db: Database,
    stream_id: Optional[str] = None,
    limit: int = 20,
) -> Dict[str, Any]:
    """Newest commits, for one stream or across the ledger.

    `total` counts every matching commit, not just the returned page.
    """
    if stream_id:
        _require(db, stream_id)
        items = db.get_commits(stream_id, limit=limit)
    else:
        items = db.recent_commits(limit=limit)
    return {
        "commits": [_serialize(c) for c in items],
        "total": db.count_commits(stream_id or None),
    }


def history(stream_id: str, *, db: Database) -> List[Dict[str, Any]]:
    _require(db, stream_id)
    return [_serialize(e) for e in db.get_history(stream_id)]


def stats(*, db: Database) -> Dict[str, Any]:
    return db.stats()


def summary_jobs(*, db: Database, status: Optional[str] = None) -> Dict[str, Any]:
    jobs = db.list_summary_jobs(status=status)
    return {
        "jobs": [_serialize(j) for j in jobs],
        "total": len(jobs),
    }


# ── Retirement ────────────────────────────────────────────────────────────────

def archive_stream(
    stream_id: str,
    *,
    db: Database,
    config: Config,
    summary: Optional[str] = None,
    delete_worktree: bool = True,
    cleanup_plan_files: bool = True,
) -> Dict[str, Any]:
    """Retire a completed stream and delete it from the ledger.

    The row is deleted even when some retirement steps fail; the archive
    report is the permanent record.
    """
    from .retirement import retire_stream

    if stream_id == MAIN_STREAM_ID:
        raise ValidationError("stream_id", "the main branch stream cannot be retired")
    stream = _require(db, stream_id)
    if stream.status != "completed":
        raise ValidationError(
            "status",
            f"stream must be in 'completed' status before retirement. "
            f"Current status: {stream.status}",
        )

    result = retire_stream(
        stream,
        summary or DEFAULT_ARCHIVE_SUMMARY,
        config=config,
        db=db,
        delete_worktree=delete_worktree,
        cleanup_plan_files=cleanup_plan_files,
    )

    db.delete_stream(stream_id)
    logger.info(f"Stream {stream_id} retired and deleted from database")

    return {
        "success": result.success,
        "stream_id": stream_id,
        "deleted": True,
        "message": (
            f"Stream {stream_id} retired and removed from database"
            if result.success
            else f"Stream {stream_id} retired with warnings and removed from database"
        ),
        "retirement": result.as_dict(),
    }


def archive_bulk(
    stream_ids: List[str],
    *,
    db: Database,
    config: Config,
    summary: Optional[str] = None,
    delete_worktree: bool = True,
    cleanup_plan_files: bool = True,
) -> Dict[str, Any]:
    """Retire several streams; each id succeeds or fails on its own."""
    if not stream_ids:
        raise ValidationError("stream_ids", "must be a non-empty list")

    results: List[Dict[str, Any]] = []
    for stream_id in stream_ids:
        if stream_id == MAIN_STREAM_ID:
            results.append({
                "stream_id": stream_id,
                "success": False,
                "error": "Cannot retire the main branch stream",
            })
            continue
        stream = db.get_stream(stream_id)
        if stream is None:
            results.append({"stream_id": stream_id, "success": False, "error": "Not found"})
            continue
        if stream.status == "archived":
            results.append({"stream_id": stream_id, "success": True, "error": "Already retired"})
            continue
        if stream.status != "completed":
            results.append({
                "stream_id": stream_id,
                "success": False,
                "error": f"Cannot retire: status is '{stream.status}', must be 'completed'",
            })
            continue

        try:
            outcome = archive_stream(
                stream_id,
                db=db,
                config=config,
                summary=summary or DEFAULT_BULK_SUMMARY,
                delete_worktree=delete_worktree,
                cleanup_plan_files=cleanup_plan_files,
            )
        except Exception as e:
            results.append({"stream_id": stream_id, "success": False, "error": str(e)})
            continue

        errors = outcome["retirement"]["errors"]
        results.append({
            "stream_id": stream_id,
            "success": outcome["success"],
            "deleted": True,
            "error": "; ".join(errors) if errors else None,
            "retirement": outcome["retirement"],
        })

    succeeded = sum(1 for r in results if r["success"])
    failed = len(results) - succeeded
    return {
        "success": failed == 0,
        "message": f"Retired {succeeded} streams, {failed} failed",
        "results": results,
    }


# ── Git ───────────────────────────────────────────────────────────────────────

def scan_commits(
    *,
    db: Database,
    config: Config,
    git: Optional[GitIntrospector] = None,
    stream_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Scan git for new commits, for one stream or for all of them."""
    from .scanners.commits import scan_all_commits, scan_stream_commits

    git = _git(config, git)
    if stream_id:
        added = scan_stream_commits(db, git, stream_id)
        return {"stream_id": stream_id, "commits_added": added}
    return _serialize(scan_all_commits(db, git, config))


def reconcile(
    *,
    db: Database,
    config: Config,
    git: Optional[GitIntrospector] = None,
    dry_run: bool = True,
    auto_archive_stale: bool = False,
) -> Dict[str, Any]:
    from .scanners.reconcile import format_reconciliation, reconcile_worktrees

    result = reconcile_worktrees(
        db, _git(config, git), dry_run=dry_run, auto_archive_stale=auto_archive_stale
    )
    out = result.as_dict()
    out["dry_run"] = dry_run
    out["report"] = format_reconciliation(result, dry_run)
    return out


def worktrees(*, config: Config, git: Optional[GitIntrospector] = None) -> Dict[str, Any]:
    items = _git(config, git).list_worktrees()
    return {
        "worktrees": {key: _serialize(w) for key, w in sorted(items.items())},
        "total": len(items),
    }


def merged_branches(
    *,
    config: Config,
    git: Optional[GitIntrospector] = None,
    base: Optional[str] = None,
) -> Dict[str, Any]:
    branches = sorted(_git(config, git).list_merged_branches(base))
    return {
        "base": base or config.main_branch,
        "branches": branches,
        "total": len(branches),
    }


# ── Worker ────────────────────────────────────────────────────────────────────

def process(*, db: Database, config: Config, max_jobs: int = 10) -> Dict[str, int]:
    """Process pending summary jobs."""
    from .worker import process_summary_jobs
    n = process_summary_jobs(db=db, config=config, max_jobs=max_jobs)
    return {"jobs_processed": n}


def version() -> Dict[str, str]:
    return {"version": VERSION}
