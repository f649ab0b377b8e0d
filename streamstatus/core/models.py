"""Data models for Stream Status."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

STREAM_STATUSES = ("initializing", "active", "blocked", "paused", "completed", "archived")
CATEGORIES = ("frontend", "backend", "infrastructure", "testing", "documentation", "refactoring")
PRIORITIES = ("critical", "high", "medium", "low")
EVENT_TYPES = ("created", "status_changed", "progress_updated", "completed", "archived")
JOB_STATUSES = ("pending", "running", "done", "failed")

# Synthetic stream that owns commits made directly on the main branch
MAIN_STREAM_ID = "main"


@dataclass
class RecentActivity:
    last_commit: str
    files_changed: int
    last_commit_time: str  # humanized, e.g. "3 hours ago"
    author: Optional[str] = None


@dataclass
class Stream:
    id: str
    stream_number: str
    title: str
    category: str      # see CATEGORIES
    priority: str      # see PRIORITIES
    worktree_path: str
    branch: str
    status: str = "initializing"
    progress: int = 0  # 0..100
    current_phase: Optional[int] = None
    blocked_by: Optional[str] = None
    phases: Optional[List[str]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None  # set iff status == "completed"
    recent_activity: Optional[RecentActivity] = None


@dataclass
class Commit:
    stream_id: str
    commit_hash: str
    message: str
    author: Optional[str]
    files_changed: int
    timestamp: str
    id: Optional[int] = None


@dataclass
class HistoryEvent:
    stream_id: str
    event_type: str  # see EVENT_TYPES
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    timestamp: Optional[str] = None
    id: Optional[int] = None


@dataclass
class SummaryJob:
    id: int
    stream_id: str
    title: str
    branch: str
    category: str
    worktree_path: Optional[str]
    stream_created_at: Optional[str]
    stream_completed_at: Optional[str]
    user_summary: str
    archive_path: str
    status: str = "pending"  # pending | running | done | failed
    attempts: int = 0
    max_attempts: int = 3
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None


@dataclass
class ServerLock:
    pid: int
    port: int
    project_root: str
    project_name: str
    started_at: str
    process_version: str


@dataclass(frozen=True)
class WorktreeInfo:
    path: str
    branch: str
    commit_hash: str
    is_main: bool = False


@dataclass
class InsertResult:
    status: str  # inserted | duplicate | error
    error: Optional[str] = None

    @property
    def inserted(self) -> bool:
        return self.status == "inserted"

