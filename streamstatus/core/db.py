"""
SQLite stream ledger for Stream Status.

Single-file implementation: schema, CRUD, stats, summary job queue.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import ConflictError, NotFoundError, ValidationError
from .models import (
    CATEGORIES,
    EVENT_TYPES,
    MAIN_STREAM_ID,
    PRIORITIES,
    STREAM_STATUSES,
    Commit,
    HistoryEvent,
    InsertResult,
    RecentActivity,
    Stream,
    SummaryJob,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ── Schema ────────────────────────────────────────────────────────────────────

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT DEFAULT (datetime('now')),
    description TEXT
);

CREATE TABLE IF NOT EXISTS streams (
    id TEXT PRIMARY KEY,
    stream_number TEXT NOT NULL,
    title TEXT NOT NULL,
    category TEXT NOT NULL,
    priority TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'initializing',
    progress INTEGER DEFAULT 0,
    current_phase INTEGER,
    worktree_path TEXT,
    branch TEXT NOT NULL,
    blocked_by TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    phases TEXT
);

CREATE TABLE IF NOT EXISTS commits (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    stream_id TEXT NOT NULL REFERENCES streams(id) ON DELETE CASCADE,
    commit_hash TEXT NOT NULL UNIQUE,
    message TEXT NOT NULL,
    author TEXT,
    files_changed INTEGER DEFAULT 0,
    timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stream_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    stream_id TEXT NOT NULL REFERENCES streams(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    timestamp TEXT NOT NULL
);

-- No foreign key: a job outlives the stream it summarizes
CREATE TABLE IF NOT EXISTS summary_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    stream_id TEXT NOT NULL,
    title TEXT NOT NULL,
    branch TEXT NOT NULL,
    category TEXT NOT NULL,
    worktree_path TEXT,
    stream_created_at TEXT,
    stream_completed_at TEXT,
    user_summary TEXT NOT NULL,
    archive_path TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 3,
    error_message TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_streams_status ON streams(status);
CREATE INDEX IF NOT EXISTS idx_streams_category ON streams(category);
CREATE INDEX IF NOT EXISTS idx_streams_priority ON streams(priority);
CREATE INDEX IF NOT EXISTS idx_streams_updated ON streams(updated_at DESC);
CREATE INDEX IF NOT EXISTS idx_commits_stream ON commits(stream_id);
CREATE INDEX IF NOT EXISTS idx_commits_timestamp ON commits(timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_history_stream ON stream_history(stream_id);
CREATE INDEX IF NOT EXISTS idx_history_timestamp ON stream_history(timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_summary_jobs_status ON summary_jobs(status, created_at);
"""

_UPDATABLE_FIELDS = ("status", "progress", "current_phase", "blocked_by")


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def to_utc_iso(value: str) -> str:
    """Normalize an ISO-8601 timestamp to the ledger's UTC format."""
    dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def today_start() -> str:
    """Local midnight, expressed in the ledger's UTC format."""
    midnight = datetime.now().astimezone().replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc).isoformat(timespec="microseconds")


def humanize_since(timestamp: Optional[str], *, now: Optional[datetime] = None) -> str:
    """Format a timestamp as relative time, e.g. "2 hours ago"."""
    if not timestamp:
        return ""
    try:
        then = datetime.fromisoformat(to_utc_iso(timestamp))
    except ValueError:
        return ""
    now = now or datetime.now(timezone.utc)
    seconds = int((now - then).total_seconds())
    minutes, hours, days = seconds // 60, seconds // 3600, seconds // 86400

    if days > 0:
        return f"{days} day{'s' if days > 1 else ''} ago"
    if hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    if minutes > 0:
        return f"{minutes} minute{'s' if minutes > 1 else ''} ago"
    return "just now"


def validate_status(status: str) -> None:
    if status not in STREAM_STATUSES:
        raise ValidationError(
            "status", f"invalid status {status!r}. Must be one of: {', '.join(STREAM_STATUSES)}"
        )


def validate_progress(progress: Any) -> None:
    if isinstance(progress, bool) or not isinstance(progress, int) or not 0 <= progress <= 100:
        raise ValidationError("progress", "must be an integer between 0 and 100")


# ── Database ──────────────────────────────────────────────────────────────────


class Database:
    """Thread-safe SQLite stream ledger."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path).expanduser()
        self._local = threading.local()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn

        conn = sqlite3.connect(self.db_path, timeout=5.0, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        conn.execute("PRAGMA foreign_keys=ON;")

        conn.row_factory = sqlite3.Row
        self._local.conn = conn
        return conn

    def initialize(self) -> None:
        """Create tables if this is a fresh database."""
        conn = self._conn()
        conn.executescript(SCHEMA_SQL)
        conn.execute(
            "INSERT OR IGNORE INTO schema_version (version, description) VALUES (?, ?)",
            (SCHEMA_VERSION, "Stream Status initial schema"),
        )
        conn.commit()

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn:
            conn.close()
            self._local.conn = None

    # ── Streams ───────────────────────────────────────────────────────────

    def insert_stream(self, s: Stream) -> Stream:
        if s.category not in CATEGORIES:
            raise ValidationError("category", f"must be one of: {', '.join(CATEGORIES)}")
        if s.priority not in PRIORITIES:
            raise ValidationError("priority", f"must be one of: {', '.join(PRIORITIES)}")
        validate_status(s.status)
        validate_progress(s.progress)

        now = utcnow()
        created_at = s.created_at or now
        completed_at = (s.completed_at or now) if s.status == "completed" else None
        conn = self._conn()
        try:
            conn.execute(
                """INSERT INTO streams
                   (id, stream_number, title, category, priority, status, progress,
                    current_phase, worktree_path, branch, blocked_by, created_at,
                    updated_at, completed_at, phases)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    s.id,
                    s.stream_number,
                    s.title,
                    s.category,
                    s.priority,
                    s.status,
                    s.progress,
                    s.current_phase,
                    s.worktree_path,
                    s.branch,
                    s.blocked_by or None,
                    created_at,
                    s.updated_at or created_at,
                    completed_at,
                    json.dumps(s.phases) if s.phases else None,
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise ConflictError(f"Stream already exists: {s.id}")
        return self.get_stream(s.id)

    def update_stream(self, stream_id: str, **fields: Any) -> Stream:
        """Apply the given fields and stamp updated_at.

        An empty field set changes nothing, updated_at included.
        """
        unknown = set(fields) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(sorted(unknown)[0], "is not an updatable field")

        current = self.get_stream(stream_id)
        if current is None:
            raise NotFoundError(stream_id)

        updates = {k: v for k, v in fields.items() if v is not None}
        if not updates:
            return current

        if "status" in updates:
            validate_status(updates["status"])
        if "progress" in updates:
            validate_progress(updates["progress"])
        if "current_phase" in updates:
            phase = updates["current_phase"]
            if isinstance(phase, bool) or not isinstance(phase, int) or phase < 0:
                raise ValidationError("current_phase", "must be a non-negative integer")
        if "blocked_by" in updates:
            updates["blocked_by"] = updates["blocked_by"] or None

        now = utcnow()
        assignments = [f"{name} = ?" for name in updates]
        values: List[Any] = list(updates.values())

        if "status" in updates:
            if updates["status"] == "completed":
                # Keep the first completion time on repeated completion
                assignments.append(
                    "completed_at = CASE WHEN status = 'completed' AND completed_at IS NOT NULL "
                    "THEN completed_at ELSE ? END"
                )
                values.append(now)
            else:
                assignments.append("completed_at = NULL")

        assignments.append("updated_at = ?")
        values.append(now)
        values.append(stream_id)

        conn = self._conn()
        # SET expressions all see the pre-update row, so the CASE above reads the old status
        conn.execute(
            f"UPDATE streams SET {', '.join(assignments)} WHERE id = ?",
            values,
        )
        conn.commit()
        return self.get_stream(stream_id)

    def complete_stream(self, stream_id: str) -> Stream:
        now = utcnow()
        conn = self._conn()
        cur = conn.execute(
            """UPDATE streams
               SET completed_at = CASE WHEN status = 'completed' AND completed_at IS NOT NULL
                                       THEN completed_at ELSE ? END,
                   status = 'completed',
                   updated_at = ?
               WHERE id = ?""",
            (now, now, stream_id),
        )
        conn.commit()
        if cur.rowcount == 0:
            raise NotFoundError(stream_id)
        return self.get_stream(stream_id)

    def touch_stream(self, stream_id: str) -> None:
        conn = self._conn()
        conn.execute("UPDATE streams SET updated_at = ? WHERE id = ?", (utcnow(), stream_id))
        conn.commit()

    def get_stream(self, stream_id: str) -> Optional[Stream]:
        row = (
            self._conn()
            .execute("SELECT * FROM streams WHERE id=?", (stream_id,))
            .fetchone()
        )
        return self._row_to_stream(row) if row else None

    def list_streams(
        self,
        *,
        status: Optional[str] = None,
        category: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> List[Stream]:
        """List tracked streams, most recently updated first.

        Each stream carries `recent_activity` built from its latest commit.
        The synthetic main stream is never listed.
        """
        query = """
            SELECT s.*,
                   c.message AS last_commit_message,
                   c.files_changed AS last_commit_files,
                   c.timestamp AS last_commit_time,
                   c.author AS last_commit_author
            FROM streams s
            LEFT JOIN (
                SELECT stream_id, message, files_changed, timestamp, author,
                       ROW_NUMBER() OVER (
                           PARTITION BY stream_id ORDER BY timestamp DESC, id DESC
                       ) AS rn
                FROM commits
            ) c ON s.id = c.stream_id AND c.rn = 1
            WHERE s.id != ?
        """
        params: List[Any] = [MAIN_STREAM_ID]
        if status:
            query += " AND s.status = ?"
            params.append(status)
        if category:
            query += " AND s.category = ?"
            params.append(category)
        if priority:
            query += " AND s.priority = ?"
            params.append(priority)
        query += " ORDER BY s.updated_at DESC"

        rows = self._conn().execute(query, params).fetchall()
        return [self._row_to_stream(r) for r in rows]

    def delete_stream(self, stream_id: str) -> None:
        """Remove a stream with its commits and history. Irreversible."""
        conn = self._conn()
        with conn:
            conn.execute("DELETE FROM commits WHERE stream_id = ?", (stream_id,))
            conn.execute("DELETE FROM stream_history WHERE stream_id = ?", (stream_id,))
            conn.execute("DELETE FROM streams WHERE id = ?", (stream_id,))
        logger.info(f"Stream {stream_id} removed from database")

    def ensure_main_stream(self, project_root: str, main_branch: str = "main") -> None:
        now = utcnow()
        conn = self._conn()
        conn.execute(
            """INSERT OR IGNORE INTO streams
               (id, stream_number, title, category, priority, status, progress,
                worktree_path, branch, created_at, updated_at)
               VALUES (?, 'main', 'Main Branch', 'infrastructure', 'high', 'active', 100,
                       ?, ?, ?, ?)""",
            (MAIN_STREAM_ID, project_root, main_branch, now, now),
        )
        conn.commit()

    def _row_to_stream(self, row: sqlite3.Row) -> Stream:
        keys = row.keys()

        activity = None
        if "last_commit_message" in keys and row["last_commit_message"]:
            activity = RecentActivity(
                last_commit=row["last_commit_message"],
                files_changed=row["last_commit_files"] or 0,
                last_commit_time=humanize_since(row["last_commit_time"]),
                author=row["last_commit_author"],
            )

        return Stream(
            id=row["id"],
            stream_number=row["stream_number"],
            title=row["title"],
            category=row["category"],
            priority=row["priority"],
            status=row["status"],
            progress=row["progress"] or 0,
            current_phase=row["current_phase"],
            worktree_path=row["worktree_path"],
            branch=row["branch"],
            blocked_by=row["blocked_by"],
            phases=json.loads(row["phases"]) if row["phases"] else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            recent_activity=activity,
        )

    # ── Commits ───────────────────────────────────────────────────────────

    def add_commit(self, c: Commit) -> InsertResult:
        """Insert a commit; an already known hash is reported, not raised.

        Timestamps are stored as UTC so text ordering matches time ordering.
        """
        if c.timestamp:
            try:
                timestamp = to_utc_iso(c.timestamp)
            except ValueError:
                raise ValidationError("timestamp", f"not an ISO-8601 timestamp: {c.timestamp!r}")
        else:
            timestamp = utcnow()

        conn = self._conn()
        try:
            cur = conn.execute(
                """INSERT INTO commits
                   (stream_id, commit_hash, message, author, files_changed, timestamp)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(commit_hash) DO NOTHING""",
                (
                    c.stream_id,
                    c.commit_hash,
                    c.message,
                    c.author,
                    max(int(c.files_changed or 0), 0),
                    timestamp,
                ),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            return InsertResult(status="error", error=str(e))
        if cur.rowcount == 0:
            return InsertResult(status="duplicate")
        return InsertResult(status="inserted")

    def get_commits(self, stream_id: str, *, limit: int = 20) -> List[Commit]:
        rows = (
            self._conn()
            .execute(
                "SELECT * FROM commits WHERE stream_id=? ORDER BY timestamp DESC, id DESC LIMIT ?",
                (stream_id, limit),
            )
            .fetchall()
        )
        return [self._row_to_commit(r) for r in rows]

    def recent_commits(self, *, limit: int = 20) -> List[Commit]:
        rows = (
            self._conn()
            .execute("SELECT * FROM commits ORDER BY timestamp DESC, id DESC LIMIT ?", (limit,))
            .fetchall()
        )
        return [self._row_to_commit(r) for r in rows]

    def count_commits(self, stream_id: Optional[str] = None) -> int:
        conn = self._conn()
        if stream_id is None:
            return conn.execute("SELECT COUNT(*) AS c FROM commits").fetchone()["c"]
        return conn.execute(
            "SELECT COUNT(*) AS c FROM commits WHERE stream_id=?", (stream_id,)
        ).fetchone()["c"]

    def _row_to_commit(self, row: sqlite3.Row) -> Commit:
        return Commit(
            id=row["id"],
            stream_id=row["stream_id"],
            commit_hash=row["commit_hash"],
            message=row["message"],
            author=row["author"],
            files_changed=row["files_changed"] or 0,
            timestamp=row["timestamp"],
        )

    # ── History ───────────────────────────────────────────────────────────

    def add_history_event(self, e: HistoryEvent) -> None:
        if e.event_type not in EVENT_TYPES:
            raise ValidationError("event_type", f"must be one of: {', '.join(EVENT_TYPES)}")
        conn = self._conn()
        conn.execute(
            """INSERT INTO stream_history (stream_id, event_type, old_value, new_value, timestamp)
               VALUES (?, ?, ?, ?, ?)""",
            (e.stream_id, e.event_type, e.old_value, e.new_value, e.timestamp or utcnow()),
        )
        conn.commit()

    def get_history(self, stream_id: str) -> List[HistoryEvent]:
        rows = (
            self._conn()
            .execute(
                "SELECT * FROM stream_history WHERE stream_id=? ORDER BY timestamp DESC, id DESC",
                (stream_id,),
            )
            .fetchall()
        )
        return [self._row_to_history_event(r) for r in rows]

    def _row_to_history_event(self, row: sqlite3.Row) -> HistoryEvent:
        return HistoryEvent(
            id=row["id"],
            stream_id=row["stream_id"],
            event_type=row["event_type"],
            old_value=row["old_value"],
            new_value=row["new_value"],
            timestamp=row["timestamp"],
        )

    # ── Summary jobs ──────────────────────────────────────────────────────

    def queue_summary_job(
        self,
        stream: Stream,
        summary: str,
        archive_path: str,
        *,
        max_attempts: int = 3,
    ) -> int:
        conn = self._conn()
        cur = conn.execute(
            """INSERT INTO summary_jobs
               (stream_id, title, branch, category, worktree_path, stream_created_at,
                stream_completed_at, user_summary, archive_path, max_attempts, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                stream.id,
                stream.title,
                stream.branch,
                stream.category,
                stream.worktree_path,
                stream.created_at,
                stream.completed_at,
                summary,
                str(archive_path),
                max_attempts,
                utcnow(),
            ),
        )
        conn.commit()
        return int(cur.lastrowid)

    def claim_summary_job(self) -> Optional[SummaryJob]:
        """Claim the oldest pending job and mark it running."""
        conn = self._conn()
        now = utcnow()
        with conn:
            row = conn.execute(
                """SELECT id FROM summary_jobs
                   WHERE status = 'pending' AND attempts < max_attempts
                   ORDER BY created_at ASC, id ASC LIMIT 1"""
            ).fetchone()
            if not row:
                return None
            cur = conn.execute(
                """UPDATE summary_jobs
                   SET status = 'running', attempts = attempts + 1, started_at = ?
                   WHERE id = ? AND status = 'pending'""",
                (now, row["id"]),
            )
            if cur.rowcount == 0:
                # Another worker got there first
                return None
        return self.get_summary_job(row["id"])

    def complete_summary_job(self, job_id: int) -> None:
        conn = self._conn()
        conn.execute(
            """UPDATE summary_jobs SET status='done', error_message=NULL, completed_at=?
               WHERE id=?""",
            (utcnow(), job_id),
        )
        conn.commit()

    def fail_summary_job(self, job_id: int, error: str) -> None:
        """Record a failure; the job returns to pending until attempts run out."""
        conn = self._conn()
        conn.execute(
            """UPDATE summary_jobs
               SET status = CASE WHEN attempts < max_attempts THEN 'pending' ELSE 'failed' END,
                   error_message = ?,
                   completed_at = CASE WHEN attempts < max_attempts THEN NULL ELSE ? END
               WHERE id = ?""",
            (error[:2000], utcnow(), job_id),
        )
        conn.commit()

    def get_summary_job(self, job_id: int) -> Optional[SummaryJob]:
        row = (
            self._conn()
            .execute("SELECT * FROM summary_jobs WHERE id=?", (job_id,))
            .fetchone()
        )
        return self._row_to_summary_job(row) if row else None

    def list_summary_jobs(self, *, status: Optional[str] = None) -> List[SummaryJob]:
        conn = self._conn()
        if status:
            rows = conn.execute(
                "SELECT * FROM summary_jobs WHERE status=? ORDER BY created_at DESC, id DESC",
                (status,),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM summary_jobs ORDER BY created_at DESC, id DESC"
            ).fetchall()
        return [self._row_to_summary_job(r) for r in rows]

    def _row_to_summary_job(self, row: sqlite3.Row) -> SummaryJob:
        return SummaryJob(
            id=row["id"],
            stream_id=row["stream_id"],
            title=row["title"],
            branch=row["branch"],
            category=row["category"],
            worktree_path=row["worktree_path"],
            stream_created_at=row["stream_created_at"],
            stream_completed_at=row["stream_completed_at"],
            user_summary=row["user_summary"],
            archive_path=row["archive_path"],
            status=row["status"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    # ── Stats ─────────────────────────────────────────────────────────────

    def stats(self) -> Dict[str, Any]:
        conn = self._conn()
        since = today_start()

        def _count(sql: str, params: tuple = ()) -> int:
            return conn.execute(sql, params).fetchone()["c"]

        def _by_status(status: str) -> int:
            return _count(
                "SELECT COUNT(*) AS c FROM streams WHERE status=? AND id != ?",
                (status, MAIN_STREAM_ID),
            )

        return {
            "active_streams": _count(
                """SELECT COUNT(*) AS c FROM streams
                   WHERE status NOT IN ('completed', 'archived') AND id != ?""",
                (MAIN_STREAM_ID,),
            ),
            "in_progress": _by_status("active"),
            "blocked": _by_status("blocked"),
            "ready_to_start": _by_status("paused"),
            "completed_today": _count(
                "SELECT COUNT(*) AS c FROM streams WHERE completed_at >= ? AND id != ?",
                (since, MAIN_STREAM_ID),
            ),
            "total_commits": _count("SELECT COUNT(*) AS c FROM commits"),
            "commits_today": _count(
                "SELECT COUNT(*) AS c FROM commits WHERE timestamp >= ?", (since,)
            ),
        }


# ── Factory ───────────────────────────────────────────────────────────────────


def open_db(db_path: Path) -> Database:
    """Open and initialize a ledger at `db_path`."""
    db = Database(db_path)
    db.initialize()
    return db
