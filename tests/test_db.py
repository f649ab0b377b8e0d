"""Tests for streamstatus.core.db: stream ledger CRUD, commits, history, jobs, stats."""

from datetime import datetime, timedelta, timezone

import pytest

from streamstatus.core.db import Database, humanize_since, open_db, to_utc_iso, utcnow
from streamstatus.core.errors import ConflictError, NotFoundError, ValidationError
from streamstatus.core.models import Commit, HistoryEvent, Stream


@pytest.fixture
def db(tmp_path):
    """Fresh database per test."""
    db = Database(tmp_path / "test.db")
    db.initialize()
    yield db
    db.close()


def _make_stream(stream_id="stream-001", **overrides) -> Stream:
    defaults = dict(
        id=stream_id,
        stream_number="S-001",
        title="Add login page",
        category="frontend",
        priority="high",
        worktree_path=f"/tmp/worktrees/{stream_id}",
        branch=f"feat/{stream_id}",
    )
    defaults.update(overrides)
    return Stream(**defaults)


def _make_commit(stream_id="stream-001", n=1, **overrides) -> Commit:
    defaults = dict(
        stream_id=stream_id,
        commit_hash=f"{n:040x}",
        message=f"commit {n}",
        author="Ada",
        files_changed=2,
        timestamp=f"2025-01-01T00:{n:02d}:00.000000+00:00",
    )
    defaults.update(overrides)
    return Commit(**defaults)


def _snapshot(db):
    return [tuple(r) for r in db._conn().execute("SELECT * FROM streams ORDER BY id").fetchall()]


# ── Schema ────────────────────────────────────────────────────────────────────


class TestInitialization:
    def test_creates_tables(self, db):
        tables = {
            r[0]
            for r in db._conn().execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        expected = {"schema_version", "streams", "commits", "stream_history", "summary_jobs"}
        assert expected.issubset(tables)

    def test_initialize_idempotent(self, db):
        db.initialize()
        db.initialize()
        row = db._conn().execute("SELECT COUNT(*) as c FROM schema_version").fetchone()
        assert row["c"] == 1

    def test_open_db_creates_parent_dirs(self, tmp_path):
        db = open_db(tmp_path / "nested" / "streams.db")
        assert db.list_streams() == []
        db.close()


# ── Streams ───────────────────────────────────────────────────────────────────


class TestInsertStream:
    def test_insert_defaults(self, db):
        db.insert_stream(_make_stream())
        got = db.get_stream("stream-001")
        assert got.status == "initializing"
        assert got.progress == 0
        assert got.completed_at is None
        assert got.created_at is not None
        assert got.updated_at == got.created_at

    def test_duplicate_id_conflicts(self, db):
        db.insert_stream(_make_stream())
        with pytest.raises(ConflictError):
            db.insert_stream(_make_stream(title="Other"))

    def test_invalid_category(self, db):
        with pytest.raises(ValidationError) as exc:
            db.insert_stream(_make_stream(category="marketing"))
        assert exc.value.field == "category"

    def test_invalid_progress(self, db):
        with pytest.raises(ValidationError) as exc:
            db.insert_stream(_make_stream(progress=101))
        assert exc.value.field == "progress"

    def test_phases_round_trip(self, db):
        db.insert_stream(_make_stream(phases=["design", "build", "ship"]))
        assert db.get_stream("stream-001").phases == ["design", "build", "ship"]

    def test_get_nonexistent(self, db):
        assert db.get_stream("nope") is None


class TestUpdateStream:
    def test_applies_given_fields_only(self, db):
        db.insert_stream(_make_stream())
        got = db.update_stream("stream-001", progress=40)
        assert got.progress == 40
        assert got.status == "initializing"

    def test_bumps_updated_at(self, db):
        before = db.insert_stream(_make_stream())
        after = db.update_stream("stream-001", status="active")
        assert after.updated_at > before.updated_at

    def test_empty_update_is_noop(self, db):
        db.insert_stream(_make_stream())
        before = _snapshot(db)
        db.update_stream("stream-001")
        db.update_stream("stream-001", status=None, progress=None)
        assert _snapshot(db) == before

    def test_unknown_id(self, db):
        with pytest.raises(NotFoundError) as exc:
            db.update_stream("ghost", progress=10)
        assert exc.value.stream_id == "ghost"

    def test_rejects_bad_status(self, db):
        db.insert_stream(_make_stream())
        with pytest.raises(ValidationError) as exc:
            db.update_stream("stream-001", status="done")
        assert exc.value.field == "status"

    @pytest.mark.parametrize("value", [-1, 101, "50", True])
    def test_rejects_bad_progress(self, db, value):
        db.insert_stream(_make_stream())
        with pytest.raises(ValidationError):
            db.update_stream("stream-001", progress=value)

    def test_rejects_unknown_field(self, db):
        db.insert_stream(_make_stream())
        with pytest.raises(ValidationError):
            db.update_stream("stream-001", title="renamed")

    def test_completed_status_stamps_completed_at(self, db):
        db.insert_stream(_make_stream())
        got = db.update_stream("stream-001", status="completed")
        assert got.completed_at is not None

    def test_leaving_completed_clears_completed_at(self, db):
        db.insert_stream(_make_stream())
        db.complete_stream("stream-001")
        got = db.update_stream("stream-001", status="active")
        assert got.completed_at is None

    def test_blocked_by_empty_string_clears(self, db):
        db.insert_stream(_make_stream())
        db.update_stream("stream-001", blocked_by="stream-000")
        assert db.get_stream("stream-001").blocked_by == "stream-000"
        db.update_stream("stream-001", blocked_by="")
        assert db.get_stream("stream-001").blocked_by is None


class TestCompleteStream:
    def test_sets_status_and_completed_at(self, db):
        db.insert_stream(_make_stream())
        got = db.complete_stream("stream-001")
        assert got.status == "completed"
        assert got.completed_at >= got.created_at

    def test_second_call_keeps_completed_at(self, db):
        db.insert_stream(_make_stream())
        first = db.complete_stream("stream-001")
        second = db.complete_stream("stream-001")
        assert second.completed_at == first.completed_at
        assert second.updated_at >= first.updated_at

    def test_unknown_id(self, db):
        with pytest.raises(NotFoundError):
            db.complete_stream("ghost")


class TestListStreams:
    def test_ordered_by_updated_at(self, db):
        db.insert_stream(_make_stream("a"))
        db.insert_stream(_make_stream("b"))
        db.update_stream("a", progress=10)
        assert [s.id for s in db.list_streams()] == ["a", "b"]

    def test_filters(self, db):
        db.insert_stream(_make_stream("a", category="backend", priority="low"))
        db.insert_stream(_make_stream("b", category="frontend", priority="high"))
        db.update_stream("b", status="active")
        assert [s.id for s in db.list_streams(category="backend")] == ["a"]
        assert [s.id for s in db.list_streams(priority="high")] == ["b"]
        assert [s.id for s in db.list_streams(status="active")] == ["b"]

    def test_excludes_main_stream(self, db):
        db.ensure_main_stream("/repo", "main")
        db.insert_stream(_make_stream())
        assert [s.id for s in db.list_streams()] == ["stream-001"]
        assert db.get_stream("main") is not None

    def test_recent_activity_from_latest_commit(self, db):
        db.insert_stream(_make_stream())
        db.add_commit(_make_commit(n=1, message="first"))
        db.add_commit(_make_commit(n=2, message="second", files_changed=7, author="Grace"))
        activity = db.list_streams()[0].recent_activity
        assert activity.last_commit == "second"
        assert activity.files_changed == 7
        assert activity.author == "Grace"
        assert activity.last_commit_time.endswith("ago")

    def test_no_commits_no_activity(self, db):
        db.insert_stream(_make_stream())
        assert db.list_streams()[0].recent_activity is None


class TestDeleteStream:
    def test_removes_commits_and_history(self, db):
        db.insert_stream(_make_stream())
        db.add_commit(_make_commit())
        db.add_history_event(HistoryEvent(stream_id="stream-001", event_type="created"))
        db.delete_stream("stream-001")
        assert db.get_stream("stream-001") is None
        assert db.get_commits("stream-001") == []
        assert db.get_history("stream-001") == []

    def test_keeps_other_streams(self, db):
        db.insert_stream(_make_stream("a"))
        db.insert_stream(_make_stream("b"))
        db.add_commit(_make_commit("b"))
        db.delete_stream("a")
        assert db.count_commits("b") == 1


# ── Commits ───────────────────────────────────────────────────────────────────


class TestCommits:
    def test_insert_then_duplicate(self, db):
        db.insert_stream(_make_stream())
        assert db.add_commit(_make_commit()).status == "inserted"
        dup = db.add_commit(_make_commit(message="same hash"))
        assert dup.status == "duplicate"
        assert not dup.inserted
        assert db.count_commits() == 1

    def test_unknown_stream_is_error(self, db):
        result = db.add_commit(_make_commit(stream_id="ghost"))
        assert result.status == "error"
        assert result.error

    def test_newest_first(self, db):
        db.insert_stream(_make_stream())
        for n in (1, 3, 2):
            db.add_commit(_make_commit(n=n))
        assert [c.message for c in db.get_commits("stream-001")] == [
            "commit 3", "commit 2", "commit 1",
        ]

    def test_timestamps_stored_as_utc(self, db):
        db.insert_stream(_make_stream())
        db.add_commit(_make_commit(n=1, message="older", timestamp="2025-01-01T08:00:00Z"))
        db.add_commit(_make_commit(n=2, message="newer", timestamp="2025-01-01T12:00:00+05:00"))

        stored = {c.message: c.timestamp for c in db.get_commits("stream-001")}
        assert stored["newer"] == "2025-01-01T07:00:00.000000+00:00"
        assert db.list_streams()[0].recent_activity.last_commit == "older"

    def test_bad_timestamp(self, db):
        db.insert_stream(_make_stream())
        with pytest.raises(ValidationError) as exc:
            db.add_commit(_make_commit(timestamp="last tuesday"))
        assert exc.value.field == "timestamp"
        assert db.count_commits() == 0

    def test_recent_commits_limit(self, db):
        db.insert_stream(_make_stream())
        for n in range(1, 6):
            db.add_commit(_make_commit(n=n))
        assert len(db.recent_commits(limit=3)) == 3


class TestHistory:
    def test_append_and_read(self, db):
        db.insert_stream(_make_stream())
        db.add_history_event(HistoryEvent(stream_id="stream-001", event_type="created"))
        db.add_history_event(HistoryEvent(
            stream_id="stream-001", event_type="status_changed",
            old_value="initializing", new_value="active",
        ))
        events = db.get_history("stream-001")
        assert [e.event_type for e in events] == ["status_changed", "created"]

    def test_rejects_unknown_event_type(self, db):
        db.insert_stream(_make_stream())
        with pytest.raises(ValidationError):
            db.add_history_event(HistoryEvent(stream_id="stream-001", event_type="renamed"))


# ── Summary jobs ──────────────────────────────────────────────────────────────


class TestSummaryJobs:
    def _queue(self, db, **kw):
        stream = db.insert_stream(_make_stream())
        return db.queue_summary_job(stream, "Did the thing", "/tmp/archive.md", **kw)

    def test_queue_and_claim(self, db):
        job_id = self._queue(db)
        job = db.claim_summary_job()
        assert job.id == job_id
        assert job.status == "running"
        assert job.attempts == 1
        assert job.started_at is not None
        assert db.claim_summary_job() is None

    def test_complete(self, db):
        job_id = self._queue(db)
        db.claim_summary_job()
        db.complete_summary_job(job_id)
        assert db.get_summary_job(job_id).status == "done"

    def test_fail_retries_then_gives_up(self, db):
        job_id = self._queue(db, max_attempts=2)
        db.claim_summary_job()
        db.fail_summary_job(job_id, "boom")
        assert db.get_summary_job(job_id).status == "pending"

        db.claim_summary_job()
        db.fail_summary_job(job_id, "boom again")
        job = db.get_summary_job(job_id)
        assert job.status == "failed"
        assert job.error_message == "boom again"
        assert db.claim_summary_job() is None

    def test_survives_stream_deletion(self, db):
        job_id = self._queue(db)
        db.delete_stream("stream-001")
        assert db.get_summary_job(job_id).title == "Add login page"

    def test_list_by_status(self, db):
        self._queue(db)
        assert len(db.list_summary_jobs(status="pending")) == 1
        assert db.list_summary_jobs(status="done") == []


# ── Stats ─────────────────────────────────────────────────────────────────────


class TestStats:
    def test_counts(self, db):
        db.ensure_main_stream("/repo", "main")
        db.insert_stream(_make_stream("a"))
        db.insert_stream(_make_stream("b"))
        db.insert_stream(_make_stream("c"))
        db.insert_stream(_make_stream("d"))
        db.update_stream("a", status="active")
        db.update_stream("b", status="blocked")
        db.update_stream("c", status="paused")
        db.complete_stream("d")
        db.add_commit(_make_commit("a", n=1, timestamp=utcnow()))
        db.add_commit(_make_commit("a", n=2, timestamp="2000-01-01T00:00:00.000000+00:00"))

        stats = db.stats()
        assert stats["active_streams"] == 3
        assert stats["in_progress"] == 1
        assert stats["blocked"] == 1
        assert stats["ready_to_start"] == 1
        assert stats["completed_today"] == 1
        assert stats["total_commits"] == 2
        assert stats["commits_today"] == 1

    def test_empty(self, db):
        assert all(v == 0 for v in db.stats().values())


# ── Time helpers ──────────────────────────────────────────────────────────────


class TestTimeHelpers:
    def test_to_utc_iso_normalizes_offset(self):
        assert to_utc_iso("2025-01-01T02:00:00+02:00") == "2025-01-01T00:00:00.000000+00:00"

    def test_to_utc_iso_accepts_z(self):
        assert to_utc_iso("2025-01-01T00:00:00Z").startswith("2025-01-01T00:00:00")

    def test_humanize(self):
        now = datetime(2025, 1, 2, 12, 0, tzinfo=timezone.utc)

        def ago(**kw):
            return humanize_since((now - timedelta(**kw)).isoformat(), now=now)

        assert ago(seconds=10) == "just now"
        assert ago(minutes=1) == "1 minute ago"
        assert ago(hours=3) == "3 hours ago"
        assert ago(days=2) == "2 days ago"
        assert humanize_since(None) == ""
