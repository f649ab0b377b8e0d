"""Tests for streamstatus.scanners.commits: idempotent commit scanning."""

import pytest

from conftest import add_worktree, commit_file
from streamstatus.core.errors import NotFoundError
from streamstatus.core.models import Commit, Stream
from streamstatus.scanners.commits import scan_all_commits, scan_stream_commits
from streamstatus.scanners.git import GitIntrospector


def _stream(stream_id, worktree_path, **overrides):
    defaults = dict(
        id=stream_id,
        stream_number=stream_id.upper(),
        title=f"Work on {stream_id}",
        category="backend",
        priority="medium",
        worktree_path=str(worktree_path),
        branch=stream_id,
    )
    defaults.update(overrides)
    return Stream(**defaults)


class FakeGit:
    """Stands in for GitIntrospector with canned commits."""

    main_branch = "main"

    def __init__(self, main=(), branches=None, fail_for=()):
        self.main = list(main)
        self.branches = branches or {}
        self.fail_for = set(fail_for)

    def log_main_commits(self, since="7 days ago", limit=20):
        return self.main

    def log_branch_commits(self, worktree_path, stream_id, exclude_from=None, limit=50):
        if stream_id in self.fail_for:
            raise RuntimeError("disk on fire")
        return self.branches.get(stream_id, [])


def _commit(stream_id, n):
    return Commit(
        stream_id=stream_id,
        commit_hash=f"{stream_id}-{n}".ljust(40, "0"),
        message=f"{stream_id} change {n}",
        author="Ada",
        files_changed=1,
        timestamp=f"2025-01-01T00:00:{n:02d}.000000+00:00",
    )


class TestScanAll:
    def test_scans_main_and_streams(self, db, repo, worktree_root, config):
        wt = add_worktree(repo, worktree_root, "auth-api")
        commit_file(wt, "auth.py", "x\n", "Add auth")
        commit_file(wt, "auth_test.py", "x\n", "Test auth")
        db.insert_stream(_stream("auth-api", wt))

        result = scan_all_commits(db, GitIntrospector(repo), config)
        assert result.scanned == 2
        assert result.commits_added == 3
        assert result.errors == 0
        assert [c.message for c in db.get_commits("main")] == ["Initial commit"]
        assert db.count_commits("auth-api") == 2

    def test_rescan_counts_duplicates_not_errors(self, db, repo, worktree_root, config):
        wt = add_worktree(repo, worktree_root, "auth-api")
        commit_file(wt, "auth.py", "x\n", "Add auth")
        db.insert_stream(_stream("auth-api", wt))
        git = GitIntrospector(repo)

        scan_all_commits(db, git, config)
        again = scan_all_commits(db, git, config)
        assert again.commits_added == 0
        assert again.duplicates == 2
        assert again.errors == 0

    def test_creates_main_stream(self, db, repo, config):
        scan_all_commits(db, GitIntrospector(repo), config)
        main = db.get_stream("main")
        assert main is not None
        assert main.branch == "main"

    def test_missing_worktree_is_skipped(self, db, tmp_path, config):
        db.insert_stream(_stream("gone", tmp_path / "gone"))
        result = scan_all_commits(db, FakeGit(), config)
        assert result.scanned == 2
        assert result.errors == 0

    def test_one_failing_stream_does_not_stop_others(self, db, tmp_path, config):
        for sid in ("a", "b"):
            (tmp_path / sid).mkdir()
            db.insert_stream(_stream(sid, tmp_path / sid))
        fake = FakeGit(branches={"b": [_commit("b", 1)]}, fail_for={"a"})

        result = scan_all_commits(db, fake, config)
        assert result.errors == 1
        assert result.commits_added == 1
        assert db.count_commits("b") == 1

    def test_insert_failure_counts_as_error(self, db, tmp_path, config):
        (tmp_path / "a").mkdir()
        db.insert_stream(_stream("a", tmp_path / "a"))
        # Attributed to a stream the ledger does not know
        fake = FakeGit(branches={"a": [_commit("ghost", 1)]})

        result = scan_all_commits(db, fake, config)
        assert result.errors == 1
        assert result.commits_added == 0


class TestScanStream:
    def test_adds_and_touches(self, db, tmp_path):
        (tmp_path / "a").mkdir()
        before = db.insert_stream(_stream("a", tmp_path / "a"))
        fake = FakeGit(branches={"a": [_commit("a", 1), _commit("a", 2)]})

        assert scan_stream_commits(db, fake, "a") == 2
        assert db.get_stream("a").updated_at > before.updated_at
        assert scan_stream_commits(db, fake, "a") == 0

    def test_unknown_stream(self, db):
        with pytest.raises(NotFoundError):
            scan_stream_commits(db, FakeGit(), "ghost")
