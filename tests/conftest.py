"""Shared fixtures: throwaway git repositories and ledgers."""

import shutil
import subprocess
from pathlib import Path

import pytest

from streamstatus.core.config import Config
from streamstatus.core.db import Database


def git(cwd: Path, *args: str) -> str:
    p = subprocess.run(
        ["git", *args], cwd=cwd, text=True, capture_output=True, check=True
    )
    return p.stdout


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    path = repo / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD").strip()


@pytest.fixture
def repo(tmp_path):
    """A git repository on branch `main` with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    root = tmp_path / "project"
    root.mkdir()
    git(root, "init", "-q")
    git(root, "symbolic-ref", "HEAD", "refs/heads/main")
    git(root, "config", "user.name", "Test User")
    git(root, "config", "user.email", "test@example.com")
    git(root, "config", "commit.gpgsign", "false")
    commit_file(root, "README.md", "hello\n", "Initial commit")
    return root


@pytest.fixture
def worktree_root(tmp_path):
    root = tmp_path / "project-worktrees"
    root.mkdir()
    return root


def add_worktree(repo: Path, worktree_root: Path, name: str, branch: str = None) -> Path:
    path = worktree_root / name
    git(repo, "worktree", "add", "-q", "-b", branch or name, str(path), "main")
    return path


@pytest.fixture
def config(tmp_path, repo, worktree_root):
    return Config(
        project_root=str(repo),
        worktree_root=str(worktree_root),
        cache_root=str(tmp_path / "cache"),
    )


@pytest.fixture
def db(tmp_path):
    """Fresh database per test."""
    db = Database(tmp_path / "test.db")
    db.initialize()
    yield db
    db.close()
