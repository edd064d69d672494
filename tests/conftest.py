"""Shared test fixtures for git-insync."""

from __future__ import annotations

import shutil
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from git_insync.core import (
    Credentials,
    HeadBranch,
    NotARepositoryError,
    Remote,
    TransportError,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


# ---------------------------------------------------------------------------
# In-memory repository
# ---------------------------------------------------------------------------


@dataclass
class FakeRepository:
    """Repository handle backed by plain attributes instead of a working copy."""

    name: str = "project"
    path: Path = Path("/work/project")
    head: HeadBranch = field(
        default_factory=lambda: HeadBranch(
            name="main", is_tracking=True, remote_name="origin", ahead_by=0, behind_by=0
        )
    )
    remotes: dict[str, Remote] = field(
        default_factory=lambda: {
            "origin": Remote(
                name="origin",
                url="https://git.example.com/team/project.git",
                fetch_refspecs=("+refs/heads/*:refs/remotes/origin/*",),
            )
        }
    )
    dirty: bool = False
    fetch_error: str | None = None
    head_after_fetch: HeadBranch | None = None
    fetches: list[tuple[str, tuple[str, ...], Credentials]] = field(default_factory=list)

    def head_branch(self) -> HeadBranch:
        return self.head

    def remote(self, name: str) -> Remote | None:
        return self.remotes.get(name)

    def is_dirty(self) -> bool:
        return self.dirty

    def fetch(self, remote_name, refspecs, credentials) -> None:
        self.fetches.append((remote_name, tuple(refspecs), credentials()))
        if self.fetch_error is not None:
            raise TransportError(self.fetch_error)
        if self.head_after_fetch is not None:
            self.head = self.head_after_fetch


def fake_opener(repos: dict[Path, FakeRepository]):
    """Build an opener serving fakes by path; unknown paths are not repositories."""

    @contextmanager
    def opener(path: Path):
        if Path(path) not in repos:
            raise NotARepositoryError(Path(path))
        yield repos[Path(path)]

    return opener


@pytest.fixture
def fake_repo() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def credentials() -> Credentials:
    return Credentials(username="jdoe", password="s3cret")


# ---------------------------------------------------------------------------
# Real git repositories
# ---------------------------------------------------------------------------


def git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    )
    return result.stdout


def commit_file(repo: Path, filename: str, content: str) -> None:
    (repo / filename).write_text(content)
    git(repo, "add", filename)
    git(repo, "commit", "-q", "-m", f"Update {filename}")


@pytest.fixture
def git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Isolate git from the user's configuration."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test Author")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "author@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test Author")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "author@example.com")
    monkeypatch.delenv("GIT_INSYNC_CONFIG", raising=False)


@pytest.fixture
def origin_repo(tmp_path: Path, git_env: None) -> Path:
    """Bare repository with one commit on main."""
    origin = tmp_path / "origin.git"
    git(tmp_path, "init", "-q", "--bare", str(origin))
    git(origin, "symbolic-ref", "HEAD", "refs/heads/main")

    seed = tmp_path / "seed"
    git(tmp_path, "init", "-q", str(seed))
    git(seed, "symbolic-ref", "HEAD", "refs/heads/main")
    commit_file(seed, "README.md", "hello\n")
    git(seed, "remote", "add", "origin", str(origin))
    git(seed, "push", "-q", "origin", "main")
    return origin


@pytest.fixture
def fleet_root(tmp_path: Path) -> Path:
    root = tmp_path / "fleet"
    root.mkdir()
    return root


@pytest.fixture
def working_copy(origin_repo: Path, fleet_root: Path) -> Path:
    """Clone of origin_repo tracking origin/main."""
    git(fleet_root, "clone", "-q", str(origin_repo), "work")
    return fleet_root / "work"


def push_from_seed(tmp_path: Path, filename: str = "CHANGES.md") -> None:
    """Advance origin/main by one commit made in the seed repository."""
    seed = tmp_path / "seed"
    commit_file(seed, filename, f"{filename}\n")
    git(seed, "push", "-q", "origin", "main")
