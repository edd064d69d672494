"""
git-insync: Check that every working copy under a directory is in sync with origin.

For each Git repository directly under a root directory, verify it is safe to
sync (origin remote, approved host, tracking branch, clean working tree),
fetch origin with the configured credentials, and report whether the current
branch needs a push or a merge.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from collections.abc import Callable, Iterable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field, replace
from enum import StrEnum
from functools import partial
from pathlib import Path
from typing import Protocol
from urllib.parse import urlsplit, urlunsplit

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from ._version import __version__
from .formatters import OutputFormatter, ProgressLine
from .schema import get_tool_schema

logger = logging.getLogger(__name__)

ORIGIN = "origin"
FETCH_TIMEOUT_SECONDS = 120.0

CONFIG_FILE_NAME = ".gitinsync"
CONFIG_ENV_VAR = "GIT_INSYNC_CONFIG"
REQUIRED_CONFIG_KEYS = ("username", "password", "remotemustmatch")

# Failure messages shown in the status column
NOT_A_REPOSITORY = "Not a git repository"
NO_ORIGIN_REMOTE = "No origin remote"
HOST_NOT_ALLOWED = "Not checked (external)"
NOT_TRACKING_ORIGIN = "Not tracking origin remote"
UNCOMMITTED = "UNCOMMITTED"
INCORRECT_CREDENTIALS = "Incorrect credentials"
REMOTE_NOT_FOUND = "Remote not found/no access"
TIMED_OUT = "Timed out accessing remote"

# =============================================================================
# Errors
# =============================================================================


class InsyncError(Exception):
    """Base exception for git-insync."""


class NotARepositoryError(InsyncError):
    """The directory is not the top of a Git working copy."""

    def __init__(self, path: Path):
        super().__init__(f"{path} is not a git repository")
        self.path = path


class GitCommandError(InsyncError):
    """A local git query failed unexpectedly."""


class TransportError(InsyncError):
    """Fetching from a remote failed; the message is git's own error text."""


class ConfigError(InsyncError):
    """The configuration file is missing or malformed."""


# =============================================================================
# Domain Models
# =============================================================================


class SyncStatus(StrEnum):
    """Sync status of a tracking branch with its upstream."""

    OK = "OK"
    PUSH_REQUIRED = "PUSH REQUIRED"
    MERGE_REQUIRED = "MERGE REQUIRED"


@dataclass(frozen=True)
class BranchComparison:
    """Ahead/behind comparison of a repository's branch with origin.

    ``status`` is a ``SyncStatus`` when the fetch succeeded, or the fetch
    failure message when only the branch identity is known.
    """

    directory: str
    branch_name: str
    status: SyncStatus | str
    ahead_by: int = 0
    behind_by: int = 0

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "directory": self.directory,
            "branch_name": self.branch_name,
            "status": str(self.status),
            "ahead_by": self.ahead_by,
            "behind_by": self.behind_by,
        }


@dataclass(frozen=True)
class PipelineError:
    """Why a repository could not be compared with origin.

    ``branch_name`` is None when the directory could not be opened or its
    checked-out branch could not be read.
    """

    directory: str
    branch_name: str | None
    message: str
    comparison: BranchComparison | None = None

    def to_dict(self) -> dict:
        return {
            "ok": False,
            "directory": self.directory,
            "branch_name": self.branch_name,
            "message": self.message,
            "comparison": self.comparison.to_dict() if self.comparison else None,
        }


CheckResult = BranchComparison | PipelineError


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


CredentialsProvider = Callable[[], Credentials]
ProgressCallback = Callable[[str], None]


@dataclass(frozen=True)
class Config:
    """Settings loaded once per run from the configuration file."""

    git_username: str
    git_password: str = field(repr=False)
    remote_must_match: str = ""
    ignores: frozenset[str] = frozenset()

    def credentials(self) -> Credentials:
        """Credentials provider handed to each fetch."""
        return Credentials(username=self.git_username, password=self.git_password)


@dataclass(frozen=True)
class HeadBranch:
    """The checked-out branch and its upstream tracking details."""

    name: str
    is_tracking: bool = False
    remote_name: str = ""
    ahead_by: int | None = None
    behind_by: int | None = None


@dataclass(frozen=True)
class Remote:
    name: str
    url: str
    fetch_refspecs: tuple[str, ...] = ()


@dataclass
class RepositorySummary:
    """Summary of a check run."""

    total: int = 0
    ok: int = 0
    need_push: int = 0
    need_merge: int = 0
    errors: int = 0

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "ok": self.ok,
            "need_push": self.need_push,
            "need_merge": self.need_merge,
            "errors": self.errors,
        }


# =============================================================================
# Repository Handle
# =============================================================================


class RepositoryHandle(Protocol):
    """What the sync checks need from an opened repository."""

    name: str
    path: Path

    def head_branch(self) -> HeadBranch: ...

    def remote(self, name: str) -> Remote | None: ...

    def is_dirty(self) -> bool: ...

    def fetch(
        self,
        remote_name: str,
        refspecs: Iterable[str],
        credentials: CredentialsProvider,
    ) -> None: ...


Opener = Callable[[Path], AbstractContextManager[RepositoryHandle]]

# Answers git's credential requests from the environment of the fetch process
# so the password never appears on a command line.
_USERNAME_ENV = "GIT_INSYNC_USERNAME"
_PASSWORD_ENV = "GIT_INSYNC_PASSWORD"
_CREDENTIAL_HELPER = (
    '!f() { test "$1" = get || exit 0; '
    f'printf "username=%s\\npassword=%s\\n" "${_USERNAME_ENV}" "${_PASSWORD_ENV}"; }}; f'
)
_SSH_BATCH_COMMAND = "ssh -o BatchMode=yes"


def fetch_environment(supplied: Credentials) -> dict[str, str]:
    """Environment for a fetch that must never stop to ask for input.

    A GIT_SSH_COMMAND already set by the user is left alone.
    """
    env = os.environ.copy()
    env.setdefault("GIT_SSH_COMMAND", _SSH_BATCH_COMMAND)
    env.update(
        {
            "GIT_TERMINAL_PROMPT": "0",
            _USERNAME_ENV: supplied.username,
            _PASSWORD_ENV: supplied.password,
        }
    )
    return env


def redact_url(url: str) -> str:
    """Hide any user:password part of a remote URL before it is logged."""
    parts = urlsplit(url)
    if not parts.scheme or "@" not in parts.netloc:
        return url
    host = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit(parts._replace(netloc=f"***@{host}"))


class GitRepository:
    """A local working copy queried through the git executable."""

    def __init__(self, path: Path, fetch_timeout: float = FETCH_TIMEOUT_SECONDS):
        self.path = path
        self.name = path.name
        self.fetch_timeout = fetch_timeout

    def _run(
        self,
        *args: str,
        check: bool = True,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess:
        """Run a git command in the repository."""
        result = subprocess.run(
            ["git", *args],
            cwd=self.path,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            check=False,
            env=env,
            timeout=timeout,
        )
        if check and result.returncode != 0:
            stderr = result.stderr.strip() or result.stdout.strip()
            raise GitCommandError(f"git {' '.join(args)} failed in {self.path}: {stderr}")
        return result

    def _config(self, key: str) -> str:
        result = self._run("config", "--get", key, check=False)
        return result.stdout.strip() if result.returncode == 0 else ""

    def head_branch(self) -> HeadBranch:
        """Read the current branch and its ahead/behind counters.

        Uses 'git status --porcelain=v2 --branch'. The counters are None when
        the branch has no upstream or the upstream ref is missing.
        """
        result = self._run("--no-optional-locks", "status", "--porcelain=v2", "--branch")
        name = ""
        upstream = ""
        ahead: int | None = None
        behind: int | None = None
        for line in result.stdout.splitlines():
            if line.startswith("# branch.head "):
                name = line[len("# branch.head ") :]
            elif line.startswith("# branch.upstream "):
                upstream = line[len("# branch.upstream ") :]
            elif line.startswith("# branch.ab "):
                # Format: # branch.ab +<ahead> -<behind>
                parts = line.split()
                if len(parts) == 4:
                    ahead = abs(int(parts[2]))
                    behind = abs(int(parts[3]))

        if not upstream:
            return HeadBranch(name=name)

        return HeadBranch(
            name=name,
            is_tracking=True,
            remote_name=self._config(f"branch.{name}.remote"),
            ahead_by=ahead,
            behind_by=behind,
        )

    def remote(self, name: str) -> Remote | None:
        """Get a remote by name, or None when it is not configured."""
        result = self._run("remote")
        if name not in result.stdout.split():
            return None

        url_result = self._run("remote", "get-url", name, check=False)
        url = url_result.stdout.strip() if url_result.returncode == 0 else ""

        refspec_result = self._run("config", "--get-all", f"remote.{name}.fetch", check=False)
        refspecs = tuple(
            line.strip() for line in refspec_result.stdout.splitlines() if line.strip()
        )
        return Remote(name=name, url=url, fetch_refspecs=refspecs)

    def is_dirty(self) -> bool:
        """Check for staged, unstaged, unmerged or untracked entries."""
        result = self._run("--no-optional-locks", "status", "--porcelain=v2")
        return any(line and not line.startswith("#") for line in result.stdout.splitlines())

    def fetch(
        self,
        remote_name: str,
        refspecs: Iterable[str],
        credentials: CredentialsProvider,
    ) -> None:
        """Fetch refspecs from a remote; raise TransportError on failure."""
        env = fetch_environment(credentials())
        args = [
            "-c",
            "credential.helper=",
            "-c",
            f"credential.helper={_CREDENTIAL_HELPER}",
            "fetch",
            "--quiet",
            remote_name,
            *refspecs,
        ]
        try:
            result = self._run(*args, check=False, env=env, timeout=self.fetch_timeout)
        except subprocess.TimeoutExpired:
            raise TransportError(
                f"Fetching {remote_name} timed out after {self.fetch_timeout:g}s"
            ) from None

        if result.returncode != 0:
            raise TransportError(
                result.stderr.strip()
                or result.stdout.strip()
                or f"git fetch exited with status {result.returncode}"
            )


@contextmanager
def open_repository(path: Path) -> Iterator[GitRepository]:
    """Open the working copy rooted at ``path``.

    Raises:
        NotARepositoryError: If ``path`` is not the top level of a working copy.
    """
    path = Path(path)
    if not path.is_dir():
        raise NotARepositoryError(path)

    result = subprocess.run(
        ["git", "rev-parse", "--show-toplevel"],
        cwd=path,
        capture_output=True,
        encoding="utf-8",
        errors="replace",
        check=False,
    )
    if result.returncode != 0:
        raise NotARepositoryError(path)
    if Path(result.stdout.strip()).resolve() != path.resolve():
        # A plain directory inside some other working copy
        raise NotARepositoryError(path)

    logger.debug("Opened repository %s", path)
    try:
        yield GitRepository(path)
    finally:
        logger.debug("Released repository %s", path)


# =============================================================================
# Validation
# =============================================================================


def _validation_error(repo: RepositoryHandle, message: str) -> PipelineError:
    error = PipelineError(
        directory=repo.name,
        branch_name=repo.head_branch().name,
        message=message,
    )
    logger.info("%s: %s", repo.name, message)
    return error


def ensure_has_origin_remote(repo: RepositoryHandle) -> PipelineError | None:
    if repo.remote(ORIGIN) is None:
        return _validation_error(repo, NO_ORIGIN_REMOTE)
    return None


def ensure_remote_host_is_correct(
    repo: RepositoryHandle, remote_must_match: str
) -> PipelineError | None:
    """Refuse origins outside the approved host so credentials never leak to them."""
    origin = repo.remote(ORIGIN)
    if origin is None or remote_must_match not in origin.url:
        return _validation_error(repo, HOST_NOT_ALLOWED)
    return None


def ensure_tracks_origin_remote(repo: RepositoryHandle) -> PipelineError | None:
    head = repo.head_branch()
    if not (head.is_tracking and head.remote_name == ORIGIN):
        return _validation_error(repo, NOT_TRACKING_ORIGIN)
    return None


def ensure_changes_are_committed(repo: RepositoryHandle) -> PipelineError | None:
    if repo.is_dirty():
        return _validation_error(repo, UNCOMMITTED)
    return None


def ensure_repository_is_valid(
    repo: RepositoryHandle, remote_must_match: str
) -> PipelineError | None:
    """Run the sync-safety checks in order and return the first failure."""
    checks: list[Callable[[RepositoryHandle], PipelineError | None]] = [
        ensure_has_origin_remote,
        partial(ensure_remote_host_is_correct, remote_must_match=remote_must_match),
        ensure_tracks_origin_remote,
        ensure_changes_are_committed,
    ]
    for check in checks:
        error = check(repo)
        if error is not None:
            return error
    return None


# =============================================================================
# Fetch & Compare
# =============================================================================


def classify_fetch_error(message: str) -> str:
    """Turn git's transport error text into a short, actionable message.

    First match wins; anything unrecognised is passed through unchanged.
    """
    lowered = message.lower()
    if "401" in lowered or "replays" in lowered or "authentication failed" in lowered:
        return INCORRECT_CREDENTIALS
    if "404" in lowered or "not found" in lowered:
        return REMOTE_NOT_FOUND
    if "timed out" in lowered:
        return TIMED_OUT
    return message


def fetch_changes(
    credentials: CredentialsProvider, directory: str, repo: RepositoryHandle
) -> PipelineError | None:
    """Fetch every refspec configured on origin."""
    branch_name = repo.head_branch().name
    origin = repo.remote(ORIGIN)
    if origin is None:
        return PipelineError(directory=directory, branch_name=branch_name, message=NO_ORIGIN_REMOTE)

    logger.debug("Fetching %s for %s (%s)", ORIGIN, directory, redact_url(origin.url))
    try:
        repo.fetch(ORIGIN, origin.fetch_refspecs, credentials)
    except TransportError as e:
        message = classify_fetch_error(str(e))
        logger.info("%s: fetch failed: %s", directory, e)
        return PipelineError(directory=directory, branch_name=branch_name, message=message)
    return None


def derive_status(ahead_by: int, behind_by: int) -> SyncStatus:
    if ahead_by > 0 and behind_by > 0:
        return SyncStatus.MERGE_REQUIRED
    if ahead_by > 0:
        return SyncStatus.PUSH_REQUIRED
    return SyncStatus.OK


def get_branch_differences(directory: str, branch: HeadBranch) -> BranchComparison:
    """Compare a fetched branch with its upstream."""
    ahead_by = branch.ahead_by or 0
    behind_by = branch.behind_by or 0
    return BranchComparison(
        directory=directory,
        branch_name=branch.name,
        status=derive_status(ahead_by, behind_by),
        ahead_by=ahead_by,
        behind_by=behind_by,
    )


def fetch_and_compare(credentials: CredentialsProvider, repo: RepositoryHandle) -> CheckResult:
    """Fetch origin, then compare the current branch with its upstream.

    A failed fetch still carries a comparison row with the branch name and the
    failure as its status, so the repository shows up in the report.
    """
    directory = repo.name
    error = fetch_changes(credentials, directory, repo)
    if error is not None:
        comparison = BranchComparison(
            directory=directory,
            branch_name=error.branch_name or "",
            status=error.message,
        )
        return replace(error, comparison=comparison)

    comparison = get_branch_differences(directory, repo.head_branch())
    logger.debug(
        "%s: %s (ahead %d, behind %d)",
        directory,
        comparison.status,
        comparison.ahead_by,
        comparison.behind_by,
    )
    return comparison


# Local failures that end one directory's check without stopping the run
_UNEXPECTED_FAILURES = (GitCommandError, OSError, UnicodeError)


def _branch_name_or_none(repo: RepositoryHandle) -> str | None:
    try:
        return repo.head_branch().name
    except _UNEXPECTED_FAILURES:
        return None


def get_repository_differences(
    path: Path,
    *,
    remote_must_match: str,
    fetch_and_compare: Callable[[RepositoryHandle], CheckResult],
    progress: ProgressCallback,
    opener: Opener = open_repository,
) -> CheckResult:
    """Open, validate, fetch and compare one repository.

    The first failing step ends the run for this directory and its
    PipelineError is returned; nothing is raised past this function.
    """
    try:
        with opener(path) as repo:
            progress(str(path))
            try:
                error = ensure_repository_is_valid(repo, remote_must_match)
                if error is not None:
                    return error
                return fetch_and_compare(repo)
            except _UNEXPECTED_FAILURES as e:
                logger.warning("%s: %s", repo.name, e)
                return PipelineError(
                    directory=repo.name, branch_name=_branch_name_or_none(repo), message=str(e)
                )
    except NotARepositoryError:
        logger.info("%s: %s", path, NOT_A_REPOSITORY)
        return PipelineError(directory=str(path), branch_name=None, message=NOT_A_REPOSITORY)
    except _UNEXPECTED_FAILURES as e:
        logger.warning("%s: %s", path, e)
        return PipelineError(directory=Path(path).name, branch_name=None, message=str(e))


# =============================================================================
# Discovery & Configuration
# =============================================================================


def find_git_repositories(root: Path, ignores: Iterable[str] = ()) -> list[Path]:
    """List sub-directories of root that hold a .git entry and are not ignored."""
    ignored = set(ignores)
    repos = [
        child
        for child in root.iterdir()
        if child.is_dir() and child.name not in ignored and (child / ".git").exists()
    ]
    # Sort by path for consistent ordering
    repos.sort()
    return repos


def resolve_config_file(root: Path, explicit: Path | None = None) -> Path:
    """Locate the configuration file.

    Priority order:
    1. Explicit --config option
    2. $GIT_INSYNC_CONFIG environment variable
    3. <root>/.gitinsync
    """
    if explicit is not None:
        return explicit.expanduser()

    env_config = os.environ.get(CONFIG_ENV_VAR)
    if env_config:
        return Path(env_config).expanduser()

    return root / CONFIG_FILE_NAME


def load_config(config_file: Path) -> Config:
    """Load settings from a ``key: value`` per line configuration file.

    Supports:
    - Comments starting with #
    - Values containing colons (split on the first one only)
    - ignores: directory names separated by |

    Raises:
        ConfigError: If the file is missing, a line has no colon, or a
            required key is absent.
    """
    if not config_file.parent.is_dir():
        raise ConfigError(f"Directory {config_file.parent} does not exist")

    try:
        text = config_file.read_text(encoding="utf-8")
    except (FileNotFoundError, IsADirectoryError):
        raise ConfigError(f"Configuration file not found at {config_file}") from None

    settings: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition(":")
        if not sep:
            raise ConfigError(f"Configuration parse error in {config_file}")
        settings[key.strip()] = value.strip()

    missing = [key for key in REQUIRED_CONFIG_KEYS if key not in settings]
    if missing:
        raise ConfigError(f"Configuration key missing from {config_file}: {', '.join(missing)}")

    ignores = frozenset(
        name.strip() for name in settings.get("ignores", "").split("|") if name.strip()
    )
    return Config(
        git_username=settings["username"],
        git_password=settings["password"],
        remote_must_match=settings["remotemustmatch"],
        ignores=ignores,
    )


# =============================================================================
# Insync Manager
# =============================================================================


def _no_progress(index: int, total: int, path: str) -> None:
    pass


class InsyncManager:
    """Check every repository under a root directory, one at a time."""

    def __init__(self, root_path: Path, config: Config, *, opener: Opener = open_repository):
        self.root_path = root_path.resolve()
        self.config = config
        self._opener = opener
        self._repositories: list[Path] | None = None

    def discover_repositories(self) -> list[Path]:
        """Discover repositories directly under the root path."""
        if self._repositories is None:
            self._repositories = find_git_repositories(self.root_path, self.config.ignores)
        return self._repositories

    def check_all(
        self, progress: Callable[[int, int, str], None] | None = None
    ) -> list[CheckResult]:
        """Run the sync check for every repository, in discovery order."""
        repos = self.discover_repositories()
        report = progress or _no_progress
        compare = partial(fetch_and_compare, self.config.credentials)

        results = []
        for index, path in enumerate(repos, start=1):
            results.append(
                get_repository_differences(
                    path,
                    remote_must_match=self.config.remote_must_match,
                    fetch_and_compare=compare,
                    progress=partial(report, index, len(repos)),
                    opener=self._opener,
                )
            )
        return results

    def get_summary(self, results: list[CheckResult]) -> RepositorySummary:
        """Count results per outcome."""
        summary = RepositorySummary(total=len(results))
        for result in results:
            if isinstance(result, PipelineError):
                summary.errors += 1
            elif result.status == SyncStatus.MERGE_REQUIRED:
                summary.need_merge += 1
            elif result.status == SyncStatus.PUSH_REQUIRED:
                summary.need_push += 1
            else:
                summary.ok += 1
        return summary


# =============================================================================
# CLI Application
# =============================================================================


app = typer.Typer(
    name="git-insync",
    help="Check that every Git repository under a directory is in sync with origin.",
    no_args_is_help=True,
)


def version_callback(value: bool):
    """Print version and exit."""
    if value:
        print(f"git-insync {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    schema: bool = typer.Option(
        False,
        "--schema",
        help="Output MCP-compatible tool schema for AI agents",
    ),
):
    """git-insync: Check that every Git repository under a directory is in sync with origin."""
    if schema:
        print(json.dumps(get_tool_schema(), indent=2))
        raise typer.Exit()


def configure_logging(verbose: bool) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def get_console_and_formatter(json_output: bool) -> tuple[Console, OutputFormatter]:
    """Create console and formatter."""
    console = Console(force_terminal=not json_output)
    formatter = OutputFormatter(console, use_json=json_output)
    return console, formatter


@app.command()
def check(
    path: Path = typer.Argument(
        None,
        help="Root path whose sub-directories are checked",
    ),
    config_file: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Configuration file (default: $GIT_INSYNC_CONFIG or <path>/.gitinsync)",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        "-j",
        help="Output as JSON",
    ),
    markdown: bool = typer.Option(
        False,
        "--markdown",
        "-m",
        help="Draw the table with markdown borders",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log each step to stderr",
    ),
):
    """Fetch origin for every repository and report what needs a push or merge."""
    configure_logging(verbose)
    console, formatter = get_console_and_formatter(json_output)
    root = (path if path else Path(".")).resolve()

    try:
        config = load_config(resolve_config_file(root, config_file))
    except ConfigError as e:
        console.print(f"[red]Error: {escape(str(e))}[/]")
        raise typer.Exit(1) from None

    if shutil.which("git") is None:
        console.print("[red]Error: git executable not found on PATH[/]")
        raise typer.Exit(1)

    manager = InsyncManager(root, config)
    repos = manager.discover_repositories()

    if json_output:
        results = manager.check_all()
    else:
        console.print(f"\nFound [bold]{len(repos)}[/] git repositories in {root}\n")
        progress = ProgressLine(console)
        try:
            results = manager.check_all(progress.update)
        finally:
            progress.clear()

    formatter.print_results(results, manager.get_summary(results), root, markdown=markdown)
