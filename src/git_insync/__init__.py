"""git-insync: Check that every Git repository under a directory is in sync with origin."""

# Guard against deleted CWD (e.g. directory removed by another process).
# rich crashes on import if os.getcwd() fails, so recover before any imports.
import os

try:
    os.getcwd()
except (OSError, PermissionError):
    os.chdir(os.path.expanduser("~"))

from ._version import __version__
from .core import (
    BranchComparison,
    Config,
    ConfigError,
    Credentials,
    GitRepository,
    HeadBranch,
    InsyncError,
    InsyncManager,
    NotARepositoryError,
    PipelineError,
    Remote,
    RepositoryHandle,
    RepositorySummary,
    SyncStatus,
    TransportError,
    app,
    classify_fetch_error,
    derive_status,
    ensure_repository_is_valid,
    fetch_and_compare,
    find_git_repositories,
    get_repository_differences,
    load_config,
    open_repository,
)
from .formatters import OutputFormatter, format_info, output_result
from .schema import get_tool_schema

__all__ = [
    # Version
    "__version__",
    # CLI
    "app",
    # Models
    "BranchComparison",
    "Config",
    "Credentials",
    "HeadBranch",
    "PipelineError",
    "Remote",
    "RepositorySummary",
    "SyncStatus",
    # Errors
    "ConfigError",
    "InsyncError",
    "NotARepositoryError",
    "TransportError",
    # Operations
    "GitRepository",
    "InsyncManager",
    "RepositoryHandle",
    "open_repository",
    # Functions
    "classify_fetch_error",
    "derive_status",
    "ensure_repository_is_valid",
    "fetch_and_compare",
    "find_git_repositories",
    "get_repository_differences",
    "get_tool_schema",
    "load_config",
    # Formatters
    "OutputFormatter",
    "format_info",
    "output_result",
]
