"""Output formatters for console and JSON display."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

if TYPE_CHECKING:
    from .core import BranchComparison, CheckResult, PipelineError, RepositorySummary


@dataclass(frozen=True)
class OutputRow:
    """One line of the report."""

    status: str
    repository: str
    branch: str
    info: str


def format_info(comparison: BranchComparison) -> str:
    """Describe pending commits, e.g. "1 to push, 3 to pull"."""
    parts = []
    if comparison.ahead_by > 0:
        parts.append(f"{comparison.ahead_by} to push")
    if comparison.behind_by > 0:
        parts.append(f"{comparison.behind_by} to pull")
    return ", ".join(parts)


def create_comparison_row(comparison: BranchComparison) -> OutputRow:
    return OutputRow(
        status=str(comparison.status),
        repository=comparison.directory,
        branch=comparison.branch_name,
        info=format_info(comparison),
    )


def create_error_row(error: PipelineError) -> OutputRow:
    return OutputRow(
        status=error.message,
        repository=error.directory,
        branch=error.branch_name or "",
        info="",
    )


def output_result(result: CheckResult) -> OutputRow:
    """Map a check result to its report row.

    Errors raised while fetching carry a comparison and are shown from it.
    """
    from .core import PipelineError

    if isinstance(result, PipelineError):
        if result.comparison is not None:
            return create_comparison_row(result.comparison)
        return create_error_row(result)
    return create_comparison_row(result)


class ProgressLine:
    """Redraw a single console line with the repository being checked."""

    def __init__(self, console: Console):
        self.console = console

    def update(self, index: int, total: int, path: str):
        self._draw(f"Check [{index} of {total}]: {path}")

    def clear(self):
        self._draw("")
        if self.console.is_terminal:
            self.console.file.write("\r")
            self.console.file.flush()

    def _draw(self, text: str):
        if not self.console.is_terminal:
            return
        width = max(self.console.width - 1, 0)
        self.console.file.write("\r" + text[:width].ljust(width))
        self.console.file.flush()


class OutputFormatter:
    """Format output for console or JSON."""

    def __init__(self, console: Console, use_json: bool = False):
        self.console = console
        self.use_json = use_json

    def print_results(
        self,
        results: list[CheckResult],
        summary: RepositorySummary,
        root_path: Path,
        markdown: bool = False,
    ):
        """Print check results."""
        if self.use_json:
            self._print_results_json(results, summary)
        else:
            self._print_results_table(results, summary, root_path, markdown)

    def _print_results_table(
        self,
        results: list[CheckResult],
        summary: RepositorySummary,
        root_path: Path,
        markdown: bool,
    ):
        """Print rich table output."""
        table = Table(
            title=None if markdown else f"In Sync: {root_path}",
            box=box.MARKDOWN if markdown else box.HEAVY_HEAD,
        )

        table.add_column("Status", no_wrap=True)
        table.add_column("Repository", style="cyan", no_wrap=True)
        table.add_column("Branch")
        table.add_column("Info")

        for result in results:
            row = output_result(result)
            table.add_row(
                self._get_status_display(row.status),
                escape(row.repository),
                escape(row.branch),
                row.info,
            )

        self.console.print(table)
        self.console.print()
        self._print_summary(summary)

    def _get_status_display(self, status: str) -> str:
        """Colour the status column."""
        from .core import SyncStatus

        match status:
            case SyncStatus.OK:
                return f"[green]{status}[/]"
            case SyncStatus.PUSH_REQUIRED:
                return f"[yellow]{status}[/]"
            case SyncStatus.MERGE_REQUIRED:
                return f"[bold red]{status}[/]"
            case _:
                return f"[red]{escape(status)}[/]"

    def _print_summary(self, summary: RepositorySummary):
        """Print summary."""
        parts = [f"[bold]Total:[/] {summary.total}"]

        if summary.ok > 0:
            parts.append(f"[green]✓ OK:[/] {summary.ok}")
        if summary.need_push > 0:
            parts.append(f"[yellow]⬆ Push required:[/] {summary.need_push}")
        if summary.need_merge > 0:
            parts.append(f"[bold red]⬆⬇ Merge required:[/] {summary.need_merge}")
        if summary.errors > 0:
            parts.append(f"[red]✗ Not checked:[/] {summary.errors}")

        self.console.print(" | ".join(parts))

    def _print_results_json(self, results: list[CheckResult], summary: RepositorySummary):
        """Print JSON output."""
        output = {
            "repositories": [
                {**result.to_dict(), "row": asdict(output_result(result))} for result in results
            ],
            "summary": summary.to_dict(),
        }
        self.console.print(
            json.dumps(output, indent=2, default=str),
            soft_wrap=True,
            highlight=False,
            markup=False,
        )
