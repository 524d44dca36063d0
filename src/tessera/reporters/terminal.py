"""Terminal reporter with rich output formatting."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

from tessera.models.results import FinalStatus

if TYPE_CHECKING:
    from tessera.models.case import TestCase
    from tessera.models.results import RunReport, ShardReport, TestResult
    from tessera.sharding.planner import Shard

console = Console()

_PERFECT_RATE = 100.0
_GOOD_RATE = 80.0
_SECONDS_PER_MINUTE = 60.0
_MAX_MESSAGE_LENGTH = 80

_STATUS_STYLE = {
    FinalStatus.PASSED: ("✓", "green"),
    FinalStatus.FAILED: ("✗", "red"),
    FinalStatus.FLAKY: ("≈", "magenta"),
    FinalStatus.SKIPPED: ("⊘", "yellow"),
}


def _pass_rate_color(rate: float) -> str:
    """Return a Rich color name for a given pass-rate percentage."""
    if rate >= _PERFECT_RATE:
        return "green"
    if rate >= _GOOD_RATE:
        return "yellow"
    return "red"


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string."""
    if seconds >= _SECONDS_PER_MINUTE:
        return f"{seconds / _SECONDS_PER_MINUTE:.1f}m"
    return f"{seconds:.1f}s"


def _last_message(result: TestResult) -> str:
    for attempt in reversed(result.attempts):
        if attempt.error is not None:
            message = attempt.error.message.splitlines()[0] if attempt.error.message else ""
            return f"{attempt.error.kind.value}: {message}"[:_MAX_MESSAGE_LENGTH]
    return ""


class CLIReporter:
    """Rich terminal output for discovery, planning, and run results."""

    def __init__(self, output: Console | None = None) -> None:
        self.console = output or console

    def print_header(self, title: str) -> None:
        """Print a bold header."""
        self.console.print(f"\n[bold cyan]{title}[/bold cyan]\n")

    def print_success(self, message: str) -> None:
        self.console.print(f"[green]✓[/green] {message}")

    def print_error(self, message: str) -> None:
        self.console.print(f"[red]✗[/red] {message}")

    def print_warning(self, message: str) -> None:
        self.console.print(f"[yellow]⚠[/yellow] {message}")

    def print_info(self, message: str) -> None:
        self.console.print(f"[dim]{message}[/dim]")

    # ── Discovery and planning ─────────────────────────────────────────

    def print_cases(self, cases: Sequence[TestCase]) -> None:
        """Print discovered cases with their tags, fixtures, and ordering."""
        table = Table(title=f"{len(cases)} test case(s)", title_style="bold cyan")
        table.add_column("Id", style="bold")
        table.add_column("Tags")
        table.add_column("Fixtures")
        table.add_column("Ordering")
        table.add_column("Estimate", justify="right")

        for case in cases:
            case_id = f"[dim]{case.id}[/dim]" if case.declared_skip else case.id
            estimate = case.estimated_duration_ms
            table.add_row(
                case_id,
                " ".join(f"@{tag}" for tag in case.tags),
                ", ".join(case.fixtures),
                "" if case.ordering.is_independent else str(case.ordering),
                _format_duration(estimate / 1000) if estimate is not None else "-",
            )
        self.console.print(table)

    def print_plan(self, shards: Sequence[Shard]) -> None:
        """Print one row per shard with its units and estimated duration."""
        table = Table(title="Shard plan", title_style="bold cyan")
        table.add_column("Shard", justify="right", style="bold")
        table.add_column("Cases", justify="right")
        table.add_column("Units", justify="right")
        table.add_column("Estimate", justify="right")

        for shard in shards:
            table.add_row(
                f"{shard.index + 1}/{shard.count}",
                str(len(shard.case_ids)),
                str(len(shard.units)),
                _format_duration(shard.estimated_duration_ms / 1000),
            )
        self.console.print(table)

    # ── Results ────────────────────────────────────────────────────────

    def print_run_report(self, report: RunReport) -> None:
        """Print the summary bar and every non-passing result."""
        summary = report.summary
        self.print_summary_bar(
            summary.passed,
            summary.failed,
            summary.flaky,
            summary.skipped,
            summary.wall_clock_ms,
        )
        self.print_results(
            [r for r in report.results if r.status is not FinalStatus.PASSED],
            title="Needs attention",
        )
        for shard in report.shards:
            if shard.degraded:
                self.print_warning(f"Shard {shard.index + 1} ran with a degraded fixture scope")

    def print_shard_report(self, report: ShardReport) -> None:
        """Print the outcome of one shard of a distributed run."""
        counts = dict.fromkeys(FinalStatus, 0)
        for result in report.results:
            counts[result.status] += 1
        self.print_info(f"Shard {report.shard_index + 1}/{report.shard_count} (seed {report.seed})")
        self.print_summary_bar(
            counts[FinalStatus.PASSED],
            counts[FinalStatus.FAILED],
            counts[FinalStatus.FLAKY],
            counts[FinalStatus.SKIPPED],
            report.duration_ms,
        )
        self.print_results(
            [r for r in report.results if r.status is not FinalStatus.PASSED],
            title="Needs attention",
        )
        for error in report.teardown_errors:
            self.print_warning(error)

    def print_results(self, results: Sequence[TestResult], title: str = "Test Results") -> None:
        """Print a table of results; prints nothing for an empty list."""
        if not results:
            return
        table = Table(title=title, title_style="bold cyan")
        table.add_column("Test", style="bold")
        table.add_column("Status", justify="center")
        table.add_column("Attempts", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Message")

        for result in results:
            icon, color = _STATUS_STYLE[result.status]
            detail = result.skip_reason.value if result.skip_reason else _last_message(result)
            table.add_row(
                result.case_id,
                f"[{color}]{icon} {result.status.value}[/{color}]",
                str(len(result.attempts)),
                _format_duration(result.duration_ms / 1000) if result.attempts else "-",
                detail,
            )
        self.console.print(table)

    def print_summary_bar(
        self,
        passed: int,
        failed: int,
        flaky: int,
        skipped: int,
        duration_ms: float,
    ) -> None:
        """Print a visual bar showing the result distribution with stats."""
        total = passed + failed + flaky + skipped
        if total == 0:
            self.console.print("  [dim]No tests executed[/dim]")
            return

        executed = total - skipped
        pass_rate = (passed + flaky) / executed * 100 if executed else 100.0
        rate_color = _pass_rate_color(pass_rate)
        bar = self._build_result_bar(passed, failed, flaky, skipped)

        self.console.print()
        self.console.print(
            f"  [bold]{total}[/bold] tests  {bar}  "
            f"[bold {rate_color}]{pass_rate:.0f}%[/bold {rate_color}] pass rate  "
            f"[dim]⏱ {_format_duration(duration_ms / 1000)}[/dim]"
        )

        parts: list[str] = []
        if passed:
            parts.append(f"[green]✓ {passed} passed[/green]")
        if failed:
            parts.append(f"[red]✗ {failed} failed[/red]")
        if flaky:
            parts.append(f"[magenta]≈ {flaky} flaky[/magenta]")
        if skipped:
            parts.append(f"[yellow]⊘ {skipped} skipped[/yellow]")
        self.console.print(f"  {'  '.join(parts)}")
        self.console.print()

    def _build_result_bar(
        self,
        passed: int,
        failed: int,
        flaky: int,
        skipped: int,
        width: int = 40,
    ) -> str:
        """Build a colored bar string proportional to result counts."""
        total = passed + failed + flaky + skipped
        if total == 0:
            return f"[dim]{'░' * width}[/dim]"

        segments = [(passed, "green"), (failed, "red"), (flaky, "magenta"), (skipped, "yellow")]
        chars: list[tuple[str, str]] = []
        for count, color in segments:
            chars.extend([("█", color)] * round(count / total * width))

        chars = chars[:width]
        while len(chars) < width:
            chars.append(("░", "dim"))

        # Group consecutive same-color runs for compact markup
        result = ""
        i = 0
        while i < len(chars):
            char, color = chars[i]
            j = i + 1
            while j < len(chars) and chars[j][1] == color:
                j += 1
            result += f"[{color}]{char * (j - i)}[/{color}]"
            i = j
        return result


reporter = CLIReporter()
