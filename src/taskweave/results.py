"""Result aggregation and reporting for taskweave.

The executor records every ``TaskResult`` into a ``ResultAggregator``. The
aggregator keeps results in insertion order, keyed by host and task
instance, and rolls them up into per-host statistics, an overall success
flag and the process exit code.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from io import StringIO
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .types import TaskResult, TaskStatus

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILED = 2
EXIT_UNREACHABLE = 3
EXIT_PARSE_ERROR = 4
EXIT_CANCELLED = 99

STAT_COLUMNS = ("ok", "changed", "failed", "skipped", "unreachable", "ignored", "cancelled")

STATUS_STYLES = {
    TaskStatus.OK: "green",
    TaskStatus.CHANGED: "yellow",
    TaskStatus.FAILED: "bold red",
    TaskStatus.SKIPPED: "cyan",
    TaskStatus.UNREACHABLE: "bold magenta",
    TaskStatus.CANCELLED: "dim",
}


@dataclass
class HostStats:
    """Per-host result counts.

    ``ok`` counts every successful instance, changed ones included; failures
    tolerated by ``ignore_errors`` count as ``ignored``, not ``failed``.
    """

    host: str
    ok: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    unreachable: int = 0
    ignored: int = 0
    cancelled: int = 0

    def record(self, result: TaskResult) -> None:
        """Count one result."""
        if result.status == TaskStatus.OK:
            self.ok += 1
        elif result.status == TaskStatus.CHANGED:
            self.ok += 1
            self.changed += 1
        elif result.status == TaskStatus.FAILED:
            if result.ignored:
                self.ignored += 1
            else:
                self.failed += 1
        elif result.status == TaskStatus.SKIPPED:
            self.skipped += 1
        elif result.status == TaskStatus.UNREACHABLE:
            self.unreachable += 1
        elif result.status == TaskStatus.CANCELLED:
            self.cancelled += 1

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary for JSON serialization."""
        return {
            "ok": self.ok,
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "unreachable": self.unreachable,
            "ignored": self.ignored,
            "cancelled": self.cancelled,
        }


@dataclass
class ResultAggregator:
    """Collects the results of one run.

    Attributes:
        results: Results keyed by (host, task instance key), insertion ordered
        stats: Per-host statistics
        failed_hosts: Hosts that ended failed in a required play
        unreachable_hosts: Hosts that ended unreachable in a required play
        cancelled: Whether the run was cancelled
        duration: Run duration in seconds

    Example:
        >>> results = ResultAggregator()
        >>> results.add(TaskResult(host="web01", task="ping", status=TaskStatus.OK))
        >>> results.exit_code()
        0
    """

    results: dict[tuple[str, str], TaskResult] = field(default_factory=dict)
    stats: dict[str, HostStats] = field(default_factory=dict)
    failed_hosts: set[str] = field(default_factory=set)
    unreachable_hosts: set[str] = field(default_factory=set)
    cancelled: bool = False
    duration: float = 0.0

    def add_host(self, host: str) -> HostStats:
        """Make sure a host appears in the statistics, even without results."""
        if host not in self.stats:
            self.stats[host] = HostStats(host=host)
        return self.stats[host]

    def add(self, result: TaskResult, key: str | None = None, required: bool = True) -> None:
        """Record one task result.

        Args:
            result: Result to record
            key: Unique key of the task instance within the run
                (defaults to the result's task label)
            required: Whether the result's play counts towards overall success
        """
        entry_key = (result.host, key or result.task)
        if entry_key in self.results:
            logger.warning(f"Duplicate result for {result.host} / {entry_key[1]}, replacing")
        self.results[entry_key] = result
        self.add_host(result.host).record(result)

        if result.status == TaskStatus.CANCELLED:
            self.cancelled = True
        elif required and result.status == TaskStatus.UNREACHABLE:
            self.unreachable_hosts.add(result.host)
        elif required and result.status == TaskStatus.FAILED and not result.ignored:
            self.failed_hosts.add(result.host)

    def host_results(self, host: str) -> list[TaskResult]:
        """All results for one host, in execution order."""
        return [r for (h, _), r in self.results.items() if h == host]

    def outcomes(self) -> dict[str, list[tuple[str, str, str]]]:
        """Timestamp-free per-host result sequences, used to compare runs."""
        return {host: [r.outcome() for r in self.host_results(host)] for host in self.stats}

    def host_stats(self) -> dict[str, HostStats]:
        return dict(self.stats)

    def host_status(self, host: str) -> str:
        """Final roll-up status of a host over the whole run."""
        stats = self.stats.get(host)
        if host in self.unreachable_hosts or (stats and stats.unreachable):
            return TaskStatus.UNREACHABLE.value
        if host in self.failed_hosts or (stats and stats.failed):
            return TaskStatus.FAILED.value
        if stats and stats.cancelled:
            return TaskStatus.CANCELLED.value
        if stats and stats.changed:
            return TaskStatus.CHANGED.value
        return TaskStatus.OK.value

    def is_success(self) -> bool:
        """True iff no host ended failed or unreachable in a required play
        and the run was not cancelled."""
        return not (self.failed_hosts or self.unreachable_hosts or self.cancelled)

    def exit_code(self) -> int:
        """Process exit code summarizing the run."""
        if self.cancelled:
            return EXIT_CANCELLED
        if self.failed_hosts:
            return EXIT_FAILED
        if self.unreachable_hosts:
            return EXIT_UNREACHABLE
        return EXIT_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.is_success(),
            "exit_code": self.exit_code(),
            "cancelled": self.cancelled,
            "duration": round(self.duration, 3),
            "stats": {host: stats.to_dict() for host, stats in self.stats.items()},
            "hosts": {host: self.host_status(host) for host in self.stats},
            "results": [r.to_dict() for r in self.results.values()],
        }


def format_results_json(results: ResultAggregator, playbook: str | None = None) -> str:
    """Format run results as JSON.

    Args:
        results: Aggregated run results
        playbook: Playbook path, included for reference

    Returns:
        JSON string with per-host stats and per-task results
    """
    output = results.to_dict()
    if playbook:
        output["playbook"] = playbook
    output["timestamp"] = datetime.now(timezone.utc).isoformat()
    return json.dumps(output, indent=2, default=str)


def format_results_text(results: ResultAggregator, verbose: bool = False, color: bool = False) -> str:
    """Format run results as a human-readable recap.

    Args:
        results: Aggregated run results
        verbose: Include every task result, not only failures
        color: Keep terminal styling in the output

    Returns:
        Formatted text string
    """
    buffer = StringIO()
    console = Console(file=buffer, force_terminal=color, no_color=not color, width=120, highlight=False)

    if verbose or not results.is_success():
        shown = [
            r for r in results.results.values()
            if verbose or r.status in (TaskStatus.FAILED, TaskStatus.UNREACHABLE)
        ]
        if shown:
            console.print("Task Results:" if verbose else "Failures:")
        for result in shown:
            style = STATUS_STYLES[result.status]
            line = f"  [{style}]{result.status.value}[/{style}]: " + escape(f"[{result.host}] {result.task}")
            if result.is_handler:
                line += " (handler)"
            if result.ignored:
                line += " (ignored)"
            console.print(line)
            if result.msg and (verbose or result.failed):
                console.print(f"    {result.msg}", markup=False)

    table = Table(title="Play Recap", title_justify="left", show_edge=False)
    table.add_column("Host")
    for column in STAT_COLUMNS:
        table.add_column(column, justify="right")
    for host, stats in results.stats.items():
        style = STATUS_STYLES[TaskStatus(results.host_status(host))]
        counts = stats.to_dict()
        table.add_row(
            f"[{style}]{escape(host)}[/{style}]",
            *(str(counts[c]) for c in STAT_COLUMNS),
        )
    console.print()
    console.print(table)

    summary = f"Completed in {results.duration:.2f}s"
    if results.cancelled:
        summary += " (cancelled)"
    console.print(summary)
    return buffer.getvalue()
