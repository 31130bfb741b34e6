"""Progress reporting for taskweave.

Provides callback-based progress tracking for playbook runs, supporting
both text and JSON output formats. Reporters write to stderr by default so
they never pollute the results printed on stdout.
"""

import json
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from rich.console import Console
from rich.markup import escape

from .results import STATUS_STYLES
from .types import TaskResult


@dataclass
class ProgressEvent:
    """A progress event during a run.

    Attributes:
        event_type: Type of event (run_start, play_start, task_result, ...)
        host: Host name, or "*" for run-wide events
        timestamp: When the event occurred
        details: Additional event-specific details
    """

    event_type: str
    host: str
    timestamp: str
    details: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "event": self.event_type,
            "host": self.host,
            "timestamp": self.timestamp,
        }
        result.update(self.details)
        return result

    def to_json(self) -> str:
        """Convert to JSON string (NDJSON format)."""
        return json.dumps(self.to_dict(), default=str)


class ProgressReporter(ABC):
    """Base class for progress reporters."""

    @abstractmethod
    def on_run_start(self, playbook: str, total_plays: int) -> None:
        """Called when a run starts."""

    @abstractmethod
    def on_play_start(self, play: str, hosts: list[str]) -> None:
        """Called when a play starts, with the hosts it targets."""

    @abstractmethod
    def on_task_result(self, result: TaskResult) -> None:
        """Called for every recorded task result."""

    @abstractmethod
    def on_task_retry(
        self,
        host: str,
        task: str,
        attempt: int,
        max_attempts: int,
        error: str,
        delay: float,
    ) -> None:
        """Called when a task is about to be retried on a host."""

    @abstractmethod
    def on_run_complete(self, stats: dict[str, dict[str, int]], duration: float) -> None:
        """Called when the run completes, with per-host statistics."""


class JsonProgressReporter(ProgressReporter):
    """Reports progress as NDJSON (newline-delimited JSON) events."""

    def __init__(self, output: Any = None) -> None:
        """Initialize JSON progress reporter.

        Args:
            output: Output stream (defaults to sys.stderr to not pollute stdout)
        """
        self.output = output or sys.stderr

    def _emit(self, event_type: str, host: str, **details: Any) -> None:
        event = ProgressEvent(
            event_type=event_type,
            host=host,
            timestamp=datetime.now(timezone.utc).isoformat(),
            details=details,
        )
        print(event.to_json(), file=self.output, flush=True)

    def on_run_start(self, playbook: str, total_plays: int) -> None:
        self._emit("run_start", "*", playbook=playbook, total_plays=total_plays)

    def on_play_start(self, play: str, hosts: list[str]) -> None:
        self._emit("play_start", "*", play=play, hosts=hosts)

    def on_task_result(self, result: TaskResult) -> None:
        details: dict[str, Any] = {
            "play": result.play,
            "task": result.task,
            "status": result.status.value,
        }
        if result.msg:
            details["msg"] = result.msg
        if result.is_handler:
            details["handler"] = True
        self._emit("task_result", result.host, **details)

    def on_task_retry(
        self,
        host: str,
        task: str,
        attempt: int,
        max_attempts: int,
        error: str,
        delay: float,
    ) -> None:
        self._emit(
            "task_retry",
            host,
            task=task,
            attempt=attempt,
            max_attempts=max_attempts,
            error=error,
            delay=round(delay, 1),
        )

    def on_run_complete(self, stats: dict[str, dict[str, int]], duration: float) -> None:
        self._emit("run_complete", "*", stats=stats, duration=round(duration, 3))


class TextProgressReporter(ProgressReporter):
    """Reports progress as human-readable text."""

    def __init__(self, output: Any = None, color: bool | None = None) -> None:
        """Initialize text progress reporter.

        Args:
            output: Output stream (defaults to sys.stderr)
            color: Force styling on or off (default: auto-detect terminal)
        """
        self.output = output or sys.stderr
        self.console = Console(
            file=self.output,
            force_terminal=color,
            no_color=color is False,
            highlight=False,
            soft_wrap=True,
        )

    def on_run_start(self, playbook: str, total_plays: int) -> None:
        self.console.print(f"Running playbook '{playbook}' ({total_plays} play(s))...", markup=False)

    def on_play_start(self, play: str, hosts: list[str]) -> None:
        self.console.print(f"\nPLAY [{play}] on {len(hosts)} host(s)", markup=False)

    def on_task_result(self, result: TaskResult) -> None:
        style = STATUS_STYLES[result.status]
        kind = "handler" if result.is_handler else "task"
        line = f"  [{style}]{result.status.value}[/{style}]: " + escape(f"[{result.host}] {kind} {result.task}")
        if result.failed and result.msg:
            line += escape(f": {result.msg}")
        if result.ignored:
            line += " (ignored)"
        self.console.print(line)

    def on_task_retry(
        self,
        host: str,
        task: str,
        attempt: int,
        max_attempts: int,
        error: str,
        delay: float,
    ) -> None:
        self.console.print(
            f"  ⟳ {host}: retrying '{task}' in {delay:.0f}s "
            f"(attempt {attempt}/{max_attempts}): {error}",
            markup=False,
        )

    def on_run_complete(self, stats: dict[str, dict[str, int]], duration: float) -> None:
        failed = sum(1 for s in stats.values() if s.get("failed") or s.get("unreachable"))
        if failed == 0:
            self.console.print(f"Completed: {len(stats)} host(s) in {duration:.2f}s")
        else:
            self.console.print(
                f"Completed: {len(stats)} host(s), {failed} failed in {duration:.2f}s"
            )


class NullProgressReporter(ProgressReporter):
    """No-op progress reporter that discards all events."""

    def on_run_start(self, playbook: str, total_plays: int) -> None:
        pass

    def on_play_start(self, play: str, hosts: list[str]) -> None:
        pass

    def on_task_result(self, result: TaskResult) -> None:
        pass

    def on_task_retry(
        self,
        host: str,
        task: str,
        attempt: int,
        max_attempts: int,
        error: str,
        delay: float,
    ) -> None:
        pass

    def on_run_complete(self, stats: dict[str, dict[str, int]], duration: float) -> None:
        pass


def create_progress_reporter(
    enabled: bool,
    json_format: bool = False,
    output: Any = None,
) -> ProgressReporter:
    """Create a progress reporter.

    Args:
        enabled: Whether progress reporting is enabled
        json_format: Use JSON format instead of text
        output: Output stream (defaults to sys.stderr)

    Returns:
        ProgressReporter instance
    """
    if not enabled:
        return NullProgressReporter()

    if json_format:
        return JsonProgressReporter(output)
    else:
        return TextProgressReporter(output)
