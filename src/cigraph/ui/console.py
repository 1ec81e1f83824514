"""Console output formatting utilities for cigraph."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, List, Optional

from ..model import Outcome

if TYPE_CHECKING:
    from ..report import JobRecord, RunReport


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, show_output: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            show_output: If True, print captured step output for every job,
                not just failed ones
        """
        self.debug = debug
        self.show_output = show_output
        # jobs report from worker threads; keep their lines together
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        workflow: str,
        event: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._emit(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Workflow: {workflow}",
            f"Event: {event}",
            f"Jobs: {job_count}",
            "",
        )

    def print_trigger(self, run: bool, reason: str) -> None:
        """Print the trigger decision."""
        verdict = "run" if run else "not triggered"
        self._emit(f"TRIGGER: {verdict} ({reason})")

    def print_job_start(self, name: str) -> None:
        self._emit(f"\nJOB STARTED: {name}")

    def print_step(self, job: str, name: str) -> None:
        self._emit(f"[{job}] STEP: {name}")

    def print_job_result(self, record: "JobRecord") -> None:
        """Print one job's terminal outcome, with output tail on failure."""
        lines = [f"JOB {record.outcome.value.upper()}: {record.name}"]
        if record.title and record.title != record.name:
            lines.append(f"Name: {record.title}")
        if record.reason and record.outcome is not Outcome.SUCCESS:
            lines.append(f"Reason: {record.reason}")
        if record.duration is not None:
            lines.append(f"Duration: {record.duration:.1f}s")

        if record.outcome is Outcome.FAILURE or self.show_output:
            for step in record.steps:
                if not step.output:
                    continue
                lines.append(f"--- {step.name} ---")
                out = step.output if self.debug else "\n".join(step.output.splitlines()[-20:])
                lines.append(out.rstrip())
        self._emit(*lines)

    def print_plan(self, levels: List[List[str]]) -> None:
        """Print the execution stages of a plan."""
        for idx, level in enumerate(levels):
            self._emit(f"Stage {idx + 1}:")
            for name in level:
                self._emit(f"  {name}")

    def print_results(self, report: "RunReport") -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for node, rec in report.jobs.items():
            lines.append(f"  {node}: {rec.outcome.value.upper()}")
        lines.append(f"PIPELINE: {report.outcome.value.upper()}")
        self._emit(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        for detail in details or []:
            lines.append(f"  {detail}")
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
