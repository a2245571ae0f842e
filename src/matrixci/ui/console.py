"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..model import JobSpec, RunReport


class Console:
    """Centralized console output formatting. Safe to call from worker threads."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces and phase output
            quiet: If True, only print warnings, errors and the final results
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr if err else sys.stdout)

    def print_run_started(self, workflow: str, pipeline_count: int, job_count: int, workers: int) -> None:
        """Print run start information."""
        if self.quiet:
            return
        self._out(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Pipelines: {pipeline_count}",
            f"Jobs: {job_count}",
            f"Workers: {workers}",
            "",
        )

    def print_plan(self, jobs: "list[JobSpec]") -> None:
        """Print the expanded job list."""
        self._out(f"PLAN ({len(jobs)} job(s))")
        for j in jobs:
            extra = []
            if j.argument_overrides:
                extra.append("overrides=" + ",".join(sorted(j.argument_overrides)))
            if j.exclusions:
                extra.append("excludes=" + ",".join(sorted(j.exclusions)))
            suffix = f" ({'; '.join(extra)})" if extra else ""
            self._out(f"  {j.job_id}{suffix}")

    def print_job_start(self, job_id: str) -> None:
        if not self.quiet:
            self._out(f"JOB STARTED: {job_id}")

    def print_phase(self, job_id: str, phase: str) -> None:
        if not self.quiet:
            self._out(f"[{job_id}] PHASE: {phase}")

    def print_phase_failed(self, job_id: str, phase: str, reason: str) -> None:
        self._out(f"[{job_id}] PHASE FAILED: {phase}")
        if self.debug:
            self._out(f"  {reason}")

    def print_cache(self, job_id: str, what: str, key: str) -> None:
        if self.quiet:
            return
        short_key = key[:12] + "..." if len(key) > 12 else key
        self._out(f"[{job_id}] CACHE: {what} ({short_key})")

    def print_job_done(self, job_id: str, status: str, duration: float) -> None:
        if not self.quiet:
            self._out(f"JOB FINISHED: {job_id} -> {status} ({duration:.1f}s)")

    def print_warning(self, job_id: Optional[str], message: str) -> None:
        prefix = f"[{job_id}] " if job_id else ""
        self._out(f"{prefix}WARNING: {message}", err=True)

    def print_results(self, report: "RunReport") -> None:
        """Print final results: every job, and the failing phase/cause for failures."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for jr in report.jobs:
            lines.append(f"  {jr.job.job_id}: {jr.status.value.upper()}")
            if not jr.passed:
                where = f"phase={jr.failed_phase}" if jr.failed_phase else "before phases"
                cause = jr.cause.value if jr.cause else "unknown"
                lines.append(f"    {where} cause={cause}")
                if jr.message:
                    lines.append(f"    {jr.message.splitlines()[0]}")
            if self.debug:
                for pr in jr.phases:
                    lines.append(f"    - {pr.phase_name}: {pr.status.value} ({pr.duration:.1f}s)")
        passed = len(report.jobs) - len(report.failed_jobs)
        lines.append("")
        lines.append(f"{passed}/{len(report.jobs)} job(s) passed in {report.duration:.1f}s")
        self._out(*lines)

        if self.debug:
            for jr in report.failed_jobs:
                for pr in jr.phases:
                    if pr.output and pr.status.value == "failed":
                        self._out(f"\n--- output: {jr.job.job_id} / {pr.phase_name} ---", pr.output)

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
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


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
