"""Console output formatting utilities for dot."""

from __future__ import annotations

import sys
import threading
from typing import Dict, List, Optional, TextIO

import click

# rotated per job so concurrent output stays readable
JOB_COLORS = ["yellow", "green", "red", "white", "magenta"]
MAX_NAME_LENGTH = 20

# one lock for every job writer: lines from different jobs never interleave
_write_lock = threading.Lock()


def _short_name(name: str) -> str:
    if len(name) > MAX_NAME_LENGTH:
        return name[: MAX_NAME_LENGTH - 3] + "..."
    return name


class JobOutput:
    """
    Byte sink for one job's container output.

    Every complete line is written as "<job> | <line>", with the job name
    colored. A trailing partial line is held until the next newline or
    flush().
    """

    def __init__(self, name: str, color: str, stream: Optional[TextIO] = None, err: bool = False):
        self.prefix = click.style(f"{_short_name(name)} | ", fg=color)
        self.err = err
        self._stream = stream
        self._pending = b""

    @property
    def stream(self) -> TextIO:
        if self._stream is not None:
            return self._stream
        return sys.stderr if self.err else sys.stdout

    def _emit(self, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace")
        click.echo(self.prefix + text, file=self.stream, nl=False)

    def write(self, data: bytes) -> int:
        with _write_lock:
            buf = self._pending + bytes(data)
            *lines, self._pending = buf.split(b"\n")
            for line in lines:
                self._emit(line + b"\n")
        return len(data)

    def flush(self) -> None:
        with _write_lock:
            if self._pending:
                self._emit(self._pending + b"\n")
                self._pending = b""
            self.stream.flush()


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        self._colors: Dict[str, str] = {}
        self._lock = threading.Lock()

    def job_color(self, name: str) -> str:
        with self._lock:
            if name not in self._colors:
                self._colors[name] = JOB_COLORS[len(self._colors) % len(JOB_COLORS)]
            return self._colors[name]

    def job_output(self, name: str, err: bool = False) -> JobOutput:
        """Byte sink that prefixes a job's output lines with its name."""
        return JobOutput(name, self.job_color(name), err=err)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, job_file: str, stages: List[str], job_count: int) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Job file: {job_file}")
        print(f"Stages: {', '.join(stages)}")
        print(f"Jobs: {job_count}")
        print()

    def print_stage(self, stage: str, jobs: List[str]) -> None:
        self.print_header(f"STAGE: {stage} ({len(jobs)} job(s))")

    def print_job_start(self, name: str) -> None:
        """Print job start message."""
        print(f"JOB STARTED: {name}")

    def print_success(self, name: str) -> None:
        """Print success message."""
        print(f"JOB SUCCEEDED: {name}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
        """
        print(f"JOB FAILED: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if hint:
            print(f"Hint: {hint}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # first line of the error only, outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            print(f"Error: {error_line}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        """Print job skipped message."""
        print(f"JOB SKIPPED: {name} ({reason})")

    def print_results(self, results: dict[str, str]) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        for job, status in results.items():
            print(f"  {job}: {status.upper()}")

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
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_version(self, version: str, build_date: str, commit: str) -> None:
        print(f"Version: {version}")
        print(f"Build Date: {build_date}")
        print(f"Commit: {commit}")

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


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
