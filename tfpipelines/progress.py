"""
Progress Indicators for Terraform Pipelines.

Provides:
- Stage headers
- A spinner that shows elapsed time against the stage's wall-clock budget
- Icon-prefixed status lines

Usage:
    from tfpipelines.progress import Spinner, print_step_header

    print_step_header(1, "Terraform plan", total_steps=3)
    with Spinner("terraform plan", budget_seconds=invocation.timeouts.plan_seconds):
        artifact = executor.plan(invocation)
"""
import sys
import threading
import time
from typing import Optional

from tfpipelines.console import (
    console,
    print_success as _console_print_success,
    print_error as _console_print_error,
    print_warning as _console_print_warning,
    print_info as _console_print_info,
)


class Spinner:
    """
    Animated spinner for terraform calls that can run for minutes.

    The line reads `⠹ terraform apply  42s / 3600s` while running and settles
    to a success or failure line with the total elapsed time.
    """

    FRAMES = ['⠋', '⠙', '⠹', '⠸', '⠼', '⠴', '⠦', '⠧', '⠇', '⠏']

    def __init__(self, message: str, budget_seconds: Optional[int] = None, enabled: bool = True):
        """
        Args:
            message: What is running
            budget_seconds: Stage budget shown next to the elapsed time
            enabled: If False, the spinner prints nothing (quiet mode)
        """
        self.message = message
        self.budget_seconds = budget_seconds
        self.enabled = enabled
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started = 0.0

    def __enter__(self):
        self._started = time.monotonic()
        if self.enabled:
            self._thread = threading.Thread(target=self._spin, daemon=True)
            self._thread.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.enabled:
            self._finish(success=exc_type is None)
        return False

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def _status(self) -> str:
        elapsed = f"{self.elapsed:.0f}s"
        if self.budget_seconds:
            elapsed = f"{elapsed} / {self.budget_seconds}s"
        return f"{self.message}  {elapsed}"

    def _finish(self, success: bool) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=0.5)

        sys.stdout.write('\r' + ' ' * (len(self._status()) + 4) + '\r')
        sys.stdout.flush()

        summary = f"{self.message} ({self.elapsed:.1f}s)"
        if success:
            print_success(summary)
        else:
            print_error(summary)

    def _spin(self):
        frame_idx = 0
        while not self._stop.wait(0.1):
            frame = self.FRAMES[frame_idx % len(self.FRAMES)]
            sys.stdout.write(f'\r{frame} {self._status()}')
            sys.stdout.flush()
            frame_idx += 1


def print_step_header(step_number: int, step_name: str, total_steps: int = 0):
    """
    Print a stage banner.

    Args:
        step_number: 1-based position in the pipeline
        step_name: Display name of the stage
        total_steps: Number of stages (0 to hide)
    """
    position = f"{step_number}/{total_steps}" if total_steps > 0 else str(step_number)

    console.print(f"\n{'─' * 60}", style="dim")
    console.print(f"▶ Stage {position}: {step_name}", style="bold_accent2")
    console.print(f"{'─' * 60}", style="dim")


def print_success(message: str):
    _console_print_success(f"✔ {message}")


def print_warning(message: str):
    _console_print_warning(f"⚠ {message}")


def print_error(message: str):
    _console_print_error(f"✖ {message}")


def print_info(message: str):
    _console_print_info(f"ℹ {message}")
