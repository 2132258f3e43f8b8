"""Console output formatting utilities for nbdeploy."""

from __future__ import annotations

import sys
from typing import Optional, Sequence


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def report(self, title: str, lines: Sequence[str], error: bool = False) -> None:
        """
        Print a user-visible message box: a title and its ordered lines.

        Args:
            title: Message title
            lines: Message lines, printed in order
            error: If True, print to stderr
        """
        stream = sys.stderr if error else sys.stdout
        print(f"\n{title}", file=stream)
        for line in lines:
            print(f"  {line}", file=stream)

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

    def print_warning(self, message: str) -> None:
        print(f"WARNING: {message}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_step_row(self, index: int, name: str, dependencies: Sequence[str], cell_type: str) -> None:
        deps = ", ".join(dependencies) if dependencies else "-"
        label = name if name else "(merge)"
        print(f"  [{index:>3}] {cell_type:<8} {label:<24} needs: {deps}")

    def print_deploy_progress(self, handle: int, stage: str, detail: str) -> None:
        """Print one progress line of a deployment."""
        print(f"[deploy #{handle}] {stage}: {detail}")

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
