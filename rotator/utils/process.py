"""
Typed invocation of external command-line tools.

Every external tool (backup engine, archiver, mirror) is started through
run_tool() with an explicit argument list. No shell is involved, so paths
with spaces or quotes are passed through untouched.
"""

import logging
import subprocess
from dataclasses import dataclass, field
from typing import List, Optional

logger = logging.getLogger(__name__)


class ToolError(Exception):
    """Raised when an external tool cannot be started at all."""
    pass


@dataclass(frozen=True)
class ToolResult:
    """Exit status and captured output of a finished tool."""

    args: List[str]
    returncode: int
    output_lines: List[str] = field(default_factory=list)

    @property
    def last_line(self) -> str:
        """Last non-blank output line, or an empty string."""
        for line in reversed(self.output_lines):
            if line.strip():
                return line.strip()
        return ''


def run_tool(args: List[str], cwd: Optional[str] = None, encoding: Optional[str] = None) -> ToolResult:
    """
    Run an external tool synchronously and capture its output.

    The orchestrator enforces no timeout; the tool owns its own.

    Args:
        args: Executable followed by its arguments
        cwd: Working directory for the tool
        encoding: Output encoding (defaults to the locale encoding)

    Returns:
        ToolResult with the exit code and stdout/stderr lines

    Raises:
        ToolError: If the executable is missing or cannot be launched
    """
    args = [str(arg) for arg in args]
    logger.info(f"Running: {' '.join(args)}")

    try:
        completed = subprocess.run(
            args,
            cwd=cwd,
            check=False,
            capture_output=True,
            text=True,
            encoding=encoding,
            errors='replace',
        )
    except FileNotFoundError as e:
        raise ToolError(f"{args[0]} not found: {e}") from e
    except OSError as e:
        raise ToolError(f"Failed to start {args[0]}: {e}") from e

    lines = completed.stdout.splitlines()
    if completed.stderr:
        lines.extend(completed.stderr.splitlines())

    logger.debug(f"{args[0]} exited with code {completed.returncode}")
    return ToolResult(args=args, returncode=completed.returncode, output_lines=lines)
