"""External tool runner.

Every privileged utility the pipeline needs (vndconfig, gpt, dkctl, newfs,
mount, tar, installboot, ...) is executed through ToolRunner:
- argv lists only, never a shell string
- command, exit code and output are appended to the build log
- exit status is the sole success signal; non-zero raises ToolError
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from netbsd_imagegen.errors import TOOL_NOT_FOUND, TOOL_TIMEOUT, ToolError

logger = logging.getLogger(__name__)

# Executables the build pipeline invokes
REQUIRED_TOOLS = (
    "vndconfig",
    "gpt",
    "dkctl",
    "newfs",
    "mount",
    "umount",
    "tar",
    "installboot",
    "sh",
)


@dataclass
class ToolResult:
    """Result of a successful tool invocation.

    Attributes:
        command: The command that was executed, shell-quoted.
        exit_code: Process exit code.
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    command: str
    exit_code: int
    stdout: str
    stderr: str


class ToolRunner:
    """Run external tools, logging each invocation to a build log."""

    def __init__(self, log_path: Path | None = None, timeout: int | None = None) -> None:
        """Initialize ToolRunner.

        Args:
            log_path: File that receives command headers and output.
            timeout: Per-invocation timeout in seconds (None = no timeout).
        """
        self.log_path = log_path
        self.timeout = timeout

    def run(
        self,
        argv: Sequence[str | Path],
        *,
        cwd: Path | None = None,
    ) -> ToolResult:
        """Execute a tool and wait for it to exit.

        Args:
            argv: Command and arguments.
            cwd: Working directory for the tool.

        Returns:
            ToolResult with captured output.

        Raises:
            ToolError: If the tool cannot be started, times out, or exits
                non-zero.
        """
        cmd = [str(a) for a in argv]
        cmd_str = shlex.join(cmd)
        logger.info("Executing: %s", cmd_str)

        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            self._log(cmd_str, cwd, None, "", f"TIMEOUT after {self.timeout} seconds")
            raise ToolError(
                f"{cmd[0]} timed out after {self.timeout} seconds",
                command=cmd_str,
                exit_code=-1,
                code=TOOL_TIMEOUT,
            ) from e
        except OSError as e:
            self._log(cmd_str, cwd, None, "", str(e))
            raise ToolError(
                f"Failed to execute {cmd[0]}: {e}",
                command=cmd_str,
                code=TOOL_NOT_FOUND,
            ) from e

        self._log(cmd_str, cwd, result.returncode, result.stdout, result.stderr)

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            logger.error("%s exited with %d: %s", cmd[0], result.returncode, stderr)
            raise ToolError(
                f"{cmd[0]} failed with exit code {result.returncode}"
                + (f": {stderr.splitlines()[-1]}" if stderr else ""),
                command=cmd_str,
                exit_code=result.returncode,
                stderr=stderr,
            )

        if result.stdout:
            logger.debug("%s output: %s", cmd[0], result.stdout.strip())

        return ToolResult(
            command=cmd_str,
            exit_code=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )

    def _log(
        self,
        cmd_str: str,
        cwd: Path | None,
        exit_code: int | None,
        stdout: str,
        stderr: str,
    ) -> None:
        """Append an invocation record to the build log."""
        if self.log_path is None:
            return

        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Time: {datetime.now(timezone.utc).isoformat()}\n")
            if cwd is not None:
                log_file.write(f"# CWD: {cwd}\n")
            if stdout:
                log_file.write(stdout if stdout.endswith("\n") else stdout + "\n")
            if stderr:
                log_file.write(stderr if stderr.endswith("\n") else stderr + "\n")
            log_file.write(f"# Exit code: {exit_code}\n\n")


def missing_tools(tools: Iterable[str] = REQUIRED_TOOLS) -> list[str]:
    """Return the tools that are not found on PATH.

    Args:
        tools: Executable names to look up.

    Returns:
        Names of missing executables, in input order.
    """
    return [tool for tool in tools if shutil.which(tool) is None]


__all__ = [
    "REQUIRED_TOOLS",
    "ToolResult",
    "ToolRunner",
    "missing_tools",
]
