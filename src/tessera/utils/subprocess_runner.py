"""Async subprocess execution with timeout, cancellation, and output capture.

Used by the command-backed execution collaborator, session bootstrap, and
command fixtures.  Cancelling the awaiting task kills the child process.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

logger = logging.getLogger(__name__)

_MAX_CAPTURE_CHARS = 200_000


@dataclass
class SubprocessResult:
    """Result of subprocess execution."""

    returncode: int
    """Exit code of the process (-1 when killed or never started)."""

    stdout: str
    """Standard output captured from the process."""

    stderr: str
    """Standard error captured from the process."""

    timed_out: bool = False
    """True if the process was killed because it exceeded the timeout."""

    duration_ms: float = 0.0
    """Wall-clock duration of execution in milliseconds."""

    @property
    def success(self) -> bool:
        """True when the process exited with 0 before the timeout."""
        return self.returncode == 0 and not self.timed_out

    @property
    def combined_output(self) -> str:
        """stdout followed by stderr, for diagnostics."""
        if not self.stderr:
            return self.stdout
        return f"{self.stdout}\n--- stderr ---\n{self.stderr}" if self.stdout else self.stderr


class SubprocessError(Exception):
    """Raised when a command cannot be started or fails under ``check=True``."""

    def __init__(self, message: str, result: SubprocessResult) -> None:
        super().__init__(message)
        self.result = result


def split_command(command: str | Sequence[str]) -> list[str]:
    """Normalize a command given as a shell-style string or an argv list."""
    if isinstance(command, str):
        return shlex.split(command)
    return [str(part) for part in command]


def _truncate(text: str) -> str:
    if len(text) <= _MAX_CAPTURE_CHARS:
        return text
    return text[:_MAX_CAPTURE_CHARS] + "\n... [output truncated]"


async def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


async def run_subprocess(
    command: str | Sequence[str],
    *,
    cwd: Path | None = None,
    timeout: float | None = 120.0,
    env: Mapping[str, str] | None = None,
    check: bool = False,
) -> SubprocessResult:
    """Run *command* and capture its output.

    Args:
        command: argv list, or a string split with shell rules.
        cwd: Working directory (defaults to the current directory).
        timeout: Seconds before the process is killed; ``None`` waits forever.
        env: Extra environment variables layered over ``os.environ``.
        check: Raise :class:`SubprocessError` on a non-zero exit or timeout.

    Raises:
        SubprocessError: If the executable is missing, or *check* is set and
            the command did not succeed.
        ValueError: If the command is empty, the timeout is not positive, or
            *cwd* does not exist.
    """
    argv = split_command(command)
    if not argv:
        raise ValueError("Command cannot be empty")
    if timeout is not None and timeout <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout}")

    work_dir = cwd.resolve() if cwd else Path.cwd()
    if not work_dir.is_dir():
        raise ValueError(f"Working directory does not exist: {work_dir}")

    full_env = {**os.environ, **env} if env else None
    logger.debug("Running %s (cwd=%s, timeout=%s)", shlex.join(argv), work_dir, timeout)

    start = time.perf_counter()
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=work_dir,
            env=full_env,
        )
    except FileNotFoundError as exc:
        raise SubprocessError(
            f"Command not found: {argv[0]}",
            result=SubprocessResult(returncode=-1, stdout="", stderr=str(exc)),
        ) from exc

    timed_out = False
    try:
        async with asyncio.timeout(timeout):
            stdout_bytes, stderr_bytes = await process.communicate()
    except TimeoutError:
        logger.warning("Command timed out after %ss: %s", timeout, argv[0])
        timed_out = True
        await _kill(process)
        stdout_bytes, stderr_bytes = b"", b"Process timed out and was killed"
    except asyncio.CancelledError:
        await _kill(process)
        raise

    result = SubprocessResult(
        returncode=-1 if timed_out else (process.returncode or 0),
        stdout=_truncate(stdout_bytes.decode("utf-8", errors="replace")),
        stderr=_truncate(stderr_bytes.decode("utf-8", errors="replace")),
        timed_out=timed_out,
        duration_ms=(time.perf_counter() - start) * 1000,
    )
    logger.debug(
        "Command finished: returncode=%d, duration=%.0fms", result.returncode, result.duration_ms
    )

    if check and not result.success:
        raise SubprocessError(
            f"Command failed with exit code {result.returncode}: {shlex.join(argv)}",
            result=result,
        )
    return result
