"""Tests for the async subprocess runner."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from tessera.utils.subprocess_runner import (
    SubprocessError,
    SubprocessResult,
    run_subprocess,
    split_command,
)

# ── Basic Execution Tests ────────────────────────────────────────────


async def test_run_subprocess_success() -> None:
    """Test successful subprocess execution."""
    result = await run_subprocess(["echo", "hello"])

    assert result.success
    assert result.returncode == 0
    assert "hello" in result.stdout
    assert result.timed_out is False
    assert result.duration_ms > 0


async def test_run_subprocess_string_command() -> None:
    """Test that string commands are split with shell rules."""
    result = await run_subprocess("echo 'hello world'")

    assert result.success
    assert "hello world" in result.stdout


async def test_run_subprocess_with_working_directory(tmp_path: Path) -> None:
    """Test subprocess respects working directory."""
    (tmp_path / "marker.txt").write_text("content")

    result = await run_subprocess(["ls"], cwd=tmp_path)

    assert result.success
    assert "marker.txt" in result.stdout


async def test_run_subprocess_captures_stderr() -> None:
    """Test subprocess captures stderr separately."""
    result = await run_subprocess(
        [sys.executable, "-c", "import sys; sys.stderr.write('error msg')"]
    )

    assert result.returncode == 0
    assert "error msg" in result.stderr
    assert result.stdout == ""
    assert result.combined_output == "error msg"


async def test_run_subprocess_env_is_layered() -> None:
    """Test extra environment variables are visible to the child."""
    result = await run_subprocess(
        [sys.executable, "-c", "import os; print(os.environ['TESSERA_MARKER'])"],
        env={"TESSERA_MARKER": "visible"},
    )

    assert result.stdout.strip() == "visible"


# ── Failure Tests ────────────────────────────────────────────────────


async def test_run_subprocess_nonzero_exit() -> None:
    result = await run_subprocess([sys.executable, "-c", "import sys; sys.exit(3)"])

    assert not result.success
    assert result.returncode == 3


async def test_run_subprocess_check_raises() -> None:
    with pytest.raises(SubprocessError, match="exit code 3") as exc_info:
        await run_subprocess([sys.executable, "-c", "import sys; sys.exit(3)"], check=True)

    assert exc_info.value.result.returncode == 3


async def test_run_subprocess_command_not_found() -> None:
    with pytest.raises(SubprocessError, match="Command not found"):
        await run_subprocess(["definitely-not-a-real-command-xyz"])


async def test_run_subprocess_empty_command() -> None:
    with pytest.raises(ValueError, match="cannot be empty"):
        await run_subprocess([])


async def test_run_subprocess_invalid_timeout() -> None:
    with pytest.raises(ValueError, match="Timeout must be positive"):
        await run_subprocess(["echo"], timeout=0)


async def test_run_subprocess_missing_cwd(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Working directory does not exist"):
        await run_subprocess(["echo"], cwd=tmp_path / "missing")


# ── Timeout and Cancellation Tests ───────────────────────────────────


async def test_run_subprocess_timeout() -> None:
    """Test that a slow process is killed at the timeout."""
    result = await run_subprocess(
        [sys.executable, "-c", "import time; time.sleep(10)"], timeout=0.3
    )

    assert result.timed_out
    assert result.returncode == -1
    assert not result.success
    assert result.duration_ms < 5000


async def test_run_subprocess_cancellation_propagates() -> None:
    task = asyncio.create_task(
        run_subprocess([sys.executable, "-c", "import time; time.sleep(10)"], timeout=None)
    )
    await asyncio.sleep(0.2)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task


# ── Helpers ──────────────────────────────────────────────────────────


def test_split_command() -> None:
    assert split_command("npx playwright test --grep 'a b'") == [
        "npx",
        "playwright",
        "test",
        "--grep",
        "a b",
    ]
    assert split_command(["echo", 1]) == ["echo", "1"]


def test_combined_output_with_both_streams() -> None:
    result = SubprocessResult(returncode=1, stdout="out", stderr="err")

    assert result.combined_output == "out\n--- stderr ---\nerr"
