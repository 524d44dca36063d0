"""Execution collaborator — the boundary to the browser-automation layer.

The Worker Pool hands a collaborator one case plus its live fixture values
and gets back a pass/fail/timeout signal with an optional diagnostic
payload.  The orchestrator never looks at browser state itself.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from tessera.execution.artifacts import DiagnosticPayload
from tessera.fixtures.bootstrap import fixture_env
from tessera.models.case import TestCase
from tessera.utils.subprocess_runner import run_subprocess, split_command

logger = logging.getLogger(__name__)

_MAX_MESSAGE_LINES = 20


class ExecutionSignal(Enum):
    """Completion signal reported by the collaborator."""

    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timedOut"


@dataclass(frozen=True)
class ExecutionOutcome:
    """What the collaborator reports for one attempt."""

    signal: ExecutionSignal
    message: str = ""
    diagnostics: DiagnosticPayload | None = None


class ExecutionCollaborator(ABC):
    """Runs a single test case against live fixtures."""

    @abstractmethod
    async def execute(self, case: TestCase, fixtures: Mapping[str, Any]) -> ExecutionOutcome:
        """Execute *case* once.

        Args:
            case: The case to run.
            fixtures: Values of the case's fixtures, keyed by fixture name.

        Returns:
            The outcome signal and diagnostics.  Raising an exception is
            recorded as a failed attempt.
        """


def _tail(text: str) -> str:
    lines = [line for line in text.strip().splitlines() if line.strip()]
    return "\n".join(lines[-_MAX_MESSAGE_LINES:])


class CommandCollaborator(ExecutionCollaborator):
    """Runs one external test-runner process per attempt.

    The command template may contain ``{id}``, ``{title}``, ``{file}`` and
    ``{grep}`` (the escaped title path, for ``--grep`` style filters), e.g.
    ``npx playwright test {file} --grep "{grep}"``.  String fixture values
    are exported as ``TESSERA_FIXTURE_<NAME>``.  Exit code 0 passes.
    """

    def __init__(
        self,
        command: str | Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.command = split_command(command)
        if not self.command:
            raise ValueError("Command cannot be empty")
        self.cwd = cwd
        self.env = dict(env or {})

    def render(self, case: TestCase) -> list[str]:
        """Substitute the case's placeholders into the command template."""
        values = {
            "{id}": case.id,
            "{title}": case.title,
            "{file}": case.file,
            "{grep}": re.escape(" ".join(case.title_path)),
        }
        rendered: list[str] = []
        for part in self.command:
            for placeholder, value in values.items():
                part = part.replace(placeholder, value)
            rendered.append(part)
        return rendered

    async def execute(self, case: TestCase, fixtures: Mapping[str, Any]) -> ExecutionOutcome:
        env = {**self.env, **fixture_env(fixtures), "TESSERA_CASE_ID": case.id}
        result = await run_subprocess(self.render(case), cwd=self.cwd, env=env, timeout=None)

        diagnostics = DiagnosticPayload(
            name="output.log",
            content=result.combined_output.encode("utf-8"),
        )
        if result.timed_out:
            return ExecutionOutcome(ExecutionSignal.TIMED_OUT, "runner timed out", diagnostics)
        if result.success:
            return ExecutionOutcome(ExecutionSignal.PASSED, diagnostics=diagnostics)

        message = _tail(result.stderr) or _tail(result.stdout)
        return ExecutionOutcome(
            ExecutionSignal.FAILED,
            message or f"exit code {result.returncode}",
            diagnostics,
        )
