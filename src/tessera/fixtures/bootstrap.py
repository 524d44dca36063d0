"""Session-bootstrap collaborator and command-backed fixtures.

The engine only knows the session bootstrap as a session-scoped fixture that
produces an opaque handle (typically the path of a saved browser storage
state) and releases it on session teardown.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tessera.fixtures.descriptor import FixtureDescriptor, FixtureScope
from tessera.utils.subprocess_runner import run_subprocess

logger = logging.getLogger(__name__)

DEFAULT_SESSION_FIXTURE = "session"
_ENV_UNSAFE_RE = re.compile(r"\W")


def fixture_env_name(name: str) -> str:
    """Environment variable that carries a fixture's value to child processes."""
    return f"TESSERA_FIXTURE_{_ENV_UNSAFE_RE.sub('_', name).upper()}"


def fixture_env(values: Mapping[str, Any]) -> dict[str, str]:
    """Export string-valued fixtures as ``TESSERA_FIXTURE_<NAME>`` variables."""
    return {
        fixture_env_name(name): value for name, value in values.items() if isinstance(value, str)
    }


class SessionBootstrap(ABC):
    """Produces the reusable session state that tests start from."""

    @abstractmethod
    async def create(self) -> Any:
        """Build the session and return an opaque handle."""

    async def close(self, handle: Any) -> None:  # noqa: B027 - optional hook
        """Release the session handle.  Default: nothing to release."""


def bootstrap_fixture(
    bootstrap: SessionBootstrap,
    name: str = DEFAULT_SESSION_FIXTURE,
) -> FixtureDescriptor:
    """Expose *bootstrap* as a session-scoped fixture."""

    async def _setup(_dependencies: Mapping[str, Any]) -> Any:
        handle = await bootstrap.create()
        logger.info("Session bootstrap '%s' ready", name)
        return handle

    async def _teardown(handle: Any) -> None:
        await bootstrap.close(handle)

    return FixtureDescriptor(
        name=name,
        scope=FixtureScope.SESSION,
        setup=_setup,
        teardown=_teardown,
    )


class CommandBootstrap(SessionBootstrap):
    """Runs an auth setup command that writes a storage-state file.

    The command receives the target path in ``TESSERA_STORAGE_STATE``; the
    handle is that path.  An optional teardown command runs on release.
    """

    def __init__(
        self,
        setup_command: str | Sequence[str],
        *,
        storage_state: Path,
        teardown_command: str | Sequence[str] | None = None,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float = 300.0,
    ) -> None:
        self.setup_command = setup_command
        self.teardown_command = teardown_command
        self.storage_state = storage_state
        self.cwd = cwd
        self.env = dict(env or {})
        self.timeout = timeout

    def _env(self) -> dict[str, str]:
        return {**self.env, "TESSERA_STORAGE_STATE": str(self.storage_state)}

    async def create(self) -> str:
        self.storage_state.parent.mkdir(parents=True, exist_ok=True)
        await run_subprocess(
            self.setup_command, cwd=self.cwd, env=self._env(), timeout=self.timeout, check=True
        )
        if not self.storage_state.is_file():
            msg = f"bootstrap command did not write {self.storage_state}"
            raise FileNotFoundError(msg)
        return str(self.storage_state)

    async def close(self, handle: Any) -> None:
        if self.teardown_command is None:
            return
        await run_subprocess(
            self.teardown_command,
            cwd=self.cwd,
            env=self._env(),
            timeout=self.timeout,
            check=True,
        )


@dataclass
class CommandFixtureSpec:
    """A fixture whose value is the trimmed stdout of a setup command."""

    name: str
    scope: FixtureScope
    setup: str | list[str]
    teardown: str | list[str] | None = None
    depends_on: list[str] = field(default_factory=list)
    timeout: float = 120.0


def command_fixture(
    spec: CommandFixtureSpec,
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> FixtureDescriptor:
    """Build a fixture that runs shell commands for setup and teardown.

    Dependency values are exported to both commands as
    ``TESSERA_FIXTURE_<NAME>``; the teardown command also receives the
    fixture's own value.
    """
    base_env = dict(env or {})

    async def _setup(dependencies: Mapping[str, Any]) -> str:
        result = await run_subprocess(
            spec.setup,
            cwd=cwd,
            env={**base_env, **fixture_env(dependencies)},
            timeout=spec.timeout,
            check=True,
        )
        return result.stdout.strip()

    teardown_command = spec.teardown
    if teardown_command is None:
        return FixtureDescriptor(
            name=spec.name,
            scope=spec.scope,
            setup=_setup,
            dependencies=tuple(spec.depends_on),
        )

    async def _teardown(value: str) -> None:
        await run_subprocess(
            teardown_command,
            cwd=cwd,
            env={**base_env, fixture_env_name(spec.name): value},
            timeout=spec.timeout,
            check=True,
        )

    return FixtureDescriptor(
        name=spec.name,
        scope=spec.scope,
        setup=_setup,
        teardown=_teardown,
        dependencies=tuple(spec.depends_on),
    )
