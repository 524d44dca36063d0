"""Error taxonomy for the orchestration engine.

Fatal errors (discovery, planning, fixture graph, aggregation) propagate to
the caller of the engine.  Scoped errors (fixture setup/teardown, timeouts)
are recovered inside the Worker Pool and recorded on the affected attempt.
"""

from __future__ import annotations

from collections.abc import Iterable


class TesseraError(Exception):
    """Base class for all engine errors."""


class DiscoveryError(TesseraError):
    """Test discovery failed (duplicate ids, malformed declarations)."""


class PlanningError(TesseraError):
    """Shard planning failed (cyclic or unsatisfiable ordering constraints)."""


class FixtureGraphError(TesseraError):
    """The fixture dependency graph is invalid (unknown names, cycles)."""


class ScopeViolationError(FixtureGraphError):
    """A fixture depends on a fixture with a narrower scope."""


class FixtureSetupError(TesseraError):
    """A fixture's setup step failed.

    ``fixture`` names the fixture whose setup raised; when the failure is
    inherited from a dependency, it names that dependency.
    """

    def __init__(self, fixture: str, message: str) -> None:
        super().__init__(f"fixture '{fixture}' setup failed: {message}")
        self.fixture = fixture


class FixtureTeardownError(TesseraError):
    """A fixture's teardown step failed."""

    def __init__(self, fixture: str, scope_name: str, message: str) -> None:
        super().__init__(f"fixture '{fixture}' teardown failed in scope '{scope_name}': {message}")
        self.fixture = fixture
        self.scope_name = scope_name


class ExecutionTimeout(TesseraError):
    """An attempt exceeded its timeout."""

    def __init__(self, case_id: str, timeout_ms: int) -> None:
        super().__init__(f"{case_id} timed out after {timeout_ms}ms")
        self.case_id = case_id
        self.timeout_ms = timeout_ms


class IncompleteRunError(TesseraError):
    """Merged shard reports do not cover the planned case set exactly."""

    def __init__(
        self,
        message: str,
        *,
        missing: Iterable[str] = (),
        unexpected: Iterable[str] = (),
        duplicated: Iterable[str] = (),
    ) -> None:
        self.missing = sorted(missing)
        self.unexpected = sorted(unexpected)
        self.duplicated = sorted(duplicated)
        details: list[str] = []
        if self.missing:
            details.append(f"missing: {', '.join(self.missing)}")
        if self.unexpected:
            details.append(f"unexpected: {', '.join(self.unexpected)}")
        if self.duplicated:
            details.append(f"duplicated: {', '.join(self.duplicated)}")
        super().__init__(f"{message} ({'; '.join(details)})" if details else message)
