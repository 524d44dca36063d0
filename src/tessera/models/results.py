"""Attempt, result, and report models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AttemptOutcome(Enum):
    """Outcome of a single attempt."""

    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timedOut"
    SKIPPED = "skipped"

    @property
    def is_failure(self) -> bool:
        """Failures and timeouts are classified identically."""
        return self in {AttemptOutcome.FAILED, AttemptOutcome.TIMED_OUT}


class FinalStatus(Enum):
    """Terminal status of a test case."""

    PASSED = "passed"
    FAILED = "failed"
    FLAKY = "flaky"
    SKIPPED = "skipped"


class SkipReason(Enum):
    """Why a case was skipped without (further) execution."""

    DECLARED = "Declared"
    UPSTREAM_FAILURE = "UpstreamFailure"
    PREDECESSOR_FAILED = "PredecessorFailed"


class ErrorKind(Enum):
    """Tag attached to a failing attempt for diagnostics."""

    FIXTURE_SETUP = "FixtureSetupError"
    TIMEOUT = "ExecutionTimeout"
    EXECUTION = "ExecutionError"
    ASSERTION = "AssertionFailure"


@dataclass(frozen=True)
class AttemptError:
    """Error recorded on a failing attempt."""

    kind: ErrorKind
    message: str = ""


@dataclass(frozen=True)
class Attempt:
    """One execution of a test case."""

    index: int
    outcome: AttemptOutcome
    started_at: datetime
    finished_at: datetime
    error: AttemptError | None = None
    diagnostic_ref: str | None = None

    @property
    def duration_ms(self) -> float:
        """Elapsed time of the attempt in milliseconds."""
        return (self.finished_at - self.started_at).total_seconds() * 1000


@dataclass(frozen=True)
class TestResult:
    """Final result of a test case.  Immutable once created."""

    __test__ = False

    case_id: str
    status: FinalStatus
    attempts: tuple[Attempt, ...] = ()
    skip_reason: SkipReason | None = None

    @property
    def duration_ms(self) -> float:
        """Total time spent across all attempts."""
        return sum(a.duration_ms for a in self.attempts)


@dataclass(frozen=True)
class ShardReport:
    """Results of one shard, produced once all assigned cases resolve."""

    run_id: str
    shard_index: int
    shard_count: int
    started_at: datetime
    finished_at: datetime
    results: tuple[TestResult, ...] = ()
    seed: int = 0
    degraded: bool = False
    teardown_errors: tuple[str, ...] = ()

    @property
    def duration_ms(self) -> float:
        """Shard wall-clock duration in milliseconds."""
        return (self.finished_at - self.started_at).total_seconds() * 1000

    @property
    def case_ids(self) -> list[str]:
        """Ids of the cases reported by this shard, in shard order."""
        return [r.case_id for r in self.results]


@dataclass(frozen=True)
class RunSummary:
    """Run-level aggregate counts."""

    total: int = 0
    passed: int = 0
    failed: int = 0
    flaky: int = 0
    skipped: int = 0
    duration_ms: float = 0.0
    """Sum of every test's attempt time."""

    wall_clock_ms: float = 0.0
    """Longest shard duration (shards run in parallel)."""

    @property
    def success(self) -> bool:
        """A run succeeds when nothing failed."""
        return self.failed == 0

    @classmethod
    def from_results(cls, results: tuple[TestResult, ...], wall_clock_ms: float) -> RunSummary:
        """Compute counts once over a complete result set."""
        counts = dict.fromkeys(FinalStatus, 0)
        for result in results:
            counts[result.status] += 1
        return cls(
            total=len(results),
            passed=counts[FinalStatus.PASSED],
            failed=counts[FinalStatus.FAILED],
            flaky=counts[FinalStatus.FLAKY],
            skipped=counts[FinalStatus.SKIPPED],
            duration_ms=sum(r.duration_ms for r in results),
            wall_clock_ms=wall_clock_ms,
        )


@dataclass(frozen=True)
class ShardSummary:
    """Per-shard timing carried into the run report."""

    index: int
    total: int
    duration_ms: float
    degraded: bool = False


@dataclass(frozen=True)
class RunReport:
    """Merged report of a complete run.  Terminal artifact."""

    run_id: str
    generated_at: datetime
    summary: RunSummary
    results: tuple[TestResult, ...] = ()
    shards: tuple[ShardSummary, ...] = field(default_factory=tuple)
    schema_version: int = 1

    def get(self, case_id: str) -> TestResult | None:
        """Look up the result of a case by id."""
        for result in self.results:
            if result.case_id == case_id:
                return result
        return None

    def with_status(self, status: FinalStatus) -> list[TestResult]:
        """Results with the given final status."""
        return [r for r in self.results if r.status is status]
