"""Worker Pool — executes one shard with ``M`` concurrent workers.

Workers pull whole ordering units from a shared queue, so the members of a
unit run strictly in dependency order on a single worker.  Each attempt gets
a fresh test scope: fixtures are acquired, the execution collaborator is
called under the attempt timeout, and the test scope is released before the
attempt is recorded.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from collections.abc import Coroutine, Iterable, Mapping
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from tessera.errors import ExecutionTimeout, FixtureSetupError, PlanningError
from tessera.execution.artifacts import ArtifactStore, DiagnosticPayload
from tessera.execution.cancellation import CancellationToken
from tessera.execution.collaborator import (
    ExecutionCollaborator,
    ExecutionOutcome,
    ExecutionSignal,
)
from tessera.execution.retry import RetryState
from tessera.fixtures.descriptor import FixtureScope
from tessera.fixtures.manager import FixtureLifecycleManager, ScopeHandle
from tessera.models.case import TestCase
from tessera.models.results import (
    Attempt,
    AttemptError,
    AttemptOutcome,
    ErrorKind,
    FinalStatus,
    ShardReport,
    SkipReason,
    TestResult,
)
from tessera.sharding.planner import DEFAULT_DURATION_MS, Shard

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

_SEED_RANGE = 2**32


@dataclass
class RunOptions:
    """Run configuration surface shared by the engine and the worker pool."""

    shard_count: int = 1
    workers_per_shard: int = 1
    retry_budget: int = 0
    stop_on_first_failure: bool = False
    attempt_timeout_ms: int = 30_000
    seed: int | None = None
    """Seed for the unit-to-worker shuffle; random when unset."""

    recycle_degraded_scopes: bool = True
    """Rebuild shard/session fixtures once their scope is degraded."""

    default_duration_ms: float = DEFAULT_DURATION_MS

    def validate(self) -> list[str]:
        """Return human-readable problems with these options."""
        errors: list[str] = []
        if self.shard_count < 1:
            errors.append(f"shard_count must be >= 1, got {self.shard_count}")
        if self.workers_per_shard < 1:
            errors.append(f"workers_per_shard must be >= 1, got {self.workers_per_shard}")
        if self.retry_budget < 0:
            errors.append(f"retry_budget must be >= 0, got {self.retry_budget}")
        if self.attempt_timeout_ms <= 0:
            errors.append(f"attempt_timeout_ms must be > 0, got {self.attempt_timeout_ms}")
        if self.default_duration_ms <= 0:
            errors.append(f"default_duration_ms must be > 0, got {self.default_duration_ms}")
        return errors


def _now() -> datetime:
    return datetime.now(UTC)


async def run_together(coros: Iterable[Coroutine[Any, Any, _T]]) -> list[_T]:
    """Run *coros* concurrently and return their results in order.

    The first failure cancels the siblings and waits for them to finish
    before it is re-raised, so no task outlives the scopes it uses.
    """
    try:
        async with asyncio.TaskGroup() as group:
            tasks = [group.create_task(coro) for coro in coros]
    except BaseExceptionGroup as exc_group:
        raise exc_group.exceptions[0] from exc_group
    return [task.result() for task in tasks]


@dataclass
class _ShardState:
    cases: dict[str, TestCase]
    token: CancellationToken = field(default_factory=CancellationToken)
    results: dict[str, TestResult] = field(default_factory=dict)
    teardown_errors: list[str] = field(default_factory=list)
    degraded: bool = False


class WorkerPool:
    """Runs the cases of one shard and produces its :class:`ShardReport`."""

    def __init__(
        self,
        manager: FixtureLifecycleManager,
        collaborator: ExecutionCollaborator,
        options: RunOptions,
        *,
        artifact_store: ArtifactStore | None = None,
    ) -> None:
        self.manager = manager
        self.collaborator = collaborator
        self.options = options
        self.artifact_store = artifact_store

    async def run(
        self,
        shard: Shard,
        cases: Iterable[TestCase] | Mapping[str, TestCase],
        *,
        session: ScopeHandle | None = None,
        run_id: str | None = None,
    ) -> ShardReport:
        """Execute every case of *shard*.

        Args:
            shard: The planned shard.
            cases: The cases the plan was built from (a superset is fine).
            session: A live session scope shared with other shards.  When
                omitted, the pool opens and releases its own.
            run_id: Identifier of the run; generated when omitted.

        Raises:
            PlanningError: If the shard references a case not in *cases*.
        """
        by_id = dict(cases) if isinstance(cases, Mapping) else {c.id: c for c in cases}
        unknown = [case_id for case_id in shard.case_ids if case_id not in by_id]
        if unknown:
            msg = f"Shard {shard.index} references unknown case(s): {', '.join(unknown)}"
            raise PlanningError(msg)

        run_id = run_id or uuid.uuid4().hex
        seed = self.options.seed
        if seed is None:
            seed = random.randrange(_SEED_RANGE)
        started_at = _now()

        if shard.is_empty:
            logger.info("Shard %d/%d is empty", shard.index + 1, shard.count)
            return ShardReport(
                run_id=run_id,
                shard_index=shard.index,
                shard_count=shard.count,
                started_at=started_at,
                finished_at=started_at,
                seed=seed,
            )

        units = list(shard.units)
        random.Random(seed).shuffle(units)
        queue: asyncio.Queue[tuple[str, ...]] = asyncio.Queue()
        for unit in units:
            queue.put_nowait(unit)

        state = _ShardState(cases={case_id: by_id[case_id] for case_id in shard.case_ids})
        worker_count = max(1, min(self.options.workers_per_shard, len(units)))
        logger.info(
            "Shard %d/%d: %d case(s) in %d unit(s) on %d worker(s), seed %d",
            shard.index + 1,
            shard.count,
            len(state.cases),
            len(units),
            worker_count,
            seed,
        )

        async with AsyncExitStack() as stack:
            if session is None:
                session = await stack.enter_async_context(
                    self.manager.scoped(FixtureScope.SESSION, f"session:{run_id}")
                )
            shard_scope = await stack.enter_async_context(
                self.manager.scoped(FixtureScope.SHARD, f"shard-{shard.index}", session)
            )
            await run_together(
                self._worker(queue, shard_scope, state) for _ in range(worker_count)
            )

        # Shard (and owned session) scopes are released at this point.
        for handle in (shard_scope, session):
            if handle.closed:
                state.teardown_errors.extend(str(e) for e in handle.teardown_errors)
                state.degraded = state.degraded or handle.degraded

        return ShardReport(
            run_id=run_id,
            shard_index=shard.index,
            shard_count=shard.count,
            started_at=started_at,
            finished_at=_now(),
            results=tuple(state.results[case_id] for case_id in shard.case_ids),
            seed=seed,
            degraded=state.degraded,
            teardown_errors=tuple(state.teardown_errors),
        )

    # ── Workers ────────────────────────────────────────────────────

    async def _worker(
        self,
        queue: asyncio.Queue[tuple[str, ...]],
        shard_scope: ScopeHandle,
        state: _ShardState,
    ) -> None:
        while True:
            try:
                unit = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._run_unit(unit, shard_scope, state)
            finally:
                queue.task_done()

    async def _run_unit(
        self,
        unit: tuple[str, ...],
        shard_scope: ScopeHandle,
        state: _ShardState,
    ) -> None:
        predecessor_failed = False
        for case_id in unit:
            case = state.cases[case_id]
            if state.token.cancelled:
                state.results[case_id] = _skipped(case_id, SkipReason.UPSTREAM_FAILURE)
                continue
            if predecessor_failed:
                state.results[case_id] = _skipped(case_id, SkipReason.PREDECESSOR_FAILED)
                continue

            result = await self._run_case(case, shard_scope, state)
            state.results[case_id] = result
            if result.status is FinalStatus.FAILED:
                predecessor_failed = True
                if self.options.stop_on_first_failure:
                    state.token.cancel(f"{case_id} failed")

    async def _run_case(
        self,
        case: TestCase,
        shard_scope: ScopeHandle,
        state: _ShardState,
    ) -> TestResult:
        if case.declared_skip:
            logger.debug("Skipping %s (declared)", case.id)
            return _skipped(case.id, SkipReason.DECLARED)

        retry = RetryState(self.options.retry_budget)
        while retry.should_retry():
            await self._recycle_degraded(shard_scope, state)
            retry.record(await self._run_attempt(case, retry.next_index, shard_scope, state))

        status = retry.final_status()
        if status is FinalStatus.FLAKY:
            logger.warning("%s is flaky (%d attempts)", case.id, len(retry.attempts))
        elif status is FinalStatus.FAILED:
            logger.warning("%s failed after %d attempt(s)", case.id, len(retry.attempts))
        else:
            logger.debug("%s %s", case.id, status.value)
        return TestResult(case_id=case.id, status=status, attempts=tuple(retry.attempts))

    async def _recycle_degraded(self, shard_scope: ScopeHandle, state: _ShardState) -> None:
        for handle in (shard_scope, shard_scope.parent):
            if handle is None or not handle.degraded:
                continue
            state.degraded = True
            if self.options.recycle_degraded_scopes:
                errors = await self.manager.recycle(handle)
                state.teardown_errors.extend(str(e) for e in errors)

    # ── Attempts ───────────────────────────────────────────────────

    async def _run_attempt(
        self,
        case: TestCase,
        index: int,
        shard_scope: ScopeHandle,
        state: _ShardState,
    ) -> Attempt:
        started_at = _now()
        payload: DiagnosticPayload | None = None
        async with self.manager.scoped(
            FixtureScope.TEST, f"{case.id}#{index}", shard_scope
        ) as test_scope:
            try:
                fixtures = await self.manager.acquire_all(case.fixtures, test_scope)
            except FixtureSetupError as exc:
                outcome = AttemptOutcome.FAILED
                error: AttemptError | None = AttemptError(ErrorKind.FIXTURE_SETUP, str(exc))
            else:
                outcome, error, payload = await self._execute(case, fixtures)

        state.teardown_errors.extend(str(e) for e in test_scope.teardown_errors)
        finished_at = _now()
        return Attempt(
            index=index,
            outcome=outcome,
            started_at=started_at,
            finished_at=finished_at,
            error=error,
            diagnostic_ref=await self._store(case, index, payload),
        )

    async def _execute(
        self,
        case: TestCase,
        fixtures: dict[str, Any],
    ) -> tuple[AttemptOutcome, AttemptError | None, DiagnosticPayload | None]:
        timeout_ms = case.timeout_ms or self.options.attempt_timeout_ms
        deadline = asyncio.timeout(timeout_ms / 1000)
        try:
            async with deadline:
                result: ExecutionOutcome = await self.collaborator.execute(case, fixtures)
        except TimeoutError as exc:
            if not deadline.expired():
                return _execution_error(case, exc)
            timeout = ExecutionTimeout(case.id, timeout_ms)
            logger.warning("%s", timeout)
            return AttemptOutcome.TIMED_OUT, AttemptError(ErrorKind.TIMEOUT, str(timeout)), None
        except Exception as exc:
            return _execution_error(case, exc)

        if result.signal is ExecutionSignal.PASSED:
            return AttemptOutcome.PASSED, None, result.diagnostics
        if result.signal is ExecutionSignal.TIMED_OUT:
            error = AttemptError(ErrorKind.TIMEOUT, result.message)
            return AttemptOutcome.TIMED_OUT, error, result.diagnostics
        error = AttemptError(ErrorKind.ASSERTION, result.message)
        return AttemptOutcome.FAILED, error, result.diagnostics

    async def _store(
        self,
        case: TestCase,
        index: int,
        payload: DiagnosticPayload | None,
    ) -> str | None:
        if payload is None or self.artifact_store is None:
            return None
        try:
            return await self.artifact_store.put(case.id, index, payload)
        except Exception as exc:
            logger.warning("Could not store diagnostics for %s #%d: %s", case.id, index, exc)
            return None


def _skipped(case_id: str, reason: SkipReason) -> TestResult:
    return TestResult(case_id=case_id, status=FinalStatus.SKIPPED, skip_reason=reason)


def _execution_error(
    case: TestCase,
    exc: Exception,
) -> tuple[AttemptOutcome, AttemptError, None]:
    logger.warning("Collaborator raised while running %s: %s", case.id, exc)
    error = AttemptError(ErrorKind.EXECUTION, f"{type(exc).__name__}: {exc}")
    return AttemptOutcome.FAILED, error, None
