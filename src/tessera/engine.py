"""End-to-end orchestration: validate, plan, execute, and merge.

:meth:`Engine.run` executes every shard concurrently in this process and
merges their reports.  :meth:`Engine.run_shard` executes one shard of a
distributed run; the resulting :class:`ShardReport` is exchanged as an
artifact and merged later with :func:`merge_shard_reports`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

from tessera.errors import PlanningError
from tessera.execution.worker_pool import RunOptions, WorkerPool, run_together
from tessera.fixtures.descriptor import FixtureDescriptor, FixtureScope
from tessera.fixtures.graph import FixtureGraph
from tessera.fixtures.manager import FixtureLifecycleManager, ScopeHandle
from tessera.models.results import RunReport, ShardReport
from tessera.sharding.aggregator import merge_shard_reports
from tessera.sharding.planner import Shard, plan_shards, select_shard
from tessera.telemetry.sentry_integration import (
    record_metric_count,
    record_metric_distribution,
    start_span,
)

if TYPE_CHECKING:
    from tessera.execution.artifacts import ArtifactStore
    from tessera.execution.collaborator import ExecutionCollaborator
    from tessera.models.case import TestCase

logger = logging.getLogger(__name__)


class Engine:
    """Runs a suite against one execution collaborator.

    The fixture graph is validated on construction, before anything runs.

    Raises:
        PlanningError: If *options* are invalid.
        FixtureGraphError: If the fixture graph is invalid.
    """

    def __init__(
        self,
        collaborator: ExecutionCollaborator,
        *,
        options: RunOptions | None = None,
        fixtures: Iterable[FixtureDescriptor] = (),
        artifact_store: ArtifactStore | None = None,
    ) -> None:
        self.options = options or RunOptions()
        problems = self.options.validate()
        if problems:
            msg = "Invalid run options: " + "; ".join(problems)
            raise PlanningError(msg)

        self.graph = FixtureGraph(fixtures)
        self.manager = FixtureLifecycleManager(self.graph)
        self.pool = WorkerPool(
            self.manager,
            collaborator,
            self.options,
            artifact_store=artifact_store,
        )

    def check_requirements(self, cases: Sequence[TestCase]) -> None:
        """Fail before planning when a case requires an undeclared fixture."""
        for case in cases:
            self.graph.require(case.fixtures, owner=case.id)

    def plan(self, cases: Sequence[TestCase]) -> list[Shard]:
        """Validate requirements and partition *cases* into shards."""
        self.check_requirements(cases)
        with start_span("tessera.plan", f"{len(cases)} cases") as span:
            shards = plan_shards(
                cases,
                self.options.shard_count,
                default_duration_ms=self.options.default_duration_ms,
            )
            span.set_data("shard_count", len(shards))
        return shards

    async def run(self, cases: Sequence[TestCase], *, run_id: str | None = None) -> RunReport:
        """Run every shard in this process and return the merged report.

        Shards share one session scope and nothing else.

        Raises:
            PlanningError: If planning fails; nothing runs.
            FixtureGraphError: If a case requires an undeclared fixture.
            IncompleteRunError: If the shard reports do not cover *cases*.
        """
        cases = list(cases)
        run_id = run_id or uuid.uuid4().hex
        shards = self.plan(cases)

        async with self.manager.scoped(FixtureScope.SESSION, f"session:{run_id}") as session:
            reports = await run_together(
                self._run_pool(shard, cases, session, run_id) for shard in shards
            )
        for error in session.teardown_errors:
            logger.warning("Session teardown: %s", error)

        report = merge_shard_reports(list(reports), [case.id for case in cases])
        _record_summary(report)
        return report

    async def run_shard(
        self,
        cases: Sequence[TestCase],
        shard_index: int,
        *,
        run_id: str | None = None,
    ) -> ShardReport:
        """Plan the whole suite and run only the shard at *shard_index*.

        Raises:
            PlanningError: If planning fails or the index is out of range.
            FixtureGraphError: If a case requires an undeclared fixture.
        """
        cases = list(cases)
        self.check_requirements(cases)
        shard = select_shard(
            cases,
            shard_index,
            self.options.shard_count,
            default_duration_ms=self.options.default_duration_ms,
        )
        return await self._run_pool(shard, cases, None, run_id or uuid.uuid4().hex)

    async def _run_pool(
        self,
        shard: Shard,
        cases: Sequence[TestCase],
        session: ScopeHandle | None,
        run_id: str,
    ) -> ShardReport:
        with start_span("tessera.shard", f"shard {shard.index + 1}/{shard.count}") as span:
            report = await self.pool.run(shard, cases, session=session, run_id=run_id)
            span.set_data("cases", len(report.results))
            span.set_data("degraded", report.degraded)
        record_metric_distribution(
            "tessera.shard.duration", report.duration_ms, unit="millisecond"
        )
        return report


def _record_summary(report: RunReport) -> None:
    summary = report.summary
    logger.info(
        "Run %s: %d passed, %d failed, %d flaky, %d skipped",
        report.run_id,
        summary.passed,
        summary.failed,
        summary.flaky,
        summary.skipped,
    )
    if summary.flaky:
        record_metric_count("tessera.tests.flaky", summary.flaky)
    if summary.failed:
        record_metric_count("tessera.tests.failed", summary.failed)
