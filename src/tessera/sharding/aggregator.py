"""Merge shard reports into a single run report.

Merging is order-independent and idempotent: results are sorted by case
id, identical duplicate shard reports collapse into one, and ``run_id`` and
``generated_at`` are taken from the shard reports themselves, so the same
set of inputs always yields an identical report.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from tessera.errors import IncompleteRunError
from tessera.models.results import (
    RunReport,
    RunSummary,
    ShardReport,
    ShardSummary,
    TestResult,
)

logger = logging.getLogger(__name__)


def _unique_shards(reports: Sequence[ShardReport]) -> dict[int, ShardReport]:
    """Index reports by shard, collapsing identical duplicates."""
    run_ids = {r.run_id for r in reports}
    if len(run_ids) > 1:
        msg = f"Shard reports belong to different runs: {', '.join(sorted(run_ids))}"
        raise IncompleteRunError(msg)

    shard_counts = {r.shard_count for r in reports}
    if len(shard_counts) > 1:
        counts = ", ".join(str(c) for c in sorted(shard_counts))
        msg = f"Shard reports disagree on shard count: {counts}"
        raise IncompleteRunError(msg)

    by_index: dict[int, ShardReport] = {}
    for report in reports:
        if not 0 <= report.shard_index < report.shard_count:
            msg = f"Shard index {report.shard_index} outside [0, {report.shard_count})"
            raise IncompleteRunError(msg)
        existing = by_index.get(report.shard_index)
        if existing is None:
            by_index[report.shard_index] = report
        elif existing != report:
            msg = f"Conflicting reports for shard {report.shard_index}"
            raise IncompleteRunError(msg)
        else:
            logger.debug("Ignoring duplicate report for shard %d", report.shard_index)
    return by_index


def merge_shard_reports(
    reports: Sequence[ShardReport],
    expected_ids: Iterable[str],
) -> RunReport:
    """Merge shard reports into one RunReport.

    Args:
        reports: Shard reports of one run, in any order.
        expected_ids: Ids discovered by the Test Registry at plan time.

    Returns:
        The merged report, results sorted by case id.

    Raises:
        IncompleteRunError: If a shard report is missing or conflicting, a
            case is reported twice, or the reported ids differ from
            *expected_ids*.
    """
    if not reports:
        msg = "No shard reports to merge"
        raise IncompleteRunError(msg)

    by_index = _unique_shards(reports)
    shard_count = next(iter(by_index.values())).shard_count
    missing_shards = sorted(set(range(shard_count)) - by_index.keys())
    if missing_shards:
        msg = f"Missing reports for shard(s) {', '.join(str(i) for i in missing_shards)}"
        raise IncompleteRunError(msg)

    owners: dict[str, int] = {}
    duplicated: set[str] = set()
    results: list[TestResult] = []
    for index in sorted(by_index):
        for result in by_index[index].results:
            if result.case_id in owners:
                duplicated.add(result.case_id)
                continue
            owners[result.case_id] = index
            results.append(result)

    expected = set(expected_ids)
    missing = expected - owners.keys()
    unexpected = owners.keys() - expected
    if duplicated or missing or unexpected:
        msg = "Shard reports do not match the planned case set"
        raise IncompleteRunError(
            msg, missing=missing, unexpected=unexpected, duplicated=duplicated
        )

    ordered = tuple(sorted(results, key=lambda r: r.case_id))
    shards = [by_index[i] for i in sorted(by_index)]
    summary = RunSummary.from_results(ordered, max(s.duration_ms for s in shards))

    run_report = RunReport(
        run_id=shards[0].run_id,
        generated_at=max(s.finished_at for s in shards),
        summary=summary,
        results=ordered,
        shards=tuple(
            ShardSummary(
                index=s.shard_index,
                total=len(s.results),
                duration_ms=s.duration_ms,
                degraded=s.degraded,
            )
            for s in shards
        ),
    )
    logger.info(
        "Merged %d shard(s): %d passed, %d failed, %d flaky, %d skipped",
        len(shards),
        summary.passed,
        summary.failed,
        summary.flaky,
        summary.skipped,
    )
    return run_report
