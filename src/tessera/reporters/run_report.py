"""RunReport persisted form — the versioned JSON that report viewers consume.

Keys are camelCase and stable across releases.  New fields may be added
within a schema version; removing or changing one requires a new
``schemaVersion``.  Readers reject versions newer than they understand.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from tessera.models.results import (
    Attempt,
    AttemptError,
    AttemptOutcome,
    ErrorKind,
    FinalStatus,
    RunReport,
    RunSummary,
    ShardSummary,
    SkipReason,
    TestResult,
)

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


def serialize_run_report(report: RunReport) -> dict[str, Any]:
    """Convert a RunReport to its JSON-serializable persisted form."""
    summary = report.summary
    return {
        "schemaVersion": report.schema_version,
        "runId": report.run_id,
        "generatedAt": report.generated_at.isoformat(),
        "summary": {
            "total": summary.total,
            "passed": summary.passed,
            "failed": summary.failed,
            "flaky": summary.flaky,
            "skipped": summary.skipped,
            "durationMs": round(summary.duration_ms, 3),
            "wallClockMs": round(summary.wall_clock_ms, 3),
        },
        "shards": [
            {
                "index": shard.index,
                "total": shard.total,
                "durationMs": round(shard.duration_ms, 3),
                "degraded": shard.degraded,
            }
            for shard in report.shards
        ],
        "results": [_serialize_result(r) for r in report.results],
    }


def render_run_report(report: RunReport) -> str:
    """Render the persisted form as text.  Equal reports render identically."""
    return json.dumps(serialize_run_report(report), indent=2, ensure_ascii=False) + "\n"


def write_run_report(report: RunReport, output_path: Path) -> Path:
    """Write the persisted form of *report* to *output_path*."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(render_run_report(report), encoding="utf-8")
    logger.info("Run report written to %s", output_path)
    return output_path


def read_run_report(path: Path) -> RunReport:
    """Read a persisted RunReport.

    Raises:
        ValueError: If the file is not a run report, or was written with a
            newer schema version.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict) or "schemaVersion" not in data:
        msg = f"{path} does not contain a run report"
        raise ValueError(msg)
    return deserialize_run_report(data)


def deserialize_run_report(data: dict[str, Any]) -> RunReport:
    """Rebuild a RunReport from its persisted form.

    Raises:
        ValueError: If ``schemaVersion`` is newer than this release supports.
    """
    version = data["schemaVersion"]
    if not isinstance(version, int) or version < 1 or version > SCHEMA_VERSION:
        msg = f"Unsupported run report schemaVersion {version!r} (supported: {SCHEMA_VERSION})"
        raise ValueError(msg)

    summary = data.get("summary", {})
    return RunReport(
        run_id=data["runId"],
        generated_at=datetime.fromisoformat(data["generatedAt"]),
        summary=RunSummary(
            total=summary.get("total", 0),
            passed=summary.get("passed", 0),
            failed=summary.get("failed", 0),
            flaky=summary.get("flaky", 0),
            skipped=summary.get("skipped", 0),
            duration_ms=summary.get("durationMs", 0.0),
            wall_clock_ms=summary.get("wallClockMs", 0.0),
        ),
        results=tuple(_deserialize_result(r) for r in data.get("results", [])),
        shards=tuple(
            ShardSummary(
                index=s["index"],
                total=s.get("total", 0),
                duration_ms=s.get("durationMs", 0.0),
                degraded=s.get("degraded", False),
            )
            for s in data.get("shards", [])
        ),
        schema_version=version,
    )


def _serialize_result(result: TestResult) -> dict[str, Any]:
    return {
        "id": result.case_id,
        "status": result.status.value,
        "skipReason": result.skip_reason.value if result.skip_reason else None,
        "durationMs": round(result.duration_ms, 3),
        "attempts": [_serialize_attempt(a) for a in result.attempts],
    }


def _serialize_attempt(attempt: Attempt) -> dict[str, Any]:
    return {
        "index": attempt.index,
        "outcome": attempt.outcome.value,
        "startedAt": attempt.started_at.isoformat(),
        "finishedAt": attempt.finished_at.isoformat(),
        "durationMs": round(attempt.duration_ms, 3),
        "error": (
            {"kind": attempt.error.kind.value, "message": attempt.error.message}
            if attempt.error
            else None
        ),
        "diagnosticRef": attempt.diagnostic_ref,
    }


def _deserialize_result(data: dict[str, Any]) -> TestResult:
    skip_reason = data.get("skipReason")
    return TestResult(
        case_id=data["id"],
        status=FinalStatus(data["status"]),
        attempts=tuple(_deserialize_attempt(a) for a in data.get("attempts", [])),
        skip_reason=SkipReason(skip_reason) if skip_reason else None,
    )


def _deserialize_attempt(data: dict[str, Any]) -> Attempt:
    error = data.get("error")
    return Attempt(
        index=data["index"],
        outcome=AttemptOutcome(data["outcome"]),
        started_at=datetime.fromisoformat(data["startedAt"]),
        finished_at=datetime.fromisoformat(data["finishedAt"]),
        error=(
            AttemptError(kind=ErrorKind(error["kind"]), message=error.get("message", ""))
            if error
            else None
        ),
        diagnostic_ref=data.get("diagnosticRef"),
    )
