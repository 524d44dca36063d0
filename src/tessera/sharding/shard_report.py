"""Shard report serialization for inter-job artifact exchange."""

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
    ShardReport,
    SkipReason,
    TestResult,
)

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def write_shard_report(report: ShardReport, output_path: Path) -> Path:
    """Serialize and write a shard report to a JSON file."""
    data = serialize_shard_report(report)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    logger.info("Shard %d report written to %s", report.shard_index, output_path)
    return output_path


def read_shard_report(path: Path) -> ShardReport:
    """Read a shard report JSON file.

    Raises:
        ValueError: If the file is not a shard report this version understands.
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        msg = f"{path} does not contain a shard report"
        raise ValueError(msg)
    version = data.get("format_version")
    if version != FORMAT_VERSION:
        msg = f"{path}: unsupported shard report format_version {version!r}"
        raise ValueError(msg)
    return deserialize_shard_report(data)


def serialize_shard_report(report: ShardReport) -> dict[str, Any]:
    """Convert a ShardReport to a JSON-serializable dict."""
    return {
        "format_version": FORMAT_VERSION,
        "run_id": report.run_id,
        "shard_index": report.shard_index,
        "shard_count": report.shard_count,
        "started_at": report.started_at.isoformat(),
        "finished_at": report.finished_at.isoformat(),
        "seed": report.seed,
        "degraded": report.degraded,
        "teardown_errors": list(report.teardown_errors),
        "results": [
            {
                "case_id": r.case_id,
                "status": r.status.value,
                "skip_reason": r.skip_reason.value if r.skip_reason else None,
                "attempts": [_serialize_attempt(a) for a in r.attempts],
            }
            for r in report.results
        ],
    }


def deserialize_shard_report(data: dict[str, Any]) -> ShardReport:
    """Rebuild a ShardReport from its dict form."""
    results = tuple(
        TestResult(
            case_id=r["case_id"],
            status=FinalStatus(r["status"]),
            attempts=tuple(_deserialize_attempt(a) for a in r.get("attempts", [])),
            skip_reason=SkipReason(r["skip_reason"]) if r.get("skip_reason") else None,
        )
        for r in data.get("results", [])
    )
    return ShardReport(
        run_id=data["run_id"],
        shard_index=data["shard_index"],
        shard_count=data["shard_count"],
        started_at=datetime.fromisoformat(data["started_at"]),
        finished_at=datetime.fromisoformat(data["finished_at"]),
        results=results,
        seed=data.get("seed", 0),
        degraded=data.get("degraded", False),
        teardown_errors=tuple(data.get("teardown_errors", [])),
    )


def _serialize_attempt(attempt: Attempt) -> dict[str, Any]:
    return {
        "index": attempt.index,
        "outcome": attempt.outcome.value,
        "started_at": attempt.started_at.isoformat(),
        "finished_at": attempt.finished_at.isoformat(),
        "error": (
            {"kind": attempt.error.kind.value, "message": attempt.error.message}
            if attempt.error
            else None
        ),
        "diagnostic_ref": attempt.diagnostic_ref,
    }


def _deserialize_attempt(data: dict[str, Any]) -> Attempt:
    error = data.get("error")
    return Attempt(
        index=data["index"],
        outcome=AttemptOutcome(data["outcome"]),
        started_at=datetime.fromisoformat(data["started_at"]),
        finished_at=datetime.fromisoformat(data["finished_at"]),
        error=(
            AttemptError(kind=ErrorKind(error["kind"]), message=error.get("message", ""))
            if error
            else None
        ),
        diagnostic_ref=data.get("diagnostic_ref"),
    )
