"""Tests for tessera.models.case and tessera.models.results."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tessera.models.case import (
    INDEPENDENT,
    OrderingConstraint,
    SkipAnnotation,
    TestCase,
    make_case_id,
)
from tessera.models.results import (
    Attempt,
    AttemptOutcome,
    FinalStatus,
    RunReport,
    RunSummary,
    TestResult,
)

T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _attempt(outcome: AttemptOutcome, ms: int = 100, index: int = 0) -> Attempt:
    return Attempt(
        index=index,
        outcome=outcome,
        started_at=T0,
        finished_at=T0 + timedelta(milliseconds=ms),
    )


# ── OrderingConstraint ───────────────────────────────────────────────


class TestOrderingConstraint:
    def test_parse_independent(self) -> None:
        assert OrderingConstraint.parse("independent") == INDEPENDENT
        assert OrderingConstraint.parse("") == INDEPENDENT
        assert INDEPENDENT.is_independent

    def test_parse_must_follow(self) -> None:
        constraint = OrderingConstraint.parse("must-follow: a.spec.ts::login")

        assert constraint.predecessor == "a.spec.ts::login"
        assert not constraint.is_independent
        assert str(constraint) == "must-follow:a.spec.ts::login"

    @pytest.mark.parametrize("value", ["must-follow:", "after:x", "sometimes"])
    def test_parse_invalid(self, value: str) -> None:
        with pytest.raises(ValueError, match="Invalid ordering constraint"):
            OrderingConstraint.parse(value)


# ── TestCase ─────────────────────────────────────────────────────────


class TestTestCase:
    def test_make_case_id(self) -> None:
        assert make_case_id("cart.spec.ts", ("Cart", "Payment", "pays")) == (
            "cart.spec.ts::Cart > Payment > pays"
        )

    def test_title_path_and_full_title(self) -> None:
        case = TestCase(
            id="f::G > t",
            title="t",
            file="f",
            groups=("G",),
        )

        assert case.title_path == ("G", "t")
        assert case.full_title == "G > t"
        assert not case.declared_skip

    def test_declared_skip(self) -> None:
        case = TestCase(
            id="f::t",
            title="t",
            file="f",
            annotations=frozenset({SkipAnnotation.FIXME}),
        )

        assert case.declared_skip

    def test_is_immutable(self) -> None:
        case = TestCase(id="f::t", title="t", file="f")

        with pytest.raises(AttributeError):
            case.title = "other"  # type: ignore[misc]


# ── Results ──────────────────────────────────────────────────────────


class TestResults:
    def test_timeouts_count_as_failures(self) -> None:
        assert AttemptOutcome.TIMED_OUT.is_failure
        assert AttemptOutcome.FAILED.is_failure
        assert not AttemptOutcome.PASSED.is_failure
        assert not AttemptOutcome.SKIPPED.is_failure

    def test_result_duration_sums_attempts(self) -> None:
        result = TestResult(
            case_id="f::t",
            status=FinalStatus.FLAKY,
            attempts=(
                _attempt(AttemptOutcome.FAILED, 250),
                _attempt(AttemptOutcome.PASSED, 150, index=1),
            ),
        )

        assert result.duration_ms == pytest.approx(400)

    def test_summary_from_results(self) -> None:
        results = (
            TestResult("a", FinalStatus.PASSED, (_attempt(AttemptOutcome.PASSED, 100),)),
            TestResult("b", FinalStatus.FAILED, (_attempt(AttemptOutcome.FAILED, 200),)),
            TestResult("c", FinalStatus.FLAKY, (_attempt(AttemptOutcome.PASSED, 50),)),
            TestResult("d", FinalStatus.SKIPPED),
        )

        summary = RunSummary.from_results(results, wall_clock_ms=300)

        assert summary.total == 4
        assert summary.passed == 1
        assert summary.failed == 1
        assert summary.flaky == 1
        assert summary.skipped == 1
        assert summary.duration_ms == pytest.approx(350)
        assert summary.wall_clock_ms == 300
        assert not summary.success

    def test_run_report_lookup(self) -> None:
        results = (
            TestResult("a", FinalStatus.PASSED),
            TestResult("b", FinalStatus.SKIPPED),
        )
        report = RunReport(
            run_id="r",
            generated_at=T0,
            summary=RunSummary.from_results(results, 0),
            results=results,
        )

        assert report.get("b") is results[1]
        assert report.get("missing") is None
        assert report.with_status(FinalStatus.PASSED) == [results[0]]
