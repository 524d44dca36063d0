"""Retry & flake classification.

Per case: run once; on a failure or timeout retry while attempts remain in
the budget ``R``.  A pass after any failing attempt is ``flaky``, never a
clean pass.  ``R + 1`` failing attempts are ``failed``.  Timeouts count as
failures here and are only tagged differently on the attempt.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from tessera.models.results import Attempt, AttemptOutcome, FinalStatus


def classify(attempts: Sequence[Attempt], *, declared_skip: bool = False) -> FinalStatus:
    """Return the final status for a finished sequence of attempts.

    Raises:
        ValueError: If a non-skipped case has no attempts.
    """
    if declared_skip:
        return FinalStatus.SKIPPED
    if not attempts:
        raise ValueError("cannot classify a case with no attempts")

    if attempts[-1].outcome is AttemptOutcome.PASSED:
        if any(a.outcome.is_failure for a in attempts[:-1]):
            return FinalStatus.FLAKY
        return FinalStatus.PASSED
    if attempts[-1].outcome is AttemptOutcome.SKIPPED:
        return FinalStatus.SKIPPED
    return FinalStatus.FAILED


@dataclass
class RetryState:
    """Tracks the attempts of one case against a retry budget."""

    retry_budget: int
    attempts: list[Attempt] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.retry_budget < 0:
            msg = f"retry budget must be >= 0, got {self.retry_budget}"
            raise ValueError(msg)

    @property
    def next_index(self) -> int:
        return len(self.attempts)

    def record(self, attempt: Attempt) -> None:
        self.attempts.append(attempt)

    def should_retry(self) -> bool:
        """Whether another attempt should run.

        True before the first attempt, and after a failing attempt while the
        budget allows another.
        """
        if not self.attempts:
            return True
        last = self.attempts[-1]
        return last.outcome.is_failure and len(self.attempts) <= self.retry_budget

    def final_status(self) -> FinalStatus:
        return classify(self.attempts)
