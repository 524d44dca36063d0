"""Duration history persistence — read/write `.tessera/history.json`.

Stores a rolling average of each case's duration, keyed by case id.  The
average weights the newest sample by ``1 / min(samples, window)`` so old runs
fade out once the window is full.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tessera.models.results import RunReport

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_PATH = ".tessera/history.json"
DEFAULT_WINDOW = 10


@dataclass
class DurationEstimate:
    """Rolling-average duration of one case."""

    average_ms: float
    samples: int


class HistoryStore:
    """Rolling-average duration store backed by a JSON file."""

    def __init__(self, path: str | Path, *, window: int = DEFAULT_WINDOW) -> None:
        if window < 1:
            msg = f"window must be >= 1, got {window}"
            raise ValueError(msg)
        self.path = Path(path)
        self.window = window
        self._estimates: dict[str, DurationEstimate] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.is_file():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read duration history %s: %s", self.path, exc)
            return
        if not isinstance(data, dict):
            return
        for case_id, entry in data.get("cases", {}).items():
            try:
                self._estimates[case_id] = DurationEstimate(
                    average_ms=float(entry["average_ms"]),
                    samples=int(entry["samples"]),
                )
            except (KeyError, TypeError, ValueError):
                logger.debug("Ignoring malformed history entry for %s", case_id)

    def estimate(self, case_id: str) -> float | None:
        """Return the rolling average for *case_id*, or ``None`` without history."""
        entry = self._estimates.get(case_id)
        return entry.average_ms if entry else None

    def estimates(self) -> dict[str, float]:
        """Return all known averages keyed by case id."""
        return {case_id: e.average_ms for case_id, e in self._estimates.items()}

    def record(self, case_id: str, duration_ms: float) -> None:
        """Fold one observed duration into the rolling average."""
        entry = self._estimates.get(case_id)
        if entry is None:
            self._estimates[case_id] = DurationEstimate(average_ms=duration_ms, samples=1)
            return
        samples = entry.samples + 1
        weight = 1 / min(samples, self.window)
        entry.average_ms += (duration_ms - entry.average_ms) * weight
        entry.samples = samples

    def record_run(self, report: RunReport) -> int:
        """Record the last attempt of every executed case.  Returns the count."""
        recorded = 0
        for result in report.results:
            if not result.attempts:
                continue
            self.record(result.case_id, result.attempts[-1].duration_ms)
            recorded += 1
        return recorded

    def save(self) -> Path:
        """Write the store to disk, creating parent directories."""
        payload = {
            "version": 1,
            "window": self.window,
            "cases": {
                case_id: {"average_ms": round(e.average_ms, 3), "samples": e.samples}
                for case_id, e in sorted(self._estimates.items())
            },
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        logger.info("Duration history saved to %s", self.path)
        return self.path
