"""Shard planning — longest-processing-time-first balancing of ordering units.

``must-follow`` constraints are resolved first: a case and everything it
transitively follows form one *unit* that is always assigned to a single
shard and executed in dependency order.  Units are then sorted by estimated
duration (longest first) and greedily assigned to the shard with the lowest
cumulative estimate, which keeps the slowest shard within 4/3 of optimal.
"""

from __future__ import annotations

import heapq
import logging
import statistics
from collections.abc import Sequence
from dataclasses import dataclass

from tessera.errors import PlanningError
from tessera.models.case import TestCase

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MS = 30_000.0
"""Estimate used when no case in the input has any history."""


@dataclass(frozen=True)
class Shard:
    """One independently executable partition of the suite."""

    index: int
    """Zero-based ordinal of this shard."""

    count: int
    """Total number of shards in the plan."""

    units: tuple[tuple[str, ...], ...] = ()
    """Ordering units assigned to this shard; each in dependency order."""

    estimated_duration_ms: float = 0.0
    """Sum of the estimates of every assigned case."""

    @property
    def case_ids(self) -> tuple[str, ...]:
        """Every assigned case id, unit by unit."""
        return tuple(case_id for unit in self.units for case_id in unit)

    @property
    def is_empty(self) -> bool:
        """Whether no case was assigned to this shard."""
        return not self.units


@dataclass(frozen=True)
class _Unit:
    case_ids: tuple[str, ...]
    estimate_ms: float
    first_position: int


def _check_references(cases: Sequence[TestCase], by_id: dict[str, TestCase]) -> None:
    """Reject references to unknown cases and constraint cycles."""
    for case in cases:
        predecessor = case.ordering.predecessor
        if predecessor is not None and predecessor not in by_id:
            msg = (
                f"{case.id} must follow {predecessor!r}, which is not part of the "
                "planned case set"
            )
            raise PlanningError(msg)

    done: set[str] = set()
    for case in cases:
        path: list[str] = []
        on_path: set[str] = set()
        current: str | None = case.id
        while current is not None and current not in done:
            if current in on_path:
                cycle = [*path[path.index(current) :], current]
                msg = f"Ordering constraints form a cycle: {' -> '.join(cycle)}"
                raise PlanningError(msg)
            path.append(current)
            on_path.add(current)
            current = by_id[current].ordering.predecessor
        done.update(path)


def _find(parent: dict[str, str], case_id: str) -> str:
    root = case_id
    while parent[root] != root:
        root = parent[root]
    while parent[case_id] != root:
        parent[case_id], case_id = root, parent[case_id]
    return root


def build_units(cases: Sequence[TestCase]) -> list[list[TestCase]]:
    """Group *cases* into ordering units.

    Each unit lists its cases so that every case comes after the case it
    must follow; ties are broken by input order.  Units are returned in the
    input order of their first member.

    Raises:
        PlanningError: On references to unknown cases or cyclic constraints.
    """
    by_id: dict[str, TestCase] = {}
    for case in cases:
        if case.id in by_id:
            msg = f"Case {case.id!r} appears more than once in the planned set"
            raise PlanningError(msg)
        by_id[case.id] = case
    _check_references(cases, by_id)

    position = {case.id: idx for idx, case in enumerate(cases)}
    parent = {case.id: case.id for case in cases}
    for case in cases:
        if case.ordering.predecessor is not None:
            a = _find(parent, case.id)
            b = _find(parent, case.ordering.predecessor)
            if a != b:
                parent[max(a, b, key=position.__getitem__)] = min(a, b, key=position.__getitem__)

    members: dict[str, list[TestCase]] = {}
    for case in cases:
        members.setdefault(_find(parent, case.id), []).append(case)

    units: list[list[TestCase]] = []
    for group in members.values():
        followers: dict[str, list[TestCase]] = {}
        ready: list[tuple[int, str]] = []
        for case in group:
            if case.ordering.predecessor is None:
                heapq.heappush(ready, (position[case.id], case.id))
            else:
                followers.setdefault(case.ordering.predecessor, []).append(case)

        ordered: list[TestCase] = []
        while ready:
            _, case_id = heapq.heappop(ready)
            ordered.append(by_id[case_id])
            for follower in followers.get(case_id, []):
                heapq.heappush(ready, (position[follower.id], follower.id))
        units.append(ordered)

    units.sort(key=lambda unit: min(position[c.id] for c in unit))
    return units


def estimate_durations(
    cases: Sequence[TestCase],
    default_duration_ms: float = DEFAULT_DURATION_MS,
) -> dict[str, float]:
    """Estimate each case's duration for planning.

    Cases with history use it; the rest get the median of the known
    estimates, or *default_duration_ms* when nothing has history.  Cases
    annotated ``skip``/``fixme`` never run and weigh nothing.
    """
    known = [c.estimated_duration_ms for c in cases if c.estimated_duration_ms is not None]
    fallback = statistics.median(known) if known else default_duration_ms

    estimates: dict[str, float] = {}
    for case in cases:
        if case.declared_skip:
            estimates[case.id] = 0.0
        elif case.estimated_duration_ms is not None:
            estimates[case.id] = case.estimated_duration_ms
        else:
            estimates[case.id] = fallback
    return estimates


def plan_shards(
    cases: Sequence[TestCase],
    shard_count: int,
    *,
    default_duration_ms: float = DEFAULT_DURATION_MS,
) -> list[Shard]:
    """Partition *cases* into *shard_count* balanced shards.

    Args:
        cases: Cases to plan, in discovery order.
        shard_count: Number of shards to emit (>= 1).  When it exceeds the
            number of units, trailing shards are empty.
        default_duration_ms: Estimate used when no case has history.

    Returns:
        Exactly *shard_count* shards whose case ids partition *cases*.

    Raises:
        PlanningError: If *shard_count* < 1 or constraints are unsatisfiable.
    """
    if shard_count < 1:
        msg = f"shard_count must be >= 1, got {shard_count}"
        raise PlanningError(msg)

    estimates = estimate_durations(cases, default_duration_ms)
    position = {case.id: idx for idx, case in enumerate(cases)}
    units = [
        _Unit(
            case_ids=tuple(c.id for c in unit),
            estimate_ms=sum(estimates[c.id] for c in unit),
            first_position=min(position[c.id] for c in unit),
        )
        for unit in build_units(cases)
    ]
    units.sort(key=lambda u: (-u.estimate_ms, u.first_position))

    loads: list[tuple[float, int]] = [(0.0, idx) for idx in range(shard_count)]
    assigned: list[list[tuple[str, ...]]] = [[] for _ in range(shard_count)]
    totals = [0.0] * shard_count
    for unit in units:
        load, idx = heapq.heappop(loads)
        assigned[idx].append(unit.case_ids)
        totals[idx] = load + unit.estimate_ms
        heapq.heappush(loads, (totals[idx], idx))

    shards = [
        Shard(
            index=idx,
            count=shard_count,
            units=tuple(assigned[idx]),
            estimated_duration_ms=totals[idx],
        )
        for idx in range(shard_count)
    ]
    logger.info(
        "Planned %d case(s) in %d unit(s) across %d shard(s); max estimate %.0fms",
        len(cases),
        len(units),
        shard_count,
        max(totals),
    )
    return shards


def select_shard(
    cases: Sequence[TestCase],
    shard_index: int,
    shard_count: int,
    *,
    default_duration_ms: float = DEFAULT_DURATION_MS,
) -> Shard:
    """Plan all shards and return the one at *shard_index*.

    Every machine of a sharded run computes the same plan from the same
    inputs, so each can select its own shard independently.

    Raises:
        PlanningError: If *shard_index* is out of range or planning fails.
    """
    if shard_count >= 1 and not 0 <= shard_index < shard_count:
        msg = f"shard_index must be in [0, {shard_count}), got {shard_index}"
        raise PlanningError(msg)
    shards = plan_shards(cases, shard_count, default_duration_ms=default_duration_ms)
    return shards[shard_index]
