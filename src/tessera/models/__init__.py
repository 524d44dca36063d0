"""Data models for tessera."""

from tessera.models.case import OrderingConstraint, SkipAnnotation, TestCase, make_case_id
from tessera.models.results import (
    Attempt,
    AttemptError,
    AttemptOutcome,
    ErrorKind,
    FinalStatus,
    RunReport,
    RunSummary,
    ShardReport,
    ShardSummary,
    SkipReason,
    TestResult,
)

__all__ = [
    "Attempt",
    "AttemptError",
    "AttemptOutcome",
    "ErrorKind",
    "FinalStatus",
    "OrderingConstraint",
    "RunReport",
    "RunSummary",
    "ShardReport",
    "ShardSummary",
    "SkipAnnotation",
    "SkipReason",
    "TestCase",
    "TestResult",
    "make_case_id",
]
