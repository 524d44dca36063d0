"""Test case model produced by the Test Registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

ID_SEPARATOR = "::"
TITLE_SEPARATOR = " > "
_MUST_FOLLOW_PREFIX = "must-follow:"


class SkipAnnotation(Enum):
    """Metadata annotations that prevent a case from executing."""

    SKIP = "skip"
    FIXME = "fixme"


@dataclass(frozen=True)
class OrderingConstraint:
    """Ordering constraint of a test case.

    ``predecessor`` is ``None`` for independent cases, otherwise the id of
    the case that must run (and pass) before this one.
    """

    predecessor: str | None = None

    @property
    def is_independent(self) -> bool:
        """Whether the case can run in any order."""
        return self.predecessor is None

    def __str__(self) -> str:
        if self.predecessor is None:
            return "independent"
        return f"{_MUST_FOLLOW_PREFIX}{self.predecessor}"

    @classmethod
    def parse(cls, value: str) -> OrderingConstraint:
        """Parse ``independent`` or ``must-follow:<id>``."""
        value = value.strip()
        if value in {"", "independent"}:
            return cls()
        if value.startswith(_MUST_FOLLOW_PREFIX):
            predecessor = value[len(_MUST_FOLLOW_PREFIX) :].strip()
            if predecessor:
                return cls(predecessor=predecessor)
        msg = f"Invalid ordering constraint: {value!r}"
        raise ValueError(msg)


INDEPENDENT = OrderingConstraint()


def make_case_id(file: str, title_path: tuple[str, ...]) -> str:
    """Derive the stable id of a case from its suite path and title path."""
    return f"{file}{ID_SEPARATOR}{TITLE_SEPARATOR.join(title_path)}"


@dataclass(frozen=True)
class TestCase:
    """A discovered test case.  Immutable once discovered."""

    __test__ = False

    id: str
    """Stable id derived from suite path and title path."""

    title: str
    """Test title (last element of the title path)."""

    file: str
    """Suite path (spec file) the case was declared in."""

    groups: tuple[str, ...] = ()
    """Ancestor group titles, outermost first."""

    tags: frozenset[str] = frozenset()
    """Tags, including those inherited from ancestor groups."""

    fixtures: tuple[str, ...] = ()
    """Declared fixture requirements, in declaration order."""

    ordering: OrderingConstraint = INDEPENDENT
    """Ordering constraint (independent or must-follow another case)."""

    estimated_duration_ms: float | None = None
    """Rolling-average historical duration (None on first run)."""

    annotations: frozenset[SkipAnnotation] = field(default_factory=frozenset)
    """``skip`` / ``fixme`` annotations."""

    timeout_ms: int | None = None
    """Per-case attempt timeout override."""

    declaration_index: int = 0
    """Position in discovery order; the tie-break for everything downstream."""

    @property
    def title_path(self) -> tuple[str, ...]:
        """Group titles followed by the test title."""
        return (*self.groups, self.title)

    @property
    def full_title(self) -> str:
        """Human-readable title path."""
        return TITLE_SEPARATOR.join(self.title_path)

    @property
    def declared_skip(self) -> bool:
        """Whether metadata says the case must never execute."""
        return bool(self.annotations)
