"""Test Registry — deterministic discovery and tag filtering of test cases."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from tessera.errors import DiscoveryError
from tessera.models.case import (
    ID_SEPARATOR,
    OrderingConstraint,
    SkipAnnotation,
    TestCase,
    make_case_id,
)
from tessera.registry.declarations import GroupDeclaration, SuiteDeclaration, TestDeclaration
from tessera.registry.tags import compile_tag_expression, normalize_tag

logger = logging.getLogger(__name__)

_ANNOTATIONS = {a.value: a for a in SkipAnnotation}


@dataclass
class _Inherited:
    """Metadata accumulated from enclosing groups."""

    groups: tuple[str, ...] = ()
    tags: frozenset[str] = frozenset()
    fixtures: tuple[str, ...] = ()
    annotations: frozenset[SkipAnnotation] = field(default_factory=frozenset)


def _merge_fixtures(inherited: tuple[str, ...], declared: list[str]) -> tuple[str, ...]:
    merged = list(inherited)
    for name in declared:
        if name not in merged:
            merged.append(name)
    return tuple(merged)


def _parse_annotations(values: list[str], where: str) -> frozenset[SkipAnnotation]:
    parsed: set[SkipAnnotation] = set()
    for value in values:
        annotation = _ANNOTATIONS.get(value.strip().lower())
        if annotation is None:
            logger.warning("Ignoring unknown annotation %r on %s", value, where)
            continue
        parsed.add(annotation)
    return frozenset(parsed)


class TestRegistry:
    """Discovers and indexes test cases from a declaration tree.

    Discovery order is declaration order: suites in the order given, and
    within a suite, tests and groups in the order declared.  The same tree
    always yields the same ids in the same order.
    """

    __test__ = False

    def __init__(
        self,
        suites: Sequence[SuiteDeclaration],
        *,
        history: Mapping[str, float] | None = None,
    ) -> None:
        self._suites = list(suites)
        self._history = dict(history or {})
        self._cases: list[TestCase] | None = None

    def discover(self) -> list[TestCase]:
        """Return every declared case in declaration order.

        Raises:
            DiscoveryError: If two cases resolve to the same id, or a
                ``must_follow`` reference cannot be resolved.
        """
        if self._cases is None:
            self._cases = self._discover()
            logger.info(
                "Discovered %d test case(s) in %d suite(s)",
                len(self._cases),
                len(self._suites),
            )
        return list(self._cases)

    def filter(self, tag_expression: str) -> list[TestCase]:
        """Return the discovered cases whose tags match *tag_expression*."""
        predicate = compile_tag_expression(tag_expression)
        return [case for case in self.discover() if predicate(case.tags)]

    @property
    def ids(self) -> list[str]:
        """Ids of every discovered case, in discovery order."""
        return [case.id for case in self.discover()]

    def _discover(self) -> list[TestCase]:
        collected: list[tuple[str, TestDeclaration, _Inherited]] = []
        for suite in self._suites:
            root = _Inherited(
                tags=frozenset(normalize_tag(t) for t in suite.tags),
                fixtures=_merge_fixtures((), suite.fixtures),
            )
            self._walk(suite.file, suite.children, root, collected)

        seen: dict[str, int] = {}
        for idx, (file, decl, inherited) in enumerate(collected):
            case_id = make_case_id(file, (*inherited.groups, decl.title))
            if case_id in seen:
                msg = (
                    f"Duplicate test id {case_id!r} "
                    f"(declarations #{seen[case_id]} and #{idx} share a title path)"
                )
                raise DiscoveryError(msg)
            seen[case_id] = idx

        cases: list[TestCase] = []
        for idx, (file, decl, inherited) in enumerate(collected):
            case_id = make_case_id(file, (*inherited.groups, decl.title))
            ordering = OrderingConstraint()
            if decl.must_follow:
                ordering = OrderingConstraint(
                    predecessor=self._resolve_reference(decl.must_follow, file, case_id, seen)
                )
            cases.append(
                TestCase(
                    id=case_id,
                    title=decl.title,
                    file=file,
                    groups=inherited.groups,
                    tags=inherited.tags | {normalize_tag(t) for t in decl.tags},
                    fixtures=_merge_fixtures(inherited.fixtures, decl.fixtures),
                    ordering=ordering,
                    estimated_duration_ms=self._history.get(case_id),
                    annotations=inherited.annotations
                    | _parse_annotations(decl.annotations, case_id),
                    timeout_ms=decl.timeout_ms,
                    declaration_index=idx,
                )
            )
        return cases

    def _walk(
        self,
        file: str,
        children: list[TestDeclaration | GroupDeclaration],
        inherited: _Inherited,
        collected: list[tuple[str, TestDeclaration, _Inherited]],
    ) -> None:
        for child in children:
            if isinstance(child, TestDeclaration):
                collected.append((file, child, inherited))
                continue
            nested = _Inherited(
                groups=(*inherited.groups, child.title),
                tags=inherited.tags | {normalize_tag(t) for t in child.tags},
                fixtures=_merge_fixtures(inherited.fixtures, child.fixtures),
                annotations=inherited.annotations
                | _parse_annotations(child.annotations, f"{file} group {child.title!r}"),
            )
            self._walk(file, child.children, nested, collected)

    @staticmethod
    def _resolve_reference(
        reference: str, file: str, case_id: str, known: Mapping[str, int]
    ) -> str:
        """Resolve a ``must_follow`` reference to a case id.

        Accepts a full id, or a title path relative to the referencing suite.
        """
        if reference in known:
            return reference
        if ID_SEPARATOR not in reference:
            local = f"{file}{ID_SEPARATOR}{reference}"
            if local in known:
                return local
        msg = f"{case_id}: must_follow reference {reference!r} does not match any test"
        raise DiscoveryError(msg)
