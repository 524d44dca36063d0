"""Static validation of the fixture dependency graph.

The graph is checked once, before any shard starts: every dependency must
be declared, the graph must be acyclic, and a fixture may only depend on
fixtures whose scope encloses its own (test -> shard -> session).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from tessera.errors import FixtureGraphError, ScopeViolationError
from tessera.fixtures.descriptor import FixtureDescriptor

logger = logging.getLogger(__name__)


class FixtureGraph:
    """Validated, acyclic fixture dependency graph."""

    def __init__(self, descriptors: Iterable[FixtureDescriptor] = ()) -> None:
        self._descriptors: dict[str, FixtureDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.name in self._descriptors:
                msg = f"Fixture '{descriptor.name}' is declared more than once"
                raise FixtureGraphError(msg)
            self._descriptors[descriptor.name] = descriptor
        self._validate()
        logger.debug("Fixture graph validated (%d fixtures)", len(self._descriptors))

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)

    @property
    def names(self) -> list[str]:
        """Declared fixture names, in declaration order."""
        return list(self._descriptors)

    def get(self, name: str) -> FixtureDescriptor:
        """Return the descriptor for *name*.

        Raises:
            FixtureGraphError: If *name* is not declared.
        """
        try:
            return self._descriptors[name]
        except KeyError:
            msg = f"Unknown fixture '{name}'"
            raise FixtureGraphError(msg) from None

    def require(self, names: Iterable[str], *, owner: str) -> None:
        """Check that every fixture *owner* requests is declared."""
        unknown = [n for n in names if n not in self._descriptors]
        if unknown:
            msg = f"{owner} requires undeclared fixture(s): {', '.join(unknown)}"
            raise FixtureGraphError(msg)

    def closure(self, names: Iterable[str]) -> list[str]:
        """Return *names* plus all transitive dependencies, dependencies first."""
        ordered: list[str] = []
        seen: set[str] = set()

        def _visit(name: str) -> None:
            if name in seen:
                return
            seen.add(name)
            for dep in self.get(name).dependencies:
                _visit(dep)
            ordered.append(name)

        for name in names:
            _visit(name)
        return ordered

    def _validate(self) -> None:
        for descriptor in self._descriptors.values():
            for dep in descriptor.dependencies:
                target = self._descriptors.get(dep)
                if target is None:
                    msg = f"Fixture '{descriptor.name}' depends on undeclared fixture '{dep}'"
                    raise FixtureGraphError(msg)
                if not target.scope.encloses(descriptor.scope):
                    msg = (
                        f"{descriptor.scope.value}-scoped fixture '{descriptor.name}' cannot "
                        f"depend on {target.scope.value}-scoped fixture '{dep}'"
                    )
                    raise ScopeViolationError(msg)

        visiting: list[str] = []
        done: set[str] = set()

        def _visit(name: str) -> None:
            if name in done:
                return
            if name in visiting:
                cycle = [*visiting[visiting.index(name) :], name]
                msg = f"Fixture dependencies form a cycle: {' -> '.join(cycle)}"
                raise FixtureGraphError(msg)
            visiting.append(name)
            for dep in self._descriptors[name].dependencies:
                _visit(dep)
            visiting.pop()
            done.add(name)

        for name in self._descriptors:
            _visit(name)
