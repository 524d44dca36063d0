"""Fixture descriptors and scopes."""

from __future__ import annotations

import inspect
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, cast

Finalizer = Callable[[], Awaitable[None]]
SetupFn = Callable[[Mapping[str, Any]], Any]
"""Receives resolved dependency values by name; returns the resource (sync or async)."""

TeardownFn = Callable[[Any], Any]
"""Receives the resource; may be sync or async."""

GeneratorFn = Callable[[Mapping[str, Any]], AsyncIterator[Any]]
"""Async generator yielding the resource once; code after ``yield`` is teardown."""


class FixtureScope(Enum):
    """Lifetime of a fixture instance.  Scopes nest: session ⊇ shard ⊇ test."""

    SESSION = "session"
    SHARD = "shard"
    TEST = "test"

    @property
    def rank(self) -> int:
        """Nesting depth (0 = outermost)."""
        return _RANKS[self]

    def encloses(self, other: FixtureScope) -> bool:
        """Whether instances of this scope outlive instances of *other*."""
        return self.rank <= other.rank


_RANKS = {FixtureScope.SESSION: 0, FixtureScope.SHARD: 1, FixtureScope.TEST: 2}


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass(frozen=True)
class FixtureDescriptor:
    """Declaration of a managed resource.

    Provide either ``setup`` (plus optional ``teardown``) or ``generator``.
    """

    name: str
    scope: FixtureScope
    setup: SetupFn | None = None
    teardown: TeardownFn | None = None
    dependencies: tuple[str, ...] = ()
    generator: GeneratorFn | None = None

    def __post_init__(self) -> None:
        if (self.setup is None) == (self.generator is None):
            msg = f"fixture '{self.name}' needs exactly one of setup or generator"
            raise ValueError(msg)
        if self.generator is not None and self.teardown is not None:
            msg = f"fixture '{self.name}': generator fixtures tear down after their yield"
            raise ValueError(msg)

    @classmethod
    def from_generator(
        cls,
        name: str,
        scope: FixtureScope,
        generator: GeneratorFn,
        dependencies: tuple[str, ...] = (),
    ) -> FixtureDescriptor:
        """Build a yield-style fixture from an async generator function."""
        return cls(name=name, scope=scope, generator=generator, dependencies=dependencies)

    async def open(self, dependencies: Mapping[str, Any]) -> tuple[Any, Finalizer | None]:
        """Run setup and return the resource with its finalizer."""
        if self.generator is not None:
            gen = self.generator(dependencies)
            value = await anext(gen)

            async def _finish() -> None:
                try:
                    await anext(gen)
                except StopAsyncIteration:
                    return
                await gen.aclose()
                msg = f"fixture '{self.name}' yielded more than once"
                raise RuntimeError(msg)

            return value, _finish

        value = await _maybe_await(cast("SetupFn", self.setup)(dependencies))
        teardown = self.teardown
        if teardown is None:
            return value, None

        async def _teardown() -> None:
            await _maybe_await(teardown(value))

        return value, _teardown
