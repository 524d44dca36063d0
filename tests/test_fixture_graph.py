"""Tests for tessera.fixtures.descriptor and tessera.fixtures.graph."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from typing import Any

import pytest

from tessera.errors import FixtureGraphError, ScopeViolationError
from tessera.fixtures.descriptor import FixtureDescriptor, FixtureScope
from tessera.fixtures.graph import FixtureGraph


def _fixture(
    name: str,
    scope: FixtureScope = FixtureScope.TEST,
    *deps: str,
) -> FixtureDescriptor:
    return FixtureDescriptor(name=name, scope=scope, setup=lambda _d: name, dependencies=deps)


# ── Descriptors ──────────────────────────────────────────────────────


class TestFixtureScope:
    def test_nesting(self) -> None:
        assert FixtureScope.SESSION.encloses(FixtureScope.SHARD)
        assert FixtureScope.SHARD.encloses(FixtureScope.TEST)
        assert FixtureScope.TEST.encloses(FixtureScope.TEST)
        assert not FixtureScope.TEST.encloses(FixtureScope.SESSION)


class TestFixtureDescriptor:
    def test_needs_setup_or_generator(self) -> None:
        with pytest.raises(ValueError, match="exactly one of setup or generator"):
            FixtureDescriptor(name="x", scope=FixtureScope.TEST)

    def test_generator_cannot_have_teardown(self) -> None:
        async def _gen(_deps: Mapping[str, Any]) -> AsyncIterator[int]:
            yield 1

        with pytest.raises(ValueError, match="tear down after their yield"):
            FixtureDescriptor(
                name="x",
                scope=FixtureScope.TEST,
                generator=_gen,
                teardown=lambda _v: None,
            )

    async def test_open_sync_setup_with_async_teardown(self) -> None:
        torn: list[str] = []

        async def _teardown(value: str) -> None:
            torn.append(value)

        descriptor = FixtureDescriptor(
            name="page",
            scope=FixtureScope.TEST,
            setup=lambda deps: f"page@{deps['browser']}",
            teardown=_teardown,
        )

        value, finalizer = await descriptor.open({"browser": "chromium"})
        assert value == "page@chromium"
        assert finalizer is not None
        await finalizer()
        assert torn == ["page@chromium"]

    async def test_open_without_teardown_has_no_finalizer(self) -> None:
        value, finalizer = await _fixture("plain").open({})

        assert value == "plain"
        assert finalizer is None

    async def test_open_generator_fixture(self) -> None:
        events: list[str] = []

        async def _server(_deps: Mapping[str, Any]) -> AsyncIterator[str]:
            events.append("start")
            yield "http://localhost:3000"
            events.append("stop")

        descriptor = FixtureDescriptor.from_generator("server", FixtureScope.SHARD, _server)

        value, finalizer = await descriptor.open({})
        assert value == "http://localhost:3000"
        assert finalizer is not None
        await finalizer()
        assert events == ["start", "stop"]

    async def test_generator_yielding_twice_is_an_error(self) -> None:
        async def _twice(_deps: Mapping[str, Any]) -> AsyncIterator[int]:
            yield 1
            yield 2

        descriptor = FixtureDescriptor.from_generator("twice", FixtureScope.TEST, _twice)
        _value, finalizer = await descriptor.open({})

        assert finalizer is not None
        with pytest.raises(RuntimeError, match="yielded more than once"):
            await finalizer()


# ── Graph ────────────────────────────────────────────────────────────


class TestFixtureGraph:
    def test_valid_graph(self) -> None:
        graph = FixtureGraph(
            [
                _fixture("session", FixtureScope.SESSION),
                _fixture("server", FixtureScope.SHARD, "session"),
                _fixture("page", FixtureScope.TEST, "server", "session"),
            ]
        )

        assert len(graph) == 3
        assert "page" in graph
        assert graph.names == ["session", "server", "page"]

    def test_closure_lists_dependencies_first(self) -> None:
        graph = FixtureGraph(
            [
                _fixture("session", FixtureScope.SESSION),
                _fixture("server", FixtureScope.SHARD, "session"),
                _fixture("page", FixtureScope.TEST, "server"),
            ]
        )

        assert graph.closure(["page"]) == ["session", "server", "page"]

    def test_duplicate_name(self) -> None:
        with pytest.raises(FixtureGraphError, match="declared more than once"):
            FixtureGraph([_fixture("a"), _fixture("a")])

    def test_unknown_dependency(self) -> None:
        with pytest.raises(FixtureGraphError, match="undeclared fixture 'ghost'"):
            FixtureGraph([_fixture("a", FixtureScope.TEST, "ghost")])

    def test_cycle(self) -> None:
        with pytest.raises(FixtureGraphError, match="cycle: a -> b -> a"):
            FixtureGraph(
                [
                    _fixture("a", FixtureScope.TEST, "b"),
                    _fixture("b", FixtureScope.TEST, "a"),
                ]
            )

    def test_wider_scope_cannot_depend_on_narrower(self) -> None:
        with pytest.raises(ScopeViolationError, match="session-scoped fixture 'auth'"):
            FixtureGraph(
                [
                    _fixture("page", FixtureScope.TEST),
                    _fixture("auth", FixtureScope.SESSION, "page"),
                ]
            )

    def test_require_unknown_fixture(self) -> None:
        graph = FixtureGraph([_fixture("page")])

        graph.require(["page"], owner="a::t")
        with pytest.raises(FixtureGraphError, match="a::t requires undeclared fixture"):
            graph.require(["page", "db"], owner="a::t")

    def test_get_unknown(self) -> None:
        with pytest.raises(FixtureGraphError, match="Unknown fixture 'x'"):
            FixtureGraph().get("x")
