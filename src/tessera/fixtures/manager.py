"""Fixture Lifecycle Manager — scoped construction, caching, and teardown.

Every instance belongs to exactly one :class:`ScopeHandle` (one per
session, per shard, or per test attempt) and is torn down exactly once
when that handle is released, in reverse acquisition order.

Construction is serialized per scope and fixture: the first requester
constructs, later requesters await the same in-flight construction.  Use of
a constructed instance is not synchronized.

A setup failure in a shard or session scope is cached for the remaining
lifetime of the scope, so every dependent fails the same way instead of
retrying construction.  Teardown failures are collected and mark the owning
scope ``degraded``; a degraded test scope also degrades its parent.
:meth:`FixtureLifecycleManager.recycle` retires a degraded scope's cached
instances so fresh ones are built on the next request.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from tessera.errors import FixtureSetupError, FixtureTeardownError, ScopeViolationError
from tessera.fixtures.descriptor import Finalizer, FixtureDescriptor, FixtureScope
from tessera.fixtures.graph import FixtureGraph

logger = logging.getLogger(__name__)

_ALLOWED_PARENTS: dict[FixtureScope, set[FixtureScope | None]] = {
    FixtureScope.SESSION: {None},
    FixtureScope.SHARD: {FixtureScope.SESSION, None},
    FixtureScope.TEST: {FixtureScope.SHARD, FixtureScope.SESSION},
}


@dataclass(eq=False)
class FixtureInstance:
    """A constructed fixture bound to the scope that owns it."""

    name: str
    scope: FixtureScope
    value: Any
    owner: ScopeHandle
    finalizer: Finalizer | None = None
    leases: int = 0
    """Number of other scopes currently using this instance."""

    retired: bool = False
    released: bool = False


@dataclass(eq=False)
class ScopeHandle:
    """One live scope: a session, a shard's worker pool, or a test attempt."""

    scope: FixtureScope
    name: str
    parent: ScopeHandle | None = None
    degraded: bool = False
    closed: bool = False
    teardown_errors: list[FixtureTeardownError] = field(default_factory=list)
    _instances: list[FixtureInstance] = field(default_factory=list)
    _pending: dict[str, asyncio.Future[FixtureInstance]] = field(default_factory=dict)
    _leases: list[FixtureInstance] = field(default_factory=list)
    _generation: int = 0

    def ancestor(self, scope: FixtureScope) -> ScopeHandle | None:
        """Return this handle or the nearest enclosing handle of *scope*."""
        handle: ScopeHandle | None = self
        while handle is not None:
            if handle.scope is scope:
                return handle
            handle = handle.parent
        return None

    @property
    def instances(self) -> list[FixtureInstance]:
        """Instances owned by this scope, in acquisition order."""
        return list(self._instances)


class FixtureLifecycleManager:
    """Creates, caches, and tears down fixtures per scope."""

    def __init__(self, graph: FixtureGraph) -> None:
        self.graph = graph

    # ── Scopes ─────────────────────────────────────────────────────

    def open_scope(
        self,
        scope: FixtureScope,
        name: str,
        parent: ScopeHandle | None = None,
    ) -> ScopeHandle:
        """Open a new scope nested in *parent*.

        Raises:
            ScopeViolationError: If the nesting session ⊇ shard ⊇ test is broken.
        """
        parent_scope = parent.scope if parent is not None else None
        if parent_scope not in _ALLOWED_PARENTS[scope]:
            msg = (
                f"{scope.value} scope '{name}' cannot be nested in "
                f"{parent_scope.value if parent_scope else 'no'} scope"
            )
            raise ScopeViolationError(msg)
        if parent is not None and parent.closed:
            msg = f"Parent scope '{parent.name}' is already released"
            raise ScopeViolationError(msg)
        return ScopeHandle(scope=scope, name=name, parent=parent)

    @asynccontextmanager
    async def scoped(
        self,
        scope: FixtureScope,
        name: str,
        parent: ScopeHandle | None = None,
    ) -> AsyncIterator[ScopeHandle]:
        """Open a scope and release it on every exit path, cancellation included."""
        handle = self.open_scope(scope, name, parent)
        try:
            yield handle
        finally:
            release = asyncio.ensure_future(self.release(handle))
            try:
                await asyncio.shield(release)
            except asyncio.CancelledError:
                await release
                raise

    # ── Acquisition ────────────────────────────────────────────────

    async def acquire(
        self,
        fixture: FixtureDescriptor | str,
        handle: ScopeHandle,
    ) -> FixtureInstance:
        """Return the instance of *fixture* visible from *handle*.

        The instance lives in the enclosing scope matching the fixture's
        scope and is constructed on first request.

        Raises:
            FixtureSetupError: If the fixture or one of its dependencies
                failed to set up.
            ScopeViolationError: If no enclosing scope matches the fixture's
                scope.
        """
        descriptor = fixture if isinstance(fixture, FixtureDescriptor) else self.graph.get(fixture)
        if handle.closed:
            msg = f"Cannot acquire '{descriptor.name}' from released scope '{handle.name}'"
            raise ScopeViolationError(msg)

        owner = handle.ancestor(descriptor.scope)
        if owner is None:
            msg = (
                f"{descriptor.scope.value}-scoped fixture '{descriptor.name}' is not "
                f"reachable from {handle.scope.value} scope '{handle.name}'"
            )
            raise ScopeViolationError(msg)

        instance = await self._instance_in(owner, descriptor)
        if instance.owner is not handle:
            instance.leases += 1
            handle._leases.append(instance)
        return instance

    async def acquire_all(self, names: Iterable[str], handle: ScopeHandle) -> dict[str, Any]:
        """Acquire each fixture in *names* and return their values by name."""
        values: dict[str, Any] = {}
        for name in names:
            values[name] = (await self.acquire(name, handle)).value
        return values

    async def _instance_in(
        self, owner: ScopeHandle, descriptor: FixtureDescriptor
    ) -> FixtureInstance:
        pending = owner._pending.get(descriptor.name)
        if pending is not None:
            return await pending

        generation = owner._generation
        pending = asyncio.get_running_loop().create_future()
        owner._pending[descriptor.name] = pending
        try:
            dependencies: dict[str, Any] = {}
            for dep in descriptor.dependencies:
                dependencies[dep] = (await self.acquire(dep, owner)).value
            logger.debug("Setting up fixture '%s' in scope '%s'", descriptor.name, owner.name)
            value, finalizer = await descriptor.open(dependencies)
        except FixtureSetupError as exc:
            pending.set_exception(exc)
        except Exception as exc:
            logger.warning(
                "Fixture '%s' setup failed in scope '%s': %s", descriptor.name, owner.name, exc
            )
            pending.set_exception(
                FixtureSetupError(descriptor.name, f"{type(exc).__name__}: {exc}")
            )
        except BaseException:
            # Interrupted before completion: let later requests try again.
            if owner._pending.get(descriptor.name) is pending:
                del owner._pending[descriptor.name]
            pending.set_exception(FixtureSetupError(descriptor.name, "setup was interrupted"))
            pending.exception()
            raise
        else:
            instance = FixtureInstance(
                name=descriptor.name,
                scope=descriptor.scope,
                value=value,
                owner=owner,
                finalizer=finalizer,
            )
            # Built across a recycle: serve this request, then tear down.
            instance.retired = owner._generation != generation
            owner._instances.append(instance)
            pending.set_result(instance)
        return await pending

    # ── Release ────────────────────────────────────────────────────

    async def release(self, handle: ScopeHandle) -> list[FixtureTeardownError]:
        """Tear down every instance created under *handle*, newest first.

        Idempotent: a released handle releases nothing the second time.
        Returns the teardown errors raised during this release.
        """
        if handle.closed:
            return []
        handle.closed = True

        errors: list[FixtureTeardownError] = []
        owned, handle._instances = handle._instances, []
        for instance in reversed(owned):
            error = await self._finalize(instance)
            if error is not None:
                errors.append(error)

        leases, handle._leases = handle._leases, []
        for instance in reversed(leases):
            errors.extend(await self._drop_lease(instance))

        handle._pending.clear()
        if errors:
            logger.warning(
                "Scope '%s' released with %d teardown error(s)", handle.name, len(errors)
            )
        return errors

    async def recycle(self, handle: ScopeHandle) -> list[FixtureTeardownError]:
        """Retire the cached instances of *handle* so fresh ones get built.

        Instances still in use by another scope are torn down when their
        last user releases, or when *handle* itself is released.
        """
        logger.info("Recycling fixtures of degraded scope '%s'", handle.name)
        handle._generation += 1
        handle._pending.clear()
        handle.degraded = False

        idle: list[FixtureInstance] = []
        busy: list[FixtureInstance] = []
        for instance in handle._instances:
            instance.retired = True
            (busy if instance.leases else idle).append(instance)
        handle._instances = busy

        errors: list[FixtureTeardownError] = []
        for instance in reversed(idle):
            error = await self._finalize(instance)
            if error is not None:
                errors.append(error)
        return errors

    async def _drop_lease(self, instance: FixtureInstance) -> list[FixtureTeardownError]:
        instance.leases -= 1
        if not instance.retired or instance.leases > 0 or instance.released:
            return []
        owner = instance.owner
        if instance in owner._instances:
            owner._instances.remove(instance)
        error = await self._finalize(instance)
        return [error] if error is not None else []

    async def _finalize(self, instance: FixtureInstance) -> FixtureTeardownError | None:
        if instance.released:
            return None
        instance.released = True
        if instance.finalizer is None:
            return None

        owner = instance.owner
        logger.debug("Tearing down fixture '%s' in scope '%s'", instance.name, owner.name)
        try:
            await instance.finalizer()
        except Exception as exc:
            error = FixtureTeardownError(instance.name, owner.name, f"{type(exc).__name__}: {exc}")
            logger.warning("%s", error)
            owner.teardown_errors.append(error)
            owner.degraded = True
            if owner.scope is FixtureScope.TEST and owner.parent is not None:
                owner.parent.degraded = True
            return error
        return None
