"""Fixture declaration, validation, and lifecycle management."""

from tessera.fixtures.bootstrap import (
    CommandBootstrap,
    CommandFixtureSpec,
    SessionBootstrap,
    bootstrap_fixture,
    command_fixture,
)
from tessera.fixtures.descriptor import FixtureDescriptor, FixtureScope
from tessera.fixtures.graph import FixtureGraph
from tessera.fixtures.manager import FixtureInstance, FixtureLifecycleManager, ScopeHandle

__all__ = [
    "CommandBootstrap",
    "CommandFixtureSpec",
    "FixtureDescriptor",
    "FixtureGraph",
    "FixtureInstance",
    "FixtureLifecycleManager",
    "FixtureScope",
    "ScopeHandle",
    "SessionBootstrap",
    "bootstrap_fixture",
    "command_fixture",
]
