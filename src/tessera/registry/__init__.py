"""Test discovery, tag filtering, and duration history."""

from tessera.registry.declarations import (
    GroupDeclaration,
    SuiteDeclaration,
    TestDeclaration,
    load_manifest,
)
from tessera.registry.history import HistoryStore
from tessera.registry.registry import TestRegistry
from tessera.registry.tags import compile_tag_expression

__all__ = [
    "GroupDeclaration",
    "HistoryStore",
    "SuiteDeclaration",
    "TestDeclaration",
    "TestRegistry",
    "compile_tag_expression",
    "load_manifest",
]
