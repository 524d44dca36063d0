"""Test declaration tree and YAML manifest loading.

A manifest lists suites (one per spec file).  Each suite holds an ordered
list of entries; an entry with a ``group`` key is a nested group, an entry
with a ``title`` key is a test::

    suites:
      - file: tests/checkout.spec.ts
        tags: [checkout]
        fixtures: [page]
        tests:
          - title: adds item to cart
          - group: Payment
            tags: [smoke]
            tests:
              - title: pays by card
                must_follow: adds item to cart
                timeout_ms: 60000
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from tessera.errors import DiscoveryError

logger = logging.getLogger(__name__)


@dataclass
class TestDeclaration:
    """A single declared test."""

    __test__ = False

    title: str
    tags: list[str] = field(default_factory=list)
    fixtures: list[str] = field(default_factory=list)
    annotations: list[str] = field(default_factory=list)
    must_follow: str | None = None
    """Id of another case, or a title path (``"Group > title"``) within the same suite."""

    timeout_ms: int | None = None


@dataclass
class GroupDeclaration:
    """A ``describe``-style group of tests and nested groups."""

    title: str
    tags: list[str] = field(default_factory=list)
    fixtures: list[str] = field(default_factory=list)
    annotations: list[str] = field(default_factory=list)
    children: list[TestDeclaration | GroupDeclaration] = field(default_factory=list)


@dataclass
class SuiteDeclaration:
    """All declarations of one spec file."""

    file: str
    tags: list[str] = field(default_factory=list)
    fixtures: list[str] = field(default_factory=list)
    children: list[TestDeclaration | GroupDeclaration] = field(default_factory=list)


def load_manifest(path: str | Path) -> list[SuiteDeclaration]:
    """Load suite declarations from a YAML manifest.

    Raises:
        DiscoveryError: If the file is missing or malformed.
    """
    manifest_path = Path(path)
    if not manifest_path.is_file():
        msg = f"Test manifest not found: {manifest_path}"
        raise DiscoveryError(msg)

    try:
        raw = yaml.safe_load(manifest_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        msg = f"Invalid YAML in {manifest_path}: {exc}"
        raise DiscoveryError(msg) from exc

    if raw is None:
        return []
    if not isinstance(raw, dict):
        msg = f"{manifest_path}: top level must be a mapping with a 'suites' list"
        raise DiscoveryError(msg)

    suites = parse_suites(raw.get("suites", []))
    logger.debug("Loaded %d suite(s) from %s", len(suites), manifest_path)
    return suites


def parse_suites(raw: Any) -> list[SuiteDeclaration]:
    """Parse the ``suites`` list of a manifest."""
    if not isinstance(raw, list):
        msg = "'suites' must be a list"
        raise DiscoveryError(msg)

    suites: list[SuiteDeclaration] = []
    for idx, entry in enumerate(raw):
        where = f"suites[{idx}]"
        if not isinstance(entry, dict) or not entry.get("file"):
            msg = f"{where}: each suite needs a 'file'"
            raise DiscoveryError(msg)
        suites.append(
            SuiteDeclaration(
                file=str(entry["file"]),
                tags=_str_list(entry.get("tags"), f"{where}.tags"),
                fixtures=_str_list(entry.get("fixtures"), f"{where}.fixtures"),
                children=_parse_children(entry.get("tests", []), f"{where}.tests"),
            )
        )
    return suites


def _parse_children(raw: Any, where: str) -> list[TestDeclaration | GroupDeclaration]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        msg = f"{where}: must be a list"
        raise DiscoveryError(msg)

    children: list[TestDeclaration | GroupDeclaration] = []
    for idx, entry in enumerate(raw):
        item_where = f"{where}[{idx}]"
        if not isinstance(entry, dict):
            msg = f"{item_where}: must be a mapping"
            raise DiscoveryError(msg)
        if "group" in entry:
            children.append(
                GroupDeclaration(
                    title=str(entry["group"]),
                    tags=_str_list(entry.get("tags"), f"{item_where}.tags"),
                    fixtures=_str_list(entry.get("fixtures"), f"{item_where}.fixtures"),
                    annotations=_str_list(entry.get("annotations"), f"{item_where}.annotations"),
                    children=_parse_children(entry.get("tests", []), f"{item_where}.tests"),
                )
            )
        elif "title" in entry:
            children.append(_parse_test(entry, item_where))
        else:
            msg = f"{item_where}: entry needs either 'title' or 'group'"
            raise DiscoveryError(msg)
    return children


def _parse_test(entry: dict[str, Any], where: str) -> TestDeclaration:
    timeout_raw = entry.get("timeout_ms")
    try:
        timeout_ms = int(timeout_raw) if timeout_raw is not None else None
    except (TypeError, ValueError) as exc:
        msg = f"{where}.timeout_ms must be an integer (got: {timeout_raw!r})"
        raise DiscoveryError(msg) from exc
    if timeout_ms is not None and timeout_ms <= 0:
        msg = f"{where}.timeout_ms must be positive (got: {timeout_ms})"
        raise DiscoveryError(msg)

    must_follow = entry.get("must_follow")
    return TestDeclaration(
        title=str(entry["title"]),
        tags=_str_list(entry.get("tags"), f"{where}.tags"),
        fixtures=_str_list(entry.get("fixtures"), f"{where}.fixtures"),
        annotations=_str_list(entry.get("annotations"), f"{where}.annotations"),
        must_follow=str(must_follow) if must_follow else None,
        timeout_ms=timeout_ms,
    )


def _str_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        msg = f"{where}: must be a list of strings"
        raise DiscoveryError(msg)
    return [str(v) for v in value]
