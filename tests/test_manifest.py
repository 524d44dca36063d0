"""Tests for tessera.registry.declarations (YAML manifest loading)."""

from __future__ import annotations

from pathlib import Path

import pytest

from tessera.errors import DiscoveryError
from tessera.registry.declarations import (
    GroupDeclaration,
    SuiteDeclaration,
    TestDeclaration,
    load_manifest,
    parse_suites,
)

MANIFEST = """\
suites:
  - file: tests/checkout.spec.ts
    tags: [checkout]
    fixtures: [page]
    tests:
      - title: adds item to cart
      - group: Payment
        tags: [smoke]
        annotations: [fixme]
        tests:
          - title: pays by card
            must_follow: adds item to cart
            timeout_ms: 60000
            fixtures: [card]
  - file: tests/login.spec.ts
    tests:
      - title: logs in
        tags: "@auth"
"""


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / "tessera.suite.yml"
    path.write_text(content, encoding="utf-8")
    return path


def test_load_manifest_builds_declaration_tree(tmp_path: Path) -> None:
    suites = load_manifest(_write(tmp_path, MANIFEST))

    assert [s.file for s in suites] == ["tests/checkout.spec.ts", "tests/login.spec.ts"]
    checkout = suites[0]
    assert checkout.tags == ["checkout"]
    assert checkout.fixtures == ["page"]

    first, group = checkout.children
    assert isinstance(first, TestDeclaration)
    assert first.title == "adds item to cart"
    assert isinstance(group, GroupDeclaration)
    assert group.title == "Payment"
    assert group.annotations == ["fixme"]

    nested = group.children[0]
    assert isinstance(nested, TestDeclaration)
    assert nested.must_follow == "adds item to cart"
    assert nested.timeout_ms == 60000
    assert nested.fixtures == ["card"]


def test_single_string_is_accepted_as_list(tmp_path: Path) -> None:
    suites = load_manifest(_write(tmp_path, MANIFEST))

    login = suites[1].children[0]
    assert isinstance(login, TestDeclaration)
    assert login.tags == ["@auth"]


def test_empty_manifest(tmp_path: Path) -> None:
    assert load_manifest(_write(tmp_path, "")) == []


def test_missing_manifest(tmp_path: Path) -> None:
    with pytest.raises(DiscoveryError, match="not found"):
        load_manifest(tmp_path / "missing.yml")


def test_invalid_yaml(tmp_path: Path) -> None:
    with pytest.raises(DiscoveryError, match="Invalid YAML"):
        load_manifest(_write(tmp_path, "suites: [unclosed"))


def test_top_level_must_be_mapping(tmp_path: Path) -> None:
    with pytest.raises(DiscoveryError, match="top level"):
        load_manifest(_write(tmp_path, "- a\n- b\n"))


class TestParseSuites:
    def test_suites_must_be_list(self) -> None:
        with pytest.raises(DiscoveryError, match="'suites' must be a list"):
            parse_suites({"file": "a"})

    def test_suite_needs_file(self) -> None:
        with pytest.raises(DiscoveryError, match=r"suites\[0\]: each suite needs a 'file'"):
            parse_suites([{"tests": []}])

    def test_entry_needs_title_or_group(self) -> None:
        with pytest.raises(DiscoveryError, match="either 'title' or 'group'"):
            parse_suites([{"file": "a", "tests": [{"tags": ["x"]}]}])

    def test_timeout_must_be_integer(self) -> None:
        with pytest.raises(DiscoveryError, match="timeout_ms must be an integer"):
            parse_suites([{"file": "a", "tests": [{"title": "t", "timeout_ms": "soon"}]}])

    @pytest.mark.parametrize("timeout_ms", [0, -5])
    def test_timeout_must_be_positive(self, timeout_ms: int) -> None:
        with pytest.raises(DiscoveryError, match=r"tests\[0\]\.timeout_ms must be positive"):
            parse_suites([{"file": "a", "tests": [{"title": "t", "timeout_ms": timeout_ms}]}])

    def test_tags_must_be_list_of_strings(self) -> None:
        with pytest.raises(DiscoveryError, match="must be a list of strings"):
            parse_suites([{"file": "a", "tags": {"x": 1}}])

    def test_suite_without_tests(self) -> None:
        assert parse_suites([{"file": "a"}]) == [SuiteDeclaration(file="a")]
