"""Tests for the tessera CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner
from defusedxml import ElementTree

from tessera.cli import _mask_sensitive_values, cli

MANIFEST = {
    "suites": [
        {
            "file": "cart.spec.ts",
            "tests": [
                {"title": "adds", "tags": ["smoke"]},
                {"title": "pays"},
                {"title": "fails"},
            ],
        }
    ]
}

PASS_COMMAND = ["sh", "-c", "exit 0"]
FAIL_ONE_COMMAND = ["sh", "-c", "test '{title}' != 'fails'"]


@pytest.fixture(autouse=True)
def _local_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[MagicMock]:
    for key in ("TESSERA_RUN_ID", "TESSERA_SENTRY_ENABLED", "TESSERA_RETRIES"):
        monkeypatch.delenv(key, raising=False)
    with patch("tessera.cli.detect_ci_context") as mock_ci:
        mock_ci.return_value = MagicMock(is_ci=False, commit_sha="abc123")
        yield mock_ci


def _project(root: Path, command: list[str] | None = None, **extra: Any) -> Path:
    """Write .tessera.yml and the suite manifest under *root*."""
    config: dict[str, Any] = {"executor": {"command": command or PASS_COMMAND}}
    config.update(extra)
    (root / ".tessera.yml").write_text(yaml.dump(config), encoding="utf-8")
    (root / "tessera.suite.yml").write_text(yaml.dump(MANIFEST), encoding="utf-8")
    return root


def _invoke(*args: str) -> Any:
    return CliRunner().invoke(cli, list(args))


def test_version() -> None:
    result = _invoke("--version")
    assert result.exit_code == 0
    assert "0.3.0" in result.output


def test_help() -> None:
    result = _invoke("--help")
    assert result.exit_code == 0
    for command in ("run", "plan", "list", "combine", "config"):
        assert command in result.output


# ── config ────────────────────────────────────────────────────────────


class TestConfigCommands:
    def test_show_masks_dsn(self, tmp_path: Path) -> None:
        _project(tmp_path, sentry={"dsn": "https://abcdef123456@sentry.io/42"})

        result = _invoke("config", "show", "--path", str(tmp_path), "--json-output")

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["sentry"]["dsn"] == "http...o/42"
        assert data["executor"]["command"] == PASS_COMMAND

    def test_show_unmasked_yaml(self, tmp_path: Path) -> None:
        _project(tmp_path, sentry={"dsn": "https://abcdef123456@sentry.io/42"})

        result = _invoke("config", "show", "--path", str(tmp_path), "--no-mask")

        assert result.exit_code == 0, result.output
        dsn = yaml.safe_load(result.stdout)["sentry"]["dsn"]
        assert dsn == "https://abcdef123456@sentry.io/42"

    def test_validate_ok(self, tmp_path: Path) -> None:
        _project(tmp_path)

        result = _invoke("config", "validate", "--path", str(tmp_path))

        assert result.exit_code == 0, result.output
        assert "Configuration is valid!" in result.output

    def test_validate_reports_errors(self, tmp_path: Path) -> None:
        (tmp_path / ".tessera.yml").write_text(
            yaml.dump({"run": {"shard_count": 0}}), encoding="utf-8"
        )

        result = _invoke("config", "validate", "--path", str(tmp_path))

        assert result.exit_code == 1
        assert "executor.command is required" in result.output
        assert "run.shard_count must be >= 1" in result.output

    def test_unparseable_value_aborts(self, tmp_path: Path) -> None:
        _project(tmp_path, run={"shard_count": "many"})

        result = _invoke("config", "show", "--path", str(tmp_path))

        assert result.exit_code == 1
        assert "Failed to load configuration" in result.output


class TestMaskSensitiveValues:
    def test_short_values_fully_masked(self) -> None:
        masked = _mask_sensitive_values({"session": {"token": "abc"}, "name": "x"})
        assert masked == {"session": {"token": "***"}, "name": "x"}

    def test_original_is_untouched(self) -> None:
        original = {"sentry": {"dsn": "https://key@sentry.io/1"}}
        _mask_sensitive_values(original)
        assert original["sentry"]["dsn"] == "https://key@sentry.io/1"


# ── list / plan ───────────────────────────────────────────────────────


class TestListAndPlan:
    def test_list_json(self, tmp_path: Path) -> None:
        _project(tmp_path)

        result = _invoke("list", "--path", str(tmp_path), "--json-output")

        assert result.exit_code == 0, result.output
        ids = [entry["id"] for entry in json.loads(result.stdout)]
        assert ids == ["cart.spec.ts::adds", "cart.spec.ts::pays", "cart.spec.ts::fails"]

    def test_list_grep(self, tmp_path: Path) -> None:
        _project(tmp_path)

        result = _invoke("list", "--path", str(tmp_path), "--grep", "@smoke", "--json-output")

        assert result.exit_code == 0, result.output
        assert [entry["id"] for entry in json.loads(result.stdout)] == ["cart.spec.ts::adds"]

    def test_list_table(self, tmp_path: Path) -> None:
        _project(tmp_path)

        result = _invoke("list", "--path", str(tmp_path))

        assert result.exit_code == 0, result.output
        assert "3 test case(s)" in result.output

    def test_list_missing_manifest(self, tmp_path: Path) -> None:
        (tmp_path / ".tessera.yml").write_text(
            yaml.dump({"executor": {"command": PASS_COMMAND}}), encoding="utf-8"
        )

        result = _invoke("list", "--path", str(tmp_path))

        assert result.exit_code == 1
        assert "Test manifest not found" in result.output

    def test_plan_json(self, tmp_path: Path) -> None:
        _project(tmp_path)

        result = _invoke("plan", "--path", str(tmp_path), "--shard-count", "2", "--json-output")

        assert result.exit_code == 0, result.output
        shards = json.loads(result.stdout)
        assert [s["index"] for s in shards] == [0, 1]
        planned = sorted(case for s in shards for unit in s["units"] for case in unit)
        assert planned == ["cart.spec.ts::adds", "cart.spec.ts::fails", "cart.spec.ts::pays"]


# ── run / combine ─────────────────────────────────────────────────────


class TestRun:
    def test_passing_run_writes_reports(self, tmp_path: Path) -> None:
        _project(tmp_path)

        result = _invoke(
            "run", "--path", str(tmp_path), "--workers", "2", "--junit", "out/junit.xml"
        )

        assert result.exit_code == 0, result.output
        assert "No failures" in result.output
        report = json.loads((tmp_path / ".tessera" / "report.json").read_text(encoding="utf-8"))
        assert report["summary"]["passed"] == 3
        root = ElementTree.parse(tmp_path / "out" / "junit.xml").getroot()
        assert root.get("tests") == "3"
        assert (tmp_path / ".tessera" / "history.json").is_file()

    def test_failing_run_exits_nonzero(self, tmp_path: Path) -> None:
        _project(tmp_path, FAIL_ONE_COMMAND)

        result = _invoke("run", "--path", str(tmp_path), "--retries", "1")

        assert result.exit_code == 1
        report = json.loads((tmp_path / ".tessera" / "report.json").read_text(encoding="utf-8"))
        assert report["summary"]["failed"] == 1
        failed = next(r for r in report["results"] if r["id"] == "cart.spec.ts::fails")
        assert len(failed["attempts"]) == 2

    def test_ci_mode_prints_json(self, tmp_path: Path) -> None:
        _project(tmp_path)

        result = _invoke("--ci", "run", "--path", str(tmp_path), "--run-id", "build-7")

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["runId"] == "build-7"
        assert data["summary"]["total"] == 3

    def test_shard_index_requires_count(self, tmp_path: Path) -> None:
        _project(tmp_path)

        result = _invoke("run", "--path", str(tmp_path), "--shard-index", "0")

        assert result.exit_code == 2
        assert "--shard-index requires --shard-count" in result.output

    def test_shard_index_out_of_range(self, tmp_path: Path) -> None:
        _project(tmp_path)

        result = _invoke(
            "run", "--path", str(tmp_path), "--shard-index", "2", "--shard-count", "2"
        )

        assert result.exit_code == 2

    def test_missing_executor_aborts(self, tmp_path: Path) -> None:
        (tmp_path / "tessera.suite.yml").write_text(yaml.dump(MANIFEST), encoding="utf-8")

        result = _invoke("run", "--path", str(tmp_path))

        assert result.exit_code == 1
        assert "executor.command is not configured" in result.output


class TestShardedRunAndCombine:
    def test_shards_then_combine(self, tmp_path: Path) -> None:
        _project(tmp_path)

        for index in range(2):
            result = _invoke(
                "run",
                "--path",
                str(tmp_path),
                "--shard-index",
                str(index),
                "--shard-count",
                "2",
            )
            assert result.exit_code == 0, result.output
            assert (tmp_path / ".tessera" / "shards" / f"shard-{index}.json").is_file()

        result = _invoke("combine", "--path", str(tmp_path))

        assert result.exit_code == 0, result.output
        assert "Merged 2 shard report(s)" in result.output
        report = json.loads((tmp_path / ".tessera" / "report.json").read_text(encoding="utf-8"))
        assert report["runId"] == "abc123"
        assert report["summary"]["total"] == 3
        assert report["summary"]["passed"] == 3

    def test_combine_detects_missing_shard(self, tmp_path: Path) -> None:
        _project(tmp_path)
        shard_file = tmp_path / "only.json"
        result = _invoke(
            "run",
            "--path",
            str(tmp_path),
            "--shard-index",
            "0",
            "--shard-count",
            "2",
            "--shard-output",
            str(shard_file),
        )
        assert result.exit_code == 0, result.output

        result = _invoke("combine", str(shard_file), "--path", str(tmp_path))

        assert result.exit_code == 1
        assert not (tmp_path / ".tessera" / "report.json").exists()

    def test_combine_without_reports(self, tmp_path: Path) -> None:
        _project(tmp_path)

        result = _invoke("combine", "--path", str(tmp_path))

        assert result.exit_code == 1
        assert "No shard reports found" in result.output
