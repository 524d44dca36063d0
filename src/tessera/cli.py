"""tessera CLI — top-level command group."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler

from tessera import __version__
from tessera.config import SentryConfig, TesseraConfig, load_config, validate_config
from tessera.engine import Engine
from tessera.errors import TesseraError
from tessera.execution.artifacts import LocalArtifactStore
from tessera.execution.collaborator import CommandCollaborator
from tessera.execution.worker_pool import RunOptions
from tessera.fixtures.bootstrap import CommandBootstrap, bootstrap_fixture, command_fixture
from tessera.fixtures.descriptor import FixtureDescriptor
from tessera.models.case import TestCase
from tessera.models.results import FinalStatus, RunReport
from tessera.registry.declarations import load_manifest
from tessera.registry.history import HistoryStore
from tessera.registry.registry import TestRegistry
from tessera.reporters.junit_xml import JUnitXMLReporter
from tessera.reporters.run_report import render_run_report, write_run_report
from tessera.reporters.terminal import reporter
from tessera.sharding.aggregator import merge_shard_reports
from tessera.sharding.planner import plan_shards
from tessera.sharding.shard_report import (
    read_shard_report,
    serialize_shard_report,
    write_shard_report,
)
from tessera.telemetry.sentry_integration import init_sentry
from tessera.utils.ci_context import detect_ci_context

logger = logging.getLogger(__name__)
console = Console()

_MIN_MASKED_VALUE_LENGTH = 8
_SENSITIVE_KEYS = {"dsn", "password", "token", "api_key", "secret"}


def _setup_logging(*, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)
        ],
        force=True,
    )


def _init_sentry_from_env() -> None:
    """Initialize Sentry from environment variables before any config is read."""
    if os.environ.get("TESSERA_SENTRY_ENABLED", "").strip().lower() not in {"1", "true", "yes"}:
        return
    dsn = os.environ.get("TESSERA_SENTRY_DSN", "").strip()
    if not dsn:
        return
    init_sentry(
        SentryConfig(
            enabled=True,
            dsn=dsn,
            traces_sample_rate=float(os.environ.get("TESSERA_SENTRY_TRACES_SAMPLE_RATE", "0.0")),
        )
    )


def _ci_mode() -> bool:
    ctx = click.get_current_context()
    return bool(ctx.obj.get("ci", False)) if ctx.obj else False


def _load(path: str) -> TesseraConfig:
    try:
        config = load_config(path)
    except (ValueError, yaml.YAMLError) as e:
        reporter.print_error(f"Failed to load configuration: {e}")
        raise click.Abort from e
    init_sentry(config.sentry)
    return config


def _config_to_dict(config: TesseraConfig) -> dict[str, Any]:
    result = asdict(config)
    result.pop("raw", None)
    result["root"] = str(config.root)
    return result


def _mask_sensitive_values(config_dict: dict[str, Any]) -> dict[str, Any]:
    """Recursively mask sensitive values in a configuration dict."""
    result = copy.deepcopy(config_dict)

    def _mask(data: dict[str, Any]) -> None:
        for key, value in data.items():
            if key in _SENSITIVE_KEYS and isinstance(value, str) and value:
                if len(value) > _MIN_MASKED_VALUE_LENGTH:
                    data[key] = f"{value[:4]}...{value[-4:]}"
                else:
                    data[key] = "***"
            elif isinstance(value, dict):
                _mask(value)

    _mask(result)
    return result


def _discover(config: TesseraConfig, grep: str | None) -> list[TestCase]:
    """Load the suite manifest and return the selected cases."""
    history: dict[str, float] = {}
    if config.history.enabled:
        history = HistoryStore(
            config.path(config.history.path), window=config.history.window
        ).estimates()

    manifest = config.path(config.suite.manifest)
    registry = TestRegistry(load_manifest(manifest), history=history)
    expression = config.suite.grep if grep is None else grep
    return registry.filter(expression)


def _build_fixtures(config: TesseraConfig) -> list[FixtureDescriptor]:
    fixtures: list[FixtureDescriptor] = []
    session = config.session
    if session.bootstrap_command:
        bootstrap = CommandBootstrap(
            session.bootstrap_command,
            storage_state=config.path(session.storage_state),
            teardown_command=session.teardown_command or None,
            cwd=config.root,
            timeout=session.timeout,
        )
        fixtures.append(bootstrap_fixture(bootstrap, session.fixture_name))
    fixtures.extend(command_fixture(f.to_spec(), cwd=config.root) for f in config.fixtures)
    return fixtures


def _build_engine(config: TesseraConfig, options: RunOptions) -> Engine:
    executor = config.executor
    if not executor.command:
        reporter.print_error("executor.command is not configured in .tessera.yml")
        raise click.Abort
    collaborator = CommandCollaborator(
        executor.command,
        cwd=config.path(executor.cwd) if executor.cwd else config.root,
        env=executor.env,
    )
    return Engine(
        collaborator,
        options=options,
        fixtures=_build_fixtures(config),
        artifact_store=LocalArtifactStore(config.path(config.artifacts.dir)),
    )


def _default_run_id(*, sharded: bool) -> str:
    if not sharded:
        return uuid.uuid4().hex
    # Every shard of one run must report the same id.
    ci = detect_ci_context()
    return ci.commit_sha or "local"


def _finish_run(config: TesseraConfig, report: RunReport, junit: str | None) -> None:
    """Persist the merged report, JUnit export, and duration history."""
    output = write_run_report(report, config.path(config.report.output))
    junit_path = junit or config.report.junit_output
    if junit_path:
        JUnitXMLReporter().generate(report, config.path(junit_path))
    if config.history.enabled:
        history = HistoryStore(config.path(config.history.path), window=config.history.window)
        history.record_run(report)
        history.save()

    if _ci_mode():
        click.echo(render_run_report(report), nl=False)
    else:
        reporter.print_run_report(report)
        reporter.print_info(f"Run report written to {output}")

    if not report.summary.success:
        if not _ci_mode():
            reporter.print_error(f"{report.summary.failed} test(s) failed")
        raise click.Abort
    if not _ci_mode():
        reporter.print_success("No failures")


_PATH_OPTION = click.option(
    "--path",
    default=".",
    type=click.Path(exists=True, file_okay=False, resolve_path=True),
    help="Project root directory.",
)
_GREP_OPTION = click.option(
    "--grep",
    default=None,
    help="Tag expression, e.g. '@smoke and not @slow' (default: suite.grep).",
)


@click.group()
@click.option(
    "--ci",
    is_flag=True,
    help="CI mode: machine-readable JSON output and CI retry defaults.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.version_option(version=__version__, prog_name="tessera")
@click.pass_context
def cli(ctx: click.Context, *, ci: bool, verbose: bool) -> None:
    """tessera — shards, isolates, retries, and reports browser test suites."""
    ctx.ensure_object(dict)
    ctx.obj["ci"] = ci
    _setup_logging(verbose=verbose)
    _init_sentry_from_env()


@cli.group("config")
def config_group() -> None:
    """Inspect `.tessera.yml` configuration."""


@config_group.command("show")
@_PATH_OPTION
@click.option("--json-output", "as_json", is_flag=True, help="Output as JSON instead of YAML.")
@click.option("--no-mask", is_flag=True, help="Show sensitive values unmasked.")
def config_show(path: str, *, as_json: bool, no_mask: bool) -> None:
    """Display the resolved configuration with sensitive values masked."""
    config_dict = _config_to_dict(_load(path))
    if not no_mask:
        config_dict = _mask_sensitive_values(config_dict)

    if as_json:
        click.echo(json.dumps(config_dict, indent=2))
    else:
        click.echo(yaml.safe_dump(config_dict, sort_keys=False, default_flow_style=False))


@config_group.command("validate")
@_PATH_OPTION
def config_validate(path: str) -> None:
    """Validate `.tessera.yml` and list every problem found."""
    errors = validate_config(_load(path))
    if not errors:
        reporter.print_success("Configuration is valid!")
        return

    reporter.print_error(f"Found {len(errors)} configuration error(s):")
    for idx, error in enumerate(errors, start=1):
        console.print(f"  {idx}. [red]{error}[/red]")
    raise click.Abort


@cli.command("list")
@_PATH_OPTION
@_GREP_OPTION
@click.option("--json-output", "as_json", is_flag=True, help="Output cases as JSON.")
def list_cases(path: str, grep: str | None, *, as_json: bool) -> None:
    """List discovered test cases in declaration order."""
    config = _load(path)
    try:
        cases = _discover(config, grep)
    except TesseraError as e:
        reporter.print_error(str(e))
        raise click.Abort from e

    if as_json or _ci_mode():
        payload = [
            {
                "id": case.id,
                "tags": sorted(case.tags),
                "fixtures": list(case.fixtures),
                "ordering": str(case.ordering),
                "skip": case.declared_skip,
                "estimatedDurationMs": case.estimated_duration_ms,
            }
            for case in cases
        ]
        click.echo(json.dumps(payload, indent=2))
        return
    reporter.print_cases(cases)


@cli.command()
@_PATH_OPTION
@_GREP_OPTION
@click.option("--shard-count", type=click.IntRange(min=1), default=None, help="Shards to plan.")
@click.option("--json-output", "as_json", is_flag=True, help="Output the plan as JSON.")
def plan(path: str, grep: str | None, shard_count: int | None, *, as_json: bool) -> None:
    """Show how the selected cases are partitioned across shards."""
    config = _load(path)
    count = shard_count or config.run.shard_count
    try:
        shards = plan_shards(
            _discover(config, grep), count, default_duration_ms=config.run.default_duration_ms
        )
    except TesseraError as e:
        reporter.print_error(str(e))
        raise click.Abort from e

    if as_json or _ci_mode():
        payload = [
            {
                "index": shard.index,
                "estimatedDurationMs": shard.estimated_duration_ms,
                "units": [list(unit) for unit in shard.units],
            }
            for shard in shards
        ]
        click.echo(json.dumps(payload, indent=2))
        return
    reporter.print_plan(shards)


@cli.command()
@_PATH_OPTION
@_GREP_OPTION
@click.option(
    "--shard-index",
    type=click.IntRange(min=0),
    default=None,
    help="Zero-based shard to run (requires --shard-count).",
)
@click.option("--shard-count", type=click.IntRange(min=1), default=None, help="Total shards.")
@click.option(
    "--shard-output",
    type=click.Path(dir_okay=False),
    default=None,
    help="Where to write the shard report (default: <report.shard_dir>/shard-<index>.json).",
)
@click.option("--workers", type=click.IntRange(min=1), default=None, help="Workers per shard.")
@click.option("--retries", type=click.IntRange(min=0), default=None, help="Retry budget.")
@click.option("--timeout-ms", type=click.IntRange(min=1), default=None, help="Attempt timeout.")
@click.option(
    "--stop-on-first-failure/--no-stop-on-first-failure",
    default=None,
    help="Skip not-yet-started cases after the first failure.",
)
@click.option("--seed", type=int, default=None, help="Seed for unit-to-worker shuffling.")
@click.option("--run-id", envvar="TESSERA_RUN_ID", default=None, help="Identifier of the run.")
@click.option("--junit", type=click.Path(dir_okay=False), default=None, help="JUnit XML output.")
def run(**kwargs: Any) -> None:
    """Run the suite.

    Without --shard-index every shard runs in this process and the merged
    report is written.  With --shard-index/--shard-count only that shard
    runs and its shard report is written for `tessera combine`.
    """
    shard_index: int | None = kwargs.get("shard_index")
    shard_count: int | None = kwargs.get("shard_count")
    if shard_index is not None and shard_count is None:
        raise click.UsageError("--shard-index requires --shard-count.")
    if shard_index is not None and shard_count is not None and shard_index >= shard_count:
        raise click.UsageError("--shard-index must be smaller than --shard-count.")

    config = _load(kwargs["path"])
    ci_mode = _ci_mode() or detect_ci_context().is_ci
    options = config.run.to_options(ci=ci_mode)
    overrides = {
        "shard_count": shard_count,
        "workers_per_shard": kwargs.get("workers"),
        "retry_budget": kwargs.get("retries"),
        "attempt_timeout_ms": kwargs.get("timeout_ms"),
        "stop_on_first_failure": kwargs.get("stop_on_first_failure"),
        "seed": kwargs.get("seed"),
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(options, key, value)

    run_id = kwargs.get("run_id") or _default_run_id(sharded=shard_index is not None)
    if not _ci_mode():
        reporter.print_header("tessera run")
        reporter.print_info(
            f"{options.shard_count} shard(s), {options.workers_per_shard} worker(s) each, "
            f"retry budget {options.retry_budget}"
        )

    try:
        cases = _discover(config, kwargs.get("grep"))
        engine = _build_engine(config, options)
        if shard_index is None:
            report = asyncio.run(engine.run(cases, run_id=run_id))
        else:
            shard_report = asyncio.run(engine.run_shard(cases, shard_index, run_id=run_id))
    except (TesseraError, ValueError) as e:
        reporter.print_error(str(e))
        raise click.Abort from e

    if shard_index is None:
        _finish_run(config, report, kwargs.get("junit"))
        return

    output = config.path(
        kwargs.get("shard_output") or f"{config.report.shard_dir}/shard-{shard_index}.json"
    )
    write_shard_report(shard_report, output)
    if _ci_mode():
        click.echo(json.dumps(serialize_shard_report(shard_report), indent=2))
    else:
        reporter.print_shard_report(shard_report)
        reporter.print_info(f"Shard report written to {output}")
    if any(r.status is FinalStatus.FAILED for r in shard_report.results):
        raise click.Abort


@cli.command()
@click.argument("shard_files", nargs=-1, type=click.Path(exists=True, dir_okay=False))
@_PATH_OPTION
@_GREP_OPTION
@click.option("--junit", type=click.Path(dir_okay=False), default=None, help="JUnit XML output.")
def combine(shard_files: tuple[str, ...], path: str, grep: str | None, junit: str | None) -> None:
    """Merge shard reports into one run report.

    Reads the files written by `tessera run --shard-index/--shard-count`
    (default: every shard-*.json in report.shard_dir) and checks them
    against the rediscovered case set.
    """
    config = _load(path)
    files = [Path(f) for f in shard_files] or sorted(
        config.path(config.report.shard_dir).glob("shard-*.json")
    )
    if not files:
        reporter.print_error("No shard reports found")
        raise click.Abort

    reports = []
    for shard_file in files:
        try:
            reports.append(read_shard_report(shard_file))
        except (OSError, ValueError, KeyError) as e:
            reporter.print_error(f"Failed to read shard report {shard_file}: {e}")
            raise click.Abort from e

    try:
        expected = [case.id for case in _discover(config, grep)]
        report = merge_shard_reports(reports, expected)
    except TesseraError as e:
        reporter.print_error(str(e))
        raise click.Abort from e

    if not _ci_mode():
        reporter.print_info(f"Merged {len(reports)} shard report(s)")
    _finish_run(config, report, junit)
