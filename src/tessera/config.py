"""Configuration parsing from ``.tessera.yml``."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from tessera.execution.worker_pool import RunOptions
from tessera.fixtures.bootstrap import DEFAULT_SESSION_FIXTURE, CommandFixtureSpec
from tessera.fixtures.descriptor import FixtureScope
from tessera.registry.history import DEFAULT_HISTORY_PATH, DEFAULT_WINDOW
from tessera.sharding.planner import DEFAULT_DURATION_MS

logger = logging.getLogger(__name__)

CONFIG_FILE = ".tessera.yml"

_ENV_VAR_RE = re.compile(r"\$\{(\w+)\}")
_TRUTHY = {True, "true", "1", "yes"}
_DEFAULT_CI_RETRY_BUDGET = 2


def _resolve_env_vars(value: str) -> str:
    """Replace ``${VAR_NAME}`` placeholders with environment variable values."""

    def _replace(match: re.Match[str]) -> str:
        var = match.group(1)
        resolved = os.environ.get(var)
        if resolved is None:
            logger.warning("Environment variable %s is not set (referenced in config)", var)
            return ""
        return resolved

    return _ENV_VAR_RE.sub(_replace, value)


def _resolve_value(value: Any) -> Any:
    if isinstance(value, str):
        return _resolve_env_vars(value)
    if isinstance(value, dict):
        return _resolve_dict(value)
    if isinstance(value, list):
        return [_resolve_value(item) for item in value]
    return value


def _resolve_dict(data: dict[str, Any]) -> dict[str, Any]:
    """Recursively resolve environment variables in a dictionary."""
    return {key: _resolve_value(value) for key, value in data.items()}


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw.get(name, {})
    return section if isinstance(section, dict) else {}


def _pick(section: dict[str, Any], key: str, alias: str | None, default: Any) -> Any:
    """Read *key*, falling back to its camelCase *alias*, then *default*."""
    if key in section:
        return section[key]
    if alias is not None and alias in section:
        return section[alias]
    return default


def _as_bool(value: Any) -> bool:
    return value in _TRUTHY


def _as_command(value: Any) -> list[str] | str:
    if isinstance(value, list):
        return [str(part) for part in value]
    return str(value or "")


@dataclass
class RunConfig:
    """Run configuration surface (``run`` section)."""

    shard_count: int = 1
    workers_per_shard: int = 1
    retry_budget: int | None = None
    """Retries per case; unset means 0 locally and ``ci_retry_budget`` in CI."""

    ci_retry_budget: int = _DEFAULT_CI_RETRY_BUDGET
    stop_on_first_failure: bool = False
    attempt_timeout_ms: int = 30_000
    seed: int | None = None
    recycle_degraded_scopes: bool = True
    default_duration_ms: float = DEFAULT_DURATION_MS

    def effective_retry_budget(self, *, ci: bool) -> int:
        if self.retry_budget is not None:
            return self.retry_budget
        return self.ci_retry_budget if ci else 0

    def to_options(self, *, ci: bool) -> RunOptions:
        """Build the engine's run options for a local or CI run."""
        return RunOptions(
            shard_count=self.shard_count,
            workers_per_shard=self.workers_per_shard,
            retry_budget=self.effective_retry_budget(ci=ci),
            stop_on_first_failure=self.stop_on_first_failure,
            attempt_timeout_ms=self.attempt_timeout_ms,
            seed=self.seed,
            recycle_degraded_scopes=self.recycle_degraded_scopes,
            default_duration_ms=self.default_duration_ms,
        )


@dataclass
class SuiteConfig:
    """Where test declarations come from."""

    manifest: str = "tessera.suite.yml"
    """YAML manifest of suites, groups, and tests, relative to the root."""

    grep: str = ""
    """Default tag expression applied to every command."""


@dataclass
class ExecutorConfig:
    """Command-backed execution collaborator."""

    command: list[str] | str = ""
    """Command template; supports ``{id}``, ``{title}``, ``{file}``, ``{grep}``."""

    cwd: str = ""
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class SessionConfig:
    """Session bootstrap (auth / storage state) run once per session scope."""

    bootstrap_command: list[str] | str = ""
    teardown_command: list[str] | str = ""
    storage_state: str = ".tessera/storage-state.json"
    fixture_name: str = DEFAULT_SESSION_FIXTURE
    timeout: float = 300.0


@dataclass
class FixtureConfig:
    """A command-backed fixture declared in the ``fixtures`` list."""

    name: str
    scope: str = FixtureScope.TEST.value
    setup: list[str] | str = ""
    teardown: list[str] | str = ""
    depends_on: list[str] = field(default_factory=list)
    timeout: float = 120.0

    def to_spec(self) -> CommandFixtureSpec:
        return CommandFixtureSpec(
            name=self.name,
            scope=FixtureScope(self.scope),
            setup=self.setup,
            teardown=self.teardown or None,
            depends_on=list(self.depends_on),
            timeout=self.timeout,
        )


@dataclass
class ArtifactsConfig:
    """Where attempt diagnostics are stored."""

    dir: str = ".tessera/artifacts"


@dataclass
class ReportConfig:
    """Report outputs."""

    output: str = ".tessera/report.json"
    junit_output: str = ""
    shard_dir: str = ".tessera/shards"


@dataclass
class HistoryConfig:
    """Duration history used for shard balancing."""

    enabled: bool = True
    path: str = DEFAULT_HISTORY_PATH
    window: int = DEFAULT_WINDOW


@dataclass
class SentryConfig:
    """Sentry error monitoring and tracing configuration."""

    enabled: bool = False
    """Opt-in flag. No Sentry data sent unless True."""

    dsn: str = ""
    traces_sample_rate: float = 0.0
    enable_logs: bool = False
    environment: str = ""
    """Override environment tag (auto-detected if empty)."""


@dataclass
class TesseraConfig:
    """Complete configuration from ``.tessera.yml``."""

    root: Path
    run: RunConfig = field(default_factory=RunConfig)
    suite: SuiteConfig = field(default_factory=SuiteConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    fixtures: list[FixtureConfig] = field(default_factory=list)
    artifacts: ArtifactsConfig = field(default_factory=ArtifactsConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    sentry: SentryConfig = field(default_factory=SentryConfig)
    raw: dict[str, Any] = field(default_factory=dict)
    """Raw parsed YAML for debugging."""

    def path(self, value: str) -> Path:
        """Resolve a configured path against the project root."""
        candidate = Path(value)
        return candidate if candidate.is_absolute() else self.root / candidate


def _parse_run_config(raw: dict[str, Any]) -> RunConfig:
    run_raw = _section(raw, "run")

    retry_raw = _pick(run_raw, "retry_budget", "retryBudget", os.environ.get("TESSERA_RETRIES"))
    seed_raw = _pick(run_raw, "seed", None, None)
    return RunConfig(
        shard_count=int(
            _pick(run_raw, "shard_count", "shardCount", os.environ.get("TESSERA_SHARD_COUNT", 1))
        ),
        workers_per_shard=int(
            _pick(
                run_raw,
                "workers_per_shard",
                "workersPerShard",
                os.environ.get("TESSERA_WORKERS", 1),
            )
        ),
        retry_budget=None if retry_raw in (None, "") else int(retry_raw),
        ci_retry_budget=int(run_raw.get("ci_retry_budget", _DEFAULT_CI_RETRY_BUDGET)),
        stop_on_first_failure=_as_bool(
            _pick(run_raw, "stop_on_first_failure", "stopOnFirstFailure", False)
        ),
        attempt_timeout_ms=int(_pick(run_raw, "attempt_timeout_ms", "attemptTimeoutMs", 30_000)),
        seed=None if seed_raw in (None, "") else int(seed_raw),
        recycle_degraded_scopes=_as_bool(run_raw.get("recycle_degraded_scopes", True)),
        default_duration_ms=float(run_raw.get("default_duration_ms", DEFAULT_DURATION_MS)),
    )


def _parse_fixtures(raw: dict[str, Any]) -> list[FixtureConfig]:
    fixtures_raw = raw.get("fixtures", [])
    if not isinstance(fixtures_raw, list):
        return []

    fixtures: list[FixtureConfig] = []
    for entry in fixtures_raw:
        if not isinstance(entry, dict):
            logger.warning("Ignoring fixture entry that is not a mapping: %r", entry)
            continue
        depends_on = entry.get("depends_on", entry.get("dependsOn", []))
        fixtures.append(
            FixtureConfig(
                name=str(entry.get("name", "")),
                scope=str(entry.get("scope", FixtureScope.TEST.value)),
                setup=_as_command(entry.get("setup", "")),
                teardown=_as_command(entry.get("teardown", "")),
                depends_on=[str(d) for d in depends_on] if isinstance(depends_on, list) else [],
                timeout=float(entry.get("timeout", 120.0)),
            )
        )
    return fixtures


def _parse_sentry_config(raw: dict[str, Any]) -> SentryConfig:
    sentry_raw = _section(raw, "sentry")
    return SentryConfig(
        enabled=_as_bool(sentry_raw.get("enabled", os.environ.get("TESSERA_SENTRY_ENABLED", ""))),
        dsn=str(sentry_raw.get("dsn", os.environ.get("TESSERA_SENTRY_DSN", ""))),
        traces_sample_rate=float(
            sentry_raw.get(
                "traces_sample_rate",
                os.environ.get("TESSERA_SENTRY_TRACES_SAMPLE_RATE", "0.0"),
            )
        ),
        enable_logs=_as_bool(
            sentry_raw.get("enable_logs", os.environ.get("TESSERA_SENTRY_ENABLE_LOGS", ""))
        ),
        environment=str(sentry_raw.get("environment", "")),
    )


def load_config(root: str | Path) -> TesseraConfig:
    """Load and parse ``.tessera.yml`` under *root*.

    Falls back to defaults and environment variables when the file is
    missing or incomplete.

    Raises:
        ValueError: If a numeric option cannot be parsed.
        yaml.YAMLError: If the file is not valid YAML.
    """
    root_path = Path(root).resolve()
    config_file = root_path / CONFIG_FILE

    raw: dict[str, Any] = {}
    if config_file.is_file():
        parsed = yaml.safe_load(config_file.read_text(encoding="utf-8"))
        if isinstance(parsed, dict):
            raw = _resolve_dict(parsed)
        elif parsed is not None:
            logger.warning("%s is not a mapping; using defaults", config_file)

    suite_raw = _section(raw, "suite")
    executor_raw = _section(raw, "executor")
    session_raw = _section(raw, "session")
    artifacts_raw = _section(raw, "artifacts")
    report_raw = _section(raw, "report")
    history_raw = _section(raw, "history")
    env_raw = executor_raw.get("env", {})

    return TesseraConfig(
        root=root_path,
        run=_parse_run_config(raw),
        suite=SuiteConfig(
            manifest=str(suite_raw.get("manifest", SuiteConfig.manifest)),
            grep=str(suite_raw.get("grep", "")),
        ),
        executor=ExecutorConfig(
            command=_as_command(executor_raw.get("command", "")),
            cwd=str(executor_raw.get("cwd", "")),
            env={str(k): str(v) for k, v in env_raw.items()} if isinstance(env_raw, dict) else {},
        ),
        session=SessionConfig(
            bootstrap_command=_as_command(session_raw.get("bootstrap_command", "")),
            teardown_command=_as_command(session_raw.get("teardown_command", "")),
            storage_state=str(session_raw.get("storage_state", SessionConfig.storage_state)),
            fixture_name=str(session_raw.get("fixture_name", DEFAULT_SESSION_FIXTURE)),
            timeout=float(session_raw.get("timeout", 300.0)),
        ),
        fixtures=_parse_fixtures(raw),
        artifacts=ArtifactsConfig(dir=str(artifacts_raw.get("dir", ArtifactsConfig.dir))),
        report=ReportConfig(
            output=str(report_raw.get("output", ReportConfig.output)),
            junit_output=str(report_raw.get("junit_output", "")),
            shard_dir=str(report_raw.get("shard_dir", ReportConfig.shard_dir)),
        ),
        history=HistoryConfig(
            enabled=_as_bool(history_raw.get("enabled", True)),
            path=str(history_raw.get("path", DEFAULT_HISTORY_PATH)),
            window=int(history_raw.get("window", DEFAULT_WINDOW)),
        ),
        sentry=_parse_sentry_config(raw),
        raw=raw,
    )


def _validate_run_config(run: RunConfig) -> list[str]:
    errors = [f"run.{problem}" for problem in run.to_options(ci=False).validate()]
    if run.ci_retry_budget < 0:
        errors.append(f"run.ci_retry_budget must be >= 0, got {run.ci_retry_budget}")
    return errors


def _validate_fixtures(fixtures: list[FixtureConfig], session: SessionConfig) -> list[str]:
    errors: list[str] = []
    scopes = {scope.value for scope in FixtureScope}
    seen: set[str] = set()
    if session.bootstrap_command:
        seen.add(session.fixture_name)

    for idx, fixture in enumerate(fixtures):
        where = f"fixtures[{idx}]"
        if not fixture.name:
            errors.append(f"{where}.name is required")
        elif fixture.name in seen:
            errors.append(f"{where}: fixture '{fixture.name}' is declared more than once")
        seen.add(fixture.name)
        if fixture.scope not in scopes:
            errors.append(
                f"{where}.scope must be one of {', '.join(sorted(scopes))} (got: {fixture.scope})"
            )
        if not fixture.setup:
            errors.append(f"{where}.setup is required")
        if fixture.timeout <= 0:
            errors.append(f"{where}.timeout must be positive (got: {fixture.timeout})")
    return errors


def _validate_sentry_config(sentry: SentryConfig) -> list[str]:
    errors: list[str] = []
    if sentry.enabled and not sentry.dsn:
        errors.append("sentry.dsn is required when sentry.enabled is true")
    if not 0.0 <= sentry.traces_sample_rate <= 1.0:
        errors.append(
            f"sentry.traces_sample_rate must be between 0.0 and 1.0 "
            f"(got: {sentry.traces_sample_rate})"
        )
    return errors


def validate_config(config: TesseraConfig) -> list[str]:
    """Validate the configuration and return a list of error messages.

    Returns an empty list if the configuration is valid.
    """
    errors: list[str] = []
    errors.extend(_validate_run_config(config.run))
    if not config.executor.command:
        errors.append("executor.command is required")
    if config.history.window < 1:
        errors.append(f"history.window must be >= 1 (got: {config.history.window})")
    if config.session.timeout <= 0:
        errors.append(f"session.timeout must be positive (got: {config.session.timeout})")
    errors.extend(_validate_fixtures(config.fixtures, config.session))
    errors.extend(_validate_sentry_config(config.sentry))
    return errors
