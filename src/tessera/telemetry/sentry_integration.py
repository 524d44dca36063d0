"""Sentry SDK integration for tessera.

Handles initialization, data scrubbing, metrics, and tracing.  Everything is
strictly opt-in: nothing is sent unless ``sentry.enabled: true`` is set in
``.tessera.yml`` or ``TESSERA_SENTRY_ENABLED=true``.
"""

from __future__ import annotations

import logging
import re
import threading
from typing import TYPE_CHECKING, Any

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from tessera import __version__
from tessera.utils.ci_context import detect_ci_context

if TYPE_CHECKING:
    from types import TracebackType

    from tessera.config import SentryConfig

logger = logging.getLogger(__name__)

_init_lock = threading.Lock()
_initialized: dict[str, bool] = {"value": False}

_SENSITIVE_PATTERN = re.compile(
    r"(api[_-]?key|password|secret|token|dsn|authorization|cookie|storage[_-]?state"
    r"|tessera_fixture_\w+|tessera_case_id)"
    r"\s*[:=]\s*\S+",
    re.IGNORECASE,
)

_PATH_HOME_RE = re.compile(r"/(?:home|Users)/[^/]+")

_SENSITIVE_KEYS = frozenset(
    {
        "api_key",
        "apikey",
        "password",
        "secret",
        "token",
        "dsn",
        "authorization",
        "cookie",
        "session_id",
        "storage_state",
    }
)

# Variables the command collaborator exports to each test process.
_EXPORTED_ENV_RE = re.compile(r"^TESSERA_(?:FIXTURE_\w+|CASE_ID)$", re.IGNORECASE)


def init_sentry(config: SentryConfig) -> None:
    """Initialize the Sentry SDK if enabled and configured.

    Idempotent and thread-safe: calls after the first successful
    initialization do nothing.
    """
    with _init_lock:
        if _initialized["value"]:
            return
        if not config.enabled:
            logger.debug("Sentry disabled (sentry.enabled is false)")
            return
        if not config.dsn:
            logger.warning("Sentry enabled but no DSN configured")
            return

        ci_ctx = detect_ci_context()
        environment = config.environment or ("ci" if ci_ctx.is_ci else "local")

        init_kwargs: dict[str, Any] = {
            "dsn": config.dsn,
            "release": f"tessera@{__version__}",
            "environment": environment,
            "traces_sample_rate": config.traces_sample_rate,
            "send_default_pii": False,
            "server_name": "",
            "before_send": _before_send,
            "before_send_transaction": _before_send_transaction,
            "in_app_include": ["tessera"],
            "integrations": [
                LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
            ],
        }
        if config.enable_logs:
            init_kwargs["enable_logs"] = True

        sentry_sdk.init(**init_kwargs)

        _initialized["value"] = True
        logger.info(
            "Sentry initialized (env=%s, tracing=%.2f, logs=%s)",
            environment,
            config.traces_sample_rate,
            config.enable_logs,
        )


def is_sentry_enabled() -> bool:
    """Return whether Sentry has been successfully initialized."""
    return _initialized["value"]


# ---------------------------------------------------------------------------
# Privacy scrubbing
# ---------------------------------------------------------------------------


def _scrub_path(path: str) -> str:
    return _PATH_HOME_RE.sub("/~", path)


def _scrub_string(value: str) -> str:
    return _SENSITIVE_PATTERN.sub("[REDACTED]", value)


def _is_sensitive_key(key: str) -> bool:
    return key.lower() in _SENSITIVE_KEYS or _EXPORTED_ENV_RE.match(key) is not None


def _scrub_dict(data: dict[str, Any]) -> dict[str, Any]:
    """Scrub sensitive keys and values from a dict."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        if _is_sensitive_key(key):
            result[key] = "[REDACTED]"
        elif isinstance(value, str):
            result[key] = _scrub_string(value)
        elif isinstance(value, dict):
            result[key] = _scrub_dict(value)
        else:
            result[key] = value
    return result


def _scrub_event(event: dict[str, Any]) -> dict[str, Any]:
    """Deep-scrub an event dict for sensitive data."""
    exception = event.get("exception")
    if isinstance(exception, dict):
        for value in exception.get("values", []):
            if isinstance(value.get("value"), str):
                value["value"] = _scrub_string(value["value"])
            stacktrace = value.get("stacktrace")
            if not isinstance(stacktrace, dict):
                continue
            for frame in stacktrace.get("frames", []):
                # Locals may hold fixture values such as credentials.
                frame.pop("vars", None)
                for key in ("filename", "abs_path"):
                    if isinstance(frame.get(key), str):
                        frame[key] = _scrub_path(frame[key])

    breadcrumbs = event.get("breadcrumbs")
    if isinstance(breadcrumbs, dict):
        for crumb in breadcrumbs.get("values", []):
            if isinstance(crumb.get("message"), str):
                crumb["message"] = _scrub_string(crumb["message"])
            if isinstance(crumb.get("data"), dict):
                crumb["data"] = _scrub_dict(crumb["data"])

    for section in ("tags", "extra", "contexts"):
        if isinstance(event.get(section), dict):
            event[section] = _scrub_dict(event[section])

    event.pop("server_name", None)
    return event


def _before_send(event: dict[str, Any], _hint: dict[str, Any]) -> dict[str, Any] | None:
    return _scrub_event(event)


def _before_send_transaction(event: dict[str, Any], _hint: dict[str, Any]) -> dict[str, Any] | None:
    return _scrub_event(event)


# ---------------------------------------------------------------------------
# Metrics helpers (no-op when disabled)
# ---------------------------------------------------------------------------


def record_metric_count(name: str, value: int = 1, **attrs: str | int | float) -> None:
    """Emit a Sentry counter metric. No-op if Sentry is disabled."""
    if not _initialized["value"]:
        return
    from sentry_sdk import metrics

    metrics.count(name, float(value), attributes=dict(attrs) if attrs else None)


def record_metric_distribution(
    name: str, value: float, unit: str = "", **attrs: str | int | float
) -> None:
    """Emit a Sentry distribution metric. No-op if Sentry is disabled."""
    if not _initialized["value"]:
        return
    from sentry_sdk import metrics

    metrics.distribution(
        name, value, unit=unit or None, attributes=dict(attrs) if attrs else None
    )


# ---------------------------------------------------------------------------
# Tracing helpers
# ---------------------------------------------------------------------------


class _NoOpSpan:
    """Context manager that does nothing when Sentry is disabled."""

    def __enter__(self) -> _NoOpSpan:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        pass

    def set_data(self, key: str, value: Any) -> None:
        """No-op data setter."""

    def set_status(self, status: str) -> None:
        """No-op status setter."""


def start_span(op: str, name: str) -> Any:
    """Start a new Sentry span, or a no-op one when Sentry is disabled."""
    if not _initialized["value"]:
        return _NoOpSpan()
    return sentry_sdk.start_span(op=op, name=name)
