"""Tests for Sentry integration."""

from __future__ import annotations

from collections.abc import Generator
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from tessera.config import SentryConfig
from tessera.telemetry import sentry_integration


@pytest.fixture(autouse=True)
def _reset_sentry_state() -> Generator[None]:
    """Reset Sentry singleton state between tests."""
    sentry_integration._initialized["value"] = False
    yield
    sentry_integration._initialized["value"] = False


# ---------------------------------------------------------------------------
# init_sentry
# ---------------------------------------------------------------------------


def test_init_sentry_disabled_does_not_call_sdk() -> None:
    config = SentryConfig(enabled=False, dsn="https://key@sentry.io/123")

    with patch.object(sentry_integration.sentry_sdk, "init") as mock_init:
        sentry_integration.init_sentry(config)

    mock_init.assert_not_called()
    assert not sentry_integration.is_sentry_enabled()


def test_init_sentry_enabled_no_dsn_warns(caplog: pytest.LogCaptureFixture) -> None:
    config = SentryConfig(enabled=True, dsn="")

    with patch.object(sentry_integration.sentry_sdk, "init") as mock_init:
        sentry_integration.init_sentry(config)

    mock_init.assert_not_called()
    assert not sentry_integration.is_sentry_enabled()
    assert "no DSN configured" in caplog.text


def test_init_sentry_valid_config_calls_sdk() -> None:
    config = SentryConfig(
        enabled=True,
        dsn="https://key@sentry.io/123",
        traces_sample_rate=0.5,
        enable_logs=True,
    )

    with (
        patch.object(sentry_integration.sentry_sdk, "init") as mock_init,
        patch.object(sentry_integration, "detect_ci_context") as mock_ci,
    ):
        mock_ci.return_value = MagicMock(is_ci=True)
        sentry_integration.init_sentry(config)

    assert sentry_integration.is_sentry_enabled()
    kwargs = mock_init.call_args.kwargs
    assert kwargs["dsn"] == "https://key@sentry.io/123"
    assert kwargs["environment"] == "ci"
    assert kwargs["traces_sample_rate"] == 0.5
    assert kwargs["send_default_pii"] is False
    assert kwargs["enable_logs"] is True
    assert kwargs["release"].startswith("tessera@")


def test_init_sentry_is_idempotent() -> None:
    config = SentryConfig(enabled=True, dsn="https://key@sentry.io/123", environment="staging")

    with patch.object(sentry_integration.sentry_sdk, "init") as mock_init:
        sentry_integration.init_sentry(config)
        sentry_integration.init_sentry(config)

    mock_init.assert_called_once()
    assert mock_init.call_args.kwargs["environment"] == "staging"


# ---------------------------------------------------------------------------
# Privacy scrubbing
# ---------------------------------------------------------------------------


def test_scrub_string_redacts_secrets() -> None:
    scrubbed = sentry_integration._scrub_string("login failed: password=hunter2 for user")
    assert "hunter2" not in scrubbed
    assert "[REDACTED]" in scrubbed


def test_scrub_dict_redacts_sensitive_keys() -> None:
    data = {"token": "abc", "nested": {"storage_state": "/tmp/state.json"}, "case": "pays"}

    scrubbed = sentry_integration._scrub_dict(data)

    assert scrubbed == {
        "token": "[REDACTED]",
        "nested": {"storage_state": "[REDACTED]"},
        "case": "pays",
    }


def test_scrub_dict_redacts_exported_case_environment() -> None:
    env = {
        "TESSERA_FIXTURE_SESSION": "/tmp/state.json",
        "tessera_fixture_api_base": "https://staging.internal",
        "TESSERA_CASE_ID": "cart.spec.ts::pays",
        "TESSERA_RUN_ID": "build-7",
        "shard": "1",
    }

    scrubbed = sentry_integration._scrub_dict({"env": env})

    assert scrubbed["env"] == {
        "TESSERA_FIXTURE_SESSION": "[REDACTED]",
        "tessera_fixture_api_base": "[REDACTED]",
        "TESSERA_CASE_ID": "[REDACTED]",
        "TESSERA_RUN_ID": "build-7",
        "shard": "1",
    }


def test_scrub_string_redacts_exported_assignments() -> None:
    scrubbed = sentry_integration._scrub_string(
        "exit 1 with TESSERA_FIXTURE_SESSION=/tmp/state.json TESSERA_CASE_ID=cart::pays"
    )

    assert "/tmp/state.json" not in scrubbed
    assert "cart::pays" not in scrubbed
    assert scrubbed.startswith("exit 1 with ")


def test_scrub_event_redacts_exception_message_and_contexts() -> None:
    event: dict[str, Any] = {
        "exception": {"values": [{"type": "CollaboratorError", "value": "token=abc123"}]},
        "contexts": {"collaborator": {"TESSERA_FIXTURE_USER": "alice", "attempt": 2}},
    }

    scrubbed = sentry_integration._before_send(event, {})

    assert scrubbed is not None
    assert scrubbed["exception"]["values"][0]["value"] == "[REDACTED]"
    assert scrubbed["contexts"] == {
        "collaborator": {"TESSERA_FIXTURE_USER": "[REDACTED]", "attempt": 2}
    }


def test_scrub_event_strips_locals_and_home_paths() -> None:
    event: dict[str, Any] = {
        "server_name": "runner-17",
        "exception": {
            "values": [
                {
                    "stacktrace": {
                        "frames": [
                            {
                                "filename": "/home/alice/e2e/run.py",
                                "abs_path": "/Users/bob/e2e/run.py",
                                "vars": {"password": "hunter2"},
                            }
                        ]
                    }
                }
            ]
        },
        "breadcrumbs": {"values": [{"message": "token=abc123", "data": {"secret": "x"}}]},
        "tags": {"api_key": "k", "shard": "1"},
    }

    scrubbed = sentry_integration._before_send(event, {})

    assert scrubbed is not None
    frame = scrubbed["exception"]["values"][0]["stacktrace"]["frames"][0]
    assert "vars" not in frame
    assert frame["filename"] == "/~/e2e/run.py"
    assert frame["abs_path"] == "/~/e2e/run.py"
    crumb = scrubbed["breadcrumbs"]["values"][0]
    assert crumb["message"] == "[REDACTED]"
    assert crumb["data"] == {"secret": "[REDACTED]"}
    assert scrubbed["tags"] == {"api_key": "[REDACTED]", "shard": "1"}
    assert "server_name" not in scrubbed


# ---------------------------------------------------------------------------
# Metrics and tracing
# ---------------------------------------------------------------------------


def test_metrics_are_noops_when_disabled() -> None:
    with patch("sentry_sdk.metrics.count") as mock_count:
        sentry_integration.record_metric_count("tessera.tests.failed", 2)
    mock_count.assert_not_called()


def test_metrics_forwarded_when_enabled() -> None:
    sentry_integration._initialized["value"] = True

    with patch("sentry_sdk.metrics.distribution") as mock_distribution:
        sentry_integration.record_metric_distribution(
            "tessera.shard.duration", 1500.0, unit="millisecond", shard=0
        )

    mock_distribution.assert_called_once_with(
        "tessera.shard.duration", 1500.0, unit="millisecond", attributes={"shard": 0}
    )


def test_start_span_noop_when_disabled() -> None:
    span = sentry_integration.start_span("tessera.shard", "shard 1")

    assert isinstance(span, sentry_integration._NoOpSpan)
    with span as active:
        active.set_data("cases", 3)
        active.set_status("ok")


def test_start_span_delegates_when_enabled() -> None:
    sentry_integration._initialized["value"] = True

    with patch.object(sentry_integration.sentry_sdk, "start_span") as mock_span:
        sentry_integration.start_span("tessera.shard", "shard 1")

    mock_span.assert_called_once_with(op="tessera.shard", name="shard 1")
