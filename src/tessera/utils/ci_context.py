"""CI environment detection."""

from __future__ import annotations

import os
from dataclasses import dataclass

_TRUTHY = {"1", "true", "yes"}


@dataclass
class CIContext:
    """Detected CI execution context."""

    is_ci: bool
    """Running in a CI environment."""

    provider: str | None = None
    """CI provider name (github, gitlab, circleci, buildkite, jenkins, generic)."""

    job_id: str | None = None
    """Identifier of the current CI job, when the provider exposes one."""

    commit_sha: str | None = None
    """Current commit SHA."""


def detect_ci_context() -> CIContext:
    """Detect the CI provider from environment variables.

    Supports GitHub Actions, GitLab CI, CircleCI, Buildkite, Jenkins, and
    the generic ``CI`` variable.
    """
    if os.getenv("GITHUB_ACTIONS") == "true":
        return CIContext(
            is_ci=True,
            provider="github",
            job_id=os.getenv("GITHUB_RUN_ID"),
            commit_sha=os.getenv("GITHUB_SHA"),
        )

    if os.getenv("GITLAB_CI") == "true":
        return CIContext(
            is_ci=True,
            provider="gitlab",
            job_id=os.getenv("CI_JOB_ID"),
            commit_sha=os.getenv("CI_COMMIT_SHA"),
        )

    if os.getenv("CIRCLECI") == "true":
        return CIContext(
            is_ci=True,
            provider="circleci",
            job_id=os.getenv("CIRCLE_WORKFLOW_ID"),
            commit_sha=os.getenv("CIRCLE_SHA1"),
        )

    if os.getenv("BUILDKITE") == "true":
        return CIContext(
            is_ci=True,
            provider="buildkite",
            job_id=os.getenv("BUILDKITE_BUILD_ID"),
            commit_sha=os.getenv("BUILDKITE_COMMIT"),
        )

    if os.getenv("JENKINS_URL"):
        return CIContext(
            is_ci=True,
            provider="jenkins",
            job_id=os.getenv("BUILD_TAG"),
            commit_sha=os.getenv("GIT_COMMIT"),
        )

    if os.getenv("CI", "").strip().lower() in _TRUTHY:
        return CIContext(is_ci=True, provider="generic")

    return CIContext(is_ci=False)
