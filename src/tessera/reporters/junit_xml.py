"""JUnit XML reporter — exports a RunReport for CI test dashboards.

Cases are grouped into one ``<testsuite>`` per spec file.  Flaky cases pass
and carry a ``<flakyFailure>`` per failing attempt, as Maven Surefire
does, so the instability stays visible.  Failures caused by fixture setup or
a crashing collaborator are reported as ``<error>``.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from typing import TYPE_CHECKING

from tessera.models.case import ID_SEPARATOR
from tessera.models.results import ErrorKind, FinalStatus, RunReport, TestResult

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

_ERROR_KINDS = {ErrorKind.FIXTURE_SETUP, ErrorKind.EXECUTION}


class JUnitXMLReporter:
    """Generate JUnit XML reports from a :class:`RunReport`."""

    def __init__(self, suite_name: str = "tessera") -> None:
        self.suite_name = suite_name

    def generate(self, report: RunReport, output_path: Path) -> Path:
        """Write a JUnit XML report file and return its path."""
        tree = ET.ElementTree(self._build_xml(report))
        output_path.parent.mkdir(parents=True, exist_ok=True)
        ET.indent(tree, space="  ")
        tree.write(str(output_path), encoding="unicode", xml_declaration=True)
        logger.info("JUnit XML report written to %s", output_path)
        return output_path

    def generate_string(self, report: RunReport) -> str:
        """Return the JUnit XML document as a string."""
        root = self._build_xml(report)
        ET.indent(root, space="  ")
        return ET.tostring(root, encoding="unicode", xml_declaration=True)

    def _build_xml(self, report: RunReport) -> ET.Element:
        testsuites = ET.Element("testsuites")
        testsuites.set("name", self.suite_name)
        _set_counts(testsuites, list(report.results))
        testsuites.set("timestamp", report.generated_at.isoformat())

        suites: dict[str, list[TestResult]] = {}
        for result in report.results:
            suites.setdefault(_split_id(result.case_id)[0], []).append(result)

        for file_name, results in suites.items():
            suite_elem = ET.SubElement(testsuites, "testsuite")
            suite_elem.set("name", file_name)
            _set_counts(suite_elem, results)
            for result in results:
                _add_case(suite_elem, file_name, result)
        return testsuites


def _split_id(case_id: str) -> tuple[str, str]:
    file_name, _, title = case_id.partition(ID_SEPARATOR)
    return (file_name, title) if title else ("default", case_id)


def _is_error(result: TestResult) -> bool:
    if result.status is not FinalStatus.FAILED or not result.attempts:
        return False
    error = result.attempts[-1].error
    return error is not None and error.kind in _ERROR_KINDS


def _set_counts(elem: ET.Element, results: list[TestResult]) -> None:
    errors = sum(1 for r in results if _is_error(r))
    failures = sum(1 for r in results if r.status is FinalStatus.FAILED) - errors
    elem.set("tests", str(len(results)))
    elem.set("failures", str(failures))
    elem.set("errors", str(errors))
    elem.set("skipped", str(sum(1 for r in results if r.status is FinalStatus.SKIPPED)))
    elem.set("time", f"{sum(r.duration_ms for r in results) / 1000:.3f}")


def _add_case(suite_elem: ET.Element, file_name: str, result: TestResult) -> None:
    case_elem = ET.SubElement(suite_elem, "testcase")
    case_elem.set("name", _split_id(result.case_id)[1])
    case_elem.set("classname", file_name)
    case_elem.set("time", f"{result.duration_ms / 1000:.3f}")

    if result.status is FinalStatus.SKIPPED:
        skipped = ET.SubElement(case_elem, "skipped")
        if result.skip_reason is not None:
            skipped.set("message", result.skip_reason.value)
        return

    if result.status is FinalStatus.FAILED:
        last = result.attempts[-1]
        message = last.error.message if last.error else "Test failed"
        tag = "error" if _is_error(result) else "failure"
        failure = ET.SubElement(case_elem, tag)
        failure.set("message", message or "Test failed")
        if last.error is not None:
            failure.set("type", last.error.kind.value)
        failure.text = message
        return

    if result.status is FinalStatus.FLAKY:
        for attempt in result.attempts:
            if not attempt.outcome.is_failure:
                continue
            flaky = ET.SubElement(case_elem, "flakyFailure")
            message = attempt.error.message if attempt.error else attempt.outcome.value
            flaky.set("message", message or attempt.outcome.value)
            if attempt.error is not None:
                flaky.set("type", attempt.error.kind.value)
