"""Report output: persisted RunReport JSON, JUnit XML, and terminal summaries."""

from tessera.reporters.junit_xml import JUnitXMLReporter
from tessera.reporters.run_report import (
    SCHEMA_VERSION,
    read_run_report,
    render_run_report,
    write_run_report,
)
from tessera.reporters.terminal import CLIReporter

__all__ = [
    "SCHEMA_VERSION",
    "CLIReporter",
    "JUnitXMLReporter",
    "read_run_report",
    "render_run_report",
    "write_run_report",
]
