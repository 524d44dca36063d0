"""tessera — sharded, retry-aware orchestration for end-to-end test suites."""

__version__ = "0.3.0"
