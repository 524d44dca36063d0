"""Cooperative cancellation shared by the workers of one shard."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class CancellationToken:
    """A one-way flag workers check between cases.

    Setting the token never interrupts a case in flight; it only stops
    workers from starting new ones.
    """

    def __init__(self) -> None:
        self._reason: str | None = None

    def cancel(self, reason: str) -> None:
        """Request cancellation.  Only the first reason is kept."""
        if self._reason is None:
            logger.info("Cancellation requested: %s", reason)
            self._reason = reason

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason
