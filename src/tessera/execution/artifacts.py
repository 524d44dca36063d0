"""Artifact store collaborator for attempt diagnostics.

Attempts keep only the reference returned by the store, never the payload.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_RE = re.compile(r"[^\w.-]+")
_MAX_SLUG_LENGTH = 80


@dataclass(frozen=True)
class DiagnosticPayload:
    """Diagnostic output of one attempt (log, trace, screenshot)."""

    name: str
    """File name hint, e.g. ``output.log`` or ``trace.zip``."""

    content: bytes
    content_type: str = "text/plain"


class ArtifactStore(ABC):
    """Stores diagnostic payloads and hands back a reference."""

    @abstractmethod
    async def put(self, case_id: str, attempt_index: int, payload: DiagnosticPayload) -> str:
        """Persist *payload* and return a reference to it."""


def _slug(case_id: str) -> str:
    digest = hashlib.sha1(case_id.encode("utf-8"), usedforsecurity=False).hexdigest()[:10]
    readable = _UNSAFE_RE.sub("-", case_id).strip("-")[:_MAX_SLUG_LENGTH]
    return f"{readable}-{digest}"


class LocalArtifactStore(ArtifactStore):
    """Writes payloads under a local directory.

    References are POSIX paths relative to the store root.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    async def put(self, case_id: str, attempt_index: int, payload: DiagnosticPayload) -> str:
        file_name = f"attempt-{attempt_index}-{_UNSAFE_RE.sub('-', payload.name)}"
        relative = Path(_slug(case_id)) / file_name
        target = self.root / relative
        await asyncio.to_thread(self._write, target, payload.content)
        logger.debug("Stored %d byte(s) of diagnostics at %s", len(payload.content), target)
        return relative.as_posix()

    @staticmethod
    def _write(target: Path, content: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
