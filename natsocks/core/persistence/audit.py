"""
Run history — one NDJSON line per deploy or teardown.

The ledger lives on the proxy host itself (``/var/lib/nat-socks`` by
default) and grows for as long as the host is redeployed, so it rotates:
once it passes ``max_bytes`` the current file becomes ``<name>.1`` and a
fresh one is started. Only one generation is kept.

Nothing in the pipeline reads the ledger back except ``status`` and
``history``.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 1024 * 1024

OperationType = Literal["deploy", "teardown"]


class AuditEntry(BaseModel):
    """What one run did, as recorded in the ledger."""

    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    operation_id: str = ""
    operation_type: str = ""

    backend: str = ""
    ports: list[int] = Field(default_factory=list)
    supervision_mode: str | None = None

    status: str = ""               # ok, degraded, failed
    duration_ms: int = 0

    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    context: dict[str, Any] = Field(default_factory=dict)


class AuditWriter:
    """Appends to and reads from the run ledger.

    A failed write is logged and swallowed: the ledger is a record of the
    deployment, not a precondition for it.
    """

    def __init__(self, path: Path, max_bytes: int = DEFAULT_MAX_BYTES):
        self._path = path
        self._max_bytes = max_bytes

    @property
    def path(self) -> Path:
        return self._path

    @property
    def rotated_path(self) -> Path:
        return self._path.with_name(self._path.name + ".1")

    def write(self, entry: AuditEntry) -> None:
        line = json.dumps(entry.model_dump(mode="json"), ensure_ascii=False) + "\n"
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._rotate_if_full()
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            logger.error("Cannot record %s %s in %s: %s",
                         entry.operation_type, entry.operation_id, self._path, e)
            return
        logger.debug("Recorded %s %s (%s)", entry.operation_type, entry.operation_id, entry.status)

    def _rotate_if_full(self) -> None:
        try:
            size = self._path.stat().st_size
        except FileNotFoundError:
            return
        if size >= self._max_bytes:
            self._path.replace(self.rotated_path)
            logger.info("Rotated run ledger to %s", self.rotated_path)

    def read_all(self) -> list[AuditEntry]:
        """Entries of the current ledger file, oldest first."""
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.error("Cannot read run ledger %s: %s", self._path, e)
            return []

        entries = []
        for line_num, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                entries.append(AuditEntry.model_validate_json(line))
            except ValidationError as e:
                logger.warning("Skipping corrupt ledger line %d: %s", line_num, e.errors()[0]["msg"])
        return entries

    def read_recent(
        self,
        n: int = 20,
        operation_type: OperationType | None = None,
    ) -> list[AuditEntry]:
        """Last ``n`` entries, optionally only deploys or only teardowns."""
        entries = self.read_all()
        if operation_type:
            entries = [e for e in entries if e.operation_type == operation_type]
        return entries[-n:] if n > 0 else []

    def last(self, operation_type: OperationType | None = None) -> AuditEntry | None:
        recent = self.read_recent(1, operation_type)
        return recent[0] if recent else None
