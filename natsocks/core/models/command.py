"""
CommandResult — the receipt of a host command.

Host adapters run commands and return a CommandResult. They never raise
for a failed command: the exit code, stderr and timing are captured here
and the calling component decides whether the failure matters.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

# Output tails are capped so a chatty apt-get never floods diagnostics
OUTPUT_TAIL = 2000


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class CommandResult(BaseModel):
    """Result of a single host command."""

    cmd: list[str] = Field(default_factory=list)
    status: Literal["ok", "failed"] = "ok"
    returncode: int | None = 0

    started_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    stdout: str = ""
    stderr: str = ""
    error: str | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Whether the command exited with status 0."""
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    @property
    def output(self) -> str:
        """Combined, stripped stdout+stderr for diagnostics."""
        return "\n".join(s for s in (self.stdout.strip(), self.stderr.strip()) if s)

    @classmethod
    def success(
        cls,
        cmd: list[str],
        stdout: str = "",
        **kwargs: Any,
    ) -> CommandResult:
        """Create a success result."""
        return cls(cmd=list(cmd), status="ok", returncode=0, stdout=stdout, **kwargs)

    @classmethod
    def failure(
        cls,
        cmd: list[str],
        error: str,
        returncode: int | None = None,
        **kwargs: Any,
    ) -> CommandResult:
        """Create a failure result.

        ``returncode`` is None when the command never ran (missing
        binary, timeout).
        """
        return cls(
            cmd=list(cmd),
            status="failed",
            returncode=returncode,
            error=error,
            **kwargs,
        )
