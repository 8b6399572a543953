"""
Readiness result — what the verifier observed after start.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from natsocks.core.models.network import IPFamily


class ReadinessResult(BaseModel):
    """Transient verification outcome, consumed by the reporter."""

    listening: bool = False
    functional_probe_ok: bool = False
    elapsed_attempts: int = 0
    handshake_ok: bool | None = None          # None = not attempted
    family_results: dict[IPFamily, bool] = Field(default_factory=dict)
    missing_ports: list[int] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
