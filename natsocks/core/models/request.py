"""
Deployment request — the operator's validated input for one run.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict

from natsocks.core.models.policy import DeploymentPolicy, OpenPolicy


class DeploymentRequest(BaseModel):
    """What to deploy.

    ``port`` is deliberately unconstrained here: range checks belong to
    the renderer, which reports them as configuration errors before any
    host mutation.

    ``http_listener``:
        none      — SOCKS5 only
        derived   — HTTP on ``port + 1``
        explicit  — HTTP on ``http_port``
    """

    model_config = ConfigDict(frozen=True)

    port: int = 1080
    backend: Literal["gost", "dante"] = "gost"
    machine_type: Literal["nat", "vps"] = "nat"
    policy: DeploymentPolicy = OpenPolicy()
    http_listener: Literal["none", "derived", "explicit"] = "none"
    http_port: int | None = None
    management_origin: str | None = None
