"""
Domain models — Pydantic types for the deployment pipeline.

All models are re-exported here for convenient access:

    from natsocks.core.models import NetworkProfile, ServiceConfig, ServiceInstance
"""

from natsocks.core.models.artifact import ArtifactSpec
from natsocks.core.models.command import CommandResult
from natsocks.core.models.network import IPFamily, NetworkProfile
from natsocks.core.models.policy import (
    CredentialedPolicy,
    Credentials,
    DeploymentPolicy,
    OpenPolicy,
    WhitelistPolicy,
)
from natsocks.core.models.readiness import ReadinessResult
from natsocks.core.models.request import DeploymentRequest
from natsocks.core.models.service import (
    AccessRule,
    ListenSpec,
    ServiceConfig,
    ServiceInstance,
    SupervisionMode,
)
from natsocks.core.models.settings import Settings

__all__ = [
    # service.py
    "AccessRule",
    # artifact.py
    "ArtifactSpec",
    # command.py
    "CommandResult",
    # policy.py
    "CredentialedPolicy",
    "Credentials",
    "DeploymentPolicy",
    # request.py
    "DeploymentRequest",
    # network.py
    "IPFamily",
    "ListenSpec",
    "NetworkProfile",
    "OpenPolicy",
    # readiness.py
    "ReadinessResult",
    "ServiceConfig",
    "ServiceInstance",
    # settings.py
    "Settings",
    "SupervisionMode",
    "WhitelistPolicy",
]
