"""
Deployment policy — how inbound clients are admitted.

A tagged variant instead of string branches on "auth mode":

    OpenPolicy          — anyone may connect, no credentials
    CredentialedPolicy  — username/password required
    WhitelistPolicy     — only listed sources, deny everything else
"""

from __future__ import annotations

import re
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

_USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")
# RFC 1929 carries each field with a one-byte length
MAX_PASSWORD_BYTES = 255


class Credentials(BaseModel):
    """Proxy username/password.

    The username doubles as a system account name for dante, so it
    follows the useradd naming rules.
    """

    model_config = ConfigDict(frozen=True)

    username: str
    password: str = Field(repr=False)

    @field_validator("username")
    @classmethod
    def _check_username(cls, v: str) -> str:
        if not _USERNAME_RE.match(v):
            raise ValueError(
                "username must start with a lowercase letter or '_' and "
                "contain only [a-z0-9_-] (max 32 chars)"
            )
        return v

    @field_validator("password")
    @classmethod
    def _check_password(cls, v: str) -> str:
        if not v:
            raise ValueError("password must not be empty")
        if any(c in v for c in "\n\r:"):
            raise ValueError("password must not contain ':' or line breaks")
        if len(v.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes (UTF-8)")
        return v


class OpenPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: Literal["open"] = "open"


class CredentialedPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: Literal["credentialed"] = "credentialed"
    credentials: Credentials


class WhitelistPolicy(BaseModel):
    """Allow-list of sources.

    ``rules`` holds raw entries (bare IPs or CIDRs); normalisation happens
    in the config renderer. ``allow_lockout`` disables the automatic
    inclusion of the management origin.
    """

    model_config = ConfigDict(frozen=True)

    mode: Literal["whitelist"] = "whitelist"
    rules: list[str] = Field(default_factory=list)
    allow_lockout: bool = False


DeploymentPolicy = Annotated[
    Union[OpenPolicy, CredentialedPolicy, WhitelistPolicy],
    Field(discriminator="mode"),
]
