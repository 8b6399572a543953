"""Adapters — the host and network surfaces the pipeline runs against.

Public re-exports for convenient access.
"""

from natsocks.adapters.base import Host
from natsocks.adapters.local import LocalHost
from natsocks.adapters.mock import MockHost, MockHttpClient
from natsocks.adapters.net.http import HttpClient, HttpError

__all__ = [
    "Host",
    "HttpClient",
    "HttpError",
    "LocalHost",
    "MockHost",
    "MockHttpClient",
]
