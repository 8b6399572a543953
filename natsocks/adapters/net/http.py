"""
HTTP client — version discovery and artifact downloads over urllib.

Failures are raised as ``HttpError`` with ``status`` set to the HTTP
status code, or None when the server was never reached. Callers use that
distinction to tell "artifact not found" from "network unreachable".
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

USER_AGENT = "nat-socks/1.0"
_CHUNK = 8192


class HttpError(Exception):
    """An HTTP request failed."""

    def __init__(self, message: str, *, url: str, status: int | None = None):
        super().__init__(message)
        self.url = url
        self.status = status

    @property
    def not_found(self) -> bool:
        return self.status == 404

    @property
    def unreachable(self) -> bool:
        return self.status is None


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: D401
        return None


class HttpClient:
    """Thin urllib wrapper with explicit timeouts on every call."""

    def __init__(self, user_agent: str = USER_AGENT):
        self._headers = {"User-Agent": user_agent}
        self._no_redirect = urllib.request.build_opener(_NoRedirect)

    def resolve_redirect(self, url: str, *, timeout: float) -> str:
        """Return the ``Location`` of a redirect without following it."""
        req = urllib.request.Request(url, method="HEAD", headers=self._headers)
        try:
            with self._no_redirect.open(req, timeout=timeout) as resp:
                raise HttpError(
                    f"Expected a redirect from {url}, got {resp.getcode()}",
                    url=url, status=resp.getcode(),
                )
        except urllib.error.HTTPError as e:
            location = e.headers.get("Location") if e.headers else None
            if 300 <= e.code < 400 and location:
                return location
            raise HttpError(f"HTTP {e.code} from {url}", url=url, status=e.code) from e
        except (urllib.error.URLError, OSError) as e:
            raise HttpError(f"Cannot reach {url}: {e}", url=url) from e

    def get_json(self, url: str, *, timeout: float) -> Any:
        req = urllib.request.Request(
            url,
            headers={**self._headers, "Accept": "application/vnd.github.v3+json"},
        )
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                return json.loads(resp.read())
        except urllib.error.HTTPError as e:
            raise HttpError(f"HTTP {e.code} from {url}", url=url, status=e.code) from e
        except (urllib.error.URLError, OSError) as e:
            raise HttpError(f"Cannot reach {url}: {e}", url=url) from e
        except ValueError as e:
            raise HttpError(f"Invalid JSON from {url}: {e}", url=url, status=200) from e

    def download(self, url: str, dest: Path, *, timeout: float) -> int:
        """Stream ``url`` to ``dest``. Returns the number of bytes written.

        A partial file is removed on failure.
        """
        req = urllib.request.Request(url, headers=self._headers)
        written = 0
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp, dest.open("wb") as f:
                while True:
                    chunk = resp.read(_CHUNK)
                    if not chunk:
                        break
                    f.write(chunk)
                    written += len(chunk)
        except urllib.error.HTTPError as e:
            dest.unlink(missing_ok=True)
            raise HttpError(f"HTTP {e.code} from {url}", url=url, status=e.code) from e
        except (urllib.error.URLError, OSError) as e:
            dest.unlink(missing_ok=True)
            raise HttpError(f"Download of {url} failed: {e}", url=url) from e

        logger.debug("Downloaded %s (%d bytes) → %s", url, written, dest)
        return written
