"""
Artifact fetcher — resolve, download, validate and install gost.

Version resolution is two-tier because the GitHub API is often
unreachable from constrained networks while a plain redirect, or failing
that a pinned "last known good" tag from settings, still works:

    releases/latest redirect  →  releases API tag_name  →  settings.pinned_version

Download goes primary URL (bounded retries, fixed delay) then the mirror
once with a looser timeout. The archive is unpacked into a scratch
directory, the executable located and run with ``-V``, and only then
installed atomically at the fixed binary path. Any failure along the way
is fatal: there are no partial installs.
"""

from __future__ import annotations

import logging
import os
import re
import stat
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from natsocks.adapters.base import Host
from natsocks.adapters.net.http import HttpClient, HttpError
from natsocks.core.errors import ArtifactError
from natsocks.core.models.artifact import ArtifactSpec
from natsocks.core.models.settings import Settings
from natsocks.core.reliability.retry import retry_call

logger = logging.getLogger(__name__)

GITHUB = "https://github.com"
GITHUB_API = "https://api.github.com"

_TAG_RE = re.compile(r"^v?\d+\.\d+(\.\d+)?([-.+][0-9A-Za-z.\-]+)?$")
_MAX_DEPTH = 3


@dataclass
class FetchResult:
    spec: ArtifactSpec
    binary_path: Path
    version_output: str


def parse_tag_from_location(location: str) -> str | None:
    """Extract the tag from ``.../releases/tag/<tag>``."""
    head, sep, tag = location.rstrip("/").rpartition("/tag/")
    if not sep or not _TAG_RE.match(tag):
        return None
    return tag


def find_executable(root: Path, name: str, max_depth: int = _MAX_DEPTH) -> Path | None:
    """First regular file called ``name`` with an execute bit, at most
    ``max_depth`` levels below ``root``."""
    for dirpath, dirnames, filenames in os.walk(root):
        depth = len(Path(dirpath).relative_to(root).parts)
        if depth >= max_depth:
            dirnames[:] = []
        if name in filenames:
            candidate = Path(dirpath) / name
            mode = candidate.lstat().st_mode
            if stat.S_ISREG(mode) and mode & 0o111:
                return candidate
    return None


def verify_executable(host: Host, binary: Path, flag: str = "-V") -> str:
    """Run ``binary flag`` and return the first line of its output.

    Raises:
        ArtifactError: If it does not run or prints no version.
    """
    r = host.run([str(binary), flag], timeout=10)
    first_line = r.output.splitlines()[0] if r.output else ""
    if not r.ok or not re.search(r"\d", first_line):
        raise ArtifactError(
            f"{binary.name} does not run ({r.error or 'no version output'})",
            cause="invalid",
            diagnostics=r.output,
        )
    return first_line


class ArtifactFetcher:
    """Fetches the gost release for this host's architecture."""

    binary_name = "gost"

    def __init__(self, host: Host, settings: Settings, http: HttpClient | None = None):
        self._host = host
        self._settings = settings
        self._http = http or HttpClient()

    # ── Version resolution ──────────────────────────────────────

    def resolve_version(self) -> tuple[str, Literal["redirect", "api", "pinned"]]:
        """Resolve the release tag. Never raises."""
        s = self._settings
        latest = f"{GITHUB}/{s.gost_repo}/releases/latest"
        try:
            location = self._http.resolve_redirect(latest, timeout=s.version_timeout)
            tag = parse_tag_from_location(location)
            if tag:
                logger.info("Latest gost release (redirect): %s", tag)
                return tag, "redirect"
            logger.debug("Unparseable release redirect: %s", location)
        except HttpError as e:
            logger.debug("Release redirect lookup failed: %s", e)

        api = f"{GITHUB_API}/repos/{s.gost_repo}/releases/latest"
        try:
            data = self._http.get_json(api, timeout=s.version_timeout)
            tag = data.get("tag_name", "") if isinstance(data, dict) else ""
            if _TAG_RE.match(tag):
                logger.info("Latest gost release (api): %s", tag)
                return tag, "api"
        except HttpError as e:
            logger.debug("Release API lookup failed: %s", e)

        logger.warning(
            "Cannot determine the latest gost release; using pinned %s", s.pinned_version,
        )
        return s.pinned_version, "pinned"

    def build_spec(
        self,
        version_tag: str,
        arch: Literal["amd64", "arm64"],
        source: Literal["redirect", "api", "pinned"] = "pinned",
    ) -> ArtifactSpec:
        s = self._settings
        version = version_tag.removeprefix("v")
        tarball = f"gost_{version}_linux_{arch}.tar.gz"
        primary = f"{GITHUB}/{s.gost_repo}/releases/download/{version_tag}/{tarball}"
        return ArtifactSpec(
            version_tag=version_tag,
            platform_arch=arch,
            primary_url=primary,
            fallback_url=f"{s.mirror_prefix}{primary}" if s.mirror_prefix else "",
            version_source=source,
        )

    # ── Fetch pipeline ──────────────────────────────────────────

    def fetch(self, arch: Literal["amd64", "arm64"]) -> FetchResult:
        """Resolve, download, validate and install the binary.

        Raises:
            ArtifactError: On any download, unpack, validation or
                install failure.
        """
        tag, source = self.resolve_version()
        spec = self.build_spec(tag, arch, source)

        with tempfile.TemporaryDirectory(prefix="nat-socks-") as tmp:
            workdir = Path(tmp)
            tarball = workdir / spec.tarball_name
            self.download(spec, tarball)
            binary = self.unpack(tarball, workdir / "unpacked")
            version_output = verify_executable(self._host, binary)

            dest = self._settings.binary_path
            try:
                self._host.install_file(binary, dest, 0o755)
            except OSError as e:
                raise ArtifactError(f"Cannot install {dest}: {e}", cause="install") from e

        logger.info("Installed %s (%s) at %s", self.binary_name, version_output, dest)
        return FetchResult(spec=spec, binary_path=dest, version_output=version_output)

    def download(self, spec: ArtifactSpec, dest: Path) -> None:
        s = self._settings
        errors: list[HttpError] = []

        def _primary() -> int:
            return self._checked_download(spec.primary_url, dest, s.download_timeout)

        logger.info("Downloading %s", spec.primary_url)
        try:
            retry_call(
                _primary,
                attempts=s.download_attempts,
                delay=s.retry_delay,
                retry_on=(HttpError,),
                should_retry=lambda e: not (isinstance(e, HttpError) and e.not_found),
                label="gost download",
                sleep=self._host.sleep,
            )
            return
        except HttpError as e:
            errors.append(e)
            logger.warning("Primary download failed: %s", e)

        if spec.fallback_url:
            logger.info("Retrying via mirror: %s", spec.fallback_url)
            try:
                self._checked_download(spec.fallback_url, dest, s.mirror_timeout)
                return
            except HttpError as e:
                errors.append(e)
                logger.warning("Mirror download failed: %s", e)

        not_found = any(e.not_found for e in errors)
        if not_found:
            message = (
                f"No gost release asset {spec.tarball_name} for "
                f"{spec.version_tag}/{spec.platform_arch}"
            )
        else:
            message = "Cannot download gost: GitHub and mirror unreachable"
        raise ArtifactError(
            message,
            cause="not_found" if not_found else "unreachable",
            diagnostics="\n".join(str(e) for e in errors),
        )

    def _checked_download(self, url: str, dest: Path, timeout: int) -> int:
        size = self._http.download(url, dest, timeout=timeout)
        if size <= 0:
            dest.unlink(missing_ok=True)
            raise HttpError(f"Empty response from {url}", url=url, status=200)
        return size

    def unpack(self, tarball: Path, dest: Path) -> Path:
        """Extract ``tarball`` into ``dest`` and locate the executable."""
        dest.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(tarball, "r:gz") as tar:
                members = [m for m in tar.getmembers() if _safe_member(m)]
                tar.extractall(dest, members=members, filter="data")
        except (tarfile.TarError, OSError, EOFError) as e:
            raise ArtifactError(f"Cannot unpack {tarball.name}: {e}", cause="invalid") from e

        binary = find_executable(dest, self.binary_name)
        if binary is None:
            raise ArtifactError(
                f"No executable '{self.binary_name}' found in {tarball.name}",
                cause="invalid",
            )
        return binary


def _safe_member(member: tarfile.TarInfo) -> bool:
    """Regular files and directories with relative, non-escaping paths."""
    if not (member.isfile() or member.isdir()):
        return False
    path = Path(member.name)
    return not path.is_absolute() and ".." not in path.parts
