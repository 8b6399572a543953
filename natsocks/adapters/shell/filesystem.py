"""
Filesystem helpers — atomic writes at fixed well-known paths.

Config files, unit files and the proxy binary are always replaced via
write-to-temp-then-rename in the target directory, so a crash never
leaves a half-written file where the service manager will read it.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections import deque
from pathlib import Path

logger = logging.getLogger(__name__)


def atomic_write(path: Path, content: str, mode: int = 0o644) -> None:
    """Write ``content`` to ``path`` atomically with permissions ``mode``.

    Raises:
        OSError: If the directory cannot be created or written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise
    logger.debug("Wrote %s (%d bytes, mode %o)", path, len(content), mode)


def atomic_install(src: Path, dest: Path, mode: int = 0o755) -> None:
    """Copy ``src`` over ``dest`` atomically, like ``install -m``.

    Replacing a running executable by rename is safe: the old inode
    stays alive until the process exits.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".tmp")
    os.close(fd)
    try:
        shutil.copyfile(src, tmp_path)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, dest)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise
    logger.debug("Installed %s → %s (mode %o)", src, dest, mode)


def tail_file(path: Path, lines: int = 30) -> str:
    """Return the last ``lines`` lines of a text file ('' if unreadable)."""
    try:
        with path.open("r", encoding="utf-8", errors="replace") as f:
            return "".join(deque(f, maxlen=lines))
    except OSError:
        return ""
