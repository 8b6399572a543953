"""
Command runner — the single place where ``subprocess.run`` is called.

Every host command in a deployment run (apt-get, systemctl, ip, ping,
curl, crontab, the proxy binary itself) goes through ``run_command``.
Timeouts are mandatory; nothing may block indefinitely.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time

from natsocks.core.models.command import OUTPUT_TAIL, CommandResult

logger = logging.getLogger(__name__)


def run_command(
    cmd: list[str],
    *,
    timeout: int = 30,
    input: str | None = None,
    env_overrides: dict[str, str] | None = None,
    cwd: str | None = None,
) -> CommandResult:
    """Run a command and capture its outcome.

    Never raises for command-level failures: a non-zero exit, a missing
    binary or a timeout all come back as a failed CommandResult.

    Args:
        cmd: Command list (no shell).
        timeout: Seconds before the command is killed.
        input: Optional text piped to stdin.
        env_overrides: Extra environment variables.
        cwd: Working directory for the command.
    """
    env = os.environ.copy()
    if env_overrides:
        env.update(env_overrides)

    logger.debug("Executing: %s (timeout=%ss)", " ".join(cmd), timeout)
    start = time.monotonic()

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input,
            env=env,
            cwd=cwd,
        )
    except FileNotFoundError:
        return CommandResult.failure(
            cmd,
            error=f"Command not found: {cmd[0]}",
            metadata={"not_found": True},
        )
    except subprocess.TimeoutExpired:
        return CommandResult.failure(
            cmd,
            error=f"Command timed out ({timeout}s)",
            duration_ms=int((time.monotonic() - start) * 1000),
            metadata={"timeout": timeout},
        )
    except OSError as e:
        logger.warning("Cannot execute %s: %s", cmd[0], e)
        return CommandResult.failure(cmd, error=str(e))

    elapsed_ms = int((time.monotonic() - start) * 1000)
    stdout = result.stdout[-OUTPUT_TAIL:] if result.stdout else ""
    stderr = result.stderr[-OUTPUT_TAIL:] if result.stderr else ""

    if result.returncode == 0:
        return CommandResult.success(
            cmd, stdout=stdout, stderr=stderr, duration_ms=elapsed_ms,
        )

    return CommandResult.failure(
        cmd,
        error=f"Command failed (exit {result.returncode})",
        returncode=result.returncode,
        stdout=stdout,
        stderr=stderr,
        duration_ms=elapsed_ms,
    )
