"""Local CLI tool invocation shared by the talosctl, helm and kubectl wrappers."""

from __future__ import annotations

import subprocess
from pathlib import Path

import structlog

from ..errors import CommandError, ConfigError

logger = structlog.get_logger(__name__)


def run_tool(
    argv: list[str],
    cwd: str | Path | None = None,
    stdin: str | None = None,
    timeout: float | None = None,
    combine_output: bool = False,
) -> str:
    """Run a local executable and return its output.

    Args:
        argv: Command and arguments.
        cwd: Working directory.
        stdin: Text fed to the process on standard input.
        timeout: Seconds before the process is killed.
        combine_output: Return stdout and stderr together.

    Returns:
        stdout, or stdout followed by stderr when `combine_output` is set.

    Raises:
        ConfigError: Executable not found.
        CommandError: Timed out or exited non-zero.
    """
    tool = argv[0]
    command = " ".join(argv)
    logger.debug("exec", command=command, cwd=str(cwd) if cwd else None)
    try:
        result = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            cwd=cwd,
            input=stdin,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise ConfigError(f"{tool} not found. Is {tool} installed?") from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(f"{tool} timed out after {timeout:g}s", command=command) from e

    stdout = result.stdout or ""
    stderr = result.stderr or ""
    combined = stdout + stderr
    if result.returncode != 0:
        raise CommandError(
            f"{' '.join(argv[:3])} failed with exit status {result.returncode}",
            command=command,
            output=combined,
            exit_status=result.returncode,
        )
    return combined if combine_output else stdout
