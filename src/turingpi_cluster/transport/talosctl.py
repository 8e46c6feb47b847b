"""talosctl invocation."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from .process import run_tool


class TalosctlRunner(Protocol):
    """Run talosctl with a fixed working directory; returns combined output."""

    def run(self, *args: str) -> str: ...


class SubprocessTalosctl:
    """TalosctlRunner that shells out to the talosctl binary."""

    def __init__(self, workdir: str | Path, binary: str = "talosctl"):
        self.workdir = Path(workdir)
        self.binary = binary

    def run(self, *args: str) -> str:
        """Run `talosctl <args>` inside the work directory.

        Raises:
            CommandError: talosctl missing or exited non-zero.
        """
        return run_tool([self.binary, *args], cwd=self.workdir, combine_output=True)
