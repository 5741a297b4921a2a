"""Process execution capability used by every workflow."""
from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

LOGGER = logging.getLogger(__name__)

# Exit status a POSIX shell reports for a command that cannot be found.
COMMAND_NOT_FOUND = 127


class ProcessRunner(Protocol):
    """Run an external command and report its outcome without raising."""

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Execute *args* and return the completed process."""
        ...


@dataclass(slots=True)
class SubprocessRunner:
    """Default :class:`ProcessRunner` backed by :func:`subprocess.run`."""

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args*; missing executables are reported as exit code 127."""
        command = list(args)
        LOGGER.debug("$ %s", shlex.join(command))
        try:
            result = subprocess.run(  # noqa: S603 - argv built by wodctl
                command,
                cwd=str(cwd) if cwd is not None else None,
                capture_output=capture_output,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            LOGGER.debug("%s not found: %s", command[0], exc)
            return subprocess.CompletedProcess(
                command,
                returncode=COMMAND_NOT_FOUND,
                stdout="",
                stderr=f"{command[0]} not found: {exc}",
            )
        stdout = result.stdout or ""
        stderr = result.stderr or ""
        if stdout:
            LOGGER.debug("%s", stdout.rstrip())
        if result.returncode != 0:
            LOGGER.debug("exit %s: %s", result.returncode, stderr.strip())
        return subprocess.CompletedProcess(
            command,
            returncode=result.returncode,
            stdout=stdout,
            stderr=stderr,
        )


def failure_detail(result: subprocess.CompletedProcess[str]) -> str:
    """Return the most useful text describing a failed *result*."""
    stderr = (result.stderr or "").strip()
    stdout = (result.stdout or "").strip()
    return stderr or stdout or "no output"


__all__ = [
    "COMMAND_NOT_FOUND",
    "ProcessRunner",
    "SubprocessRunner",
    "failure_detail",
]
