"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes used by the CLI.

    External tool failures are not listed here: their own exit code is passed
    through unchanged so callers can tell which tool failed.
    """

    OK = 0
    FAILURE = 1
    USAGE = 2
