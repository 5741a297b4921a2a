"""File store capability shared by the orchestrator, templates, and restore."""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


class FileStore(Protocol):
    """Filesystem operations consumed by the core workflows."""

    def is_directory(self, path: Path) -> bool:
        """Return True when *path* exists and is a directory."""
        ...

    def ensure_directory(self, path: Path) -> None:
        """Create *path* and any missing parents."""
        ...

    def file_exists(self, path: Path) -> bool:
        """Return True when *path* exists and is a regular file."""
        ...

    def read_file(self, path: Path) -> str:
        """Return the text content of *path*."""
        ...

    def write_file(self, path: Path, content: str) -> None:
        """Replace the content of *path* with *content*."""
        ...

    def list_files_recursive(self, root: Path) -> list[str]:
        """Return sorted POSIX paths of every file below *root*."""
        ...

    def list_subdirectories(self, root: Path) -> list[str]:
        """Return sorted names of the directories directly inside *root*."""
        ...

    def glob_files(self, directory: Path, pattern: str) -> list[str]:
        """Return sorted file names in *directory* matching *pattern*."""
        ...


def compile_glob(pattern: str) -> re.Pattern[str]:
    """Compile *pattern* where ``*`` is the only wildcard.

    Unlike :mod:`fnmatch`, ``?`` and ``[...]`` are matched literally so backup
    names containing brackets cannot change the meaning of a pattern.
    """
    parts = (re.escape(part) for part in pattern.split("*"))
    return re.compile(f"^{'.*'.join(parts)}$", re.DOTALL)


@dataclass(slots=True)
class LocalFileStore:
    """:class:`FileStore` backed by the local filesystem."""

    encoding: str = "utf-8"

    def is_directory(self, path: Path) -> bool:
        """Return True when *path* exists and is a directory."""
        return Path(path).is_dir()

    def ensure_directory(self, path: Path) -> None:
        """Create *path* and any missing parents."""
        Path(path).mkdir(parents=True, exist_ok=True)

    def file_exists(self, path: Path) -> bool:
        """Return True when *path* exists and is a regular file."""
        return Path(path).is_file()

    def read_file(self, path: Path) -> str:
        """Return the text content of *path*."""
        return Path(path).read_text(encoding=self.encoding)

    def write_file(self, path: Path, content: str) -> None:
        """Replace the content of *path* with *content*."""
        Path(path).write_text(content, encoding=self.encoding)

    def list_files_recursive(self, root: Path) -> list[str]:
        """Return sorted POSIX paths of every file below *root*."""
        base = Path(root)
        if not base.is_dir():
            return []
        return sorted(
            candidate.relative_to(base).as_posix()
            for candidate in base.rglob("*")
            if candidate.is_file()
        )

    def list_subdirectories(self, root: Path) -> list[str]:
        """Return sorted names of the directories directly inside *root*."""
        base = Path(root)
        try:
            entries = list(base.iterdir())
        except OSError:
            return []
        return sorted(entry.name for entry in entries if entry.is_dir())

    def glob_files(self, directory: Path, pattern: str) -> list[str]:
        """Return sorted file names in *directory* matching *pattern*."""
        base = Path(directory)
        try:
            entries = list(base.iterdir())
        except OSError:
            return []
        matcher = compile_glob(pattern)
        return sorted(
            entry.name for entry in entries if entry.is_file() and matcher.match(entry.name)
        )


__all__ = ["FileStore", "LocalFileStore", "compile_glob"]
