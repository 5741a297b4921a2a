"""Template sources: the bundled registry and user-customised directories."""
from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path, PurePosixPath
from typing import Protocol

from ..filesystem import FileStore

BUNDLED_PACKAGE = "wodctl.templates"
BUNDLED_DIRECTORY = "bundled"


class TemplateError(RuntimeError):
    """Raised when a template cannot be loaded or rendered."""


class TemplateNotFoundError(TemplateError):
    """Raised when neither a user directory nor a bundled template matches."""


@dataclass(frozen=True, slots=True)
class TemplateFile:
    """One file of a template, addressed relative to the template root."""

    relative_path: str
    content: str


class TemplateSource(Protocol):
    """Anything able to list the files of a named template."""

    def template_files(self, template_name: str) -> list[TemplateFile]:
        """Return the ordered files making up *template_name*."""
        ...


@dataclass(slots=True)
class BundledTemplateSource:
    """Templates shipped inside the wodctl package."""

    root: Traversable | None = None

    def __post_init__(self) -> None:
        """Default to the in-package ``bundled`` directory."""
        if self.root is None:
            self.root = resources.files(BUNDLED_PACKAGE) / BUNDLED_DIRECTORY

    def names(self) -> list[str]:
        """Return the sorted names of every bundled template."""
        assert self.root is not None
        if not self.root.is_dir():
            return []
        return sorted(entry.name for entry in self.root.iterdir() if entry.is_dir())

    def has_template(self, template_name: str) -> bool:
        """Return True when *template_name* is bundled."""
        return template_name in self.names()

    def template_files(self, template_name: str) -> list[TemplateFile]:
        """Return the files of bundled template *template_name*."""
        if not self.has_template(template_name):
            raise TemplateNotFoundError(f"Bundled template not found: {template_name}")
        assert self.root is not None
        base = self.root / template_name
        return [
            TemplateFile(relative_path=relative, content=entry.read_text(encoding="utf-8"))
            for relative, entry in sorted(_walk(base, PurePosixPath()))
        ]


@dataclass(slots=True)
class DirectoryTemplateSource:
    """A user-customised template directory read through the file store."""

    directory: Path
    files: FileStore

    def template_files(self, template_name: str) -> list[TemplateFile]:
        """Return every file below the directory; *template_name* is implied."""
        return [
            TemplateFile(
                relative_path=relative,
                content=self.files.read_file(self.directory / relative),
            )
            for relative in self.files.list_files_recursive(self.directory)
        ]


def resolve_template_source(
    template_name: str,
    files: FileStore,
    templates_dir: Path,
    *,
    bundled: BundledTemplateSource | None = None,
) -> TemplateSource:
    """Pick the source for *template_name*.

    A directory ``<templates_dir>/<template_name>`` takes precedence over the
    bundled template of the same name.
    """
    user_dir = templates_dir / template_name
    if files.is_directory(user_dir):
        return DirectoryTemplateSource(user_dir, files)
    registry = bundled or BundledTemplateSource()
    if registry.has_template(template_name):
        return registry
    raise TemplateNotFoundError(f"Template not found: {template_name}")


def install_bundled_templates(
    files: FileStore,
    templates_dir: Path,
    *,
    bundled: BundledTemplateSource | None = None,
) -> list[Path]:
    """Copy every bundled template below *templates_dir* for customisation."""
    registry = bundled or BundledTemplateSource()
    written: list[Path] = []
    for name in registry.names():
        template_dir = templates_dir / name
        files.ensure_directory(template_dir)
        for template_file in registry.template_files(name):
            destination = template_dir / template_file.relative_path
            files.ensure_directory(destination.parent)
            files.write_file(destination, template_file.content)
            written.append(destination)
    return written


def _walk(node: Traversable, prefix: PurePosixPath) -> Iterator[tuple[str, Traversable]]:
    for entry in node.iterdir():
        if entry.name.startswith(".") or entry.name == "__pycache__":
            continue
        relative = prefix / entry.name
        if entry.is_dir():
            yield from _walk(entry, relative)
        else:
            yield relative.as_posix(), entry


__all__ = [
    "BundledTemplateSource",
    "DirectoryTemplateSource",
    "TemplateError",
    "TemplateFile",
    "TemplateNotFoundError",
    "TemplateSource",
    "install_bundled_templates",
    "resolve_template_source",
]
