"""Restore UpdraftPlus-style backups into an existing instance.

A backup directory holds zip archives per content type (``plugins``,
``themes``, ``uploads``, ``others``; any of them may be split into several
parts) and at most one gzip-compressed SQL dump. Missing pieces are reported
as warnings; everything that is present is restored.
"""
from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from .config import AppConfig, instance_dir
from .docker import ContainerInspector
from .filesystem import FileStore
from .process import ProcessRunner, failure_detail

LOGGER = logging.getLogger(__name__)

CONTENT_TYPES: tuple[str, ...] = ("plugins", "themes", "uploads", "others")
DATABASE_PATTERNS: tuple[str, ...] = ("backup*-db.gz", "*.sql.gz")
HEADER_LINES = 50

_TABLE_PREFIX_RE = re.compile(r"^#\s*Table prefix:\s*(.+)$", re.IGNORECASE)
_SAFE_TABLE_PREFIX_RE = re.compile(r"^[A-Za-z0-9_]+$")

SQL_MODE_PRAGMA = (
    "/*!40101 SET sql_mode='ONLY_FULL_GROUP_BY,NO_ZERO_IN_DATE,"
    "ERROR_FOR_DIVISION_BY_ZERO,NO_AUTO_CREATE_USER,NO_ENGINE_SUBSTITUTION' */;"
)
# Applied in order to the decompressed dump before it reaches ``wp db import``.
SQL_TRANSFORMS: tuple[str, ...] = (
    f"/^# -----/a\\{SQL_MODE_PRAGMA}",
    r"/^\/\*M!/d",
)


def archive_pattern(content_type: str) -> str:
    """Return the file name pattern of archives holding *content_type*."""
    return f"backup*-{content_type}*.zip"


@dataclass(slots=True)
class RestoreResult:
    """Outcome of a restore; warnings never change the exit code."""

    exit_code: int
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return True when the restore completed."""
        return self.exit_code == 0


@dataclass(slots=True)
class BackupSet:
    """Files of a backup directory, grouped by what they restore."""

    directory: Path
    archives: dict[str, list[str]]
    database: str | None

    def archive_paths(self, content_type: str) -> list[Path]:
        """Return the sorted archive paths for *content_type*."""
        return [self.directory / name for name in self.archives.get(content_type, [])]

    @property
    def warnings(self) -> list[str]:
        """Return one warning per content type without archives."""
        return [
            f"No {content_type} backup found ({archive_pattern(content_type)})"
            for content_type in CONTENT_TYPES
            if not self.archives.get(content_type)
        ]

    @property
    def database_path(self) -> Path | None:
        """Return the path of the selected database dump."""
        return self.directory / self.database if self.database else None


def discover_backup_set(files: FileStore, backup_dir: Path) -> BackupSet:
    """Group the files of *backup_dir* into a :class:`BackupSet`.

    The database dump is the first match of the specific UpdraftPlus name,
    falling back to any ``*.sql.gz``.
    """
    archives = {
        content_type: sorted(files.glob_files(backup_dir, archive_pattern(content_type)))
        for content_type in CONTENT_TYPES
    }
    database: str | None = None
    for pattern in DATABASE_PATTERNS:
        matches = sorted(files.glob_files(backup_dir, pattern))
        if matches:
            database = matches[0]
            break
    return BackupSet(directory=backup_dir, archives=archives, database=database)


def read_table_prefix(header: str) -> str | None:
    """Return the ``Table prefix`` recorded in the leading comment block."""
    for line in header.splitlines():
        if not line.startswith("#"):
            break
        match = _TABLE_PREFIX_RE.match(line)
        if match:
            return match.group(1).strip() or None
    return None


def table_prefix_expression(prefix: str) -> str:
    """Return the sed expression rewriting ``$table_prefix`` to *prefix*."""
    return rf"s/\$table_prefix = '[^']*'/\$table_prefix = '{prefix}'/"


@dataclass(slots=True)
class RestoreEngine:
    """Restore content archives and a database dump into an instance."""

    runner: ProcessRunner
    files: FileStore
    config: AppConfig
    inspector: ContainerInspector

    def restore(self, name: str, backup_dir: Path) -> RestoreResult:
        """Restore *backup_dir* into instance *name*."""
        root = instance_dir(self.config, name)
        backup_dir = Path(backup_dir)
        warnings: list[str] = []

        if not self.files.is_directory(root):
            return RestoreResult(1, f"Instance directory does not exist: {root}", warnings)
        if not self.files.is_directory(backup_dir):
            return RestoreResult(1, f"Backup directory does not exist: {backup_dir}", warnings)

        backup = discover_backup_set(self.files, backup_dir)
        warnings.extend(backup.warnings)
        content_root = root / "site" / "wp-content"

        for content_type in CONTENT_TYPES:
            archives = backup.archive_paths(content_type)
            if not archives:
                continue

            destination = content_root / content_type
            if self.files.is_directory(destination):
                removed = self.runner.run(self.config.elevated("rm", "-rf", str(destination)))
                if removed.returncode != 0:
                    return RestoreResult(
                        removed.returncode,
                        f"Failed to remove {destination}: {failure_detail(removed)}",
                        warnings,
                    )

            for archive in archives:
                LOGGER.info("Extracting %s", archive.name)
                extracted = self.runner.run(
                    self.config.elevated("unzip", "-od", str(content_root), str(archive))
                )
                if extracted.returncode != 0:
                    return RestoreResult(
                        extracted.returncode,
                        f"Failed to extract {archive}: {failure_detail(extracted)}",
                        warnings,
                    )

        chowned = self.runner.run(
            self.config.elevated("chown", "-R", self.config.restore.owner, str(content_root))
        )
        if chowned.returncode != 0:
            return RestoreResult(
                chowned.returncode,
                f"Failed to fix permissions: {failure_detail(chowned)}",
                warnings,
            )

        dump = backup.database_path
        if dump is None:
            warnings.append("No database backup found")
            return RestoreResult(0, None, warnings)

        prefix = self._read_dump_prefix(dump)
        if prefix is not None:
            if _SAFE_TABLE_PREFIX_RE.match(prefix):
                config_path = root / "site" / "wp-config.php"
                rewritten = self.runner.run(
                    self.config.elevated(
                        "sed", "-i", table_prefix_expression(prefix), str(config_path)
                    )
                )
                if rewritten.returncode != 0:
                    return RestoreResult(
                        rewritten.returncode,
                        f"Failed to update table prefix: {failure_detail(rewritten)}",
                        warnings,
                    )
            else:
                warnings.append(f"Ignoring unsupported table prefix in dump header: {prefix!r}")

        container_id = self.inspector.find_container(name, "wordpress")
        if not container_id:
            return RestoreResult(1, "WordPress container not found", warnings)

        environment = self.inspector.runtime_environment(container_id)
        LOGGER.info("Importing database from %s", dump.name)
        imported = self.runner.run(
            ["bash", "-o", "pipefail", "-c", self._import_pipeline(dump, container_id, environment)]
        )
        if imported.returncode != 0:
            return RestoreResult(
                imported.returncode,
                f"Database import failed: {failure_detail(imported)}",
                warnings,
            )

        return RestoreResult(0, None, warnings)

    # ------------------------------------------------------------------
    def _read_dump_prefix(self, dump: Path) -> str | None:
        header = self.runner.run(
            ["bash", "-c", f"zcat {shlex.quote(str(dump))} | head -{HEADER_LINES}"]
        )
        if header.returncode != 0:
            LOGGER.debug("Could not read header of %s: %s", dump, failure_detail(header))
            return None
        return read_table_prefix(header.stdout or "")

    def _import_pipeline(self, dump: Path, container_id: str, environment: list[str]) -> str:
        sed_command = ["sed"]
        for transform in SQL_TRANSFORMS:
            sed_command.extend(["-e", transform])
        import_command = self.inspector.wp_cli_command(
            container_id, environment, ["db", "import", "-"], stdin=True
        )
        return " | ".join(
            [
                f"zcat {shlex.quote(str(dump))}",
                shlex.join(sed_command),
                shlex.join(import_command),
            ]
        )


__all__ = [
    "BackupSet",
    "CONTENT_TYPES",
    "RestoreEngine",
    "RestoreResult",
    "archive_pattern",
    "discover_backup_set",
    "read_table_prefix",
    "table_prefix_expression",
]
