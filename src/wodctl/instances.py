"""Instance lifecycle: create, up, down, update, remove and listing.

Each operation validates its preconditions first, then runs its steps strictly
in order and stops at the first failing step. Nothing is rolled back: a create
that fails after rendering leaves the rendered files in place.
"""
from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from .config import AppConfig, CreateConfig, instance_dir
from .docker import ContainerInspector, volume_name
from .filesystem import FileStore
from .process import ProcessRunner, failure_detail
from .restore import RestoreEngine
from .templates import (
    BundledTemplateSource,
    TemplateEngine,
    TemplateError,
    build_template_variables,
    resolve_template_source,
)
from .tls import generate_self_signed_certificate

LOGGER = logging.getLogger(__name__)

ENV_FILE = ".env"
COMPOSE_FILE = "docker-compose.yml"
BUILD_DIR = "wp-php-custom"
ROLES: tuple[str, ...] = ("wordpress", "db")

INSTALL_TITLE = "Testing WordPress"
INSTALL_ADMIN_USER = "admin"
INSTALL_ADMIN_EMAIL = "admin@127.0.0.1"

DEFAULT_HTTP_PORT = 8000
DEFAULT_HTTPS_PORT = 8443

_INSTANCE_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
_ADMIN_PASSWORD_RE = re.compile(r"^Admin password:\s*(.+)$", re.MULTILINE)


def validate_instance_name(name: str) -> str:
    """Return *name* when it is safe as a directory and container filter."""
    if not _INSTANCE_NAME_RE.match(name):
        raise ValueError(
            f"Invalid instance name '{name}': use lowercase letters, digits, '-' or '_',"
            " starting with a letter or digit."
        )
    return name


def parse_admin_password(output: str) -> str | None:
    """Return the generated admin password reported by ``wp core install``."""
    match = _ADMIN_PASSWORD_RE.search(output or "")
    if not match:
        return None
    return match.group(1).strip() or None


@dataclass(frozen=True, slots=True)
class PortOverrides:
    """Host ports published by an instance; ``None`` keeps the current value."""

    http_port: int | None = None
    https_port: int | None = None

    def render(self) -> str:
        """Return the ``.env`` content, falling back to the default ports."""
        http_port = self.http_port if self.http_port is not None else DEFAULT_HTTP_PORT
        https_port = self.https_port if self.https_port is not None else DEFAULT_HTTPS_PORT
        return f"HTTP_PORT={http_port}\nHTTPS_PORT={https_port}\n"

    def merged_over(self, current: PortOverrides | None) -> PortOverrides:
        """Return these ports with gaps filled from *current*."""
        if current is None:
            return self
        return PortOverrides(
            http_port=self.http_port if self.http_port is not None else current.http_port,
            https_port=self.https_port if self.https_port is not None else current.https_port,
        )

    @classmethod
    def parse(cls, content: str) -> PortOverrides:
        """Parse ``HTTP_PORT``/``HTTPS_PORT`` lines, ignoring anything else."""
        values: dict[str, int] = {}
        for line in content.splitlines():
            key, sep, value = line.strip().partition("=")
            if not sep or key not in {"HTTP_PORT", "HTTPS_PORT"}:
                continue
            try:
                values[key] = int(value.strip())
            except ValueError:
                LOGGER.debug("Ignoring non-numeric %s value %r", key, value)
        return cls(http_port=values.get("HTTP_PORT"), https_port=values.get("HTTPS_PORT"))


@dataclass(slots=True)
class CreateResult:
    """Outcome of :meth:`InstanceOrchestrator.create`."""

    exit_code: int
    site_url: str | None = None
    admin_password: str | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class UpResult:
    """Outcome of :meth:`InstanceOrchestrator.up`."""

    exit_code: int
    site_url: str | None = None
    error: str | None = None


@dataclass(slots=True)
class DownResult:
    """Outcome of :meth:`InstanceOrchestrator.down`."""

    exit_code: int
    error: str | None = None


@dataclass(slots=True)
class UpdateResult:
    """Outcome of :meth:`InstanceOrchestrator.update`."""

    exit_code: int
    site_url: str | None = None
    error: str | None = None


@dataclass(slots=True)
class RemoveResult:
    """Outcome of :meth:`InstanceOrchestrator.remove`."""

    exit_code: int
    error: str | None = None


@dataclass(frozen=True, slots=True)
class InstanceInfo:
    """Observed state of one instance directory."""

    name: str
    db_running: bool | None
    wordpress_running: bool | None
    site_url: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "name": self.name,
            "db_running": self.db_running,
            "wordpress_running": self.wordpress_running,
            "site_url": self.site_url,
        }


@dataclass(slots=True)
class InstanceListing:
    """Every instance below the home directory plus the daemon state."""

    docker_running: bool
    instances: list[InstanceInfo] = field(default_factory=list)


@dataclass(slots=True)
class WpCommand:
    """A ready-to-run wp-cli passthrough, or the reason there is none."""

    command: list[str] | None
    exit_code: int
    error: str | None = None


@dataclass(slots=True)
class InstanceOrchestrator:
    """Drive instance directories and their compose stacks."""

    runner: ProcessRunner
    files: FileStore
    config: AppConfig
    inspector: ContainerInspector
    restorer: RestoreEngine
    templates: TemplateEngine = field(default_factory=TemplateEngine)
    sleep: Callable[[float], None] = time.sleep
    bundled: BundledTemplateSource | None = None

    # create ----------------------------------------------------------------
    def create(
        self,
        name: str,
        create_config: CreateConfig,
        backup_dir: Path | None = None,
    ) -> CreateResult:
        """Provision, start and install a new instance.

        When *backup_dir* is given it is restored after the install and the
        stored site and home URLs are pointed back at the configured URL. The
        admin password from the install is reported either way.
        """
        root = instance_dir(self.config, name)
        if self.files.is_directory(root):
            return CreateResult(1, error=f"Directory already exists: {root}")
        for role in ROLES:
            if self.inspector.container_exists(name, role):
                return CreateResult(1, error=f"Docker container already exists for {name} {role}")
        volume = volume_name(name)
        if self.inspector.volume_exists(volume):
            return CreateResult(1, error=f"Docker volume already exists: {volume}")
        if backup_dir is not None and not self.files.is_directory(backup_dir):
            return CreateResult(1, error=f"Backup directory does not exist: {backup_dir}")

        try:
            source = resolve_template_source(
                create_config.template_name,
                self.files,
                self.config.templates_dir,
                bundled=self.bundled,
            )
        except TemplateError as exc:
            return CreateResult(1, error=str(exc))

        self.files.ensure_directory(root)
        try:
            self.templates.render(
                create_config.template_name,
                root,
                build_template_variables(create_config),
                source,
                self.files,
            )
        except TemplateError as exc:
            return CreateResult(1, error=f"Template rendering failed: {exc}")

        ports = PortOverrides(create_config.http_port, create_config.https_port)
        self.files.write_file(root / ENV_FILE, ports.render())

        build_dir = root / BUILD_DIR
        self.files.ensure_directory(build_dir)
        generate_self_signed_certificate(self.runner, build_dir)

        LOGGER.info("Starting %s", name)
        started = self.inspector.compose(root, "up", "--build", "-d")
        if started.returncode != 0:
            return CreateResult(
                started.returncode,
                error=f"docker compose up failed: {failure_detail(started)}",
            )

        self.sleep(self.config.startup_wait)

        container_id = self.inspector.find_container(name, "wordpress")
        if not container_id:
            return CreateResult(1, error="WordPress container not found after compose up")

        environment = self.inspector.runtime_environment(container_id)
        site_url = create_config.site_url
        installed = self.runner.run(
            self.inspector.wp_cli_command(
                container_id,
                environment,
                [
                    "core",
                    "install",
                    f"--url={site_url}",
                    f"--title={INSTALL_TITLE}",
                    f"--admin_user={INSTALL_ADMIN_USER}",
                    f"--admin_email={INSTALL_ADMIN_EMAIL}",
                ],
            )
        )
        if installed.returncode != 0:
            return CreateResult(
                installed.returncode,
                error=f"wp core install failed: {failure_detail(installed)}",
            )
        admin_password = parse_admin_password(installed.stdout)

        if backup_dir is None:
            return CreateResult(0, site_url=site_url, admin_password=admin_password)

        restored = self.restorer.restore(name, backup_dir)
        if not restored.ok:
            return CreateResult(
                restored.exit_code,
                admin_password=admin_password,
                error=restored.error,
                warnings=restored.warnings,
            )

        for option, label in (("siteurl", "siteurl"), ("home", "home URL")):
            updated = self.runner.run(
                self.inspector.wp_cli_command(
                    container_id, environment, ["option", "set", option, site_url]
                )
            )
            if updated.returncode != 0:
                return CreateResult(
                    updated.returncode,
                    admin_password=admin_password,
                    error=f"Failed to set {label}: {failure_detail(updated)}",
                    warnings=restored.warnings,
                )

        return CreateResult(
            0,
            site_url=site_url,
            admin_password=admin_password,
            warnings=restored.warnings,
        )

    # up / down -------------------------------------------------------------
    def up(self, name: str, ports: PortOverrides | None = None) -> UpResult:
        """Start an existing instance, optionally republishing its ports."""
        root = instance_dir(self.config, name)
        if not self.files.is_directory(root):
            return UpResult(1, error=f"Instance directory does not exist: {root}")

        if ports is not None:
            effective = ports.merged_over(self.read_ports(name))
            self.files.write_file(root / ENV_FILE, effective.render())

        started = self.inspector.compose(root, "up", "-d")
        if started.returncode != 0:
            return UpResult(
                started.returncode,
                error=f"docker compose up failed: {failure_detail(started)}",
            )
        return UpResult(0, site_url=self.inspector.resolve_site_url(name))

    def down(self, name: str) -> DownResult:
        """Stop an instance; the compose exit code is passed through."""
        root = instance_dir(self.config, name)
        if not self.files.is_directory(root):
            return DownResult(1, error=f"Instance directory does not exist: {root}")
        stopped = self.inspector.compose(root, "down")
        if stopped.returncode != 0:
            return DownResult(
                stopped.returncode,
                error=f"docker compose down failed: {failure_detail(stopped)}",
            )
        return DownResult(0)

    # update ----------------------------------------------------------------
    def update(self, name: str, create_config: CreateConfig) -> UpdateResult:
        """Stop, re-render and rebuild an instance; ``.env`` is left alone."""
        root = instance_dir(self.config, name)
        if not self.files.is_directory(root):
            return UpdateResult(1, error=f"Instance directory does not exist: {root}")

        try:
            source = resolve_template_source(
                create_config.template_name,
                self.files,
                self.config.templates_dir,
                bundled=self.bundled,
            )
        except TemplateError as exc:
            return UpdateResult(1, error=str(exc))

        stopped = self.inspector.compose(root, "down")
        if stopped.returncode != 0:
            return UpdateResult(
                stopped.returncode,
                error=f"docker compose down failed: {failure_detail(stopped)}",
            )

        try:
            self.templates.render(
                create_config.template_name,
                root,
                build_template_variables(create_config),
                source,
                self.files,
            )
        except TemplateError as exc:
            return UpdateResult(1, error=str(exc))

        started = self.inspector.compose(root, "up", "--build", "-d")
        if started.returncode != 0:
            return UpdateResult(
                started.returncode,
                error=f"docker compose up failed: {failure_detail(started)}",
            )
        return UpdateResult(0, site_url=create_config.site_url)

    # remove ----------------------------------------------------------------
    def remove(self, name: str) -> RemoveResult:
        """Stop an instance, delete its directory and its database volume."""
        root = instance_dir(self.config, name)
        if not self.files.is_directory(root):
            return RemoveResult(1, error=f"Instance directory does not exist: {root}")

        if self.files.file_exists(root / COMPOSE_FILE):
            stopped = self.inspector.compose(root, "down")
            if stopped.returncode != 0:
                return RemoveResult(
                    stopped.returncode,
                    error=f"docker compose down failed: {failure_detail(stopped)}",
                )

        deleted = self.runner.run(self.config.elevated("rm", "-rf", str(root)))
        if deleted.returncode != 0:
            return RemoveResult(
                deleted.returncode,
                error=f"Failed to remove directory: {failure_detail(deleted)}",
            )

        volume = volume_name(name)
        if self.inspector.volume_exists(volume):
            dropped = self.inspector.remove_volume(volume)
            if dropped.returncode != 0:
                return RemoveResult(
                    dropped.returncode,
                    error=f"Failed to remove volume: {failure_detail(dropped)}",
                )
        return RemoveResult(0)

    # queries ---------------------------------------------------------------
    def list_instances(self) -> InstanceListing:
        """Return every instance directory with its container state.

        Container state is ``None`` when the docker daemon is unreachable.
        The site URL is only looked up when both containers run.
        """
        self.files.ensure_directory(self.config.home)
        names = [
            entry
            for entry in self.files.list_subdirectories(self.config.home)
            if not entry.startswith(".")
        ]
        if not names:
            return InstanceListing(docker_running=False)

        docker_running = self.inspector.docker_is_running()
        listing = InstanceListing(docker_running=docker_running)
        for name in names:
            if not docker_running:
                listing.instances.append(InstanceInfo(name, None, None))
                continue
            db_running = self.inspector.container_is_running(name, "db")
            wordpress_running = self.inspector.container_is_running(name, "wordpress")
            site_url = (
                self.inspector.resolve_site_url(name)
                if db_running and wordpress_running
                else None
            )
            listing.instances.append(InstanceInfo(name, db_running, wordpress_running, site_url))
        return listing

    def wp_command(self, name: str, wp_args: list[str], *, tty: bool = False) -> WpCommand:
        """Build a wp-cli invocation against the running instance *name*."""
        container_id = self.inspector.find_wordpress_container(name)
        if not container_id:
            return WpCommand(None, 1, f"No running WordPress container found for {name}")
        environment = self.inspector.runtime_environment(container_id)
        command = self.inspector.wp_cli_command(
            container_id, environment, wp_args, stdin=True, tty=tty
        )
        return WpCommand(command, 0)

    def read_ports(self, name: str) -> PortOverrides | None:
        """Return the ports recorded in the instance ``.env``, if present."""
        env_path = instance_dir(self.config, name) / ENV_FILE
        if not self.files.file_exists(env_path):
            return None
        return PortOverrides.parse(self.files.read_file(env_path))


__all__ = [
    "BUILD_DIR",
    "COMPOSE_FILE",
    "CreateResult",
    "DownResult",
    "ENV_FILE",
    "InstanceInfo",
    "InstanceListing",
    "InstanceOrchestrator",
    "PortOverrides",
    "RemoveResult",
    "UpResult",
    "UpdateResult",
    "WpCommand",
    "parse_admin_password",
    "validate_instance_name",
]
