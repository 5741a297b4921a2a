"""Container and volume inspection for wodctl instances."""
from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig
from .process import ProcessRunner

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "WORDPRESS"

# Connection settings the bundled compose files use. wp-cli can still reach
# the database when nothing is harvested from the running container.
BASELINE_ENVIRONMENT: tuple[str, ...] = (
    "WORDPRESS_DB_HOST=db:3306",
    "WORDPRESS_DB_USER=wordpress",
    "WORDPRESS_DB_PASSWORD=wordpress",
    "WORDPRESS_DB_NAME=wordpress",
)


def volume_name(instance: str) -> str:
    """Return the compose-managed database volume of *instance*."""
    return f"{instance}_db_data"


def container_filter(instance: str, role: str) -> str:
    """Return the ``docker container ls`` name filter for *role* of *instance*."""
    return f"name={instance}-{role}-"


def merge_environment(*groups: Sequence[str]) -> list[str]:
    """Merge ``KEY=VALUE`` entries; later values win, first-seen order is kept."""
    merged: dict[str, str] = {}
    for group in groups:
        for entry in group:
            key, sep, _ = entry.partition("=")
            if not sep or not key:
                continue
            merged[key] = entry
    return list(merged.values())


@dataclass(slots=True)
class ContainerInspector:
    """Answer questions about an instance's containers through the docker CLI."""

    runner: ProcessRunner
    docker_bin: str = "docker"
    cli_image: str = "wordpress:cli"
    cli_user: str = "33:33"

    @classmethod
    def from_config(cls, runner: ProcessRunner, config: AppConfig) -> ContainerInspector:
        """Build an inspector using the docker settings of *config*."""
        return cls(
            runner=runner,
            docker_bin=config.docker.bin,
            cli_image=config.docker.cli_image,
            cli_user=config.docker.cli_user,
        )

    # Queries ---------------------------------------------------------------
    def docker_is_running(self) -> bool:
        """Return True when the docker daemon answers."""
        return self.runner.run([self.docker_bin, "version"]).returncode == 0

    def container_is_running(self, instance: str, role: str) -> bool:
        """Return True when a running container matches *role* of *instance*."""
        return self._has_output(
            [self.docker_bin, "container", "ls", "-qf", container_filter(instance, role)]
        )

    def container_exists(self, instance: str, role: str) -> bool:
        """Return True when any container, running or not, matches *role*."""
        return self._has_output(
            [self.docker_bin, "container", "ls", "-aqf", container_filter(instance, role)]
        )

    def volume_exists(self, name: str) -> bool:
        """Return True when the docker volume *name* exists."""
        return self._has_output([self.docker_bin, "volume", "ls", "-qf", f"name={name}"])

    def find_container(self, instance: str, role: str) -> str | None:
        """Return the id of the running container for *role*, if any."""
        result = self.runner.run(
            [self.docker_bin, "container", "ls", "-qf", container_filter(instance, role)]
        )
        if result.returncode != 0:
            return None
        lines = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
        return lines[0] if lines else None

    def find_wordpress_container(self, instance: str) -> str | None:
        """Locate the application container, tolerating legacy project names.

        Older compose releases dropped hyphens from project names, so the
        lookup is retried with them stripped.
        """
        container_id = self.find_container(instance, "wordpress")
        if container_id:
            return container_id
        stripped = instance.replace("-", "")
        if stripped != instance:
            return self.find_container(stripped, "wordpress")
        return None

    def runtime_environment(self, container_id: str) -> list[str]:
        """Return the ``WORDPRESS*`` variables of *container_id* over the baseline."""
        result = self.runner.run([self.docker_bin, "exec", container_id, "env"])
        extracted: list[str] = []
        if result.returncode == 0:
            extracted = [
                line.strip()
                for line in (result.stdout or "").splitlines()
                if line.startswith(ENV_PREFIX)
            ]
        else:
            LOGGER.debug("Could not read environment of %s; using baseline.", container_id)
        return merge_environment(BASELINE_ENVIRONMENT, extracted)

    def wp_cli_command(
        self,
        container_id: str,
        environment: Sequence[str],
        wp_args: Sequence[str],
        *,
        stdin: bool = False,
        tty: bool = False,
    ) -> list[str]:
        """Return a one-shot wp-cli invocation sharing *container_id*'s namespaces."""
        command = [self.docker_bin, "run"]
        if stdin:
            command.append("-it" if tty else "-i")
        command.append("--rm")
        for entry in environment:
            command.extend(["--env", entry])
        command.extend(
            [
                "--volumes-from",
                container_id,
                "--network",
                f"container:{container_id}",
                "--user",
                self.cli_user,
                self.cli_image,
                "wp",
                *wp_args,
            ]
        )
        return command

    def resolve_site_url(self, instance: str) -> str | None:
        """Return the site URL stored in the running instance, if obtainable."""
        container_id = self.find_container(instance, "wordpress")
        if not container_id:
            return None
        environment = self.runtime_environment(container_id)
        result = self.runner.run(
            self.wp_cli_command(container_id, environment, ["option", "get", "siteurl"])
        )
        if result.returncode != 0:
            return None
        return (result.stdout or "").strip() or None

    # Lifecycle -------------------------------------------------------------
    def compose(self, instance_path: Path, *args: str) -> subprocess.CompletedProcess[str]:
        """Run ``docker compose <args>`` inside *instance_path*."""
        return self.runner.run([self.docker_bin, "compose", *args], cwd=instance_path)

    def remove_volume(self, name: str) -> subprocess.CompletedProcess[str]:
        """Remove the docker volume *name*."""
        return self.runner.run([self.docker_bin, "volume", "rm", name])

    # ------------------------------------------------------------------
    def _has_output(self, command: list[str]) -> bool:
        result = self.runner.run(command)
        return result.returncode == 0 and bool((result.stdout or "").strip())


__all__ = [
    "BASELINE_ENVIRONMENT",
    "ContainerInspector",
    "container_filter",
    "merge_environment",
    "volume_name",
]
