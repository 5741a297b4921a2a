"""Configuration loader for wodctl.

Two independent resolutions live here.

``load_config`` builds the tool-wide :class:`AppConfig` by merging, in order:

1. Built-in defaults.
2. ``~/.config/wod/config.yml`` (or an override path).
3. Environment variables prefixed with ``WOD_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export WOD_HOME=/srv/wod
    export WOD_DOCKER__CLI_IMAGE=wordpress:cli-php8.2

``resolve_create_config`` builds the per-instance :class:`CreateConfig` with
the precedence *override > environment > default*, reading the unprefixed
variables the tool has always honoured (``PHP_VERSION``, ``HTTPS_PORT``, ...).

Both functions accept an explicit environment snapshot so resolution stays pure
and testable. Environment values are coerced via PyYAML's ``safe_load`` so that
booleans and numbers are parsed naturally; paths and user specs are kept as
written (see ``TEXT_ENV_KEYS``).
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load wodctl configuration. Install with "
        "`pip install wodctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "WOD_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
# Read verbatim from the environment: YAML would turn ``~`` into null and
# ``33:33`` into the base-60 integer 2013.
TEXT_ENV_KEYS: frozenset[tuple[str, ...]] = frozenset(
    {
        ("home",),
        ("templates_dir",),
        ("logs_dir",),
        ("docker", "bin"),
        ("docker", "cli_image"),
        ("docker", "cli_user"),
        ("restore", "owner"),
    }
)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DockerConfig:
    """Docker binaries and the one-shot wp-cli image."""

    bin: str = "docker"
    cli_image: str = "wordpress:cli"
    cli_user: str = "33:33"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"bin": self.bin, "cli_image": self.cli_image, "cli_user": self.cli_user}


@dataclass(frozen=True)
class RestoreConfig:
    """Ownership applied to restored site content."""

    owner: str = "www-data:www-data"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"owner": self.owner}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for wodctl."""

    config_file: Path
    home: Path
    templates_dir: Path
    logs_dir: Path
    startup_wait: float
    sudo_bin: str
    docker: DockerConfig
    restore: RestoreConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "home": str(self.home),
            "templates_dir": str(self.templates_dir),
            "logs_dir": str(self.logs_dir),
            "startup_wait": self.startup_wait,
            "sudo_bin": self.sudo_bin,
            "docker": self.docker.to_dict(),
            "restore": self.restore.to_dict(),
        }

    def elevated(self, *args: str) -> list[str]:
        """Return *args* prefixed with the privilege escalation command."""
        if self.sudo_bin:
            return [self.sudo_bin, *args]
        return list(args)


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/wod/config.yml",
    "home": "~/wod",
    "templates_dir": None,  # derived from home when absent
    "logs_dir": None,  # derived from home when absent
    "startup_wait": 10.0,
    "sudo_bin": "sudo",
    "docker": {
        "bin": "docker",
        "cli_image": "wordpress:cli",
        "cli_user": "33:33",
    },
    "restore": {
        "owner": "www-data:www-data",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def instance_dir(config: AppConfig, name: str) -> Path:
    """Return the directory holding every artifact of instance *name*."""
    return config.home / name


# Per-instance configuration -------------------------------------------------

CREATE_DEFAULTS: dict[str, str] = {
    "wordpress_version": "6.9.1",
    "php_version": "8.5",
    "mysql_version": "5.7",
    "template_name": "default",
    "http_port": "8000",
    "https_port": "8443",
}

CREATE_ENV_VARS: dict[str, str] = {
    "wordpress_version": "WORDPRESS_VERSION",
    "php_version": "PHP_VERSION",
    "mysql_version": "MYSQL_VERSION",
    "template_name": "TEMPLATE_NAME",
    "http_port": "HTTP_PORT",
    "https_port": "HTTPS_PORT",
    "site_url": "SITEURL",
}


@dataclass(frozen=True)
class CreateConfig:
    """Versions, template, and endpoints for one instance."""

    wordpress_version: str
    php_version: str
    mysql_version: str
    template_name: str
    http_port: int
    https_port: int
    site_url: str

    @property
    def wordpress_tag(self) -> str:
        """Upstream image tag the build context starts from."""
        return f"{self.wordpress_version}-php{self.php_version}-apache"

    @property
    def wordpress_custom_image_tag(self) -> str:
        """Tag of the locally built application image."""
        return f"{self.wordpress_version}-php{self.php_version}-custom"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "wordpress_version": self.wordpress_version,
            "php_version": self.php_version,
            "mysql_version": self.mysql_version,
            "template_name": self.template_name,
            "http_port": self.http_port,
            "https_port": self.https_port,
            "site_url": self.site_url,
        }


def resolve_create_config(
    overrides: Mapping[str, object] | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> CreateConfig:
    """Resolve a :class:`CreateConfig` from *overrides*, *env*, and defaults.

    Ports are resolved first because the default site URL embeds the HTTPS
    port.
    """
    resolved_env = dict(os.environ if env is None else env)
    supplied = {key: value for key, value in (overrides or {}).items() if value is not None}
    unknown = set(supplied) - set(CREATE_ENV_VARS)
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown create configuration keys: {joined}.")

    def pick(key: str) -> object | None:
        if key in supplied:
            return supplied[key]
        env_value = resolved_env.get(CREATE_ENV_VARS[key])
        if env_value is not None and env_value.strip():
            return env_value.strip()
        return CREATE_DEFAULTS.get(key)

    http_port = _expect_port(pick("http_port"), "http_port")
    https_port = _expect_port(pick("https_port"), "https_port")
    site_url = pick("site_url") or f"https://127.0.0.1:{https_port}"

    return CreateConfig(
        wordpress_version=_expect_str(pick("wordpress_version"), "wordpress_version"),
        php_version=_expect_str(pick("php_version"), "php_version"),
        mysql_version=_expect_str(pick("mysql_version"), "mysql_version"),
        template_name=_expect_str(pick("template_name"), "template_name"),
        http_port=http_port,
        https_port=https_port,
        site_url=_expect_str(site_url, "site_url"),
    )


# Internal helpers -----------------------------------------------------------


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    startup_wait = raw.get("startup_wait")
    if startup_wait is not None:
        _expect_non_negative_float(startup_wait, "startup_wait", default=10.0)

    docker = raw.get("docker")
    if docker is not None:
        docker_map = _as_dict(docker, "docker")
        unknown = set(docker_map.keys()) - {"bin", "cli_image", "cli_user"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown docker configuration keys: {joined}.")

    restore = raw.get("restore")
    if restore is not None:
        restore_map = _as_dict(restore, "restore")
        unknown = set(restore_map.keys()) - {"owner"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown restore configuration keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    home = _to_path(raw.get("home"))

    templates_value = raw.get("templates_dir")
    templates_dir = _to_path(templates_value) if templates_value else home / ".template"
    logs_value = raw.get("logs_dir")
    logs_dir = _to_path(logs_value) if logs_value else home / ".logs"

    startup_wait = _expect_non_negative_float(
        raw.get("startup_wait"), "startup_wait", default=10.0
    )
    sudo_value = raw.get("sudo_bin")
    sudo_bin = "" if sudo_value in (None, False) else _expect_str(sudo_value, "sudo_bin").strip()

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    docker = DockerConfig(
        bin=_expect_str(docker_mapping.get("bin", "docker"), "docker.bin"),
        cli_image=_expect_str(docker_mapping.get("cli_image", "wordpress:cli"), "docker.cli_image"),
        cli_user=_expect_user_spec(docker_mapping.get("cli_user", "33:33"), "docker.cli_user"),
    )

    restore_mapping = _as_dict(raw.get("restore"), "restore")
    restore = RestoreConfig(
        owner=_expect_user_spec(
            restore_mapping.get("owner", "www-data:www-data"), "restore.owner"
        ),
    )

    return AppConfig(
        config_file=config_file,
        home=home,
        templates_dir=templates_dir,
        logs_dir=logs_dir,
        startup_wait=startup_wait,
        sudo_bin=sudo_bin,
        docker=docker,
        restore=restore,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        if tuple(path_segments) in TEXT_ENV_KEYS:
            coerced: object = value.strip()
        else:
            coerced = _coerce_value(value)
        _assign_nested(overrides, path_segments, coerced)
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_port(value: object | None, label: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a port number. Got boolean {value!r}.")
    if isinstance(value, int):
        port = value
    elif isinstance(value, str):
        try:
            port = int(value.strip(), 10)
        except ValueError as exc:
            raise ConfigError(f"Invalid port for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be a port number. Got {value!r}.")
    if not 1 <= port <= 65535:
        raise ConfigError(f"{label} must be between 1 and 65535. Got {port}.")
    return port


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # YAML turns ``php_version: 8.2`` into a float; keep the written form.
        return str(value)
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_user_spec(value: object, key: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, int) and not isinstance(value, bool):
        raise ConfigError(
            f"Expected {key} to be a quoted user[:group] string. Got {value!r}; "
            "unquoted YAML reads values like 33:33 as a number."
        )
    raise ConfigError(f"Expected {key} to be a non-empty user[:group] string. Got {value!r}.")


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "CreateConfig",
    "DockerConfig",
    "RestoreConfig",
    "instance_dir",
    "load_config",
    "resolve_create_config",
]
