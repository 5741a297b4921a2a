"""Instance orchestrator tests."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeRunner, SleepRecorder

from wodctl.config import AppConfig, CreateConfig, resolve_create_config
from wodctl.instances import (
    InstanceOrchestrator,
    PortOverrides,
    parse_admin_password,
    validate_instance_name,
)

SITE_URL = "https://127.0.0.1:8443"
INSTALL_OUTPUT = "Success: WordPress installed successfully.\nAdmin password: xK7$m2pQ\n"


def _create_config(**overrides: object) -> CreateConfig:
    values: dict[str, object] = {
        "template_name": "php8.2",
        "wordpress_version": "6.7.1",
        "php_version": "8.2",
    }
    values.update(overrides)
    return resolve_create_config(values, env={})


def _mock_create(fake_runner: FakeRunner) -> None:
    fake_runner.on("openssl")
    fake_runner.on("docker", "compose")
    fake_runner.on("docker", "container", "ls", "-qf", stdout="abc123\n")
    fake_runner.on("docker", "exec", "abc123", "env", stdout="WORDPRESS_DB_HOST=db:3306\n")
    fake_runner.on("docker", "run", stdout=INSTALL_OUTPUT)


def _make_instance(app_config: AppConfig, name: str = "demo", *, compose: bool = True) -> Path:
    root = app_config.home / name
    root.mkdir(parents=True)
    if compose:
        (root / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    (root / ".env").write_text("HTTP_PORT=8100\nHTTPS_PORT=8543\n", encoding="utf-8")
    return root


# create ----------------------------------------------------------------------


def test_create_fresh_instance_succeeds(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    sleeps: SleepRecorder,
    app_config: AppConfig,
) -> None:
    """A clean create renders, starts, installs and reports the password."""
    _mock_create(fake_runner)

    result = orchestrator.create("demo", _create_config())

    assert result.exit_code == 0
    assert result.site_url == SITE_URL
    assert result.admin_password == "xK7$m2pQ"
    assert result.error is None

    root = app_config.home / "demo"
    assert (root / ".env").read_text() == "HTTP_PORT=8000\nHTTPS_PORT=8443\n"
    assert "wordpress:6.7.1-php8.2-custom" in (root / "docker-compose.yml").read_text()
    assert (root / "wp-php-custom" / "Dockerfile").read_text().startswith(
        "FROM wordpress:6.7.1-php8.2-apache"
    )
    assert sleeps.durations == [10.0]

    assert ["docker", "compose", "up", "--build", "-d"] in fake_runner.commands
    assert (["docker", "compose", "up", "--build", "-d"], root) in fake_runner.calls
    assert fake_runner.index_of("openssl") < fake_runner.index_of("docker", "compose")
    install = fake_runner.find("docker", "run")[0]
    assert install[-6:] == [
        "core",
        "install",
        f"--url={SITE_URL}",
        "--title=Testing WordPress",
        "--admin_user=admin",
        "--admin_email=admin@127.0.0.1",
    ]
    assert "--volumes-from" in install
    assert "WORDPRESS_DB_NAME=wordpress" in install


def test_create_existing_directory_makes_no_process_calls(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """An existing instance directory is rejected before anything runs."""
    _make_instance(app_config)

    result = orchestrator.create("demo", _create_config())

    assert result.exit_code == 1
    assert result.error == f"Directory already exists: {app_config.home / 'demo'}"
    assert fake_runner.calls == []


@pytest.mark.parametrize(
    ("mock", "message"),
    [
        (
            ("docker", "container", "ls", "-aqf", "name=demo-wordpress-"),
            "Docker container already exists for demo wordpress",
        ),
        (
            ("docker", "container", "ls", "-aqf", "name=demo-db-"),
            "Docker container already exists for demo db",
        ),
        (("docker", "volume", "ls"), "Docker volume already exists: demo_db_data"),
    ],
)
def test_create_rejects_leftover_docker_resources(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
    mock: tuple[str, ...],
    message: str,
) -> None:
    """Leftover containers or volumes stop create before any write."""
    fake_runner.on(*mock, stdout="leftover\n")

    result = orchestrator.create("demo", _create_config())

    assert result.exit_code == 1
    assert result.error == message
    assert not (app_config.home / "demo").exists()
    assert fake_runner.find("docker", "compose") == []


def test_create_checks_backup_directory(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
    tmp_path: Path,
) -> None:
    """A supplied backup directory must exist."""
    result = orchestrator.create("demo", _create_config(), tmp_path / "missing")

    assert result.exit_code == 1
    assert result.error == f"Backup directory does not exist: {tmp_path / 'missing'}"
    assert not (app_config.home / "demo").exists()


def test_create_unknown_template_writes_nothing(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """Template resolution fails before the instance directory is created."""
    result = orchestrator.create("demo", _create_config(template_name="nope"))

    assert result.exit_code == 1
    assert result.error == "Template not found: nope"
    assert not (app_config.home / "demo").exists()


def test_create_compose_failure_short_circuits(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    sleeps: SleepRecorder,
    app_config: AppConfig,
) -> None:
    """A failed bring-up stops before lookup and install; files stay behind."""
    _mock_create(fake_runner)
    fake_runner.on("docker", "compose", returncode=2, stderr="port is already allocated")

    result = orchestrator.create("demo", _create_config())

    assert result.exit_code == 2
    assert result.error == "docker compose up failed: port is already allocated"
    assert fake_runner.find("docker", "container", "ls", "-qf") == []
    assert fake_runner.find("docker", "run") == []
    assert sleeps.durations == []
    assert (app_config.home / "demo" / "docker-compose.yml").exists()


def test_create_certificate_failure_is_not_fatal(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
) -> None:
    """The certificate step is best effort."""
    _mock_create(fake_runner)
    fake_runner.on("openssl", returncode=1, stderr="no openssl")

    assert orchestrator.create("demo", _create_config()).exit_code == 0


def test_create_missing_container_after_startup(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    sleeps: SleepRecorder,
) -> None:
    """No WordPress container after the warm-up is fatal."""
    _mock_create(fake_runner)
    fake_runner.on("docker", "container", "ls", "-qf", stdout="")

    result = orchestrator.create("demo", _create_config())

    assert result.exit_code == 1
    assert result.error == "WordPress container not found after compose up"
    assert sleeps.durations == [10.0]
    assert fake_runner.find("docker", "run") == []


def test_create_install_failure_propagates_exit_code(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
) -> None:
    """wp-cli's exit code is returned unchanged."""
    _mock_create(fake_runner)
    fake_runner.on("docker", "run", returncode=3, stderr="Error: database connection")

    result = orchestrator.create("demo", _create_config())

    assert result.exit_code == 3
    assert result.error == "wp core install failed: Error: database connection"


def test_create_without_password_line_still_succeeds(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
) -> None:
    """A missing password line is not a failure."""
    _mock_create(fake_runner)
    fake_runner.on("docker", "run", stdout="Success: WordPress installed successfully.\n")

    result = orchestrator.create("demo", _create_config())

    assert result.exit_code == 0
    assert result.admin_password is None


def test_create_with_backup_restores_and_repoints_urls(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    tmp_path: Path,
) -> None:
    """After a restore the stored site and home URLs point at this instance."""
    backup = tmp_path / "backup"
    backup.mkdir()
    _mock_create(fake_runner)
    fake_runner.on("sudo")

    result = orchestrator.create("demo", _create_config(), backup)

    assert result.exit_code == 0
    assert result.site_url == SITE_URL
    assert result.admin_password == "xK7$m2pQ"
    assert result.warnings[-1] == "No database backup found"
    option_calls = [command[-4:] for command in fake_runner.find("docker", "run")[1:]]
    assert option_calls == [
        ["option", "set", "siteurl", SITE_URL],
        ["option", "set", "home", SITE_URL],
    ]
    assert fake_runner.index_of("sudo", "chown") > fake_runner.index_of("docker", "run")


def test_create_restore_failure_keeps_password(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    tmp_path: Path,
) -> None:
    """A failing restore reports its error with the install's password."""
    backup = tmp_path / "backup"
    backup.mkdir()
    _mock_create(fake_runner)
    fake_runner.on("sudo", "chown", returncode=4, stderr="denied")

    result = orchestrator.create("demo", _create_config(), backup)

    assert result.exit_code == 4
    assert result.error == "Failed to fix permissions: denied"
    assert result.admin_password == "xK7$m2pQ"
    assert result.site_url is None


@pytest.mark.parametrize(
    ("option", "message"),
    [("siteurl", "Failed to set siteurl: nope"), ("home", "Failed to set home URL: nope")],
)
def test_create_url_fixup_failures_are_fatal(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    tmp_path: Path,
    option: str,
    message: str,
) -> None:
    """Each URL update is checked on its own."""
    backup = tmp_path / "backup"
    backup.mkdir()
    _mock_create(fake_runner)
    fake_runner.on("sudo")
    fake_runner.on("docker", "run", returncode=7, stderr="nope", ending=(option, SITE_URL))

    result = orchestrator.create("demo", _create_config(), backup)

    assert result.exit_code == 7
    assert result.error == message
    assert result.admin_password == "xK7$m2pQ"


# up / down -------------------------------------------------------------------


def test_up_missing_directory_makes_no_process_calls(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
) -> None:
    """Starting an unknown instance fails fast."""
    result = orchestrator.up("ghost")

    assert result.exit_code == 1
    assert fake_runner.calls == []


def test_up_starts_without_rebuild_and_resolves_url(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """``up`` keeps the image and reports the stored site URL."""
    root = _make_instance(app_config)
    fake_runner.on("docker", "compose")
    fake_runner.on("docker", "container", "ls", "-qf", stdout="abc123\n")
    fake_runner.on("docker", "run", stdout="https://127.0.0.1:8543\n")

    result = orchestrator.up("demo")

    assert result.exit_code == 0
    assert result.site_url == "https://127.0.0.1:8543"
    assert fake_runner.calls[0] == (["docker", "compose", "up", "-d"], root)
    assert (root / ".env").read_text() == "HTTP_PORT=8100\nHTTPS_PORT=8543\n"


def test_up_rewrites_ports_and_keeps_missing_ones(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """Only the given port changes; the other comes from the current file."""
    root = _make_instance(app_config)
    fake_runner.on("docker", "compose")

    result = orchestrator.up("demo", PortOverrides(https_port=9443))

    assert result.exit_code == 0
    assert result.site_url is None
    assert (root / ".env").read_text() == "HTTP_PORT=8100\nHTTPS_PORT=9443\n"


def test_up_compose_failure(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """A failing bring-up returns compose's exit code and skips URL lookup."""
    _make_instance(app_config)
    fake_runner.on("docker", "compose", returncode=5, stderr="daemon down")

    result = orchestrator.up("demo")

    assert result.exit_code == 5
    assert result.error == "docker compose up failed: daemon down"
    assert len(fake_runner.calls) == 1


def test_down_passes_exit_code_through(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """``down`` returns whatever compose returned."""
    root = _make_instance(app_config)
    fake_runner.on("docker", "compose", returncode=17, stderr="weird")

    result = orchestrator.down("demo")

    assert result.exit_code == 17
    assert fake_runner.calls == [(["docker", "compose", "down"], root)]


def test_down_missing_directory_makes_no_process_calls(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
) -> None:
    """Stopping an unknown instance fails fast."""
    assert orchestrator.down("ghost").exit_code == 1
    assert fake_runner.calls == []


# update ----------------------------------------------------------------------


def test_update_missing_directory_makes_no_process_calls(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
) -> None:
    """Updating an unknown instance fails fast."""
    result = orchestrator.update("ghost", _create_config())

    assert result.exit_code == 1
    assert fake_runner.calls == []


def test_update_stops_rerenders_and_rebuilds(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """Templates are re-rendered between down and a rebuilding up; .env survives."""
    root = _make_instance(app_config)
    fake_runner.on("docker", "compose")

    result = orchestrator.update("demo", _create_config(php_version="8.1", template_name="php8.1"))

    assert result.exit_code == 0
    assert result.site_url == SITE_URL
    assert fake_runner.commands == [
        ["docker", "compose", "down"],
        ["docker", "compose", "up", "--build", "-d"],
    ]
    assert "wordpress:6.7.1-php8.1-custom" in (root / "docker-compose.yml").read_text()
    assert (root / ".env").read_text() == "HTTP_PORT=8100\nHTTPS_PORT=8543\n"


def test_update_down_failure_leaves_files_untouched(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """Nothing is rewritten when the stack cannot be stopped."""
    root = _make_instance(app_config)
    fake_runner.on("docker", "compose", "down", returncode=1, stderr="busy")

    result = orchestrator.update("demo", _create_config())

    assert result.exit_code == 1
    assert result.error == "docker compose down failed: busy"
    assert (root / "docker-compose.yml").read_text() == "services: {}\n"
    assert not (root / "wp-php-custom").exists()


def test_update_up_failure_is_fatal(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """A failing rebuild is reported with compose's exit code."""
    _make_instance(app_config)
    fake_runner.on("docker", "compose", "down")
    fake_runner.on("docker", "compose", "up", returncode=2, stderr="build failed")

    result = orchestrator.update("demo", _create_config())

    assert result.exit_code == 2
    assert result.error == "docker compose up failed: build failed"


def test_update_unknown_template_keeps_instance_running(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """A mistyped template is rejected before the stack is stopped."""
    root = _make_instance(app_config)
    fake_runner.on("docker", "compose")

    result = orchestrator.update("demo", _create_config(template_name="php9.9"))

    assert result.exit_code == 1
    assert result.error == "Template not found: php9.9"
    assert fake_runner.calls == []
    assert (root / "docker-compose.yml").read_text() == "services: {}\n"


# remove ----------------------------------------------------------------------


def test_remove_missing_directory_makes_no_process_calls(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
) -> None:
    """Removing an unknown instance fails fast."""
    result = orchestrator.remove("ghost")

    assert result.exit_code == 1
    assert fake_runner.calls == []


def test_remove_with_volume_runs_steps_in_order(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """Bring-down, directory delete, then volume removal."""
    root = _make_instance(app_config)
    fake_runner.on("docker", "compose")
    fake_runner.on("sudo", "rm")
    fake_runner.on("docker", "volume", "ls", stdout="demo_db_data\n")
    fake_runner.on("docker", "volume", "rm")

    result = orchestrator.remove("demo")

    assert result.exit_code == 0
    assert fake_runner.commands == [
        ["docker", "compose", "down"],
        ["sudo", "rm", "-rf", str(root)],
        ["docker", "volume", "ls", "-qf", "name=demo_db_data"],
        ["docker", "volume", "rm", "demo_db_data"],
    ]


def test_remove_skips_down_without_compose_file_and_absent_volume(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """Optional steps are skipped rather than failed."""
    root = _make_instance(app_config, compose=False)
    fake_runner.on("sudo", "rm")

    result = orchestrator.remove("demo")

    assert result.exit_code == 0
    assert fake_runner.commands == [
        ["sudo", "rm", "-rf", str(root)],
        ["docker", "volume", "ls", "-qf", "name=demo_db_data"],
    ]


@pytest.mark.parametrize(
    ("failing", "message"),
    [
        (("docker", "compose"), "docker compose down failed: boom"),
        (("sudo", "rm"), "Failed to remove directory: boom"),
        (("docker", "volume", "rm"), "Failed to remove volume: boom"),
    ],
)
def test_remove_step_failures_are_fatal(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
    failing: tuple[str, ...],
    message: str,
) -> None:
    """Each remove step reports its own failure."""
    _make_instance(app_config)
    fake_runner.on("docker", "compose")
    fake_runner.on("sudo", "rm")
    fake_runner.on("docker", "volume", "ls", stdout="demo_db_data\n")
    fake_runner.on("docker", "volume", "rm")
    fake_runner.on(*failing, returncode=6, stderr="boom")

    result = orchestrator.remove("demo")

    assert result.exit_code == 6
    assert result.error == message


# listing ---------------------------------------------------------------------


def test_list_instances_on_empty_home_skips_docker(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """The home directory is created and docker is not probed."""
    listing = orchestrator.list_instances()

    assert listing.instances == []
    assert app_config.home.is_dir()
    assert fake_runner.calls == []


def test_list_instances_without_docker_marks_state_unknown(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """Docker is probed once; container state is unknown when it is down."""
    _make_instance(app_config, "beta")
    _make_instance(app_config, "alpha")
    (app_config.home / ".template").mkdir()

    listing = orchestrator.list_instances()

    assert listing.docker_running is False
    assert [info.name for info in listing.instances] == ["alpha", "beta"]
    assert all(info.db_running is None for info in listing.instances)
    assert fake_runner.commands == [["docker", "version"]]


def test_list_instances_resolves_url_only_when_both_run(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
    app_config: AppConfig,
) -> None:
    """Half-running instances are listed without a URL query."""
    _make_instance(app_config, "full")
    _make_instance(app_config, "half")
    fake_runner.on("docker", "version")
    fake_runner.on("docker", "container", "ls", "-qf", "name=full-db-", stdout="d1\n")
    fake_runner.on("docker", "container", "ls", "-qf", "name=full-wordpress-", stdout="w1\n")
    fake_runner.on("docker", "container", "ls", "-qf", "name=half-db-", stdout="d2\n")
    fake_runner.on("docker", "run", stdout="https://full.test\n")

    listing = orchestrator.list_instances()

    full, half = listing.instances
    assert (full.db_running, full.wordpress_running, full.site_url) == (
        True,
        True,
        "https://full.test",
    )
    assert (half.db_running, half.wordpress_running, half.site_url) == (True, False, None)
    assert len(fake_runner.find("docker", "run")) == 1


def test_read_ports_parses_env_file(
    orchestrator: InstanceOrchestrator,
    app_config: AppConfig,
) -> None:
    """Ports come from the instance ``.env``; absence gives None."""
    _make_instance(app_config)

    assert orchestrator.read_ports("demo") == PortOverrides(8100, 8543)
    assert orchestrator.read_ports("ghost") is None


def test_port_overrides_parse_and_render() -> None:
    """Unknown or malformed lines are ignored; gaps render as defaults."""
    parsed = PortOverrides.parse("# c\nHTTP_PORT=abc\nHTTPS_PORT= 9443 \nOTHER=1\n")

    assert parsed == PortOverrides(None, 9443)
    assert parsed.render() == "HTTP_PORT=8000\nHTTPS_PORT=9443\n"


# helpers ---------------------------------------------------------------------


@pytest.mark.parametrize("name", ["demo", "my-site", "site_2", "0day"])
def test_validate_instance_name_accepts_safe_names(name: str) -> None:
    """Lowercase names with digits, hyphens and underscores are valid."""
    assert validate_instance_name(name) == name


@pytest.mark.parametrize("name", ["", "-lead", "Upper", "a/b", "a b", "../x", "x."])
def test_validate_instance_name_rejects_unsafe_names(name: str) -> None:
    """Names that could escape the home directory or a filter are refused."""
    with pytest.raises(ValueError, match="Invalid instance name"):
        validate_instance_name(name)


def test_parse_admin_password_takes_first_trimmed_match() -> None:
    """Only a whole ``Admin password:`` line counts."""
    assert parse_admin_password("x\nAdmin password:   p@ss  \nAdmin password: other\n") == "p@ss"
    assert parse_admin_password("Note: Admin password: nope\n") is None
    assert parse_admin_password("") is None


def test_wp_command_requires_running_container(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
) -> None:
    """Without a container there is nothing to run."""
    prepared = orchestrator.wp_command("demo", ["plugin", "list"])

    assert prepared.command is None
    assert prepared.exit_code == 1
    assert prepared.error == "No running WordPress container found for demo"


def test_wp_command_builds_interactive_invocation(
    orchestrator: InstanceOrchestrator,
    fake_runner: FakeRunner,
) -> None:
    """The passthrough keeps stdin open and allocates a TTY on request."""
    fake_runner.on("docker", "container", "ls", "-qf", stdout="abc123\n")

    prepared = orchestrator.wp_command("demo", ["plugin", "list"], tty=True)

    assert prepared.exit_code == 0
    assert prepared.command is not None
    assert prepared.command[:4] == ["docker", "run", "-it", "--rm"]
    assert prepared.command[-3:] == ["wp", "plugin", "list"]
