"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from wodctl.config import AppConfig, load_config
from wodctl.docker import ContainerInspector
from wodctl.filesystem import LocalFileStore
from wodctl.instances import InstanceOrchestrator
from wodctl.restore import RestoreEngine
from wodctl.templates import TemplateEngine


@dataclass
class FakeRunner:
    """Record commands and answer them from prefix-matched canned results.

    A response may also require the command to end with given tokens. The
    most specific match wins; among equally specific matches the most recent
    registration wins. Unmatched commands exit 1 with ``no mock response``.
    """

    responses: list[
        tuple[tuple[str, ...], tuple[str, ...], subprocess.CompletedProcess[str]]
    ] = field(default_factory=list)
    calls: list[tuple[list[str], Path | None]] = field(default_factory=list)

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        ending: Sequence[str] = (),
    ) -> None:
        """Answer commands starting with *prefix* and ending with *ending*."""
        self.responses.append(
            (
                tuple(prefix),
                tuple(ending),
                subprocess.CompletedProcess(
                    list(prefix), returncode=returncode, stdout=stdout, stderr=stderr
                ),
            )
        )

    def run(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Record *args* and return the best matching canned result."""
        command = list(args)
        self.calls.append((command, cwd))
        best: subprocess.CompletedProcess[str] | None = None
        best_weight = -1
        for prefix, ending, result in self.responses:
            if tuple(command[: len(prefix)]) != prefix:
                continue
            if ending and tuple(command[-len(ending) :]) != ending:
                continue
            weight = len(prefix) + len(ending)
            if weight >= best_weight:
                best = result
                best_weight = weight
        if best is None:
            return subprocess.CompletedProcess(
                command, returncode=1, stdout="", stderr="no mock response"
            )
        return subprocess.CompletedProcess(
            command, returncode=best.returncode, stdout=best.stdout, stderr=best.stderr
        )

    @property
    def commands(self) -> list[list[str]]:
        """Return the recorded argv lists in call order."""
        return [command for command, _ in self.calls]

    def find(self, *prefix: str) -> list[list[str]]:
        """Return recorded commands starting with *prefix*."""
        return [command for command in self.commands if command[: len(prefix)] == list(prefix)]

    def index_of(self, *prefix: str) -> int:
        """Return the position of the first command starting with *prefix*."""
        for position, command in enumerate(self.commands):
            if command[: len(prefix)] == list(prefix):
                return position
        raise AssertionError(f"command {prefix!r} was not run")


@dataclass
class SleepRecorder:
    """Stand-in for :func:`time.sleep` that only records durations."""

    durations: list[float] = field(default_factory=list)

    def __call__(self, seconds: float) -> None:
        self.durations.append(seconds)


@pytest.fixture()
def fake_runner() -> FakeRunner:
    """Return a fresh :class:`FakeRunner`."""
    return FakeRunner()


@pytest.fixture()
def sleeps() -> SleepRecorder:
    """Return a fresh :class:`SleepRecorder`."""
    return SleepRecorder()


@pytest.fixture()
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted below *tmp_path* with no config file."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={"WOD_HOME": str(tmp_path / "wod")},
    )


@pytest.fixture()
def inspector(fake_runner: FakeRunner, app_config: AppConfig) -> ContainerInspector:
    """Return an inspector talking to *fake_runner*."""
    return ContainerInspector.from_config(fake_runner, app_config)


@pytest.fixture()
def restorer(
    fake_runner: FakeRunner,
    app_config: AppConfig,
    inspector: ContainerInspector,
) -> RestoreEngine:
    """Return a restore engine over the real filesystem and *fake_runner*."""
    return RestoreEngine(
        runner=fake_runner,
        files=LocalFileStore(),
        config=app_config,
        inspector=inspector,
    )


@pytest.fixture()
def orchestrator(
    fake_runner: FakeRunner,
    app_config: AppConfig,
    inspector: ContainerInspector,
    restorer: RestoreEngine,
    sleeps: SleepRecorder,
) -> InstanceOrchestrator:
    """Return an orchestrator wired to the fakes."""
    return InstanceOrchestrator(
        runner=fake_runner,
        files=LocalFileStore(),
        config=app_config,
        inspector=inspector,
        restorer=restorer,
        templates=TemplateEngine(),
        sleep=sleeps,
    )
