"""Structured operation logging for wodctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`. When the
scope closes, one JSON line is appended to ``operations.jsonl`` and one
summary line to the human-readable ``wodctl.log``. Logging never breaks a
command: the logger disables itself when its directory or files are not
writable.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

from . import __version__

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "wodctl.log"
PACKAGE_LOGGER = "wodctl"


def _sanitize(value: object) -> Any:
    """Return a JSON-serialisable rendition of *value*."""
    if value is None or isinstance(value, bool | int | float | str):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Collects the steps and the outcome of a single command."""

    command: str
    args: dict[str, Any] = field(default_factory=dict)
    target: dict[str, Any] = field(default_factory=dict)
    op_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    steps: list[dict[str, Any]] = field(default_factory=list)
    result: dict[str, Any] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step of the operation."""
        step: dict[str, Any] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed; *errors* defaults to ``[message]``."""
        self._finish(
            "error",
            message,
            errors=list(errors) if errors is not None else [message],
            context=context,
            rc=rc,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": [str(item) for item in warnings or ()],
            "errors": [str(item) for item in errors or ()],
            "context": _sanitize(dict(context or {})),
            "rc": rc,
        }


class StructuredLogger:
    """Append operation records below *logs_dir*."""

    def __init__(self, logs_dir: Path) -> None:
        self._logs_dir = Path(logs_dir)
        self._operations_log_path = self._logs_dir / OPERATIONS_LOG
        self._human_log_path = self._logs_dir / HUMAN_LOG
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Operation logging disabled; cannot create %s: %s", self._logs_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return True while records are still being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope for *command* and persist it once the block exits."""
        scope = OperationScope(
            command=command,
            args=_sanitize(dict(args or {})),
            target=_sanitize(dict(target or {})),
        )
        started = time.monotonic()
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", rc=1)
            raise
        finally:
            self._write(scope, time.monotonic() - started)

    # ------------------------------------------------------------------
    def _write(self, scope: OperationScope, elapsed: float) -> None:
        if not self._enabled:
            return
        result = scope.result or {"status": "unknown", "message": "", "rc": 0}
        timestamp = datetime.now(UTC).isoformat()
        record = {
            "timestamp": timestamp,
            "op_id": scope.op_id,
            "command": scope.command,
            "args": scope.args,
            "target": scope.target,
            "steps": scope.steps,
            "duration_ms": round(elapsed * 1000),
            "context": {"version": __version__},
            "result": result,
        }
        human = (
            f"{timestamp} {result['status'].upper()} {scope.command}"
            f" rc={result.get('rc', 0)} {result.get('message', '')}".rstrip()
        )
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(human + "\n")
        except OSError as exc:
            LOGGER.warning("Operation logging disabled after write failure: %s", exc)
            self._enabled = False


def configure_console_logging(verbose: bool = False) -> None:
    """Route package log records to stderr through rich."""
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if not any(isinstance(handler, RichHandler) for handler in package_logger.handlers):
        package_logger.addHandler(
            RichHandler(console=Console(stderr=True), show_path=False, show_time=False)
        )


__all__ = [
    "OperationScope",
    "StructuredLogger",
    "configure_console_logging",
]
