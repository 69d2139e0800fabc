"""Structured operation logging for serverforge.

Every CLI operation produces one JSON record appended to
``<logs_dir>/operations.jsonl`` plus a one-line summary in
``<logs_dir>/serverforge.log``. Records capture the command, its arguments,
the steps taken (one per provisioning phase, rollback step, ...) and the final
result. Logging must never break provisioning: when the directory cannot be
created or a write fails the logger disables itself and carries on silently.
"""
from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import Literal

from . import __version__

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "serverforge.log"

ResultStatus = Literal["success", "warning", "error"]

_stdlib_logger = logging.getLogger("serverforge")


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


class StructuredLogger:
    """Append operation records to the serverforge log directory."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging if it cannot be created."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG
        self._human_log_path = self.logs_dir / HUMAN_LOG
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _stdlib_logger.warning("Structured logging disabled (%s): %s", self.logs_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return ``True`` while records are being written."""
        return self._enabled

    @property
    def operations_log(self) -> Path:
        """Return the path of the JSON lines log."""
        return self._operations_log_path

    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> OperationScope:
        """Return a scope recording a single CLI operation."""
        return OperationScope(self, command, args=args, target=target)

    def write(self, record: Mapping[str, object]) -> None:
        """Persist *record* to both log files, disabling the logger on failure."""
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(_sanitise(record), sort_keys=False))
                handle.write("\n")
            result = record.get("result")
            status = result.get("status") if isinstance(result, Mapping) else "unknown"
            message = result.get("message") if isinstance(result, Mapping) else ""
            line = f"{record.get('finished_at')} {record.get('command')} [{status}] {message}\n"
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line)
        except OSError as exc:
            _stdlib_logger.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


class OperationScope:
    """Collect steps and the final result for one operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Bind the scope to *logger*."""
        self._logger = logger
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started_at = _now_iso()
        self._start = time.monotonic()

    def __enter__(self) -> OperationScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        if self.result is None:
            if exc is not None:
                self.error(f"Unhandled {type(exc).__name__}: {exc}", rc=1)
            else:
                self.success("Completed.", changed=0)
        self._flush()

    # ------------------------------------------------------------------
    def add_step(self, name: str, *, status: str, detail: str | None = None) -> None:
        """Record a named step."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result("success", message, changed=changed, warnings=warnings, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    # ------------------------------------------------------------------
    def _set_result(
        self,
        status: ResultStatus,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
        }
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitise(dict(context))
        self.result = result

    def _flush(self) -> None:
        record: dict[str, object] = {
            "command": self.command,
            "args": _sanitise(self.args),
            "target": _sanitise(self.target),
            "started_at": self._started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.monotonic() - self._start) * 1000),
            "steps": self.steps,
            "result": self.result,
            "context": {
                "serverforge_version": __version__,
                "pid": os.getpid(),
            },
        }
        self._logger.write(record)


__all__ = ["OperationScope", "StructuredLogger"]
