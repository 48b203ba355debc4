"""Structured logging for hostctl operations.

Each CLI operation produces one JSON record appended to ``operations.jsonl``
in the configured logs directory, carrying the arguments, the target, every
step recorded along the way and the final result. Human readable lines are
mirrored to a rotating ``hostctl.log`` through the standard :mod:`logging`
module.

The logger never takes a run down with it: when the log directory cannot be
created, or a write fails, it disables itself and later records are dropped.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPERATIONS_LOG_NAME = "operations.jsonl"
TEXT_LOG_NAME = "hostctl.log"
_TEXT_LOGGER_NAME = "hostctl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _json_safe(value: object) -> object:
    """Convert *value* into something :func:`json.dumps` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


@dataclass
class OperationScope:
    """Collects steps and the result of a single logged operation."""

    logger: StructuredLogger
    operation_id: str
    command: str
    args: Mapping[str, object]
    target: Mapping[str, object] | None
    started: float = field(default_factory=time.monotonic)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None

    def add_step(
        self,
        step_id: str,
        *,
        status: str = "info",
        detail: object | None = None,
    ) -> None:
        """Record an intermediate step of the operation."""
        entry: dict[str, object] = {"id": step_id, "status": status, "at": _now_iso()}
        if detail is not None:
            entry["detail"] = _json_safe(detail)
        self.steps.append(entry)
        self.logger._text(
            logging.WARNING if status in {"warning", "failed", "error"} else logging.INFO,
            f"{self.command} [{step_id}] {status}"
            + (f": {detail}" if isinstance(detail, str) and detail else ""),
        )

    def success(
        self,
        message: str,
        *,
        changed: int | bool = 0,
        warnings: Sequence[str] | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            rc=0,
            changed=changed,
            warnings=warnings,
            errors=None,
            backups=backups,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        rc: int = 0,
        changed: int | bool = 0,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation completed with warnings."""
        self._set_result(
            "warning",
            message,
            rc=rc,
            changed=changed,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        rc: int = 1,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            rc=rc,
            changed=0,
            warnings=warnings,
            errors=errors if errors else [message],
            backups=None,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int | bool,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        backups: Sequence[str] | None,
        context: Mapping[str, object] | None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "rc": rc,
            "changed": int(changed),
        }
        if warnings:
            result["warnings"] = [str(item) for item in warnings]
        if errors:
            result["errors"] = [str(item) for item in errors]
        if backups:
            result["backups"] = [str(item) for item in backups]
        if context:
            result["context"] = _json_safe(dict(context))
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to the operations journal."""
        return {
            "timestamp": _now_iso(),
            "operation_id": self.operation_id,
            "command": self.command,
            "args": _json_safe(dict(self.args)),
            "target": _json_safe(dict(self.target)) if self.target else None,
            "steps": list(self.steps),
            "result": self.result,
            "duration_ms": int((time.monotonic() - self.started) * 1000),
        }


class StructuredLogger:
    """Append-only operations journal plus a rotating text log."""

    def __init__(
        self,
        logs_dir: Path,
        *,
        level: str = "INFO",
        max_bytes: int = 1_048_576,
        backup_count: int = 3,
    ) -> None:
        """Prepare *logs_dir*; disable logging when it is unusable."""
        self.logs_dir = Path(logs_dir)
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._text_log_path = self.logs_dir / TEXT_LOG_NAME
        self._enabled = True
        # One process-wide logger; a new instance takes over its handlers.
        self._text_logger = logging.getLogger(_TEXT_LOGGER_NAME)
        self._text_logger.propagate = False
        self.close()
        self._text_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(
                self._text_log_path,
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
        except OSError:
            self._enabled = False
            return
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        )
        self._text_logger.addHandler(handler)

    @property
    def enabled(self) -> bool:
        """Return whether records are still being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Log a single operation; unexpected exceptions are recorded then re-raised."""
        scope = OperationScope(
            logger=self,
            operation_id=f"op-{secrets.token_hex(6)}",
            command=command,
            args=dict(args or {}),
            target=dict(target) if target else None,
        )
        self._text(logging.INFO, f"{command} started")
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"{type(exc).__name__}: {exc}", rc=1)
            self._write(scope)
            raise
        if scope.result is None:
            scope.success("Operation completed.", changed=0)
        self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        result = scope.result or {}
        level = logging.ERROR if result.get("status") == "error" else logging.INFO
        self._text(level, f"{scope.command} {result.get('status')}: {result.get('message')}")
        if not self._enabled:
            return
        record = scope.to_record()
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
        except OSError:
            self._enabled = False

    def _text(self, level: int, message: str) -> None:
        if self._enabled:
            self._text_logger.log(level, message)

    def close(self) -> None:
        """Detach and close the text log handlers."""
        for handler in list(self._text_logger.handlers):
            self._text_logger.removeHandler(handler)
            handler.close()


__all__ = ["OperationScope", "StructuredLogger"]
