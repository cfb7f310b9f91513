"""Structured operations log for squadctl.

Each CLI operation appends a single JSON record to ``operations.jsonl`` in
the configured logs directory. Records carry the command, its arguments and
target, the ordered steps taken, and the final result. Logging never breaks
a command: when the directory or file is not writable the logger disables
itself and the command carries on.

Secret values must never be passed to the logger; callers log credential
*names* only.
"""
from __future__ import annotations

import json
import threading
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG = "operations.jsonl"


def _now() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_safe(value: object) -> object:
    """Return *value* converted to something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the result of one operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Start a scope for *command*."""
        self.op_id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.started_at = _now()
        self._started = time.perf_counter()
        self._lock = threading.Lock()
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record a named step."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now()}
        if detail is not None:
            step["detail"] = _json_safe(detail)
        with self._lock:
            self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        warnings: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            warnings=warnings,
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if changed is not None:
            result["changed"] = changed
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _json_safe(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        return {
            "op_id": self.op_id,
            "command": self.command,
            "args": _json_safe(self.args),
            "target": _json_safe(self.target),
            "started_at": self.started_at,
            "finished_at": _now(),
            "duration_ms": int((time.perf_counter() - self._started) * 1000),
            "steps": list(self.steps),
            "result": self.result,
        }


class StructuredLogger:
    """Append operation records to ``operations.jsonl``."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the logger if it is unusable."""
        self.logs_dir = logs_dir.expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG
        self._write_lock = threading.Lock()
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit.

        An exception escaping the block is recorded as an error (unless the
        scope already holds a result) and then re-raised.
        """
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or exc.__class__.__name__)
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=True)
        with self._write_lock:
            try:
                with self._operations_log_path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError:
                self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
