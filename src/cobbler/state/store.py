from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cobbler.errors import CobblerError, StateCorruptionError

logger = logging.getLogger(__name__)


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class ConcurrentUpdateError(CobblerError):
    """Raised when a namespace changed between read and write."""


class StateStore:
    """JSON namespaces under a state directory with atomic overwrite.

    Every namespace lives in ``<state_dir>/<namespace>.json`` wrapped in an
    envelope carrying ``schema_version`` and a monotonically increasing
    ``revision``. Writes go to a temporary file in the same directory, are
    fsynced, then renamed over the target, so a crash leaves either the old or
    the new document and never a torn one.
    """

    NAMESPACES = {"trails", "tasks", "cycles", "checkpoints", "events", "metrics"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path, *, lock_timeout_seconds: float = 5.0) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise CobblerError(f"Unsupported namespace: {namespace}")

    def path_for(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._lock_is_stale():
                    logger.warning("removing stale state lock %s", self.lock_file)
                    self.lock_file.unlink(missing_ok=True)
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise CobblerError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            self.lock_file.unlink(missing_ok=True)

    def _lock_is_stale(self) -> bool:
        try:
            owner = int(self.lock_file.read_text(encoding="utf-8").strip() or "0")
        except (OSError, ValueError):
            return False
        return owner > 0 and owner != os.getpid() and not pid_alive(owner)

    def _read_raw_json(self, namespace: str) -> Any:
        path = self.path_for(namespace)
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StateCorruptionError(f"Cannot read state file {path}: {exc}") from exc
        if not content.strip():
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise StateCorruptionError(f"State file {path} is not valid JSON: {exc}") from exc

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        target = self.path_for(namespace)
        serialized = json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{namespace}-", suffix=".tmp", dir=str(self.state_dir)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_name, target)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        if raw_payload is not None:
            raise StateCorruptionError(
                "State document is missing its envelope (schema_version/revision/data)."
            )
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": utcnow_iso(),
            "data": default,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> int:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise ConcurrentUpdateError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": utcnow_iso(),
                "data": data,
            }
            self._write_raw_json(namespace, envelope)
            return current_revision + 1

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        """Read-modify-write ``namespace`` with optimistic revision checks.

        ``updater`` may raise to abort; nothing is written in that case.
        """
        default_value = {} if default is None else default
        last_error: ConcurrentUpdateError | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current["revision"]))
                return updated
            except ConcurrentUpdateError as exc:
                last_error = exc
                time.sleep(0.01)
        raise CobblerError(str(last_error) if last_error else "State update failed.")

    def archive(self, namespace: str) -> Path | None:
        """Move a namespace file into ``archive/`` and return its new path."""
        self._validate_namespace(namespace)
        source = self.path_for(namespace)
        if not source.exists():
            return None
        archive_dir = self.state_dir / "archive"
        archive_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%f")
        target = archive_dir / f"{namespace}-{stamp}.json"
        with self._state_lock():
            os.replace(source, target)
        return target

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def record_event(self, event: dict[str, Any], *, keep: int = 200) -> None:
        payload = dict(event)
        payload.setdefault("at", utcnow_iso())

        def _updater(metrics: Any) -> dict[str, Any]:
            result = metrics if isinstance(metrics, dict) else {}
            events = result.get("backend_events", [])
            if not isinstance(events, list):
                events = []
            events.append(payload)
            result["backend_events"] = events[-keep:]
            if payload.get("event") == "backend_retry":
                result["backend_retry_count"] = int(result.get("backend_retry_count", 0)) + 1
            if payload.get("event") == "backend_fallback_success":
                result["backend_fallback_count"] = int(result.get("backend_fallback_count", 0)) + 1
            return result

        self.update_json("metrics", _updater, default={})


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
