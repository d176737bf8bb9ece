from __future__ import annotations

import json
import logging
import os
import re
import time
from collections.abc import Callable
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from workforce.models import PlanError, PlanRun, utcnow_iso
from workforce.session import DEFAULT_HISTORY_LIMIT, Session

logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")
MAX_RUN_RECORDS = 200
MAX_BACKEND_EVENTS = 200


class StateStoreError(RuntimeError):
    """Raised when snapshot reads or writes fail."""


def validate_session_id(session_id: str) -> str:
    if not SESSION_ID_PATTERN.match(session_id) or session_id.strip(".") == "":
        raise StateStoreError(f"Invalid session id: {session_id!r}")
    return session_id


class SnapshotStore:
    """JSON envelope files under one directory, one file per namespace."""

    NAMESPACES = {"runs", "metrics"}
    PLAN_PREFIX = "plan-"
    SCHEMA_VERSION = 1

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.root / ".lock"

    @classmethod
    def plan_namespace(cls, session_id: str) -> str:
        return f"{cls.PLAN_PREFIX}{validate_session_id(session_id)}"

    def _validate_namespace(self, namespace: str) -> None:
        if namespace in self.NAMESPACES:
            return
        if namespace.startswith(self.PLAN_PREFIX):
            validate_session_id(namespace[len(self.PLAN_PREFIX) :])
            return
        raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.root / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("ignoring unreadable snapshot %s", path)
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        path = self._file(namespace)
        scratch = path.with_suffix(".json.tmp")
        scratch.write_text(serialized, encoding="utf-8")
        os.replace(scratch, path)

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
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except StateStoreError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")

    def write_session(self, session: Session) -> None:
        self.set_json(self.plan_namespace(session.id), session.to_snapshot())

    def load_session(
        self,
        session_id: str,
        *,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> Session | None:
        namespace = self.plan_namespace(session_id)
        if not self._file(namespace).exists():
            return None
        payload = self.get_json(namespace, default={})
        if not isinstance(payload, dict) or not payload.get("session_id"):
            return None
        try:
            return Session.from_snapshot(payload, history_limit=history_limit)
        except (KeyError, TypeError, ValueError, PlanError) as exc:
            raise StateStoreError(f"Snapshot for session '{session_id}' is corrupt: {exc}") from exc

    def get_runs(self) -> list[dict[str, Any]]:
        payload = self.get_json("runs", default={"runs": []})
        if not isinstance(payload, dict):
            return []
        runs = payload.get("runs", [])
        return runs if isinstance(runs, list) else []

    def record_run(self, session_id: str, run: PlanRun) -> None:
        record = {"session_id": session_id, **run.to_dict()}

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"runs": []}
            runs = [
                item
                for item in result.get("runs", [])
                if not (
                    isinstance(item, dict)
                    and item.get("plan_id") == run.plan_id
                    and item.get("started_at") == run.started_at
                )
            ]
            runs.append(record)
            result["runs"] = runs[-MAX_RUN_RECORDS:]
            return result

        self.update_json("runs", _updater, default={"runs": []})

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def record_backend_event(self, event: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            events = metrics.get("backend_events", [])
            if not isinstance(events, list):
                events = []
            events.append({**event, "at": utcnow_iso()})
            metrics["backend_events"] = events[-MAX_BACKEND_EVENTS:]
            if event.get("event") == "backend_retry":
                metrics["backend_retry_count"] = int(metrics.get("backend_retry_count", 0)) + 1
            if event.get("event") == "backend_fallback_success":
                metrics["backend_fallback_count"] = (
                    int(metrics.get("backend_fallback_count", 0)) + 1
                )
            return metrics

        self.update_json("metrics", _updater, default={})
