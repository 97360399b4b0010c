from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

from ai_key_proxy.rotation import mask_credential

SENSITIVE_FIELDS = {"key", "api_key", "credential", "authorization"}


def redact_event(event: dict[str, Any]) -> dict[str, Any]:
    """Copy of ``event`` with raw credential values replaced by fingerprints."""

    def _redact(value: Any) -> Any:
        if isinstance(value, dict):
            cleaned: dict[str, Any] = {}
            for key, raw in value.items():
                if str(key).lower() in SENSITIVE_FIELDS and isinstance(raw, str):
                    cleaned[key] = mask_credential(raw)
                else:
                    cleaned[key] = _redact(raw)
            return cleaned
        if isinstance(value, list):
            return [_redact(item) for item in value]
        return value

    return _redact(event)


class JsonlAuditLogger:
    """Appends proxy events as JSON lines from a background writer thread.

    ``log`` never blocks the request path: when the queue is full the record is
    dropped and counted per event name. The counts are written as a single
    ``audit_logger_dropped_records`` record when the logger closes.
    """

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 4096,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_by_event: dict[str, int] = {}
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max(1, int(max_queue_size)))
            self._worker = Thread(
                target=self._drain_queue, name="proxy-audit-writer", daemon=True
            )
            self._worker.start()

    @property
    def dropped_records(self) -> int:
        with self._lock:
            return sum(self._dropped_by_event.values())

    def log(self, event: dict[str, Any]) -> None:
        queue = self._queue
        if not self.enabled or queue is None:
            return

        try:
            queue.put_nowait(_encode({"ts": _timestamp(), **redact_event(event)}))
        except Full:
            name = str(event.get("event") or "unknown")
            with self._lock:
                self._dropped_by_event[name] = self._dropped_by_event.get(name, 0) + 1

    def close(self) -> None:
        if self._queue is None or self._worker is None:
            return
        self._queue.put(None)
        self._worker.join(timeout=2.0)

    def _take_dropped_summary(self) -> dict[str, Any] | None:
        with self._lock:
            dropped = dict(self._dropped_by_event)
            self._dropped_by_event.clear()
        if not dropped:
            return None
        return {
            "ts": _timestamp(),
            "event": "audit_logger_dropped_records",
            "dropped_count": sum(dropped.values()),
            "dropped_events": dropped,
        }

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            for line in iter(queue.get, None):
                handle.write(line + "\n")
                handle.flush()
            summary = self._take_dropped_summary()
            if summary is not None:
                handle.write(_encode(summary) + "\n")
                handle.flush()


def _timestamp() -> float:
    return round(time.time(), 3)


def _encode(record: dict[str, Any]) -> str:
    return json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
