"""Bounded asynchronous outbox in front of the audit log.

Engine code calls :meth:`AuditOutbox.record`, which only enqueues onto a
local channel; a background thread writes to the :class:`AuditLog`. Audit is
advisory: a full outbox or a failing sink is logged and never reaches the
step being executed.
"""

from __future__ import annotations

import queue
import threading
from typing import Any, Optional

from .models import AuditRecord
from .storage.base import AuditLog
from .utils.logging import get_logger

logger = get_logger()

_STOP = object()


class AuditOutbox:
    def __init__(self, sink: AuditLog, maxsize: int = 1000) -> None:
        self.sink = sink
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.dropped = 0

    def start(self) -> "AuditOutbox":
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._run, name="careline-audit", daemon=True)
                self._thread.start()
        return self

    def record(
        self,
        actor_id: Optional[str],
        action_type: str,
        description: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Queue an audit record without blocking. Returns ``False`` when it was dropped."""
        entry = AuditRecord(
            actor_id=actor_id, action_type=action_type, description=description, metadata=metadata or {}
        )
        self.start()
        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Audit outbox full, dropping {action_type} record")
            return False
        return True

    def _run(self) -> None:
        while True:
            entry = self._queue.get()
            try:
                if entry is _STOP:
                    return
                self.sink.record(entry)
            except Exception as exc:  # audit must never take the worker down
                logger.error(f"Failed to write audit record {entry.action_type}: {exc!r}")
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued record has been handed to the sink."""
        if self._thread is not None and self._thread.is_alive():
            self._queue.join()

    def close(self, timeout: float = 5.0) -> None:
        """Drain pending records and stop the writer thread."""
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is None or not thread.is_alive():
            return
        self._queue.put(_STOP)
        thread.join(timeout)
