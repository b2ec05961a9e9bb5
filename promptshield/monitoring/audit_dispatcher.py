"""
Fire-and-forget delivery of audit entries to an audit sink.

The security monitor must never block on, or fail because of, audit I/O.
Entries are placed on a bounded queue and drained by a daemon worker thread;
sink failures are logged and dropped. A synchronous mode delivers entries
inline for tests and single-threaded deployments.
"""

import logging
import queue
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass
class AuditEntry:
    """A single audit log entry."""
    user_id: str
    user_role: str
    operation: str
    template_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    success: bool = True
    error_message: Optional[str] = None
    id: str = field(default_factory=lambda: f"audit_{secrets.token_hex(8)}")
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Convert entry to dictionary for serialization."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "userId": self.user_id,
            "userRole": self.user_role,
            "operation": self.operation,
            "templateId": self.template_id,
            "details": dict(self.details),
            "success": self.success,
            "errorMessage": self.error_message,
        }


class AuditSink(Protocol):
    """Anything that accepts audit entries."""

    def log_operation(self, entry: AuditEntry) -> None:
        ...


_STOP = object()


class AuditDispatcher:
    """Deliver audit entries to a sink without blocking the caller."""

    def __init__(
        self,
        sink: Optional[AuditSink],
        queue_size: int = 1000,
        synchronous: bool = False,
    ):
        """
        Initialize dispatcher.

        Args:
            sink: Audit sink; entries are discarded when None
            queue_size: Maximum number of pending entries
            synchronous: Deliver inline instead of on a worker thread
        """
        self.sink = sink
        self.synchronous = synchronous
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=queue_size)
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()
        self.dropped_entries = 0
        self.failed_entries = 0

    def submit(self, entry: AuditEntry) -> None:
        """Queue an entry for delivery; never raises."""
        if self.sink is None:
            return

        if self.synchronous:
            self._deliver(entry)
            return

        self._ensure_worker()
        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            self.dropped_entries += 1
            logger.warning(
                "Audit queue full, dropping %s entry for user %s",
                entry.operation, entry.user_id,
            )

    def flush(self) -> None:
        """Block until every queued entry has been delivered."""
        if self._worker is not None:
            self._queue.join()

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Drain the queue and stop the worker thread."""
        with self._worker_lock:
            worker = self._worker
            self._worker = None
        if worker is None:
            return
        self._queue.put(_STOP)
        worker.join(timeout)

    def _ensure_worker(self) -> None:
        with self._worker_lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(
                target=self._run,
                name="promptshield-audit",
                daemon=True,
            )
            self._worker.start()

    def _run(self) -> None:
        while True:
            entry = self._queue.get()
            try:
                if entry is _STOP:
                    return
                self._deliver(entry)
            finally:
                self._queue.task_done()

    def _deliver(self, entry: AuditEntry) -> None:
        try:
            self.sink.log_operation(entry)
        except Exception:
            self.failed_entries += 1
            logger.exception("Audit sink failed for %s entry", entry.operation)
