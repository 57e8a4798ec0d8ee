"""Fire-and-forget event ingestion.

``emit`` enqueues an event and returns immediately; a worker thread appends it
to the store. Retryable failures (``ConcurrencyConflict``, ``StorageLockdown``)
are retried with exponential backoff; since the store deduplicates by event
id, a redelivered event is harmless (at-least-once). Events that can never be
appended (e.g. ``ValidationError``) are logged and kept in ``rejected``.
"""

from __future__ import annotations

import logging
import queue
import sqlite3
import threading
import time
from typing import List, Optional, Tuple

from .errors import LedgerError
from .models import Event

logger = logging.getLogger("action_ledger")

_STOP = object()


class EventIngestor:
    def __init__(
        self,
        store,
        *,
        max_attempts: int = 5,
        backoff_seconds: float = 0.05,
        max_queue: int = 10000,
    ):
        self.store = store
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = float(backoff_seconds)
        self.rejected: List[Tuple[Event, Exception]] = []
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max_queue)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self) -> "EventIngestor":
        with self._lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(target=self._run, name="ledger-ingest", daemon=True)
                self._thread.start()
        return self

    def emit(self, event: Event) -> None:
        """Queue ``event`` for appending. Blocks only if the queue is full."""
        if self._thread is None:
            self.start()
        self._queue.put(event)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued event has been appended or rejected."""
        if timeout is None:
            self._queue.join()
            return True
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def close(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None

    def __enter__(self) -> "EventIngestor":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.flush()
        self.close()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)  # type: ignore[arg-type]
            finally:
                self._queue.task_done()

    def _deliver(self, event: Event) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.store.append(event)
                return
            except (LedgerError, sqlite3.Error) as e:
                # raw sqlite errors (e.g. "database is locked") are transient
                retryable = getattr(e, "retryable", True)
                if not retryable or attempt == self.max_attempts:
                    logger.error("dropping event %s after %d attempt(s): %s", event.event_id, attempt, e)
                    self.rejected.append((event, e))
                    return
                logger.debug("append of %s failed (attempt %d): %s", event.event_id, attempt, e)
                time.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
