"""SQLite access with a fail-closed circuit breaker.

The ledger's relational storage is SQLite in WAL mode. Every statement runs
inside ``Database.connect()``, which feeds a small circuit breaker: repeated
failures or very slow operations put storage into LOCKDOWN for a while, and
during LOCKDOWN every operation raises ``StorageLockdown`` instead of touching
the database. Appends therefore fail closed rather than half-succeed.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .config import _get_float, _get_int
from .errors import StorageLockdown
from .metrics import set_lockdown_active

logger = logging.getLogger("action_ledger")


@dataclass
class CircuitBreakerConfig:
    """Configuration for DbCircuitBreaker.

    Environment variables:
    - LEDGER_DB_LATENCY_THRESHOLD_MS: trip immediately on ops slower than this.
    - LEDGER_DB_FAILURE_THRESHOLD: number of failures required to trip.
    - LEDGER_DB_LOCKDOWN_SECONDS: duration of lockdown window.
    - LEDGER_DB_CONNECT_TIMEOUT_SECONDS: sqlite connect timeout.
    """

    latency_threshold_ms: int = 2000
    failure_threshold: int = 3
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        latency = _get_int("LEDGER_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms)
        timeout = _get_float("LEDGER_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds)
        return cls(
            latency_threshold_ms=latency if latency >= 1 else cls.latency_threshold_ms,
            failure_threshold=max(1, _get_int("LEDGER_DB_FAILURE_THRESHOLD", cls.failure_threshold)),
            lockdown_seconds=max(1, _get_int("LEDGER_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds)),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
        )


class DbCircuitBreaker:
    """Counts storage failures; trips into a timed LOCKDOWN at the threshold."""

    def __init__(self, config: Optional[CircuitBreakerConfig] = None):
        self.config = config or CircuitBreakerConfig.from_env()
        self._failure_count = 0
        self._lockdown_until_monotonic: float = 0.0
        self._lock = threading.Lock()

    def is_lockdown_active(self) -> bool:
        return time.monotonic() < self._lockdown_until_monotonic

    def raise_if_lockdown(self) -> None:
        if self.is_lockdown_active():
            remaining = max(0.0, self._lockdown_until_monotonic - time.monotonic())
            raise StorageLockdown(retry_after_seconds=round(remaining, 3))

    def _trip(self) -> None:
        self._lockdown_until_monotonic = time.monotonic() + float(self.config.lockdown_seconds)
        self._failure_count = self.config.failure_threshold
        set_lockdown_active(True)
        logger.error("storage lockdown for %ss after %d failures", self.config.lockdown_seconds, self._failure_count)

    def record_success(self) -> None:
        with self._lock:
            if self._failure_count > 0:
                self._failure_count -= 1
            if self._failure_count == 0 and not self.is_lockdown_active():
                set_lockdown_active(False)

    def record_latency(self, elapsed_ms: float) -> None:
        with self._lock:
            self._failure_count += 1
            logger.warning("slow storage operation: %.1fms", elapsed_ms)
            self._trip()

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        with self._lock:
            self._failure_count += 1
            logger.warning("storage failure %d/%d: %s", self._failure_count, self.config.failure_threshold, exc)
            if self._failure_count >= self.config.failure_threshold:
                self._trip()


class Database:
    """Connection factory for one SQLite file."""

    def __init__(self, path: str, circuit: Optional[DbCircuitBreaker] = None):
        self.path = str(path)
        self.circuit = circuit or DbCircuitBreaker()
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")

    @contextmanager
    def connect(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a transaction; commit on success.

        ``immediate=True`` takes the write lock up front (BEGIN IMMEDIATE),
        which is what the append path needs for its check-and-set on the
        stream head.
        """
        self.circuit.raise_if_lockdown()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=None if immediate else "",
            )
            try:
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA synchronous = FULL")
                conn.execute("PRAGMA busy_timeout = 5000")
                with conn:
                    if immediate:
                        conn.execute("BEGIN IMMEDIATE")
                    yield conn
            finally:
                conn.close()
        except sqlite3.OperationalError as e:
            self.circuit.record_failure(e)
            raise
        elapsed_ms = (time.monotonic() - start) * 1000.0
        if elapsed_ms >= float(self.circuit.config.latency_threshold_ms):
            self.circuit.record_latency(elapsed_ms)
        else:
            self.circuit.record_success()
