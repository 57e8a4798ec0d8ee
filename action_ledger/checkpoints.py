"""Merkle checkpoints and their external anchoring.

A checkpoint roots the ``hash_self`` values of every event appended to a
stream since the previous checkpoint (or since genesis). Windows are
contiguous: each one starts right after the previous one ends.

Checkpoints are persisted before they are anchored. If the timestamp
authority is down the checkpoint stays un-anchored (not a trust root) and
``AnchorRetrier`` keeps trying in the background. Root and range never change
after the insert; anchoring only attaches a receipt.

The TSA stamps ``checkpoint_digest(cp)``, which binds stream, range, root and
creation time, not just the bare root.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from .crypto import _now_utc, hash_canonical
from .errors import AnchoringUnavailable, LedgerError, NotFound
from .merkle import merkle_root
from .metrics import record_anchor_failure, record_checkpoint, record_integrity_violation, set_unanchored_checkpoints
from .models import Checkpoint, SequenceRange, StreamKey, format_timestamp
from .timestamping import TimestampAuthority

logger = logging.getLogger("action_ledger")


def checkpoint_digest(cp: Checkpoint) -> str:
    return hash_canonical(
        {
            "stream": cp.stream,
            "seq_start": cp.seq_start,
            "seq_end": cp.seq_end,
            "merkle_root": cp.merkle_root,
            "created_at": format_timestamp(cp.created_at),
        }
    )


class CheckpointService:
    def __init__(self, store: Any, tsa: Optional[TimestampAuthority], *, max_events: Optional[int] = None):
        self.store = store
        self.tsa = tsa
        self.max_events = max_events

    def pending_events(self, stream: str) -> int:
        """Events appended since the last checkpoint."""
        head = self.store.head(stream)
        last = self.store.last_checkpoint(head.stream)
        return head.sequence - (last.seq_end if last else 0)

    def checkpoint(self, stream: "StreamKey | str") -> Optional[Checkpoint]:
        """Root the next window of ``stream``; ``None`` if nothing new was appended.

        Only already-committed events are read, and the window's chain is
        verified before it is rooted.
        """
        head = self.store.head(stream)
        last = self.store.last_checkpoint(head.stream)
        start = last.seq_end + 1 if last else 1
        if start > head.sequence:
            return None
        end = head.sequence
        if self.max_events:
            end = min(end, start + self.max_events - 1)

        rng = SequenceRange(start, end)
        self.store.verify(head.stream, rng).raise_for_status()
        leaves = [ev.hash_self for ev in self.store.get(head.stream, rng)]

        cp = Checkpoint(
            checkpoint_id=f"cp_{uuid.uuid4().hex}",
            stream=head.stream,
            seq_start=start,
            seq_end=end,
            merkle_root=merkle_root(leaves),
            created_at=_now_utc(),
        )
        self.store.save_checkpoint(cp)
        logger.info("checkpoint %s on %s covers %d..%d root=%s", cp.checkpoint_id, cp.stream, start, end, cp.merkle_root[:16])

        anchored = self._anchor(cp)
        record_checkpoint(anchored is not None)
        self._update_backlog()
        return anchored or cp

    def _anchor(self, cp: Checkpoint) -> Optional[Checkpoint]:
        if self.tsa is None:
            return None
        try:
            receipt = self.tsa.timestamp(checkpoint_digest(cp))
        except AnchoringUnavailable as e:
            record_anchor_failure()
            logger.warning("checkpoint %s left unanchored: %s", cp.checkpoint_id, e.message)
            return None
        return self.store.attach_receipt(cp.checkpoint_id, receipt)

    def anchor_pending(self) -> int:
        """Try to anchor every un-anchored checkpoint; returns how many succeeded."""
        done = 0
        for cp in self.store.list_checkpoints(unanchored_only=True):
            if self._anchor(cp) is None:
                break
            done += 1
            logger.info("checkpoint %s anchored on retry", cp.checkpoint_id)
        self._update_backlog()
        return done

    def _update_backlog(self) -> None:
        set_unanchored_checkpoints(len(self.store.list_checkpoints(unanchored_only=True)))

    def verify_checkpoint(self, cp: Checkpoint) -> bool:
        """Recompute the root from the store's current events."""
        leaves = [ev.hash_self for ev in self.store.get(cp.stream, SequenceRange(cp.seq_start, cp.seq_end))]
        ok = len(leaves) == cp.leaf_count and merkle_root(leaves) == cp.merkle_root
        if not ok:
            record_integrity_violation("checkpoint")
            logger.error("checkpoint %s root does not reproduce", cp.checkpoint_id)
        return ok


class _PeriodicWorker:
    """Daemon thread calling ``run_once`` every ``period`` seconds until stopped."""

    name = "ledger-worker"

    def __init__(self, period: float):
        self.period = float(period)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> Any:
        raise NotImplementedError

    def _loop(self) -> None:
        while not self._stop.wait(self.period):
            try:
                self.run_once()
            except LedgerError as e:
                logger.error("%s tick failed: %s", self.name, e)
            except Exception:
                logger.exception("%s tick crashed", self.name)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)


class CheckpointScheduler(_PeriodicWorker):
    """Checkpoints each stream every ``interval_seconds`` or after ``max_events`` new events."""

    name = "ledger-checkpoints"

    def __init__(self, service: CheckpointService, *, interval_seconds: float = 300.0, max_events: int = 1000, tick_seconds: float = 1.0):
        super().__init__(min(tick_seconds, interval_seconds))
        self.service = service
        self.interval_seconds = float(interval_seconds)
        self.max_events = int(max_events)
        self._last_run: Dict[str, float] = {}

    def due(self, stream: str, now: float) -> bool:
        pending = self.service.pending_events(stream)
        if pending <= 0:
            return False
        if pending >= self.max_events:
            return True
        last = self._last_run.setdefault(stream, now)
        return now - last >= self.interval_seconds

    def run_once(self, now: Optional[float] = None) -> List[Checkpoint]:
        now = time.monotonic() if now is None else now
        made = []
        for head in self.service.store.list_streams():
            if not self.due(head.stream, now):
                continue
            try:
                cp = self.service.checkpoint(head.stream)
            except NotFound:
                continue
            except LedgerError as e:
                logger.error("checkpoint of %s failed: %s", head.stream, e)
                continue
            self._last_run[head.stream] = now
            if cp is not None:
                made.append(cp)
        return made


class AnchorRetrier(_PeriodicWorker):
    """Re-anchors the backlog; the delay doubles while the TSA keeps failing."""

    name = "ledger-anchor-retry"

    def __init__(self, service: CheckpointService, *, retry_seconds: float = 30.0, max_backoff_seconds: float = 600.0):
        super().__init__(retry_seconds)
        self.service = service
        self.retry_seconds = float(retry_seconds)
        self.max_backoff_seconds = max(self.retry_seconds, float(max_backoff_seconds))

    def run_once(self) -> int:
        anchored = self.service.anchor_pending()
        if self.service.store.list_checkpoints(unanchored_only=True):
            self.period = min(self.period * 2, self.max_backoff_seconds)
        else:
            self.period = self.retry_seconds
        return anchored
