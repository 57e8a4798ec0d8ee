import json
import sqlite3
import time

import pytest

from conftest import make_draft

from action_ledger.checkpoints import AnchorRetrier, CheckpointScheduler, CheckpointService, checkpoint_digest
from action_ledger.crypto import TrustedKeys
from action_ledger.errors import AnchoringUnavailable, IntegrityViolation
from action_ledger.merkle import merkle_root
from action_ledger.timestamping import LocalTimestampAuthority, TimestampAuthority, verify_receipt


class FlakyTSA(TimestampAuthority):
    """Fails while ``down`` is set, otherwise delegates to a local TSA."""

    def __init__(self, signer, down=True):
        self.inner = LocalTimestampAuthority(signer)
        self.down = down
        self.calls = 0

    def timestamp(self, digest):
        self.calls += 1
        if self.down:
            raise AnchoringUnavailable("tsa down")
        return self.inner.timestamp(digest)


def _fill(store, n, start=0):
    return [store.append(make_draft(minutes=start + i)) for i in range(n)]


def test_checkpoint_roots_new_events_and_anchors(store, signer):
    events = _fill(store, 5)
    svc = CheckpointService(store, LocalTimestampAuthority(signer))

    cp = svc.checkpoint("app:billing")
    assert (cp.seq_start, cp.seq_end) == (1, 5)
    assert cp.merkle_root == merkle_root([e.hash_self for e in events])
    assert cp.anchored
    assert verify_receipt(checkpoint_digest(cp), cp.receipt, TrustedKeys.from_signer(signer))
    assert svc.verify_checkpoint(cp)


def test_nothing_new_returns_none(store, signer):
    _fill(store, 2)
    svc = CheckpointService(store, LocalTimestampAuthority(signer))
    assert svc.checkpoint("app:billing") is not None
    assert svc.checkpoint("app:billing") is None
    assert svc.pending_events("app:billing") == 0


def test_windows_are_contiguous(store, signer):
    svc = CheckpointService(store, LocalTimestampAuthority(signer))
    _fill(store, 3)
    first = svc.checkpoint("app:billing")
    _fill(store, 2, start=10)
    second = svc.checkpoint("app:billing")
    assert (first.seq_start, first.seq_end) == (1, 3)
    assert (second.seq_start, second.seq_end) == (4, 5)
    assert [c.checkpoint_id for c in store.list_checkpoints("app:billing")] == [first.checkpoint_id, second.checkpoint_id]


def test_max_events_caps_window(store, signer):
    _fill(store, 5)
    svc = CheckpointService(store, LocalTimestampAuthority(signer), max_events=2)
    assert (svc.checkpoint("app:billing").seq_end) == 2
    assert svc.pending_events("app:billing") == 3


def test_failing_tsa_leaves_checkpoint_unanchored_then_retry_anchors(store, signer):
    _fill(store, 3)
    tsa = FlakyTSA(signer, down=True)
    svc = CheckpointService(store, tsa)

    cp = svc.checkpoint("app:billing")
    assert cp is not None
    assert not cp.anchored
    assert [c.checkpoint_id for c in store.list_checkpoints(unanchored_only=True)] == [cp.checkpoint_id]

    assert svc.anchor_pending() == 0

    tsa.down = False
    assert svc.anchor_pending() == 1
    anchored = store.get_checkpoint(cp.checkpoint_id)
    assert anchored.anchored
    assert (anchored.merkle_root, anchored.seq_start, anchored.seq_end) == (cp.merkle_root, cp.seq_start, cp.seq_end)
    assert store.list_checkpoints(unanchored_only=True) == []


def test_receipt_is_attached_only_once(store, signer):
    _fill(store, 1)
    svc = CheckpointService(store, LocalTimestampAuthority(signer))
    cp = svc.checkpoint("app:billing")
    again = store.attach_receipt(cp.checkpoint_id, {"digest": "other"})
    assert again.receipt == cp.receipt


def test_checkpoint_refuses_broken_chain(store, signer):
    _fill(store, 3)
    with sqlite3.connect(store.db.path) as conn:
        body = json.loads(conn.execute("SELECT body_json FROM events WHERE sequence = 2").fetchone()[0])
        body["input"] = {"prompt": "rewritten"}
        conn.execute("UPDATE events SET body_json = ? WHERE sequence = 2", (json.dumps(body),))
    svc = CheckpointService(store, LocalTimestampAuthority(signer))
    with pytest.raises(IntegrityViolation):
        svc.checkpoint("app:billing")
    assert store.list_checkpoints() == []


def test_anchor_retrier_backs_off_while_tsa_fails(store, signer):
    _fill(store, 2)
    tsa = FlakyTSA(signer, down=True)
    svc = CheckpointService(store, tsa)
    svc.checkpoint("app:billing")

    retrier = AnchorRetrier(svc, retry_seconds=1.0, max_backoff_seconds=4.0)
    periods = []
    for _ in range(4):
        retrier.run_once()
        periods.append(retrier.period)
    assert periods == [2.0, 4.0, 4.0, 4.0]

    tsa.down = False
    assert retrier.run_once() == 1
    assert retrier.period == 1.0


def test_scheduler_checkpoints_after_interval_or_event_count(store, signer):
    svc = CheckpointService(store, LocalTimestampAuthority(signer))
    sched = CheckpointScheduler(svc, interval_seconds=60.0, max_events=3)

    _fill(store, 1)
    assert sched.run_once(now=0.0) == []
    assert sched.run_once(now=30.0) == []
    made = sched.run_once(now=61.0)
    assert [(c.seq_start, c.seq_end) for c in made] == [(1, 1)]

    _fill(store, 3, start=5)
    made = sched.run_once(now=62.0)
    assert [(c.seq_start, c.seq_end) for c in made] == [(2, 4)]


class LockedOnceStore:
    """Raises ``database is locked`` on the first checkpoint listing."""

    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    def list_checkpoints(self, **kwargs):
        self.calls += 1
        if self.calls == 1:
            raise sqlite3.OperationalError("database is locked")
        return self.inner.list_checkpoints(**kwargs)

    def __getattr__(self, name):
        return getattr(self.inner, name)


def test_background_worker_survives_a_storage_error(store, signer):
    locked = LockedOnceStore(store)
    retrier = AnchorRetrier(CheckpointService(locked, LocalTimestampAuthority(signer)), retry_seconds=0.05)
    retrier.start()
    try:
        time.sleep(0.5)
        assert locked.calls > 1
        assert retrier._thread.is_alive()
    finally:
        retrier.stop()
