from conftest import make_draft

from action_ledger.errors import ConcurrencyConflict, StorageLockdown, ValidationError
from action_ledger.ingest import EventIngestor


class FlakyStore:
    """Fails the first ``failures`` appends with ``error``, then records."""

    def __init__(self, failures=0, error=None):
        self.failures = failures
        self.error = error or ConcurrencyConflict("stream moved")
        self.attempts = 0
        self.appended = []

    def append(self, event):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.error
        self.appended.append(event.event_id)
        return event


def test_emit_returns_immediately_and_flush_drains(store):
    with EventIngestor(store) as ingestor:
        for i in range(10):
            ingestor.emit(make_draft(minutes=i))
        assert ingestor.flush(timeout=10)
    assert store.head("app:billing").sequence == 10
    assert store.verify("app:billing").ok


def test_retryable_errors_are_retried():
    flaky = FlakyStore(failures=2, error=StorageLockdown())
    ingestor = EventIngestor(flaky, max_attempts=5, backoff_seconds=0.001).start()
    ev = make_draft()
    ingestor.emit(ev)
    assert ingestor.flush(timeout=5)
    ingestor.close()
    assert flaky.appended == [ev.event_id]
    assert flaky.attempts == 3
    assert ingestor.rejected == []


def test_non_retryable_errors_are_rejected_once():
    flaky = FlakyStore(failures=99, error=ValidationError("bad event"))
    ingestor = EventIngestor(flaky, backoff_seconds=0.001).start()
    ev = make_draft()
    ingestor.emit(ev)
    assert ingestor.flush(timeout=5)
    ingestor.close()
    assert flaky.attempts == 1
    assert [(e.event_id, err.code) for e, err in ingestor.rejected] == [(ev.event_id, "LEDGER_E_VALIDATION")]


def test_gives_up_after_max_attempts():
    flaky = FlakyStore(failures=99)
    ingestor = EventIngestor(flaky, max_attempts=3, backoff_seconds=0.001).start()
    ingestor.emit(make_draft())
    assert ingestor.flush(timeout=5)
    ingestor.close()
    assert flaky.attempts == 3
    assert len(ingestor.rejected) == 1


def test_redelivery_is_deduplicated_by_store(store):
    ev = make_draft()
    with EventIngestor(store) as ingestor:
        ingestor.emit(ev)
        ingestor.emit(ev)
    assert store.head("app:billing").sequence == 1
