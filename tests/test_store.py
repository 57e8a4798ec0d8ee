import json
import sqlite3
import threading
from datetime import timedelta

import pytest

from conftest import BASE_TIME, make_draft

from action_ledger.chain import compute_hash
from action_ledger.crypto import GENESIS_HASH, TrustedKeys, create_key_pair
from action_ledger.errors import ConcurrencyConflict, IntegrityViolation, NotFound, ValidationError
from action_ledger.models import SequenceRange, StreamKey
from action_ledger.store import HashChainStore


def _tamper(store, stream, sequence, mutate):
    with sqlite3.connect(store.db.path) as conn:
        row = conn.execute(
            "SELECT body_json FROM events WHERE stream = ? AND sequence = ?", (stream, sequence)
        ).fetchone()
        body = json.loads(row[0])
        mutate(body)
        conn.execute(
            "UPDATE events SET body_json = ? WHERE stream = ? AND sequence = ?",
            (json.dumps(body), stream, sequence),
        )


def test_append_links_events_into_a_chain(store):
    a = store.append(make_draft(minutes=0))
    b = store.append(make_draft(minutes=1))
    c = store.append(make_draft(minutes=2))

    assert a.stream == "app:billing"
    assert [a.sequence, b.sequence, c.sequence] == [1, 2, 3]
    assert a.hash_prev == GENESIS_HASH
    assert b.hash_prev == a.hash_self
    assert c.hash_prev == b.hash_self
    assert c.hash_self == compute_hash(c)

    result = store.verify("app:billing", SequenceRange(1, 3))
    assert result.ok
    assert result.checked == 3
    assert result.terminal_hash == c.hash_self


def test_streams_are_independent(store):
    store.append(make_draft("billing"))
    x = store.append(make_draft("search"))
    assert x.sequence == 1
    assert x.hash_prev == GENESIS_HASH
    assert [h.stream for h in store.list_streams()] == ["app:billing", "app:search"]
    assert [h.stream for h in store.list_streams("search")] == ["app:search"]


def test_session_scope_chains_per_session(tmp_path):
    store = HashChainStore(str(tmp_path / "l.db"), stream_scope="session")
    a = store.append(make_draft(session_id="s1"))
    b = store.append(make_draft(session_id="s2"))
    assert a.stream == "app:billing/session:s1"
    assert b.stream == "app:billing/session:s2"
    assert b.sequence == 1


def test_explicit_stream_must_match_event(store):
    with pytest.raises(ValidationError):
        store.append(make_draft("billing"), stream="app:search")


def test_get_is_ordered_restartable_and_bounded(store):
    for i in range(5):
        store.append(make_draft(minutes=i))
    rng = store.get("app:billing", SequenceRange(2, 99))
    assert (rng.start, rng.end, len(rng)) == (2, 5, 4)
    first = [e.sequence for e in rng]
    again = [e.sequence for e in rng]
    assert first == again == [2, 3, 4, 5]


def test_get_pins_upper_bound_at_call_time(store):
    for i in range(3):
        store.append(make_draft(minutes=i))
    rng = store.get(StreamKey("billing"))
    store.append(make_draft(minutes=3))
    assert [e.sequence for e in rng] == [1, 2, 3]


def test_get_pages_through_long_ranges(tmp_path):
    store = HashChainStore(str(tmp_path / "l.db"), page_size=2)
    for i in range(5):
        store.append(make_draft(minutes=i))
    assert [e.sequence for e in store.get("app:billing")] == [1, 2, 3, 4, 5]


def test_tail_and_head(store):
    for i in range(4):
        store.append(make_draft(minutes=i))
    assert [e.sequence for e in store.tail("app:billing", 2)] == [3, 4]
    head = store.head("app:billing")
    assert head.sequence == 4
    assert head.hash_self == store.hash_at("app:billing", 4)


def test_unknown_stream_is_not_found(store):
    with pytest.raises(NotFound):
        store.head("app:nope")
    with pytest.raises(NotFound):
        store.get_event("evt_missing")


def test_verify_beyond_tail_is_not_found(store):
    store.append(make_draft())
    with pytest.raises(NotFound):
        store.verify("app:billing", SequenceRange(5, 9))


def test_verify_subrange_checks_continuity_into_range(store):
    for i in range(4):
        store.append(make_draft(minutes=i))
    result = store.verify("app:billing", SequenceRange(3, 4))
    assert result.ok
    assert result.checked == 2
    assert result.terminal_hash == store.head("app:billing").hash_self


def test_expected_sequence_conflict(store):
    store.append(make_draft(minutes=0), expected_sequence=1)
    with pytest.raises(ConcurrencyConflict) as ei:
        store.append(make_draft(minutes=1), expected_sequence=1)
    assert ei.value.retryable
    assert ei.value.details["tail_sequence"] == 1
    assert store.head("app:billing").sequence == 1


def test_concurrent_appends_with_same_expected_sequence_one_wins(store):
    store.append(make_draft())
    barrier = threading.Barrier(4)
    outcomes = []

    def worker(i):
        barrier.wait()
        try:
            store.append(make_draft(minutes=10 + i), expected_sequence=2)
            outcomes.append("ok")
        except ConcurrencyConflict:
            outcomes.append("conflict")

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["conflict", "conflict", "conflict", "ok"]
    assert store.head("app:billing").sequence == 2
    assert store.verify("app:billing").ok


def test_concurrent_appends_never_fork_the_chain(store):
    def worker(i):
        for j in range(5):
            store.append(make_draft(minutes=i * 10 + j))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    events = list(store.get("app:billing"))
    assert [e.sequence for e in events] == list(range(1, 21))
    assert store.verify("app:billing").ok


def test_duplicate_event_id_returns_stored_event(store):
    draft = make_draft()
    first = store.append(draft)
    again = store.append(draft)
    assert again == first
    assert store.head("app:billing").sequence == 1


def test_duplicate_event_id_with_different_content_rejected(store):
    draft = make_draft(event_id="evt_fixed")
    store.append(draft)
    with pytest.raises(ValidationError):
        store.append(make_draft(event_id="evt_fixed", output={"changed": True}))


def test_duplicate_event_id_in_other_stream_rejected(tmp_path):
    store = HashChainStore(str(tmp_path / "l.db"), stream_scope="session")
    store.append(make_draft(session_id="s1", event_id="evt_shared"))
    with pytest.raises(ValidationError) as ei:
        store.append(make_draft(session_id="s2", event_id="evt_shared"))
    assert ei.value.details["stream"] == "app:billing/session:s1"


def test_chained_event_cannot_be_appended(store):
    stored = store.append(make_draft())
    with pytest.raises(ValidationError):
        store.append(stored)


def test_schema_violation_rejected(store):
    with pytest.raises(ValidationError) as ei:
        store.append(make_draft(app_id="bad/app"))
    assert ei.value.details["errors"]


def test_tampered_body_detected_with_event_id(store):
    for i in range(3):
        store.append(make_draft(minutes=i))
    target = store.get_event(list(store.get("app:billing"))[1].event_id)

    _tamper(store, "app:billing", 2, lambda body: body.update(output={"refund": 10_000}))

    result = store.verify("app:billing")
    assert not result.ok
    assert result.reason == "HASH_MISMATCH"
    assert result.bad_sequence == 2
    assert result.bad_event_id == target.event_id
    assert result.checked == 1
    with pytest.raises(IntegrityViolation) as ei:
        result.raise_for_status()
    assert ei.value.event_id == target.event_id


def test_rewritten_hash_breaks_next_link(store):
    for i in range(3):
        store.append(make_draft(minutes=i))

    def forge(body):
        body["output"] = {"forged": True}
        body.pop("hash_self")
        body.pop("signature", None)

    _tamper(store, "app:billing", 2, forge)
    # recompute hash_self for the forged body so only the next link breaks
    forged = store.get_event(list(store.get("app:billing", SequenceRange(2, 2)))[0].event_id)
    with sqlite3.connect(store.db.path) as conn:
        body = forged.to_dict()
        body["hash_self"] = compute_hash(forged)
        conn.execute(
            "UPDATE events SET body_json = ? WHERE stream = 'app:billing' AND sequence = 2", (json.dumps(body),)
        )

    result = store.verify("app:billing")
    assert not result.ok
    assert result.reason == "CHAIN_BROKEN"
    assert result.bad_sequence == 3


def test_unreadable_row_reported(store):
    store.append(make_draft())
    with sqlite3.connect(store.db.path) as conn:
        conn.execute("UPDATE events SET body_json = 'not json' WHERE sequence = 1")
    result = store.verify("app:billing")
    assert not result.ok
    assert result.reason == "UNREADABLE_EVENT"


def test_signatures_verify_with_trusted_keys(store, signer):
    store.append(make_draft())
    stored = store.append(make_draft(minutes=1))
    assert stored.signature.startswith("ledger_test_key:")

    assert store.verify("app:billing", trusted_keys=TrustedKeys.from_signer(signer)).ok
    other = TrustedKeys.from_signer(create_key_pair("ledger_test_key"))
    result = store.verify("app:billing", trusted_keys=other)
    assert not result.ok
    assert result.reason == "INVALID_SIGNATURE"


def test_unsigned_store_fails_signature_check(tmp_path, signer):
    store = HashChainStore(str(tmp_path / "l.db"))
    store.append(make_draft())
    result = store.verify("app:billing", trusted_keys=TrustedKeys.from_signer(signer))
    assert result.reason == "INVALID_SIGNATURE"


def test_sequence_range_for_time_is_half_open(store):
    for i in range(5):
        store.append(make_draft(minutes=i))
    rng = store.sequence_range_for_time("app:billing", BASE_TIME + timedelta(minutes=1), BASE_TIME + timedelta(minutes=3))
    assert (rng.start, rng.end) == (2, 3)
    assert store.sequence_range_for_time("app:billing", BASE_TIME + timedelta(days=1), BASE_TIME + timedelta(days=2)) is None


def test_events_persist_across_store_instances(tmp_path, signer):
    path = str(tmp_path / "l.db")
    a = HashChainStore(path, signer=signer).append(make_draft())
    b = HashChainStore(path, signer=signer).append(make_draft(minutes=1))
    assert b.hash_prev == a.hash_self
    assert HashChainStore(path).verify("app:billing").terminal_hash == b.hash_self
