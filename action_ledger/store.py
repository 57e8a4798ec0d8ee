"""Append-only hash-chain store.

Events live in SQLite, one chain per stream key (``app:<id>`` or
``app:<id>/session:<id>``). The tail of each stream is the only mutable shared
state in the ledger and is guarded twice:

- in-process, by one ``threading.Lock`` per stream key, so unrelated streams
  never contend;
- in the database, by a ``stream_heads`` row updated with a conditional
  ``UPDATE ... WHERE last_sequence = ?`` inside ``BEGIN IMMEDIATE`` plus a
  ``UNIQUE(stream, sequence)`` constraint, so a second process racing the same
  stream gets ``ConcurrencyConflict`` instead of a forked chain.

Readers never take the stream lock. ``get`` pins the upper bound at call time
and pages through the range with short-lived connections, so long exports do
not block ingestion.

The same database also holds checkpoints and approval requests.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from .chain import VerificationResult, compute_hash, sign_event, verify_events
from .crypto import GENESIS_HASH, Signer, TrustedKeys, _now_utc, canonical_json_dumps
from .db import Database
from .errors import ConcurrencyConflict, IntegrityViolation, NotFound, ValidationError
from .metrics import record_append, record_integrity_violation
from .models import (
    ApprovalRequest,
    ApprovalState,
    Checkpoint,
    Event,
    SequenceRange,
    StreamHead,
    StreamKey,
    format_timestamp,
    parse_timestamp,
)
from .schema import validate_draft

logger = logging.getLogger("action_ledger")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS stream_heads (
        stream TEXT PRIMARY KEY,
        app_id TEXT NOT NULL,
        last_sequence INTEGER NOT NULL,
        last_hash TEXT NOT NULL,
        updated_at_utc TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        stream TEXT NOT NULL,
        sequence INTEGER NOT NULL,
        event_id TEXT NOT NULL UNIQUE,
        app_id TEXT NOT NULL,
        session_id TEXT NOT NULL,
        ts_utc TEXT NOT NULL,
        hash_self TEXT NOT NULL,
        body_json TEXT NOT NULL,
        PRIMARY KEY (stream, sequence)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_stream_ts ON events(stream, ts_utc)",
    """
    CREATE TABLE IF NOT EXISTS checkpoints (
        checkpoint_id TEXT PRIMARY KEY,
        stream TEXT NOT NULL,
        seq_start INTEGER NOT NULL,
        seq_end INTEGER NOT NULL,
        merkle_root TEXT NOT NULL,
        created_at_utc TEXT NOT NULL,
        receipt_json TEXT,
        UNIQUE (stream, seq_start)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approvals (
        approval_id TEXT PRIMARY KEY,
        state TEXT NOT NULL,
        body_json TEXT NOT NULL,
        updated_at_utc TEXT NOT NULL
    )
    """,
)


class EventRange:
    """Lazy, restartable view of ``[start, end]`` on one stream.

    Every ``iter()`` starts over from ``start``; rows are fetched a page at a
    time. The upper bound is fixed when the view is created.
    """

    def __init__(self, store: "HashChainStore", stream: str, start: int, end: int):
        self.store = store
        self.stream = stream
        self.start = start
        self.end = end

    def __len__(self) -> int:
        return max(0, self.end - self.start + 1)

    def __iter__(self) -> Iterator[Event]:
        cursor = self.start
        page = self.store.page_size
        while cursor <= self.end:
            upper = min(self.end, cursor + page - 1)
            for ev in self.store._fetch_page(self.stream, cursor, upper):
                yield ev
            cursor = upper + 1

    def __repr__(self) -> str:
        return f"EventRange({self.stream!r}, {self.start}..{self.end})"


class HashChainStore:
    """SQLite-backed ledger of per-stream hash chains."""

    def __init__(
        self,
        db: "Database | str",
        *,
        signer: Optional[Signer] = None,
        stream_scope: str = "app",
        page_size: int = 500,
    ):
        if stream_scope not in ("app", "session"):
            raise ValueError(f"stream_scope must be 'app' or 'session', got {stream_scope!r}")
        self.db = db if isinstance(db, Database) else Database(str(db))
        self.signer = signer
        self.stream_scope = stream_scope
        self.page_size = max(1, int(page_size))
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        with self.db.connect() as conn:
            for stmt in _SCHEMA:
                conn.execute(stmt)

    def _stream_lock(self, stream: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(stream)
            if lock is None:
                lock = self._locks[stream] = threading.Lock()
            return lock

    def stream_for(self, event: Event) -> str:
        return str(StreamKey.for_event(event, self.stream_scope))

    # ---------------------------
    # Append
    # ---------------------------

    def append(
        self,
        event: Event,
        *,
        stream: "StreamKey | str | None" = None,
        expected_sequence: Optional[int] = None,
    ) -> Event:
        """Chain ``event`` onto its stream and return the stored Event.

        ``expected_sequence`` is the sequence number the caller believes this
        event will get. If the stream has already moved past it the append is
        rejected with ``ConcurrencyConflict`` and nothing is written.

        Re-appending an event id that is already stored returns the stored
        event unchanged (at-least-once delivery).
        """
        if event.is_chained:
            raise ValidationError("event already carries chain fields; append a draft", event_id=event.event_id)
        try:
            validate_draft(event.to_dict())
        except ValidationError:
            record_append("invalid")
            raise

        key = StreamKey.parse(stream) if stream is not None else StreamKey.for_event(event, self.stream_scope)
        if key.app_id != event.app_id or (key.session_id and key.session_id != event.session_id):
            record_append("invalid")
            raise ValidationError("event does not belong to stream", stream=str(key), event_id=event.event_id)
        stream_name = str(key)

        with self._stream_lock(stream_name):
            with self.db.connect(immediate=True) as conn:
                dup = self._existing(conn, event, stream_name)
                if dup is not None:
                    record_append("duplicate")
                    logger.debug("duplicate event %s ignored (stream=%s seq=%d)", event.event_id, dup.stream, dup.sequence)
                    return dup

                row = conn.execute(
                    "SELECT last_sequence, last_hash FROM stream_heads WHERE stream = ?", (stream_name,)
                ).fetchone()
                tail_seq, tail_hash = (int(row[0]), str(row[1])) if row else (0, GENESIS_HASH)
                next_seq = tail_seq + 1
                if expected_sequence is not None and expected_sequence != next_seq:
                    record_append("conflict")
                    logger.warning(
                        "append conflict on %s: expected sequence %d, next is %d",
                        stream_name,
                        expected_sequence,
                        next_seq,
                    )
                    raise ConcurrencyConflict(
                        "stream advanced past expected sequence",
                        stream=stream_name,
                        expected_sequence=expected_sequence,
                        tail_sequence=tail_seq,
                    )

                chained = event.chained(stream=stream_name, sequence=next_seq, hash_prev=tail_hash)
                chained = replace(chained, hash_self=compute_hash(chained))
                if self.signer is not None:
                    chained = replace(chained, signature=sign_event(chained, self.signer))

                now = _now_utc().isoformat()
                try:
                    if row is None:
                        conn.execute(
                            "INSERT INTO stream_heads (stream, app_id, last_sequence, last_hash, updated_at_utc) "
                            "VALUES (?, ?, ?, ?, ?)",
                            (stream_name, key.app_id, next_seq, chained.hash_self, now),
                        )
                    else:
                        cur = conn.execute(
                            "UPDATE stream_heads SET last_sequence = ?, last_hash = ?, updated_at_utc = ? "
                            "WHERE stream = ? AND last_sequence = ? AND last_hash = ?",
                            (next_seq, chained.hash_self, now, stream_name, tail_seq, tail_hash),
                        )
                        if cur.rowcount != 1:
                            raise ConcurrencyConflict("stream head moved during append", stream=stream_name)
                    conn.execute(
                        "INSERT INTO events (stream, sequence, event_id, app_id, session_id, ts_utc, hash_self, body_json) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            stream_name,
                            next_seq,
                            chained.event_id,
                            chained.app_id,
                            chained.session_id,
                            format_timestamp(chained.timestamp),
                            chained.hash_self,
                            canonical_json_dumps(chained.to_dict()),
                        ),
                    )
                except sqlite3.IntegrityError as e:
                    record_append("conflict")
                    raise ConcurrencyConflict("sequence slot already taken", stream=stream_name, sequence=next_seq) from e
                except ConcurrencyConflict:
                    record_append("conflict")
                    raise

        record_append("ok")
        logger.debug("appended %s to %s at %d", chained.event_id, stream_name, next_seq)
        return chained

    def _existing(self, conn: sqlite3.Connection, draft: Event, stream: str) -> Optional[Event]:
        row = conn.execute("SELECT event_id, body_json FROM events WHERE event_id = ?", (draft.event_id,)).fetchone()
        if row is None:
            return None
        stored = self._decode(row["event_id"], row["body_json"])
        if stored.stream != stream:
            raise ValidationError("event id already used in another stream", event_id=draft.event_id, stream=stored.stream)
        unchained = stored.chained(stream="", sequence=0, hash_prev="")
        if canonical_json_dumps(unchained.canonical_body()) != canonical_json_dumps(draft.canonical_body()):
            raise ValidationError("event id already used for a different event", event_id=draft.event_id)
        return stored

    # ---------------------------
    # Read
    # ---------------------------

    @staticmethod
    def _decode(event_id: str, body_json: str) -> Event:
        try:
            return Event.from_dict(json.loads(body_json))
        except (ValueError, TypeError, ValidationError) as e:
            raise IntegrityViolation("stored event is unreadable", event_id=event_id) from e

    def _fetch_page(self, stream: str, start: int, end: int) -> List[Event]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT event_id, body_json FROM events WHERE stream = ? AND sequence BETWEEN ? AND ? "
                "ORDER BY sequence",
                (stream, start, end),
            ).fetchall()
        return [self._decode(r["event_id"], r["body_json"]) for r in rows]

    def head(self, stream: "StreamKey | str") -> StreamHead:
        name = str(StreamKey.parse(stream))
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT last_sequence, last_hash FROM stream_heads WHERE stream = ?", (name,)
            ).fetchone()
        if row is None:
            raise NotFound("stream does not exist", stream=name)
        return StreamHead(stream=name, sequence=int(row[0]), hash_self=str(row[1]))

    def get(self, stream: "StreamKey | str", seq_range: Optional[SequenceRange] = None) -> EventRange:
        """Events of ``stream`` in ascending order, bounded by the current tail."""
        head = self.head(stream)
        rng = (seq_range or SequenceRange()).bounded(head.sequence)
        end = rng.end if rng.start <= head.sequence else rng.start - 1
        return EventRange(self, head.stream, rng.start, end)

    def get_event(self, event_id: str) -> Event:
        with self.db.connect() as conn:
            row = conn.execute("SELECT event_id, body_json FROM events WHERE event_id = ?", (event_id,)).fetchone()
        if row is None:
            raise NotFound("event not found", event_id=event_id)
        return self._decode(row["event_id"], row["body_json"])

    def tail(self, stream: "StreamKey | str", n: int = 20) -> List[Event]:
        head = self.head(stream)
        start = max(1, head.sequence - max(0, n) + 1)
        return list(self.get(head.stream, SequenceRange(start, head.sequence)))

    def hash_at(self, stream: str, sequence: int) -> str:
        """``hash_self`` of one event, or ``GENESIS_HASH`` for sequence 0."""
        if sequence == 0:
            return GENESIS_HASH
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT hash_self FROM events WHERE stream = ? AND sequence = ?", (stream, sequence)
            ).fetchone()
        if row is None:
            raise NotFound("sequence not found", stream=stream, sequence=sequence)
        return str(row[0])

    def list_streams(self, app_id: Optional[str] = None) -> List[StreamHead]:
        sql = "SELECT stream, last_sequence, last_hash FROM stream_heads"
        args: tuple = ()
        if app_id is not None:
            sql += " WHERE app_id = ?"
            args = (app_id,)
        with self.db.connect() as conn:
            rows = conn.execute(sql + " ORDER BY stream", args).fetchall()
        return [StreamHead(stream=r[0], sequence=int(r[1]), hash_self=str(r[2])) for r in rows]

    def sequence_range_for_time(
        self, stream: str, time_from: datetime, time_to: datetime
    ) -> Optional[SequenceRange]:
        """Smallest contiguous range covering events with ``time_from <= ts < time_to``."""
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT MIN(sequence), MAX(sequence) FROM events WHERE stream = ? AND ts_utc >= ? AND ts_utc < ?",
                (stream, format_timestamp(time_from), format_timestamp(time_to)),
            ).fetchone()
        if row is None or row[0] is None:
            return None
        return SequenceRange(int(row[0]), int(row[1]))

    # ---------------------------
    # Verify
    # ---------------------------

    def verify(
        self,
        stream: "StreamKey | str",
        seq_range: Optional[SequenceRange] = None,
        *,
        trusted_keys: Optional[TrustedKeys] = None,
    ) -> VerificationResult:
        """Recompute every link in the range.

        Continuity into the range is checked against the stored hash of the
        event just before ``start``. On success ``terminal_hash`` is the
        recomputed hash of the last event in the range.
        """
        events = self.get(stream, seq_range)
        name = events.stream
        if len(events) == 0:
            raise NotFound("sequence range is beyond the stream tail", stream=name, start=events.start)
        expected_prev = self.hash_at(name, events.start - 1)
        try:
            result = verify_events(
                events,
                expected_prev=expected_prev,
                start_sequence=events.start,
                trusted_keys=trusted_keys,
                stream=name,
            )
        except IntegrityViolation as e:
            result = VerificationResult(
                ok=False,
                reason="UNREADABLE_EVENT",
                checked=0,
                terminal_hash=expected_prev,
                stream=name,
                bad_event_id=e.event_id,
            )
        if result.ok and result.checked != len(events):
            result = VerificationResult(
                ok=False,
                reason="MISSING_EVENTS",
                checked=result.checked,
                terminal_hash=result.terminal_hash,
                stream=name,
                bad_sequence=events.start + result.checked,
            )
        if not result.ok:
            record_integrity_violation("store")
            logger.error(
                "integrity violation on %s at seq=%s event=%s: %s",
                name,
                result.bad_sequence,
                result.bad_event_id,
                result.reason,
            )
        return result

    # ---------------------------
    # Checkpoints
    # ---------------------------

    def save_checkpoint(self, cp: Checkpoint) -> None:
        with self.db.connect(immediate=True) as conn:
            try:
                conn.execute(
                    "INSERT INTO checkpoints (checkpoint_id, stream, seq_start, seq_end, merkle_root, created_at_utc, receipt_json) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        cp.checkpoint_id,
                        cp.stream,
                        cp.seq_start,
                        cp.seq_end,
                        cp.merkle_root,
                        format_timestamp(cp.created_at),
                        json.dumps(cp.receipt, sort_keys=True) if cp.receipt is not None else None,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ConcurrencyConflict("checkpoint window already taken", stream=cp.stream, seq_start=cp.seq_start) from e

    def attach_receipt(self, checkpoint_id: str, receipt: Dict[str, Any]) -> Checkpoint:
        """Record the anchoring receipt. Root and range are never touched."""
        with self.db.connect(immediate=True) as conn:
            cur = conn.execute(
                "UPDATE checkpoints SET receipt_json = ? WHERE checkpoint_id = ? AND receipt_json IS NULL",
                (json.dumps(receipt, sort_keys=True), checkpoint_id),
            )
            if cur.rowcount != 1:
                row = conn.execute("SELECT 1 FROM checkpoints WHERE checkpoint_id = ?", (checkpoint_id,)).fetchone()
                if row is None:
                    raise NotFound("checkpoint not found", checkpoint_id=checkpoint_id)
        return self.get_checkpoint(checkpoint_id)

    @staticmethod
    def _checkpoint_from_row(row: sqlite3.Row) -> Checkpoint:
        return Checkpoint(
            checkpoint_id=row["checkpoint_id"],
            stream=row["stream"],
            seq_start=int(row["seq_start"]),
            seq_end=int(row["seq_end"]),
            merkle_root=row["merkle_root"],
            created_at=parse_timestamp(row["created_at_utc"], "created_at"),
            receipt=json.loads(row["receipt_json"]) if row["receipt_json"] else None,
        )

    def get_checkpoint(self, checkpoint_id: str) -> Checkpoint:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM checkpoints WHERE checkpoint_id = ?", (checkpoint_id,)).fetchone()
        if row is None:
            raise NotFound("checkpoint not found", checkpoint_id=checkpoint_id)
        return self._checkpoint_from_row(row)

    def list_checkpoints(self, stream: Optional[str] = None, *, unanchored_only: bool = False) -> List[Checkpoint]:
        clauses, args = [], []
        if stream is not None:
            clauses.append("stream = ?")
            args.append(str(StreamKey.parse(stream)))
        if unanchored_only:
            clauses.append("receipt_json IS NULL")
        sql = "SELECT * FROM checkpoints"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        with self.db.connect() as conn:
            rows = conn.execute(sql + " ORDER BY stream, seq_start", tuple(args)).fetchall()
        return [self._checkpoint_from_row(r) for r in rows]

    def last_checkpoint(self, stream: str) -> Optional[Checkpoint]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM checkpoints WHERE stream = ? ORDER BY seq_end DESC LIMIT 1", (stream,)
            ).fetchone()
        return self._checkpoint_from_row(row) if row else None

    # ---------------------------
    # Approvals
    # ---------------------------

    def save_approval(self, req: ApprovalRequest) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "INSERT INTO approvals (approval_id, state, body_json, updated_at_utc) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(approval_id) DO UPDATE SET state = excluded.state, body_json = excluded.body_json, "
                "updated_at_utc = excluded.updated_at_utc",
                (req.approval_id, req.state.value, json.dumps(req.to_dict(), sort_keys=True), _now_utc().isoformat()),
            )

    def get_approval(self, approval_id: str) -> ApprovalRequest:
        with self.db.connect() as conn:
            row = conn.execute("SELECT body_json FROM approvals WHERE approval_id = ?", (approval_id,)).fetchone()
        if row is None:
            raise NotFound("approval request not found", approval_id=approval_id)
        return ApprovalRequest.from_dict(json.loads(row[0]))

    def list_approvals(self, state: Optional[ApprovalState] = None) -> List[ApprovalRequest]:
        sql = "SELECT body_json FROM approvals"
        args: tuple = ()
        if state is not None:
            sql += " WHERE state = ?"
            args = (state.value,)
        with self.db.connect() as conn:
            rows = conn.execute(sql + " ORDER BY approval_id", args).fetchall()
        return [ApprovalRequest.from_dict(json.loads(r[0])) for r in rows]
