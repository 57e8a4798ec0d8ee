"""Hash-chain link computation and verification.

For every stored event::

    hash_self = sha256( len-prefixed("LEDGER_EVENT_V1", canonical(body), hash_prev) )

where ``body`` is the event's wire form minus ``hash_self`` and ``signature``
(so stream, sequence and hash_prev are themselves covered). The first event of
a stream links to ``GENESIS_HASH``.

Optionally each link is signed with Ed25519 over
``len-prefixed("LEDGER_EVENT_V1", stream, sequence, hash_self)``; the stored
signature string is ``<key_id>:<base64 sig>``.

``verify_events`` is shared by the store, the evidence packager and the
offline pack verifier so all three recompute links the same way.
"""

from __future__ import annotations

import binascii
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from .crypto import GENESIS_HASH, Signer, TrustedKeys, _safe_hash_encode, _sha256_hex, b64decode, b64encode, canonical_json_dumps
from .errors import IntegrityViolation, ValidationError
from .models import Event

LINK_VERSION = "LEDGER_EVENT_V1"


def compute_hash(event: Event) -> str:
    body_json = canonical_json_dumps(event.canonical_body())
    return _sha256_hex(_safe_hash_encode([LINK_VERSION, body_json, event.hash_prev]))


def signature_payload(stream: str, sequence: int, hash_self: str) -> bytes:
    return _safe_hash_encode([LINK_VERSION, stream, str(sequence), hash_self])


def sign_event(event: Event, signer: Signer) -> str:
    sig = signer.sign(signature_payload(event.stream, event.sequence, event.hash_self))
    return f"{signer.key_id}:{b64encode(sig)}"


def split_signature(value: str) -> Tuple[str, bytes]:
    key_id, sep, sig_b64 = str(value or "").rpartition(":")
    if not sep or not key_id:
        raise ValueError("signature must be '<key_id>:<base64>'")
    return key_id, b64decode(sig_b64)


def verify_signature(event: Event, trusted_keys: TrustedKeys) -> bool:
    if not event.signature:
        return False
    try:
        key_id, sig = split_signature(event.signature)
    except (ValueError, binascii.Error):
        return False
    return trusted_keys.verify_signature(key_id, signature_payload(event.stream, event.sequence, event.hash_self), sig)


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: str
    checked: int
    terminal_hash: str
    stream: str = ""
    bad_sequence: Optional[int] = None
    bad_event_id: Optional[str] = None

    def raise_for_status(self) -> str:
        """Return the terminal hash, or raise ``IntegrityViolation`` naming the first bad event."""
        if not self.ok:
            raise IntegrityViolation(
                f"hash chain verification failed: {self.reason}",
                stream=self.stream,
                sequence=self.bad_sequence,
                event_id=self.bad_event_id,
                reason=self.reason,
            )
        return self.terminal_hash

    def as_dict(self) -> dict:
        return {
            "ok": self.ok,
            "reason": self.reason,
            "checked": self.checked,
            "terminal_hash": self.terminal_hash,
            "stream": self.stream,
            "bad_sequence": self.bad_sequence,
            "bad_event_id": self.bad_event_id,
        }


def verify_events(
    events: Iterable[Event],
    *,
    expected_prev: str = GENESIS_HASH,
    start_sequence: Optional[int] = None,
    trusted_keys: Optional[TrustedKeys] = None,
    stream: str = "",
) -> VerificationResult:
    """Walk ``events`` in order, recomputing every link.

    ``expected_prev`` is the hash of the event preceding the first one checked
    (``GENESIS_HASH`` when starting at sequence 1). When ``trusted_keys`` is
    given every event must also carry a valid signature.
    """
    prev = expected_prev
    next_seq = start_sequence
    count = 0

    for ev in events:
        stream = stream or ev.stream

        def _fail(reason: str) -> VerificationResult:
            return VerificationResult(
                ok=False,
                reason=reason,
                checked=count,
                terminal_hash=prev,
                stream=stream,
                bad_sequence=ev.sequence,
                bad_event_id=ev.event_id,
            )

        if ev.stream != stream:
            return _fail("STREAM_MISMATCH")
        if next_seq is not None and ev.sequence != next_seq:
            return _fail("SEQUENCE_GAP")
        if ev.hash_prev != prev:
            return _fail("CHAIN_BROKEN")
        try:
            recomputed = compute_hash(ev)
        except ValidationError:
            return _fail("NON_CANONICAL_EVENT")
        if recomputed != ev.hash_self:
            return _fail("HASH_MISMATCH")
        if trusted_keys is not None and not verify_signature(ev, trusted_keys):
            return _fail("INVALID_SIGNATURE")

        count += 1
        prev = ev.hash_self
        next_seq = ev.sequence + 1

    return VerificationResult(ok=True, reason="OK", checked=count, terminal_hash=prev, stream=stream)
