"""
Evidence packs: self-verifying exports of one application's ledger.

A pack holds everything a third party needs to re-check a time range of
events without access to the live store:

- events.jsonl          every exported event, canonical JSON, one per line
- chain.json            per-stream range plus the hash the range links onto
- checkpoints.json      overlapping checkpoints with all of their leaves
- policy_bundles.json   referenced bundle versions and checksums
                        (full rule sets when "policies" is included)
- traces.json           session/parent trees ("traces")
- evals.json            eval score distribution ("evals")
- approvals.json        approval requests referenced by events ("approvals")
- summary.json          counts, decision ratios, Merkle roots
- SUMMARY.md            the same, for humans
- CHECKSUMS.sha256      sha256sum-compatible listing
- manifest.json         per-file sha256 plus ``manifest_checksum``
- signature.json        Ed25519 signature over the manifest checksum
- timestamp_receipt.json  TSA receipt over the manifest checksum
- trusted_keys.json     public key of the signer (convenience copy)

Export never holds a lock that blocks appends: each stream's upper bound is
pinned at the start and only committed events are read. A broken chain or an
irreproducible checkpoint aborts the whole export with ``IntegrityViolation``.
"""

from __future__ import annotations

import binascii
import io
import json
import logging
import uuid
import zipfile
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .chain import verify_events
from .checkpoints import checkpoint_digest
from .crypto import (
    GENESIS_HASH,
    Signer,
    TrustedKeys,
    _now_utc,
    _safe_hash_encode,
    _sha256_hex,
    b64decode,
    b64encode,
    canonical_json_dumps,
    hash_canonical,
)
from .errors import AnchoringUnavailable, IntegrityViolation, NotFound, ValidationError
from .merkle import merkle_root
from .metrics import record_export, record_integrity_violation
from .models import Checkpoint, Decision, Event, SequenceRange, format_timestamp, parse_timestamp
from .timestamping import TimestampAuthority, verify_receipt

logger = logging.getLogger("action_ledger")

PACK_FORMAT = "action-ledger-evidence/1"
PACK_SIGNATURE_VERSION = "LEDGER_PACK_V1"
INCLUDE_KINDS = ("traces", "policies", "evals", "approvals")

# Files outside the manifest's own checksum listing.
_ENVELOPE_FILES = ("manifest.json", "signature.json", "timestamp_receipt.json", "trusted_keys.json")


def _json_bytes(obj: Any) -> bytes:
    return (json.dumps(obj, indent=2, sort_keys=True, ensure_ascii=False) + "\n").encode("utf-8")


def manifest_checksum(manifest: Dict[str, Any]) -> str:
    """sha256 of the canonical manifest without its own checksum field."""
    body = {k: v for k, v in manifest.items() if k != "manifest_checksum"}
    return hash_canonical(body)


def pack_signature_payload(checksum: str) -> bytes:
    return _safe_hash_encode([PACK_SIGNATURE_VERSION, checksum])


@dataclass(frozen=True)
class EvidencePack:
    pack_id: str
    files: Dict[str, bytes]

    @property
    def manifest(self) -> Dict[str, Any]:
        return json.loads(self.files["manifest.json"].decode("utf-8"))

    @property
    def manifest_checksum(self) -> str:
        return str(self.manifest["manifest_checksum"])

    def read_json(self, name: str) -> Any:
        return json.loads(self.files[name].decode("utf-8"))

    def write_dir(self, path: str) -> str:
        out = Path(path)
        out.mkdir(parents=True, exist_ok=True)
        for name, data in sorted(self.files.items()):
            (out / name).write_bytes(data)
        return str(out)

    def write_zip(self, output_path: str) -> str:
        zip_path = Path(output_path)
        if zip_path.suffix != ".zip":
            zip_path = zip_path.with_suffix(".zip")
        zip_path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED) as zf:
            for name, data in sorted(self.files.items()):
                zf.writestr(name, data)
        return str(zip_path)

    @classmethod
    def load(cls, path: str) -> "EvidencePack":
        """Load from a pack directory or ``.zip``."""
        p = Path(path)
        files: Dict[str, bytes] = {}
        if p.is_dir():
            for f in sorted(p.iterdir()):
                if f.is_file():
                    files[f.name] = f.read_bytes()
        else:
            with zipfile.ZipFile(p, "r") as zf:
                files = _read_flat_zip(zf)
        return cls._from_files(files, str(path))

    @classmethod
    def from_zip_bytes(cls, data: bytes) -> "EvidencePack":
        with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
            return cls._from_files(_read_flat_zip(zf), "<upload>")

    @classmethod
    def _from_files(cls, files: Dict[str, bytes], path: str) -> "EvidencePack":
        if "manifest.json" not in files:
            raise ValidationError("manifest.json not found", path=path)
        try:
            pack_id = str(json.loads(files["manifest.json"].decode("utf-8")).get("pack_id", ""))
        except ValueError as e:
            raise ValidationError("manifest.json is not JSON", path=path) from e
        return cls(pack_id=pack_id, files=files)


def _read_flat_zip(zf: zipfile.ZipFile) -> Dict[str, bytes]:
    files: Dict[str, bytes] = {}
    for name in zf.namelist():
        if "/" in name.strip("/") or name.endswith("/"):
            raise ValidationError("evidence pack must be flat", entry=name)
        files[name] = zf.read(name)
    return files


# ---------------------------
# Summaries
# ---------------------------


def summarize(events: Sequence[Event], stream_roots: Dict[str, str]) -> Dict[str, Any]:
    """Counts and distributions over exported events (deterministic)."""
    decisions = Counter(ev.policy.decision.value for ev in events if ev.policy is not None)
    decided = sum(decisions.values())
    evals: Dict[str, List[EvalStat]] = {}
    for ev in events:
        for score in ev.evals:
            evals.setdefault(score.name, []).append(EvalStat(score.score, score.passed))

    return {
        "event_count": len(events),
        "session_count": len({ev.session_id for ev in events}),
        "by_actor": dict(sorted(Counter(ev.actor.value for ev in events).items())),
        "decisions": {d.value: decisions.get(d.value, 0) for d in Decision},
        "decision_ratios": {
            d.value: (round(decisions.get(d.value, 0) / decided, 6) if decided else 0) for d in Decision
        },
        "evals": {name: _eval_distribution(stats) for name, stats in sorted(evals.items())},
        "stream_merkle_roots": dict(sorted(stream_roots.items())),
        "merkle_root": merkle_root([ev.hash_self for ev in events]),
    }


@dataclass(frozen=True)
class EvalStat:
    score: float
    passed: Optional[bool]


def _eval_distribution(stats: List[EvalStat]) -> Dict[str, Any]:
    scores = [s.score for s in stats]
    return {
        "count": len(scores),
        "min": min(scores),
        "max": max(scores),
        "mean": round(sum(scores) / len(scores), 6),
        "passed": sum(1 for s in stats if s.passed is True),
        "failed": sum(1 for s in stats if s.passed is False),
    }


def _summary_markdown(manifest_meta: Dict[str, Any], summary: Dict[str, Any]) -> str:
    lines = [
        f"# Evidence pack {manifest_meta['pack_id']}",
        "",
        f"- Application: `{manifest_meta['app_id']}`",
        f"- Window: {manifest_meta['time_from']} to {manifest_meta['time_to']}",
        f"- Events: {summary['event_count']} across {summary['session_count']} session(s)",
        f"- Merkle root: `{summary['merkle_root']}`",
        "",
        "## Decisions",
        "",
        "| result | count | ratio |",
        "|---|---|---|",
    ]
    for result, count in summary["decisions"].items():
        lines.append(f"| {result} | {count} | {summary['decision_ratios'][result]} |")
    if summary["evals"]:
        lines += ["", "## Evals", "", "| name | count | mean | min | max | passed | failed |", "|---|---|---|---|---|---|---|"]
        for name, d in summary["evals"].items():
            lines.append(f"| {name} | {d['count']} | {d['mean']} | {d['min']} | {d['max']} | {d['passed']} | {d['failed']} |")
    lines += ["", "Verify offline with `ledger-verify <pack>`.", ""]
    return "\n".join(lines)


def _traces(events: Sequence[Event]) -> Dict[str, Any]:
    sessions: Dict[str, List[Dict[str, Any]]] = {}
    for ev in events:
        sessions.setdefault(ev.session_id, []).append(
            {
                "event_id": ev.event_id,
                "parent_id": ev.parent_id,
                "timestamp": format_timestamp(ev.timestamp),
                "actor": ev.actor.value,
                "tools": [t.name for t in ev.tools],
                "model": ev.model.name if ev.model else None,
            }
        )
    return {"sessions": dict(sorted(sessions.items()))}


# ---------------------------
# Export
# ---------------------------


class EvidencePackager:
    def __init__(
        self,
        store: Any,
        signer: Signer,
        tsa: Optional[TimestampAuthority] = None,
        *,
        registry: Any = None,
        require_timestamp: bool = True,
    ):
        self.store = store
        self.signer = signer
        self.tsa = tsa
        self.registry = registry
        self.require_timestamp = require_timestamp

    def export(
        self,
        app_id: str,
        time_from: datetime,
        time_to: datetime,
        include_kinds: Iterable[str] = (),
    ) -> EvidencePack:
        kinds = sorted(set(include_kinds or ()))
        unknown = [k for k in kinds if k not in INCLUDE_KINDS]
        if unknown:
            raise ValidationError("unknown include kinds", unknown=unknown, allowed=list(INCLUDE_KINDS))
        t_from, t_to = parse_timestamp(time_from, "time_from"), parse_timestamp(time_to, "time_to")
        if t_to <= t_from:
            raise ValidationError("time_to must be after time_from")

        try:
            pack = self._export(app_id, t_from, t_to, kinds)
        except IntegrityViolation as e:
            record_export("integrity_violation")
            record_integrity_violation("export")
            logger.error("export for %s aborted: %s (event=%s)", app_id, e.message, e.event_id)
            raise
        except AnchoringUnavailable:
            record_export("anchoring_unavailable")
            raise
        record_export("ok")
        return pack

    def _export(self, app_id: str, t_from: datetime, t_to: datetime, kinds: List[str]) -> EvidencePack:
        pack_id = f"pack_{uuid.uuid4().hex}"
        events: List[Event] = []
        chain: List[Dict[str, Any]] = []
        checkpoints: List[Dict[str, Any]] = []
        stream_roots: Dict[str, str] = {}

        for head in self.store.list_streams(app_id):
            rng = self.store.sequence_range_for_time(head.stream, t_from, t_to)
            if rng is None:
                continue
            rng = rng.bounded(head.sequence)
            result = self.store.verify(head.stream, rng)
            result.raise_for_status()
            stream_events = list(self.store.get(head.stream, rng))
            events.extend(stream_events)
            stream_roots[head.stream] = merkle_root([ev.hash_self for ev in stream_events])
            chain.append(
                {
                    "stream": head.stream,
                    "seq_start": rng.start,
                    "seq_end": rng.end,
                    "hash_prev": stream_events[0].hash_prev,
                    "terminal_hash": result.terminal_hash,
                }
            )
            checkpoints.extend(self._checkpoints(head.stream, rng))

        if not events:
            raise NotFound("no events in time range", app_id=app_id)

        summary = summarize(events, stream_roots)
        files: Dict[str, bytes] = {
            "events.jsonl": "".join(canonical_json_dumps(ev.to_dict()) + "\n" for ev in events).encode("utf-8"),
            "chain.json": _json_bytes({"streams": chain}),
            "checkpoints.json": _json_bytes({"checkpoints": checkpoints}),
            "policy_bundles.json": _json_bytes(self._bundles(events, include_rules="policies" in kinds)),
            "summary.json": _json_bytes(summary),
        }
        if "traces" in kinds:
            files["traces.json"] = _json_bytes(_traces(events))
        if "evals" in kinds:
            files["evals.json"] = _json_bytes(
                {"evals": [{"event_id": ev.event_id, **s.to_dict()} for ev in events for s in ev.evals]}
            )
        if "approvals" in kinds:
            files["approvals.json"] = _json_bytes({"approvals": self._approvals(events)})

        meta = {
            "pack_id": pack_id,
            "app_id": app_id,
            "time_from": format_timestamp(t_from),
            "time_to": format_timestamp(t_to),
        }
        files["SUMMARY.md"] = _summary_markdown(meta, summary).encode("utf-8")
        files["CHECKSUMS.sha256"] = "".join(
            f"{_sha256_hex(data)}  {name}\n" for name, data in sorted(files.items())
        ).encode("utf-8")

        manifest: Dict[str, Any] = {
            "format": PACK_FORMAT,
            **meta,
            "include_kinds": kinds,
            "created_at": format_timestamp(_now_utc()),
            "files": {name: _sha256_hex(data) for name, data in sorted(files.items())},
        }
        checksum = manifest_checksum(manifest)
        manifest["manifest_checksum"] = checksum

        files["manifest.json"] = _json_bytes(manifest)
        files["signature.json"] = _json_bytes(
            {
                "key_id": self.signer.key_id,
                "algorithm": "ed25519",
                "signature": b64encode(self.signer.sign(pack_signature_payload(checksum))),
            }
        )
        files["timestamp_receipt.json"] = _json_bytes(self._timestamp(checksum))
        files["trusted_keys.json"] = _json_bytes(TrustedKeys.from_signer(self.signer).as_config())

        logger.info("exported %s for %s: %d events, checksum=%s", pack_id, app_id, len(events), checksum[:16])
        return EvidencePack(pack_id=pack_id, files=files)

    def _checkpoints(self, stream: str, rng: SequenceRange) -> List[Dict[str, Any]]:
        out = []
        for cp in self.store.list_checkpoints(stream):
            if not cp.overlaps(rng.start, rng.end):
                continue
            leaves = [ev.hash_self for ev in self.store.get(stream, SequenceRange(cp.seq_start, cp.seq_end))]
            if len(leaves) != cp.leaf_count or merkle_root(leaves) != cp.merkle_root:
                raise IntegrityViolation(
                    "checkpoint root does not reproduce from stored events",
                    stream=stream,
                    checkpoint_id=cp.checkpoint_id,
                )
            out.append({**cp.to_dict(), "leaves": leaves})
        return out

    def _bundles(self, events: Sequence[Event], *, include_rules: bool) -> Dict[str, Any]:
        versions = sorted({ev.policy.bundle_version for ev in events if ev.policy and ev.policy.bundle_version})
        bundles = []
        for v in versions:
            entry: Dict[str, Any] = {"version": v}
            if self.registry is not None and v in self.registry:
                bundle = self.registry.get(v)
                entry.update(bundle.metadata())
                if include_rules:
                    entry["bundle"] = bundle.to_dict()
            else:
                entry["sha256"] = None
            bundles.append(entry)
        return {"bundles": bundles}

    def _approvals(self, events: Sequence[Event]) -> List[Dict[str, Any]]:
        ids = sorted({a for ev in events if ev.policy for a in ev.policy.approvals})
        out = []
        for approval_id in ids:
            try:
                out.append(self.store.get_approval(approval_id).to_dict())
            except NotFound:
                out.append({"approval_id": approval_id, "state": "unknown"})
        return out

    def _timestamp(self, checksum: str) -> Dict[str, Any]:
        if self.tsa is None:
            if self.require_timestamp:
                raise AnchoringUnavailable("no timestamp authority configured")
            return {"anchored": False, "digest": checksum}
        try:
            return self.tsa.timestamp(checksum)
        except AnchoringUnavailable:
            if self.require_timestamp:
                raise
            logger.warning("evidence pack exported without timestamp receipt")
            return {"anchored": False, "digest": checksum}


# ---------------------------
# Offline verification
# ---------------------------


@dataclass
class PackVerification:
    ok: bool = True
    messages: List[str] = field(default_factory=list)
    failure: Optional[Dict[str, Any]] = None
    keys_source: str = "external"

    def passed(self, msg: str) -> None:
        self.messages.append(f"OK {msg}")

    def fail(self, code: str, msg: str, **location: Any) -> "PackVerification":
        self.ok = False
        self.messages.append(f"FAIL {code}: {msg}")
        if self.failure is None:
            self.failure = {"code": code, "message": msg, **location}
        return self

    def as_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "messages": list(self.messages), "failure": self.failure, "keys_source": self.keys_source}


def _load_json(pack: EvidencePack, name: str) -> Any:
    return json.loads(pack.files[name].decode("utf-8"))


def verify_evidence_pack(
    source: "EvidencePack | str",
    trusted_keys: Optional[TrustedKeys] = None,
    *,
    require_timestamp: bool = True,
) -> PackVerification:
    """Re-derive every checksum, hash, root and signature in a pack.

    Uses only the pack's contents. Without ``trusted_keys`` the pack's own
    ``trusted_keys.json`` is used, which proves internal consistency but not
    who produced the pack (``keys_source`` says which was used).
    """
    res = PackVerification()
    try:
        pack = source if isinstance(source, EvidencePack) else EvidencePack.load(str(source))
        manifest = pack.manifest
    except (ValidationError, ValueError, OSError, zipfile.BadZipFile) as e:
        return res.fail("PACK_UNREADABLE", str(e))

    if manifest.get("format") != PACK_FORMAT:
        return res.fail("BAD_FORMAT", f"unexpected pack format {manifest.get('format')!r}")

    # 1. per-file checksums and manifest checksum
    listed: Dict[str, str] = manifest.get("files") or {}
    for name, expected in sorted(listed.items()):
        data = pack.files.get(name)
        if data is None:
            return res.fail("MISSING_FILE", f"{name} listed in manifest but absent", file=name)
        if _sha256_hex(data) != expected:
            return res.fail("FILE_CHECKSUM_MISMATCH", f"{name} does not match manifest", file=name)
    extra = sorted(set(pack.files) - set(listed) - set(_ENVELOPE_FILES))
    if extra:
        return res.fail("UNLISTED_FILE", f"files not covered by manifest: {', '.join(extra)}", file=extra[0])
    checksum = manifest_checksum(manifest)
    if checksum != manifest.get("manifest_checksum"):
        return res.fail("MANIFEST_CHECKSUM_MISMATCH", "manifest checksum does not recompute")
    res.passed(f"manifest checksum {checksum[:16]}...")

    sums = {}
    for line in pack.files.get("CHECKSUMS.sha256", b"").decode("utf-8").splitlines():
        digest, _, name = line.partition("  ")
        sums[name] = digest
    if {n: d for n, d in listed.items() if n != "CHECKSUMS.sha256"} != sums:
        return res.fail("CHECKSUM_LISTING_MISMATCH", "CHECKSUMS.sha256 disagrees with manifest")
    res.passed(f"{len(listed)} file checksums")

    # 2. signature and timestamp
    keys = trusted_keys
    if keys is None:
        res.keys_source = "embedded"
        try:
            keys = TrustedKeys.from_config(_load_json(pack, "trusted_keys.json"))
        except (KeyError, ValueError) as e:
            return res.fail("NO_TRUSTED_KEYS", f"no usable trusted keys: {e}")
    try:
        sig_doc = _load_json(pack, "signature.json")
        sig = b64decode(str(sig_doc["signature"]))
    except (KeyError, ValueError, binascii.Error):
        return res.fail("BAD_SIGNATURE_ENCODING", "signature.json is missing or malformed")
    if not keys.verify_signature(str(sig_doc.get("key_id")), pack_signature_payload(checksum), sig):
        return res.fail("INVALID_SIGNATURE", "manifest signature does not verify", key_id=sig_doc.get("key_id"))
    res.passed(f"manifest signature by {sig_doc.get('key_id')}")

    try:
        receipt = _load_json(pack, "timestamp_receipt.json")
    except (KeyError, ValueError):
        return res.fail("MISSING_TIMESTAMP", "timestamp_receipt.json is missing or malformed")
    if receipt.get("anchored") is False:
        if require_timestamp:
            return res.fail("MISSING_TIMESTAMP", "pack was exported without a timestamp receipt")
        res.passed("timestamp receipt absent (not required)")
    elif not verify_receipt(checksum, receipt, keys):
        return res.fail("INVALID_TIMESTAMP", "timestamp receipt does not bind the manifest checksum")
    else:
        res.passed(f"timestamp receipt {receipt.get('timestamp_utc')}")

    try:
        return _verify_contents(pack, keys, res)
    except (KeyError, TypeError, ValueError, ValidationError) as e:
        return res.fail("PACK_UNREADABLE", f"pack contents malformed: {type(e).__name__}: {e}")


def _verify_contents(pack: EvidencePack, keys: TrustedKeys, res: PackVerification) -> PackVerification:
    """Steps 3 to 5: hash chains, checkpoints and the summary."""
    # 3. hash chains
    try:
        events = [Event.from_dict(json.loads(line)) for line in pack.files["events.jsonl"].decode("utf-8").splitlines() if line]
        chain = _load_json(pack, "chain.json")["streams"]
    except (KeyError, ValueError, ValidationError) as e:
        return res.fail("EVENTS_UNREADABLE", f"events.jsonl/chain.json unreadable: {e}")
    by_stream: Dict[str, List[Event]] = {}
    for ev in events:
        by_stream.setdefault(ev.stream, []).append(ev)
    if sorted(by_stream) != sorted(c["stream"] for c in chain):
        return res.fail("STREAM_SET_MISMATCH", "events.jsonl and chain.json name different streams")
    for c in chain:
        stream_events = by_stream[c["stream"]]
        result = verify_events(
            stream_events,
            expected_prev=str(c.get("hash_prev") or GENESIS_HASH),
            start_sequence=int(c["seq_start"]),
            stream=c["stream"],
        )
        if not result.ok:
            record_integrity_violation("pack")
            return res.fail(
                "CHAIN_" + result.reason,
                f"hash chain breaks on {c['stream']}",
                stream=c["stream"],
                sequence=result.bad_sequence,
                event_id=result.bad_event_id,
            )
        if result.checked != int(c["seq_end"]) - int(c["seq_start"]) + 1 or result.terminal_hash != c.get("terminal_hash"):
            return res.fail("CHAIN_RANGE_MISMATCH", f"{c['stream']} does not cover its declared range", stream=c["stream"])
    res.passed(f"{len(events)} event hashes across {len(chain)} stream(s)")

    # 4. checkpoints
    by_seq = {(ev.stream, ev.sequence): ev.hash_self for ev in events}
    for d in _load_json(pack, "checkpoints.json")["checkpoints"]:
        cp = Checkpoint.from_dict(d)
        leaves = [str(x) for x in d.get("leaves", [])]
        if len(leaves) != cp.leaf_count or merkle_root(leaves) != cp.merkle_root:
            return res.fail("CHECKPOINT_ROOT_MISMATCH", f"checkpoint {cp.checkpoint_id} root does not recompute", checkpoint_id=cp.checkpoint_id)
        for i, leaf in enumerate(leaves):
            known = by_seq.get((cp.stream, cp.seq_start + i))
            if known is not None and known != leaf:
                return res.fail(
                    "CHECKPOINT_LEAF_MISMATCH",
                    f"checkpoint {cp.checkpoint_id} disagrees with exported event",
                    checkpoint_id=cp.checkpoint_id,
                    sequence=cp.seq_start + i,
                )
        if cp.anchored and not verify_receipt(checkpoint_digest(cp), cp.receipt, keys):
            return res.fail("CHECKPOINT_RECEIPT_INVALID", f"checkpoint {cp.checkpoint_id} receipt invalid", checkpoint_id=cp.checkpoint_id)
        res.passed(f"checkpoint {cp.checkpoint_id} ({'anchored' if cp.anchored else 'unanchored'})")

    # 5. summary
    stream_roots = {s: merkle_root([e.hash_self for e in evs]) for s, evs in by_stream.items()}
    if summarize(events, stream_roots) != _load_json(pack, "summary.json"):
        return res.fail("SUMMARY_MISMATCH", "summary.json does not recompute from events")
    res.passed("summary")
    return res
