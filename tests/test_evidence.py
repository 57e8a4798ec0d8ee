import hashlib
import json
import sqlite3
import zipfile
from datetime import timedelta
from pathlib import Path

import pytest

from conftest import BASE_TIME, make_draft

from action_ledger.checkpoints import CheckpointService
from action_ledger.crypto import TrustedKeys, b64encode, create_key_pair
from action_ledger.errors import AnchoringUnavailable, IntegrityViolation, NotFound, ValidationError
from action_ledger.evidence import (
    PACK_FORMAT,
    EvidencePack,
    EvidencePackager,
    manifest_checksum,
    pack_signature_payload,
    verify_evidence_pack,
)
from action_ledger.models import Decision, EvalScore, PolicyEvaluation
from action_ledger.policy import PolicyBundle, PolicyBundleRegistry
from action_ledger.timestamping import LocalTimestampAuthority

T_FROM = BASE_TIME - timedelta(hours=1)
T_TO = BASE_TIME + timedelta(days=1)

BUNDLE = PolicyBundle.from_dict(
    {
        "policy_id": "refunds",
        "version": "refunds-2026.01",
        "default": "allow",
        "rules": [{"id": "big", "decision": "approve", "reason": "refund_over_500", "actions": ["issue_refund"]}],
    }
)


def _populate(store):
    store.append(make_draft(minutes=0, evals=(EvalScore("faithfulness", 0.9, threshold=0.8),)))
    store.append(
        make_draft(
            minutes=1,
            policy=PolicyEvaluation("refunds", Decision.ALLOW, ("no_rule_matched",), "refunds-2026.01"),
        )
    )
    store.append(
        make_draft(
            session_id="s2",
            minutes=2,
            policy=PolicyEvaluation("refunds", Decision.DENY, ("approval_denied",), "refunds-2026.01", ("apr_1",)),
            evals=(EvalScore("faithfulness", 0.5, threshold=0.8),),
        )
    )
    store.append(make_draft("search", minutes=3))


@pytest.fixture
def packager(store, signer):
    return EvidencePackager(
        store,
        signer,
        LocalTimestampAuthority(signer),
        registry=PolicyBundleRegistry([BUNDLE]),
    )


def _rewrite_zip(src, dst, name, data):
    with zipfile.ZipFile(src) as zin, zipfile.ZipFile(dst, "w") as zout:
        for entry in zin.namelist():
            zout.writestr(entry, data if entry == name else zin.read(entry))
        if name not in zin.namelist():
            zout.writestr(name, data)
    return str(dst)


def test_export_then_verify_offline(tmp_path, store, signer, packager):
    _populate(store)
    pack = packager.export("billing", T_FROM, T_TO)
    path = pack.write_zip(str(tmp_path / "pack"))
    assert path.endswith(".zip")

    result = verify_evidence_pack(path, TrustedKeys.from_signer(signer))
    assert result.ok, result.messages
    assert result.keys_source == "external"
    assert all(m.startswith("OK") for m in result.messages)

    embedded = verify_evidence_pack(path)
    assert embedded.ok
    assert embedded.keys_source == "embedded"


def test_pack_contents_and_summary(store, packager):
    _populate(store)
    pack = packager.export("billing", T_FROM, T_TO)

    events = [json.loads(line) for line in pack.files["events.jsonl"].decode("utf-8").splitlines()]
    assert [e["app_id"] for e in events] == ["billing"] * 3

    summary = pack.read_json("summary.json")
    assert summary["event_count"] == 3
    assert summary["session_count"] == 2
    assert summary["decisions"] == {"allow": 1, "deny": 1, "approve": 0}
    assert summary["decision_ratios"]["allow"] == 0.5
    assert summary["evals"]["faithfulness"]["passed"] == 1
    assert summary["evals"]["faithfulness"]["failed"] == 1

    bundles = pack.read_json("policy_bundles.json")["bundles"]
    assert bundles == [
        {"version": "refunds-2026.01", "policy_id": "refunds", "sha256": BUNDLE.checksum, "rules": 1}
    ]
    assert "traces.json" not in pack.files
    manifest = pack.manifest
    assert set(manifest["files"]) >= {"events.jsonl", "chain.json", "summary.json", "SUMMARY.md", "CHECKSUMS.sha256"}
    assert pack.manifest_checksum == manifest["manifest_checksum"]


def test_include_kinds_add_artifacts(store, packager):
    _populate(store)
    pack = packager.export("billing", T_FROM, T_TO, ["traces", "policies", "evals", "approvals"])
    assert sorted(pack.read_json("traces.json")["sessions"]) == ["s1", "s2"]
    assert len(pack.read_json("evals.json")["evals"]) == 2
    assert pack.read_json("approvals.json")["approvals"] == [{"approval_id": "apr_1", "state": "unknown"}]
    assert pack.read_json("policy_bundles.json")["bundles"][0]["bundle"] == BUNDLE.to_dict()
    assert verify_evidence_pack(pack).ok


def test_unknown_include_kind_rejected(store, packager):
    _populate(store)
    with pytest.raises(ValidationError):
        packager.export("billing", T_FROM, T_TO, ["secrets"])


def test_empty_window_not_found(store, packager):
    _populate(store)
    with pytest.raises(NotFound):
        packager.export("billing", T_TO, T_TO + timedelta(days=1))


def test_inverted_window_rejected(store, packager):
    with pytest.raises(ValidationError):
        packager.export("billing", T_TO, T_FROM)


def test_time_window_selects_sub_range(store, packager):
    _populate(store)
    pack = packager.export("billing", BASE_TIME + timedelta(minutes=1), T_TO)
    chain = pack.read_json("chain.json")["streams"]
    assert [(c["seq_start"], c["seq_end"]) for c in chain] == [(2, 3)]
    assert verify_evidence_pack(pack).ok


def test_tampered_file_in_directory_detected(tmp_path, store, signer, packager):
    _populate(store)
    out = Path(packager.export("billing", T_FROM, T_TO).write_dir(str(tmp_path / "pack")))
    events = out / "events.jsonl"
    events.write_text(events.read_text(encoding="utf-8").replace("step 1", "step 9"), encoding="utf-8")

    result = verify_evidence_pack(str(out), TrustedKeys.from_signer(signer))
    assert not result.ok
    assert result.failure["code"] == "FILE_CHECKSUM_MISMATCH"
    assert result.failure["file"] == "events.jsonl"


def test_tampered_zip_entry_detected(tmp_path, store, packager):
    _populate(store)
    src = packager.export("billing", T_FROM, T_TO).write_zip(str(tmp_path / "pack.zip"))
    bad = _rewrite_zip(src, tmp_path / "bad.zip", "summary.json", b"{}\n")
    result = verify_evidence_pack(bad)
    assert result.failure["code"] == "FILE_CHECKSUM_MISMATCH"


def test_unlisted_file_detected(tmp_path, store, packager):
    _populate(store)
    src = packager.export("billing", T_FROM, T_TO).write_zip(str(tmp_path / "pack.zip"))
    bad = _rewrite_zip(src, tmp_path / "extra.zip", "notes.txt", b"trust me\n")
    assert verify_evidence_pack(bad).failure["code"] == "UNLISTED_FILE"


def test_other_signer_rejected(store, packager):
    _populate(store)
    pack = packager.export("billing", T_FROM, T_TO)
    result = verify_evidence_pack(pack, TrustedKeys.from_signer(create_key_pair("ledger_test_key")))
    assert result.failure["code"] == "INVALID_SIGNATURE"


def test_unreadable_pack(tmp_path):
    junk = tmp_path / "junk.zip"
    junk.write_bytes(b"not a zip")
    assert verify_evidence_pack(str(junk)).failure["code"] == "PACK_UNREADABLE"


def test_export_aborts_on_tampered_event(store, packager):
    _populate(store)
    victim = list(store.get("app:billing"))[1]
    with sqlite3.connect(store.db.path) as conn:
        body = json.loads(
            conn.execute("SELECT body_json FROM events WHERE event_id = ?", (victim.event_id,)).fetchone()[0]
        )
        body["input"] = {"prompt": "nothing to see"}
        conn.execute("UPDATE events SET body_json = ? WHERE event_id = ?", (json.dumps(body), victim.event_id))

    with pytest.raises(IntegrityViolation) as ei:
        packager.export("billing", T_FROM, T_TO)
    assert ei.value.event_id == victim.event_id


def test_checkpoints_ship_with_leaves_and_verify(store, signer, packager):
    _populate(store)
    cp = CheckpointService(store, LocalTimestampAuthority(signer)).checkpoint("app:billing")
    pack = packager.export("billing", T_FROM, T_TO)
    shipped = pack.read_json("checkpoints.json")["checkpoints"]
    assert [c["checkpoint_id"] for c in shipped] == [cp.checkpoint_id]
    assert len(shipped[0]["leaves"]) == 3
    assert shipped[0]["anchored"] is True
    assert verify_evidence_pack(pack, TrustedKeys.from_signer(signer)).ok


def test_export_without_timestamp_authority(store, signer):
    _populate(store)
    strict = EvidencePackager(store, signer, None)
    with pytest.raises(AnchoringUnavailable):
        strict.export("billing", T_FROM, T_TO)

    lenient = EvidencePackager(store, signer, None, require_timestamp=False)
    pack = lenient.export("billing", T_FROM, T_TO)
    assert pack.read_json("timestamp_receipt.json")["anchored"] is False
    assert verify_evidence_pack(pack).failure["code"] == "MISSING_TIMESTAMP"
    assert verify_evidence_pack(pack, require_timestamp=False).ok


def test_pack_loads_from_zip_bytes(tmp_path, store, packager):
    _populate(store)
    path = packager.export("billing", T_FROM, T_TO).write_zip(str(tmp_path / "p.zip"))
    pack = EvidencePack.from_zip_bytes(Path(path).read_bytes())
    assert pack.pack_id.startswith("pack_")
    assert verify_evidence_pack(pack).ok


def _reseal(pack, signer, changes):
    """Rebuild and re-sign ``pack`` with some content files replaced or removed (``None``)."""
    files = {
        name: data
        for name, data in pack.files.items()
        if name not in ("manifest.json", "signature.json", "timestamp_receipt.json", "trusted_keys.json", "CHECKSUMS.sha256")
    }
    for name, doc in changes.items():
        if doc is None:
            files.pop(name)
        else:
            files[name] = json.dumps(doc).encode("utf-8")
    files["CHECKSUMS.sha256"] = "".join(
        f"{hashlib.sha256(data).hexdigest()}  {name}\n" for name, data in sorted(files.items())
    ).encode("utf-8")
    manifest = {"format": PACK_FORMAT, "files": {n: hashlib.sha256(d).hexdigest() for n, d in sorted(files.items())}}
    checksum = manifest_checksum(manifest)
    manifest["manifest_checksum"] = checksum
    files["manifest.json"] = json.dumps(manifest).encode("utf-8")
    files["signature.json"] = json.dumps(
        {"key_id": signer.key_id, "signature": b64encode(signer.sign(pack_signature_payload(checksum)))}
    ).encode("utf-8")
    files["timestamp_receipt.json"] = b'{"anchored": false}'
    return EvidencePack(pack_id=pack.pack_id, files=files)


def _drop_key(doc, path, key):
    entry = doc
    for step in path:
        entry = entry[step]
    del entry[key]
    return doc


@pytest.mark.parametrize(
    "mangle",
    [
        lambda p: {"summary.json": None},
        lambda p: {"checkpoints.json": None},
        lambda p: {"chain.json": _drop_key(p.read_json("chain.json"), ("streams", 0), "seq_start")},
        lambda p: {"checkpoints.json": _drop_key(p.read_json("checkpoints.json"), ("checkpoints", 0), "merkle_root")},
    ],
    ids=["no_summary", "no_checkpoints", "chain_without_seq_start", "checkpoint_without_root"],
)
def test_signed_pack_with_malformed_contents_is_unreadable(store, signer, packager, mangle):
    _populate(store)
    CheckpointService(store, LocalTimestampAuthority(signer)).checkpoint("app:billing")
    pack = packager.export("billing", T_FROM, T_TO)
    keys = TrustedKeys.from_signer(signer)
    assert verify_evidence_pack(_reseal(pack, signer, {}), keys, require_timestamp=False).ok

    result = verify_evidence_pack(_reseal(pack, signer, mangle(pack)), keys, require_timestamp=False)
    assert not result.ok
    assert result.failure["code"] == "PACK_UNREADABLE"
