import json

import pytest

import ledger_cli
from action_ledger.crypto import TrustedKeys, load_signing_key_from_env


@pytest.fixture
def env(monkeypatch, tmp_path):
    for name in ("LEDGER_TSA_URL", "LEDGER_POLICY_BUNDLE_FILE", "LEDGER_POLICY_MODE", "LEDGER_STREAM_SCOPE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LEDGER_SIGNING_KEY_SEED_HEX", "22" * 32)
    monkeypatch.setenv("LEDGER_SIGNING_KEY_ID", "cli-test")
    monkeypatch.setenv("LEDGER_EXPORT_DIR", str(tmp_path / "exports"))
    return str(tmp_path / "ledger.db")


def _event_file(tmp_path, minute, **extra):
    doc = {
        "app_id": "billing",
        "session_id": "s1",
        "actor": "agent",
        "timestamp": f"2026-01-13T09:{minute:02d}:00Z",
        "input": {"prompt": f"step {minute}"},
    }
    doc.update(extra)
    path = tmp_path / f"event_{minute}.json"
    path.write_text(json.dumps(doc), encoding="utf-8")
    return str(path)


def test_no_command_prints_help(capsys):
    assert ledger_cli.main([]) == 1
    assert "Action Ledger CLI" in capsys.readouterr().out


def test_keygen(capsys, tmp_path):
    out_file = tmp_path / "trusted.json"
    assert ledger_cli.main(["keygen", "--key-id", "ops-1", "--trusted-keys-out", str(out_file)]) == 0
    out = capsys.readouterr().out
    assert "LEDGER_SIGNING_KEY_ID=ops-1" in out
    seed = [line for line in out.splitlines() if line.startswith("LEDGER_SIGNING_KEY_SEED_HEX=")][0].split("=", 1)[1]
    assert len(bytes.fromhex(seed)) == 32
    assert list(json.loads(out_file.read_text(encoding="utf-8"))) == ["ops-1"]


def test_append_streams_and_verify(capsys, tmp_path, env):
    for minute in range(2):
        assert ledger_cli.main(["--db", env, "append", _event_file(tmp_path, minute)]) == 0
    appended = capsys.readouterr().out
    assert '"sequence": 2' in appended
    assert '"signature": "cli-test:' in appended

    assert ledger_cli.main(["--db", env, "streams"]) == 0
    assert "app:billing  seq=2" in capsys.readouterr().out

    assert ledger_cli.main(["--db", env, "verify", "--stream", "app:billing", "--signatures"]) == 0
    assert "2 event(s) verified" in capsys.readouterr().out


def test_append_invalid_event_reports_error_code(capsys, tmp_path, env):
    assert ledger_cli.main(["--db", env, "append", _event_file(tmp_path, 0, actor="robot")]) == 1
    assert "LEDGER_E_VALIDATION" in capsys.readouterr().err


def test_append_stale_sequence_conflicts(capsys, tmp_path, env):
    ledger_cli.main(["--db", env, "append", _event_file(tmp_path, 0)])
    code = ledger_cli.main(["--db", env, "append", _event_file(tmp_path, 1), "--expected-sequence", "1"])
    assert code == 1
    assert "LEDGER_E_CONCURRENCY_CONFLICT" in capsys.readouterr().err


def test_verify_signatures_needs_seed(capsys, tmp_path, env, monkeypatch):
    ledger_cli.main(["--db", env, "append", _event_file(tmp_path, 0)])
    monkeypatch.delenv("LEDGER_SIGNING_KEY_SEED_HEX")
    assert ledger_cli.main(["--db", env, "verify", "--stream", "app:billing", "--signatures"]) == 2


def test_verify_unknown_stream(capsys, env):
    assert ledger_cli.main(["--db", env, "verify", "--stream", "app:ghost"]) == 1
    assert "LEDGER_E_NOT_FOUND" in capsys.readouterr().err


def test_checkpoint(capsys, tmp_path, env):
    for minute in range(2):
        ledger_cli.main(["--db", env, "append", _event_file(tmp_path, minute)])
    capsys.readouterr()
    assert ledger_cli.main(["--db", env, "checkpoint"]) == 0
    out = capsys.readouterr().out
    assert "covers 1..2" in out
    assert "anchored" in out
    assert ledger_cli.main(["--db", env, "checkpoint", "--stream", "app:billing"]) == 0
    assert "nothing new" in capsys.readouterr().out


def test_export_then_verify_pack(capsys, tmp_path, env):
    for minute in range(3):
        ledger_cli.main(["--db", env, "append", _event_file(tmp_path, minute)])
    keys = tmp_path / "trusted.json"
    keys.write_text(json.dumps(TrustedKeys.from_signer(load_signing_key_from_env()).as_config()), encoding="utf-8")
    out_zip = tmp_path / "pack.zip"

    code = ledger_cli.main(
        [
            "--db", env, "export",
            "--app-id", "billing",
            "--from", "2026-01-13T00:00:00Z",
            "--to", "2026-01-14T00:00:00Z",
            "--include", "traces",
            "--include", "evals",
            "-o", str(out_zip),
        ]
    )
    assert code == 0
    assert out_zip.exists()
    capsys.readouterr()

    assert ledger_cli.main(["verify-pack", str(out_zip), "--trusted-keys", str(keys), "--json"]) == 0
    result = json.loads(capsys.readouterr().out)
    assert result["ok"] is True
    assert result["keys_source"] == "external"


def test_export_empty_window_fails(capsys, tmp_path, env):
    ledger_cli.main(["--db", env, "append", _event_file(tmp_path, 0)])
    code = ledger_cli.main(
        ["--db", env, "export", "--app-id", "billing", "--from", "2020-01-01T00:00:00Z", "--to", "2020-01-02T00:00:00Z", "-o", str(tmp_path / "p.zip")]
    )
    assert code == 1
    assert "LEDGER_E_NOT_FOUND" in capsys.readouterr().err
