"""ledger-verify: offline verifier for action ledger artifacts.

Checks exported evidence without access to the ledger database.

Supported inputs:
  - An evidence pack (.zip or extracted directory) built by EvidencePackager
  - A JSONL file of stored events from one stream (e.g. events.jsonl, or a
    dump of ``GET /v1/events``)

Pack checks, in order:
  1) every file checksum, no unlisted files, manifest checksum
  2) pack signature and timestamp receipt
  3) every event hash and link, per stream
  4) every checkpoint root and its receipt
  5) summary recomputation

Exit codes: 0 verified, 1 verification failed, 2 unreadable input / usage error.

Security note: without --trusted-keys the pack's own trusted_keys.json is
used. That proves internal consistency, not who produced the pack.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from action_ledger.chain import verify_events
from action_ledger.crypto import GENESIS_HASH, TrustedKeys
from action_ledger.errors import ValidationError
from action_ledger.evidence import verify_evidence_pack
from action_ledger.models import Event

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_UNREADABLE = 2


def _load_trusted_keys(path: Optional[str]) -> Optional[TrustedKeys]:
    if not path:
        return None
    with Path(path).open("r", encoding="utf-8") as f:
        cfg = json.load(f)
    if not isinstance(cfg, dict):
        raise ValueError("trusted keys file must be a JSON object {key_id: public_key_hex}")
    return TrustedKeys.from_config({str(k): str(v) for k, v in cfg.items()})


def _load_events(path: str) -> List[Event]:
    events = []
    with Path(path).open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                events.append(Event.from_dict(json.loads(line)))
            except (ValueError, ValidationError) as e:
                raise ValueError(f"line {lineno}: {e}") from e
    return events


def _emit_json(payload: Dict[str, Any], *, pretty: bool = False) -> None:
    if pretty:
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        print(json.dumps(payload, separators=(",", ":"), sort_keys=True))


def cmd_pack(args: argparse.Namespace) -> int:
    try:
        keys = _load_trusted_keys(args.trusted_keys)
    except (OSError, ValueError) as e:
        print(f"cannot load trusted keys: {e}", file=sys.stderr)
        return EXIT_UNREADABLE
    if not Path(args.path).exists():
        print(f"no such pack: {args.path}", file=sys.stderr)
        return EXIT_UNREADABLE

    result = verify_evidence_pack(args.path, keys, require_timestamp=not args.allow_unanchored)
    if result.failure and result.failure.get("code") == "PACK_UNREADABLE":
        code = EXIT_UNREADABLE
    else:
        code = EXIT_OK if result.ok else EXIT_FAILED

    if args.json_out:
        _emit_json({"command": "pack", "path": args.path, **result.as_dict()}, pretty=args.json_pretty)
        return code
    for msg in result.messages:
        mark = "✓" if msg.startswith("OK") else "✗"
        print(f"{mark} {msg}")
    if result.keys_source == "embedded":
        print("! signature checked against the pack's embedded keys; pass --trusted-keys to pin the signer")
    print("VERIFIED" if result.ok else "FAILED")
    return code


def cmd_events(args: argparse.Namespace) -> int:
    try:
        keys = _load_trusted_keys(args.trusted_keys)
        events = _load_events(args.path)
    except (OSError, ValueError) as e:
        print(f"cannot read input: {e}", file=sys.stderr)
        return EXIT_UNREADABLE
    if not events:
        print("no events in input", file=sys.stderr)
        return EXIT_UNREADABLE

    first = events[0]
    expected_prev = args.expected_prev or (GENESIS_HASH if first.sequence == 1 else first.hash_prev)
    result = verify_events(
        events,
        expected_prev=expected_prev,
        start_sequence=first.sequence,
        trusted_keys=keys,
        stream=first.stream,
    )
    if args.json_out:
        _emit_json({"command": "events", "path": args.path, **result.as_dict()}, pretty=args.json_pretty)
    elif result.ok:
        print(f"✓ {result.stream}: {result.checked} event(s) verified, terminal hash {result.terminal_hash}")
    else:
        print(
            f"✗ {result.stream}: {result.reason} at sequence {result.bad_sequence} "
            f"(event {result.bad_event_id}) after {result.checked} good event(s)"
        )
    return EXIT_OK if result.ok else EXIT_FAILED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ledger-verify", description="Offline verifier for action ledger artifacts")
    parser.add_argument("--json", dest="json_out", action="store_true", help="Emit machine-readable JSON output")
    parser.add_argument("--pretty", dest="json_pretty", action="store_true", help="Pretty-print JSON output (only with --json)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_pack = sub.add_parser("pack", help="Verify an evidence pack directory or .zip")
    p_pack.add_argument("path", help="Path to evidence pack dir or .zip")
    p_pack.add_argument("--trusted-keys", default=None, help="JSON file {key_id: public_key_hex} pinning the signer")
    p_pack.add_argument(
        "--allow-unanchored",
        action="store_true",
        help="Accept a pack exported without a timestamp receipt",
    )
    p_pack.set_defaults(func=cmd_pack)

    p_events = sub.add_parser("events", help="Verify a JSONL file of stored events from one stream")
    p_events.add_argument("path", help="Path to events JSONL")
    p_events.add_argument("--trusted-keys", default=None, help="Also require valid event signatures from these keys")
    p_events.add_argument(
        "--expected-prev",
        default=None,
        help="hash_self of the event before the first one (default: genesis for sequence 1, else trust the file)",
    )
    p_events.set_defaults(func=cmd_events)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
