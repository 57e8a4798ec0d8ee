#!/usr/bin/env python3
"""
Action Ledger - Command Line Interface

Usage:
    action-ledger keygen [--key-id ID]              Generate an Ed25519 signing seed
    action-ledger append <event.json|->             Append an event draft to its stream
    action-ledger streams [--app-id ID]             List stream heads
    action-ledger verify --stream S [--start N]     Verify hash chain integrity of a stream range
    action-ledger checkpoint [--stream S]           Checkpoint one stream (or every stream)
    action-ledger export --app-id A --from T --to T Export a signed evidence pack
    action-ledger verify-pack <pack>                Verify an evidence pack offline
    action-ledger serve [--port 8000]               Run the HTTP server

Configuration comes from LEDGER_* environment variables; --db overrides
LEDGER_DB_PATH.
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from typing import Optional

from action_ledger.config import LedgerSettings
from action_ledger.crypto import Ed25519KeyPair, TrustedKeys, _now_utc, create_key_pair, load_signing_key_from_env
from action_ledger.errors import LedgerError
from action_ledger.models import Event, SequenceRange, format_timestamp, new_event_id
from action_ledger.store import HashChainStore

logger = logging.getLogger("action_ledger")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logger.setLevel(level)


def _settings(args) -> LedgerSettings:
    settings = LedgerSettings.from_env()
    if getattr(args, "db", None):
        settings = replace(settings, db_path=args.db)
    return settings


def _optional_signer() -> Optional[Ed25519KeyPair]:
    """The configured signing key, or None when no seed is configured."""
    if not (os.getenv("LEDGER_SIGNING_KEY_SEED_HEX", "") or "").strip():
        return None
    return load_signing_key_from_env()


def _store(args) -> HashChainStore:
    settings = _settings(args)
    return HashChainStore(settings.db_path, signer=_optional_signer(), stream_scope=settings.stream_scope)


def _service(args):
    from action_ledger.service import LedgerService

    return LedgerService.from_settings(_settings(args))


def cmd_keygen(args):
    """Generate a signing seed; the seed is the secret, keep it out of the repo."""
    kp = create_key_pair(args.key_id)
    print(f"LEDGER_SIGNING_KEY_ID={kp.key_id}")
    print(f"LEDGER_SIGNING_KEY_SEED_HEX={kp.private_key_bytes.hex()}")
    trusted = TrustedKeys.from_signer(kp).as_config()
    if args.trusted_keys_out:
        with open(args.trusted_keys_out, "w", encoding="utf-8") as f:
            json.dump(trusted, f, indent=2, sort_keys=True)
        print(f"# public key written to {args.trusted_keys_out}", file=sys.stderr)
    else:
        print(f"# trusted keys: {json.dumps(trusted, sort_keys=True)}", file=sys.stderr)
    return 0


def cmd_append(args):
    """Append an event draft read from a JSON file (or stdin)."""
    if args.event_file == "-":
        doc = json.load(sys.stdin)
    else:
        with open(args.event_file, "r", encoding="utf-8") as f:
            doc = json.load(f)
    store = _store(args)
    if not isinstance(doc, dict):
        raise ValueError("event JSON must be an object")
    doc.setdefault("event_id", new_event_id())
    doc.setdefault("timestamp", format_timestamp(_now_utc()))
    stored = store.append(Event.from_dict(doc), stream=args.stream, expected_sequence=args.expected_sequence)
    print(json.dumps(stored.to_dict(), indent=2, sort_keys=True))
    return 0


def cmd_streams(args):
    store = _store(args)
    heads = store.list_streams(args.app_id)
    if not heads:
        print("No streams.")
        return 0
    for h in heads:
        print(f"{h.stream}  seq={h.sequence}  head={h.hash_self[:16]}...")
    return 0


def cmd_verify(args):
    """Verify hash chain integrity of a stream range."""
    store = _store(args)
    keys = None
    if args.signatures:
        if store.signer is None:
            print("--signatures needs LEDGER_SIGNING_KEY_SEED_HEX to know the signer", file=sys.stderr)
            return 2
        keys = TrustedKeys.from_signer(store.signer)

    print(f"Verifying {args.stream} in {store.db.path}...")
    result = store.verify(args.stream, SequenceRange(args.start, args.end), trusted_keys=keys)
    if args.json:
        print(json.dumps(result.as_dict(), indent=2, sort_keys=True))
    if result.ok:
        print(f"✓ {result.checked} event(s) verified, terminal hash {result.terminal_hash}")
        return 0
    print(f"✗ {result.reason} at sequence {result.bad_sequence} (event {result.bad_event_id})")
    return 1


def cmd_checkpoint(args):
    service = _service(args)
    streams = [args.stream] if args.stream else [h.stream for h in service.store.list_streams()]
    for stream in streams:
        cp = service.checkpoints.checkpoint(stream)
        if cp is None:
            print(f"{stream}: nothing new since last checkpoint")
            continue
        state = "anchored" if cp.anchored else "UNANCHORED (will retry)"
        print(f"{stream}: {cp.checkpoint_id} covers {cp.seq_start}..{cp.seq_end} root={cp.merkle_root} {state}")
    if args.retry_anchors:
        done = service.checkpoints.anchor_pending()
        print(f"anchored {done} pending checkpoint(s)")
    return 0


def cmd_export(args):
    """Export a signed evidence pack for external verification."""
    service = _service(args)
    service.packager.require_timestamp = not args.allow_unanchored
    pack = service.packager.export(args.app_id, args.time_from, args.time_to, args.include or ())
    path = pack.write_zip(args.output) if not args.directory else pack.write_dir(args.output)
    print(f"✓ {pack.pack_id} written to {path}")
    print(f"  manifest checksum: {pack.manifest_checksum}")
    return 0


def cmd_verify_pack(args):
    import ledger_verify

    argv = ["pack", args.path]
    if args.trusted_keys:
        argv += ["--trusted-keys", args.trusted_keys]
    if args.allow_unanchored:
        argv.append("--allow-unanchored")
    if args.json:
        argv.insert(0, "--json")
    return ledger_verify.main(argv)


def cmd_serve(args):
    import uvicorn

    from action_ledger.server import create_app
    from action_ledger.service import LedgerService

    app = create_app(LedgerService.from_settings(_settings(args)))
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Action Ledger CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", default=None, help="Path to ledger database (default: LEDGER_DB_PATH)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    keygen_parser = subparsers.add_parser("keygen", help="Generate an Ed25519 signing seed")
    keygen_parser.add_argument("--key-id", default="ledger", help="Key identifier (default: ledger)")
    keygen_parser.add_argument("--trusted-keys-out", help="Write {key_id: public_key_hex} to this file")
    keygen_parser.set_defaults(func=cmd_keygen)

    append_parser = subparsers.add_parser("append", help="Append an event draft")
    append_parser.add_argument("event_file", help="Path to event JSON, or - for stdin")
    append_parser.add_argument("--stream", help="Explicit stream key (default: derived from the event)")
    append_parser.add_argument("--expected-sequence", type=int, help="Fail with a conflict unless this is the next sequence")
    append_parser.set_defaults(func=cmd_append)

    streams_parser = subparsers.add_parser("streams", help="List stream heads")
    streams_parser.add_argument("--app-id", help="Only streams of this application")
    streams_parser.set_defaults(func=cmd_streams)

    verify_parser = subparsers.add_parser("verify", help="Verify hash chain integrity")
    verify_parser.add_argument("--stream", required=True, help="Stream key, e.g. app:billing")
    verify_parser.add_argument("--start", type=int, default=1, help="First sequence (default: 1)")
    verify_parser.add_argument("--end", type=int, default=None, help="Last sequence (default: head)")
    verify_parser.add_argument("--signatures", action="store_true", help="Also check event signatures")
    verify_parser.add_argument("--json", action="store_true", help="Print the verification result as JSON")
    verify_parser.set_defaults(func=cmd_verify)

    cp_parser = subparsers.add_parser("checkpoint", help="Create Merkle checkpoints")
    cp_parser.add_argument("--stream", help="Only this stream (default: all streams)")
    cp_parser.add_argument("--retry-anchors", action="store_true", help="Also retry anchoring of unanchored checkpoints")
    cp_parser.set_defaults(func=cmd_checkpoint)

    export_parser = subparsers.add_parser("export", help="Export an evidence pack")
    export_parser.add_argument("--app-id", required=True, help="Application identifier")
    export_parser.add_argument("--from", dest="time_from", required=True, help="Start timestamp (ISO 8601, inclusive)")
    export_parser.add_argument("--to", dest="time_to", required=True, help="End timestamp (ISO 8601, exclusive)")
    export_parser.add_argument(
        "--include", action="append", choices=["traces", "policies", "evals", "approvals"], help="Extra artifacts (repeatable)"
    )
    export_parser.add_argument("--output", "-o", required=True, help="Output .zip (or directory with --directory)")
    export_parser.add_argument("--directory", action="store_true", help="Write an unpacked directory instead of a zip")
    export_parser.add_argument("--allow-unanchored", action="store_true", help="Export even if the timestamp authority is down")
    export_parser.set_defaults(func=cmd_export)

    vp_parser = subparsers.add_parser("verify-pack", help="Verify an evidence pack offline")
    vp_parser.add_argument("path", help="Evidence pack .zip or directory")
    vp_parser.add_argument("--trusted-keys", help="JSON file {key_id: public_key_hex} pinning the signer")
    vp_parser.add_argument("--allow-unanchored", action="store_true", help="Accept a pack without a timestamp receipt")
    vp_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    vp_parser.set_defaults(func=cmd_verify_pack)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    serve_parser.set_defaults(func=cmd_serve)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    try:
        return args.func(args)
    except LedgerError as e:
        print(f"✗ {e.code}: {e.message}", file=sys.stderr)
        if e.details:
            print(f"  {json.dumps(e.details, sort_keys=True, default=str)}", file=sys.stderr)
        return 1
    except (ValueError, OSError) as e:
        print(f"✗ {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
