"""
Action Ledger HTTP server.

FastAPI surface over one ``LedgerService``:

    POST /v1/events                      append an event draft
    GET  /v1/events?stream=&start=&end=  read a stream range
    GET  /v1/streams                     stream heads (optionally per app)
    POST /v1/verify                      verify a stream range
    POST /v1/gate/evaluate               gated action decision (blocks on approval)
    GET  /v1/approvals                   pending approval requests
    GET  /v1/approvals/{id}              one approval request
    POST /v1/approvals/{id}/resolve      approve or deny
    POST /v1/checkpoints                 checkpoint a stream now
    GET  /v1/checkpoints                 list checkpoints
    POST /v1/exports                     build an evidence pack zip
    POST /v1/evidence/verify             verify an uploaded evidence pack zip
    GET  /v1/health                      health check
    GET  /metrics                        Prometheus metrics

Every ``LedgerError`` is returned as its ``as_dict()`` envelope with the
error's HTTP status.
"""

from __future__ import annotations

import asyncio
import logging
import os
import zipfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .crypto import _now_utc
from .errors import LedgerError, ValidationError
from .evidence import EvidencePack, verify_evidence_pack
from .metrics import instrument_fastapi
from .models import Event, SequenceRange, format_timestamp, new_event_id
from .service import LedgerService

logger = logging.getLogger("action_ledger")

MAX_PACK_UPLOAD_BYTES = 64 * 1024 * 1024


# ---------------------------
# Request Models
# ---------------------------


class AppendRequest(BaseModel):
    event: Dict[str, Any]
    stream: Optional[str] = None
    expected_sequence: Optional[int] = None


class VerifyRequest(BaseModel):
    stream: str
    start: int = 1
    end: Optional[int] = None
    check_signatures: bool = True


class GateRequest(BaseModel):
    action: str
    risk: str
    payload: Any = None
    context: Dict[str, Any] = Field(default_factory=dict)


class ResolveRequest(BaseModel):
    approved: bool
    resolver: str
    reason: Optional[str] = None


class CheckpointRequest(BaseModel):
    stream: str


class ExportRequest(BaseModel):
    app_id: str
    time_from: str
    time_to: str
    include_kinds: List[str] = Field(default_factory=list)


def _draft_from_wire(doc: Dict[str, Any]) -> Event:
    doc = dict(doc)
    doc.setdefault("event_id", new_event_id())
    doc.setdefault("timestamp", format_timestamp(_now_utc()))
    return Event.from_dict(doc)


# ---------------------------
# FastAPI App Factory
# ---------------------------


def create_app(service: Optional[LedgerService] = None, *, start_workers: bool = True) -> FastAPI:
    """Create the FastAPI application. Background workers run for the app's lifespan."""
    from . import __version__ as ledger_version

    service = service or LedgerService.from_settings()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        if start_workers:
            service.start()
        try:
            yield
        finally:
            if start_workers:
                service.stop()

    app = FastAPI(
        title="Action Ledger",
        description="Tamper-evident action ledger, policy gate and evidence export",
        version=ledger_version,
        lifespan=_lifespan,
    )
    app.state.ledger = service

    @app.exception_handler(LedgerError)
    async def _ledger_error_handler(request: Request, exc: LedgerError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    if service.settings.metrics_enabled:
        metrics_token = (os.getenv("LEDGER_METRICS_TOKEN", "") or "").strip()

        def _authorize_metrics(req: Request) -> bool:
            if not metrics_token:
                return True
            authz = (req.headers.get("Authorization") or "").strip()
            if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
                return True
            return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

        instrument_fastapi(app, authorize=_authorize_metrics)

    store = service.store

    # ---------------------------
    # Events and streams
    # ---------------------------

    @app.post("/v1/events", status_code=201)
    async def append_event(request: AppendRequest):
        draft = _draft_from_wire(request.event)
        stored = await asyncio.to_thread(
            store.append, draft, stream=request.stream, expected_sequence=request.expected_sequence
        )
        return stored.to_dict()

    @app.get("/v1/events")
    async def read_events(
        stream: str,
        start: int = Query(1, ge=1),
        end: Optional[int] = Query(None, ge=1),
        limit: int = Query(1000, ge=1, le=10000),
    ):
        def _page():
            rng = store.get(stream, SequenceRange(start, end))
            out: List[Dict[str, Any]] = []
            for ev in rng:
                out.append(ev.to_dict())
                if len(out) >= limit:
                    break
            return rng, out

        rng, events = await asyncio.to_thread(_page)
        return {"stream": rng.stream, "start": rng.start, "end": rng.end, "events": events}

    @app.get("/v1/streams")
    async def list_streams(app_id: Optional[str] = None):
        heads = await asyncio.to_thread(store.list_streams, app_id)
        return {
            "streams": [{"stream": h.stream, "sequence": h.sequence, "hash_self": h.hash_self} for h in heads]
        }

    @app.post("/v1/verify")
    async def verify_range(request: VerifyRequest):
        keys = service.trusted_keys if request.check_signatures else None
        result = await asyncio.to_thread(
            store.verify, request.stream, SequenceRange(request.start, request.end), trusted_keys=keys
        )
        return result.as_dict()

    # ---------------------------
    # Gate and approvals
    # ---------------------------

    @app.post("/v1/gate/evaluate")
    async def gate_evaluate(request: GateRequest):
        decision = await service.gate.evaluate_async(request.action, request.risk, request.payload, request.context)
        return decision.to_dict()

    @app.get("/v1/approvals")
    async def pending_approvals():
        return {"approvals": [r.to_dict() for r in service.broker.pending()]}

    @app.get("/v1/approvals/{approval_id}")
    async def get_approval(approval_id: str):
        req = await asyncio.to_thread(service.broker.get, approval_id)
        return req.to_dict()

    @app.post("/v1/approvals/{approval_id}/resolve")
    async def resolve_approval(approval_id: str, request: ResolveRequest):
        req = await asyncio.to_thread(
            service.broker.resolve,
            approval_id,
            approved=request.approved,
            resolver=request.resolver,
            reason=request.reason,
        )
        return req.to_dict()

    # ---------------------------
    # Checkpoints
    # ---------------------------

    @app.post("/v1/checkpoints")
    async def create_checkpoint(request: CheckpointRequest):
        cp = await asyncio.to_thread(service.checkpoints.checkpoint, request.stream)
        return {"checkpoint": cp.to_dict() if cp is not None else None}

    @app.get("/v1/checkpoints")
    async def list_checkpoints(stream: Optional[str] = None, unanchored_only: bool = False):
        cps = await asyncio.to_thread(store.list_checkpoints, stream, unanchored_only=unanchored_only)
        return {"checkpoints": [cp.to_dict() for cp in cps]}

    # ---------------------------
    # Evidence
    # ---------------------------

    @app.post("/v1/exports", status_code=201)
    async def export_pack(request: ExportRequest):
        pack = await asyncio.to_thread(
            service.packager.export, request.app_id, request.time_from, request.time_to, request.include_kinds
        )
        out_dir = Path(service.settings.export_dir)
        path = await asyncio.to_thread(pack.write_zip, str(out_dir / f"{pack.pack_id}.zip"))
        return {"pack_id": pack.pack_id, "path": path, "manifest": pack.manifest}

    @app.post("/v1/evidence/verify")
    async def verify_pack(http_request: Request, require_timestamp: bool = True):
        body = await http_request.body()
        if not body:
            raise ValidationError("request body must be an evidence pack zip")
        if len(body) > MAX_PACK_UPLOAD_BYTES:
            raise ValidationError("evidence pack too large", max_bytes=MAX_PACK_UPLOAD_BYTES)
        try:
            pack = EvidencePack.from_zip_bytes(body)
        except zipfile.BadZipFile as e:
            raise ValidationError("request body is not a zip archive") from e
        result = await asyncio.to_thread(
            verify_evidence_pack, pack, service.trusted_keys, require_timestamp=require_timestamp
        )
        return result.as_dict()

    # ---------------------------
    # Health
    # ---------------------------

    @app.get("/v1/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": ledger_version,
            "signing_key_id": service.signer.key_id,
            "policy_bundle": service.gate.bundle_version,
            "pending_approvals": len(service.broker.pending()),
            "unanchored_checkpoints": len(store.list_checkpoints(unanchored_only=True)),
        }

    return app


def main():
    """
    Entry point for ``action-ledger serve`` / ``python -m action_ledger.server``.

    Usage:
        python -m action_ledger.server                  # 0.0.0.0:8000
        python -m action_ledger.server --port 9000
    """
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(
        description="Action Ledger HTTP server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    LEDGER_DB_PATH                    SQLite database path (default: action_ledger.db)
    LEDGER_SIGNING_KEY_SEED_HEX       32-byte hex Ed25519 seed for event/pack signatures
    LEDGER_POLICY_BUNDLE_FILE         JSON policy bundle for the in-process evaluator
    LEDGER_POLICY_MODE / _URL         'rules' (default) or 'http' with a policy service URL
    LEDGER_TSA_URL                    HTTP timestamp authority (local signed receipts if unset)
    LEDGER_EXPORT_DIR                 Where evidence pack zips are written
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--log-level", default="info", help="uvicorn log level (default: info)")
    args = parser.parse_args()

    app = create_app()
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    import sys

    sys.exit(main() or 0)
