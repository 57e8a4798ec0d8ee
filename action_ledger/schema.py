"""JSON Schema (Draft 2020-12) for ledger events.

Events are validated on the wire shape (``Event.to_dict()``) before they are
hashed. Drafts must not carry chain fields; stored events must carry all of
them. Validation fails closed: any schema violation is a ``ValidationError``.
"""

from __future__ import annotations

from typing import Any, Dict, List

import jsonschema

from .errors import ValidationError


_HEX64 = "^[0-9a-f]{64}$"

_TOOL = {
    "type": "object",
    "required": ["name"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "arguments": {"type": "object"},
        "result": {},
        "latency_ms": {"type": "number", "minimum": 0},
    },
    "additionalProperties": False,
}

_MODEL = {
    "type": "object",
    "required": ["name"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "version": {"type": "string"},
        "provider": {"type": "string"},
        "parameters": {"type": "object"},
        "cost": {"type": "number", "minimum": 0},
    },
    "additionalProperties": False,
}

_POLICY = {
    "type": "object",
    "required": ["policy_id", "decision"],
    "properties": {
        "policy_id": {"type": "string"},
        "decision": {"enum": ["allow", "deny", "approve"]},
        "reasons": {"type": "array", "items": {"type": "string"}},
        "bundle_version": {"type": "string"},
        "approvals": {"type": "array", "items": {"type": "string"}},
    },
    "additionalProperties": False,
}

_EVAL = {
    "type": "object",
    "required": ["name", "score"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "score": {"type": "number"},
        "threshold": {"type": "number"},
        "details": {"type": "object"},
    },
    "additionalProperties": False,
}

EVENT_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "$id": "urn:action-ledger:event:v1",
    "type": "object",
    "required": ["event_id", "session_id", "timestamp", "actor", "app_id"],
    "properties": {
        "event_id": {"type": "string", "minLength": 1, "maxLength": 256},
        "parent_id": {"type": "string", "minLength": 1},
        "session_id": {"type": "string", "minLength": 1, "maxLength": 256},
        "timestamp": {"type": "string", "minLength": 20},
        "actor": {"enum": ["user", "agent", "service"]},
        "app_id": {"type": "string", "minLength": 1, "maxLength": 256, "pattern": "^[^/]+$"},
        "input": {},
        "output": {},
        "tools": {"type": "array", "items": _TOOL},
        "model": _MODEL,
        "policy": _POLICY,
        "evals": {"type": "array", "items": _EVAL},
        "retention_class": {"type": "string"},
        "stream": {"type": "string", "pattern": "^app:"},
        "sequence": {"type": "integer", "minimum": 1},
        "hash_prev": {"type": "string", "pattern": _HEX64},
        "hash_self": {"type": "string", "pattern": _HEX64},
        "signature": {"type": "string"},
    },
    "additionalProperties": False,
}

_CHAIN_FIELDS = ("stream", "sequence", "hash_prev", "hash_self")

_DRAFT_VALIDATOR = jsonschema.Draft202012Validator(
    {**EVENT_SCHEMA, "not": {"anyOf": [{"required": [f]} for f in _CHAIN_FIELDS + ("signature",)]}}
)

def _messages(validator: jsonschema.Draft202012Validator, doc: Dict[str, Any]) -> List[str]:
    out = []
    for err in sorted(validator.iter_errors(doc), key=lambda e: list(e.absolute_path)):
        where = "/".join(str(p) for p in err.absolute_path) or "$"
        out.append(f"{where}: {err.message}")
    return out


def validate_draft(doc: Dict[str, Any]) -> None:
    """Raise ``ValidationError`` unless ``doc`` is a well-formed, unchained event."""
    errors = _messages(_DRAFT_VALIDATOR, doc)
    if errors:
        raise ValidationError("event failed schema validation", errors=errors)
