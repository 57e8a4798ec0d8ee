"""Canonical event model and the shared data shapes of the ledger.

An ``Event`` is immutable. Before it is appended it is a *draft*: the chain
fields (``stream``, ``sequence``, ``hash_prev``, ``hash_self``, ``signature``)
are empty and the store fills them in. ``canonical_body()`` is the single
source of the bytes that get hashed: every field except ``hash_self`` and
``signature``, with absent optionals dropped so that "missing" and "null"
encode identically.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import ValidationError


class ActorKind(str, Enum):
    USER = "user"
    AGENT = "agent"
    SERVICE = "service"


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    APPROVE = "approve"


class ApprovalState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"

    @property
    def terminal(self) -> bool:
        return self is not ApprovalState.PENDING


def _enum(enum_cls, value: Any, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"{field_name} must be one of: {allowed}", field=field_name, got=str(value)) from None


def format_timestamp(dt: datetime) -> str:
    """RFC 3339 UTC with microseconds and a ``Z`` suffix (one spelling per instant)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: Any, field_name: str = "timestamp") -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value or "").strip()
        if not s:
            raise ValidationError(f"{field_name} is required", field=field_name)
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            raise ValidationError(f"{field_name} is not an ISO 8601 date-time", field=field_name, got=str(value)) from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


def _prune(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None and v != [] and v != {}}


@dataclass(frozen=True)
class ToolInvocation:
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    result: Any = None
    latency_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return _prune({
            "name": self.name,
            "arguments": dict(self.arguments),
            "result": self.result,
            "latency_ms": self.latency_ms,
        })

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ToolInvocation":
        return cls(
            name=str(d.get("name", "")),
            arguments=dict(d.get("arguments") or {}),
            result=d.get("result"),
            latency_ms=d.get("latency_ms"),
        )


@dataclass(frozen=True)
class ModelDescriptor:
    name: str
    version: Optional[str] = None
    provider: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    cost: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return _prune({
            "name": self.name,
            "version": self.version,
            "provider": self.provider,
            "parameters": dict(self.parameters),
            "cost": self.cost,
        })

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ModelDescriptor":
        return cls(
            name=str(d.get("name", "")),
            version=d.get("version"),
            provider=d.get("provider"),
            parameters=dict(d.get("parameters") or {}),
            cost=d.get("cost"),
        )


@dataclass(frozen=True)
class PolicyEvaluation:
    """The policy block recorded on an event."""

    policy_id: str
    decision: Decision
    reasons: Tuple[str, ...] = ()
    bundle_version: Optional[str] = None
    approvals: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return _prune({
            "policy_id": self.policy_id,
            "decision": self.decision.value,
            "reasons": list(self.reasons),
            "bundle_version": self.bundle_version,
            "approvals": list(self.approvals),
        })

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PolicyEvaluation":
        return cls(
            policy_id=str(d.get("policy_id", "")),
            decision=_enum(Decision, d.get("decision"), "policy.decision"),
            reasons=tuple(str(r) for r in (d.get("reasons") or [])),
            bundle_version=d.get("bundle_version"),
            approvals=tuple(str(a) for a in (d.get("approvals") or [])),
        )


@dataclass(frozen=True)
class EvalScore:
    name: str
    score: float
    threshold: Optional[float] = None
    details: Optional[Dict[str, Any]] = None

    @property
    def passed(self) -> Optional[bool]:
        if self.threshold is None:
            return None
        return self.score >= self.threshold

    def to_dict(self) -> Dict[str, Any]:
        return _prune({
            "name": self.name,
            "score": self.score,
            "threshold": self.threshold,
            "details": self.details,
        })

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EvalScore":
        return cls(
            name=str(d.get("name", "")),
            score=d.get("score"),
            threshold=d.get("threshold"),
            details=d.get("details"),
        )


@dataclass(frozen=True)
class Event:
    """One immutable ledger record (span, tool call, model call, policy decision)."""

    event_id: str
    session_id: str
    timestamp: datetime
    actor: ActorKind
    app_id: str
    parent_id: Optional[str] = None
    input: Any = None
    output: Any = None
    tools: Tuple[ToolInvocation, ...] = ()
    model: Optional[ModelDescriptor] = None
    policy: Optional[PolicyEvaluation] = None
    evals: Tuple[EvalScore, ...] = ()
    retention_class: Optional[str] = None
    # chain fields, assigned by the store
    stream: str = ""
    sequence: int = 0
    hash_prev: str = ""
    hash_self: str = ""
    signature: Optional[str] = None

    @classmethod
    def draft(
        cls,
        *,
        app_id: str,
        session_id: str,
        actor: ActorKind | str,
        event_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        **fields: Any,
    ) -> "Event":
        return cls(
            event_id=event_id or new_event_id(),
            session_id=session_id,
            timestamp=parse_timestamp(timestamp or datetime.now(timezone.utc)),
            actor=_enum(ActorKind, actor, "actor"),
            app_id=app_id,
            **fields,
        )

    @property
    def is_chained(self) -> bool:
        return bool(self.hash_self)

    def chained(self, *, stream: str, sequence: int, hash_prev: str) -> "Event":
        """Copy with chain position set and hash/signature cleared."""
        return replace(self, stream=stream, sequence=sequence, hash_prev=hash_prev, hash_self="", signature=None)

    def canonical_body(self) -> Dict[str, Any]:
        body = self.to_dict()
        body.pop("hash_self", None)
        body.pop("signature", None)
        return body

    def to_dict(self) -> Dict[str, Any]:
        return _prune({
            "event_id": self.event_id,
            "parent_id": self.parent_id,
            "session_id": self.session_id,
            "timestamp": format_timestamp(self.timestamp),
            "actor": self.actor.value,
            "app_id": self.app_id,
            "input": self.input,
            "output": self.output,
            "tools": [t.to_dict() for t in self.tools],
            "model": self.model.to_dict() if self.model else None,
            "policy": self.policy.to_dict() if self.policy else None,
            "evals": [e.to_dict() for e in self.evals],
            "retention_class": self.retention_class,
            "stream": self.stream or None,
            "sequence": self.sequence or None,
            "hash_prev": self.hash_prev or None,
            "hash_self": self.hash_self or None,
            "signature": self.signature,
        })

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Event":
        if not isinstance(d, dict):
            raise ValidationError("event must be a JSON object")
        model = d.get("model")
        policy = d.get("policy")
        return cls(
            event_id=str(d.get("event_id") or ""),
            parent_id=d.get("parent_id"),
            session_id=str(d.get("session_id") or ""),
            timestamp=parse_timestamp(d.get("timestamp")),
            actor=_enum(ActorKind, d.get("actor"), "actor"),
            app_id=str(d.get("app_id") or ""),
            input=d.get("input"),
            output=d.get("output"),
            tools=tuple(ToolInvocation.from_dict(t) for t in (d.get("tools") or [])),
            model=ModelDescriptor.from_dict(model) if isinstance(model, dict) else None,
            policy=PolicyEvaluation.from_dict(policy) if isinstance(policy, dict) else None,
            evals=tuple(EvalScore.from_dict(e) for e in (d.get("evals") or [])),
            retention_class=d.get("retention_class"),
            stream=str(d.get("stream") or ""),
            sequence=int(d.get("sequence") or 0),
            hash_prev=str(d.get("hash_prev") or ""),
            hash_self=str(d.get("hash_self") or ""),
            signature=d.get("signature"),
        )


@dataclass(frozen=True)
class StreamKey:
    """Chaining scope: an application, optionally narrowed to one session."""

    app_id: str
    session_id: Optional[str] = None

    def __str__(self) -> str:
        if self.session_id:
            return f"app:{self.app_id}/session:{self.session_id}"
        return f"app:{self.app_id}"

    @classmethod
    def parse(cls, value: "StreamKey | str") -> "StreamKey":
        if isinstance(value, StreamKey):
            return value
        s = str(value or "").strip()
        if not s.startswith("app:"):
            raise ValidationError("stream key must look like app:<id>[/session:<id>]", got=s)
        app_part, _, session_part = s[len("app:"):].partition("/session:")
        if not app_part:
            raise ValidationError("stream key has an empty application id", got=s)
        return cls(app_id=app_part, session_id=session_part or None)

    @classmethod
    def for_event(cls, event: Event, scope: str = "app") -> "StreamKey":
        if scope == "session":
            return cls(app_id=event.app_id, session_id=event.session_id)
        return cls(app_id=event.app_id)


@dataclass(frozen=True)
class SequenceRange:
    """Inclusive sequence range; ``end=None`` means "through the current tail"."""

    start: int = 1
    end: Optional[int] = None

    def __post_init__(self) -> None:
        if self.start < 1:
            raise ValidationError("sequence range must start at 1 or later", start=self.start)
        if self.end is not None and self.end < self.start:
            raise ValidationError("sequence range end precedes start", start=self.start, end=self.end)

    def bounded(self, upper: int) -> "SequenceRange":
        end = upper if self.end is None else min(self.end, upper)
        return SequenceRange(self.start, max(end, self.start))


@dataclass(frozen=True)
class StreamHead:
    stream: str
    sequence: int
    hash_self: str


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of one gated action."""

    result: Decision
    reasons: Tuple[str, ...]
    bundle_version: str
    policy_id: str = ""
    approval_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.result is Decision.ALLOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result.value,
            "reasons": list(self.reasons),
            "bundle_version": self.bundle_version,
            "policy_id": self.policy_id,
            "approval_id": self.approval_id,
            "metadata": dict(self.metadata),
        }

    def as_policy_block(self) -> PolicyEvaluation:
        return PolicyEvaluation(
            policy_id=self.policy_id,
            decision=self.result,
            reasons=self.reasons,
            bundle_version=self.bundle_version,
            approvals=(self.approval_id,) if self.approval_id else (),
        )


@dataclass(frozen=True)
class ApprovalRequest:
    """One human-in-the-loop escalation. Replaced, never mutated, on transition."""

    approval_id: str
    context: Dict[str, Any]
    state: ApprovalState
    requested_at: datetime
    expires_at: datetime
    resolved_at: Optional[datetime] = None
    resolver: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approval_id": self.approval_id,
            "context": self.context,
            "state": self.state.value,
            "requested_at": format_timestamp(self.requested_at),
            "expires_at": format_timestamp(self.expires_at),
            "resolved_at": format_timestamp(self.resolved_at) if self.resolved_at else None,
            "resolver": self.resolver,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ApprovalRequest":
        return cls(
            approval_id=str(d["approval_id"]),
            context=dict(d.get("context") or {}),
            state=ApprovalState(d["state"]),
            requested_at=parse_timestamp(d["requested_at"], "requested_at"),
            expires_at=parse_timestamp(d["expires_at"], "expires_at"),
            resolved_at=parse_timestamp(d["resolved_at"], "resolved_at") if d.get("resolved_at") else None,
            resolver=d.get("resolver"),
            reason=d.get("reason"),
        )


@dataclass(frozen=True)
class Checkpoint:
    """Merkle root over a contiguous sequence window of one stream."""

    checkpoint_id: str
    stream: str
    seq_start: int
    seq_end: int
    merkle_root: str
    created_at: datetime
    receipt: Optional[Dict[str, Any]] = None

    @property
    def anchored(self) -> bool:
        """Only anchored checkpoints count as trust roots."""
        return self.receipt is not None

    @property
    def leaf_count(self) -> int:
        return self.seq_end - self.seq_start + 1

    def overlaps(self, start: int, end: int) -> bool:
        return self.seq_start <= end and start <= self.seq_end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checkpoint_id": self.checkpoint_id,
            "stream": self.stream,
            "seq_start": self.seq_start,
            "seq_end": self.seq_end,
            "merkle_root": self.merkle_root,
            "created_at": format_timestamp(self.created_at),
            "anchored": self.anchored,
            "receipt": self.receipt,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Checkpoint":
        return cls(
            checkpoint_id=str(d["checkpoint_id"]),
            stream=str(d["stream"]),
            seq_start=int(d["seq_start"]),
            seq_end=int(d["seq_end"]),
            merkle_root=str(d["merkle_root"]),
            created_at=parse_timestamp(d["created_at"], "created_at"),
            receipt=d.get("receipt"),
        )
