"""Policy bundles and policy evaluators.

The gate talks to evaluators through one narrow contract::

    evaluate(normalized_input, bundle_version) -> EvaluatorResult

Two evaluators ship here:

* ``RuleSetEvaluator`` evaluates versioned ``PolicyBundle`` rule sets in
  process. It is pure: the same (input, bundle version) pair always yields the
  same decision and reasons.
* ``HttpPolicyEvaluator`` posts an OPA-compatible ``{"input": ...}`` body to a
  remote policy service and accepts either a decision object or
  ``{"result": <decision object>}`` back.

Evaluators raise ``PolicyEvaluatorUnavailable`` when they cannot produce a
decision. They never make up an ``allow``; the gate owns the fail-safe default.
"""

from __future__ import annotations

import json
import logging
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple

from .crypto import hash_canonical
from .errors import NotFound, PolicyEvaluatorUnavailable, ValidationError
from .models import Decision

logger = logging.getLogger("action_ledger")

_OPS = ("eq", "ne", "gt", "gte", "lt", "lte", "in", "exists")

# deny beats approve beats allow when several rules match
_PRECEDENCE = {Decision.DENY: 2, Decision.APPROVE: 1, Decision.ALLOW: 0}


@dataclass(frozen=True)
class EvaluatorResult:
    result: Decision
    reasons: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)


class PolicyEvaluator(Protocol):
    """Given normalized input and a bundle version, return a decision."""

    def evaluate(self, normalized_input: Dict[str, Any], bundle_version: str) -> EvaluatorResult:
        ...


@dataclass(frozen=True)
class Condition:
    field: str
    op: str
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in _OPS:
            raise ValidationError(f"unknown condition op {self.op!r}", allowed=list(_OPS))

    def matches(self, doc: Dict[str, Any]) -> bool:
        present, actual = _lookup(doc, self.field)
        if self.op == "exists":
            return present if self.value is None else present == bool(self.value)
        if not present:
            return False
        try:
            if self.op == "eq":
                return actual == self.value
            if self.op == "ne":
                return actual != self.value
            if self.op == "in":
                return actual in (self.value or ())
            if isinstance(actual, bool) or isinstance(self.value, bool):
                return False
            if self.op == "gt":
                return actual > self.value
            if self.op == "gte":
                return actual >= self.value
            if self.op == "lt":
                return actual < self.value
            return actual <= self.value
        except TypeError:
            return False

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "op": self.op, "value": self.value}


def _lookup(doc: Dict[str, Any], dotted: str) -> Tuple[bool, Any]:
    cur: Any = doc
    for part in dotted.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return False, None
        cur = cur[part]
    return True, cur


@dataclass(frozen=True)
class Rule:
    rule_id: str
    decision: Decision
    reason: str
    actions: Tuple[str, ...] = ("*",)
    when: Tuple[Condition, ...] = ()

    def applies_to(self, action: str) -> bool:
        return "*" in self.actions or action in self.actions

    def matches(self, doc: Dict[str, Any]) -> bool:
        return self.applies_to(str(doc.get("action", ""))) and all(c.matches(doc) for c in self.when)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.rule_id,
            "decision": self.decision.value,
            "reason": self.reason,
            "actions": list(self.actions),
            "when": [c.to_dict() for c in self.when],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Rule":
        try:
            decision = Decision(d.get("decision"))
        except ValueError:
            raise ValidationError("rule decision must be allow, deny or approve", rule=d.get("id")) from None
        rule_id = str(d.get("id") or "")
        if not rule_id:
            raise ValidationError("rule id is required")
        return cls(
            rule_id=rule_id,
            decision=decision,
            reason=str(d.get("reason") or rule_id),
            actions=tuple(str(a) for a in (d.get("actions") or ["*"])),
            when=tuple(Condition(str(c.get("field", "")), str(c.get("op", "")), c.get("value")) for c in (d.get("when") or [])),
        )


@dataclass(frozen=True)
class PolicyBundle:
    """A versioned, immutable rule set."""

    policy_id: str
    version: str
    rules: Tuple[Rule, ...] = ()
    default_decision: Decision = Decision.ALLOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy_id": self.policy_id,
            "version": self.version,
            "default": self.default_decision.value,
            "rules": [r.to_dict() for r in self.rules],
        }

    @property
    def checksum(self) -> str:
        return hash_canonical(self.to_dict())

    def metadata(self) -> Dict[str, Any]:
        return {"policy_id": self.policy_id, "version": self.version, "sha256": self.checksum, "rules": len(self.rules)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PolicyBundle":
        if not isinstance(d, dict):
            raise ValidationError("policy bundle must be an object")
        policy_id = str(d.get("policy_id") or "")
        version = str(d.get("version") or "")
        if not policy_id or not version:
            raise ValidationError("policy bundle needs policy_id and version")
        try:
            default = Decision(d.get("default", "allow"))
        except ValueError:
            raise ValidationError("bundle default must be allow, deny or approve", policy_id=policy_id) from None
        return cls(
            policy_id=policy_id,
            version=version,
            rules=tuple(Rule.from_dict(r) for r in (d.get("rules") or [])),
            default_decision=default,
        )

    @classmethod
    def load_file(cls, path: str) -> "PolicyBundle":
        with Path(path).open("r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


class PolicyBundleRegistry:
    """Known bundle versions plus the one currently active.

    A version, once registered, is frozen: registering different content under
    the same version is rejected.
    """

    def __init__(self, bundles: Optional[List[PolicyBundle]] = None):
        self._bundles: Dict[str, PolicyBundle] = {}
        self._active: Optional[str] = None
        self._lock = threading.Lock()
        for b in bundles or []:
            self.register(b)

    def register(self, bundle: PolicyBundle, *, activate: bool = True) -> None:
        with self._lock:
            existing = self._bundles.get(bundle.version)
            if existing is not None and existing.checksum != bundle.checksum:
                raise ValidationError("policy bundle version already registered with different content", version=bundle.version)
            self._bundles[bundle.version] = bundle
            if activate or self._active is None:
                self._active = bundle.version
        logger.info("policy bundle %s@%s registered (sha256=%s)", bundle.policy_id, bundle.version, bundle.checksum[:12])

    def activate(self, version: str) -> None:
        with self._lock:
            if version not in self._bundles:
                raise NotFound("policy bundle version not registered", version=version)
            self._active = version

    @property
    def active_version(self) -> str:
        if self._active is None:
            raise NotFound("no policy bundle registered")
        return self._active

    def get(self, version: Optional[str] = None) -> PolicyBundle:
        v = version or self.active_version
        bundle = self._bundles.get(v)
        if bundle is None:
            raise NotFound("policy bundle version not registered", version=v)
        return bundle

    def versions(self) -> List[str]:
        return sorted(self._bundles)

    def __contains__(self, version: object) -> bool:
        return version in self._bundles


@dataclass
class RuleSetEvaluator:
    """In-process evaluator over registered bundles."""

    registry: PolicyBundleRegistry

    def evaluate(self, normalized_input: Dict[str, Any], bundle_version: str) -> EvaluatorResult:
        try:
            bundle = self.registry.get(bundle_version)
        except NotFound as e:
            raise PolicyEvaluatorUnavailable("unknown policy bundle version", version=bundle_version) from e

        matched = [r for r in bundle.rules if r.matches(normalized_input)]
        if not matched:
            return EvaluatorResult(
                result=bundle.default_decision,
                reasons=("no_rule_matched",),
                metadata={"policy_id": bundle.policy_id},
            )
        top = max(_PRECEDENCE[r.decision] for r in matched)
        winners = [r for r in matched if _PRECEDENCE[r.decision] == top]
        return EvaluatorResult(
            result=winners[0].decision,
            reasons=tuple(r.reason for r in winners),
            metadata={"policy_id": bundle.policy_id, "rules": [r.rule_id for r in winners]},
        )


@dataclass
class HttpPolicyEvaluator:
    """Remote policy service client.

    Request body: ``{"input": <normalized input>}`` with ``bundle_version``
    included in the input. Response: a decision object with ``decision`` (or
    ``result``) and ``reasons``, optionally wrapped as ``{"result": {...}}``.
    """

    url: str
    timeout_seconds: float = 2.0

    def evaluate(self, normalized_input: Dict[str, Any], bundle_version: str) -> EvaluatorResult:
        body = json.dumps({"input": {**normalized_input, "bundle_version": bundle_version}}).encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                decoded = json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            raise PolicyEvaluatorUnavailable(f"policy service returned HTTP {e.code}", url=self.url) from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise PolicyEvaluatorUnavailable(f"policy service unreachable: {type(e).__name__}", url=self.url) from e

        decision = decoded
        if isinstance(decoded, dict) and isinstance(decoded.get("result"), dict):
            decision = decoded["result"]
        if not isinstance(decision, dict):
            raise PolicyEvaluatorUnavailable("policy service returned a non-object decision", url=self.url)

        raw = decision.get("decision", decision.get("result"))
        reasons = decision.get("reasons", [])
        try:
            result = Decision(raw)
        except ValueError:
            raise PolicyEvaluatorUnavailable("policy service returned an unknown decision", url=self.url, got=str(raw)) from None
        if not isinstance(reasons, list) or not all(isinstance(r, str) for r in reasons):
            raise PolicyEvaluatorUnavailable("policy service returned malformed reasons", url=self.url)
        metadata = decision.get("metadata") if isinstance(decision.get("metadata"), dict) else {}
        return EvaluatorResult(result=result, reasons=tuple(reasons), metadata=metadata)


def build_evaluator(settings: Any, registry: PolicyBundleRegistry) -> PolicyEvaluator:
    """Evaluator for ``settings.policy_mode`` (``rules`` or ``http``)."""
    if settings.policy_mode == "http":
        return HttpPolicyEvaluator(url=settings.policy_url, timeout_seconds=settings.policy_timeout_seconds)
    return RuleSetEvaluator(registry=registry)
