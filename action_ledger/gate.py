"""Synchronous policy gate.

``PolicyGate.evaluate`` is called immediately before a gated action runs and
returns a terminal ``PolicyDecision`` (``allow`` or ``deny``):

1. normalize the input (actor, action, risk tier, payload, bundle version,
   environmental context);
2. ask the evaluator;
3. on ``approve``, open an approval request and suspend until the broker
   resolves it (approved -> allow, denied -> deny, expired -> deny with
   ``approval_timeout``).

If the evaluator cannot answer, the configured fail-safe decision applies
(``deny`` by default, never ``allow``) with reasons
``["policy_evaluator_unavailable"]``.

``evaluate_async`` is the same contract for asyncio callers. Cancelling the
awaiting task cancels the approval request and re-raises ``CancelledError``.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .approvals import REASON_CANCELLED, REASON_TIMEOUT, ApprovalBroker
from .crypto import _canonicalize
from .errors import LedgerError, PolicyEvaluatorUnavailable, ValidationError
from .metrics import record_decision, record_evaluator_failure
from .models import ApprovalRequest, ApprovalState, Decision, Event, PolicyDecision
from .policy import EvaluatorResult, PolicyBundleRegistry, PolicyEvaluator

logger = logging.getLogger("action_ledger")

REASON_EVALUATOR_UNAVAILABLE = "policy_evaluator_unavailable"
REASON_APPROVAL_GRANTED = "approval_granted"
REASON_APPROVAL_DENIED = "approval_denied"

_RISK_TIERS = ("low", "medium", "high", "critical")


@dataclass(frozen=True)
class _Preliminary:
    normalized: Dict[str, Any]
    bundle_version: str
    policy_id: str
    result: Decision
    reasons: Tuple[str, ...]
    metadata: Dict[str, Any]
    source: str


class PolicyGate:
    def __init__(
        self,
        evaluator: PolicyEvaluator,
        broker: ApprovalBroker,
        *,
        registry: Optional[PolicyBundleRegistry] = None,
        store: Any = None,
        ingestor: Any = None,
        fail_safe: Decision = Decision.DENY,
        bundle_version: Optional[str] = None,
        approval_timeout_seconds: Optional[float] = None,
    ):
        if fail_safe is Decision.ALLOW:
            raise ValueError("fail-safe decision may not be allow")
        self.evaluator = evaluator
        self.broker = broker
        self.registry = registry
        self.store = store
        self.ingestor = ingestor
        self.fail_safe = fail_safe
        self._bundle_version = bundle_version
        self.approval_timeout_seconds = approval_timeout_seconds

    # ---------------------------
    # Normalization
    # ---------------------------

    @property
    def bundle_version(self) -> str:
        if self._bundle_version:
            return self._bundle_version
        if self.registry is not None:
            return self.registry.active_version
        return "unversioned"

    def normalize(
        self, action: str, risk: str, payload: Any, context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        if not action or not isinstance(action, str):
            raise ValidationError("action name is required")
        tier = str(risk or "").strip().lower()
        if tier not in _RISK_TIERS:
            raise ValidationError("risk tier must be one of: " + ", ".join(_RISK_TIERS), got=str(risk))
        ctx = dict(context or {})
        actor = str(ctx.pop("actor", "agent"))
        return {
            "actor": actor,
            "action": action,
            "risk": tier,
            "payload": _canonicalize(payload if payload is not None else {}),
            "bundle_version": self.bundle_version,
            "context": _canonicalize(ctx),
        }

    def _policy_id(self, version: str, result: EvaluatorResult) -> str:
        pid = result.metadata.get("policy_id") if result.metadata else None
        if pid:
            return str(pid)
        if self.registry is not None and version in self.registry:
            return self.registry.get(version).policy_id
        return "external"

    def _preliminary(self, normalized: Dict[str, Any], result: Optional[EvaluatorResult], error: Optional[PolicyEvaluatorUnavailable]) -> _Preliminary:
        version = normalized["bundle_version"]
        if error is not None:
            record_evaluator_failure()
            logger.warning(
                "policy evaluator unavailable for %s (%s); applying fail-safe %s",
                normalized["action"],
                error.message,
                self.fail_safe.value,
            )
            return _Preliminary(
                normalized=normalized,
                bundle_version=version,
                policy_id="fail_safe",
                result=self.fail_safe,
                reasons=(REASON_EVALUATOR_UNAVAILABLE,),
                metadata={"error": error.code},
                source="fail_safe",
            )
        return _Preliminary(
            normalized=normalized,
            bundle_version=version,
            policy_id=self._policy_id(version, result),
            result=result.result,
            reasons=tuple(result.reasons),
            metadata=dict(result.metadata or {}),
            source="evaluator",
        )

    def _ask(self, normalized: Dict[str, Any]) -> _Preliminary:
        try:
            result = self.evaluator.evaluate(normalized, normalized["bundle_version"])
        except PolicyEvaluatorUnavailable as e:
            return self._preliminary(normalized, None, e)
        except Exception as e:
            logger.warning("policy evaluator raised %s", type(e).__name__, exc_info=True)
            return self._preliminary(
                normalized, None, PolicyEvaluatorUnavailable(f"evaluator error: {e}", error_type=type(e).__name__)
            )
        if not isinstance(result, EvaluatorResult) or not isinstance(result.result, Decision):
            err = PolicyEvaluatorUnavailable("evaluator returned a malformed result", got=type(result).__name__)
            return self._preliminary(normalized, None, err)
        return self._preliminary(normalized, result, None)

    # ---------------------------
    # Decisions
    # ---------------------------

    def _approval_context(self, pre: _Preliminary) -> Dict[str, Any]:
        return {
            "action": pre.normalized["action"],
            "risk": pre.normalized["risk"],
            "actor": pre.normalized["actor"],
            "payload": pre.normalized["payload"],
            "bundle_version": pre.bundle_version,
            "policy_id": pre.policy_id,
            "reasons": list(pre.reasons),
        }

    def _finish(self, pre: _Preliminary, approval: Optional[ApprovalRequest] = None) -> PolicyDecision:
        if approval is None:
            decision = PolicyDecision(
                result=pre.result,
                reasons=pre.reasons,
                bundle_version=pre.bundle_version,
                policy_id=pre.policy_id,
                metadata=pre.metadata,
            )
            source = pre.source
        else:
            if approval.state is ApprovalState.APPROVED:
                result, reasons = Decision.ALLOW, pre.reasons + (REASON_APPROVAL_GRANTED,)
            elif approval.state is ApprovalState.DENIED:
                result = Decision.DENY
                reasons = (REASON_APPROVAL_DENIED,) + ((approval.reason,) if approval.reason else ())
            else:
                result, reasons = Decision.DENY, (approval.reason or REASON_TIMEOUT,)
            decision = PolicyDecision(
                result=result,
                reasons=reasons,
                bundle_version=pre.bundle_version,
                policy_id=pre.policy_id,
                approval_id=approval.approval_id,
                metadata={**pre.metadata, "resolver": approval.resolver, "approval_state": approval.state.value},
            )
            source = "approval"
        record_decision(decision.result.value, source)
        logger.info(
            "gate %s -> %s %s (bundle=%s)",
            pre.normalized["action"],
            decision.result.value,
            list(decision.reasons),
            decision.bundle_version,
        )
        self._record(pre, decision)
        return decision

    def _record(self, pre: _Preliminary, decision: PolicyDecision) -> None:
        """Emit the decision to the ledger when the context names an app and session.

        With an ingestor the event is queued; otherwise it is appended directly.
        Either way a ledger failure is logged and never changes the decision.
        """
        ctx = pre.normalized["context"]
        app_id, session_id = ctx.get("app_id"), ctx.get("session_id")
        if (self.store is None and self.ingestor is None) or not app_id or not session_id:
            return
        try:
            event = self._decision_event(pre, decision, str(app_id), str(session_id))
            if self.ingestor is not None:
                self.ingestor.emit(event)
            else:
                self.store.append(event)
        except (LedgerError, sqlite3.Error) as e:
            logger.error("could not record gate decision for %s: %s", pre.normalized["action"], e)

    def _decision_event(self, pre: _Preliminary, decision: PolicyDecision, app_id: str, session_id: str) -> Event:
        ctx = pre.normalized["context"]
        return Event.draft(
            app_id=app_id,
            session_id=session_id,
            actor=pre.normalized["actor"] if pre.normalized["actor"] in ("user", "agent", "service") else "service",
            parent_id=ctx.get("parent_id"),
            input={"action": pre.normalized["action"], "risk": pre.normalized["risk"], "payload": pre.normalized["payload"]},
            policy=decision.as_policy_block(),
        )

    def evaluate(
        self,
        action: str,
        risk: str,
        payload: Any,
        context: Optional[Dict[str, Any]] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> PolicyDecision:
        """Block until a terminal decision exists for this action."""
        pre = self._ask(self.normalize(action, risk, payload, context))
        if pre.result is not Decision.APPROVE:
            return self._finish(pre)

        req = self.broker.request(self._approval_context(pre), timeout_seconds=self.approval_timeout_seconds)
        final = self.broker.wait(req.approval_id, cancel_event=cancel_event)
        if final.reason == REASON_CANCELLED:
            logger.info("gate %s abandoned by caller (approval %s)", action, req.approval_id)
        return self._finish(pre, final)

    def _cancel_opened(self, opening: "asyncio.Future[ApprovalRequest]") -> None:
        """Expire a request whose caller was cancelled while it was being opened."""
        if opening.cancelled() or opening.exception() is not None:
            return
        self.broker.cancel(opening.result().approval_id)

    async def evaluate_async(
        self,
        action: str,
        risk: str,
        payload: Any,
        context: Optional[Dict[str, Any]] = None,
    ) -> PolicyDecision:
        normalized = self.normalize(action, risk, payload, context)
        pre = await asyncio.to_thread(self._ask, normalized)
        if pre.result is not Decision.APPROVE:
            return await asyncio.to_thread(self._finish, pre)

        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()

        def _resolve(req: ApprovalRequest) -> None:
            if not fut.done():
                fut.set_result(req)

        opening = asyncio.ensure_future(
            asyncio.to_thread(self.broker.request, self._approval_context(pre), timeout_seconds=self.approval_timeout_seconds)
        )
        try:
            req = await asyncio.shield(opening)
        except asyncio.CancelledError:
            opening.add_done_callback(self._cancel_opened)
            raise
        self.broker.add_done_callback(req.approval_id, lambda r: loop.call_soon_threadsafe(_resolve, r))
        try:
            final = await fut
        except asyncio.CancelledError:
            logger.info("gate %s cancelled while awaiting approval %s", action, req.approval_id)
            self.broker.cancel(req.approval_id)
            raise
        return await asyncio.to_thread(self._finish, pre, final)
