"""Human-in-the-loop approval broker.

Each request follows ``pending -> approved | denied | expired``. The broker
owns the transitions; waiting callers are resumed by the transition itself
(a ``threading.Event`` per request plus optional callbacks), never by polling.

- ``request`` creates a pending request, arms its expiry timer and hands it to
  the notifier (attempted at least once, retried with backoff).
- ``resolve`` moves a pending request to approved/denied and records who did
  it and when. Resolving a terminal request raises ``ApprovalAlreadyResolved``.
- the expiry timer moves a still-pending request to ``expired``.
- ``cancel`` expires a request whose caller abandoned the action.

With a store attached every transition is persisted, and ``restore_pending``
re-arms timers for requests that were pending when the process stopped.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import urllib.error
import urllib.request
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from .crypto import _now_utc
from .errors import ApprovalAlreadyResolved, ApprovalTimeout, NotFound, ValidationError
from .metrics import record_approval_resolved, set_pending_approvals
from .models import ApprovalRequest, ApprovalState

logger = logging.getLogger("action_ledger")

REASON_TIMEOUT = "approval_timeout"
REASON_CANCELLED = "caller_cancelled"


class Notifier(Protocol):
    """Delivers a pending request to humans. Raises on delivery failure."""

    def notify(self, request: ApprovalRequest) -> None:
        ...


class LoggingNotifier:
    def notify(self, request: ApprovalRequest) -> None:
        logger.info(
            "approval %s pending until %s: %s",
            request.approval_id,
            request.expires_at.isoformat(),
            request.context.get("action", "?"),
        )


class NotificationFailed(RuntimeError):
    pass


class HttpWebhookNotifier:
    """POSTs the pending request to a webhook (chat/ticketing bridge).

    Sends ``Idempotency-Key: sha256(approval_id)``; HTTP 409 counts as
    already delivered. Any other non-2xx raises ``NotificationFailed``.
    """

    def __init__(self, url: str, *, timeout_s: float = 5.0):
        self.url = url
        self.timeout_s = float(timeout_s)

    def notify(self, request: ApprovalRequest) -> None:
        payload = json.dumps(request.to_dict(), sort_keys=True).encode("utf-8")
        idem_key = hashlib.sha256(request.approval_id.encode("utf-8")).hexdigest()
        req = urllib.request.Request(
            self.url,
            data=payload,
            headers={"Content-Type": "application/json", "Idempotency-Key": idem_key},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                status = int(getattr(resp, "status", 200))
        except urllib.error.HTTPError as e:
            if e.code == 409:
                return
            raise NotificationFailed(f"webhook returned HTTP {e.code}") from e
        except (urllib.error.URLError, OSError) as e:
            raise NotificationFailed(f"webhook unreachable: {e}") from e
        if not 200 <= status <= 299:
            raise NotificationFailed(f"webhook returned HTTP {status}")


@dataclass
class _Slot:
    request: ApprovalRequest
    done: threading.Event = field(default_factory=threading.Event)
    timer: Optional[threading.Timer] = None
    callbacks: List[Callable[[ApprovalRequest], None]] = field(default_factory=list)


class ApprovalBroker:
    def __init__(
        self,
        *,
        store: Any = None,
        notifier: Optional[Notifier] = None,
        default_timeout_seconds: float = 900.0,
        notify_attempts: int = 3,
        notify_backoff_seconds: float = 0.5,
        recent_limit: int = 1024,
    ):
        self.store = store
        self.notifier = notifier or LoggingNotifier()
        self.default_timeout_seconds = float(default_timeout_seconds)
        self.notify_attempts = max(1, int(notify_attempts))
        self.notify_backoff_seconds = float(notify_backoff_seconds)
        self.recent_limit = max(0, int(recent_limit))
        self._slots: Dict[str, _Slot] = {}
        self._recent: "OrderedDict[str, ApprovalRequest]" = OrderedDict()
        self._lock = threading.Lock()

    # ---------------------------
    # Lifecycle
    # ---------------------------

    def request(self, context: Dict[str, Any], *, timeout_seconds: Optional[float] = None) -> ApprovalRequest:
        timeout = self.default_timeout_seconds if timeout_seconds is None else float(timeout_seconds)
        if timeout <= 0:
            raise ValidationError("approval timeout must be positive", timeout_seconds=timeout)
        now = _now_utc()
        req = ApprovalRequest(
            approval_id=f"apr_{uuid.uuid4().hex}",
            context=dict(context),
            state=ApprovalState.PENDING,
            requested_at=now,
            expires_at=now + timedelta(seconds=timeout),
        )
        with self._lock:
            slot = _Slot(request=req)
            self._slots[req.approval_id] = slot
            self._persist(req)
            self._arm(slot, timeout)
            set_pending_approvals(self._pending_count())
        logger.info("approval %s requested (timeout=%ss)", req.approval_id, timeout)
        threading.Thread(target=self._notify, args=(req,), name=f"notify-{req.approval_id}", daemon=True).start()
        return req

    def resolve(self, approval_id: str, *, approved: bool, resolver: str, reason: Optional[str] = None) -> ApprovalRequest:
        if not resolver:
            raise ValidationError("resolver identity is required", approval_id=approval_id)
        state = ApprovalState.APPROVED if approved else ApprovalState.DENIED
        return self._transition(approval_id, state, resolver=resolver, reason=reason)

    def approve(self, approval_id: str, resolver: str, reason: Optional[str] = None) -> ApprovalRequest:
        return self.resolve(approval_id, approved=True, resolver=resolver, reason=reason)

    def deny(self, approval_id: str, resolver: str, reason: Optional[str] = None) -> ApprovalRequest:
        return self.resolve(approval_id, approved=False, resolver=resolver, reason=reason)

    def cancel(self, approval_id: str) -> Optional[ApprovalRequest]:
        """Expire a pending request whose caller went away. No-op if already terminal."""
        try:
            return self._transition(approval_id, ApprovalState.EXPIRED, reason=REASON_CANCELLED)
        except ApprovalAlreadyResolved:
            return None

    def _expire(self, approval_id: str) -> None:
        try:
            self._transition(approval_id, ApprovalState.EXPIRED, reason=REASON_TIMEOUT)
        except ApprovalAlreadyResolved:
            pass

    def _transition(
        self,
        approval_id: str,
        state: ApprovalState,
        *,
        resolver: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ApprovalRequest:
        with self._lock:
            slot = self._slots.get(approval_id)
            if slot is None:
                # terminal requests are evicted; earlier processes' only live in the store
                known = self._recent.get(approval_id)
                if known is None and self.store is not None:
                    known = self.store.get_approval(approval_id)
                if known is None:
                    raise NotFound("approval request not found", approval_id=approval_id)
                slot = _Slot(request=known)
            if slot.request.state.terminal:
                raise ApprovalAlreadyResolved(
                    "approval request already resolved",
                    approval_id=approval_id,
                    state=slot.request.state.value,
                )
            slot.request = replace(slot.request, state=state, resolved_at=_now_utc(), resolver=resolver, reason=reason)
            if slot.timer is not None:
                slot.timer.cancel()
            self._persist(slot.request)
            slot.done.set()
            callbacks, slot.callbacks = slot.callbacks, []
            final = slot.request
            self._slots.pop(approval_id, None)
            self._remember(final)
            set_pending_approvals(self._pending_count())

        record_approval_resolved(state.value)
        logger.info("approval %s -> %s (resolver=%s reason=%s)", approval_id, state.value, resolver, reason)
        for cb in callbacks:
            cb(final)
        return final

    # ---------------------------
    # Waiting
    # ---------------------------

    def add_done_callback(self, approval_id: str, callback: Callable[[ApprovalRequest], None]) -> None:
        """Call ``callback(request)`` once the request is terminal (now, if it already is)."""
        with self._lock:
            slot = self._slots.get(approval_id)
            if slot is not None:
                slot.callbacks.append(callback)
                return
        final = self.get(approval_id)
        if not final.state.terminal:
            raise NotFound("approval request is not tracked by this broker", approval_id=approval_id)
        callback(final)

    def wait(
        self,
        approval_id: str,
        timeout: Optional[float] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> ApprovalRequest:
        """Block until the request is terminal.

        ``timeout`` bounds this caller's wait only; if it elapses first,
        ``ApprovalTimeout`` is raised and the request itself stays pending.
        If ``cancel_event`` is set while waiting, the request is cancelled.
        """
        with self._lock:
            slot = self._slots.get(approval_id)
        if slot is None:
            final = self.get(approval_id)
            if not final.state.terminal:
                raise NotFound("approval request is not tracked by this broker", approval_id=approval_id)
            return final

        if cancel_event is not None:
            if cancel_event.is_set():
                self.cancel(approval_id)
            else:
                self._watch_cancel(slot.request, cancel_event)
        if not slot.done.wait(timeout):
            raise ApprovalTimeout("gave up waiting for approval", approval_id=approval_id)
        return slot.request

    def _watch_cancel(self, req: ApprovalRequest, cancel_event: threading.Event) -> None:
        """Cancel ``req`` when ``cancel_event`` fires; the watcher ends at the request's expiry."""
        horizon = max(0.0, (req.expires_at - _now_utc()).total_seconds())

        def _watch() -> None:
            if not cancel_event.wait(horizon):
                return
            try:
                self.cancel(req.approval_id)
            except (ApprovalAlreadyResolved, NotFound):
                pass

        threading.Thread(target=_watch, name=f"cancel-{req.approval_id}", daemon=True).start()

    # ---------------------------
    # Queries / recovery
    # ---------------------------

    def get(self, approval_id: str) -> ApprovalRequest:
        with self._lock:
            slot = self._slots.get(approval_id)
            if slot is not None:
                return slot.request
            known = self._recent.get(approval_id)
        if known is not None:
            return known
        if self.store is not None:
            return self.store.get_approval(approval_id)
        raise NotFound("approval request not found", approval_id=approval_id)

    def pending(self) -> List[ApprovalRequest]:
        with self._lock:
            reqs = [s.request for s in self._slots.values()]
        return sorted(reqs, key=lambda r: r.requested_at)

    def restore_pending(self) -> int:
        """Reload pending requests from the store and re-arm their timers."""
        if self.store is None:
            return 0
        restored = 0
        now = _now_utc()
        for req in self.store.list_approvals(ApprovalState.PENDING):
            with self._lock:
                if req.approval_id in self._slots:
                    continue
                slot = _Slot(request=req)
                self._slots[req.approval_id] = slot
                self._arm(slot, max(0.0, (req.expires_at - now).total_seconds()))
            restored += 1
        with self._lock:
            set_pending_approvals(self._pending_count())
        if restored:
            logger.info("restored %d pending approval(s)", restored)
        return restored

    def shutdown(self) -> None:
        with self._lock:
            for slot in self._slots.values():
                if slot.timer is not None:
                    slot.timer.cancel()

    # ---------------------------
    # Internals
    # ---------------------------

    def _pending_count(self) -> int:
        return len(self._slots)

    def _remember(self, req: ApprovalRequest) -> None:
        self._recent[req.approval_id] = req
        while len(self._recent) > self.recent_limit:
            self._recent.popitem(last=False)

    def _arm(self, slot: _Slot, seconds: float) -> None:
        timer = threading.Timer(seconds, self._expire, args=(slot.request.approval_id,))
        timer.daemon = True
        slot.timer = timer
        timer.start()

    def _persist(self, req: ApprovalRequest) -> None:
        if self.store is not None:
            self.store.save_approval(req)

    def _notify(self, req: ApprovalRequest) -> None:
        for attempt in range(1, self.notify_attempts + 1):
            try:
                self.notifier.notify(req)
                return
            except NotificationFailed as e:
                if attempt == self.notify_attempts:
                    logger.warning("approval %s notification failed after %d attempts: %s", req.approval_id, attempt, e)
                    return
                logger.warning("approval %s notification attempt %d failed: %s", req.approval_id, attempt, e)
                time.sleep(self.notify_backoff_seconds * (2 ** (attempt - 1)))
