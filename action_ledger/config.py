"""Runtime settings for the ledger service.

All knobs come from ``LEDGER_*`` environment variables. Invalid numbers fall
back to defaults and are clamped into sane ranges; settings that would weaken
fail-closed behaviour (e.g. an ``allow`` fail-safe decision) are rejected.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from .models import Decision


def _get_str(name: str, default: str = "") -> str:
    return (os.getenv(name, "") or "").strip() or default


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except (TypeError, ValueError):
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)).strip())
    except (TypeError, ValueError):
        return default


def _get_bool(name: str, default: bool = False) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def parse_fail_safe_decision(value: str) -> Decision:
    v = (value or "deny").strip().lower()
    if v == Decision.ALLOW.value:
        raise ValueError("LEDGER_FAIL_SAFE_DECISION may not be 'allow'")
    try:
        return Decision(v)
    except ValueError:
        raise ValueError(f"LEDGER_FAIL_SAFE_DECISION must be 'deny' or 'approve', got {value!r}") from None


@dataclass
class LedgerSettings:
    db_path: str = "action_ledger.db"
    stream_scope: str = "app"
    policy_mode: str = "rules"
    policy_url: Optional[str] = None
    policy_timeout_seconds: float = 2.0
    policy_bundle_file: Optional[str] = None
    fail_safe_decision: Decision = Decision.DENY
    approval_timeout_seconds: float = 900.0
    approval_webhook_url: Optional[str] = None
    checkpoint_interval_seconds: float = 300.0
    checkpoint_max_events: int = 1000
    tsa_url: Optional[str] = None
    tsa_timeout_seconds: float = 5.0
    anchor_retry_seconds: float = 30.0
    export_dir: str = "exports"
    metrics_enabled: bool = True

    @classmethod
    def from_env(cls) -> "LedgerSettings":
        scope = _get_str("LEDGER_STREAM_SCOPE", cls.stream_scope).lower()
        if scope not in ("app", "session"):
            raise ValueError(f"LEDGER_STREAM_SCOPE must be 'app' or 'session', got {scope!r}")
        mode = _get_str("LEDGER_POLICY_MODE", cls.policy_mode).lower()
        if mode not in ("rules", "http"):
            raise ValueError(f"LEDGER_POLICY_MODE must be 'rules' or 'http', got {mode!r}")
        policy_url = _get_str("LEDGER_POLICY_URL") or None
        if mode == "http" and not policy_url:
            raise ValueError("LEDGER_POLICY_MODE=http requires LEDGER_POLICY_URL")

        policy_timeout = _get_float("LEDGER_POLICY_TIMEOUT_SECONDS", cls.policy_timeout_seconds)
        approval_timeout = _get_float("LEDGER_APPROVAL_TIMEOUT_SECONDS", cls.approval_timeout_seconds)
        interval = _get_float("LEDGER_CHECKPOINT_INTERVAL_SECONDS", cls.checkpoint_interval_seconds)
        max_events = _get_int("LEDGER_CHECKPOINT_MAX_EVENTS", cls.checkpoint_max_events)
        tsa_timeout = _get_float("LEDGER_TSA_TIMEOUT_SECONDS", cls.tsa_timeout_seconds)
        anchor_retry = _get_float("LEDGER_ANCHOR_RETRY_SECONDS", cls.anchor_retry_seconds)

        # Clamp
        if policy_timeout <= 0:
            policy_timeout = cls.policy_timeout_seconds
        if approval_timeout <= 0:
            approval_timeout = cls.approval_timeout_seconds
        if interval < 1:
            interval = 1.0
        if max_events < 1:
            max_events = 1
        if tsa_timeout <= 0:
            tsa_timeout = cls.tsa_timeout_seconds
        if anchor_retry < 1:
            anchor_retry = 1.0

        return cls(
            db_path=_get_str("LEDGER_DB_PATH", cls.db_path),
            stream_scope=scope,
            policy_mode=mode,
            policy_url=policy_url,
            policy_timeout_seconds=policy_timeout,
            policy_bundle_file=_get_str("LEDGER_POLICY_BUNDLE_FILE") or None,
            fail_safe_decision=parse_fail_safe_decision(_get_str("LEDGER_FAIL_SAFE_DECISION", "deny")),
            approval_timeout_seconds=approval_timeout,
            approval_webhook_url=_get_str("LEDGER_APPROVAL_WEBHOOK_URL") or None,
            checkpoint_interval_seconds=interval,
            checkpoint_max_events=max_events,
            tsa_url=_get_str("LEDGER_TSA_URL") or None,
            tsa_timeout_seconds=tsa_timeout,
            anchor_retry_seconds=anchor_retry,
            export_dir=_get_str("LEDGER_EXPORT_DIR", cls.export_dir),
            metrics_enabled=_get_bool("LEDGER_METRICS_ENABLED", True),
        )
