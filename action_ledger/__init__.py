"""Action Ledger package.

A tamper-evident record of what automated actors and operators did:

- Append-only, hash-chained event streams (one chain per application, or per
  application session) stored in SQLite
- A synchronous policy gate with human-approval escalation
- Periodic Merkle checkpoints anchored with a timestamp authority
- Signed, checksummed evidence packs that verify offline

Convenience imports
-------------------
Importing the package has no side effects. The main entry points are
available lazily at the top level:

    from action_ledger import HashChainStore, PolicyGate, EvidencePackager

    from action_ledger import create_app, verify_evidence_pack
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Version from a repo-local ``pyproject.toml`` (source checkouts and tests)."""
    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "Event",
    "StreamKey",
    "SequenceRange",
    "Decision",
    "PolicyDecision",
    "HashChainStore",
    "EventIngestor",
    "PolicyGate",
    "ApprovalBroker",
    "PolicyBundle",
    "PolicyBundleRegistry",
    "RuleSetEvaluator",
    "HttpPolicyEvaluator",
    "CheckpointService",
    "EvidencePackager",
    "verify_evidence_pack",
    "LedgerService",
    "LedgerSettings",
    "create_app",
]

# name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "Event": ("action_ledger.models", "Event"),
    "StreamKey": ("action_ledger.models", "StreamKey"),
    "SequenceRange": ("action_ledger.models", "SequenceRange"),
    "Decision": ("action_ledger.models", "Decision"),
    "PolicyDecision": ("action_ledger.models", "PolicyDecision"),
    "HashChainStore": ("action_ledger.store", "HashChainStore"),
    "EventIngestor": ("action_ledger.ingest", "EventIngestor"),
    "PolicyGate": ("action_ledger.gate", "PolicyGate"),
    "ApprovalBroker": ("action_ledger.approvals", "ApprovalBroker"),
    "PolicyBundle": ("action_ledger.policy", "PolicyBundle"),
    "PolicyBundleRegistry": ("action_ledger.policy", "PolicyBundleRegistry"),
    "RuleSetEvaluator": ("action_ledger.policy", "RuleSetEvaluator"),
    "HttpPolicyEvaluator": ("action_ledger.policy", "HttpPolicyEvaluator"),
    "CheckpointService": ("action_ledger.checkpoints", "CheckpointService"),
    "EvidencePackager": ("action_ledger.evidence", "EvidencePackager"),
    "verify_evidence_pack": ("action_ledger.evidence", "verify_evidence_pack"),
    "LedgerService": ("action_ledger.service", "LedgerService"),
    "LedgerSettings": ("action_ledger.config", "LedgerSettings"),
    "create_app": ("action_ledger.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        value = getattr(import_module(module_name), attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'action_ledger' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
