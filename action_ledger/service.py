"""Wiring for a running ledger: one store, gate, broker, checkpointer and packager.

``LedgerService.from_settings`` builds every component from ``LedgerSettings``;
``start``/``stop`` manage the background workers (the event ingestor that
records gate decisions, approval timers restored from the store, the
checkpoint scheduler and the anchor retrier).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .approvals import ApprovalBroker, HttpWebhookNotifier, LoggingNotifier, Notifier
from .checkpoints import AnchorRetrier, CheckpointScheduler, CheckpointService
from .config import LedgerSettings
from .crypto import Signer, TrustedKeys, load_signing_key_from_env
from .db import CircuitBreakerConfig, Database, DbCircuitBreaker
from .evidence import EvidencePackager
from .gate import PolicyGate
from .ingest import EventIngestor
from .models import Decision
from .policy import PolicyBundle, PolicyBundleRegistry, PolicyEvaluator, build_evaluator
from .store import HashChainStore
from .timestamping import TimestampAuthority, build_timestamp_authority

logger = logging.getLogger("action_ledger")

# Used when no bundle file is configured: nothing is allowed until a real bundle is loaded.
BUILTIN_BUNDLE = PolicyBundle(policy_id="builtin", version="builtin-deny-1", default_decision=Decision.DENY)


def load_registry(settings: LedgerSettings) -> PolicyBundleRegistry:
    registry = PolicyBundleRegistry()
    if settings.policy_bundle_file:
        registry.register(PolicyBundle.load_file(settings.policy_bundle_file))
    else:
        if settings.policy_mode == "rules":
            logger.warning("no LEDGER_POLICY_BUNDLE_FILE configured; gated actions default to deny")
        registry.register(BUILTIN_BUNDLE)
    return registry


@dataclass
class LedgerService:
    settings: LedgerSettings
    signer: Signer
    store: HashChainStore
    registry: PolicyBundleRegistry
    evaluator: PolicyEvaluator
    broker: ApprovalBroker
    ingestor: EventIngestor
    gate: PolicyGate
    tsa: TimestampAuthority
    checkpoints: CheckpointService
    packager: EvidencePackager
    scheduler: CheckpointScheduler
    retrier: AnchorRetrier

    @classmethod
    def from_settings(
        cls,
        settings: Optional[LedgerSettings] = None,
        *,
        signer: Optional[Signer] = None,
        notifier: Optional[Notifier] = None,
        tsa: Optional[TimestampAuthority] = None,
        evaluator: Optional[PolicyEvaluator] = None,
    ) -> "LedgerService":
        settings = settings or LedgerSettings.from_env()
        signer = signer or load_signing_key_from_env()
        db = Database(settings.db_path, DbCircuitBreaker(CircuitBreakerConfig.from_env()))
        store = HashChainStore(db, signer=signer, stream_scope=settings.stream_scope)
        registry = load_registry(settings)
        evaluator = evaluator or build_evaluator(settings, registry)

        if notifier is None:
            notifier = HttpWebhookNotifier(settings.approval_webhook_url) if settings.approval_webhook_url else LoggingNotifier()
        broker = ApprovalBroker(
            store=store,
            notifier=notifier,
            default_timeout_seconds=settings.approval_timeout_seconds,
        )
        ingestor = EventIngestor(store)
        gate = PolicyGate(
            evaluator,
            broker,
            registry=registry,
            store=store,
            ingestor=ingestor,
            fail_safe=settings.fail_safe_decision,
        )
        tsa = tsa or build_timestamp_authority(settings, signer)
        checkpoints = CheckpointService(store, tsa, max_events=settings.checkpoint_max_events)
        return cls(
            settings=settings,
            signer=signer,
            store=store,
            registry=registry,
            evaluator=evaluator,
            broker=broker,
            ingestor=ingestor,
            gate=gate,
            tsa=tsa,
            checkpoints=checkpoints,
            packager=EvidencePackager(store, signer, tsa, registry=registry),
            scheduler=CheckpointScheduler(
                checkpoints,
                interval_seconds=settings.checkpoint_interval_seconds,
                max_events=settings.checkpoint_max_events,
            ),
            retrier=AnchorRetrier(checkpoints, retry_seconds=settings.anchor_retry_seconds),
        )

    @property
    def trusted_keys(self) -> TrustedKeys:
        return TrustedKeys.from_signer(self.signer)

    def start(self) -> None:
        self.ingestor.start()
        self.broker.restore_pending()
        self.scheduler.start()
        self.retrier.start()
        logger.info("ledger service started (db=%s scope=%s)", self.settings.db_path, self.settings.stream_scope)

    def stop(self) -> None:
        self.scheduler.stop()
        self.retrier.stop()
        self.broker.shutdown()
        self.ingestor.flush(timeout=5.0)
        self.ingestor.close()
