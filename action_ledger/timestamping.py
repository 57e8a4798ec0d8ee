"""External timestamping for checkpoint roots and evidence manifests.

A timestamp authority (TSA) takes a sha256 digest and returns a receipt that
binds the digest to a time. Receipts are plain JSON so they can ship inside
evidence packs and be checked offline with ``verify_receipt``.

Receipt signature payload (both backends)::

    len-prefixed("LEDGER_TSA_V1", digest, timestamp_utc)

Backends:
- ``LocalTimestampAuthority`` signs receipts with a local Ed25519 key.
- ``HttpTimestampAuthority`` POSTs ``{"digest": ..., "hash_alg": "sha256"}``
  with ``Idempotency-Key: <digest>``; retries 408/429/5xx and network errors
  with exponential backoff; HTTP 409 means "already stamped" and its body is
  used as the receipt.

A TSA that cannot produce a receipt raises ``AnchoringUnavailable``.
"""

from __future__ import annotations

import abc
import binascii
import json
import logging
import time
import urllib.error
import urllib.request
from typing import Any, Dict, Optional

from .crypto import Signer, TrustedKeys, _now_utc, _safe_hash_encode, b64decode, b64encode
from .errors import AnchoringUnavailable

logger = logging.getLogger("action_ledger")

RECEIPT_VERSION = "LEDGER_TSA_V1"


def receipt_payload(digest: str, timestamp_utc: str) -> bytes:
    return _safe_hash_encode([RECEIPT_VERSION, digest, timestamp_utc])


class TimestampAuthority(abc.ABC):
    @abc.abstractmethod
    def timestamp(self, digest: str) -> Dict[str, Any]:
        """Return a receipt for ``digest`` or raise ``AnchoringUnavailable``."""
        raise NotImplementedError


class LocalTimestampAuthority(TimestampAuthority):
    def __init__(self, signer: Signer):
        self.signer = signer

    def timestamp(self, digest: str) -> Dict[str, Any]:
        ts = _now_utc().isoformat()
        sig = self.signer.sign(receipt_payload(digest, ts))
        return {
            "version": RECEIPT_VERSION,
            "authority": "local",
            "digest": digest,
            "timestamp_utc": ts,
            "key_id": self.signer.key_id,
            "signature": b64encode(sig),
        }


class HttpTimestampAuthority(TimestampAuthority):
    def __init__(self, url: str, *, timeout_s: float = 5.0, max_attempts: int = 3, backoff_s: float = 0.25):
        self.url = url
        self.timeout_s = float(timeout_s)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_s = float(backoff_s)

    @staticmethod
    def _is_retryable_status(status: int) -> bool:
        return status in (408, 429) or (500 <= status <= 599)

    def _receipt(self, digest: str, body: bytes) -> Dict[str, Any]:
        try:
            response = json.loads(body.decode("utf-8")) if body else {}
        except ValueError as e:
            raise AnchoringUnavailable("timestamp authority returned invalid JSON", url=self.url) from e
        if not isinstance(response, dict):
            raise AnchoringUnavailable("timestamp authority returned a non-object receipt", url=self.url)
        if response.get("digest", digest) != digest:
            raise AnchoringUnavailable("timestamp authority stamped a different digest", url=self.url)
        return {
            "version": RECEIPT_VERSION,
            "authority": "http",
            "url": self.url,
            "digest": digest,
            "timestamp_utc": str(response.get("timestamp_utc") or ""),
            "key_id": response.get("key_id"),
            "signature": response.get("signature"),
            "response": response,
        }

    def timestamp(self, digest: str) -> Dict[str, Any]:
        payload = json.dumps({"digest": digest, "hash_alg": "sha256"}, sort_keys=True).encode("utf-8")
        headers = {"Content-Type": "application/json", "Idempotency-Key": digest}
        last_err: Optional[str] = None

        for attempt in range(1, self.max_attempts + 1):
            req = urllib.request.Request(self.url, data=payload, headers=headers, method="POST")
            try:
                with urllib.request.urlopen(req, timeout=self.timeout_s) as resp:
                    return self._receipt(digest, resp.read())
            except urllib.error.HTTPError as e:
                status = int(e.code or 0)
                if status == 409:
                    return self._receipt(digest, e.read())
                last_err = f"HTTP {status}"
                if not self._is_retryable_status(status):
                    raise AnchoringUnavailable(
                        "timestamp authority rejected request", url=self.url, http_status=status
                    ) from e
            except (urllib.error.URLError, OSError) as e:
                last_err = str(e)
            if attempt < self.max_attempts:
                logger.warning("timestamp attempt %d/%d failed: %s", attempt, self.max_attempts, last_err)
                time.sleep(self.backoff_s * (2 ** (attempt - 1)))

        raise AnchoringUnavailable(
            "timestamp authority unreachable", url=self.url, attempts=self.max_attempts, error=last_err
        )


def verify_receipt(digest: str, receipt: Dict[str, Any], trusted_keys: Optional[TrustedKeys] = None) -> bool:
    """Offline receipt check: digest binding, plus the signature when one is present.

    Local receipts must always carry a signature by a trusted key.
    """
    if not isinstance(receipt, dict) or receipt.get("digest") != digest:
        return False
    sig_b64, key_id = receipt.get("signature"), receipt.get("key_id")
    if not sig_b64:
        return receipt.get("authority") == "http"
    if trusted_keys is None or not key_id:
        return False
    try:
        sig = b64decode(str(sig_b64))
    except (ValueError, binascii.Error):
        return False
    return trusted_keys.verify_signature(str(key_id), receipt_payload(digest, str(receipt.get("timestamp_utc", ""))), sig)


def build_timestamp_authority(settings: Any, signer: Signer) -> TimestampAuthority:
    if settings.tsa_url:
        return HttpTimestampAuthority(settings.tsa_url, timeout_s=settings.tsa_timeout_seconds)
    return LocalTimestampAuthority(signer)
