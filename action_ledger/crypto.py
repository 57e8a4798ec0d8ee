"""
Canonical encoding, hashing helpers and Ed25519 keys.

Two components that recompute a link hash must feed byte-identical input to
SHA-256, so everything hashed or signed by the ledger goes through
``canonical_json_dumps``:

- keys sorted, no insignificant whitespace, UTF-8 (``ensure_ascii=False``)
- strings and dict keys normalized to NFC
- integral floats collapse to integers (``1.0`` and ``1`` encode the same),
  ``-0.0`` becomes ``0``, NaN/Infinity are rejected
- bounded nesting depth and integer size

Signing keys are Ed25519 (``cryptography``). The ledger holds a private key
for event and manifest signatures; verifiers only ever need public keys.
"""

from __future__ import annotations

import base64
import hashlib
import json
import math
import os
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .errors import (
    ValidationError,
    LEDGER_E_CANON_DEPTH,
    LEDGER_E_CANON_INT_TOO_LARGE,
    LEDGER_E_CANON_KEY_COLLISION,
    LEDGER_E_CANON_KEY_TYPE,
    LEDGER_E_CANON_NON_JSON,
    LEDGER_E_CANON_NONFINITE,
)


GENESIS_HASH = "0" * 64

_CANON_MAX_DEPTH = 64
_CANON_MAX_INT_DIGITS = 128
_CANON_UNICODE_NORM = "NFC"
# Floats that are exact integers within this bound are emitted as integers.
_CANON_EXACT_INT_FLOAT = 2 ** 53


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _safe_hash_encode(components: List[str]) -> bytes:
    """
    Length-prefixed encoding for hash inputs.
    Prevents delimiter collision attacks.
    """
    result = b""
    for component in components:
        encoded = str(component).encode("utf-8")
        result += len(encoded).to_bytes(8, byteorder="big") + encoded
    return result


def _path_key(k: str) -> str:
    ks = k.replace("\\", "\\\\").replace("'", "\\'")
    return f"['{ks}']"


def _canonical_number(value: float, path: str) -> Any:
    if not math.isfinite(value):
        raise ValidationError("non-finite float", code=LEDGER_E_CANON_NONFINITE, path=path)
    if value == 0.0:
        return 0
    if value.is_integer() and abs(value) <= _CANON_EXACT_INT_FLOAT:
        return int(value)
    return value


def _canonicalize(obj: Any, *, _path: str = "$", _depth: int = 0) -> Any:
    if _depth > _CANON_MAX_DEPTH:
        raise ValidationError(
            "max nesting depth exceeded", code=LEDGER_E_CANON_DEPTH, path=_path, max_depth=_CANON_MAX_DEPTH
        )

    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize(_CANON_UNICODE_NORM, obj)
    if isinstance(obj, int):
        digits = len(str(abs(obj)))
        if digits > _CANON_MAX_INT_DIGITS:
            raise ValidationError(
                "integer has too many digits", code=LEDGER_E_CANON_INT_TOO_LARGE, path=_path, digits=digits
            )
        return obj
    if isinstance(obj, float):
        return _canonical_number(obj, _path)

    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise ValidationError(
                    "dict key must be str", code=LEDGER_E_CANON_KEY_TYPE, path=_path, got=type(k).__name__
                )
            nk = unicodedata.normalize(_CANON_UNICODE_NORM, k)
            if nk in out:
                raise ValidationError(
                    "duplicate dict key after unicode normalization", code=LEDGER_E_CANON_KEY_COLLISION, path=_path
                )
            out[nk] = _canonicalize(v, _path=_path + _path_key(nk), _depth=_depth + 1)
        return out

    if isinstance(obj, (list, tuple)):
        return [_canonicalize(v, _path=f"{_path}[{i}]", _depth=_depth + 1) for i, v in enumerate(obj)]

    raise ValidationError(
        "non-JSON-serializable type", code=LEDGER_E_CANON_NON_JSON, path=_path, got=type(obj).__name__
    )


def canonical_json_dumps(obj: Any) -> str:
    """Canonical JSON text for hashing and signing (strict, see module docstring)."""
    normalized = _canonicalize(obj)
    # allow_nan=False keeps the output strict JSON that other verifiers can re-encode.
    return json.dumps(normalized, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def canonical_bytes(obj: Any) -> bytes:
    return canonical_json_dumps(obj).encode("utf-8")


def hash_canonical(obj: Any) -> str:
    """sha256 hex of the canonical JSON encoding of ``obj``."""
    return _sha256_hex(canonical_bytes(obj))


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"), validate=True)


@runtime_checkable
class Signer(Protocol):
    """Anything that can produce Ed25519 signatures under a key id."""

    key_id: str

    @property
    def public_key_hex(self) -> str: ...

    def sign(self, message: bytes) -> bytes: ...


@dataclass
class Ed25519KeyPair:
    """
    Ed25519 key pair for signing and verification.

    Verification-only instances (no private key) are created with
    ``from_public_key`` and are what exported packs carry.
    """
    key_id: str
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls, key_id: str) -> "Ed25519KeyPair":
        return cls._from_private(Ed25519PrivateKey.generate(), key_id)

    @classmethod
    def from_seed(cls, seed: bytes, key_id: str) -> "Ed25519KeyPair":
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls._from_private(Ed25519PrivateKey.from_private_bytes(seed), key_id)

    @classmethod
    def from_public_key(cls, key_id: str, public_key_hex: str) -> "Ed25519KeyPair":
        return cls(key_id=key_id, public_key_bytes=bytes.fromhex(public_key_hex))

    @classmethod
    def _from_private(cls, private_key: Ed25519PrivateKey, key_id: str) -> "Ed25519KeyPair":
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(key_id=key_id, public_key_bytes=public_bytes, private_key_bytes=private_bytes)

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    def can_sign(self) -> bool:
        return self.private_key_bytes is not None

    def sign(self, message: bytes) -> bytes:
        if not self.can_sign():
            raise ValueError(f"Key {self.key_id} has no private key - cannot sign")
        return Ed25519PrivateKey.from_private_bytes(self.private_key_bytes).sign(message)

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            Ed25519PublicKey.from_public_bytes(self.public_key_bytes).verify(signature, message)
            return True
        except (InvalidSignature, ValueError):
            return False


@dataclass
class TrustedKeys:
    """Public keys trusted for signature verification, by key id."""

    keys: Dict[str, Ed25519KeyPair] = field(default_factory=dict)

    def add_public_key(self, key_id: str, public_key_hex: str) -> None:
        self.keys[key_id] = Ed25519KeyPair.from_public_key(key_id, public_key_hex)

    def verify_signature(self, key_id: str, message: bytes, signature: bytes) -> bool:
        key = self.keys.get(key_id)
        if key is None:
            return False
        return key.verify(message, signature)

    def as_config(self) -> Dict[str, str]:
        return {kid: k.public_key_hex for kid, k in sorted(self.keys.items())}

    def __contains__(self, key_id: object) -> bool:
        return key_id in self.keys

    @classmethod
    def from_config(cls, config: Dict[str, str]) -> "TrustedKeys":
        """Build from ``{"key_id": "<public key hex>", ...}``."""
        store = cls()
        for kid, pub_hex in (config or {}).items():
            store.add_public_key(str(kid), str(pub_hex))
        return store

    @classmethod
    def from_signer(cls, signer: Signer) -> "TrustedKeys":
        return cls.from_config({signer.key_id: signer.public_key_hex})


def create_key_pair(key_id: str) -> Ed25519KeyPair:
    return Ed25519KeyPair.generate(key_id)


def load_signing_key_from_env(
    *,
    seed_env: str = "LEDGER_SIGNING_KEY_SEED_HEX",
    key_id_env: str = "LEDGER_SIGNING_KEY_ID",
    allow_ephemeral_env: str = "LEDGER_ALLOW_EPHEMERAL_SIGNING_KEYS",
) -> Ed25519KeyPair:
    """Load the ledger signing key from a 32-byte hex seed.

    Without a configured seed an ephemeral key is generated only when
    explicitly allowed (demos/tests); otherwise this fails closed.
    """
    key_id = (os.getenv(key_id_env, "") or "ledger").strip() or "ledger"
    seed_hex = (os.getenv(seed_env, "") or "").strip()
    if seed_hex:
        try:
            seed = bytes.fromhex(seed_hex)
        except ValueError as e:
            raise RuntimeError(f"{seed_env} must be hex") from e
        return Ed25519KeyPair.from_seed(seed, key_id)

    allow = (os.getenv(allow_ephemeral_env, "") or "").strip().lower() in ("1", "true", "yes")
    if not allow:
        raise RuntimeError(
            f"No signing key configured. Set {seed_env} (32-byte hex seed), or for demos/tests "
            f"set {allow_ephemeral_env}=1 to generate an ephemeral key."
        )
    return Ed25519KeyPair.generate(key_id)
