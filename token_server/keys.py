"""
RSA signing keys for JWTs, with rotation.
One key is active for new signatures; previously active keys stay published in JWKS so
tokens they signed still verify. Key material is loaded from file or generated and persisted.
"""
import base64
import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, generate_private_key

from token_server.errors import KeyUnavailable

logger = logging.getLogger(__name__)

_KEY_BITS = 2048
ALGORITHM = "RS256"


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _generate_key() -> RSAPrivateKey:
    return generate_private_key(65537, _KEY_BITS, default_backend())


def _serialize_private(key: RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _deserialize_private(pem: bytes) -> RSAPrivateKey:
    return serialization.load_pem_private_key(pem, password=None, backend=default_backend())


def key_thumbprint(private_key: RSAPrivateKey) -> str:
    """RFC 7638 JWK thumbprint of the public key; used as kid so rotated keys never collide."""
    numbers = private_key.public_key().public_numbers()
    canonical = json.dumps(
        {"e": _b64url_uint(numbers.e), "kty": "RSA", "n": _b64url_uint(numbers.n)},
        separators=(",", ":"),
        sort_keys=True,
    )
    digest = hashlib.sha256(canonical.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


@dataclass(frozen=True)
class SigningKey:
    key_id: str
    private_key: RSAPrivateKey
    not_before: datetime
    algorithm: str = ALGORITHM
    not_after: datetime | None = None

    def is_valid_at(self, now: datetime) -> bool:
        if now < self.not_before:
            return False
        return self.not_after is None or now < self.not_after

    def public_key(self):
        return self.private_key.public_key()

    def to_jwk(self) -> dict:
        numbers = self.public_key().public_numbers()
        return {
            "kty": "RSA",
            "kid": self.key_id,
            "alg": self.algorithm,
            "use": "sig",
            "n": _b64url_uint(numbers.n),
            "e": _b64url_uint(numbers.e),
        }


def signing_key_from_private(
    private_key: RSAPrivateKey,
    *,
    not_before: datetime | None = None,
    not_after: datetime | None = None,
) -> SigningKey:
    return SigningKey(
        key_id=key_thumbprint(private_key),
        private_key=private_key,
        not_before=not_before or datetime.now(timezone.utc),
        not_after=not_after,
    )


def generate_signing_key(**kwargs) -> SigningKey:
    return signing_key_from_private(_generate_key(), **kwargs)


@dataclass(frozen=True)
class _KeySet:
    active_kid: str | None
    keys: Mapping[str, SigningKey]


class KeyProvider:
    """
    Holds signing keys. State is an immutable _KeySet replaced as a whole on rotation,
    so concurrent readers see either the old set or the new one, never a mix.
    """

    def __init__(self, keys: Iterable[SigningKey] = (), active_kid: str | None = None):
        keys = list(keys)
        by_kid = {k.key_id: k for k in keys}
        if active_kid is None and keys:
            active_kid = keys[0].key_id
        if active_kid is not None and active_kid not in by_kid:
            raise ValueError(f"active key {active_kid!r} is not among the provided keys")
        self._lock = threading.Lock()
        self._keyset = _KeySet(active_kid, MappingProxyType(by_kid))

    def active_key(self, now: datetime | None = None) -> SigningKey:
        """Return the key for new signatures. Raises KeyUnavailable if none is usable."""
        keyset = self._keyset
        if keyset.active_kid is None:
            raise KeyUnavailable("No signing key configured")
        key = keyset.keys[keyset.active_kid]
        if not key.is_valid_at(now or datetime.now(timezone.utc)):
            raise KeyUnavailable(f"Active signing key {key.key_id} is outside its validity window")
        return key

    def key_for(self, kid: str) -> SigningKey | None:
        return self._keyset.keys.get(kid)

    def public_key_for(self, kid: str):
        """Public key for the given kid, or None if unknown. Expired keys still resolve."""
        key = self.key_for(kid)
        return key.public_key() if key is not None else None

    def rotate(self, new_key: SigningKey) -> None:
        """Make new_key active; previous keys remain available for verification."""
        with self._lock:
            keys = dict(self._keyset.keys)
            keys[new_key.key_id] = new_key
            self._keyset = _KeySet(new_key.key_id, MappingProxyType(keys))
        logger.info("Rotated signing key; active kid=%s (%d keys published)", new_key.key_id, len(keys))

    def jwks(self) -> dict:
        """JWKS with every known key (active first) so tokens signed with any of them verify."""
        keyset = self._keyset
        ordered = sorted(keyset.keys.values(), key=lambda k: k.key_id != keyset.active_kid)
        return {"keys": [k.to_jwk() for k in ordered]}


def load_or_create_signing_key(path: str | None) -> SigningKey:
    """Load RSA private key from path, or generate and save."""
    if not path:
        path = ".auth_signing_key.pem"
    p = Path(path)
    if p.exists():
        try:
            return signing_key_from_private(_deserialize_private(p.read_bytes()))
        except (ValueError, TypeError) as e:
            logger.warning("Failed to load signing key from %s: %s; generating new key", path, e)
    key = _generate_key()
    try:
        p.write_bytes(_serialize_private(key))
        logger.info("Generated and saved signing key to %s", path)
    except OSError as e:
        logger.warning("Could not save signing key to %s: %s", path, e)
    return signing_key_from_private(key)


def _load_previous_key(path: str) -> SigningKey | None:
    """Load optional previous key (for rotation). Returns None if missing/invalid."""
    p = Path(path)
    if not p.exists():
        return None
    try:
        return signing_key_from_private(_deserialize_private(p.read_bytes()))
    except (ValueError, TypeError) as e:
        logger.warning("Failed to load previous signing key from %s: %s", path, e)
        return None


def load_key_provider(path: str | None, previous_path: str | None = None) -> KeyProvider:
    current = load_or_create_signing_key(path)
    keys = [current]
    if previous_path:
        prev = _load_previous_key(previous_path)
        if prev and prev.key_id != current.key_id:
            keys.append(prev)
            logger.info("Loaded previous signing key (kid=%s) for rotation", prev.key_id)
    return KeyProvider(keys, active_kid=current.key_id)
