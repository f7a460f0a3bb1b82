"""Signing key store and Ed25519 signer for self-custodied parties.

The store is read-only from the settlement core's point of view: keys are
registered by whatever onboards external parties. Key material never
reaches a logger.
"""

import base64
import binascii
import hashlib
from typing import Optional, Protocol, runtime_checkable

import structlog
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from meridian.core.retry import ValidationError
from meridian.domain.allocation import SigningKey

log = structlog.get_logger()

ED25519_SEED_BYTES = 32


@runtime_checkable
class KeyStore(Protocol):
    """Lookup of stored signing keys by party id."""

    async def has_key(self, party_id: str) -> bool:
        ...

    async def get_key(self, party_id: str) -> Optional[SigningKey]:
        ...


class InMemoryKeyStore:
    """Process-local key store."""

    def __init__(self) -> None:
        self._keys: dict[str, SigningKey] = {}

    def put(self, key: SigningKey) -> None:
        self._keys[key.party_id] = key
        log.info("signing_key_stored", party=key.party_id, fingerprint=key.fingerprint)

    def remove(self, party_id: str) -> None:
        self._keys.pop(party_id, None)

    async def has_key(self, party_id: str) -> bool:
        return party_id in self._keys

    async def get_key(self, party_id: str) -> Optional[SigningKey]:
        return self._keys.get(party_id)

    def __len__(self) -> int:
        return len(self._keys)


def load_private_key(key: SigningKey) -> Ed25519PrivateKey:
    """Decode stored material (32-byte seed or 64-byte seed+public key).

    Raises:
        ValidationError: If the material is not valid base64 of either length.
    """
    try:
        raw = base64.b64decode(key.private_key_material, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"signing key for {key.party_id} is not base64") from e
    if len(raw) not in (ED25519_SEED_BYTES, 2 * ED25519_SEED_BYTES):
        raise ValidationError(
            f"signing key for {key.party_id} has {len(raw)} bytes, expected 32 or 64"
        )
    return Ed25519PrivateKey.from_private_bytes(raw[:ED25519_SEED_BYTES])


def public_key_bytes(key: SigningKey) -> bytes:
    return load_private_key(key).public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)


def fingerprint_of(public_key: bytes) -> str:
    """Fingerprint used as ``signedBy``: multihash-style SHA-256 of the public key.

    The ledger's own fingerprint should be stored with the key when it is
    known; this is only a fallback for keys registered without one.
    """
    digest = hashlib.sha256(b"\x00\x00\x00\x0c" + public_key).hexdigest()
    return "1220" + digest


def generate_signing_key(party_id: str) -> SigningKey:
    """Fresh Ed25519 key for a party (onboarding and tests)."""
    private = Ed25519PrivateKey.generate()
    seed = private.private_bytes_raw()
    public = private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return SigningKey(
        party_id=party_id,
        private_key_material=base64.b64encode(seed).decode(),
        fingerprint=fingerprint_of(public),
    )


class Ed25519Signer:
    """Signs prepared-transaction hashes with stored keys."""

    def sign(self, key: SigningKey, message: bytes) -> str:
        """Base64 Ed25519 signature over ``message``."""
        signature = load_private_key(key).sign(message)
        return base64.b64encode(signature).decode()
