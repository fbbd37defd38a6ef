# facts/signing.py
"""
Fact bundle signing.

Bundles are serialized to compact, insertion-ordered JSON and signed as an
Ethereum personal message (EIP-191) with a secp256k1 key, so anyone can
recover the signer address with standard wallet tooling.

No FACT_BUNDLE_PRIVATE_KEY means bundles go out unsigned; that is a valid
state and callers simply omit signature/signer.
"""

import json
import logging
from dataclasses import dataclass
from typing import Optional

from coincurve import PrivateKey, PublicKey
from eth_utils import keccak, to_checksum_address

from facts.config import AVALANCHE_FUJI_CHAIN_ID
from facts.signature import normalize_signature_v

log = logging.getLogger("facts.signing")

SIGNATURE_FIELDS = ("signature", "signer")


def canonical_json(payload) -> str:
    """Compact JSON in insertion order; identical content gives identical bytes."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def eip191_digest(message: bytes) -> bytes:
    prefix = f"\x19Ethereum Signed Message:\n{len(message)}".encode()
    return keccak(prefix + message)


def address_of(public_key: PublicKey) -> str:
    return to_checksum_address(keccak(public_key.format(compressed=False)[1:])[-20:])


@dataclass(frozen=True)
class BundleSignature:
    signature: str
    signer: str


class BundleSigner:
    def __init__(self, private_key: Optional[PrivateKey] = None):
        self._key = private_key
        self.address = address_of(private_key.public_key) if private_key else None

    @classmethod
    def from_key(cls, raw_key: Optional[str]) -> "BundleSigner":
        """Build from a hex private key, with or without 0x. Empty means unsigned."""
        raw_key = (raw_key or "").strip()
        if not raw_key:
            return cls(None)
        if raw_key.startswith("0x"):
            raw_key = raw_key[2:]
        return cls(PrivateKey(bytes.fromhex(raw_key)))

    @property
    def enabled(self) -> bool:
        return self._key is not None

    def sign(self, payload) -> Optional[BundleSignature]:
        if self._key is None:
            return None
        message = canonical_json(payload).encode()
        sig = self._key.sign_recoverable(eip191_digest(message), hasher=None)
        signature = "0x" + sig[:64].hex() + format(sig[64] + 27, "02x")
        return BundleSignature(signature=signature, signer=self.address)


def recover_signer(payload, signature: str) -> str:
    """Address that produced signature over payload's canonical JSON."""
    signature = normalize_signature_v(signature, AVALANCHE_FUJI_CHAIN_ID)
    raw = bytes.fromhex(signature[2:])
    if len(raw) != 65:
        raise ValueError(f"signature must be 65 bytes, got {len(raw)}")
    recoverable = raw[:64] + bytes([raw[64] - 27])
    digest = eip191_digest(canonical_json(payload).encode())
    public_key = PublicKey.from_signature_and_message(recoverable, digest, hasher=None)
    return address_of(public_key)


def verify_bundle(bundle: dict) -> bool:
    """Check a signed response bundle against its own signer field."""
    signature = bundle.get("signature")
    signer = bundle.get("signer")
    if not signature or not signer:
        return False
    payload = {k: v for k, v in bundle.items() if k not in SIGNATURE_FIELDS}
    try:
        recovered = recover_signer(payload, signature)
    except Exception as e:
        log.warning(f"Bundle signature unusable: {e}")
        return False
    return recovered.lower() == signer.lower()
