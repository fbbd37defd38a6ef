# facts/signature.py
"""
ECDSA recovery-byte normalization for x402 payment proofs.

Wallets disagree on how the trailing v byte of a 65-byte r|s|v signature is
encoded:
  - parity:          0 or 1
  - legacy:          27 or 28
  - EIP-155:         chain_id * 2 + 35 + parity

The facilitator only accepts the legacy form, so inbound proofs are rewritten
to 27/28 before being forwarded. r and s are never touched.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Optional

from facts.errors import InvalidPaymentHeader

log = logging.getLogger("facts.signature")

V_OFFSET = 130  # "0x" + 64 hex r + 64 hex s


def normalize_signature_v(signature: str, chain_id: int) -> str:
    """Return the signature with its recovery byte in legacy 27/28 form."""
    v_hex = signature[V_OFFSET:]
    v = int(v_hex, 16)

    if v in (0, 1):
        normalized = v + 27
    elif v in (27, 28):
        normalized = v
    elif v >= 35:
        parity = (v - 35 - chain_id * 2) % 2
        normalized = parity + 27
    else:
        log.warning(f"Unexpected signature v value {v}, passing through")
        normalized = v

    return signature[:V_OFFSET] + format(normalized, "02x")


@dataclass(frozen=True)
class PaymentEnvelope:
    """Decoded X-PAYMENT header: base64 of a JSON x402 PaymentPayload."""

    x402_version: Optional[int] = None
    scheme: Optional[str] = None
    network: Optional[str] = None
    payload: dict = field(default_factory=dict)
    extra: dict = field(default_factory=dict)

    @classmethod
    def decode(cls, header: str) -> "PaymentEnvelope":
        try:
            raw = json.loads(base64.b64decode(header, validate=True))
        except (binascii.Error, ValueError) as e:
            raise InvalidPaymentHeader(f"X-PAYMENT is not base64 JSON: {e}")
        if not isinstance(raw, dict):
            raise InvalidPaymentHeader("X-PAYMENT must decode to a JSON object")

        payload = raw.get("payload") or {}
        if not isinstance(payload, dict):
            raise InvalidPaymentHeader("X-PAYMENT payload must be an object")
        signature = payload.get("signature")
        if signature is not None and not isinstance(signature, str):
            raise InvalidPaymentHeader("X-PAYMENT payload.signature must be a hex string")

        known = ("x402Version", "scheme", "network", "payload")
        return cls(
            x402_version=raw.get("x402Version"),
            scheme=raw.get("scheme"),
            network=raw.get("network"),
            payload=payload,
            extra={k: v for k, v in raw.items() if k not in known},
        )

    @property
    def signature(self) -> Optional[str]:
        return self.payload.get("signature")

    @property
    def payer(self) -> Optional[str]:
        authorization = self.payload.get("authorization")
        if isinstance(authorization, dict):
            return authorization.get("from")
        return None

    def normalized(self, chain_id: int) -> "PaymentEnvelope":
        sig = self.signature
        if not sig or len(sig) <= V_OFFSET:
            return self
        payload = dict(self.payload)
        try:
            payload["signature"] = normalize_signature_v(sig, chain_id)
        except ValueError:
            raise InvalidPaymentHeader("X-PAYMENT signature has a non-hex recovery byte")
        return replace(self, payload=payload)

    def to_dict(self) -> dict:
        out = dict(self.extra)
        if self.x402_version is not None:
            out["x402Version"] = self.x402_version
        if self.scheme is not None:
            out["scheme"] = self.scheme
        if self.network is not None:
            out["network"] = self.network
        out["payload"] = self.payload
        return out

    def encode(self) -> str:
        return base64.b64encode(json.dumps(self.to_dict()).encode()).decode()


def normalize_payment_header(header: str, chain_id: int) -> str:
    """Decode an X-PAYMENT header, normalize its signature, re-encode."""
    return PaymentEnvelope.decode(header).normalized(chain_id).encode()
