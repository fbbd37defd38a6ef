# facts/payment.py
"""
x402 payment settlement for fact requests.

Flow:
  1. Client → GET /api/facts/ICUI (no X-PAYMENT header)
  2. Server → 402 + PaymentRequirements (x402 body + PAYMENT-REQUIRED header)
  3. Client signs an EIP-3009 transferWithAuthorization (EIP-712)
  4. Client → GET /api/facts/ICUI + X-PAYMENT: <base64 PaymentPayload>
  5. Server normalizes the payload signature's v byte to 27/28
  6. Server → facilitator /verify + /settle
  7. Server → 200 + fact bundle + X-PAYMENT-RESPONSE header

One payment is settled per request. Nothing is retried here; a client whose
payment failed has to submit a new proof.
"""

import base64
import enum
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

import httpx

from facts.config import (
    AVALANCHE_FUJI_CHAIN_ID,
    USDC_FUJI_ADDRESS,
    X402_NETWORK,
    X402_SCHEME,
    X402_VERSION,
)
from facts.errors import (
    NO_STORE_HEADERS,
    InvalidPaymentHeader,
    Misconfigured,
    SettleRejected,
    SettleTransportError,
)
from facts.signature import PaymentEnvelope

log = logging.getLogger("facts.payment")

PAYMENT_HEADER = "x-payment"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
BYPASS_HEADER = "x-skip-payment"
FACILITATOR_TIMEOUT = 30


def find_header(headers, name: str) -> Optional[str]:
    """Case-insensitive header lookup over any mapping."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def b64_json(data) -> str:
    return base64.b64encode(json.dumps(data).encode()).decode()


# ══════════════════════════════════════════════════════════════════════════════
# Payment Requirements
# ══════════════════════════════════════════════════════════════════════════════

def build_payment_requirements(resource_url: str, method: str, pay_to: str, price: str,
                               network: str = X402_NETWORK, description: str = "") -> dict:
    """Standard x402 PaymentRequirements for one paid resource."""
    return {
        "scheme": X402_SCHEME,
        "network": network,
        "maxAmountRequired": str(price),
        "resource": resource_url,
        "description": description or "Verifiable financial fact bundle",
        "mimeType": "application/json",
        "payTo": pay_to,
        "maxTimeoutSeconds": 300,
        "asset": USDC_FUJI_ADDRESS,
        "outputSchema": {"input": {"type": "http", "method": method.upper()}},
        "extra": {
            "name": "USD Coin",
            "version": "2",
        },
    }


def build_402_response(requirements: dict, error: str = "X-PAYMENT header is required") -> tuple:
    """
    402 body plus a PAYMENT-REQUIRED header carrying the same requirements,
    base64-encoded.
    """
    body = {
        "x402Version": X402_VERSION,
        "accepts": [requirements],
        "error": error,
    }
    headers = {
        "PAYMENT-REQUIRED": b64_json({"x402Version": X402_VERSION, "accepts": [requirements]}),
    }
    return body, headers


# ══════════════════════════════════════════════════════════════════════════════
# Facilitator Client
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class SettleResult:
    status: int
    response_body: object = None
    response_headers: dict = field(default_factory=dict)
    payment_receipt: Optional[dict] = None


class FacilitatorClient:
    """Verify + settle against an x402 facilitator over HTTP."""

    def __init__(self, url: str, secret_key: str, server_wallet: str,
                 client: Optional[httpx.AsyncClient] = None):
        self.url = url.rstrip("/")
        self.server_wallet = server_wallet
        self._secret_key = secret_key
        self._client = client

    def _auth_headers(self) -> dict:
        return {
            "x-secret-key": self._secret_key,
            "x-server-wallet-address": self.server_wallet,
            "Content-Type": "application/json",
        }

    @asynccontextmanager
    async def _session(self):
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=FACILITATOR_TIMEOUT) as client:
                yield client

    @staticmethod
    def _error_result(resp: httpx.Response) -> SettleResult:
        try:
            body = resp.json()
        except ValueError:
            body = {"error": resp.text} if resp.text else {}
        return SettleResult(status=resp.status_code, response_body=body)

    async def settle_payment(self, resource_url: str, method: str, payment_data: dict,
                             pay_to: str, network: str, price: str) -> SettleResult:
        requirements = build_payment_requirements(resource_url, method, pay_to, price, network)
        request = {
            "x402Version": payment_data.get("x402Version", X402_VERSION),
            "paymentPayload": payment_data,
            "paymentRequirements": requirements,
        }

        async with self._session() as client:
            verify_resp = await client.post(f"{self.url}/verify", json=request, headers=self._auth_headers())
            if verify_resp.status_code != 200:
                log.warning(f"Facilitator verify failed ({verify_resp.status_code}): {verify_resp.text[:200]}")
                return self._error_result(verify_resp)
            verify_data = verify_resp.json()
            if not verify_data.get("isValid", False):
                reason = verify_data.get("invalidReason") or "invalid_payment"
                log.info(f"Payment invalid: {reason} payer={verify_data.get('payer')}")
                body, headers = build_402_response(requirements, error=reason)
                return SettleResult(status=402, response_body=body, response_headers=headers)

            settle_resp = await client.post(f"{self.url}/settle", json=request, headers=self._auth_headers())
            if settle_resp.status_code != 200:
                log.warning(f"Facilitator settle failed ({settle_resp.status_code}): {settle_resp.text[:200]}")
                return self._error_result(settle_resp)
            settle_data = settle_resp.json()
            if not settle_data.get("success", False):
                reason = settle_data.get("errorReason") or "settlement_failed"
                log.info(f"Settlement failed: {reason}")
                body, headers = build_402_response(requirements, error=reason)
                return SettleResult(status=402, response_body=body, response_headers=headers)

        log.info(f"Payment settled: tx={settle_data.get('transaction')} network={settle_data.get('network')}")
        return SettleResult(
            status=200,
            response_body=settle_data,
            response_headers={
                PAYMENT_RESPONSE_HEADER: b64_json(settle_data),
                "Access-Control-Expose-Headers": PAYMENT_RESPONSE_HEADER,
            },
            payment_receipt=settle_data,
        )


class FacilitatorProvider:
    """Single initialization point for the facilitator client.

    The client is built on first use and reused for the life of the process.
    Missing credentials raise Misconfigured on every call, before any I/O.
    """

    def __init__(self, settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._http = client
        self._facilitator = None

    def get(self) -> FacilitatorClient:
        if self._facilitator is not None:
            return self._facilitator

        missing = []
        if not self.settings.thirdweb_secret_key:
            missing.append("THIRDWEB_SECRET_KEY")
        if not self.settings.thirdweb_server_wallet:
            missing.append("THIRDWEB_SERVER_WALLET_ADDRESS")
        if missing:
            raise Misconfigured(missing)

        self._facilitator = FacilitatorClient(
            self.settings.facilitator_url,
            self.settings.thirdweb_secret_key,
            self.settings.thirdweb_server_wallet,
            client=self._http,
        )
        log.info(f"Facilitator ready: {self.settings.facilitator_url}")
        return self._facilitator

    def merchant_wallet(self) -> str:
        if not self.settings.merchant_wallet:
            raise Misconfigured(["MERCHANT_WALLET_ADDRESS"])
        return self.settings.merchant_wallet


# ══════════════════════════════════════════════════════════════════════════════
# Settlement Gateway
# ══════════════════════════════════════════════════════════════════════════════

class PaymentState(enum.Enum):
    SETTLED = "settled"
    BYPASSED = "bypassed"
    REJECTED = "rejected"


@dataclass
class PaymentOutcome:
    state: PaymentState
    status: int
    body: object = None
    headers: dict = field(default_factory=dict)
    receipt: Optional[dict] = None

    @property
    def ok(self) -> bool:
        return self.state in (PaymentState.SETTLED, PaymentState.BYPASSED)

    def raise_for_rejection(self):
        if not self.ok:
            raise SettleRejected(self.status, self.body, self.headers)


class PaymentGateway:
    def __init__(self, provider: FacilitatorProvider, chain_id: int = AVALANCHE_FUJI_CHAIN_ID,
                 network: str = X402_NETWORK, allow_unpaid: bool = False):
        self.provider = provider
        self.chain_id = chain_id
        self.network = network
        self.allow_unpaid = allow_unpaid

    def ensure_configured(self) -> tuple:
        """(facilitator, merchant wallet); raises Misconfigured."""
        return self.provider.get(), self.provider.merchant_wallet()

    async def settle(self, request_url: str, method: str, headers, price: str,
                     bypassable: bool = False) -> PaymentOutcome:
        facilitator, pay_to = self.ensure_configured()

        proof = find_header(headers, PAYMENT_HEADER)
        if not proof:
            if bypassable and self.allow_unpaid and find_header(headers, BYPASS_HEADER) == "1":
                log.info(f"Payment bypassed for {request_url}")
                return PaymentOutcome(
                    state=PaymentState.BYPASSED,
                    status=200,
                    headers=dict(NO_STORE_HEADERS),
                    receipt={"skipped": True, "reason": "ALLOW_UNPAID_FACTS"},
                )
            requirements = build_payment_requirements(request_url, method, pay_to, price, self.network)
            body, extra = build_402_response(requirements)
            return PaymentOutcome(PaymentState.REJECTED, 402, body, {**NO_STORE_HEADERS, **extra})

        try:
            envelope = PaymentEnvelope.decode(proof).normalized(self.chain_id)
        except InvalidPaymentHeader as e:
            log.info(f"Rejecting undecodable X-PAYMENT: {e.message}")
            requirements = build_payment_requirements(request_url, method, pay_to, price, self.network)
            body, extra = build_402_response(requirements, error=e.error)
            body["message"] = e.message
            return PaymentOutcome(PaymentState.REJECTED, 402, body, {**NO_STORE_HEADERS, **extra})

        try:
            result = await facilitator.settle_payment(
                resource_url=request_url,
                method=method,
                payment_data=envelope.to_dict(),
                pay_to=pay_to,
                network=self.network,
                price=price,
            )
        except Exception as e:
            log.error(f"settle_payment threw: {e!r}")
            raise SettleTransportError(str(e) or e.__class__.__name__)

        if result.status != 200:
            body = result.response_body or {
                "error": "settle_failed",
                "status": result.status,
                "note": "empty settle body",
            }
            out_headers = dict(result.response_headers)
            out_headers.update(NO_STORE_HEADERS)
            return PaymentOutcome(PaymentState.REJECTED, result.status, body, out_headers)

        out_headers = dict(result.response_headers)
        out_headers.update(NO_STORE_HEADERS)
        return PaymentOutcome(
            state=PaymentState.SETTLED,
            status=200,
            body=result.response_body,
            headers=out_headers,
            receipt=result.payment_receipt,
        )
