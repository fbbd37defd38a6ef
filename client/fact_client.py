"""
Sabaki Facts Client for x402 (USDC on Avalanche Fuji)
- Requests a paid resource, receives 402 + PaymentRequirements
- Signs an EIP-3009 transferWithAuthorization (EIP-712) for the quoted price
- Normalizes the signature's v byte and retries with X-PAYMENT
- Verifies the returned fact bundle signature

Payment flow:
  1. Client sends GET /api/facts/ICUI?period=CY2025Q3
  2. Server returns HTTP 402 + accepts[] requirements
  3. Client signs the authorization with X402_CLI_PRIVATE_KEY
  4. Client retries with X-PAYMENT: <base64 PaymentPayload>
  5. Server settles via facilitator, returns the bundle + X-PAYMENT-RESPONSE

Usage:
  python -m client.fact_client fetch --ticker ICUI --period CY2025Q3
  python -m client.fact_client fetch --resource feed
"""

import argparse
import base64
import json
import os
import secrets
import sys
import time
from typing import Optional

import requests
from coincurve import PrivateKey
from eth_abi import encode
from eth_utils import keccak, to_checksum_address

from facts.config import AVALANCHE_FUJI_CHAIN_ID, X402_NETWORK, X402_SCHEME, X402_VERSION
from facts.signature import PaymentEnvelope, normalize_payment_header
from facts.signing import address_of, verify_bundle

# -------------------------
# Configuration
# -------------------------
DEFAULT_BASE_URL = "http://localhost:3000"

RESOURCES = {
    "feed": {"endpoint": "/api/facts/feed", "max_value": 10000},   # $0.01
    "pm":   {"endpoint": "/api/facts/pm",   "max_value": 150000},  # $0.15
}
FACT_MAX_VALUE = 250000  # $0.25

EIP712_DOMAIN_TYPE = "EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
TRANSFER_WITH_AUTHORIZATION_TYPE = (
    "TransferWithAuthorization(address from,address to,uint256 value,"
    "uint256 validAfter,uint256 validBefore,bytes32 nonce)"
)

TIMEOUT = 30


# -------------------------
# EIP-3009 authorization
# -------------------------
def domain_separator(name: str, version: str, chain_id: int, verifying_contract: str) -> bytes:
    return keccak(encode(
        ["bytes32", "bytes32", "bytes32", "uint256", "address"],
        [
            keccak(text=EIP712_DOMAIN_TYPE),
            keccak(text=name),
            keccak(text=version),
            chain_id,
            to_checksum_address(verifying_contract),
        ],
    ))


def authorization_hash(authorization: dict) -> bytes:
    return keccak(encode(
        ["bytes32", "address", "address", "uint256", "uint256", "uint256", "bytes32"],
        [
            keccak(text=TRANSFER_WITH_AUTHORIZATION_TYPE),
            to_checksum_address(authorization["from"]),
            to_checksum_address(authorization["to"]),
            int(authorization["value"]),
            int(authorization["validAfter"]),
            int(authorization["validBefore"]),
            bytes.fromhex(authorization["nonce"][2:]),
        ],
    ))


def sign_authorization(key: PrivateKey, requirements: dict, chain_id: int) -> dict:
    """Build and sign the transferWithAuthorization a facilitator can settle."""
    now = int(time.time())
    authorization = {
        "from": address_of(key.public_key),
        "to": requirements["payTo"],
        "value": str(requirements["maxAmountRequired"]),
        "validAfter": str(now - 60),
        "validBefore": str(now + int(requirements.get("maxTimeoutSeconds", 300))),
        "nonce": "0x" + secrets.token_hex(32),
    }
    extra = requirements.get("extra") or {}
    digest = keccak(
        b"\x19\x01"
        + domain_separator(extra.get("name", "USD Coin"), extra.get("version", "2"),
                           chain_id, requirements["asset"])
        + authorization_hash(authorization)
    )
    sig = key.sign_recoverable(digest, hasher=None)
    # raw parity byte; the normalizer turns it into 27/28 before sending
    signature = "0x" + sig[:64].hex() + format(sig[64], "02x")
    return {"signature": signature, "authorization": authorization}


def build_payment_header(key: PrivateKey, requirements: dict, chain_id: int) -> str:
    envelope = PaymentEnvelope(
        x402_version=X402_VERSION,
        scheme=requirements.get("scheme", X402_SCHEME),
        network=requirements.get("network", X402_NETWORK),
        payload=sign_authorization(key, requirements, chain_id),
    )
    return normalize_payment_header(envelope.encode(), chain_id)


def select_requirements(challenge: dict, max_value: int) -> dict:
    for option in challenge.get("accepts") or []:
        if option.get("scheme") != X402_SCHEME or option.get("network") != X402_NETWORK:
            continue
        if int(option.get("maxAmountRequired", 0)) > max_value:
            raise RuntimeError(
                f"Price {option['maxAmountRequired']} exceeds max value {max_value}"
            )
        return option
    raise RuntimeError(f"No acceptable payment option in 402 response: {challenge}")


# -------------------------
# Fetch
# -------------------------
def fetch_with_payment(url: str, key: PrivateKey, max_value: int,
                       chain_id: int = AVALANCHE_FUJI_CHAIN_ID) -> requests.Response:
    headers = {"accept": "application/json"}
    first = requests.get(url, headers=headers, timeout=TIMEOUT)
    if first.status_code != 402:
        return first

    requirements = select_requirements(first.json(), max_value)
    headers["X-PAYMENT"] = build_payment_header(key, requirements, chain_id)
    return requests.get(url, headers=headers, timeout=TIMEOUT)


def decode_receipt(response: requests.Response) -> Optional[dict]:
    header = response.headers.get("X-PAYMENT-RESPONSE")
    if not header:
        return None
    try:
        return json.loads(base64.b64decode(header))
    except ValueError:
        return {"raw": header}


def build_url(base_url: str, args) -> tuple:
    base_url = base_url.rstrip("/")
    if args.resource:
        resource = RESOURCES[args.resource]
        return f"{base_url}{resource['endpoint']}", resource["max_value"]
    url = f"{base_url}/api/facts/{args.ticker.upper()}"
    if args.period:
        url += f"?period={args.period}"
    return url, args.max_value or FACT_MAX_VALUE


# -------------------------
# CLI
# -------------------------
def main(argv=None):
    parser = argparse.ArgumentParser(description="Sabaki Facts x402 client")
    sub = parser.add_subparsers(dest="command", required=True)
    fetch = sub.add_parser("fetch", help="Pay for and fetch a fact bundle or feed")
    target = fetch.add_mutually_exclusive_group(required=True)
    target.add_argument("--ticker")
    target.add_argument("--resource", choices=list(RESOURCES))
    fetch.add_argument("--period", default=None)
    fetch.add_argument("--max-value", type=int, default=None,
                       help=f"Max atomic USDC to authorize for a fact (default: {FACT_MAX_VALUE})")
    fetch.add_argument("--base-url",
                       default=os.environ.get("CLI_API_BASE_URL") or DEFAULT_BASE_URL)
    args = parser.parse_args(argv)

    private_key = os.environ.get("X402_CLI_PRIVATE_KEY", "").strip()
    if not private_key:
        print("Missing X402_CLI_PRIVATE_KEY in environment.", file=sys.stderr)
        return 1
    key = PrivateKey(bytes.fromhex(private_key[2:] if private_key.startswith("0x") else private_key))

    url, max_value = build_url(args.base_url, args)
    print(f"→ Fetching {url} as {address_of(key.public_key)}")

    try:
        response = fetch_with_payment(url, key, max_value)
    except (requests.RequestException, RuntimeError) as e:
        print(f"✗ Request failed: {e}", file=sys.stderr)
        return 1

    if response.status_code != 200:
        print(f"✗ Payment failed ({response.status_code}): {response.text}", file=sys.stderr)
        return 1

    receipt = decode_receipt(response)
    if receipt:
        print(f"✓ Payment settled (tx: {receipt.get('transaction')})")
    else:
        print("✓ Response received (no payment receipt)")

    try:
        body = response.json()
    except ValueError:
        print(response.text)
        return 0

    if isinstance(body, dict) and body.get("signature"):
        status = "VALID" if verify_bundle(body) else "INVALID"
        print(f"  Signer:    {body.get('signer')}")
        print(f"  Signature: {status}")
    print(json.dumps(body, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
