# tests/conftest.py
import json

import httpx
import pytest
from eth_abi import decode, encode

from facts.builder import build_cache
from facts.config import Settings
from facts.onchain import ATTESTATION_TUPLE, METRIC_LABELS, to_bytes32

TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
MERCHANT = "0x1111111111111111111111111111111111111111"
SERVER_WALLET = "0x2222222222222222222222222222222222222222"
RPC_URL = "https://rpc.test/ext/bc/C/rpc"
FACILITATOR_URL = "https://facilitator.test/x402"
ORACLE_ADDRESS = "0xA17b8A538286f0415e0a5166440f0E452BF35968"

LEDGER_ROWS = [
    {
        "status": "posted", "ticker": "icui", "periodId": "CY2025Q3",
        "updated": "2025-10-30T12:00:00Z", "non_gaap_eps": "1.82", "consensus_eps": 1.75,
        "pm_consensus_eps": "1.77", "pm_market_url": "https://polymarket.com/event/icui",
        "pm_chain_outcome": "beat", "filing_url": "https://sec.gov/icui-8k",
        "exhibit_url": "https://sec.gov/icui-ex99", "dedupe_id": "icui-q3",
        "tx_hashes": ["", "0xabc"], "evidence_hash_actual": "0x" + "11" * 32,
        "url_hash_actual": "0x" + "22" * 32, "observed_at": 1761825600,
    },
    {
        "status": "posted", "ticker": "ACME", "periodId": "CY2025Q1",
        "updated": "2025-01-01", "non_gaap_eps": 0.5, "consensus_eps": None,
        "pm_consensus_eps": 0.48,
    },
    {
        "status": "posted", "ticker": "ACME", "periodId": "CY2025Q2",
        "updated": "2025-04-01", "non_gaap_eps": 0.61, "consensus_eps": "n/a",
    },
    {"status": "pending", "ticker": "ZZZ", "periodId": "CY2025Q1", "updated": "2025-01-01"},
]


def write_ledger(path, rows, extra_lines=()):
    lines = [json.dumps(row) for row in rows]
    lines.extend(extra_lines)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def ledger_path(tmp_path):
    return write_ledger(tmp_path / "attestations_posted.jsonl", LEDGER_ROWS, ["{not json"])


@pytest.fixture
def cache_path(tmp_path, ledger_path):
    out = tmp_path / "data" / "facts_cache.json"
    build_cache(ledger_path, out)
    return out


@pytest.fixture
def settings(cache_path):
    return Settings(
        thirdweb_secret_key="tw-secret",
        thirdweb_server_wallet=SERVER_WALLET,
        merchant_wallet=MERCHANT,
        facilitator_url=FACILITATOR_URL,
        cache_path=cache_path,
        rpc_url=RPC_URL,
        oracle_address=ORACLE_ADDRESS,
        feed_url="https://upstream.test/feed",
        pm_url="https://upstream.test/pm",
    )


def attestation_result(period_id, metric_label, value, decimals):
    encoded = encode(
        [ATTESTATION_TUPLE],
        [(
            bytes.fromhex(to_bytes32(period_id)[2:]),
            bytes.fromhex(to_bytes32(metric_label)[2:]),
            b"\x11" * 32,
            b"\x22" * 32,
            value,
            decimals,
            1761825600,
            1,
            1761830000,
        )],
    )
    return "0x" + encoded.hex()


def decode_call(request: httpx.Request):
    """(ticker, period_hash, metric_hash) from a mocked eth_call request."""
    body = json.loads(request.content)
    data = bytes.fromhex(body["params"][0]["data"][2:])
    ticker, period, metric = decode(["string", "bytes32", "bytes32"], data[4:])
    return ticker, "0x" + period.hex(), "0x" + metric.hex()


def revert(message, reason=None):
    error = {"code": 3, "message": message}
    if reason is not None:
        error["data"] = "0x08c379a0" + encode(["string"], [reason]).hex()
    return {"jsonrpc": "2.0", "id": 1, "error": error}


NON_GAAP_ID = to_bytes32(METRIC_LABELS["non_gaap_eps"])
CONSENSUS_ID = to_bytes32(METRIC_LABELS["consensus_eps"])
