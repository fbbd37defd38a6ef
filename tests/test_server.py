# tests/test_server.py
import asyncio
import base64
import dataclasses
import json

import httpx
import pytest
from coincurve import PrivateKey
from fastapi.testclient import TestClient

from client.fact_client import build_payment_header
from facts.config import AVALANCHE_FUJI_CHAIN_ID, Settings
from facts.server import create_app
from facts.signing import verify_bundle
from facts.store import FactCache
from tests.conftest import (
    CONSENSUS_ID,
    NON_GAAP_ID,
    SERVER_WALLET,
    TEST_PRIVATE_KEY,
    attestation_result,
    decode_call,
    revert,
)

PAYER_KEY = PrivateKey(bytes.fromhex("59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"))
SETTLED = {"success": True, "transaction": "0xfeed", "network": "avalanche-fuji", "payer": "0xpayer"}


class Upstreams:
    """Routes every outbound call of the app by host."""

    def __init__(self):
        self.calls = []
        self.attested = True
        self.feed_status = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        host = request.url.host
        if host == "facilitator.test":
            if request.url.path.endswith("/verify"):
                return httpx.Response(200, json={"isValid": True, "payer": "0xpayer"})
            return httpx.Response(200, json=SETTLED)
        if host == "rpc.test":
            _, period, metric = decode_call(request)
            if not self.attested:
                return httpx.Response(200, json=revert("execution reverted", "no_attestation"))
            if metric == NON_GAAP_ID:
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1,
                                                 "result": attestation_result("CY2025Q3", "non-gaap:EPS", 182, 2)})
            if metric == CONSENSUS_ID:
                return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1,
                                                 "result": attestation_result("CY2025Q3", "consensus_eps", 175, 2)})
        if host == "upstream.test":
            if self.feed_status != 200:
                return httpx.Response(self.feed_status, text="down")
            return httpx.Response(200, json={"items": [1, 2], "query": dict(request.url.params)})
        return httpx.Response(404)

    def hosts(self):
        return [request.url.host for request in self.calls]


@pytest.fixture
def upstreams():
    return Upstreams()


def make_client(settings, upstreams):
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstreams))
    return TestClient(create_app(settings, http_client=http))


def pay(client, path):
    """Request path, answer the 402 challenge with a signed authorization, return the paid response."""
    challenge = client.get(path)
    assert challenge.status_code == 402
    requirements = challenge.json()["accepts"][0]
    header = build_payment_header(PAYER_KEY, requirements, AVALANCHE_FUJI_CHAIN_ID)
    return client.get(path, headers={"X-PAYMENT": header})


def test_health(settings, upstreams):
    body = make_client(settings, upstreams).get("/health").json()
    assert body["status"] == "ok"
    assert body["protocol"] == "x402"
    assert body["signing"] is False


def test_paid_fact_bundle(settings, upstreams):
    client = make_client(settings, upstreams)
    response = pay(client, "/api/facts/icui?period=CY2025Q3")

    assert response.status_code == 200
    assert response.headers["cache-control"] == "no-store"
    assert json.loads(base64.b64decode(response.headers["x-payment-response"])) == SETTLED

    bundle = response.json()
    assert bundle["schema_id"] == "SEC_EPS_V1"
    assert bundle["ticker"] == "ICUI"
    assert bundle["periodId"] == "CY2025Q3"
    assert bundle["facts"] == {"non_gaap_eps": 1.82, "consensus_eps": 1.75, "market_consensus_eps": 1.77}
    assert bundle["market"]["outcome"] == "beat"
    assert bundle["provenance"]["filing_url"] == "https://sec.gov/icui-8k"
    assert bundle["attestation"]["contract"] == settings.oracle_address
    assert bundle["attestation"]["ledger"]["tx_hash"] == "0xabc"
    assert bundle["attestation"]["on_chain"] is True
    assert bundle["attestation"]["on_chain_non_gaap"]["value"] == "182"
    assert bundle["attestation"]["on_chain_consensus"]["normalized_value"] == pytest.approx(1.75)
    assert bundle["payment_receipt"] == SETTLED
    assert "signature" not in bundle and "signer" not in bundle


def test_payment_reaches_facilitator_with_normalized_v(settings, upstreams):
    client = make_client(settings, upstreams)
    pay(client, "/api/facts/ICUI?period=CY2025Q3")

    verify = next(r for r in upstreams.calls if r.url.path.endswith("/verify"))
    payload = json.loads(verify.content)["paymentPayload"]
    assert int(payload["payload"]["signature"][130:], 16) in (27, 28)
    assert verify.headers["x-server-wallet-address"] == SERVER_WALLET


def test_signed_bundle_verifies(settings, upstreams):
    client = make_client(dataclasses.replace(settings, bundle_private_key=TEST_PRIVATE_KEY), upstreams)
    bundle = pay(client, "/api/facts/ICUI?period=CY2025Q3").json()
    assert bundle["signature"].startswith("0x")
    assert verify_bundle(bundle) is True


def test_missing_attestation_is_still_served(settings, upstreams):
    upstreams.attested = False
    bundle = pay(make_client(settings, upstreams), "/api/facts/ICUI").json()
    assert bundle["attestation"]["on_chain"] is False
    assert bundle["attestation"]["on_chain_non_gaap"] is None
    assert bundle["attestation"]["on_chain_consensus"] is None


def test_consensus_falls_back_to_market(settings, upstreams):
    bundle = pay(make_client(settings, upstreams), "/api/facts/ACME?period=CY2025Q1").json()
    assert bundle["facts"]["consensus_eps"] == 0.48
    assert bundle["facts"]["market_consensus_eps"] == 0.48


def test_latest_period_without_query(settings, upstreams):
    bundle = pay(make_client(settings, upstreams), "/api/facts/ACME").json()
    assert bundle["periodId"] == "CY2025Q2"


def test_challenge_without_payment(settings, upstreams):
    response = make_client(settings, upstreams).get("/api/facts/ICUI?period=CY2025Q3")
    assert response.status_code == 402
    assert response.headers["cache-control"] == "no-store"
    assert "payment-required" in response.headers
    option = response.json()["accepts"][0]
    assert option["maxAmountRequired"] == settings.fact_price
    assert option["resource"] == "http://testserver/api/facts/ICUI?period=CY2025Q3"
    assert upstreams.calls == []


def test_unknown_fact_is_not_charged(settings, upstreams):
    response = make_client(settings, upstreams).get(
        "/api/facts/NOPE", headers={"X-PAYMENT": "anything"}
    )
    assert response.status_code == 404
    assert response.json()["error"] == "fact_not_found"
    assert upstreams.calls == []


def test_bypass_header(settings, upstreams):
    client = make_client(dataclasses.replace(settings, allow_unpaid=True), upstreams)
    response = client.get("/api/facts/ICUI", headers={"x-skip-payment": "1"})
    assert response.status_code == 200
    assert response.json()["payment_receipt"] == {"skipped": True, "reason": "ALLOW_UNPAID_FACTS"}
    assert "facilitator.test" not in upstreams.hosts()


def test_misconfigured(cache_path, upstreams):
    response = make_client(Settings(cache_path=cache_path), upstreams).get("/api/facts/ICUI")
    assert response.status_code == 500
    assert response.json() == {
        "error": "Server misconfiguration",
        "missingEnv": ["THIRDWEB_SECRET_KEY", "THIRDWEB_SERVER_WALLET_ADDRESS"],
    }


def test_cache_unavailable(settings, upstreams, tmp_path):
    client = make_client(dataclasses.replace(settings, cache_path=tmp_path / "missing.json"), upstreams)
    response = client.get("/api/facts/ICUI")
    assert response.status_code == 500
    assert response.json()["error"] == "fact_cache_unavailable"


def test_rpc_failure_is_500_after_settlement(settings, upstreams):
    def broken(request):
        if request.url.host == "rpc.test":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -1, "message": "boom"}})
        return upstreams(request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(broken))
    client = TestClient(create_app(settings, http_client=http))
    response = pay(client, "/api/facts/ICUI")
    assert response.status_code == 500
    assert response.json()["error"] == "attestation_read_failed"


def test_index(settings, upstreams):
    body = make_client(settings, upstreams).get("/api/facts").json()
    assert body["meta"]["source"].endswith("attestations_posted.jsonl")
    assert {(f["ticker"], f["periodId"]) for f in body["facts"]} == {
        ("ICUI", "CY2025Q3"), ("ACME", "CY2025Q1"), ("ACME", "CY2025Q2"),
    }


def test_debug_reports_presence_only(settings, upstreams, monkeypatch):
    monkeypatch.setenv("THIRDWEB_SECRET_KEY", "super-secret")
    monkeypatch.setenv("MERCHANT_WALLET_ADDRESS", "")
    response = make_client(settings, upstreams).get("/api/facts/debug")
    env = {entry["key"]: entry["present"] for entry in response.json()["env"]}
    assert env["THIRDWEB_SECRET_KEY"] is True
    assert env["MERCHANT_WALLET_ADDRESS"] is False
    assert "super-secret" not in response.text


def test_feed_proxy(settings, upstreams):
    response = pay(make_client(settings, upstreams), "/api/facts/feed?limit=5")
    assert response.status_code == 200
    assert response.json() == {"items": [1, 2], "query": {"limit": "5"}}
    assert "x-payment-response" in response.headers
    settle = next(r for r in upstreams.calls if r.url.path.endswith("/settle"))
    requirements = json.loads(settle.content)["paymentRequirements"]
    assert requirements["maxAmountRequired"] == "10000"
    assert requirements["resource"] == "https://upstream.test/feed?limit=5"


def test_pm_upstream_failure(settings, upstreams):
    upstreams.feed_status = 503
    response = pay(make_client(settings, upstreams), "/api/facts/pm")
    assert response.status_code == 502
    assert response.json()["error"] == "upstream_error"


class RecordingCache(FactCache):
    """Notes whether each load ran on a thread with a running event loop."""

    def __init__(self, path):
        super().__init__(path)
        self.on_loop = []

    def load(self):
        try:
            asyncio.get_running_loop()
            self.on_loop.append(True)
        except RuntimeError:
            self.on_loop.append(False)
        return super().load()


def test_corpus_loads_off_the_event_loop(settings, upstreams):
    cache = RecordingCache(settings.cache_path)
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstreams))
    client = TestClient(create_app(dataclasses.replace(settings, allow_unpaid=True), cache=cache, http_client=http))

    assert client.get("/api/facts").status_code == 200
    assert client.get("/api/facts/ICUI", headers={"x-skip-payment": "1"}).status_code == 200
    assert cache.on_loop == [False, False]
