# facts/server.py
"""
Sabaki Facts: x402-gated verifiable fact server

Endpoints:
  GET /api/facts/{ticker}?period=    paid: one signed, chain-reconciled fact bundle
  GET /api/facts/feed                paid: proxied Sabaki feed
  GET /api/facts/pm                  paid: proxied Sabaki prediction-market feed
  GET /api/facts                     free: index of cached facts
  GET /api/facts/debug               free: which settings are present (never values)
  GET /health

Pipeline for /api/facts/{ticker}:
  config check → cache lookup → x402 settle → on-chain reconcile → sign → 200

The fact is resolved before settlement, so a request for a fact that does not
exist is answered 404 without charging the client.
"""

import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response

from facts.config import FEED_PRICE, PM_PRICE, Settings
from facts.errors import (
    NO_STORE_HEADERS,
    BadRequest,
    FactsError,
    InternalError,
    NotFound,
    SettleRejected,
    UpstreamError,
)
from facts.onchain import AttestationReader, Reconciliation, reconcile
from facts.payment import FacilitatorProvider, PaymentGateway
from facts.signing import BundleSigner
from facts.store import FactCache, FactCacheFile, FactRecord, list_facts, lookup

log = logging.getLogger("facts.server")

VERSION = "0.3.0"
UPSTREAM_TIMEOUT = 10


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def error_response(exc: FactsError) -> JSONResponse:
    headers = dict(NO_STORE_HEADERS)
    if isinstance(exc, SettleRejected):
        headers = {**exc.headers, **NO_STORE_HEADERS}
    return JSONResponse(exc.to_body(), status_code=exc.status_code, headers=headers)


def build_bundle(record: FactRecord, snapshot: FactCacheFile, recon: Reconciliation,
                 contract: str, receipt) -> dict:
    """Unsigned response payload for one fact. Key order is part of the signature."""
    consensus = record.consensus_eps if record.consensus_eps is not None else record.market_consensus_eps
    return {
        "schema_id": record.schema_id,
        "ticker": record.ticker,
        "periodId": record.period_id,
        "facts": {
            "non_gaap_eps": record.non_gaap_eps,
            "consensus_eps": consensus,
            "market_consensus_eps": record.market_consensus_eps,
        },
        "provenance": asdict(record.provenance),
        "market": {
            "url": record.market_url,
            "outcome": record.market_outcome,
            "consensus_eps": record.market_consensus_eps,
        },
        "attestation": {
            "contract": contract,
            "ledger": asdict(record.attestation_snapshot),
            "on_chain": recon.on_chain,
            "on_chain_non_gaap": recon.non_gaap.to_dict() if recon.non_gaap else None,
            "on_chain_consensus": recon.consensus.to_dict() if recon.consensus else None,
        },
        "cache_generated_at": snapshot.generated_at,
        "generated_at": utc_now_iso(),
        "payment_receipt": receipt,
    }


def create_app(settings: Optional[Settings] = None, *, cache: Optional[FactCache] = None,
               reader: Optional[AttestationReader] = None,
               provider: Optional[FacilitatorProvider] = None,
               signer: Optional[BundleSigner] = None,
               http_client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    cache = cache or FactCache(settings.cache_path, reuse_snapshot=settings.reuse_cache_snapshot)
    reader = reader or AttestationReader(settings.rpc_url, settings.oracle_address, client=http_client)
    provider = provider or FacilitatorProvider(settings, client=http_client)
    signer = signer or BundleSigner.from_key(settings.bundle_private_key)
    gateway = PaymentGateway(provider, allow_unpaid=settings.allow_unpaid)

    app = FastAPI(title="Sabaki Facts", version=VERSION)
    app.state.settings = settings
    app.state.cache = cache
    app.state.gateway = gateway
    app.state.signer = signer

    async def fetch_upstream(url: str, accept: str) -> httpx.Response:
        headers = {"accept": accept}
        if http_client is not None:
            return await http_client.get(url, headers=headers)
        async with httpx.AsyncClient(timeout=UPSTREAM_TIMEOUT) as client:
            return await client.get(url, headers=headers)

    def paid_proxy(resource: str, upstream_url: str, price: str):
        """Paid passthrough to an upstream JSON feed."""

        async def handler(request: Request):
            try:
                gateway.ensure_configured()
                target = str(httpx.URL(upstream_url).copy_merge_params(dict(request.query_params)))

                outcome = await gateway.settle(target, request.method, request.headers, price)
                outcome.raise_for_rejection()

                try:
                    upstream = await fetch_upstream(target, request.headers.get("accept") or "application/json")
                except httpx.HTTPError as e:
                    raise UpstreamError(f"Upstream {resource} unreachable: {e}")
                if not upstream.is_success:
                    raise UpstreamError(f"Upstream {resource} responded with {upstream.status_code}")

                headers = dict(outcome.headers)
                headers["Cache-Control"] = "no-store"
                headers["Content-Type"] = upstream.headers.get("content-type") or "application/json"
                return Response(content=upstream.content, status_code=200, headers=headers)
            except FactsError as e:
                return error_response(e)
            except Exception as e:
                log.exception(f"GET /api/facts/{resource} error")
                return error_response(InternalError(str(e)))

        handler.__name__ = f"proxy_{resource}"
        return handler

    # ── Free routes ──

    @app.get("/health")
    async def health():
        return {"status": "ok", "protocol": "x402", "version": VERSION, "signing": signer.enabled}

    @app.get("/api/facts")
    async def index():
        try:
            snapshot = await run_in_threadpool(cache.load)
        except FactsError as e:
            return error_response(e)
        return JSONResponse(
            {
                "meta": {"generated_at": snapshot.generated_at, "source": snapshot.source},
                "facts": list_facts(snapshot),
            },
            headers=NO_STORE_HEADERS,
        )

    @app.get("/api/facts/debug")
    async def debug_env():
        present = sorted(
            key for key in os.environ
            if any(key.startswith(prefix) for prefix in settings.debug_env_prefixes)
        )
        return JSONResponse(
            {
                "timestamp": utc_now_iso(),
                "env": [{"key": key, "present": bool(os.environ.get(key))} for key in present],
            },
            headers={"Cache-Control": "no-store, max-age=0"},
        )

    # ── Paid proxies ──

    app.add_api_route("/api/facts/feed", paid_proxy("feed", settings.feed_url, FEED_PRICE), methods=["GET"])
    app.add_api_route("/api/facts/pm", paid_proxy("pm", settings.pm_url, PM_PRICE), methods=["GET"])

    # ── Paid fact bundle ──

    @app.get("/api/facts/{ticker}")
    async def get_fact(request: Request, ticker: str, period: Optional[str] = None):
        try:
            gateway.ensure_configured()

            ticker = ticker.strip().upper()
            if not ticker:
                raise BadRequest()

            snapshot = await run_in_threadpool(cache.load)
            record = lookup(snapshot, ticker, period or None)
            if record is None:
                raise NotFound()

            outcome = await gateway.settle(
                str(request.url), request.method, request.headers, settings.fact_price, bypassable=True
            )
            outcome.raise_for_rejection()

            recon = await reconcile(reader, record)
            payload = build_bundle(record, snapshot, recon, settings.oracle_address, outcome.receipt)

            signed = signer.sign(payload)
            if signed:
                payload = {**payload, "signature": signed.signature, "signer": signed.signer}

            log.info(f"Served {record.key} on_chain={recon.on_chain} signed={bool(signed)}")
            return JSONResponse(payload, status_code=200, headers=outcome.headers)
        except FactsError as e:
            if e.status_code >= 500:
                log.error(f"GET /api/facts/{ticker} failed: {e}")
            return error_response(e)
        except Exception as e:
            log.exception(f"GET /api/facts/{ticker} error")
            return error_response(InternalError(str(e)))

    return app


# ══════════════════════════════════════════════════════════════════════════════
# Entry Point
# ══════════════════════════════════════════════════════════════════════════════

def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [facts] %(message)s")
    settings = Settings.from_env()
    app = create_app(settings)

    log.info(f"Sabaki Facts v{VERSION} starting on :{settings.port}")
    log.info(f"Fact cache: {settings.cache_path}")
    log.info(f"Oracle: {settings.oracle_address} via {settings.rpc_url}")
    log.info(f"Facilitator: {settings.facilitator_url}")
    log.info(f"Merchant wallet: {settings.merchant_wallet or 'MISSING'}")
    log.info(f"Bundle signer: {app.state.signer.address or 'disabled (unsigned bundles)'}")
    if settings.allow_unpaid:
        log.warning("ALLOW_UNPAID_FACTS is on: x-skip-payment: 1 bypasses payment")

    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
