# facts/onchain.py
"""
SP500Oracle attestation reader.

Reads getAttestation(ticker, periodId, metricId) from the oracle contract on
Avalanche Fuji with a raw JSON-RPC eth_call and merges the result with the
cached ledger fact.

A missing attestation is a normal outcome, not an error: the contract
reverts with "no_attestation" (or a bare "execution reverted") and the reader
returns None. Every other failure is raised as AttestationReadError.

Usage:
  python -m facts.onchain --ticker ICUI --period CY2025Q3 --metric "non-gaap:EPS"
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict, dataclass
from typing import Optional

import httpx
from eth_abi import decode, encode
from eth_utils import keccak

from facts.config import DEFAULT_ORACLE_ADDRESS, DEFAULT_RPC_URL
from facts.errors import AttestationReadError

log = logging.getLogger("facts.onchain")

METRIC_LABELS = {
    "non_gaap_eps": "non-gaap:EPS",
    "consensus_eps": "consensus_eps",
}

GET_ATTESTATION_SIG = "getAttestation(string,bytes32,bytes32)"
GET_ATTESTATION_SELECTOR = keccak(text=GET_ATTESTATION_SIG)[:4]
ATTESTATION_TUPLE = "(bytes32,bytes32,bytes32,bytes32,int256,uint8,uint64,uint8,uint64)"

ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")  # Error(string)
NO_ATTESTATION_MARKERS = ("no_attestation", "execution reverted")

RPC_TIMEOUT = 10


def to_bytes32(value: str) -> str:
    """keccak256 of the UTF-8 label, as 0x-prefixed hex."""
    return "0x" + keccak(text=value or "").hex()


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def _hex(raw: bytes) -> str:
    return "0x" + raw.hex()


@dataclass(frozen=True)
class OnchainAttestation:
    period_id: str
    metric_id: str
    evidence_hash: str
    url_hash: str
    value: int
    decimals: int
    observed_at: int
    source_type: int
    last_updated: int

    @property
    def normalized_value(self) -> float:
        return self.value / 10 ** self.decimals

    def to_dict(self) -> dict:
        out = asdict(self)
        # raw integer kept as a string so JSON consumers don't lose precision
        out["value"] = str(self.value)
        out["normalized_value"] = self.normalized_value
        return out


def encode_get_attestation(ticker: str, period_hash: str, metric_hash: str) -> str:
    args = encode(
        ["string", "bytes32", "bytes32"],
        [ticker, _hex_to_bytes(period_hash), _hex_to_bytes(metric_hash)],
    )
    return _hex(GET_ATTESTATION_SELECTOR + args)


def decode_attestation(result_hex: str) -> OnchainAttestation:
    (row,) = decode([ATTESTATION_TUPLE], _hex_to_bytes(result_hex))
    return OnchainAttestation(
        period_id=_hex(row[0]),
        metric_id=_hex(row[1]),
        evidence_hash=_hex(row[2]),
        url_hash=_hex(row[3]),
        value=int(row[4]),
        decimals=int(row[5]),
        observed_at=int(row[6]),
        source_type=int(row[7]),
        last_updated=int(row[8]),
    )


def revert_reason(error: dict) -> str:
    """Best-effort text for a JSON-RPC error: message plus decoded Error(string)."""
    parts = [str(error.get("message", ""))]
    data = error.get("data")
    if isinstance(data, dict):
        data = data.get("data")
    if isinstance(data, str) and data.startswith("0x"):
        try:
            raw = _hex_to_bytes(data)
            if raw[:4] == ERROR_STRING_SELECTOR:
                (reason,) = decode(["string"], raw[4:])
                parts.append(reason)
        except Exception as e:
            log.debug(f"Undecodable revert data {data[:20]}...: {e}")
    return " ".join(p for p in parts if p)


def is_missing_attestation(reason: str) -> bool:
    return any(marker in reason for marker in NO_ATTESTATION_MARKERS)


class AttestationReader:
    """Reads SP500Oracle attestations over JSON-RPC."""

    def __init__(self, rpc_url=DEFAULT_RPC_URL, oracle_address=DEFAULT_ORACLE_ADDRESS,
                 client: Optional[httpx.AsyncClient] = None):
        self.rpc_url = rpc_url
        self.oracle_address = oracle_address
        self._client = client

    async def _eth_call(self, data: str) -> dict:
        request = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_call",
            "params": [{"to": self.oracle_address, "data": data}, "latest"],
        }
        try:
            if self._client is not None:
                resp = await self._client.post(self.rpc_url, json=request)
            else:
                async with httpx.AsyncClient(timeout=RPC_TIMEOUT) as client:
                    resp = await client.post(self.rpc_url, json=request)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as e:
            raise AttestationReadError(f"RPC request to {self.rpc_url} failed: {e}")
        except ValueError as e:
            raise AttestationReadError(f"RPC returned invalid JSON: {e}")

    async def read(self, ticker: str, period_hash: str, metric_hash: str) -> Optional[OnchainAttestation]:
        reply = await self._eth_call(encode_get_attestation(ticker, period_hash, metric_hash))

        error = reply.get("error")
        if error:
            reason = revert_reason(error if isinstance(error, dict) else {"message": str(error)})
            if is_missing_attestation(reason):
                log.info(f"No attestation for {ticker} metric={metric_hash[:10]}...")
                return None
            raise AttestationReadError(f"getAttestation failed: {reason}")

        result = reply.get("result")
        if not result or result == "0x":
            raise AttestationReadError(
                f"getAttestation returned no data (is {self.oracle_address} the oracle contract?)"
            )
        try:
            return decode_attestation(result)
        except Exception as e:
            raise AttestationReadError(f"Cannot decode getAttestation result: {e}")


@dataclass(frozen=True)
class Reconciliation:
    non_gaap: Optional[OnchainAttestation]
    consensus: Optional[OnchainAttestation]

    @property
    def on_chain(self) -> bool:
        return self.non_gaap is not None or self.consensus is not None


async def reconcile(reader: AttestationReader, record) -> Reconciliation:
    """Read both metric attestations for a fact concurrently.

    Both reads always run to completion; the first hard failure is raised
    only after the other read has finished.
    """
    results = await asyncio.gather(
        reader.read(record.ticker, record.period_hash, record.metric_ids.non_gaap_eps),
        reader.read(record.ticker, record.period_hash, record.metric_ids.consensus_eps),
        return_exceptions=True,
    )
    for result in results:
        if isinstance(result, BaseException):
            raise result
    non_gaap, consensus = results
    return Reconciliation(non_gaap=non_gaap, consensus=consensus)


# ══════════════════════════════════════════════════════════════════════════════
# CLI
# ══════════════════════════════════════════════════════════════════════════════

def main(argv=None):
    parser = argparse.ArgumentParser(description="Read one SP500Oracle attestation")
    parser.add_argument("--ticker", required=True)
    parser.add_argument("--period", required=True, help="Period id, e.g. CY2025Q3")
    parser.add_argument("--metric", default=METRIC_LABELS["non_gaap_eps"])
    parser.add_argument("--rpc", default=DEFAULT_RPC_URL)
    parser.add_argument("--addr", default=DEFAULT_ORACLE_ADDRESS)
    args = parser.parse_args(argv)

    reader = AttestationReader(rpc_url=args.rpc, oracle_address=args.addr)
    try:
        attestation = asyncio.run(
            reader.read(args.ticker.upper(), to_bytes32(args.period), to_bytes32(args.metric))
        )
    except AttestationReadError as e:
        print(f"Failed to read attestation: {e}", file=sys.stderr)
        return 1

    print(json.dumps(attestation.to_dict() if attestation else None, indent=2))
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [onchain] %(message)s")
    sys.exit(main())
