# facts/store.py
"""
Fact corpus model and point-lookup cache.

The corpus is a single JSON snapshot written by facts.builder:

  {
    "meta":  {"generated_at": "...", "source": "/path/to/ledger.jsonl"},
    "facts": {"ICUI::CY2025Q3": {...FactRecord...}, ...}
  }

Records are immutable once loaded. A rebuilt corpus replaces the whole
snapshot; nothing here patches individual records.
"""

import json
import logging
import math
import re
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from facts.errors import CacheUnavailable

log = logging.getLogger("facts.store")

SCHEMA_ID = "SEC_EPS_V1"


# ── Lenient coercion ──────────────────────────────────────────────────────────

def parse_number(value) -> Optional[float]:
    """Numbers and numeric strings pass; anything else becomes None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


_FRACTION = re.compile(r"\.(\d+)")


def parse_timestamp(value) -> float:
    """ISO-8601 timestamp or date to epoch seconds; unparsable sorts as 0."""
    if not isinstance(value, str) or not value.strip():
        return 0.0
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat before 3.11 only takes 3 or 6 fractional digits
    text = _FRACTION.sub(lambda m: "." + m.group(1).ljust(6, "0")[:6], text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return 0.0
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def fact_key(ticker: str, period_id: str) -> str:
    return f"{ticker}::{period_id}"


# ── Corpus model ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Provenance:
    filing_url: Optional[str] = None
    exhibit_url: Optional[str] = None
    dedupe_id: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class AttestationSnapshot:
    """Ledger-side claims about the on-chain posting. Not chain-confirmed."""

    tx_hash: Optional[str] = None
    evidence_hash: Optional[str] = None
    url_hash: Optional[str] = None
    observed_at: Optional[int] = None


@dataclass(frozen=True)
class MetricIds:
    non_gaap_eps: str
    consensus_eps: str


@dataclass(frozen=True)
class FactRecord:
    ticker: str
    period_id: str
    period_hash: str
    ticker_hash: str
    metric_ids: MetricIds
    schema_id: str = SCHEMA_ID
    non_gaap_eps: Optional[float] = None
    consensus_eps: Optional[float] = None
    market_consensus_eps: Optional[float] = None
    market_url: Optional[str] = None
    market_outcome: Optional[str] = None
    provenance: Provenance = field(default_factory=Provenance)
    attestation_snapshot: AttestationSnapshot = field(default_factory=AttestationSnapshot)

    @property
    def key(self) -> str:
        return fact_key(self.ticker, self.period_id)

    @classmethod
    def from_dict(cls, raw: dict) -> "FactRecord":
        metric_ids = raw["metric_ids"]
        provenance = raw.get("provenance") or {}
        snapshot = raw.get("attestation_snapshot") or {}
        return cls(
            schema_id=raw.get("schema_id", SCHEMA_ID),
            ticker=raw["ticker"],
            period_id=raw["period_id"],
            period_hash=raw["period_hash"],
            ticker_hash=raw["ticker_hash"],
            metric_ids=MetricIds(
                non_gaap_eps=metric_ids["non_gaap_eps"],
                consensus_eps=metric_ids["consensus_eps"],
            ),
            non_gaap_eps=parse_number(raw.get("non_gaap_eps")),
            consensus_eps=parse_number(raw.get("consensus_eps")),
            market_consensus_eps=parse_number(raw.get("market_consensus_eps")),
            market_url=raw.get("market_url"),
            market_outcome=raw.get("market_outcome"),
            provenance=Provenance(
                filing_url=provenance.get("filing_url"),
                exhibit_url=provenance.get("exhibit_url"),
                dedupe_id=provenance.get("dedupe_id"),
                updated_at=provenance.get("updated_at"),
            ),
            attestation_snapshot=AttestationSnapshot(
                tx_hash=snapshot.get("tx_hash"),
                evidence_hash=snapshot.get("evidence_hash"),
                url_hash=snapshot.get("url_hash"),
                observed_at=snapshot.get("observed_at"),
            ),
        )

    def to_dict(self) -> dict:
        return {
            "schema_id": self.schema_id,
            "ticker": self.ticker,
            "period_id": self.period_id,
            "period_hash": self.period_hash,
            "ticker_hash": self.ticker_hash,
            "metric_ids": asdict(self.metric_ids),
            "non_gaap_eps": self.non_gaap_eps,
            "consensus_eps": self.consensus_eps,
            "market_consensus_eps": self.market_consensus_eps,
            "market_url": self.market_url,
            "market_outcome": self.market_outcome,
            "provenance": asdict(self.provenance),
            "attestation_snapshot": asdict(self.attestation_snapshot),
        }


@dataclass(frozen=True)
class FactCacheFile:
    generated_at: str
    source: str
    facts: dict

    @classmethod
    def from_dict(cls, raw, origin="<memory>") -> "FactCacheFile":
        if not isinstance(raw, dict) or not isinstance(raw.get("facts"), dict):
            raise CacheUnavailable(f"Fact cache missing facts map: {origin}")
        meta = raw.get("meta") or {}

        facts = {}
        for key, entry in raw["facts"].items():
            try:
                record = FactRecord.from_dict(entry)
            except (KeyError, TypeError, AttributeError) as e:
                raise CacheUnavailable(f"Malformed fact {key!r} in {origin}: {e}")
            if record.key != key:
                raise CacheUnavailable(f"Fact key {key!r} does not match record {record.key!r}")
            facts[key] = record

        return cls(
            generated_at=meta.get("generated_at", ""),
            source=meta.get("source", ""),
            facts=facts,
        )

    def to_dict(self) -> dict:
        return {
            "meta": {"generated_at": self.generated_at, "source": self.source},
            "facts": {key: record.to_dict() for key, record in self.facts.items()},
        }


# ── Cache ─────────────────────────────────────────────────────────────────────

class FactCache:
    """Loads corpus snapshots from disk.

    With reuse_snapshot the first successful load is kept for the life of the
    process; otherwise every load() re-reads the file so a rebuilt corpus is
    picked up immediately.
    """

    def __init__(self, path, reuse_snapshot=False):
        self.path = Path(path)
        self.reuse_snapshot = reuse_snapshot
        self._snapshot = None
        self._lock = threading.Lock()

    def load(self) -> FactCacheFile:
        if self.reuse_snapshot and self._snapshot is not None:
            return self._snapshot

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CacheUnavailable(f"Cannot read fact cache {self.path}: {e}")
        snapshot = FactCacheFile.from_dict(raw, origin=str(self.path))

        if self.reuse_snapshot:
            with self._lock:
                if self._snapshot is None:
                    self._snapshot = snapshot
                return self._snapshot
        return snapshot


def lookup(cache: FactCacheFile, ticker: str, period_id: Optional[str] = None) -> Optional[FactRecord]:
    """Find one fact by ticker and period, or the latest for the ticker."""
    ticker = ticker.upper()

    if period_id:
        return cache.facts.get(fact_key(ticker, period_id))

    best = None
    best_ts = None
    for record in cache.facts.values():
        if record.ticker != ticker:
            continue
        ts = parse_timestamp(record.provenance.updated_at)
        # strict > keeps the first record on ties
        if best is None or ts > best_ts:
            best, best_ts = record, ts
    return best


def list_facts(cache: FactCacheFile) -> list:
    return [
        {
            "ticker": record.ticker,
            "periodId": record.period_id,
            "updated": record.provenance.updated_at,
        }
        for record in cache.facts.values()
    ]
