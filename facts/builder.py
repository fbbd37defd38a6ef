# facts/builder.py
"""
Fact cache builder.

Folds the append-only attestation ledger (one JSON posting event per line)
into the corpus snapshot served by facts.store.

  - only rows with status "posted" and both ticker and periodId count
  - rows are keyed TICKER::periodId, last write wins: a row replaces the
    current entry when its updated (or time) stamp is >= the existing one,
    so among equal stamps the later line in the file wins
  - period, ticker and the two metric labels are keccak-hashed into the
    bytes32 keys the on-chain oracle is indexed by

Usage:
  python -m facts.builder
  python -m facts.builder --input attestations_posted.jsonl --out data/facts_cache.json --limit 500
"""

import argparse
import json
import logging
import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from facts.config import DEFAULT_CACHE_PATH, DEFAULT_LEDGER_PATH
from facts.onchain import METRIC_LABELS, to_bytes32
from facts.store import (
    SCHEMA_ID,
    AttestationSnapshot,
    FactCacheFile,
    FactRecord,
    MetricIds,
    Provenance,
    fact_key,
    parse_number,
    parse_timestamp,
)

log = logging.getLogger("facts.builder")


def row_timestamp(row: dict) -> float:
    return parse_timestamp(row.get("updated") or row.get("time"))


def pick_latest(existing, row) -> bool:
    """True when row should replace existing."""
    if existing is None:
        return True
    return row_timestamp(row) >= row_timestamp(existing)


def _first_tx_hash(row: dict):
    tx_hashes = row.get("tx_hashes")
    if isinstance(tx_hashes, list):
        return next((tx for tx in tx_hashes if isinstance(tx, str) and tx), None)
    return row.get("tx_hash") or None


def read_ledger(lines, limit=None) -> dict:
    """Fold ledger lines into {key: row}, applying last-write-wins.

    A limit of zero or less means no limit.
    """
    if limit is not None and limit <= 0:
        limit = None
    rows = {}
    accepted = 0

    for lineno, line in enumerate(lines, start=1):
        if not line or not line.strip():
            continue
        try:
            row = json.loads(line)
        except ValueError as e:
            log.warning(f"Skipping malformed line {lineno}: {e}")
            continue
        if not isinstance(row, dict):
            log.warning(f"Skipping non-object line {lineno}")
            continue

        if str(row.get("status") or "").lower() != "posted":
            continue
        ticker = str(row.get("ticker") or "").upper()
        period_id = str(row.get("periodId") or "")
        if not ticker or not period_id:
            continue

        key = fact_key(ticker, period_id)
        if pick_latest(rows.get(key), row):
            rows[key] = row

        accepted += 1
        if limit is not None and accepted >= limit:
            break

    return rows


def build_record(key: str, row: dict) -> FactRecord:
    ticker, period_id = key.split("::", 1)
    observed_at = row.get("observed_at")
    if isinstance(observed_at, bool) or not isinstance(observed_at, (int, float)):
        observed_at = None
    return FactRecord(
        schema_id=SCHEMA_ID,
        ticker=ticker,
        period_id=period_id,
        period_hash=to_bytes32(period_id),
        ticker_hash=to_bytes32(ticker),
        metric_ids=MetricIds(
            non_gaap_eps=to_bytes32(METRIC_LABELS["non_gaap_eps"]),
            consensus_eps=to_bytes32(METRIC_LABELS["consensus_eps"]),
        ),
        non_gaap_eps=parse_number(row.get("non_gaap_eps")),
        consensus_eps=parse_number(row.get("consensus_eps")),
        market_consensus_eps=parse_number(row.get("pm_consensus_eps")),
        market_url=row.get("pm_market_url") or None,
        market_outcome=row.get("pm_chain_outcome") or None,
        provenance=Provenance(
            filing_url=row.get("filing_url") or None,
            exhibit_url=row.get("exhibit_url") or None,
            dedupe_id=row.get("dedupe_id") or None,
            updated_at=row.get("updated") or row.get("time") or None,
        ),
        attestation_snapshot=AttestationSnapshot(
            tx_hash=_first_tx_hash(row),
            evidence_hash=row.get("evidence_hash_actual") or None,
            url_hash=row.get("url_hash_actual") or None,
            observed_at=observed_at,
        ),
    )


def current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


def write_cache(cache: FactCacheFile, out_path: Path):
    """Write the full snapshot next to its target, then swap it into place."""
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{out_path.name}.", dir=str(out_path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(cache.to_dict(), f, indent=2)
        # published mode follows the umask, not mkstemp's 0600
        os.chmod(tmp_name, 0o666 & ~current_umask())
        os.replace(tmp_name, out_path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def build_cache(input_path, out_path, limit=None) -> FactCacheFile:
    input_path = Path(input_path)
    out_path = Path(out_path)
    if not input_path.exists():
        raise FileNotFoundError(f"Ledger file not found: {input_path}")

    with open(input_path, encoding="utf-8") as f:
        rows = read_ledger(f, limit=limit)

    cache = FactCacheFile(
        generated_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        source=str(input_path),
        facts={key: build_record(key, row) for key, row in rows.items()},
    )
    write_cache(cache, out_path)
    log.info(f"Wrote {len(cache.facts)} facts to {out_path}")
    return cache


# ══════════════════════════════════════════════════════════════════════════════
# CLI
# ══════════════════════════════════════════════════════════════════════════════

def main(argv=None):
    parser = argparse.ArgumentParser(description="Build the fact cache from the attestation ledger")
    parser.add_argument("--input", type=Path,
                        default=Path(os.environ.get("LEDGER_PATH") or DEFAULT_LEDGER_PATH),
                        help=f"Ledger JSONL (default: {DEFAULT_LEDGER_PATH})")
    parser.add_argument("--out", type=Path,
                        default=Path(os.environ.get("FACT_CACHE_PATH") or DEFAULT_CACHE_PATH),
                        help=f"Cache output (default: {DEFAULT_CACHE_PATH})")
    parser.add_argument("--limit", type=int, default=None,
                        help="Stop after N posted rows (0 or less: no limit)")
    args = parser.parse_args(argv)

    try:
        cache = build_cache(args.input, args.out, limit=args.limit)
    except FileNotFoundError as e:
        log.error(str(e))
        return 1

    print(json.dumps({
        "facts": len(cache.facts),
        "generated_at": cache.generated_at,
        "cache": str(args.out.resolve()),
    }, indent=2))
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [builder] %(message)s")
    sys.exit(main())
