# tests/test_builder.py
import json
import os
import stat

import pytest

from facts.builder import build_cache, main, read_ledger
from facts.onchain import to_bytes32
from facts.store import FactCache
from tests.conftest import CONSENSUS_ID, NON_GAAP_ID, write_ledger


def test_build_cache_from_ledger(cache_path, ledger_path):
    corpus = FactCache(cache_path).load()

    assert set(corpus.facts) == {"ICUI::CY2025Q3", "ACME::CY2025Q1", "ACME::CY2025Q2"}
    assert corpus.source == str(ledger_path)
    assert corpus.generated_at.endswith("Z")

    icui = corpus.facts["ICUI::CY2025Q3"]
    assert icui.ticker == "ICUI"
    assert icui.period_hash == to_bytes32("CY2025Q3")
    assert icui.ticker_hash == to_bytes32("ICUI")
    assert icui.metric_ids.non_gaap_eps == NON_GAAP_ID
    assert icui.metric_ids.consensus_eps == CONSENSUS_ID
    assert icui.non_gaap_eps == 1.82
    assert icui.consensus_eps == 1.75
    assert icui.market_consensus_eps == 1.77
    assert icui.market_outcome == "beat"
    assert icui.provenance.updated_at == "2025-10-30T12:00:00Z"
    assert icui.attestation_snapshot.tx_hash == "0xabc"
    assert icui.attestation_snapshot.observed_at == 1761825600


def test_lenient_numbers(cache_path):
    corpus = FactCache(cache_path).load()
    assert corpus.facts["ACME::CY2025Q2"].consensus_eps is None
    assert corpus.facts["ACME::CY2025Q1"].consensus_eps is None


def test_dedupe_greater_timestamp_wins():
    lines = [
        json.dumps({"status": "posted", "ticker": "ACME", "periodId": "Q", "updated": "2025-02-01", "n": 1}),
        json.dumps({"status": "posted", "ticker": "ACME", "periodId": "Q", "updated": "2025-01-01", "n": 2}),
    ]
    assert read_ledger(lines)["ACME::Q"]["n"] == 1


def test_dedupe_equal_timestamp_later_line_wins():
    lines = [
        json.dumps({"status": "posted", "ticker": "ACME", "periodId": "Q", "updated": "2025-02-01", "n": 1}),
        json.dumps({"status": "posted", "ticker": "acme", "periodId": "Q", "updated": "2025-02-01", "n": 2}),
    ]
    assert read_ledger(lines)["ACME::Q"]["n"] == 2


def test_dedupe_falls_back_to_time_field():
    lines = [
        json.dumps({"status": "posted", "ticker": "ACME", "periodId": "Q", "time": "2025-03-01", "n": 1}),
        json.dumps({"status": "posted", "ticker": "ACME", "periodId": "Q", "time": "2025-01-01", "n": 2}),
    ]
    assert read_ledger(lines)["ACME::Q"]["n"] == 1


def test_skips_unposted_incomplete_and_malformed(caplog):
    lines = [
        "",
        "{broken",
        json.dumps(["not", "an", "object"]),
        json.dumps({"status": "pending", "ticker": "ACME", "periodId": "Q"}),
        json.dumps({"status": "POSTED", "ticker": "", "periodId": "Q"}),
        json.dumps({"status": "posted", "ticker": "ACME"}),
        json.dumps({"status": "Posted", "ticker": "ACME", "periodId": "Q"}),
    ]
    with caplog.at_level("WARNING", logger="facts.builder"):
        rows = read_ledger(lines)
    assert list(rows) == ["ACME::Q"]
    assert "Skipping malformed line 2" in caplog.text


def test_limit_counts_posted_rows():
    lines = [
        json.dumps({"status": "posted", "ticker": t, "periodId": "Q"})
        for t in ("A", "B", "C")
    ]
    assert list(read_ledger(lines, limit=2)) == ["A::Q", "B::Q"]


def test_missing_ledger(tmp_path):
    with pytest.raises(FileNotFoundError):
        build_cache(tmp_path / "nope.jsonl", tmp_path / "out.json")


def test_write_replaces_whole_file_without_leftovers(tmp_path):
    ledger = write_ledger(tmp_path / "ledger.jsonl", [
        {"status": "posted", "ticker": "ACME", "periodId": "Q1"},
    ])
    out = tmp_path / "nested" / "dir" / "cache.json"
    build_cache(ledger, out)
    write_ledger(ledger, [{"status": "posted", "ticker": "ACME", "periodId": "Q2"}])
    build_cache(ledger, out)

    assert list(FactCache(out).load().facts) == ["ACME::Q2"]
    assert [p.name for p in out.parent.iterdir()] == ["cache.json"]


def test_cli(tmp_path, ledger_path, capsys):
    out = tmp_path / "cli" / "facts_cache.json"
    assert main(["--input", str(ledger_path), "--out", str(out)]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["facts"] == 3
    assert out.exists()


def test_cli_missing_input(tmp_path):
    assert main(["--input", str(tmp_path / "missing.jsonl"), "--out", str(tmp_path / "o.json")]) == 1


@pytest.mark.parametrize("limit", [0, -3])
def test_non_positive_limit_means_no_limit(limit):
    lines = [
        json.dumps({"status": "posted", "ticker": t, "periodId": "Q"})
        for t in ("A", "B", "C")
    ]
    assert list(read_ledger(lines, limit=limit)) == ["A::Q", "B::Q", "C::Q"]


def test_written_cache_is_readable_by_other_users(tmp_path, ledger_path):
    out = tmp_path / "shared" / "facts_cache.json"
    previous = os.umask(0o022)
    try:
        build_cache(ledger_path, out)
    finally:
        os.umask(previous)
    assert stat.S_IMODE(os.stat(out).st_mode) == 0o644
