# facts/config.py
"""
Runtime configuration for the fact server.

Everything is read from the environment once, into an immutable Settings
object that is handed to create_app(). Network and price constants live
here as module-level values so CLIs and tests can import them directly.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

# ── Network ───────────────────────────────────────────────────────────────────

AVALANCHE_FUJI_CHAIN_ID = 43113
X402_NETWORK = "avalanche-fuji"
X402_SCHEME = "exact"
X402_VERSION = 1

USDC_FUJI_ADDRESS = "0x5425890298aed601595a70AB815c96711a31Bc65"
USDC_DECIMALS = 6

DEFAULT_RPC_URL = "https://api.avax-test.network/ext/bc/C/rpc"
DEFAULT_ORACLE_ADDRESS = "0xA17b8A538286f0415e0a5166440f0E452BF35968"
DEFAULT_FACILITATOR_URL = "https://api.thirdweb.com/v1/payments/x402"

# ── Prices (atomic USDC, 6 decimals) ──────────────────────────────────────────

DEFAULT_FACT_PRICE = "250000"   # $0.25
FEED_PRICE = "10000"            # $0.01
PM_PRICE = "150000"             # $0.15

# ── Paths ─────────────────────────────────────────────────────────────────────

ROOT_DIR = Path(__file__).resolve().parent.parent
DEFAULT_CACHE_PATH = ROOT_DIR / "data" / "facts_cache.json"
DEFAULT_LEDGER_PATH = ROOT_DIR / "attestations_posted.jsonl"

DEFAULT_FEED_URL = "https://sabaki.ai/feed"
DEFAULT_PM_URL = "https://sabaki.ai/pm"


def _flag(value):
    return (value or "").strip().lower() in ("1", "true", "yes")


def _strip_slash(value):
    return (value or "").rstrip("/")


@dataclass(frozen=True)
class Settings:
    thirdweb_secret_key: str = ""
    thirdweb_server_wallet: str = ""
    merchant_wallet: str = ""
    facilitator_url: str = DEFAULT_FACILITATOR_URL
    fact_price: str = DEFAULT_FACT_PRICE
    allow_unpaid: bool = False
    bundle_private_key: str = ""
    cache_path: Path = DEFAULT_CACHE_PATH
    reuse_cache_snapshot: bool = False
    rpc_url: str = DEFAULT_RPC_URL
    oracle_address: str = DEFAULT_ORACLE_ADDRESS
    feed_url: str = DEFAULT_FEED_URL
    pm_url: str = DEFAULT_PM_URL
    port: int = 3000
    debug_env_prefixes: tuple = field(
        default=("THIRDWEB", "MERCHANT", "SABAKI", "FACT", "FUJI", "SP500")
    )

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            thirdweb_secret_key=env.get("THIRDWEB_SECRET_KEY", ""),
            thirdweb_server_wallet=env.get("THIRDWEB_SERVER_WALLET_ADDRESS", ""),
            merchant_wallet=env.get("MERCHANT_WALLET_ADDRESS", ""),
            facilitator_url=_strip_slash(env.get("FACILITATOR_URL")) or DEFAULT_FACILITATOR_URL,
            fact_price=env.get("FACT_PRICE_AMOUNT") or DEFAULT_FACT_PRICE,
            allow_unpaid=_flag(env.get("ALLOW_UNPAID_FACTS")),
            bundle_private_key=env.get("FACT_BUNDLE_PRIVATE_KEY", ""),
            cache_path=Path(env.get("FACT_CACHE_PATH") or DEFAULT_CACHE_PATH),
            reuse_cache_snapshot=_flag(env.get("FACT_CACHE_REUSE")),
            rpc_url=env.get("FUJI_RPC_URL") or DEFAULT_RPC_URL,
            oracle_address=env.get("SP500_ORACLE_ADDR") or DEFAULT_ORACLE_ADDRESS,
            feed_url=env.get("SABAKI_FEED_URL") or DEFAULT_FEED_URL,
            pm_url=env.get("SABAKI_PM_URL") or DEFAULT_PM_URL,
            port=int(env.get("FACTS_PORT", "3000")),
        )
