# config.py
import os
from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv() # Load environment variables from .env file

RPC_URLS = {
    "mainnet": "https://arb1.arbitrum.io/rpc",
    "sepolia": "https://sepolia-rollup.arbitrum.io/rpc",
}

# Sperax USDs on Arbitrum
USDS_ADDRESS = "0xD74f5255D557944cf7Dd0E45FF521520002D5748"
USDS_VAULT_ADDRESS = "0x8EC1877698ACF262Fe8Ad8a295ad94D6ea258988"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 3003))


class TrackerConfig(BaseModel):
    """Runtime settings for the yield tracker and its rebase monitor."""
    network: str = "mainnet"
    rpc_url: str = RPC_URLS["mainnet"]
    usds_address: str = USDS_ADDRESS
    database_url: str = "sqlite:///./yield-tracker.db"
    token_decimals: int = 18
    # Seconds between denominator polls (backup detector)
    poll_interval: float = 60
    # Seconds between log-filter checks on the live subscription
    subscription_interval: float = 15
    # ~1 day of Arbitrum blocks
    lookback_blocks: int = 50_000
    snapshot_interval: float = 6 * 60 * 60
    # Percent, reported when no rebase has been seen in the window
    fallback_apy: str = "8.5"
    # Assumes one rebase per day; annualisation is only as good as this guess
    periods_per_year: int = 365

    @classmethod
    def from_env(cls) -> "TrackerConfig":
        network = os.getenv("NETWORK", "mainnet")
        return cls(
            network=network,
            rpc_url=os.getenv("ARBITRUM_RPC_URL") or RPC_URLS.get(network, RPC_URLS["mainnet"]),
            usds_address=os.getenv("USDS_ADDRESS", USDS_ADDRESS),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./yield-tracker.db"),
            token_decimals=int(os.getenv("TOKEN_DECIMALS", 18)),
            poll_interval=float(os.getenv("POLL_INTERVAL_SECONDS", 60)),
            subscription_interval=float(os.getenv("SUBSCRIPTION_INTERVAL_SECONDS", 15)),
            lookback_blocks=int(os.getenv("LOOKBACK_BLOCKS", 50_000)),
            snapshot_interval=float(os.getenv("SNAPSHOT_INTERVAL_SECONDS", 6 * 60 * 60)),
            fallback_apy=os.getenv("FALLBACK_APY", "8.5"),
            periods_per_year=int(os.getenv("PERIODS_PER_YEAR", 365)),
        )
