"""Configuration management for the RippleBids settlement core"""

import os
import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, Optional

from utils.payment_errors import UnsupportedChainError

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")

    # Network profile: mainnet or testnet token/recipient address sets
    SETTLEMENT_NETWORK = os.getenv("SETTLEMENT_NETWORK", "mainnet").lower().strip()

    # Chain RPC endpoints (override the profile defaults)
    XRPL_RPC_URL = os.getenv("XRPL_RPC_URL")
    XRPL_EVM_RPC_URL = os.getenv("XRPL_EVM_RPC_URL")
    SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL")

    # Platform wallet credentials used for payouts (release / auto-release)
    XRPL_PLATFORM_SEED = os.getenv("XRPL_PLATFORM_SEED", os.getenv("XRPL_PRIVATE_KEY"))
    XRPL_EVM_PLATFORM_PRIVATE_KEY = os.getenv(
        "XRPL_EVM_PLATFORM_PRIVATE_KEY", os.getenv("ESCROW_XRPL_EVM_PRIVATE_KEY")
    )
    SOLANA_PLATFORM_SEED_PHRASE = os.getenv("SOLANA_PLATFORM_SEED_PHRASE", os.getenv("SOLANA_PRIVATE_KEY"))

    # Escrow recipient overrides
    ESCROW_XRPL_WALLET = os.getenv("ESCROW_XRPL_WALLET")
    ESCROW_XRPL_EVM_WALLET = os.getenv("ESCROW_XRPL_EVM_WALLET")
    ESCROW_SOLANA_WALLET = os.getenv("ESCROW_SOLANA_WALLET")

    # Auth
    JWT_SECRET = os.getenv("JWT_SECRET")
    JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
    CRON_SECRET = os.getenv("CRON_SECRET")

    # XRPL payment verification
    XRPL_PAYMENT_TOLERANCE_RATE = Decimal(os.getenv("XRPL_PAYMENT_TOLERANCE_RATE", "0.09"))
    XRPL_PAYMENT_MIN_TOLERANCE = Decimal(os.getenv("XRPL_PAYMENT_MIN_TOLERANCE", "0.001"))
    XRPL_VERIFY_POLL_INTERVAL = float(os.getenv("XRPL_VERIFY_POLL_INTERVAL", "10"))  # seconds
    XRPL_VERIFY_TIMEOUT = int(os.getenv("XRPL_VERIFY_TIMEOUT", "300"))  # seconds
    XRPL_VERIFY_CLOCK_SKEW = int(os.getenv("XRPL_VERIFY_CLOCK_SKEW", "60"))  # seconds

    # Price oracle
    PRICE_SOURCE_TIMEOUT = float(os.getenv("PRICE_SOURCE_TIMEOUT", "8"))  # seconds, per source
    PRICE_CACHE_TTL = int(os.getenv("PRICE_CACHE_TTL", "20"))  # seconds

    # Escrow lifecycle
    AUTO_RELEASE_DAYS = int(os.getenv("AUTO_RELEASE_DAYS", "20"))
    AUTO_RELEASE_INTERVAL_MINUTES = int(os.getenv("AUTO_RELEASE_INTERVAL_MINUTES", "60"))
    PLATFORM_FEE_RATE = Decimal(os.getenv("PLATFORM_FEE_RATE", "0.025"))
    EVM_MIN_GAS_BALANCE = Decimal(os.getenv("EVM_MIN_GAS_BALANCE", "0.001"))

    # Reconciliation
    OUTBOX_MAX_RETRIES = int(os.getenv("OUTBOX_MAX_RETRIES", "10"))
    RELEASE_CLAIM_STALE_MINUTES = int(os.getenv("RELEASE_CLAIM_STALE_MINUTES", "15"))

    ENABLE_SETTLEMENT_SCHEDULER = os.getenv("ENABLE_SETTLEMENT_SCHEDULER", "true").lower() == "true"

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info(f"🔧 Settlement Environment Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Network: {Config.SETTLEMENT_NETWORK}")
        logger.info(f"   XRPL payout wallet: {'configured' if Config.XRPL_PLATFORM_SEED else 'MISSING'}")
        logger.info(f"   XRPL-EVM payout wallet: {'configured' if Config.XRPL_EVM_PLATFORM_PRIVATE_KEY else 'MISSING'}")
        logger.info(f"   Solana payout wallet: {'configured' if Config.SOLANA_PLATFORM_SEED_PHRASE else 'MISSING'}")
        logger.info(f"   Auto-release after: {Config.AUTO_RELEASE_DAYS} days")
        logger.info(f"   XRPL tolerance: {Config.XRPL_PAYMENT_TOLERANCE_RATE} (min {Config.XRPL_PAYMENT_MIN_TOLERANCE})")
        if not Config.JWT_SECRET:
            logger.warning("⚠️ JWT_SECRET not set - authenticated endpoints will reject every request")
        if not Config.CRON_SECRET:
            logger.warning("⚠️ CRON_SECRET not set - cron endpoint will reject every request")


@dataclass(frozen=True)
class ChainTokenConfig:
    """Platform token and escrow recipient for one chain"""
    chain: str
    rpc_url: str
    recipient: str
    decimals: int
    # XRPL issued currency
    currency: Optional[str] = None
    currency_hex: Optional[str] = None
    issuer: Optional[str] = None
    # XRPL-EVM ERC-20 / Solana SPL
    token_address: Optional[str] = None
    chain_id: Optional[int] = None
    explorer_url: Optional[str] = None


@dataclass(frozen=True)
class SettlementConfig:
    """Network profile injected into the oracle, adapters, verifier and orchestrator"""
    network: str
    chains: Dict[str, ChainTokenConfig]
    tolerance_rate: Decimal = Decimal("0.09")
    min_tolerance: Decimal = Decimal("0.001")
    poll_interval: float = 10.0
    verify_timeout: int = 300
    clock_skew_seconds: int = 60
    auto_release_days: int = 20
    platform_fee_rate: Decimal = Decimal("0.025")
    evm_min_gas_balance: Decimal = Decimal("0.001")
    price_source_timeout: float = 8.0
    price_cache_ttl: int = 20

    def for_chain(self, chain) -> ChainTokenConfig:
        key = getattr(chain, "value", chain)
        try:
            return self.chains[key]
        except KeyError:
            raise UnsupportedChainError(f"Unsupported chain: {key}")


XRPB_CURRENCY = "XRPB"
XRPB_CURRENCY_HEX = "5852504200000000000000000000000000000000"
XRPB_ISSUER = "rsEaYfqdZKNbD3SK55xzcjPm3nDrMj4aUT"
XRPB_SOLANA_MINT = "FJLz7hP4EXVMVnRBtP77V4k55t2BfXuajKQp1gcwpump"

NETWORK_PROFILES = {
    "mainnet": {
        "xrpl": dict(
            rpc_url="https://xrplcluster.com/",
            recipient="rpeh58KQ7cs76Aa2639LYT2hpw4D6yrSDq",
            decimals=6,
            currency=XRPB_CURRENCY,
            currency_hex=XRPB_CURRENCY_HEX,
            issuer=XRPB_ISSUER,
            explorer_url="https://livenet.xrpl.org/transactions/",
        ),
        "xrpl_evm": dict(
            rpc_url="https://rpc.xrplevm.org",
            recipient="0x5716dD191878F342A72633665F852bd0534B9Bc1",
            decimals=18,
            token_address="0x6d8630D167458b337A2c8b6242c354d2f4f75D96",
            chain_id=1440000,
            explorer_url="https://explorer.xrplevm.org/tx/",
        ),
        "solana": dict(
            rpc_url="https://api.mainnet-beta.solana.com",
            recipient="H3Xri4JAdrz645q5iCaqK1BX4sVK6iZLGmKXKYEVUz3A",
            decimals=6,
            token_address=XRPB_SOLANA_MINT,
            explorer_url="https://solscan.io/tx/",
        ),
    },
    "testnet": {
        "xrpl": dict(
            rpc_url="https://s.altnet.rippletest.net:51234/",
            recipient="rEKpA2YoapyM8aTQGcEeCQVCaPKk1ZCCvA",
            decimals=6,
            currency=XRPB_CURRENCY,
            currency_hex=XRPB_CURRENCY_HEX,
            issuer=XRPB_ISSUER,
            explorer_url="https://testnet.xrpl.org/transactions/",
        ),
        "xrpl_evm": dict(
            rpc_url="https://rpc.testnet.xrplevm.org",
            recipient="0x5716dD191878F342A72633665F852bd0534B9Bc1",
            decimals=18,
            token_address="0x2557C801144b11503BB524C5503AcCd48E5F54fE",
            chain_id=1449000,
            explorer_url="https://explorer.testnet.xrplevm.org/tx/",
        ),
        "solana": dict(
            rpc_url="https://api.devnet.solana.com",
            recipient="2ZTgNc4tCnZsrvMQtRu5fJGVwkhy6ZuZaAtUgDb9dxd5",
            decimals=6,
            token_address=XRPB_SOLANA_MINT,
            explorer_url="https://solscan.io/tx/",
        ),
    },
}

_RPC_OVERRIDES = {
    "xrpl": lambda: Config.XRPL_RPC_URL,
    "xrpl_evm": lambda: Config.XRPL_EVM_RPC_URL,
    "solana": lambda: Config.SOLANA_RPC_URL,
}

_RECIPIENT_OVERRIDES = {
    "xrpl": lambda: Config.ESCROW_XRPL_WALLET,
    "xrpl_evm": lambda: Config.ESCROW_XRPL_EVM_WALLET,
    "solana": lambda: Config.ESCROW_SOLANA_WALLET,
}


def build_settlement_config(network: Optional[str] = None) -> SettlementConfig:
    """Build the settlement profile for a network, applying environment overrides"""
    network = (network or Config.SETTLEMENT_NETWORK or "mainnet").lower()
    if network not in NETWORK_PROFILES:
        raise ValueError(f"Unknown SETTLEMENT_NETWORK '{network}' (expected mainnet or testnet)")

    chains = {}
    for chain, profile in NETWORK_PROFILES[network].items():
        token = ChainTokenConfig(chain=chain, **profile)
        overrides = {}
        rpc_url = _RPC_OVERRIDES[chain]()
        if rpc_url:
            overrides["rpc_url"] = rpc_url
        recipient = _RECIPIENT_OVERRIDES[chain]()
        if recipient:
            overrides["recipient"] = recipient
        chains[chain] = replace(token, **overrides) if overrides else token

    return SettlementConfig(
        network=network,
        chains=chains,
        tolerance_rate=Config.XRPL_PAYMENT_TOLERANCE_RATE,
        min_tolerance=Config.XRPL_PAYMENT_MIN_TOLERANCE,
        poll_interval=Config.XRPL_VERIFY_POLL_INTERVAL,
        verify_timeout=Config.XRPL_VERIFY_TIMEOUT,
        clock_skew_seconds=Config.XRPL_VERIFY_CLOCK_SKEW,
        auto_release_days=Config.AUTO_RELEASE_DAYS,
        platform_fee_rate=Config.PLATFORM_FEE_RATE,
        evm_min_gas_balance=Config.EVM_MIN_GAS_BALANCE,
        price_source_timeout=Config.PRICE_SOURCE_TIMEOUT,
        price_cache_ttl=Config.PRICE_CACHE_TTL,
    )


_settlement_config: Optional[SettlementConfig] = None


def get_settlement_config() -> SettlementConfig:
    """Get the process-wide settlement profile"""
    global _settlement_config
    if _settlement_config is None:
        _settlement_config = build_settlement_config()
    return _settlement_config
