"""Configuration management for the custodial ledger and settlement engine"""

import os
import logging
from decimal import Decimal
from typing import Dict, Any, List

logger = logging.getLogger(__name__)


def _decimal_env(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(str(raw).strip())
    except Exception:
        logger.warning(f"⚠️ CONFIG: Invalid decimal for {name}={raw!r}, using default {default}")
        return Decimal(default)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ CONFIG: Invalid integer for {name}={raw!r}, using default {default}")
        return default


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL")

    # Chain access
    RPC_URL = os.getenv("ALCHEMY_RPC_URL") or os.getenv("RPC_URL")
    RPC_TIMEOUT_SECONDS = _int_env("RPC_TIMEOUT_SECONDS", 60)
    CHAIN_ID = _int_env("CHAIN_ID", 1)

    # Supported ERC-20 tokens (USDC on Ethereum mainnet by default)
    USDC_CONTRACT_ADDRESS = os.getenv(
        "USDC_CONTRACT_ADDRESS", "0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48"
    )
    USDC_DECIMALS = _int_env("USDC_DECIMALS", 6)
    USDT_CONTRACT_ADDRESS = os.getenv(
        "USDT_CONTRACT_ADDRESS", "0xdac17f958d2ee523a2206206994597c13d831ec7"
    )
    USDT_DECIMALS = _int_env("USDT_DECIMALS", 6)
    DEPOSIT_TOKEN = os.getenv("DEPOSIT_TOKEN", "USDC").upper()

    # Platform wallets
    TRADING_DESK_WALLET_ADDRESS = os.getenv("TRADING_DESK_WALLET_ADDRESS")
    HS_DEVOPS_WALLET_ADDRESS = os.getenv("HS_DEVOPS_WALLET_ADDRESS") or os.getenv("DEVOPS_WALLET_ADDRESS")
    HOT_WALLET_PRIVATE_KEY = os.getenv("HOT_WALLET_PRIVATE_KEY")

    # Custodial key store (32-byte AES-256-GCM key)
    ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY")

    # Vault economics
    DEPOSIT_FEE_PERCENTAGE = _decimal_env("DEPOSIT_FEE_PERCENTAGE", "20")

    # Deposit scanning
    FINALITY_BUFFER_BLOCKS = _int_env("FINALITY_BUFFER_BLOCKS", 5)
    MAX_SCAN_CHUNK_BLOCKS = _int_env("MAX_SCAN_CHUNK_BLOCKS", 500)
    DEPOSIT_SCAN_START_BLOCK = _int_env("DEPOSIT_SCAN_START_BLOCK", 0)
    DEPOSIT_SCAN_INTERVAL_SECONDS = _int_env("DEPOSIT_SCAN_INTERVAL_SECONDS", 15)

    # Gas cushion
    GAS_CUSHION_ETH = _decimal_env("GAS_CUSHION_ETH", "0.003")
    GAS_FUND_COOLDOWN_SECONDS = _int_env("GAS_FUND_COOLDOWN_SECONDS", 120)
    GAS_FUNDING_TIMEOUT_SECONDS = _int_env("GAS_FUNDING_TIMEOUT_SECONDS", 180)
    WITHDRAWAL_GAS_BUFFER_PERCENT = _decimal_env("WITHDRAWAL_GAS_BUFFER_PERCENT", "10")
    TOKEN_TRANSFER_GAS_LIMIT = _int_env("TOKEN_TRANSFER_GAS_LIMIT", 100000)

    # Capital sweeps
    SWEEP_INTERVAL_SECONDS = _int_env("SWEEP_INTERVAL_SECONDS", 600)
    SWEEP_INTER_POSITION_DELAY_SECONDS = _int_env("SWEEP_INTER_POSITION_DELAY_SECONDS", 5)
    SWEEP_CONFIRMATION_TIMEOUT_SECONDS = _int_env("SWEEP_CONFIRMATION_TIMEOUT_SECONDS", 300)

    # Withdrawals
    WITHDRAWAL_QUEUE_INTERVAL_SECONDS = _int_env("WITHDRAWAL_QUEUE_INTERVAL_SECONDS", 45)
    WITHDRAWAL_CONFIRMATION_TIMEOUT_SECONDS = _int_env("WITHDRAWAL_CONFIRMATION_TIMEOUT_SECONDS", 300)
    REQUIRED_SWEEP_CONFIRMATIONS = _int_env("REQUIRED_SWEEP_CONFIRMATIONS", 3)
    VAULT_WITHDRAWAL_SETTLEMENT_INTERVAL_SECONDS = _int_env(
        "VAULT_WITHDRAWAL_SETTLEMENT_INTERVAL_SECONDS", 300
    )

    # Job guard
    JOB_LOCK_TTL_SECONDS = _int_env("JOB_LOCK_TTL_SECONDS", 1800)
    ENABLE_DISTRIBUTED_JOB_LOCKS = os.getenv("ENABLE_DISTRIBUTED_JOB_LOCKS", "true").lower() == "true"

    @staticmethod
    def get_supported_tokens() -> Dict[str, Dict[str, Any]]:
        """Token symbol -> contract address and decimals"""
        return {
            "USDC": {"address": Config.USDC_CONTRACT_ADDRESS, "decimals": Config.USDC_DECIMALS},
            "USDT": {"address": Config.USDT_CONTRACT_ADDRESS, "decimals": Config.USDT_DECIMALS},
        }

    @staticmethod
    def get_token(symbol: str) -> Dict[str, Any]:
        tokens = Config.get_supported_tokens()
        key = (symbol or "").upper()
        if key not in tokens:
            raise ValueError(f"Token {symbol!r} is not supported")
        return tokens[key]

    @staticmethod
    def validate_settlement_configuration() -> List[str]:
        """Validate the settings every settlement pipeline needs; returns missing names"""
        required = {
            "DATABASE_URL": Config.DATABASE_URL,
            "RPC_URL": Config.RPC_URL,
            "ENCRYPTION_KEY": Config.ENCRYPTION_KEY,
            "HOT_WALLET_PRIVATE_KEY": Config.HOT_WALLET_PRIVATE_KEY,
            "TRADING_DESK_WALLET_ADDRESS": Config.TRADING_DESK_WALLET_ADDRESS,
            "HS_DEVOPS_WALLET_ADDRESS": Config.HS_DEVOPS_WALLET_ADDRESS,
        }
        missing = [name for name, value in required.items() if not value]

        if missing:
            logger.error(f"❌ CONFIG_INVALID: Missing settlement settings: {', '.join(missing)}")
        else:
            logger.info("✅ CONFIG_VALID: All settlement settings present")

        if not (Decimal("0") <= Config.DEPOSIT_FEE_PERCENTAGE < Decimal("100")):
            logger.error(
                f"❌ CONFIG_INVALID: DEPOSIT_FEE_PERCENTAGE={Config.DEPOSIT_FEE_PERCENTAGE} must be in [0, 100)"
            )
            missing.append("DEPOSIT_FEE_PERCENTAGE")

        return missing

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Settlement Engine Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Deposit token: {Config.DEPOSIT_TOKEN}")
        logger.info(f"   Deposit fee: {Config.DEPOSIT_FEE_PERCENTAGE}%")
        logger.info(
            f"   Scan window: finality buffer {Config.FINALITY_BUFFER_BLOCKS} blocks, "
            f"max chunk {Config.MAX_SCAN_CHUNK_BLOCKS} blocks"
        )
        logger.info(f"   Gas cushion: {Config.GAS_CUSHION_ETH} ETH (cooldown {Config.GAS_FUND_COOLDOWN_SECONDS}s)")
        logger.info(
            f"   Cadences: withdrawals {Config.WITHDRAWAL_QUEUE_INTERVAL_SECONDS}s, "
            f"sweeps {Config.SWEEP_INTERVAL_SECONDS}s, deposits {Config.DEPOSIT_SCAN_INTERVAL_SECONDS}s"
        )
