"""
Configuration management and environment validation for the Sentinel agent.

This module handles:
- Environment variable validation
- Configuration loading
- Startup error handling
"""

import os
import sys
import logging
from typing import Dict, FrozenSet, Optional
from pathlib import Path
from dotenv import load_dotenv

from sentinel.core.models import FilterCriteria, OpportunityType, RiskLevel

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class EnvironmentConfig:
    """Environment configuration with validation."""

    # Always required: without a ledger endpoint there is nothing to watch
    REQUIRED = [
        "SOLANA_RPC_URL",
    ]

    OPTIONAL_WITH_DEFAULTS = {
        "LOG_LEVEL": "INFO",
        "CONSOLE_LOG_LEVEL": "INFO",
        "LOG_DIR": "logs",
        "SOLANA_NETWORK": "mainnet-beta",
        "TICK_INTERVAL": "300",
        "MIN_ACTIVITY_BALANCE": "0.05",
        # Execution parameters
        "TRADE_AMOUNT_SOL": "0.1",
        "MIN_RESERVE_SOL": "0.01",
        "SLIPPAGE_BPS": "50",
        "CONFIRMATION_RETRIES": "2",
        "CONFIRMATION_INTERVAL": "2",
        "ENABLE_EXECUTION": "true",
        # Timeouts (seconds)
        "RPC_TIMEOUT": "10",
        "SCANNER_TIMEOUT": "10",
        "SCAN_DEADLINE": "30",
        "ORACLE_TIMEOUT": "30",
        "PERSISTENCE_TIMEOUT": "5",
        # Oracle
        "ORACLE_PROVIDER": "groq",
        "ORACLE_TOP_N": "5",
        # Goal tracking
        "GOAL_TARGET_SOL": "1.0",
        "GOAL_ASSUMED_APY": "7.0",
        # Scanner enable/disable flags
        "ENABLE_MARINADE": "true",
        "ENABLE_KAMINO": "true",
        "ENABLE_DEFILLAMA": "true",
        "DEFILLAMA_CHAIN": "Solana",
    }

    ALL_VARIABLES = (
        REQUIRED +
        list(OPTIONAL_WITH_DEFAULTS.keys()) +
        [
            "WALLET_ADDRESS",
            "WALLET_PRIVATE_KEY",
            "DATABASE_PATH",
            "SUPABASE_URL",
            "SUPABASE_KEY",
            "GROQ_API_KEY",
            "XAI_API_KEY",
            "ORACLE_API_KEY",
            "ORACLE_MODEL",
            "ORACLE_BASE_URL",
            "JUPITER_API_KEY",
            "FILTER_MIN_APY",
            "FILTER_MAX_RISK",
            "FILTER_MIN_TVL",
            "FILTER_TYPES",
            "DEFILLAMA_PROJECTS",
        ]
    )

    # Variables never echoed back into logs
    SECRET_VARIABLES = {"WALLET_PRIVATE_KEY", "SUPABASE_KEY", "GROQ_API_KEY",
                        "XAI_API_KEY", "ORACLE_API_KEY", "JUPITER_API_KEY"}

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            env_file: Path to .env file (default: .env in the working directory or a parent)
        """
        if env_file:
            load_dotenv(env_file)
        else:
            current = Path.cwd()
            for parent in [current] + list(current.parents):
                env_path = parent / ".env"
                if env_path.exists():
                    load_dotenv(env_path)
                    break

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get environment variable with optional default."""
        value = os.getenv(key)
        if value is None and key in self.OPTIONAL_WITH_DEFAULTS:
            return self.OPTIONAL_WITH_DEFAULTS[key]
        return value or default

    def get_required(self, key: str) -> str:
        """
        Get required environment variable.

        Raises:
            ConfigurationError: If variable is not set
        """
        value = self.get(key)
        if not value:
            raise ConfigurationError(
                f"Required environment variable '{key}' is not set. "
                f"Please add it to your .env file."
            )
        return value

    def validate(self) -> Dict[str, str]:
        """
        Validate environment configuration.

        Returns:
            Dictionary of configured values (secrets included, do not log it)

        Raises:
            ConfigurationError: If the ledger endpoint, the watched wallet or
                the persistence backend is not configured
        """
        config = {}
        missing = []

        for var in self.REQUIRED:
            value = self.get(var)
            if not value:
                missing.append(var)
            else:
                config[var] = value

        if not (self.get("WALLET_PRIVATE_KEY") or self.get("WALLET_ADDRESS")):
            missing.append("WALLET_ADDRESS (or WALLET_PRIVATE_KEY)")

        backend = self.get_storage_backend()
        if backend is None:
            missing.append("DATABASE_PATH (or SUPABASE_URL and SUPABASE_KEY)")

        for var, default in self.OPTIONAL_WITH_DEFAULTS.items():
            config[var] = self.get(var, default)

        for var in self.ALL_VARIABLES:
            if var not in config:
                value = self.get(var)
                if value:
                    config[var] = value

        if missing:
            raise ConfigurationError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                f"Please add them to your .env file."
            )

        return config

    def get_storage_backend(self) -> Optional[str]:
        """Return "supabase", "sqlite" or None when nothing is configured."""
        if self.get("SUPABASE_URL"):
            if not self.get("SUPABASE_KEY"):
                return None
            return "supabase"
        if self.get("DATABASE_PATH"):
            return "sqlite"
        return None

    def get_network(self) -> str:
        return self.get("SOLANA_NETWORK", "mainnet-beta")

    def has_signing_key(self) -> bool:
        return bool(self.get("WALLET_PRIVATE_KEY"))

    def _get_float(self, key: str, default: float, minimum: float, maximum: float) -> float:
        try:
            value = float(self.get(key, str(default)))
        except (ValueError, TypeError) as e:
            logger.error(f"Invalid {key} value: {e}, using default {default}")
            return default
        if value < minimum or value > maximum:
            logger.warning(f"{key} {value} out of range [{minimum}, {maximum}], using default {default}")
            return default
        return value

    def _get_int(self, key: str, default: int, minimum: int, maximum: int) -> int:
        try:
            value = int(self.get(key, str(default)))
        except (ValueError, TypeError) as e:
            logger.error(f"Invalid {key} value: {e}, using default {default}")
            return default
        if value < minimum:
            logger.warning(f"{key} {value} is too low, using minimum {minimum}")
            return minimum
        if value > maximum:
            logger.warning(f"{key} {value} is too high, using maximum {maximum}")
            return maximum
        return value

    def _get_bool(self, key: str) -> bool:
        return str(self.get(key, "false")).strip().lower() in ("1", "true", "yes", "on")

    def get_tick_interval(self) -> int:
        """Get tick interval in seconds (60s to 24h)."""
        return self._get_int("TICK_INTERVAL", 300, 60, 86400)

    def get_min_activity_balance(self) -> float:
        """Balance (SOL) below which the agent only tracks the goal."""
        return self._get_float("MIN_ACTIVITY_BALANCE", 0.05, 0.0, 1_000_000.0)

    def get_trade_amount_sol(self) -> float:
        return self._get_float("TRADE_AMOUNT_SOL", 0.1, 0.0, 1_000_000.0)

    def get_min_reserve_sol(self) -> float:
        """SOL always left in the wallet for fees."""
        return self._get_float("MIN_RESERVE_SOL", 0.01, 0.0, 1_000_000.0)

    def get_slippage_bps(self) -> int:
        return self._get_int("SLIPPAGE_BPS", 50, 1, 5000)

    def get_confirmation_retries(self) -> int:
        return self._get_int("CONFIRMATION_RETRIES", 2, 1, 10)

    def get_confirmation_interval(self) -> float:
        return self._get_float("CONFIRMATION_INTERVAL", 2.0, 0.0, 60.0)

    def is_execution_enabled(self) -> bool:
        return self._get_bool("ENABLE_EXECUTION")

    def get_rpc_timeout(self) -> float:
        return self._get_float("RPC_TIMEOUT", 10.0, 1.0, 120.0)

    def get_scanner_timeout(self) -> float:
        return self._get_float("SCANNER_TIMEOUT", 10.0, 1.0, 120.0)

    def get_scan_deadline(self) -> float:
        return self._get_float("SCAN_DEADLINE", 30.0, 1.0, 600.0)

    def get_oracle_timeout(self) -> float:
        return self._get_float("ORACLE_TIMEOUT", 30.0, 1.0, 300.0)

    def get_persistence_timeout(self) -> float:
        return self._get_float("PERSISTENCE_TIMEOUT", 5.0, 0.5, 60.0)

    def get_oracle_provider(self) -> str:
        provider = str(self.get("ORACLE_PROVIDER", "groq")).strip().lower()
        if provider not in ("groq", "openai"):
            logger.warning(f"Unknown ORACLE_PROVIDER {provider!r}, using groq")
            return "groq"
        return provider

    def get_oracle_api_key(self) -> Optional[str]:
        """API key for the configured oracle provider, if any."""
        explicit = self.get("ORACLE_API_KEY")
        if explicit:
            return explicit
        if self.get_oracle_provider() == "groq":
            return self.get("GROQ_API_KEY")
        return self.get("XAI_API_KEY")

    def get_oracle_top_n(self) -> int:
        return self._get_int("ORACLE_TOP_N", 5, 1, 50)

    def get_goal_target_sol(self) -> float:
        return self._get_float("GOAL_TARGET_SOL", 1.0, 1e-9, 1e12)

    def get_goal_assumed_apy(self) -> float:
        return self._get_float("GOAL_ASSUMED_APY", 7.0, -100.0, 10_000.0)

    def is_scanner_enabled(self, scanner_name: str) -> bool:
        """Check the ENABLE_<NAME> flag for a scanner."""
        return self._get_bool(f"ENABLE_{scanner_name.upper()}")

    def get_defillama_projects(self) -> Optional[FrozenSet[str]]:
        raw = self.get("DEFILLAMA_PROJECTS")
        if not raw:
            return None
        return frozenset(p.strip() for p in raw.split(",") if p.strip())

    def get_filter_criteria(self) -> FilterCriteria:
        """
        Build the opportunity filter from FILTER_* variables.

        Invalid values are logged and ignored rather than failing startup.
        """
        min_apy = self._optional_float("FILTER_MIN_APY")
        min_tvl = self._optional_float("FILTER_MIN_TVL")

        max_risk = None
        raw_risk = self.get("FILTER_MAX_RISK")
        if raw_risk:
            try:
                max_risk = RiskLevel(raw_risk.strip().lower())
            except ValueError:
                logger.warning(f"Invalid FILTER_MAX_RISK {raw_risk!r}, ignoring")

        types = None
        raw_types = self.get("FILTER_TYPES")
        if raw_types:
            try:
                types = frozenset(
                    OpportunityType(t.strip().lower()) for t in raw_types.split(",") if t.strip()
                )
            except ValueError as e:
                logger.warning(f"Invalid FILTER_TYPES {raw_types!r}: {e}, ignoring")

        return FilterCriteria(min_apy=min_apy, max_risk=max_risk, min_tvl=min_tvl, types=types)

    def _optional_float(self, key: str) -> Optional[float]:
        raw = self.get(key)
        if raw is None or raw == "":
            return None
        try:
            return float(raw)
        except ValueError:
            logger.warning(f"Invalid {key} value {raw!r}, ignoring")
            return None


def load_config(env_file: Optional[str] = None) -> EnvironmentConfig:
    """
    Load and validate configuration.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config = EnvironmentConfig(env_file)
    config.validate()
    return config


def check_startup_requirements(env_file: Optional[str] = None) -> EnvironmentConfig:
    """
    Check startup requirements and fail fast if critical config is missing.

    This is the only place a configuration problem halts the process.

    Raises:
        SystemExit: If startup checks fail
    """
    try:
        config = load_config(env_file)

        log_dir = Path(config.get("LOG_DIR", "logs"))
        if not log_dir.exists():
            logger.info(f"Creating directory: {log_dir}")
            log_dir.mkdir(parents=True, exist_ok=True)

        logger.info("Startup requirements satisfied")
        logger.info("Configuration:")
        logger.info(f"  Network: {config.get_network()}")
        logger.info(f"  Storage backend: {config.get_storage_backend()}")
        logger.info(f"  Tick interval: {config.get_tick_interval()}s")
        logger.info(f"  Activity threshold: {config.get_min_activity_balance()} SOL")
        logger.info(f"  Goal target: {config.get_goal_target_sol()} SOL")
        logger.info(f"  Oracle provider: {config.get_oracle_provider()}")
        logger.info(f"  Execution: {'enabled' if config.is_execution_enabled() else 'disabled'}")

        if not config.has_signing_key():
            logger.warning("WALLET_PRIVATE_KEY not set - agent will run in READ-ONLY mode")
        if not config.get_oracle_api_key():
            logger.warning("No oracle API key set - every decision will be HOLD")

        return config

    except ConfigurationError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please fix the configuration and try again.")
        sys.exit(1)
