"""
Configuration management for the marginfi client.

This module handles:
- Environment variable loading (.env via python-dotenv)
- Typed, range-checked getters for tunables
- Program/group selection per deployment environment
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from solders.pubkey import Pubkey

from .constants import (
    ADDRESS_LOOKUP_TABLE_FOR_GROUP,
    MARGINFI_PROGRAM_ID,
    MARGINFI_PROGRAM_ID_STAGING,
    MARGINFI_PROGRAM_ID_STAGING_ALT,
)

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


ENVIRONMENTS = ("production", "staging", "staging-mainnet-clone", "staging-alt")

# Default program/group per environment. Clone environments have no
# canonical group and must be given one explicitly.
_DEFAULT_DEPLOYMENTS: Dict[str, Dict[str, Optional[str]]] = {
    "production": {
        "program": str(MARGINFI_PROGRAM_ID),
        "group": "4qp6Fx6tnZkY5Wropq9wUYgtFxXKwE6viZxFHg3rdAG8",
    },
    "staging": {
        "program": str(MARGINFI_PROGRAM_ID_STAGING),
        "group": "FCPfpHA69EbS8f9KKSreTRkXbzFpunsKuYf5qNmnJjpo",
    },
    "staging-mainnet-clone": {
        "program": str(MARGINFI_PROGRAM_ID_STAGING),
        "group": None,
    },
    "staging-alt": {
        "program": str(MARGINFI_PROGRAM_ID_STAGING_ALT),
        "group": None,
    },
}


@dataclass(frozen=True)
class MarginfiConfig:
    """Resolved deployment target."""
    environment: str
    program_id: Pubkey
    group_pk: Pubkey

    def lookup_tables(self) -> List[Pubkey]:
        """Address lookup tables registered for this group (may be empty)."""
        return list(ADDRESS_LOOKUP_TABLE_FOR_GROUP.get(str(self.group_pk), []))


def get_config(
    environment: str = "production",
    overrides: Optional[Dict[str, Pubkey]] = None,
) -> MarginfiConfig:
    """
    Retrieve config for an environment.

    Args:
        environment: One of ENVIRONMENTS
        overrides: Optional `program_id` / `group_pk` replacements

    Returns:
        MarginfiConfig

    Raises:
        ConfigurationError: Unknown environment, or no group available
    """
    if environment not in _DEFAULT_DEPLOYMENTS:
        raise ConfigurationError(
            f"Unknown environment '{environment}'. Expected one of: {', '.join(ENVIRONMENTS)}"
        )

    overrides = overrides or {}
    deployment = _DEFAULT_DEPLOYMENTS[environment]

    program_id = overrides.get("program_id") or Pubkey.from_string(deployment["program"])

    group_pk = overrides.get("group_pk")
    if group_pk is None:
        if deployment["group"] is None:
            raise ConfigurationError(
                f"Environment '{environment}' has no default group. "
                f"Set MARGINFI_GROUP or pass a group_pk override."
            )
        group_pk = Pubkey.from_string(deployment["group"])

    return MarginfiConfig(environment=environment, program_id=program_id, group_pk=group_pk)


class EnvironmentConfig:
    """Environment configuration with validation."""

    OPTIONAL_WITH_DEFAULTS = {
        "MARGINFI_ENV": "production",
        "RPC_URL": "https://api.mainnet-beta.solana.com",
        "JUPITER_API_BASE": "https://api.jup.ag",
        "CROSSBAR_URL": "https://crossbar.switchboard.xyz",
        "LOG_LEVEL": "INFO",
        "CONSOLE_LOG_LEVEL": "INFO",
        "LOG_DIR": "logs",
        "SLIPPAGE_BPS": "50",  # 0.5%
        "VOLATILITY_FACTOR": "0.975",
        "ORACLE_MAX_AGE": "60",  # seconds
    }

    ALL_VARIABLES = list(OPTIONAL_WITH_DEFAULTS.keys()) + [
        "MARGINFI_PROGRAM_ID",
        "MARGINFI_GROUP",
        "HELIUS_API_KEY",
        "JUPITER_API_KEY",
    ]

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            env_file: Path to .env file (default: nearest .env above the CWD)
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
            Dictionary of known variables that are set (or defaulted)

        Raises:
            ConfigurationError: If the deployment target cannot be resolved
        """
        config = {}
        for var in self.ALL_VARIABLES:
            value = self.get(var)
            if value:
                config[var] = value

        # Fails fast on unknown environments or missing clone groups
        self.get_marginfi_config()
        return config

    def get_environment(self) -> str:
        """Get deployment environment name."""
        return self.get("MARGINFI_ENV", "production")

    def get_marginfi_config(self) -> MarginfiConfig:
        """Resolve program and group for the configured environment."""
        overrides: Dict[str, Pubkey] = {}
        try:
            program = self.get("MARGINFI_PROGRAM_ID")
            if program:
                overrides["program_id"] = Pubkey.from_string(program)
            group = self.get("MARGINFI_GROUP")
            if group:
                overrides["group_pk"] = Pubkey.from_string(group)
        except ValueError as e:
            raise ConfigurationError(f"Invalid program or group address: {e}") from e
        return get_config(self.get_environment(), overrides)

    def get_rpc_urls(self) -> List[str]:
        """
        Get RPC endpoints in priority order.

        Helius comes first when HELIUS_API_KEY is set; RPC_URL is always last.
        """
        urls = []
        helius_key = self.get("HELIUS_API_KEY")
        if helius_key:
            urls.append(f"https://mainnet.helius-rpc.com/?api-key={helius_key}")
        urls.append(self.get("RPC_URL"))
        return urls

    def get_slippage_bps(self) -> int:
        """Get swap slippage tolerance in basis points (default 50 = 0.5%)."""
        try:
            bps = int(self.get("SLIPPAGE_BPS", "50"))
            if bps < 1:
                logger.warning(f"Slippage {bps} bps is too low, using minimum 1 bps")
                return 1
            if bps > 5000:
                logger.warning(f"Slippage {bps} bps is too high, using maximum 5000 bps")
                return 5000
            return bps
        except (ValueError, TypeError) as e:
            logger.error(f"Invalid SLIPPAGE_BPS value: {e}, using default 50 bps")
            return 50

    def get_volatility_factor(self) -> float:
        """Get the max-amount dampening factor in (0, 1] (default 0.975)."""
        try:
            factor = float(self.get("VOLATILITY_FACTOR", "0.975"))
            if factor <= 0 or factor > 1.0:
                logger.warning(f"Volatility factor {factor} out of range (0, 1.0], using default 0.975")
                return 0.975
            return factor
        except (ValueError, TypeError) as e:
            logger.error(f"Invalid VOLATILITY_FACTOR value: {e}, using default 0.975")
            return 0.975

    def get_oracle_max_age(self) -> int:
        """Get maximum oracle age in seconds (default 60)."""
        try:
            age = int(self.get("ORACLE_MAX_AGE", "60"))
            if age < 1:
                logger.warning(f"Oracle max age {age}s is too low, using minimum 1s")
                return 1
            if age > 3600:
                logger.warning(f"Oracle max age {age}s is too high, using maximum 3600s")
                return 3600
            return age
        except (ValueError, TypeError) as e:
            logger.error(f"Invalid ORACLE_MAX_AGE value: {e}, using default 60s")
            return 60
