"""
Pytest configuration and shared fixtures for the marginfi client tests.

Provides hypothesis profiles, synthetic snapshot fixtures and mocked
network collaborators (RPC transport, Jupiter, crank provider).
"""

import os
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import settings, Verbosity

# Add project directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from solders.hash import Hash

from tests.factories import (
    PROGRAM_ID,
    GROUP,
    bank_map_of,
    make_bank,
    make_price,
)


# ============================================================================
# Hypothesis Configuration
# ============================================================================

settings.register_profile("default", max_examples=100, deadline=None)
settings.register_profile("ci", max_examples=1000, deadline=None)
settings.register_profile("dev", max_examples=20, verbosity=Verbosity.verbose)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


# ============================================================================
# Snapshot Fixtures
# ============================================================================

@pytest.fixture
def usdc_bank():
    """USDC-like bank: 6 decimals, 0.8 / 0.9 asset weights, 1.2 / 1.1 liability weights."""
    return make_bank(symbol="USDC", mint_decimals=6)


@pytest.fixture
def sol_bank():
    """SOL-like bank: 9 decimals, 0.7 / 0.8 asset weights."""
    return make_bank(
        symbol="SOL",
        mint_decimals=9,
        asset_weight_init="0.7",
        asset_weight_maint="0.8",
        liability_weight_init="1.3",
        liability_weight_maint="1.2",
    )


@pytest.fixture
def bank_map(usdc_bank, sol_bank):
    return bank_map_of(usdc_bank, sol_bank)


@pytest.fixture
def oracle_prices(usdc_bank, sol_bank):
    return {
        usdc_bank.key: make_price("1.00", "0.01"),
        sol_bank.key: make_price("150", "0.5"),
    }


@pytest.fixture
def blockhash():
    return Hash.default()


@pytest.fixture
def program_id():
    return PROGRAM_ID


@pytest.fixture
def group():
    return GROUP


# ============================================================================
# Mock Collaborators
# ============================================================================

@pytest.fixture
def mock_rpc(blockhash):
    """RpcClient stand-in: every account missing, fixed blockhash, empty bundle result."""
    rpc = MagicMock()
    rpc.get_latest_blockhash = AsyncMock(return_value=blockhash)
    rpc.get_multiple_accounts = AsyncMock(side_effect=lambda keys: [None] * len(keys))
    rpc.get_address_lookup_tables = AsyncMock(return_value=[])
    rpc.simulate_bundle = AsyncMock(return_value=[])
    return rpc


@pytest.fixture
def mock_jupiter():
    """JupiterClient stand-in; tests set get_quote / get_swap_instructions."""
    jupiter = MagicMock()
    jupiter.get_quote = MagicMock()
    jupiter.get_swap_instructions = MagicMock()
    return jupiter
