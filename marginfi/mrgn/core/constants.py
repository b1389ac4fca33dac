"""
Protocol constants.

Program IDs, well-known accounts, oracle parameters and transaction limits
shared across the client.
"""

from decimal import Decimal
from typing import Dict, List

from solders.pubkey import Pubkey


# Programs
MARGINFI_PROGRAM_ID = Pubkey.from_string("MFv2hWf31Z9kbCa1snEPYctwafyhdvnV7FZnsebVacA")
MARGINFI_PROGRAM_ID_STAGING = Pubkey.from_string("stag8sTKds2h4KzjUw3zKTsxbqvT4XKHdaR9X9E6Rct")
MARGINFI_PROGRAM_ID_STAGING_ALT = Pubkey.from_string("5UDghkpgW1HfYSrmEj2iAApHShqU44H6PKTAar9LL9bY")

SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
TOKEN_2022_PROGRAM_ID = Pubkey.from_string("TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")
ADDRESS_LOOKUP_TABLE_PROGRAM_ID = Pubkey.from_string("AddressLookupTab1e1111111111111111111111111")
SYSVAR_INSTRUCTIONS_ID = Pubkey.from_string("Sysvar1nstructions1111111111111111111111111")
SYSVAR_RENT_ID = Pubkey.from_string("SysvarRent111111111111111111111111111111111")

KAMINO_LENDING_PROGRAM_ID = Pubkey.from_string("KLend2g3cP87fffoy8q1mQqGKjrxjC8boSyAYavgmjD")
KAMINO_FARMS_PROGRAM_ID = Pubkey.from_string("FarmsPZpWu9i7Kky8tPN37rs2TpmMrAZrC7S7vJa91Hr")
DRIFT_PROGRAM_ID = Pubkey.from_string("dRiftyHA39MWEi3m9aunc5MzRF1JYuBsbn6VPcn33UH")
JUPITER_V6_PROGRAM_ID = Pubkey.from_string("JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4")
JUPITER_REFERRAL_PROGRAM_ID = Pubkey.from_string("REFER4ZgmyYx9c6He5XfaTMiGfdLwRnkV4RPp9t9iF3")
JUPITER_REFERRAL_ACCOUNT = Pubkey.from_string("Mm7HcujSK2JzPW4eX7g4oqTXbWYDuFxapNMHXe8yp1B")

NATIVE_MINT = Pubkey.from_string("So11111111111111111111111111111111111111112")
DEFAULT_PUBKEY = Pubkey.default()

# Oracles
PYTH_PUSH_ORACLE_ID = Pubkey.from_string("pythWSnswVUd12oZpeFP8e9CVaEqJg25g1Vtc2biRsT")
ZERO_ORACLE_KEY = Pubkey.from_string("DMhGWtLAKE5d56WdyHQxqeFncwUeqMEnuC2RvvZfbuur")
DEFAULT_ORACLE_MAX_AGE = 60  # seconds
PYTH_PRICE_CONF_INTERVALS = Decimal("2.12")
SWB_PRICE_CONF_INTERVALS = Decimal("1.96")
MAX_CONFIDENCE_INTERVAL_RATIO = Decimal("0.05")

# Account layout
MAX_BALANCES = 16
SECONDS_PER_YEAR = 31_536_000
HOURS_PER_YEAR = Decimal("365.25") * 24

# Account flags
ACCOUNT_DISABLED = 1 << 0
ACCOUNT_IN_FLASHLOAN = 1 << 1
ACCOUNT_FLASHLOAN_ENABLED = 1 << 2
ACCOUNT_TRANSFER_AUTHORITY_ALLOWED = 1 << 3

# Transaction limits
MAX_TX_SIZE = 1232
MAX_ACCOUNT_KEYS = 64
MAX_SIMULATION_TRANSACTIONS = 5

# Compute budget
FLASHLOAN_COMPUTE_UNITS = 1_200_000
SIMULATION_COMPUTE_UNITS = 1_400_000
DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS = 1

# Health cache simulation
SIMULATION_FUNDING_WALLET = Pubkey.from_string("DD3AeAssFvjqTvRTrRAtpfjkBF8FpVKnFuwnMLN9haXD")
SIMULATION_FUNDING_LAMPORTS = 100_000_000
HEALTH_CACHE_STALE_ORACLE_ERROR = 6009

# Address lookup tables
ADDRESS_LOOKUP_TABLE_FOR_GROUP: Dict[str, List[Pubkey]] = {
    # Main pool
    "4qp6Fx6tnZkY5Wropq9wUYgtFxXKwE6viZxFHg3rdAG8": [
        Pubkey.from_string("BrWF8J3CEuHaXsWk3kqGZ6VHvRp4SJuG9AzvB6ei2kbV"),
        Pubkey.from_string("8GLUprtyzv6HGrgox7F43EQM5GqE2uKrAHLs69r8DgRj"),
        Pubkey.from_string("Eg4WY6fmrbhDGfdgSrrTUe6peoUeVhkdXAWT6uvcGKjs"),
    ],
    # Staging
    "FCPfpHA69EbS8f9KKSreTRkXbzFpunsKuYf5qNmnJjpo": [
        Pubkey.from_string("HxPy7b58KLKSU7w4LUW9xwYQ1NPyRNQkYYk2f7SmYAip"),
    ],
}
ADDRESS_LOOKUP_TABLE_FOR_SWAP = Pubkey.from_string("5X5gDr8Bp9BpizTeZ3VJhxMw4z3q2rwoexJvwttmATs5")

# Jupiter route candidates, tried in order
SWAP_MAX_ACCOUNTS_CANDIDATES = [40, 30]
