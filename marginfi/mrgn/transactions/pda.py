"""
Program-derived addresses.

Seeds for the marginfi program:
- bank vaults and their authorities (liquidity, insurance, fee)
- emissions authority and vault
- PDA margin accounts (group + authority + index + third-party id)
- the global fee state
"""

import struct
from enum import Enum
from typing import Tuple

from solders.pubkey import Pubkey

from ..core.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID


class BankVaultType(str, Enum):
    LIQUIDITY = "liquidity"
    INSURANCE = "insurance"
    FEE = "fee"


_VAULT_SEEDS = {
    BankVaultType.LIQUIDITY: b"liquidity_vault",
    BankVaultType.INSURANCE: b"insurance_vault",
    BankVaultType.FEE: b"fee_vault",
}

_VAULT_AUTHORITY_SEEDS = {
    BankVaultType.LIQUIDITY: b"liquidity_vault_auth",
    BankVaultType.INSURANCE: b"insurance_vault_auth",
    BankVaultType.FEE: b"fee_vault_auth",
}


def derive_bank_vault(
    program_id: Pubkey, bank: Pubkey, vault_type: BankVaultType = BankVaultType.LIQUIDITY
) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([_VAULT_SEEDS[vault_type], bytes(bank)], program_id)


def derive_bank_vault_authority(
    program_id: Pubkey, bank: Pubkey, vault_type: BankVaultType = BankVaultType.LIQUIDITY
) -> Tuple[Pubkey, int]:
    return Pubkey.find_program_address([_VAULT_AUTHORITY_SEEDS[vault_type], bytes(bank)], program_id)


def derive_bank_liquidity_vault(program_id: Pubkey, bank: Pubkey) -> Pubkey:
    return derive_bank_vault(program_id, bank, BankVaultType.LIQUIDITY)[0]


def derive_bank_liquidity_vault_authority(program_id: Pubkey, bank: Pubkey) -> Pubkey:
    return derive_bank_vault_authority(program_id, bank, BankVaultType.LIQUIDITY)[0]


def derive_bank_insurance_vault(program_id: Pubkey, bank: Pubkey) -> Pubkey:
    return derive_bank_vault(program_id, bank, BankVaultType.INSURANCE)[0]


def derive_bank_insurance_vault_authority(program_id: Pubkey, bank: Pubkey) -> Pubkey:
    return derive_bank_vault_authority(program_id, bank, BankVaultType.INSURANCE)[0]


def derive_emissions_authority(program_id: Pubkey, bank: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([b"emissions_auth_seed", bytes(bank)], program_id)[0]


def derive_emissions_vault(program_id: Pubkey, bank: Pubkey, mint: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([b"emissions_vault", bytes(bank), bytes(mint)], program_id)[0]


def derive_fee_state(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([b"feestate"], program_id)[0]


def derive_marginfi_account_pda(
    program_id: Pubkey,
    group: Pubkey,
    authority: Pubkey,
    account_index: int,
    third_party_id: int = 0,
) -> Tuple[Pubkey, int]:
    """
    Derive a PDA margin account.

    Args:
        program_id: marginfi program
        group: Group the account belongs to
        authority: Account owner
        account_index: Per-authority index (u16)
        third_party_id: Integrator id (u16, 0 when none)

    Returns:
        (address, bump)
    """
    return Pubkey.find_program_address(
        [
            b"marginfi_account",
            bytes(group),
            bytes(authority),
            struct.pack("<H", account_index),
            struct.pack("<H", third_party_id),
        ],
        program_id,
    )


def get_associated_token_address(
    owner: Pubkey, mint: Pubkey, token_program: Pubkey = TOKEN_PROGRAM_ID
) -> Pubkey:
    """Associated token account for an owner and mint."""
    return Pubkey.find_program_address(
        [bytes(owner), bytes(token_program), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )[0]
