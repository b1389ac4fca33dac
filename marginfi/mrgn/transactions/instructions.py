"""
Raw marginfi instruction encoders.

Each encoder returns a solders Instruction laid out exactly as the program
expects: 8-byte discriminator, borsh-encoded arguments, fixed account order,
then any remaining accounts (health-check banks and oracles).

Encoders take already-resolved addresses; PDA derivation and account
inference live in the action builders.
"""

import hashlib
import struct
from typing import List, Optional, Sequence

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from ..core.constants import (
    DRIFT_PROGRAM_ID,
    KAMINO_FARMS_PROGRAM_ID,
    KAMINO_LENDING_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    SYSVAR_INSTRUCTIONS_ID,
    TOKEN_PROGRAM_ID,
)
from .pda import derive_bank_liquidity_vault, derive_bank_liquidity_vault_authority


class Discriminator:
    """Anchor instruction discriminators."""
    MARGINFI_ACCOUNT_INITIALIZE = bytes([43, 78, 61, 255, 148, 52, 249, 154])
    MARGINFI_ACCOUNT_INITIALIZE_PDA = hashlib.sha256(b"global:marginfi_account_initialize_pda").digest()[:8]
    LENDING_ACCOUNT_DEPOSIT = bytes([171, 94, 235, 103, 82, 64, 212, 140])
    LENDING_ACCOUNT_REPAY = bytes([79, 209, 172, 177, 222, 51, 173, 151])
    LENDING_ACCOUNT_WITHDRAW = bytes([36, 72, 74, 19, 210, 210, 192, 192])
    LENDING_ACCOUNT_BORROW = bytes([4, 126, 116, 53, 48, 5, 212, 31])
    LENDING_ACCOUNT_LIQUIDATE = bytes([214, 169, 151, 213, 251, 167, 86, 219])
    LENDING_ACCOUNT_WITHDRAW_EMISSIONS = bytes([234, 22, 84, 214, 118, 176, 140, 170])
    LENDING_ACCOUNT_START_FLASHLOAN = bytes([14, 131, 33, 220, 81, 186, 180, 107])
    LENDING_ACCOUNT_END_FLASHLOAN = bytes([105, 124, 201, 106, 153, 2, 8, 156])
    LENDING_ACCOUNT_PULSE_HEALTH = bytes([186, 52, 117, 97, 34, 74, 39, 253])
    TRANSFER_TO_NEW_ACCOUNT = bytes([28, 79, 129, 231, 169, 69, 69, 65])
    MARGINFI_ACCOUNT_CLOSE = bytes([186, 221, 93, 34, 50, 97, 194, 241])
    KAMINO_DEPOSIT = bytes([237, 8, 188, 187, 115, 99, 49, 85])
    KAMINO_WITHDRAW = bytes([199, 101, 41, 45, 213, 98, 224, 200])
    DRIFT_DEPOSIT = bytes([252, 63, 250, 201, 98, 55, 130, 12])
    DRIFT_WITHDRAW = bytes([86, 59, 186, 123, 183, 181, 234, 137])


# ============================================================================
# Borsh helpers
# ============================================================================

def encode_u64(value: int) -> bytes:
    if value < 0 or value >= 1 << 64:
        raise ValueError(f"u64 out of range: {value}")
    return struct.pack("<Q", value)


def encode_u16(value: int) -> bytes:
    return struct.pack("<H", value)


def encode_bool(value: bool) -> bytes:
    return b"\x01" if value else b"\x00"


def encode_option_bool(value: Optional[bool]) -> bytes:
    if value is None:
        return b"\x00"
    return b"\x01" + encode_bool(value)


def encode_option_u16(value: Optional[int]) -> bytes:
    if value is None:
        return b"\x00"
    return b"\x01" + encode_u16(value)


def _meta(pubkey: Pubkey, writable: bool = False, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=pubkey, is_signer=signer, is_writable=writable)


def readonly_metas(pubkeys: Sequence[Pubkey]) -> List[AccountMeta]:
    """Remaining-account metas for health checks (all read-only)."""
    return [_meta(pk) for pk in pubkeys]


# ============================================================================
# Compute budget
# ============================================================================

def make_compute_budget_ixs(units: int, micro_lamports: Optional[int] = None) -> List[Instruction]:
    ixs = [set_compute_unit_limit(units)]
    if micro_lamports is not None:
        ixs.append(set_compute_unit_price(micro_lamports))
    return ixs


# ============================================================================
# Account lifecycle
# ============================================================================

def make_init_marginfi_account_ix(
    program_id: Pubkey,
    group: Pubkey,
    marginfi_account: Pubkey,
    authority: Pubkey,
    fee_payer: Pubkey,
) -> Instruction:
    """Initialize a keypair margin account (the account key must sign)."""
    accounts = [
        _meta(group),
        _meta(marginfi_account, writable=True, signer=True),
        _meta(authority, signer=True),
        _meta(fee_payer, writable=True, signer=True),
        _meta(SYSTEM_PROGRAM_ID),
    ]
    return Instruction(program_id=program_id, accounts=accounts, data=Discriminator.MARGINFI_ACCOUNT_INITIALIZE)


def make_init_marginfi_account_pda_ix(
    program_id: Pubkey,
    group: Pubkey,
    marginfi_account: Pubkey,
    authority: Pubkey,
    fee_payer: Pubkey,
    account_index: int,
    third_party_id: Optional[int] = None,
) -> Instruction:
    """Initialize a PDA margin account (see pda.derive_marginfi_account_pda)."""
    accounts = [
        _meta(group),
        _meta(marginfi_account, writable=True),
        _meta(authority, signer=True),
        _meta(fee_payer, writable=True, signer=True),
        _meta(SYSVAR_INSTRUCTIONS_ID),
        _meta(SYSTEM_PROGRAM_ID),
    ]
    data = Discriminator.MARGINFI_ACCOUNT_INITIALIZE_PDA + encode_u16(account_index) + encode_option_u16(third_party_id)
    return Instruction(program_id=program_id, accounts=accounts, data=data)


def make_close_account_ix(
    program_id: Pubkey,
    marginfi_account: Pubkey,
    authority: Pubkey,
    fee_payer: Pubkey,
) -> Instruction:
    accounts = [
        _meta(marginfi_account, writable=True),
        _meta(authority, signer=True),
        _meta(fee_payer, writable=True, signer=True),
    ]
    return Instruction(program_id=program_id, accounts=accounts, data=Discriminator.MARGINFI_ACCOUNT_CLOSE)


def make_transfer_to_new_account_ix(
    program_id: Pubkey,
    group: Pubkey,
    old_marginfi_account: Pubkey,
    new_marginfi_account: Pubkey,
    authority: Pubkey,
    fee_payer: Pubkey,
    new_authority: Pubkey,
    global_fee_wallet: Pubkey,
) -> Instruction:
    accounts = [
        _meta(group),
        _meta(old_marginfi_account, writable=True),
        _meta(new_marginfi_account, writable=True, signer=True),
        _meta(authority, signer=True),
        _meta(fee_payer, writable=True, signer=True),
        _meta(new_authority),
        _meta(global_fee_wallet, writable=True),
        _meta(SYSTEM_PROGRAM_ID),
    ]
    return Instruction(program_id=program_id, accounts=accounts, data=Discriminator.TRANSFER_TO_NEW_ACCOUNT)


def make_pulse_health_ix(
    program_id: Pubkey,
    marginfi_account: Pubkey,
    remaining_accounts: Sequence[AccountMeta] = (),
) -> Instruction:
    accounts = [_meta(marginfi_account, writable=True)] + list(remaining_accounts)
    return Instruction(program_id=program_id, accounts=accounts, data=Discriminator.LENDING_ACCOUNT_PULSE_HEALTH)


# ============================================================================
# Lending
# ============================================================================

def make_deposit_ix(
    program_id: Pubkey,
    group: Pubkey,
    marginfi_account: Pubkey,
    authority: Pubkey,
    bank: Pubkey,
    signer_token_account: Pubkey,
    amount: int,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    deposit_up_to_limit: Optional[bool] = None,
    liquidity_vault: Optional[Pubkey] = None,
    remaining_accounts: Sequence[AccountMeta] = (),
) -> Instruction:
    accounts = [
        _meta(group),
        _meta(marginfi_account, writable=True),
        _meta(authority, signer=True),
        _meta(bank, writable=True),
        _meta(signer_token_account, writable=True),
        _meta(liquidity_vault or derive_bank_liquidity_vault(program_id, bank), writable=True),
        _meta(token_program),
    ] + list(remaining_accounts)
    data = Discriminator.LENDING_ACCOUNT_DEPOSIT + encode_u64(amount) + encode_option_bool(deposit_up_to_limit)
    return Instruction(program_id=program_id, accounts=accounts, data=data)


def make_repay_ix(
    program_id: Pubkey,
    group: Pubkey,
    marginfi_account: Pubkey,
    authority: Pubkey,
    bank: Pubkey,
    signer_token_account: Pubkey,
    amount: int,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    repay_all: Optional[bool] = None,
    liquidity_vault: Optional[Pubkey] = None,
    remaining_accounts: Sequence[AccountMeta] = (),
) -> Instruction:
    accounts = [
        _meta(group),
        _meta(marginfi_account, writable=True),
        _meta(authority, signer=True),
        _meta(bank, writable=True),
        _meta(signer_token_account, writable=True),
        _meta(liquidity_vault or derive_bank_liquidity_vault(program_id, bank), writable=True),
        _meta(token_program),
    ] + list(remaining_accounts)
    data = Discriminator.LENDING_ACCOUNT_REPAY + encode_u64(amount) + encode_option_bool(repay_all)
    return Instruction(program_id=program_id, accounts=accounts, data=data)


def make_withdraw_ix(
    program_id: Pubkey,
    group: Pubkey,
    marginfi_account: Pubkey,
    authority: Pubkey,
    bank: Pubkey,
    destination_token_account: Pubkey,
    amount: int,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    withdraw_all: Optional[bool] = None,
    liquidity_vault: Optional[Pubkey] = None,
    remaining_accounts: Sequence[AccountMeta] = (),
) -> Instruction:
    accounts = [
        _meta(group, writable=True),
        _meta(marginfi_account, writable=True),
        _meta(authority, signer=True),
        _meta(bank, writable=True),
        _meta(destination_token_account, writable=True),
        _meta(derive_bank_liquidity_vault_authority(program_id, bank)),
        _meta(liquidity_vault or derive_bank_liquidity_vault(program_id, bank), writable=True),
        _meta(token_program),
    ] + list(remaining_accounts)
    data = Discriminator.LENDING_ACCOUNT_WITHDRAW + encode_u64(amount) + encode_option_bool(withdraw_all)
    return Instruction(program_id=program_id, accounts=accounts, data=data)


def make_borrow_ix(
    program_id: Pubkey,
    group: Pubkey,
    marginfi_account: Pubkey,
    authority: Pubkey,
    bank: Pubkey,
    destination_token_account: Pubkey,
    amount: int,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    liquidity_vault: Optional[Pubkey] = None,
    remaining_accounts: Sequence[AccountMeta] = (),
) -> Instruction:
    accounts = [
        _meta(group),
        _meta(marginfi_account, writable=True),
        _meta(authority, signer=True),
        _meta(bank, writable=True),
        _meta(destination_token_account, writable=True),
        _meta(derive_bank_liquidity_vault_authority(program_id, bank)),
        _meta(liquidity_vault or derive_bank_liquidity_vault(program_id, bank), writable=True),
        _meta(token_program),
    ] + list(remaining_accounts)
    data = Discriminator.LENDING_ACCOUNT_BORROW + encode_u64(amount)
    return Instruction(program_id=program_id, accounts=accounts, data=data)


def make_liquidate_ix(
    program_id: Pubkey,
    group: Pubkey,
    asset_bank: Pubkey,
    liab_bank: Pubkey,
    liquidator_marginfi_account: Pubkey,
    authority: Pubkey,
    liquidatee_marginfi_account: Pubkey,
    liab_bank_liquidity_vault_authority: Pubkey,
    liab_bank_liquidity_vault: Pubkey,
    liab_bank_insurance_vault: Pubkey,
    asset_amount: int,
    liquidatee_accounts: int,
    liquidator_accounts: int,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    remaining_accounts: Sequence[AccountMeta] = (),
) -> Instruction:
    """
    Liquidate part of an unhealthy account.

    Args:
        liquidatee_accounts: Number of remaining accounts belonging to the liquidatee
        liquidator_accounts: Number of remaining accounts belonging to the liquidator
    """
    accounts = [
        _meta(group),
        _meta(asset_bank, writable=True),
        _meta(liab_bank, writable=True),
        _meta(liquidator_marginfi_account, writable=True),
        _meta(authority, signer=True),
        _meta(liquidatee_marginfi_account, writable=True),
        _meta(liab_bank_liquidity_vault_authority),
        _meta(liab_bank_liquidity_vault, writable=True),
        _meta(liab_bank_insurance_vault, writable=True),
        _meta(token_program),
    ] + list(remaining_accounts)
    data = (
        Discriminator.LENDING_ACCOUNT_LIQUIDATE
        + encode_u64(asset_amount)
        + bytes([liquidatee_accounts, liquidator_accounts])
    )
    return Instruction(program_id=program_id, accounts=accounts, data=data)


def make_withdraw_emissions_ix(
    program_id: Pubkey,
    group: Pubkey,
    marginfi_account: Pubkey,
    authority: Pubkey,
    bank: Pubkey,
    emissions_mint: Pubkey,
    emissions_auth: Pubkey,
    emissions_vault: Pubkey,
    destination_account: Pubkey,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
) -> Instruction:
    accounts = [
        _meta(group),
        _meta(marginfi_account, writable=True),
        _meta(authority, signer=True),
        _meta(bank, writable=True),
        _meta(emissions_mint),
        _meta(emissions_auth),
        _meta(emissions_vault, writable=True),
        _meta(destination_account, writable=True),
        _meta(token_program),
    ]
    return Instruction(
        program_id=program_id, accounts=accounts, data=Discriminator.LENDING_ACCOUNT_WITHDRAW_EMISSIONS
    )


# ============================================================================
# Flash loans
# ============================================================================

def make_begin_flash_loan_ix(
    program_id: Pubkey,
    marginfi_account: Pubkey,
    authority: Pubkey,
    end_index: int,
) -> Instruction:
    """
    Start a flash loan.

    Args:
        end_index: Index of the matching end-flash-loan instruction in the transaction
    """
    accounts = [
        _meta(marginfi_account, writable=True),
        _meta(authority, signer=True),
        _meta(SYSVAR_INSTRUCTIONS_ID),
    ]
    data = Discriminator.LENDING_ACCOUNT_START_FLASHLOAN + encode_u64(end_index)
    return Instruction(program_id=program_id, accounts=accounts, data=data)


def make_end_flash_loan_ix(
    program_id: Pubkey,
    marginfi_account: Pubkey,
    authority: Pubkey,
    remaining_accounts: Sequence[AccountMeta] = (),
) -> Instruction:
    accounts = [
        _meta(marginfi_account, writable=True),
        _meta(authority, signer=True),
    ] + list(remaining_accounts)
    return Instruction(program_id=program_id, accounts=accounts, data=Discriminator.LENDING_ACCOUNT_END_FLASHLOAN)


# ============================================================================
# Kamino-backed banks
# ============================================================================

def make_kamino_deposit_ix(
    program_id: Pubkey,
    group: Pubkey,
    marginfi_account: Pubkey,
    authority: Pubkey,
    bank: Pubkey,
    signer_token_account: Pubkey,
    obligation: Pubkey,
    lending_market: Pubkey,
    lending_market_authority: Pubkey,
    reserve: Pubkey,
    mint: Pubkey,
    reserve_liquidity_supply: Pubkey,
    reserve_collateral_mint: Pubkey,
    reserve_destination_deposit_collateral: Pubkey,
    amount: int,
    liquidity_token_program: Pubkey = TOKEN_PROGRAM_ID,
    obligation_farm_user_state: Optional[Pubkey] = None,
    reserve_farm_state: Optional[Pubkey] = None,
    liquidity_vault: Optional[Pubkey] = None,
    remaining_accounts: Sequence[AccountMeta] = (),
) -> Instruction:
    accounts = [
        _meta(group),
        _meta(marginfi_account, writable=True),
        _meta(authority, signer=True),
        _meta(bank, writable=True),
        _meta(signer_token_account, writable=True),
        _meta(derive_bank_liquidity_vault_authority(program_id, bank), writable=True),
        _meta(liquidity_vault or derive_bank_liquidity_vault(program_id, bank), writable=True),
        _meta(obligation, writable=True),
        _meta(lending_market),
        _meta(lending_market_authority),
        _meta(reserve, writable=True),
        _meta(mint),
        _meta(reserve_liquidity_supply, writable=True),
        _meta(reserve_collateral_mint, writable=True),
        _meta(reserve_destination_deposit_collateral, writable=True),
    ]
    if obligation_farm_user_state is not None:
        accounts.append(_meta(obligation_farm_user_state, writable=True))
    if reserve_farm_state is not None:
        accounts.append(_meta(reserve_farm_state, writable=True))
    accounts += [
        _meta(KAMINO_LENDING_PROGRAM_ID),
        _meta(KAMINO_FARMS_PROGRAM_ID),
        _meta(TOKEN_PROGRAM_ID),
        _meta(liquidity_token_program),
        _meta(SYSVAR_INSTRUCTIONS_ID),
    ]
    accounts += list(remaining_accounts)
    data = Discriminator.KAMINO_DEPOSIT + encode_u64(amount)
    return Instruction(program_id=program_id, accounts=accounts, data=data)


def make_kamino_withdraw_ix(
    program_id: Pubkey,
    group: Pubkey,
    marginfi_account: Pubkey,
    authority: Pubkey,
    bank: Pubkey,
    destination_token_account: Pubkey,
    obligation: Pubkey,
    lending_market: Pubkey,
    lending_market_authority: Pubkey,
    reserve: Pubkey,
    reserve_liquidity_mint: Pubkey,
    reserve_liquidity_supply: Pubkey,
    reserve_collateral_mint: Pubkey,
    reserve_source_collateral: Pubkey,
    amount: int,
    is_final_withdrawal: Optional[bool] = None,
    liquidity_token_program: Pubkey = TOKEN_PROGRAM_ID,
    obligation_farm_user_state: Optional[Pubkey] = None,
    reserve_farm_state: Optional[Pubkey] = None,
    liquidity_vault: Optional[Pubkey] = None,
    remaining_accounts: Sequence[AccountMeta] = (),
) -> Instruction:
    """
    Withdraw from a Kamino-backed bank.

    `amount` is in collateral (cToken) units, not underlying tokens.
    """
    accounts = [
        _meta(group, writable=True),
        _meta(marginfi_account, writable=True),
        _meta(authority, signer=True),
        _meta(bank, writable=True),
        _meta(destination_token_account, writable=True),
        _meta(derive_bank_liquidity_vault_authority(program_id, bank), writable=True),
        _meta(liquidity_vault or derive_bank_liquidity_vault(program_id, bank), writable=True),
        _meta(obligation, writable=True),
        _meta(lending_market),
        _meta(lending_market_authority),
        _meta(reserve, writable=True),
        _meta(reserve_liquidity_mint, writable=True),
        _meta(reserve_liquidity_supply, writable=True),
        _meta(reserve_collateral_mint, writable=True),
        _meta(reserve_source_collateral, writable=True),
    ]
    if obligation_farm_user_state is not None:
        accounts.append(_meta(obligation_farm_user_state, writable=True))
    if reserve_farm_state is not None:
        accounts.append(_meta(reserve_farm_state, writable=True))
    accounts += [
        _meta(KAMINO_LENDING_PROGRAM_ID),
        _meta(KAMINO_FARMS_PROGRAM_ID),
        _meta(TOKEN_PROGRAM_ID),
        _meta(liquidity_token_program),
        _meta(SYSVAR_INSTRUCTIONS_ID),
    ]
    accounts += list(remaining_accounts)
    data = Discriminator.KAMINO_WITHDRAW + encode_u64(amount) + encode_option_bool(is_final_withdrawal)
    return Instruction(program_id=program_id, accounts=accounts, data=data)


# ============================================================================
# Drift-backed banks
# ============================================================================

def make_drift_deposit_ix(
    program_id: Pubkey,
    group: Pubkey,
    marginfi_account: Pubkey,
    authority: Pubkey,
    bank: Pubkey,
    signer_token_account: Pubkey,
    drift_state: Pubkey,
    drift_user: Pubkey,
    drift_user_stats: Pubkey,
    drift_spot_market: Pubkey,
    drift_spot_market_vault: Pubkey,
    mint: Pubkey,
    amount: int,
    drift_oracle: Optional[Pubkey] = None,
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    liquidity_vault: Optional[Pubkey] = None,
) -> Instruction:
    accounts = [
        _meta(group),
        _meta(marginfi_account, writable=True),
        _meta(authority, signer=True),
        _meta(bank, writable=True),
    ]
    if drift_oracle is not None:
        accounts.append(_meta(drift_oracle))
    accounts += [
        _meta(derive_bank_liquidity_vault_authority(program_id, bank)),
        _meta(liquidity_vault or derive_bank_liquidity_vault(program_id, bank), writable=True),
        _meta(signer_token_account, writable=True),
        _meta(drift_state),
        _meta(drift_user, writable=True),
        _meta(drift_user_stats, writable=True),
        _meta(drift_spot_market, writable=True),
        _meta(drift_spot_market_vault, writable=True),
        _meta(mint),
        _meta(DRIFT_PROGRAM_ID),
        _meta(token_program),
        _meta(SYSTEM_PROGRAM_ID),
    ]
    data = Discriminator.DRIFT_DEPOSIT + encode_u64(amount)
    return Instruction(program_id=program_id, accounts=accounts, data=data)


def make_drift_withdraw_ix(
    program_id: Pubkey,
    group: Pubkey,
    marginfi_account: Pubkey,
    authority: Pubkey,
    bank: Pubkey,
    destination_token_account: Pubkey,
    drift_state: Pubkey,
    drift_user: Pubkey,
    drift_user_stats: Pubkey,
    drift_spot_market: Pubkey,
    drift_spot_market_vault: Pubkey,
    drift_signer: Pubkey,
    mint: Pubkey,
    amount: int,
    withdraw_all: bool = False,
    drift_oracle: Optional[Pubkey] = None,
    reward_accounts: Sequence[Pubkey] = (),
    token_program: Pubkey = TOKEN_PROGRAM_ID,
    liquidity_vault: Optional[Pubkey] = None,
    remaining_accounts: Sequence[AccountMeta] = (),
) -> Instruction:
    """
    Withdraw from a Drift-backed bank.

    Args:
        reward_accounts: Up to two (oracle, spot market, mint) reward triples,
            flattened in that order
    """
    if len(reward_accounts) > 6:
        raise ValueError(f"At most two reward markets are supported, got {len(reward_accounts)} accounts")

    accounts = [
        _meta(group, writable=True),
        _meta(marginfi_account, writable=True),
        _meta(authority, signer=True),
        _meta(bank, writable=True),
    ]
    if drift_oracle is not None:
        accounts.append(_meta(drift_oracle))
    accounts += [
        _meta(derive_bank_liquidity_vault_authority(program_id, bank)),
        _meta(liquidity_vault or derive_bank_liquidity_vault(program_id, bank), writable=True),
        _meta(destination_token_account, writable=True),
        _meta(drift_state),
        _meta(drift_user, writable=True),
        _meta(drift_user_stats, writable=True),
        _meta(drift_spot_market, writable=True),
        _meta(drift_spot_market_vault, writable=True),
    ]
    accounts += [_meta(pk) for pk in reward_accounts]
    accounts += [
        _meta(drift_signer),
        _meta(mint),
        _meta(DRIFT_PROGRAM_ID),
        _meta(token_program),
        _meta(SYSTEM_PROGRAM_ID),
    ]
    accounts += list(remaining_accounts)
    data = Discriminator.DRIFT_WITHDRAW + encode_u64(amount) + encode_bool(withdraw_all)
    return Instruction(program_id=program_id, accounts=accounts, data=data)


# ============================================================================
# Decoding
# ============================================================================

def decode_amount_and_flag(data: bytes):
    """
    Read the u64 amount and optional trailing flag after a discriminator.

    Returns:
        (amount, flag) where flag is None when absent
    """
    (amount,) = struct.unpack_from("<Q", data, 8)
    rest = data[16:]
    if not rest or rest[0] == 0:
        return amount, None
    # Option<bool> is [1, value]; a plain bool is a single byte
    if len(rest) == 1:
        return amount, True
    return amount, bool(rest[1])
