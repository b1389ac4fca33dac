"""
Account facade: one margin account bound to a client snapshot.

Wraps the pure services and action builders so callers don't have to
thread the snapshot through every call.
"""

import logging
from decimal import Decimal
from typing import Dict, Optional

from solders.pubkey import Pubkey

from integrations.solana.jupiter import JupiterClient

from .actions import (
    FlashLoanActionResult,
    make_borrow_tx,
    make_deposit_tx,
    make_loop_tx,
    make_repay_tx,
    make_repay_with_collateral_tx,
    make_swap_collateral_tx,
    make_swap_debt_tx,
    make_withdraw_tx,
)
from .actions.common import get_asset_share_value_multipliers
from .client import ClientSnapshot, MarginfiClient
from .core.fixed_point import ZERO, Numeric
from .models.account import MarginfiAccount
from .models.bank import MarginRequirementType
from .models.emode import ActiveEmodePair
from .services.emode import compute_active_emode_pairs, get_active_emode_pair, get_emode_pairs
from .services.health import (
    HealthComponents,
    compute_free_collateral,
    compute_health_components,
    compute_health_factor,
    compute_liquidation_price_for_bank,
    compute_net_apy,
)
from .services.max_amounts import compute_max_borrow_for_bank, compute_max_withdraw_for_bank
from .services.simulation import HealthSimulationResult, simulate_account_health_cache
from .transactions.types import TransactionBuilderResult

logger = logging.getLogger(__name__)


class MarginfiAccountWrapper:
    """
    A margin account together with the snapshot it is evaluated against.

    The wrapper is immutable in spirit: `with_snapshot` / `with_account`
    return new wrappers.
    """

    def __init__(
        self,
        account: MarginfiAccount,
        snapshot: ClientSnapshot,
        client: MarginfiClient,
        jupiter: Optional[JupiterClient] = None,
    ):
        self.account = account
        self.snapshot = snapshot
        self.client = client
        self.jupiter = jupiter

    @classmethod
    async def fetch(
        cls,
        address: Pubkey,
        client: MarginfiClient,
        snapshot: ClientSnapshot,
        jupiter: Optional[JupiterClient] = None,
    ) -> "MarginfiAccountWrapper":
        account = await client.fetch_account(address)
        return cls(account, snapshot, client, jupiter)

    @property
    def address(self) -> Pubkey:
        return self.account.address

    @property
    def authority(self) -> Pubkey:
        return self.account.authority

    def with_snapshot(self, snapshot: ClientSnapshot) -> "MarginfiAccountWrapper":
        return MarginfiAccountWrapper(self.account, snapshot, self.client, self.jupiter)

    def with_account(self, account: MarginfiAccount) -> "MarginfiAccountWrapper":
        return MarginfiAccountWrapper(account, self.snapshot, self.client, self.jupiter)

    @property
    def multipliers(self) -> Dict[str, Decimal]:
        return get_asset_share_value_multipliers(self.snapshot.bank_map, self.snapshot.metadata_map)

    # ========================================================================
    # Health
    # ========================================================================

    def active_emode_pair(self) -> Optional[ActiveEmodePair]:
        pairs = get_emode_pairs(list(self.snapshot.bank_map.values()))
        liabilities = [b.bank_pk for b in self.account.active_balances if b.is_borrowing]
        collateral = [b.bank_pk for b in self.account.active_balances if b.is_lending]
        return get_active_emode_pair(compute_active_emode_pairs(pairs, liabilities, collateral))

    def health_components(
        self,
        margin_requirement: MarginRequirementType = MarginRequirementType.MAINTENANCE,
    ) -> HealthComponents:
        return compute_health_components(self.account, margin_requirement)

    def free_collateral(
        self,
        margin_requirement: MarginRequirementType = MarginRequirementType.MAINTENANCE,
    ) -> Decimal:
        return compute_free_collateral(self.account, margin_requirement)

    def health_factor(self) -> Decimal:
        return compute_health_factor(self.health_components(MarginRequirementType.MAINTENANCE))

    def net_apy(self) -> Decimal:
        return compute_net_apy(
            self.account,
            self.snapshot.bank_map,
            self.snapshot.oracle_prices,
            asset_share_value_multipliers=self.multipliers,
        )

    def liquidation_price(self, bank_pk: Pubkey) -> Optional[Decimal]:
        bank = self.snapshot.get_bank(bank_pk)
        return compute_liquidation_price_for_bank(
            self.account,
            bank,
            self.snapshot.get_oracle_price(bank_pk),
            asset_share_value_multiplier=self.multipliers.get(bank.key),
        )

    def max_borrow(self, bank_pk: Pubkey, volatility_factor: Numeric = 1) -> Decimal:
        return compute_max_borrow_for_bank(
            self.account,
            self.snapshot.bank_map,
            self.snapshot.oracle_prices,
            bank_pk,
            volatility_factor=volatility_factor,
            active_pair=self.active_emode_pair(),
        )

    def max_withdraw(self, bank_pk: Pubkey, volatility_factor: Numeric = 1) -> Decimal:
        return compute_max_withdraw_for_bank(
            self.account,
            self.snapshot.bank_map,
            self.snapshot.oracle_prices,
            bank_pk,
            volatility_factor=volatility_factor,
            active_pair=self.active_emode_pair(),
        )

    async def simulate_health_cache(self) -> HealthSimulationResult:
        """
        Refresh the account's health cache, on-chain if possible.

        The returned result carries the updated account; the wrapper itself
        is unchanged. Use `with_account(result.account)` to adopt it.
        """
        return await simulate_account_health_cache(
            self.client.rpc_client,
            self.account,
            self.snapshot.bank_map,
            self.snapshot.oracle_prices,
            self.snapshot.program_id,
            metadata_map=self.snapshot.metadata_map,
            crank_provider=self.client.crank_provider,
            lookup_tables=self.snapshot.lookup_tables,
            asset_share_value_multipliers=self.multipliers,
        )

    # ========================================================================
    # Actions
    # ========================================================================

    def _context(self):
        return self.client.action_context(self.snapshot)

    async def make_deposit_tx(self, bank_pk: Pubkey, amount: Numeric) -> TransactionBuilderResult:
        return await make_deposit_tx(self._context(), self.account, bank_pk, amount)

    async def make_borrow_tx(self, bank_pk: Pubkey, amount: Numeric) -> TransactionBuilderResult:
        return await make_borrow_tx(self._context(), self.account, bank_pk, amount)

    async def make_repay_tx(self, bank_pk: Pubkey, amount: Numeric, repay_all: bool = False) -> TransactionBuilderResult:
        return await make_repay_tx(self._context(), self.account, bank_pk, amount, repay_all=repay_all)

    async def make_withdraw_tx(
        self, bank_pk: Pubkey, amount: Numeric, withdraw_all: bool = False
    ) -> TransactionBuilderResult:
        return await make_withdraw_tx(self._context(), self.account, bank_pk, amount, withdraw_all=withdraw_all)

    async def make_loop_tx(
        self,
        deposit_bank_pk: Pubkey,
        borrow_bank_pk: Pubkey,
        borrow_amount: Numeric,
        deposit_amount: Numeric = ZERO,
        slippage_bps: int = 50,
    ) -> FlashLoanActionResult:
        return await make_loop_tx(
            self._context(),
            self.account,
            deposit_bank_pk,
            borrow_bank_pk,
            borrow_amount,
            deposit_amount=deposit_amount,
            jupiter=self.jupiter,
            slippage_bps=slippage_bps,
        )

    async def make_repay_with_collateral_tx(
        self,
        withdraw_bank_pk: Pubkey,
        repay_bank_pk: Pubkey,
        withdraw_amount: Numeric,
        slippage_bps: int = 50,
    ) -> FlashLoanActionResult:
        return await make_repay_with_collateral_tx(
            self._context(),
            self.account,
            withdraw_bank_pk,
            repay_bank_pk,
            withdraw_amount,
            jupiter=self.jupiter,
            slippage_bps=slippage_bps,
        )

    async def make_swap_collateral_tx(
        self,
        withdraw_bank_pk: Pubkey,
        deposit_bank_pk: Pubkey,
        withdraw_amount: Numeric,
        slippage_bps: int = 50,
    ) -> FlashLoanActionResult:
        return await make_swap_collateral_tx(
            self._context(),
            self.account,
            withdraw_bank_pk,
            deposit_bank_pk,
            withdraw_amount,
            jupiter=self.jupiter,
            slippage_bps=slippage_bps,
        )

    async def make_swap_debt_tx(
        self,
        repay_bank_pk: Pubkey,
        borrow_bank_pk: Pubkey,
        slippage_bps: int = 50,
    ) -> FlashLoanActionResult:
        return await make_swap_debt_tx(
            self._context(),
            self.account,
            repay_bank_pk,
            borrow_bank_pk,
            jupiter=self.jupiter,
            slippage_bps=slippage_bps,
        )
