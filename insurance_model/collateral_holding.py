"""
Collateral Holding Model for the Liquidation Insurance Protocol.

This module holds the collateral the pool acquires through liquidation
purchases until it is sold back to stablecoins. Selling realizes the profit
or loss against the purchase cost, which the Insurance Pool then pushes
through the tranche waterfall.
"""

import logging
from dataclasses import dataclass

from insurance_model.access_control import Role
from insurance_model.chain import atomic_state
from insurance_model.config import BPS, PRICE_PRECISION, ONE_DAY
from insurance_model.errors import ValidationError, StatePreconditionError
from insurance_model.external import SwapParams

logger = logging.getLogger(__name__)

DEX_FEE_TIER = 3000
TRAILING_STOP_BPS = 1_000        # sell once price falls 10% from its peak
MAX_HOLDING_PERIOD = 30 * ONE_DAY
MAX_SALE_SLIPPAGE_BPS = 300


@dataclass
class CollateralLock:
    """
    Collateral acquired by one purchase.

    cost_basis is what the pool paid in stablecoin; peak_price tracks the
    best price seen while the lock is held.
    """
    lock_id: str
    asset: str
    amount: int
    entry_price: int
    peak_price: int
    timestamp: int
    stablecoin: str
    cost_basis: int
    active: bool = True


class CollateralHolding:
    """
    Holds acquired collateral and sells it into realized profit or loss.
    """

    def __init__(self, pool, dex, risk_metrics, clock, permissions, address="collateral_holding"):
        self.address = address
        self.pool = pool
        self.dex = dex
        self.risk_metrics = risk_metrics
        self.clock = clock
        self.permissions = permissions

        self.locks = {}

        # asset -> collateral amount held across active locks
        self.balances = {}

    STATE_FIELDS = ("locks", "balances")

    def get_collateral_balance(self, asset):
        return self.balances.get(asset, 0)

    def active_locks(self):
        return [lock for lock in self.locks.values() if lock.active]

    def lock_collateral(self, caller, lock_id, asset, amount, entry_price, stablecoin, cost_basis):
        """
        Records collateral handed over by the liquidation module.
        """
        self.permissions.require(Role.LIQUIDATION_MODULE, caller)
        if amount <= 0:
            raise ValidationError(f"Invalid collateral amount: {amount}")
        if lock_id in self.locks:
            raise StatePreconditionError(f"Lock {lock_id} already exists")

        self.locks[lock_id] = CollateralLock(
            lock_id=lock_id,
            asset=asset,
            amount=amount,
            entry_price=entry_price,
            peak_price=entry_price,
            timestamp=self.clock.timestamp,
            stablecoin=stablecoin,
            cost_basis=cost_basis,
        )
        self.balances[asset] = self.balances.get(asset, 0) + amount
        logger.info("Locked %s %s at %s (cost %s %s)", amount, asset, entry_price, cost_basis, stablecoin)
        return True

    def update_price(self, asset, price):
        """Raise the peak price of every active lock on asset."""
        for lock in self.active_locks():
            if lock.asset == asset and price > lock.peak_price:
                lock.peak_price = price

    def should_sell(self, lock_id, price):
        """Trailing stop from the peak, or the lock has been held too long."""
        lock = self.locks[lock_id]
        if not lock.active:
            return False
        if price * BPS <= lock.peak_price * (BPS - TRAILING_STOP_BPS):
            return True
        return self.clock.timestamp - lock.timestamp >= MAX_HOLDING_PERIOD

    def mark_to_market(self, asset_prices):
        """Current stablecoin value of all active locks."""
        return sum(
            lock.amount * asset_prices[lock.asset] // PRICE_PRECISION
            for lock in self.active_locks()
            if lock.asset in asset_prices
        )

    def sell_collateral(self, caller, lock_id, max_slippage_bps=MAX_SALE_SLIPPAGE_BPS):
        """
        Sells a lock on the DEX and settles the result with the pool.

        Returns:
            (proceeds, pnl) in stablecoin units
        """
        self.permissions.require(Role.KEEPER, caller)
        lock = self.locks.get(lock_id)
        if lock is None:
            raise ValidationError(f"Unknown lock {lock_id}")
        if not lock.active:
            raise StatePreconditionError(f"Lock {lock_id} already sold")

        price, _ = self.risk_metrics.get_price_with_confidence(lock.asset)
        fair_value = lock.amount * price // PRICE_PRECISION
        min_out = fair_value * (BPS - max_slippage_bps) // BPS

        with atomic_state(self, self.pool):
            lock.active = False
            self.balances[lock.asset] -= lock.amount

            proceeds = self.dex.swap(SwapParams(
                token_in=lock.asset,
                token_out=lock.stablecoin,
                fee=DEX_FEE_TIER,
                amount_in=lock.amount,
                amount_out_minimum=min_out,
                recipient=self.pool.address,
            ))
            pnl = self.pool.settle_position(self.address, lock.stablecoin, lock.cost_basis, proceeds)
        logger.info("Sold lock %s for %s %s (pnl %s)", lock_id, proceeds, lock.stablecoin, pnl)
        return proceeds, pnl
