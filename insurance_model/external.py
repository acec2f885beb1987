"""
External collaborators of the Liquidation Insurance Protocol.

The pool only depends on the interfaces below. These in-memory versions are
deterministic stand-ins used by the simulations and tests, in the same spirit
as a simple price feed standing in for a real oracle.
"""

import logging
from dataclasses import dataclass

import numpy as np

from insurance_model.config import BPS, PRICE_PRECISION, ONE_HOUR
from insurance_model.errors import ExternalCallError, ValidationError

logger = logging.getLogger(__name__)


class SimpleYieldCustodian:
    """
    Yield-bearing custodian holding the pool's idle capital.
    """

    def __init__(self):
        self.balances = {}

        # Fraction of a withdrawal that is not returned, to model a custodian shortfall
        self.withdraw_shortfall_bps = 0

    def deposit(self, asset, amount):
        """Credits amount of asset and returns the credited amount."""
        if amount <= 0:
            raise ValidationError(f"Invalid deposit amount: {amount}")
        self.balances[asset] = self.balances.get(asset, 0) + amount
        return amount

    def withdraw(self, asset, amount):
        """Withdraws up to amount of asset and returns what was actually sent."""
        balance = self.balances.get(asset, 0)
        actual = min(amount, balance)
        actual -= actual * self.withdraw_shortfall_bps // BPS
        self.balances[asset] = balance - actual
        return actual

    def current_balance(self, asset):
        return self.balances.get(asset, 0)

    def accrue_yield(self, asset, amount):
        """Adds external yield to the custodied balance."""
        self.balances[asset] = self.balances.get(asset, 0) + amount


class SimplePriceOracle:
    """
    Multi-source price oracle.

    Each source reports a price; stale sources are ignored, the median of the
    fresh ones is returned, and confidence drops with the spread between them.
    """

    def __init__(self, clock, max_staleness=ONE_HOUR, max_deviation_bps=500):
        self.clock = clock
        self.max_staleness = max_staleness
        self.max_deviation_bps = max_deviation_bps

        # asset -> source -> (price, timestamp)
        self.reports = {}

    def set_price(self, asset, price, source="primary"):
        if price <= 0:
            raise ValidationError(f"Invalid price: {price}")
        self.reports.setdefault(asset, {})[source] = (int(price), self.clock.timestamp)

    def get_price(self, asset):
        """
        Returns (price, confidence_bps) for asset.

        Raises:
            ExternalCallError: If no fresh source is available or sources disagree beyond max deviation
        """
        sources = self.reports.get(asset, {})
        fresh = [price for price, ts in sources.values() if self.clock.timestamp - ts <= self.max_staleness]
        if not fresh:
            raise ExternalCallError(f"No fresh price for {asset}")

        median = int(np.median(fresh))
        spread_bps = max(abs(price - median) for price in fresh) * BPS // median
        if spread_bps > self.max_deviation_bps:
            raise ExternalCallError(f"Price sources for {asset} deviate by {spread_bps} bps")

        return median, BPS - spread_bps


@dataclass
class SwapParams:
    token_in: str
    token_out: str
    fee: int                   # pool fee tier in hundredths of a bip (3000 = 0.30%)
    amount_in: int
    amount_out_minimum: int
    recipient: str = None


class SimpleDexVenue:
    """
    Swap venue with a single depth figure per pair.

    Price impact grows with trade size relative to depth, which is what the
    premium engine reads as a liquidity signal.
    """

    def __init__(self, oracle):
        self.oracle = oracle

        # (token_in, token_out) -> depth in stablecoin units
        self.depth = {}
        self.stablecoins = set()

    def set_liquidity(self, token_a, token_b, depth):
        self.depth[(token_a, token_b)] = depth
        self.depth[(token_b, token_a)] = depth

    def add_stablecoin(self, asset):
        self.stablecoins.add(asset)

    def _price(self, asset):
        if asset in self.stablecoins:
            return PRICE_PRECISION
        price, _ = self.oracle.get_price(asset)
        return price

    def quote(self, token_in, token_out, fee, amount_in):
        """Returns the amount of token_out received for amount_in of token_in."""
        depth = self.depth.get((token_in, token_out), 0)
        if depth <= 0:
            raise ExternalCallError(f"No liquidity for {token_in}/{token_out}")
        if amount_in <= 0:
            return 0

        value_in = amount_in * self._price(token_in) // PRICE_PRECISION
        impact_bps = value_in * BPS // (depth + value_in)
        fee_bps = fee // 100
        value_out = value_in * max(BPS - impact_bps - fee_bps, 0) // BPS
        return value_out * PRICE_PRECISION // self._price(token_out)

    def swap(self, params):
        """
        Executes a swap.

        Raises:
            ExternalCallError: If the output is below amount_out_minimum
        """
        amount_out = self.quote(params.token_in, params.token_out, params.fee, params.amount_in)
        if amount_out < params.amount_out_minimum:
            raise ExternalCallError(
                f"Slippage exceeded: {amount_out} < {params.amount_out_minimum}"
            )
        return amount_out


class SimpleFlashLoanProvider:
    """
    Flash-capital provider.

    Lends amount for the duration of the callback. The receiver's
    on_flash_loan must return the amount repaid; anything short of principal
    plus premium aborts the operation.
    """

    STATE_FIELDS = ("fees_earned",)

    def __init__(self, clock, premium_bps=9, liquidity=10**12):
        self.clock = clock
        self.premium_bps = premium_bps
        self.liquidity = liquidity
        self.fees_earned = 0

    def flash_premium(self, amount):
        return -(-amount * self.premium_bps // BPS)

    def execute_flash_loan(self, receiver, asset, amount, data, deadline):
        if self.clock.timestamp > deadline:
            raise ExternalCallError("Flash loan deadline exceeded")
        if amount <= 0 or amount > self.liquidity:
            raise ExternalCallError(f"Flash loan of {amount} {asset} unavailable")

        premium = self.flash_premium(amount)
        repaid = receiver.on_flash_loan(asset, amount, premium, receiver, data)
        if repaid < amount + premium:
            raise ExternalCallError(f"Flash loan not repaid: {repaid} < {amount + premium}")

        self.fees_earned += premium
        return True


@dataclass
class BorrowerPosition:
    borrower: str
    collateral_asset: str
    debt_asset: str
    collateral: int
    debt: int


class SimpleLiquidationAdapter:
    """
    Liquidation entry point of one lending protocol (AAVE, Compound, ...).

    Positions become liquidatable once collateral value falls below
    debt * liquidation_threshold. The liquidator receives collateral worth
    the repaid debt plus the liquidation bonus.
    """

    STATE_FIELDS = ("positions",)

    def __init__(self, protocol, oracle, liquidation_bonus_bps=500, liquidation_threshold_bps=11_000):
        self.protocol = protocol
        self.oracle = oracle
        self.liquidation_bonus_bps = liquidation_bonus_bps
        self.liquidation_threshold_bps = liquidation_threshold_bps
        self.positions = {}

    def open_position(self, target_id, borrower, collateral_asset, debt_asset, collateral, debt):
        self.positions[target_id] = BorrowerPosition(borrower, collateral_asset, debt_asset, collateral, debt)

    def is_liquidatable(self, target_id):
        position = self.positions.get(target_id)
        if position is None or position.debt == 0:
            return False
        price, _ = self.oracle.get_price(position.collateral_asset)
        collateral_value = position.collateral * price // PRICE_PRECISION
        return collateral_value * BPS < position.debt * self.liquidation_threshold_bps

    def liquidate(self, protocol, target, collateral_asset, debt_asset, borrower, debt_to_cover, min_collateral_out):
        """
        Returns (collateral_received, debt_paid).

        Raises:
            ExternalCallError: If the position cannot be liquidated on these terms
        """
        position = self.positions.get(target)
        if protocol != self.protocol or position is None:
            raise ExternalCallError(f"Unknown position {target} on {protocol}")
        if (position.borrower, position.collateral_asset, position.debt_asset) != (borrower, collateral_asset, debt_asset):
            raise ExternalCallError("Position parameters do not match")
        if not self.is_liquidatable(target):
            raise ExternalCallError(f"Position {target} is healthy")

        debt_paid = min(debt_to_cover, position.debt)
        price, _ = self.oracle.get_price(collateral_asset)
        collateral_received = debt_paid * (BPS + self.liquidation_bonus_bps) * PRICE_PRECISION // (BPS * price)
        collateral_received = min(collateral_received, position.collateral)
        if collateral_received < min_collateral_out:
            raise ExternalCallError(f"Collateral out {collateral_received} below minimum {min_collateral_out}")

        position.debt -= debt_paid
        position.collateral -= collateral_received
        logger.debug("%s liquidated %s: repaid %s, seized %s", protocol, target, debt_paid, collateral_received)
        return collateral_received, debt_paid


class SimpleKeeperRegistry:
    """Registry of keepers allowed to run liquidation purchases."""

    def __init__(self):
        self.authorized = set()

    def authorize(self, keeper):
        self.authorized.add(keeper)

    def deauthorize(self, keeper):
        self.authorized.discard(keeper)

    def is_authorized(self, caller):
        return caller in self.authorized
