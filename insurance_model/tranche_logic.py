"""
Tranche Waterfall Model for the Liquidation Insurance Protocol.

This module holds the pure functions that decide how realized losses,
realized profits and withdrawals are split between the Senior and Junior
tranches. Nothing here mutates state: the Insurance Pool takes the returned
amounts and applies them to its ledger.

The waterfall rules are:
1. Junior is first-loss: it absorbs a loss up to its full value before Senior
   is touched.
2. Restoration before split: while Junior trades below par, profit restores
   Junior first. Senior only shares in upside once Junior is back at par.
3. Steady state: profit is split 80/20 between Senior and Junior.
4. Anti-drain: while Junior NAV is below 80% of par, Senior withdrawals take a
   haircut of half the Junior impairment.
5. Recovery runs in reverse: reinsurance capital restores Senior up to the
   loss it absorbed, then Junior to par, and only then is split 80/20.
"""

from dataclasses import dataclass
from enum import Enum

from insurance_model.config import (
    BPS,
    PAR_NAV_BPS,
    JUNIOR_IMPAIRMENT_THRESHOLD_BPS,
    SENIOR_PROFIT_SHARE_BPS,
)


class Tranche(Enum):
    """Capital layers of the pool."""
    SENIOR = 0
    JUNIOR = 1


@dataclass
class TrancheState:
    """
    Snapshot of both tranches, computed from the ledger for each call.

    Values are stablecoin units, shares are share-token units.
    """
    senior_value: int = 0
    junior_value: int = 0
    senior_shares: int = 0
    junior_shares: int = 0
    total_value: int = 0

    def shares_of(self, tranche):
        return self.senior_shares if tranche == Tranche.SENIOR else self.junior_shares


@dataclass
class LossDistribution:
    senior_loss: int
    junior_loss: int
    reinsurance_needed: bool


@dataclass
class ProfitDistribution:
    senior_profit: int
    junior_profit: int


@dataclass
class WithdrawalQuote:
    entitlement: int
    restricted: bool


def calculate_nav(value, shares):
    """
    NAV per share in basis points of par.

    A tranche without shares is reported at par so that an empty tranche
    never looks impaired.
    """
    if shares == 0:
        return PAR_NAV_BPS
    return value * BPS // shares


def distribute_loss(state, loss):
    """
    Split a realized loss between the tranches.

    Junior absorbs the loss up to its full value; the remainder hits Senior.
    Reinsurance is flagged when Senior NAV after the loss falls below the
    junior-impairment threshold.

    Args:
        state: TrancheState before the loss
        loss: Realized loss in stablecoin units

    Returns:
        LossDistribution
    """
    if loss <= 0:
        return LossDistribution(senior_loss=0, junior_loss=0, reinsurance_needed=False)

    junior_loss = min(loss, state.junior_value)
    senior_loss = loss - junior_loss

    reinsurance_needed = False
    if senior_loss > 0:
        if state.senior_shares == 0:
            # Nothing left to absorb the remainder
            reinsurance_needed = True
        else:
            remaining = max(state.senior_value - senior_loss, 0)
            reinsurance_needed = remaining * BPS // state.senior_shares < JUNIOR_IMPAIRMENT_THRESHOLD_BPS

    return LossDistribution(
        senior_loss=senior_loss,
        junior_loss=junior_loss,
        reinsurance_needed=reinsurance_needed,
    )


def distribute_profit(state, profit):
    """
    Split a realized profit between the tranches.

    While Junior is below par, profit restores Junior first. Excess over the
    restoration is split 80/20 only if Junior ends up back at par; otherwise
    Junior keeps the excess as well.

    Args:
        state: TrancheState before the profit
        profit: Realized profit in stablecoin units

    Returns:
        ProfitDistribution
    """
    if profit <= 0 or (state.senior_shares == 0 and state.junior_shares == 0):
        return ProfitDistribution(senior_profit=0, junior_profit=0)

    if state.junior_shares == 0:
        return ProfitDistribution(senior_profit=profit, junior_profit=0)

    if state.senior_shares == 0:
        return ProfitDistribution(senior_profit=0, junior_profit=profit)

    junior_nav = calculate_nav(state.junior_value, state.junior_shares)

    if junior_nav >= PAR_NAV_BPS:
        return _standard_split(profit)

    # Junior impaired: restore to par first
    par_value = state.junior_shares * PAR_NAV_BPS // BPS
    deficit = par_value - state.junior_value

    if profit <= deficit:
        return ProfitDistribution(senior_profit=0, junior_profit=profit)

    excess = profit - deficit
    restored_nav = calculate_nav(state.junior_value + deficit, state.junior_shares)

    if restored_nav >= PAR_NAV_BPS:
        split = _standard_split(excess)
        return ProfitDistribution(
            senior_profit=split.senior_profit,
            junior_profit=deficit + split.junior_profit,
        )

    return ProfitDistribution(senior_profit=0, junior_profit=profit)


def distribute_recovery(state, amount, senior_impairment):
    """
    Split an external recovery (a reinsurance payout) between the tranches.

    The waterfall runs in reverse: Senior is restored first, up to the loss it
    absorbed and never above par. What is left goes through distribute_profit,
    so Junior is restored to par before any 80/20 split.

    Args:
        state: TrancheState before the recovery
        amount: Recovered capital in stablecoin units
        senior_impairment: Senior loss not yet made good by a recovery

    Returns:
        ProfitDistribution
    """
    if amount <= 0:
        return ProfitDistribution(senior_profit=0, junior_profit=0)

    senior_deficit = max(state.senior_shares * PAR_NAV_BPS // BPS - state.senior_value, 0)
    senior_restored = min(amount, max(senior_impairment, 0), senior_deficit)

    restored = TrancheState(
        senior_value=state.senior_value + senior_restored,
        junior_value=state.junior_value,
        senior_shares=state.senior_shares,
        junior_shares=state.junior_shares,
        total_value=state.total_value + senior_restored,
    )
    rest = distribute_profit(restored, amount - senior_restored)
    return ProfitDistribution(
        senior_profit=senior_restored + rest.senior_profit,
        junior_profit=rest.junior_profit,
    )


def _standard_split(profit):
    senior_profit = profit * SENIOR_PROFIT_SHARE_BPS // BPS
    return ProfitDistribution(senior_profit=senior_profit, junior_profit=profit - senior_profit)


def calculate_withdrawal(state, shares, tranche):
    """
    Entitlement for redeeming shares of a tranche.

    Junior redeems pro-rata. Senior redeems pro-rata unless Junior NAV is
    below the impairment threshold, in which case Senior value is cut by half
    of the Junior impairment and the quote is flagged restricted.

    Args:
        state: Current TrancheState
        shares: Shares being redeemed
        tranche: Tranche.SENIOR or Tranche.JUNIOR

    Returns:
        WithdrawalQuote
    """
    tranche_shares = state.shares_of(tranche)
    if shares <= 0 or tranche_shares == 0:
        return WithdrawalQuote(entitlement=0, restricted=False)

    if tranche == Tranche.JUNIOR:
        return WithdrawalQuote(
            entitlement=shares * state.junior_value // state.junior_shares,
            restricted=False,
        )

    junior_nav = calculate_nav(state.junior_value, state.junior_shares)
    if junior_nav < JUNIOR_IMPAIRMENT_THRESHOLD_BPS:
        haircut = (PAR_NAV_BPS - junior_nav) * state.senior_value // (2 * BPS)
        haircut_value = max(state.senior_value - haircut, 0)
        return WithdrawalQuote(
            entitlement=haircut_value * shares // state.senior_shares,
            restricted=True,
        )

    return WithdrawalQuote(
        entitlement=shares * state.senior_value // state.senior_shares,
        restricted=False,
    )


def validate_invariants(state):
    """
    Check value conservation and that value never sits in a tranche without shares.

    Returns:
        True if the snapshot is consistent
    """
    if state.senior_value < 0 or state.junior_value < 0:
        return False
    if state.senior_shares < 0 or state.junior_shares < 0:
        return False
    if state.senior_value + state.junior_value != state.total_value:
        return False
    if state.senior_value > 0 and state.senior_shares == 0:
        return False
    if state.junior_value > 0 and state.junior_shares == 0:
        return False
    return True
