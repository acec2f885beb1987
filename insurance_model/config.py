"""
Central parameter store for the Liquidation Insurance Protocol model.

Protocol-fixed values live here as module constants. Tunables are grouped in
dataclasses that are passed to the components that use them.
"""

from dataclasses import dataclass, field
from typing import Tuple

# ---------------------------------------------------------------------------
# Units
# ---------------------------------------------------------------------------
BPS = 10_000                  # 100% in basis points
PAR_NAV_BPS = 10_000          # NAV per share at par
PRICE_PRECISION = 10**8       # oracle prices: stablecoin units per collateral unit * 1e8

ONE_HOUR = 60 * 60
ONE_DAY = 24 * ONE_HOUR
ONE_YEAR = 365 * ONE_DAY

# ---------------------------------------------------------------------------
# Tranche waterfall
# ---------------------------------------------------------------------------
JUNIOR_IMPAIRMENT_THRESHOLD_BPS = 8_000   # Junior NAV below this restricts Senior exits
SENIOR_PROFIT_SHARE_BPS = 8_000           # steady-state 80/20 split

# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------
WITHDRAWAL_DELAY = ONE_DAY                # request -> fulfil
COMMIT_REVEAL_WINDOW_BLOCKS = 10
MIN_REVEAL_DELAY_BLOCKS = 1
FLASH_EXECUTION_DEADLINE = 5 * 60
CLAIM_VALIDITY_PERIOD = 7 * ONE_DAY

# ---------------------------------------------------------------------------
# Reinsurance
# ---------------------------------------------------------------------------
REINSURANCE_DEDUCTIBLE_BPS = 500          # pool always absorbs 5% of its value
MIN_PROVIDER_TRUST_SCORE = 5_000

# ---------------------------------------------------------------------------
# Premium pricing
# ---------------------------------------------------------------------------
PREMIUM_HARD_CEILING_BPS = 2_000
MODERATE_LOSS_THRESHOLD_BPS = 200         # recent losses > 2% shift risk weights
SEVERE_LOSS_THRESHOLD_BPS = 500           # recent losses > 5% shift them further


@dataclass
class PoolConfig:
    """Tunables for the Insurance Pool ledger."""
    supported_assets: Tuple[str, ...] = ("USDC", "DAI")
    min_deposit: int = 100
    max_exposure_bps: int = 2_000
    max_first_deposit: int = 1_000_000
    deposit_cooldown: int = ONE_DAY
    withdraw_epoch: int = ONE_DAY
    max_withdraw_bps_per_epoch: int = 2_500
    shutdown_delay: int = 2 * ONE_DAY


@dataclass
class PremiumConfig:
    """Tunables for the premium pricing engine."""
    base_rate_bps: int = 200
    min_rate_bps: int = 50
    max_rate_bps: int = 1_500
    risk_multiplier_bps: int = 1_000
    ema_alpha_bps: int = 3_000
    hysteresis_band_bps: int = 10
    epoch_duration: int = ONE_DAY
    max_volatility_bps: int = 15_000      # annualized vol that maps to a full risk score
    max_slippage_bps: int = 500           # DEX slippage that maps to a full risk score
    liquidations_for_full_score: int = 20
    loss_momentum_half_life: int = 3 * ONE_DAY
    loss_momentum_cap_bps: int = 1_000
    recent_loss_window: int = 7 * ONE_DAY


@dataclass
class AdequacyConfig:
    """Tunables for the capital adequacy monitor."""
    min_capital_ratio_bps: int = 12_000
    target_capital_ratio_bps: int = 15_000
    pause_threshold_bps: int = 11_000
    reinsurance_trigger_bps: int = 10_000
    tail_cushion_bps: int = 500
    check_interval: int = ONE_HOUR
    max_liquidation_probability_bps: int = 5_000
    probability_bps_per_annual_event: int = 100
    var_confidence: float = 0.99
    var_horizon_years: float = 1.0
    stress_multiplier_bps: int = 15_000   # 1.5x max observed loss
    default_volatility: float = 0.80      # used when price history is too short
    num_paths: int = 10_000
    seed: int = field(default=42)
