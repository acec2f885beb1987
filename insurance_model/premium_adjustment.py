"""
Premium Adjustment Model for the Liquidation Insurance Protocol.

Prices the deposit premium from a weighted risk score. Six components feed
the score: volatility, pool utilization, liquidation frequency, liquidity
depth, price correlation and loss momentum. The score is EMA-smoothed and
mapped to a premium rate that only moves when the change clears a
hysteresis band. Updates are epoch-gated, and governance may override the rate.
"""

import logging
from dataclasses import dataclass, astuple

import numpy as np

from insurance_model.access_control import Role
from insurance_model.config import (
    BPS,
    PRICE_PRECISION,
    PREMIUM_HARD_CEILING_BPS,
    MODERATE_LOSS_THRESHOLD_BPS,
    SEVERE_LOSS_THRESHOLD_BPS,
    PremiumConfig,
)
from insurance_model.errors import ValidationError, CapacityError, ExternalCallError

logger = logging.getLogger(__name__)

DEX_FEE_TIER = 3000
LIQUIDITY_PROBE_VALUE = 100_000   # stablecoin value of the probe swap


@dataclass
class RiskWeights:
    """Weights of the risk components in basis points; they must sum to 10000."""
    volatility: int
    utilization: int
    liquidation_frequency: int
    liquidity_depth: int
    correlation: int
    loss_momentum: int

    def total(self):
        return sum(astuple(self))

    def validate(self):
        if any(weight < 0 for weight in astuple(self)):
            raise ValidationError("Risk weights must be non-negative")
        if self.total() != BPS:
            raise ValidationError(f"Risk weights must sum to {BPS}, got {self.total()}")


DEFAULT_WEIGHTS = RiskWeights(2_500, 2_000, 1_500, 1_500, 1_500, 1_000)
# After losses, weight moves away from utilization/frequency toward clustered and illiquid risk
MODERATE_LOSS_WEIGHTS = RiskWeights(2_750, 1_500, 1_000, 1_750, 2_000, 1_000)
SEVERE_LOSS_WEIGHTS = RiskWeights(3_000, 1_000, 500, 2_000, 2_500, 1_000)


@dataclass
class RiskComponents:
    """Individual risk scores, each in [0, 10000]."""
    volatility: int = 0
    utilization: int = 0
    liquidation_frequency: int = 0
    liquidity_depth: int = 0
    correlation: int = 0
    loss_momentum: int = 0


class PremiumAdjustment:
    """
    Premium pricing engine.
    """

    def __init__(self, risk_metrics, dex, clock, permissions, collateral_asset, stablecoin,
                 correlated_asset=None, config=None):
        self.risk_metrics = risk_metrics
        self.dex = dex
        self.clock = clock
        self.permissions = permissions
        self.collateral_asset = collateral_asset
        self.stablecoin = stablecoin
        self.correlated_asset = correlated_asset
        self.config = config or PremiumConfig()

        self.current_premium_bps = self.config.base_rate_bps
        self.smoothed_score = None
        self.last_update = clock.timestamp
        self.weights = DEFAULT_WEIGHTS
        self.manual_weights = False
        self.override_active = False

        # (timestamp, loss in bps of pool value)
        self.loss_events = []
        self.liquidation_timestamps = []

    def get_current_premium_bps(self):
        return self.current_premium_bps

    def record_loss(self, loss_bps, timestamp=None):
        """Record a realized loss, expressed in basis points of pool value."""
        if loss_bps < 0:
            raise ValidationError("Loss must be non-negative")
        self.loss_events.append((self.clock.timestamp if timestamp is None else timestamp, loss_bps))

    def record_liquidation(self, timestamp=None):
        self.liquidation_timestamps.append(self.clock.timestamp if timestamp is None else timestamp)

    def set_risk_weights(self, caller, weights):
        """Governance sets explicit weights; automatic shifting stops until reset."""
        self.permissions.require(Role.GOVERNANCE, caller)
        weights.validate()
        self.weights = weights
        self.manual_weights = True

    def reset_risk_weights(self, caller):
        self.permissions.require(Role.GOVERNANCE, caller)
        self.weights = DEFAULT_WEIGHTS
        self.manual_weights = False

    def force_premium(self, caller, rate_bps):
        """
        Governance override of the premium rate, bypassing smoothing and hysteresis.

        Raises:
            CapacityError: If rate_bps exceeds the hard ceiling
        """
        self.permissions.require(Role.GOVERNANCE, caller)
        if rate_bps < 0:
            raise ValidationError("Premium must be non-negative")
        if rate_bps > PREMIUM_HARD_CEILING_BPS:
            raise CapacityError(f"Premium {rate_bps} exceeds ceiling {PREMIUM_HARD_CEILING_BPS}")
        logger.warning("Premium forced from %s to %s bps by %s", self.current_premium_bps, rate_bps, caller)
        self.current_premium_bps = rate_bps
        self.override_active = True

    def clear_override(self, caller):
        self.permissions.require(Role.GOVERNANCE, caller)
        self.override_active = False

    def recent_loss_bps(self):
        cutoff = self.clock.timestamp - self.config.recent_loss_window
        return sum(loss for ts, loss in self.loss_events if ts >= cutoff)

    def effective_weights(self):
        """Weights after the automatic loss-driven shift."""
        if self.manual_weights:
            return self.weights
        recent = self.recent_loss_bps()
        if recent > SEVERE_LOSS_THRESHOLD_BPS:
            return SEVERE_LOSS_WEIGHTS
        if recent > MODERATE_LOSS_THRESHOLD_BPS:
            return MODERATE_LOSS_WEIGHTS
        return DEFAULT_WEIGHTS

    def calculate_risk_components(self, utilization_bps):
        cfg = self.config
        volatility_bps = self.risk_metrics.calculate_volatility(self.collateral_asset)

        return RiskComponents(
            volatility=min(volatility_bps * BPS // cfg.max_volatility_bps, BPS),
            utilization=min(max(utilization_bps, 0), BPS),
            liquidation_frequency=self._liquidation_frequency_score(),
            liquidity_depth=self._liquidity_score(),
            correlation=self._correlation_score(),
            loss_momentum=self._loss_momentum_score(),
        )

    def _liquidation_frequency_score(self):
        cutoff = self.clock.timestamp - self.config.epoch_duration
        count = sum(1 for ts in self.liquidation_timestamps if ts >= cutoff)
        return min(count * BPS // self.config.liquidations_for_full_score, BPS)

    def _liquidity_score(self):
        """Slippage of a probe swap as a risk score; a failed quote counts as maximum risk."""
        try:
            price, _ = self.risk_metrics.get_price_with_confidence(self.collateral_asset)
            probe_amount = LIQUIDITY_PROBE_VALUE * PRICE_PRECISION // price
            expected = probe_amount * price // PRICE_PRECISION
            amount_out = self.dex.quote(self.collateral_asset, self.stablecoin, DEX_FEE_TIER, probe_amount)
        except (ExternalCallError, ValueError) as exc:
            logger.warning("Liquidity probe failed, using maximum risk: %s", exc)
            return BPS
        if expected <= 0:
            return BPS
        slippage_bps = max(expected - amount_out, 0) * BPS // expected
        return min(slippage_bps * BPS // self.config.max_slippage_bps, BPS)

    def _correlation_score(self):
        if self.correlated_asset is None:
            return 0
        return max(self.risk_metrics.calculate_correlation(self.collateral_asset, self.correlated_asset), 0)

    def _loss_momentum_score(self):
        """Time-decayed sum of recent losses with an exponential half-life."""
        now = self.clock.timestamp
        half_life = self.config.loss_momentum_half_life
        momentum = sum(loss * np.power(0.5, (now - ts) / half_life) for ts, loss in self.loss_events)
        return min(int(momentum * BPS / self.config.loss_momentum_cap_bps), BPS)

    def calculate_risk_score(self, components, weights=None):
        weights = weights or self.effective_weights()
        weighted = (
            components.volatility * weights.volatility
            + components.utilization * weights.utilization
            + components.liquidation_frequency * weights.liquidation_frequency
            + components.liquidity_depth * weights.liquidity_depth
            + components.correlation * weights.correlation
            + components.loss_momentum * weights.loss_momentum
        )
        return weighted // BPS

    def smooth(self, raw_score):
        if self.smoothed_score is None:
            return raw_score
        alpha = self.config.ema_alpha_bps
        return (alpha * raw_score + (BPS - alpha) * self.smoothed_score) // BPS

    def premium_for_score(self, score):
        cfg = self.config
        rate = cfg.base_rate_bps + cfg.risk_multiplier_bps * score // BPS
        return min(max(rate, cfg.min_rate_bps), cfg.max_rate_bps)

    def update_premiums(self, utilization_bps):
        """
        Recompute the premium once per epoch.

        Returns:
            The premium rate in effect after the call
        """
        if self.clock.timestamp - self.last_update < self.config.epoch_duration:
            return self.current_premium_bps

        components = self.calculate_risk_components(utilization_bps)
        raw_score = self.calculate_risk_score(components)
        self.smoothed_score = self.smooth(raw_score)
        self.last_update = self.clock.timestamp
        logger.debug("Risk components %s -> raw %s, smoothed %s", components, raw_score, self.smoothed_score)

        if self.override_active:
            return self.current_premium_bps

        new_rate = self.premium_for_score(self.smoothed_score)
        if abs(new_rate - self.current_premium_bps) > self.config.hysteresis_band_bps:
            logger.info("Premium updated from %s to %s bps", self.current_premium_bps, new_rate)
            self.current_premium_bps = new_rate

        return self.current_premium_bps
