"""
Capital Adequacy Monitor for the Liquidation Insurance Protocol.

Required capital has three parts:
1. Expected loss: liquidation probability x debt exposure x (1 - discount),
   plus a tail cushion on current capital
2. Tail risk: max(VaR99, ES99) of the exposure over one year from the GBM model
3. Stress buffer: 1.5x the largest loss observed so far

The ratio of available to required capital drives a two-state circuit
breaker. Crossing below the pause threshold trips it; recovering to the
target ratio resets it.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from insurance_model.config import BPS, ONE_YEAR, AdequacyConfig
from insurance_model.gbm_risk_model import GBMParameters

logger = logging.getLogger(__name__)


class CircuitBreakerState(Enum):
    NORMAL = 0
    CIRCUIT_BREAKER_ACTIVE = 1


@dataclass
class ExposureSnapshot:
    """What the pool is currently exposed to."""
    available_capital: int
    debt_exposure: int
    average_discount_bps: int
    collateral_asset: str


@dataclass
class CapitalRequirement:
    expected_loss: int
    tail_risk: int
    stress_buffer: int

    @property
    def total(self):
        return self.expected_loss + self.tail_risk + self.stress_buffer


@dataclass
class AdequacyReport:
    available_capital: int
    required_capital: int
    capital_ratio_bps: int
    state: CircuitBreakerState
    reinsurance_recommended: bool
    timestamp: int


class CapitalAdequacyMonitor:
    """
    Tracks liquidation history and decides whether the pool is adequately capitalized.
    """

    def __init__(self, gbm_model, risk_metrics, clock, config=None):
        self.gbm_model = gbm_model
        self.risk_metrics = risk_metrics
        self.clock = clock
        self.config = config or AdequacyConfig()

        self.state = CircuitBreakerState.NORMAL
        self.last_check = None
        self.last_report: Optional[AdequacyReport] = None

        self.liquidation_events = []
        self.max_observed_loss = 0
        self.first_observation = clock.timestamp

    def record_liquidation_event(self, timestamp=None):
        self.liquidation_events.append(self.clock.timestamp if timestamp is None else timestamp)

    def record_loss(self, amount):
        if amount > self.max_observed_loss:
            self.max_observed_loss = amount

    def is_circuit_breaker_active(self):
        return self.state == CircuitBreakerState.CIRCUIT_BREAKER_ACTIVE

    def liquidation_probability_bps(self):
        """
        Annualized event frequency turned into a probability, capped at 50%.

        Every expected event per year adds probability_bps_per_annual_event.
        """
        if not self.liquidation_events:
            return 0
        elapsed = max(self.clock.timestamp - self.first_observation, 1)
        annual_rate = len(self.liquidation_events) * ONE_YEAR / elapsed
        probability = int(annual_rate * self.config.probability_bps_per_annual_event)
        return min(probability, self.config.max_liquidation_probability_bps)

    def gbm_parameters(self, asset):
        """Calibrate from recorded history, or fall back to the default volatility."""
        prices = self.risk_metrics.get_prices(asset)
        interval = self.risk_metrics.observation_interval(asset)
        if len(prices) >= 3 and interval:
            params = self.gbm_model.calibrate(prices, interval / ONE_YEAR)
            if params.volatility > 0:
                return params
        return GBMParameters(drift=0.0, volatility=self.config.default_volatility, initial_price=1.0)

    def calculate_required_capital(self, snapshot):
        cfg = self.config
        probability = self.liquidation_probability_bps()
        expected_loss = (
            probability * snapshot.debt_exposure * (BPS - snapshot.average_discount_bps) // (BPS * BPS)
            + cfg.tail_cushion_bps * snapshot.available_capital // BPS
        )

        tail_risk = 0
        if snapshot.debt_exposure > 0:
            params = self.gbm_parameters(snapshot.collateral_asset)
            tail = self.gbm_model.tail_risk(
                snapshot.debt_exposure, params, cfg.var_horizon_years, cfg.var_confidence
            )
            tail_risk = max(tail.var, tail.expected_shortfall)

        stress_buffer = self.max_observed_loss * cfg.stress_multiplier_bps // BPS

        return CapitalRequirement(expected_loss=expected_loss, tail_risk=tail_risk, stress_buffer=stress_buffer)

    @staticmethod
    def capital_ratio_bps(available, required):
        if required <= 0:
            return 10 * BPS * BPS if available > 0 else BPS
        return available * BPS // required

    def check_capital_adequacy(self, snapshot):
        """
        Recompute the capital ratio and move the circuit breaker.

        Rate-limited: within check_interval of the last check the previous
        report is returned unchanged.
        """
        now = self.clock.timestamp
        if self.last_check is not None and now - self.last_check < self.config.check_interval:
            return self.last_report

        requirement = self.calculate_required_capital(snapshot)
        ratio = self.capital_ratio_bps(snapshot.available_capital, requirement.total)

        if self.state == CircuitBreakerState.NORMAL and ratio < self.config.pause_threshold_bps:
            self.state = CircuitBreakerState.CIRCUIT_BREAKER_ACTIVE
            logger.warning("Circuit breaker tripped: capital ratio %s bps", ratio)
        elif self.state == CircuitBreakerState.CIRCUIT_BREAKER_ACTIVE and ratio >= self.config.target_capital_ratio_bps:
            self.state = CircuitBreakerState.NORMAL
            logger.info("Circuit breaker reset: capital ratio %s bps", ratio)

        self.last_check = now
        self.last_report = AdequacyReport(
            available_capital=snapshot.available_capital,
            required_capital=requirement.total,
            capital_ratio_bps=ratio,
            state=self.state,
            reinsurance_recommended=ratio < self.config.reinsurance_trigger_bps,
            timestamp=now,
        )
        return self.last_report

    def can_execute_liquidation(self, snapshot, liquidation_cost, discount_bps):
        """
        Pure pre-check for a purchase costing liquidation_cost.

        Simulates capital after the purchase: the cost leaves available capital
        and the acquired collateral adds to the exposure. Rejects when the
        breaker is tripped or the resulting ratio would fall below minimum.
        """
        if self.is_circuit_breaker_active():
            return False
        if liquidation_cost > snapshot.available_capital:
            return False

        exposure = snapshot.debt_exposure + liquidation_cost
        if exposure > 0:
            discount = (snapshot.average_discount_bps * snapshot.debt_exposure + discount_bps * liquidation_cost) // exposure
        else:
            discount = discount_bps

        post = ExposureSnapshot(
            available_capital=snapshot.available_capital - liquidation_cost,
            debt_exposure=exposure,
            average_discount_bps=discount,
            collateral_asset=snapshot.collateral_asset,
        )
        required = self.calculate_required_capital(post).total
        return self.capital_ratio_bps(post.available_capital, required) >= self.config.min_capital_ratio_bps
