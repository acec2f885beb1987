"""
Geometric Brownian Motion Risk Model.

Calibrates drift and volatility from a price history, simulates the terminal
price distribution by Monte Carlo, and turns it into Value at Risk and
Expected Shortfall figures for a long collateral exposure.

    S_T = S_0 * exp((mu - sigma^2 / 2) * T + sigma * sqrt(T) * Z),  Z ~ N(0, 1)
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365
MIN_CALIBRATION_POINTS = 3


@dataclass
class GBMParameters:
    """Annualized GBM parameters."""
    drift: float
    volatility: float
    initial_price: float


@dataclass
class TailRisk:
    """Loss figures for one horizon and confidence level, in stablecoin units."""
    horizon_days: float
    confidence: float
    var: int
    expected_shortfall: int


class GBMRiskModel:
    """
    Monte Carlo tail-risk model for collateral exposure.
    """

    def __init__(self, num_paths: int = 10_000, seed: Optional[int] = None):
        if num_paths < 100:
            raise ValueError("At least 100 paths are required")
        self.num_paths = num_paths
        self.rng = np.random.default_rng(seed)

    def calibrate(self, prices: Sequence[float], dt_years: float) -> GBMParameters:
        """
        Estimate annualized drift and volatility from equally spaced prices.

        Args:
            prices: Price observations, oldest first
            dt_years: Spacing between observations in years

        Returns:
            GBMParameters anchored at the last observed price
        """
        prices = np.asarray(prices, dtype=float)
        if len(prices) < MIN_CALIBRATION_POINTS:
            raise ValueError(f"Need at least {MIN_CALIBRATION_POINTS} prices to calibrate")
        if dt_years <= 0:
            raise ValueError("Observation spacing must be positive")
        if np.any(prices <= 0):
            raise ValueError("Prices must be positive")

        log_returns = np.diff(np.log(prices))
        volatility = log_returns.std(ddof=1) / np.sqrt(dt_years)
        drift = log_returns.mean() / dt_years + 0.5 * volatility ** 2

        logger.debug("Calibrated GBM: drift=%.4f volatility=%.4f", drift, volatility)
        return GBMParameters(drift=float(drift), volatility=float(volatility), initial_price=float(prices[-1]))

    def simulate_terminal_prices(self, params: GBMParameters, horizon_years: float,
                                 num_paths: Optional[int] = None) -> np.ndarray:
        """Draw terminal prices at horizon_years using the exact GBM solution."""
        if num_paths is None:
            num_paths = self.num_paths
        z = self.rng.standard_normal(num_paths)
        exponent = (params.drift - 0.5 * params.volatility ** 2) * horizon_years \
            + params.volatility * np.sqrt(horizon_years) * z
        return params.initial_price * np.exp(exponent)

    def simulate_paths(self, params: GBMParameters, horizon_years: float, steps: int,
                       num_paths: Optional[int] = None) -> np.ndarray:
        """
        Simulate full price paths.

        Returns:
            Array of shape (num_paths, steps + 1); column 0 is the initial price
        """
        if num_paths is None:
            num_paths = self.num_paths
        dt = horizon_years / steps
        z = self.rng.standard_normal((num_paths, steps))
        increments = (params.drift - 0.5 * params.volatility ** 2) * dt + params.volatility * np.sqrt(dt) * z
        log_paths = np.concatenate([np.zeros((num_paths, 1)), np.cumsum(increments, axis=1)], axis=1)
        return params.initial_price * np.exp(log_paths)

    def loss_distribution(self, exposure: int, params: GBMParameters, horizon_years: float) -> np.ndarray:
        """Simulated losses of a long position worth exposure today; gains count as zero loss."""
        terminal = self.simulate_terminal_prices(params, horizon_years)
        returns = terminal / params.initial_price - 1.0
        return np.maximum(-returns * exposure, 0.0)

    def calculate_var(self, exposure: int, params: GBMParameters, horizon_years: float,
                      confidence: float = 0.99) -> int:
        """Value at Risk: the loss not exceeded with the given confidence."""
        return self.tail_risk(exposure, params, horizon_years, confidence).var

    def calculate_expected_shortfall(self, exposure: int, params: GBMParameters, horizon_years: float,
                                     confidence: float = 0.99) -> int:
        """Expected Shortfall: the average loss beyond VaR."""
        return self.tail_risk(exposure, params, horizon_years, confidence).expected_shortfall

    def tail_risk(self, exposure: int, params: GBMParameters, horizon_years: float,
                  confidence: float = 0.99) -> TailRisk:
        """VaR and Expected Shortfall from one simulated loss distribution."""
        if not 0 < confidence < 1:
            raise ValueError("Confidence must be between 0 and 1")
        if exposure <= 0:
            return TailRisk(horizon_years * DAYS_PER_YEAR, confidence, 0, 0)

        losses = self.loss_distribution(exposure, params, horizon_years)
        var = np.quantile(losses, confidence)
        tail = losses[losses >= var]
        es = tail.mean() if len(tail) else var
        return TailRisk(
            horizon_days=horizon_years * DAYS_PER_YEAR,
            confidence=confidence,
            var=int(var),
            expected_shortfall=int(es),
        )

    def var_table(self, exposure: int, params: GBMParameters,
                  horizons_days: Sequence[int] = (7, 30, 90),
                  confidences: Sequence[float] = (0.95, 0.99, 0.999)) -> Dict[Tuple[int, float], TailRisk]:
        """
        Tail risk across several horizons and confidence levels.

        Returns:
            Mapping of (horizon_days, confidence) to TailRisk
        """
        table = {}
        for days in horizons_days:
            for confidence in confidences:
                table[(days, confidence)] = self.tail_risk(exposure, params, days / DAYS_PER_YEAR, confidence)
        return table
