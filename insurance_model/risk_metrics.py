"""
Risk Metrics Model for the Liquidation Insurance Protocol.

Keeps a bounded price history per asset, fed from the oracle, and derives the
realized volatility and correlation figures consumed by premium pricing and
the capital adequacy monitor.
"""

import logging
from collections import deque

import numpy as np

from insurance_model.config import BPS, ONE_YEAR
from insurance_model.errors import IntegrityError

logger = logging.getLogger(__name__)

MAX_PRICE_HISTORY = 100
MIN_CONFIDENCE_BPS = 9_500
DEFAULT_VOLATILITY_BPS = 8_000   # reported until enough history exists


class RiskMetrics:
    """
    Price history and realized risk statistics per asset.
    """

    def __init__(self, oracle, clock, max_history=MAX_PRICE_HISTORY, min_confidence_bps=MIN_CONFIDENCE_BPS):
        self.oracle = oracle
        self.clock = clock
        self.max_history = max_history
        self.min_confidence_bps = min_confidence_bps

        # asset -> deque of (timestamp, price)
        self.price_history = {}

    def get_price_with_confidence(self, asset):
        """
        Returns (price, confidence_bps) from the oracle.

        Raises:
            IntegrityError: If the oracle confidence is below the minimum
        """
        price, confidence = self.oracle.get_price(asset)
        if confidence < self.min_confidence_bps:
            raise IntegrityError(
                f"Oracle confidence for {asset} too low: {confidence} < {self.min_confidence_bps}"
            )
        return price, confidence

    def record_price(self, asset):
        """Fetch the current oracle price and append it to the history."""
        price, _ = self.get_price_with_confidence(asset)
        self.add_price_observation(asset, price)
        return price

    def add_price_observation(self, asset, price, timestamp=None):
        if price <= 0:
            raise ValueError(f"Invalid price: {price}")
        if timestamp is None:
            timestamp = self.clock.timestamp
        history = self.price_history.setdefault(asset, deque(maxlen=self.max_history))
        if history and timestamp < history[-1][0]:
            raise ValueError("Price observations must be in time order")
        history.append((timestamp, price))

    def get_prices(self, asset):
        """Returns the recorded prices of asset as a float array."""
        return np.array([price for _, price in self.price_history.get(asset, ())], dtype=float)

    def get_timestamps(self, asset):
        return np.array([ts for ts, _ in self.price_history.get(asset, ())], dtype=float)

    def observation_interval(self, asset):
        """Average spacing between observations in seconds, or None without two points."""
        timestamps = self.get_timestamps(asset)
        if len(timestamps) < 2:
            return None
        spacing = np.diff(timestamps).mean()
        return spacing if spacing > 0 else None

    def log_returns(self, asset):
        prices = self.get_prices(asset)
        if len(prices) < 2:
            return np.array([])
        return np.diff(np.log(prices))

    def calculate_volatility(self, asset):
        """
        Annualized realized volatility of asset in basis points.

        Falls back to DEFAULT_VOLATILITY_BPS until at least three observations exist.
        """
        returns = self.log_returns(asset)
        interval = self.observation_interval(asset)
        if len(returns) < 2 or interval is None:
            return DEFAULT_VOLATILITY_BPS

        periods_per_year = ONE_YEAR / interval
        annualized = returns.std(ddof=1) * np.sqrt(periods_per_year)
        return int(round(annualized * BPS))

    def calculate_correlation(self, asset_a, asset_b):
        """
        Pearson correlation of the two assets' log returns, in basis points.

        Only the overlapping tail of both histories is used. Returns 0 when
        fewer than three overlapping returns exist or a series is flat.
        """
        returns_a = self.log_returns(asset_a)
        returns_b = self.log_returns(asset_b)
        n = min(len(returns_a), len(returns_b))
        if n < 3:
            return 0

        a = returns_a[-n:]
        b = returns_b[-n:]
        if a.std() == 0 or b.std() == 0:
            return 0

        correlation = np.corrcoef(a, b)[0, 1]
        return int(round(correlation * BPS))

    def max_drawdown_bps(self, asset):
        """Largest peak-to-trough fall in the recorded history, in basis points."""
        prices = self.get_prices(asset)
        if len(prices) < 2:
            return 0
        peaks = np.maximum.accumulate(prices)
        drawdowns = (peaks - prices) / peaks
        return int(round(drawdowns.max() * BPS))
