"""
Unit tests for the price history and realized risk statistics.
"""

import unittest
import sys
import os

import numpy as np

# Add the repo root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from insurance_model.chain import ChainClock
from insurance_model.config import BPS, ONE_DAY, ONE_YEAR
from insurance_model.errors import ExternalCallError, IntegrityError
from insurance_model.external import SimplePriceOracle
from insurance_model.risk_metrics import DEFAULT_VOLATILITY_BPS, RiskMetrics


class RiskMetricsTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = ChainClock(timestamp=1_000_000, block_number=1)
        self.oracle = SimplePriceOracle(self.clock)
        self.metrics = RiskMetrics(self.oracle, self.clock)

    def feed(self, asset, prices, interval=ONE_DAY):
        for price in prices:
            self.metrics.add_price_observation(asset, price)
            self.clock.advance(interval)


class TestOracleReads(RiskMetricsTestCase):
    def test_record_price_from_oracle(self):
        """Test recording the oracle price into history."""
        self.oracle.set_price("WETH", 200_000)

        self.assertEqual(self.metrics.record_price("WETH"), 200_000)
        self.assertEqual(list(self.metrics.get_prices("WETH")), [200_000.0])

    def test_low_confidence_rejected(self):
        """Test that low-confidence prices are rejected."""
        metrics = RiskMetrics(self.oracle, self.clock, min_confidence_bps=9_800)
        self.oracle.set_price("WETH", 100, source="a")
        self.oracle.set_price("WETH", 100, source="b")
        self.oracle.set_price("WETH", 104, source="c")

        with self.assertRaises(IntegrityError):
            metrics.get_price_with_confidence("WETH")

    def test_stale_price_rejected(self):
        """Test that stale prices are rejected."""
        self.oracle.set_price("WETH", 200_000)
        self.clock.advance(ONE_DAY)

        with self.assertRaises(ExternalCallError):
            self.metrics.get_price_with_confidence("WETH")


class TestHistory(RiskMetricsTestCase):
    def test_history_is_bounded(self):
        """Test that price history is bounded."""
        metrics = RiskMetrics(self.oracle, self.clock, max_history=5)
        for price in range(1, 9):
            metrics.add_price_observation("WETH", price)

        self.assertEqual(list(metrics.get_prices("WETH")), [4.0, 5.0, 6.0, 7.0, 8.0])

    def test_observations_must_be_in_order(self):
        """Test that observations must be in time order."""
        self.metrics.add_price_observation("WETH", 100, timestamp=2_000_000)

        with self.assertRaises(ValueError):
            self.metrics.add_price_observation("WETH", 101, timestamp=1_999_999)

    def test_observation_interval(self):
        """Test the observation interval of recorded prices."""
        self.assertIsNone(self.metrics.observation_interval("WETH"))
        self.feed("WETH", [100, 101, 102])

        self.assertEqual(self.metrics.observation_interval("WETH"), ONE_DAY)


class TestVolatility(RiskMetricsTestCase):
    def test_default_until_enough_history(self):
        """Test the default volatility before enough history exists."""
        self.feed("WETH", [100, 101])
        self.assertEqual(self.metrics.calculate_volatility("WETH"), DEFAULT_VOLATILITY_BPS)

    def test_annualized_volatility(self):
        """Test annualized volatility from log returns."""
        prices = [100, 103, 99, 104, 101, 98, 102]
        self.feed("WETH", prices)

        returns = np.diff(np.log(prices))
        expected = returns.std(ddof=1) * np.sqrt(ONE_YEAR / ONE_DAY) * BPS
        self.assertEqual(self.metrics.calculate_volatility("WETH"), int(round(expected)))

    def test_flat_prices_have_no_volatility(self):
        """Test that flat prices have zero volatility."""
        self.feed("WETH", [100, 100, 100, 100])
        self.assertEqual(self.metrics.calculate_volatility("WETH"), 0)


class TestCorrelation(RiskMetricsTestCase):
    def feed_pair(self, prices_a, prices_b):
        for a, b in zip(prices_a, prices_b):
            self.metrics.add_price_observation("WETH", a)
            self.metrics.add_price_observation("WBTC", b)
            self.clock.advance(ONE_DAY)

    def test_perfect_correlation(self):
        """Test perfectly correlated series."""
        self.feed_pair([100, 110, 105, 120, 115], [200, 220, 210, 240, 230])
        self.assertEqual(self.metrics.calculate_correlation("WETH", "WBTC"), BPS)

    def test_inverse_correlation(self):
        """Test inversely correlated series."""
        self.feed_pair([100, 110, 100, 110, 100], [100, 90, 100, 90, 100])
        self.assertLess(self.metrics.calculate_correlation("WETH", "WBTC"), -9_000)

    def test_needs_three_returns(self):
        """Test that correlation needs at least three returns."""
        self.feed_pair([100, 110, 105], [200, 220, 210])
        self.assertEqual(self.metrics.calculate_correlation("WETH", "WBTC"), 0)

    def test_flat_series(self):
        """Test correlation against a flat series."""
        self.feed_pair([100, 110, 105, 120], [200, 200, 200, 200])
        self.assertEqual(self.metrics.calculate_correlation("WETH", "WBTC"), 0)


class TestDrawdown(RiskMetricsTestCase):
    def test_max_drawdown(self):
        """Test peak-to-trough drawdown on a value series."""
        self.feed("WETH", [100, 120, 90, 110])
        self.assertEqual(self.metrics.max_drawdown_bps("WETH"), 2_500)

    def test_no_history(self):
        """Test drawdown without history."""
        self.assertEqual(self.metrics.max_drawdown_bps("WETH"), 0)


if __name__ == "__main__":
    unittest.main()
