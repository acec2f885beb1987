"""
Unit tests for the capital adequacy monitor and its circuit breaker.
"""

import unittest
import sys
import os

# Add the repo root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from insurance_model.capital_adequacy import (
    CapitalAdequacyMonitor,
    CircuitBreakerState,
    ExposureSnapshot,
)
from insurance_model.chain import ChainClock
from insurance_model.config import BPS, ONE_HOUR, ONE_YEAR
from insurance_model.external import SimplePriceOracle
from insurance_model.gbm_risk_model import GBMRiskModel
from insurance_model.risk_metrics import RiskMetrics


def snapshot(available, exposure=0, discount_bps=500):
    return ExposureSnapshot(
        available_capital=available,
        debt_exposure=exposure,
        average_discount_bps=discount_bps,
        collateral_asset="WETH",
    )


class AdequacyTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = ChainClock(timestamp=1_000_000, block_number=1)
        self.oracle = SimplePriceOracle(self.clock)
        self.risk_metrics = RiskMetrics(self.oracle, self.clock)
        self.monitor = CapitalAdequacyMonitor(GBMRiskModel(num_paths=2_000, seed=11), self.risk_metrics, self.clock)


class TestRequiredCapital(AdequacyTestCase):
    def test_no_exposure_needs_only_cushion(self):
        """Test that required capital without exposure is just the tail cushion."""
        requirement = self.monitor.calculate_required_capital(snapshot(100_000))

        self.assertEqual(requirement.expected_loss, 5_000)
        self.assertEqual(requirement.tail_risk, 0)
        self.assertEqual(requirement.stress_buffer, 0)
        self.assertEqual(requirement.total, 5_000)

    def test_stress_buffer_from_largest_loss(self):
        """Test that the stress buffer scales the largest observed loss."""
        self.monitor.record_loss(2_000)
        self.monitor.record_loss(1_000)

        requirement = self.monitor.calculate_required_capital(snapshot(100_000))
        self.assertEqual(requirement.stress_buffer, 3_000)

    def test_tail_risk_bounded_by_exposure(self):
        """Test that the tail-risk component never exceeds the exposure."""
        requirement = self.monitor.calculate_required_capital(snapshot(100_000, exposure=50_000))

        self.assertGreater(requirement.tail_risk, 0)
        self.assertLessEqual(requirement.tail_risk, 50_000)

    def test_expected_loss_grows_with_liquidation_frequency(self):
        """Test that more liquidation events raise the expected loss."""
        for _ in range(10):
            self.monitor.record_liquidation_event()
        self.clock.advance(ONE_YEAR)

        requirement = self.monitor.calculate_required_capital(snapshot(0, exposure=100_000, discount_bps=500))
        # 10 events a year -> 1000 bps probability on 95% of the exposure
        self.assertEqual(requirement.expected_loss, 9_500)


class TestLiquidationProbability(AdequacyTestCase):
    def test_zero_without_events(self):
        """Test that the liquidation probability is zero before any event."""
        self.assertEqual(self.monitor.liquidation_probability_bps(), 0)

    def test_annualized_rate(self):
        """Test the liquidation probability derived from the annual event rate."""
        for _ in range(10):
            self.monitor.record_liquidation_event()
        self.clock.advance(ONE_YEAR)

        self.assertEqual(self.monitor.liquidation_probability_bps(), 1_000)

    def test_capped(self):
        """Test that the liquidation probability is capped."""
        for _ in range(60):
            self.monitor.record_liquidation_event()
        self.clock.advance(ONE_YEAR)

        self.assertEqual(self.monitor.liquidation_probability_bps(), 5_000)


class TestCapitalRatio(unittest.TestCase):
    def test_ratio(self):
        """Test the capital ratio in basis points."""
        self.assertEqual(CapitalAdequacyMonitor.capital_ratio_bps(150, 100), 15_000)

    def test_nothing_required(self):
        """Test the capital ratio when no capital is required."""
        self.assertEqual(CapitalAdequacyMonitor.capital_ratio_bps(100, 0), 10 * BPS * BPS)
        self.assertEqual(CapitalAdequacyMonitor.capital_ratio_bps(0, 0), BPS)


class TestCircuitBreaker(AdequacyTestCase):
    def test_trips_below_pause_threshold(self):
        """Test that the circuit breaker trips below the pause threshold."""
        self.monitor.record_loss(100_000)

        report = self.monitor.check_capital_adequacy(snapshot(100_000))

        # 100,000 / (5,000 cushion + 150,000 stress)
        self.assertEqual(report.capital_ratio_bps, 6_451)
        self.assertEqual(report.state, CircuitBreakerState.CIRCUIT_BREAKER_ACTIVE)
        self.assertTrue(report.reinsurance_recommended)
        self.assertTrue(self.monitor.is_circuit_breaker_active())

    def test_checks_are_rate_limited(self):
        """Test that adequacy checks are rate limited."""
        first = self.monitor.check_capital_adequacy(snapshot(100_000))
        self.monitor.record_loss(100_000)

        self.assertIs(self.monitor.check_capital_adequacy(snapshot(100_000)), first)
        self.assertFalse(self.monitor.is_circuit_breaker_active())

    def test_hysteresis_between_thresholds(self):
        """Test that the breaker only resets above the resume threshold."""
        self.monitor.record_loss(100_000)
        self.monitor.check_capital_adequacy(snapshot(100_000))

        # 200,000 / 160,000 = 12,500 bps: above the pause threshold, below target
        self.clock.advance(ONE_HOUR)
        report = self.monitor.check_capital_adequacy(snapshot(200_000))
        self.assertEqual(report.capital_ratio_bps, 12_500)
        self.assertTrue(self.monitor.is_circuit_breaker_active())

        # 300,000 / 165,000 = 18,181 bps: back above target
        self.clock.advance(ONE_HOUR)
        report = self.monitor.check_capital_adequacy(snapshot(300_000))
        self.assertEqual(report.state, CircuitBreakerState.NORMAL)
        self.assertFalse(report.reinsurance_recommended)


class TestCanExecuteLiquidation(AdequacyTestCase):
    def test_small_purchase_allowed(self):
        """Test that a small purchase passes the pre-check."""
        self.assertTrue(self.monitor.can_execute_liquidation(snapshot(1_000_000), 10_000, 500))

    def test_purchase_beyond_capital_rejected(self):
        """Test that a purchase larger than available capital is rejected."""
        self.assertFalse(self.monitor.can_execute_liquidation(snapshot(100_000), 100_001, 500))

    def test_purchase_that_breaks_minimum_ratio_rejected(self):
        """Test that a purchase pushing the ratio below the minimum is rejected."""
        self.assertFalse(self.monitor.can_execute_liquidation(snapshot(100_000), 90_000, 500))

    def test_rejected_while_breaker_active(self):
        """Test that purchases are rejected while the breaker is active."""
        self.monitor.record_loss(100_000)
        self.monitor.check_capital_adequacy(snapshot(100_000))

        self.assertFalse(self.monitor.can_execute_liquidation(snapshot(10_000_000), 1_000, 500))

    def test_pre_check_does_not_change_state(self):
        """Test that the pre-check leaves the monitor untouched."""
        self.monitor.can_execute_liquidation(snapshot(1_000_000), 10_000, 500)

        self.assertIsNone(self.monitor.last_report)
        self.assertIsNone(self.monitor.last_check)
        self.assertEqual(self.monitor.state, CircuitBreakerState.NORMAL)


class TestCalibration(AdequacyTestCase):
    def test_default_volatility_without_history(self):
        """Test the fallback volatility when there is no price history."""
        params = self.monitor.gbm_parameters("WETH")

        self.assertEqual(params.volatility, 0.80)

    def test_calibrates_from_history(self):
        """Test that GBM parameters are calibrated from recorded prices."""
        for price in (200_000, 210_000, 195_000, 205_000):
            self.risk_metrics.add_price_observation("WETH", price)
            self.clock.advance(ONE_HOUR)

        params = self.monitor.gbm_parameters("WETH")
        self.assertNotEqual(params.volatility, 0.80)
        self.assertGreater(params.volatility, 0)
        self.assertEqual(params.initial_price, 205_000)


if __name__ == "__main__":
    unittest.main()
