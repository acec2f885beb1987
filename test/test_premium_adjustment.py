"""
Unit tests for the premium pricing engine.
"""

import unittest
import sys
import os

# Add the repo root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from insurance_model.access_control import PermissionTable
from insurance_model.chain import ChainClock
from insurance_model.config import BPS, ONE_DAY
from insurance_model.errors import AccessDeniedError, CapacityError, ValidationError
from insurance_model.external import SimpleDexVenue, SimplePriceOracle
from insurance_model.premium_adjustment import (
    DEFAULT_WEIGHTS,
    MODERATE_LOSS_WEIGHTS,
    SEVERE_LOSS_WEIGHTS,
    PremiumAdjustment,
    RiskComponents,
    RiskWeights,
)
from insurance_model.risk_metrics import RiskMetrics

ETH_UNIT_PRICE = 200_000


class PremiumTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = ChainClock(timestamp=1_000_000, block_number=1)
        self.permissions = PermissionTable(governance="governance")
        self.oracle = SimplePriceOracle(self.clock)
        self.oracle.set_price("WETH", ETH_UNIT_PRICE)
        self.dex = SimpleDexVenue(self.oracle)
        self.dex.add_stablecoin("USDC")
        self.dex.set_liquidity("WETH", "USDC", 50_000_000)
        self.risk_metrics = RiskMetrics(self.oracle, self.clock)
        self.engine = PremiumAdjustment(
            self.risk_metrics, self.dex, self.clock, self.permissions, "WETH", "USDC",
        )

    def next_epoch(self):
        self.clock.advance(ONE_DAY)
        self.oracle.set_price("WETH", ETH_UNIT_PRICE)


class TestRiskComponents(PremiumTestCase):
    def test_liquidity_score_from_probe_slippage(self):
        """Test the liquidity score derived from probe slippage."""
        # 19 bps impact plus 30 bps fee against a 500 bps full-risk slippage
        self.assertEqual(self.engine._liquidity_score(), 980)

    def test_failed_probe_is_maximum_risk(self):
        """Test that a failed liquidity probe scores as maximum risk."""
        self.dex.set_liquidity("WETH", "USDC", 0)
        self.assertEqual(self.engine._liquidity_score(), BPS)

    def test_liquidation_frequency_window(self):
        """Test that only recent liquidations count toward frequency."""
        for _ in range(5):
            self.engine.record_liquidation()
        self.assertEqual(self.engine._liquidation_frequency_score(), 2_500)

        self.clock.advance(ONE_DAY + 1)
        self.assertEqual(self.engine._liquidation_frequency_score(), 0)

    def test_loss_momentum_decays(self):
        """Test that loss momentum decays over time."""
        self.engine.record_loss(500)
        self.assertEqual(self.engine._loss_momentum_score(), 5_000)

        self.clock.advance(3 * ONE_DAY)
        self.assertEqual(self.engine._loss_momentum_score(), 2_500)

    def test_utilization_is_clamped(self):
        """Test that the utilization score is clamped."""
        components = self.engine.calculate_risk_components(12_000)
        self.assertEqual(components.utilization, BPS)

    def test_correlation_without_second_asset(self):
        """Test the correlation score without a second asset."""
        self.assertEqual(self.engine._correlation_score(), 0)


class TestRiskWeights(PremiumTestCase):
    def test_weight_sets_sum_to_one(self):
        """Test that every weight set sums to 10000."""
        for weights in (DEFAULT_WEIGHTS, MODERATE_LOSS_WEIGHTS, SEVERE_LOSS_WEIGHTS):
            weights.validate()

    def test_invalid_weights(self):
        """Test that weights not summing to 10000 are rejected."""
        with self.assertRaises(ValidationError):
            RiskWeights(5_000, 5_000, 1, 0, 0, 0).validate()

    def test_loss_driven_shift(self):
        """Test the weight shift after recent losses."""
        self.assertEqual(self.engine.effective_weights(), DEFAULT_WEIGHTS)

        self.engine.record_loss(300)
        self.assertEqual(self.engine.effective_weights(), MODERATE_LOSS_WEIGHTS)

        self.engine.record_loss(300)
        self.assertEqual(self.engine.effective_weights(), SEVERE_LOSS_WEIGHTS)

        self.clock.advance(8 * ONE_DAY)
        self.assertEqual(self.engine.effective_weights(), DEFAULT_WEIGHTS)

    def test_manual_weights_stick(self):
        """Test that manual weights are not shifted by losses."""
        manual = RiskWeights(10_000, 0, 0, 0, 0, 0)
        self.engine.set_risk_weights("governance", manual)
        self.engine.record_loss(1_000)

        self.assertEqual(self.engine.effective_weights(), manual)
        self.engine.reset_risk_weights("governance")
        self.assertEqual(self.engine.effective_weights(), SEVERE_LOSS_WEIGHTS)

    def test_weights_require_governance(self):
        """Test that only governance can set weights."""
        with self.assertRaises(AccessDeniedError):
            self.engine.set_risk_weights("keeper", DEFAULT_WEIGHTS)

    def test_weighted_score(self):
        """Test the weighted risk score."""
        components = RiskComponents(volatility=BPS, utilization=BPS)
        self.assertEqual(self.engine.calculate_risk_score(components, DEFAULT_WEIGHTS), 4_500)


class TestPremiumUpdates(PremiumTestCase):
    def test_starts_at_base_rate(self):
        """Test that the premium starts at the base rate."""
        self.assertEqual(self.engine.get_current_premium_bps(), 200)

    def test_premium_for_score_is_clamped(self):
        """Test that the premium for a score stays within bounds."""
        self.assertEqual(self.engine.premium_for_score(0), 200)
        self.assertEqual(self.engine.premium_for_score(BPS), 1_200)

        self.engine.config.risk_multiplier_bps = 5_000
        self.assertEqual(self.engine.premium_for_score(BPS), 1_500)

    def test_epoch_gating(self):
        """Test that premiums update at most once per epoch."""
        self.assertEqual(self.engine.update_premiums(0), 200)
        self.assertIsNone(self.engine.smoothed_score)

    def test_update_after_epoch(self):
        """Test the premium update after one epoch."""
        self.next_epoch()

        # Default volatility 8000 bps -> 5333; liquidity 980
        self.assertEqual(self.engine.update_premiums(0), 348)
        self.assertEqual(self.engine.smoothed_score, 1_480)

    def test_ema_smoothing(self):
        """Test exponential smoothing of the risk score."""
        self.engine.smoothed_score = 1_000
        self.assertEqual(self.engine.smooth(2_000), 1_300)

    def test_hysteresis_band(self):
        """Test that small premium changes are ignored."""
        self.next_epoch()
        self.engine.update_premiums(0)
        self.engine.current_premium_bps = 340

        self.next_epoch()
        self.assertEqual(self.engine.update_premiums(0), 340)

    def test_override(self):
        """Test the governance premium override."""
        self.engine.force_premium("governance", 0)
        self.next_epoch()

        self.assertEqual(self.engine.update_premiums(0), 0)
        self.assertEqual(self.engine.smoothed_score, 1_480)

        self.engine.clear_override("governance")
        self.next_epoch()
        self.assertEqual(self.engine.update_premiums(0), 348)

    def test_override_bounds(self):
        """Test that overrides outside the bounds are rejected."""
        with self.assertRaises(CapacityError):
            self.engine.force_premium("governance", 2_001)
        with self.assertRaises(ValidationError):
            self.engine.force_premium("governance", -1)
        with self.assertRaises(AccessDeniedError):
            self.engine.force_premium("keeper", 100)


if __name__ == "__main__":
    unittest.main()
