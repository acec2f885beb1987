"""
Unit tests for the tranche waterfall functions.
"""

import unittest
import sys
import os

# Add the repo root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from insurance_model.tranche_logic import (
    Tranche,
    TrancheState,
    calculate_nav,
    calculate_withdrawal,
    distribute_loss,
    distribute_profit,
    distribute_recovery,
    validate_invariants,
)


def make_state(senior_value, junior_value, senior_shares, junior_shares):
    return TrancheState(
        senior_value=senior_value,
        junior_value=junior_value,
        senior_shares=senior_shares,
        junior_shares=junior_shares,
        total_value=senior_value + junior_value,
    )


class TestNav(unittest.TestCase):
    def test_nav_at_par(self):
        """Test NAV at par."""
        self.assertEqual(calculate_nav(1000, 1000), 10000)

    def test_nav_impaired(self):
        """Test NAV of an impaired tranche."""
        self.assertEqual(calculate_nav(500, 1000), 5000)

    def test_empty_tranche_reports_par(self):
        """Test that an empty tranche reports par."""
        self.assertEqual(calculate_nav(0, 0), 10000)


class TestDistributeLoss(unittest.TestCase):
    def setUp(self):
        self.state = make_state(800, 200, 800, 200)

    def test_loss_within_junior(self):
        """Junior absorbs the whole loss while it can"""
        result = distribute_loss(self.state, 150)

        self.assertEqual(result.junior_loss, 150)
        self.assertEqual(result.senior_loss, 0)
        self.assertFalse(result.reinsurance_needed)

    def test_loss_exceeding_junior(self):
        """Test that a loss beyond Junior reaches Senior."""
        result = distribute_loss(self.state, 300)

        self.assertEqual(result.junior_loss, 200)
        self.assertEqual(result.senior_loss, 100)
        # Senior NAV after the loss is 8750 bps
        self.assertFalse(result.reinsurance_needed)

    def test_reinsurance_flag_below_threshold(self):
        """Test the reinsurance flag when Senior NAV drops below the threshold."""
        result = distribute_loss(self.state, 400)

        self.assertEqual(result.senior_loss, 200)
        # Senior NAV after the loss is 7500 bps
        self.assertTrue(result.reinsurance_needed)

    def test_zero_loss_is_noop(self):
        """Test that a zero loss changes nothing."""
        result = distribute_loss(self.state, 0)

        self.assertEqual((result.senior_loss, result.junior_loss), (0, 0))
        self.assertFalse(result.reinsurance_needed)

    def test_remainder_without_senior_shares(self):
        """Test a loss remainder when Senior has no shares."""
        state = make_state(0, 100, 0, 100)
        result = distribute_loss(state, 150)

        self.assertEqual(result.junior_loss, 100)
        self.assertEqual(result.senior_loss, 50)
        self.assertTrue(result.reinsurance_needed)

    def test_loss_split_property(self):
        """Junior takes min(loss, junior value); Senior takes the rest"""
        for loss in (1, 199, 200, 201, 999, 1000):
            result = distribute_loss(self.state, loss)
            self.assertEqual(result.junior_loss, min(loss, 200))
            self.assertEqual(result.senior_loss, loss - min(loss, 200))


class TestDistributeProfit(unittest.TestCase):
    def test_standard_split(self):
        """Test the 80/20 profit split."""
        result = distribute_profit(make_state(800, 200, 800, 200), 100)

        self.assertEqual(result.senior_profit, 80)
        self.assertEqual(result.junior_profit, 20)

    def test_no_shares(self):
        """Test profit with no shares outstanding."""
        result = distribute_profit(make_state(0, 0, 0, 0), 100)

        self.assertEqual((result.senior_profit, result.junior_profit), (0, 0))

    def test_only_senior_shares(self):
        """Test that Senior takes all profit when Junior is empty."""
        result = distribute_profit(make_state(800, 0, 800, 0), 100)

        self.assertEqual((result.senior_profit, result.junior_profit), (100, 0))

    def test_only_junior_shares(self):
        """Test that Junior takes all profit when Senior is empty."""
        result = distribute_profit(make_state(0, 200, 0, 200), 100)

        self.assertEqual((result.senior_profit, result.junior_profit), (0, 100))

    def test_impaired_junior_restored_first(self):
        """Junior at 5000 bps NAV keeps all profit below its deficit"""
        state = make_state(800, 100, 800, 200)
        result = distribute_profit(state, 60)

        self.assertEqual(result.junior_profit, 60)
        self.assertEqual(result.senior_profit, 0)

    def test_profit_exactly_restores_junior(self):
        """Test profit that exactly restores Junior."""
        state = make_state(800, 100, 800, 200)
        result = distribute_profit(state, 100)

        self.assertEqual((result.senior_profit, result.junior_profit), (0, 100))

    def test_excess_split_after_restoration(self):
        """Test that excess profit is split after Junior is restored."""
        state = make_state(800, 100, 800, 200)
        result = distribute_profit(state, 200)

        # Deficit 100 to Junior, the remaining 100 split 80/20
        self.assertEqual(result.junior_profit, 120)
        self.assertEqual(result.senior_profit, 80)

    def test_profit_is_conserved(self):
        """Test that the profit split always adds up to the profit."""
        for state in (make_state(800, 200, 800, 200), make_state(800, 37, 800, 200), make_state(1, 0, 1, 50)):
            for profit in (1, 7, 99, 1234):
                result = distribute_profit(state, profit)
                self.assertEqual(result.senior_profit + result.junior_profit, profit)


class TestDistributeRecovery(unittest.TestCase):
    def test_senior_restored_before_junior(self):
        """Test that recovered capital makes Senior whole before Junior sees any of it."""
        state = make_state(70_000, 0, 200_000, 20_000)
        result = distribute_recovery(state, 132_050, 130_000)

        self.assertEqual(result.senior_profit, 130_000)
        self.assertEqual(result.junior_profit, 2_050)

    def test_excess_split_after_both_restored(self):
        """Test that only the amount left after both restorations is split 80/20."""
        state = make_state(190_000, 0, 200_000, 20_000)
        result = distribute_recovery(state, 40_000, 10_000)

        self.assertEqual(result.senior_profit, 10_000 + 8_000)
        self.assertEqual(result.junior_profit, 20_000 + 2_000)

    def test_senior_never_restored_above_par(self):
        """Test that a stale impairment cannot lift Senior past par."""
        state = make_state(200_000, 5_000, 200_000, 20_000)
        result = distribute_recovery(state, 10_000, 50_000)

        self.assertEqual(result.senior_profit, 0)
        self.assertEqual(result.junior_profit, 10_000)

    def test_without_impairment_behaves_like_profit(self):
        """Test that with no recorded Senior loss the recovery follows the profit waterfall."""
        state = make_state(100_000, 10_000, 100_000, 20_000)

        self.assertEqual(distribute_recovery(state, 15_000, 0), distribute_profit(state, 15_000))

    def test_zero_amount(self):
        """Test that nothing is distributed for a zero recovery."""
        result = distribute_recovery(make_state(70_000, 0, 200_000, 20_000), 0, 130_000)
        self.assertEqual((result.senior_profit, result.junior_profit), (0, 0))


class TestCalculateWithdrawal(unittest.TestCase):
    def test_junior_pro_rata(self):
        """Test Junior pro-rata withdrawal."""
        state = make_state(800, 100, 800, 200)
        quote = calculate_withdrawal(state, 50, Tranche.JUNIOR)

        self.assertEqual(quote.entitlement, 25)
        self.assertFalse(quote.restricted)

    def test_senior_haircut_when_junior_impaired(self):
        """Junior NAV 5000 bps cuts Senior exits by 25%"""
        state = make_state(800, 100, 800, 200)
        quote = calculate_withdrawal(state, 400, Tranche.SENIOR)

        self.assertEqual(quote.entitlement, 300)
        self.assertTrue(quote.restricted)

    def test_senior_no_haircut_at_threshold(self):
        """Test that no haircut applies at the threshold."""
        state = make_state(800, 160, 800, 200)
        quote = calculate_withdrawal(state, 400, Tranche.SENIOR)

        self.assertEqual(quote.entitlement, 400)
        self.assertFalse(quote.restricted)

    def test_senior_without_junior_shares(self):
        """Test Senior withdrawal with no Junior shares."""
        state = make_state(800, 0, 800, 0)
        quote = calculate_withdrawal(state, 400, Tranche.SENIOR)

        self.assertEqual(quote.entitlement, 400)
        self.assertFalse(quote.restricted)

    def test_zero_shares(self):
        """Test that zero shares are worth nothing."""
        quote = calculate_withdrawal(make_state(800, 200, 800, 200), 0, Tranche.SENIOR)
        self.assertEqual(quote.entitlement, 0)


class TestValidateInvariants(unittest.TestCase):
    def test_valid_state(self):
        """Test a consistent tranche snapshot."""
        self.assertTrue(validate_invariants(make_state(800, 200, 800, 200)))

    def test_total_mismatch(self):
        """Test that a total mismatch is invalid."""
        state = make_state(800, 200, 800, 200)
        state.total_value += 1
        self.assertFalse(validate_invariants(state))

    def test_value_without_shares(self):
        """Test that value without shares is invalid."""
        self.assertFalse(validate_invariants(make_state(800, 200, 800, 0)))

    def test_shares_without_value_is_valid(self):
        """A wiped-out Junior keeps its shares"""
        self.assertTrue(validate_invariants(make_state(800, 0, 800, 200)))


if __name__ == "__main__":
    unittest.main()
