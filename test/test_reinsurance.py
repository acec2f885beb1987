"""
Unit tests for the Reinsurance Module.
"""

import unittest
import sys
import os

# Add the repo root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from insurance_model.access_control import PermissionTable, Role
from insurance_model.chain import ChainClock
from insurance_model.config import CLAIM_VALIDITY_PERIOD
from insurance_model.errors import (
    AccessDeniedError,
    CapacityError,
    IntegrityError,
    StatePreconditionError,
    ValidationError,
)
from insurance_model.reinsurance import CoverageStatus, ReinsuranceModule, build_loss_proof

GOVERNANCE = "governance"
POOL = "insurance_pool"


class ReinsuranceTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = ChainClock(timestamp=1_000_000, block_number=1)
        self.permissions = PermissionTable(governance=GOVERNANCE)
        self.permissions.grant(Role.LIQUIDATION_MODULE, POOL)
        self.module = ReinsuranceModule(self.clock, self.permissions)

    def file_request(self, loss=150_000, covered=139_000, before=220_000, after=70_000):
        proof = build_loss_proof(loss, before, after, self.clock.timestamp)
        return self.module.request_coverage(POOL, loss, covered, proof)


class TestProviders(ReinsuranceTestCase):
    def test_register_requires_governance(self):
        """Test that only governance registers providers."""
        with self.assertRaises(AccessDeniedError):
            self.module.register_provider(POOL, "re", 100_000, 100_000, 500, 8_000)

    def test_duplicate_provider_rejected(self):
        """Test that a provider cannot be registered twice."""
        self.module.register_provider(GOVERNANCE, "re", 100_000, 100_000, 500, 8_000)
        with self.assertRaises(StatePreconditionError):
            self.module.register_provider(GOVERNANCE, "re", 100_000, 100_000, 500, 8_000)

    def test_invalid_terms_rejected(self):
        """Test that invalid provider terms are rejected."""
        with self.assertRaises(ValidationError):
            self.module.register_provider(GOVERNANCE, "re", 0, 100_000, 500, 8_000)
        with self.assertRaises(ValidationError):
            self.module.register_provider(GOVERNANCE, "re", 100_000, 100_000, 10_001, 8_000)

    def test_capacity_rules(self):
        """Test provider capacity under limits, trust and pauses."""
        self.module.register_provider(GOVERNANCE, "capped", 100_000, 60_000, 500, 8_000)
        self.module.register_provider(GOVERNANCE, "untrusted", 100_000, 100_000, 500, 4_999)
        self.module.register_provider(GOVERNANCE, "paused", 100_000, 100_000, 500, 8_000)
        self.module.set_provider_active(GOVERNANCE, "paused", False)

        self.assertEqual(self.module.providers["capped"].capacity(), 60_000)
        self.assertEqual(self.module.providers["untrusted"].capacity(), 0)
        self.assertEqual(self.module.total_capacity(), 60_000)

    def test_capital_locked_while_claim_approved(self):
        """Test that capital cannot be withdrawn while a claim is approved."""
        self.module.register_provider(GOVERNANCE, "re", 500_000, 500_000, 500, 8_000)
        request_id = self.file_request()
        self.module.approve_coverage(GOVERNANCE, request_id)

        with self.assertRaises(StatePreconditionError):
            self.module.withdraw_capital("re", 1_000)

    def test_add_capital(self):
        """Test that added capital raises capacity up to the coverage limit."""
        self.module.register_provider(GOVERNANCE, "re", 40_000, 100_000, 500, 8_000)

        self.module.add_capital("re", 80_000)

        self.assertEqual(self.module.providers["re"].allocated_capital, 120_000)
        self.assertEqual(self.module.total_capacity(), 100_000)
        with self.assertRaises(ValidationError):
            self.module.add_capital("re", 0)
        with self.assertRaises(ValidationError):
            self.module.add_capital("nobody", 1_000)


class TestCoverageRequests(ReinsuranceTestCase):
    def test_only_loss_handler_can_request(self):
        """Test that only the pool can request coverage."""
        proof = build_loss_proof(150_000, 220_000, 70_000, self.clock.timestamp)
        with self.assertRaises(AccessDeniedError):
            self.module.request_coverage(GOVERNANCE, 150_000, 139_000, proof)

    def test_tampered_proof_rejected(self):
        """Test that a tampered loss proof is rejected."""
        proof = build_loss_proof(150_000, 220_000, 70_000, self.clock.timestamp)
        proof.pool_value_after = 200_000

        with self.assertRaises(IntegrityError):
            self.module.request_coverage(POOL, 150_000, 139_000, proof)

    def test_proof_must_match_loss(self):
        """Test that the proof must match the claimed loss."""
        proof = build_loss_proof(150_000, 220_000, 70_000, self.clock.timestamp)
        with self.assertRaises(IntegrityError):
            self.module.request_coverage(POOL, 160_000, 139_000, proof)

    def test_coverage_cannot_exceed_loss(self):
        """Test that coverage cannot exceed the loss."""
        with self.assertRaises(ValidationError):
            self.file_request(covered=150_001)

    def test_approval_capped_by_capacity(self):
        """Test that approved coverage is capped by capacity."""
        self.module.register_provider(GOVERNANCE, "a", 60_000, 60_000, 500, 8_000)
        self.module.register_provider(GOVERNANCE, "b", 40_000, 40_000, 500, 8_000)
        request_id = self.file_request()

        self.assertEqual(self.module.approve_coverage(GOVERNANCE, request_id), 100_000)
        self.assertEqual(self.module.requests[request_id].status, CoverageStatus.APPROVED)

    def test_approval_without_capacity(self):
        """Test that approval fails without capacity."""
        request_id = self.file_request()
        with self.assertRaises(CapacityError):
            self.module.approve_coverage(GOVERNANCE, request_id)

    def test_request_expires(self):
        """Test that requests expire after the validity period."""
        self.module.register_provider(GOVERNANCE, "re", 500_000, 500_000, 500, 8_000)
        request_id = self.file_request()
        self.clock.advance(CLAIM_VALIDITY_PERIOD + 1)

        with self.assertRaises(StatePreconditionError):
            self.module.approve_coverage(GOVERNANCE, request_id)
        self.assertEqual(self.module.requests[request_id].status, CoverageStatus.EXPIRED)

    def test_expire_request_inside_window_rejected(self):
        """Test that a valid request cannot be expired."""
        request_id = self.file_request()
        with self.assertRaises(StatePreconditionError):
            self.module.expire_request(request_id)

    def test_rejected_request_cannot_be_approved(self):
        """Test that a rejected request cannot be approved."""
        self.module.register_provider(GOVERNANCE, "re", 500_000, 500_000, 500, 8_000)
        request_id = self.file_request()
        self.module.reject_coverage(GOVERNANCE, request_id)

        with self.assertRaises(StatePreconditionError):
            self.module.approve_coverage(GOVERNANCE, request_id)


class TestPayout(ReinsuranceTestCase):
    def test_pro_rata_payout_and_premium(self):
        """Test pro-rata payout and premium per provider."""
        self.module.register_provider(GOVERNANCE, "a", 300_000, 300_000, 500, 8_000)
        self.module.register_provider(GOVERNANCE, "b", 100_000, 100_000, 1_000, 8_000)
        request_id = self.file_request(covered=100_000)
        self.module.approve_coverage(GOVERNANCE, request_id)

        result = self.module.execute_payout(POOL, request_id)

        self.assertEqual(result.payout, 100_000)
        self.assertEqual(result.allocations, {"a": 75_000, "b": 25_000})
        self.assertEqual(result.premium_due, 3_750 + 2_500)
        self.assertEqual(result.net_capital, 93_750)
        self.assertEqual(self.module.providers["a"].allocated_capital, 225_000)
        self.assertEqual(self.module.providers["b"].premiums_earned, 2_500)
        self.assertEqual(self.module.requests[request_id].status, CoverageStatus.PAID_OUT)

    def test_payout_once(self):
        """Test that a request pays out only once."""
        self.module.register_provider(GOVERNANCE, "re", 500_000, 500_000, 500, 8_000)
        request_id = self.file_request()
        self.module.approve_coverage(GOVERNANCE, request_id)
        self.module.execute_payout(POOL, request_id)

        with self.assertRaises(StatePreconditionError):
            self.module.execute_payout(POOL, request_id)

    def test_rounding_remainder_goes_to_last_provider(self):
        """Test that the rounding remainder starts from the last provider."""
        for name in ("a", "b", "c"):
            self.module.register_provider(GOVERNANCE, name, 100_000, 100_000, 0, 8_000)
        request_id = self.file_request(covered=100_000)
        self.module.approve_coverage(GOVERNANCE, request_id)

        result = self.module.execute_payout(POOL, request_id)

        self.assertEqual(result.allocations, {"a": 33_333, "b": 33_333, "c": 33_334})
        self.assertEqual(sum(result.allocations.values()), 100_000)

    def test_rounding_remainder_respects_capacity(self):
        """Test that no provider is drawn past its capacity when spreading the remainder."""
        for name in ("a", "b", "c"):
            self.module.register_provider(GOVERNANCE, name, 3, 3, 0, 8_000)
        request_id = self.file_request(covered=8)
        self.module.approve_coverage(GOVERNANCE, request_id)

        result = self.module.execute_payout(POOL, request_id)

        self.assertEqual(result.allocations, {"a": 2, "b": 3, "c": 3})
        self.assertEqual(sum(result.allocations.values()), 8)
        for provider in self.module.providers.values():
            self.assertGreaterEqual(provider.allocated_capital, 0)

    def test_payout_requires_loss_handler(self):
        """Test that only the pool can execute a payout."""
        with self.assertRaises(AccessDeniedError):
            self.module.execute_payout(GOVERNANCE, 1)


if __name__ == "__main__":
    unittest.main()
