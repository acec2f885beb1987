"""
Reinsurance Module for the Liquidation Insurance Protocol.

External capital providers allocate capital with a coverage limit and a
premium rate. When a loss exhausts the Junior tranche, the pool files a
coverage request backed by a loss proof. Governance approves the request
against available capacity, and the payout is drawn pro-rata from the
providers. Each provider earns its premium on the share it paid.

Requests are valid for CLAIM_VALIDITY_PERIOD; nothing expires in the
background, the window is checked whenever the request is touched.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict

from insurance_model.access_control import Role
from insurance_model.chain import atomic_state, hash_fields, non_reentrant
from insurance_model.config import BPS, CLAIM_VALIDITY_PERIOD, MIN_PROVIDER_TRUST_SCORE
from insurance_model.errors import (
    ValidationError,
    StatePreconditionError,
    IntegrityError,
    CapacityError,
)

logger = logging.getLogger(__name__)


class CoverageStatus(Enum):
    PENDING = 0
    APPROVED = 1
    PAID_OUT = 2
    REJECTED = 3
    EXPIRED = 4


@dataclass
class ReinsuranceProvider:
    address: str
    allocated_capital: int
    coverage_limit: int
    premium_rate_bps: int
    trust_score: int
    active: bool = True
    total_paid_out: int = 0
    premiums_earned: int = 0

    def capacity(self):
        """What this provider can pay on the next claim."""
        if not self.active or self.trust_score < MIN_PROVIDER_TRUST_SCORE:
            return 0
        return min(self.allocated_capital, self.coverage_limit)


@dataclass
class LossProof:
    """
    Evidence for a loss: pool value before and after, and a digest binding them.
    """
    loss_amount: int
    pool_value_before: int
    pool_value_after: int
    timestamp: int
    digest: str = ""

    def compute_digest(self):
        return hash_fields(self.loss_amount, self.pool_value_before, self.pool_value_after, self.timestamp)


def build_loss_proof(loss_amount, pool_value_before, pool_value_after, timestamp):
    proof = LossProof(loss_amount, pool_value_before, pool_value_after, timestamp)
    proof.digest = proof.compute_digest()
    return proof


@dataclass
class CoverageRequest:
    request_id: int
    requester: str
    loss_amount: int
    requested_coverage: int
    timestamp: int
    proof: LossProof
    approved_coverage: int = 0
    status: CoverageStatus = CoverageStatus.PENDING


@dataclass
class PayoutResult:
    request_id: int
    payout: int
    premium_due: int
    allocations: Dict[str, int] = field(default_factory=dict)

    @property
    def net_capital(self):
        return self.payout - self.premium_due


class ReinsuranceModule:
    """
    Tracks reinsurance providers and coverage requests.
    """

    STATE_FIELDS = ("providers", "requests", "next_request_id")

    def __init__(self, clock, permissions):
        self.clock = clock
        self.permissions = permissions

        self.providers = {}
        self.requests = {}
        self.next_request_id = 1

    def register_provider(self, caller, address, allocated_capital, coverage_limit, premium_rate_bps, trust_score):
        self.permissions.require(Role.GOVERNANCE, caller)
        if address in self.providers:
            raise StatePreconditionError(f"Provider {address} already registered")
        if allocated_capital <= 0 or coverage_limit <= 0:
            raise ValidationError("Capital and coverage limit must be positive")
        if not 0 <= premium_rate_bps <= BPS or not 0 <= trust_score <= BPS:
            raise ValidationError("Premium rate and trust score must be in basis points")

        self.providers[address] = ReinsuranceProvider(
            address=address,
            allocated_capital=allocated_capital,
            coverage_limit=coverage_limit,
            premium_rate_bps=premium_rate_bps,
            trust_score=trust_score,
        )
        logger.info("Registered reinsurance provider %s with %s capital", address, allocated_capital)

    def add_capital(self, provider, amount):
        if provider not in self.providers:
            raise ValidationError(f"Unknown provider {provider}")
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        self.providers[provider].allocated_capital += amount

    def withdraw_capital(self, provider, amount):
        record = self.providers.get(provider)
        if record is None:
            raise ValidationError(f"Unknown provider {provider}")
        if amount <= 0 or amount > record.allocated_capital:
            raise CapacityError(f"Cannot withdraw {amount} from {provider}")
        if any(r.status == CoverageStatus.APPROVED for r in self.requests.values()):
            raise StatePreconditionError("Capital is locked while an approved claim is outstanding")
        record.allocated_capital -= amount
        return amount

    def set_provider_active(self, caller, provider, active):
        self.permissions.require(Role.GOVERNANCE, caller)
        if provider not in self.providers:
            raise ValidationError(f"Unknown provider {provider}")
        self.providers[provider].active = active

    def total_capacity(self):
        return sum(provider.capacity() for provider in self.providers.values())

    def verify_loss_proof(self, proof, loss_amount):
        if proof.digest != proof.compute_digest():
            return False
        if proof.loss_amount != loss_amount:
            return False
        return proof.pool_value_before - proof.pool_value_after >= loss_amount or proof.pool_value_after == 0

    def request_coverage(self, caller, loss_amount, requested_coverage, proof):
        """
        File a coverage request. Only the pool's loss handler may call this.

        Raises:
            IntegrityError: If the loss proof does not verify
        """
        self.permissions.require(Role.LIQUIDATION_MODULE, caller)
        if loss_amount <= 0 or requested_coverage <= 0:
            raise ValidationError("Loss and requested coverage must be positive")
        if requested_coverage > loss_amount:
            raise ValidationError("Requested coverage exceeds the loss")
        if not self.verify_loss_proof(proof, loss_amount):
            raise IntegrityError("Invalid loss proof")

        request_id = self.next_request_id
        self.next_request_id += 1
        self.requests[request_id] = CoverageRequest(
            request_id=request_id,
            requester=caller,
            loss_amount=loss_amount,
            requested_coverage=requested_coverage,
            timestamp=self.clock.timestamp,
            proof=proof,
        )
        logger.warning("Reinsurance requested: %s of %s loss (request %s)", requested_coverage, loss_amount, request_id)
        return request_id

    def _get_live_request(self, request_id, expected_status):
        request = self.requests.get(request_id)
        if request is None:
            raise ValidationError(f"Unknown coverage request {request_id}")
        if request.status in (CoverageStatus.PENDING, CoverageStatus.APPROVED) and \
                self.clock.timestamp > request.timestamp + CLAIM_VALIDITY_PERIOD:
            request.status = CoverageStatus.EXPIRED
            logger.info("Coverage request %s expired", request_id)
        if request.status != expected_status:
            raise StatePreconditionError(
                f"Coverage request {request_id} is {request.status.name}, expected {expected_status.name}"
            )
        return request

    def approve_coverage(self, caller, request_id):
        """Approve up to the providers' current capacity."""
        self.permissions.require(Role.GOVERNANCE, caller)
        request = self._get_live_request(request_id, CoverageStatus.PENDING)
        approved = min(request.requested_coverage, self.total_capacity())
        if approved == 0:
            raise CapacityError("No reinsurance capacity available")
        request.approved_coverage = approved
        request.status = CoverageStatus.APPROVED
        logger.info("Coverage request %s approved for %s", request_id, approved)
        return approved

    def reject_coverage(self, caller, request_id):
        self.permissions.require(Role.GOVERNANCE, caller)
        request = self._get_live_request(request_id, CoverageStatus.PENDING)
        request.status = CoverageStatus.REJECTED

    def expire_request(self, request_id):
        """Mark a request expired once its validity window has passed."""
        request = self.requests.get(request_id)
        if request is None:
            raise ValidationError(f"Unknown coverage request {request_id}")
        if request.status not in (CoverageStatus.PENDING, CoverageStatus.APPROVED):
            raise StatePreconditionError(f"Coverage request {request_id} is {request.status.name}")
        if self.clock.timestamp <= request.timestamp + CLAIM_VALIDITY_PERIOD:
            raise StatePreconditionError(f"Coverage request {request_id} is still valid")
        request.status = CoverageStatus.EXPIRED

    @non_reentrant
    def execute_payout(self, caller, request_id):
        """
        Pay an approved request pro-rata across providers by capacity.

        The rounding remainder is handed out one unit at a time, starting from
        the last provider, and never beyond a provider's capacity. Premium is
        owed on each provider's share.

        Returns:
            PayoutResult
        """
        self.permissions.require(Role.LIQUIDATION_MODULE, caller)
        with atomic_state(self):
            request = self._get_live_request(request_id, CoverageStatus.APPROVED)
            contributors = [p for p in self.providers.values() if p.capacity() > 0]
            capacity = sum(p.capacity() for p in contributors)
            payout = min(request.approved_coverage, capacity)
            if payout == 0:
                raise CapacityError("Reinsurance capacity exhausted")

            allocations = {p.address: payout * p.capacity() // capacity for p in contributors}
            remaining = payout - sum(allocations.values())
            # Rounding remainder, one unit at a time from the last provider back
            while remaining > 0:
                for provider in reversed(contributors):
                    if remaining > 0 and allocations[provider.address] < provider.capacity():
                        allocations[provider.address] += 1
                        remaining -= 1

            premium_due = 0
            for provider in contributors:
                share = allocations[provider.address]
                provider.allocated_capital -= share
                provider.total_paid_out += share
                premium = share * provider.premium_rate_bps // BPS
                provider.premiums_earned += premium
                premium_due += premium

            request.status = CoverageStatus.PAID_OUT
        logger.info("Reinsurance payout %s for request %s (premium due %s)", payout, request_id, premium_due)
        return PayoutResult(request_id=request_id, payout=payout, premium_due=premium_due, allocations=allocations)
