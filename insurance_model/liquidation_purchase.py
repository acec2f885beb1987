"""
Liquidation Purchase Model for the Liquidation Insurance Protocol.

Keepers buy liquidated collateral for the pool through a commit-reveal
protocol, so the real target stays hidden until it is executed:

1. attempt_purchase: the keeper commits to hash(reveal data, salt). The
   expected cost is reserved from the pool and the target is marked processed.
2. finalize_purchase: at least one block later, and inside the commit window,
   the keeper reveals. On a match the liquidation runs inside a flash loan,
   the collateral is value-checked and handed to the collateral holding.

Attempt states:
    PENDING -> EXECUTING -> COMPLETED
    PENDING -> CANCELLED
    EXECUTING -> FAILED (ledger and protocol position restored, reservation released)
"""

import logging
from dataclasses import dataclass
from enum import Enum

from insurance_model.chain import atomic_state, hash_fields, non_reentrant
from insurance_model.capital_adequacy import ExposureSnapshot
from insurance_model.config import (
    BPS,
    PRICE_PRECISION,
    COMMIT_REVEAL_WINDOW_BLOCKS,
    MIN_REVEAL_DELAY_BLOCKS,
    FLASH_EXECUTION_DEADLINE,
)
from insurance_model.errors import (
    ValidationError,
    StatePreconditionError,
    IntegrityError,
    CapacityError,
    ExternalCallError,
    AccessDeniedError,
)

logger = logging.getLogger(__name__)

DEFAULT_DISCOUNT_BPS = 500


class PurchaseStatus(Enum):
    PENDING = 0
    EXECUTING = 1
    COMPLETED = 2
    CANCELLED = 3
    FAILED = 4


@dataclass
class PurchaseAttempt:
    """
    One commit-reveal attempt.

    reserved_amount is held in the pool until the attempt completes,
    is cancelled or fails.
    """
    execution_id: str
    target_id: str
    keeper: str
    stablecoin: str
    reserved_amount: int
    timestamp: int
    status: PurchaseStatus = PurchaseStatus.PENDING
    collateral_asset: str = None
    collateral_received: int = 0
    cost: int = 0
    realized_discount_bps: int = 0


@dataclass
class CommitmentData:
    commitment: str
    commit_block: int
    keeper: str
    revealed: bool = False


@dataclass
class RevealData:
    """The liquidation the keeper committed to."""
    protocol: str
    target_id: str
    collateral_asset: str
    debt_asset: str
    borrower: str
    debt_to_cover: int
    min_collateral_out: int


def compute_commitment(reveal, salt):
    """Commitment hash a keeper publishes for reveal and a secret salt."""
    return hash_fields(reveal, salt)


class LiquidationPurchase:
    """
    Simulates the LiquidationPurchase contract.
    """

    STATE_FIELDS = ("attempts", "commitments", "processed_targets", "purchase_finalized", "nonce")

    def __init__(self, pool, flash_provider, adapters, holding, risk_metrics, capital_monitor,
                 keeper_registry, permissions, clock, reference_asset=None, premium_engine=None,
                 address="liquidation_purchase"):
        self.address = address
        self.pool = pool
        self.flash_provider = flash_provider
        self.adapters = adapters  # protocol name -> liquidation adapter
        self.holding = holding
        self.risk_metrics = risk_metrics
        self.capital_monitor = capital_monitor
        self.keeper_registry = keeper_registry
        self.permissions = permissions
        self.clock = clock
        self.reference_asset = reference_asset
        self.premium_engine = premium_engine

        self.attempts = {}
        self.commitments = {}
        self.processed_targets = set()
        self.purchase_finalized = {}
        self.nonce = 0

        # Set only while a flash loan for finalize_purchase is in flight
        self._in_flight = None
        self._execution_result = None

    def get_attempt(self, execution_id):
        attempt = self.attempts.get(execution_id)
        if attempt is None:
            raise ValidationError(f"Unknown execution id {execution_id}")
        return attempt

    def is_processed(self, target_id):
        return target_id in self.processed_targets

    def _require_keeper(self, keeper):
        if not self.keeper_registry.is_authorized(keeper):
            raise AccessDeniedError(f"{keeper} is not an authorized keeper")

    def exposure_snapshot(self):
        """Pool capital and collateral exposure as seen by the adequacy monitor."""
        open_purchases = [
            a for a in self.attempts.values()
            if a.status == PurchaseStatus.COMPLETED and self.holding.locks.get(a.execution_id) is not None
            and self.holding.locks[a.execution_id].active
        ]
        deployed = sum(a.cost for a in open_purchases)
        if deployed > 0:
            discount = sum(a.realized_discount_bps * a.cost for a in open_purchases) // deployed
        else:
            discount = DEFAULT_DISCOUNT_BPS

        return ExposureSnapshot(
            available_capital=self.pool.total_available_liquidity(),
            debt_exposure=self.pool.total_exposure(),
            average_discount_bps=discount,
            collateral_asset=self.reference_asset,
        )

    @non_reentrant
    def attempt_purchase(self, keeper, target_id, commitment, stablecoin, expected_cost,
                         discount_bps=DEFAULT_DISCOUNT_BPS):
        """
        Commit to a liquidation and reserve its expected cost.

        Args:
            keeper: Authorized keeper address
            target_id: Liquidation target; may only be attempted once ever
            commitment: compute_commitment(reveal, salt)
            stablecoin: Pool asset that pays for the purchase
            expected_cost: Amount to reserve
            discount_bps: Expected discount of the collateral to its market value

        Returns:
            The execution id of the new attempt

        Raises:
            StatePreconditionError: If the target was already processed
            CapacityError: If the capital pre-check or the reservation fails
        """
        self._require_keeper(keeper)
        if target_id in self.processed_targets:
            raise StatePreconditionError(f"Target {target_id} already processed")
        if expected_cost <= 0:
            raise ValidationError("Expected cost must be greater than zero")
        if not commitment:
            raise ValidationError("Commitment is required")

        snapshot = self.exposure_snapshot()
        self.capital_monitor.check_capital_adequacy(snapshot)
        if not self.capital_monitor.can_execute_liquidation(snapshot, expected_cost, discount_bps):
            raise CapacityError(f"Capital adequacy check rejected a purchase of {expected_cost}")

        with atomic_state(self, self.pool):
            self.pool.reserve_funds(self.address, stablecoin, expected_cost)

            self.nonce += 1
            execution_id = hash_fields(commitment, self.clock.timestamp, self.nonce)
            self.attempts[execution_id] = PurchaseAttempt(
                execution_id=execution_id,
                target_id=target_id,
                keeper=keeper,
                stablecoin=stablecoin,
                reserved_amount=expected_cost,
                timestamp=self.clock.timestamp,
            )
            self.commitments[execution_id] = CommitmentData(
                commitment=commitment,
                commit_block=self.clock.block_number,
                keeper=keeper,
            )
            self.processed_targets.add(target_id)

        logger.info("Purchase %s committed by %s, reserved %s %s", execution_id[:10], keeper, expected_cost, stablecoin)
        return execution_id

    @non_reentrant
    def finalize_purchase(self, keeper, execution_id, reveal, salt):
        """
        Reveal and execute a committed purchase.

        Returns:
            The completed PurchaseAttempt

        Raises:
            IntegrityError: If reveal and salt do not hash to the commitment
            ExternalCallError: If execution fails; the attempt is marked FAILED
        """
        self._require_keeper(keeper)
        attempt = self.get_attempt(execution_id)
        if attempt.keeper != keeper:
            raise AccessDeniedError("Only the committing keeper can finalize")
        if self.purchase_finalized.get(execution_id):
            raise StatePreconditionError(f"Purchase {execution_id} already finalized")
        if attempt.status != PurchaseStatus.PENDING:
            raise StatePreconditionError(f"Purchase is {attempt.status.name}, expected PENDING")

        commitment = self.commitments[execution_id]
        blocks_elapsed = self.clock.block_number - commitment.commit_block
        if blocks_elapsed < MIN_REVEAL_DELAY_BLOCKS:
            raise StatePreconditionError("Reveal must come at least one block after the commitment")
        if blocks_elapsed > COMMIT_REVEAL_WINDOW_BLOCKS:
            raise StatePreconditionError("Commitment window has expired")

        if compute_commitment(reveal, salt) != commitment.commitment:
            raise IntegrityError("Reveal does not match the commitment")
        if reveal.target_id != attempt.target_id:
            raise IntegrityError("Revealed target differs from the committed target")
        adapter = self.adapters.get(reveal.protocol)
        if adapter is None:
            raise ValidationError(f"No adapter for protocol {reveal.protocol}")
        if reveal.debt_to_cover <= 0:
            raise ValidationError("Debt to cover must be greater than zero")

        # State moves before any external call
        commitment.revealed = True
        attempt.status = PurchaseStatus.EXECUTING
        attempt.collateral_asset = reveal.collateral_asset
        self.purchase_finalized[execution_id] = True
        logger.info("Purchase %s executing against %s on %s", execution_id[:10], reveal.target_id, reveal.protocol)

        try:
            with atomic_state(self.pool, self.holding, adapter, self.flash_provider):
                self._execute(attempt, reveal, adapter)
        except Exception as exc:
            attempt.status = PurchaseStatus.FAILED
            self.pool.release_reserved_funds(self.address, attempt.stablecoin, attempt.reserved_amount)
            logger.warning("Purchase %s failed: %s", execution_id[:10], exc)
            raise

        attempt.status = PurchaseStatus.COMPLETED
        self.capital_monitor.record_liquidation_event()
        if self.premium_engine is not None:
            self.premium_engine.record_liquidation()
        logger.info(
            "Purchase %s completed: %s %s for %s %s",
            execution_id[:10], attempt.collateral_received, reveal.collateral_asset, attempt.cost, attempt.stablecoin,
        )
        return attempt

    def _execute(self, attempt, reveal, adapter):
        self._in_flight = (attempt, reveal, adapter)
        self._execution_result = None
        try:
            self.flash_provider.execute_flash_loan(
                self,
                attempt.stablecoin,
                reveal.debt_to_cover,
                {"execution_id": attempt.execution_id},
                self.clock.timestamp + FLASH_EXECUTION_DEADLINE,
            )
        finally:
            self._in_flight = None

        if self._execution_result is None:
            raise ExternalCallError("Flash loan completed without running the liquidation")
        collateral_received, cost, price = self._execution_result

        self.holding.lock_collateral(
            self.address,
            attempt.execution_id,
            reveal.collateral_asset,
            collateral_received,
            price,
            attempt.stablecoin,
            cost,
        )
        attempt.collateral_received = collateral_received
        attempt.cost = cost

    def on_flash_loan(self, asset, amount, premium, initiator, data):
        """
        Flash loan callback: liquidate, value-check, pay from the reservation.

        Returns:
            The amount repaid to the flash provider
        """
        if self._in_flight is None or initiator is not self:
            raise IntegrityError("Unexpected flash loan callback")
        attempt, reveal, adapter = self._in_flight
        if data.get("execution_id") != attempt.execution_id:
            raise IntegrityError("Flash loan data does not match the executing purchase")

        collateral_received, debt_paid = adapter.liquidate(
            reveal.protocol,
            reveal.target_id,
            reveal.collateral_asset,
            reveal.debt_asset,
            reveal.borrower,
            amount,
            reveal.min_collateral_out,
        )
        if collateral_received < reveal.min_collateral_out:
            raise ExternalCallError(f"Received {collateral_received} collateral, minimum {reveal.min_collateral_out}")

        price, _ = self.risk_metrics.get_price_with_confidence(reveal.collateral_asset)
        collateral_value = collateral_received * price // PRICE_PRECISION
        cost = debt_paid + premium
        if collateral_value < cost:
            raise ExternalCallError(f"Collateral worth {collateral_value} is below the cost {cost}")
        if cost > attempt.reserved_amount:
            raise CapacityError(f"Cost {cost} exceeds the reserved {attempt.reserved_amount}")

        funded = self.pool.consume_reserved_funds(self.address, asset, attempt.reserved_amount, cost)
        attempt.realized_discount_bps = (collateral_value - cost) * BPS // collateral_value
        self._execution_result = (collateral_received, cost, price)

        # Unused principal plus what the pool funded
        return amount - debt_paid + funded

    @non_reentrant
    def cancel_purchase(self, keeper, execution_id):
        """Cancel a PENDING attempt and release its reservation. The target stays processed."""
        attempt = self.get_attempt(execution_id)
        if attempt.keeper != keeper:
            raise AccessDeniedError("Only the committing keeper can cancel")
        if attempt.status != PurchaseStatus.PENDING:
            raise StatePreconditionError(f"Purchase is {attempt.status.name}, expected PENDING")

        with atomic_state(self, self.pool):
            self.pool.release_reserved_funds(self.address, attempt.stablecoin, attempt.reserved_amount)
            attempt.status = PurchaseStatus.CANCELLED
        logger.info("Purchase %s cancelled by %s", execution_id[:10], keeper)
        return True

    @non_reentrant
    def release_expired(self, execution_id):
        """
        Release the reservation of an attempt whose commit window has passed.

        Callable by anyone; nothing expires on its own.
        """
        attempt = self.get_attempt(execution_id)
        if attempt.status != PurchaseStatus.PENDING:
            raise StatePreconditionError(f"Purchase is {attempt.status.name}, expected PENDING")
        commitment = self.commitments[execution_id]
        if self.clock.block_number - commitment.commit_block <= COMMIT_REVEAL_WINDOW_BLOCKS:
            raise StatePreconditionError("Commitment window is still open")

        with atomic_state(self, self.pool):
            self.pool.release_reserved_funds(self.address, attempt.stablecoin, attempt.reserved_amount)
            attempt.status = PurchaseStatus.CANCELLED
        logger.info("Expired purchase %s released %s %s", execution_id[:10], attempt.reserved_amount, attempt.stablecoin)
        return True
