"""
Insurance Pool Model for the Liquidation Insurance Protocol.

This module simulates the InsurancePool contract, which owns the ledger:
- per-stablecoin pool totals, reserved funds and deployed capital
- Senior and Junior tranche values and share balances
- the FIFO withdrawal queue

The pool is the only place where ledger state changes. Deposits and
withdrawals come from users. Fund reservation and profit/loss application
come from the liquidation module. Every mutating call runs atomically and
ends with an invariant check.

Anti-manipulation rules enforced here:
1. Deposits are capped relative to current pool value (first deposit has an absolute cap)
2. Withdrawals must be requested in a later block than the last deposit and after a cooldown
3. Requests wait a fixed delay before they can be fulfilled
4. Per-epoch withdrawals from a tranche are capped
5. Senior exits take a haircut while Junior is impaired
"""

import logging
from dataclasses import dataclass

from insurance_model.access_control import Role
from insurance_model.chain import atomic_state, non_reentrant
from insurance_model.config import (
    BPS,
    REINSURANCE_DEDUCTIBLE_BPS,
    WITHDRAWAL_DELAY,
    PoolConfig,
)
from insurance_model.errors import (
    ValidationError,
    StatePreconditionError,
    IntegrityError,
    CapacityError,
    ExternalCallError,
)
from insurance_model.reinsurance import build_loss_proof
from insurance_model.share_token import TrancheShareToken
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

logger = logging.getLogger(__name__)


@dataclass
class WithdrawRequest:
    """
    A queued withdrawal. shares shrinks in place under partial fulfilment.
    """
    queue_id: int
    user: str
    shares: int
    tranche: Tranche
    stablecoin: str
    timestamp: int
    fulfilled: bool = False


class InsurancePool:
    """
    Simulates the InsurancePool contract that holds tranche capital.
    """

    STATE_FIELDS = (
        "total_pool", "reserved_funds", "deployed_capital", "custodian_principal",
        "collected_premiums", "tranche_value", "user_shares", "total_shares",
        "share_tokens", "pending_withdrawals", "withdraw_requests", "withdraw_queue",
        "next_queue_id", "last_deposit_time", "last_deposit_block", "epoch_start",
        "epoch_withdrawn", "epoch_value_snapshot", "shutdown_initiated_at",
        "reinsurance_requests", "senior_impairment",
    )

    def __init__(self, custodian, clock, permissions, config=None, address="insurance_pool"):
        self.address = address
        self.custodian = custodian
        self.clock = clock
        self.permissions = permissions
        self.config = config or PoolConfig()

        # Collaborators wired after construction
        self.premium_engine = None
        self.capital_monitor = None
        self.reinsurance = None

        # Per-stablecoin ledger
        self.total_pool = {asset: 0 for asset in self.config.supported_assets}
        self.reserved_funds = {asset: 0 for asset in self.config.supported_assets}
        self.deployed_capital = {asset: 0 for asset in self.config.supported_assets}
        self.custodian_principal = {asset: 0 for asset in self.config.supported_assets}
        self.collected_premiums = {asset: 0 for asset in self.config.supported_assets}

        # Tranche ledger
        self.tranche_value = {Tranche.SENIOR: 0, Tranche.JUNIOR: 0}
        self.user_shares = {}  # (user, tranche) -> shares
        self.total_shares = {Tranche.SENIOR: 0, Tranche.JUNIOR: 0}
        self.share_tokens = {
            Tranche.SENIOR: TrancheShareToken("sLIP", minter=address),
            Tranche.JUNIOR: TrancheShareToken("jLIP", minter=address),
        }

        # Withdrawal queue
        self.pending_withdrawals = {}  # (user, tranche) -> queued shares
        self.withdraw_requests = {}  # queue_id -> WithdrawRequest
        self.withdraw_queue = []  # queue ids, FIFO until swap-and-pop removal
        self.next_queue_id = 1

        # Anti-manipulation tracking
        self.last_deposit_time = {}
        self.last_deposit_block = {}
        self.epoch_start = {Tranche.SENIOR: None, Tranche.JUNIOR: None}
        self.epoch_withdrawn = {Tranche.SENIOR: 0, Tranche.JUNIOR: 0}
        self.epoch_value_snapshot = {Tranche.SENIOR: 0, Tranche.JUNIOR: 0}

        self.shutdown_initiated_at = None
        self.reinsurance_requests = []
        self.senior_impairment = 0  # Senior loss awaiting a reinsurance recovery

    def set_premium_engine(self, premium_engine):
        self.premium_engine = premium_engine

    def set_reinsurance_module(self, reinsurance):
        self.reinsurance = reinsurance

    def set_capital_monitor(self, capital_monitor):
        self.capital_monitor = capital_monitor

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def total_value(self):
        return self.tranche_value[Tranche.SENIOR] + self.tranche_value[Tranche.JUNIOR]

    def get_tranche_state(self):
        return TrancheState(
            senior_value=self.tranche_value[Tranche.SENIOR],
            junior_value=self.tranche_value[Tranche.JUNIOR],
            senior_shares=self.total_shares[Tranche.SENIOR],
            junior_shares=self.total_shares[Tranche.JUNIOR],
            total_value=self.total_value(),
        )

    def get_nav_bps(self, tranche):
        return calculate_nav(self.tranche_value[tranche], self.total_shares[tranche])

    def get_user_shares(self, user, tranche):
        return self.user_shares.get((user, tranche), 0)

    def available_liquidity(self, asset):
        """Pool capital in asset that is neither reserved nor deployed."""
        return self.total_pool[asset] - self.reserved_funds[asset] - self.deployed_capital[asset]

    def total_available_liquidity(self):
        return sum(self.available_liquidity(asset) for asset in self.total_pool)

    def total_exposure(self):
        return sum(self.reserved_funds.values()) + sum(self.deployed_capital.values())

    def utilization_bps(self):
        total = self.total_value()
        if total == 0:
            return 0
        return self.total_exposure() * BPS // total

    def current_premium_bps(self):
        if self.premium_engine is None:
            return 0
        return self.premium_engine.get_current_premium_bps()

    def is_shutdown(self):
        return self.shutdown_initiated_at is not None

    def preview_deposit(self, asset, amount, tranche):
        """Shares minted for a deposit of amount, after the premium fee."""
        fee = amount * self.current_premium_bps() // BPS
        return self._shares_for(amount - fee, tranche)

    def preview_withdraw(self, shares, tranche):
        """
        Entitlement for redeeming shares now.

        Returns:
            (entitlement, restricted)
        """
        quote = calculate_withdrawal(self.get_tranche_state(), shares, tranche)
        return quote.entitlement, quote.restricted

    def _shares_for(self, net_amount, tranche):
        if self.total_shares[tranche] == 0:
            return net_amount
        if self.tranche_value[tranche] == 0:
            raise StatePreconditionError(f"{tranche.name} tranche value is depleted")
        return net_amount * self.total_shares[tranche] // self.tranche_value[tranche]

    def _require_asset(self, asset):
        if asset not in self.total_pool:
            raise ValidationError(f"Unsupported asset: {asset}")

    # ------------------------------------------------------------------
    # Invariants
    # ------------------------------------------------------------------

    def check_invariants(self):
        """
        Raise IntegrityError if the ledger is inconsistent.

        Checks value conservation, share/token consistency and the
        pending-withdrawal bound.
        """
        state = self.get_tranche_state()
        if not validate_invariants(state):
            raise IntegrityError(f"Tranche state invalid: {state}")
        if sum(self.total_pool.values()) != self.total_value():
            raise IntegrityError("Pool totals do not match tranche values")

        for tranche in Tranche:
            ledger_sum = sum(s for (_, t), s in self.user_shares.items() if t == tranche)
            if ledger_sum != self.total_shares[tranche]:
                raise IntegrityError(f"{tranche.name} user shares do not sum to total shares")
            if self.share_tokens[tranche].total_supply != self.total_shares[tranche]:
                raise IntegrityError(f"{tranche.name} share token supply diverged from ledger")

        for key, pending in self.pending_withdrawals.items():
            if pending > self.user_shares.get(key, 0):
                raise IntegrityError(f"Pending withdrawals exceed shares for {key}")

        for asset in self.total_pool:
            if self.available_liquidity(asset) < 0 and self.total_pool[asset] > 0:
                raise IntegrityError(f"Reserved and deployed funds exceed the {asset} pool")
        return True

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    @non_reentrant
    def deposit(self, user, asset, amount, tranche):
        """
        Deposit stablecoin into a tranche.

        The premium fee is deducted before shares are minted; the net amount
        goes to the yield custodian.

        Returns:
            Shares minted
        """
        if self.is_shutdown():
            raise StatePreconditionError("Pool is shut down")
        self._require_asset(asset)
        if amount < self.config.min_deposit:
            raise ValidationError(f"Deposit must be at least {self.config.min_deposit}")

        pool_value = self.total_value()
        if pool_value == 0:
            if amount > self.config.max_first_deposit:
                raise CapacityError(f"First deposit cannot exceed {self.config.max_first_deposit}")
        elif amount > pool_value * self.config.max_exposure_bps // BPS:
            raise CapacityError(
                f"Deposit exceeds {self.config.max_exposure_bps} bps of pool value {pool_value}"
            )

        fee = amount * self.current_premium_bps() // BPS
        net_amount = amount - fee
        shares = self._shares_for(net_amount, tranche)
        if shares == 0:
            raise ValidationError("Deposit too small to mint shares")

        with atomic_state(self):
            self._mint(user, tranche, shares)
            self.tranche_value[tranche] += net_amount
            self.total_pool[asset] += net_amount
            self.custodian_principal[asset] += net_amount
            self.collected_premiums[asset] += fee
            self.last_deposit_time[user] = self.clock.timestamp
            self.last_deposit_block[user] = self.clock.block_number

            credited = self.custodian.deposit(asset, net_amount)
            if credited < net_amount:
                raise ExternalCallError(f"Custodian credited {credited} of {net_amount}")
            self.check_invariants()

        logger.info("%s deposited %s %s into %s (fee %s, shares %s)", user, amount, asset, tranche.name, fee, shares)
        return shares

    def _mint(self, user, tranche, shares):
        key = (user, tranche)
        self.user_shares[key] = self.user_shares.get(key, 0) + shares
        self.total_shares[tranche] += shares
        self.share_tokens[tranche].mint(self.address, user, shares)

    def _burn(self, user, tranche, shares):
        key = (user, tranche)
        if self.user_shares.get(key, 0) < shares:
            raise CapacityError("Insufficient shares")
        self.user_shares[key] -= shares
        if self.user_shares[key] == 0:
            del self.user_shares[key]
        self.total_shares[tranche] -= shares
        self.share_tokens[tranche].burn(self.address, user, shares)

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    @non_reentrant
    def request_withdraw(self, user, shares, tranche, stablecoin):
        """
        Queue shares for withdrawal.

        Returns:
            The queue id of the request
        """
        if self.is_shutdown():
            raise StatePreconditionError("Pool is shut down, use emergency_withdraw")
        self._require_asset(stablecoin)
        if shares <= 0:
            raise ValidationError("Shares must be greater than zero")

        key = (user, tranche)
        available = self.user_shares.get(key, 0) - self.pending_withdrawals.get(key, 0)
        if shares > available:
            raise CapacityError(f"Only {available} shares available to withdraw")

        if self.clock.block_number <= self.last_deposit_block.get(user, -1):
            raise StatePreconditionError("Cannot request a withdrawal in the deposit block")
        last_deposit = self.last_deposit_time.get(user)
        if last_deposit is not None and self.clock.timestamp < last_deposit + self.config.deposit_cooldown:
            raise StatePreconditionError("Deposit cooldown has not elapsed")

        with atomic_state(self):
            queue_id = self.next_queue_id
            self.next_queue_id += 1
            self.withdraw_requests[queue_id] = WithdrawRequest(
                queue_id=queue_id,
                user=user,
                shares=shares,
                tranche=tranche,
                stablecoin=stablecoin,
                timestamp=self.clock.timestamp,
            )
            self.withdraw_queue.append(queue_id)
            self.pending_withdrawals[key] = self.pending_withdrawals.get(key, 0) + shares
            self.check_invariants()

        logger.info("%s queued %s %s shares for withdrawal (queue id %s)", user, shares, tranche.name, queue_id)
        return queue_id

    def _epoch_allowance(self, tranche):
        """Remaining value that may leave tranche in the current withdrawal epoch."""
        now = self.clock.timestamp
        start = self.epoch_start[tranche]
        if start is None or now >= start + self.config.withdraw_epoch:
            self.epoch_start[tranche] = now
            self.epoch_withdrawn[tranche] = 0
            self.epoch_value_snapshot[tranche] = self.tranche_value[tranche]
        cap = self.epoch_value_snapshot[tranche] * self.config.max_withdraw_bps_per_epoch // BPS
        return max(cap - self.epoch_withdrawn[tranche], 0)

    @non_reentrant
    def fulfill_withdraw(self, queue_id):
        """
        Pay out a queued withdrawal.

        The payout is clamped to the tranche's remaining epoch allowance;
        unpaid shares stay queued under the same id.

        Returns:
            Amount paid
        """
        request = self.withdraw_requests.get(queue_id)
        if request is None:
            raise ValidationError(f"Unknown withdrawal request {queue_id}")
        if request.fulfilled:
            raise StatePreconditionError(f"Withdrawal request {queue_id} already fulfilled")
        if self.clock.timestamp < request.timestamp + WITHDRAWAL_DELAY:
            raise StatePreconditionError("Withdrawal delay has not elapsed")

        with atomic_state(self):
            entitlement, restricted = self.preview_withdraw(request.shares, request.tranche)
            allowance = self._epoch_allowance(request.tranche)
            if allowance == 0:
                raise CapacityError(f"{request.tranche.name} withdrawal limit reached for this epoch")

            payout = min(entitlement, allowance)
            if payout == entitlement:
                shares_burned = request.shares
            else:
                shares_burned = request.shares * payout // entitlement
                if shares_burned == 0:
                    raise CapacityError("Epoch allowance too small for any shares")
            # Shares burned at the quoted rate; a haircut leaves its value with the tranche
            payout = entitlement * shares_burned // request.shares

            self._settle_withdrawal(request, shares_burned, payout)
            self.epoch_withdrawn[request.tranche] += payout
            self.check_invariants()

        logger.info(
            "Fulfilled withdrawal %s: %s paid for %s %s shares%s",
            queue_id, payout, shares_burned, request.tranche.name, " (haircut)" if restricted else "",
        )
        return payout

    def _settle_withdrawal(self, request, shares_burned, payout):
        """Burn shares, release the queue entry and pay out through the custodian."""
        asset = request.stablecoin
        if payout > self.available_liquidity(asset):
            raise CapacityError(f"Insufficient {asset} liquidity for withdrawal")

        key = (request.user, request.tranche)
        self._burn(request.user, request.tranche, shares_burned)
        self.pending_withdrawals[key] -= shares_burned
        if self.pending_withdrawals[key] == 0:
            del self.pending_withdrawals[key]
        request.shares -= shares_burned

        self.tranche_value[request.tranche] -= payout
        self.total_pool[asset] -= payout
        self.custodian_principal[asset] -= payout

        if request.shares == 0:
            request.fulfilled = True
            self._remove_from_queue(request.queue_id)

        if payout > 0:
            received = self.custodian.withdraw(asset, payout)
            if received < payout:
                raise ExternalCallError(f"Custodian returned {received} of {payout} {asset}")

    def _remove_from_queue(self, queue_id):
        """Swap-with-last-and-pop removal."""
        index = self.withdraw_queue.index(queue_id)
        self.withdraw_queue[index] = self.withdraw_queue[-1]
        self.withdraw_queue.pop()

    @non_reentrant
    def batch_fulfill_withdrawals(self, caller, max_amount):
        """
        Settle every matured request pro-rata when demand exceeds max_amount.

        Entitlements are quoted against one snapshot of the tranches, then
        each request receives entitlement * max_amount / total_requested.
        Partially paid requests keep their remaining shares in the queue.

        Returns:
            Total amount paid
        """
        self.permissions.require(Role.KEEPER, caller)
        if max_amount <= 0:
            raise ValidationError("max_amount must be greater than zero")

        now = self.clock.timestamp
        matured = [
            self.withdraw_requests[qid] for qid in self.withdraw_queue
            if now >= self.withdraw_requests[qid].timestamp + WITHDRAWAL_DELAY
        ]
        if not matured:
            return 0

        state = self.get_tranche_state()
        quotes = [calculate_withdrawal(state, r.shares, r.tranche).entitlement for r in matured]
        total_requested = sum(quotes)
        if total_requested == 0:
            return 0

        total_paid = 0
        with atomic_state(self):
            for request, entitlement in zip(matured, quotes):
                if entitlement == 0:
                    continue
                if total_requested <= max_amount:
                    shares_burned = request.shares
                else:
                    target = entitlement * max_amount // total_requested
                    shares_burned = request.shares * target // entitlement
                if shares_burned == 0:
                    continue
                payout = entitlement * shares_burned // request.shares
                self._settle_withdrawal(request, shares_burned, payout)
                total_paid += payout
            self.check_invariants()

        logger.info("Batch fulfilment paid %s against %s requested", total_paid, total_requested)
        return total_paid

    # ------------------------------------------------------------------
    # Fund reservation (liquidation module)
    # ------------------------------------------------------------------

    def reserve_funds(self, caller, asset, amount):
        """Set aside amount of asset for a pending liquidation purchase."""
        self.permissions.require(Role.LIQUIDATION_MODULE, caller)
        self._require_asset(asset)
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        if self.is_shutdown():
            raise StatePreconditionError("Pool is shut down")
        if amount > self.available_liquidity(asset):
            raise CapacityError(
                f"Cannot reserve {amount} {asset}; {self.available_liquidity(asset)} available"
            )
        self.reserved_funds[asset] += amount
        logger.debug("Reserved %s %s", amount, asset)
        return True

    def release_reserved_funds(self, caller, asset, amount):
        self.permissions.require(Role.LIQUIDATION_MODULE, caller)
        if amount <= 0 or amount > self.reserved_funds[asset]:
            raise ValidationError(f"Invalid release amount: {amount}")
        self.reserved_funds[asset] -= amount
        return True

    def consume_reserved_funds(self, caller, asset, reserved, spent):
        """
        Turn a reservation into deployed capital and pull spent from the custodian.

        reserved is released in full; spent (<= reserved) becomes the cost
        basis of the acquired collateral.

        Returns:
            The stablecoin amount handed to the caller
        """
        self.permissions.require(Role.LIQUIDATION_MODULE, caller)
        if reserved > self.reserved_funds[asset]:
            raise CapacityError(f"Only {self.reserved_funds[asset]} {asset} reserved")
        if spent > reserved:
            raise CapacityError(f"Spend {spent} exceeds reservation {reserved}")

        self.reserved_funds[asset] -= reserved
        self.deployed_capital[asset] += spent
        self.custodian_principal[asset] -= spent
        received = self.custodian.withdraw(asset, spent)
        if received < spent:
            raise ExternalCallError(f"Custodian returned {received} of {spent} {asset}")
        return received

    # ------------------------------------------------------------------
    # Profit and loss
    # ------------------------------------------------------------------

    def settle_position(self, caller, asset, cost_basis, proceeds):
        """
        Close deployed capital: proceeds return to the custodian and the
        difference to cost basis is applied through the waterfall.

        Returns:
            Realized profit (negative for a loss)
        """
        self.permissions.require(Role.LIQUIDATION_MODULE, caller)
        if cost_basis > self.deployed_capital[asset]:
            raise CapacityError(f"Cost basis {cost_basis} exceeds deployed {asset}")

        with atomic_state(self):
            self.deployed_capital[asset] -= cost_basis
            if proceeds > 0:
                credited = self.custodian.deposit(asset, proceeds)
                if credited < proceeds:
                    raise ExternalCallError(f"Custodian credited {credited} of {proceeds}")
                self.custodian_principal[asset] += proceeds

            pnl = proceeds - cost_basis
            if pnl > 0:
                self._apply_profit(asset, pnl)
            elif pnl < 0:
                self._apply_loss(asset, -pnl)
            self.check_invariants()
        return pnl

    def apply_profit(self, caller, asset, profit):
        """Credit a realized profit held in asset through the waterfall."""
        self.permissions.require(Role.LIQUIDATION_MODULE, caller)
        self._require_asset(asset)
        with atomic_state(self):
            distribution = self._apply_profit(asset, profit)
            self.check_invariants()
        return distribution

    def apply_loss(self, caller, asset, loss):
        """Debit a realized loss through the waterfall; may file a reinsurance request."""
        self.permissions.require(Role.LIQUIDATION_MODULE, caller)
        self._require_asset(asset)
        with atomic_state(self):
            distribution = self._apply_loss(asset, loss)
            self.check_invariants()
        return distribution

    def _apply_profit(self, asset, profit):
        if profit <= 0:
            raise ValidationError("Profit must be greater than zero")
        distribution = distribute_profit(self.get_tranche_state(), profit)
        credited = distribution.senior_profit + distribution.junior_profit
        self.tranche_value[Tranche.SENIOR] += distribution.senior_profit
        self.tranche_value[Tranche.JUNIOR] += distribution.junior_profit
        self.total_pool[asset] += credited
        logger.info(
            "Profit %s %s distributed: senior %s, junior %s",
            profit, asset, distribution.senior_profit, distribution.junior_profit,
        )
        return distribution

    def _apply_loss(self, asset, loss):
        if loss <= 0:
            raise ValidationError("Loss must be greater than zero")
        value_before = self.total_value()
        distribution = distribute_loss(self.get_tranche_state(), loss)

        junior_loss = distribution.junior_loss
        senior_loss = min(distribution.senior_loss, self.tranche_value[Tranche.SENIOR])
        absorbed = junior_loss + senior_loss

        self.tranche_value[Tranche.JUNIOR] -= junior_loss
        self.tranche_value[Tranche.SENIOR] -= senior_loss
        self._debit_pool(asset, absorbed)
        self.senior_impairment += senior_loss
        logger.info(
            "Loss %s %s distributed: junior %s, senior %s", loss, asset, junior_loss, senior_loss,
        )

        if self.premium_engine is not None and value_before > 0:
            self.premium_engine.record_loss(loss * BPS // value_before)
        if self.capital_monitor is not None:
            self.capital_monitor.record_loss(loss)

        if distribution.reinsurance_needed:
            self._request_reinsurance(loss, value_before, self.total_value())
        return distribution

    def _debit_pool(self, asset, amount):
        """Remove amount from pool totals, starting with asset and spilling to the others."""
        remaining = amount
        for name in [asset] + [a for a in self.total_pool if a != asset]:
            taken = min(remaining, self.total_pool[name])
            self.total_pool[name] -= taken
            remaining -= taken
            if remaining == 0:
                break

    # ------------------------------------------------------------------
    # Reinsurance
    # ------------------------------------------------------------------

    def reinsurance_deductible(self, pool_value=None):
        if pool_value is None:
            pool_value = self.total_value()
        return pool_value * REINSURANCE_DEDUCTIBLE_BPS // BPS

    def trigger_reinsurance(self, caller, loss):
        """
        Request coverage for loss above the deductible.

        Reserved to the liquidation module. The deductible is computed on the
        pool value before the loss is applied.

        Returns:
            The coverage request id, or None if the loss is within the deductible
        """
        self.permissions.require(Role.LIQUIDATION_MODULE, caller)
        value_before = self.total_value()
        return self._request_reinsurance(loss, value_before, max(value_before - loss, 0))

    def _request_reinsurance(self, loss, value_before, value_after):
        if self.reinsurance is None:
            logger.warning("Reinsurance needed for %s loss but no module is configured", loss)
            return None
        deductible = self.reinsurance_deductible(value_before)
        covered_loss = loss - deductible
        if covered_loss <= 0:
            return None

        proof = build_loss_proof(loss, value_before, value_after, self.clock.timestamp)
        request_id = self.reinsurance.request_coverage(self.address, loss, covered_loss, proof)
        self.reinsurance_requests.append(request_id)
        logger.warning("Reinsurance triggered: loss %s, deductible %s, covered %s", loss, deductible, covered_loss)
        return request_id

    @non_reentrant
    def inject_reinsurance_capital(self, caller, request_id, asset):
        """
        Settle an approved coverage request into the pool.

        Premiums owed to the providers are paid from the collected-premium
        reserve first; any shortfall is netted from the payout. The net
        injection restores Senior up to the loss it absorbed, then Junior to
        par; only the excess is split 80/20.

        Returns:
            Net capital credited to the tranches
        """
        self.permissions.require(Role.GOVERNANCE, caller)
        self._require_asset(asset)
        if self.reinsurance is None:
            raise StatePreconditionError("No reinsurance module configured")

        with atomic_state(self, self.reinsurance):
            result = self.reinsurance.execute_payout(self.address, request_id)
            from_reserve = min(result.premium_due, self.collected_premiums[asset])
            self.collected_premiums[asset] -= from_reserve
            net = result.payout - (result.premium_due - from_reserve)

            if net > 0:
                credited = self.custodian.deposit(asset, net)
                if credited < net:
                    raise ExternalCallError(f"Custodian credited {credited} of {net}")
                self.custodian_principal[asset] += net
                self._apply_recovery(asset, net)
            self.check_invariants()

        logger.info(
            "Injected reinsurance request %s: payout %s, premium %s (%s from reserve), net %s",
            request_id, result.payout, result.premium_due, from_reserve, net,
        )
        return net

    def _apply_recovery(self, asset, amount):
        distribution = distribute_recovery(self.get_tranche_state(), amount, self.senior_impairment)
        senior_restored = min(distribution.senior_profit, self.senior_impairment)
        self.senior_impairment -= senior_restored
        self.tranche_value[Tranche.SENIOR] += distribution.senior_profit
        self.tranche_value[Tranche.JUNIOR] += distribution.junior_profit
        self.total_pool[asset] += distribution.senior_profit + distribution.junior_profit
        logger.info(
            "Recovery %s %s distributed: senior %s (%s restored), junior %s",
            amount, asset, distribution.senior_profit, senior_restored, distribution.junior_profit,
        )
        return distribution

    # ------------------------------------------------------------------
    # Yield
    # ------------------------------------------------------------------

    def harvest_yield(self, caller, asset):
        """Realize custodian yield above principal as profit."""
        self.permissions.require(Role.KEEPER, caller)
        self._require_asset(asset)
        accrued = self.custodian.current_balance(asset) - self.custodian_principal[asset]
        if accrued <= 0 or self.total_value() == 0:
            return 0
        with atomic_state(self):
            self.custodian_principal[asset] += accrued
            self._apply_profit(asset, accrued)
            self.check_invariants()
        return accrued

    # ------------------------------------------------------------------
    # Emergency shutdown
    # ------------------------------------------------------------------

    def initiate_shutdown(self, caller):
        self.permissions.require(Role.GUARDIAN, caller)
        if self.is_shutdown():
            raise StatePreconditionError("Shutdown already initiated")
        self.shutdown_initiated_at = self.clock.timestamp
        logger.warning("Emergency shutdown initiated by %s", caller)

    @non_reentrant
    def emergency_withdraw(self, user, asset):
        """
        Redeem every share the user holds, in both tranches, at full pro-rata value.

        Only after the shutdown delay has elapsed. Bypasses cooldown, queue and
        haircut; any queued requests of the user are cancelled.

        Returns:
            Total amount paid
        """
        if not self.is_shutdown():
            raise StatePreconditionError("Pool is not shut down")
        if self.clock.timestamp < self.shutdown_initiated_at + self.config.shutdown_delay:
            raise StatePreconditionError("Shutdown delay has not elapsed")
        self._require_asset(asset)

        with atomic_state(self):
            total_paid = 0
            for tranche in Tranche:
                shares = self.get_user_shares(user, tranche)
                if shares == 0:
                    continue
                for qid in list(self.withdraw_queue):
                    request = self.withdraw_requests[qid]
                    if request.user == user and request.tranche == tranche:
                        request.fulfilled = True
                        request.shares = 0
                        self._remove_from_queue(qid)
                self.pending_withdrawals.pop((user, tranche), None)

                payout = shares * self.tranche_value[tranche] // self.total_shares[tranche]
                self._burn(user, tranche, shares)
                self.tranche_value[tranche] -= payout
                self._debit_pool(asset, payout)
                total_paid += payout

            if total_paid == 0:
                raise ValidationError(f"{user} holds no shares")
            if total_paid > self.custodian.current_balance(asset):
                raise CapacityError(f"Insufficient {asset} held by the custodian")
            self.custodian_principal[asset] -= total_paid
            received = self.custodian.withdraw(asset, total_paid)
            if received < total_paid:
                raise ExternalCallError(f"Custodian returned {received} of {total_paid} {asset}")
            self.check_invariants()

        logger.info("Emergency withdrawal of %s %s for %s", total_paid, asset, user)
        return total_paid
