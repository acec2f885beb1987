"""
Economic Model for the Liquidation Insurance Protocol.

This main module combines all the individual components into a complete
model of the insurance pool: tranche capital, premium pricing, capital
adequacy, commit-reveal liquidation purchases, collateral holding and
reinsurance. It can be used to simulate market scenarios and test the
economic behavior of the protocol.
"""

import logging

import numpy as np
import matplotlib.pyplot as plt

from insurance_model.access_control import PermissionTable, Role
from insurance_model.capital_adequacy import CapitalAdequacyMonitor
from insurance_model.chain import ChainClock
from insurance_model.collateral_holding import CollateralHolding
from insurance_model.config import (
    BPS,
    PRICE_PRECISION,
    ONE_HOUR,
    ONE_DAY,
    AdequacyConfig,
    PoolConfig,
    PremiumConfig,
)
from insurance_model.external import (
    SimpleDexVenue,
    SimpleFlashLoanProvider,
    SimpleKeeperRegistry,
    SimpleLiquidationAdapter,
    SimplePriceOracle,
    SimpleYieldCustodian,
)
from insurance_model.gbm_risk_model import GBMRiskModel
from insurance_model.insurance_pool import InsurancePool
from insurance_model.liquidation_purchase import LiquidationPurchase, RevealData, compute_commitment
from insurance_model.premium_adjustment import PremiumAdjustment
from insurance_model.reinsurance import ReinsuranceModule
from insurance_model.risk_metrics import RiskMetrics
from insurance_model.tranche_logic import Tranche

logger = logging.getLogger(__name__)

GOVERNANCE = "governance"
KEEPER = "keeper"
START_TIMESTAMP = 1_700_000_000
DEFAULT_PROTOCOL = "aave"
DEX_DEPTH = 50_000_000
# Collateral amounts are counted in micro-tokens so that purchases divide finely
COLLATERAL_UNITS_PER_TOKEN = 10**6


class InsuranceProtocolModel:
    """
    Complete economic model of the Liquidation Insurance Protocol.
    Combines all components and provides simulation capabilities.
    """

    def __init__(self, initial_price=2000.0, collateral_asset="WETH", stablecoin="USDC",
                 correlated_asset="WBTC", correlated_price=40000.0, seed=42,
                 pool_config=None, premium_config=None, adequacy_config=None):
        self.collateral_asset = collateral_asset
        self.stablecoin = stablecoin
        self.correlated_asset = correlated_asset
        self.rng = np.random.default_rng(seed)

        adequacy_config = adequacy_config or AdequacyConfig()

        # Chain and access control
        self.clock = ChainClock(timestamp=START_TIMESTAMP, block_number=1)
        self.permissions = PermissionTable(governance=GOVERNANCE)

        # External collaborators
        self.oracle = SimplePriceOracle(self.clock)
        self.custodian = SimpleYieldCustodian()
        self.dex = SimpleDexVenue(self.oracle)
        self.flash_provider = SimpleFlashLoanProvider(self.clock)
        self.keeper_registry = SimpleKeeperRegistry()
        self.adapters = {DEFAULT_PROTOCOL: SimpleLiquidationAdapter(DEFAULT_PROTOCOL, self.oracle)}

        for asset in (pool_config or PoolConfig()).supported_assets:
            self.dex.add_stablecoin(asset)
            self.dex.set_liquidity(collateral_asset, asset, DEX_DEPTH)

        # Risk analytics
        self.risk_metrics = RiskMetrics(self.oracle, self.clock)
        self.gbm_model = GBMRiskModel(num_paths=adequacy_config.num_paths, seed=adequacy_config.seed)

        # Core components
        self.pool = InsurancePool(self.custodian, self.clock, self.permissions, pool_config)
        self.premium_engine = PremiumAdjustment(
            self.risk_metrics, self.dex, self.clock, self.permissions,
            collateral_asset, stablecoin, correlated_asset, premium_config or PremiumConfig(),
        )
        self.reinsurance = ReinsuranceModule(self.clock, self.permissions)
        self.capital_monitor = CapitalAdequacyMonitor(self.gbm_model, self.risk_metrics, self.clock, adequacy_config)
        self.holding = CollateralHolding(self.pool, self.dex, self.risk_metrics, self.clock, self.permissions)
        self.liquidation = LiquidationPurchase(
            self.pool, self.flash_provider, self.adapters, self.holding, self.risk_metrics,
            self.capital_monitor, self.keeper_registry, self.permissions, self.clock,
            reference_asset=collateral_asset, premium_engine=self.premium_engine,
        )

        # Link components
        self.pool.set_premium_engine(self.premium_engine)
        self.pool.set_reinsurance_module(self.reinsurance)
        self.pool.set_capital_monitor(self.capital_monitor)

        # Capabilities
        for module in (self.liquidation.address, self.holding.address, self.pool.address):
            self.permissions.grant(Role.LIQUIDATION_MODULE, module)
        self.permissions.grant(Role.KEEPER, KEEPER)
        self.keeper_registry.authorize(KEEPER)

        self.next_target_id = 1

        self.update_price(initial_price, correlated_price)

        # History tracking for simulations
        self.time_history = []
        self.price_history = []
        self.senior_nav_history = []
        self.junior_nav_history = []
        self.total_value_history = []
        self.premium_history = []
        self.capital_ratio_history = []
        self._update_history()

    # ------------------------------------------------------------------
    # User and governance actions
    # ------------------------------------------------------------------

    def deposit(self, user, amount, tranche, asset=None):
        shares = self.pool.deposit(user, asset or self.stablecoin, amount, tranche)
        self._update_history()
        return shares

    def request_withdraw(self, user, shares, tranche, asset=None):
        return self.pool.request_withdraw(user, shares, tranche, asset or self.stablecoin)

    def fulfill_withdraw(self, queue_id):
        paid = self.pool.fulfill_withdraw(queue_id)
        self._update_history()
        return paid

    def apply_profit(self, amount, asset=None):
        """Realized profit reported by the liquidation module."""
        distribution = self.pool.apply_profit(self.liquidation.address, asset or self.stablecoin, amount)
        self._update_history()
        return distribution

    def apply_loss(self, amount, asset=None):
        """Realized loss reported by the liquidation module."""
        distribution = self.pool.apply_loss(self.liquidation.address, asset or self.stablecoin, amount)
        self._update_history()
        return distribution

    def register_reinsurer(self, address, capital, coverage_limit=None, premium_rate_bps=500, trust_score=8000):
        self.reinsurance.register_provider(
            GOVERNANCE, address, capital, coverage_limit or capital, premium_rate_bps, trust_score,
        )

    def settle_reinsurance(self, request_id, asset=None):
        """Approve a pending coverage request and inject the payout."""
        self.reinsurance.approve_coverage(GOVERNANCE, request_id)
        net = self.pool.inject_reinsurance_capital(GOVERNANCE, request_id, asset or self.stablecoin)
        self._update_history()
        return net

    # ------------------------------------------------------------------
    # Market
    # ------------------------------------------------------------------

    @staticmethod
    def unit_price(token_price):
        """Oracle price per collateral unit for a price per whole token."""
        return int(round(token_price * PRICE_PRECISION / COLLATERAL_UNITS_PER_TOKEN))

    @staticmethod
    def token_price(unit_price):
        return unit_price * COLLATERAL_UNITS_PER_TOKEN / PRICE_PRECISION

    def current_price(self):
        return self.token_price(self.last_observed_price(self.collateral_asset))

    def update_price(self, new_price, correlated_price=None):
        """
        Posts new oracle prices and records them for the risk analytics.

        Args:
            new_price: Collateral price in stablecoin
            correlated_price: Optional price of the correlated asset
        """
        price = self.unit_price(new_price)
        self.oracle.set_price(self.collateral_asset, price)
        self.risk_metrics.add_price_observation(self.collateral_asset, price)
        self.holding.update_price(self.collateral_asset, price)

        if correlated_price is not None and self.correlated_asset is not None:
            correlated = self.unit_price(correlated_price)
            self.oracle.set_price(self.correlated_asset, correlated)
            self.risk_metrics.add_price_observation(self.correlated_asset, correlated)
        return price

    def _oracle_heartbeat(self):
        """Re-posts the last observed prices so the oracle does not go stale."""
        for asset in (self.collateral_asset, self.correlated_asset):
            last = self.last_observed_price(asset)
            if last is not None:
                self.oracle.set_price(asset, last)

    def last_observed_price(self, asset):
        prices = self.risk_metrics.get_prices(asset)
        if len(prices) == 0:
            return None
        return int(prices[-1])

    def update_time(self, seconds):
        """
        Advances the chain and runs the epoch-gated keepers.

        Args:
            seconds: Number of seconds to advance
        """
        self.clock.advance(seconds)
        self._oracle_heartbeat()
        self.premium_engine.update_premiums(self.pool.utilization_bps())
        self.capital_monitor.check_capital_adequacy(self.liquidation.exposure_snapshot())
        self._update_history()

    # ------------------------------------------------------------------
    # Liquidations
    # ------------------------------------------------------------------

    def open_liquidatable_position(self, debt, collateral_ratio_bps=10_800, protocol=DEFAULT_PROTOCOL):
        """
        Opens a borrower position already below the liquidation threshold.

        Returns:
            The target id of the position
        """
        price, _ = self.oracle.get_price(self.collateral_asset)
        collateral = debt * collateral_ratio_bps * PRICE_PRECISION // (BPS * price)
        target_id = f"{protocol}-{self.next_target_id}"
        self.next_target_id += 1
        self.adapters[protocol].open_position(
            target_id, f"borrower-{target_id}", self.collateral_asset, self.stablecoin, collateral, debt,
        )
        return target_id

    def execute_liquidation(self, target_id, debt, protocol=DEFAULT_PROTOCOL, keeper=KEEPER, salt=None):
        """
        Runs a full commit-reveal purchase of target_id.

        Returns:
            The completed PurchaseAttempt
        """
        position = self.adapters[protocol].positions[target_id]
        reveal = RevealData(
            protocol=protocol,
            target_id=target_id,
            collateral_asset=position.collateral_asset,
            debt_asset=position.debt_asset,
            borrower=position.borrower,
            debt_to_cover=debt,
            min_collateral_out=0,
        )
        salt = salt or f"salt-{target_id}-{self.clock.block_number}"
        expected_cost = debt + self.flash_provider.flash_premium(debt)

        execution_id = self.liquidation.attempt_purchase(
            keeper, target_id, compute_commitment(reveal, salt), self.stablecoin, expected_cost,
        )
        self.clock.mine()
        attempt = self.liquidation.finalize_purchase(keeper, execution_id, reveal, salt)
        self._update_history()
        return attempt

    def sell_due_collateral(self):
        """
        Sells every lock whose trailing stop or holding period has triggered.

        Returns:
            Total realized profit (negative for a loss)
        """
        price, _ = self.oracle.get_price(self.collateral_asset)
        realized = 0
        for lock in self.holding.active_locks():
            if self.holding.should_sell(lock.lock_id, price):
                _, pnl = self.holding.sell_collateral(KEEPER, lock.lock_id)
                realized += pnl
        return realized

    def sell_all_collateral(self):
        realized = 0
        for lock in self.holding.active_locks():
            _, pnl = self.holding.sell_collateral(KEEPER, lock.lock_id)
            realized += pnl
        return realized

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def get_system_state(self):
        """
        Returns the current state of the system.

        Returns:
            Dictionary with system state
        """
        state = self.pool.get_tranche_state()
        report = self.capital_monitor.last_report
        price = self.last_observed_price(self.collateral_asset)

        return {
            'price': self.token_price(price),
            'senior_value': state.senior_value,
            'junior_value': state.junior_value,
            'senior_nav_bps': self.pool.get_nav_bps(Tranche.SENIOR),
            'junior_nav_bps': self.pool.get_nav_bps(Tranche.JUNIOR),
            'total_value': state.total_value,
            'premium_bps': self.premium_engine.get_current_premium_bps(),
            'utilization_bps': self.pool.utilization_bps(),
            'capital_ratio_bps': report.capital_ratio_bps if report else None,
            'circuit_breaker': self.capital_monitor.is_circuit_breaker_active(),
            'collateral_value': self.holding.mark_to_market({self.collateral_asset: price}),
            'open_locks': len(self.holding.active_locks()),
        }

    def _update_history(self):
        """Updates history tracking for simulations."""
        state = self.get_system_state()

        self.time_history.append((self.clock.timestamp - START_TIMESTAMP) / ONE_DAY)
        self.price_history.append(state['price'])
        self.senior_nav_history.append(state['senior_nav_bps'])
        self.junior_nav_history.append(state['junior_nav_bps'])
        self.total_value_history.append(state['total_value'])
        self.premium_history.append(state['premium_bps'])
        self.capital_ratio_history.append(state['capital_ratio_bps'])

    def simulate_market_scenario(self, days, price_volatility=0.04, liquidation_rate=0.05,
                                 liquidation_size_bps=200, correlation=0.7, plot_results=True, save_path=None):
        """
        Runs a simulation with random price movements over the specified period.

        Liquidation opportunities appear on hours where the price falls, with
        probability liquidation_rate. Each one is sized at liquidation_size_bps
        of available liquidity and bought through the commit-reveal path.

        Args:
            days: Number of days to simulate
            price_volatility: Daily price volatility (standard deviation of log returns)
            liquidation_rate: Chance per falling hour of a liquidation opportunity
            liquidation_size_bps: Debt covered per liquidation, in bps of available liquidity
            correlation: Correlation of the second asset's returns with the collateral's
            plot_results: Whether to plot the results
            save_path: Write the figure here instead of showing it

        Returns:
            Dictionary with simulation results
        """
        steps = days * 24  # hourly steps

        # Reset history
        self.time_history = []
        self.price_history = []
        self.senior_nav_history = []
        self.junior_nav_history = []
        self.total_value_history = []
        self.premium_history = []
        self.capital_ratio_history = []
        self._update_history()
        initial_value = self.pool.total_value()

        price = self.current_price()
        correlated_price = self.token_price(self.last_observed_price(self.correlated_asset))
        hourly_volatility = price_volatility / np.sqrt(24)  # Scale to hourly

        log_returns = self.rng.normal(0, hourly_volatility, steps)
        noise = self.rng.normal(0, hourly_volatility, steps)
        correlated_returns = correlation * log_returns + np.sqrt(1 - correlation ** 2) * noise

        liquidations = 0
        failed_liquidations = 0
        realized_pnl = 0

        for i in range(steps):
            price *= np.exp(log_returns[i])
            correlated_price *= np.exp(correlated_returns[i])
            self.update_price(price, correlated_price)

            if log_returns[i] < 0 and self.rng.random() < liquidation_rate:
                debt = self.pool.available_liquidity(self.stablecoin) * liquidation_size_bps // BPS
                if debt > 0:
                    target_id = self.open_liquidatable_position(debt)
                    try:
                        self.execute_liquidation(target_id, debt)
                        liquidations += 1
                    except ValueError as exc:
                        failed_liquidations += 1
                        logger.info("Liquidation of %s skipped: %s", target_id, exc)

            realized_pnl += self.sell_due_collateral()
            self.update_time(ONE_HOUR)

        if plot_results:
            self.plot_history(save_path)

        final_state = self.get_system_state()

        return {
            'final_price': final_state['price'],
            'initial_value': initial_value,
            'final_value': final_state['total_value'],
            'senior_nav_bps': final_state['senior_nav_bps'],
            'junior_nav_bps': final_state['junior_nav_bps'],
            'premium_bps': final_state['premium_bps'],
            'capital_ratio_bps': final_state['capital_ratio_bps'],
            'liquidations': liquidations,
            'failed_liquidations': failed_liquidations,
            'realized_pnl': realized_pnl,
            'open_locks': final_state['open_locks'],
        }

    def plot_history(self, save_path=None):
        time_points = self.time_history
        fig, axs = plt.subplots(4, 1, figsize=(12, 16), sharex=True)

        # Plot collateral price
        axs[0].plot(time_points, self.price_history)
        axs[0].set_title(f'{self.collateral_asset} Price')
        axs[0].set_ylabel(self.stablecoin)

        # Plot tranche NAVs
        axs[1].plot(time_points, self.senior_nav_history, label='Senior')
        axs[1].plot(time_points, self.junior_nav_history, label='Junior')
        axs[1].axhline(BPS, color='grey', linestyle='--', linewidth=0.8)
        axs[1].set_title('Tranche NAV')
        axs[1].set_ylabel('bps of par')
        axs[1].legend()

        # Plot premium
        axs[2].plot(time_points, self.premium_history)
        axs[2].set_title('Deposit Premium')
        axs[2].set_ylabel('bps')

        # Plot capital ratio
        ratios = [r if r is not None else np.nan for r in self.capital_ratio_history]
        axs[3].plot(time_points, ratios)
        axs[3].axhline(self.capital_monitor.config.min_capital_ratio_bps, color='red', linestyle='--', linewidth=0.8)
        axs[3].set_title('Capital Ratio')
        axs[3].set_ylabel('bps')
        axs[3].set_xlabel('Days')

        plt.tight_layout()
        if save_path:
            fig.savefig(save_path)
            plt.close(fig)
        else:
            plt.show()
        return fig
