"""
Historical backtest and stress scenarios for the Liquidation Insurance Protocol.

The backtest replays stylized versions of the major DeFi liquidation events
between March 2020 and May 2024 against a fully wired InsuranceProtocolModel.
For each event the collateral price drops, the pool buys liquidated positions
through the commit-reveal path, the price moves on, and the collateral is
sold. Custodian yield accrues between events.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import numpy as np

from insurance_model.config import BPS, ONE_DAY, ONE_YEAR, AdequacyConfig
from insurance_model.economic_model import GOVERNANCE, KEEPER, InsuranceProtocolModel
from insurance_model.tranche_logic import Tranche

logger = logging.getLogger(__name__)


@dataclass
class HistoricalEvent:
    """
    A stylized liquidation event.

    price_drop_bps: fall of the collateral price into the event
    volume_bps: liquidation volume offered to the pool, in bps of pool value
    post_move_bps: price move between purchase and sale (negative = further fall)
    """
    name: str
    date: str
    price_drop_bps: int
    volume_bps: int
    post_move_bps: int
    positions: int = 1

    @property
    def timestamp(self):
        return int(datetime.strptime(self.date, "%Y-%m-%d").replace(tzinfo=timezone.utc).timestamp())


HISTORICAL_EVENTS = [
    HistoricalEvent("Black Thursday", "2020-03-12", 4_300, 1_500, -800, positions=3),
    HistoricalEvent("September 2020 DeFi unwind", "2020-09-05", 2_500, 600, 300),
    HistoricalEvent("January 2021 correction", "2021-01-21", 2_700, 800, 500),
    HistoricalEvent("May 2021 crash", "2021-05-19", 3_500, 1_200, -200, positions=2),
    HistoricalEvent("June 2021 capitulation", "2021-06-22", 2_000, 600, 400),
    HistoricalEvent("September 2021 flash crash", "2021-09-07", 1_800, 500, 200),
    HistoricalEvent("December 2021 weekend cascade", "2021-12-04", 2_000, 700, 100),
    HistoricalEvent("January 2022 sell-off", "2022-01-21", 2_200, 600, -100),
    HistoricalEvent("Terra/LUNA collapse", "2022-05-09", 3_000, 1_000, -500, positions=2),
    HistoricalEvent("Celsius and 3AC insolvency", "2022-06-13", 3_500, 1_200, -300, positions=2),
    HistoricalEvent("FTX collapse", "2022-11-08", 2_500, 900, -600),
    HistoricalEvent("USDC depeg", "2023-03-10", 1_000, 400, 600),
    HistoricalEvent("April 2024 flash crash", "2024-04-13", 1_500, 500, 300),
]

BACKTEST_END = "2024-05-31"

STRESS_SCENARIOS = {
    "black_thursday": HistoricalEvent("Black Thursday (stress)", "2020-03-12", 4_300, 2_500, -1_500, positions=3),
    "ftx_collapse": HistoricalEvent("FTX collapse (stress)", "2022-11-08", 2_500, 2_000, -1_000, positions=2),
    "simultaneous_liquidations": HistoricalEvent(
        "Simultaneous major liquidations", "2022-06-13", 3_000, 4_000, -4_000, positions=4,
    ),
}


@dataclass
class EventOutcome:
    name: str
    purchased: int
    skipped: int
    pnl: int
    senior_nav_bps: int
    junior_nav_bps: int
    capital_adequate: bool


@dataclass
class BacktestResult:
    senior_apy_bps: int
    junior_apy_bps: int
    max_drawdown_bps: int
    total_profit: int
    total_yield: int
    reinsurance_activations: int
    adequate_period_bps: int
    events: List[EventOutcome] = field(default_factory=list)


@dataclass
class StressResult:
    name: str
    junior_loss: int
    senior_loss: int
    senior_nav_bps: int
    junior_nav_bps: int
    reinsurance_triggered: bool
    pnl: int


@dataclass
class TrancheRoiReport:
    senior_roi_bps: int
    junior_roi_bps: int
    senior_loss_under_stress: int
    junior_loss_under_stress: int

    @property
    def junior_outperforms(self):
        return self.junior_roi_bps > self.senior_roi_bps

    @property
    def senior_protected(self):
        return self.senior_loss_under_stress == 0


def build_funded_model(senior_deposit, junior_deposit, seed=42, num_paths=2_000, initial_price=2000.0):
    """A model with Senior funded first, then Junior."""
    model = InsuranceProtocolModel(
        initial_price=initial_price,
        seed=seed,
        adequacy_config=AdequacyConfig(num_paths=num_paths, seed=seed),
    )
    model.deposit("senior_lp", senior_deposit, Tranche.SENIOR)
    model.deposit("junior_lp", junior_deposit, Tranche.JUNIOR)
    return model


def replay_event(model, event):
    """
    Runs one event against model.

    Returns:
        (positions purchased, positions skipped, realized pnl)
    """
    price = model.current_price() * (BPS - event.price_drop_bps) / BPS
    correlated = model.token_price(model.last_observed_price(model.correlated_asset))
    model.update_price(price, correlated * (BPS - event.price_drop_bps) / BPS)

    volume = model.pool.total_value() * event.volume_bps // BPS
    per_position = volume // event.positions
    purchased = 0
    skipped = 0
    for _ in range(event.positions):
        debt = min(per_position, model.pool.available_liquidity(model.stablecoin) * 9 // 10)
        if debt <= 0:
            skipped += 1
            continue
        target_id = model.open_liquidatable_position(debt)
        try:
            model.execute_liquidation(target_id, debt)
            purchased += 1
        except ValueError as exc:
            skipped += 1
            logger.info("%s: purchase of %s skipped: %s", event.name, target_id, exc)

    model.update_time(ONE_DAY)
    model.update_price(model.current_price() * (BPS + event.post_move_bps) / BPS)
    pnl = model.sell_all_collateral()
    return purchased, skipped, pnl


def accrue_custodian_yield(model, seconds, annual_yield_bps):
    """Grow the custodian balance and realize the yield through the waterfall."""
    balance = model.custodian.current_balance(model.stablecoin)
    accrued = balance * annual_yield_bps * seconds // (BPS * ONE_YEAR)
    if accrued <= 0:
        return 0
    model.custodian.accrue_yield(model.stablecoin, accrued)
    return model.pool.harvest_yield(KEEPER, model.stablecoin)


def _max_drawdown_bps(values):
    series = np.asarray(values, dtype=float)
    if len(series) < 2 or series.max() <= 0:
        return 0
    peaks = np.maximum.accumulate(series)
    drawdowns = np.where(peaks > 0, (peaks - series) / np.where(peaks > 0, peaks, 1), 0.0)
    return int(round(drawdowns.max() * BPS))


def _annualize_bps(nav_bps, seconds):
    if seconds <= 0:
        return 0
    return (nav_bps - BPS) * ONE_YEAR // seconds


def run_historical_backtest(events=None, senior_deposit=900_000, junior_deposit=100_000,
                            annual_yield_bps=300, seed=42, num_paths=2_000, end_date=BACKTEST_END):
    """
    Replays the historical events in date order.

    Returns:
        BacktestResult
    """
    events = sorted(events or HISTORICAL_EVENTS, key=lambda e: e.timestamp)
    model = build_funded_model(senior_deposit, junior_deposit, seed=seed, num_paths=num_paths)

    # Event dates map onto the model clock by their offset from the start date
    start = events[0].timestamp - 30 * ONE_DAY
    origin = model.clock.timestamp
    initial_value = model.pool.total_value()

    outcomes = []
    values = [initial_value]
    total_profit = 0
    total_yield = 0
    adequate = 0

    for event in events:
        elapsed = origin + event.timestamp - start - model.clock.timestamp
        if elapsed > 0:
            model.update_time(elapsed)
            total_yield += accrue_custodian_yield(model, elapsed, annual_yield_bps)

        purchased, skipped, pnl = replay_event(model, event)
        total_profit += pnl

        report = model.capital_monitor.check_capital_adequacy(model.liquidation.exposure_snapshot())
        is_adequate = report.capital_ratio_bps >= model.capital_monitor.config.min_capital_ratio_bps
        adequate += int(is_adequate)
        values.append(model.pool.total_value())

        outcome = EventOutcome(
            name=event.name,
            purchased=purchased,
            skipped=skipped,
            pnl=pnl,
            senior_nav_bps=model.pool.get_nav_bps(Tranche.SENIOR),
            junior_nav_bps=model.pool.get_nav_bps(Tranche.JUNIOR),
            capital_adequate=is_adequate,
        )
        outcomes.append(outcome)
        logger.info("%s: pnl %s, senior NAV %s, junior NAV %s", event.name, pnl,
                    outcome.senior_nav_bps, outcome.junior_nav_bps)

    end = origin + HistoricalEvent("end", end_date, 0, 0, 0).timestamp - start
    if end > model.clock.timestamp:
        elapsed = end - model.clock.timestamp
        model.update_time(elapsed)
        total_yield += accrue_custodian_yield(model, elapsed, annual_yield_bps)
        values.append(model.pool.total_value())

    duration = model.clock.timestamp - origin
    return BacktestResult(
        senior_apy_bps=_annualize_bps(model.pool.get_nav_bps(Tranche.SENIOR), duration),
        junior_apy_bps=_annualize_bps(model.pool.get_nav_bps(Tranche.JUNIOR), duration),
        max_drawdown_bps=_max_drawdown_bps(values),
        total_profit=total_profit,
        total_yield=total_yield,
        reinsurance_activations=len(model.pool.reinsurance_requests),
        adequate_period_bps=adequate * BPS // len(events),
        events=outcomes,
    )


def run_stress_scenario(name, senior_deposit=900_000, junior_deposit=100_000, seed=42, num_paths=2_000):
    """
    Runs one named scenario from STRESS_SCENARIOS on a freshly funded pool.

    Returns:
        StressResult
    """
    event = STRESS_SCENARIOS.get(name)
    if event is None:
        raise ValueError(f"Unknown stress scenario: {name}")

    model = build_funded_model(senior_deposit, junior_deposit, seed=seed, num_paths=num_paths)
    senior_before = model.pool.tranche_value[Tranche.SENIOR]
    junior_before = model.pool.tranche_value[Tranche.JUNIOR]
    requests_before = len(model.pool.reinsurance_requests)

    _, _, pnl = replay_event(model, event)

    return StressResult(
        name=event.name,
        junior_loss=max(junior_before - model.pool.tranche_value[Tranche.JUNIOR], 0),
        senior_loss=max(senior_before - model.pool.tranche_value[Tranche.SENIOR], 0),
        senior_nav_bps=model.pool.get_nav_bps(Tranche.SENIOR),
        junior_nav_bps=model.pool.get_nav_bps(Tranche.JUNIOR),
        reinsurance_triggered=len(model.pool.reinsurance_requests) > requests_before,
        pnl=pnl,
    )


def tranche_roi_report(senior_deposit=450_000, junior_deposit=50_000, profit=50_000,
                       stress_loss: Optional[int] = None):
    """
    Checks the tranche incentives.

    Under profit Junior must out-earn Senior; under a loss no larger than the
    Junior buffer Senior must be untouched. ROI is measured on each tranche's
    capital after the deposit premium.

    Returns:
        TrancheRoiReport
    """
    model = InsuranceProtocolModel(adequacy_config=AdequacyConfig(num_paths=1_000))
    model.deposit("senior_lp", senior_deposit, Tranche.SENIOR)
    model.deposit("junior_lp", junior_deposit, Tranche.JUNIOR)
    senior_capital = model.pool.tranche_value[Tranche.SENIOR]
    junior_capital = model.pool.tranche_value[Tranche.JUNIOR]

    distribution = model.apply_profit(profit)
    senior_roi = distribution.senior_profit * BPS // senior_capital
    junior_roi = distribution.junior_profit * BPS // junior_capital
    logger.info("Senior ROI %s bps, Junior ROI %s bps", senior_roi, junior_roi)

    stressed = InsuranceProtocolModel(adequacy_config=AdequacyConfig(num_paths=1_000))
    stressed.deposit("senior_lp", senior_deposit, Tranche.SENIOR)
    stressed.deposit("junior_lp", junior_deposit, Tranche.JUNIOR)
    loss = stress_loss if stress_loss is not None else stressed.pool.tranche_value[Tranche.JUNIOR] * 8 // 10
    loss_distribution = stressed.apply_loss(loss)

    return TrancheRoiReport(
        senior_roi_bps=senior_roi,
        junior_roi_bps=junior_roi,
        senior_loss_under_stress=loss_distribution.senior_loss,
        junior_loss_under_stress=loss_distribution.junior_loss,
    )


def reinsurance_scenario(senior_deposit=200_000, junior_deposit=20_000, loss=150_000,
                         reinsurer_capital=500_000, reinsurer_premium_bps=500):
    """
    A loss that exhausts Junior, followed by reinsurance settlement.

    The deposit premium is forced to zero so the pool holds exactly the
    deposited amounts.

    Returns:
        Dictionary with the covered loss, the waterfall split and the net injection
    """
    model = InsuranceProtocolModel(adequacy_config=AdequacyConfig(num_paths=1_000))
    model.premium_engine.force_premium(GOVERNANCE, 0)
    model.deposit("senior_lp", senior_deposit, Tranche.SENIOR)
    model.deposit("junior_lp", junior_deposit, Tranche.JUNIOR)
    model.register_reinsurer("reinsurer", reinsurer_capital, premium_rate_bps=reinsurer_premium_bps)

    distribution = model.apply_loss(loss)
    request_id = model.pool.reinsurance_requests[-1] if distribution.reinsurance_needed else None
    covered = model.reinsurance.requests[request_id].requested_coverage if request_id else 0
    net = model.settle_reinsurance(request_id) if request_id else 0

    return {
        'junior_loss': distribution.junior_loss,
        'senior_loss': distribution.senior_loss,
        'reinsurance_needed': distribution.reinsurance_needed,
        'covered_loss': covered,
        'net_injection': net,
        'senior_nav_bps': model.pool.get_nav_bps(Tranche.SENIOR),
        'junior_nav_bps': model.pool.get_nav_bps(Tranche.JUNIOR),
    }
