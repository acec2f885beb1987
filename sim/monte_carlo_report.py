"""
Report generator for the Liquidation Insurance Protocol.

Runs the Monte Carlo VaR analysis, the historical backtest, the stress
scenarios and the tranche ROI check, and writes markdown tables under
test-results/reports/.
"""

import logging
import os
import sys

# Add the repo root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from insurance_model.backtest import (
    STRESS_SCENARIOS,
    run_historical_backtest,
    run_stress_scenario,
    tranche_roi_report,
)
from insurance_model.capital_adequacy import CapitalAdequacyMonitor
from insurance_model.config import BPS
from insurance_model.gbm_risk_model import GBMParameters, GBMRiskModel

REPORT_DIR = os.path.join("test-results", "reports")
EXPOSURE = 1_000_000
ETH_VOLATILITY = 0.80
SCENARIOS = {
    "Baseline": GBMParameters(drift=0.0, volatility=ETH_VOLATILITY, initial_price=2000.0),
    "High volatility": GBMParameters(drift=0.0, volatility=1.20, initial_price=2000.0),
    "Bear market": GBMParameters(drift=-0.50, volatility=1.00, initial_price=2000.0),
}


def _write(name, lines):
    path = os.path.join(REPORT_DIR, name)
    with open(path, "w") as f:
        f.write("\n".join(lines) + "\n")
    print(f"Wrote {path}")
    return path


def _money(amount):
    return f"${amount:,.0f}"


def monte_carlo_table(model):
    lines = [
        f"# Table 1: Monte Carlo Simulation Results ({model.num_paths:,} paths)",
        "",
        "| Scenario | Time Horizon | VaR (95%) | VaR (99%) | VaR (99.9%) | Expected Shortfall (99%) | Volatility (Ann.) |",
        "|----------|--------------|-----------|-----------|-------------|--------------------------|-------------------|",
    ]
    for name, params in SCENARIOS.items():
        table = model.var_table(EXPOSURE, params)
        for days in (7, 30, 90):
            row = [table[(days, c)] for c in (0.95, 0.99, 0.999)]
            lines.append(
                f"| {name} | {days} days | {_money(row[0].var)} | {_money(row[1].var)} | {_money(row[2].var)} "
                f"| {_money(row[1].expected_shortfall)} | {int(params.volatility * BPS)} bps |"
            )
    return _write("table1-montecarlo.md", lines)


def backtest_table():
    result = run_historical_backtest()
    lines = [
        "# Table 2: Historical Backtest Performance (2020-2024)",
        "",
        "| Metric | Value |",
        "|--------|-------|",
        f"| Senior APY | {result.senior_apy_bps / 100:.2f}% |",
        f"| Junior APY | {result.junior_apy_bps / 100:.2f}% |",
        f"| Max drawdown | {result.max_drawdown_bps / 100:.2f}% |",
        f"| Total liquidation profit | {_money(result.total_profit)} |",
        f"| Total custodian yield | {_money(result.total_yield)} |",
        f"| Reinsurance activations | {result.reinsurance_activations} |",
        f"| Capital-adequate periods | {result.adequate_period_bps / 100:.0f}% |",
        "",
        "| Event | Purchases | Skipped | PnL | Senior NAV | Junior NAV |",
        "|-------|-----------|---------|-----|------------|------------|",
    ]
    for event in result.events:
        lines.append(
            f"| {event.name} | {event.purchased} | {event.skipped} | {_money(event.pnl)} "
            f"| {event.senior_nav_bps} | {event.junior_nav_bps} |"
        )

    lines += [
        "",
        "## Stress scenarios",
        "",
        "| Scenario | Junior loss | Senior loss | Senior NAV | Junior NAV | Reinsurance |",
        "|----------|-------------|-------------|------------|------------|-------------|",
    ]
    for key in STRESS_SCENARIOS:
        stress = run_stress_scenario(key)
        lines.append(
            f"| {stress.name} | {_money(stress.junior_loss)} | {_money(stress.senior_loss)} "
            f"| {stress.senior_nav_bps} | {stress.junior_nav_bps} | {'yes' if stress.reinsurance_triggered else 'no'} |"
        )

    roi = tranche_roi_report()
    lines += [
        "",
        "## Tranche incentives",
        "",
        f"- Senior ROI on a 50,000 profit: {roi.senior_roi_bps} bps",
        f"- Junior ROI on a 50,000 profit: {roi.junior_roi_bps} bps",
        f"- Senior loss under a Junior-sized stress loss: {_money(roi.senior_loss_under_stress)}",
    ]
    return _write("table2-backtest.md", lines)


def capital_table(model):
    params = SCENARIOS["Baseline"]
    available = EXPOSURE * 2
    lines = [
        "# Table 3: Capital Adequacy Analysis",
        "",
        f"Exposure {_money(EXPOSURE)}, available capital {_money(available)}.",
        "",
        "| Confidence Level | VaR (30d) | Required Capital | Capital Ratio |",
        "|------------------|-----------|------------------|---------------|",
    ]
    for confidence in (0.95, 0.99, 0.999):
        tail = model.tail_risk(EXPOSURE, params, 30 / 365, confidence)
        required = max(tail.var, tail.expected_shortfall) + available * 500 // BPS
        ratio = CapitalAdequacyMonitor.capital_ratio_bps(available, required)
        lines.append(
            f"| {confidence * 100:.1f}% | {_money(tail.var)} | {_money(required)} | {ratio / 100:.0f}% |"
        )
    return _write("table3-capital.md", lines)


def main():
    os.makedirs(REPORT_DIR, exist_ok=True)
    model = GBMRiskModel(num_paths=10_000, seed=42)

    print("[1/3] Monte Carlo simulations...")
    monte_carlo_table(model)
    print("[2/3] Historical backtest and stress scenarios...")
    backtest_table()
    print("[3/3] Capital adequacy analysis...")
    capital_table(model)


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    main()
