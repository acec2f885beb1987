"""
Visualization simulation for the Liquidation Insurance Protocol.

Runs a randomized market scenario with liquidation opportunities and plots
price, tranche NAVs, premium and capital ratio.
"""

import logging
import os
import sys

# Add the repo root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from insurance_model.economic_model import InsuranceProtocolModel
from insurance_model.tranche_logic import Tranche


def run_visualization_simulation(days=30, save_path=None):
    model = InsuranceProtocolModel(initial_price=2000.0, seed=7)

    print("Funding the tranches...")
    model.deposit("senior_lp_1", 600_000, Tranche.SENIOR)
    model.deposit("senior_lp_2", 100_000, Tranche.SENIOR)
    model.deposit("junior_lp_1", 120_000, Tranche.JUNIOR)

    print(f"\nRunning {days}-day simulation with visualizations...")
    results = model.simulate_market_scenario(
        days=days, price_volatility=0.05, liquidation_rate=0.08, plot_results=True, save_path=save_path,
    )

    print("\nSimulation Results:")
    for key, value in results.items():
        print(f"  {key}: {value}")
    return results


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    output = sys.argv[1] if len(sys.argv) > 1 else None
    run_visualization_simulation(save_path=output)
