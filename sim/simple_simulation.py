"""
Simple simulation for the Liquidation Insurance Protocol.

This script walks one pool through deposits, a liquidation purchase, a
collateral sale and a withdrawal, printing the tranche state at each step.
"""

import logging
import os
import sys

# Add the repo root to the path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from insurance_model.config import ONE_DAY
from insurance_model.economic_model import COLLATERAL_UNITS_PER_TOKEN, InsuranceProtocolModel
from insurance_model.tranche_logic import Tranche


def print_state(model, title):
    state = model.get_system_state()
    print(f"\n{title}")
    print(f"  Collateral price: ${state['price']:.2f}")
    print(f"  Senior value: {state['senior_value']} (NAV {state['senior_nav_bps']} bps)")
    print(f"  Junior value: {state['junior_value']} (NAV {state['junior_nav_bps']} bps)")
    print(f"  Premium: {state['premium_bps']} bps, utilization: {state['utilization_bps']} bps")
    print(f"  Open collateral locks: {state['open_locks']}")


def run_basic_simulation():
    # Initialize the protocol
    model = InsuranceProtocolModel(initial_price=2000.0)

    print("Funding the tranches...")
    senior_shares = model.deposit("alice", 450_000, Tranche.SENIOR)
    junior_shares = model.deposit("bob", 50_000, Tranche.JUNIOR)
    print(f"alice: {senior_shares} senior shares, bob: {junior_shares} junior shares")
    print_state(model, "After deposits:")

    # Price drop opens a liquidation
    print("\nSimulating price drop to $1700.00")
    model.update_price(1700.0, 36_000.0)
    target_id = model.open_liquidatable_position(40_000)
    attempt = model.execute_liquidation(target_id, 40_000)
    print(f"Bought {attempt.collateral_received / COLLATERAL_UNITS_PER_TOKEN:.4f} WETH for {attempt.cost} USDC "
          f"({attempt.realized_discount_bps} bps discount)")
    print_state(model, "After liquidation purchase:")

    # Partial recovery, then sell
    model.update_time(ONE_DAY)
    model.update_price(1750.0, 37_000.0)
    pnl = model.sell_all_collateral()
    print(f"\nSold collateral, realized pnl: {pnl} USDC")
    print_state(model, "After collateral sale:")

    # Withdraw some senior shares
    print("\nalice withdraws 10% of her senior shares...")
    model.update_time(ONE_DAY)
    queue_id = model.request_withdraw("alice", senior_shares // 10, Tranche.SENIOR)
    model.update_time(ONE_DAY)
    paid = model.fulfill_withdraw(queue_id)
    print(f"Paid {paid} USDC")
    print_state(model, "Final state:")

    return model


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    run_basic_simulation()
