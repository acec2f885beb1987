"""
Liquidation Insurance Protocol model.

Python model of a tranche-based capital pool that insures liquidation risk:
Senior and Junior depositors fund the pool, the pool buys discounted
liquidation collateral through a commit-reveal purchase flow, and realized
profits and losses are pushed through the tranche waterfall.
"""

__version__ = "0.1.0"
