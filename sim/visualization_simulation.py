"""
Visualization simulation for the HAI Protocol Economic Model.

This script runs a month of random price movements over two collateral types
and plots the results.
"""

import sys
import os

import numpy as np

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from economic_model import KEEPER, ProtocolEconomicModel


def run_visualization_simulation():
    # Initialize the protocol
    model = ProtocolEconomicModel()
    model.add_collateral_type("ETH-A", 2000.0)
    model.add_collateral_type("WSTETH-A", 2300.0)

    print("Creating initial SAFEs...")
    # SAFEs with varying collateral and risk profiles
    for i in range(10):
        collateral_type = "ETH-A" if i % 2 == 0 else "WSTETH-A"
        price = 2000.0 if collateral_type == "ETH-A" else 2300.0
        collateral = np.random.uniform(2.0, 10.0)
        # Target different collateralization ratios from 155% to 235%
        target_cr = 1.55 + (i * 0.8 / 10)
        debt = collateral * price / target_cr
        model.open_safe(f"user{i}", collateral_type, collateral, debt)
        print(f"SAFE user{i} ({collateral_type}): {collateral:.2f} units, {debt:.2f} coins, "
              f"CR: {target_cr * 100:.0f}%")

    model.open_safe(KEEPER, "ETH-A", 2000.0, 300_000.0)

    # Run a simulation with price movements and plot results
    print("\nRunning simulation with visualizations...")
    results = model.simulate_market_scenario(30, price_volatility=0.05, plot_results=True, keeper=KEEPER)

    print("\nSimulation Results:")
    for key, value in results.items():
        print(f"  {key}: {value}")


if __name__ == "__main__":
    run_visualization_simulation()
