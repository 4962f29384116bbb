"""
Simple simulation for the HAI Protocol Economic Model.

This script demonstrates a minimal simulation: a handful of SAFEs are opened,
the collateral price drops, unsafe SAFEs are liquidated and a keeper buys the
seized collateral at auction.
"""

import sys
import os

import numpy as np

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from economic_model import KEEPER, ProtocolEconomicModel


def print_state(model):
    state = model.get_system_state()
    print(f"  ETH price: ${state['prices']['ETH-A']:.2f}")
    print(f"  Redemption price: {state['redemption_price']:.4f}")
    print(f"  Locked collateral value: ${state['total_collateral_value']:.2f}")
    print(f"  Total debt: {state['total_debt']:.2f} coins")
    print(f"  Unbacked debt: {state['global_unbacked_debt']:.2f} coins")
    print(f"  Active SAFEs: {state['active_safes']}")
    print(f"  Active auctions: {state['active_auctions']}")
    print(f"  Coins on auction: {state['on_auction_coins']:.2f}")
    print(f"  TCR: {state['tcr']:.3f}")


def run_basic_simulation():
    # Initialize the protocol
    model = ProtocolEconomicModel()
    model.add_collateral_type("ETH-A", 2000.0)

    print("Creating initial SAFEs...")
    for i in range(5):
        collateral = np.random.uniform(3.0, 8.0)
        # Target collateralization between 155% and 195%
        target_cr = 1.55 + i * 0.10
        debt = collateral * 2000 / target_cr
        model.open_safe(f"user{i}", "ETH-A", collateral, debt)
        print(f"SAFE user{i}: {collateral:.2f} ETH, {debt:.2f} coins, CR {target_cr * 100:.0f}%")

    # The keeper draws coins it will later spend at auction
    model.open_safe(KEEPER, "ETH-A", 1000.0, 200_000.0)
    print("Keeper SAFE: 1000.00 ETH, 200000.00 coins")

    print("\nInitial protocol state:")
    print_state(model)

    # Simulate a price change
    new_price = 1500.0
    print(f"\nSimulating price drop to ${new_price:.2f}")
    liquidated = model.update_price("ETH-A", new_price)

    if liquidated:
        for collateral_type, safe, auction_id in liquidated:
            print(f"Liquidated SAFE {safe} ({collateral_type}) into auction {auction_id}")
    else:
        print("No SAFEs eligible for liquidation at this price")

    # One hour later the keeper buys everything on sale
    model.update_time(3600)
    bids = model.buy_active_auctions(KEEPER)
    print(f"\nKeeper placed {bids} bids")

    print("\nFinal protocol state:")
    print_state(model)


if __name__ == "__main__":
    run_basic_simulation()
