"""
Simulation Example for the HAI Protocol Economic Model.

This script demonstrates how to use the economic model to simulate
various scenarios and analyze the protocol's behavior:

- a SAFE rescued by a saviour instead of being liquidated
- a large SAFE liquidated in several slices because of the auction limits
- a negative redemption rate slowly making every SAFE safer
"""

import sys
import os

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))
from economic_model import GOVERNANCE, KEEPER, SECONDS_PER_DAY, ProtocolEconomicModel, to_wad
from fixed_point import RAD, RAY, WAD
from safe_saviour import CollateralTopUpSaviour

SECONDS_PER_YEAR = 365 * SECONDS_PER_DAY


def run_saviour_simulation():
    """A SAFE protected by a collateral top-up saviour survives a price drop."""
    print("=== Running Saviour Simulation ===")
    model = ProtocolEconomicModel()
    setup = model.add_collateral_type("ETH-A", 2000.0)

    model.open_safe("alice", "ETH-A", 10.0, 12_000.0)
    model.open_safe("bob", "ETH-A", 10.0, 12_000.0)

    saviour = CollateralTopUpSaviour(model.env, "saviour", model.safe_engine, model.liquidation_engine.address)
    # Fund the saviour with free collateral inside the system
    setup.token.mint(GOVERNANCE, saviour.address, to_wad(20.0))
    setup.join.join(saviour.address, saviour.address, to_wad(20.0))
    model.liquidation_engine.connect_safe_saviour(GOVERNANCE, saviour)

    model.liquidation_engine.protect_safe("alice", "ETH-A", "alice", saviour.address)
    saviour.cover_safe("ETH-A", "alice")
    print("alice is protected by the saviour, bob is not")

    print("\nDropping price to $1500.00")
    for collateral_type, safe, auction_id in model.update_price("ETH-A", 1500.0):
        if auction_id is None:
            print(f"  SAFE {safe} was saved")
        else:
            print(f"  SAFE {safe} was liquidated into auction {auction_id}")

    alice = model.safe_engine.get_safe("ETH-A", "alice")
    print(f"alice now locks {alice.locked_collateral / WAD:.4f} ETH")
    remaining = model.safe_engine.get_token_collateral("ETH-A", saviour.address)
    print(f"Saviour has {remaining / WAD:.4f} ETH left")


def run_partial_liquidation_simulation():
    """A large SAFE is liquidated in slices capped by the liquidation quantity."""
    print("\n=== Running Partial Liquidation Simulation ===")
    model = ProtocolEconomicModel()
    model.add_collateral_type("ETH-A", 2000.0, liquidation_quantity=50_000 * RAD)

    model.open_safe("whale", "ETH-A", 100.0, 130_000.0)
    model.open_safe(KEEPER, "ETH-A", 1000.0, 300_000.0)

    model.update_price("ETH-A", 1700.0)
    rounds = 1
    while model.safe_engine.is_safe_unsafe("ETH-A", "whale"):
        rounds += 1
        model.liquidate_unsafe_safes("ETH-A")
        if rounds > 10:
            break

    whale = model.safe_engine.get_safe("ETH-A", "whale")
    house = model.collateral["ETH-A"].auction_house
    print(f"Auctions started: {house.auctions_started}")
    print(f"whale keeps {whale.locked_collateral / WAD:.4f} ETH and {whale.generated_debt / WAD:.2f} debt")

    model.update_time(2 * 3600)
    model.buy_active_auctions(KEEPER)
    for auction in house.auctions.values():
        print(f"  Auction {auction.id}: sold {auction.collateral_sold / WAD:.4f} ETH for "
              f"{auction.coins_raised / RAD:.2f} coins, returned {auction.collateral_returned / WAD:.4f} ETH")


def run_redemption_rate_simulation():
    """A negative redemption rate lowers the redemption price over a year."""
    print("\n=== Running Redemption Rate Simulation ===")
    model = ProtocolEconomicModel()
    model.add_collateral_type("ETH-A", 2000.0)
    model.open_safe("carol", "ETH-A", 10.0, 13_000.0)

    # -10% per year, compounded per second
    per_second_rate = int(RAY * 0.90 ** (1 / SECONDS_PER_YEAR))
    model.set_redemption_rate(per_second_rate)

    for month in range(1, 13):
        model.update_time(30 * SECONDS_PER_DAY)
        state = model.get_system_state()
        c_data = model.safe_engine.get_collateral_data("ETH-A")
        print(f"Month {month:2d}: redemption price {state['redemption_price']:.4f}, "
              f"liquidation price {c_data.liquidation_price / RAY:.2f}, TCR {state['tcr']:.3f}")


if __name__ == "__main__":
    run_saviour_simulation()
    run_partial_liquidation_simulation()
    run_redemption_rate_simulation()
