"""
Economic Model for the HAI Protocol.

This main module combines all the individual components to create a complete
economic model of the HAI collateralized-debt system. It can be used to
simulate various scenarios and test the economic behavior of the protocol:
SAFEs are opened against collateral, prices move, unsafe SAFEs are liquidated
and their collateral is sold in increasing-discount auctions.

Amounts passed to the convenience methods of ProtocolEconomicModel are
human-readable floats (2000.0 means two thousand coins); the components
underneath work in WAD, RAY and RAD integers.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict

import numpy as np
import matplotlib.pyplot as plt

from accounting_engine import AccountingEngine
from collateral_auction_house import CollateralAuctionHouse
from erc20_token import Token
from execution_env import ExecutionEnvironment
from fixed_point import RAD, RAY, WAD
from liquidation_engine import LiquidationEngine
from oracle_relayer import OracleRelayer
from price_feed import PriceFeed
from protocol_errors import InvalidBid, InvalidCollateralPrice, LiquidationLimitHit, NullBoughtAmount, SizingError
from safe_engine import SAFEEngine
from token_join import CoinJoin, CollateralJoin

logger = logging.getLogger(__name__)

GOVERNANCE = "governance"
KEEPER = "keeper"

SECONDS_PER_DAY = 24 * 60 * 60

# System constants
GLOBAL_DEBT_CEILING = 10 ** 9 * RAD
ON_AUCTION_SYSTEM_COIN_LIMIT = 10 ** 7 * RAD
DEBT_CEILING = 10 ** 8 * RAD
DEBT_FLOOR = 100 * RAD                     # smallest SAFE debt, in coins
SAFETY_C_RATIO = RAY * 150 // 100          # 150% to draw debt
LIQUIDATION_C_RATIO = RAY * 135 // 100     # 135% before liquidation
LIQUIDATION_PENALTY = WAD * 110 // 100     # 10% penalty
LIQUIDATION_QUANTITY = 10 ** 6 * RAD       # largest single auction


def to_wad(amount):
    """Converts a human-readable amount to WAD."""
    return int(round(amount * 10 ** 9)) * 10 ** 9


@dataclass
class CollateralSetup:
    """Per-type contracts created by add_collateral_type."""
    token: Any
    join: Any
    price_feed: Any
    auction_house: Any


class ProtocolEconomicModel:
    """
    Complete economic model of the HAI Protocol.
    Combines all components and provides simulation capabilities.
    """

    def __init__(self, initial_timestamp=None, global_debt_ceiling=GLOBAL_DEBT_CEILING,
                 on_auction_system_coin_limit=ON_AUCTION_SYSTEM_COIN_LIMIT):
        if initial_timestamp is None:
            initial_timestamp = int(time.time())
        self.env = ExecutionEnvironment(initial_timestamp)
        self.governance = GOVERNANCE

        # Core contracts
        self.safe_engine = SAFEEngine(self.env, GOVERNANCE, global_debt_ceiling=global_debt_ceiling)
        self.oracle_relayer = OracleRelayer(self.env, GOVERNANCE, self.safe_engine)
        self.accounting_engine = AccountingEngine(self.env, GOVERNANCE, self.safe_engine)
        self.liquidation_engine = LiquidationEngine(
            self.env, GOVERNANCE, self.safe_engine, self.accounting_engine,
            on_auction_system_coin_limit=on_auction_system_coin_limit,
        )

        # System coin
        self.system_coin = Token(self.env, GOVERNANCE, "HAI", address="system_coin")
        self.coin_join = CoinJoin(self.env, GOVERNANCE, self.safe_engine, self.system_coin)

        # Link components
        self.safe_engine.add_authorization(GOVERNANCE, self.oracle_relayer.address)
        self.safe_engine.add_authorization(GOVERNANCE, self.liquidation_engine.address)
        self.accounting_engine.add_authorization(GOVERNANCE, self.liquidation_engine.address)
        self.system_coin.add_minter(GOVERNANCE, self.coin_join.address)

        self.collateral: Dict[str, CollateralSetup] = {}

        # History tracking for simulations
        self.price_history = []
        self.total_collateral_value_history = []
        self.total_debt_history = []
        self.active_safes_history = []
        self.on_auction_history = []
        self.tcr_history = []

    # --- Setup ---

    def add_collateral_type(self, collateral_type, initial_price, safety_c_ratio=SAFETY_C_RATIO,
                            liquidation_c_ratio=LIQUIDATION_C_RATIO, debt_ceiling=DEBT_CEILING,
                            debt_floor=DEBT_FLOOR, liquidation_penalty=LIQUIDATION_PENALTY,
                            liquidation_quantity=LIQUIDATION_QUANTITY, **auction_params):
        """
        Deploys and wires everything a new collateral type needs: token, join
        adapter, price feed and auction house.

        Args:
            collateral_type: Name of the type, e.g. "ETH-A"
            initial_price: Market price of one unit of collateral
            **auction_params: Passed to the CollateralAuctionHouse

        Returns:
            The CollateralSetup of the new type
        """
        env = self.env
        price_feed = PriceFeed.from_float(env, collateral_type, initial_price)
        token = Token(env, GOVERNANCE, collateral_type)
        join = CollateralJoin(env, GOVERNANCE, self.safe_engine, collateral_type, token)

        self.safe_engine.initialize_collateral_type(GOVERNANCE, collateral_type, debt_ceiling, debt_floor)
        self.safe_engine.add_authorization(GOVERNANCE, join.address)
        self.oracle_relayer.initialize_collateral_type(
            GOVERNANCE, collateral_type, price_feed, safety_c_ratio, liquidation_c_ratio
        )

        auction_house = CollateralAuctionHouse(
            env, GOVERNANCE, self.safe_engine, self.liquidation_engine, self.oracle_relayer,
            self.accounting_engine, collateral_type, **auction_params
        )
        auction_house.add_authorization(GOVERNANCE, self.liquidation_engine.address)
        self.liquidation_engine.add_authorization(GOVERNANCE, auction_house.address)
        self.accounting_engine.add_authorization(GOVERNANCE, auction_house.address)
        self.liquidation_engine.initialize_collateral_type(
            GOVERNANCE, collateral_type, auction_house, liquidation_penalty, liquidation_quantity
        )

        self.oracle_relayer.update_collateral_price(collateral_type)
        setup = CollateralSetup(token=token, join=join, price_feed=price_feed, auction_house=auction_house)
        self.collateral[collateral_type] = setup
        logger.info("Added collateral type %s at price %s", collateral_type, initial_price)
        return setup

    def _get_setup(self, collateral_type):
        if collateral_type not in self.collateral:
            raise ValueError(f"Unknown collateral type {collateral_type}")
        return self.collateral[collateral_type]

    # --- User actions ---

    def open_safe(self, owner, collateral_type, collateral, debt):
        """
        Opens (or adds to) the owner's SAFE.

        Mints the collateral tokens to the owner, joins them and draws `debt`
        coins against them, all in one transition.

        Args:
            owner: Address of the SAFE owner; also used as the SAFE handle
            collateral_type: Collateral type to lock
            collateral: Amount of collateral to deposit
            debt: Amount of coins to generate

        Returns:
            The SAFE handle
        """
        if collateral <= 0:
            raise ValueError("Collateral must be greater than zero")
        setup = self._get_setup(collateral_type)
        collateral_wad = to_wad(collateral)
        rate = self.safe_engine.get_collateral_data(collateral_type).accumulated_rate
        # Normalized debt; the coins received are delta_debt * rate
        delta_debt = to_wad(debt) * RAY // rate

        with self.env.atomic():
            setup.token.mint(GOVERNANCE, owner, collateral_wad)
            setup.join.join(owner, owner, collateral_wad)
            self.safe_engine.modify_safe_collateralization(
                owner, collateral_type, owner, owner, owner, collateral_wad, delta_debt
            )

        self._update_history()
        return owner

    def exit_coins(self, owner, amount):
        """Moves the owner's internal coins out as system coin tokens."""
        if not self.safe_engine.can_modify_safe(owner, self.coin_join.address):
            self.safe_engine.approve_safe_modification(owner, self.coin_join.address)
        self.coin_join.exit(owner, owner, to_wad(amount))

    def bid(self, bidder, collateral_type, auction_id, amount):
        """
        Buys collateral from an auction with the bidder's internal coins.

        Returns:
            Tuple of (collateral bought, coins paid) as floats
        """
        house = self._get_setup(collateral_type).auction_house
        if not self.safe_engine.can_modify_safe(bidder, house.address):
            self.safe_engine.approve_safe_modification(bidder, house.address)
        bought, paid = house.buy_collateral(bidder, auction_id, to_wad(amount))

        self._update_history()
        return bought / WAD, paid / WAD

    def buy_active_auctions(self, bidder):
        """
        Spends the bidder's internal coins on every active auction, oldest
        first, until the coins run out.

        Returns:
            Number of bids placed
        """
        bids = 0
        for collateral_type, setup in self.collateral.items():
            house = setup.auction_house
            for auction in list(house.auctions.values()):
                coins = self.safe_engine.get_coin_balance(bidder) // RAY
                if coins == 0:
                    return bids
                if not auction.is_active():
                    continue
                if not self.safe_engine.can_modify_safe(bidder, house.address):
                    self.safe_engine.approve_safe_modification(bidder, house.address)
                try:
                    house.buy_collateral(bidder, auction.id, coins)
                    bids += 1
                except (InvalidBid, InvalidCollateralPrice, NullBoughtAmount) as exc:
                    logger.debug("Skipped auction %s of %s: %s", auction.id, collateral_type, exc)
        return bids

    # --- Market ---

    def update_price(self, collateral_type, new_price):
        """
        Updates the market price of a collateral type, pushes it through the
        oracle relayer and liquidates SAFEs that became unsafe.

        Returns:
            List of (collateral_type, safe, auction_id) for the liquidations
        """
        setup = self._get_setup(collateral_type)
        setup.price_feed.set_price(to_wad(new_price))
        self.oracle_relayer.update_collateral_price(collateral_type)

        liquidated = self.liquidate_unsafe_safes(collateral_type)
        self._update_history()
        return liquidated

    def liquidate_unsafe_safes(self, collateral_type=None):
        """
        Tries to liquidate every unsafe SAFE once.

        SAFEs that cannot be liquidated right now (on-auction limit hit or a
        sizing problem) are skipped; the next call retries them.

        Returns:
            List of (collateral_type, safe, auction_id); auction_id is None
            when a saviour rescued the SAFE
        """
        types = [collateral_type] if collateral_type else list(self.collateral)
        liquidated = []
        for ct in types:
            for safe in list(self.safe_engine.safes.get(ct, {})):
                if not self.safe_engine.is_safe_unsafe(ct, safe):
                    continue
                try:
                    auction_id = self.liquidation_engine.liquidate_safe(KEEPER, ct, safe)
                except (LiquidationLimitHit, SizingError) as exc:
                    logger.info("Could not liquidate SAFE %s (%s): %s", safe, ct, exc)
                    continue
                liquidated.append((ct, safe, auction_id))
        return liquidated

    def set_redemption_rate(self, per_second_rate):
        """Sets the redemption rate (RAY per second), refreshing the price first."""
        self.oracle_relayer.redemption_price()
        self.oracle_relayer.update_redemption_rate(GOVERNANCE, per_second_rate)

    def update_time(self, seconds):
        """
        Advances the simulation by the specified number of seconds and
        refreshes the redemption price and collateral prices.
        """
        self.env.advance(seconds)
        self.oracle_relayer.redemption_price()
        for collateral_type in self.collateral:
            self.oracle_relayer.update_collateral_price(collateral_type)

        self._update_history()

    # --- Reporting ---

    def get_system_state(self):
        """
        Returns the current state of the system.

        Returns:
            Dictionary with system state, amounts as floats
        """
        prices = {}
        total_collateral_value = 0.0
        total_debt = 0.0
        active_safes = 0
        active_auctions = 0

        for collateral_type, setup in self.collateral.items():
            c_data = self.safe_engine.get_collateral_data(collateral_type)
            price = setup.price_feed.read() / WAD
            prices[collateral_type] = price
            total_collateral_value += c_data.locked_amount / WAD * price
            total_debt += c_data.debt_amount * c_data.accumulated_rate / RAD
            active_safes += sum(
                1 for safe in self.safe_engine.safes.get(collateral_type, {}).values() if safe.generated_debt > 0
            )
            active_auctions += sum(1 for a in setup.auction_house.auctions.values() if a.is_active())

        redemption_price = self.oracle_relayer.last_redemption_price() / RAY
        debt_value = total_debt * redemption_price
        tcr = total_collateral_value / debt_value if debt_value > 0 else float('inf')

        return {
            'prices': prices,
            'redemption_price': redemption_price,
            'total_collateral_value': total_collateral_value,
            'total_debt': total_debt,
            'global_debt': self.safe_engine.global_debt / RAD,
            'global_unbacked_debt': self.safe_engine.global_unbacked_debt / RAD,
            'on_auction_coins': self.liquidation_engine.current_on_auction_system_coins / RAD,
            'auction_shortfall': self.accounting_engine.total_auction_shortfall / RAD,
            'active_safes': active_safes,
            'active_auctions': active_auctions,
            'tcr': tcr,
        }

    def _update_history(self):
        """Updates history tracking for simulations."""
        state = self.get_system_state()

        self.price_history.append(state['prices'])
        self.total_collateral_value_history.append(state['total_collateral_value'])
        self.total_debt_history.append(state['total_debt'])
        self.active_safes_history.append(state['active_safes'])
        self.on_auction_history.append(state['on_auction_coins'])
        self.tcr_history.append(state['tcr'])

    def _reset_history(self):
        self.price_history = []
        self.total_collateral_value_history = []
        self.total_debt_history = []
        self.active_safes_history = []
        self.on_auction_history = []
        self.tcr_history = []
        self._update_history()

    # --- Simulation ---

    def simulate_market_scenario(self, days, price_volatility=0.02, plot_results=True, keeper=None, seed=None):
        """
        Runs a simulation with random price movements over the specified period.

        Every collateral type follows its own log-normal price path, stepped
        hourly. Each step pushes the new prices, liquidates unsafe SAFEs and,
        if a keeper is given, lets the keeper buy from active auctions.

        Args:
            days: Number of days to simulate
            price_volatility: Daily price volatility (standard deviation of log returns)
            plot_results: Whether to plot the results
            keeper: Address whose internal coins are used to bid, or None
            seed: Seed for the random generator

        Returns:
            Dictionary with simulation results
        """
        steps = days * 24  # hourly steps
        step_size = SECONDS_PER_DAY // 24
        rng = np.random.default_rng(seed)

        self._reset_history()
        liquidations_before = len(self.env.events.filter("Liquidate"))
        settlements_before = len(self.env.events.filter("SettleAuction"))

        # Generate random price movements (log-normal)
        hourly_volatility = price_volatility / np.sqrt(24)  # Scale to hourly
        log_returns = {ct: rng.normal(0, hourly_volatility, steps) for ct in self.collateral}
        prices = {ct: setup.price_feed.read() / WAD for ct, setup in self.collateral.items()}
        time_points = np.zeros(steps)
        start_time = self.env.timestamp

        for i in range(steps):
            for collateral_type in self.collateral:
                prices[collateral_type] *= float(np.exp(log_returns[collateral_type][i]))
                self.update_price(collateral_type, prices[collateral_type])

            if keeper is not None:
                self.buy_active_auctions(keeper)

            self.update_time(step_size)
            time_points[i] = (self.env.timestamp - start_time) / SECONDS_PER_DAY

        # update_price and update_time each record a point; keep one per step
        points_per_step = len(self.collateral) + 1
        sampled = slice(points_per_step, None, points_per_step)

        if plot_results:
            fig, axs = plt.subplots(5, 1, figsize=(12, 20), sharex=True)

            for collateral_type in self.collateral:
                axs[0].plot(time_points, [p[collateral_type] for p in self.price_history[sampled]],
                            label=collateral_type)
            axs[0].set_title('Collateral Prices')
            axs[0].set_ylabel('USD')
            axs[0].legend()

            axs[1].plot(time_points, self.total_debt_history[sampled])
            axs[1].set_title('Total System Debt')
            axs[1].set_ylabel('Coins')

            axs[2].plot(time_points, self.total_collateral_value_history[sampled])
            axs[2].set_title('Locked Collateral Value')
            axs[2].set_ylabel('USD')

            axs[3].plot(time_points, self.active_safes_history[sampled], label='Active SAFEs')
            axs[3].plot(time_points, self.on_auction_history[sampled], label='Coins on auction')
            axs[3].set_title('Active SAFEs and Coins on Auction')
            axs[3].legend()

            axs[4].plot(time_points, self.tcr_history[sampled])
            axs[4].set_title('Total Collateralization Ratio')
            axs[4].set_ylabel('Ratio')
            axs[4].set_xlabel('Days')

            plt.tight_layout()
            plt.show()

        final_state = self.get_system_state()
        return {
            'final_prices': final_state['prices'],
            'final_system_debt': final_state['total_debt'],
            'final_collateral_value': final_state['total_collateral_value'],
            'active_safes': final_state['active_safes'],
            'liquidations': len(self.env.events.filter("Liquidate")) - liquidations_before,
            'auctions_settled': len(self.env.events.filter("SettleAuction")) - settlements_before,
            'auction_shortfall': final_state['auction_shortfall'],
            'final_tcr': final_state['tcr'],
        }
