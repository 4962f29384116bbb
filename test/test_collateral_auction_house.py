"""
Unit tests for the CollateralAuctionHouse module of the HAI protocol model.

Most tests run with a flat discount (min = max = 1) so bid arithmetic is exact.
"""

import unittest
import sys
import os

from hypothesis import given, settings
from hypothesis import strategies as st

# Add the core directory to the path
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "core"))

from economic_model import GOVERNANCE, KEEPER, ProtocolEconomicModel
from fixed_point import RAD, RAY, WAD
from protocol_errors import (
    AuctionNotFound,
    InactiveAuction,
    InvalidBid,
    InvalidCollateralPrice,
    InvalidLeftToRaise,
    InvalidParameter,
    NotSAFEAllowed,
    Unauthorized,
)

ETH = "ETH-A"


def build_model(price=None):
    """
    alice: 10 ETH and 1000 coins of debt. The keeper holds 20000 coins.
    Dropping the price below 135 liquidates alice into auction 1, which
    sells 10 ETH for 1100 coins.
    """
    model = ProtocolEconomicModel(initial_timestamp=0)
    model.add_collateral_type(ETH, 2000.0, min_discount=WAD, max_discount=WAD, per_second_discount_update_rate=RAY)
    model.open_safe("alice", ETH, 10.0, 1000.0)
    model.open_safe(KEEPER, ETH, 1000.0, 20000.0)
    if price is not None:
        model.update_price(ETH, price)
    return model


class TestCollateralAuctionHouse(unittest.TestCase):

    def approve(self, model):
        house = model.collateral[ETH].auction_house
        model.safe_engine.approve_safe_modification(KEEPER, house.address)
        return house

    def test_auction_started_by_liquidation(self):
        model = build_model(90.0)
        auction = model.collateral[ETH].auction_house.get_auction(1)
        self.assertTrue(auction.is_active())
        self.assertEqual(auction.collateral_to_sell, 10 * WAD)
        self.assertEqual(auction.amount_to_raise, 1100 * RAD)
        self.assertEqual(auction.initial_bidder, model.accounting_engine.address)
        self.assertEqual(auction.initial_timestamp, 0)

    def test_collateral_runs_out_first(self):
        """Price 90: 10 ETH can only raise 900 of the 1100 coins."""
        model = build_model(90.0)
        house = self.approve(model)
        keeper_coins = model.safe_engine.get_coin_balance(KEEPER)

        self.assertEqual(house.buy_collateral(KEEPER, 1, 450 * WAD), (5 * WAD, 450 * WAD))
        auction = house.get_auction(1)
        self.assertEqual(auction.amount_to_raise, 650 * RAD)
        self.assertEqual(model.liquidation_engine.current_on_auction_system_coins, 650 * RAD)

        # Bid is cut down to the cost of what is left
        self.assertEqual(house.buy_collateral(KEEPER, 1, 1000 * WAD), (5 * WAD, 450 * WAD))
        self.assertFalse(auction.is_active())
        self.assertEqual(auction.shortfall, 200 * RAD)
        self.assertEqual(auction.coins_raised, 900 * RAD)
        self.assertEqual(auction.collateral_returned, 0)
        self.assertEqual(model.accounting_engine.total_auction_shortfall, 200 * RAD)
        self.assertEqual(model.liquidation_engine.current_on_auction_system_coins, 0)

        self.assertEqual(model.safe_engine.get_token_collateral(ETH, KEEPER), 10 * WAD)
        self.assertEqual(model.safe_engine.get_coin_balance(KEEPER), keeper_coins - 900 * RAD)
        self.assertEqual(model.accounting_engine.get_coin_balance(), 900 * RAD)

    def test_target_met_returns_leftover(self):
        """Price 130: 1100 coins buy part of the lot, the rest goes back to alice."""
        model = build_model(130.0)
        house = self.approve(model)

        bought, paid = house.buy_collateral(KEEPER, 1, 1100 * WAD)
        expected = 1100 * WAD * WAD // (130 * WAD)
        self.assertEqual((bought, paid), (expected, 1100 * WAD))

        auction = house.get_auction(1)
        self.assertFalse(auction.is_active())
        self.assertEqual(auction.collateral_returned, 10 * WAD - expected)
        self.assertEqual(auction.shortfall, 0)
        self.assertEqual(model.safe_engine.get_token_collateral(ETH, "alice"), 10 * WAD - expected)
        self.assertEqual(model.safe_engine.get_token_collateral(ETH, house.address), 0)

        event = model.env.events.last("SettleAuction")
        self.assertEqual(event.data["leftover_receiver"], "alice")
        self.assertEqual(event.data["leftover_collateral"], 10 * WAD - expected)

    def test_bid_above_target_is_capped(self):
        model = build_model(130.0)
        house = self.approve(model)
        bought, paid = house.buy_collateral(KEEPER, 1, 5000 * WAD)
        self.assertEqual(paid, 1100 * WAD)
        self.assertEqual(bought, 1100 * WAD * WAD // (130 * WAD))

    def test_preview_matches_purchase(self):
        model = build_model(130.0)
        house = self.approve(model)
        preview = house.get_collateral_bought(1, 600 * WAD)
        self.assertEqual(house.buy_collateral(KEEPER, 1, 600 * WAD), preview)
        self.assertEqual(house.get_collateral_bought(1, 0), (0, 0))

    def test_minimum_bid(self):
        model = build_model(130.0)
        house = self.approve(model)
        house.modify_parameters(GOVERNANCE, "minimumBid", 100 * WAD)

        with self.assertRaises(InvalidBid):
            house.buy_collateral(KEEPER, 1, 50 * WAD)
        house.buy_collateral(KEEPER, 1, 1050 * WAD)

        # Below the minimum, but it covers the rest of the target
        house.buy_collateral(KEEPER, 1, 50 * WAD)
        self.assertFalse(house.get_auction(1).is_active())

    def test_invalid_bids(self):
        model = build_model(90.0)
        house = self.approve(model)
        with self.assertRaises(InvalidBid):
            house.buy_collateral(KEEPER, 1, 0)
        with self.assertRaises(AuctionNotFound):
            house.buy_collateral(KEEPER, 2, WAD)

    def test_invalid_collateral_price(self):
        model = build_model(90.0)
        house = self.approve(model)
        model.collateral[ETH].price_feed.set_validity(False)
        with self.assertRaises(InvalidCollateralPrice):
            house.buy_collateral(KEEPER, 1, 100 * WAD)
        self.assertEqual(house.get_collateral_bought(1, 100 * WAD), (0, 0))

    def test_bidder_must_approve_house(self):
        model = build_model(90.0)
        house = model.collateral[ETH].auction_house
        events = len(model.env.events)
        with self.assertRaises(NotSAFEAllowed):
            house.buy_collateral(KEEPER, 1, 100 * WAD)
        self.assertEqual(house.get_auction(1).amount_to_raise, 1100 * RAD)
        self.assertEqual(len(model.env.events), events)

    def test_terminal_auction_is_inert(self):
        model = build_model(130.0)
        house = self.approve(model)
        house.buy_collateral(KEEPER, 1, 1100 * WAD)
        with self.assertRaises(InactiveAuction):
            house.buy_collateral(KEEPER, 1, 100 * WAD)
        self.assertEqual(house.get_collateral_bought(1, 100 * WAD), (0, 0))

    def test_model_bid_approves_house(self):
        model = build_model(90.0)
        self.assertEqual(model.bid(KEEPER, ETH, 1, 450.0), (5.0, 450.0))

    def test_discount_schedule(self):
        model = build_model()
        house = model.collateral[ETH].auction_house
        house.modify_parameters(GOVERNANCE, "maxDiscount", WAD // 2)
        house.modify_parameters(GOVERNANCE, "perSecondDiscountUpdateRate", RAY // 2)
        model.update_price(ETH, 90.0)

        self.assertEqual(house.get_auction_discount(1), WAD)
        model.env.advance(1)
        self.assertEqual(house.get_auction_discount(1), WAD // 2)
        model.env.advance(10)
        # Never deeper than the maximum discount
        self.assertEqual(house.get_auction_discount(1), WAD // 2)

        # Half price: 450 coins now buy all 10 ETH
        self.approve(model)
        self.assertEqual(house.buy_collateral(KEEPER, 1, 1000 * WAD), (10 * WAD, 450 * WAD))

    def test_default_discount_deepens_over_time(self):
        model = ProtocolEconomicModel(initial_timestamp=0)
        model.add_collateral_type(ETH, 2000.0)
        model.open_safe("alice", ETH, 10.0, 1000.0)
        model.update_price(ETH, 90.0)
        house = model.collateral[ETH].auction_house

        discounts = []
        for _ in range(5):
            discounts.append(house.get_auction_discount(1))
            model.env.advance(3600)
        self.assertEqual(discounts[0], house.min_discount)
        self.assertEqual(discounts, sorted(discounts, reverse=True))
        model.env.advance(30 * 24 * 3600)
        self.assertEqual(house.get_auction_discount(1), house.max_discount)

    def test_start_auction_is_authorized(self):
        model = build_model()
        house = model.collateral[ETH].auction_house
        with self.assertRaises(Unauthorized):
            house.start_auction("mallory", "mallory", "mallory", 100 * RAD, WAD)

    def test_raise_target_below_one_coin(self):
        model = build_model()
        house = model.collateral[ETH].auction_house
        with self.assertRaises(InvalidLeftToRaise):
            house.start_auction(model.liquidation_engine.address, "alice", model.accounting_engine.address,
                                RAY - 1, WAD)
        self.assertEqual(house.auctions_started, 0)

    def test_dust_remainder_can_be_bought(self):
        """At 0.5 coins per unit, the last wei of collateral still costs one wei."""
        model = build_model()
        liquidation_engine = model.liquidation_engine
        model.collateral[ETH].price_feed.set_price(WAD // 2)
        model.safe_engine.modify_collateral_balance(GOVERNANCE, ETH, liquidation_engine.address, 1)
        liquidation_engine.current_on_auction_system_coins = 100 * RAD
        house = self.approve(model)
        auction_id = house.start_auction(liquidation_engine.address, "alice", model.accounting_engine.address,
                                         100 * RAD, 1)

        self.assertEqual(house.get_collateral_bought(auction_id, 100 * WAD), (1, 1))
        self.assertEqual(house.buy_collateral(KEEPER, auction_id, 1), (1, 1))

        auction = house.get_auction(auction_id)
        self.assertFalse(auction.is_active())
        self.assertEqual(auction.coins_raised, RAY)
        self.assertEqual(auction.shortfall, 100 * RAD - RAY)
        self.assertEqual(liquidation_engine.current_on_auction_system_coins, 0)
        self.assertEqual(model.safe_engine.get_token_collateral(ETH, KEEPER), 1)

    def test_discount_validation(self):
        model = build_model()
        house = model.collateral[ETH].auction_house
        with self.assertRaises(InvalidParameter):
            house.modify_parameters(GOVERNANCE, "maxDiscount", 0)
        with self.assertRaises(InvalidParameter):
            house.modify_parameters(GOVERNANCE, "minDiscount", WAD + 1)
        with self.assertRaises(InvalidParameter):
            house.modify_parameters(GOVERNANCE, "perSecondDiscountUpdateRate", RAY + 1)


class TestAuctionConservation(unittest.TestCase):

    @settings(max_examples=30, deadline=None)
    @given(
        st.integers(min_value=30, max_value=130),
        st.lists(st.integers(min_value=1, max_value=1500), min_size=1, max_size=8),
    )
    def test_collateral_and_coins_are_conserved(self, price, bids):
        model = build_model(float(price))
        house = model.collateral[ETH].auction_house
        model.safe_engine.approve_safe_modification(KEEPER, house.address)
        auction = house.get_auction(1)

        for bid in bids:
            if not auction.is_active():
                break
            house.buy_collateral(KEEPER, 1, bid * WAD)

            self.assertEqual(
                auction.collateral_sold + auction.collateral_to_sell + auction.collateral_returned,
                auction.initial_collateral_to_sell,
            )
            self.assertEqual(
                auction.coins_raised + auction.amount_to_raise + auction.shortfall,
                auction.initial_amount_to_raise,
            )
            self.assertEqual(model.safe_engine.get_token_collateral(ETH, house.address), auction.collateral_to_sell)
            self.assertEqual(model.liquidation_engine.current_on_auction_system_coins, auction.amount_to_raise)
            self.assertEqual(model.safe_engine.get_token_collateral(ETH, KEEPER), auction.collateral_sold)


if __name__ == '__main__':
    unittest.main()
