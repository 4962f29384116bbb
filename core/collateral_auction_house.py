"""
Collateral Auction House Model for the HAI Protocol.

This module simulates the increasing-discount CollateralAuctionHouse contract
which sells collateral seized by the liquidation engine for system coins.

Each auction sells a fixed amount of collateral against a coin target
(amount_to_raise, RAD). Bidders buy at the market collateral price, expressed
in system coins through the redemption price, minus a discount. The discount
starts at min_discount and deepens every second by compounding
per_second_discount_update_rate until it reaches max_discount, so the price
only ever falls while the auction is open.

Any caller can buy any part of the remaining collateral. An auction ends
(and becomes inert) when either:
1. The coin target is met: leftover collateral goes back to the
   forgone-collateral receiver, usually the liquidated SAFE
2. The collateral runs out first: the missing coins are recorded as a
   shortfall against the accounting engine, which already carries the debt
"""

import logging
from dataclasses import dataclass
from typing import Dict

from authorization import AuthorizedAccounts
from execution_env import transition
from fixed_point import RAY, WAD, rpow
from protocol_errors import (
    AuctionNotFound,
    InactiveAuction,
    InvalidBid,
    InvalidCollateralPrice,
    InvalidLeftToRaise,
    InvalidParameter,
    NullBoughtAmount,
    NullCollateralToSell,
    UnrecognizedParam,
)

logger = logging.getLogger(__name__)

DEFAULT_MIN_DISCOUNT = WAD * 95 // 100  # 5% below market at the start
DEFAULT_MAX_DISCOUNT = WAD * 80 // 100  # never more than 20% below market
# Deepens the discount by roughly 1% per hour
DEFAULT_PER_SECOND_DISCOUNT_UPDATE_RATE = 999997208243937652252849536


@dataclass
class Auction:
    """A single collateral auction. Terminal auctions keep their history."""
    id: int
    collateral_to_sell: int              # WAD, remaining
    amount_to_raise: int                 # RAD, remaining
    initial_timestamp: int
    forgone_collateral_receiver: str
    initial_bidder: str
    initial_collateral_to_sell: int = 0  # WAD
    initial_amount_to_raise: int = 0     # RAD
    collateral_sold: int = 0             # WAD, released to bidders
    coins_raised: int = 0                # RAD, paid by bidders
    collateral_returned: int = 0         # WAD, sent back to the receiver
    shortfall: int = 0                   # RAD, left unraised

    def is_active(self):
        return self.collateral_to_sell > 0 and self.amount_to_raise > 0


class CollateralAuctionHouse:
    """
    Simulates the CollateralAuctionHouse contract for one collateral type.

    The house must be authorized on the liquidation engine (to decrease the
    on-auction counter) and on the accounting engine (to record shortfalls);
    the liquidation engine must be authorized here to start auctions.
    """

    STATE_FIELDS = (
        "authorized", "auctions_started", "auctions", "minimum_bid", "min_discount",
        "max_discount", "per_second_discount_update_rate", "oracle_relayer", "liquidation_engine",
    )

    def __init__(self, env, deployer, safe_engine, liquidation_engine, oracle_relayer, accounting_engine,
                 collateral_type, address=None, minimum_bid=0, min_discount=DEFAULT_MIN_DISCOUNT,
                 max_discount=DEFAULT_MAX_DISCOUNT,
                 per_second_discount_update_rate=DEFAULT_PER_SECOND_DISCOUNT_UPDATE_RATE):
        self.env = env
        self.address = address or f"collateral_auction_house_{collateral_type}"
        self.collateral_type = collateral_type
        self.safe_engine = safe_engine
        self.liquidation_engine = liquidation_engine
        self.oracle_relayer = oracle_relayer
        self.accounting_engine = accounting_engine
        self.authorized = AuthorizedAccounts(deployer)

        self._validate_discounts(min_discount, max_discount, per_second_discount_update_rate)
        self.minimum_bid = minimum_bid                                          # WAD
        self.min_discount = min_discount                                        # WAD
        self.max_discount = max_discount                                        # WAD
        self.per_second_discount_update_rate = per_second_discount_update_rate  # RAY

        self.auctions_started = 0
        self.auctions: Dict[int, Auction] = {}

        env.register(self)

    def add_authorization(self, caller, account):
        self.authorized.require(caller)
        self.authorized.add(account)
        self.env.emit("AddAuthorization", self.address, account=account)

    def remove_authorization(self, caller, account):
        self.authorized.require(caller)
        self.authorized.remove(account)
        self.env.emit("RemoveAuthorization", self.address, account=account)

    # --- Parameters ---

    @staticmethod
    def _validate_discounts(min_discount, max_discount, rate):
        if not 0 < max_discount <= min_discount <= WAD:
            raise InvalidParameter("Discounts must satisfy 0 < maxDiscount <= minDiscount <= 1")
        if not 0 < rate <= RAY:
            raise InvalidParameter("Discount update rate must be in (0, RAY]")

    def modify_parameters(self, caller, parameter, value):
        self.authorized.require(caller)
        if parameter == "minimumBid":
            if value < 0:
                raise InvalidParameter("Minimum bid cannot be negative")
            self.minimum_bid = value
        elif parameter == "minDiscount":
            self._validate_discounts(value, self.max_discount, self.per_second_discount_update_rate)
            self.min_discount = value
        elif parameter == "maxDiscount":
            self._validate_discounts(self.min_discount, value, self.per_second_discount_update_rate)
            self.max_discount = value
        elif parameter == "perSecondDiscountUpdateRate":
            self._validate_discounts(self.min_discount, self.max_discount, value)
            self.per_second_discount_update_rate = value
        elif parameter == "oracleRelayer":
            self.oracle_relayer = value
        elif parameter == "liquidationEngine":
            self.liquidation_engine = value
        else:
            raise UnrecognizedParam(f"Unrecognized parameter {parameter}")
        self.env.emit("ModifyParameters", self.address, parameter=parameter, value=value)

    # --- Getter functions ---

    def get_auction(self, auction_id):
        if auction_id not in self.auctions:
            raise AuctionNotFound(f"Auction {auction_id} does not exist")
        return self.auctions[auction_id]

    def get_auction_discount(self, auction_id):
        """Returns the discount (WAD) an auction offers at the current timestamp."""
        auction = self.get_auction(auction_id)
        elapsed = self.env.timestamp - auction.initial_timestamp
        discount = self.min_discount * rpow(self.per_second_discount_update_rate, elapsed, RAY) // RAY
        return max(discount, self.max_discount)

    def _get_collateral_price(self):
        """Market price of the collateral (WAD), zero if the feed is invalid."""
        oracle = self.oracle_relayer.get_collateral_params(self.collateral_type).oracle
        value, is_valid = oracle.get_result_with_validity()
        return value if is_valid else 0

    @staticmethod
    def _get_bought_collateral(collateral_price, redemption_price, collateral_to_sell, adjusted_bid, discount):
        """
        Converts a bid into collateral at the discounted price.

        Returns:
            Tuple of (bought collateral, bid actually used), both WAD. When the
            bid would buy more than is for sale, the bid is reduced to the cost
            of the remaining collateral, rounded up so that a dust remainder
            always costs at least one wei.
        """
        # Coins per unit of collateral after the discount
        discounted_price = collateral_price * RAY // redemption_price * discount // WAD
        if discounted_price == 0:
            return 0, 0
        bought = adjusted_bid * WAD // discounted_price
        if bought <= collateral_to_sell:
            return bought, adjusted_bid
        # Never above adjusted_bid, since the bid buys more than is left
        return collateral_to_sell, -(-collateral_to_sell * discounted_price // WAD)

    def get_collateral_bought(self, auction_id, wad):
        """
        Previews a bid without changing state.

        Returns:
            Tuple of (bought collateral, adjusted bid), both WAD; zeros if the
            auction is inactive or the price is invalid
        """
        auction = self.get_auction(auction_id)
        collateral_price = self._get_collateral_price()
        if not auction.is_active() or wad <= 0 or collateral_price == 0:
            return 0, 0
        adjusted_bid = min(wad, auction.amount_to_raise // RAY)
        return self._get_bought_collateral(
            collateral_price, self.oracle_relayer.calc_redemption_price(),
            auction.collateral_to_sell, adjusted_bid, self.get_auction_discount(auction_id),
        )

    # --- Auction lifecycle ---

    @transition
    def start_auction(self, caller, forgone_collateral_receiver, initial_bidder, amount_to_raise, collateral_to_sell):
        """
        Starts a new auction, pulling the collateral from the caller.

        Only authorized callers (the liquidation engine) can start auctions.

        Returns:
            ID of the new auction
        """
        self.authorized.require(caller)
        # Bids pay whole WAD coins, so a smaller target could never be met
        if amount_to_raise < RAY:
            raise InvalidLeftToRaise("Amount to raise must be at least one coin unit")
        if collateral_to_sell <= 0:
            raise NullCollateralToSell("Nothing to auction")

        self.auctions_started += 1
        auction_id = self.auctions_started
        self.safe_engine.transfer_collateral(self.address, self.collateral_type, caller, self.address,
                                             collateral_to_sell)
        self.auctions[auction_id] = Auction(
            id=auction_id,
            collateral_to_sell=collateral_to_sell,
            amount_to_raise=amount_to_raise,
            initial_timestamp=self.env.timestamp,
            forgone_collateral_receiver=forgone_collateral_receiver,
            initial_bidder=initial_bidder,
            initial_collateral_to_sell=collateral_to_sell,
            initial_amount_to_raise=amount_to_raise,
        )
        self.env.emit("StartAuction", self.address, id=auction_id, collateral_type=self.collateral_type,
                      collateral_to_sell=collateral_to_sell, amount_to_raise=amount_to_raise,
                      forgone_collateral_receiver=forgone_collateral_receiver,
                      initial_bidder=initial_bidder)
        return auction_id

    @transition
    def buy_collateral(self, caller, auction_id, wad):
        """
        Buys collateral from an auction with internal coins.

        The bidder must have approved this house through
        approve_safe_modification so that it can take the payment.

        Args:
            caller: Bidder paying the coins
            auction_id: Auction to buy from
            wad: Most coins (WAD) the bidder is willing to pay

        Returns:
            Tuple of (collateral bought, coins paid), both WAD

        Raises:
            InactiveAuction: If the auction already ended
            InvalidBid: If the bid is empty, or below the minimum bid without
                covering the rest of the target
            InvalidCollateralPrice: If the collateral feed is invalid
            NullBoughtAmount: If the bid buys nothing
        """
        auction = self.get_auction(auction_id)
        if not auction.is_active():
            raise InactiveAuction(f"Auction {auction_id} is not active")
        if wad <= 0:
            raise InvalidBid("Bid must be positive")
        covers_remaining = wad * RAY >= auction.amount_to_raise
        if wad < self.minimum_bid and not covers_remaining:
            raise InvalidBid("Bid is below the minimum bid")

        collateral_price = self._get_collateral_price()
        if collateral_price == 0:
            raise InvalidCollateralPrice("Collateral price feed is invalid")
        redemption_price = self.oracle_relayer.redemption_price()

        # Payment is never more than the remaining target
        adjusted_bid = min(wad, auction.amount_to_raise // RAY)
        bought, adjusted_bid = self._get_bought_collateral(
            collateral_price, redemption_price, auction.collateral_to_sell, adjusted_bid,
            self.get_auction_discount(auction_id),
        )
        if bought == 0 or adjusted_bid == 0:
            raise NullBoughtAmount("Bid buys no collateral")

        payment = adjusted_bid * RAY
        remaining_to_raise = auction.amount_to_raise - payment
        # Less than one coin unit cannot be paid in WAD; it is forgiven
        if remaining_to_raise < RAY:
            remaining_to_raise = 0
        remaining_collateral = auction.collateral_to_sell - bought
        sold_all = remaining_collateral == 0 or remaining_to_raise == 0

        self.safe_engine.transfer_internal_coins(self.address, caller, auction.initial_bidder, payment)
        self.safe_engine.transfer_collateral(self.address, self.collateral_type, self.address, caller, bought)

        coins_off_auction = auction.amount_to_raise if sold_all else payment
        self.liquidation_engine.remove_coins_from_auction(self.address, coins_off_auction)

        auction.collateral_sold += bought
        auction.coins_raised += payment
        auction.collateral_to_sell = remaining_collateral
        auction.amount_to_raise = remaining_to_raise

        self.env.emit("BuyCollateral", self.address, id=auction_id, bidder=caller,
                      raised_amount=payment, sold_amount=bought)

        if sold_all:
            self._settle(auction)
        return bought, adjusted_bid

    def _settle(self, auction):
        """Returns leftover collateral or records the shortfall, then makes the auction inert."""
        if auction.collateral_to_sell > 0:
            self.safe_engine.transfer_collateral(
                self.address, self.collateral_type, self.address,
                auction.forgone_collateral_receiver, auction.collateral_to_sell,
            )
            auction.collateral_returned = auction.collateral_to_sell
        if auction.amount_to_raise > 0:
            self.accounting_engine.absorb_auction_shortfall(self.address, auction.amount_to_raise)
            auction.shortfall = auction.amount_to_raise

        auction.collateral_to_sell = 0
        auction.amount_to_raise = 0
        self.env.emit("SettleAuction", self.address, id=auction.id,
                      leftover_receiver=auction.forgone_collateral_receiver,
                      leftover_collateral=auction.collateral_returned, shortfall=auction.shortfall)
        logger.info("Auction %s settled: sold %s, returned %s, shortfall %s",
                    auction.id, auction.collateral_sold, auction.collateral_returned, auction.shortfall)
