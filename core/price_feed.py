"""
Price Feed Model for the HAI Protocol.

This module simulates an external price observation source. The oracle
relayer reads a (value, is_valid) pair from it for each collateral type; an
invalid observation makes the relayer push zero prices to the SAFE engine.
"""

from fixed_point import WAD
from protocol_errors import InvalidCollateralPrice


class PriceFeed:
    """Simple price feed implementation for simulations."""

    STATE_FIELDS = ("price", "valid")

    def __init__(self, env, symbol, initial_price=0, valid=True):
        self.env = env
        self.symbol = symbol
        # Price of one unit of collateral in the reference currency, WAD
        self.price = initial_price
        self.valid = valid
        env.register(self)

    @classmethod
    def from_float(cls, env, symbol, price):
        """Creates a feed from a human-readable price such as 2000.0."""
        return cls(env, symbol, int(price * WAD))

    def get_result_with_validity(self):
        """Returns the latest observation and whether it can be trusted."""
        return self.price, self.valid and self.price > 0

    def read(self):
        """Returns the current price without checking validity."""
        return self.price

    def fetch_price(self):
        """
        Returns the current price.

        Raises:
            InvalidCollateralPrice: If the observation is flagged invalid
        """
        value, is_valid = self.get_result_with_validity()
        if not is_valid:
            raise InvalidCollateralPrice(f"No valid price for {self.symbol}")
        return value

    def set_price(self, new_price, valid=True):
        """Sets a new price."""
        if new_price < 0:
            raise ValueError("Price cannot be negative")
        self.price = new_price
        self.valid = valid
        self.env.emit("UpdateResult", self.symbol, value=new_price, valid=valid)

    def set_validity(self, valid):
        self.valid = valid
