"""
Oracle Relayer Model for the HAI Protocol.

This module simulates the OracleRelayer contract, which sits between the
external price feeds and the SAFE engine. It has two jobs with different
cadences:

1. Redemption price maintenance: the protocol's internal peg drifts over time
   by compounding a per-second redemption rate. The price is updated lazily,
   at most once per timestamp, whenever someone asks for it.
2. Collateral price pushes: for each collateral type, the raw market price is
   divided by the redemption price and by the type's safety and liquidation
   collateralization ratios, and the two resulting prices are forwarded to the
   SAFE engine.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict

from authorization import AuthorizedAccounts
from execution_env import transition
from fixed_point import RAY, rdiv, rmul, rpow, wad_to_ray
from protocol_errors import (
    CollateralTypeAlreadyInitialized,
    CollateralTypeNotInitialized,
    ContractNotEnabled,
    InvalidParameter,
    RedemptionPriceNotUpdated,
    UnrecognizedParam,
)

logger = logging.getLogger(__name__)

# Redemption rate bounds (per-second, RAY). Wide enough for any realistic controller output.
DEFAULT_REDEMPTION_RATE_UPPER_BOUND = RAY * 10 ** 8
DEFAULT_REDEMPTION_RATE_LOWER_BOUND = 1


@dataclass
class OracleRelayerCollateralParams:
    oracle: Any = None            # PriceFeed-like object
    safety_c_ratio: int = 0       # RAY
    liquidation_c_ratio: int = 0  # RAY


class OracleRelayer:
    """
    Simulates the OracleRelayer contract which feeds prices into the SAFE engine.
    """

    STATE_FIELDS = (
        "authorized", "contract_enabled", "_redemption_price", "redemption_rate",
        "redemption_price_update_time", "redemption_rate_upper_bound",
        "redemption_rate_lower_bound", "collateral_params", "collateral_list",
    )

    def __init__(self, env, deployer, safe_engine, address="oracle_relayer"):
        self.env = env
        self.address = address
        self.safe_engine = safe_engine
        self.authorized = AuthorizedAccounts(deployer)
        self.contract_enabled = True

        # Redemption state starts at par
        self._redemption_price = RAY
        self.redemption_rate = RAY
        self.redemption_price_update_time = env.timestamp

        self.redemption_rate_upper_bound = DEFAULT_REDEMPTION_RATE_UPPER_BOUND
        self.redemption_rate_lower_bound = DEFAULT_REDEMPTION_RATE_LOWER_BOUND

        self.collateral_params: Dict[str, OracleRelayerCollateralParams] = {}
        self.collateral_list = []

        env.register(self)

    # --- Authorization and shutdown ---

    def add_authorization(self, caller, account):
        self.authorized.require(caller)
        self.authorized.add(account)
        self.env.emit("AddAuthorization", self.address, account=account)

    def remove_authorization(self, caller, account):
        self.authorized.require(caller)
        self.authorized.remove(account)
        self.env.emit("RemoveAuthorization", self.address, account=account)

    def disable_contract(self, caller):
        """Freezes the redemption price by resetting the rate to neutral."""
        self.authorized.require(caller)
        self.contract_enabled = False
        self.redemption_rate = RAY
        self.env.emit("DisableContract", self.address)

    def _require_enabled(self):
        if not self.contract_enabled:
            raise ContractNotEnabled("Oracle relayer is disabled")

    # --- Redemption price ---

    def calc_redemption_price(self):
        """Returns what the redemption price would be now, without storing it."""
        elapsed = self.env.timestamp - self.redemption_price_update_time
        price = rmul(rpow(self.redemption_rate, elapsed, RAY), self._redemption_price)
        # Never zero, later divisions depend on it
        return max(price, 1)

    def redemption_price(self):
        """
        Returns the redemption price (RAY), updating it first if it is stale.

        The price is recomputed only when the current timestamp is strictly
        later than the last update; repeated calls within one timestamp return
        the cached value.
        """
        if self.env.timestamp > self.redemption_price_update_time:
            self._update_redemption_price()
        return self._redemption_price

    def last_redemption_price(self):
        """Returns the stored redemption price without updating it."""
        return self._redemption_price

    def _update_redemption_price(self):
        self._redemption_price = self.calc_redemption_price()
        self.redemption_price_update_time = self.env.timestamp
        self.env.emit("UpdateRedemptionPrice", self.address, redemption_price=self._redemption_price)
        return self._redemption_price

    def update_redemption_rate(self, caller, redemption_rate):
        """
        Sets a new per-second redemption rate, clamped to the configured bounds.

        Raises:
            RedemptionPriceNotUpdated: If the redemption price has not been
                refreshed at the current timestamp
        """
        self.authorized.require(caller)
        self._require_enabled()
        if self.env.timestamp != self.redemption_price_update_time:
            raise RedemptionPriceNotUpdated("Redemption price must be updated before changing the rate")

        if redemption_rate > self.redemption_rate_upper_bound:
            redemption_rate = self.redemption_rate_upper_bound
        elif redemption_rate < self.redemption_rate_lower_bound:
            redemption_rate = self.redemption_rate_lower_bound

        self.redemption_rate = redemption_rate
        self.env.emit("UpdateRedemptionRate", self.address, redemption_rate=redemption_rate)

    # --- Collateral prices ---

    def initialize_collateral_type(self, caller, collateral_type, oracle, safety_c_ratio, liquidation_c_ratio):
        self.authorized.require(caller)
        if collateral_type in self.collateral_params:
            raise CollateralTypeAlreadyInitialized(f"Collateral type {collateral_type} already exists")
        self._validate_c_ratios(safety_c_ratio, liquidation_c_ratio)

        self.collateral_params[collateral_type] = OracleRelayerCollateralParams(
            oracle=oracle, safety_c_ratio=safety_c_ratio, liquidation_c_ratio=liquidation_c_ratio
        )
        self.collateral_list.append(collateral_type)
        self.env.emit("InitializeCollateralType", self.address, collateral_type=collateral_type)

    def get_collateral_params(self, collateral_type):
        if collateral_type not in self.collateral_params:
            raise CollateralTypeNotInitialized(f"Collateral type {collateral_type} is not initialized")
        return self.collateral_params[collateral_type]

    @transition
    def update_collateral_price(self, collateral_type):
        """
        Reads the latest market price of a collateral type and pushes the
        derived safety and liquidation prices into the SAFE engine.

        An invalid observation pushes zero prices, which stops new debt and
        stops liquidations for the type until a valid price returns.

        Returns:
            Tuple of (safety_price, liquidation_price), both RAY
        """
        self._require_enabled()
        params = self.get_collateral_params(collateral_type)
        price_feed_value, has_valid_value = params.oracle.get_result_with_validity()
        redemption_price = self.redemption_price()

        if has_valid_value:
            market_price = rdiv(wad_to_ray(price_feed_value), redemption_price)
            safety_price = rdiv(market_price, params.safety_c_ratio)
            liquidation_price = rdiv(market_price, params.liquidation_c_ratio)
        else:
            safety_price = 0
            liquidation_price = 0

        self.safe_engine.update_collateral_price(self.address, collateral_type, safety_price, liquidation_price)
        self.env.emit("UpdateCollateralPrice", self.address, collateral_type=collateral_type,
                      price_feed_value=price_feed_value, safety_price=safety_price,
                      liquidation_price=liquidation_price)
        return safety_price, liquidation_price

    # --- Parameters ---

    def modify_parameters(self, caller, parameter, value):
        self.authorized.require(caller)
        if parameter == "redemptionRateUpperBound":
            if value < RAY:
                raise InvalidParameter("Upper bound must be at least RAY")
            self.redemption_rate_upper_bound = value
        elif parameter == "redemptionRateLowerBound":
            if value <= 0 or value > RAY:
                raise InvalidParameter("Lower bound must be in (0, RAY]")
            self.redemption_rate_lower_bound = value
        else:
            raise UnrecognizedParam(f"Unrecognized parameter {parameter}")
        self.env.emit("ModifyParameters", self.address, parameter=parameter, value=value)

    def modify_collateral_parameters(self, caller, collateral_type, parameter, value):
        self.authorized.require(caller)
        params = self.get_collateral_params(collateral_type)
        if parameter == "oracle":
            if value is None:
                raise InvalidParameter("Oracle cannot be empty")
            params.oracle = value
        elif parameter == "safetyCRatio":
            self._validate_c_ratios(value, params.liquidation_c_ratio)
            params.safety_c_ratio = value
        elif parameter == "liquidationCRatio":
            self._validate_c_ratios(params.safety_c_ratio, value)
            params.liquidation_c_ratio = value
        else:
            raise UnrecognizedParam(f"Unrecognized parameter {parameter}")
        self.env.emit("ModifyParameters", self.address, collateral_type=collateral_type,
                      parameter=parameter, value=value)

    @staticmethod
    def _validate_c_ratios(safety_c_ratio, liquidation_c_ratio):
        if liquidation_c_ratio < RAY:
            raise InvalidParameter("Liquidation ratio must be at least 100%")
        if safety_c_ratio < liquidation_c_ratio:
            raise InvalidParameter("Safety ratio must be at least the liquidation ratio")
