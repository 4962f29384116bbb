"""
Liquidation Engine Model for the HAI Protocol.

This module simulates the LiquidationEngine contract which decides when a SAFE
must be liquidated and carries the liquidation out.

The liquidation process follows these steps:
1. Check that the SAFE is under-collateralized at the liquidation price and
   that the global on-auction limit leaves room for another auction
2. Give the SAFE's chosen saviour, if any, a chance to rescue it
3. Re-check the SAFE; a successful rescue ends the liquidation without error
4. Size the slice of debt to liquidate against the SAFE's debt, the per-type
   liquidation quantity and the remaining on-auction headroom
5. Confiscate the proportional collateral and the debt, queueing the debt as
   bad debt in the accounting engine
6. Start a collateral auction for the seized collateral

The saviour call is the only point where control passes to untrusted code. It
runs inside its own isolated transition so that a failing saviour leaves no
trace, and the SAFE is re-read from the SAFE engine afterwards rather than
trusting what the saviour reports.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict

from authorization import AuthorizedAccounts
from execution_env import transition
from fixed_point import MAX_UINT, WAD, sub, wmul
from protocol_errors import (
    CollateralTypeAlreadyInitialized,
    CollateralTypeNotInitialized,
    ContractNotEnabled,
    DustySAFE,
    InvalidParameter,
    InvalidSaviourAmounts,
    InvalidSaviourOperation,
    LiquidationLimitHit,
    NotSAFEAllowed,
    NullAuction,
    NullCollateralToSell,
    ReentrantCall,
    SAFENotUnsafe,
    SaviourNotAuthorized,
    SaviourNotOk,
    UnrecognizedParam,
)
from safe_saviour import SaviourResult

logger = logging.getLogger(__name__)


@dataclass
class LiquidationEngineCollateralParams:
    collateral_auction_house: Any = None  # CollateralAuctionHouse
    liquidation_penalty: int = WAD        # WAD multiplier, 1.1 means 10% penalty
    liquidation_quantity: int = 0         # RAD, max coins to raise per auction


class LiquidationEngine:
    """
    Simulates the LiquidationEngine contract which liquidates unsafe SAFEs.

    The engine must be authorized on the SAFE engine (to confiscate), on the
    accounting engine (to queue debt) and on every collateral auction house
    it uses (to start auctions). Auction houses in turn must be authorized
    here to remove coins from the on-auction counter.
    """

    STATE_FIELDS = (
        "authorized", "contract_enabled", "accounting_engine", "on_auction_system_coin_limit",
        "current_on_auction_system_coins", "collateral_params", "collateral_list",
        "safe_saviours", "chosen_safe_saviour",
    )

    def __init__(self, env, deployer, safe_engine, accounting_engine, address="liquidation_engine",
                 on_auction_system_coin_limit=0):
        self.env = env
        self.address = address
        self.safe_engine = safe_engine
        self.accounting_engine = accounting_engine
        self.authorized = AuthorizedAccounts(deployer)
        self.contract_enabled = True

        self.on_auction_system_coin_limit = on_auction_system_coin_limit  # RAD
        self.current_on_auction_system_coins = 0                          # RAD

        self.collateral_params: Dict[str, LiquidationEngineCollateralParams] = {}
        self.collateral_list = []

        # Registered saviour addresses, in registration order
        self.safe_saviours = AuthorizedAccounts()
        # collateral type -> safe -> chosen saviour address
        self.chosen_safe_saviour: Dict[str, Dict[str, str]] = {}
        # saviour address -> saviour object; lookup only, not rolled back
        self._saviour_contracts = {}

        self._entered = False

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
        self.authorized.require(caller)
        self.contract_enabled = False
        self.env.emit("DisableContract", self.address)

    def _require_enabled(self):
        if not self.contract_enabled:
            raise ContractNotEnabled("Liquidation engine is disabled")

    # --- Collateral types and parameters ---

    def initialize_collateral_type(self, caller, collateral_type, collateral_auction_house,
                                   liquidation_penalty, liquidation_quantity):
        self.authorized.require(caller)
        if collateral_type in self.collateral_params:
            raise CollateralTypeAlreadyInitialized(f"Collateral type {collateral_type} already exists")
        if liquidation_penalty < WAD:
            raise InvalidParameter("Liquidation penalty must be at least 1 WAD")

        self.collateral_params[collateral_type] = LiquidationEngineCollateralParams(
            liquidation_penalty=liquidation_penalty, liquidation_quantity=liquidation_quantity
        )
        self.collateral_list.append(collateral_type)
        self._set_collateral_auction_house(collateral_type, collateral_auction_house)
        self.env.emit("InitializeCollateralType", self.address, collateral_type=collateral_type)

    def get_collateral_params(self, collateral_type):
        if collateral_type not in self.collateral_params:
            raise CollateralTypeNotInitialized(f"Collateral type {collateral_type} is not initialized")
        return self.collateral_params[collateral_type]

    def _set_collateral_auction_house(self, collateral_type, new_house):
        """Moves the right to pull seized collateral from the old venue to the new one."""
        params = self.collateral_params[collateral_type]
        old_house = params.collateral_auction_house
        if old_house is not None:
            self.safe_engine.deny_safe_modification(self.address, old_house.address)
        if new_house is not None:
            self.safe_engine.approve_safe_modification(self.address, new_house.address)
        params.collateral_auction_house = new_house

    def modify_parameters(self, caller, parameter, value):
        self.authorized.require(caller)
        if parameter == "onAuctionSystemCoinLimit":
            if value < 0:
                raise InvalidParameter("Limit cannot be negative")
            self.on_auction_system_coin_limit = value
        elif parameter == "accountingEngine":
            if value is None:
                raise InvalidParameter("Accounting engine cannot be empty")
            self.accounting_engine = value
        else:
            raise UnrecognizedParam(f"Unrecognized parameter {parameter}")
        self.env.emit("ModifyParameters", self.address, parameter=parameter, value=value)

    def modify_collateral_parameters(self, caller, collateral_type, parameter, value):
        self.authorized.require(caller)
        params = self.get_collateral_params(collateral_type)
        if parameter == "liquidationPenalty":
            if value < WAD:
                raise InvalidParameter("Liquidation penalty must be at least 1 WAD")
            params.liquidation_penalty = value
        elif parameter == "liquidationQuantity":
            if value < 0:
                raise InvalidParameter("Liquidation quantity cannot be negative")
            params.liquidation_quantity = value
        elif parameter == "collateralAuctionHouse":
            self._set_collateral_auction_house(collateral_type, value)
        else:
            raise UnrecognizedParam(f"Unrecognized parameter {parameter}")
        self.env.emit("ModifyParameters", self.address, collateral_type=collateral_type,
                      parameter=parameter, value=value)

    # --- Saviours ---

    def connect_safe_saviour(self, caller, saviour):
        """
        Registers a saviour after probing that it implements the rescue interface.

        The probe calls save_safe with this engine's address and an empty
        collateral type; a real saviour answers ok with both amounts at MAX_UINT.
        """
        self.authorized.require(caller)
        result = saviour.save_safe(self.address, "", None)
        if not result.ok:
            raise SaviourNotOk(f"Saviour {saviour.address} did not answer the probe")
        if result.collateral_added_or_debt_repaid != MAX_UINT or result.liquidator_reward != MAX_UINT:
            raise InvalidSaviourAmounts(f"Saviour {saviour.address} returned invalid probe amounts")

        self.safe_saviours.add(saviour.address)
        self._saviour_contracts[saviour.address] = saviour
        self.env.emit("ConnectSAFESaviour", self.address, saviour=saviour.address)

    def disconnect_safe_saviour(self, caller, saviour_address):
        self.authorized.require(caller)
        self.safe_saviours.remove(saviour_address)
        self.env.emit("DisconnectSAFESaviour", self.address, saviour=saviour_address)

    def protect_safe(self, caller, collateral_type, safe, saviour_address):
        """
        Chooses the saviour for a SAFE, or clears it with None.

        Raises:
            NotSAFEAllowed: If the caller may not modify the SAFE
            SaviourNotAuthorized: If the saviour is not registered
        """
        if not self.safe_engine.can_modify_safe(safe, caller):
            raise NotSAFEAllowed(f"{caller} cannot protect SAFE {safe}")
        if saviour_address is not None and saviour_address not in self.safe_saviours:
            raise SaviourNotAuthorized(f"Saviour {saviour_address} is not registered")

        choices = self.chosen_safe_saviour.setdefault(collateral_type, {})
        if saviour_address is None:
            choices.pop(safe, None)
        else:
            choices[safe] = saviour_address
        self.env.emit("ProtectSAFE", self.address, collateral_type=collateral_type, safe=safe,
                      saviour=saviour_address)

    def get_chosen_safe_saviour(self, collateral_type, safe):
        return self.chosen_safe_saviour.get(collateral_type, {}).get(safe)

    # --- On-auction accounting ---

    def remove_coins_from_auction(self, caller, rad):
        """Decreases the on-auction counter when auctions settle. Never underflows."""
        self.authorized.require(caller)
        self.current_on_auction_system_coins = sub(self.current_on_auction_system_coins, rad)
        self.env.emit("UpdateCurrentOnAuctionSystemCoins", self.address,
                      current_on_auction_system_coins=self.current_on_auction_system_coins)

    def _auction_headroom(self):
        return max(self.on_auction_system_coin_limit - self.current_on_auction_system_coins, 0)

    # --- Sizing ---

    @staticmethod
    def _is_unsafe(c_data, safe_data):
        return (
            c_data.liquidation_price > 0
            and safe_data.locked_collateral * c_data.liquidation_price
            < safe_data.generated_debt * c_data.accumulated_rate
        )

    def _limit_adjusted_debt(self, safe_data, c_data, c_params):
        coins_limit = min(c_params.liquidation_quantity, self._auction_headroom())
        return min(
            safe_data.generated_debt,
            coins_limit * WAD // c_data.accumulated_rate // c_params.liquidation_penalty,
        )

    def get_limit_adjusted_debt_to_cover(self, collateral_type, safe):
        """
        Returns the normalized debt (WAD) a liquidation of the SAFE would
        cover right now, without changing anything.
        """
        c_params = self.get_collateral_params(collateral_type)
        c_data = self.safe_engine.get_collateral_data(collateral_type)
        safe_data = self.safe_engine.get_safe(collateral_type, safe)
        if c_data.accumulated_rate == 0:
            return 0
        return self._limit_adjusted_debt(safe_data, c_data, c_params)

    # --- Liquidation ---

    @transition
    def liquidate_safe(self, caller, collateral_type, safe):
        """
        Liquidates an unsafe SAFE.

        Args:
            caller: Account triggering the liquidation (passed on to the saviour)
            collateral_type: Collateral type of the SAFE
            safe: SAFE handle

        Returns:
            ID of the collateral auction started, or None if a saviour
            rescued the SAFE

        Raises:
            ReentrantCall: If called while another liquidation is running
            SAFENotUnsafe: If the SAFE is safe or its type has no valid price
            LiquidationLimitHit: If the on-auction headroom is below the debt floor
            NullAuction, DustySAFE, NullCollateralToSell: If the slice cannot be sized
            InvalidSaviourOperation: If the saviour took collateral or added debt
        """
        if self._entered:
            raise ReentrantCall("Liquidation already in progress")
        self._entered = True
        try:
            return self._liquidate_safe(caller, collateral_type, safe)
        finally:
            self._entered = False

    def _liquidate_safe(self, caller, collateral_type, safe):
        self._require_enabled()
        c_params = self.get_collateral_params(collateral_type)
        debt_floor = self.safe_engine.get_collateral_params(collateral_type).debt_floor
        c_data = self.safe_engine.get_collateral_data(collateral_type)
        safe_data = self.safe_engine.get_safe(collateral_type, safe)

        # Safety checks
        if not self._is_unsafe(c_data, safe_data):
            raise SAFENotUnsafe(f"SAFE {safe} is not unsafe")
        if (self.current_on_auction_system_coins >= self.on_auction_system_coin_limit
                or self.on_auction_system_coin_limit - self.current_on_auction_system_coins < debt_floor):
            raise LiquidationLimitHit("On-auction system coin limit hit")

        saviour_address = self.get_chosen_safe_saviour(collateral_type, safe)
        if saviour_address is not None and saviour_address in self.safe_saviours:
            c_data, safe_data = self._attempt_save(caller, collateral_type, safe, saviour_address, c_data, safe_data)

        # A successful rescue is a normal outcome
        if not self._is_unsafe(c_data, safe_data):
            logger.info("SAFE %s (%s) was saved before liquidation", safe, collateral_type)
            return None

        limit_adjusted_debt = self._limit_adjusted_debt(safe_data, c_data, c_params)
        if limit_adjusted_debt == 0:
            raise NullAuction("Nothing to liquidate")
        if (limit_adjusted_debt != safe_data.generated_debt
                and (safe_data.generated_debt - limit_adjusted_debt) * c_data.accumulated_rate < debt_floor):
            raise DustySAFE("Partial liquidation would leave a dusty SAFE")

        collateral_to_sell = min(
            safe_data.locked_collateral,
            safe_data.locked_collateral * limit_adjusted_debt // safe_data.generated_debt,
        )
        if collateral_to_sell == 0:
            raise NullCollateralToSell("No collateral to sell")

        # Confiscate and queue the bad debt
        self.safe_engine.confiscate_safe_collateral_and_debt(
            self.address, collateral_type, safe, self.address, self.accounting_engine.address,
            -collateral_to_sell, -limit_adjusted_debt,
        )
        self.accounting_engine.push_debt_to_queue(self.address, limit_adjusted_debt * c_data.accumulated_rate)

        amount_to_raise = wmul(limit_adjusted_debt * c_data.accumulated_rate, c_params.liquidation_penalty)
        self.current_on_auction_system_coins += amount_to_raise

        auction_id = c_params.collateral_auction_house.start_auction(
            self.address,
            forgone_collateral_receiver=safe,
            initial_bidder=self.accounting_engine.address,
            amount_to_raise=amount_to_raise,
            collateral_to_sell=collateral_to_sell,
        )
        self.env.emit("UpdateCurrentOnAuctionSystemCoins", self.address,
                      current_on_auction_system_coins=self.current_on_auction_system_coins)
        self.env.emit("Liquidate", self.address, collateral_type=collateral_type, safe=safe,
                      collateral_amount=collateral_to_sell, debt_amount=limit_adjusted_debt,
                      amount_to_raise=amount_to_raise,
                      collateral_auctioneer=c_params.collateral_auction_house.address,
                      auction_id=auction_id)
        logger.info("Liquidated SAFE %s (%s): %s collateral for %s coins, auction %s",
                    safe, collateral_type, collateral_to_sell, amount_to_raise, auction_id)
        return auction_id

    @staticmethod
    def _is_well_formed(result):
        """A SaviourResult holding a bool flag and two non-negative integer amounts."""
        if not isinstance(result, SaviourResult) or not isinstance(result.ok, bool):
            return False
        for amount in (result.collateral_added_or_debt_repaid, result.liquidator_reward):
            if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
                return False
        return True

    def _attempt_save(self, caller, collateral_type, safe, saviour_address, c_data, safe_data):
        """
        Calls the SAFE's saviour inside an isolated transition.

        Any exception from the saviour, or a result that is not a well-formed
        SaviourResult, rolls back whatever the saviour did and is reported as
        a FailedSAFESave event. Returns the (possibly refreshed) collateral
        data and SAFE snapshots.
        """
        saviour = self._saviour_contracts[saviour_address]
        try:
            with self.env.atomic(isolated=True):
                result = saviour.save_safe(caller, collateral_type, safe)
                if not self._is_well_formed(result):
                    raise TypeError(f"Malformed saviour result {result!r}")
        except Exception as exc:
            logger.warning("Saviour %s failed to save SAFE %s: %r", saviour_address, safe, exc)
            self.env.emit("FailedSAFESave", self.address, collateral_type=collateral_type, safe=safe,
                          saviour=saviour_address, reason=repr(exc))
            return c_data, safe_data

        # Only a reported positive rescue amount triggers the re-validation
        if result.ok and result.collateral_added_or_debt_repaid > 0:
            new_safe_data = self.safe_engine.get_safe(collateral_type, safe)
            if (new_safe_data.locked_collateral < safe_data.locked_collateral
                    or new_safe_data.generated_debt > safe_data.generated_debt):
                raise InvalidSaviourOperation(f"Saviour {saviour_address} made SAFE {safe} riskier")
            c_data = self.safe_engine.get_collateral_data(collateral_type)
            safe_data = new_safe_data
            self.env.emit("SaveSAFE", self.address, collateral_type=collateral_type, safe=safe,
                          saviour=saviour_address,
                          collateral_added_or_debt_repaid=result.collateral_added_or_debt_repaid)
        return c_data, safe_data
