"""
SAFE Engine Model for the HAI Protocol.

This module simulates the SAFEEngine contract, the authoritative double-entry
ledger of the protocol. It records, per collateral type:

1. Every SAFE (position): locked collateral and generated (normalized) debt
2. Free collateral balances that accounts hold inside the system
3. The accumulated rate, safety price and liquidation price of the type

and, globally, internal coin balances, unbacked debt balances and the totals
that tie them together. Every mutation keeps three identities intact:

- locked collateral plus free collateral of a type equals what was joined
  minus what was exited for that type
- the sum of normalized debt times accumulated rate over all types, plus the
  global unbacked debt, equals the global debt (the internal coin supply)
- no balance is ever negative

All mutators compute the complete new state first and only assign it once
every check has passed, so a rejected call leaves nothing behind.
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict

from authorization import AuthorizedAccounts
from fixed_point import RAY, add_signed
from protocol_errors import (
    CeilingExceeded,
    CollateralTypeAlreadyInitialized,
    CollateralTypeNotInitialized,
    ContractNotEnabled,
    DustySAFEDebt,
    InvalidParameter,
    NotCollateralSrcAllowed,
    NotDebtDstAllowed,
    NotSAFEAllowed,
    NotSafeToModify,
    SAFEDebtCeilingHit,
    UnrecognizedParam,
)

logger = logging.getLogger(__name__)

# Effectively unbounded until governance sets a ceiling
DEFAULT_SAFE_DEBT_CEILING = 2 ** 256 - 1


@dataclass
class SAFE:
    """
    A single position of one owner in one collateral type.

    Debt is stored normalized: the coin value owed is
    generated_debt * accumulated_rate of the collateral type.
    """
    locked_collateral: int = 0  # WAD
    generated_debt: int = 0     # WAD, normalized


@dataclass
class CollateralData:
    """State of a collateral type, mutated only by the SAFE engine."""
    debt_amount: int = 0         # WAD, total normalized debt
    locked_amount: int = 0       # WAD, total locked collateral
    accumulated_rate: int = 0    # RAY, zero until initialized
    safety_price: int = 0        # RAY
    liquidation_price: int = 0   # RAY


@dataclass
class CollateralParams:
    """Governance-set limits of a collateral type."""
    debt_ceiling: int = 0  # RAD
    debt_floor: int = 0    # RAD


class SAFEEngine:
    """
    Simulates the SAFEEngine contract which keeps the books of the protocol.

    Accounts and SAFE handles are plain address strings. Operations that act
    on behalf of an account require the caller to be that account or to have
    been approved by it through approve_safe_modification.
    """

    STATE_FIELDS = (
        "authorized", "contract_enabled", "global_debt_ceiling", "safe_debt_ceiling",
        "collateral_params", "collateral_data", "collateral_list", "safes",
        "token_collateral", "coin_balance", "debt_balance", "global_debt",
        "global_unbacked_debt", "safe_rights", "collateral_joined", "collateral_exited",
    )

    def __init__(self, env, deployer, address="safe_engine", global_debt_ceiling=0,
                 safe_debt_ceiling=DEFAULT_SAFE_DEBT_CEILING):
        self.env = env
        self.address = address
        self.authorized = AuthorizedAccounts(deployer)
        self.contract_enabled = True

        # Global parameters
        self.global_debt_ceiling = global_debt_ceiling  # RAD
        self.safe_debt_ceiling = safe_debt_ceiling      # WAD

        # Collateral type records, keyed by collateral type name
        self.collateral_params: Dict[str, CollateralParams] = {}
        self.collateral_data: Dict[str, CollateralData] = {}
        self.collateral_list = []

        # collateral type -> safe handle -> SAFE
        self.safes: Dict[str, Dict[str, SAFE]] = {}

        # collateral type -> account -> free collateral (WAD)
        self.token_collateral: Dict[str, Dict[str, int]] = {}

        # account -> internal coins (RAD)
        self.coin_balance: Dict[str, int] = {}

        # account -> unbacked debt (RAD)
        self.debt_balance: Dict[str, int] = {}

        self.global_debt = 0           # RAD
        self.global_unbacked_debt = 0  # RAD

        # owner -> set of accounts allowed to act on the owner's behalf
        self.safe_rights: Dict[str, set] = {}

        # collateral type -> total collateral ever joined / exited (WAD)
        self.collateral_joined: Dict[str, int] = {}
        self.collateral_exited: Dict[str, int] = {}

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
            raise ContractNotEnabled("SAFE engine is disabled")

    # --- Getter functions ---

    def get_safe(self, collateral_type, safe):
        """Returns a copy of the SAFE, or an empty SAFE if it was never touched."""
        return replace(self.safes.get(collateral_type, {}).get(safe, SAFE()))

    def get_collateral_data(self, collateral_type):
        return replace(self.collateral_data.get(collateral_type, CollateralData()))

    def get_collateral_params(self, collateral_type):
        return replace(self.collateral_params.get(collateral_type, CollateralParams()))

    def get_token_collateral(self, collateral_type, account):
        return self.token_collateral.get(collateral_type, {}).get(account, 0)

    def get_coin_balance(self, account):
        return self.coin_balance.get(account, 0)

    def get_debt_balance(self, account):
        return self.debt_balance.get(account, 0)

    def can_modify_safe(self, safe, account):
        """Whether `account` may act on behalf of `safe`."""
        return safe == account or account in self.safe_rights.get(safe, set())

    def is_initialized(self, collateral_type):
        return collateral_type in self.collateral_data

    def _require_initialized(self, collateral_type):
        if collateral_type not in self.collateral_data:
            raise CollateralTypeNotInitialized(f"Collateral type {collateral_type} is not initialized")
        return self.collateral_data[collateral_type]

    # --- Administration ---

    def initialize_collateral_type(self, caller, collateral_type, debt_ceiling=0, debt_floor=0):
        """
        Registers a new collateral type with a neutral accumulated rate.

        Raises:
            CollateralTypeAlreadyInitialized: If the type already exists
        """
        self.authorized.require(caller)
        if collateral_type in self.collateral_data:
            raise CollateralTypeAlreadyInitialized(f"Collateral type {collateral_type} already exists")

        self.collateral_data[collateral_type] = CollateralData(accumulated_rate=RAY)
        self.collateral_params[collateral_type] = CollateralParams(debt_ceiling=debt_ceiling, debt_floor=debt_floor)
        self.collateral_list.append(collateral_type)
        self.safes[collateral_type] = {}
        self.token_collateral[collateral_type] = {}
        self.collateral_joined[collateral_type] = 0
        self.collateral_exited[collateral_type] = 0
        self.env.emit("InitializeCollateralType", self.address, collateral_type=collateral_type)

    def modify_parameters(self, caller, parameter, value):
        """Updates a global parameter: globalDebtCeiling (RAD) or safeDebtCeiling (WAD)."""
        self.authorized.require(caller)
        if value < 0:
            raise InvalidParameter(f"{parameter} cannot be negative")
        if parameter == "globalDebtCeiling":
            self.global_debt_ceiling = value
        elif parameter == "safeDebtCeiling":
            self.safe_debt_ceiling = value
        else:
            raise UnrecognizedParam(f"Unrecognized parameter {parameter}")
        self.env.emit("ModifyParameters", self.address, parameter=parameter, value=value)

    def modify_collateral_parameters(self, caller, collateral_type, parameter, value):
        """Updates a per-type parameter: debtCeiling (RAD) or debtFloor (RAD)."""
        self.authorized.require(caller)
        self._require_initialized(collateral_type)
        if value < 0:
            raise InvalidParameter(f"{parameter} cannot be negative")
        params = self.collateral_params[collateral_type]
        if parameter == "debtCeiling":
            params.debt_ceiling = value
        elif parameter == "debtFloor":
            params.debt_floor = value
        else:
            raise UnrecognizedParam(f"Unrecognized parameter {parameter}")
        self.env.emit("ModifyParameters", self.address, collateral_type=collateral_type,
                      parameter=parameter, value=value)

    # --- SAFE rights ---

    def approve_safe_modification(self, caller, account):
        """Allows `account` to act on behalf of the caller."""
        self.safe_rights.setdefault(caller, set()).add(account)
        self.env.emit("ApproveSAFEModification", self.address, sender=caller, account=account)

    def deny_safe_modification(self, caller, account):
        self.safe_rights.get(caller, set()).discard(account)
        self.env.emit("DenySAFEModification", self.address, sender=caller, account=account)

    # --- Balance movements ---

    def modify_collateral_balance(self, caller, collateral_type, account, wad):
        """
        Credits (positive wad) or debits (negative wad) free collateral.

        Called by collateral join adapters when tokens enter or leave the
        system; the joined/exited counters track the flows for accounting.
        """
        self.authorized.require(caller)
        self._require_initialized(collateral_type)
        balances = self.token_collateral[collateral_type]
        new_balance = add_signed(balances.get(account, 0), wad)

        balances[account] = new_balance
        if wad > 0:
            self.collateral_joined[collateral_type] += wad
        else:
            self.collateral_exited[collateral_type] += -wad
        self.env.emit("ModifyCollateralBalance", self.address, collateral_type=collateral_type,
                      account=account, wad=wad)

    def transfer_collateral(self, caller, collateral_type, src, dst, wad):
        """Moves free collateral between accounts."""
        if not self.can_modify_safe(src, caller):
            raise NotSAFEAllowed(f"{caller} cannot move collateral of {src}")
        if wad < 0:
            raise InvalidParameter("Amount cannot be negative")
        balances = self.token_collateral.setdefault(collateral_type, {})
        new_src = add_signed(balances.get(src, 0), -wad)

        balances[src] = new_src
        balances[dst] = balances.get(dst, 0) + wad
        self.env.emit("TransferCollateral", self.address, collateral_type=collateral_type,
                      src=src, dst=dst, wad=wad)

    def transfer_internal_coins(self, caller, src, dst, rad):
        """Moves internal coins between accounts."""
        if not self.can_modify_safe(src, caller):
            raise NotSAFEAllowed(f"{caller} cannot move coins of {src}")
        if rad < 0:
            raise InvalidParameter("Amount cannot be negative")
        new_src = add_signed(self.coin_balance.get(src, 0), -rad)

        self.coin_balance[src] = new_src
        self.coin_balance[dst] = self.coin_balance.get(dst, 0) + rad
        self.env.emit("TransferInternalCoins", self.address, src=src, dst=dst, rad=rad)

    def settle_debt(self, caller, rad):
        """Destroys equal amounts of the caller's coins and unbacked debt."""
        new_debt = add_signed(self.debt_balance.get(caller, 0), -rad)
        new_coins = add_signed(self.coin_balance.get(caller, 0), -rad)
        new_unbacked = add_signed(self.global_unbacked_debt, -rad)
        new_global = add_signed(self.global_debt, -rad)

        self.debt_balance[caller] = new_debt
        self.coin_balance[caller] = new_coins
        self.global_unbacked_debt = new_unbacked
        self.global_debt = new_global
        self.env.emit("SettleDebt", self.address, account=caller, rad=rad)

    def create_unbacked_debt(self, caller, debt_destination, coin_destination, rad):
        """Mints coins backed by nothing, recording matching unbacked debt."""
        self.authorized.require(caller)
        if rad < 0:
            raise InvalidParameter("Amount cannot be negative")
        self.debt_balance[debt_destination] = self.debt_balance.get(debt_destination, 0) + rad
        self.coin_balance[coin_destination] = self.coin_balance.get(coin_destination, 0) + rad
        self.global_unbacked_debt += rad
        self.global_debt += rad
        self.env.emit("CreateUnbackedDebt", self.address, debt_destination=debt_destination,
                      coin_destination=coin_destination, rad=rad)

    # --- SAFE manipulation ---

    def modify_safe_collateralization(self, caller, collateral_type, safe, collateral_source,
                                      debt_destination, delta_collateral, delta_debt):
        """
        Locks/unlocks collateral and generates/repays debt on a SAFE.

        This is the single entry point for user position changes. Collateral is
        taken from (or returned to) `collateral_source`'s free balance and the
        coins generated (or repaid) are credited to (or taken from)
        `debt_destination`.

        Args:
            caller: Account performing the change
            collateral_type: Collateral type of the SAFE
            safe: SAFE handle
            collateral_source: Account whose free collateral funds the change
            debt_destination: Account that receives or repays coins
            delta_collateral: Signed change in locked collateral (WAD)
            delta_debt: Signed change in normalized debt (WAD)

        Raises:
            CeilingExceeded: Debt would exceed the type or global ceiling
            NotSafeToModify: The SAFE would end up under its safety price
            NotSAFEAllowed, NotCollateralSrcAllowed, NotDebtDstAllowed: Missing consent
            DustySAFEDebt: Remaining debt would be below the debt floor
            SAFEDebtCeilingHit: The SAFE would exceed the per-SAFE ceiling
        """
        self._require_enabled()
        c_data = self._require_initialized(collateral_type)
        c_params = self.collateral_params[collateral_type]
        safe_data = self.safes[collateral_type].get(safe, SAFE())
        rate = c_data.accumulated_rate

        locked_collateral = add_signed(safe_data.locked_collateral, delta_collateral)
        generated_debt = add_signed(safe_data.generated_debt, delta_debt)
        type_debt = add_signed(c_data.debt_amount, delta_debt)
        type_locked = add_signed(c_data.locked_amount, delta_collateral)

        delta_adjusted_debt = rate * delta_debt
        total_debt_issued = rate * generated_debt
        global_debt = add_signed(self.global_debt, delta_adjusted_debt)

        risk_reducing = delta_debt <= 0 and delta_collateral >= 0

        if delta_debt > 0 and (type_debt * rate > c_params.debt_ceiling or global_debt > self.global_debt_ceiling):
            raise CeilingExceeded("Debt ceiling exceeded")
        if not risk_reducing and total_debt_issued > locked_collateral * c_data.safety_price:
            raise NotSafeToModify("SAFE would not be safe")
        if not risk_reducing and not self.can_modify_safe(safe, caller):
            raise NotSAFEAllowed(f"{caller} cannot modify SAFE {safe}")
        if delta_collateral > 0 and not self.can_modify_safe(collateral_source, caller):
            raise NotCollateralSrcAllowed(f"{caller} cannot use collateral of {collateral_source}")
        if delta_debt < 0 and not self.can_modify_safe(debt_destination, caller):
            raise NotDebtDstAllowed(f"{caller} cannot repay with coins of {debt_destination}")
        if generated_debt != 0 and total_debt_issued < c_params.debt_floor:
            raise DustySAFEDebt("SAFE debt would be below the debt floor")
        if generated_debt > self.safe_debt_ceiling:
            raise SAFEDebtCeilingHit("SAFE debt ceiling hit")

        source_collateral = add_signed(self.get_token_collateral(collateral_type, collateral_source), -delta_collateral)
        destination_coins = add_signed(self.coin_balance.get(debt_destination, 0), delta_adjusted_debt)

        # Commit
        self.safes[collateral_type][safe] = SAFE(locked_collateral, generated_debt)
        c_data.debt_amount = type_debt
        c_data.locked_amount = type_locked
        self.global_debt = global_debt
        self.token_collateral[collateral_type][collateral_source] = source_collateral
        self.coin_balance[debt_destination] = destination_coins

        self.env.emit("ModifySAFECollateralization", self.address, collateral_type=collateral_type,
                      safe=safe, collateral_source=collateral_source, debt_destination=debt_destination,
                      delta_collateral=delta_collateral, delta_debt=delta_debt)

    def transfer_safe_collateral_and_debt(self, caller, collateral_type, src, dst, delta_collateral, delta_debt):
        """
        Moves collateral and debt from one SAFE to another of the same type.

        Both SAFEs must consent and both must remain safe and non-dusty.
        """
        c_data = self._require_initialized(collateral_type)
        c_params = self.collateral_params[collateral_type]
        safes = self.safes[collateral_type]
        src_safe = safes.get(src, SAFE())
        dst_safe = safes.get(dst, SAFE())

        new_src = SAFE(add_signed(src_safe.locked_collateral, -delta_collateral),
                       add_signed(src_safe.generated_debt, -delta_debt))
        new_dst = SAFE(add_signed(dst_safe.locked_collateral, delta_collateral),
                       add_signed(dst_safe.generated_debt, delta_debt))

        if not (self.can_modify_safe(src, caller) and self.can_modify_safe(dst, caller)):
            raise NotSAFEAllowed(f"{caller} cannot move between {src} and {dst}")
        for handle, position in ((src, new_src), (dst, new_dst)):
            total_debt = position.generated_debt * c_data.accumulated_rate
            if total_debt > position.locked_collateral * c_data.safety_price:
                raise NotSafeToModify(f"SAFE {handle} would not be safe")
            if position.generated_debt != 0 and total_debt < c_params.debt_floor:
                raise DustySAFEDebt(f"SAFE {handle} would be dusty")

        safes[src] = new_src
        safes[dst] = new_dst
        self.env.emit("TransferSAFECollateralAndDebt", self.address, collateral_type=collateral_type,
                      src=src, dst=dst, delta_collateral=delta_collateral, delta_debt=delta_debt)

    def confiscate_safe_collateral_and_debt(self, caller, collateral_type, safe, collateral_counterparty,
                                            debt_counterparty, delta_collateral, delta_debt):
        """
        Forcibly moves collateral and debt out of (or into) a SAFE.

        Used by the liquidation engine on unsafe SAFEs, so no solvency check
        is applied. Seized collateral is credited to `collateral_counterparty`
        and the seized debt becomes unbacked debt of `debt_counterparty`.
        """
        self.authorized.require(caller)
        c_data = self._require_initialized(collateral_type)
        safe_data = self.safes[collateral_type].get(safe, SAFE())
        rate = c_data.accumulated_rate

        locked_collateral = add_signed(safe_data.locked_collateral, delta_collateral)
        generated_debt = add_signed(safe_data.generated_debt, delta_debt)
        type_locked = add_signed(c_data.locked_amount, delta_collateral)
        type_debt = add_signed(c_data.debt_amount, delta_debt)

        delta_total_issued_debt = rate * delta_debt
        counterparty_collateral = add_signed(
            self.get_token_collateral(collateral_type, collateral_counterparty), -delta_collateral
        )
        counterparty_debt = add_signed(self.debt_balance.get(debt_counterparty, 0), -delta_total_issued_debt)
        global_unbacked_debt = add_signed(self.global_unbacked_debt, -delta_total_issued_debt)

        # Commit
        self.safes[collateral_type][safe] = SAFE(locked_collateral, generated_debt)
        c_data.locked_amount = type_locked
        c_data.debt_amount = type_debt
        self.token_collateral[collateral_type][collateral_counterparty] = counterparty_collateral
        self.debt_balance[debt_counterparty] = counterparty_debt
        self.global_unbacked_debt = global_unbacked_debt

        self.env.emit("ConfiscateSAFECollateralAndDebt", self.address, collateral_type=collateral_type,
                      safe=safe, collateral_counterparty=collateral_counterparty,
                      debt_counterparty=debt_counterparty, delta_collateral=delta_collateral,
                      delta_debt=delta_debt, global_unbacked_debt=global_unbacked_debt)

    # --- Rates and prices ---

    def update_accumulated_rate(self, caller, collateral_type, surplus_dst, rate_multiplier):
        """
        Compounds the accumulated rate of a type by a signed RAY delta.

        The extra coin value created on the outstanding debt is credited to
        `surplus_dst`. Called by the fee-accrual collaborator.
        """
        self.authorized.require(caller)
        self._require_enabled()
        c_data = self._require_initialized(collateral_type)

        accumulated_rate = add_signed(c_data.accumulated_rate, rate_multiplier)
        delta_surplus = c_data.debt_amount * rate_multiplier
        surplus_balance = add_signed(self.coin_balance.get(surplus_dst, 0), delta_surplus)
        global_debt = add_signed(self.global_debt, delta_surplus)

        c_data.accumulated_rate = accumulated_rate
        self.coin_balance[surplus_dst] = surplus_balance
        self.global_debt = global_debt
        self.env.emit("UpdateAccumulatedRate", self.address, collateral_type=collateral_type,
                      surplus_dst=surplus_dst, rate_multiplier=rate_multiplier)

    def update_collateral_price(self, caller, collateral_type, safety_price, liquidation_price):
        """Stores the risk-adjusted prices pushed by the oracle relayer (both RAY)."""
        self.authorized.require(caller)
        self._require_enabled()
        c_data = self._require_initialized(collateral_type)
        c_data.safety_price = safety_price
        c_data.liquidation_price = liquidation_price
        self.env.emit("UpdateCollateralPrice", self.address, collateral_type=collateral_type,
                      safety_price=safety_price, liquidation_price=liquidation_price)

    # --- Accounting views ---

    def total_free_collateral(self, collateral_type):
        return sum(self.token_collateral.get(collateral_type, {}).values())

    def total_locked_collateral(self, collateral_type):
        return sum(s.locked_collateral for s in self.safes.get(collateral_type, {}).values())

    def is_safe_unsafe(self, collateral_type, safe):
        """Whether the SAFE is below its liquidation price (and a price exists)."""
        c_data = self.get_collateral_data(collateral_type)
        safe_data = self.get_safe(collateral_type, safe)
        return (
            c_data.liquidation_price > 0
            and safe_data.locked_collateral * c_data.liquidation_price
            < safe_data.generated_debt * c_data.accumulated_rate
        )
