"""
Token Join Adapters for the HAI Protocol.

Join adapters are the only bridge between external tokens and the SAFE
engine's internal balances:

- CollateralJoin takes collateral tokens into custody and credits the same
  amount of free collateral in the SAFE engine; exiting does the reverse.
- CoinJoin burns system coins to release internal coins held by the adapter,
  and mints system coins against internal coins paid into it.

The collateral identity checked by the SAFE engine (locked plus free equals
joined minus exited) counts exactly the flows that go through these adapters.
"""

import logging

from authorization import AuthorizedAccounts
from execution_env import transition
from fixed_point import RAY
from protocol_errors import ContractNotEnabled, InvalidParameter

logger = logging.getLogger(__name__)


class CollateralJoin:
    """
    Custodies one collateral token for one collateral type.

    Must be authorized on the SAFE engine to change collateral balances.
    """

    STATE_FIELDS = ("authorized", "contract_enabled")

    def __init__(self, env, deployer, safe_engine, collateral_type, collateral_token, address=None):
        self.env = env
        self.address = address or f"collateral_join_{collateral_type}"
        self.safe_engine = safe_engine
        self.collateral_type = collateral_type
        self.collateral = collateral_token
        self.authorized = AuthorizedAccounts(deployer)
        self.contract_enabled = True
        env.register(self)

    def disable_contract(self, caller):
        """Stops new joins; exits stay open so users can always leave."""
        self.authorized.require(caller)
        self.contract_enabled = False
        self.env.emit("DisableContract", self.address)

    def balance(self):
        """Tokens currently held in custody."""
        return self.collateral.balance_of(self.address)

    @transition
    def join(self, caller, account, wad):
        """
        Moves `wad` tokens from the caller into custody and credits `account`
        with the same amount of free collateral.
        """
        if not self.contract_enabled:
            raise ContractNotEnabled("Collateral join is disabled")
        if wad <= 0:
            raise InvalidParameter("Join amount must be positive")
        self.collateral.transfer(caller, self.address, wad)
        self.safe_engine.modify_collateral_balance(self.address, self.collateral_type, account, wad)
        self.env.emit("Join", self.address, sender=caller, account=account, wad=wad)

    @transition
    def exit(self, caller, account, wad):
        """Debits the caller's free collateral and sends the tokens to `account`."""
        if wad <= 0:
            raise InvalidParameter("Exit amount must be positive")
        self.safe_engine.modify_collateral_balance(self.address, self.collateral_type, caller, -wad)
        self.collateral.transfer(self.address, account, wad)
        self.env.emit("Exit", self.address, sender=caller, account=account, wad=wad)


class CoinJoin:
    """
    Converts between internal coins (RAD) and the system coin token (WAD).

    Must be a minter of the system coin. Users exiting coins must first
    approve the adapter in the SAFE engine.
    """

    STATE_FIELDS = ("authorized", "contract_enabled")

    def __init__(self, env, deployer, safe_engine, system_coin, address="coin_join"):
        self.env = env
        self.address = address
        self.safe_engine = safe_engine
        self.system_coin = system_coin
        self.authorized = AuthorizedAccounts(deployer)
        self.contract_enabled = True
        env.register(self)

    def disable_contract(self, caller):
        self.authorized.require(caller)
        self.contract_enabled = False
        self.env.emit("DisableContract", self.address)

    @transition
    def join(self, caller, account, wad):
        """Burns the caller's system coins and credits `account` with internal coins."""
        if wad <= 0:
            raise InvalidParameter("Join amount must be positive")
        self.safe_engine.transfer_internal_coins(self.address, self.address, account, wad * RAY)
        self.system_coin.burn(caller, caller, wad)
        self.env.emit("Join", self.address, sender=caller, account=account, wad=wad)

    @transition
    def exit(self, caller, account, wad):
        """Takes internal coins from the caller and mints system coins to `account`."""
        if not self.contract_enabled:
            raise ContractNotEnabled("Coin join is disabled")
        if wad <= 0:
            raise InvalidParameter("Exit amount must be positive")
        self.safe_engine.transfer_internal_coins(self.address, caller, self.address, wad * RAY)
        self.system_coin.mint(self.address, account, wad)
        self.env.emit("Exit", self.address, sender=caller, account=account, wad=wad)
        logger.debug("%s exited %s system coins to %s", caller, wad, account)
