"""
Accounting Engine Model for the HAI Protocol.

This module simulates the AccountingEngine contract, which owns the unbacked
debt created when SAFEs are liquidated. The liquidation engine confiscates
debt into this contract's debt balance and queues it here; coins raised by
collateral auctions flow back to it and are used to settle that debt.
When an auction runs out of collateral before raising its target, the
remaining loss is recorded here as an auction shortfall.
"""

import logging
from typing import Dict

from authorization import AuthorizedAccounts
from execution_env import transition
from protocol_errors import (
    ContractNotEnabled,
    DebtQueueDelayNotPassed,
    DebtQueueEmpty,
    InsufficientCoins,
    InsufficientDebt,
    InvalidParameter,
    UnrecognizedParam,
)

logger = logging.getLogger(__name__)

DEFAULT_POP_DEBT_DELAY = 0


class AccountingEngine:
    """
    Simulates the AccountingEngine contract which absorbs bad debt.
    """

    STATE_FIELDS = (
        "authorized", "contract_enabled", "debt_queue", "total_queued_debt",
        "total_auction_shortfall", "pop_debt_delay",
    )

    def __init__(self, env, deployer, safe_engine, address="accounting_engine",
                 pop_debt_delay=DEFAULT_POP_DEBT_DELAY):
        self.env = env
        self.address = address
        self.safe_engine = safe_engine
        self.authorized = AuthorizedAccounts(deployer)
        self.contract_enabled = True

        # timestamp -> debt queued at that timestamp (RAD)
        self.debt_queue: Dict[int, int] = {}
        self.total_queued_debt = 0

        # Losses left by collateral auctions that ran out of collateral (RAD)
        self.total_auction_shortfall = 0

        self.pop_debt_delay = pop_debt_delay

        env.register(self)

    def add_authorization(self, caller, account):
        self.authorized.require(caller)
        self.authorized.add(account)
        self.env.emit("AddAuthorization", self.address, account=account)

    def remove_authorization(self, caller, account):
        self.authorized.require(caller)
        self.authorized.remove(account)
        self.env.emit("RemoveAuthorization", self.address, account=account)

    @transition
    def disable_contract(self, caller):
        """
        Shuts the engine down for global settlement.

        The debt queue is dropped so that every unbacked debt becomes
        settleable, and coins already held cancel as much of it as they can.
        """
        self.authorized.require(caller)
        self.contract_enabled = False
        self.debt_queue = {}
        self.total_queued_debt = 0
        settled = min(self.get_coin_balance(), self.get_debt_balance())
        if settled > 0:
            self.safe_engine.settle_debt(self.address, settled)
        self.env.emit("DisableContract", self.address, settled=settled)

    def modify_parameters(self, caller, parameter, value):
        self.authorized.require(caller)
        if parameter == "popDebtDelay":
            if value < 0:
                raise InvalidParameter("Delay cannot be negative")
            self.pop_debt_delay = value
        else:
            raise UnrecognizedParam(f"Unrecognized parameter {parameter}")
        self.env.emit("ModifyParameters", self.address, parameter=parameter, value=value)

    # --- Getter functions ---

    def get_debt_balance(self):
        """Returns the unbacked debt owned by this contract in the SAFE engine."""
        return self.safe_engine.get_debt_balance(self.address)

    def get_coin_balance(self):
        return self.safe_engine.get_coin_balance(self.address)

    def unqueued_unauctioned_debt(self):
        """Debt that is not waiting in the queue. Debt auctions are not modelled."""
        return max(self.get_debt_balance() - self.total_queued_debt, 0)

    # --- Debt queue ---

    def push_debt_to_queue(self, caller, debt_block):
        """
        Records newly confiscated bad debt (RAD) at the current timestamp.

        Called by the liquidation engine after every confiscation.
        """
        self.authorized.require(caller)
        if not self.contract_enabled:
            raise ContractNotEnabled("Accounting engine is disabled")
        if debt_block <= 0:
            raise InvalidParameter("Debt block must be positive")
        now = self.env.timestamp
        self.debt_queue[now] = self.debt_queue.get(now, 0) + debt_block
        self.total_queued_debt += debt_block
        self.env.emit("PushDebtToQueue", self.address, timestamp=now, debt_amount=debt_block)

    def pop_debt_from_queue(self, debt_block_timestamp):
        """
        Releases debt queued at a timestamp once the pop delay has passed.

        Returns:
            Amount of debt released from the queue
        """
        debt_block = self.debt_queue.get(debt_block_timestamp, 0)
        if debt_block == 0:
            raise DebtQueueEmpty(f"No debt queued at {debt_block_timestamp}")
        if debt_block_timestamp + self.pop_debt_delay > self.env.timestamp:
            raise DebtQueueDelayNotPassed("Pop debt delay has not passed")

        self.total_queued_debt -= debt_block
        del self.debt_queue[debt_block_timestamp]
        self.env.emit("PopDebtFromQueue", self.address, timestamp=debt_block_timestamp,
                      debt_amount=debt_block)
        return debt_block

    # --- Settlement ---

    @transition
    def settle_debt(self, rad):
        """
        Uses coins held by this contract to cancel unqueued unbacked debt.

        Anyone can call this; it only ever reduces both balances.
        """
        if rad > self.get_coin_balance():
            raise InsufficientCoins("Not enough coins to settle debt")
        if rad > self.unqueued_unauctioned_debt():
            raise InsufficientDebt("Not enough unqueued debt to settle")
        self.safe_engine.settle_debt(self.address, rad)
        self.env.emit("SettleDebt", self.address, rad=rad,
                      coin_balance=self.get_coin_balance(), debt_balance=self.get_debt_balance())

    def absorb_auction_shortfall(self, caller, rad):
        """
        Records the part of an auction's raise target that could not be met.

        The matching unbacked debt already sits in this contract's debt balance
        from the confiscation; this only makes the loss visible.
        """
        self.authorized.require(caller)
        if rad < 0:
            raise InvalidParameter("Shortfall cannot be negative")
        self.total_auction_shortfall += rad
        logger.info("Collateral auction shortfall of %s recorded", rad)
        self.env.emit("AbsorbAuctionShortfall", self.address, rad=rad)
