"""
Token Model for the HAI Protocol.

This module simulates an ERC20-like token. It is used both for the external
collateral tokens that users join into the system and for the system coin
that the coin join mints against internal coin balances.
"""

from authorization import AuthorizedAccounts
from protocol_errors import InsufficientBalance, InvalidParameter


class Token:
    """
    Simulates a minimal ERC20 token with authorized minters.

    Token balances live outside the SAFE engine; only join adapters move
    value between the two.
    """

    STATE_FIELDS = ("balances", "total_supply", "minters")

    def __init__(self, env, deployer, symbol, address=None, initial_supply=0):
        self.env = env
        self.symbol = symbol
        self.address = address or f"token_{symbol}"

        # account -> balance (WAD)
        self.balances = {}
        self.total_supply = 0

        # Accounts allowed to mint, and to burn on behalf of others
        self.minters = AuthorizedAccounts(deployer)

        env.register(self)
        if initial_supply:
            self.mint(deployer, deployer, initial_supply)

    def add_minter(self, caller, minter):
        self.minters.require(caller)
        self.minters.add(minter)

    def remove_minter(self, caller, minter):
        self.minters.require(caller)
        self.minters.remove(minter)

    def balance_of(self, account):
        return self.balances.get(account, 0)

    @staticmethod
    def _require_positive(amount):
        if amount <= 0:
            raise InvalidParameter("Token amount must be positive")

    def _debit(self, account, amount):
        held = self.balance_of(account)
        if held < amount:
            raise InsufficientBalance(f"{account} holds {held} {self.symbol}, needs {amount}")
        self.balances[account] = held - amount

    def _credit(self, account, amount):
        self.balances[account] = self.balance_of(account) + amount

    def transfer(self, sender, recipient, amount):
        """
        Moves `amount` tokens from sender to recipient.

        Raises:
            InvalidParameter: If the amount is not positive
            InsufficientBalance: If the sender holds less than `amount`
        """
        self._require_positive(amount)
        self._debit(sender, amount)
        self._credit(recipient, amount)
        self.env.emit("Transfer", self.address, src=sender, dst=recipient, amount=amount)
        return True

    def mint(self, caller, recipient, amount):
        """Creates new tokens for the recipient. Minters only."""
        self.minters.require(caller)
        self._require_positive(amount)
        self._credit(recipient, amount)
        self.total_supply += amount
        self.env.emit("Mint", self.address, dst=recipient, amount=amount)
        return True

    def burn(self, caller, from_account, amount):
        """
        Destroys tokens held by `from_account`.

        Holders may burn their own tokens; minters may burn anyone's.
        """
        if caller != from_account:
            self.minters.require(caller)
        self._require_positive(amount)
        self._debit(from_account, amount)
        self.total_supply -= amount
        self.env.emit("Burn", self.address, src=from_account, amount=amount)
        return True
