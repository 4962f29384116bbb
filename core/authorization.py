"""
Authorization lists for protocol components.

Each component owns one AuthorizedAccounts instance and checks the caller
against it at the start of every gated operation.
"""

from protocol_errors import Unauthorized


class AuthorizedAccounts:
    """
    Insertion-ordered set of addresses allowed to call gated operations.
    """

    def __init__(self, *accounts):
        # dict keys keep insertion order
        self._accounts = dict.fromkeys(accounts)

    def add(self, account):
        self._accounts[account] = None

    def remove(self, account):
        self._accounts.pop(account, None)

    def contains(self, account):
        return account in self._accounts

    def require(self, caller):
        """
        Raises:
            Unauthorized: If the caller is not on the list
        """
        if caller not in self._accounts:
            raise Unauthorized(f"{caller} is not authorized")

    def __contains__(self, account):
        return self.contains(account)

    def __iter__(self):
        return iter(list(self._accounts))

    def __len__(self):
        return len(self._accounts)
