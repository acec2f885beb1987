"""
Tranche Share Token model.

Each tranche has its own share token. The Insurance Pool is the only minter
and burner; its per-user share ledger must always equal the token balances.
"""

from insurance_model.errors import ValidationError, CapacityError, AccessDeniedError


class TrancheShareToken:
    """
    Simulates the share token of one tranche.
    """

    def __init__(self, symbol, minter=None):
        self.symbol = symbol

        # Total token supply
        self.total_supply = 0

        # Mapping of addresses to token balances
        self.balances = {}

        # Only the pool may mint and burn
        self.minter = minter

    def balance_of(self, account):
        """Returns the share balance of the given account."""
        return self.balances.get(account, 0)

    def mint(self, caller, recipient, amount):
        """
        Mints new shares to the recipient account.
        Only callable by the minter.

        Args:
            caller: Address requesting the mint
            recipient: Address receiving the shares
            amount: Number of shares to mint

        Returns:
            True if successful
        """
        self._require_minter(caller)
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")

        self.balances[recipient] = self.balances.get(recipient, 0) + amount
        self.total_supply += amount

        return True

    def burn(self, caller, from_account, amount):
        """
        Burns shares from the given account.
        Only callable by the minter.

        Args:
            caller: Address requesting the burn
            from_account: Address to burn shares from
            amount: Number of shares to burn

        Returns:
            True if successful
        """
        self._require_minter(caller)
        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")

        from_balance = self.balances.get(from_account, 0)

        if from_balance < amount:
            raise CapacityError("Insufficient share balance")

        self.balances[from_account] = from_balance - amount
        if self.balances[from_account] == 0:
            del self.balances[from_account]
        self.total_supply -= amount

        return True

    def _require_minter(self, caller):
        if caller != self.minter:
            raise AccessDeniedError(f"{caller} cannot mint or burn {self.symbol}")
