"""
Treasury: funds collected on the office's behalf, withdrawable by the Issuer.
"""

from __future__ import annotations

from ticketflow_core.authority import IssuerRole


class Treasury:

    def __init__(self, role: IssuerRole, balance: float = 0.0):
        self._role = role
        self.balance = balance
        self.total_withdrawn = 0.0

    def deposit(self, amount: float) -> float:
        """Record an external receipt.  Returns the new balance."""
        if amount <= 0:
            raise ValueError("deposit amount must be positive")
        self.balance += amount
        return self.balance

    def withdraw(self, caller: str) -> float:
        """Move the whole balance to the Issuer.  Returns the amount moved."""
        self._role.require(caller, "a withdrawal")
        amount = self.balance
        self.balance = 0.0
        self.total_withdrawn += amount
        return amount

    def snapshot(self) -> tuple[float, float]:
        return (self.balance, self.total_withdrawn)

    def restore(self, snap: tuple[float, float]) -> None:
        self.balance, self.total_withdrawn = snap
