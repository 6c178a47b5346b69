"""
Issuer-level configuration: mint price, issuance ceiling, royalties.

The price is recorded and reported but never charged at issuance;
billing happens outside the office.  Royalties are expressed in basis
points of a sale price (10000 = 100%).
"""

from __future__ import annotations

from dataclasses import dataclass

from ticketflow_core.authority import IssuerRole

DEFAULT_MAX_ISSUED = 1000
BPS_DENOMINATOR = 10_000


@dataclass
class RoyaltyInfo:
    receiver: str
    amount: int

    def to_dict(self) -> dict:
        return {"receiver": self.receiver, "amount": self.amount}


class IssuerConfig:
    """Mutable config record shared by the office."""

    def __init__(
        self,
        role: IssuerRole,
        max_issued: int = DEFAULT_MAX_ISSUED,
        mint_price: float = 0.0,
        royalty_receiver: str = "",
        royalty_bps: int = 0,
    ):
        if max_issued < 0:
            raise ValueError("max_issued must be non-negative")
        self._role = role
        self._max_issued = max_issued
        self.mint_price = mint_price
        self.royalty_receiver = royalty_receiver
        self.royalty_bps = royalty_bps

    @property
    def max_issued(self) -> int:
        return self._max_issued

    def set_mint_price(self, caller: str, new_price: float) -> None:
        self._role.require(caller, "a mint price change")
        self.mint_price = new_price

    def set_royalty(self, caller: str, receiver: str, rate_bps: int) -> None:
        self._role.require(caller, "a royalty change")
        if not receiver:
            raise ValueError("royalty receiver required")
        if rate_bps < 0 or rate_bps > BPS_DENOMINATOR:
            raise ValueError(f"royalty rate must be 0-{BPS_DENOMINATOR} basis points")
        self.royalty_receiver = receiver
        self.royalty_bps = rate_bps

    def royalty_info(self, sale_price: int) -> RoyaltyInfo:
        """Royalty owed on a sale at *sale_price* (floor division)."""
        amount = sale_price * self.royalty_bps // BPS_DENOMINATOR
        return RoyaltyInfo(receiver=self.royalty_receiver, amount=amount)

    def to_dict(self) -> dict:
        return {
            "mint_price": self.mint_price,
            "max_issued": self._max_issued,
            "royalty_receiver": self.royalty_receiver,
            "royalty_bps": self.royalty_bps,
        }

    def snapshot(self) -> tuple:
        return (self.mint_price, self.royalty_receiver, self.royalty_bps)

    def restore(self, snap: tuple) -> None:
        self.mint_price, self.royalty_receiver, self.royalty_bps = snap
