"""
The Issuer role.

A single identity is allowed to create and destroy tickets and to change
global configuration.  Every core service holds the same ``IssuerRole``
instance, so a hand-over is seen by all of them at once.
"""

from __future__ import annotations

from ticketflow_core.errors import AuthorizationError


class IssuerRole:
    """Holds the current Issuer identity."""

    def __init__(self, issuer: str):
        if not issuer:
            raise ValueError("issuer identity required")
        self.issuer = issuer

    def is_issuer(self, caller: str) -> bool:
        return caller == self.issuer

    def require(self, caller: str, action: str = "this operation") -> None:
        """Raise AuthorizationError unless *caller* is the Issuer."""
        if caller != self.issuer:
            raise AuthorizationError(f"Only the issuer may perform {action}")

    def transfer_role(self, caller: str, new_issuer: str) -> str:
        """Hand the role to *new_issuer*.  Returns the previous issuer."""
        self.require(caller, "an issuer hand-over")
        if not new_issuer:
            raise ValueError("new issuer identity required")
        previous = self.issuer
        self.issuer = new_issuer
        return previous
