"""
Identity-level access policy.

A blacklist maintained by the Issuer.  ``check_access`` is independent of
any particular ticket: it answers whether an identity may use the
generic capability the office exposes (e.g. the gate kiosk).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ticketflow_core.authority import IssuerRole


class AccessResult(Enum):
    GRANTED = "granted"
    DENIED = "denied"


BLACKLISTED = "BLACKLISTED"


@dataclass(frozen=True)
class AccessDecision:
    result: AccessResult
    reason: str = ""

    @property
    def granted(self) -> bool:
        return self.result is AccessResult.GRANTED

    def to_dict(self) -> dict:
        return {"result": self.result.value, "reason": self.reason}


GRANTED = AccessDecision(AccessResult.GRANTED)


class AccessPolicy:
    """Blacklist keyed by identity."""

    def __init__(self, role: IssuerRole):
        self._role = role
        self.blacklist: set[str] = set()

    def set_blacklisted(self, caller: str, identity: str, status: bool) -> bool:
        """Set or clear membership.  Returns True if membership changed."""
        self._role.require(caller, "a blacklist update")
        before = identity in self.blacklist
        if status:
            self.blacklist.add(identity)
        else:
            self.blacklist.discard(identity)
        return before != status

    def is_blacklisted(self, identity: str) -> bool:
        return identity in self.blacklist

    def check_access(self, identity: str) -> AccessDecision:
        if identity in self.blacklist:
            return AccessDecision(AccessResult.DENIED, BLACKLISTED)
        return GRANTED

    def snapshot(self) -> set[str]:
        return set(self.blacklist)

    def restore(self, snap: set[str]) -> None:
        self.blacklist = set(snap)
