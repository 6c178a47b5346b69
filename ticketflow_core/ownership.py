"""
Ownership ledger for TicketFlow.

A minimal non-fungible ownership table:
  - mint / burn / transfer / owner_of
  - per-token approvals and per-owner operators
  - before-transfer hooks that run ahead of *every* reassignment

The ticket lifecycle only relies on the capability set
{mint, burn, transfer, owner_of} plus ``register_hook``.  All three
mutations funnel through ``_reassign``, which is the only place the
owner table is written, so an installed hook cannot be bypassed.

Hooks are called as ``hook(token_id, previous_owner, new_owner)``;
``NO_OWNER`` stands for "nobody" on mint (previous) and burn (new).
A hook vetoes by raising; nothing is written in that case.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from ticketflow_core.errors import (
    ALREADY_MINTED,
    AuthorizationError,
    StateError,
    TicketReferenceError,
)

NO_OWNER = ""

TransferHook = Callable[[int, str, str], None]


@dataclass
class LedgerSnapshot:
    """Copy of the ledger tables, taken before a mutating call."""
    owners: dict[int, str] = field(default_factory=dict)
    approvals: dict[int, str] = field(default_factory=dict)
    operators: dict[str, set[str]] = field(default_factory=dict)


class OwnershipLedger:
    """In-memory id -> owner table with approvals and transfer hooks."""

    def __init__(self):
        self.owners: dict[int, str] = {}
        self.approvals: dict[int, str] = {}            # token_id -> spender
        self.operators: dict[str, set[str]] = {}       # owner -> operators
        self._hooks: list[TransferHook] = []

    # ── hooks ────────────────────────────────────────────────────

    def register_hook(self, hook: TransferHook) -> None:
        if hook not in self._hooks:
            self._hooks.append(hook)

    def _reassign(self, token_id: int, previous: str, new: str) -> None:
        for hook in self._hooks:
            hook(token_id, previous, new)
        self.approvals.pop(token_id, None)
        if new == NO_OWNER:
            del self.owners[token_id]
        else:
            self.owners[token_id] = new

    # ── mutations ────────────────────────────────────────────────

    def mint(self, token_id: int, owner: str) -> None:
        if not owner:
            raise ValueError("Cannot mint to an empty owner")
        if token_id in self.owners:
            raise StateError(ALREADY_MINTED, f"Token {token_id} already exists")
        self._reassign(token_id, NO_OWNER, owner)

    def burn(self, token_id: int) -> None:
        owner = self.owner_of(token_id)
        self._reassign(token_id, owner, NO_OWNER)

    def transfer(
        self,
        token_id: int,
        from_owner: str,
        to_owner: str,
        caller: str | None = None,
    ) -> None:
        """
        Move *token_id* from *from_owner* to *to_owner*.

        When *caller* is given it must be the owner, the approved spender
        for the token, or an operator approved by the owner.
        """
        owner = self.owner_of(token_id)
        if owner != from_owner:
            raise AuthorizationError(f"Token {token_id} is not owned by {from_owner}")
        if not to_owner:
            raise ValueError("Cannot transfer to an empty owner")
        if caller is not None and not self.is_approved_or_owner(caller, token_id):
            raise AuthorizationError(f"{caller} may not transfer token {token_id}")
        self._reassign(token_id, owner, to_owner)

    # ── approvals ────────────────────────────────────────────────

    def approve(self, caller: str, token_id: int, spender: str) -> None:
        owner = self.owner_of(token_id)
        if caller != owner and not self.is_approved_for_all(owner, caller):
            raise AuthorizationError("Only the owner or an operator can approve")
        if spender:
            self.approvals[token_id] = spender
        else:
            self.approvals.pop(token_id, None)

    def set_approval_for_all(self, owner: str, operator: str, approved: bool) -> None:
        if owner == operator:
            raise ValueError("Cannot approve yourself as operator")
        ops = self.operators.setdefault(owner, set())
        if approved:
            ops.add(operator)
        else:
            ops.discard(operator)

    def get_approved(self, token_id: int) -> str:
        self.owner_of(token_id)
        return self.approvals.get(token_id, NO_OWNER)

    def is_approved_for_all(self, owner: str, operator: str) -> bool:
        return operator in self.operators.get(owner, ())

    def is_approved_or_owner(self, caller: str, token_id: int) -> bool:
        owner = self.owner_of(token_id)
        return (
            caller == owner
            or self.approvals.get(token_id) == caller
            or self.is_approved_for_all(owner, caller)
        )

    # ── queries ──────────────────────────────────────────────────

    def owner_of(self, token_id: int) -> str:
        owner = self.owners.get(token_id)
        if owner is None:
            raise TicketReferenceError(f"Token {token_id} has no owner")
        return owner

    def exists(self, token_id: int) -> bool:
        return token_id in self.owners

    def balance_of(self, owner: str) -> int:
        return sum(1 for o in self.owners.values() if o == owner)

    def tokens_of(self, owner: str) -> list[int]:
        return sorted(t for t, o in self.owners.items() if o == owner)

    # ── rollback support ─────────────────────────────────────────

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            owners=dict(self.owners),
            approvals=dict(self.approvals),
            operators={k: set(v) for k, v in self.operators.items()},
        )

    def restore(self, snap: LedgerSnapshot) -> None:
        self.owners = dict(snap.owners)
        self.approvals = dict(snap.approvals)
        self.operators = {k: set(v) for k, v in snap.operators.items()}
