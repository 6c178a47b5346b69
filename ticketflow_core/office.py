"""
TicketOffice: the composed ticketing service.

Wires together:
  - OwnershipLedger   id -> owner
  - TicketLifecycle   per-ticket state and rules
  - TransferGuard     hook vetoing privileged transfers
  - AccessPolicy      identity blacklist
  - IssuerConfig      price / ceiling / royalties
  - Treasury          withdrawable funds
  - EventLog          record of successful changes

Every mutating call is all-or-nothing: the office snapshots each mutable
table before the call and restores all of them if anything raises, so a
veto coming back from a ledger hook also undoes whatever the call had
already written.

Usage:
    office = TicketOffice(issuer="tIssuer")
    tid = office.issue("tIssuer", "tAlice", TicketClass.STANDARD)
    office.use("tAlice", tid)
"""

from __future__ import annotations

import contextlib
import logging
import time
from typing import Callable, Iterator

from ticketflow_core.access import AccessDecision, AccessPolicy
from ticketflow_core.authority import IssuerRole
from ticketflow_core.errors import TicketError
from ticketflow_core.events import (
    BLACKLIST_UPDATED,
    DEFAULT_MAX_EVENTS,
    ISSUER_CHANGED,
    MINT_PRICE_UPDATED,
    ROYALTY_UPDATED,
    TRANSFER,
    WITHDRAWN,
    EventLog,
)
from ticketflow_core.issuer_config import DEFAULT_MAX_ISSUED, IssuerConfig, RoyaltyInfo
from ticketflow_core.lifecycle import TICKET_LIFETIME, Ticket, TicketClass, TicketLifecycle
from ticketflow_core.ownership import OwnershipLedger
from ticketflow_core.transfer_guard import TransferGuard
from ticketflow_core.treasury import Treasury

logger = logging.getLogger("ticketflow_office")


class TicketOffice:

    def __init__(
        self,
        issuer: str,
        max_issued: int = DEFAULT_MAX_ISSUED,
        mint_price: float = 0.0,
        royalty_receiver: str = "",
        royalty_bps: int = 0,
        lifetime: float = TICKET_LIFETIME,
        base_uri: str = "",
        clock: Callable[[], float] = time.time,
        max_events: int = DEFAULT_MAX_EVENTS,
    ):
        self.clock = clock
        self.role = IssuerRole(issuer)
        self.events = EventLog(max_events)
        self._depth = 0
        self.ledger = OwnershipLedger()
        self.config = IssuerConfig(
            self.role,
            max_issued=max_issued,
            mint_price=mint_price,
            royalty_receiver=royalty_receiver,
            royalty_bps=royalty_bps,
        )
        self.lifecycle = TicketLifecycle(
            self.ledger, self.role, self.config, self.events,
            lifetime=lifetime, base_uri=base_uri,
        )
        self.guard = TransferGuard(self.lifecycle)
        self.guard.install(self.ledger)
        self.access = AccessPolicy(self.role)
        self.treasury = Treasury(self.role)

    @classmethod
    def from_config(cls, office_cfg, clock: Callable[[], float] = time.time) -> TicketOffice:
        """Build an office from an ``OfficeConfig`` section."""
        return cls(
            issuer=office_cfg.issuer,
            max_issued=office_cfg.max_issued,
            mint_price=office_cfg.mint_price,
            royalty_receiver=office_cfg.royalty_receiver,
            royalty_bps=office_cfg.royalty_bps,
            lifetime=office_cfg.ticket_lifetime_seconds,
            base_uri=office_cfg.base_uri,
            clock=clock,
            max_events=office_cfg.max_events,
        )

    # ── atomicity ────────────────────────────────────────────────

    @contextlib.contextmanager
    def atomic(self, op: str) -> Iterator[None]:
        """
        Run a block all-or-nothing.  Nested blocks are fine; the outermost
        one restores everything if the block raises, which lets callers
        fold their own side effects (such as a database save) into the
        same unit.
        """
        ledger_snap = self.ledger.snapshot()
        lifecycle_snap = self.lifecycle.snapshot()
        access_snap = self.access.snapshot()
        config_snap = self.config.snapshot()
        treasury_snap = self.treasury.snapshot()
        issuer = self.role.issuer
        event_mark = self.events.mark()
        self._depth += 1
        try:
            yield
        except Exception as exc:
            self.ledger.restore(ledger_snap)
            self.lifecycle.restore(lifecycle_snap)
            self.access.restore(access_snap)
            self.config.restore(config_snap)
            self.treasury.restore(treasury_snap)
            self.role.issuer = issuer
            self.events.truncate(event_mark)
            if isinstance(exc, TicketError) and self._depth == 1:
                logger.warning(f"{op} rejected: {exc.code} ({exc.message})",
                               extra={"code": exc.code})
            raise
        finally:
            self._depth -= 1

    def _now(self, now: float | None) -> float:
        return now if now is not None else self.clock()

    # ── lifecycle ────────────────────────────────────────────────

    def issue(self, caller: str, to: str,
              ticket_class: TicketClass = TicketClass.STANDARD,
              now: float | None = None) -> int:
        with self.atomic("issue"):
            return self.lifecycle.issue(caller, to, ticket_class, now=self._now(now))

    def claim_attendance(self, caller: str, token_id: int,
                         now: float | None = None) -> None:
        with self.atomic("claim_attendance"):
            self.lifecycle.claim_attendance(caller, token_id, now=self._now(now))

    def use(self, caller: str, token_id: int, now: float | None = None) -> None:
        with self.atomic("use"):
            self.lifecycle.use(caller, token_id, now=self._now(now))

    def burn(self, caller: str, token_id: int, now: float | None = None) -> None:
        with self.atomic("burn"):
            self.lifecycle.burn(caller, token_id, now=self._now(now))

    def set_token_uri(self, caller: str, token_id: int, uri: str,
                      now: float | None = None) -> None:
        with self.atomic("set_token_uri"):
            self.lifecycle.set_token_uri(caller, token_id, uri, now=self._now(now))

    # ── ownership ────────────────────────────────────────────────

    def transfer(self, caller: str, token_id: int, from_owner: str, to_owner: str,
                 now: float | None = None) -> None:
        with self.atomic("transfer"):
            self.ledger.transfer(token_id, from_owner, to_owner, caller=caller)
            self.events.append(TRANSFER, token_id, to_owner, now=self._now(now),
                               previous_owner=from_owner)
            logger.info(f"Ticket {token_id} transferred {from_owner} -> {to_owner}")

    def approve(self, caller: str, token_id: int, spender: str) -> None:
        with self.atomic("approve"):
            self.ledger.approve(caller, token_id, spender)

    def set_approval_for_all(self, caller: str, operator: str, approved: bool) -> None:
        with self.atomic("set_approval_for_all"):
            self.ledger.set_approval_for_all(caller, operator, approved)

    def owner_of(self, token_id: int) -> str:
        return self.ledger.owner_of(token_id)

    # ── access policy ────────────────────────────────────────────

    def set_blacklisted(self, caller: str, identity: str, status: bool,
                        now: float | None = None) -> None:
        with self.atomic("set_blacklisted"):
            if self.access.set_blacklisted(caller, identity, status):
                self.events.append(BLACKLIST_UPDATED, None, identity,
                                   now=self._now(now), status=status)
                logger.info(f"Blacklist {'add' if status else 'remove'}: {identity}")

    def check_access(self, identity: str) -> AccessDecision:
        return self.access.check_access(identity)

    # ── issuer config ────────────────────────────────────────────

    def set_mint_price(self, caller: str, new_price: float,
                       now: float | None = None) -> None:
        with self.atomic("set_mint_price"):
            self.config.set_mint_price(caller, new_price)
            self.events.append(MINT_PRICE_UPDATED, None, caller,
                               now=self._now(now), price=new_price)

    def set_royalty(self, caller: str, receiver: str, rate_bps: int,
                    now: float | None = None) -> None:
        with self.atomic("set_royalty"):
            self.config.set_royalty(caller, receiver, rate_bps)
            self.events.append(ROYALTY_UPDATED, None, receiver,
                               now=self._now(now), rate_bps=rate_bps)

    def royalty_info(self, sale_price: int) -> RoyaltyInfo:
        return self.config.royalty_info(sale_price)

    def transfer_issuer(self, caller: str, new_issuer: str,
                        now: float | None = None) -> None:
        with self.atomic("transfer_issuer"):
            previous = self.role.transfer_role(caller, new_issuer)
            self.events.append(ISSUER_CHANGED, None, new_issuer,
                               now=self._now(now), previous_issuer=previous)
            logger.warning(f"Issuer role moved from {previous} to {new_issuer}")

    # ── treasury ─────────────────────────────────────────────────

    def deposit(self, amount: float) -> float:
        with self.atomic("deposit"):
            return self.treasury.deposit(amount)

    def withdraw(self, caller: str, now: float | None = None) -> float:
        with self.atomic("withdraw"):
            amount = self.treasury.withdraw(caller)
            self.events.append(WITHDRAWN, None, caller,
                               now=self._now(now), amount=amount)
            logger.info(f"Withdrew {amount} to issuer {caller}")
            return amount

    # ── queries ──────────────────────────────────────────────────

    def details(self, token_id: int) -> Ticket:
        return self.lifecycle.details(token_id)

    def is_used(self, token_id: int) -> bool:
        return self.lifecycle.is_used(token_id)

    def token_uri(self, token_id: int) -> str:
        return self.lifecycle.token_uri(token_id)

    def status(self) -> dict:
        return {
            "issuer": self.role.issuer,
            "issued": self.lifecycle.issued_count,
            "live": len(self.ledger.owners),
            "blacklisted": len(self.access.blacklist),
            "treasury_balance": self.treasury.balance,
            "config": self.config.to_dict(),
        }
