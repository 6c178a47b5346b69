"""
Ticket lifecycle for TicketFlow.

Tickets are time-bound, owner-bound credentials of two classes:
  - STANDARD   freely transferable until burned
  - PRIVILEGED bound to the holder it was issued to

State per ticket is {class, claimed, used, expiry}.  Ownership itself
lives in the ``OwnershipLedger``; this module only asks it who the owner
is, and mints/burns through it.

Lifecycle:
  1. issue             Issuer only, bounded by ``max_issued``
  2. claim_attendance  current owner, once
  3. use               current owner, once, not after expiry
  4. burn              Issuer only; clears the ticket and its ledger entry

``claimed`` and ``used`` only ever go from False to True.  Ids come from
a counter that never goes backwards, so a burned id is never reissued.

Read accessors never raise: an unknown or burned id reads as a
zero-valued ticket.  ``OwnershipLedger.owner_of`` on the same id does
raise; the two behaviours are intentionally different.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum

from ticketflow_core.authority import IssuerRole
from ticketflow_core.errors import (
    ALREADY_CLAIMED,
    ALREADY_USED,
    URI_FROZEN,
    AuthorizationError,
    CapacityError,
    StateError,
    TemporalError,
)
from ticketflow_core.events import BURNED, CLAIMED, ISSUED, URI_UPDATED, USED, EventLog
from ticketflow_core.issuer_config import IssuerConfig
from ticketflow_core.ownership import OwnershipLedger

logger = logging.getLogger("ticketflow_lifecycle")

TICKET_LIFETIME = 7 * 24 * 3600  # seconds


class TicketClass(Enum):
    STANDARD = "standard"
    PRIVILEGED = "privileged"


@dataclass
class Ticket:
    """Lifecycle state of a single ticket."""
    token_id: int
    ticket_class: TicketClass = TicketClass.STANDARD
    claimed: bool = False
    used: bool = False
    expiry: float = 0.0
    issued_at: float = 0.0

    @property
    def transferable(self) -> bool:
        return self.ticket_class is TicketClass.STANDARD

    def is_expired(self, now: float) -> bool:
        return now > self.expiry

    def to_dict(self) -> dict:
        return {
            "token_id": self.token_id,
            "ticket_class": self.ticket_class.value,
            "claimed": self.claimed,
            "used": self.used,
            "expiry": self.expiry,
            "issued_at": self.issued_at,
            "transferable": self.transferable,
        }


@dataclass
class LifecycleSnapshot:
    tickets: dict[int, Ticket]
    uris: dict[int, str]
    next_token_id: int


class TicketLifecycle:
    """Owns ticket state and every business rule around it."""

    def __init__(
        self,
        ledger: OwnershipLedger,
        role: IssuerRole,
        config: IssuerConfig,
        events: EventLog | None = None,
        lifetime: float = TICKET_LIFETIME,
        base_uri: str = "",
    ):
        self.ledger = ledger
        self.role = role
        self.config = config
        self.events = events if events is not None else EventLog()
        self.lifetime = lifetime
        self.base_uri = base_uri
        self.tickets: dict[int, Ticket] = {}
        self.uris: dict[int, str] = {}
        self.next_token_id = 0

    # ── helpers ──────────────────────────────────────────────────

    def _require_owner(self, caller: str, token_id: int) -> str:
        owner = self.ledger.owner_of(token_id)
        if caller != owner:
            raise AuthorizationError(f"{caller} does not own ticket {token_id}")
        return owner

    @property
    def issued_count(self) -> int:
        return self.next_token_id

    # ── mutations ────────────────────────────────────────────────

    def issue(self, caller: str, to: str, ticket_class: TicketClass,
              now: float | None = None) -> int:
        """Issue a new ticket to *to*.  Returns its id."""
        self.role.require(caller, "ticket issuance")
        if self.next_token_id >= self.config.max_issued:
            raise CapacityError(
                f"All {self.config.max_issued} tickets have been issued"
            )
        if now is None:
            now = time.time()
        token_id = self.next_token_id
        self.ledger.mint(token_id, to)
        self.next_token_id = token_id + 1
        self.tickets[token_id] = Ticket(
            token_id=token_id,
            ticket_class=ticket_class,
            expiry=now + self.lifetime,
            issued_at=now,
        )
        self.events.append(ISSUED, token_id, to, now=now,
                           ticket_class=ticket_class.value)
        logger.info(f"Issued {ticket_class.value} ticket {token_id} to {to}",
                    extra={"token_id": token_id, "caller": caller})
        return token_id

    def claim_attendance(self, caller: str, token_id: int,
                         now: float | None = None) -> None:
        self._require_owner(caller, token_id)
        ticket = self.tickets[token_id]
        if ticket.claimed:
            raise StateError(ALREADY_CLAIMED, f"Ticket {token_id} already claimed")
        ticket.claimed = True
        self.events.append(CLAIMED, token_id, caller, now=now)
        logger.info(f"Attendance claimed for ticket {token_id} by {caller}",
                    extra={"token_id": token_id, "caller": caller})

    def use(self, caller: str, token_id: int, now: float | None = None) -> None:
        """
        Validate entry with *token_id*.

        Checks run in a fixed order and the first failure is the only
        one reported: unknown id, wrong holder, already used, expired.
        """
        self._require_owner(caller, token_id)
        ticket = self.tickets[token_id]
        if ticket.used:
            raise StateError(ALREADY_USED, f"Ticket {token_id} already used")
        if now is None:
            now = time.time()
        if ticket.is_expired(now):
            raise TemporalError(f"Ticket {token_id} expired at {ticket.expiry}")
        ticket.used = True
        self.events.append(USED, token_id, caller, now=now)
        logger.info(f"Ticket {token_id} used by {caller}",
                    extra={"token_id": token_id, "caller": caller})

    def burn(self, caller: str, token_id: int, now: float | None = None) -> None:
        self.role.require(caller, "ticket burn")
        owner = self.ledger.owner_of(token_id)
        self.ledger.burn(token_id)
        self.tickets.pop(token_id, None)
        self.uris.pop(token_id, None)
        self.events.append(BURNED, token_id, owner, now=now)
        logger.info(f"Burned ticket {token_id} (held by {owner})",
                    extra={"token_id": token_id, "caller": caller})

    def set_token_uri(self, caller: str, token_id: int, uri: str,
                      now: float | None = None) -> None:
        """Pin an explicit metadata URI.  Frozen once the ticket is used."""
        self.role.require(caller, "a metadata change")
        self.ledger.owner_of(token_id)
        if self.tickets[token_id].used:
            raise StateError(URI_FROZEN, f"Ticket {token_id} is used; URI frozen")
        self.uris[token_id] = uri
        self.events.append(URI_UPDATED, token_id, caller, now=now, uri=uri)

    # ── read accessors (never raise) ─────────────────────────────

    def details(self, token_id: int) -> Ticket:
        ticket = self.tickets.get(token_id)
        if ticket is None:
            return Ticket(token_id=token_id)
        return dataclasses.replace(ticket)

    def is_used(self, token_id: int) -> bool:
        return self.details(token_id).used

    def is_claimed(self, token_id: int) -> bool:
        return self.details(token_id).claimed

    def expiry_of(self, token_id: int) -> float:
        return self.details(token_id).expiry

    def class_of(self, token_id: int) -> TicketClass:
        return self.details(token_id).ticket_class

    def token_uri(self, token_id: int) -> str:
        if token_id not in self.tickets:
            return ""
        if token_id in self.uris:
            return self.uris[token_id]
        return f"{self.base_uri}{token_id}" if self.base_uri else ""

    def tickets_of(self, owner: str) -> list[Ticket]:
        return [self.details(t) for t in self.ledger.tokens_of(owner)]

    # ── rollback support ─────────────────────────────────────────

    def snapshot(self) -> LifecycleSnapshot:
        return LifecycleSnapshot(
            tickets={k: dataclasses.replace(v) for k, v in self.tickets.items()},
            uris=dict(self.uris),
            next_token_id=self.next_token_id,
        )

    def restore(self, snap: LifecycleSnapshot) -> None:
        self.tickets = {k: dataclasses.replace(v) for k, v in snap.tickets.items()}
        self.uris = dict(snap.uris)
        self.next_token_id = snap.next_token_id
