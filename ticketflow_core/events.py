"""
Event log for TicketFlow.

Every successful state change appends one ``TicketEvent``.  The office
takes a ``mark()`` before each operation and truncates back to it when
the operation fails, so a rejected call leaves no trace here.

Only the newest ``max_events`` entries are kept.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

ISSUED = "Issued"
CLAIMED = "Claimed"
USED = "Used"
BURNED = "Burned"
TRANSFER = "Transfer"
BLACKLIST_UPDATED = "BlacklistUpdated"
MINT_PRICE_UPDATED = "MintPriceUpdated"
ROYALTY_UPDATED = "RoyaltyUpdated"
URI_UPDATED = "URIUpdated"
WITHDRAWN = "Withdrawn"
ISSUER_CHANGED = "IssuerChanged"

DEFAULT_MAX_EVENTS = 10_000


@dataclass
class TicketEvent:
    kind: str
    token_id: int | None = None
    account: str = ""
    timestamp: float = field(default_factory=time.time)
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "token_id": self.token_id,
            "account": self.account,
            "timestamp": self.timestamp,
            "data": self.data,
        }


class EventLog:
    """Bounded, append-only event history with a couple of query helpers."""

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS):
        if max_events <= 0:
            raise ValueError("max_events must be positive")
        self.events: deque[TicketEvent] = deque(maxlen=max_events)
        # events ever appended, including evicted ones
        self.total = 0

    def __len__(self) -> int:
        return len(self.events)

    def append(self, kind: str, token_id: int | None = None, account: str = "",
               now: float | None = None, **data: Any) -> TicketEvent:
        event = TicketEvent(
            kind=kind,
            token_id=token_id,
            account=account,
            timestamp=now if now is not None else time.time(),
            data=data,
        )
        self.events.append(event)
        self.total += 1
        return event

    def mark(self) -> int:
        return self.total

    def truncate(self, mark: int) -> None:
        """Drop every event appended after *mark*."""
        while self.total > mark:
            if self.events:
                self.events.pop()
            self.total -= 1

    def recent(self, limit: int = 50, token_id: int | None = None) -> list[TicketEvent]:
        if limit <= 0:
            return []
        events = self.events if token_id is None else self.for_token(token_id)
        return list(events)[-limit:]

    def for_token(self, token_id: int) -> list[TicketEvent]:
        return [e for e in self.events if e.token_id == token_id]
