"""
Transfer guard: the before-transfer hook that keeps privileged tickets
with the holder they were issued to.

The ledger calls the guard ahead of every reassignment.  Mints (no
previous owner) and burns (no new owner) always pass; a holder-to-holder
move of a PRIVILEGED ticket is vetoed.
"""

from __future__ import annotations

import logging

from ticketflow_core.errors import NON_TRANSFERABLE_PRIVILEGED, StateError
from ticketflow_core.lifecycle import TicketClass, TicketLifecycle
from ticketflow_core.ownership import NO_OWNER, OwnershipLedger

logger = logging.getLogger("ticketflow_guard")


class TransferGuard:

    def __init__(self, lifecycle: TicketLifecycle):
        self.lifecycle = lifecycle
        self.vetoed = 0

    def install(self, ledger: OwnershipLedger) -> None:
        ledger.register_hook(self)

    def __call__(self, token_id: int, previous: str, new: str) -> None:
        if previous == NO_OWNER or new == NO_OWNER:
            return
        if self.lifecycle.class_of(token_id) is TicketClass.PRIVILEGED:
            self.vetoed += 1
            logger.warning(
                f"Vetoed transfer of privileged ticket {token_id} "
                f"from {previous} to {new}",
                extra={"token_id": token_id, "code": NON_TRANSFERABLE_PRIVILEGED},
            )
            raise StateError(
                NON_TRANSFERABLE_PRIVILEGED,
                f"Ticket {token_id} is privileged and cannot be transferred",
            )
