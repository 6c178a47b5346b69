"""
Error taxonomy for TicketFlow.

Every rejected operation raises a subclass of ``TicketError`` before any
state is touched.  Each error carries a stable ``code`` string that the
HTTP layer returns verbatim, and an ``http_status`` used to map it.

    AuthorizationError    wrong principal for the operation
    StateError            operation invalid for the ticket's current state
    TemporalError         ticket past its expiry
    TicketReferenceError  unknown or already-destroyed ticket id
    CapacityError         issuance ceiling reached

None of these are transient: a repeated call fails the same way.
"""

from __future__ import annotations


NOT_AUTHORIZED = "NOT_AUTHORIZED"
ALREADY_CLAIMED = "ALREADY_CLAIMED"
ALREADY_USED = "ALREADY_USED"
ALREADY_MINTED = "ALREADY_MINTED"
NON_TRANSFERABLE_PRIVILEGED = "NON_TRANSFERABLE_PRIVILEGED"
URI_FROZEN = "URI_FROZEN"
EXPIRED = "EXPIRED"
UNKNOWN_TICKET = "UNKNOWN_TICKET"
CAPACITY_REACHED = "CAPACITY_REACHED"


class TicketError(Exception):
    """Base class for all ticket-office failures."""

    code = "TICKET_ERROR"
    http_status = 400

    def __init__(self, message: str = "", code: str | None = None):
        if code is not None:
            self.code = code
        self.message = message or self.code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class AuthorizationError(TicketError):
    code = NOT_AUTHORIZED
    http_status = 403


class StateError(TicketError):
    """Raised with one of ALREADY_CLAIMED, ALREADY_USED,
    NON_TRANSFERABLE_PRIVILEGED, URI_FROZEN or ALREADY_MINTED."""
    http_status = 409

    def __init__(self, code: str, message: str = ""):
        super().__init__(message, code=code)


class TemporalError(TicketError):
    code = EXPIRED
    http_status = 410


class TicketReferenceError(TicketError):
    code = UNKNOWN_TICKET
    http_status = 404


class CapacityError(TicketError):
    code = CAPACITY_REACHED
    http_status = 409
