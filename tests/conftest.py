"""
Shared pytest fixtures for the TicketFlow test suite.
"""

import pytest

from ticketflow_core.lifecycle import TICKET_LIFETIME, TicketClass
from ticketflow_core.office import TicketOffice

ISSUER = "tIssuer"
T0 = 1_700_000_000.0
EXPIRY = T0 + TICKET_LIFETIME


class FakeClock:
    """Settable clock for the office."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def office(clock):
    """Fresh office with the default ceiling, clock pinned at T0."""
    return TicketOffice(issuer=ISSUER, clock=clock)


@pytest.fixture
def small_office(clock):
    """Office with a ceiling of 3 tickets."""
    return TicketOffice(issuer=ISSUER, max_issued=3, clock=clock)


@pytest.fixture
def stocked_office(office):
    """Office holding ticket 0 (STANDARD, tAlice) and 1 (PRIVILEGED, tBob)."""
    office.issue(ISSUER, "tAlice", TicketClass.STANDARD)
    office.issue(ISSUER, "tBob", TicketClass.PRIVILEGED)
    return office
