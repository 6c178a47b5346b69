"""
TicketFlow - time-bound, owner-bound access tickets.

Key features:
- Two ticket classes: STANDARD (transferable) and PRIVILEGED (bound to holder)
- Exactly-once attendance claim and exactly-once gate use
- Lazy expiry checked at use time
- Issuer-controlled issuance ceiling, burn, blacklist and royalties
- All-or-nothing operations with a before-transfer veto hook
- SQLite persistence and an aiohttp REST front end
"""

__version__ = "0.3.0"
__all__ = [
    "errors",
    "authority",
    "ownership",
    "lifecycle",
    "transfer_guard",
    "access",
    "issuer_config",
    "treasury",
    "events",
    "office",
    "storage",
    "config",
    "identity",
    "api",
]
