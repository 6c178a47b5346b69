"""
SQLite-based persistence for the ticket office.

Stores ticket records, the id -> owner table, the blacklist, the id
counter, the issuer config record and the treasury so that an office can
recover its state after a restart.

Usage:
    store = TicketStore("data/ticketflow.db")
    store.save_office(office)
    ...
    store.load_office(fresh_office)
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ticketflow_core.lifecycle import Ticket, TicketClass

if TYPE_CHECKING:
    from ticketflow_core.office import TicketOffice

logger = logging.getLogger("ticketflow_storage")


class TicketStore:
    """Thin SQLite wrapper for persisting office state."""

    def __init__(self, db_path: str = "data/ticketflow.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS tickets (
                token_id     INTEGER PRIMARY KEY,
                ticket_class TEXT NOT NULL,
                claimed      INTEGER NOT NULL DEFAULT 0,
                used         INTEGER NOT NULL DEFAULT 0,
                expiry       REAL NOT NULL,
                issued_at    REAL NOT NULL DEFAULT 0,
                uri          TEXT
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS owners (
                token_id INTEGER PRIMARY KEY,
                owner    TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS blacklist (
                identity TEXT PRIMARY KEY
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS office_state (
                id               INTEGER PRIMARY KEY CHECK (id = 1),
                issuer           TEXT NOT NULL,
                next_token_id    INTEGER NOT NULL DEFAULT 0,
                mint_price       REAL NOT NULL DEFAULT 0,
                max_issued       INTEGER NOT NULL,
                royalty_receiver TEXT NOT NULL DEFAULT '',
                royalty_bps      INTEGER NOT NULL DEFAULT 0,
                treasury_balance REAL NOT NULL DEFAULT 0,
                total_withdrawn  REAL NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    CURRENT_SCHEMA_VERSION = 1

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade TicketFlow."
            )

    @property
    def schema_version(self) -> int:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        return row["version"]

    # ── row loaders ──────────────────────────────────────────────

    def load_tickets(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM tickets ORDER BY token_id").fetchall()
        return [dict(r) for r in rows]

    def load_owners(self) -> dict[int, str]:
        rows = self._conn.execute("SELECT token_id, owner FROM owners").fetchall()
        return {r["token_id"]: r["owner"] for r in rows}

    def load_blacklist(self) -> set[str]:
        rows = self._conn.execute("SELECT identity FROM blacklist").fetchall()
        return {r["identity"] for r in rows}

    def load_state(self) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT * FROM office_state WHERE id = 1").fetchone()
        return dict(row) if row else None

    # ── bulk helpers ─────────────────────────────────────────────

    def save_office(self, office: TicketOffice) -> None:
        """Persist the full state of *office* in a single transaction."""
        c = self._conn
        lifecycle = office.lifecycle
        try:
            c.execute("BEGIN IMMEDIATE")
            c.execute("DELETE FROM tickets")
            c.execute("DELETE FROM owners")
            c.execute("DELETE FROM blacklist")

            c.executemany(
                """INSERT INTO tickets
                   (token_id, ticket_class, claimed, used, expiry, issued_at, uri)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                [
                    (t.token_id, t.ticket_class.value, int(t.claimed), int(t.used),
                     t.expiry, t.issued_at, lifecycle.uris.get(t.token_id))
                    for t in lifecycle.tickets.values()
                ],
            )
            c.executemany(
                "INSERT INTO owners (token_id, owner) VALUES (?, ?)",
                list(office.ledger.owners.items()),
            )
            c.executemany(
                "INSERT INTO blacklist (identity) VALUES (?)",
                [(ident,) for ident in sorted(office.access.blacklist)],
            )
            c.execute(
                """INSERT OR REPLACE INTO office_state
                   (id, issuer, next_token_id, mint_price, max_issued,
                    royalty_receiver, royalty_bps, treasury_balance, total_withdrawn)
                   VALUES (1, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (office.role.issuer, lifecycle.next_token_id,
                 office.config.mint_price, office.config.max_issued,
                 office.config.royalty_receiver, office.config.royalty_bps,
                 office.treasury.balance, office.treasury.total_withdrawn),
            )
            c.execute("COMMIT")
        except Exception:
            c.execute("ROLLBACK")
            raise
        logger.info(
            f"Saved {len(lifecycle.tickets)} tickets "
            f"(counter={lifecycle.next_token_id}) to {self.db_path}"
        )

    def load_office(self, office: TicketOffice) -> bool:
        """
        Restore *office* from the database.  Returns False (and leaves the
        office untouched) when nothing has been saved yet.
        """
        state = self.load_state()
        if state is None:
            return False
        if state["max_issued"] != office.config.max_issued:
            logger.warning(
                f"Stored max_issued {state['max_issued']} differs from configured "
                f"{office.config.max_issued}; using the configured ceiling"
            )

        lifecycle = office.lifecycle
        lifecycle.tickets = {}
        lifecycle.uris = {}
        for row in self.load_tickets():
            tid = row["token_id"]
            lifecycle.tickets[tid] = Ticket(
                token_id=tid,
                ticket_class=TicketClass(row["ticket_class"]),
                claimed=bool(row["claimed"]),
                used=bool(row["used"]),
                expiry=row["expiry"],
                issued_at=row["issued_at"],
            )
            if row["uri"] is not None:
                lifecycle.uris[tid] = row["uri"]
        lifecycle.next_token_id = state["next_token_id"]

        office.ledger.owners = self.load_owners()
        office.ledger.approvals = {}
        office.access.blacklist = self.load_blacklist()
        office.role.issuer = state["issuer"]
        office.config.mint_price = state["mint_price"]
        office.config.royalty_receiver = state["royalty_receiver"]
        office.config.royalty_bps = state["royalty_bps"]
        office.treasury.balance = state["treasury_balance"]
        office.treasury.total_withdrawn = state["total_withdrawn"]
        logger.info(
            f"Restored {len(lifecycle.tickets)} tickets "
            f"(counter={lifecycle.next_token_id}) from {self.db_path}"
        )
        return True

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
