#!/usr/bin/env python3
"""
TicketFlow office runner — starts a ticket office with:
  - the REST API
  - optional SQLite persistence (state restored on start, saved on stop)

Usage:
    python run_office.py --config ticketflow.toml
    python run_office.py --issuer tMyIssuer --port 8080 --db data/ticketflow.db

Environment variables (alternative to flags):
    TICKETFLOW_ISSUER, TICKETFLOW_API_PORT, TICKETFLOW_DB_PATH, TICKETFLOW_LOG_LEVEL
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from ticketflow_core.api import APIServer  # noqa: E402
from ticketflow_core.config import TicketFlowConfig, load_config  # noqa: E402
from ticketflow_core.logging_config import setup_logging  # noqa: E402
from ticketflow_core.office import TicketOffice  # noqa: E402
from ticketflow_core.storage import TicketStore  # noqa: E402

logger = logging.getLogger("office")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="TicketFlow ticket office")
    p.add_argument("--config", default=None, help="Path to ticketflow.toml config file")
    p.add_argument("--issuer", default=None, help="Issuer identity (address)")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port")
    p.add_argument("--db", default=None, help="SQLite database path (enables storage)")
    p.add_argument("--insecure-callers", action="store_true",
                   help="Trust the X-Caller header instead of requiring signatures")
    return p.parse_args(argv)


def apply_args(cfg: TicketFlowConfig, args: argparse.Namespace) -> TicketFlowConfig:
    """CLI flags override file and environment settings."""
    if args.issuer:
        cfg.office.issuer = args.issuer
    if args.host:
        cfg.api.host = args.host
    if args.port is not None:
        cfg.api.port = args.port
    if args.db:
        cfg.storage.path = args.db
        cfg.storage.enabled = True
    if args.insecure_callers:
        cfg.api.require_signatures = False
    return cfg


def build_office(cfg: TicketFlowConfig) -> tuple[TicketOffice, TicketStore | None]:
    office = TicketOffice.from_config(cfg.office)
    store = None
    if cfg.storage.enabled:
        if cfg.storage.backend != "sqlite":
            raise ValueError(f"Unsupported storage backend: {cfg.storage.backend}")
        store = TicketStore(cfg.storage.path)
        if store.load_office(office):
            logger.info(f"Office state restored ({office.lifecycle.issued_count} issued)")
    return office, store


async def start_api(cfg: TicketFlowConfig, office: TicketOffice,
                    store: TicketStore | None) -> APIServer | None:
    """Start the REST API unless ``[api] enabled = false``."""
    if not cfg.api.enabled:
        logger.info("API disabled by configuration")
        return None
    if not cfg.api.require_signatures:
        logger.warning(
            "⚠  Caller identities are NOT authenticated (X-Caller trusted). "
            "Only run this way behind a trusted front end."
        )
    api = APIServer(office, cfg.api.host, cfg.api.port, api_config=cfg.api, store=store)
    await api.start()
    return api


async def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    cfg = apply_args(load_config(args.config), args)
    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    office, store = build_office(cfg)
    api = await start_api(cfg, office, store)
    logger.info(f"Ticket office up: issuer {office.role.issuer}, "
                f"ceiling {office.config.max_issued}")
    try:
        while True:
            await asyncio.sleep(1)
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        if api is not None:
            await api.stop()
        if store is not None:
            store.save_office(office)
            store.close()
        logger.info("Ticket office stopped")


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
