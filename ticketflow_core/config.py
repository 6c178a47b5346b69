"""
TOML-based configuration for the TicketFlow office.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from ticketflow_core.config import load_config
    cfg = load_config("ticketflow.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[import,no-redef]


@dataclass
class OfficeConfig:
    """Issuer identity and ticket economics."""
    issuer: str = "tIssuer"
    max_issued: int = 1000
    mint_price: float = 0.0
    ticket_lifetime_seconds: int = 7 * 24 * 3600
    royalty_receiver: str = ""
    royalty_bps: int = 0
    base_uri: str = ""
    max_events: int = 10_000          # events kept in memory; oldest dropped first


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""                 # require this key on POST endpoints (empty = no auth)
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)
    max_body_bytes: int = 65_536
    # When True, callers must sign requests (X-Public-Key / X-Signature);
    # otherwise the X-Caller header is trusted as-is.
    require_signatures: bool = True


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    backend: str = "sqlite"
    path: str = "data/ticketflow.db"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class TicketFlowConfig:
    """Top-level configuration container."""
    office: OfficeConfig = field(default_factory=OfficeConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def load_config(path: str | None = None) -> TicketFlowConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        TICKETFLOW_ISSUER        -> office.issuer
        TICKETFLOW_MAX_ISSUED    -> office.max_issued
        TICKETFLOW_API_PORT      -> api.port
        TICKETFLOW_API_KEY       -> api.api_key
        TICKETFLOW_CORS_ORIGINS  -> api.cors_origins (comma-separated)
        TICKETFLOW_LOG_LEVEL     -> logging.level
        TICKETFLOW_LOG_FMT       -> logging.format
        TICKETFLOW_DB_PATH       -> storage.path (enables storage)
    """
    cfg = TicketFlowConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("office", cfg.office),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("TICKETFLOW_ISSUER"):
        cfg.office.issuer = v
    if v := os.environ.get("TICKETFLOW_MAX_ISSUED"):
        cfg.office.max_issued = int(v)
    if v := os.environ.get("TICKETFLOW_API_PORT"):
        cfg.api.port = int(v)
        cfg.api.enabled = True
    if v := os.environ.get("TICKETFLOW_API_KEY"):
        cfg.api.api_key = v
    if v := os.environ.get("TICKETFLOW_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("TICKETFLOW_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("TICKETFLOW_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("TICKETFLOW_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True

    return cfg
