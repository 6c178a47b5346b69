"""
REST / HTTP API for the TicketFlow office.

Built on ``aiohttp``.

Endpoints
---------
GET  /health                      Liveness + counters
GET  /status                      Office summary (issuer, counts, config)
GET  /tickets/{id}                Ticket record (zero-valued if unknown)
GET  /tickets/{id}/owner          Current owner (404 if unknown)
GET  /tickets/{id}/uri            Metadata URI
GET  /account/{address}/tickets   Tickets held by an address
POST /tickets                     Issue            (issuer)
POST /tickets/{id}/claim          Claim attendance (owner)
POST /tickets/{id}/use            Use at the gate  (owner)
POST /tickets/{id}/burn           Burn             (issuer)
POST /tickets/{id}/transfer       Transfer         (owner / approved)
POST /tickets/{id}/uri            Set metadata URI (issuer)
GET  /access/{address}            Blacklist check
GET  /royalty/{sale_price}        Royalty owed on a sale
GET  /events                      Recent events (?limit=, ?token_id=)
POST /admin/blacklist             Set / clear blacklist membership
POST /admin/mint_price            Change the mint price
POST /admin/royalty               Change royalty receiver / rate
POST /admin/withdraw              Withdraw the treasury
POST /admin/issuer                Hand the issuer role over

Caller identity
---------------
With ``require_signatures`` on, every mutating request carries
``X-Public-Key``, ``X-Timestamp`` and ``X-Signature`` (see
``ticketflow_core.identity``); the caller is the key's address.  With it
off, the ``X-Caller`` header is taken at face value (trusted front ends
and local tooling only).

Errors
------
A ``TicketError`` becomes ``{"error": code, "message": ...}`` with the
status carried by the error class (403 / 404 / 409 / 410).  Malformed
arguments give 400.  With a store attached, each mutation is saved before
the response; a failed save rolls the mutation back and returns 503.

Usage:
    api = APIServer(office, host="127.0.0.1", port=8080)
    await api.start()
    ...
    await api.stop()
"""

from __future__ import annotations

import contextlib
import hmac
import json
import logging
import math
import sqlite3
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from ticketflow_core.errors import TicketError
from ticketflow_core.identity import verify_request
from ticketflow_core.lifecycle import TicketClass

if TYPE_CHECKING:
    from ticketflow_core.config import APIConfig
    from ticketflow_core.office import TicketOffice
    from ticketflow_core.storage import TicketStore

logger = logging.getLogger("ticketflow_api")

MAX_CLOCK_SKEW = 300  # seconds allowed between X-Timestamp and server time
MAX_BUCKETS = 10_000  # idle, full buckets are pruned past this many IPs


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _safe_float(value: Any, name: str = "value") -> float:
    """Convert *value* to float, rejecting NaN, Inf, and non-numeric."""
    try:
        f = float(value)
    except (TypeError, ValueError):
        raise web.HTTPBadRequest(text=f"{name} must be a number")
    if math.isnan(f) or math.isinf(f):
        raise web.HTTPBadRequest(text=f"{name} must be a finite number")
    return f


def _safe_int(value: Any, name: str = "value") -> int:
    """Convert *value* to int, rejecting non-integer input."""
    if isinstance(value, bool):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")


def _require_str(body: dict, name: str, default: Any = None) -> str:
    """Fetch a non-empty string field from a JSON body."""
    value = body.get(name, default)
    if not isinstance(value, str) or not value:
        raise web.HTTPBadRequest(text=f"{name} must be a non-empty string")
    return value


def _parse_class(value: Any) -> TicketClass:
    try:
        return TicketClass(str(value).lower())
    except ValueError:
        raise web.HTTPBadRequest(text="ticket_class must be 'standard' or 'privileged'")


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=str)


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Per-IP token bucket; ``rpm <= 0`` disables limiting."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm
        # ip -> [tokens, last_refill_timestamp]
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        if ip not in self._buckets and len(self._buckets) >= MAX_BUCKETS:
            self._prune(time.monotonic())
        bucket = self._buckets[ip]
        now = time.monotonic()
        bucket[0] = min(float(self._rpm), bucket[0] + (now - bucket[1]) * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False

    def _prune(self, now: float) -> None:
        rate = self._rpm / 60.0
        full = [
            ip for ip, (tokens, last) in self._buckets.items()
            if tokens + (now - last) * rate >= self._rpm
        ]
        for ip in full:
            del self._buckets[ip]


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

@web.middleware
async def error_middleware(request: web.Request, handler):
    """Turn ticket-office errors into JSON responses."""
    try:
        return await handler(request)
    except TicketError as exc:
        return web.json_response(exc.to_dict(), status=exc.http_status)
    except ValueError as exc:
        return web.json_response(
            {"error": "INVALID_ARGUMENT", "message": str(exc)}, status=400,
        )
    except sqlite3.Error as exc:
        logger.error(f"Persistence failed for {request.method} {request.path}: {exc}")
        return web.json_response(
            {"error": "STORAGE_UNAVAILABLE", "message": "State could not be saved; "
             "the operation was rolled back"}, status=503,
        )


def _make_rate_limit_middleware(bucket: _TokenBucket):

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_api_key_middleware(api_key: str):
    """Require ``X-API-Key`` on POST/PUT/DELETE (timing-safe compare)."""

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method in ("POST", "PUT", "DELETE"):
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """CORS headers for an explicit origin list; ``*`` is ignored."""

    allowed = set(origins) if origins else set()
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)

        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = (
                "Content-Type, X-API-Key, X-Public-Key, X-Timestamp, X-Signature, X-Caller"
            )
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


class APIServer:
    """aiohttp front end for a ``TicketOffice``."""

    def __init__(
        self,
        office: TicketOffice,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
        store: TicketStore | None = None,
    ):
        self.office = office
        self.host = host
        self.port = port
        self.store = store
        self._api_config = api_config
        self._require_signatures = bool(api_config and api_config.require_signatures)
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._started_at = time.time()

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536

        if self._api_config is not None:
            cfg = self._api_config
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))
            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))
        middlewares.append(error_middleware)

        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        app = self.build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/status", self._status)
        app.router.add_get("/tickets/{token_id}", self._ticket_info)
        app.router.add_get("/tickets/{token_id}/owner", self._ticket_owner)
        app.router.add_get("/tickets/{token_id}/uri", self._ticket_uri)
        app.router.add_get("/account/{address}/tickets", self._account_tickets)
        app.router.add_post("/tickets", self._issue)
        app.router.add_post("/tickets/{token_id}/claim", self._claim)
        app.router.add_post("/tickets/{token_id}/use", self._use)
        app.router.add_post("/tickets/{token_id}/burn", self._burn)
        app.router.add_post("/tickets/{token_id}/transfer", self._transfer)
        app.router.add_post("/tickets/{token_id}/uri", self._set_uri)
        app.router.add_get("/access/{address}", self._access)
        app.router.add_get("/royalty/{sale_price}", self._royalty)
        app.router.add_get("/events", self._events)
        app.router.add_post("/admin/blacklist", self._set_blacklisted)
        app.router.add_post("/admin/mint_price", self._set_mint_price)
        app.router.add_post("/admin/royalty", self._set_royalty)
        app.router.add_post("/admin/withdraw", self._withdraw)
        app.router.add_post("/admin/issuer", self._transfer_issuer)

    # ── request plumbing ─────────────────────────────────────────

    async def _authenticate(self, request: web.Request) -> tuple[str, dict]:
        """Return (caller, json_body) for a mutating request."""
        raw = await request.read()
        if self._require_signatures:
            caller = self._verify_signature(request, raw)
        else:
            caller = request.headers.get("X-Caller", "")
            if not caller:
                raise web.HTTPUnauthorized(text="X-Caller header required")
        if not raw:
            return caller, {}
        try:
            body = json.loads(raw)
        except ValueError as exc:
            raise web.HTTPBadRequest(text="Invalid JSON body") from exc
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(text="JSON body must be an object")
        return caller, body

    def _verify_signature(self, request: web.Request, raw: bytes) -> str:
        pub = request.headers.get("X-Public-Key", "")
        sig = request.headers.get("X-Signature", "")
        ts = request.headers.get("X-Timestamp", "")
        if not (pub and sig and ts):
            raise web.HTTPUnauthorized(text="Signed request headers required")
        try:
            sent = float(ts)
        except ValueError:
            raise web.HTTPUnauthorized(text="Invalid X-Timestamp")
        if not math.isfinite(sent):
            raise web.HTTPUnauthorized(text="Invalid X-Timestamp")
        if abs(time.time() - sent) > MAX_CLOCK_SKEW:
            raise web.HTTPUnauthorized(text="Request timestamp outside allowed window")
        caller = verify_request(pub, sig, request.method, request.path, ts, raw)
        if caller is None:
            raise web.HTTPUnauthorized(text="Invalid request signature")
        return caller

    @contextlib.contextmanager
    def _commit(self, op: str):
        """
        Apply an office mutation and save it as one unit: if the save
        fails, the in-memory change is rolled back too.
        """
        with self.office.atomic(op):
            yield
            if self.store is not None:
                self.store.save_office(self.office)

    @staticmethod
    def _token_id(request: web.Request) -> int:
        return _safe_int(request.match_info["token_id"], "token_id")

    # ── read handlers ────────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        return web.json_response({
            "ok": True,
            "issued": self.office.lifecycle.issued_count,
            "uptime": round(time.time() - self._started_at, 3),
            "storage": self.store is not None,
        })

    async def _status(self, _request: web.Request) -> web.Response:
        return web.json_response(self.office.status(), dumps=_json_dumps)

    async def _ticket_info(self, request: web.Request) -> web.Response:
        token_id = self._token_id(request)
        data = self.office.details(token_id).to_dict()
        data["owner"] = self.office.ledger.owners.get(token_id)
        return web.json_response(data)

    async def _ticket_owner(self, request: web.Request) -> web.Response:
        token_id = self._token_id(request)
        return web.json_response(
            {"token_id": token_id, "owner": self.office.owner_of(token_id)}
        )

    async def _ticket_uri(self, request: web.Request) -> web.Response:
        token_id = self._token_id(request)
        return web.json_response({"token_id": token_id, "uri": self.office.token_uri(token_id)})

    async def _account_tickets(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        tickets = self.office.lifecycle.tickets_of(address)
        return web.json_response(
            {"account": address, "tickets": [t.to_dict() for t in tickets]}
        )

    async def _access(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        decision = self.office.check_access(address)
        return web.json_response({"identity": address, **decision.to_dict()})

    async def _royalty(self, request: web.Request) -> web.Response:
        sale_price = _safe_int(request.match_info["sale_price"], "sale_price")
        if sale_price < 0:
            raise web.HTTPBadRequest(text="sale_price must be non-negative")
        return web.json_response(
            {"sale_price": sale_price, **self.office.royalty_info(sale_price).to_dict()}
        )

    async def _events(self, request: web.Request) -> web.Response:
        limit = _safe_int(request.query.get("limit", 50), "limit")
        token_id = None
        if "token_id" in request.query:
            token_id = _safe_int(request.query["token_id"], "token_id")
        events = self.office.events.recent(limit, token_id=token_id)
        return web.json_response({"events": [e.to_dict() for e in events]}, dumps=_json_dumps)

    # ── ticket mutations ─────────────────────────────────────────

    async def _issue(self, request: web.Request) -> web.Response:
        """
        POST /tickets
        Body: {"to": "tXXX", "ticket_class": "standard" | "privileged"}
        """
        caller, body = await self._authenticate(request)
        to = _require_str(body, "to")
        ticket_class = _parse_class(body.get("ticket_class", "standard"))
        with self._commit("issue"):
            token_id = self.office.issue(caller, to, ticket_class)
        return web.json_response(
            self.office.details(token_id).to_dict() | {"owner": to}, status=201,
        )

    async def _claim(self, request: web.Request) -> web.Response:
        caller, _ = await self._authenticate(request)
        token_id = self._token_id(request)
        with self._commit("claim_attendance"):
            self.office.claim_attendance(caller, token_id)
        return web.json_response({"token_id": token_id, "claimed": True})

    async def _use(self, request: web.Request) -> web.Response:
        caller, _ = await self._authenticate(request)
        token_id = self._token_id(request)
        with self._commit("use"):
            self.office.use(caller, token_id)
        return web.json_response({"token_id": token_id, "used": True})

    async def _burn(self, request: web.Request) -> web.Response:
        caller, _ = await self._authenticate(request)
        token_id = self._token_id(request)
        with self._commit("burn"):
            self.office.burn(caller, token_id)
        return web.json_response({"token_id": token_id, "burned": True})

    async def _transfer(self, request: web.Request) -> web.Response:
        """
        POST /tickets/{id}/transfer
        Body: {"to": "tXXX", "from": "tYYY"}   ("from" defaults to the caller)
        """
        caller, body = await self._authenticate(request)
        token_id = self._token_id(request)
        to = _require_str(body, "to")
        from_owner = _require_str(body, "from", default=caller)
        with self._commit("transfer"):
            self.office.transfer(caller, token_id, from_owner, to)
        return web.json_response({"token_id": token_id, "owner": to})

    async def _set_uri(self, request: web.Request) -> web.Response:
        caller, body = await self._authenticate(request)
        token_id = self._token_id(request)
        uri = body.get("uri")
        if not isinstance(uri, str):
            raise web.HTTPBadRequest(text="uri required")
        with self._commit("set_token_uri"):
            self.office.set_token_uri(caller, token_id, uri)
        return web.json_response({"token_id": token_id, "uri": uri})

    # ── admin ────────────────────────────────────────────────────

    async def _set_blacklisted(self, request: web.Request) -> web.Response:
        caller, body = await self._authenticate(request)
        identity = _require_str(body, "identity")
        status = body.get("status")
        if not isinstance(status, bool):
            raise web.HTTPBadRequest(text="status must be a boolean")
        with self._commit("set_blacklisted"):
            self.office.set_blacklisted(caller, identity, status)
        return web.json_response({"identity": identity, "blacklisted": status})

    async def _set_mint_price(self, request: web.Request) -> web.Response:
        caller, body = await self._authenticate(request)
        price = _safe_float(body.get("price"), "price")
        with self._commit("set_mint_price"):
            self.office.set_mint_price(caller, price)
        return web.json_response({"mint_price": price})

    async def _set_royalty(self, request: web.Request) -> web.Response:
        caller, body = await self._authenticate(request)
        receiver = _require_str(body, "receiver")
        rate_bps = _safe_int(body.get("rate_bps"), "rate_bps")
        with self._commit("set_royalty"):
            self.office.set_royalty(caller, receiver, rate_bps)
        return web.json_response({"royalty_receiver": receiver, "royalty_bps": rate_bps})

    async def _withdraw(self, request: web.Request) -> web.Response:
        caller, _ = await self._authenticate(request)
        with self._commit("withdraw"):
            amount = self.office.withdraw(caller)
        return web.json_response({"withdrawn": amount, "to": caller})

    async def _transfer_issuer(self, request: web.Request) -> web.Response:
        caller, body = await self._authenticate(request)
        new_issuer = _require_str(body, "new_issuer")
        with self._commit("transfer_issuer"):
            self.office.transfer_issuer(caller, new_issuer)
        return web.json_response({"issuer": new_issuer})
