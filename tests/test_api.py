"""
Tests for the REST API layer.

Covers:
  - Read endpoints (health, status, ticket record, owner, uri, events)
  - Ticket flows over HTTP with the X-Caller header
  - Error mapping (400 / 401 / 403 / 404 / 409 / 410)
  - Signed requests (X-Public-Key / X-Timestamp / X-Signature)
  - API key, rate limiting and CORS middleware
  - Persistence after each mutation
"""

from __future__ import annotations

import json
import sqlite3
import time

import pytest
from aiohttp.test_utils import TestClient, TestServer

from ticketflow_core.api import APIServer, _TokenBucket
from ticketflow_core.config import APIConfig
from ticketflow_core.identity import KeyPair
from ticketflow_core.lifecycle import TICKET_LIFETIME, TicketClass
from ticketflow_core.office import TicketOffice
from ticketflow_core.storage import TicketStore

ISSUER = "tIssuer"


# ─── Helpers ────────────────────────────────────────────────────────

def _build_api_config(**overrides) -> APIConfig:
    defaults = {
        "rate_limit_rpm": 0,
        "require_signatures": False,
    }
    defaults.update(overrides)
    return APIConfig(**defaults)


def _make_test_client(office, api_config=None, store=None) -> TestClient:
    api = APIServer(office, host="127.0.0.1", port=0,
                    api_config=api_config or _build_api_config(), store=store)
    return TestClient(TestServer(api.build_app()))


def _as(caller: str) -> dict:
    return {"X-Caller": caller}


async def _signed_post(client, kp: KeyPair, path: str, payload: dict | None = None):
    body = json.dumps(payload).encode() if payload is not None else b""
    headers = kp.request_headers("POST", path, str(int(time.time())), body)
    headers["Content-Type"] = "application/json"
    return await client.post(path, data=body, headers=headers)


# ═══════════════════════════════════════════════════════════════════
#  Reads
# ═══════════════════════════════════════════════════════════════════

class TestReads:
    @pytest.mark.asyncio
    async def test_health(self, stocked_office):
        async with _make_test_client(stocked_office) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            data = await resp.json()
            assert data["ok"] is True
            assert data["issued"] == 2

    @pytest.mark.asyncio
    async def test_status(self, stocked_office):
        async with _make_test_client(stocked_office) as client:
            data = await (await client.get("/status")).json()
            assert data["issuer"] == ISSUER
            assert data["config"]["max_issued"] == 1000

    @pytest.mark.asyncio
    async def test_ticket_record(self, stocked_office):
        async with _make_test_client(stocked_office) as client:
            data = await (await client.get("/tickets/1")).json()
            assert data["ticket_class"] == "privileged"
            assert data["transferable"] is False
            assert data["owner"] == "tBob"

    @pytest.mark.asyncio
    async def test_unknown_ticket_record_is_zero_valued(self, office):
        async with _make_test_client(office) as client:
            resp = await client.get("/tickets/42")
            assert resp.status == 200
            data = await resp.json()
            assert data["used"] is False
            assert data["expiry"] == 0.0
            assert data["owner"] is None

    @pytest.mark.asyncio
    async def test_unknown_owner_is_404(self, office):
        async with _make_test_client(office) as client:
            resp = await client.get("/tickets/42/owner")
            assert resp.status == 404
            assert (await resp.json())["error"] == "UNKNOWN_TICKET"

    @pytest.mark.asyncio
    async def test_non_integer_id_is_400(self, office):
        async with _make_test_client(office) as client:
            resp = await client.get("/tickets/abc")
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_account_tickets(self, stocked_office):
        async with _make_test_client(stocked_office) as client:
            data = await (await client.get("/account/tAlice/tickets")).json()
            assert [t["token_id"] for t in data["tickets"]] == [0]

    @pytest.mark.asyncio
    async def test_royalty(self, office):
        office.set_royalty(ISSUER, "tArtist", 500)
        async with _make_test_client(office) as client:
            data = await (await client.get("/royalty/1000")).json()
            assert data == {"sale_price": 1000, "receiver": "tArtist", "amount": 50}

    @pytest.mark.asyncio
    async def test_events_filtered_by_token(self, stocked_office):
        async with _make_test_client(stocked_office) as client:
            data = await (await client.get("/events?token_id=1")).json()
            assert [e["kind"] for e in data["events"]] == ["Issued"]


# ═══════════════════════════════════════════════════════════════════
#  Ticket flows (X-Caller)
# ═══════════════════════════════════════════════════════════════════

class TestTicketFlows:
    @pytest.mark.asyncio
    async def test_issue_claim_use(self, office):
        async with _make_test_client(office) as client:
            resp = await client.post("/tickets", json={"to": "tAlice"}, headers=_as(ISSUER))
            assert resp.status == 201
            assert (await resp.json())["token_id"] == 0

            resp = await client.post("/tickets/0/claim", headers=_as("tAlice"))
            assert resp.status == 200
            resp = await client.post("/tickets/0/claim", headers=_as("tAlice"))
            assert resp.status == 409
            assert (await resp.json())["error"] == "ALREADY_CLAIMED"

            resp = await client.post("/tickets/0/use", headers=_as("tAlice"))
            assert resp.status == 200
            resp = await client.post("/tickets/0/use", headers=_as("tAlice"))
            assert resp.status == 409
            assert (await resp.json())["error"] == "ALREADY_USED"

    @pytest.mark.asyncio
    async def test_issue_by_stranger_is_403(self, office):
        async with _make_test_client(office) as client:
            resp = await client.post("/tickets", json={"to": "tAlice"}, headers=_as("tAlice"))
            assert resp.status == 403
            assert (await resp.json())["error"] == "NOT_AUTHORIZED"

    @pytest.mark.asyncio
    async def test_issue_bad_class_is_400(self, office):
        async with _make_test_client(office) as client:
            resp = await client.post("/tickets", json={"to": "tAlice", "ticket_class": "vip"},
                                     headers=_as(ISSUER))
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_capacity_is_409(self, small_office):
        async with _make_test_client(small_office) as client:
            for _ in range(3):
                await client.post("/tickets", json={"to": "tAlice"}, headers=_as(ISSUER))
            resp = await client.post("/tickets", json={"to": "tAlice"}, headers=_as(ISSUER))
            assert resp.status == 409
            assert (await resp.json())["error"] == "CAPACITY_REACHED"

    @pytest.mark.asyncio
    async def test_expired_is_410(self, stocked_office, clock):
        clock.advance(TICKET_LIFETIME + 1)
        async with _make_test_client(stocked_office) as client:
            resp = await client.post("/tickets/0/use", headers=_as("tAlice"))
            assert resp.status == 410
            assert (await resp.json())["error"] == "EXPIRED"

    @pytest.mark.asyncio
    async def test_transfer_standard(self, stocked_office):
        async with _make_test_client(stocked_office) as client:
            resp = await client.post("/tickets/0/transfer", json={"to": "tCarol"},
                                     headers=_as("tAlice"))
            assert resp.status == 200
        assert stocked_office.owner_of(0) == "tCarol"

    @pytest.mark.asyncio
    async def test_transfer_privileged_is_409(self, stocked_office):
        async with _make_test_client(stocked_office) as client:
            resp = await client.post("/tickets/1/transfer", json={"to": "tCarol"},
                                     headers=_as("tBob"))
            assert resp.status == 409
            assert (await resp.json())["error"] == "NON_TRANSFERABLE_PRIVILEGED"
        assert stocked_office.owner_of(1) == "tBob"

    @pytest.mark.asyncio
    async def test_burn_unknown_is_404(self, office):
        async with _make_test_client(office) as client:
            resp = await client.post("/tickets/5/burn", headers=_as(ISSUER))
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_missing_caller_is_401(self, office):
        async with _make_test_client(office) as client:
            resp = await client.post("/tickets", json={"to": "tAlice"})
            assert resp.status == 401

    @pytest.mark.asyncio
    async def test_invalid_json_is_400(self, office):
        async with _make_test_client(office) as client:
            resp = await client.post("/tickets", data=b"{not json",
                                     headers=_as(ISSUER))
            assert resp.status == 400


# ═══════════════════════════════════════════════════════════════════
#  Admin endpoints
# ═══════════════════════════════════════════════════════════════════

class TestAdmin:
    @pytest.mark.asyncio
    async def test_blacklist(self, office):
        async with _make_test_client(office) as client:
            resp = await client.post("/admin/blacklist",
                                     json={"identity": "tMallory", "status": True},
                                     headers=_as(ISSUER))
            assert resp.status == 200
            data = await (await client.get("/access/tMallory")).json()
            assert data["result"] == "denied"
            assert data["reason"] == "BLACKLISTED"

    @pytest.mark.asyncio
    async def test_royalty_out_of_range_is_400(self, office):
        async with _make_test_client(office) as client:
            resp = await client.post("/admin/royalty",
                                     json={"receiver": "tArtist", "rate_bps": 20_000},
                                     headers=_as(ISSUER))
            assert resp.status == 400
            assert (await resp.json())["error"] == "INVALID_ARGUMENT"

    @pytest.mark.asyncio
    async def test_withdraw(self, office):
        office.deposit(15.0)
        async with _make_test_client(office) as client:
            resp = await client.post("/admin/withdraw", headers=_as(ISSUER))
            assert (await resp.json())["withdrawn"] == 15.0
            resp = await client.post("/admin/withdraw", headers=_as("tAlice"))
            assert resp.status == 403

    @pytest.mark.asyncio
    async def test_issuer_handover(self, office):
        async with _make_test_client(office) as client:
            resp = await client.post("/admin/issuer", json={"new_issuer": "tNew"},
                                     headers=_as(ISSUER))
            assert resp.status == 200
            resp = await client.post("/tickets", json={"to": "tAlice"}, headers=_as(ISSUER))
            assert resp.status == 403

    @pytest.mark.asyncio
    async def test_mutations_persisted(self, office, tmp_path):
        store = TicketStore(str(tmp_path / "api.db"))
        try:
            async with _make_test_client(office, store=store) as client:
                await client.post("/tickets", json={"to": "tAlice", "ticket_class": "privileged"},
                                  headers=_as(ISSUER))
            restored = TicketOffice(issuer=ISSUER)
            assert store.load_office(restored)
            assert restored.details(0).ticket_class is TicketClass.PRIVILEGED
        finally:
            store.close()


# ═══════════════════════════════════════════════════════════════════
#  Signed requests
# ═══════════════════════════════════════════════════════════════════

class TestSignedRequests:
    @pytest.mark.asyncio
    async def test_signed_flow(self, clock):
        issuer_kp = KeyPair.from_seed("issuer")
        alice_kp = KeyPair.from_seed("alice")
        office = TicketOffice(issuer=issuer_kp.address, clock=clock)
        cfg = _build_api_config(require_signatures=True)
        async with _make_test_client(office, cfg) as client:
            resp = await _signed_post(client, issuer_kp, "/tickets", {"to": alice_kp.address})
            assert resp.status == 201
            resp = await _signed_post(client, alice_kp, "/tickets/0/use")
            assert resp.status == 200
        assert office.is_used(0)

    @pytest.mark.asyncio
    async def test_x_caller_ignored_when_signatures_required(self, office):
        cfg = _build_api_config(require_signatures=True)
        async with _make_test_client(office, cfg) as client:
            resp = await client.post("/tickets", json={"to": "tAlice"}, headers=_as(ISSUER))
            assert resp.status == 401

    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, office):
        kp = KeyPair.from_seed("issuer")
        cfg = _build_api_config(require_signatures=True)
        headers = kp.request_headers("POST", "/tickets", str(int(time.time())),
                                     b'{"to": "tAlice"}')
        async with _make_test_client(office, cfg) as client:
            resp = await client.post("/tickets", data=b'{"to": "tMallory"}', headers=headers)
            assert resp.status == 401

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, office):
        kp = KeyPair.from_seed("issuer")
        cfg = _build_api_config(require_signatures=True)
        stale = str(int(time.time()) - 3600)
        headers = kp.request_headers("POST", "/tickets", stale, b"")
        async with _make_test_client(office, cfg) as client:
            resp = await client.post("/tickets", headers=headers)
            assert resp.status == 401

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ts", ["nan", "inf", "-inf"])
    async def test_non_finite_timestamp_rejected(self, clock, ts):
        kp = KeyPair.from_seed("issuer")
        office = TicketOffice(issuer=kp.address, clock=clock)
        cfg = _build_api_config(require_signatures=True)
        body = json.dumps({"to": "tAlice"}).encode()
        headers = kp.request_headers("POST", "/tickets", ts, body)
        headers["Content-Type"] = "application/json"
        async with _make_test_client(office, cfg) as client:
            resp = await client.post("/tickets", data=body, headers=headers)
            assert resp.status == 401
        assert office.lifecycle.issued_count == 0


# ═══════════════════════════════════════════════════════════════════
#  Middleware
# ═══════════════════════════════════════════════════════════════════

class TestMiddleware:
    def test_token_bucket_limits(self):
        bucket = _TokenBucket(2)
        assert bucket.allow("1.1.1.1")
        assert bucket.allow("1.1.1.1")
        assert not bucket.allow("1.1.1.1")
        assert bucket.allow("2.2.2.2")

    def test_token_bucket_unlimited(self):
        bucket = _TokenBucket(0)
        assert all(bucket.allow("x") for _ in range(500))

    def test_idle_buckets_pruned_when_table_full(self, monkeypatch):
        monkeypatch.setattr("ticketflow_core.api.MAX_BUCKETS", 3)
        bucket = _TokenBucket(60)
        for ip in ("1.1.1.1", "2.2.2.2", "3.3.3.3"):
            assert bucket.allow(ip)
        # two callers have been quiet long enough to refill completely
        bucket._buckets["1.1.1.1"][1] -= 120
        bucket._buckets["2.2.2.2"][1] -= 120
        assert bucket.allow("4.4.4.4")
        assert set(bucket._buckets) == {"3.3.3.3", "4.4.4.4"}

    @pytest.mark.asyncio
    async def test_rate_limit_returns_429(self, office):
        cfg = _build_api_config(rate_limit_rpm=2)
        async with _make_test_client(office, cfg) as client:
            assert (await client.get("/health")).status == 200
            assert (await client.get("/health")).status == 200
            resp = await client.get("/health")
            assert resp.status == 429
            assert resp.headers["Retry-After"] == "5"

    @pytest.mark.asyncio
    async def test_api_key_required_on_post(self, office):
        cfg = _build_api_config(api_key="s3cret")
        async with _make_test_client(office, cfg) as client:
            assert (await client.get("/health")).status == 200
            resp = await client.post("/tickets", json={"to": "tAlice"}, headers=_as(ISSUER))
            assert resp.status == 401
            resp = await client.post("/tickets", json={"to": "tAlice"},
                                     headers={**_as(ISSUER), "X-API-Key": "s3cret"})
            assert resp.status == 201

    @pytest.mark.asyncio
    async def test_cors_allowed_origin(self, office):
        cfg = _build_api_config(cors_origins=["https://box.example", "*"])
        async with _make_test_client(office, cfg) as client:
            resp = await client.get("/health", headers={"Origin": "https://box.example"})
            assert resp.headers["Access-Control-Allow-Origin"] == "https://box.example"
            resp = await client.get("/health", headers={"Origin": "https://evil.example"})
            assert "Access-Control-Allow-Origin" not in resp.headers


# ═══════════════════════════════════════════════════════════════════
#  Input validation and persistence consistency
# ═══════════════════════════════════════════════════════════════════

class TestPersistenceConsistency:
    @pytest.mark.asyncio
    async def test_non_string_recipient_rejected_before_commit(self, office, tmp_path):
        store = TicketStore(str(tmp_path / "api.db"))
        try:
            async with _make_test_client(office, store=store) as client:
                resp = await client.post("/tickets", json={"to": ["x"]}, headers=_as(ISSUER))
                assert resp.status == 400
                assert office.lifecycle.issued_count == 0

                resp = await client.post("/tickets", json={"to": "tAlice"}, headers=_as(ISSUER))
                assert resp.status == 201
            restored = TicketOffice(issuer=ISSUER)
            assert store.load_office(restored)
            assert restored.owner_of(0) == "tAlice"
        finally:
            store.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path, payload", [
        ("/tickets/0/transfer", {"to": 7}),
        ("/tickets/0/transfer", {"to": "tCarol", "from": {"a": 1}}),
        ("/admin/blacklist", {"identity": ["tMallory"], "status": True}),
        ("/admin/royalty", {"receiver": 12, "rate_bps": 100}),
        ("/admin/issuer", {"new_issuer": None}),
    ])
    async def test_non_string_fields_are_400(self, stocked_office, path, payload):
        caller = "tAlice" if "transfer" in path else ISSUER
        before = stocked_office.status()
        async with _make_test_client(stocked_office) as client:
            resp = await client.post(path, json=payload, headers=_as(caller))
            assert resp.status == 400
        assert stocked_office.status() == before
        assert stocked_office.owner_of(0) == "tAlice"

    @pytest.mark.asyncio
    async def test_failed_save_rolls_back(self, stocked_office, tmp_path, monkeypatch):
        store = TicketStore(str(tmp_path / "api.db"))
        events_before = len(stocked_office.events)

        def broken_save(_office):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(store, "save_office", broken_save)
        try:
            async with _make_test_client(stocked_office, store=store) as client:
                resp = await client.post("/tickets/0/use", headers=_as("tAlice"))
                assert resp.status == 503
                assert (await resp.json())["error"] == "STORAGE_UNAVAILABLE"

                resp = await client.post("/tickets", json={"to": "tCarol"},
                                         headers=_as(ISSUER))
                assert resp.status == 503
        finally:
            store.close()
        assert not stocked_office.is_used(0)
        assert stocked_office.lifecycle.issued_count == 2
        assert len(stocked_office.events) == events_before

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, -3])
    async def test_event_limit_not_positive_is_empty(self, stocked_office, limit):
        async with _make_test_client(stocked_office) as client:
            for query in (f"/events?limit={limit}", f"/events?limit={limit}&token_id=0"):
                data = await (await client.get(query)).json()
                assert data["events"] == []

    @pytest.mark.asyncio
    async def test_event_limit_for_token(self, stocked_office):
        stocked_office.claim_attendance("tAlice", 0)
        stocked_office.use("tAlice", 0)
        async with _make_test_client(stocked_office) as client:
            data = await (await client.get("/events?limit=2&token_id=0")).json()
            assert [e["kind"] for e in data["events"]] == ["Claimed", "Used"]
