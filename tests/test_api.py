# tests/test_api.py
"""
API Tests for the hub (FastAPI TestClient, in-memory store, fake collaborators)
"""

import asyncio
import gc

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from petalhop.api.v1 import admin, stats
from petalhop.database.models import Peer, PeerStatus
from petalhop.main import create_app

from .conftest import ADMIN_TOKEN, HUB_KEY, FakeApplier, make_key

ADMIN = {"X-Admin-Token": ADMIN_TOKEN}


@pytest.fixture
def applier():
    return FakeApplier()


@pytest.fixture
def app(test_settings, engine, driver, notifier, applier):
    return create_app(
        app_settings=test_settings,
        engine=engine,
        driver=driver,
        notifier=notifier,
        rule_applier=applier,
    )


@pytest.fixture
def client(app):
    return TestClient(app)


def create_peer(client, **body):
    body.setdefault("name", "agent-1")
    resp = client.post("/api/v1/admin/peers", json=body, headers=ADMIN)
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


class TestConnectEndpoint:
    """POST /api/v1/connect"""

    def test_activation(self, client, driver):
        peer = create_peer(client)
        key = make_key()

        resp = client.post("/api/v1/connect", json={"setupToken": peer["setup_token"], "publicKey": key})

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["peerId"] == peer["id"]
        assert data["assignedAddress"] == "10.8.0.2"
        assert data["hubPublicKey"] == HUB_KEY
        assert data["hubEndpoint"] == "hub.example.com:51820"
        assert data["forwards"] == []
        assert driver.added == [(key, "10.8.0.2/32")]

    def test_forwards_listed(self, client):
        peer = create_peer(client)
        client.post(
            "/api/v1/admin/forwards",
            json={"peer_id": peer["id"], "protocol": "tcp", "public_port": 8443, "private_port": 443},
            headers=ADMIN,
        )

        resp = client.post("/api/v1/connect", json={"setupToken": peer["setup_token"], "publicKey": make_key()})

        assert resp.json()["forwards"] == [{"protocol": "tcp", "publicPort": 8443, "privatePort": 443}]

    def test_reconnect_returns_same_response(self, client):
        peer = create_peer(client)
        key = make_key()
        first = client.post("/api/v1/connect", json={"setupToken": peer["setup_token"], "publicKey": key})

        second = client.post("/api/v1/connect", json={"publicKey": key})

        assert second.status_code == 200
        assert second.json() == first.json()

    def test_unknown_token_and_unknown_key_look_alike(self, client):
        create_peer(client)

        by_token = client.post("/api/v1/connect", json={"setupToken": "bogus", "publicKey": make_key()})
        by_key = client.post("/api/v1/connect", json={"publicKey": make_key()})

        assert by_token.status_code == by_key.status_code == 401
        assert by_token.json() == by_key.json()
        assert by_token.json()["detail"]["error_code"] == "UNAUTHORIZED"

    def test_conflict(self, client, session_factory):
        peer = create_peer(client)
        token = peer["setup_token"]
        client.post("/api/v1/connect", json={"setupToken": token, "publicKey": make_key()})

        with session_factory() as db:
            db.query(Peer).filter(Peer.id == peer["id"]).update({Peer.setup_token: "again"})
            db.commit()

        resp = client.post("/api/v1/connect", json={"setupToken": "again", "publicKey": make_key()})

        assert resp.status_code == 409
        assert resp.json()["detail"]["error_code"] == "CONFLICT"

    def test_malformed_key(self, client):
        peer = create_peer(client)

        resp = client.post("/api/v1/connect", json={"setupToken": peer["setup_token"], "publicKey": "abc"})

        assert resp.status_code == 400
        assert resp.json()["detail"]["error_code"] == "VALIDATION_ERROR"

    def test_missing_key(self, client):
        resp = client.post("/api/v1/connect", json={"setupToken": "x"})
        assert resp.status_code == 422

    def test_camel_case_wire_format(self, client):
        peer = create_peer(client)
        client.post(
            "/api/v1/admin/forwards",
            json={"peer_id": peer["id"], "protocol": "udp", "public_port": 51000, "private_port": 5000},
            headers=ADMIN,
        )

        resp = client.post(
            "/api/v1/connect",
            json={"setupToken": peer["setup_token"], "publicKey": make_key()},
        )

        assert resp.status_code == 200
        assert set(resp.json()) == {
            "success", "peerId", "assignedAddress", "hubPublicKey", "hubEndpoint", "forwards",
        }
        assert set(resp.json()["forwards"][0]) == {"protocol", "publicPort", "privatePort"}

    def test_legacy_token_field(self, client):
        peer = create_peer(client)

        resp = client.post("/api/v1/connect", json={"token": peer["setup_token"], "publicKey": make_key()})

        assert resp.status_code == 200
        assert resp.json()["peerId"] == peer["id"]


class TestAdminPeers:
    """Peer management"""

    def test_requires_admin_token(self, client):
        resp = client.get("/api/v1/admin/peers", headers={"X-Admin-Token": "wrong"})
        assert resp.status_code == 401

    def test_create_allocates_address_and_token(self, client):
        first = create_peer(client, name="a")
        second = create_peer(client, name="b", kind="device")

        assert first["wg_ip"] == "10.8.0.2"
        assert second["wg_ip"] == "10.8.0.3"
        assert first["status"] == PeerStatus.PENDING
        assert second["kind"] == "device"
        assert first["setup_token"] and first["setup_token"] != second["setup_token"]

    def test_explicit_address(self, client):
        peer = create_peer(client, wg_ip="10.8.0.50")
        assert peer["wg_ip"] == "10.8.0.50"

    def test_duplicate_address(self, client):
        create_peer(client, wg_ip="10.8.0.50")

        resp = client.post("/api/v1/admin/peers", json={"name": "dup", "wg_ip": "10.8.0.50"}, headers=ADMIN)

        assert resp.status_code == 409

    @pytest.mark.parametrize("wg_ip", ["10.8.0.1", "10.9.0.2", "10.8.0.255", "nonsense"])
    def test_rejected_address(self, client, wg_ip):
        resp = client.post("/api/v1/admin/peers", json={"name": "x", "wg_ip": wg_ip}, headers=ADMIN)
        assert resp.status_code == 400

    def test_delete_cascades_forwards(self, client):
        peer = create_peer(client)
        client.post(
            "/api/v1/admin/forwards",
            json={"peer_id": peer["id"], "protocol": "tcp", "public_port": 8080, "private_port": 80},
            headers=ADMIN,
        )

        assert client.delete(f"/api/v1/admin/peers/{peer['id']}", headers=ADMIN).status_code == 200
        assert client.get("/api/v1/admin/forwards", headers=ADMIN).json() == []
        assert client.delete(f"/api/v1/admin/peers/{peer['id']}", headers=ADMIN).status_code == 404


class TestAdminForwards:
    """Forward management"""

    def test_create_and_list(self, client):
        peer = create_peer(client)

        resp = client.post(
            "/api/v1/admin/forwards",
            json={"peer_id": peer["id"], "protocol": "udp", "public_port": 51000, "private_port": 5000},
            headers=ADMIN,
        )
        assert resp.status_code == 201

        listed = client.get("/api/v1/admin/forwards", headers=ADMIN).json()
        assert listed[0]["peer_name"] == "agent-1"
        assert listed[0]["wg_ip"] == "10.8.0.2"

    def test_duplicate_protocol_port(self, client):
        peer = create_peer(client)
        body = {"peer_id": peer["id"], "protocol": "tcp", "public_port": 8080, "private_port": 80}
        client.post("/api/v1/admin/forwards", json=body, headers=ADMIN)

        resp = client.post("/api/v1/admin/forwards", json={**body, "private_port": 81}, headers=ADMIN)

        assert resp.status_code == 409

    def test_same_port_other_protocol_allowed(self, client):
        peer = create_peer(client)
        body = {"peer_id": peer["id"], "protocol": "tcp", "public_port": 53, "private_port": 53}
        client.post("/api/v1/admin/forwards", json=body, headers=ADMIN)

        resp = client.post("/api/v1/admin/forwards", json={**body, "protocol": "udp"}, headers=ADMIN)

        assert resp.status_code == 201

    def test_unknown_peer(self, client):
        resp = client.post(
            "/api/v1/admin/forwards",
            json={"peer_id": 999, "protocol": "tcp", "public_port": 8080, "private_port": 80},
            headers=ADMIN,
        )
        assert resp.status_code == 404

    @pytest.mark.parametrize("body", [
        {"protocol": "icmp", "public_port": 8080, "private_port": 80},
        {"protocol": "tcp", "public_port": 0, "private_port": 80},
        {"protocol": "tcp", "public_port": 8080, "private_port": 65536},
    ])
    def test_invalid_fields(self, client, body):
        peer = create_peer(client)
        resp = client.post("/api/v1/admin/forwards", json={"peer_id": peer["id"], **body}, headers=ADMIN)
        assert resp.status_code == 422

    def test_delete(self, client):
        peer = create_peer(client)
        forward = client.post(
            "/api/v1/admin/forwards",
            json={"peer_id": peer["id"], "protocol": "tcp", "public_port": 8080, "private_port": 80},
            headers=ADMIN,
        ).json()

        assert client.delete(f"/api/v1/admin/forwards/{forward['id']}", headers=ADMIN).status_code == 200
        assert client.delete(f"/api/v1/admin/forwards/{forward['id']}", headers=ADMIN).status_code == 404


class TestRules:
    """Ruleset preview and apply"""

    def _forward(self, client):
        peer = create_peer(client)
        client.post(
            "/api/v1/admin/forwards",
            json={"peer_id": peer["id"], "protocol": "tcp", "public_port": 8080, "private_port": 80},
            headers=ADMIN,
        )

    def test_preview(self, client, applier):
        self._forward(client)

        resp = client.get("/api/v1/admin/apply", headers=ADMIN)

        assert resp.status_code == 200
        assert "tcp dport 8080 dnat to 10.8.0.2:80" in resp.json()["rules"]
        assert applier.applied == []

    def test_apply(self, client, applier):
        self._forward(client)

        resp = client.post("/api/v1/admin/apply", headers=ADMIN)

        assert resp.json() == {"applied": True, "message": "Rules applied successfully"}
        assert "dnat to 10.8.0.2:80" in applier.applied[0]

    def test_apply_failure(self, client, applier):
        applier.fail = True

        resp = client.post("/api/v1/admin/apply", headers=ADMIN)

        assert resp.status_code == 500
        assert resp.json()["detail"]["error_code"] == "RULE_APPLY_FAILED"


class TestSettings:
    def test_update_and_read(self, client):
        resp = client.put(
            "/api/v1/admin/settings",
            json={"key": "server_endpoint", "value": "hub.example.net:51820"},
            headers=ADMIN,
        )
        assert resp.status_code == 200

        assert client.get("/api/v1/admin/settings", headers=ADMIN).json() == {
            "server_endpoint": "hub.example.net:51820"
        }

    def test_unknown_key_rejected(self, client):
        resp = client.put("/api/v1/admin/settings", json={"key": "other", "value": "x"}, headers=ADMIN)
        assert resp.status_code == 422

    def test_wg_status(self, client, driver):
        up = client.get("/api/v1/admin/settings/wg-status", headers=ADMIN).json()
        driver.available = False
        down = client.get("/api/v1/admin/settings/wg-status", headers=ADMIN).json()

        assert up["status"] == "up"
        assert up["public_key"] == HUB_KEY
        assert down["status"] == "down"

    def test_detect_key(self, client, driver):
        assert client.post("/api/v1/admin/settings/detect-key", headers=ADMIN).json() == {"public_key": HUB_KEY}

        driver.available = False
        assert client.post("/api/v1/admin/settings/detect-key", headers=ADMIN).status_code == 503


class TestStats:
    def test_history(self, client, store):
        from datetime import datetime

        peer = create_peer(client)
        store.add_usage(peer["id"], datetime(2026, 10, 18, 9), "2026-10", 100, 10)
        store.add_usage(peer["id"], datetime(2026, 10, 18, 10), "2026-10", 200, 20)
        store.add_usage(peer["id"], datetime(2026, 10, 18, 10), "2026-10", 1, 1)

        data = client.get(f"/api/v1/stats/history?peerId={peer['id']}", headers=ADMIN).json()

        assert [(h["rx"], h["tx"]) for h in data["hourly"]] == [(100, 10), (201, 21)]
        assert data["monthly"] == [{"rx": 301, "tx": 31, "month": "2026-10"}]

    def test_history_unknown_peer(self, client):
        resp = client.get("/api/v1/stats/history?peerId=42", headers=ADMIN)
        assert resp.status_code == 404

    def test_stream_rejects_bad_token(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/api/v1/ws/stats?token=wrong") as ws:
                ws.receive_json()

    def test_stream_attaches_subscriber(self, client, app):
        with client.websocket_connect(f"/api/v1/ws/stats?token={ADMIN_TOKEN}") as ws:
            assert ws.receive_json() == {"type": "connected"}
            assert app.state.stats_bus.subscriber_count == 1

    def test_failed_send_is_cleaned_up(self, app):
        class BrokenSocket:
            """Accepts, then fails on the first stats frame"""

            def __init__(self):
                self.app = app
                self.gone = asyncio.Event()

            async def accept(self):
                pass

            async def send_json(self, data):
                if data["type"] == "stats":
                    raise RuntimeError("connection reset")

            async def receive_text(self):
                await self.gone.wait()
                raise WebSocketDisconnect(1006)

        async def scenario():
            errors = []
            asyncio.get_running_loop().set_exception_handler(lambda loop, ctx: errors.append(ctx))
            bus = app.state.stats_bus
            ws = BrokenSocket()

            handler = asyncio.create_task(stats.stats_stream(ws, token=ADMIN_TOKEN))
            while bus.subscriber_count == 0:
                await asyncio.sleep(0)
            bus.publish({1: {"rx": 1, "tx": 1, "last_handshake": 0, "online": False}})
            await asyncio.sleep(0.05)

            ws.gone.set()
            await handler
            del handler
            gc.collect()
            return errors, bus.subscriber_count

        errors, remaining = asyncio.run(scenario())

        assert errors == []
        assert remaining == 0


class TestHandlerDispatch:
    """Handlers that only touch the store run in the threadpool"""

    @pytest.mark.parametrize("handler", [
        admin.list_peers,
        admin.create_peer,
        admin.delete_peer,
        admin.list_forwards,
        admin.create_forward,
        admin.delete_forward,
        admin.get_settings,
        admin.update_setting,
        admin.preview_rules,
        stats.usage_history,
    ])
    def test_store_bound_handlers_are_sync(self, handler):
        assert not asyncio.iscoroutinefunction(handler)
